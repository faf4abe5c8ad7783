from datetime import datetime
from pathlib import Path

import pytest

from peripheral_settings_transfer.backup import create_backup, file_digest
from peripheral_settings_transfer.errors import BackupFailed

NOW = datetime(2025, 1, 2, 3, 4, 5)


def test_backup_is_named_after_store_and_time(store_path: Path) -> None:
    snapshot = create_backup(store_path, now=NOW)

    assert snapshot.path == store_path.parent / "settings.db.2025-01-02_03-04-05"
    assert snapshot.size == store_path.stat().st_size
    assert snapshot.sha256 == file_digest(store_path)


def test_existing_backup_is_never_overwritten(store_path: Path) -> None:
    taken = store_path.parent / "settings.db.2025-01-02_03-04-05"
    taken.write_bytes(b"older backup")

    snapshot = create_backup(store_path, now=NOW)

    assert snapshot.path.name == "settings.db.2025-01-02_03-04-05.1"
    assert taken.read_bytes() == b"older backup"


def test_backup_directory_is_created(store_path: Path, tmp_path: Path) -> None:
    snapshot = create_backup(store_path, tmp_path / "nested" / "backups", now=NOW)

    assert snapshot.path.parent == tmp_path / "nested" / "backups"
    assert snapshot.path.read_bytes() == store_path.read_bytes()


def test_missing_store_is_a_backup_failure(tmp_path: Path) -> None:
    with pytest.raises(BackupFailed, match="could not be written"):
        create_backup(tmp_path / "absent.db", now=NOW)
    assert list(tmp_path.iterdir()) == []


def test_copy_that_does_not_match_is_removed(store_path: Path, monkeypatch) -> None:
    real_digest = file_digest

    def corrupted_digest(path: Path) -> str:
        return real_digest(path) if path == store_path else "0" * 64

    monkeypatch.setattr("peripheral_settings_transfer.backup.file_digest", corrupted_digest)

    with pytest.raises(BackupFailed, match="does not match the store") as excinfo:
        create_backup(store_path, now=NOW)

    assert not Path(excinfo.value.context["backup_path"]).exists()
    assert sorted(p.name for p in store_path.parent.iterdir()) == ["settings.db"]
