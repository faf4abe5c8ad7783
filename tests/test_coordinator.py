import dataclasses
import json
import os
import signal
import sqlite3
from datetime import datetime
from pathlib import Path

import pytest

from peripheral_settings_transfer.backup import create_backup
from peripheral_settings_transfer.catalog import SchemaCatalog
from peripheral_settings_transfer.codec import TlvCodec
from peripheral_settings_transfer.coordinator import State, TransactionCoordinator
from peripheral_settings_transfer.errors import (
    BackupFailed,
    IdentifierWidthMismatch,
    StoreLocked,
    VerificationFailed,
    WriteFailed,
)
from peripheral_settings_transfer.rewriter import MOVE, DeleteRow
from peripheral_settings_transfer.store import open_writer
from peripheral_settings_transfer.transfer import SettingsStore, transfer_assignments

M1_ROWS = "SELECT id, slot_prefix, profile, control, payload FROM assignments WHERE slot_prefix = ? ORDER BY id"


def _plan(store_path: Path, source: str = "m1", target: str = "m2", **kwargs):
    with SettingsStore(store_path) as store:
        return store.plan_transfer(source, target, **kwargs)


def _backups(store_path: Path):
    return sorted(store_path.parent.glob(f"{store_path.name}.*"))


def test_transfer_copies_rows_and_retargets_embedded_references(store_path: Path, query) -> None:
    m1_before = query(store_path, M1_ROWS, ("m1",))

    outcome = transfer_assignments(store_path, "m1", "m2")

    assert outcome.committed
    rows = query(store_path, M1_ROWS, ("m2",))
    assert [(row[2], row[3]) for row in rows] == [("default", "button4"), ("default", "button5")]
    refs = [occ.identifier for row in rows for occ in TlvCodec().scan(row[4])]
    assert refs == ["m2"]
    assert query(store_path, M1_ROWS, ("m1",)) == m1_before


def test_transfer_leaves_no_source_references_in_target(store_path: Path) -> None:
    transfer_assignments(store_path, "m3", "m2")

    with SettingsStore(store_path) as store:
        source = store.extract("m3")
        target = store.extract("m2")

    assert target.counts() == source.counts()
    assert target.references_to("m3") == ()
    assert len(target.embedded_references) == len(source.embedded_references)


def test_backup_is_a_byte_copy_of_the_store(store_path: Path, file_sha256) -> None:
    before = file_sha256(store_path)

    outcome = transfer_assignments(store_path, "m1", "m2")

    backup = outcome.result.backup
    assert backup is not None
    assert backup.path.parent == store_path.parent
    assert backup.path.name.startswith("settings.db.")
    assert file_sha256(backup.path) == before == backup.sha256


def test_second_transfer_is_a_no_op(store_path: Path, file_sha256) -> None:
    transfer_assignments(store_path, "m3", "m4")
    after_first = file_sha256(store_path)
    backups = _backups(store_path)

    outcome = transfer_assignments(store_path, "m3", "m4")

    assert outcome.plan.is_empty()
    assert outcome.result.state is State.IDLE
    assert file_sha256(store_path) == after_first
    assert _backups(store_path) == backups


def test_overwrite_keeps_target_only_slots(store_path: Path, query) -> None:
    transfer_assignments(store_path, "m1", "m4")

    controls = query(
        store_path,
        "SELECT control, payload FROM assignments WHERE slot_prefix = 'm4' ORDER BY control",
    )
    assert [row[0] for row in controls] == ["button4", "button5"]
    assert query(
        store_path, "SELECT application FROM app_profiles WHERE slot_prefix = 'm4'"
    ) == [("browser",)]


def test_move_empties_the_source(store_path: Path) -> None:
    outcome = transfer_assignments(store_path, "m3", "m2", mode=MOVE)

    assert outcome.committed
    with SettingsStore(store_path) as store:
        assert store.extract("m3").is_empty()
        target = store.extract("m2")
    assert target.counts()["assignment_steps"] == 2
    assert target.references_to("m3") == ()


def test_width_mismatch_leaves_store_untouched(store_path: Path, file_sha256) -> None:
    before = file_sha256(store_path)

    with pytest.raises(IdentifierWidthMismatch):
        transfer_assignments(store_path, "m1", "m10")

    assert file_sha256(store_path) == before
    assert _backups(store_path) == []


def test_backup_failure_prevents_any_write(store_path: Path, tmp_path: Path, file_sha256) -> None:
    plan = _plan(store_path)
    blocker = tmp_path / "not-a-directory"
    blocker.write_text("occupied")
    before = file_sha256(store_path)
    mtime = store_path.stat().st_mtime_ns

    coordinator = TransactionCoordinator(store_path, backup_dir=blocker / "backups")
    with pytest.raises(BackupFailed):
        coordinator.apply(plan)

    assert coordinator.history == (State.IDLE, State.BACKING_UP, State.ROLLED_BACK)
    assert store_path.stat().st_mtime_ns == mtime
    assert file_sha256(store_path) == before


def test_locked_store_fails_fast(store_path: Path) -> None:
    plan = _plan(store_path)
    holder = sqlite3.connect(store_path, isolation_level=None)
    holder.execute("BEGIN EXCLUSIVE")
    try:
        coordinator = TransactionCoordinator(store_path)
        with pytest.raises(StoreLocked):
            coordinator.apply(plan)
    finally:
        holder.execute("ROLLBACK")
        holder.close()

    assert coordinator.history == (State.IDLE,)
    assert _backups(store_path) == []


def test_store_changed_since_planning_is_rejected(store_path: Path) -> None:
    plan = _plan(store_path)
    conn = sqlite3.connect(store_path)
    conn.execute(
        "INSERT INTO assignments (slot_prefix, profile, control, payload) "
        "VALUES ('m2', 'default', 'button9', x'')"
    )
    conn.commit()
    conn.close()

    with pytest.raises(VerificationFailed, match="changed since"):
        TransactionCoordinator(store_path).apply(plan)
    assert _backups(store_path) == []


def test_failed_verification_rolls_back(store_path: Path, query) -> None:
    plan = _plan(store_path)
    wrong = dataclasses.replace(plan, expected_counts={**plan.expected_counts, "assignments": 7})
    coordinator = TransactionCoordinator(store_path)

    with pytest.raises(VerificationFailed, match="Row count") as excinfo:
        coordinator.apply(wrong)

    assert coordinator.state is State.ROLLED_BACK
    assert coordinator.history[-2:] == (State.VERIFYING, State.ROLLED_BACK)
    assert query(store_path, M1_ROWS, ("m2",)) == []
    backup_path = Path(excinfo.value.context["backup_path"])
    assert backup_path.exists()


def test_engine_write_errors_roll_back(store_path: Path, query) -> None:
    plan = _plan(store_path)
    broken = dataclasses.replace(
        plan, operations=plan.operations + (DeleteRow(table="assignments", rowid=9999),)
    )
    coordinator = TransactionCoordinator(store_path)

    with pytest.raises(WriteFailed):
        coordinator.apply(broken)

    assert coordinator.state is State.ROLLED_BACK
    assert query(store_path, M1_ROWS, ("m2",)) == []


def test_wal_store_is_checkpointed_and_written(store_path: Path, query) -> None:
    conn = sqlite3.connect(store_path)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.close()

    outcome = transfer_assignments(store_path, "m1", "m2")

    assert outcome.committed
    assert len(query(store_path, M1_ROWS, ("m2",))) == 2


def test_dry_run_never_writes(store_path: Path, file_sha256) -> None:
    before = file_sha256(store_path)

    outcome = transfer_assignments(store_path, "m1", "m2", dry_run=True)

    assert outcome.dry_run
    assert outcome.result is None
    assert not outcome.plan.is_empty()
    assert file_sha256(store_path) == before
    assert _backups(store_path) == []


def test_committed_run_history_and_backup_naming(store_path: Path, tmp_path: Path) -> None:
    plan = _plan(store_path)
    backup_dir = tmp_path / "backups"
    coordinator = TransactionCoordinator(
        store_path,
        catalog=SchemaCatalog.builtin(),
        backup_dir=backup_dir,
        clock=lambda: datetime(2024, 5, 6, 7, 8, 9),
    )

    result = coordinator.apply(plan)

    assert result.committed
    assert coordinator.history == (
        State.IDLE,
        State.BACKING_UP,
        State.TRANSACTING,
        State.VERIFYING,
        State.COMMITTED,
    )
    assert result.backup.path == backup_dir / "settings.db.2024-05-06_07-08-09"


def test_escaped_json_slot_is_retargeted(store_path: Path, query) -> None:
    conn = sqlite3.connect(store_path)
    conn.execute(
        "INSERT INTO app_profiles (slot_prefix, application, settings) VALUES (?, ?, ?)",
        ("m1", "launcher", json.dumps({"slotId": "m1_cé", "mode": "scroll"})),
    )
    conn.commit()
    conn.close()

    transfer_assignments(store_path, "m1", "m2")

    rows = query(
        store_path,
        "SELECT settings FROM app_profiles WHERE slot_prefix = 'm2' AND application = 'launcher'",
    )
    assert [json.loads(row[0]) for row in rows] == [{"slotId": "m2_cé", "mode": "scroll"}]
    with SettingsStore(store_path) as store:
        assert store.extract("m2").references_to("m1") == ()


def test_interrupt_during_transfer_is_deferred(store_path: Path, query, monkeypatch) -> None:
    handler_before = signal.getsignal(signal.SIGINT)

    def interrupted_backup(*args, **kwargs):
        os.kill(os.getpid(), signal.SIGINT)
        return create_backup(*args, **kwargs)

    monkeypatch.setattr(
        "peripheral_settings_transfer.coordinator.create_backup", interrupted_backup
    )

    outcome = transfer_assignments(store_path, "m1", "m2")

    assert outcome.committed
    assert len(query(store_path, M1_ROWS, ("m2",))) == 2
    assert signal.getsignal(signal.SIGINT) is handler_before


class _RollbackFails:
    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def __getattr__(self, name):
        return getattr(self._conn, name)

    def execute(self, sql, *args):
        if sql == "ROLLBACK":
            raise sqlite3.OperationalError("disk I/O error")
        return self._conn.execute(sql, *args)


def test_failed_rollback_keeps_the_original_error(store_path: Path, query, monkeypatch) -> None:
    plan = _plan(store_path)
    wrong = dataclasses.replace(plan, expected_counts={**plan.expected_counts, "assignments": 7})
    monkeypatch.setattr(
        "peripheral_settings_transfer.coordinator.open_writer",
        lambda path: _RollbackFails(open_writer(path)),
    )
    coordinator = TransactionCoordinator(store_path)

    with pytest.raises(VerificationFailed, match="Row count") as excinfo:
        coordinator.apply(wrong)

    assert excinfo.value.exit_code == 9
    assert coordinator.state is State.ROLLED_BACK
    assert query(store_path, M1_ROWS, ("m2",)) == []
