"""Pre-write backup snapshots of the settings store."""

from __future__ import annotations

import hashlib
import shutil
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from .errors import BackupFailed
from .logging import get_logger

TIMESTAMP_FORMAT = "%Y-%m-%d_%H-%M-%S"
_CHUNK_SIZE = 1024 * 1024


@dataclass(frozen=True)
class BackupSnapshot:
    """Verified byte copy of the store taken before a write."""

    path: Path
    size: int
    sha256: str

    def as_dict(self) -> Dict[str, Any]:
        return {"path": str(self.path), "size": self.size, "sha256": self.sha256}


def file_digest(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def backup_path_for(store_path: Path, backup_dir: Optional[Path] = None, now: Optional[datetime] = None) -> Path:
    """First free ``<name>.<timestamp>[.<n>]`` path for a backup of ``store_path``."""

    directory = backup_dir or store_path.parent
    stamp = (now or datetime.now()).strftime(TIMESTAMP_FORMAT)
    candidate = directory / f"{store_path.name}.{stamp}"
    counter = 1
    while candidate.exists():
        candidate = directory / f"{store_path.name}.{stamp}.{counter}"
        counter += 1
    return candidate


def create_backup(
    store_path: Path,
    backup_dir: Optional[Path] = None,
    now: Optional[datetime] = None,
) -> BackupSnapshot:
    """Copy the store byte for byte and verify the copy.

    Raises:
        BackupFailed: If the copy cannot be written or does not match the store.
    """

    logger = get_logger("transfer.backup")
    target: Optional[Path] = None
    created = False
    try:
        if backup_dir is not None:
            backup_dir.mkdir(parents=True, exist_ok=True)
        target = backup_path_for(store_path, backup_dir, now)
        with store_path.open("rb") as src, target.open("xb") as dst:
            created = True
            shutil.copyfileobj(src, dst, _CHUNK_SIZE)
        shutil.copystat(store_path, target)
        expected_size = store_path.stat().st_size
        expected_digest = file_digest(store_path)
        actual_size = target.stat().st_size
        actual_digest = file_digest(target)
    except OSError as exc:
        if created and target is not None:
            target.unlink(missing_ok=True)
        logger.error(
            "Backup could not be written",
            extra={"store": str(store_path), "backup_path": str(target) if target else None},
        )
        raise BackupFailed(
            f"Backup could not be written: {exc}",
            store=str(store_path),
            backup_path=str(target) if target else None,
        ) from exc

    if actual_size != expected_size or actual_digest != expected_digest:
        target.unlink(missing_ok=True)
        logger.error(
            "Backup does not match the store",
            extra={"store": str(store_path), "backup_path": str(target)},
        )
        raise BackupFailed(
            "Backup copy does not match the store",
            store=str(store_path),
            backup_path=str(target),
            expected_size=expected_size,
            actual_size=actual_size,
        )

    snapshot = BackupSnapshot(path=target, size=actual_size, sha256=actual_digest)
    logger.info("Backup created", extra=snapshot.as_dict())
    return snapshot
