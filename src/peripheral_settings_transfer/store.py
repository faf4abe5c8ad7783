"""SQLite connection helpers for the vendor settings store."""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Iterable, NoReturn

from .errors import SchemaMismatch, StoreLocked
from .logging import get_logger

# Fail fast instead of waiting on the vendor application's lock.
LOCK_TIMEOUT_SECONDS = 0.0

_CORRUPTION_MARKERS = ("malformed", "corrupt", "file is not a database", "file is encrypted")
_LOCK_MARKERS = ("locked", "busy")


def quote_identifier(name: str) -> str:
    """Quote a table or column name for use in SQL text."""

    return '"' + name.replace('"', '""') + '"'


def column_list(names: Iterable[str]) -> str:
    return ", ".join(quote_identifier(name) for name in names)


def _configure_connection(conn: sqlite3.Connection) -> None:
    conn.row_factory = sqlite3.Row


def open_readonly(db_path: Path) -> sqlite3.Connection:
    """Open the store for inspection; the connection cannot write."""

    if not db_path.exists():
        raise FileNotFoundError(f"Settings store not found: {db_path}")
    uri = f"{db_path.resolve().as_uri()}?mode=ro"
    conn = sqlite3.connect(uri, uri=True, timeout=LOCK_TIMEOUT_SECONDS)
    _configure_connection(conn)
    return conn


def open_writer(db_path: Path) -> sqlite3.Connection:
    """Open the store with manual transaction control for a single writer."""

    if not db_path.exists():
        raise FileNotFoundError(f"Settings store not found: {db_path}")
    conn = sqlite3.connect(str(db_path), timeout=LOCK_TIMEOUT_SECONDS, isolation_level=None)
    _configure_connection(conn)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def journal_mode(conn: sqlite3.Connection, db_path: Path) -> str:
    try:
        row = conn.execute("PRAGMA journal_mode").fetchone()
    except sqlite3.OperationalError as exc:
        raise_translated(exc, db_path)
    return str(row[0]).lower() if row else ""


def checkpoint_wal(conn: sqlite3.Connection, db_path: Path) -> None:
    """Fold the write-ahead log into the main file so a byte copy is complete."""

    try:
        row = conn.execute("PRAGMA wal_checkpoint(TRUNCATE)").fetchone()
    except sqlite3.OperationalError as exc:
        raise_translated(exc, db_path)
    if row is not None and int(row[0]) != 0:
        raise StoreLocked(
            "Write-ahead log is in use by another process",
            store=str(db_path),
        )


def acquire_exclusive(conn: sqlite3.Connection, db_path: Path) -> None:
    """Take the engine's exclusive lock or fail immediately."""

    logger = get_logger("transfer.coordinator")
    try:
        conn.execute("BEGIN EXCLUSIVE")
    except sqlite3.OperationalError as exc:
        raise_translated(exc, db_path)
    logger.debug("Exclusive lock acquired", extra={"store": str(db_path)})


def translate_database_error(exc: sqlite3.Error, db_path: Path) -> Exception:
    """Map engine errors that have a named kind; return others unchanged."""

    message = str(exc).lower()
    if any(key in message for key in _LOCK_MARKERS):
        return StoreLocked(
            "Store is locked by another process; close the vendor application and retry",
            store=str(db_path),
            engine_error=str(exc),
        )
    if any(key in message for key in _CORRUPTION_MARKERS):
        return SchemaMismatch(
            "Store is not a readable settings database",
            store=str(db_path),
            engine_error=str(exc),
        )
    return exc


def raise_translated(exc: sqlite3.Error, db_path: Path) -> NoReturn:
    """Re-raise ``exc`` as its named kind, or unchanged when it has none."""

    mapped = translate_database_error(exc, db_path)
    if mapped is exc:
        raise exc
    raise mapped from exc
