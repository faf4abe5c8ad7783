"""Apply rewrite plans to the settings store inside one guarded transaction.

A run moves through ``Idle -> BackingUp -> Transacting -> Verifying`` and ends
in ``Committed`` or ``RolledBack``. The engine's exclusive lock is held from
before the backup until the transaction ends, so the backup and the write see
the same file. Nothing about an in-flight run is persisted: if the process is
killed mid-transaction, SQLite's own journal rollback and the backup file are
the only recovery paths.
"""

from __future__ import annotations

import signal
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Tuple

from .backup import BackupSnapshot, create_backup
from .catalog import BoundSchema, SchemaCatalog
from .errors import DeviceNotFound, MigrationError, VerificationFailed, WriteFailed
from .graph import DeviceGraph, DeviceGraphExtractor
from .logging import get_logger
from .rewriter import MOVE, DeleteRow, InsertRow, Operation, RewritePlan, UpdateRow
from .store import (
    acquire_exclusive,
    checkpoint_wal,
    column_list,
    journal_mode,
    open_writer,
    quote_identifier,
)


class State(Enum):
    IDLE = "Idle"
    BACKING_UP = "BackingUp"
    TRANSACTING = "Transacting"
    VERIFYING = "Verifying"
    COMMITTED = "Committed"
    ROLLED_BACK = "RolledBack"


_IN_FLIGHT = (State.BACKING_UP, State.TRANSACTING, State.VERIFYING)


@dataclass(frozen=True)
class ApplyResult:
    """Outcome of applying a plan."""

    plan: RewritePlan
    state: State
    backup: Optional[BackupSnapshot] = None
    counts: Optional[Mapping[str, int]] = None

    @property
    def committed(self) -> bool:
        return self.state is State.COMMITTED

    def as_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "backup": self.backup.as_dict() if self.backup else None,
            "counts": dict(self.counts) if self.counts is not None else None,
        }


@contextmanager
def _deferred_interrupts(logger) -> Iterator[None]:
    """Ignore SIGINT until the block exits; only possible on the main thread."""

    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _ignore(signum, frame) -> None:
        logger.warning(
            "Interrupt ignored while the store transaction is in flight",
            extra={"signal": signal.Signals(signum).name},
        )

    previous = signal.signal(signal.SIGINT, _ignore)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


class TransactionCoordinator:
    """Back up the store, apply a plan, verify it and commit or roll back."""

    def __init__(
        self,
        store_path: Path,
        catalog: Optional[SchemaCatalog] = None,
        backup_dir: Optional[Path] = None,
        schema_version: Optional[str] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.store_path = store_path
        self.catalog = catalog or SchemaCatalog.builtin()
        self.backup_dir = backup_dir
        self.schema_version = schema_version
        self.clock = clock
        self.logger = get_logger("transfer.coordinator")
        self._state = State.IDLE
        self._history: List[State] = [State.IDLE]

    @property
    def state(self) -> State:
        return self._state

    @property
    def history(self) -> Tuple[State, ...]:
        return tuple(self._history)

    def _transition(self, state: State) -> None:
        self.logger.info(
            "State transition",
            extra={"from_state": self._state.value, "to_state": state.value},
        )
        self._state = state
        self._history.append(state)

    def apply(self, plan: RewritePlan) -> ApplyResult:
        """Apply ``plan`` atomically.

        Raises:
            StoreLocked: If the exclusive lock cannot be taken immediately.
            SchemaMismatch: If the store no longer matches a catalog version.
            VerificationFailed: If the store changed since planning, or the
                written graph does not match the plan.
            BackupFailed: If the backup cannot be written and verified.
            WriteFailed: If the engine rejects a write or the commit.
        """

        if plan.is_empty():
            self.logger.info(
                "Nothing to apply; target already matches the source",
                extra={"source": plan.source_id, "target": plan.target_id},
            )
            return ApplyResult(plan=plan, state=self._state, counts=plan.expected_counts)

        conn = open_writer(self.store_path)
        snapshot: Optional[BackupSnapshot] = None
        try:
            if journal_mode(conn, self.store_path) == "wal":
                checkpoint_wal(conn, self.store_path)
            acquire_exclusive(conn, self.store_path)
            try:
                schema = self.catalog.detect(conn, self.schema_version)
                self._check_unchanged(schema, plan)
                with _deferred_interrupts(self.logger):
                    self._transition(State.BACKING_UP)
                    snapshot = create_backup(self.store_path, self.backup_dir, self.clock())
                    self._transition(State.TRANSACTING)
                    written = self._execute(conn, plan)
                    self._transition(State.VERIFYING)
                    counts = self._verify(schema, plan, written)
                    self._commit(conn)
                    self._transition(State.COMMITTED)
            except BaseException as exc:
                self._rollback(conn)
                if self._state in _IN_FLIGHT:
                    self._transition(State.ROLLED_BACK)
                if isinstance(exc, MigrationError):
                    exc.with_context(backup_path=str(snapshot.path) if snapshot else None)
                    self.logger.error(
                        "Transfer aborted",
                        extra={"error": exc.kind, "detail": str(exc)},
                    )
                raise
        finally:
            conn.close()

        self.logger.info(
            "Transfer committed",
            extra={
                "source": plan.source_id,
                "target": plan.target_id,
                "backup_path": str(snapshot.path),
                **plan.summary(),
            },
        )
        return ApplyResult(plan=plan, state=self._state, backup=snapshot, counts=counts)

    def _check_unchanged(self, schema: BoundSchema, plan: RewritePlan) -> None:
        extractor = DeviceGraphExtractor(schema)
        for role, device_id, expected in (
            ("source", plan.source_id, plan.source_digest),
            ("target", plan.target_id, plan.target_digest),
        ):
            if extractor.extract(device_id).digest() != expected:
                raise VerificationFailed(
                    "Store changed since the plan was built; re-run the transfer",
                    role=role,
                    device_id=device_id,
                )

    def _execute(self, conn: sqlite3.Connection, plan: RewritePlan) -> List[Tuple[str, int]]:
        keys: Dict[str, int] = {}
        written: List[Tuple[str, int]] = []
        for op in plan.operations:
            try:
                rowid = self._execute_one(conn, op, keys)
            except sqlite3.Error as exc:
                raise WriteFailed(
                    f"Store rejected a write: {exc}",
                    operation=op.kind,
                    table=op.table,
                ) from exc
            if rowid is not None:
                written.append((op.table, rowid))
        self.logger.info(
            "Plan operations applied",
            extra={"target": plan.target_id, **plan.summary()},
        )
        return written

    def _execute_one(
        self, conn: sqlite3.Connection, op: Operation, keys: Dict[str, int]
    ) -> Optional[int]:
        table = quote_identifier(op.table)
        if isinstance(op, DeleteRow):
            cursor = conn.execute(f"DELETE FROM {table} WHERE rowid = ?", (op.rowid,))
            if cursor.rowcount != 1:
                raise WriteFailed("Row to delete is missing", table=op.table, rowid=op.rowid)
            return None
        if isinstance(op, InsertRow):
            values = dict(op.values)
            if op.parent_column is not None and op.parent_ref is not None:
                values[op.parent_column] = keys[op.parent_ref]
            placeholders = ", ".join("?" for _ in values)
            cursor = conn.execute(
                f"INSERT INTO {table} ({column_list(values)}) VALUES ({placeholders})",
                tuple(values.values()),
            )
            keys[op.ref] = cursor.lastrowid
            return cursor.lastrowid
        if isinstance(op, UpdateRow):
            assignments = ", ".join(f"{quote_identifier(name)} = ?" for name, _ in op.values)
            cursor = conn.execute(
                f"UPDATE {table} SET {assignments} WHERE rowid = ?",
                (*(value for _, value in op.values), op.rowid),
            )
            if cursor.rowcount != 1:
                raise WriteFailed("Row to update is missing", table=op.table, rowid=op.rowid)
            return op.rowid
        raise TypeError(f"Unsupported plan operation: {op!r}")

    def _verify(
        self, schema: BoundSchema, plan: RewritePlan, written: List[Tuple[str, int]]
    ) -> Dict[str, int]:
        extractor = DeviceGraphExtractor(schema)
        target = extractor.extract(plan.target_id)
        counts = target.counts()
        for table, expected in plan.expected_counts.items():
            actual = counts.get(table, 0)
            if actual != expected:
                raise VerificationFailed(
                    "Row count after write does not match the plan",
                    table=table,
                    expected=expected,
                    actual=actual,
                )
        for table, rowid in written:
            row = target.row(table, rowid)
            if row is None:
                raise VerificationFailed(
                    "Written row is not owned by the target device",
                    table=table,
                    rowid=rowid,
                    target_id=plan.target_id,
                )
            stale = [occ for occ in row.occurrences if occ.identifier == plan.source_id]
            if stale:
                raise VerificationFailed(
                    "Written row still references the source device",
                    table=table,
                    rowid=rowid,
                    column=stale[0].column,
                    offset=stale[0].offset,
                    source_id=plan.source_id,
                )
        if plan.mode == MOVE:
            remaining = self._remaining_source(extractor, plan.source_id)
            if not remaining.is_empty():
                raise VerificationFailed(
                    "Source device still owns rows after a move",
                    source_id=plan.source_id,
                    rows=len(remaining.rows),
                )
        self.logger.info("Write verified", extra={"target": plan.target_id, "counts": counts})
        return counts

    @staticmethod
    def _remaining_source(extractor: DeviceGraphExtractor, source_id: str) -> DeviceGraph:
        try:
            return extractor.extract(source_id)
        except DeviceNotFound:
            return DeviceGraph(device_id=source_id, rows=(), tables=(), registered=False)

    def _commit(self, conn: sqlite3.Connection) -> None:
        try:
            conn.execute("COMMIT")
        except sqlite3.Error as exc:
            raise WriteFailed(f"Commit failed: {exc}", store=str(self.store_path)) from exc

    def _rollback(self, conn: sqlite3.Connection) -> None:
        if not conn.in_transaction:
            return
        try:
            conn.execute("ROLLBACK")
        except sqlite3.Error:
            self.logger.exception("Rollback failed", extra={"store": str(self.store_path)})
            return
        self.logger.info("Transaction rolled back", extra={"store": str(self.store_path)})
