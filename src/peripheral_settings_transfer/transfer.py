"""Pipeline glue: read sessions, planning and full transfer runs."""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from .catalog import BoundSchema, Device, SchemaCatalog
from .coordinator import ApplyResult, TransactionCoordinator
from .errors import SameDevice
from .graph import DeviceGraph, DeviceGraphExtractor
from .rewriter import COPY, ReferenceRewriter, RewritePlan
from .store import open_readonly, raise_translated


class SettingsStore:
    """Read-only session on a settings store bound to a detected schema.

    Use as a context manager::

        with SettingsStore(path) as store:
            devices = store.list_devices()
    """

    def __init__(
        self,
        path: Path,
        catalog: Optional[SchemaCatalog] = None,
        schema_version: Optional[str] = None,
    ) -> None:
        self.path = path
        self.catalog = catalog or SchemaCatalog.builtin()
        self.schema_version = schema_version
        self._conn: Optional[sqlite3.Connection] = None
        self._schema: Optional[BoundSchema] = None

    def __enter__(self) -> "SettingsStore":
        self.open()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def open(self) -> None:
        conn = open_readonly(self.path)
        try:
            self._schema = self.catalog.detect(conn, self.schema_version)
        except sqlite3.DatabaseError as exc:
            conn.close()
            raise_translated(exc, self.path)
        except BaseException:
            conn.close()
            raise
        self._conn = conn

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
            self._schema = None

    @property
    def schema(self) -> BoundSchema:
        if self._schema is None:
            raise RuntimeError("Settings store is not open")
        return self._schema

    def list_devices(self, device_types: Sequence[str] = ()) -> List[Device]:
        return self.schema.resolve_device_table(device_types)

    def extract(self, device_id: str) -> DeviceGraph:
        return DeviceGraphExtractor(self.schema).extract(device_id)

    def plan_transfer(self, source_id: str, target_id: str, mode: str = COPY) -> RewritePlan:
        if source_id == target_id:
            raise SameDevice("Source and target are the same device", device_id=source_id)
        source = self.extract(source_id)
        target = self.extract(target_id)
        return ReferenceRewriter(self.schema).retarget(source, target_id, existing=target, mode=mode)


@dataclass(frozen=True)
class TransferOutcome:
    plan: RewritePlan
    result: Optional[ApplyResult] = None
    dry_run: bool = False

    @property
    def committed(self) -> bool:
        return self.result is not None and self.result.committed

    def as_dict(self) -> Dict[str, Any]:
        data = self.plan.as_dict()
        data["dry_run"] = self.dry_run
        data["committed"] = self.committed
        if self.result is not None:
            data["result"] = self.result.as_dict()
        return data


def transfer_assignments(
    store_path: Path,
    source_id: str,
    target_id: str,
    *,
    catalog: Optional[SchemaCatalog] = None,
    schema_version: Optional[str] = None,
    backup_dir: Optional[Path] = None,
    mode: str = COPY,
    dry_run: bool = False,
) -> TransferOutcome:
    """Plan and, unless ``dry_run``, apply the transfer of one device's configuration."""

    catalog = catalog or SchemaCatalog.builtin()
    with SettingsStore(store_path, catalog, schema_version) as store:
        plan = store.plan_transfer(source_id, target_id, mode)
    if dry_run:
        return TransferOutcome(plan=plan, dry_run=True)
    coordinator = TransactionCoordinator(
        store_path,
        catalog=catalog,
        backup_dir=backup_dir,
        schema_version=schema_version,
    )
    return TransferOutcome(plan=plan, result=coordinator.apply(plan))
