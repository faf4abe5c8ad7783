"""Declarative schema catalog for the vendor settings store.

The vendor versions its schema informally, so the catalog is a list of
schema versions, each describing where device identifiers live: the device
table, the optional model table that supplies display names, and every table
owning per-device configuration rows together with the blob columns whose
payloads embed identifiers. New vendor versions are new catalog entries.
"""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from .codec import get_codec, get_supported_codecs
from .errors import SchemaMismatch
from .logging import get_logger
from .store import quote_identifier


@dataclass(frozen=True)
class BlobColumn:
    """Blob column whose payload is inspected with a registered codec."""

    name: str
    codec: str


@dataclass(frozen=True)
class ParentLink:
    """Reference from a child row to the key of its owning parent row."""

    table: str
    column: str


@dataclass(frozen=True)
class TableDescriptor:
    """Table holding configuration rows owned by a device."""

    name: str
    device_column: Optional[str]
    identity_columns: Tuple[str, ...]
    key_column: Optional[str]
    blob_columns: Tuple[BlobColumn, ...]
    parent: Optional[ParentLink] = None

    @property
    def is_child(self) -> bool:
        return self.parent is not None

    @property
    def required_columns(self) -> Tuple[str, ...]:
        columns: List[str] = []
        for name in (
            self.device_column,
            self.key_column,
            self.parent.column if self.parent else None,
            *self.identity_columns,
            *(blob.name for blob in self.blob_columns),
        ):
            if name and name not in columns:
                columns.append(name)
        return tuple(columns)


@dataclass(frozen=True)
class DeviceTable:
    """Table listing paired devices."""

    name: str
    id_column: str
    model_column: Optional[str] = None
    type_column: Optional[str] = None


@dataclass(frozen=True)
class ModelTable:
    """Table mapping model identifiers to human-readable names."""

    name: str
    model_column: str
    name_column: str


@dataclass(frozen=True)
class SchemaVersion:
    """One known layout of the vendor settings store."""

    version: str
    device_table: DeviceTable
    model_table: Optional[ModelTable]
    tables: Tuple[TableDescriptor, ...]

    def table(self, name: str) -> TableDescriptor:
        for descriptor in self.tables:
            if descriptor.name == name:
                return descriptor
        raise KeyError(name)

    def children_of(self, name: str) -> Tuple[TableDescriptor, ...]:
        return tuple(
            descriptor
            for descriptor in self.tables
            if descriptor.parent is not None and descriptor.parent.table == name
        )

    def requirements(self) -> Dict[str, Tuple[str, ...]]:
        """Tables and columns that must exist for this version to apply."""

        required: Dict[str, Tuple[str, ...]] = {}
        device = self.device_table
        required[device.name] = tuple(
            column
            for column in (device.id_column, device.model_column, device.type_column)
            if column
        )
        if self.model_table is not None:
            required[self.model_table.name] = (
                self.model_table.model_column,
                self.model_table.name_column,
            )
        for descriptor in self.tables:
            required[descriptor.name] = descriptor.required_columns
        return required


@dataclass(frozen=True)
class Device:
    """Paired device as listed in the device table."""

    identifier: str
    display_name: str
    model: Optional[str] = None
    device_type: Optional[str] = None


BUILTIN_CATALOG: Mapping[str, Any] = {
    "schema": 1,
    "versions": [
        {
            "version": "2",
            "device_table": {
                "table": "devices",
                "id_column": "slot_prefix",
                "model_column": "device_model",
                "type_column": "device_type",
            },
            "model_table": {
                "table": "device_models",
                "model_column": "model_id",
                "name_column": "device_name",
            },
            "tables": [
                {
                    "table": "assignments",
                    "device_column": "slot_prefix",
                    "identity": ["profile", "control"],
                    "key_column": "id",
                    "blobs": [{"column": "payload", "codec": "tlv"}],
                },
                {
                    "table": "assignment_steps",
                    "parent": {"table": "assignments", "column": "assignment_id"},
                    "key_column": "id",
                    "blobs": [{"column": "step", "codec": "tlv"}],
                },
                {
                    "table": "app_profiles",
                    "device_column": "slot_prefix",
                    "identity": ["application"],
                    "key_column": "id",
                    "blobs": [{"column": "settings", "codec": "json-slots"}],
                },
                {
                    "table": "pointer_settings",
                    "device_column": "slot_prefix",
                    "identity": ["profile"],
                    "key_column": "id",
                    "blobs": [{"column": "gesture", "codec": "tlv"}],
                },
            ],
        },
        {
            "version": "1",
            "device_table": {
                "table": "devices",
                "id_column": "device_id",
                "model_column": "model",
                "type_column": "kind",
            },
            "model_table": None,
            "tables": [
                {
                    "table": "button_remaps",
                    "device_column": "device_id",
                    "identity": ["button"],
                    "key_column": "id",
                    "blobs": [{"column": "action", "codec": "tlv"}],
                },
                {
                    "table": "app_overrides",
                    "device_column": "device_id",
                    "identity": ["app"],
                    "key_column": "id",
                    "blobs": [{"column": "data", "codec": "json-slots"}],
                },
            ],
        },
    ],
}


def _require_str(raw: Mapping[str, Any], key: str, where: str) -> str:
    value = raw.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{where}: '{key}' must be a non-empty string.")
    return value


def _optional_str(raw: Mapping[str, Any], key: str, where: str) -> Optional[str]:
    value = raw.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{where}: '{key}' must be a non-empty string when set.")
    return value


def _str_list(value: Any, where: str) -> Tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, Sequence) or isinstance(value, (str, bytes, bytearray)):
        raise ValueError(f"{where} must be a list of column names.")
    result = []
    for item in value:
        if not isinstance(item, str) or not item.strip():
            raise ValueError(f"{where} must contain non-empty strings.")
        result.append(item)
    return tuple(result)


def _parse_table(raw: Any, version: str) -> TableDescriptor:
    if not isinstance(raw, Mapping):
        raise ValueError(f"Version {version}: table entries must be objects.")
    name = _require_str(raw, "table", f"Version {version} table")
    where = f"Version {version} table {name}"
    device_column = _optional_str(raw, "device_column", where)
    parent: Optional[ParentLink] = None
    if raw.get("parent") is not None:
        parent_raw = raw["parent"]
        if not isinstance(parent_raw, Mapping):
            raise ValueError(f"{where}: 'parent' must be an object.")
        parent = ParentLink(
            table=_require_str(parent_raw, "table", f"{where} parent"),
            column=_require_str(parent_raw, "column", f"{where} parent"),
        )
    if (device_column is None) == (parent is None):
        raise ValueError(f"{where}: declare exactly one of 'device_column' or 'parent'.")

    blobs: List[BlobColumn] = []
    raw_blobs = raw.get("blobs") or []
    if not isinstance(raw_blobs, Sequence) or isinstance(raw_blobs, (str, bytes)):
        raise ValueError(f"{where}: 'blobs' must be a list.")
    for blob in raw_blobs:
        if not isinstance(blob, Mapping):
            raise ValueError(f"{where}: blob entries must be objects.")
        codec = _require_str(blob, "codec", f"{where} blob")
        if codec not in get_supported_codecs():
            raise ValueError(
                f"{where}: unknown codec '{codec}'; supported: {', '.join(get_supported_codecs())}."
            )
        blobs.append(BlobColumn(name=_require_str(blob, "column", f"{where} blob"), codec=codec))

    return TableDescriptor(
        name=name,
        device_column=device_column,
        identity_columns=_str_list(raw.get("identity"), f"{where} identity"),
        key_column=_optional_str(raw, "key_column", where),
        blob_columns=tuple(blobs),
        parent=parent,
    )


def _parse_version(raw: Any) -> SchemaVersion:
    if not isinstance(raw, Mapping):
        raise ValueError("Catalog versions must be objects.")
    version = str(raw.get("version") or "").strip()
    if not version:
        raise ValueError("Catalog versions must include a 'version'.")

    device_raw = raw.get("device_table")
    if not isinstance(device_raw, Mapping):
        raise ValueError(f"Version {version}: 'device_table' must be an object.")
    where = f"Version {version} device_table"
    device_table = DeviceTable(
        name=_require_str(device_raw, "table", where),
        id_column=_require_str(device_raw, "id_column", where),
        model_column=_optional_str(device_raw, "model_column", where),
        type_column=_optional_str(device_raw, "type_column", where),
    )

    model_table: Optional[ModelTable] = None
    model_raw = raw.get("model_table")
    if model_raw is not None:
        if not isinstance(model_raw, Mapping):
            raise ValueError(f"Version {version}: 'model_table' must be an object.")
        where = f"Version {version} model_table"
        model_table = ModelTable(
            name=_require_str(model_raw, "table", where),
            model_column=_require_str(model_raw, "model_column", where),
            name_column=_require_str(model_raw, "name_column", where),
        )

    tables_raw = raw.get("tables")
    if not isinstance(tables_raw, Sequence) or isinstance(tables_raw, (str, bytes)):
        raise ValueError(f"Version {version}: 'tables' must be a list.")
    tables = tuple(_parse_table(entry, version) for entry in tables_raw)

    names = [descriptor.name for descriptor in tables]
    if len(set(names)) != len(names):
        raise ValueError(f"Version {version}: table names must be unique.")
    by_name = {descriptor.name: descriptor for descriptor in tables}
    for index, descriptor in enumerate(tables):
        if descriptor.parent is None:
            continue
        parent = by_name.get(descriptor.parent.table)
        if parent is None or names.index(parent.name) > index:
            raise ValueError(
                f"Version {version}: parent '{descriptor.parent.table}' of "
                f"'{descriptor.name}' must be declared before it."
            )
        if parent.parent is not None:
            raise ValueError(
                f"Version {version}: '{descriptor.name}' must hang off a directly owned table."
            )
        if parent.key_column is None:
            raise ValueError(
                f"Version {version}: parent '{parent.name}' must declare a key_column."
            )
    return SchemaVersion(
        version=version,
        device_table=device_table,
        model_table=model_table,
        tables=tables,
    )


def _display_name(identifier: str, model: Optional[str], names: Mapping[str, str]) -> str:
    if not model:
        return identifier
    name = names.get(model)
    # Model ids sometimes carry a variant suffix ('6b023_ext2') that the
    # model table lists without ('6b023').
    if name is None and "_" in model:
        name = names.get(model.split("_", 1)[0])
    return name or model


def _table_columns(conn: sqlite3.Connection, table: str) -> Dict[str, sqlite3.Row]:
    rows = conn.execute(f"PRAGMA table_info({quote_identifier(table)})").fetchall()
    return {row[1]: row for row in rows}


def _missing_requirements(conn: sqlite3.Connection, version: SchemaVersion) -> List[str]:
    missing: List[str] = []
    for table, columns in version.requirements().items():
        existing = _table_columns(conn, table)
        if not existing:
            missing.append(table)
            continue
        missing.extend(f"{table}.{column}" for column in columns if column not in existing)
    for descriptor in version.tables:
        if descriptor.key_column is None:
            continue
        existing = _table_columns(conn, descriptor.name)
        if descriptor.key_column not in existing:
            continue
        primary = [row for row in existing.values() if row[5]]
        key_row = existing[descriptor.key_column]
        if len(primary) != 1 or not key_row[5] or str(key_row[2]).upper() != "INTEGER":
            missing.append(f"{descriptor.name}.{descriptor.key_column} (INTEGER PRIMARY KEY)")
    return missing


class SchemaCatalog:
    """Ordered collection of known schema versions, newest first."""

    def __init__(self, versions: Sequence[SchemaVersion]) -> None:
        seen = set()
        for entry in versions:
            if entry.version in seen:
                raise ValueError(f"Duplicate catalog version: {entry.version}")
            seen.add(entry.version)
        self._versions: Tuple[SchemaVersion, ...] = tuple(versions)
        self.logger = get_logger("transfer.catalog")

    @classmethod
    def from_path(cls, path: Path) -> "SchemaCatalog":
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
        return cls.from_data(data)

    @classmethod
    def from_data(cls, data: Any) -> "SchemaCatalog":
        entries: Any = data
        if isinstance(data, Mapping):
            entries = data.get("versions")
        if not isinstance(entries, Sequence) or isinstance(entries, (str, bytes, bytearray)):
            raise ValueError("Schema catalog must contain a list of versions.")
        return cls([_parse_version(entry) for entry in entries])

    @classmethod
    def builtin(cls) -> "SchemaCatalog":
        return cls.from_data(BUILTIN_CATALOG)

    @classmethod
    def load(cls, extra_path: Optional[Path] = None) -> "SchemaCatalog":
        """Built-in catalog, extended or overridden by versions from a file."""

        catalog = cls.builtin()
        if extra_path is None:
            return catalog
        return catalog.extended(cls.from_path(extra_path))

    def extended(self, other: "SchemaCatalog") -> "SchemaCatalog":
        replaced = {entry.version for entry in other.versions}
        kept = [entry for entry in self._versions if entry.version not in replaced]
        return SchemaCatalog([*other.versions, *kept])

    @property
    def versions(self) -> Tuple[SchemaVersion, ...]:
        return self._versions

    def version(self, version: str) -> SchemaVersion:
        for entry in self._versions:
            if entry.version == version:
                return entry
        raise ValueError(
            f"Unknown schema version: {version}. "
            f"Known versions: {', '.join(entry.version for entry in self._versions)}"
        )

    def detect(self, conn: sqlite3.Connection, version: Optional[str] = None) -> "BoundSchema":
        """Bind the first version whose tables and columns all exist in the store."""

        candidates = [self.version(version)] if version is not None else list(self._versions)
        closest: Optional[Tuple[SchemaVersion, List[str]]] = None
        for candidate in candidates:
            missing = _missing_requirements(conn, candidate)
            if not missing:
                self.logger.info("Schema version detected", extra={"version": candidate.version})
                return BoundSchema(conn, candidate)
            self.logger.debug(
                "Schema version does not match",
                extra={"version": candidate.version, "missing": missing},
            )
            if closest is None or len(missing) < len(closest[1]):
                closest = (candidate, missing)
        if closest is None:
            raise SchemaMismatch("Schema catalog is empty")
        raise SchemaMismatch(
            "Store does not match any known schema version",
            closest_version=closest[0].version,
            missing=", ".join(closest[1]),
        )


class BoundSchema:
    """A schema version validated against a live connection."""

    def __init__(self, conn: sqlite3.Connection, version: SchemaVersion) -> None:
        self.conn = conn
        self.version = version

    def _require_columns(self, table: str, columns: Sequence[Optional[str]]) -> None:
        existing = _table_columns(self.conn, table)
        if not existing:
            raise SchemaMismatch(
                "Expected table is missing", table=table, version=self.version.version
            )
        absent = [column for column in columns if column and column not in existing]
        if absent:
            raise SchemaMismatch(
                "Expected columns are missing",
                table=table,
                columns=", ".join(absent),
                version=self.version.version,
            )

    def _model_names(self) -> Dict[str, str]:
        model_table = self.version.model_table
        if model_table is None:
            return {}
        self._require_columns(model_table.name, (model_table.model_column, model_table.name_column))
        rows = self.conn.execute(
            f"SELECT {quote_identifier(model_table.model_column)}, "
            f"{quote_identifier(model_table.name_column)} "
            f"FROM {quote_identifier(model_table.name)}"
        ).fetchall()
        return {str(row[0]): str(row[1]) for row in rows if row[0] is not None and row[1]}

    def resolve_device_table(self, device_types: Sequence[str] = ()) -> List[Device]:
        """Known devices ordered by identifier, one entry per identifier."""

        table = self.version.device_table
        self._require_columns(table.name, (table.id_column, table.model_column, table.type_column))
        model_expr = quote_identifier(table.model_column) if table.model_column else "NULL"
        type_expr = quote_identifier(table.type_column) if table.type_column else "NULL"
        rows = self.conn.execute(
            f"SELECT {quote_identifier(table.id_column)}, {model_expr}, {type_expr} "
            f"FROM {quote_identifier(table.name)} "
            f"ORDER BY {quote_identifier(table.id_column)}, rowid"
        ).fetchall()
        names = self._model_names()
        wanted = {value.upper() for value in device_types}
        devices: Dict[str, Device] = {}
        for row in rows:
            if row[0] is None:
                continue
            identifier = str(row[0])
            # The vendor lists some devices more than once; the first row wins.
            if identifier in devices:
                continue
            device_type = str(row[2]) if row[2] is not None else None
            if wanted and (device_type or "").upper() not in wanted:
                continue
            model = str(row[1]) if row[1] is not None else None
            devices[identifier] = Device(
                identifier=identifier,
                display_name=_display_name(identifier, model, names),
                model=model,
                device_type=device_type,
            )
        return list(devices.values())

    def tables_owned_by_device(self) -> Tuple[TableDescriptor, ...]:
        """Owned table descriptors, parents before their children."""

        for descriptor in self.version.tables:
            self._require_columns(descriptor.name, descriptor.required_columns)
        return self.version.tables

    def has_device(self, device_id: str) -> bool:
        table = self.version.device_table
        self._require_columns(table.name, (table.id_column,))
        row = self.conn.execute(
            f"SELECT 1 FROM {quote_identifier(table.name)} "
            f"WHERE {quote_identifier(table.id_column)} = ? LIMIT 1",
            (device_id,),
        ).fetchone()
        return row is not None

    def codec_for(self, table: str, column: str):
        descriptor = self.version.table(table)
        for blob in descriptor.blob_columns:
            if blob.name == column:
                return get_codec(blob.codec)
        raise KeyError(f"{table}.{column}")
