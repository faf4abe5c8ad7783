"""Device graphs and their extraction from the settings store."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

from .catalog import BoundSchema, TableDescriptor
from .codec import get_codec
from .errors import DeviceNotFound, MigrationError, PayloadFormatError
from .logging import get_logger
from .store import quote_identifier

ROWID_ALIAS = "__rowid__"

Slot = Tuple[str, Tuple[Any, ...]]


@dataclass(frozen=True)
class EmbeddedReference:
    """Device identifier found inside a blob column of one row."""

    table: str
    rowid: int
    column: str
    offset: int
    length: int
    identifier: str


@dataclass(frozen=True)
class ConfigRow:
    """One configuration row owned by a device, directly or via its parent."""

    table: str
    rowid: int
    values: Tuple[Tuple[str, Any], ...]
    slot: Slot
    parent_table: Optional[str] = None
    parent_rowid: Optional[int] = None
    occurrences: Tuple[EmbeddedReference, ...] = ()

    def value(self, column: str) -> Any:
        for name, value in self.values:
            if name == column:
                return value
        raise KeyError(column)

    def as_mapping(self) -> Dict[str, Any]:
        return dict(self.values)

    def occurrences_in(self, column: str) -> Tuple[EmbeddedReference, ...]:
        return tuple(occ for occ in self.occurrences if occ.column == column)


def _plain(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    return value


@dataclass(frozen=True)
class DeviceGraph:
    """Every configuration row and embedded reference belonging to one device."""

    device_id: str
    rows: Tuple[ConfigRow, ...]
    tables: Tuple[str, ...]
    registered: bool = True

    def rows_for(self, table: str) -> Tuple[ConfigRow, ...]:
        return tuple(row for row in self.rows if row.table == table)

    def row(self, table: str, rowid: int) -> Optional[ConfigRow]:
        for row in self.rows:
            if row.table == table and row.rowid == rowid:
                return row
        return None

    def children_of(self, row: ConfigRow) -> Tuple[ConfigRow, ...]:
        return tuple(
            child
            for child in self.rows
            if child.parent_table == row.table and child.parent_rowid == row.rowid
        )

    def counts(self) -> Dict[str, int]:
        counts = {table: 0 for table in self.tables}
        for row in self.rows:
            counts[row.table] = counts.get(row.table, 0) + 1
        return counts

    def references_to(self, identifier: str) -> Tuple[EmbeddedReference, ...]:
        return tuple(
            occ for row in self.rows for occ in row.occurrences if occ.identifier == identifier
        )

    @property
    def embedded_references(self) -> Tuple[EmbeddedReference, ...]:
        return self.references_to(self.device_id)

    def is_empty(self) -> bool:
        return not self.rows

    def as_dict(self) -> Dict[str, Any]:
        return {
            "device_id": self.device_id,
            "registered": self.registered,
            "counts": self.counts(),
            "rows": [
                {
                    "table": row.table,
                    "rowid": row.rowid,
                    "parent": [row.parent_table, row.parent_rowid] if row.parent_table else None,
                    "slot": [_plain(value) for value in row.slot[1]],
                    "values": {name: _plain(value) for name, value in row.values},
                    "references": [
                        {
                            "column": occ.column,
                            "offset": occ.offset,
                            "length": occ.length,
                            "identifier": occ.identifier,
                        }
                        for occ in row.occurrences
                    ],
                }
                for row in self.rows
            ],
        }

    def digest(self) -> str:
        """Stable content hash, used to detect changes between planning and apply."""

        content = {"device_id": self.device_id, "rows": self.as_dict()["rows"]}
        encoded = json.dumps(content, sort_keys=True, default=str).encode("utf-8")
        return hashlib.sha256(encoded).hexdigest()


def blob_bytes(value: Any) -> Optional[bytes]:
    """Bytes of a blob column value; TEXT payloads are taken as UTF-8."""

    if value is None:
        return None
    if isinstance(value, str):
        return value.encode("utf-8")
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    raise PayloadFormatError("Blob column holds a non-binary value", value_type=type(value).__name__)


class DeviceGraphExtractor:
    """Assemble the device graph of an identifier from a bound schema."""

    def __init__(self, schema: BoundSchema) -> None:
        self.schema = schema
        self.logger = get_logger("transfer.extract")

    def extract(self, device_id: str) -> DeviceGraph:
        descriptors = self.schema.tables_owned_by_device()
        selected: Dict[str, List[ConfigRow]] = {}
        rows: List[ConfigRow] = []
        for descriptor in descriptors:
            if descriptor.parent is None:
                table_rows = list(self._select_owned(descriptor, device_id))
            else:
                parent = self.schema.version.table(descriptor.parent.table)
                table_rows = []
                for parent_row in selected.get(parent.name, []):
                    table_rows.extend(self._select_children(descriptor, parent, parent_row))
            selected[descriptor.name] = table_rows
            rows.extend(table_rows)
            self.logger.debug(
                "Rows selected",
                extra={"device_id": device_id, "table": descriptor.name, "rows": len(table_rows)},
            )

        registered = self.schema.has_device(device_id)
        if not rows and not registered:
            raise DeviceNotFound(
                "Device owns no rows and is not listed in the device table",
                device_id=device_id,
                device_table=self.schema.version.device_table.name,
            )
        graph = DeviceGraph(
            device_id=device_id,
            rows=tuple(rows),
            tables=tuple(descriptor.name for descriptor in descriptors),
            registered=registered,
        )
        self.logger.info(
            "Device graph extracted",
            extra={
                "device_id": device_id,
                "rows": len(graph.rows),
                "embedded_references": len(graph.embedded_references),
            },
        )
        return graph

    def _select_owned(self, descriptor: TableDescriptor, device_id: str) -> Iterator[ConfigRow]:
        assert descriptor.device_column is not None
        cursor = self.schema.conn.execute(
            f"SELECT rowid AS {ROWID_ALIAS}, * FROM {quote_identifier(descriptor.name)} "
            f"WHERE {quote_identifier(descriptor.device_column)} = ? ORDER BY rowid",
            (device_id,),
        )
        for raw in cursor.fetchall():
            values = _row_values(raw)
            slot = (descriptor.name, tuple(values[column] for column in descriptor.identity_columns))
            yield self._build_row(descriptor, raw[ROWID_ALIAS], values, slot, None)

    def _select_children(
        self, descriptor: TableDescriptor, parent: TableDescriptor, parent_row: ConfigRow
    ) -> Iterator[ConfigRow]:
        assert descriptor.parent is not None and parent.key_column is not None
        cursor = self.schema.conn.execute(
            f"SELECT rowid AS {ROWID_ALIAS}, * FROM {quote_identifier(descriptor.name)} "
            f"WHERE {quote_identifier(descriptor.parent.column)} = ? ORDER BY rowid",
            (parent_row.value(parent.key_column),),
        )
        for raw in cursor.fetchall():
            yield self._build_row(
                descriptor, raw[ROWID_ALIAS], _row_values(raw), parent_row.slot, parent_row
            )

    def _build_row(
        self,
        descriptor: TableDescriptor,
        rowid: int,
        values: Mapping[str, Any],
        slot: Slot,
        parent: Optional[ConfigRow],
    ) -> ConfigRow:
        occurrences: List[EmbeddedReference] = []
        for blob in descriptor.blob_columns:
            try:
                payload = blob_bytes(values.get(blob.name))
                if payload is None:
                    continue
                for occ in get_codec(blob.codec).scan(payload):
                    occurrences.append(
                        EmbeddedReference(
                            table=descriptor.name,
                            rowid=rowid,
                            column=blob.name,
                            offset=occ.offset,
                            length=occ.length,
                            identifier=occ.identifier,
                        )
                    )
            except MigrationError as exc:
                raise exc.with_context(table=descriptor.name, column=blob.name, rowid=rowid)
        return ConfigRow(
            table=descriptor.name,
            rowid=rowid,
            values=tuple(values.items()),
            slot=slot,
            parent_table=parent.table if parent else None,
            parent_rowid=parent.rowid if parent else None,
            occurrences=tuple(occurrences),
        )


def _row_values(raw: Any) -> Dict[str, Any]:
    return {key: raw[key] for key in raw.keys() if key != ROWID_ALIAS}
