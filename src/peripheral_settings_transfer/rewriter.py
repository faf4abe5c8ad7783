"""Retarget an extracted device graph onto another device identifier.

The rewriter only produces a plan: an ordered list of row deletes, inserts
and updates. Applying it is the coordinator's job.

Overlapping state is overwritten in one direction. When the target already
holds rows for a slot (same table and identity columns) that the source also
configures, the target's rows for that slot are deleted and replaced by the
retargeted source rows. Slots configured only on the target are retained.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, MutableMapping, Optional, Sequence, Tuple, Union

from .catalog import BoundSchema, TableDescriptor
from .codec import get_codec
from .errors import IdentifierWidthMismatch, MigrationError, SameDevice
from .graph import ConfigRow, DeviceGraph, Slot, blob_bytes
from .logging import get_logger

COPY = "copy"
MOVE = "move"
MODES = (COPY, MOVE)


@dataclass(frozen=True)
class DeleteRow:
    table: str
    rowid: int

    kind = "delete"


@dataclass(frozen=True)
class InsertRow:
    """Insert a row; ``ref`` names it for children inserted after it."""

    table: str
    values: Tuple[Tuple[str, Any], ...]
    ref: str
    parent_column: Optional[str] = None
    parent_ref: Optional[str] = None

    kind = "insert"


@dataclass(frozen=True)
class UpdateRow:
    table: str
    rowid: int
    values: Tuple[Tuple[str, Any], ...]

    kind = "update"


Operation = Union[DeleteRow, InsertRow, UpdateRow]


def _plain(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    return value


def operation_dict(op: Operation) -> Dict[str, Any]:
    data: Dict[str, Any] = {"op": op.kind, "table": op.table}
    if isinstance(op, (DeleteRow, UpdateRow)):
        data["rowid"] = op.rowid
    if isinstance(op, InsertRow):
        data["ref"] = op.ref
        if op.parent_ref:
            data["parent"] = {"column": op.parent_column, "ref": op.parent_ref}
    if isinstance(op, (InsertRow, UpdateRow)):
        data["values"] = {name: _plain(value) for name, value in op.values}
    return data


@dataclass(frozen=True)
class RewritePlan:
    """Side-effect-free description of a transfer."""

    source_id: str
    target_id: str
    mode: str
    operations: Tuple[Operation, ...]
    expected_counts: Mapping[str, int]
    retained: Tuple[Slot, ...]
    unchanged: Tuple[Slot, ...]
    source_digest: str
    target_digest: str

    @property
    def deletes(self) -> Tuple[DeleteRow, ...]:
        return tuple(op for op in self.operations if isinstance(op, DeleteRow))

    @property
    def inserts(self) -> Tuple[InsertRow, ...]:
        return tuple(op for op in self.operations if isinstance(op, InsertRow))

    @property
    def updates(self) -> Tuple[UpdateRow, ...]:
        return tuple(op for op in self.operations if isinstance(op, UpdateRow))

    def is_empty(self) -> bool:
        return not self.operations

    def summary(self) -> Dict[str, int]:
        return {
            "deletes": len(self.deletes),
            "inserts": len(self.inserts),
            "updates": len(self.updates),
            "retained_slots": len(self.retained),
            "unchanged_slots": len(self.unchanged),
        }

    def as_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source_id,
            "target": self.target_id,
            "mode": self.mode,
            "summary": self.summary(),
            "expected_counts": dict(self.expected_counts),
            "retained": [[slot[0], [_plain(v) for v in slot[1]]] for slot in self.retained],
            "operations": [operation_dict(op) for op in self.operations],
        }


def _group_by_slot(graph: DeviceGraph) -> "OrderedDict[Slot, List[ConfigRow]]":
    groups: "OrderedDict[Slot, List[ConfigRow]]" = OrderedDict()
    for row in graph.rows:
        if row.parent_table is None:
            groups.setdefault(row.slot, []).append(row)
    return groups


class ReferenceRewriter:
    """Build rewrite plans against one bound schema version."""

    def __init__(self, schema: BoundSchema) -> None:
        self.schema = schema
        self.logger = get_logger("transfer.rewrite")

    def retarget(
        self,
        graph: DeviceGraph,
        target_id: str,
        existing: Optional[DeviceGraph] = None,
        mode: str = COPY,
    ) -> RewritePlan:
        """Plan the transfer of ``graph`` onto ``target_id``.

        Args:
            graph: Source device graph.
            target_id: Device identifier receiving the configuration.
            existing: The target's current graph; treated as empty when omitted.
            mode: ``copy`` inserts copies and leaves the source untouched;
                ``move`` updates the source rows in place.

        Raises:
            SameDevice: If source and target are the same identifier.
            IdentifierWidthMismatch: If ``target_id`` does not fit a fixed-width slot.
            PayloadFormatError: If ``target_id`` cannot be stored in a slot at all.
        """

        if mode not in MODES:
            raise ValueError(f"Unknown transfer mode: {mode}. Supported modes: {', '.join(MODES)}")
        source_id = graph.device_id
        if source_id == target_id:
            raise SameDevice("Source and target are the same device", device_id=source_id)
        if existing is None:
            existing = DeviceGraph(device_id=target_id, rows=(), tables=graph.tables)
        elif existing.device_id != target_id:
            raise ValueError(
                f"Existing graph belongs to {existing.device_id!r}, not {target_id!r}"
            )

        self._check_widths(graph, target_id)

        source_groups = _group_by_slot(graph)
        target_groups = _group_by_slot(existing)
        retargeted = {
            (row.table, row.rowid): self._retarget_values(row, source_id, target_id)
            for row in graph.rows
        }

        child_deletes: List[DeleteRow] = []
        parent_deletes: List[DeleteRow] = []
        inserts: List[InsertRow] = []
        updates: List[UpdateRow] = []
        expected: Dict[str, int] = existing.counts()
        unchanged: List[Slot] = []

        for slot, rows in source_groups.items():
            target_rows = target_groups.get(slot, [])
            source_print = self._fingerprint(
                graph, rows, lambda row: retargeted[(row.table, row.rowid)]
            )
            target_print = self._fingerprint(existing, target_rows, lambda row: row.as_mapping())
            if target_rows and source_print == target_print:
                unchanged.append(slot)
                if mode == MOVE:
                    self._delete_group(graph, rows, child_deletes, parent_deletes)
                continue

            self._delete_group(existing, target_rows, child_deletes, parent_deletes)
            for row in target_rows:
                self._count(expected, existing, row, -1)
            for row in rows:
                self._count(expected, graph, row, 1)

            if mode == COPY:
                for row in rows:
                    inserts.extend(self._copy_group(graph, row, retargeted))
            else:
                for row in rows:
                    for member in (row, *graph.children_of(row)):
                        update = self._update_for(member, retargeted[(member.table, member.rowid)])
                        if update is not None:
                            updates.append(update)

        retained = tuple(slot for slot in target_groups if slot not in source_groups)
        plan = RewritePlan(
            source_id=source_id,
            target_id=target_id,
            mode=mode,
            operations=(*child_deletes, *parent_deletes, *inserts, *updates),
            expected_counts=expected,
            retained=retained,
            unchanged=tuple(unchanged),
            source_digest=graph.digest(),
            target_digest=existing.digest(),
        )
        self.logger.info(
            "Rewrite plan built",
            extra={"source": source_id, "target": target_id, "mode": mode, **plan.summary()},
        )
        return plan

    def _descriptor(self, table: str) -> TableDescriptor:
        return self.schema.version.table(table)

    def _check_widths(self, graph: DeviceGraph, target_id: str) -> None:
        for ref in graph.embedded_references:
            codec = self.schema.codec_for(ref.table, ref.column)
            try:
                encoded = codec.encode_identifier(target_id)
            except MigrationError as exc:
                raise exc.with_context(table=ref.table, column=ref.column, rowid=ref.rowid)
            if len(encoded) != ref.length:
                raise IdentifierWidthMismatch(
                    "Target identifier does not fit a fixed-width identifier slot",
                    table=ref.table,
                    column=ref.column,
                    rowid=ref.rowid,
                    offset=ref.offset,
                    source_id=graph.device_id,
                    target_id=target_id,
                    slot_width=ref.length,
                    target_width=len(encoded),
                )

    def _retarget_values(self, row: ConfigRow, source_id: str, target_id: str) -> Dict[str, Any]:
        descriptor = self._descriptor(row.table)
        values = row.as_mapping()
        if descriptor.device_column is not None:
            values[descriptor.device_column] = target_id
        for blob in descriptor.blob_columns:
            offsets = {
                occ.offset: target_id
                for occ in row.occurrences_in(blob.name)
                if occ.identifier == source_id
            }
            if not offsets:
                continue
            original = values[blob.name]
            payload = blob_bytes(original)
            assert payload is not None
            try:
                rewritten = get_codec(blob.codec).rewrite(payload, offsets)
            except MigrationError as exc:
                raise exc.with_context(table=row.table, column=blob.name, rowid=row.rowid)
            values[blob.name] = rewritten.decode("utf-8") if isinstance(original, str) else rewritten
        return values

    def _content(self, table: str, values: Mapping[str, Any]) -> Tuple[Tuple[str, Any], ...]:
        descriptor = self._descriptor(table)
        skipped = {descriptor.key_column}
        if descriptor.parent is not None:
            skipped.add(descriptor.parent.column)
        return tuple(sorted((name, value) for name, value in values.items() if name not in skipped))

    def _fingerprint(self, graph: DeviceGraph, rows: Sequence[ConfigRow], values_of) -> str:
        entries = []
        for row in rows:
            children = tuple(
                (child.table, self._content(child.table, values_of(child)))
                for child in graph.children_of(row)
            )
            entries.append((row.table, self._content(row.table, values_of(row)), children))
        return repr(entries)

    def _delete_group(
        self,
        graph: DeviceGraph,
        rows: Sequence[ConfigRow],
        child_deletes: List[DeleteRow],
        parent_deletes: List[DeleteRow],
    ) -> None:
        for row in rows:
            for child in graph.children_of(row):
                child_deletes.append(DeleteRow(table=child.table, rowid=child.rowid))
            parent_deletes.append(DeleteRow(table=row.table, rowid=row.rowid))

    def _count(self, counts: MutableMapping[str, int], graph: DeviceGraph, row: ConfigRow, step: int) -> None:
        for member in (row, *graph.children_of(row)):
            counts[member.table] = counts.get(member.table, 0) + step

    def _copy_group(
        self,
        graph: DeviceGraph,
        row: ConfigRow,
        retargeted: Mapping[Tuple[str, int], Mapping[str, Any]],
    ) -> List[InsertRow]:
        ref = f"{row.table}:{row.rowid}"
        descriptor = self._descriptor(row.table)
        ops = [
            InsertRow(
                table=row.table,
                values=tuple(
                    (name, value)
                    for name, value in retargeted[(row.table, row.rowid)].items()
                    if name != descriptor.key_column
                ),
                ref=ref,
            )
        ]
        for child in graph.children_of(row):
            child_descriptor = self._descriptor(child.table)
            assert child_descriptor.parent is not None
            parent_column = child_descriptor.parent.column
            ops.append(
                InsertRow(
                    table=child.table,
                    values=tuple(
                        (name, value)
                        for name, value in retargeted[(child.table, child.rowid)].items()
                        if name not in (child_descriptor.key_column, parent_column)
                    ),
                    ref=f"{child.table}:{child.rowid}",
                    parent_column=parent_column,
                    parent_ref=ref,
                )
            )
        return ops

    def _update_for(self, row: ConfigRow, values: Mapping[str, Any]) -> Optional[UpdateRow]:
        original = row.as_mapping()
        changed = tuple(
            (name, value) for name, value in values.items() if original.get(name) != value
        )
        if not changed:
            return None
        return UpdateRow(table=row.table, rowid=row.rowid, values=changed)
