"""Tag-length-value record payloads.

The payload is a flat sequence of records::

    [tag: u8][length: u16 big-endian][value: length bytes]

Records tagged ``TAG_DEVICE_REF`` hold a UTF-8 device identifier. All other
tags are opaque to this codec and are carried through untouched.
"""

from __future__ import annotations

import struct
from typing import Iterable, Iterator, Tuple

from ..errors import PayloadFormatError
from .base import Occurrence, PayloadCodec

TAG_DEVICE_REF = 0x01
RECORD_HEADER = struct.Struct(">BH")
MAX_VALUE_LENGTH = 0xFFFF


def pack_records(records: Iterable[Tuple[int, bytes]]) -> bytes:
    """Serialize ``(tag, value)`` pairs into a TLV payload."""

    chunks = []
    for tag, value in records:
        if not 0 <= tag <= 0xFF:
            raise ValueError(f"Record tag out of range: {tag}")
        if len(value) > MAX_VALUE_LENGTH:
            raise ValueError(f"Record value too long: {len(value)} bytes")
        chunks.append(RECORD_HEADER.pack(tag, len(value)))
        chunks.append(bytes(value))
    return b"".join(chunks)


def iter_records(payload: bytes) -> Iterator[Tuple[int, int, int]]:
    """Yield ``(tag, value_offset, value_length)`` for every record."""

    offset = 0
    size = len(payload)
    while offset < size:
        if size - offset < RECORD_HEADER.size:
            raise PayloadFormatError(
                "Truncated record header",
                offset=offset,
                payload_size=size,
            )
        tag, length = RECORD_HEADER.unpack_from(payload, offset)
        value_offset = offset + RECORD_HEADER.size
        if value_offset + length > size:
            raise PayloadFormatError(
                "Record value overruns payload",
                offset=offset,
                tag=tag,
                length=length,
                payload_size=size,
            )
        yield tag, value_offset, length
        offset = value_offset + length


class TlvCodec(PayloadCodec):
    """Codec for TLV record payloads with device reference records."""

    @property
    def name(self) -> str:
        return "tlv"

    def scan(self, payload: bytes) -> Iterator[Occurrence]:
        for tag, value_offset, length in iter_records(payload):
            if tag != TAG_DEVICE_REF:
                continue
            raw = payload[value_offset : value_offset + length]
            try:
                identifier = raw.decode("utf-8")
            except UnicodeDecodeError as exc:
                raise PayloadFormatError(
                    "Device reference is not valid UTF-8",
                    offset=value_offset,
                ) from exc
            yield Occurrence(offset=value_offset, length=length, identifier=identifier)

    def encode_identifier(self, identifier: str) -> bytes:
        encoded = identifier.encode("utf-8")
        if len(encoded) > MAX_VALUE_LENGTH:
            raise PayloadFormatError(
                "Identifier too long for a device reference record",
                width=len(encoded),
            )
        return encoded
