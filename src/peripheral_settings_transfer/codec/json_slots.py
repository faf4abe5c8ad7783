"""JSON documents that embed device identifiers in known string fields."""

from __future__ import annotations

import json
import re
from typing import Iterator, Mapping, Optional

from ..errors import PayloadFormatError
from .base import Occurrence, PayloadCodec

# Key -> separator. With a separator, only the part of the value before the
# first separator is the device identifier ("<device>_<control>").
DEFAULT_SLOT_KEYS: Mapping[str, Optional[str]] = {
    "slotId": "_",
    "slotPrefix": None,
    "deviceId": None,
}


class JsonSlotCodec(PayloadCodec):
    """Codec for UTF-8 JSON payloads with identifier-bearing string fields."""

    def __init__(self, slot_keys: Optional[Mapping[str, Optional[str]]] = None) -> None:
        self._slot_keys = dict(slot_keys or DEFAULT_SLOT_KEYS)
        keys = b"|".join(re.escape(key.encode("utf-8")) for key in self._slot_keys)
        self._pattern = re.compile(
            rb'(?<!\\)"(?P<key>' + keys + rb')"\s*:\s*"(?P<value>(?:[^"\\]|\\.)*)"'
        )
        self._separators = {sep for sep in self._slot_keys.values() if sep}

    @property
    def name(self) -> str:
        return "json-slots"

    def scan(self, payload: bytes) -> Iterator[Occurrence]:
        self._check_document(payload)
        for match in self._pattern.finditer(payload):
            key = match.group("key").decode("utf-8")
            separator = self._slot_keys[key]
            value = match.group("value")
            if separator:
                cut = value.find(separator.encode("utf-8"))
                if cut <= 0:
                    continue
                value = value[:cut]
            if not value:
                continue
            if b"\\" in value:
                # Escaped identifiers cannot be spliced in place.
                raise PayloadFormatError(
                    "Identifier in a JSON slot contains an escape sequence",
                    key=key,
                    offset=match.start("value"),
                )
            yield Occurrence(
                offset=match.start("value"),
                length=len(value),
                identifier=value.decode("utf-8"),
            )

    def encode_identifier(self, identifier: str) -> bytes:
        if not identifier:
            raise PayloadFormatError("Identifier must not be empty")
        if any(ch in identifier for ch in '"\\') or any(ord(ch) < 0x20 for ch in identifier):
            raise PayloadFormatError(
                "Identifier would need escaping inside a JSON string",
                identifier=identifier,
            )
        if any(sep in identifier for sep in self._separators):
            raise PayloadFormatError(
                "Identifier contains a slot separator",
                identifier=identifier,
            )
        return identifier.encode("utf-8")

    def _check_document(self, payload: bytes) -> None:
        try:
            json.loads(payload.decode("utf-8"))
        except UnicodeDecodeError as exc:
            raise PayloadFormatError("Payload is not UTF-8 text", offset=exc.start) from exc
        except json.JSONDecodeError as exc:
            raise PayloadFormatError(
                f"Payload is not a JSON document: {exc.msg}",
                offset=exc.pos,
            ) from exc
