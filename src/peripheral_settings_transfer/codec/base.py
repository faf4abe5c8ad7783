"""Base interface for blob payload codecs.

Codecs never decode a payload fully. Each one only knows how to locate the
slots that hold device identifiers inside its payload format and how to
encode a replacement identifier for such a slot. Rewriting replaces the bytes
of a slot in place, so every byte outside the addressed slots is preserved.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Iterator, Mapping

from ..errors import PayloadFormatError, UnknownOccurrence


@dataclass(frozen=True)
class Occurrence:
    """Location of one embedded device identifier inside a payload."""

    offset: int
    length: int
    identifier: str


class PayloadCodec(ABC):
    """Abstract base class for payload codecs."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Codec identifier used by catalog entries (e.g. 'tlv')."""

    @abstractmethod
    def scan(self, payload: bytes) -> Iterator[Occurrence]:
        """Yield every identifier slot in ``payload``, in offset order.

        Scanning has no side effects; calling it again on the same payload
        yields the same occurrences.

        Raises:
            PayloadFormatError: If the payload framing is malformed.
        """

    @abstractmethod
    def encode_identifier(self, identifier: str) -> bytes:
        """Encode an identifier the way this format stores it in a slot.

        Raises:
            PayloadFormatError: If the identifier cannot be stored in a slot.
        """

    def validate(self, payload: bytes) -> None:
        """Check a rewritten payload is still well formed."""

        for _ in self.scan(payload):
            pass

    def rewrite(self, payload: bytes, replacements: Mapping[int, str]) -> bytes:
        """Return a copy of ``payload`` with the addressed slots replaced.

        Args:
            payload: Original payload; never modified.
            replacements: Slot offset (as produced by :meth:`scan`) to new identifier.

        Raises:
            UnknownOccurrence: If an offset was not produced by :meth:`scan`.
            PayloadFormatError: If a replacement does not fit its slot exactly.
        """

        slots: Dict[int, Occurrence] = {occ.offset: occ for occ in self.scan(payload)}
        buffer = bytearray(payload)
        for offset in sorted(replacements):
            occurrence = slots.get(offset)
            if occurrence is None:
                raise UnknownOccurrence(
                    "Offset does not address an identifier slot",
                    codec=self.name,
                    offset=offset,
                )
            encoded = self.encode_identifier(replacements[offset])
            if len(encoded) != occurrence.length:
                raise PayloadFormatError(
                    "Replacement identifier does not match the slot width",
                    codec=self.name,
                    offset=offset,
                    slot_width=occurrence.length,
                    replacement_width=len(encoded),
                )
            buffer[offset : offset + occurrence.length] = encoded
        result = bytes(buffer)
        self.validate(result)
        return result
