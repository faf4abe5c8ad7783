"""Payload codec registry for blob columns."""

from __future__ import annotations

from typing import Dict

from .base import Occurrence, PayloadCodec
from .json_slots import JsonSlotCodec
from .tlv import TlvCodec, pack_records

# Registry of available payload codecs
_CODECS: Dict[str, PayloadCodec] = {
    "tlv": TlvCodec(),
    "json-slots": JsonSlotCodec(),
}


def get_codec(name: str) -> PayloadCodec:
    """Get the codec registered under ``name``.

    Raises:
        ValueError: If the codec is not recognized
    """
    if name not in _CODECS:
        raise ValueError(
            f"Unknown payload codec: {name}. "
            f"Supported codecs: {', '.join(_CODECS.keys())}"
        )
    return _CODECS[name]


def get_supported_codecs() -> list[str]:
    """Get list of registered codec names."""
    return list(_CODECS.keys())


__all__ = [
    "Occurrence",
    "PayloadCodec",
    "TlvCodec",
    "JsonSlotCodec",
    "pack_records",
    "get_codec",
    "get_supported_codecs",
]
