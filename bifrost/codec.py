"""Wire serialization and 64-bit hashing shared by the transport layers."""

from __future__ import annotations

import dataclasses
import enum
import hashlib
import json
import logging
from typing import Any

logger = logging.getLogger(__name__)

STANDALONE_ADDRESS = "STANDALONE"


def _encode_default(obj: Any) -> Any:
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return dataclasses.asdict(obj)
    if isinstance(obj, enum.Enum):
        return obj.name
    if isinstance(obj, (set, frozenset)):
        return sorted(obj)
    raise TypeError(f"Cannot serialize object of type {type(obj).__name__}")


def serialize(obj: Any) -> bytes:
    """Encode a value to bytes; raises TypeError if it cannot be encoded."""
    return json.dumps(obj, default=_encode_default, separators=(",", ":")).encode("utf-8")


def deserialize(data: bytes | bytearray | memoryview) -> Any | None:
    """Decode bytes produced by serialize; returns None if they cannot be decoded."""
    raw = bytes(data)
    try:
        return json.loads(raw)
    except ValueError as exc:
        logger.warning(
            "Error on decoding data, %s, json: %s",
            exc,
            raw.decode("utf-8", errors="replace"),
        )
        return None


def hash_bytes(data: bytes | bytearray | memoryview) -> int:
    """Return a stable unsigned 64-bit hash of the bytes."""
    digest = hashlib.blake2b(bytes(data), digest_size=8).digest()
    return int.from_bytes(digest, "little")


def hash_str(text: str) -> int:
    """Return a stable unsigned 64-bit hash of the text's UTF-8 bytes."""
    return hash_bytes(text.encode("utf-8"))


def hash_value(obj: Any) -> int:
    """Return the 64-bit hash of a value's serialized form."""
    return hash_bytes(serialize(obj))


STANDALONE_SERVER_ID = hash_str(STANDALONE_ADDRESS)