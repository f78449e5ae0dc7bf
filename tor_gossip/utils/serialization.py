"""Utility helpers for deterministic serialisation of gossip payloads."""

from __future__ import annotations

from typing import Any, Dict

import orjson


def dumps(payload: Dict[str, Any]) -> bytes:
    """Encode *payload* as compact JSON bytes."""

    return orjson.dumps(payload)


def loads(raw: bytes) -> Any:
    """Decode JSON *raw* bytes, raising ``ValueError`` on malformed input."""

    return orjson.loads(raw)


def signing_bytes(envelope_id: str, topic: str, payload: str, timestamp: int) -> bytes:
    """Return the byte string covered by an envelope signature.

    The fields are concatenated in a fixed order with no separator and
    encoded as UTF-8.
    """

    return f"{envelope_id}{topic}{payload}{timestamp}".encode("utf-8")


__all__ = ["dumps", "loads", "signing_bytes"]
