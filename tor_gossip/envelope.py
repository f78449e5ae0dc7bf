"""The gossip envelope and its wire representation."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional

from .errors import EnvelopeFormatError
from .utils.serialization import dumps, loads

if TYPE_CHECKING:  # pragma: no cover
    from .crypto_utils import Identity

HANDSHAKE_TOPIC = "handshake"

_REQUIRED_TEXT = ("id", "origin", "topic", "payload")


def now_ms() -> int:
    """Return the current wall-clock time in milliseconds since the epoch."""

    return int(time.time() * 1000)


@dataclass(frozen=True)
class Envelope:
    """A self-contained gossip message.

    ``id`` is unique per publish event and ``origin`` is the onion address of
    the node that created the message. ``sender_pub`` and ``signature`` are
    hex strings; both are empty until the envelope is signed.
    """

    id: str
    origin: str
    topic: str
    payload: str
    timestamp: int
    sender_pub: str = ""
    signature: str = ""

    @classmethod
    def build(
        cls,
        topic: str,
        payload: str,
        origin: str,
        timestamp: Optional[int] = None,
        envelope_id: Optional[str] = None,
    ) -> "Envelope":
        """Create an unsigned envelope with a fresh random id."""

        return cls(
            id=envelope_id or str(uuid.uuid4()),
            origin=origin,
            topic=topic,
            payload=payload,
            timestamp=now_ms() if timestamp is None else timestamp,
        )

    def signed_by(self, identity: "Identity") -> "Envelope":
        """Return a copy carrying *identity*'s public key and signature."""

        signature = identity.sign(self.id, self.topic, self.payload, self.timestamp)
        return replace(self, sender_pub=identity.public_key, signature=signature)

    @property
    def is_handshake(self) -> bool:
        return self.topic == HANDSHAKE_TOPIC

    @property
    def short_id(self) -> str:
        return self.id[:8]

    def to_wire(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "origin": self.origin,
            "topic": self.topic,
            "payload": self.payload,
            "timestamp": self.timestamp,
            "senderPub": self.sender_pub,
            "signature": self.signature,
        }

    @classmethod
    def from_wire(cls, record: Mapping[str, Any]) -> "Envelope":
        """Build an envelope from a decoded wire record.

        Raises :class:`EnvelopeFormatError` when a required field is missing
        or has the wrong type. ``senderPub`` and ``signature`` default to an
        empty string so unsigned records still parse.
        """

        if not isinstance(record, Mapping):
            raise EnvelopeFormatError("envelope must be a JSON object")
        for key in _REQUIRED_TEXT:
            if not isinstance(record.get(key), str):
                raise EnvelopeFormatError(f"envelope field {key!r} missing or not a string")
        timestamp = record.get("timestamp")
        # bool is an int subclass; a JSON true is not a timestamp.
        if not isinstance(timestamp, int) or isinstance(timestamp, bool):
            raise EnvelopeFormatError("envelope field 'timestamp' missing or not an integer")
        sender_pub = record.get("senderPub") or ""
        signature = record.get("signature") or ""
        if not isinstance(sender_pub, str) or not isinstance(signature, str):
            raise EnvelopeFormatError("senderPub and signature must be strings")
        return cls(
            id=record["id"],
            origin=record["origin"],
            topic=record["topic"],
            payload=record["payload"],
            timestamp=timestamp,
            sender_pub=sender_pub,
            signature=signature,
        )

    def to_bytes(self) -> bytes:
        return dumps(self.to_wire())

    @classmethod
    def from_bytes(cls, raw: bytes) -> "Envelope":
        try:
            record = loads(raw)
        except ValueError as exc:
            raise EnvelopeFormatError(f"envelope is not valid JSON: {exc}") from exc
        return cls.from_wire(record)


__all__ = ["Envelope", "HANDSHAKE_TOPIC", "now_ms"]
