"""Transport envelope for pub/sub payloads."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from subagent_aggregator.core.utils.time import utc_now


@dataclass(frozen=True)
class MessageEnvelope:
    """Envelope wrapping one published payload.

    The payload is whatever the producer published; its shape is untrusted.
    """

    message_id: str
    topic: str
    payload: Any
    headers: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        """Serialize the envelope for logging or transport."""
        return {
            "message_id": self.message_id,
            "topic": self.topic,
            "payload": self.payload,
            "headers": self.headers,
            "created_at": self.created_at.isoformat(),
        }
