"""Canonical transcript message schema.

Every entry placed in a transcript is a :class:`NormalizedMessage`; raw
payloads never reach the transcript.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from subagent_aggregator.core.domain.session import LifecycleSignal
from subagent_aggregator.core.domain.topics import SubAgentChannel
from subagent_aggregator.core.utils.time import utc_now


class MessageKind(str, Enum):
    """Role of a normalized transcript entry."""

    SYSTEM = "system"
    ASSISTANT = "assistant"
    USER = "user"
    RESULT = "result"

    @classmethod
    def parse(cls, value: Any, default: MessageKind | None = None) -> MessageKind:
        """Map a producer ``type`` string onto a kind, falling back to ``default``."""
        fallback = default or cls.ASSISTANT
        if not isinstance(value, str):
            return fallback
        try:
            return cls(value.strip().lower())
        except ValueError:
            return fallback


class MessageSubtype(str, Enum):
    """Subtypes the aggregator itself assigns."""

    INFO = "info"
    SUCCESS = "success"
    ERROR = "error"
    STATUS = "status"
    THINKING = "thinking"


class MatchConfidence(str, Enum):
    """How a message was attributed to its session."""

    EXACT = "exact"
    HEURISTIC = "heuristic"
    SYNTHESIZED = "synthesized"


@dataclass(frozen=True)
class Provenance:
    """Where a normalized message came from.

    Attributes:
        topic: Transport topic the raw event arrived on ("" when synthesized).
        channel: Per-session channel, or None for broadcast topics.
        confidence: Correlation confidence for this message.
        received_at: When the aggregator received the raw event.
    """

    topic: str = ""
    channel: SubAgentChannel | None = None
    confidence: MatchConfidence = MatchConfidence.EXACT
    received_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "topic": self.topic,
            "channel": self.channel.value if self.channel else None,
            "confidence": self.confidence.value,
            "received_at": self.received_at.isoformat(),
        }


@dataclass(frozen=True)
class NormalizedMessage:
    """Canonical transcript record.

    Attributes:
        kind: Role of the entry.
        timestamp: Producer timestamp when parseable, otherwise receipt time.
        subtype: Optional refinement (``thinking``, ``status``, ...).
        text: Plain text body, when the payload carried one.
        structured_content: Structured body, when the payload carried one.
        signal: Lifecycle meaning of the entry.
        provenance: Attribution details (topic, confidence).
    """

    kind: MessageKind
    timestamp: datetime = field(default_factory=utc_now)
    subtype: str | None = None
    text: str | None = None
    structured_content: dict[str, Any] | None = None
    signal: LifecycleSignal = LifecycleSignal.MESSAGE
    provenance: Provenance = field(default_factory=Provenance)

    def to_dict(self) -> dict[str, Any]:
        """Serialize the message for renderers and logs."""
        return {
            "kind": self.kind.value,
            "subtype": self.subtype,
            "text": self.text,
            "structured_content": self.structured_content,
            "timestamp": self.timestamp.isoformat(),
            "signal": self.signal.value,
            "provenance": self.provenance.to_dict(),
        }
