"""Inbound raw events and the payload shapes they may carry.

Payloads arrive untyped from heterogeneous producers. They are resolved
exactly once, by the message normalizer, into the :data:`RawPayload` tagged
union; nothing downstream re-inspects the raw shape.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Union

from subagent_aggregator.core.domain.messaging import MessageEnvelope
from subagent_aggregator.core.utils.time import utc_now


@dataclass(frozen=True)
class RawEvent:
    """One event as delivered by the transport.

    Attributes:
        topic: Topic the event was published on.
        payload: Producer payload of unknown shape.
        received_at: When the event source handed the event to the stream.
        message_id: Transport message id, when the transport supplies one.
    """

    topic: str
    payload: Any
    received_at: datetime = field(default_factory=utc_now)
    message_id: str | None = None

    @classmethod
    def from_envelope(cls, envelope: MessageEnvelope) -> RawEvent:
        """Wrap a transport envelope."""
        return cls(
            topic=envelope.topic,
            payload=envelope.payload,
            message_id=envelope.message_id,
        )


@dataclass(frozen=True)
class StringPayload:
    """A bare text payload."""

    text: str


@dataclass(frozen=True)
class NestedMessagePayload:
    """A payload wrapping a message object whose body is ``message`` or ``text``.

    Shape: ``{tool_id?, type?, message: {type?, subtype?, message|text, timestamp?}}``.
    """

    body: str | dict[str, Any]
    kind_hint: Any = None
    subtype: str | None = None
    marker: str | None = None
    timestamp_hint: Any = None


@dataclass(frozen=True)
class StreamMessagePayload:
    """A stream-json line: ``{type: assistant|user|system|result, message: {...}}``."""

    kind_hint: str
    message: dict[str, Any] | None = None
    subtype: str | None = None
    result_text: str | None = None
    timestamp_hint: Any = None


@dataclass(frozen=True)
class GenericPayload:
    """Anything else; kept verbatim."""

    value: Any


RawPayload = Union[StringPayload, NestedMessagePayload, StreamMessagePayload, GenericPayload]
