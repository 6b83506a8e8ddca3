"""
Message Normalizer
==================

Maps heterogeneous raw payloads onto the canonical ``NormalizedMessage``.

Payload shapes are resolved once, into the ``RawPayload`` tagged union:

==========================================  ===================================
Shape                                       Result
==========================================  ===================================
plain string                                Assistant, ``text``
``message.message|text`` is a string        ``message.type`` or Assistant, text
``message.message|text`` is an object       ``message.type`` or Assistant,
                                            ``structured_content``
``{type: <kind>, message: {...}}``          kind from ``type``, structured
anything else                               System, payload kept verbatim
==========================================  ===================================

A top-level ``type == "subagent_thinking"`` marks the message as thinking
regardless of its kind. Start, complete and error channels produce the
lifecycle records of the session. ``normalize`` is total: malformed input
degrades to the generic record instead of raising.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any

import structlog

from subagent_aggregator.core.domain.events import (
    GenericPayload,
    NestedMessagePayload,
    RawEvent,
    RawPayload,
    StreamMessagePayload,
    StringPayload,
)
from subagent_aggregator.core.domain.messages import (
    MatchConfidence,
    MessageKind,
    MessageSubtype,
    NormalizedMessage,
    Provenance,
)
from subagent_aggregator.core.domain.session import LifecycleSignal
from subagent_aggregator.core.domain.topics import SubAgentChannel, parse_topic
from subagent_aggregator.core.utils.time import parse_timestamp, utc_now

logger = structlog.get_logger(__name__)

THINKING_MARKER = "subagent_thinking"
STARTED_TEXT_PREFIX = "Sub-agent started"
COMPLETED_TEXT = "Sub-agent task completed"
ERROR_FALLBACK_TEXT = "Sub-agent reported an error"

_STREAM_KINDS = frozenset(kind.value for kind in MessageKind)


def classify_payload(payload: Any) -> RawPayload:
    """Resolve an untyped payload into the ``RawPayload`` tagged union.

    Strings that hold a JSON document are classified by their parsed value.
    """
    if isinstance(payload, (bytes, bytearray)):
        payload = payload.decode("utf-8", errors="replace")

    if isinstance(payload, str):
        parsed = _parse_json_document(payload)
        if parsed is None:
            return StringPayload(text=payload)
        payload = parsed

    if not isinstance(payload, Mapping):
        return GenericPayload(value=payload)

    inner = payload.get("message")
    marker = payload.get("type") if isinstance(payload.get("type"), str) else None

    if isinstance(inner, Mapping):
        body = inner.get("message", inner.get("text"))
        if isinstance(body, str):
            return NestedMessagePayload(
                body=body,
                kind_hint=inner.get("type"),
                subtype=_optional_str(inner.get("subtype")),
                marker=marker,
                timestamp_hint=inner.get("timestamp", payload.get("timestamp")),
            )
        if isinstance(body, Mapping):
            return NestedMessagePayload(
                body=dict(body),
                kind_hint=inner.get("type"),
                subtype=_optional_str(inner.get("subtype")),
                marker=marker,
                timestamp_hint=inner.get("timestamp", payload.get("timestamp")),
            )
        if isinstance(body, list):
            return NestedMessagePayload(
                body={"content": list(body)},
                kind_hint=inner.get("type"),
                subtype=_optional_str(inner.get("subtype")),
                marker=marker,
                timestamp_hint=inner.get("timestamp", payload.get("timestamp")),
            )

    if marker and marker.lower() in _STREAM_KINDS and (
        isinstance(inner, Mapping) or "result" in payload
    ):
        result = payload.get("result")
        return StreamMessagePayload(
            kind_hint=marker,
            message=dict(inner) if isinstance(inner, Mapping) else None,
            subtype=_optional_str(payload.get("subtype")),
            result_text=result if isinstance(result, str) else None,
            timestamp_hint=payload.get("timestamp"),
        )

    return GenericPayload(value=dict(payload))


class MessageNormalizer:
    """Turn raw events into canonical transcript messages.

    Args:
        clock: Source of "now" for payloads without a usable timestamp.
    """

    def __init__(self, clock: Callable[[], datetime] = utc_now) -> None:
        self._clock = clock

    def normalize(
        self,
        raw: RawEvent,
        *,
        confidence: MatchConfidence = MatchConfidence.EXACT,
    ) -> NormalizedMessage:
        """Normalize one raw event. Never raises.

        Args:
            raw: Event as delivered by the transport.
            confidence: Correlation confidence recorded in the provenance.

        Returns:
            The normalized message; the generic System record when the
            payload could not be interpreted.
        """
        parsed_topic = parse_topic(raw.topic)
        channel = parsed_topic[0] if parsed_topic else None
        provenance = Provenance(
            topic=raw.topic,
            channel=channel,
            confidence=confidence,
            received_at=raw.received_at,
        )
        try:
            if channel is SubAgentChannel.STARTED:
                return self._started(raw.payload, provenance)
            if channel is SubAgentChannel.COMPLETE:
                return self._completed(raw.payload, provenance)
            if channel is SubAgentChannel.ERROR:
                return self._errored(raw.payload, provenance)
            if channel is SubAgentChannel.OUTPUT:
                return self._output(raw.payload, provenance)
            return self._from_shape(classify_payload(raw.payload), provenance)
        except Exception as exc:
            logger.warning(
                "normalizer.fallback",
                topic=raw.topic,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return self._generic(raw.payload, provenance)

    # ------------------------------------------------------------------
    # Shape-driven records
    # ------------------------------------------------------------------

    def _from_shape(
        self,
        shape: RawPayload,
        provenance: Provenance,
        *,
        signal: LifecycleSignal = LifecycleSignal.MESSAGE,
    ) -> NormalizedMessage:
        if isinstance(shape, StringPayload):
            return NormalizedMessage(
                kind=MessageKind.ASSISTANT,
                text=shape.text,
                timestamp=self._clock(),
                signal=signal,
                provenance=provenance,
            )

        if isinstance(shape, NestedMessagePayload):
            subtype = shape.subtype
            if shape.marker == THINKING_MARKER:
                subtype = MessageSubtype.THINKING.value
            text = shape.body if isinstance(shape.body, str) else None
            structured = shape.body if isinstance(shape.body, dict) else None
            return NormalizedMessage(
                kind=MessageKind.parse(shape.kind_hint),
                subtype=subtype,
                text=text,
                structured_content=structured,
                timestamp=self._timestamp(shape.timestamp_hint),
                signal=signal,
                provenance=provenance,
            )

        if isinstance(shape, StreamMessagePayload):
            kind = MessageKind.parse(shape.kind_hint)
            return NormalizedMessage(
                kind=kind,
                subtype=shape.subtype,
                text=shape.result_text if kind is MessageKind.RESULT else None,
                structured_content=shape.message,
                timestamp=self._timestamp(shape.timestamp_hint),
                signal=signal,
                provenance=provenance,
            )

        return self._generic(shape.value, provenance, signal=signal)

    def _generic(
        self,
        payload: Any,
        provenance: Provenance,
        *,
        signal: LifecycleSignal = LifecycleSignal.MESSAGE,
    ) -> NormalizedMessage:
        subtype = None
        if isinstance(payload, Mapping):
            structured = dict(payload)
            timestamp = self._timestamp(payload.get("timestamp"))
            if payload.get("type") == THINKING_MARKER:
                subtype = MessageSubtype.THINKING.value
        else:
            structured = {"value": payload}
            timestamp = self._clock()
        return NormalizedMessage(
            kind=MessageKind.SYSTEM,
            subtype=subtype,
            structured_content=structured,
            timestamp=timestamp,
            signal=signal,
            provenance=provenance,
        )

    # ------------------------------------------------------------------
    # Channel-driven records
    # ------------------------------------------------------------------

    def _started(self, payload: Any, provenance: Provenance) -> NormalizedMessage:
        details = dict(payload) if isinstance(payload, Mapping) else {"value": payload}
        description = details.get("description")
        text = f"{STARTED_TEXT_PREFIX}: {description}" if description else STARTED_TEXT_PREFIX
        structured = {
            key: details[key]
            for key in ("description", "subagent_type", "prompt")
            if details.get(key) is not None
        }
        return NormalizedMessage(
            kind=MessageKind.SYSTEM,
            subtype=MessageSubtype.INFO.value,
            text=text,
            structured_content=structured or None,
            timestamp=self._timestamp(details.get("timestamp")),
            signal=LifecycleSignal.STARTED,
            provenance=provenance,
        )

    def _completed(self, payload: Any, provenance: Provenance) -> NormalizedMessage:
        details = dict(payload) if isinstance(payload, Mapping) else {}
        result = details.get("result")
        return NormalizedMessage(
            kind=MessageKind.SYSTEM,
            subtype=MessageSubtype.SUCCESS.value,
            text=COMPLETED_TEXT,
            structured_content={"result": result} if result is not None else None,
            timestamp=self._timestamp(details.get("timestamp")),
            signal=LifecycleSignal.COMPLETED,
            provenance=provenance,
        )

    def _errored(self, payload: Any, provenance: Provenance) -> NormalizedMessage:
        if isinstance(payload, Mapping):
            error = payload.get("error", payload.get("message"))
            timestamp = self._timestamp(payload.get("timestamp"))
        else:
            error = payload
            timestamp = self._clock()
        text = _as_text(error) or ERROR_FALLBACK_TEXT
        return NormalizedMessage(
            kind=MessageKind.SYSTEM,
            subtype=MessageSubtype.ERROR.value,
            text=text,
            timestamp=timestamp,
            signal=LifecycleSignal.ERRORED,
            provenance=provenance,
        )

    def _output(self, payload: Any, provenance: Provenance) -> NormalizedMessage:
        if not isinstance(payload, Mapping):
            return self._from_shape(classify_payload(payload), provenance)

        output_type = payload.get("type")
        body = payload.get("output", payload.get("message"))
        if output_type == "error":
            return self._errored(
                {"error": body, "timestamp": payload.get("timestamp")}, provenance
            )
        if isinstance(body, str):
            return NormalizedMessage(
                kind=MessageKind.SYSTEM if output_type == "status" else MessageKind.ASSISTANT,
                subtype=_optional_str(output_type),
                text=body,
                timestamp=self._timestamp(payload.get("timestamp")),
                provenance=provenance,
            )
        return self._from_shape(classify_payload(payload), provenance)

    def _timestamp(self, value: Any) -> datetime:
        return parse_timestamp(value) or self._clock()


def _parse_json_document(text: str) -> Any | None:
    """Parse ``text`` when it holds a JSON object or array."""
    stripped = text.strip()
    if not stripped or stripped[0] not in "{[":
        return None
    try:
        return json.loads(stripped)
    except ValueError:
        return None


def _optional_str(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def _as_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)
