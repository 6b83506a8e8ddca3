"""
Correlation Engine
==================

Decides whether a raw event belongs to a given sub-agent session.

Two strategies, evaluated in order and never merged:

1. ``ExactKeyStrategy`` (trusted): the event arrived on a per-session topic of
   the identity's parent session and, when the payload names a tool id, that
   id equals the identity's tool id.
2. ``BroadcastHeuristicStrategy`` (best effort): only for events on the
   generic broadcast topics. Accepts when the payload text mentions the tool
   id, mentions a prefix fragment of the parent session id, or arrives shortly
   after an accepted start event. This favors recall; callers must tolerate
   occasional stray entries. A payload that explicitly names a different tool
   id is always rejected.

Events matching neither strategy are dropped silently.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import structlog

from subagent_aggregator.core.domain.events import RawEvent
from subagent_aggregator.core.domain.messages import MatchConfidence
from subagent_aggregator.core.domain.session import SessionIdentity
from subagent_aggregator.core.domain.topics import SubAgentChannel, parse_topic, primary_topics
from subagent_aggregator.core.utils.time import utc_now

logger = structlog.get_logger(__name__)

_DIRECT_ID_FIELDS = ("tool_id", "tool_use_id")
_COMPOSITE_ID_FIELDS = ("subagent_id", "sub_session_id")


@dataclass(frozen=True)
class CorrelationMatch:
    """Outcome of a successful correlation."""

    confidence: MatchConfidence
    reason: str
    channel: SubAgentChannel | None = None


def extract_tool_id(payload: Any) -> str | None:
    """Return the tool id a payload names, if any.

    Reads ``tool_id``/``tool_use_id`` directly, or the suffix after the last
    ``:`` of the composite ``subagent_id``/``sub_session_id``.
    """
    if isinstance(payload, str):
        payload = _load_json_object(payload)
    if not isinstance(payload, Mapping):
        return None
    for key in _DIRECT_ID_FIELDS:
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value
    for key in _COMPOSITE_ID_FIELDS:
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value.rsplit(":", 1)[-1]
    return None


class ExactKeyStrategy:
    """Trusted correlation on per-session topics."""

    def match(self, raw: RawEvent, identity: SessionIdentity) -> CorrelationMatch | None:
        parsed = parse_topic(raw.topic)
        if parsed is None:
            return None
        channel, parent_session_id = parsed
        if parent_session_id != identity.parent_session_id:
            return None

        tool_id = extract_tool_id(raw.payload)
        if tool_id is None:
            return CorrelationMatch(MatchConfidence.EXACT, "topic", channel)
        if tool_id != identity.tool_id:
            return None
        return CorrelationMatch(MatchConfidence.EXACT, "topic+tool_id", channel)


class BroadcastHeuristicStrategy:
    """Low-confidence correlation for broadcast topics.

    Args:
        fallback_topics: Broadcast topics this strategy applies to.
        start_window: Accept any broadcast event this soon after a start.
        fragment_length: Length of the parent session id prefix to look for.
    """

    def __init__(
        self,
        fallback_topics: Iterable[str],
        *,
        start_window: timedelta = timedelta(seconds=5),
        fragment_length: int = 8,
    ) -> None:
        self._fallback_topics = frozenset(fallback_topics)
        self._start_window = start_window
        self._fragment_length = fragment_length

    @property
    def fallback_topics(self) -> frozenset[str]:
        return self._fallback_topics

    def match(
        self,
        raw: RawEvent,
        identity: SessionIdentity,
        *,
        started_at: datetime | None = None,
    ) -> CorrelationMatch | None:
        if raw.topic not in self._fallback_topics:
            return None

        named_tool_id = extract_tool_id(raw.payload)
        if named_tool_id is not None and named_tool_id != identity.tool_id:
            return None

        text = _payload_text(raw.payload)
        if identity.tool_id and identity.tool_id in text:
            return CorrelationMatch(MatchConfidence.HEURISTIC, "tool_id_mention")

        fragment = identity.parent_session_id[: self._fragment_length]
        if fragment and fragment in text:
            return CorrelationMatch(MatchConfidence.HEURISTIC, "session_fragment")

        if started_at is not None:
            elapsed = raw.received_at - started_at
            if timedelta(0) <= elapsed <= self._start_window:
                return CorrelationMatch(MatchConfidence.HEURISTIC, "start_window")

        return None


class CorrelationEngine:
    """Attribute raw events to sub-agent sessions.

    Exact-key matching is always tried first; the broadcast heuristic only
    runs for events on configured fallback topics.

    Args:
        fallback_topics: Broadcast topics eligible for heuristic matching.
        start_window_seconds: Heuristic window after an accepted start event.
        fragment_length: Parent session id prefix length for text matching.
        clock: Source of "now" for :meth:`note_started` defaults.
    """

    def __init__(
        self,
        fallback_topics: Iterable[str] = (),
        *,
        start_window_seconds: float = 5.0,
        fragment_length: int = 8,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._exact = ExactKeyStrategy()
        self._heuristic = BroadcastHeuristicStrategy(
            fallback_topics,
            start_window=timedelta(seconds=start_window_seconds),
            fragment_length=fragment_length,
        )
        self._clock = clock
        self._started_at: dict[SessionIdentity, datetime] = {}

    @property
    def fallback_topics(self) -> frozenset[str]:
        return self._heuristic.fallback_topics

    def topics_for(self, identity: SessionIdentity, *, include_fallback: bool = True) -> frozenset[str]:
        """Topics to subscribe to in order to observe ``identity``."""
        topics = primary_topics(identity.parent_session_id)
        if include_fallback:
            topics = topics | self._heuristic.fallback_topics
        return topics

    def note_started(self, identity: SessionIdentity, at: datetime | None = None) -> None:
        """Record an accepted start event; opens the heuristic start window."""
        self._started_at[identity] = at or self._clock()

    def match(self, raw: RawEvent, identity: SessionIdentity) -> CorrelationMatch | None:
        """Correlate ``raw`` with ``identity``.

        Returns:
            The match, or None when the event does not belong to the session.
        """
        exact = self._exact.match(raw, identity)
        if exact is not None:
            return exact
        heuristic = self._heuristic.match(
            raw, identity, started_at=self._started_at.get(identity)
        )
        if heuristic is not None:
            logger.debug(
                "correlation.heuristic_match",
                topic=raw.topic,
                tool_id=identity.tool_id,
                reason=heuristic.reason,
            )
        return heuristic

    def matches(self, raw: RawEvent, identity: SessionIdentity) -> bool:
        """Whether ``raw`` belongs to ``identity``."""
        return self.match(raw, identity) is not None


def _load_json_object(text: str) -> Any:
    stripped = text.strip()
    if not stripped.startswith("{"):
        return None
    try:
        return json.loads(stripped)
    except ValueError:
        return None


def _payload_text(payload: Any) -> str:
    if isinstance(payload, str):
        return payload
    if isinstance(payload, (bytes, bytearray)):
        return payload.decode("utf-8", errors="replace")
    try:
        return json.dumps(payload, default=str)
    except (TypeError, ValueError):
        return repr(payload)
