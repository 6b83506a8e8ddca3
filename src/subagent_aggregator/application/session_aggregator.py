"""
Session Aggregator
==================

Builds one trustworthy, ordered record of a sub-agent's lifecycle from the
overlapping event streams published about it.

Per raw event, in arrival order and as one step with no suspension point:

    correlate → normalize → lifecycle claim → fingerprint dedup
    → state transition → transcript append → notify listeners

Responsibilities:
- Own the subscriptions for one ``SessionIdentity`` and release them on
  every exit path (close, error, cancellation, grace period expiry)
- Keep an append-only transcript in arrival order (not timestamp order)
- Expose state, a read-only transcript view, snapshots and incremental
  updates to renderers
- Short-circuit already-finished delegations without subscribing at all
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
from types import TracebackType
from typing import Any, overload

import structlog

from subagent_aggregator.application.correlation import CorrelationEngine
from subagent_aggregator.application.deduplicator import Deduplicator
from subagent_aggregator.application.normalizer import MessageNormalizer
from subagent_aggregator.application.terminal_result import build_summary_message, has_result
from subagent_aggregator.core.domain.config_schema import AggregatorConfig
from subagent_aggregator.core.domain.errors import SessionClosedError
from subagent_aggregator.core.domain.events import RawEvent
from subagent_aggregator.core.domain.lifecycle import LifecycleStateMachine
from subagent_aggregator.core.domain.messages import NormalizedMessage
from subagent_aggregator.core.domain.session import (
    LifecycleSignal,
    SessionIdentity,
    SessionState,
)
from subagent_aggregator.core.interfaces.event_source import EventSourceProtocol
from subagent_aggregator.core.interfaces.messaging import MessageBusProtocol
from subagent_aggregator.core.utils.time import utc_now
from subagent_aggregator.infrastructure.event_sources.topic_source import TopicEventSource

logger = structlog.get_logger(__name__)

MessageListener = Callable[[NormalizedMessage, SessionState], None]

_UPDATES_DONE = object()


@dataclass(frozen=True)
class OpenOptions:
    """Per-open overrides of the aggregator configuration.

    Attributes:
        listen_fallback_topics: Subscribe to broadcast fallback topics.
            None uses ``AggregatorConfig.listen_fallback_topics``.
    """

    listen_fallback_topics: bool | None = None


@dataclass(frozen=True)
class SessionSnapshot:
    """Point-in-time copy of a session for renderers."""

    identity: SessionIdentity
    state: SessionState
    transcript: tuple[NormalizedMessage, ...]
    closed: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "identity": self.identity.to_dict(),
            "state": self.state.value,
            "closed": self.closed,
            "transcript": [message.to_dict() for message in self.transcript],
        }


class TranscriptView(Sequence[NormalizedMessage]):
    """Read-only, live view over a session transcript."""

    def __init__(self, entries: list[NormalizedMessage]) -> None:
        self._entries = entries

    @overload
    def __getitem__(self, index: int) -> NormalizedMessage: ...

    @overload
    def __getitem__(self, index: slice) -> Sequence[NormalizedMessage]: ...

    def __getitem__(self, index: int | slice) -> NormalizedMessage | Sequence[NormalizedMessage]:
        if isinstance(index, slice):
            return tuple(self._entries[index])
        return self._entries[index]

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return f"TranscriptView(len={len(self._entries)})"


class SessionAggregator:
    """Live, deduplicated, ordered transcript and lifecycle state for one sub-agent.

    Usage::

        async with SessionAggregator(identity, bus) as session:
            state = await session.wait_until_terminal(timeout=30)
            for message in session.transcript:
                ...

    Args:
        identity: The delegated sub-agent invocation to observe.
        bus: Pub/sub transport the sub-agent events are published on.
        options: Per-open overrides.
        config: Aggregator configuration.
        result: A terminal result already known to the caller. When given,
            no subscription is made and the session is finished immediately.
        event_source: Event source to use instead of a ``TopicEventSource``.
        on_close: Called once after the session released its resources.
        clock: Source of "now".
    """

    def __init__(
        self,
        identity: SessionIdentity,
        bus: MessageBusProtocol,
        *,
        options: OpenOptions | None = None,
        config: AggregatorConfig | None = None,
        result: Any = None,
        event_source: EventSourceProtocol | None = None,
        on_close: Callable[[SessionAggregator], None] | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._identity = identity
        self._bus = bus
        self._config = config or AggregatorConfig()
        self._options = options or OpenOptions()
        self._result = result
        self._on_close = on_close
        self._clock = clock
        self._logger = logger.bind(
            component="session_aggregator",
            parent_session_id=identity.parent_session_id,
            tool_id=identity.tool_id,
        )

        self._source = event_source or TopicEventSource(
            bus, source_name=f"subagent:{identity.subagent_id}"
        )
        self._correlation = CorrelationEngine(
            self._config.fallback_topics,
            start_window_seconds=self._config.fallback_start_window_seconds,
            fragment_length=self._config.session_fragment_length,
            clock=clock,
        )
        self._normalizer = MessageNormalizer(clock=clock)
        self._dedup = Deduplicator(window_ms=self._config.dedup_window_ms)
        self._lifecycle = LifecycleStateMachine(self._logger)

        self._entries: list[NormalizedMessage] = []
        self._listeners: list[MessageListener] = []
        self._update_queues: list[asyncio.Queue[object]] = []
        self._settled = asyncio.Event()
        self._consumer: asyncio.Task[None] | None = None
        self._grace_task: asyncio.Task[None] | None = None
        self._started = False
        self._closed = False
        self._stream_error: BaseException | None = None
        self._stats = {
            "received": 0,
            "uncorrelated": 0,
            "duplicates": 0,
            "appended": 0,
            "failed": 0,
        }

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def identity(self) -> SessionIdentity:
        return self._identity

    @property
    def state(self) -> SessionState:
        """Current lifecycle state."""
        return self._lifecycle.state

    @property
    def transcript(self) -> TranscriptView:
        """Read-only live view of the transcript."""
        return TranscriptView(self._entries)

    @property
    def is_closed(self) -> bool:
        """Whether the session holds no live subscriptions anymore."""
        return self._closed

    @property
    def is_terminal(self) -> bool:
        return self._lifecycle.is_terminal

    @property
    def subscribed_topics(self) -> frozenset[str]:
        """Topics this session currently holds subscriptions for."""
        return frozenset() if self._closed else self._source.topics

    @property
    def stream_error(self) -> BaseException | None:
        """Error that ended the consumption loop early, if any."""
        return self._stream_error

    @property
    def stats(self) -> dict[str, int]:
        """Received, uncorrelated, duplicate, appended and failed event counters."""
        return dict(self._stats)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Acquire subscriptions and begin consuming events.

        When a terminal result was supplied, finishes the session instead
        without touching the transport.

        Raises:
            SubscribeError: A subscription could not be established; any
                subscription acquired before the failure has been released.
            SessionClosedError: The session was already closed.
        """
        if self._closed:
            raise SessionClosedError(
                "Session is closed", details={"tool_id": self._identity.tool_id}
            )
        if self._started:
            return
        self._started = True

        if has_result(self._result):
            self._finish_from_result()
            return

        listen_fallback = self._options.listen_fallback_topics
        if listen_fallback is None:
            listen_fallback = self._config.listen_fallback_topics
        topics = self._correlation.topics_for(self._identity, include_fallback=listen_fallback)

        try:
            await self._source.subscribe(topics)
        except BaseException:
            # Nothing is held after a failed subscribe; allow a retry.
            self._started = False
            raise
        self._consumer = asyncio.create_task(
            self._consume(), name=f"subagent-session-{self._identity.subagent_id}"
        )
        self._logger.info(
            "session_aggregator.opened",
            topics=sorted(topics),
            fallback=listen_fallback,
        )

    async def close(self) -> None:
        """Stop processing and release every subscription. Idempotent.

        Events still in flight are dropped without touching the transcript.

        Raises:
            UnsubscribeError: Some subscriptions failed to release; all
                releases were attempted.
        """
        if self._closed:
            return
        self._closed = True

        current = asyncio.current_task()
        if self._grace_task is not None and self._grace_task is not current:
            self._grace_task.cancel()
        if self._consumer is not None and self._consumer is not current:
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass

        try:
            await self._source.close()
        finally:
            self._settle()
            self._logger.info(
                "session_aggregator.closed",
                state=self.state.value,
                messages=len(self._entries),
                **self._stats,
            )
            if self._on_close is not None:
                self._on_close(self)

    async def __aenter__(self) -> SessionAggregator:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Consumer surface
    # ------------------------------------------------------------------

    def snapshot(self) -> SessionSnapshot:
        """Copy the current state and transcript."""
        return SessionSnapshot(
            identity=self._identity,
            state=self.state,
            transcript=tuple(self._entries),
            closed=self._closed,
        )

    def add_listener(self, listener: MessageListener) -> Callable[[], None]:
        """Call ``listener(message, state)`` after every append.

        Returns:
            A function removing the listener.
        """
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    async def updates(self, *, replay: bool = True) -> AsyncIterator[NormalizedMessage]:
        """Yield transcript appends as they happen, until the session closes.

        Args:
            replay: Yield the messages already in the transcript first.
        """
        queue: asyncio.Queue[object] = asyncio.Queue()
        if replay:
            for message in self._entries:
                queue.put_nowait(message)
        if self._closed:
            queue.put_nowait(_UPDATES_DONE)
        else:
            self._update_queues.append(queue)
        try:
            while True:
                item = await queue.get()
                if item is _UPDATES_DONE:
                    return
                yield item  # type: ignore[misc]
        finally:
            if queue in self._update_queues:
                self._update_queues.remove(queue)

    async def wait_until_terminal(self, timeout: float | None = None) -> SessionState:
        """Wait until the session is terminal or closed.

        Raises:
            TimeoutError: Neither happened within ``timeout`` seconds.
        """
        await asyncio.wait_for(self._settled.wait(), timeout)
        return self.state

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def _consume(self) -> None:
        try:
            async for raw in self._source.stream():
                if self._closed:
                    break
                try:
                    self.process(raw)
                except Exception as exc:
                    self._stats["failed"] += 1
                    self._logger.warning(
                        "session_aggregator.event_failed",
                        topic=raw.topic,
                        error=str(exc),
                        error_type=type(exc).__name__,
                    )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._stream_error = exc
            self._logger.error(
                "session_aggregator.stream_failed",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            self._settle()

    def process(self, raw: RawEvent) -> NormalizedMessage | None:
        """Run one raw event through the pipeline.

        Returns:
            The appended message, or None when the event was dropped.
        """
        if self._closed:
            return None
        self._stats["received"] += 1

        match = self._correlation.match(raw, self._identity)
        if match is None:
            self._stats["uncorrelated"] += 1
            return None

        message = self._normalizer.normalize(raw, confidence=match.confidence)
        if not self._dedup.claim_lifecycle(message.signal, self._identity.tool_id):
            self._stats["duplicates"] += 1
            return None
        if self._dedup.is_duplicate(message):
            self._stats["duplicates"] += 1
            return None

        if message.signal is LifecycleSignal.STARTED:
            self._correlation.note_started(self._identity, raw.received_at)
        self._append(message)
        return message

    def _append(self, message: NormalizedMessage) -> None:
        was_terminal = self._lifecycle.is_terminal
        state = self._lifecycle.apply(message.signal)
        self._entries.append(message)
        self._stats["appended"] += 1

        for queue in self._update_queues:
            queue.put_nowait(message)
        for listener in list(self._listeners):
            try:
                listener(message, state)
            except Exception as exc:
                self._logger.warning(
                    "session_aggregator.listener_failed",
                    error=str(exc),
                    error_type=type(exc).__name__,
                )

        if state.is_terminal and not was_terminal:
            self._on_terminal(state)

    def _on_terminal(self, state: SessionState) -> None:
        self._logger.info(
            "session_aggregator.terminal",
            state=state.value,
            messages=len(self._entries),
        )
        self._settled.set()
        grace = self._config.terminal_grace_seconds
        if grace is not None and self._started and not self._closed:
            self._grace_task = asyncio.create_task(self._close_after(grace))

    async def _close_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        try:
            await self.close()
        except Exception as exc:
            self._logger.warning("session_aggregator.grace_close_failed", error=str(exc))

    def _finish_from_result(self) -> None:
        summary = build_summary_message(self._result, clock=self._clock)
        errored = summary.signal is LifecycleSignal.ERRORED
        self._lifecycle.complete_out_of_band(errored=errored)
        self._entries.append(summary)
        self._stats["appended"] += 1
        self._closed = True
        self._settle()
        self._logger.info(
            "session_aggregator.short_circuit",
            state=self.state.value,
        )

    def _settle(self) -> None:
        self._settled.set()
        for queue in self._update_queues:
            queue.put_nowait(_UPDATES_DONE)
        self._update_queues.clear()


async def open_session(
    bus: MessageBusProtocol,
    identity: SessionIdentity,
    options: OpenOptions | None = None,
    *,
    result: Any = None,
    config: AggregatorConfig | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> SessionAggregator:
    """Open and start a session aggregator for ``identity``.

    Raises:
        SubscribeError: A subscription could not be established.
    """
    aggregator = SessionAggregator(
        identity,
        bus,
        options=options,
        config=config,
        result=result,
        clock=clock,
    )
    await aggregator.start()
    return aggregator
