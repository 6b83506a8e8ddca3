"""Multi-topic event source over the pub/sub transport.

Holds one transport subscription per topic and multiplexes every delivery
into a single asyncio queue, so consumers read one stream in arrival order.
All subscriptions are owned by the source and released by ``close()``.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Iterable
from types import TracebackType

import structlog

from subagent_aggregator.core.domain.errors import SubscribeError, UnsubscribeError
from subagent_aggregator.core.domain.events import RawEvent
from subagent_aggregator.core.domain.messaging import MessageEnvelope
from subagent_aggregator.core.interfaces.event_source import EventSourceProtocol
from subagent_aggregator.core.interfaces.messaging import (
    MessageBusProtocol,
    SubscriptionProtocol,
)

logger = structlog.get_logger(__name__)

_END_OF_STREAM = object()


class TopicEventSource(EventSourceProtocol):
    """Scoped subscriptions on several topics, exposed as one RawEvent stream.

    Usage::

        source = TopicEventSource(bus)
        await source.subscribe(["subagent-started:p1", "claude-output"])
        try:
            async for raw in source.stream():
                ...
        finally:
            await source.close()
    """

    def __init__(self, bus: MessageBusProtocol, *, source_name: str = "subagent-topics") -> None:
        self._bus = bus
        self._source_name = source_name
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._subscriptions: dict[str, SubscriptionProtocol] = {}
        self._closed = False

    @property
    def source_name(self) -> str:
        """Name identifying this event source in logs."""
        return self._source_name

    @property
    def is_open(self) -> bool:
        """Whether the source holds live subscriptions."""
        return bool(self._subscriptions) and not self._closed

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def topics(self) -> frozenset[str]:
        """Topics currently subscribed."""
        return frozenset(self._subscriptions)

    async def subscribe(self, topics: Iterable[str]) -> None:
        """Acquire a subscription for every topic not yet subscribed.

        Args:
            topics: Topic names; duplicates and already-held topics are skipped.

        Raises:
            SubscribeError: A subscription failed. Subscriptions acquired by
                this call have been released; earlier ones are kept.
        """
        if self._closed:
            raise SubscribeError("Event source is closed", topic="")

        pending = [t for t in dict.fromkeys(topics) if t not in self._subscriptions]
        acquired: list[SubscriptionProtocol] = []
        current = ""
        try:
            for current in pending:
                acquired.append(await self._bus.subscribe(current, self._deliver))
        except asyncio.CancelledError:
            await self._release(acquired)
            raise
        except Exception as exc:
            await self._release(acquired)
            logger.error(
                "event_source.subscribe_failed",
                source=self._source_name,
                topic=current,
                released=len(acquired),
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise SubscribeError(
                f"Failed to subscribe to '{current}': {exc}",
                topic=current,
                released=len(acquired),
            ) from exc

        for subscription in acquired:
            self._subscriptions[subscription.topic] = subscription
        logger.info(
            "event_source.subscribed",
            source=self._source_name,
            topics=sorted(self._subscriptions),
        )

    async def stream(self) -> AsyncIterator[RawEvent]:
        """Yield received events in arrival order until the source is closed.

        Events still queued when ``close()`` runs are dropped.
        """
        while not self._closed:
            item = await self._queue.get()
            if item is _END_OF_STREAM or self._closed:
                return
            yield item  # type: ignore[misc]

    async def close(self) -> None:
        """Release every subscription and end the stream.

        Raises:
            UnsubscribeError: Some subscriptions failed to release. Every
                release is attempted before this is raised.
        """
        if self._closed:
            return
        self._closed = True
        subscriptions = list(self._subscriptions.values())
        self._subscriptions.clear()
        self._queue.put_nowait(_END_OF_STREAM)

        failed = await self._release(subscriptions)
        logger.info(
            "event_source.closed",
            source=self._source_name,
            released=len(subscriptions) - len(failed),
            failed=len(failed),
        )
        if failed:
            raise UnsubscribeError(
                f"Failed to release {len(failed)} subscription(s)",
                topics=failed,
            )

    async def __aenter__(self) -> TopicEventSource:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    def _deliver(self, envelope: MessageEnvelope) -> None:
        if self._closed:
            return
        self._queue.put_nowait(RawEvent.from_envelope(envelope))

    async def _release(self, subscriptions: Iterable[SubscriptionProtocol]) -> list[str]:
        """Release subscriptions, returning the topics that failed."""
        failed: list[str] = []
        for subscription in subscriptions:
            try:
                await self._bus.unsubscribe(subscription)
            except Exception as exc:
                failed.append(subscription.topic)
                logger.warning(
                    "event_source.unsubscribe_failed",
                    source=self._source_name,
                    topic=subscription.topic,
                    error=str(exc),
                )
        return failed
