"""Event Source Protocol for inbound sub-agent activity.

Defines the contract for components that hold live subscriptions on the
pub/sub transport and multiplex them into one ordered stream of RawEvents.
"""

from collections.abc import AsyncIterator, Iterable
from typing import Protocol

from subagent_aggregator.core.domain.events import RawEvent


class EventSourceProtocol(Protocol):
    """Protocol for scoped, multi-topic event sources.

    Lifecycle:
        1. Source is created with a transport
        2. subscribe() acquires one subscription per topic
        3. stream() yields RawEvents in arrival order
        4. close() releases every subscription and ends the stream
    """

    @property
    def source_name(self) -> str:
        """Name identifying this event source in logs.

        Returns:
            Source name string.
        """
        ...

    @property
    def is_open(self) -> bool:
        """Whether the source currently holds subscriptions.

        Returns:
            True between a successful subscribe() and close().
        """
        ...

    @property
    def topics(self) -> frozenset[str]:
        """Topics currently subscribed."""
        ...

    async def subscribe(self, topics: Iterable[str]) -> None:
        """Acquire subscriptions for every topic.

        Either all topics are subscribed or none are: on failure, any
        subscription already acquired is released before the error
        propagates.
        """
        ...

    def stream(self) -> AsyncIterator[RawEvent]:
        """Yield received events in arrival order until closed."""
        ...

    async def close(self) -> None:
        """Release every subscription and end the stream."""
        ...
