"""Protocol definitions for the pub/sub transport."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, Protocol

from subagent_aggregator.core.domain.messaging import MessageEnvelope

EnvelopeListener = Callable[[MessageEnvelope], None]


class SubscriptionProtocol(Protocol):
    """Handle for one live topic subscription."""

    @property
    def subscription_id(self) -> str:
        """Transport-unique id of this subscription."""
        ...

    @property
    def topic(self) -> str:
        """Topic this subscription listens on."""
        ...


class MessageBusProtocol(Protocol):
    """Protocol for broadcast message bus implementations.

    Every subscriber of a topic receives every envelope published on it
    after the subscription was established. Subscriptions are tracked per
    subscriber, so releasing one never silences another subscriber of the
    same topic.
    """

    async def publish(
        self,
        topic: str,
        payload: Any,
        *,
        headers: dict[str, Any] | None = None,
        message_id: str | None = None,
    ) -> MessageEnvelope:
        """Publish a payload to a topic."""
        ...

    async def subscribe(self, topic: str, listener: EnvelopeListener) -> SubscriptionProtocol:
        """Register ``listener`` for envelopes published on ``topic``."""
        ...

    async def unsubscribe(self, subscription: SubscriptionProtocol) -> None:
        """Release a subscription obtained from :meth:`subscribe`."""
        ...

    def subscriber_count(self, topic: str) -> int:
        """Number of live subscriptions on ``topic``."""
        ...
