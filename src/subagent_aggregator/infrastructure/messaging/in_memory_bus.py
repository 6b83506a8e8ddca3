"""In-memory broadcast message bus for local coordination and tests."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any
from uuid import uuid4

import structlog

from subagent_aggregator.core.domain.errors import TransportError
from subagent_aggregator.core.domain.messaging import MessageEnvelope
from subagent_aggregator.core.interfaces.messaging import (
    EnvelopeListener,
    MessageBusProtocol,
    SubscriptionProtocol,
)

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Subscription:
    """Handle returned by :meth:`InMemoryMessageBus.subscribe`."""

    subscription_id: str
    topic: str


class InMemoryMessageBus(MessageBusProtocol):
    """Broadcast bus: every live subscriber of a topic gets every envelope.

    Envelopes published while a topic has no subscribers are dropped; the
    bus does not buffer. Listeners run synchronously inside ``publish`` in
    subscription order.
    """

    def __init__(self) -> None:
        self._listeners: dict[str, dict[str, EnvelopeListener]] = {}
        self._published = 0

    @property
    def published_count(self) -> int:
        """Number of envelopes published so far."""
        return self._published

    async def publish(
        self,
        topic: str,
        payload: Any,
        *,
        headers: dict[str, Any] | None = None,
        message_id: str | None = None,
    ) -> MessageEnvelope:
        envelope = MessageEnvelope(
            message_id=message_id or uuid4().hex,
            topic=topic,
            payload=payload,
            headers=headers or {},
        )
        self._published += 1
        # Snapshot: listeners may unsubscribe while being notified.
        for subscription_id, listener in list(self._listeners.get(topic, {}).items()):
            try:
                listener(envelope)
            except Exception as exc:
                logger.warning(
                    "message_bus.listener_failed",
                    topic=topic,
                    subscription_id=subscription_id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
        return envelope

    async def subscribe(self, topic: str, listener: EnvelopeListener) -> Subscription:
        if not topic:
            raise TransportError("Cannot subscribe to an empty topic name")
        subscription = Subscription(subscription_id=uuid4().hex, topic=topic)
        self._listeners.setdefault(topic, {})[subscription.subscription_id] = listener
        logger.debug(
            "message_bus.subscribed",
            topic=topic,
            subscription_id=subscription.subscription_id,
            subscribers=self.subscriber_count(topic),
        )
        return subscription

    async def unsubscribe(self, subscription: SubscriptionProtocol) -> None:
        listeners = self._listeners.get(subscription.topic)
        if not listeners or subscription.subscription_id not in listeners:
            return
        del listeners[subscription.subscription_id]
        if not listeners:
            del self._listeners[subscription.topic]
        logger.debug(
            "message_bus.unsubscribed",
            topic=subscription.topic,
            subscription_id=subscription.subscription_id,
            subscribers=self.subscriber_count(subscription.topic),
        )

    def subscriber_count(self, topic: str) -> int:
        return len(self._listeners.get(topic, {}))

    def topics(self) -> list[str]:
        """Topics with at least one live subscriber."""
        return sorted(self._listeners)
