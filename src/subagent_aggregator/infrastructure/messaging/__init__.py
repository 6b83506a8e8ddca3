"""Message bus implementations."""

from subagent_aggregator.infrastructure.messaging.in_memory_bus import (
    InMemoryMessageBus,
    Subscription,
)

__all__ = ["InMemoryMessageBus", "Subscription"]
