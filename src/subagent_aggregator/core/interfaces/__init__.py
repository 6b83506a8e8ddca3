"""
Core Protocol Interfaces

Protocols for the external collaborators of the aggregator: the pub/sub
transport, the scoped event source built on top of it, and logging.

Usage:
    from subagent_aggregator.core.interfaces import MessageBusProtocol

    async def watch(bus: MessageBusProtocol) -> None:
        # Aggregator code depends on the protocol, not a concrete bus
        ...
"""

from subagent_aggregator.core.interfaces.event_source import EventSourceProtocol
from subagent_aggregator.core.interfaces.logging import LoggerProtocol
from subagent_aggregator.core.interfaces.messaging import (
    EnvelopeListener,
    MessageBusProtocol,
    SubscriptionProtocol,
)

__all__ = [
    "EnvelopeListener",
    "EventSourceProtocol",
    "LoggerProtocol",
    "MessageBusProtocol",
    "SubscriptionProtocol",
]
