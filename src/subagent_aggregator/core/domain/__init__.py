"""
Domain Models

This package contains the core domain models of the aggregator:
- Session identity and lifecycle state
- Raw events and the payload shapes they carry
- The canonical normalized message schema
- Topic naming, configuration schema and errors
"""

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
from subagent_aggregator.core.domain.session import (
    LifecycleSignal,
    SessionIdentity,
    SessionState,
)
from subagent_aggregator.core.domain.topics import SubAgentChannel, primary_topics
from subagent_aggregator.core.domain.lifecycle import LifecycleStateMachine, StateTransition

__all__ = [
    "GenericPayload",
    "LifecycleSignal",
    "LifecycleStateMachine",
    "MatchConfidence",
    "MessageKind",
    "MessageSubtype",
    "NestedMessagePayload",
    "NormalizedMessage",
    "Provenance",
    "RawEvent",
    "RawPayload",
    "SessionIdentity",
    "SessionState",
    "StateTransition",
    "StreamMessagePayload",
    "StringPayload",
    "SubAgentChannel",
    "primary_topics",
]
