"""Domain-specific exception types for the sub-agent session aggregator.

Only transport and lifecycle-management failures are raised. Malformed
payloads and correlation misses are handled locally by the pipeline and
never surface as exceptions; sub-agent reported errors are data, not faults.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass
class AggregatorError(Exception):
    """Base exception for aggregator domain errors."""

    message: str
    code: str = "aggregator_error"
    details: dict[str, Any] | None = None

    def __post_init__(self) -> None:
        super().__init__(self.message)
        if self.details is None:
            self.details = {}


class TransportError(AggregatorError):
    """Error raised when the pub/sub transport rejects an operation."""

    def __init__(
        self,
        message: str,
        *,
        topic: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        details = dict(details or {})
        if topic:
            details.setdefault("topic", topic)
        self.topic = topic
        super().__init__(message=message, code="transport_error", details=details)


class SubscribeError(AggregatorError):
    """Error raised when a topic subscription cannot be established.

    By the time this propagates, every subscription acquired earlier in the
    same ``subscribe`` call has already been released.
    """

    def __init__(
        self,
        message: str,
        *,
        topic: str,
        released: int = 0,
        details: dict[str, Any] | None = None,
    ) -> None:
        details = dict(details or {})
        details.setdefault("topic", topic)
        details.setdefault("released", released)
        self.topic = topic
        self.released = released
        super().__init__(message=message, code="subscribe_error", details=details)


class UnsubscribeError(AggregatorError):
    """Error raised when one or more subscriptions failed to release."""

    def __init__(
        self,
        message: str,
        *,
        topics: list[str],
        details: dict[str, Any] | None = None,
    ) -> None:
        details = dict(details or {})
        details.setdefault("topics", list(topics))
        self.topics = list(topics)
        super().__init__(message=message, code="unsubscribe_error", details=details)


class SessionClosedError(AggregatorError):
    """Error raised when an operation requires an open session."""

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message=message, code="session_closed", details=details)


class SessionAlreadyOpenError(AggregatorError):
    """Error raised when a registry already tracks the requested identity."""

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message=message, code="session_already_open", details=details)


class ConfigError(AggregatorError):
    """Error raised for configuration failures."""

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message=message, code="config_error", details=details)
