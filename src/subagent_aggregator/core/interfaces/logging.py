"""
Logger port for domain components.

Domain objects such as the lifecycle state machine receive their logger
from the application layer (a bound structlog logger at runtime) instead of
reaching for a module-level logger themselves.
"""

from typing import Any, Protocol


class LoggerProtocol(Protocol):
    """Structured, event-name-first logger."""

    def info(self, event: str, **kwargs: Any) -> None:
        """Record a state change worth keeping."""
        ...

    def warning(self, event: str, **kwargs: Any) -> None:
        """Record a recovered problem."""
        ...

    def error(self, event: str, **kwargs: Any) -> None:
        """Record a failure surfaced to the caller."""
        ...

    def debug(self, event: str, **kwargs: Any) -> None:
        """Record pipeline detail (drops, ignored signals)."""
        ...
