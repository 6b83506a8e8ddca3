"""Process-wide logging setup for hosts embedding the aggregator."""

from __future__ import annotations

import logging

import structlog

from subagent_aggregator.core.domain.config_schema import AggregatorConfig

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def resolve_log_level(level: str | int) -> int:
    """Map a level name (any case) or number to a ``logging`` level.

    Unknown names fall back to INFO.
    """
    if isinstance(level, int):
        return level
    return _LEVELS.get(level.upper(), logging.INFO)


def configure_logging(level: str | int = "INFO") -> int:
    """Configure stdlib logging and structlog with the same level.

    Returns:
        The numeric level applied.
    """
    log_level = resolve_log_level(level)

    logging.basicConfig(level=log_level, format="%(message)s")
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
    )
    return log_level


def configure_logging_from_config(config: AggregatorConfig) -> int:
    """Apply ``config.log_level``, which already carries any ``LOGLEVEL`` override."""
    return configure_logging(config.log_level)
