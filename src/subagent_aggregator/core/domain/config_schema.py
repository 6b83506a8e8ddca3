"""
Configuration Schema Validation

Pydantic models for validating aggregator configuration.
Provides clear error messages with file and field context.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from subagent_aggregator.core.domain.topics import DEFAULT_FALLBACK_TOPICS, parse_topic

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class AggregatorConfig(BaseModel):
    """
    Schema for aggregator configuration.

    Tunes the fallback topics, the deduplication window, the heuristic
    correlation window and teardown behavior.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    fallback_topics: list[str] = Field(
        default_factory=lambda: list(DEFAULT_FALLBACK_TOPICS),
        description="Broadcast topics used as a low-confidence safety net",
    )
    listen_fallback_topics: bool = Field(
        True,
        description="Subscribe to fallback topics unless overridden per open()",
    )
    dedup_window_ms: int = Field(
        100,
        gt=0,
        le=60_000,
        description="Timestamp bucket width for duplicate detection",
    )
    fallback_start_window_seconds: float = Field(
        5.0,
        ge=0.0,
        description="Accept broadcast events this long after an accepted start",
    )
    session_fragment_length: int = Field(
        8,
        ge=4,
        le=128,
        description="Length of the parent session id prefix matched in broadcast text",
    )
    terminal_grace_seconds: Optional[float] = Field(
        5.0,
        ge=0.0,
        description="Release subscriptions this long after a terminal state (None = never)",
    )
    log_level: str = Field(
        "INFO",
        description="Log level for configure_logging()",
    )

    @field_validator("fallback_topics")
    @classmethod
    def validate_fallback_topics(cls, v: list[str]) -> list[str]:
        """Fallback topics must be non-empty broadcast names."""
        validated = []
        for i, topic in enumerate(v):
            if not topic or not topic.strip():
                raise ValueError(f"fallback_topics[{i}]: topic name must not be empty")
            if parse_topic(topic) is not None:
                raise ValueError(
                    f"fallback_topics[{i}]: '{topic}' is a per-session topic, "
                    f"not a broadcast topic"
                )
            validated.append(topic.strip())
        return validated

    @field_validator("log_level", mode="before")
    @classmethod
    def validate_log_level(cls, v: Any) -> str:
        level = str(v).upper()
        if level not in _LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(_LOG_LEVELS)}, got {v!r}")
        return level


class ConfigValidationError(Exception):
    """
    Error raised when configuration validation fails.

    Includes file path and detailed error message.
    """

    def __init__(
        self,
        message: str,
        file_path: Optional[Path] = None,
        field_path: Optional[str] = None,
    ):
        self.file_path = file_path
        self.field_path = field_path

        parts = []
        if file_path:
            parts.append(f"File: {file_path}")
        if field_path:
            parts.append(f"Field: {field_path}")
        parts.append(message)

        super().__init__(" | ".join(parts))


def validate_aggregator_config(
    data: dict[str, Any],
    file_path: Optional[Path] = None,
) -> AggregatorConfig:
    """
    Validate aggregator configuration data.

    Args:
        data: Parsed configuration mapping
        file_path: Source file, reported in the error

    Returns:
        Validated AggregatorConfig

    Raises:
        ConfigValidationError: With the dotted path of the first offending field
    """
    try:
        return AggregatorConfig.model_validate(data)
    except ValidationError as e:
        errors = e.errors()
        field_path = ".".join(str(part) for part in errors[0]["loc"]) if errors else None
        raise ConfigValidationError(
            "; ".join(error["msg"] for error in errors) or str(e),
            file_path=file_path,
            field_path=field_path or None,
        ) from e
