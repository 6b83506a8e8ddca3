"""Shared UTC time helpers.

Provides a single ``utc_now`` function so that every module that needs the
current UTC timestamp uses the same implementation, plus a tolerant parser
for the timestamp fields producers attach to sub-agent payloads.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

# Epoch values above this are taken to be milliseconds (year ~5138 in seconds).
_EPOCH_MILLIS_THRESHOLD = 1e11


def utc_now() -> datetime:
    """Return the current UTC timestamp."""
    return datetime.now(UTC)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse a producer-supplied timestamp.

    Accepts ISO-8601 strings (including a trailing ``Z``), epoch seconds and
    epoch milliseconds. Naive values are interpreted as UTC.

    Returns:
        An aware datetime, or None when the value cannot be interpreted.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        seconds = value / 1000 if abs(value) > _EPOCH_MILLIS_THRESHOLD else value
        try:
            return datetime.fromtimestamp(seconds, UTC)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith(("Z", "z")):
            text = f"{text[:-1]}+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed
