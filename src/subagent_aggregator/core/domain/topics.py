"""Topic naming for sub-agent lifecycle channels.

The backend publishes sub-agent activity on topics parameterized by the
parent session id (``subagent-started:{parent}`` and friends). A generic
broadcast topic carrying raw stream lines is used as a safety net.
"""

from __future__ import annotations

from enum import Enum

DEFAULT_FALLBACK_TOPICS: tuple[str, ...] = ("claude-output",)

_TOPIC_SEPARATOR = ":"


class SubAgentChannel(str, Enum):
    """Per-session channels published for a delegated sub-agent."""

    STARTED = "subagent-started"
    MESSAGE = "subagent-message"
    OUTPUT = "subagent-output"
    COMPLETE = "subagent-complete"
    ERROR = "subagent-error"

    def topic(self, parent_session_id: str) -> str:
        """Build the concrete topic name for a parent session."""
        return f"{self.value}{_TOPIC_SEPARATOR}{parent_session_id}"


def primary_topics(parent_session_id: str) -> frozenset[str]:
    """Return every per-session topic for ``parent_session_id``."""
    return frozenset(channel.topic(parent_session_id) for channel in SubAgentChannel)


def parse_topic(topic: str) -> tuple[SubAgentChannel, str] | None:
    """Split a per-session topic into its channel and parent session id.

    Returns:
        ``(channel, parent_session_id)`` or None for topics that are not
        per-session sub-agent channels (e.g. broadcast topics).
    """
    prefix, sep, parent_session_id = topic.partition(_TOPIC_SEPARATOR)
    if not sep:
        return None
    try:
        channel = SubAgentChannel(prefix)
    except ValueError:
        return None
    return channel, parent_session_id
