"""Session identity and lifecycle state for a delegated sub-agent."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


@dataclass(frozen=True)
class SessionIdentity:
    """Logical key for one delegated sub-agent invocation.

    Attributes:
        parent_session_id: Session id of the process that delegated the work.
        tool_id: Tool-use id of the delegation inside the parent session.
    """

    parent_session_id: str
    tool_id: str

    @property
    def subagent_id(self) -> str:
        """Composite id in the ``{parent}:{tool}`` form used by the backend."""
        return f"{self.parent_session_id}:{self.tool_id}"

    def to_dict(self) -> dict[str, str]:
        """Serialize the identity for logs and snapshots."""
        return {
            "parent_session_id": self.parent_session_id,
            "tool_id": self.tool_id,
        }


class SessionState(str, Enum):
    """Lifecycle status of an observed sub-agent session."""

    IDLE = "idle"
    STARTING = "starting"
    ACTIVE = "active"
    COMPLETED = "completed"
    ERRORED = "errored"

    @property
    def is_terminal(self) -> bool:
        """Whether no further transition can leave this state."""
        return self in (SessionState.COMPLETED, SessionState.ERRORED)


class LifecycleSignal(str, Enum):
    """What an accepted message means for the session lifecycle."""

    STARTED = "started"
    MESSAGE = "message"
    COMPLETED = "completed"
    ERRORED = "errored"
