"""
Lifecycle State Machine for observed sub-agent sessions.

Tracks ``Idle → Starting → Active → Completed | Errored``. Terminal states
are sticky: late stragglers may still reach the transcript, but the state
never moves backward out of ``Completed`` or ``Errored``, and the first
terminal state reached wins.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from subagent_aggregator.core.domain.session import LifecycleSignal, SessionState
from subagent_aggregator.core.interfaces.logging import LoggerProtocol
from subagent_aggregator.core.utils.time import utc_now

_TRANSITIONS: dict[tuple[SessionState, LifecycleSignal], SessionState] = {
    (SessionState.IDLE, LifecycleSignal.STARTED): SessionState.STARTING,
    (SessionState.IDLE, LifecycleSignal.MESSAGE): SessionState.ACTIVE,
    (SessionState.IDLE, LifecycleSignal.COMPLETED): SessionState.COMPLETED,
    (SessionState.IDLE, LifecycleSignal.ERRORED): SessionState.ERRORED,
    (SessionState.STARTING, LifecycleSignal.MESSAGE): SessionState.ACTIVE,
    (SessionState.STARTING, LifecycleSignal.COMPLETED): SessionState.COMPLETED,
    (SessionState.STARTING, LifecycleSignal.ERRORED): SessionState.ERRORED,
    (SessionState.ACTIVE, LifecycleSignal.MESSAGE): SessionState.ACTIVE,
    (SessionState.ACTIVE, LifecycleSignal.COMPLETED): SessionState.COMPLETED,
    (SessionState.ACTIVE, LifecycleSignal.ERRORED): SessionState.ERRORED,
}


@dataclass(frozen=True)
class StateTransition:
    """A recorded state change."""

    previous: SessionState
    current: SessionState
    signal: LifecycleSignal
    at: datetime


class LifecycleStateMachine:
    """
    Own and mutate the lifecycle state of one session.

    Signals with no entry in the transition table leave the state unchanged
    (a repeated start while active, anything after a terminal state).
    """

    def __init__(self, logger: LoggerProtocol) -> None:
        """
        Initialize the state machine in ``Idle``.

        Args:
            logger: Logger for transition and ignored-signal records
        """
        self._logger = logger
        self._state = SessionState.IDLE
        self._history: list[StateTransition] = []

    @property
    def state(self) -> SessionState:
        """Current lifecycle state."""
        return self._state

    @property
    def is_terminal(self) -> bool:
        return self._state.is_terminal

    @property
    def history(self) -> tuple[StateTransition, ...]:
        """Every transition applied so far, oldest first."""
        return tuple(self._history)

    def apply(self, signal: LifecycleSignal) -> SessionState:
        """
        Apply a lifecycle signal from an accepted message.

        Args:
            signal: Lifecycle meaning of the accepted message

        Returns:
            The state after applying the signal
        """
        target = _TRANSITIONS.get((self._state, signal))
        if target is None:
            if self._state.is_terminal:
                self._logger.debug(
                    "lifecycle.signal_after_terminal",
                    state=self._state.value,
                    signal=signal.value,
                )
            return self._state
        if target is not self._state:
            self._record(signal, target)
        return self._state

    def complete_out_of_band(self, *, errored: bool = False) -> SessionState:
        """
        Drive the construction-time fast path for an already-finished delegation.

        Passes through ``Starting`` before landing in the terminal state, as a
        live session would.

        Args:
            errored: Land in ``Errored`` instead of ``Completed``

        Returns:
            The resulting terminal state (unchanged if already terminal)
        """
        self.apply(LifecycleSignal.STARTED)
        return self.apply(LifecycleSignal.ERRORED if errored else LifecycleSignal.COMPLETED)

    def _record(self, signal: LifecycleSignal, target: SessionState) -> None:
        transition = StateTransition(
            previous=self._state,
            current=target,
            signal=signal,
            at=utc_now(),
        )
        self._history.append(transition)
        self._state = target
        self._logger.info(
            "lifecycle.transition",
            previous=transition.previous.value,
            current=transition.current.value,
            signal=signal.value,
        )
