"""
Session Registry
================

Typed registry of open session aggregators, keyed by ``SessionIdentity``.

Several sessions of the same parent share per-session topics. Every session
holds its own transport subscription, so topic reference counting falls out
of the bus bookkeeping: a topic stays subscribed while at least one session
still holds it, and closing one session never tears down another's stream.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from datetime import datetime
from types import TracebackType
from typing import Any

import structlog

from subagent_aggregator.application.session_aggregator import OpenOptions, SessionAggregator
from subagent_aggregator.core.domain.config_schema import AggregatorConfig
from subagent_aggregator.core.domain.errors import SessionAlreadyOpenError, UnsubscribeError
from subagent_aggregator.core.domain.session import SessionIdentity
from subagent_aggregator.core.interfaces.messaging import MessageBusProtocol
from subagent_aggregator.core.utils.time import utc_now

logger = structlog.get_logger(__name__)


class SessionRegistry:
    """Open, look up and close session aggregators for many sub-agents.

    Usage::

        async with SessionRegistry(bus, config) as registry:
            session = await registry.open(SessionIdentity("p1", "tool_a"))
            ...
    """

    def __init__(
        self,
        bus: MessageBusProtocol,
        config: AggregatorConfig | None = None,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._bus = bus
        self._config = config or AggregatorConfig()
        self._clock = clock
        self._sessions: dict[SessionIdentity, SessionAggregator] = {}

    async def open(
        self,
        identity: SessionIdentity,
        options: OpenOptions | None = None,
        *,
        result: Any = None,
    ) -> SessionAggregator:
        """Open a session for ``identity`` and track it until it closes.

        Sessions finished from a supplied ``result`` hold no subscriptions
        and are returned without being tracked.

        Raises:
            SessionAlreadyOpenError: A session for ``identity`` is still open.
            SubscribeError: A subscription could not be established.
        """
        if identity in self._sessions:
            raise SessionAlreadyOpenError(
                f"Session already open for {identity.subagent_id}",
                details=identity.to_dict(),
            )

        session = SessionAggregator(
            identity,
            self._bus,
            options=options,
            config=self._config,
            result=result,
            on_close=self._forget,
            clock=self._clock,
        )
        # Reserve the slot before awaiting so concurrent opens collide.
        self._sessions[identity] = session
        try:
            await session.start()
        except BaseException:
            self._sessions.pop(identity, None)
            raise

        if session.is_closed:
            self._sessions.pop(identity, None)
        logger.debug(
            "session_registry.opened",
            subagent_id=identity.subagent_id,
            tracked=identity in self._sessions,
            open_sessions=len(self._sessions),
        )
        return session

    def get(self, identity: SessionIdentity) -> SessionAggregator | None:
        """Return the open session for ``identity``, if any."""
        return self._sessions.get(identity)

    async def close(self, identity: SessionIdentity) -> bool:
        """Close the session for ``identity``.

        Returns:
            True if a session was open and has been closed.

        Raises:
            UnsubscribeError: Some of its subscriptions failed to release.
        """
        session = self._sessions.get(identity)
        if session is None:
            return False
        await session.close()
        return True

    async def close_all(self) -> None:
        """Close every open session, attempting all before reporting failures.

        Raises:
            UnsubscribeError: Listing every topic that failed to release.
        """
        failed: list[str] = []
        for session in list(self._sessions.values()):
            try:
                await session.close()
            except UnsubscribeError as exc:
                failed.extend(exc.topics)
        if failed:
            raise UnsubscribeError(
                f"Failed to release {len(failed)} subscription(s)",
                topics=failed,
            )

    def topic_refcount(self, topic: str) -> int:
        """Number of tracked sessions currently holding ``topic``."""
        return sum(1 for session in self._sessions.values() if topic in session.subscribed_topics)

    def identities(self) -> list[SessionIdentity]:
        return list(self._sessions)

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, identity: object) -> bool:
        return identity in self._sessions

    def __iter__(self) -> Iterator[SessionAggregator]:
        return iter(list(self._sessions.values()))

    async def __aenter__(self) -> SessionRegistry:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close_all()

    def _forget(self, session: SessionAggregator) -> None:
        if self._sessions.get(session.identity) is session:
            del self._sessions[session.identity]
            logger.debug(
                "session_registry.closed",
                subagent_id=session.identity.subagent_id,
                open_sessions=len(self._sessions),
            )
