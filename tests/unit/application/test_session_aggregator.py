"""Tests for SessionAggregator."""

import asyncio
from collections.abc import AsyncIterator
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from subagent_aggregator.application.session_aggregator import (
    OpenOptions,
    SessionAggregator,
    TranscriptView,
    open_session,
)
from subagent_aggregator.core.domain.config_schema import AggregatorConfig
from subagent_aggregator.core.domain.errors import SessionClosedError, SubscribeError
from subagent_aggregator.core.domain.events import RawEvent
from subagent_aggregator.core.domain.messages import MatchConfidence, MessageKind
from subagent_aggregator.core.domain.session import SessionIdentity, SessionState
from subagent_aggregator.core.domain.topics import SubAgentChannel
from subagent_aggregator.core.interfaces.messaging import EnvelopeListener
from subagent_aggregator.infrastructure.messaging import InMemoryMessageBus, Subscription


async def flush() -> None:
    """Let the consumer task drain everything already published."""
    for _ in range(20):
        await asyncio.sleep(0)


def topic(channel: SubAgentChannel, identity: SessionIdentity) -> str:
    return channel.topic(identity.parent_session_id)


def text_message(identity: SessionIdentity, text: str) -> dict[str, Any]:
    return {"tool_id": identity.tool_id, "message": {"type": "assistant", "message": text}}


@pytest.fixture
async def session(
    bus: InMemoryMessageBus,
    identity: SessionIdentity,
    config: AggregatorConfig,
    clock: Any,
) -> AsyncIterator[SessionAggregator]:
    aggregator = await open_session(bus, identity, config=config, clock=clock)
    yield aggregator
    await aggregator.close()


class TestOpenAndClose:
    async def test_subscribes_primary_and_fallback_topics(
        self, session: SessionAggregator, bus: InMemoryMessageBus, identity: SessionIdentity
    ) -> None:
        assert len(session.subscribed_topics) == 6
        assert bus.subscriber_count("claude-output") == 1
        assert bus.subscriber_count(topic(SubAgentChannel.ERROR, identity)) == 1
        assert session.state is SessionState.IDLE

    async def test_fallback_can_be_disabled_per_open(
        self, bus: InMemoryMessageBus, identity: SessionIdentity, config: AggregatorConfig
    ) -> None:
        session = await open_session(
            bus, identity, OpenOptions(listen_fallback_topics=False), config=config
        )
        assert "claude-output" not in session.subscribed_topics
        assert len(session.subscribed_topics) == 5
        await session.close()

    async def test_close_releases_every_subscription(
        self, session: SessionAggregator, bus: InMemoryMessageBus
    ) -> None:
        await session.close()
        assert bus.topics() == []
        assert session.is_closed
        assert session.subscribed_topics == frozenset()

    async def test_close_is_idempotent(self, session: SessionAggregator) -> None:
        await session.close()
        await session.close()

    async def test_start_after_close_fails(self, session: SessionAggregator) -> None:
        await session.close()
        with pytest.raises(SessionClosedError):
            await session.start()

    async def test_async_context_manager(
        self, bus: InMemoryMessageBus, identity: SessionIdentity, config: AggregatorConfig
    ) -> None:
        async with SessionAggregator(identity, bus, config=config) as session:
            assert bus.subscriber_count("claude-output") == 1
        assert session.is_closed
        assert bus.topics() == []

    async def test_subscribe_failure_leaves_nothing_subscribed(
        self, identity: SessionIdentity, config: AggregatorConfig
    ) -> None:
        bus = InMemoryMessageBus()
        original = bus.subscribe
        calls: list[str] = []

        async def failing_subscribe(name: str, listener: EnvelopeListener) -> Subscription:
            calls.append(name)
            if len(calls) == 3:
                raise ConnectionError("transport down")
            return await original(name, listener)

        bus.subscribe = failing_subscribe  # type: ignore[method-assign]

        with pytest.raises(SubscribeError) as exc_info:
            await open_session(bus, identity, config=config)

        assert exc_info.value.released == 2
        assert bus.topics() == []

    async def test_start_can_be_retried_after_subscribe_failure(
        self, identity: SessionIdentity, config: AggregatorConfig
    ) -> None:
        bus = InMemoryMessageBus()
        original = bus.subscribe
        failed: list[str] = []

        async def flaky_subscribe(name: str, listener: EnvelopeListener) -> Subscription:
            if name == "claude-output" and not failed:
                failed.append(name)
                raise ConnectionError("transport down")
            return await original(name, listener)

        bus.subscribe = flaky_subscribe  # type: ignore[method-assign]
        session = SessionAggregator(identity, bus, config=config)

        with pytest.raises(SubscribeError):
            await session.start()
        assert bus.topics() == []

        await session.start()
        try:
            assert len(session.subscribed_topics) == 6
            assert bus.subscriber_count("claude-output") == 1

            await bus.publish(
                topic(SubAgentChannel.MESSAGE, identity), text_message(identity, "live")
            )
            await flush()
            assert [m.text for m in session.transcript] == ["live"]
        finally:
            await session.close()
        assert bus.topics() == []


class TestPipeline:
    async def test_lifecycle_and_transcript(
        self,
        session: SessionAggregator,
        bus: InMemoryMessageBus,
        identity: SessionIdentity,
    ) -> None:
        await bus.publish(
            topic(SubAgentChannel.STARTED, identity),
            {"tool_id": identity.tool_id, "description": "Audit"},
        )
        await flush()
        assert session.state is SessionState.STARTING

        await bus.publish(topic(SubAgentChannel.MESSAGE, identity), text_message(identity, "step"))
        await flush()
        assert session.state is SessionState.ACTIVE

        await bus.publish(topic(SubAgentChannel.COMPLETE, identity), {"tool_id": identity.tool_id})
        await flush()
        assert session.state is SessionState.COMPLETED
        assert [m.text for m in session.transcript] == [
            "Sub-agent started: Audit",
            "step",
            "Sub-agent task completed",
        ]

    async def test_duplicate_across_topics_appended_once(
        self,
        session: SessionAggregator,
        bus: InMemoryMessageBus,
        identity: SessionIdentity,
    ) -> None:
        payload = text_message(identity, "same")
        await bus.publish(topic(SubAgentChannel.MESSAGE, identity), payload)
        await bus.publish("claude-output", payload)
        await flush()

        assert len(session.transcript) == 1
        assert session.transcript[0].provenance.confidence is MatchConfidence.EXACT
        assert session.stats["duplicates"] == 1

    async def test_repeated_start_and_complete_are_claimed_once(
        self,
        session: SessionAggregator,
        bus: InMemoryMessageBus,
        identity: SessionIdentity,
        clock: Any,
    ) -> None:
        started = {"tool_id": identity.tool_id, "description": "x"}
        await bus.publish(topic(SubAgentChannel.STARTED, identity), started)
        await flush()
        clock.advance(10)
        await bus.publish(topic(SubAgentChannel.STARTED, identity), started)
        await bus.publish(topic(SubAgentChannel.COMPLETE, identity), {"tool_id": identity.tool_id})
        await bus.publish(topic(SubAgentChannel.COMPLETE, identity), {"tool_id": identity.tool_id})
        await flush()

        assert [m.text for m in session.transcript] == [
            "Sub-agent started: x",
            "Sub-agent task completed",
        ]

    async def test_sibling_events_are_ignored(
        self,
        session: SessionAggregator,
        bus: InMemoryMessageBus,
        identity: SessionIdentity,
    ) -> None:
        await bus.publish(
            topic(SubAgentChannel.MESSAGE, identity),
            {"tool_id": "toolu_other", "message": {"message": "not mine"}},
        )
        await flush()
        assert len(session.transcript) == 0
        assert session.stats["uncorrelated"] == 1
        assert session.state is SessionState.IDLE

    async def test_error_channel_drives_errored(
        self,
        session: SessionAggregator,
        bus: InMemoryMessageBus,
        identity: SessionIdentity,
    ) -> None:
        await bus.publish(topic(SubAgentChannel.MESSAGE, identity), text_message(identity, "a"))
        await bus.publish(
            topic(SubAgentChannel.ERROR, identity),
            {"tool_id": identity.tool_id, "error": "quota exceeded"},
        )
        await flush()
        assert session.state is SessionState.ERRORED
        assert session.transcript[-1].text == "quota exceeded"

    async def test_late_straggler_keeps_terminal_state(
        self,
        session: SessionAggregator,
        bus: InMemoryMessageBus,
        identity: SessionIdentity,
        clock: Any,
    ) -> None:
        await bus.publish(topic(SubAgentChannel.COMPLETE, identity), {"tool_id": identity.tool_id})
        await flush()
        clock.advance(1)
        await bus.publish(topic(SubAgentChannel.MESSAGE, identity), text_message(identity, "late"))
        await bus.publish(
            topic(SubAgentChannel.ERROR, identity),
            {"tool_id": identity.tool_id, "error": "too late"},
        )
        await flush()

        assert session.state is SessionState.COMPLETED
        assert [m.text for m in session.transcript][-2:] == ["late", "too late"]

    async def test_payload_with_mixed_key_types_does_not_stop_consumption(
        self,
        session: SessionAggregator,
        bus: InMemoryMessageBus,
        identity: SessionIdentity,
    ) -> None:
        await bus.publish(
            topic(SubAgentChannel.MESSAGE, identity),
            {"tool_id": identity.tool_id, 1: "x", "b": 2},
        )
        await bus.publish(topic(SubAgentChannel.MESSAGE, identity), text_message(identity, "after"))
        await flush()

        assert session.stream_error is None
        assert session.transcript[-1].text == "after"
        assert len(session.transcript) == 2
        assert session.state is SessionState.ACTIVE

    async def test_failing_event_is_skipped(
        self,
        session: SessionAggregator,
        bus: InMemoryMessageBus,
        identity: SessionIdentity,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        original = session.process
        seen: list[RawEvent] = []

        def failing_once(raw: RawEvent) -> Any:
            seen.append(raw)
            if len(seen) == 1:
                raise RuntimeError("boom")
            return original(raw)

        monkeypatch.setattr(session, "process", failing_once)

        await bus.publish(topic(SubAgentChannel.MESSAGE, identity), text_message(identity, "lost"))
        await bus.publish(topic(SubAgentChannel.MESSAGE, identity), text_message(identity, "kept"))
        await flush()

        assert [m.text for m in session.transcript] == ["kept"]
        assert session.stats["failed"] == 1
        assert session.stream_error is None

    async def test_events_after_close_are_dropped(
        self,
        session: SessionAggregator,
        bus: InMemoryMessageBus,
        identity: SessionIdentity,
    ) -> None:
        await bus.publish(topic(SubAgentChannel.MESSAGE, identity), text_message(identity, "a"))
        await flush()
        await session.close()

        await bus.publish(topic(SubAgentChannel.MESSAGE, identity), text_message(identity, "b"))
        assert session.process(
            RawEvent(topic(SubAgentChannel.MESSAGE, identity), text_message(identity, "c"))
        ) is None
        assert [m.text for m in session.transcript] == ["a"]


class TestConsumerSurface:
    async def test_transcript_is_read_only_view(
        self,
        session: SessionAggregator,
        bus: InMemoryMessageBus,
        identity: SessionIdentity,
    ) -> None:
        view = session.transcript
        assert isinstance(view, TranscriptView)
        assert not hasattr(view, "append")

        await bus.publish(topic(SubAgentChannel.MESSAGE, identity), text_message(identity, "a"))
        await flush()
        assert len(view) == 1
        assert isinstance(view[0:1], tuple)

    async def test_listeners(
        self,
        session: SessionAggregator,
        bus: InMemoryMessageBus,
        identity: SessionIdentity,
        clock: Any,
    ) -> None:
        broken = MagicMock(side_effect=RuntimeError("renderer bug"))
        listener = MagicMock()
        session.add_listener(broken)
        remove = session.add_listener(listener)

        await bus.publish(topic(SubAgentChannel.MESSAGE, identity), text_message(identity, "a"))
        await flush()
        message, state = listener.call_args.args
        assert message.text == "a"
        assert state is SessionState.ACTIVE

        remove()
        clock.advance(1)
        await bus.publish(topic(SubAgentChannel.MESSAGE, identity), text_message(identity, "b"))
        await flush()
        assert listener.call_count == 1
        assert broken.call_count == 2
        assert len(session.transcript) == 2

    async def test_updates_stream_ends_on_close(
        self,
        session: SessionAggregator,
        bus: InMemoryMessageBus,
        identity: SessionIdentity,
    ) -> None:
        await bus.publish(topic(SubAgentChannel.MESSAGE, identity), text_message(identity, "a"))
        await flush()

        async def collect() -> list[str | None]:
            return [message.text async for message in session.updates()]

        collector = asyncio.create_task(collect())
        await flush()
        await bus.publish(topic(SubAgentChannel.COMPLETE, identity), {"tool_id": identity.tool_id})
        await flush()
        await session.close()

        assert await asyncio.wait_for(collector, timeout=1) == ["a", "Sub-agent task completed"]

    async def test_wait_until_terminal(
        self,
        session: SessionAggregator,
        bus: InMemoryMessageBus,
        identity: SessionIdentity,
    ) -> None:
        waiter = asyncio.create_task(session.wait_until_terminal(timeout=1))
        await bus.publish(topic(SubAgentChannel.COMPLETE, identity), {"tool_id": identity.tool_id})
        assert await waiter is SessionState.COMPLETED

    async def test_wait_until_terminal_times_out(self, session: SessionAggregator) -> None:
        with pytest.raises(TimeoutError):
            await session.wait_until_terminal(timeout=0.01)

    async def test_snapshot(
        self,
        session: SessionAggregator,
        bus: InMemoryMessageBus,
        identity: SessionIdentity,
    ) -> None:
        await bus.publish(topic(SubAgentChannel.MESSAGE, identity), text_message(identity, "a"))
        await flush()

        snapshot = session.snapshot()
        data = snapshot.to_dict()
        assert data["state"] == "active"
        assert data["closed"] is False
        assert data["identity"] == identity.to_dict()
        assert [m["text"] for m in data["transcript"]] == ["a"]


class TestTerminalGrace:
    async def test_auto_close_after_terminal(
        self, bus: InMemoryMessageBus, identity: SessionIdentity
    ) -> None:
        session = await open_session(
            bus, identity, config=AggregatorConfig(terminal_grace_seconds=0)
        )
        await bus.publish(topic(SubAgentChannel.COMPLETE, identity), {"tool_id": identity.tool_id})
        await flush()

        assert session.is_closed
        assert bus.topics() == []
        assert len(session.transcript) == 1


class TestShortCircuit:
    async def test_known_result_skips_subscription(self, identity: SessionIdentity) -> None:
        bus = AsyncMock()
        session = await open_session(bus, identity, result="done")

        bus.subscribe.assert_not_awaited()
        assert session.state is SessionState.COMPLETED
        assert session.is_closed
        assert len(session.transcript) == 1
        entry = session.transcript[0]
        assert entry.kind is MessageKind.RESULT
        assert entry.text == "done"
        assert entry.provenance.confidence is MatchConfidence.SYNTHESIZED

    async def test_error_result_short_circuits_to_errored(self, identity: SessionIdentity) -> None:
        bus = AsyncMock()
        session = await open_session(bus, identity, result={"is_error": True, "content": "boom"})
        assert session.state is SessionState.ERRORED
        bus.subscribe.assert_not_awaited()

    @pytest.mark.parametrize("result", [None, ""])
    async def test_empty_result_goes_live(
        self, bus: InMemoryMessageBus, identity: SessionIdentity, config: AggregatorConfig, result: Any
    ) -> None:
        session = await open_session(bus, identity, result=result, config=config)
        assert not session.is_closed
        assert bus.subscriber_count("claude-output") == 1
        await session.close()

    async def test_updates_replay_then_end(self, identity: SessionIdentity) -> None:
        session = await open_session(AsyncMock(), identity, result={"content": {"text": "ok"}})
        assert [m.text async for m in session.updates()] == ["ok"]
        assert await session.wait_until_terminal(timeout=0.1) is SessionState.COMPLETED
