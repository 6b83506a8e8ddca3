"""Tests for aggregator domain error types."""

import pytest

from subagent_aggregator.core.domain.errors import (
    AggregatorError,
    ConfigError,
    SessionAlreadyOpenError,
    SessionClosedError,
    SubscribeError,
    TransportError,
    UnsubscribeError,
)


class TestAggregatorError:
    """Tests for AggregatorError base exception."""

    def test_create_basic(self) -> None:
        err = AggregatorError(message="Something failed")
        assert err.message == "Something failed"
        assert err.code == "aggregator_error"
        assert err.details == {}

    def test_str_representation(self) -> None:
        assert str(AggregatorError(message="Something broke")) == "Something broke"

    def test_is_exception(self) -> None:
        with pytest.raises(AggregatorError):
            raise AggregatorError(message="boom")


class TestSubclasses:
    def test_transport_error_records_topic(self) -> None:
        err = TransportError("rejected", topic="claude-output")
        assert err.code == "transport_error"
        assert err.topic == "claude-output"
        assert err.details == {"topic": "claude-output"}

    def test_transport_error_without_topic(self) -> None:
        err = TransportError("rejected")
        assert err.topic is None
        assert err.details == {}

    def test_subscribe_error(self) -> None:
        err = SubscribeError("failed", topic="subagent-message:p1", released=2)
        assert isinstance(err, AggregatorError)
        assert err.code == "subscribe_error"
        assert err.topic == "subagent-message:p1"
        assert err.released == 2
        assert err.details == {"topic": "subagent-message:p1", "released": 2}

    def test_unsubscribe_error_lists_topics(self) -> None:
        err = UnsubscribeError("failed", topics=["a", "b"])
        assert err.code == "unsubscribe_error"
        assert err.topics == ["a", "b"]
        assert err.details["topics"] == ["a", "b"]

    @pytest.mark.parametrize(
        ("error_cls", "code"),
        [
            (SessionClosedError, "session_closed"),
            (SessionAlreadyOpenError, "session_already_open"),
            (ConfigError, "config_error"),
        ],
    )
    def test_codes(self, error_cls: type[AggregatorError], code: str) -> None:
        err = error_cls("message", details={"k": "v"})
        assert err.code == code
        assert err.details == {"k": "v"}
        assert isinstance(err, AggregatorError)
