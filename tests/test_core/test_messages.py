"""
Tests for piggyflow.core.messages
==================================

What's Being Tested:
    - AgentMessage:  aliases, agent normalization, immutability, TTL, replies
    - MessageRoute:  wildcard and predicate matching
    - MessageFilter: sender-or-recipient, type, priority and time window
    - MessagePriority ranking
"""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from piggyflow.core.enums import AgentType, MessagePriority, MessageType
from piggyflow.core.messages import (
    AgentMessage,
    MessageFilter,
    MessageRoute,
    MessageStats,
    agent_key,
)


def _make_message(**kwargs) -> AgentMessage:
    defaults = {
        "from_agent": AgentType.ORCHESTRATOR,
        "to_agent": AgentType.TESTING,
        "type": MessageType.NOTIFICATION,
        "payload": {"phase": "start"},
    }
    defaults.update(kwargs)
    return AgentMessage(**defaults)


# =============================================================================
# Test: AgentMessage
# =============================================================================
class TestAgentMessage:

    def test_defaults(self) -> None:
        msg = _make_message()
        assert msg.id
        assert msg.timestamp.tzinfo is not None
        assert msg.priority == MessagePriority.MEDIUM
        assert msg.ttl is None
        assert msg.reply_to is None

    def test_agent_types_normalized_to_strings(self) -> None:
        msg = _make_message()
        assert msg.from_agent == "orchestrator"
        assert msg.to_agent == "testing"
        assert agent_key(AgentType.MOBILE_ANALYSIS) == "analysis"
        assert agent_key("custom-agent") == "custom-agent"

    def test_wire_aliases(self) -> None:
        msg = AgentMessage.model_validate(
            {"from": "analysis", "to": "testing", "type": "request", "payload": None}
        )
        assert msg.from_agent == "analysis"
        assert msg.type == MessageType.TASK_REQUEST
        dumped = msg.model_dump(by_alias=True, mode="json")
        assert dumped["from"] == "analysis"
        assert dumped["to"] == "testing"

    def test_payload_is_required(self) -> None:
        with pytest.raises(ValidationError):
            AgentMessage(from_agent="a", to_agent="b", type=MessageType.NOTIFICATION)

    def test_frozen(self) -> None:
        msg = _make_message()
        with pytest.raises(ValidationError):
            msg.payload = "changed"

    def test_ttl_expiry(self) -> None:
        msg = _make_message(ttl=100)
        assert msg.is_expired() is False
        later = msg.timestamp + timedelta(milliseconds=150)
        assert msg.is_expired(now=later) is True

    def test_no_ttl_never_expires(self) -> None:
        msg = _make_message()
        assert msg.is_expired(now=msg.timestamp + timedelta(days=365)) is False

    def test_zero_ttl_rejected(self) -> None:
        with pytest.raises(ValidationError):
            _make_message(ttl=0)

    def test_create_reply_swaps_direction(self) -> None:
        request = _make_message(type=MessageType.TASK_REQUEST, correlation_id="conv-1")
        reply = request.create_reply(MessageType.TASK_RESPONSE, {"ok": True})

        assert reply.from_agent == "testing"
        assert reply.to_agent == "orchestrator"
        assert reply.reply_to == request.id
        assert reply.correlation_id == "conv-1"
        assert reply.payload == {"ok": True}


# =============================================================================
# Test: Routing and Filtering
# =============================================================================
class TestMessageRoute:

    def test_unset_criteria_are_wildcards(self) -> None:
        route = MessageRoute(target_agent="testing")
        assert route.matches(_make_message())

    def test_source_and_type_must_match(self) -> None:
        route = MessageRoute(
            source_agent=AgentType.PERFORMANCE_OPTIMIZER,
            message_type=MessageType.NOTIFICATION,
            target_agent=AgentType.TESTING,
        )
        assert route.source_agent == "performance-optimization"
        assert route.matches(_make_message(from_agent="performance-optimization"))
        assert not route.matches(_make_message(from_agent="analysis"))
        assert not route.matches(
            _make_message(from_agent="performance-optimization", type=MessageType.HEARTBEAT)
        )

    def test_condition_predicate(self) -> None:
        route = MessageRoute(
            condition=lambda m: m.payload.get("urgent", False),
            target_agent="testing",
        )
        assert route.matches(_make_message(payload={"urgent": True}))
        assert not route.matches(_make_message(payload={}))


class TestMessageFilter:

    def test_agent_matches_sender_or_recipient(self) -> None:
        msg = _make_message()
        assert MessageFilter(agent_type=AgentType.ORCHESTRATOR).matches(msg)
        assert MessageFilter(agent_type="testing").matches(msg)
        assert not MessageFilter(agent_type="analysis").matches(msg)

    def test_type_and_priority(self) -> None:
        msg = _make_message(priority=MessagePriority.HIGH)
        assert MessageFilter(priority=MessagePriority.HIGH).matches(msg)
        assert not MessageFilter(priority=MessagePriority.LOW).matches(msg)
        assert not MessageFilter(message_type=MessageType.ERROR).matches(msg)

    def test_time_range_is_inclusive(self) -> None:
        stamp = datetime(2024, 1, 1, tzinfo=timezone.utc)
        msg = _make_message(timestamp=stamp)
        assert MessageFilter(time_range=(stamp, stamp)).matches(msg)
        assert not MessageFilter(
            time_range=(stamp + timedelta(seconds=1), stamp + timedelta(seconds=2))
        ).matches(msg)


class TestMessagePriority:

    def test_rank_order(self) -> None:
        ordered = sorted(MessagePriority, key=lambda p: p.rank)
        assert ordered == [
            MessagePriority.CRITICAL,
            MessagePriority.HIGH,
            MessagePriority.MEDIUM,
            MessagePriority.LOW,
        ]

    def test_wire_values(self) -> None:
        assert MessagePriority.MEDIUM == "normal"
        assert MessagePriority.CRITICAL == "urgent"


def test_message_stats_defaults() -> None:
    stats = MessageStats()
    assert stats.total_messages == 0
    assert stats.messages_by_type == {}
