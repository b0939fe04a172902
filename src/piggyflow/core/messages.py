"""
piggyflow.core.messages - Agent Communication Message Types
============================================================

The envelope and the routing/filtering records used by the MessageBus.

Message Architecture:
    ┌─────────────────────────────────────────────────────────────┐
    │  AgentMessage (envelope, frozen)                             │
    │  ├── id:             Unique identifier                       │
    │  ├── timestamp:      Creation time (UTC), base for the TTL   │
    │  ├── from / to:      Agent identifiers ("orchestrator", ...) │
    │  ├── type:           MessageType                             │
    │  ├── payload:        Opaque data (any JSON-like value)       │
    │  ├── correlation_id: Optional conversation id                │
    │  ├── reply_to:       Request id this message answers         │
    │  ├── ttl:            Milliseconds before the message expires │
    │  └── priority:       Queue ordering                          │
    └─────────────────────────────────────────────────────────────┘

Agent identifiers are stored as plain strings. ``AgentType`` members are
accepted anywhere an identifier is expected and normalized to their value,
so "testing" and ``AgentType.TESTING`` address the same handlers.

Usage:
    >>> msg = AgentMessage(
    ...     from_agent="orchestrator",
    ...     to_agent=AgentType.TESTING,
    ...     type=MessageType.NOTIFICATION,
    ...     payload={"phase": "start"},
    ... )
    >>> msg.model_dump(by_alias=True)["to"]
    'testing'
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from piggyflow.core.enums import MessagePriority, MessageType


# =============================================================================
# Helper Functions
# =============================================================================
def _generate_message_id() -> str:
    """Generate a unique message identifier using UUID4."""
    return str(uuid4())


def _now() -> datetime:
    """Get the current UTC timestamp."""
    return datetime.now(timezone.utc)


def agent_key(agent: Any) -> str:
    """Normalize an agent identifier (AgentType or str) to a plain string."""
    if isinstance(agent, Enum):
        return str(agent.value)
    return str(agent)


# =============================================================================
# Agent Message (The Envelope)
# =============================================================================
# Frozen: once a message is queued nobody may change it. Routing rules and
# replies produce new instances via model_copy(update=...).
# =============================================================================
class AgentMessage(BaseModel):
    """Universal message envelope for agent communication.

    ``from`` and ``to`` are Python keywords/builtins in spirit, so the
    fields are ``from_agent``/``to_agent`` with ``from``/``to`` aliases for
    the wire form. Either name is accepted on construction.

    Attributes:
        id: Unique message id; request ids are what replies point at.
        timestamp: Creation time (UTC).
        from_agent: Sender identifier.
        to_agent: Recipient identifier.
        type: MessageType; with ``to_agent`` selects the handlers.
        payload: Opaque message data. Required, may be None.
        correlation_id: Optional id shared by a conversation.
        reply_to: Id of the request this message answers.
        ttl: Milliseconds after ``timestamp`` at which the message expires.
        priority: Queue priority.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(
        default_factory=_generate_message_id,
        description="Unique message identifier",
    )
    timestamp: datetime = Field(
        default_factory=_now,
        description="Message creation timestamp (UTC)",
    )
    from_agent: str = Field(alias="from", description="Sender agent identifier")
    to_agent: str = Field(alias="to", description="Recipient agent identifier")
    type: MessageType = Field(description="Message category")
    payload: Any = Field(description="Message data (opaque to the bus)")
    correlation_id: Optional[str] = Field(
        default=None,
        description="Conversation id shared by related messages",
    )
    reply_to: Optional[str] = Field(
        default=None,
        description="Id of the request this message answers",
    )
    ttl: Optional[int] = Field(
        default=None,
        ge=1,
        description="Time-to-live in milliseconds (None = no expiration)",
    )
    priority: MessagePriority = Field(
        default=MessagePriority.MEDIUM,
        description="Queue priority",
    )

    @field_validator("from_agent", "to_agent", mode="before")
    @classmethod
    def _normalize_agent(cls, value: Any) -> Any:
        if isinstance(value, Enum):
            return agent_key(value)
        return value

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """True if ``ttl`` is set and more than ``ttl`` ms have elapsed."""
        if self.ttl is None:
            return False
        now = now or _now()
        age_ms = (now - self.timestamp).total_seconds() * 1000
        return age_ms > self.ttl

    def create_reply(
        self,
        message_type: MessageType,
        payload: Any,
        priority: MessagePriority = MessagePriority.MEDIUM,
    ) -> "AgentMessage":
        """Build a reply: sender/recipient swapped, ``reply_to`` = this id."""
        return AgentMessage(
            from_agent=self.to_agent,
            to_agent=self.from_agent,
            type=message_type,
            payload=payload,
            correlation_id=self.correlation_id,
            reply_to=self.id,
            priority=priority,
        )


# =============================================================================
# Routing
# =============================================================================
# A route matches when every criterion it sets matches; unset criteria are
# wildcards. The first matching route (registration order) rewrites ``to``
# and, if it sets one, ``priority``.
# =============================================================================
class MessageRoute(BaseModel):
    """A routing rule applied by ``MessageBus.send_message``.

    Example:
        >>> MessageRoute(
        ...     id="perf-to-testing",
        ...     source_agent="performance-optimization",
        ...     message_type=MessageType.NOTIFICATION,
        ...     target_agent="testing",
        ... )
    """

    id: str = Field(default_factory=_generate_message_id, description="Route id")
    source_agent: Optional[str] = Field(
        default=None,
        description="Match only messages from this agent",
    )
    message_type: Optional[MessageType] = Field(
        default=None,
        description="Match only messages of this type",
    )
    condition: Optional[Callable[[AgentMessage], bool]] = Field(
        default=None,
        description="Extra predicate on the message",
    )
    target_agent: str = Field(description="Recipient the message is rerouted to")
    priority: Optional[MessagePriority] = Field(
        default=None,
        description="Priority override (None keeps the message priority)",
    )

    @field_validator("source_agent", "target_agent", mode="before")
    @classmethod
    def _normalize_agent(cls, value: Any) -> Any:
        if isinstance(value, Enum):
            return agent_key(value)
        return value

    def matches(self, message: AgentMessage) -> bool:
        if self.source_agent is not None and message.from_agent != self.source_agent:
            return False
        if self.message_type is not None and message.type != self.message_type:
            return False
        if self.condition is not None and not self.condition(message):
            return False
        return True


class MessageFilter(BaseModel):
    """Criteria for ``MessageBus.filter_messages`` over the pending queue.

    ``agent_type`` matches either the sender or the recipient.
    ``time_range`` is an inclusive ``(start, end)`` pair.
    """

    agent_type: Optional[str] = Field(default=None, description="Sender or recipient")
    message_type: Optional[MessageType] = Field(default=None, description="Type")
    priority: Optional[MessagePriority] = Field(default=None, description="Priority")
    time_range: Optional[tuple[datetime, datetime]] = Field(
        default=None,
        description="Inclusive (start, end) on the message timestamp",
    )

    @field_validator("agent_type", mode="before")
    @classmethod
    def _normalize_agent(cls, value: Any) -> Any:
        if isinstance(value, Enum):
            return agent_key(value)
        return value

    def matches(self, message: AgentMessage) -> bool:
        if self.agent_type is not None and self.agent_type not in (
            message.from_agent,
            message.to_agent,
        ):
            return False
        if self.message_type is not None and message.type != self.message_type:
            return False
        if self.priority is not None and message.priority != self.priority:
            return False
        if self.time_range is not None:
            start, end = self.time_range
            if message.timestamp < start or message.timestamp > end:
                return False
        return True


# =============================================================================
# Statistics
# =============================================================================
class MessageStats(BaseModel):
    """Bus counters. Breakdowns count each message once, when it is queued.

    Breakdown keys are the wire values ("request", "high", "orchestrator").
    """

    total_messages: int = Field(default=0, description="Messages queued")
    processed_messages: int = Field(default=0, description="Messages processed")
    failed_messages: int = Field(default=0, description="Messages failed or expired")
    average_processing_time: float = Field(
        default=0.0,
        description="Running average processing time in milliseconds",
    )
    messages_by_type: dict[str, int] = Field(default_factory=dict, description="By type")
    messages_by_priority: dict[str, int] = Field(
        default_factory=dict,
        description="By priority",
    )
    messages_by_agent: dict[str, int] = Field(
        default_factory=dict,
        description="By sending agent",
    )
