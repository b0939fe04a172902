"""
piggyflow.core.enums - Type-Safe Enumerations
==============================================

All enumeration types used by the orchestration core. Every enum inherits
from both ``str`` and ``Enum`` so values serialize to plain strings in the
persisted state file and compare equal to their wire values:

    >>> WorkflowStatus.ROLLING_BACK == "rolling-back"
    True

Architecture Mapping:

    ┌─────────────────────────────────────────────────────────────────┐
    │  MESSAGE BUS                                                     │
    │    AgentType, MessageType, MessagePriority                       │
    ├─────────────────────────────────────────────────────────────────┤
    │  WORKFLOW STATE                                                  │
    │    WorkflowStatus, StepStatus                                    │
    ├─────────────────────────────────────────────────────────────────┤
    │  ERROR RECOVERY                                                  │
    │    ErrorSeverity, RetryStrategy, CircuitState                    │
    └─────────────────────────────────────────────────────────────────┘
"""

from enum import Enum


# =============================================================================
# Agent Type Enumeration
# =============================================================================
# The worker agents of the mobile-optimization suite, plus the special
# "orchestrator" identity that drives them. Agents are opaque to the core:
# they are addressed by this tag on the MessageBus and nothing else.
# =============================================================================
class AgentType(str, Enum):
    """Identity of a message bus participant.

    Usage:
        >>> AgentType.TESTING.value
        'testing'
    """

    MOBILE_ANALYSIS = "analysis"
    COMPONENT_GENERATOR = "component-generation"
    PERFORMANCE_OPTIMIZER = "performance-optimization"
    TESTING = "testing"
    ORCHESTRATOR = "orchestrator"


# Default fan-out list for broadcasts (every worker type plus the orchestrator).
KNOWN_AGENTS: tuple[AgentType, ...] = (
    AgentType.MOBILE_ANALYSIS,
    AgentType.COMPONENT_GENERATOR,
    AgentType.PERFORMANCE_OPTIMIZER,
    AgentType.TESTING,
    AgentType.ORCHESTRATOR,
)


# =============================================================================
# Workflow Status Enumeration
# =============================================================================
# The WorkflowStateManager does not police transitions; any status may
# follow any status. Only COMPLETED and FAILED stamp end_time/duration.
# =============================================================================
class WorkflowStatus(str, Enum):
    """Lifecycle states of one workflow run."""

    IDLE = "idle"
    INITIALIZING = "initializing"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    ROLLING_BACK = "rolling-back"


class StepStatus(str, Enum):
    """Lifecycle states of one workflow step.

    Steps are never deleted; an abandoned step ends as SKIPPED or ROLLED_BACK.
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    RETRYING = "retrying"
    ROLLED_BACK = "rolled-back"


# Statuses that stamp end_time/duration on first entry. A tuple, not a set:
# str-Enum members hash by name, so only equality lookups match across
# WorkflowStatus and StepStatus.
TERMINAL_STATUSES: tuple[str, ...] = ("completed", "failed")


# =============================================================================
# Message Type Enumeration
# =============================================================================
#   TASK_REQUEST  → orchestrator asks an agent to do work (awaits a reply)
#   TASK_RESPONSE → the bus wraps a handler's return value into this
#   ERROR         → the bus synthesizes this when a request's handlers fail
# =============================================================================
class MessageType(str, Enum):
    """Types of envelopes flowing through the MessageBus."""

    TASK_REQUEST = "request"
    TASK_RESPONSE = "response"
    NOTIFICATION = "notification"
    HEARTBEAT = "heartbeat"
    ERROR = "error"
    STATUS_UPDATE = "status-update"
    RESOURCE_REQUEST = "resource-request"
    CANCELLATION = "cancellation"


class MessagePriority(str, Enum):
    """Queue priority. CRITICAL drains first, LOW last.

    A steady flood of CRITICAL traffic can starve LOW messages; the bus
    favors ordering over fairness.
    """

    LOW = "low"
    MEDIUM = "normal"
    HIGH = "high"
    CRITICAL = "urgent"

    @property
    def rank(self) -> int:
        """Sort key: lower rank is dequeued first."""
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    MessagePriority.CRITICAL: 0,
    MessagePriority.HIGH: 1,
    MessagePriority.MEDIUM: 2,
    MessagePriority.LOW: 3,
}


# =============================================================================
# Error Recovery Enumerations
# =============================================================================
class ErrorSeverity(str, Enum):
    """Severity of a matched error pattern.

    CRITICAL is never recoverable, whatever the pattern's ``retryable`` flag.
    """

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RetryStrategy(str, Enum):
    """Backoff curves for ``ErrorRecoverySystem.should_retry``.

    With ``attempt`` 1-indexed, ``base``/``max`` from RecoveryConfig:
        IMMEDIATE:           0
        FIXED_DELAY:         min(base, max)
        LINEAR_BACKOFF:      min(base * attempt, max)
        EXPONENTIAL_BACKOFF: min(base * 2^(attempt-1), max)
        RANDOM_JITTER:       exponential + up to 10% jitter, capped at max
    """

    IMMEDIATE = "immediate"
    FIXED_DELAY = "fixed_delay"
    LINEAR_BACKOFF = "linear_backoff"
    EXPONENTIAL_BACKOFF = "exponential_backoff"
    RANDOM_JITTER = "random_jitter"


class CircuitState(str, Enum):
    """Per-step circuit breaker states.

    State Machine:
        CLOSED ──(failure_count >= threshold)──> OPEN
        OPEN ──(circuit_breaker_timeout elapsed, on next query)──> HALF_OPEN
        HALF_OPEN ──(half_open_retries >= threshold)──> OPEN
        HALF_OPEN / OPEN ──(explicit reset)──> CLOSED
    """

    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"
