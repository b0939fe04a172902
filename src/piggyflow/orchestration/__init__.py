"""
piggyflow.orchestration - Orchestration Layer
=============================================

The components that move a workflow forward:

    - MessageBus:            Priority-ordered, routed agent messaging with
                             request/response correlation
    - ErrorRecoverySystem:   Error classification, recovery plans, retry
                             timing, circuit breakers and health checks
    - WorkflowStateManager:  Authoritative workflow state with snapshots,
                             queries, validation and disk persistence
    - WorkflowOrchestrator:  Drives a run through the three above
"""

from piggyflow.orchestration.error_recovery import (
    CircuitBreakerState,
    ErrorPattern,
    ErrorRecoverySystem,
    HealthCheck,
    HealthCheckResult,
    RecoveryAction,
    RecoveryOutcome,
    RecoveryPlan,
    RecoveryStatistics,
    RetryDecision,
)
from piggyflow.orchestration.message_bus import MessageBus
from piggyflow.orchestration.orchestrator import WorkflowOrchestrator
from piggyflow.orchestration.state_manager import WorkflowStateManager

__all__ = [
    # Message Bus
    "MessageBus",
    # Error Recovery
    "ErrorRecoverySystem",
    "ErrorPattern",
    "RecoveryAction",
    "RecoveryPlan",
    "RecoveryOutcome",
    "RetryDecision",
    "RecoveryStatistics",
    "CircuitBreakerState",
    "HealthCheck",
    "HealthCheckResult",
    # State
    "WorkflowStateManager",
    # Orchestrator
    "WorkflowOrchestrator",
]
