"""
piggyflow.core - Foundation Layer
=================================

The building blocks every other piggyflow module depends on:

    - config:      Configuration (PiggyflowConfig, PersistenceConfig, ...)
    - enums:       Type-safe enumerations (AgentType, WorkflowStatus, ...)
    - events:      Synchronous EventEmitter shared by the components
    - exceptions:  Custom exception hierarchy
    - logging:     structlog setup (configure_logging)
    - messages:    MessageBus envelope, routes, filters and stats
    - models:      Workflow state models (WorkflowState, WorkflowStep, ...)

Dependency Rule:
    core/ depends on nothing else in the piggyflow package.
"""

# =============================================================================
# Re-exports for convenient importing
# =============================================================================
from piggyflow.core.config import (
    MessageBusConfig,
    PersistenceConfig,
    PiggyflowConfig,
    RecoveryConfig,
    load_config,
)
from piggyflow.core.enums import (
    AgentType,
    CircuitState,
    ErrorSeverity,
    MessagePriority,
    MessageType,
    RetryStrategy,
    StepStatus,
    WorkflowStatus,
)
from piggyflow.core.events import EventEmitter
from piggyflow.core.exceptions import (
    ConfigurationError,
    MessageBusError,
    PiggyflowError,
    RecoveryError,
    StateError,
)
from piggyflow.core.logging import configure_logging
from piggyflow.core.messages import (
    AgentMessage,
    MessageFilter,
    MessageRoute,
    MessageStats,
)
from piggyflow.core.models import (
    BackupInfo,
    StateQuery,
    StateSnapshot,
    ValidationResult,
    WorkflowError,
    WorkflowMetrics,
    WorkflowState,
    WorkflowStep,
)

__all__ = [
    # Config
    "PiggyflowConfig",
    "PersistenceConfig",
    "RecoveryConfig",
    "MessageBusConfig",
    "load_config",
    "configure_logging",
    # Enums
    "AgentType",
    "WorkflowStatus",
    "StepStatus",
    "MessageType",
    "MessagePriority",
    "ErrorSeverity",
    "RetryStrategy",
    "CircuitState",
    # Events
    "EventEmitter",
    # Messages
    "AgentMessage",
    "MessageRoute",
    "MessageFilter",
    "MessageStats",
    # Models
    "WorkflowState",
    "WorkflowStep",
    "WorkflowMetrics",
    "WorkflowError",
    "BackupInfo",
    "StateSnapshot",
    "StateQuery",
    "ValidationResult",
    # Exceptions
    "PiggyflowError",
    "ConfigurationError",
    "StateError",
    "MessageBusError",
    "RecoveryError",
]
