"""
piggyflow.core.models - Workflow Data Models
=============================================

The Pydantic models that make up one workflow run's state. The
WorkflowStateManager owns a single ``WorkflowState`` and hands out deep
copies of it; everything here must therefore round-trip through
``model_dump(mode="json")`` / ``model_validate`` for persistence.

Model Hierarchy:
    WorkflowState               → aggregate root for one run
        ├── WorkflowStep[]      → ordered units of work (index = order)
        ├── WorkflowMetrics     → aggregate counters
        ├── WorkflowError[]     → append-only error log (data, not exceptions)
        ├── BackupInfo[]        → append-only log of point-in-time saves
        └── context: dict       → dot-path addressable run variables

    StateSnapshot               → deep copy of a WorkflowState + id/description
    StateQuery                  → dot path + optional filter/transform
    ValidationResult            → outcome of WorkflowStateManager.validate()

Timing:
    All timestamps are timezone-aware UTC datetimes. ``duration`` fields are
    milliseconds, set together with ``end_time``.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from piggyflow.core.enums import AgentType, StepStatus, WorkflowStatus


# =============================================================================
# Helper Functions
# =============================================================================
def _generate_id() -> str:
    """Generate a unique identifier using UUID4."""
    return str(uuid4())


def _now() -> datetime:
    """Get the current UTC timestamp."""
    return datetime.now(timezone.utc)


# =============================================================================
# Workflow Error (data record)
# =============================================================================
# A step failure is recorded, not raised. The orchestrator builds one of
# these from the agent's error reply, appends it with add_error(), and hands
# it to the ErrorRecoverySystem. ``message`` is what the error patterns match.
# =============================================================================
class WorkflowError(BaseModel):
    """A recorded runtime failure of a workflow step.

    Attributes:
        id: Unique error id.
        timestamp: When the failure was recorded (UTC).
        step_id: The failing step, if the error belongs to one.
        agent_type: The agent that was executing the step.
        type: Failure category, e.g. "agent-failure", "timeout",
            "validation-failure", "resource-limit", "configuration-error".
        severity: Reporting severity ("critical", "major", "minor", "info").
            Independent of the ErrorSeverity a recovery pattern assigns.
        code: Machine-readable error code.
        message: Human-readable text; matched against recovery patterns.
        stack: Optional traceback text.
        context: Free-form debugging context.
        recovered: Set once a later attempt of the step succeeded.
    """

    id: str = Field(default_factory=_generate_id, description="Unique error id")
    timestamp: datetime = Field(default_factory=_now, description="Recorded at (UTC)")
    step_id: Optional[str] = Field(default=None, description="Failing step id")
    agent_type: Optional[AgentType] = Field(
        default=None,
        description="Agent that was executing the step",
    )
    type: str = Field(default="agent-failure", description="Failure category")
    severity: str = Field(default="major", description="Reporting severity")
    code: str = Field(default="UNKNOWN_ERROR", description="Machine-readable code")
    message: str = Field(description="Error text matched by recovery patterns")
    stack: Optional[str] = Field(default=None, description="Traceback text")
    context: dict[str, Any] = Field(
        default_factory=dict,
        description="Debugging context",
    )
    recovered: bool = Field(default=False, description="Recovered by a retry")


# =============================================================================
# Workflow Step
# =============================================================================
# Steps are created when the plan is built and then mutated only through
# WorkflowStateManager.update_step(). Field values are deliberately not
# range-checked here: validate() reports structural problems instead of
# model construction rejecting them.
# =============================================================================
class WorkflowStep(BaseModel):
    """One unit of work delegated to an agent over the MessageBus.

    Attributes:
        id: Step identifier, unique within the workflow.
        name: Human-readable step name.
        description: Optional longer description.
        agent_type: Which agent executes this step.
        status: Current StepStatus.
        dependencies: Ids of steps that must be COMPLETED first.
        retry_count: Retries performed so far.
        max_retries: Retry budget; ErrorRecoverySystem.should_retry stops
            once retry_count reaches it.
        input: Opaque payload sent to the agent.
        output: Opaque value the agent replied with.
        error: The most recent failure, if any.
        timeout: Per-request timeout (ms); None uses the bus default.
        start_time / end_time / duration: Stamped on the first transition
            into RUNNING / a terminal status.

    Example:
        >>> step = WorkflowStep(
        ...     id="analyze",
        ...     name="Analyze mobile layout",
        ...     agent_type=AgentType.MOBILE_ANALYSIS,
        ...     input={"path": "src/components"},
        ... )
    """

    id: str = Field(description="Step identifier")
    name: str = Field(description="Human-readable step name")
    description: str = Field(default="", description="Step description")
    agent_type: AgentType = Field(description="Agent that executes this step")
    status: StepStatus = Field(default=StepStatus.PENDING, description="Step status")
    dependencies: list[str] = Field(
        default_factory=list,
        description="Step ids that must complete first",
    )
    retry_count: int = Field(default=0, description="Retries performed so far")
    max_retries: int = Field(default=3, description="Retry budget")
    input: Any = Field(default_factory=dict, description="Payload sent to the agent")
    output: Optional[Any] = Field(default=None, description="Agent reply payload")
    error: Optional[WorkflowError] = Field(default=None, description="Last failure")
    timeout: Optional[int] = Field(
        default=None,
        description="Request timeout in milliseconds (None = bus default)",
    )
    start_time: Optional[datetime] = Field(default=None, description="Started at")
    end_time: Optional[datetime] = Field(default=None, description="Finished at")
    duration: Optional[float] = Field(default=None, description="Duration in ms")


# =============================================================================
# Workflow Metrics
# =============================================================================
class WorkflowMetrics(BaseModel):
    """Aggregate counters for one run.

    ``errors_encountered`` is incremented by add_error(); everything else is
    maintained by the orchestrator through update_metrics(). Keys unknown to
    this model land in ``extra``.
    """

    errors_encountered: int = Field(default=0, description="Errors recorded")
    retries_performed: int = Field(default=0, description="Step retries performed")
    steps_completed: int = Field(default=0, description="Steps completed")
    steps_failed: int = Field(default=0, description="Steps failed permanently")
    rollbacks_performed: int = Field(default=0, description="Rollbacks performed")
    total_execution_time: float = Field(
        default=0.0,
        description="Total execution time in milliseconds",
    )
    success_rate: float = Field(
        default=0.0,
        description="Completed steps / total steps (0.0 - 1.0)",
    )
    extra: dict[str, Any] = Field(
        default_factory=dict,
        description="Agent-specific metrics",
    )


# =============================================================================
# Backup Info
# =============================================================================
class BackupInfo(BaseModel):
    """Describes one point-in-time save of the workflow state."""

    id: str = Field(default_factory=_generate_id, description="Backup id")
    timestamp: datetime = Field(default_factory=_now, description="Created at (UTC)")
    type: Literal["full", "incremental", "component-specific"] = Field(
        default="full",
        description="Backup kind",
    )
    path: str = Field(description="Where the backup was written")
    size: int = Field(default=0, ge=0, description="Size in bytes")
    checksum: str = Field(default="", description="SHA-256 of the written bytes")
    description: Optional[str] = Field(default=None, description="Free-form note")
    step_id: Optional[str] = Field(
        default=None,
        description="Step that was current when the backup was taken",
    )


# =============================================================================
# Workflow State (aggregate root)
# =============================================================================
class WorkflowState(BaseModel):
    """Canonical, serializable state of one workflow run.

    Attributes:
        id: Run identifier; also names the default state file.
        status: Current WorkflowStatus.
        current_step: Index into ``steps`` (0 <= current_step < len(steps)
            once steps exist).
        steps: Ordered steps; list order is execution order.
        metrics: Aggregate counters.
        errors: Append-only error log.
        backups: Append-only backup log.
        context: Run-scoped variables addressed by dot path.
        start_time / end_time / duration: Stamped on first RUNNING and first
            terminal status.
    """

    id: str = Field(default_factory=_generate_id, description="Run identifier")
    status: WorkflowStatus = Field(
        default=WorkflowStatus.IDLE,
        description="Workflow status",
    )
    current_step: int = Field(default=0, description="Index of the current step")
    steps: list[WorkflowStep] = Field(default_factory=list, description="Ordered steps")
    metrics: WorkflowMetrics = Field(
        default_factory=WorkflowMetrics,
        description="Aggregate counters",
    )
    errors: list[WorkflowError] = Field(default_factory=list, description="Error log")
    backups: list[BackupInfo] = Field(default_factory=list, description="Backup log")
    context: dict[str, Any] = Field(default_factory=dict, description="Run variables")
    start_time: Optional[datetime] = Field(default=None, description="Started at")
    end_time: Optional[datetime] = Field(default=None, description="Finished at")
    duration: Optional[float] = Field(default=None, description="Duration in ms")

    @property
    def total_steps(self) -> int:
        return len(self.steps)


# =============================================================================
# Snapshot / Query / Validation
# =============================================================================
class StateSnapshot(BaseModel):
    """Immutable point-in-time copy of a WorkflowState."""

    id: str = Field(description="Snapshot id")
    timestamp: datetime = Field(default_factory=_now, description="Taken at (UTC)")
    description: str = Field(default="", description="Why the snapshot was taken")
    state: WorkflowState = Field(description="Deep copy of the workflow state")


class StateQuery(BaseModel):
    """A read-only lookup into the state tree.

    ``path`` is dot separated; numeric segments index into lists, so
    ``"steps.0.status"`` is the first step's status. ``filter`` applies only
    when the resolved value is a list; ``transform`` runs last.

    Example:
        >>> StateQuery(
        ...     path="steps",
        ...     filter=lambda s: s.status == StepStatus.FAILED,
        ...     transform=lambda steps: [s.id for s in steps],
        ... )
    """

    path: str = Field(description="Dot path into the state")
    filter: Optional[Callable[[Any], bool]] = Field(
        default=None,
        description="Predicate applied to each element of a list result",
    )
    transform: Optional[Callable[[Any], Any]] = Field(
        default=None,
        description="Function applied to the (filtered) result",
    )


class ValidationResult(BaseModel):
    """Outcome of a structural check of the workflow state."""

    is_valid: bool = Field(description="True when no problems were found")
    errors: list[str] = Field(default_factory=list, description="Problems found")
