"""
Tests for piggyflow.core.models and piggyflow.core.exceptions
==============================================================

What's Being Tested:
    - WorkflowStep / WorkflowState defaults and JSON round-trip shape
    - WorkflowError as a data record
    - BackupInfo type restriction
    - PiggyflowError hierarchy and to_dict()
    - configure_logging wiring
"""

import pytest
import structlog
from pydantic import ValidationError

from piggyflow.core.enums import AgentType, StepStatus, WorkflowStatus
from piggyflow.core.exceptions import (
    ConfigurationError,
    MessageBusError,
    PiggyflowError,
    RecoveryError,
    StateError,
)
from piggyflow.core.logging import configure_logging
from piggyflow.core.models import (
    BackupInfo,
    StateSnapshot,
    WorkflowError,
    WorkflowMetrics,
    WorkflowState,
    WorkflowStep,
)


# =============================================================================
# Test: Workflow Models
# =============================================================================
class TestWorkflowStep:

    def test_defaults(self) -> None:
        step = WorkflowStep(id="s1", name="Analyze", agent_type=AgentType.MOBILE_ANALYSIS)
        assert step.status == StepStatus.PENDING
        assert step.retry_count == 0
        assert step.max_retries == 3
        assert step.dependencies == []
        assert step.timeout is None
        assert step.start_time is None

    def test_agent_type_from_wire_value(self) -> None:
        step = WorkflowStep.model_validate(
            {"id": "s1", "name": "Test", "agent_type": "testing", "status": "rolled-back"}
        )
        assert step.agent_type == AgentType.TESTING
        assert step.status == StepStatus.ROLLED_BACK

    def test_negative_counts_are_representable(self) -> None:
        """Range problems are reported by validate(), not by construction."""
        step = WorkflowStep(
            id="s1", name="x", agent_type="testing", retry_count=-1, max_retries=-2
        )
        assert step.retry_count == -1


class TestWorkflowState:

    def test_defaults(self) -> None:
        state = WorkflowState()
        assert state.id
        assert state.status == WorkflowStatus.IDLE
        assert state.current_step == 0
        assert state.total_steps == 0
        assert state.metrics == WorkflowMetrics()

    def test_total_steps_follows_steps(self, sample_steps) -> None:
        assert WorkflowState(steps=sample_steps).total_steps == 4

    def test_json_round_trip_keeps_wire_values(self, workflow_state) -> None:
        dumped = workflow_state.model_dump(mode="json")
        assert dumped["status"] == "idle"
        assert dumped["steps"][1]["agent_type"] == "component-generation"
        assert WorkflowState.model_validate(dumped) == workflow_state

    def test_snapshot_holds_state(self, workflow_state) -> None:
        snapshot = StateSnapshot(id="snap-1", state=workflow_state)
        assert snapshot.state.id == "wf-test"


class TestRecords:

    def test_workflow_error_defaults(self) -> None:
        error = WorkflowError(message="Connection timeout")
        assert error.type == "agent-failure"
        assert error.severity == "major"
        assert error.code == "UNKNOWN_ERROR"
        assert error.recovered is False

    def test_backup_type_restricted(self) -> None:
        assert BackupInfo(path="b.json", type="incremental").type == "incremental"
        with pytest.raises(ValidationError):
            BackupInfo(path="b.json", type="differential")


# =============================================================================
# Test: Exceptions
# =============================================================================
class TestExceptions:

    @pytest.mark.parametrize(
        "exc_class, default_code",
        [
            (ConfigurationError, "CONFIG_ERROR"),
            (StateError, "STATE_ERROR"),
            (MessageBusError, "MESSAGE_BUS_ERROR"),
        ],
    )
    def test_hierarchy_and_default_codes(self, exc_class, default_code) -> None:
        exc = exc_class("boom")
        assert isinstance(exc, PiggyflowError)
        assert exc.error_code == default_code
        assert exc.details == {}

    def test_to_dict(self) -> None:
        exc = StateError(
            message="Step not found: build",
            error_code="STEP_NOT_FOUND",
            details={"step_id": "build"},
        )
        assert exc.to_dict() == {
            "error_type": "StateError",
            "message": "Step not found: build",
            "error_code": "STEP_NOT_FOUND",
            "details": {"step_id": "build"},
        }
        assert str(exc) == "Step not found: build"

    def test_recovery_error_is_piggyflow_error(self) -> None:
        assert isinstance(RecoveryError("x"), PiggyflowError)


# =============================================================================
# Test: Logging
# =============================================================================
def test_configure_logging_json() -> None:
    try:
        configure_logging("debug", json_logs=True)
        assert structlog.is_configured()
    finally:
        structlog.reset_defaults()
