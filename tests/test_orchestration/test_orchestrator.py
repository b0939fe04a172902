"""
Tests for piggyflow.orchestration.orchestrator
===============================================

End-to-end runs of WorkflowOrchestrator with in-process agent handlers
registered on its MessageBus.

What's Being Tested:
    - Lifecycle:      initialize/shutdown idempotency, async context manager
    - Construction:   step defaults, plan validation
    - Happy path:     every step completes, outputs stored, state persisted
    - Recovery:       transient failures retried, permanent ones fail fast
    - Limits:         retry budget, request timeouts, unhealthy steps, critical errors
    - Failure policy: later steps skipped, or run with continue_on_step_failure
"""

import json

import pytest

from piggyflow.core.config import PiggyflowConfig
from piggyflow.core.enums import (
    AgentType,
    ErrorSeverity,
    MessageType,
    StepStatus,
    WorkflowStatus,
)
from piggyflow.core.exceptions import StateError
from piggyflow.orchestration.error_recovery import ErrorPattern, HealthCheck
from piggyflow.orchestration.orchestrator import WorkflowOrchestrator


WORKER_AGENTS = (
    AgentType.MOBILE_ANALYSIS,
    AgentType.COMPONENT_GENERATOR,
    AgentType.PERFORMANCE_OPTIMIZER,
    AgentType.TESTING,
)


def _register_workers(orchestrator, handler) -> None:
    for agent in WORKER_AGENTS:
        orchestrator.message_bus.register_handler(agent, MessageType.TASK_REQUEST, handler)


def _echo(msg):
    return {"step": msg.payload["step_id"], "attempt": msg.payload["attempt"]}


def _failing(error_text: str, failures: int):
    """Handler that raises ``error_text`` for the first ``failures`` calls."""
    calls = {"count": 0}

    def handler(msg):
        calls["count"] += 1
        if calls["count"] <= failures:
            raise RuntimeError(error_text)
        return {"ok": True}

    handler.calls = calls
    return handler


# =============================================================================
# Test: Lifecycle
# =============================================================================
class TestLifecycle:

    async def test_context_manager(self, config) -> None:
        async with WorkflowOrchestrator(config) as orchestrator:
            assert orchestrator.is_initialized
            assert orchestrator.message_bus.is_running
        assert not orchestrator.is_initialized
        assert not orchestrator.message_bus.is_running

    async def test_initialize_and_shutdown_idempotent(self, config) -> None:
        orchestrator = WorkflowOrchestrator(config)
        await orchestrator.initialize()
        await orchestrator.initialize()
        await orchestrator.shutdown()
        await orchestrator.shutdown()
        assert "initialized=False" in repr(orchestrator)

    async def test_state_manager_requires_workflow(self, orchestrator) -> None:
        with pytest.raises(StateError) as exc_info:
            orchestrator.state_manager
        assert exc_info.value.error_code == "NO_WORKFLOW"


# =============================================================================
# Test: Workflow Construction
# =============================================================================
class TestCreateWorkflow:

    async def test_dict_steps_get_default_retries(self, config) -> None:
        config = config.model_copy(update={"default_max_retries": 1})
        orchestrator = WorkflowOrchestrator(config)

        manager = await orchestrator.create_workflow(
            [
                {"id": "a", "name": "A", "agent_type": "analysis"},
                {"id": "b", "name": "B", "agent_type": "testing", "max_retries": 5},
            ],
            context={"project": "piggy"},
            workflow_id="wf-dicts",
        )

        assert manager.workflow_id == "wf-dicts"
        assert manager.status == WorkflowStatus.INITIALIZING
        assert [s.max_retries for s in manager.get_steps()] == [1, 5]
        assert manager.get_context() == {"project": "piggy"}
        await manager.destroy()

    async def test_cycle_rejected(self, orchestrator) -> None:
        with pytest.raises(StateError) as exc_info:
            await orchestrator.create_workflow(
                [
                    {"id": "a", "name": "A", "agent_type": "analysis", "dependencies": ["b"]},
                    {"id": "b", "name": "B", "agent_type": "testing", "dependencies": ["a"]},
                ]
            )
        assert exc_info.value.error_code == "INVALID_WORKFLOW"

    async def test_empty_plan_rejected(self, orchestrator) -> None:
        with pytest.raises(StateError):
            await orchestrator.create_workflow([])

    async def test_unknown_step_raises(self, orchestrator, sample_steps) -> None:
        await orchestrator.create_workflow(sample_steps)
        with pytest.raises(StateError) as exc_info:
            await orchestrator._run_step("ghost")
        assert exc_info.value.error_code == "STEP_NOT_FOUND"


# =============================================================================
# Test: Running Workflows
# =============================================================================
class TestRun:

    async def test_all_steps_complete(self, orchestrator, sample_steps, config) -> None:
        requests = []

        def handler(msg):
            requests.append(msg.payload)
            return _echo(msg)

        _register_workers(orchestrator, handler)
        await orchestrator.create_workflow(
            sample_steps, context={"project": "piggy"}, workflow_id="wf-ok"
        )

        state = await orchestrator.run()

        assert state.status == WorkflowStatus.COMPLETED
        assert [s.status for s in state.steps] == [StepStatus.COMPLETED] * 4
        assert state.steps[0].output == {"step": "analyze", "attempt": 1}
        assert state.metrics.steps_completed == 4
        assert state.metrics.success_rate == 1.0
        assert state.errors == []
        assert state.current_step == 3
        assert state.end_time is not None

        assert [r["step_id"] for r in requests] == ["analyze", "generate", "optimize", "test"]
        assert requests[0]["input"] == {"path": "src/components"}
        assert requests[0]["context"] == {"project": "piggy"}
        assert requests[0]["workflow_id"] == "wf-ok"

        saved = config.persistence.state_dir / "wf-ok.json"
        assert json.loads(saved.read_text())["state"]["status"] == "completed"
        descriptions = [s.description for s in orchestrator.state_manager.list_snapshots()]
        assert descriptions == ["Workflow started"]

    async def test_transient_failure_is_retried(self, orchestrator, sample_steps) -> None:
        _register_workers(orchestrator, _echo)
        flaky = _failing("ECONNRESET talking to device farm", failures=1)
        orchestrator.message_bus.unregister_handler(
            AgentType.TESTING, MessageType.TASK_REQUEST, _echo
        )
        orchestrator.message_bus.register_handler(
            AgentType.TESTING, MessageType.TASK_REQUEST, flaky
        )
        await orchestrator.create_workflow(sample_steps)

        state = await orchestrator.run()

        assert state.status == WorkflowStatus.COMPLETED
        test_step = state.steps[3]
        assert test_step.status == StepStatus.COMPLETED
        assert test_step.retry_count == 1
        assert test_step.output == {"ok": True}
        assert flaky.calls["count"] == 2
        assert state.metrics.retries_performed == 1
        assert state.metrics.errors_encountered == 1
        assert state.errors[0].step_id == "test"
        assert state.errors[0].code == "REQUEST_FAILED"
        assert state.errors[0].agent_type == AgentType.TESTING

    async def test_permanent_failure_fails_workflow(self, orchestrator, sample_steps) -> None:
        _register_workers(orchestrator, _failing("EACCES: permission denied", failures=99))
        await orchestrator.create_workflow(sample_steps)

        state = await orchestrator.run()

        assert state.status == WorkflowStatus.FAILED
        assert state.steps[0].status == StepStatus.FAILED
        assert state.steps[0].retry_count == 0
        assert state.steps[0].error.message.endswith("EACCES: permission denied")
        assert [s.status for s in state.steps[1:]] == [StepStatus.SKIPPED] * 3
        assert state.metrics.steps_failed == 1
        assert state.metrics.success_rate == 0.0

        descriptions = [s.description for s in orchestrator.state_manager.list_snapshots()]
        assert descriptions == ["Workflow failed", "Workflow started"]

    async def test_retry_budget_exhausted(self, orchestrator) -> None:
        handler = _failing("Connection timeout", failures=99)
        orchestrator.message_bus.register_handler(
            AgentType.MOBILE_ANALYSIS, MessageType.TASK_REQUEST, handler
        )
        await orchestrator.create_workflow(
            [{"id": "a", "name": "A", "agent_type": "analysis", "max_retries": 2}]
        )

        state = await orchestrator.run()

        assert state.status == WorkflowStatus.FAILED
        assert state.steps[0].retry_count == 2
        assert handler.calls["count"] == 3
        assert len(state.errors) == 3
        assert [e.context["attempt"] for e in state.errors] == [1, 2, 3]

    async def test_request_timeout_recorded(self, orchestrator) -> None:
        # No reply at all: the handler returns None.
        orchestrator.message_bus.register_handler(
            AgentType.TESTING, MessageType.TASK_REQUEST, lambda msg: None
        )
        await orchestrator.create_workflow(
            [
                {
                    "id": "t",
                    "name": "T",
                    "agent_type": "testing",
                    "timeout": 30,
                    "max_retries": 0,
                }
            ]
        )

        state = await orchestrator.run()

        assert state.status == WorkflowStatus.FAILED
        assert state.errors[0].type == "timeout"
        assert state.errors[0].code == "REQUEST_TIMEOUT"

    async def test_unhealthy_step_is_not_retried(self, orchestrator) -> None:
        handler = _failing("resource busy", failures=99)
        orchestrator.message_bus.register_handler(
            AgentType.PERFORMANCE_OPTIMIZER, MessageType.TASK_REQUEST, handler
        )

        async def unhealthy():
            return False

        orchestrator.recovery.add_health_check("opt", HealthCheck(name="cpu", check=unhealthy))
        await orchestrator.create_workflow(
            [{"id": "opt", "name": "Opt", "agent_type": "performance-optimization", "max_retries": 10}]
        )

        state = await orchestrator.run()

        assert state.status == WorkflowStatus.FAILED
        assert handler.calls["count"] == 1
        assert state.steps[0].retry_count == 0
        assert orchestrator.recovery.get_circuit_breaker_state("opt").failure_count == 1

    async def test_critical_error_is_not_retried(self, orchestrator) -> None:
        orchestrator.recovery.register_error_pattern(
            ErrorPattern(
                id="fatal",
                name="Fatal",
                pattern="FATAL",
                severity=ErrorSeverity.CRITICAL,
                retryable=True,
            ),
            prepend=True,
        )
        handler = _failing("FATAL disk corruption", failures=99)
        orchestrator.message_bus.register_handler(
            AgentType.TESTING, MessageType.TASK_REQUEST, handler
        )
        await orchestrator.create_workflow(
            [{"id": "t", "name": "T", "agent_type": "testing", "max_retries": 3}]
        )

        state = await orchestrator.run()

        assert state.status == WorkflowStatus.FAILED
        assert handler.calls["count"] == 1
        assert state.steps[0].retry_count == 0
        assert state.metrics.retries_performed == 0

    async def test_continue_on_step_failure(self, config) -> None:
        config = config.model_copy(update={"continue_on_step_failure": True})
        async with WorkflowOrchestrator(config) as orchestrator:
            orchestrator.message_bus.register_handler(
                AgentType.MOBILE_ANALYSIS,
                MessageType.TASK_REQUEST,
                _failing("ENOENT: no such file", failures=99),
            )
            _echo_agents = (AgentType.COMPONENT_GENERATOR, AgentType.TESTING)
            for agent in _echo_agents:
                orchestrator.message_bus.register_handler(agent, MessageType.TASK_REQUEST, _echo)

            await orchestrator.create_workflow(
                [
                    {"id": "a", "name": "A", "agent_type": "analysis"},
                    {
                        "id": "b",
                        "name": "B",
                        "agent_type": "component-generation",
                        "dependencies": ["a"],
                    },
                    {"id": "c", "name": "C", "agent_type": "testing"},
                ]
            )
            state = await orchestrator.run()

        assert state.status == WorkflowStatus.FAILED
        assert [s.status for s in state.steps] == [
            StepStatus.FAILED,
            StepStatus.SKIPPED,
            StepStatus.COMPLETED,
        ]
        assert state.metrics.success_rate == pytest.approx(1 / 3)

    async def test_persist_failure_does_not_fail_run(self, orchestrator, sample_steps) -> None:
        _register_workers(orchestrator, _echo)
        manager = await orchestrator.create_workflow(
            sample_steps, context={"handle": object()}
        )
        errors = []
        manager.on("error", errors.append)

        state = await orchestrator.run()

        assert state.status == WorkflowStatus.COMPLETED
        assert errors[0].error_code == "STATE_SAVE_FAILED"

    async def test_persistence_disabled(self, config, sample_steps) -> None:
        config = PiggyflowConfig(
            persistence=config.persistence.model_copy(update={"enabled": False}),
            recovery=config.recovery,
        )
        async with WorkflowOrchestrator(config) as orchestrator:
            _register_workers(orchestrator, _echo)
            await orchestrator.create_workflow(sample_steps, workflow_id="wf-mem")
            state = await orchestrator.run()

        assert state.status == WorkflowStatus.COMPLETED
        assert not (config.persistence.state_dir / "wf-mem.json").exists()
