"""
piggyflow.orchestration.orchestrator - Workflow Orchestrator
=============================================================

The composition root: owns one MessageBus, one ErrorRecoverySystem and the
WorkflowStateManager of the current run, and drives a workflow plan through
them step by step.

Architecture Context:

    ┌──────────────────────────────────────────────────────────────┐
    │                   WorkflowOrchestrator                        │
    │                                                               │
    │   run() ─┬─> WorkflowStateManager   (status, steps, snapshots)│
    │          ├─> MessageBus.send_request (one request per attempt)│
    │          └─> ErrorRecoverySystem     (handle_error, retry?)   │
    └──────────────────────────────────────────────────────────────┘

Step Execution:
    1. Skip the step if a dependency is not COMPLETED.
    2. Mark it RUNNING and send a TASK_REQUEST to its agent type.
    3. On reply: store the output, mark COMPLETED.
    4. On MessageBusError: record a WorkflowError, run handle_error, then
       should_retry with the matched pattern's strategy. Retry after the
       returned delay, or mark the step FAILED.

    A failed step fails the workflow (later steps are skipped unless
    ``continue_on_step_failure``). Failed runs keep a final snapshot for
    postmortem; every run is persisted at the end.

Usage:
    >>> async with WorkflowOrchestrator(config) as orchestrator:
    ...     orchestrator.message_bus.register_handler(
    ...         AgentType.MOBILE_ANALYSIS, MessageType.TASK_REQUEST, analyze
    ...     )
    ...     await orchestrator.create_workflow([
    ...         {"id": "analyze", "name": "Analyze", "agent_type": "analysis"},
    ...     ])
    ...     state = await orchestrator.run()
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from typing import Any, Optional, Union

import structlog

from piggyflow.core.config import PiggyflowConfig
from piggyflow.core.enums import AgentType, RetryStrategy, StepStatus, WorkflowStatus
from piggyflow.core.exceptions import MessageBusError, StateError
from piggyflow.core.logging import configure_logging
from piggyflow.core.models import WorkflowError, WorkflowState, WorkflowStep
from piggyflow.orchestration.error_recovery import ErrorRecoverySystem, RecoveryAction
from piggyflow.orchestration.message_bus import MessageBus
from piggyflow.orchestration.state_manager import WorkflowStateManager

logger = structlog.get_logger()

StepSpec = Union[WorkflowStep, dict[str, Any]]


class WorkflowOrchestrator:
    """Runs workflow plans over the message bus with recovery and persistence.

    Lifecycle:
        1. ``WorkflowOrchestrator(config)``
        2. ``await initialize()`` (starts the bus)
        3. ``await create_workflow(steps)``
        4. ``await run()``
        5. ``await shutdown()``

    Or ``async with WorkflowOrchestrator(config) as orchestrator: ...``

    Args:
        config: Top-level configuration; defaults to env/defaults.
        message_bus: Custom bus; defaults to one built from ``config``.
        recovery: Custom recovery system; defaults to one built from
            ``config`` whose "retry" action runs the step's health check.
        configure_logs: Configure structlog from ``config`` on initialize().
    """

    def __init__(
        self,
        config: Optional[PiggyflowConfig] = None,
        *,
        message_bus: Optional[MessageBus] = None,
        recovery: Optional[ErrorRecoverySystem] = None,
        configure_logs: bool = False,
    ) -> None:
        self._config = config or PiggyflowConfig()
        self._message_bus = message_bus or MessageBus(self._config.message_bus)
        if recovery is None:
            recovery = ErrorRecoverySystem(
                self._config.recovery,
                retry_handler=self._check_step_health,
            )
        self._recovery = recovery
        self._recovery.on("step:restart:requested", self._on_restart_requested)

        self._state_manager: Optional[WorkflowStateManager] = None
        self._configure_logs = configure_logs
        self._initialized = False
        self._logger = logger.bind(component="orchestrator")

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def config(self) -> PiggyflowConfig:
        return self._config

    @property
    def message_bus(self) -> MessageBus:
        return self._message_bus

    @property
    def recovery(self) -> ErrorRecoverySystem:
        return self._recovery

    @property
    def state_manager(self) -> WorkflowStateManager:
        if self._state_manager is None:
            raise StateError(
                message="No workflow has been created. Call create_workflow() first.",
                error_code="NO_WORKFLOW",
            )
        return self._state_manager

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    # =========================================================================
    # Lifecycle Management
    # =========================================================================

    async def initialize(self) -> None:
        """Start the message bus (and auto-save, if a workflow exists). Idempotent."""
        if self._initialized:
            return
        if self._configure_logs:
            configure_logging(self._config.log_level, self._config.json_logs)

        await self._message_bus.start()
        if self._state_manager is not None:
            await self._state_manager.start()

        self._initialized = True
        self._logger.info("orchestrator_initialized", environment=self._config.environment)

    async def shutdown(self) -> None:
        """Stop the bus and tear down the current state manager. Idempotent."""
        if not self._initialized:
            return

        await self._message_bus.stop()
        if self._state_manager is not None:
            await self._state_manager.destroy()

        self._initialized = False
        self._logger.info("orchestrator_shutdown_complete")

    async def __aenter__(self) -> WorkflowOrchestrator:
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.shutdown()

    # =========================================================================
    # Workflow Construction
    # =========================================================================

    async def create_workflow(
        self,
        steps: Iterable[StepSpec],
        context: Optional[dict[str, Any]] = None,
        workflow_id: Optional[str] = None,
    ) -> WorkflowStateManager:
        """Build the initial state for a new run and make it current.

        Step dicts without ``max_retries`` get ``default_max_retries``.

        Raises:
            StateError: INVALID_WORKFLOW if the plan fails validation
                (including dependency cycles).
        """
        built: list[WorkflowStep] = []
        for entry in steps:
            if isinstance(entry, WorkflowStep):
                built.append(entry)
            else:
                data = {"max_retries": self._config.default_max_retries, **entry}
                built.append(WorkflowStep.model_validate(data))

        state_kwargs: dict[str, Any] = {"steps": built, "context": dict(context or {})}
        if workflow_id is not None:
            state_kwargs["id"] = workflow_id
        manager = WorkflowStateManager(WorkflowState(**state_kwargs), self._config.persistence)

        result = manager.validate(check_cycles=True)
        if not result.is_valid:
            raise StateError(
                message=f"Invalid workflow: {'; '.join(result.errors)}",
                error_code="INVALID_WORKFLOW",
                details={"errors": result.errors},
            )

        if self._state_manager is not None:
            await self._state_manager.destroy()
        self._state_manager = manager
        manager.update_status(WorkflowStatus.INITIALIZING)
        if self._initialized:
            await manager.start()

        self._logger.info(
            "workflow_created",
            workflow_id=manager.workflow_id,
            total_steps=len(built),
        )
        return manager

    # =========================================================================
    # Execution
    # =========================================================================

    async def run(self) -> WorkflowState:
        """Execute every step in order and return the final state."""
        manager = self.state_manager
        manager.update_status(WorkflowStatus.RUNNING)
        manager.create_snapshot("Workflow started")
        self._logger.info("workflow_started", workflow_id=manager.workflow_id)

        failed = False
        for index, step in enumerate(manager.get_steps()):
            if failed and not self._config.continue_on_step_failure:
                manager.update_step(step.id, status=StepStatus.SKIPPED)
                continue
            manager.update_current_step(index)
            if not await self._run_step(step.id):
                failed = True

        state = manager.get_state()
        completed = sum(1 for s in state.steps if s.status == StepStatus.COMPLETED)
        manager.update_metrics(
            success_rate=completed / len(state.steps) if state.steps else 0.0,
            total_execution_time=sum(s.duration or 0.0 for s in state.steps),
        )

        if failed:
            manager.update_status(WorkflowStatus.FAILED)
            manager.create_snapshot("Workflow failed")
            self._logger.warning("workflow_failed", workflow_id=manager.workflow_id)
        else:
            manager.update_status(WorkflowStatus.COMPLETED)
            self._logger.info("workflow_completed", workflow_id=manager.workflow_id)

        await self._persist(manager)
        return manager.get_state()

    async def _run_step(self, step_id: str) -> bool:
        manager = self.state_manager
        step = manager.get_step(step_id)
        if step is None:
            raise StateError(
                message=f"Step not found: {step_id}",
                error_code="STEP_NOT_FOUND",
                details={"step_id": step_id},
            )

        unmet = [
            dep
            for dep in step.dependencies
            if (found := manager.get_step(dep)) is None or found.status != StepStatus.COMPLETED
        ]
        if unmet:
            self._logger.warning("step_dependencies_unmet", step_id=step_id, unmet=unmet)
            manager.update_step(step_id, status=StepStatus.SKIPPED)
            return False

        while True:
            step = manager.update_step(step_id, status=StepStatus.RUNNING)
            try:
                output = await self._message_bus.send_request(
                    AgentType.ORCHESTRATOR,
                    step.agent_type,
                    self._build_request(step),
                    timeout=step.timeout,
                )
            except MessageBusError as exc:
                error = self._record_failure(step, exc)
                if await self._should_retry(error, step):
                    continue
                manager.update_step(step_id, status=StepStatus.FAILED)
                manager.update_metrics(steps_failed=manager.get_metrics().steps_failed + 1)
                self._logger.error("step_failed", step_id=step_id, error=error.message)
                return False

            manager.update_step(step_id, status=StepStatus.COMPLETED, output=output)
            manager.update_metrics(steps_completed=manager.get_metrics().steps_completed + 1)
            self._logger.info("step_completed", step_id=step_id, retries=step.retry_count)
            return True

    def _record_failure(self, step: WorkflowStep, exc: MessageBusError) -> WorkflowError:
        error = WorkflowError(
            step_id=step.id,
            agent_type=step.agent_type,
            type="timeout" if exc.error_code == "REQUEST_TIMEOUT" else "agent-failure",
            code=exc.error_code,
            message=exc.message,
            context={**exc.details, "attempt": step.retry_count + 1},
        )
        manager = self.state_manager
        manager.add_error(error)
        manager.update_step(step.id, error=error)
        self._logger.warning(
            "step_attempt_failed",
            step_id=step.id,
            attempt=step.retry_count + 1,
            error_code=exc.error_code,
            error=exc.message,
        )
        return error

    async def _should_retry(self, error: WorkflowError, step: WorkflowStep) -> bool:
        manager = self.state_manager
        outcome = await self._recovery.handle_error(error, step)
        if not outcome.can_recover:
            return False

        pattern = self._recovery.match_error_pattern(error)
        strategy = (
            pattern.retry_strategy
            if pattern is not None and pattern.retry_strategy is not None
            else RetryStrategy.EXPONENTIAL_BACKOFF
        )
        decision = await self._recovery.should_retry(error, step, strategy)
        if not decision.should_retry:
            return False

        manager.update_step(step.id, status=StepStatus.RETRYING, retry_count=step.retry_count + 1)
        manager.update_metrics(retries_performed=manager.get_metrics().retries_performed + 1)
        self._logger.info(
            "step_retry_scheduled",
            step_id=step.id,
            attempt=step.retry_count + 2,
            delay_ms=decision.delay_ms,
        )
        await asyncio.sleep(decision.delay_ms / 1000)
        return True

    def _build_request(self, step: WorkflowStep) -> dict[str, Any]:
        manager = self.state_manager
        return {
            "workflow_id": manager.workflow_id,
            "step_id": step.id,
            "name": step.name,
            "input": step.input,
            "context": manager.get_context(),
            "attempt": step.retry_count + 1,
        }

    async def _persist(self, manager: WorkflowStateManager) -> None:
        try:
            await manager.save()
        except StateError as exc:
            self._logger.error("workflow_persist_failed", error=exc.message, details=exc.details)
            manager.emit("error", exc)

    async def _check_step_health(self, step: WorkflowStep, action: RecoveryAction) -> bool:
        result = await self._recovery.run_health_check(step.id)
        return result.healthy

    def _on_restart_requested(self, step_id: str) -> None:
        self._logger.info("step_restart_requested", step_id=step_id)

    def __repr__(self) -> str:
        workflow_id = self._state_manager.workflow_id if self._state_manager else None
        return (
            f"WorkflowOrchestrator("
            f"initialized={self._initialized}, "
            f"workflow_id={workflow_id!r})"
        )
