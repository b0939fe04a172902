"""
piggyflow.orchestration.error_recovery - Error Recovery System
===============================================================

Decides what happens after a workflow step fails: is the error recoverable,
should the step be retried and after how long, and has the step failed so
often that its circuit breaker should stop further attempts.

Architecture Context:

    ┌──────────────┐  handle_error(error, step)   ┌──────────────────────┐
    │ Orchestrator │ ───────────────────────────> │ ErrorRecoverySystem  │
    │              │ <─── RecoveryOutcome ─────── │  ├── ErrorPattern[]  │
    │              │                              │  ├── RecoveryPlan{}  │
    │              │  should_retry(error, step)   │  ├── breakers{step}  │
    │              │ ───────────────────────────> │  ├── health checks   │
    │              │ <─── RetryDecision ───────── │  └── retry history   │
    └──────────────┘                              └──────────────────────┘

Error Classification:
    ``WorkflowError.message`` is matched against the registered patterns in
    registration order; the first match wins. Built-in patterns:

        id                 severity  retryable  max  strategy      actions
        network_timeout    MEDIUM    yes        3    exponential   wait, retry, fallback
        file_not_found     HIGH      no         0    -             create_missing_file, use_fallback
        out_of_memory      HIGH      yes        2    linear        cleanup_memory, reduce_batch_size, restart
        permission_denied  HIGH      no         0    -             fix_permissions, use_alternative_path
        resource_busy      MEDIUM    yes        5    exponential   wait, retry

    CRITICAL severity is never recoverable.

Recovery Plans:
    A plan is the executable form of a pattern's action names. Plans
    registered with ``register_recovery_plan`` win; otherwise one is built
    the first time a pattern is seen for a step and cached per
    ``(pattern, step)``. Action names without an executable action
    (create_missing_file, reduce_batch_size, fix_permissions,
    use_alternative_path) are skipped.

    Executable actions, each bounded by ``asyncio.wait_for(action.timeout)``:
        wait      sleep ``duration`` ms (x ``wait_scale``)
        retry     call the injected ``retry_handler``; a no-op marker without one
        restart   emit ``step:restart:requested``
        cleanup   ``gc.collect()`` for the "memory" target
        fallback  emit ``fallback:requested`` with the chosen strategy

    A failed action aborts the plan unless the action is ``retryable``.

Circuit Breaker (per step):
    CLOSED ──(failure_count >= threshold)──> OPEN
    OPEN ──(circuit_breaker_timeout elapsed, checked lazily)──> HALF_OPEN
    HALF_OPEN ──(half_open_retries >= threshold)──> OPEN
    any ──(successful recovery / reset)──> CLOSED

Propagation Policy:
    ``handle_error`` and ``should_retry`` never raise; they always return a
    decision object. Action failures are folded into the outcome.
"""

from __future__ import annotations

import asyncio
import gc
import inspect
import random
import re
import time
from collections.abc import Awaitable, Callable
from typing import Any, Optional, Union

import structlog
from pydantic import BaseModel, ConfigDict, Field, field_validator

from piggyflow.core.config import RecoveryConfig
from piggyflow.core.enums import CircuitState, ErrorSeverity, RetryStrategy
from piggyflow.core.events import EventEmitter
from piggyflow.core.exceptions import RecoveryError
from piggyflow.core.models import WorkflowError, WorkflowStep

logger = structlog.get_logger()


# =============================================================================
# Recovery Data Models
# =============================================================================
class ErrorPattern(BaseModel):
    """A classification rule for workflow errors.

    ``pattern`` accepts a string (compiled case-insensitively) or an already
    compiled regular expression.

    Example:
        >>> ErrorPattern(
        ...     id="rate_limited",
        ...     name="Rate Limited",
        ...     pattern=r"429|rate limit",
        ...     severity=ErrorSeverity.MEDIUM,
        ...     retryable=True,
        ...     max_retries=4,
        ...     retry_strategy=RetryStrategy.RANDOM_JITTER,
        ...     recovery_actions=["wait", "retry"],
        ... )
    """

    id: str = Field(description="Pattern id")
    name: str = Field(description="Human-readable pattern name")
    pattern: re.Pattern[str] = Field(description="Regex matched against error text")
    severity: ErrorSeverity = Field(description="How bad a match is")
    retryable: bool = Field(description="Whether matching errors may be retried")
    max_retries: int = Field(default=0, ge=0, description="Suggested retry budget")
    retry_strategy: Optional[RetryStrategy] = Field(
        default=None,
        description="Suggested backoff strategy",
    )
    recovery_actions: list[str] = Field(
        default_factory=list,
        description="Ordered recovery action names",
    )

    @field_validator("pattern", mode="before")
    @classmethod
    def _compile(cls, value: Any) -> Any:
        if isinstance(value, str):
            return re.compile(value, re.IGNORECASE)
        return value

    def matches(self, text: str) -> bool:
        return self.pattern.search(text) is not None


class RecoveryAction(BaseModel):
    """One executable step of a recovery plan.

    Attributes:
        type: wait, retry, restart, cleanup or fallback.
        parameters: Action-specific arguments.
        timeout: Milliseconds the action may run.
        retryable: If True a failure of this action does not abort the plan.
    """

    type: str = Field(description="Action type")
    parameters: dict[str, Any] = Field(default_factory=dict, description="Arguments")
    timeout: int = Field(default=30000, ge=0, description="Timeout in milliseconds")
    retryable: bool = Field(default=False, description="Failure does not abort")


class RecoveryPlan(BaseModel):
    """Ordered recovery actions for one error pattern."""

    id: str = Field(description="Plan id")
    name: str = Field(description="Human-readable plan name")
    error_pattern_id: str = Field(description="Pattern this plan recovers from")
    actions: list[RecoveryAction] = Field(default_factory=list, description="Actions")
    priority: int = Field(default=50, ge=0, le=100, description="0-100 priority score")
    timeout: int = Field(default=0, ge=0, description="Sum of action timeouts (ms)")


class CircuitBreakerState(BaseModel):
    """Per-step breaker record.

    ``last_failure_time`` is a ``time.monotonic()`` reading, not wall time.
    """

    state: CircuitState = Field(default=CircuitState.CLOSED, description="State")
    failure_count: int = Field(default=0, ge=0, description="Failures since reset")
    last_failure_time: Optional[float] = Field(
        default=None,
        description="Monotonic time of the last failure",
    )
    half_open_retries: int = Field(
        default=0,
        ge=0,
        description="Failures recorded while HALF_OPEN",
    )


class HealthCheckResult(BaseModel):
    healthy: bool = Field(description="Whether the check passed")
    details: Optional[dict[str, Any]] = Field(default=None, description="Extra info")


HealthCheckResultLike = Union[HealthCheckResult, dict[str, Any], bool]


class HealthCheck(BaseModel):
    """A named async health check for one step.

    ``check`` may return a HealthCheckResult, a ``{"healthy": ..}`` dict or
    a plain bool.
    """

    name: str = Field(description="Check name")
    check: Callable[[], Awaitable[HealthCheckResultLike]] = Field(
        description="Async health check",
    )


class RecoveryOutcome(BaseModel):
    """Result of ``handle_error``: recoverability plus the actions attempted."""

    can_recover: bool
    actions: list[RecoveryAction] = Field(default_factory=list)


class RetryDecision(BaseModel):
    """Result of ``should_retry``."""

    should_retry: bool
    delay_ms: float = 0.0


class RecoveryStatistics(BaseModel):
    total_errors: int = 0
    recovered_errors: int = 0
    failed_recoveries: int = 0
    circuit_breakers_open: int = 0
    average_recovery_time: float = Field(
        default=0.0,
        description="Mean recovery plan execution time in milliseconds",
    )


# Called by the "retry" action with the failing step and the action. A
# return value of False marks the action as failed.
RetryHandler = Callable[[WorkflowStep, RecoveryAction], Any]


# =============================================================================
# Built-in Patterns and Action Tables
# =============================================================================
DEFAULT_ERROR_PATTERNS: tuple[dict[str, Any], ...] = (
    {
        "id": "network_timeout",
        "name": "Network Timeout",
        "pattern": r"timeout|ETIMEDOUT|ECONNRESET",
        "severity": ErrorSeverity.MEDIUM,
        "retryable": True,
        "max_retries": 3,
        "retry_strategy": RetryStrategy.EXPONENTIAL_BACKOFF,
        "recovery_actions": ["wait", "retry", "fallback"],
    },
    {
        "id": "file_not_found",
        "name": "File Not Found",
        "pattern": r"ENOENT|file not found|no such file",
        "severity": ErrorSeverity.HIGH,
        "retryable": False,
        "max_retries": 0,
        "recovery_actions": ["create_missing_file", "use_fallback"],
    },
    {
        "id": "out_of_memory",
        "name": "Out of Memory",
        "pattern": r"out of memory|heap|ENOMEM",
        "severity": ErrorSeverity.HIGH,
        "retryable": True,
        "max_retries": 2,
        "retry_strategy": RetryStrategy.LINEAR_BACKOFF,
        "recovery_actions": ["cleanup_memory", "reduce_batch_size", "restart"],
    },
    {
        "id": "permission_denied",
        "name": "Permission Denied",
        "pattern": r"EACCES|permission denied|access denied",
        "severity": ErrorSeverity.HIGH,
        "retryable": False,
        "max_retries": 0,
        "recovery_actions": ["fix_permissions", "use_alternative_path"],
    },
    {
        "id": "resource_busy",
        "name": "Resource Busy",
        "pattern": r"EBUSY|resource busy|locked",
        "severity": ErrorSeverity.MEDIUM,
        "retryable": True,
        "max_retries": 5,
        "retry_strategy": RetryStrategy.EXPONENTIAL_BACKOFF,
        "recovery_actions": ["wait", "retry"],
    },
)

# Base wait (ms) per pattern for the "wait" action; everything else waits 1s.
_WAIT_TIMES_MS = {"network_timeout": 5000, "resource_busy": 2000}
_DEFAULT_WAIT_MS = 1000

_SEVERITY_PRIORITY = {
    ErrorSeverity.LOW: 10,
    ErrorSeverity.MEDIUM: 20,
    ErrorSeverity.HIGH: 40,
    ErrorSeverity.CRITICAL: 60,
}

_CLEANUP_TARGETS = ("memory", "temp_files")
_FALLBACK_STRATEGIES = ("alternative_implementation", "reduced_functionality")


class ErrorRecoverySystem(EventEmitter):
    """Error classification, recovery execution and per-step circuit breakers.

    Args:
        config: Delays, breaker threshold/timeout and wait scaling.
        retry_handler: Optional callable run by "retry" recovery actions.
            Without one the action only marks that the caller should retry.

    Example:
        >>> recovery = ErrorRecoverySystem(RecoveryConfig(base_retry_delay=100))
        >>> outcome = await recovery.handle_error(error, step)
        >>> decision = await recovery.should_retry(error, step)
        >>> if outcome.can_recover and decision.should_retry:
        ...     await asyncio.sleep(decision.delay_ms / 1000)
    """

    def __init__(
        self,
        config: Optional[RecoveryConfig] = None,
        retry_handler: Optional[RetryHandler] = None,
    ) -> None:
        super().__init__()
        self._config = config or RecoveryConfig()
        self._retry_handler = retry_handler

        self._error_patterns: dict[str, ErrorPattern] = {}
        self._recovery_plans: dict[str, RecoveryPlan] = {}
        self._generated_plans: dict[tuple[str, str], RecoveryPlan] = {}
        self._circuit_breakers: dict[str, CircuitBreakerState] = {}
        self._health_checks: dict[str, HealthCheck] = {}
        self._retry_history: dict[str, list[float]] = {}

        self._total_errors = 0
        self._recovered_errors = 0
        self._failed_recoveries = 0
        self._recovery_times: list[float] = []

        self._logger = logger.bind(component="error_recovery")

        for fields in DEFAULT_ERROR_PATTERNS:
            self.register_error_pattern(ErrorPattern(**fields))

    @property
    def config(self) -> RecoveryConfig:
        return self._config

    def set_retry_handler(self, handler: Optional[RetryHandler]) -> None:
        self._retry_handler = handler

    # =========================================================================
    # Decisions
    # =========================================================================

    async def handle_error(
        self,
        error: WorkflowError,
        step: WorkflowStep,
    ) -> RecoveryOutcome:
        """Classify ``error`` and, if recoverable, run its recovery plan.

        Returns:
            ``can_recover=False`` with no actions when nothing matches, the
            match is CRITICAL, or the step's breaker is OPEN. Otherwise the
            plan's actions, with ``can_recover`` reflecting plan success.
        """
        self._total_errors += 1
        self.emit("error:received", {"error": error, "step": step})

        pattern = self.match_error_pattern(error)
        if pattern is None or pattern.severity == ErrorSeverity.CRITICAL:
            self._failed_recoveries += 1
            self._logger.info(
                "error_not_recoverable",
                step_id=step.id,
                pattern=pattern.id if pattern else None,
                error_message=error.message,
            )
            return RecoveryOutcome(can_recover=False)

        if self.is_circuit_breaker_open(step.id):
            self._failed_recoveries += 1
            self._logger.warning("circuit_breaker_blocking_recovery", step_id=step.id)
            self.emit("circuit:breaker:open", {"step_id": step.id, "error": error})
            return RecoveryOutcome(can_recover=False)

        plan = self._get_recovery_plan(error, step, pattern)

        started = time.monotonic()
        success = await self._execute_recovery_plan(plan, step)
        self._recovery_times.append((time.monotonic() - started) * 1000)

        if success:
            self._recovered_errors += 1
            self.reset_circuit_breaker(step.id)
        else:
            self._failed_recoveries += 1
            self.update_circuit_breaker(step.id, error)

        return RecoveryOutcome(
            can_recover=success,
            actions=[a.model_copy(deep=True) for a in plan.actions],
        )

    async def should_retry(
        self,
        error: WorkflowError,
        step: WorkflowStep,
        strategy: RetryStrategy = RetryStrategy.EXPONENTIAL_BACKOFF,
    ) -> RetryDecision:
        """Decide whether ``step`` gets another attempt, and after what delay.

        No retry when the step's budget is spent, the error is not retryable
        (or unclassified), the error is CRITICAL, or the breaker is OPEN.
        A positive decision is recorded in the step's retry history.
        """
        if step.retry_count >= step.max_retries:
            return RetryDecision(should_retry=False)

        pattern = self.match_error_pattern(error)
        if pattern is None or not pattern.retryable:
            return RetryDecision(should_retry=False)

        if pattern.severity == ErrorSeverity.CRITICAL:
            return RetryDecision(should_retry=False)

        if self.is_circuit_breaker_open(step.id):
            return RetryDecision(should_retry=False)

        delay_ms = self.calculate_retry_delay(step.retry_count + 1, strategy)
        self._record_retry_attempt(step.id)

        self._logger.debug(
            "retry_scheduled",
            step_id=step.id,
            attempt=step.retry_count + 1,
            strategy=RetryStrategy(strategy).value,
            delay_ms=delay_ms,
        )
        return RetryDecision(should_retry=True, delay_ms=delay_ms)

    def calculate_retry_delay(self, attempt: int, strategy: RetryStrategy) -> float:
        """Backoff delay in milliseconds for a 1-indexed ``attempt``."""
        base = self._config.base_retry_delay
        maximum = self._config.max_retry_delay
        exponential = base * (2 ** (attempt - 1))

        if strategy == RetryStrategy.IMMEDIATE:
            return 0.0
        if strategy == RetryStrategy.FIXED_DELAY:
            return min(base, maximum)
        if strategy == RetryStrategy.LINEAR_BACKOFF:
            return min(base * attempt, maximum)
        if strategy == RetryStrategy.RANDOM_JITTER:
            jitter = random.uniform(0, exponential * 0.1)
            return min(exponential + jitter, maximum)
        return min(exponential, maximum)

    def match_error_pattern(self, error: WorkflowError) -> Optional[ErrorPattern]:
        """First registered pattern whose regex matches ``error.message``."""
        for pattern in self._error_patterns.values():
            if pattern.matches(error.message):
                return pattern
        return None

    # =========================================================================
    # Registration
    # =========================================================================

    def register_error_pattern(self, pattern: ErrorPattern, prepend: bool = False) -> None:
        """Register ``pattern``.

        Patterns are matched in registration order. ``prepend=True`` puts the
        pattern ahead of every existing one, including the built-ins.
        """
        if prepend:
            rest = {k: v for k, v in self._error_patterns.items() if k != pattern.id}
            self._error_patterns = {pattern.id: pattern, **rest}
        else:
            self._error_patterns[pattern.id] = pattern
        self.emit("pattern:registered", pattern)

    def get_error_patterns(self) -> list[ErrorPattern]:
        return list(self._error_patterns.values())

    def register_recovery_plan(self, plan: RecoveryPlan) -> None:
        self._recovery_plans[plan.id] = plan
        self.emit("plan:registered", plan)

    # =========================================================================
    # Health Checks
    # =========================================================================

    def add_health_check(self, step_id: str, health_check: HealthCheck) -> None:
        self._health_checks[step_id] = health_check
        self.emit("health:check:added", {"step_id": step_id, "health_check": health_check})

    def remove_health_check(self, step_id: str) -> bool:
        removed = self._health_checks.pop(step_id, None)
        if removed is None:
            return False
        self.emit("health:check:removed", {"step_id": step_id})
        return True

    async def run_health_check(self, step_id: str) -> HealthCheckResult:
        """Run the check for ``step_id``. Steps without one are healthy.

        A check that raises yields ``healthy=False`` with the error text.
        """
        health_check = self._health_checks.get(step_id)
        if health_check is None:
            return HealthCheckResult(healthy=True)

        try:
            raw = await health_check.check()
            result = self._coerce_health_result(raw)
        except Exception as exc:
            self._logger.warning(
                "health_check_failed",
                step_id=step_id,
                check=health_check.name,
                error=str(exc),
            )
            self.emit("health:check:failed", {"step_id": step_id, "error": exc})
            return HealthCheckResult(healthy=False, details={"error": str(exc)})

        self.emit("health:check:completed", {"step_id": step_id, "result": result})
        return result

    async def run_all_health_checks(self) -> dict[str, HealthCheckResult]:
        results: dict[str, HealthCheckResult] = {}
        for step_id in list(self._health_checks):
            results[step_id] = await self.run_health_check(step_id)
        return results

    # =========================================================================
    # Circuit Breakers
    # =========================================================================

    def is_circuit_breaker_open(self, step_id: str) -> bool:
        """True while the step's breaker is OPEN.

        An OPEN breaker whose timeout has elapsed moves to HALF_OPEN here.
        """
        breaker = self._circuit_breakers.get(step_id)
        if breaker is None:
            return False

        if breaker.state == CircuitState.OPEN:
            timeout_s = self._config.circuit_breaker_timeout / 1000
            if (
                breaker.last_failure_time is not None
                and time.monotonic() - breaker.last_failure_time > timeout_s
            ):
                breaker.state = CircuitState.HALF_OPEN
                breaker.half_open_retries = 0
                self._logger.info("circuit_breaker_half_open", step_id=step_id)
            return breaker.state == CircuitState.OPEN

        return False

    def update_circuit_breaker(
        self,
        step_id: str,
        error: Optional[WorkflowError] = None,
    ) -> CircuitBreakerState:
        """Record one failure for ``step_id``. Returns a copy of the breaker."""
        breaker = self._circuit_breakers.setdefault(step_id, CircuitBreakerState())
        threshold = self._config.circuit_breaker_threshold
        previous = breaker.state

        breaker.failure_count += 1
        breaker.last_failure_time = time.monotonic()

        if breaker.state == CircuitState.HALF_OPEN:
            breaker.half_open_retries += 1
            if breaker.half_open_retries >= threshold:
                breaker.state = CircuitState.OPEN
        elif breaker.failure_count >= threshold:
            breaker.state = CircuitState.OPEN

        if breaker.state == CircuitState.OPEN and previous != CircuitState.OPEN:
            self._logger.warning(
                "circuit_breaker_opened",
                step_id=step_id,
                failure_count=breaker.failure_count,
                threshold=threshold,
            )

        snapshot = breaker.model_copy()
        self.emit(
            "circuit:breaker:updated",
            {"step_id": step_id, "breaker": snapshot, "error": error},
        )
        return snapshot

    def reset_circuit_breaker(self, step_id: str) -> None:
        """Close the breaker for ``step_id``. No-op if it never failed."""
        breaker = self._circuit_breakers.get(step_id)
        if breaker is None:
            return
        breaker.state = CircuitState.CLOSED
        breaker.failure_count = 0
        breaker.last_failure_time = None
        breaker.half_open_retries = 0
        self._logger.debug("circuit_breaker_reset", step_id=step_id)
        self.emit("circuit:breaker:reset", {"step_id": step_id, "breaker": breaker.model_copy()})

    def get_circuit_breaker_state(self, step_id: str) -> CircuitBreakerState:
        breaker = self._circuit_breakers.get(step_id)
        return breaker.model_copy() if breaker else CircuitBreakerState()

    def reset_all_circuit_breakers(self) -> None:
        for step_id in list(self._circuit_breakers):
            self.reset_circuit_breaker(step_id)

    # =========================================================================
    # Retry History and Statistics
    # =========================================================================

    def get_retry_history(self, step_id: str) -> list[float]:
        """Wall-clock timestamps (epoch seconds) of recent retry decisions."""
        return list(self._retry_history.get(step_id, ()))

    def clear_retry_history(self, step_id: Optional[str] = None) -> None:
        if step_id is None:
            self._retry_history.clear()
        else:
            self._retry_history.pop(step_id, None)

    def _record_retry_attempt(self, step_id: str) -> None:
        now = time.time()
        cutoff = now - self._config.retry_history_window
        history = [t for t in self._retry_history.get(step_id, ()) if t > cutoff]
        history.append(now)
        self._retry_history[step_id] = history

    def get_recovery_statistics(self) -> RecoveryStatistics:
        open_breakers = sum(
            1 for b in self._circuit_breakers.values() if b.state == CircuitState.OPEN
        )
        average = (
            sum(self._recovery_times) / len(self._recovery_times)
            if self._recovery_times
            else 0.0
        )
        return RecoveryStatistics(
            total_errors=self._total_errors,
            recovered_errors=self._recovered_errors,
            failed_recoveries=self._failed_recoveries,
            circuit_breakers_open=open_breakers,
            average_recovery_time=average,
        )

    # =========================================================================
    # Plan Construction
    # =========================================================================

    def _get_recovery_plan(
        self,
        error: WorkflowError,
        step: WorkflowStep,
        pattern: ErrorPattern,
    ) -> RecoveryPlan:
        for plan in self._recovery_plans.values():
            if plan.error_pattern_id == pattern.id:
                return plan

        key = (pattern.id, step.id)
        plan = self._generated_plans.get(key)
        if plan is None:
            plan = self._build_recovery_plan(step, pattern)
            self._generated_plans[key] = plan
        return plan

    def _build_recovery_plan(
        self,
        step: WorkflowStep,
        pattern: ErrorPattern,
    ) -> RecoveryPlan:
        step_timeout = step.timeout or 60000
        actions: list[RecoveryAction] = []

        for name in pattern.recovery_actions:
            if name == "wait":
                actions.append(
                    RecoveryAction(
                        type="wait",
                        parameters={
                            "duration": _WAIT_TIMES_MS.get(pattern.id, _DEFAULT_WAIT_MS)
                        },
                        timeout=30000,
                    )
                )
            elif name == "retry":
                actions.append(
                    RecoveryAction(
                        type="retry",
                        parameters={
                            "strategy": (
                                pattern.retry_strategy or RetryStrategy.EXPONENTIAL_BACKOFF
                            ).value,
                            "max_attempts": pattern.max_retries or 3,
                        },
                        timeout=step_timeout,
                    )
                )
            elif name == "restart":
                actions.append(
                    RecoveryAction(
                        type="restart",
                        parameters={"step_id": step.id},
                        timeout=120000,
                        retryable=True,
                    )
                )
            elif name == "cleanup_memory":
                actions.append(
                    RecoveryAction(
                        type="cleanup",
                        parameters={"target": "memory"},
                        timeout=30000,
                        retryable=True,
                    )
                )
            elif name in ("fallback", "use_fallback"):
                strategy = (
                    "alternative_implementation" if name == "fallback" else "reduced_functionality"
                )
                actions.append(
                    RecoveryAction(
                        type="fallback",
                        parameters={"strategy": strategy},
                        timeout=step_timeout,
                        retryable=True,
                    )
                )
            else:
                self._logger.debug(
                    "recovery_action_unsupported",
                    action=name,
                    pattern=pattern.id,
                )

        priority = 50 + _SEVERITY_PRIORITY[pattern.severity] + step.retry_count * 5
        return RecoveryPlan(
            id=f"plan_{step.id}_{int(time.time() * 1000)}",
            name=f"Recovery plan for {pattern.name}",
            error_pattern_id=pattern.id,
            actions=actions,
            priority=min(priority, 100),
            timeout=sum(a.timeout for a in actions),
        )

    # =========================================================================
    # Plan Execution
    # =========================================================================

    async def _execute_recovery_plan(self, plan: RecoveryPlan, step: WorkflowStep) -> bool:
        self._logger.info(
            "recovery_plan_started",
            plan_id=plan.id,
            step_id=step.id,
            actions=[a.type for a in plan.actions],
        )
        self.emit("recovery:plan:started", plan)

        try:
            for action in plan.actions:
                succeeded = await self._execute_recovery_action(action, step)
                if not succeeded and not action.retryable:
                    self._logger.warning(
                        "recovery_plan_failed",
                        plan_id=plan.id,
                        step_id=step.id,
                        action=action.type,
                    )
                    self.emit("recovery:plan:failed", {"plan": plan, "action": action})
                    return False
        except Exception as exc:
            self._logger.error(
                "recovery_plan_error",
                plan_id=plan.id,
                step_id=step.id,
                error=str(exc),
                exc_info=True,
            )
            self.emit("recovery:plan:error", {"plan": plan, "error": exc})
            return False

        self._logger.info("recovery_plan_completed", plan_id=plan.id, step_id=step.id)
        self.emit("recovery:plan:completed", plan)
        return True

    async def _execute_recovery_action(
        self,
        action: RecoveryAction,
        step: WorkflowStep,
    ) -> bool:
        self.emit("recovery:action:started", action)
        try:
            await asyncio.wait_for(
                self._run_action(action, step),
                timeout=action.timeout / 1000,
            )
        except asyncio.TimeoutError:
            error = RecoveryError(
                message=f"Recovery action '{action.type}' timed out after {action.timeout}ms",
                error_code="ACTION_TIMEOUT",
                details={"step_id": step.id, "action": action.type},
            )
            self._logger.warning("recovery_action_timeout", step_id=step.id, action=action.type)
            self.emit("recovery:action:failed", {"action": action, "error": error})
            return False
        except Exception as exc:
            self._logger.warning(
                "recovery_action_failed",
                step_id=step.id,
                action=action.type,
                error=str(exc),
            )
            self.emit("recovery:action:failed", {"action": action, "error": exc})
            return False

        self.emit("recovery:action:completed", action)
        return True

    async def _run_action(self, action: RecoveryAction, step: WorkflowStep) -> None:
        params = action.parameters

        if action.type == "wait":
            duration_ms = float(params.get("duration", _DEFAULT_WAIT_MS))
            await asyncio.sleep(duration_ms * self._config.wait_scale / 1000)

        elif action.type == "retry":
            if self._retry_handler is None:
                return
            result = self._retry_handler(step, action)
            if inspect.isawaitable(result):
                result = await result
            if result is False:
                raise RecoveryError(
                    message=f"Retry handler declined step {step.id}",
                    error_code="RETRY_DECLINED",
                    details={"step_id": step.id},
                )

        elif action.type == "restart":
            self.emit("step:restart:requested", params.get("step_id", step.id))

        elif action.type == "cleanup":
            target = params.get("target")
            if target not in _CLEANUP_TARGETS:
                raise RecoveryError(
                    message=f"Unknown cleanup target: {target}",
                    error_code="UNKNOWN_CLEANUP_TARGET",
                    details={"target": target},
                )
            if target == "memory":
                collected = gc.collect()
                self._logger.debug("memory_cleanup", collected=collected)
            else:
                # Temp files belong to the agents; nothing is held here.
                self._logger.debug("temp_files_cleanup", step_id=step.id)

        elif action.type == "fallback":
            strategy = params.get("strategy")
            if strategy not in _FALLBACK_STRATEGIES:
                raise RecoveryError(
                    message=f"Unknown fallback strategy: {strategy}",
                    error_code="UNKNOWN_FALLBACK_STRATEGY",
                    details={"strategy": strategy},
                )
            self.emit("fallback:requested", {"step_id": step.id, "strategy": strategy})

        else:
            raise RecoveryError(
                message=f"Unknown recovery action type: {action.type}",
                error_code="UNKNOWN_ACTION",
                details={"action": action.type},
            )

    @staticmethod
    def _coerce_health_result(raw: HealthCheckResultLike) -> HealthCheckResult:
        if isinstance(raw, HealthCheckResult):
            return raw
        if isinstance(raw, bool):
            return HealthCheckResult(healthy=raw)
        return HealthCheckResult.model_validate(raw)
