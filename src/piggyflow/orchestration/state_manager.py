"""
piggyflow.orchestration.state_manager - Workflow State Manager
===============================================================

Single source of truth for one workflow run. Every read returns a deep copy;
every write goes through a named method that marks the state dirty and emits
an event describing the change.

Architecture:

    ┌──────────────┐   update_*/add_*   ┌────────────────────────┐
    │ Orchestrator │ ─────────────────> │ WorkflowStateManager   │──> events
    │              │ <───────────────── │   WorkflowState        │
    └──────────────┘    deep copies     │   snapshots{id}        │
                                        └───────────┬────────────┘
                                   save()/auto-save │ load()
                                                    ▼
                          <state_dir>/<workflow id>.json
                          <backup_dir>/workflow-state-<timestamp>.json

Persisted Layout:
    {
        "state": {...WorkflowState...},
        "snapshots": [[snapshot_id, {...StateSnapshot...}], ...],   # oldest first
        "metadata": {"savedAt": "<ISO-8601>", "version": "1.0.0"}
    }

    With ``compression_enabled`` the JSON text is gzip-compressed and base64
    encoded so the file stays plain UTF-8. ``load()`` recognizes either form.
    Writes go to a temp file in the target directory which is then renamed
    over the target.

Events:
    status:changed, step:changed, step:updated, error:added, backup:added,
    metrics:updated, context:updated, snapshot:created, snapshot:restored,
    snapshot:deleted, state:saved, state:loaded, error (auto-save failures)

Mutations are synchronous and always succeed in memory; only persistence is
asynchronous. Values placed in ``context``/``input``/``output`` are kept as-is
in memory but must be JSON serializable for ``save()``.
"""

from __future__ import annotations

import asyncio
import base64
import copy
import gzip
import hashlib
import json
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional, Union
from uuid import uuid4

import structlog
from pydantic import BaseModel, ValidationError

from piggyflow.core.config import PersistenceConfig
from piggyflow.core.enums import TERMINAL_STATUSES, StepStatus, WorkflowStatus
from piggyflow.core.events import EventEmitter
from piggyflow.core.exceptions import StateError
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

logger = structlog.get_logger()

STATE_FORMAT_VERSION = "1.0.0"

# Sentinel for "path segment not found" in query(); None is a valid value.
_MISSING = object()

PathLike = Union[str, Path]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _elapsed_ms(start: Optional[datetime], end: datetime) -> float:
    if start is None:
        return 0.0
    return (end - start).total_seconds() * 1000


class WorkflowStateManager(EventEmitter):
    """Owns the WorkflowState of a single run.

    Args:
        initial_state: Starting state; copied, never aliased. Defaults to an
            empty IDLE workflow.
        config: Persistence settings.

    Example:
        >>> manager = WorkflowStateManager(
        ...     WorkflowState(id="wf-1", steps=[step]),
        ...     PersistenceConfig(state_dir=tmp_path),
        ... )
        >>> manager.update_status(WorkflowStatus.RUNNING)
        >>> manager.update_step("analyze", status=StepStatus.RUNNING)
        >>> snapshot_id = manager.create_snapshot("before optimization")
        >>> await manager.save()
    """

    def __init__(
        self,
        initial_state: Optional[WorkflowState] = None,
        config: Optional[PersistenceConfig] = None,
    ) -> None:
        super().__init__()
        self._config = config or PersistenceConfig()
        self._state = (
            initial_state.model_copy(deep=True) if initial_state else WorkflowState()
        )
        # Insertion order is creation order: oldest first.
        self._snapshots: dict[str, StateSnapshot] = {}
        self._dirty = False
        # Bumped on every mutation; a save only clears _dirty if it is unchanged.
        self._generation = 0
        self._auto_save_task: Optional[asyncio.Task[None]] = None
        self._destroyed = False

        self._logger = logger.bind(component="state_manager", workflow_id=self._state.id)

    # =========================================================================
    # Reads (deep copies)
    # =========================================================================

    @property
    def workflow_id(self) -> str:
        return self._state.id

    @property
    def status(self) -> WorkflowStatus:
        return self._state.status

    @property
    def is_dirty(self) -> bool:
        return self._dirty

    def get_state(self) -> WorkflowState:
        return self._state.model_copy(deep=True)

    def get_steps(self) -> list[WorkflowStep]:
        return [s.model_copy(deep=True) for s in self._state.steps]

    def get_step(self, step_id: str) -> Optional[WorkflowStep]:
        for step in self._state.steps:
            if step.id == step_id:
                return step.model_copy(deep=True)
        return None

    def get_current_step(self) -> Optional[WorkflowStep]:
        index = self._state.current_step
        if 0 <= index < len(self._state.steps):
            return self._state.steps[index].model_copy(deep=True)
        return None

    def get_metrics(self) -> WorkflowMetrics:
        return self._state.metrics.model_copy(deep=True)

    def get_context(self, path: Optional[str] = None) -> Any:
        """The whole context, or the value at a dot ``path`` inside it."""
        if path is None:
            return copy.deepcopy(self._state.context)
        value = self._resolve_path(self._state.context, path)
        return None if value is _MISSING else copy.deepcopy(value)

    def get_errors(self) -> list[WorkflowError]:
        return [e.model_copy(deep=True) for e in self._state.errors]

    def get_backups(self) -> list[BackupInfo]:
        return [b.model_copy(deep=True) for b in self._state.backups]

    # =========================================================================
    # Mutations
    # =========================================================================

    def update_status(self, status: WorkflowStatus) -> None:
        """Set the workflow status. Any status may follow any status.

        The first RUNNING stamps ``start_time``; the first COMPLETED/FAILED
        stamps ``end_time`` and ``duration``.
        """
        status = WorkflowStatus(status)
        previous = self._state.status
        self._state.status = status

        now = _now()
        if status == WorkflowStatus.RUNNING and self._state.start_time is None:
            self._state.start_time = now
        elif status in TERMINAL_STATUSES and self._state.end_time is None:
            self._state.end_time = now
            self._state.duration = _elapsed_ms(self._state.start_time, now)

        self._mark_dirty()
        self._logger.info("workflow_status_changed", previous=previous.value, current=status.value)
        self.emit("status:changed", {"previous": previous, "current": status})

    def update_current_step(self, index: int) -> None:
        if not 0 <= index < len(self._state.steps):
            raise StateError(
                message=f"Invalid step index: {index}",
                error_code="STEP_INDEX_OUT_OF_RANGE",
                details={"index": index, "total_steps": len(self._state.steps)},
            )
        previous = self._state.current_step
        self._state.current_step = index
        self._mark_dirty()
        self.emit("step:changed", {"previous": previous, "current": index})

    def update_step(self, step_id: str, **updates: Any) -> WorkflowStep:
        """Shallow-merge ``updates`` into the step and return a copy of it.

        A ``status`` update into RUNNING stamps ``start_time`` once; into
        COMPLETED/FAILED stamps ``end_time`` and ``duration`` once.

        Raises:
            StateError: STEP_NOT_FOUND for an unknown id, INVALID_STEP_UPDATE
                for unknown fields or values the step model rejects.
        """
        index = self._find_step_index(step_id)

        unknown = sorted(set(updates) - set(WorkflowStep.model_fields))
        if unknown:
            raise StateError(
                message=f"Unknown step field(s): {', '.join(unknown)}",
                error_code="INVALID_STEP_UPDATE",
                details={"step_id": step_id, "fields": unknown},
            )

        previous = self._state.steps[index]
        merged = {name: getattr(previous, name) for name in WorkflowStep.model_fields}
        merged.update(copy.deepcopy(updates))
        try:
            step = WorkflowStep.model_validate(merged)
        except ValidationError as exc:
            raise StateError(
                message=f"Invalid update for step {step_id}: {exc.error_count()} error(s)",
                error_code="INVALID_STEP_UPDATE",
                details={"step_id": step_id, "errors": exc.errors(include_url=False)},
            ) from exc

        if "status" in updates:
            now = _now()
            if step.status == StepStatus.RUNNING and step.start_time is None:
                step.start_time = now
            elif step.status in TERMINAL_STATUSES and step.end_time is None:
                step.end_time = now
                step.duration = _elapsed_ms(step.start_time, now)

        self._state.steps[index] = step
        self._mark_dirty()
        self.emit(
            "step:updated",
            {
                "step_id": step_id,
                "previous": previous.model_copy(deep=True),
                "current": step.model_copy(deep=True),
            },
        )
        return step.model_copy(deep=True)

    def add_error(self, error: WorkflowError) -> None:
        self._state.errors.append(error.model_copy(deep=True))
        self._state.metrics.errors_encountered += 1
        self._mark_dirty()
        self._logger.debug("workflow_error_added", error_id=error.id, step_id=error.step_id)
        self.emit("error:added", error.model_copy(deep=True))

    def add_backup(self, backup: BackupInfo) -> None:
        self._state.backups.append(backup.model_copy(deep=True))
        self._mark_dirty()
        self.emit("backup:added", backup.model_copy(deep=True))

    def update_metrics(self, **updates: Any) -> WorkflowMetrics:
        """Shallow-merge counters. Names the model doesn't know go to ``extra``."""
        previous = self._state.metrics
        known = {k: v for k, v in updates.items() if k in WorkflowMetrics.model_fields}
        extra = {k: v for k, v in updates.items() if k not in WorkflowMetrics.model_fields}

        merged = previous.model_dump()
        merged.update(known)
        merged["extra"] = {**previous.extra, **known.get("extra", {}), **extra}
        try:
            metrics = WorkflowMetrics.model_validate(merged)
        except ValidationError as exc:
            raise StateError(
                message=f"Invalid metrics update: {exc.error_count()} error(s)",
                error_code="INVALID_METRICS_UPDATE",
                details={"errors": exc.errors(include_url=False)},
            ) from exc

        self._state.metrics = metrics
        self._mark_dirty()
        self.emit(
            "metrics:updated",
            {"previous": previous, "current": metrics.model_copy(deep=True)},
        )
        return metrics.model_copy(deep=True)

    def update_context(self, path: str, value: Any) -> None:
        """Set ``value`` at dot ``path``, creating intermediate dicts."""
        keys = path.split(".")
        current = self._state.context
        for key in keys[:-1]:
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]

        last = keys[-1]
        previous = current.get(last)
        current[last] = copy.deepcopy(value)
        self._mark_dirty()
        self.emit(
            "context:updated",
            {"path": path, "previous": previous, "current": copy.deepcopy(value)},
        )

    # =========================================================================
    # Snapshots
    # =========================================================================

    def create_snapshot(self, description: Optional[str] = None) -> str:
        """Deep-copy the current state into a new snapshot. Returns its id.

        Beyond ``max_snapshots`` the oldest snapshots are evicted.
        """
        now = _now()
        snapshot_id = f"snapshot_{int(now.timestamp() * 1000)}_{uuid4().hex[:9]}"
        snapshot = StateSnapshot(
            id=snapshot_id,
            timestamp=now,
            description=description or f"Snapshot at {now.isoformat()}",
            state=self._state.model_copy(deep=True),
        )
        self._snapshots[snapshot_id] = snapshot

        while len(self._snapshots) > self._config.max_snapshots:
            evicted = next(iter(self._snapshots))
            del self._snapshots[evicted]
            self._logger.debug("snapshot_evicted", snapshot_id=evicted)

        self._logger.debug("snapshot_created", snapshot_id=snapshot_id)
        self.emit("snapshot:created", snapshot.model_copy(deep=True))
        return snapshot_id

    def restore_snapshot(self, snapshot_id: str) -> None:
        snapshot = self._snapshots.get(snapshot_id)
        if snapshot is None:
            raise StateError(
                message=f"Snapshot not found: {snapshot_id}",
                error_code="SNAPSHOT_NOT_FOUND",
                details={"snapshot_id": snapshot_id},
            )

        previous = self._state
        self._state = snapshot.state.model_copy(deep=True)
        self._mark_dirty()
        self._logger.info("snapshot_restored", snapshot_id=snapshot_id)
        self.emit(
            "snapshot:restored",
            {
                "snapshot_id": snapshot_id,
                "previous": previous,
                "current": self._state.model_copy(deep=True),
            },
        )

    def get_snapshot(self, snapshot_id: str) -> Optional[StateSnapshot]:
        snapshot = self._snapshots.get(snapshot_id)
        return snapshot.model_copy(deep=True) if snapshot else None

    def list_snapshots(self) -> list[StateSnapshot]:
        """All snapshots, newest first."""
        return [s.model_copy(deep=True) for s in reversed(self._snapshots.values())]

    def delete_snapshot(self, snapshot_id: str) -> bool:
        if self._snapshots.pop(snapshot_id, None) is None:
            return False
        self.emit("snapshot:deleted", snapshot_id)
        return True

    # =========================================================================
    # Queries
    # =========================================================================

    def query(self, state_query: StateQuery) -> Any:
        """Resolve ``state_query.path``; None when a segment is missing."""
        value = self._resolve_path(self._state, state_query.path)
        if value is _MISSING:
            return None

        value = copy.deepcopy(value)
        if state_query.filter is not None and isinstance(value, list):
            value = [item for item in value if state_query.filter(item)]
        if state_query.transform is not None:
            value = state_query.transform(value)
        return value

    def find_steps(self, predicate: Callable[[WorkflowStep], bool]) -> list[WorkflowStep]:
        return [s.model_copy(deep=True) for s in self._state.steps if predicate(s)]

    def find_errors(self, predicate: Callable[[WorkflowError], bool]) -> list[WorkflowError]:
        return [e.model_copy(deep=True) for e in self._state.errors if predicate(e)]

    def get_steps_by_status(self, status: StepStatus) -> list[WorkflowStep]:
        status = StepStatus(status)
        return self.find_steps(lambda step: step.status == status)

    def get_progress(self) -> dict[str, Any]:
        """``{"completed", "total", "percentage"}`` over the step list."""
        completed = sum(1 for s in self._state.steps if s.status == StepStatus.COMPLETED)
        total = len(self._state.steps)
        percentage = completed / total * 100 if total else 0.0
        return {"completed": completed, "total": total, "percentage": percentage}

    # =========================================================================
    # Validation
    # =========================================================================

    def validate(self, check_cycles: bool = False) -> ValidationResult:
        """Check the structural invariants of the state.

        Args:
            check_cycles: Also reject dependency cycles among the steps.
        """
        errors: list[str] = []
        state = self._state

        if not state.id:
            errors.append("Workflow ID is required")
        if not state.steps:
            errors.append("Workflow must have at least one step")
        if not 0 <= state.current_step < len(state.steps):
            errors.append("Current step index is out of bounds")

        for step in state.steps:
            if not step.id:
                errors.append(f"Step missing ID: {step.name}")
            if not step.name:
                errors.append(f"Step missing name: {step.id}")
            if step.retry_count < 0:
                errors.append(f"Invalid retry count for step: {step.id}")
            if step.max_retries < 0:
                errors.append(f"Invalid max retries for step: {step.id}")

        step_ids = {step.id for step in state.steps}
        for step in state.steps:
            for dependency in step.dependencies:
                if dependency not in step_ids:
                    errors.append(f"Step {step.id} has invalid dependency: {dependency}")

        if check_cycles:
            cycle = self._find_dependency_cycle()
            if cycle:
                errors.append(f"Dependency cycle detected: {' -> '.join(cycle)}")

        return ValidationResult(is_valid=not errors, errors=errors)

    # =========================================================================
    # Persistence
    # =========================================================================

    async def save(self, path: Optional[PathLike] = None) -> Optional[Path]:
        """Persist state and snapshots. No-op when persistence is disabled.

        Returns:
            The written path, or None when persistence is disabled.

        Raises:
            StateError: STATE_SAVE_FAILED if the state can't be serialized
                or the file can't be written.
        """
        if not self._config.enabled:
            return None

        target = Path(path) if path is not None else self._default_state_path()
        generation = self._generation
        await self._write_document(target)
        if self._generation == generation:
            self._dirty = False

        self._logger.info("state_saved", path=str(target))
        self.emit("state:saved", str(target))
        return target

    async def load(self, path: Optional[PathLike] = None) -> None:
        """Replace state and snapshots from disk. No-op when disabled.

        Raises:
            StateError: STATE_LOAD_FAILED if the file is missing, corrupt or
                doesn't describe a valid workflow state.
        """
        if not self._config.enabled:
            return

        source = Path(path) if path is not None else self._default_state_path()
        try:
            raw = await asyncio.to_thread(source.read_text, encoding="utf-8")
            if not raw.lstrip().startswith("{"):
                raw = gzip.decompress(base64.b64decode(raw)).decode("utf-8")
            document = json.loads(raw)
            state = WorkflowState.model_validate(document["state"])
            snapshots = {
                snapshot_id: StateSnapshot.model_validate(data)
                for snapshot_id, data in document.get("snapshots", [])
            }
        except (OSError, ValueError, KeyError, TypeError) as exc:
            self._logger.error("state_load_failed", path=str(source), error=str(exc))
            raise StateError(
                message=f"Failed to load state: {exc}",
                error_code="STATE_LOAD_FAILED",
                details={"path": str(source)},
            ) from exc

        self._state = state
        self._snapshots = snapshots
        self._dirty = False
        self._logger = logger.bind(component="state_manager", workflow_id=state.id)

        self._logger.info("state_loaded", path=str(source), snapshots=len(snapshots))
        self.emit("state:loaded", str(source))

    async def backup(self, path: Optional[PathLike] = None) -> Optional[Path]:
        """Save to a timestamped file and record it in ``backups``.

        Returns:
            The backup path, or None when persistence is disabled.
        """
        if not self._config.enabled:
            return None

        now = _now()
        if path is None:
            stamp = now.isoformat().replace(":", "-").replace(".", "-")
            path = self._config.backup_dir / f"workflow-state-{stamp}.json"
        target = Path(path)

        data = await self._write_document(target)
        self.emit("state:saved", str(target))

        current = self.get_current_step()
        self.add_backup(
            BackupInfo(
                timestamp=now,
                type="full",
                path=str(target),
                size=len(data),
                checksum=hashlib.sha256(data).hexdigest(),
                step_id=current.id if current else None,
            )
        )
        return target

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Start the auto-save task if persistence and auto-save are on."""
        self._ensure_auto_save()

    async def destroy(self) -> None:
        """Stop auto-save and drop every listener. Idempotent."""
        self._destroyed = True
        task, self._auto_save_task = self._auto_save_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.remove_all_listeners()

    # =========================================================================
    # Internal Helper Methods
    # =========================================================================

    def _mark_dirty(self) -> None:
        self._dirty = True
        self._generation += 1
        self._ensure_auto_save()

    def _ensure_auto_save(self) -> None:
        if (
            self._destroyed
            or not self._config.enabled
            or not self._config.auto_save
            or (self._auto_save_task is not None and not self._auto_save_task.done())
        ):
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return
        self._auto_save_task = asyncio.create_task(self._auto_save_loop())

    async def _auto_save_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.auto_save_interval)
            if not self._dirty:
                continue
            try:
                await self.save()
            except StateError as exc:
                self._logger.error("auto_save_failed", error=str(exc))
                self.emit(
                    "error",
                    StateError(
                        message=f"Auto-save failed: {exc.message}",
                        error_code="AUTO_SAVE_FAILED",
                        details=exc.details,
                    ),
                )

    def _default_state_path(self) -> Path:
        return self._config.state_dir / f"{self._state.id}.json"

    def _serialize(self) -> bytes:
        try:
            document = {
                "state": self._state.model_dump(mode="json"),
                "snapshots": [
                    [snapshot_id, snapshot.model_dump(mode="json")]
                    for snapshot_id, snapshot in self._snapshots.items()
                ],
                "metadata": {
                    "savedAt": _now().isoformat(),
                    "version": STATE_FORMAT_VERSION,
                },
            }
            text = json.dumps(document, indent=2)
        except (TypeError, ValueError) as exc:
            raise StateError(
                message=f"Failed to serialize state: {exc}",
                error_code="STATE_SAVE_FAILED",
                details={"workflow_id": self._state.id},
            ) from exc

        data = text.encode("utf-8")
        if self._config.compression_enabled:
            data = base64.b64encode(gzip.compress(data))
        return data

    async def _write_document(self, target: Path) -> bytes:
        data = self._serialize()

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=str(target.parent), suffix=".tmp")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(data)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_path, target)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise

        try:
            await asyncio.to_thread(_write)
        except OSError as exc:
            raise StateError(
                message=f"Failed to save state: {exc}",
                error_code="STATE_SAVE_FAILED",
                details={"path": str(target)},
            ) from exc
        return data

    def _find_step_index(self, step_id: str) -> int:
        for index, step in enumerate(self._state.steps):
            if step.id == step_id:
                return index
        raise StateError(
            message=f"Step not found: {step_id}",
            error_code="STEP_NOT_FOUND",
            details={"step_id": step_id},
        )

    def _find_dependency_cycle(self) -> Optional[list[str]]:
        graph = {step.id: list(step.dependencies) for step in self._state.steps}
        visiting: list[str] = []
        done: set[str] = set()

        def visit(node: str) -> Optional[list[str]]:
            if node in done or node not in graph:
                return None
            if node in visiting:
                return visiting[visiting.index(node):] + [node]
            visiting.append(node)
            for dependency in graph[node]:
                cycle = visit(dependency)
                if cycle:
                    return cycle
            visiting.pop()
            done.add(node)
            return None

        for step_id in graph:
            cycle = visit(step_id)
            if cycle:
                return cycle
        return None

    @staticmethod
    def _resolve_path(root: Any, path: str) -> Any:
        current = root
        for segment in path.split(".") if path else ():
            if isinstance(current, BaseModel):
                if segment not in type(current).model_fields:
                    return _MISSING
                current = getattr(current, segment)
            elif isinstance(current, dict):
                if segment not in current:
                    return _MISSING
                current = current[segment]
            elif isinstance(current, (list, tuple)):
                if not segment.isdigit() or int(segment) >= len(current):
                    return _MISSING
                current = current[int(segment)]
            else:
                return _MISSING
        return current
