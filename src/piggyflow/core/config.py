"""
piggyflow.core.config - Configuration Management
=================================================

Configuration for the orchestration core. Values are resolved with the
following priority (highest first):

    1. Explicit constructor arguments
    2. Environment variables (prefixed with PIGGYFLOW_)
    3. YAML configuration file (piggyflow.yaml)
    4. Default values defined in the models below

Architecture Context:
    The top-level PiggyflowConfig is created once by the composition root
    (WorkflowOrchestrator) and handed down to each component:

        PiggyflowConfig
            ├── PersistenceConfig  → WorkflowStateManager
            ├── RecoveryConfig     → ErrorRecoverySystem
            └── MessageBusConfig   → MessageBus

Usage:
    config = PiggyflowConfig()
    config = load_config("piggyflow.yaml")
    config = PiggyflowConfig(recovery=RecoveryConfig(base_retry_delay=50))

Environment Variables:
    PIGGYFLOW_LOG_LEVEL=DEBUG
    PIGGYFLOW_PERSISTENCE__ENABLED=false
    PIGGYFLOW_PERSISTENCE__STATE_DIR=/var/lib/piggyflow
    PIGGYFLOW_RECOVERY__CIRCUIT_BREAKER_THRESHOLD=3
    PIGGYFLOW_MESSAGE_BUS__REQUEST_TIMEOUT_MS=60000
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal, Optional

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings

from piggyflow.core.exceptions import ConfigurationError


# =============================================================================
# Persistence Configuration
# =============================================================================
# Controls how the WorkflowStateManager writes state to disk. With
# ``enabled=False`` save()/load() are no-ops and auto-save never starts.
# =============================================================================
class PersistenceConfig(BaseModel):
    """Workflow state persistence settings.

    Attributes:
        enabled: Master switch for save()/load()/auto-save.
        auto_save: Whether to persist dirty state on a timer.
        auto_save_interval: Seconds between auto-save checks.
        max_snapshots: In-memory snapshot retention; oldest are evicted.
        compression_enabled: gzip + base64 the JSON document before writing.
        state_dir: Directory for ``<workflow id>.json`` state files.
        backup_dir: Directory for timestamped ``backup()`` files.
    """

    enabled: bool = Field(
        default=True,
        description="Persist workflow state to disk",
    )
    auto_save: bool = Field(
        default=True,
        description="Persist dirty state periodically",
    )
    auto_save_interval: float = Field(
        default=30.0,
        gt=0,
        description="Seconds between auto-save checks",
    )
    max_snapshots: int = Field(
        default=10,
        ge=1,
        description="Maximum number of in-memory snapshots kept",
    )
    compression_enabled: bool = Field(
        default=False,
        description="Compress the persisted document (gzip, base64-wrapped)",
    )
    state_dir: Path = Field(
        default=Path(".workflow-state"),
        description="Directory for per-workflow state files",
    )
    backup_dir: Path = Field(
        default=Path("backups"),
        description="Directory for timestamped backups",
    )


# =============================================================================
# Recovery Configuration
# =============================================================================
# Delays are in milliseconds to match the persisted/recovery-plan units.
# =============================================================================
class RecoveryConfig(BaseModel):
    """Error recovery and circuit breaker settings.

    Attributes:
        base_retry_delay: Base delay (ms) fed into the backoff strategies.
        max_retry_delay: Upper bound (ms) on any computed retry delay.
        circuit_breaker_threshold: Failures before a step's breaker opens;
            also the half-open retry budget before it re-opens.
        circuit_breaker_timeout: Milliseconds an OPEN breaker waits before
            it may move to HALF_OPEN.
        wait_scale: Multiplier applied to ``wait`` recovery actions. 1.0 in
            production; tests shrink it to keep plans fast.
        retry_history_window: Seconds of retry timestamps kept per step.
    """

    base_retry_delay: float = Field(
        default=1000.0,
        ge=0,
        description="Base retry delay in milliseconds",
    )
    max_retry_delay: float = Field(
        default=30000.0,
        ge=0,
        description="Maximum retry delay in milliseconds",
    )
    circuit_breaker_threshold: int = Field(
        default=5,
        ge=1,
        description="Failures before a step's circuit breaker opens",
    )
    circuit_breaker_timeout: float = Field(
        default=60000.0,
        ge=0,
        description="Milliseconds before an OPEN breaker may go HALF_OPEN",
    )
    wait_scale: float = Field(
        default=1.0,
        ge=0,
        description="Multiplier for 'wait' recovery action durations",
    )
    retry_history_window: float = Field(
        default=3600.0,
        gt=0,
        description="Seconds of per-step retry history to keep",
    )


# =============================================================================
# Message Bus Configuration
# =============================================================================
class MessageBusConfig(BaseModel):
    """Message bus settings.

    Attributes:
        request_timeout_ms: Default timeout for ``send_request``.
        auto_start: Start the processing loop on the first enqueue.
    """

    request_timeout_ms: int = Field(
        default=30000,
        ge=1,
        description="Default request/response timeout in milliseconds",
    )
    auto_start: bool = Field(
        default=True,
        description="Start processing automatically when a message is queued",
    )


# =============================================================================
# Main Configuration
# =============================================================================
class PiggyflowConfig(BaseSettings):
    """Top-level configuration for the orchestration core.

    Attributes:
        environment: Deployment environment label.
        log_level: stdlib logging level name for ``configure_logging``.
        json_logs: Render logs as JSON (True) or console key/values (False).
        default_max_retries: ``max_retries`` for plan steps that don't set one.
        continue_on_step_failure: Keep running later steps after a step
            exhausts its retries (the workflow still ends FAILED).
        persistence / recovery / message_bus: Nested component settings.

    Example:
        >>> config = PiggyflowConfig(
        ...     log_level="DEBUG",
        ...     persistence=PersistenceConfig(enabled=False),
        ... )
    """

    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Deployment environment",
    )
    log_level: str = Field(
        default="INFO",
        description="Logging level: DEBUG, INFO, WARNING, ERROR, CRITICAL",
    )
    json_logs: bool = Field(
        default=False,
        description="Render structured logs as JSON",
    )
    default_max_retries: int = Field(
        default=3,
        ge=0,
        le=20,
        description="Default max retries for workflow steps",
    )
    continue_on_step_failure: bool = Field(
        default=False,
        description="Continue with later steps after a step fails permanently",
    )

    persistence: PersistenceConfig = Field(
        default_factory=PersistenceConfig,
        description="Workflow state persistence settings",
    )
    recovery: RecoveryConfig = Field(
        default_factory=RecoveryConfig,
        description="Error recovery settings",
    )
    message_bus: MessageBusConfig = Field(
        default_factory=MessageBusConfig,
        description="Message bus settings",
    )

    model_config = {
        "env_prefix": "PIGGYFLOW_",
        "env_nested_delimiter": "__",
        "case_sensitive": False,
    }


# =============================================================================
# Configuration Loader
# =============================================================================
def load_config(path: Optional[str] = None) -> PiggyflowConfig:
    """Load configuration from a YAML file and/or environment variables.

    Args:
        path: YAML file to read. If None, ``piggyflow.yaml`` in the current
            directory is used when present, otherwise defaults + env vars.

    Returns:
        A validated PiggyflowConfig.

    Raises:
        FileNotFoundError: If an explicit path does not exist.
        ConfigurationError: If the file is not valid YAML or not a mapping.
    """
    if path is None:
        default_path = Path("piggyflow.yaml")
        if default_path.exists():
            path = str(default_path)

    yaml_data: dict[str, Any] = {}
    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        with open(config_path) as f:
            try:
                raw_data = yaml.safe_load(f)
            except yaml.YAMLError as exc:
                raise ConfigurationError(
                    message=f"Invalid YAML in {path}: {exc}",
                    error_code="INVALID_CONFIG_FILE",
                    details={"path": str(path)},
                ) from exc

        if raw_data is None:
            raw_data = {}
        if not isinstance(raw_data, dict):
            raise ConfigurationError(
                message=f"Configuration file must contain a mapping: {path}",
                error_code="INVALID_CONFIG_FILE",
                details={"path": str(path), "type": type(raw_data).__name__},
            )
        yaml_data = raw_data

    return PiggyflowConfig(**yaml_data)


def get_default_config() -> PiggyflowConfig:
    """Create a PiggyflowConfig from defaults and environment variables."""
    return PiggyflowConfig()
