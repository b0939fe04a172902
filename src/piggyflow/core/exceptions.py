"""
piggyflow.core.exceptions - Custom Exception Hierarchy
=======================================================

Structured exceptions for the orchestration core. Each one carries a
machine-readable ``error_code`` and a ``details`` dict so callers and logs
can react to the failure without parsing the message.

Exception Hierarchy:
    PiggyflowError (base)
        ├── ConfigurationError  - Invalid config file or values
        ├── StateError          - Unknown step/snapshot, bad index, load failure
        ├── MessageBusError     - Malformed/expired message, request timeout
        └── RecoveryError       - Unknown recovery action or cleanup target

These are the *programmer/infrastructure* failures. A step that fails at
runtime is not an exception here: it is recorded as a ``WorkflowError``
data record (see ``piggyflow.core.models``) and handed to the
ErrorRecoverySystem for a decision.

Usage:
    >>> raise StateError(
    ...     message="Step not found: build",
    ...     error_code="STEP_NOT_FOUND",
    ...     details={"step_id": "build"},
    ... )
"""

from __future__ import annotations

from typing import Any, Optional


# =============================================================================
# Base Exception
# =============================================================================
class PiggyflowError(Exception):
    """Base exception for all piggyflow errors.

    Attributes:
        message: Human-readable error description.
        error_code: Machine-readable code (UPPER_SNAKE_CASE).
        details: Extra debugging context.
    """

    def __init__(
        self,
        message: str,
        error_code: str = "UNKNOWN_ERROR",
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)

        self.message = message
        self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Serialize this exception for JSON logs and error events."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"error_code={self.error_code!r}, "
            f"details={self.details!r})"
        )


# =============================================================================
# Configuration Error
# =============================================================================
# Raised at startup. Fail fast; never run with a half-valid config.
# =============================================================================
class ConfigurationError(PiggyflowError):
    """Raised when piggyflow configuration is invalid or unreadable.

    Example:
        >>> raise ConfigurationError(
        ...     message="piggyflow.yaml must contain a mapping",
        ...     error_code="INVALID_CONFIG_FILE",
        ... )
    """

    def __init__(
        self,
        message: str,
        error_code: str = "CONFIG_ERROR",
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message=message, error_code=error_code, details=details)


# =============================================================================
# State Error
# =============================================================================
# Raised by the WorkflowStateManager for structural misuse. Common codes:
#   STEP_NOT_FOUND, STEP_INDEX_OUT_OF_RANGE, SNAPSHOT_NOT_FOUND,
#   STATE_LOAD_FAILED
# =============================================================================
class StateError(PiggyflowError):
    """Raised when a workflow state operation is invalid or fails."""

    def __init__(
        self,
        message: str,
        error_code: str = "STATE_ERROR",
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message=message, error_code=error_code, details=details)


# =============================================================================
# Message Bus Error
# =============================================================================
# Common codes:
#   INVALID_MESSAGE, MESSAGE_EXPIRED, REQUEST_TIMEOUT, REQUEST_FAILED,
#   NO_HANDLERS, HANDLER_FAILED, BUS_STOPPED
# =============================================================================
class MessageBusError(PiggyflowError):
    """Raised when the message bus rejects a message or a request fails.

    Example:
        >>> raise MessageBusError(
        ...     message="Request timed out after 30000ms",
        ...     error_code="REQUEST_TIMEOUT",
        ...     details={"message_id": "req-1", "timeout_ms": 30000},
        ... )
    """

    def __init__(
        self,
        message: str,
        error_code: str = "MESSAGE_BUS_ERROR",
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message=message, error_code=error_code, details=details)


# =============================================================================
# Recovery Error
# =============================================================================
# Raised *inside* the ErrorRecoverySystem by individual recovery actions.
# It never escapes handle_error(); the plan executor folds it into a
# failed-action result.
# =============================================================================
class RecoveryError(PiggyflowError):
    """Raised when a recovery action cannot be executed."""

    def __init__(
        self,
        message: str,
        error_code: str = "RECOVERY_ERROR",
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message=message, error_code=error_code, details=details)
