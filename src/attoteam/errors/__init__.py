"""Attoteam error hierarchy."""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class ErrorCategory(StrEnum):
    """Category of error for classification and handling."""

    VALIDATION = "validation"
    CONFLICT = "conflict"
    TRANSPORT = "transport"
    STORAGE = "storage"
    CONFIGURATION = "configuration"
    INTERNAL = "internal"


class TeamError(Exception):
    """Base error for all team coordination exceptions."""

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory = ErrorCategory.INTERNAL,
        code: str = "internal_error",
        retryable: bool = False,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.category = category
        self.code = code
        self.retryable = retryable
        self.details: dict[str, Any] = details or {}

    def __repr__(self) -> str:
        return f"{type(self).__name__}({str(self)!r}, code={self.code!r})"

    def to_result(self) -> dict[str, Any]:
        """Render as the structured ``{ok: false}`` value returned to callers."""
        result: dict[str, Any] = {"ok": False, "error": self.code, "message": str(self)}
        result.update(self.details)
        return result


# ---------------------------------------------------------------------------
# Validation: bad input shape, never mutates state
# ---------------------------------------------------------------------------


class ValidationError(TeamError):
    """Input failed validation before any state was touched."""

    def __init__(self, message: str, *, code: str = "invalid_input", **kwargs: Any) -> None:
        super().__init__(message, category=ErrorCategory.VALIDATION, code=code, **kwargs)


class InvalidNameError(ValidationError):
    """Team, worker or task identifier does not match its safe pattern."""

    def __init__(self, kind: str, value: str) -> None:
        super().__init__(f"Invalid {kind}: {value!r}", code=f"invalid_{kind}")
        self.kind = kind
        self.value = value


class LifecycleFieldError(ValidationError):
    """A generic update tried to touch a claim/transition-only field."""

    def __init__(self, field_name: str) -> None:
        super().__init__(
            f"Field '{field_name}' can only change through claim_task/transition_task_status",
            code="lifecycle_field_forbidden",
            details={"field": field_name},
        )
        self.field = field_name


class TeamNotFoundError(ValidationError):
    def __init__(self, team_name: str) -> None:
        super().__init__(f"Team {team_name} not found", code="team_not_found")
        self.team_name = team_name


class WorkerNotFoundError(ValidationError):
    def __init__(self, worker_name: str, team_name: str) -> None:
        super().__init__(
            f"Worker {worker_name} not found in team {team_name}",
            code="worker_not_found",
        )
        self.worker_name = worker_name


class ScalingDisabledError(ValidationError):
    def __init__(self, env_var: str) -> None:
        super().__init__(
            f"Dynamic scaling is disabled. Set {env_var}=1 to enable.",
            code="scaling_disabled",
        )


# ---------------------------------------------------------------------------
# Conflict: expected, cheap, side-effect free
# ---------------------------------------------------------------------------


class ConflictError(TeamError):
    """Optimistic concurrency or state-machine rejection."""

    def __init__(self, code: str, message: str | None = None, **kwargs: Any) -> None:
        super().__init__(message or code, category=ErrorCategory.CONFLICT, code=code, **kwargs)


# ---------------------------------------------------------------------------
# Transport / storage / locking
# ---------------------------------------------------------------------------


class TransportError(TeamError):
    """Notifier or pane spawner failure. Converted to outcomes at the boundary."""

    def __init__(self, message: str, *, code: str = "transport_error", **kwargs: Any) -> None:
        super().__init__(
            message, category=ErrorCategory.TRANSPORT, code=code, retryable=True, **kwargs,
        )


class StateStoreError(TeamError):
    """The durable state store itself failed. Always propagates."""

    def __init__(self, message: str, *, path: str | None = None) -> None:
        super().__init__(message, category=ErrorCategory.STORAGE, code="state_store_error")
        self.path = path


class LockTimeoutError(TeamError):
    """An exclusion lock could not be acquired within its timeout."""

    def __init__(self, marker: str, timeout: float, *, hint: str | None = None) -> None:
        message = f"Timed out acquiring lock {marker} after {timeout:g}s"
        if hint:
            message = f"{message}. {hint}"
        super().__init__(
            message, category=ErrorCategory.CONFLICT, code="lock_timeout", retryable=True,
        )
        self.marker = marker
        self.timeout = timeout


class ConfigurationError(TeamError):
    """Invalid or missing configuration."""

    def __init__(self, message: str) -> None:
        super().__init__(message, category=ErrorCategory.CONFIGURATION, code="configuration_error")
