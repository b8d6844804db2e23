"""
Typed failures raised by the coordination core.

Every failure carries a stable ``code`` so the HTTP and MCP layers can turn
it into a JSON error payload without inspecting message text.
"""
from typing import Any, Optional


class CoordinationError(Exception):
    """Base class for recoverable coordination failures."""

    code = "COORDINATION_ERROR"

    def __init__(self, message: str, **details: Any) -> None:
        self.message = message
        self.details = details
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message, **self.details}


class InvalidTransition(CoordinationError):
    """Agent status FSM edge not permitted."""

    code = "INVALID_TRANSITION"


class IllegalTransition(CoordinationError):
    """Task status edge not permitted."""

    code = "ILLEGAL_TRANSITION"


class WrongActor(CoordinationError):
    """Caller's role does not own the task."""

    code = "WRONG_ACTOR"


class ClassificationRequired(CoordinationError):
    code = "CLASSIFICATION_REQUIRED"


class InvalidClassification(CoordinationError):
    code = "INVALID_CLASSIFICATION"


class PolicyViolation(CoordinationError):
    """Routing rule rejected the handoff (e.g. review-gate bypass)."""

    code = "POLICY_VIOLATION"


class ConcurrentModification(CoordinationError):
    """Lost update on a task or queue counter. Callers re-read and retry once."""

    code = "CONCURRENT_MODIFICATION"


class NotFound(CoordinationError):
    code = "NOT_FOUND"


class TaskLimitExceeded(CoordinationError):
    """Raised when a chatroom already holds the maximum number of open tasks."""

    code = "TASK_LIMIT_EXCEEDED"

    def __init__(self, limit: int, active: int) -> None:
        self.limit = limit
        self.active = active
        super().__init__(
            f"Task limit reached ({limit}). Complete or cancel existing tasks before adding more.",
            limit=limit,
            active=active,
        )


class AuthFailed(CoordinationError):
    code = "AUTH_FAILED"


class AccessDenied(CoordinationError):
    code = "ACCESS_DENIED"


def error_payload(exc: CoordinationError, retry_hint: Optional[str] = None) -> dict:
    """Serialize a failure for callers; store conflicts never leak raw details."""
    if isinstance(exc, ConcurrentModification):
        return {"error": exc.code, "message": retry_hint or "Please retry."}
    return exc.to_dict()
