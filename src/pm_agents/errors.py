"""Error taxonomy for the AI action pipeline.

Every error carries an HTTP-equivalent ``status_code`` so the route layer can
map it without inspecting the message.
"""

from typing import Optional


class OrchestrationError(Exception):
    """Base class for errors surfaced to callers of the pipeline."""

    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "status_code": self.status_code,
            "message": self.message,
            "details": self.details,
        }


class ValidationFailure(OrchestrationError):
    """Unknown or disabled capability, malformed input."""

    status_code = 400
    code = "validation_failed"


class PermissionDenied(OrchestrationError):
    """A hook or the permission chain vetoed a tool call."""

    status_code = 403
    code = "permission_denied"


class RateLimitExceeded(OrchestrationError):
    """Tenant exceeded its tool-call budget for the current window."""

    status_code = 429
    code = "rate_limited"


class ActionNotFound(OrchestrationError):
    status_code = 404
    code = "action_not_found"


class SessionNotFound(OrchestrationError):
    """Fork target missing or owned by another tenant."""

    status_code = 404
    code = "session_not_found"


class InvalidStateTransition(OrchestrationError):
    """Status change not permitted by the action state machine."""

    status_code = 409
    code = "invalid_state"


class StaleWrite(OrchestrationError):
    """Optimistic concurrency check failed (older turn count)."""

    status_code = 409
    code = "stale_write"


class StageFailure(OrchestrationError):
    """
    A pipeline stage failed in a way that fails the action, not the request.

    ``category`` is the stable string persisted to ``error_message``:
    model_timeout, model_error, max_turns, malformed_output,
    context_too_large, cancelled, tool_denied, rate_limited, mutation_failed,
    rollback_failed.
    """

    status_code = 422
    code = "stage_failed"

    def __init__(self, category: str, message: str, details: Optional[dict] = None):
        super().__init__(message, details)
        self.category = category

    @property
    def error_message(self) -> str:
        return f"{self.category}: {self.message}"
