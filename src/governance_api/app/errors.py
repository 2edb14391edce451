"""Error taxonomy shared by the governance engine and its HTTP surface.

Two families live here:
- Governance errors raised by the orchestrator itself (bad input, unknown task,
  illegal transition, missing admin privilege).
- Generation errors raised by the text/code generation collaborator. Each one
  declares whether the invoker may retry it.

Every error carries a stable `error_code` and the HTTP status the API layer maps
it to, so route handlers never need their own `isinstance` ladders.
"""

from __future__ import annotations


class GovernanceError(Exception):
    """Base class for every error the engine surfaces to callers."""

    error_code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidRequestError(GovernanceError):
    """Caller input was rejected (empty prompt, unknown action or tier)."""

    error_code = "VALIDATION_ERROR"
    status_code = 400


class TaskNotFoundError(GovernanceError):
    error_code = "TASK_NOT_FOUND"
    status_code = 404

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task {task_id} not found")
        self.task_id = task_id


class TaskConflictError(GovernanceError):
    """The task is no longer in a status that allows the requested transition."""

    error_code = "TASK_CONFLICT"
    status_code = 409


class AdminOverrideRequiredError(GovernanceError):
    """LOCKED tasks only move through the admin override path."""

    error_code = "ADMIN_OVERRIDE_REQUIRED"
    status_code = 403


class GenerationError(GovernanceError):
    """Base class for failures of the generation collaborator."""

    error_code = "AI_ERROR"
    status_code = 500
    retryable = False
    # Set by the invoker once its retry loop gives up.
    attempts = 1


class ConfigurationError(GenerationError):
    """Missing or rejected provider credentials. Needs user action, never retried."""

    error_code = "AI_CONFIGURATION_ERROR"
    status_code = 400


class RateLimitError(GenerationError):
    error_code = "AI_RATE_LIMIT"
    status_code = 429
    retryable = True

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class GenerationTimeoutError(GenerationError):
    error_code = "AI_TIMEOUT"
    status_code = 504
    retryable = True


class TransientError(GenerationError):
    """Network hiccup or provider-side 5xx."""

    error_code = "AI_TRANSIENT_ERROR"
    status_code = 503
    retryable = True


class ResponseError(GenerationError):
    """Provider answered, but not with something we can use."""

    error_code = "AI_RESPONSE_ERROR"
    status_code = 502
