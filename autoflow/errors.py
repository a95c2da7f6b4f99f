"""Exception types raised by the orchestration engine."""

from __future__ import annotations


class AutoflowError(Exception):
    """Base class for engine errors."""


class AuthorizationError(AutoflowError):
    """Raised when a caller presents missing or invalid credentials."""


class NotFoundError(AutoflowError):
    """Raised when a referenced workflow, trigger or execution does not exist."""


class DispatchError(AutoflowError):
    """Raised when the remote execution host could not accept a workflow."""

    def __init__(self, message: str, execution_id: str | None = None) -> None:
        super().__init__(message)
        self.execution_id = execution_id


class InvalidTransitionError(AutoflowError):
    """Raised when an execution is asked to move to a state it cannot reach."""


class DuplicateWebhookKeyError(AutoflowError):
    """Raised when a webhook key is already owned by another trigger."""


class InvalidCronError(AutoflowError, ValueError):
    """Raised for cron expressions that are not standard five-field cron."""


class ForbiddenError(AuthorizationError):
    """Raised when valid credentials do not cover the requested resource."""
