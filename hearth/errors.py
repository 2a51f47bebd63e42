"""
Error taxonomy for the orchestrator and its control plane.
"""

from __future__ import annotations


class HearthError(Exception):
    """Base class for errors raised by hearth components."""


class ValidationError(HearthError):
    """Malformed control-plane payload, bad filename or bad path."""


class ScheduleParseError(ValidationError):
    """A cron expression, interval or timestamp that cannot be evaluated."""


class AuthorizationError(HearthError):
    """A tenant tried to act on something outside its own folder."""


class SandboxTimeoutError(HearthError):
    """Execution exceeded its wall-clock budget."""


class ExecutionError(HearthError):
    """Execution finished with a non-zero exit code."""

    def __init__(self, message: str, exit_code: int | None = None):
        super().__init__(message)
        self.exit_code = exit_code


class SessionStaleError(HearthError):
    """The continuation token no longer resolves to a stored session."""


class QuarantineError(HearthError, OSError):
    """A rejected control-plane file could not be moved into quarantine."""


class DeliveryError(HearthError):
    """The notification channel refused or failed a message."""
