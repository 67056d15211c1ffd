"""
Exception hierarchy for the job queue.
"""

from typing import Any


class QueueError(Exception):
    """Base exception for queuectl."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(QueueError, ValueError):
    """Raised when job or configuration input is malformed."""


class NotFoundError(QueueError, LookupError):
    """Raised when an operation targets an unknown job id."""


class ClaimConflictError(QueueError):
    """
    Raised when a worker's claim was lost (stolen after lease expiry).

    Expected under concurrent claiming; workers swallow it.
    """


class ExecutionFailure(QueueError):
    """Raised when a job command could not be run to completion."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        output: str = "",
    ):
        super().__init__(message, {"exit_code": exit_code})
        self.exit_code = exit_code
        self.output = output


class StoreUnavailable(QueueError):
    """Raised when the persistence layer cannot be reached."""
