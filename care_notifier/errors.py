"""Error types raised by the notification engine."""
from typing import List, Optional

from care_notifier.services.retry_coordinator import RETRYABLE_REASONS


class SchedulingError(Exception):
    """Base class for every error the engine reports."""

    def __init__(self, message: str, task_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.task_id = task_id

    def to_dict(self) -> dict:
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "task_id": self.task_id,
        }


class ValidationError(SchedulingError):
    """A TaskNotificationConfig failed validation."""

    def __init__(self, errors: List[str], task_id: Optional[str] = None):
        super().__init__("; ".join(errors) or "invalid notification config", task_id)
        self.errors = list(errors)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["errors"] = self.errors
        return data


class NotFoundError(SchedulingError):
    """Operation on a task id the engine does not know about."""


class PersistenceError(SchedulingError):
    """The schedule store failed to read or write."""


class SchedulingConflictError(SchedulingError):
    """A conditional update lost a race against a concurrent writer."""


class TransportError(SchedulingError):
    """The notification transport rejected or failed a request."""

    def __init__(self, reason: str, message: Optional[str] = None, task_id: Optional[str] = None):
        super().__init__(message or f"delivery failed: {reason}", task_id)
        self.reason = reason

    @property
    def retryable(self) -> bool:
        return self.reason in RETRYABLE_REASONS

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["reason"] = self.reason
        data["retryable"] = self.retryable
        return data
