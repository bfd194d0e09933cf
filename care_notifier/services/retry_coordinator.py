"""Retry Coordinator.

Decides whether a failed delivery is retried and when.
"""
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Optional

DEFAULT_MAX_ATTEMPTS = 5


class FailureReason(str, Enum):
    NETWORK_ERROR = "network_error"
    DEVICE_OFFLINE = "device_offline"
    PERMISSION_DENIED = "permission_denied"
    QUOTA_EXCEEDED = "quota_exceeded"
    TIMEOUT = "timeout"
    PERSISTENCE_ERROR = "persistence_error"


RETRYABLE_REASONS = frozenset({
    FailureReason.NETWORK_ERROR.value,
    FailureReason.DEVICE_OFFLINE.value,
    FailureReason.TIMEOUT.value,
})


@dataclass(frozen=True)
class RetryClassification:
    retryable: bool


@dataclass(frozen=True)
class RetryDecision:
    """What to do after a failure with a given retry count."""
    retryable: bool
    retry: bool
    delay: Optional[timedelta] = None
    attempt: int = 0


class RetryCoordinator:
    """Exponential backoff over a fixed failure taxonomy."""

    def __init__(self, max_attempts: int = DEFAULT_MAX_ATTEMPTS):
        self.max_attempts = max_attempts

    def classify(self, reason: Optional[str]) -> RetryClassification:
        """Unknown reasons are treated as fatal."""
        return RetryClassification(retryable=reason in RETRYABLE_REASONS)

    def backoff_delay(self, attempt: int) -> Optional[timedelta]:
        """
        Delay before retry ``attempt`` (0-based).

        Returns:
            2**attempt seconds, or None once attempts are exhausted
        """
        if attempt < 0 or attempt >= self.max_attempts:
            return None
        return timedelta(seconds=2 ** attempt)

    def next_retry(self, reason: Optional[str], retry_count: int) -> RetryDecision:
        """
        Decide the next step for a failure.

        Args:
            reason: Failure reason reported by the transport
            retry_count: Retries already attempted for this delivery

        Returns:
            RetryDecision; ``retry`` is False for fatal reasons and once the
            backoff schedule is exhausted
        """
        if not self.classify(reason).retryable:
            return RetryDecision(retryable=False, retry=False, attempt=retry_count)

        delay = self.backoff_delay(retry_count)
        if delay is None:
            return RetryDecision(retryable=True, retry=False, attempt=retry_count)

        return RetryDecision(retryable=True, retry=True, delay=delay, attempt=retry_count + 1)
