from datetime import timedelta

from care_notifier.errors import TransportError
from care_notifier.services.retry_coordinator import RetryCoordinator


def test_backoff_schedule_doubles_until_exhausted():
    coordinator = RetryCoordinator(max_attempts=5)
    delays = [coordinator.backoff_delay(attempt) for attempt in range(6)]
    assert delays == [
        timedelta(seconds=1),
        timedelta(seconds=2),
        timedelta(seconds=4),
        timedelta(seconds=8),
        timedelta(seconds=16),
        None,
    ]


def test_failure_taxonomy():
    coordinator = RetryCoordinator()
    assert coordinator.classify("network_error").retryable
    assert coordinator.classify("device_offline").retryable
    assert coordinator.classify("timeout").retryable
    assert not coordinator.classify("permission_denied").retryable
    assert not coordinator.classify("quota_exceeded").retryable
    assert not coordinator.classify("something_else").retryable
    assert not coordinator.classify(None).retryable


def test_next_retry_for_fatal_reason_does_not_retry():
    decision = RetryCoordinator().next_retry("permission_denied", 0)
    assert not decision.retryable
    assert not decision.retry
    assert decision.delay is None
    assert decision.attempt == 0


def test_next_retry_for_retryable_reason():
    coordinator = RetryCoordinator(max_attempts=2)
    first = coordinator.next_retry("network_error", 0)
    assert first.retry and first.delay == timedelta(seconds=1) and first.attempt == 1

    exhausted = coordinator.next_retry("network_error", 2)
    assert exhausted.retryable and not exhausted.retry


def test_transport_error_reports_retryability():
    assert TransportError("device_offline").retryable
    assert not TransportError("invalid_token").retryable
    assert TransportError("timeout").to_dict()["reason"] == "timeout"
