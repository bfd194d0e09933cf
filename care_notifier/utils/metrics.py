"""
Metrics collection for the notification engine.

Counts scheduled, sent, delivered and failed notifications, retries and
escalations. One collector lives on each engine instance.
"""

import threading
import time
from collections import defaultdict
from datetime import datetime, timezone
from contextlib import contextmanager
from typing import Any, Dict, Iterator

COUNTERS = (
    "notifications_scheduled_total",
    "notifications_sent_total",
    "notifications_delivered_total",
    "notifications_read_total",
    "notifications_failed_total",
    "retry_attempts_total",
    "batches_created_total",
    "escalations_sent_total",
    "overdue_sweep_errors_total",
    "scheduling_errors_total",
)


class MetricsCollector:
    """Collects and manages metrics for the notification engine."""

    def __init__(self):
        """Initialize metrics collector."""
        self.metrics = defaultdict(int)
        self.timers = defaultdict(float)
        self.lock = threading.Lock()

        for name in COUNTERS:
            self.metrics[name] = 0

    def increment_counter(self, metric_name: str, value: int = 1):
        """Increment a counter metric."""
        with self.lock:
            self.metrics[metric_name] += value

    def record_timer(self, metric_name: str, duration: float):
        """Record a timing metric."""
        with self.lock:
            self.timers[metric_name] += duration

    def get(self, metric_name: str) -> int:
        with self.lock:
            return self.metrics[metric_name]

    def get_metrics(self) -> Dict[str, Any]:
        """Get current metrics values."""
        with self.lock:
            return {
                "counters": dict(self.metrics),
                "timers": dict(self.timers),
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }

    def notification_scheduled(self, count: int = 1):
        self.increment_counter("notifications_scheduled_total", count)

    def notification_sent(self):
        self.increment_counter("notifications_sent_total")

    def notification_delivered(self):
        """Record that a notification was successfully delivered."""
        self.increment_counter("notifications_delivered_total")

    def notification_read(self):
        self.increment_counter("notifications_read_total")

    def notification_failed(self):
        """Record that a notification failed for good."""
        self.increment_counter("notifications_failed_total")

    def retry_attempt(self):
        """Record that a retry attempt was made."""
        self.increment_counter("retry_attempts_total")

    def batch_created(self):
        self.increment_counter("batches_created_total")

    def escalation_sent(self):
        self.increment_counter("escalations_sent_total")

    def sweep_error(self):
        self.increment_counter("overdue_sweep_errors_total")

    def scheduling_error(self):
        self.increment_counter("scheduling_errors_total")

    @contextmanager
    def timer(self, metric_name: str) -> Iterator[None]:
        """Context manager timing the wrapped block."""
        start_time = time.monotonic()
        try:
            yield
        finally:
            self.record_timer(metric_name, time.monotonic() - start_time)
