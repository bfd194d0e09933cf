"""Escalation Monitor.

Classifies overdue tasks by how far past due they are and sends escalation
notifications, remembering what was already escalated.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

from care_notifier.schemas.notification import TaskNotificationConfig
from care_notifier.utils.logger import StructuredLogger
from care_notifier.utils.metrics import MetricsCollector

DEFAULT_CRITICAL_HORIZON = timedelta(days=3)


class OverdueSeverity(str, Enum):
    NONE = "none"
    MODERATE = "moderate"
    HIGH = "high"
    CRITICAL = "critical"


SEVERITY_RANK = {
    OverdueSeverity.NONE: 0,
    OverdueSeverity.MODERATE: 1,
    OverdueSeverity.HIGH: 2,
    OverdueSeverity.CRITICAL: 3,
}

REESCALATION_INTERVALS = {
    OverdueSeverity.MODERATE: timedelta(hours=12),
    OverdueSeverity.HIGH: timedelta(hours=6),
    OverdueSeverity.CRITICAL: timedelta(hours=2),
}


def overdue_ratio(due_date: datetime, now: datetime, critical_horizon: timedelta = DEFAULT_CRITICAL_HORIZON) -> float:
    """Percentage of the critical horizon already elapsed past ``due_date``, capped at 100."""
    overdue = now - due_date
    if overdue <= timedelta(0):
        return 0.0
    return min(overdue / critical_horizon, 1.0) * 100


def classify_ratio(ratio: float) -> OverdueSeverity:
    if ratio > 90:
        return OverdueSeverity.CRITICAL
    if ratio > 80:
        return OverdueSeverity.HIGH
    if ratio > 70:
        return OverdueSeverity.MODERATE
    return OverdueSeverity.NONE


@dataclass
class EscalationResult:
    """Outcome of evaluating one overdue task during a sweep."""
    task_id: str
    plant_id: str
    severity: OverdueSeverity
    overdue_ratio: float
    days_overdue: int
    notified: bool = False
    deliver_at: Optional[datetime] = None
    notification_id: Optional[str] = None
    skipped_reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "task_id": self.task_id,
            "plant_id": self.plant_id,
            "severity": self.severity.value,
            "overdue_ratio": round(self.overdue_ratio, 2),
            "days_overdue": self.days_overdue,
            "notified": self.notified,
            "deliver_at": self.deliver_at.isoformat() if self.deliver_at else None,
            "notification_id": self.notification_id,
            "skipped_reason": self.skipped_reason,
        }


@dataclass
class EscalationRecord:
    severity: OverdueSeverity
    escalated_at: datetime


# Sends the escalation for one task and fills in deliver_at/notification_id
# on the result. Returns False when nothing was sent; an unset skipped_reason
# then means the task was locked.
EscalationDelivery = Callable[[TaskNotificationConfig, EscalationResult], Awaitable[bool]]


class EscalationMonitor:
    """Tracks overdue escalations per task."""

    def __init__(
        self,
        critical_horizon: timedelta = DEFAULT_CRITICAL_HORIZON,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.critical_horizon = critical_horizon
        self.metrics = metrics or MetricsCollector()
        self.logger = StructuredLogger("escalation-monitor")
        self._escalations: Dict[str, EscalationRecord] = {}

    @property
    def tracked_count(self) -> int:
        return len(self._escalations)

    def last_escalation(self, task_id: str) -> Optional[EscalationRecord]:
        return self._escalations.get(task_id)

    def evaluate(self, task: TaskNotificationConfig, now: datetime) -> EscalationResult:
        """Compute ratio, severity and whole days overdue for ``task``."""
        ratio = overdue_ratio(task.due_date, now, self.critical_horizon)
        overdue_seconds = max((now - task.due_date).total_seconds(), 0)
        return EscalationResult(
            task_id=task.task_id,
            plant_id=task.plant_id,
            severity=classify_ratio(ratio),
            overdue_ratio=ratio,
            days_overdue=int(overdue_seconds // 86400),
        )

    def needs_escalation(self, task_id: str, severity: OverdueSeverity, now: datetime) -> bool:
        """
        Whether ``task_id`` should be (re-)notified at ``severity``.

        A task is escalated the first time it crosses a threshold, again
        whenever its severity rises, and otherwise once per re-escalation
        interval of its current severity.
        """
        if severity == OverdueSeverity.NONE:
            return False

        previous = self._escalations.get(task_id)
        if previous is None:
            return True

        if SEVERITY_RANK[severity] > SEVERITY_RANK[previous.severity]:
            return True

        return now - previous.escalated_at >= REESCALATION_INTERVALS[severity]

    def record_escalation(self, task_id: str, severity: OverdueSeverity, at: datetime):
        self._escalations[task_id] = EscalationRecord(severity=severity, escalated_at=at)

    def forget(self, task_id: str):
        self._escalations.pop(task_id, None)

    def clear(self):
        self._escalations.clear()

    async def process_overdue(
        self,
        now: datetime,
        tasks: Sequence[TaskNotificationConfig],
        deliver: EscalationDelivery,
        complete: bool = True,
    ) -> List[EscalationResult]:
        """
        Run one sweep over overdue tasks.

        Args:
            now: Sweep instant (naive UTC)
            tasks: Candidate tasks; tasks that are not past due are ignored
            deliver: Coroutine that sends one escalation
            complete: False when ``tasks`` is known to be partial; escalation
                history of tasks missing from it is then kept

        Returns:
            One result per overdue task. Failures are logged, counted and
            reported with a skipped_reason; they never abort the sweep.
        """
        results: List[EscalationResult] = []
        overdue_ids = set()

        for task in tasks:
            if task.due_date >= now:
                continue
            overdue_ids.add(task.task_id)

            try:
                result = self.evaluate(task, now)
            except Exception as e:
                self.metrics.sweep_error()
                self.logger.error("Failed to evaluate overdue task", task_id=task.task_id, error=str(e))
                continue

            if result.severity == OverdueSeverity.NONE:
                result.skipped_reason = "below_threshold"
                results.append(result)
                continue

            if not self.needs_escalation(task.task_id, result.severity, now):
                result.skipped_reason = "already_escalated"
                results.append(result)
                continue

            try:
                delivered = await deliver(task, result)
            except Exception as e:
                self.metrics.sweep_error()
                result.skipped_reason = "error"
                self.logger.error(
                    "Escalation delivery failed",
                    task_id=task.task_id,
                    severity=result.severity.value,
                    error=str(e),
                )
                results.append(result)
                continue

            if not delivered:
                result.skipped_reason = result.skipped_reason or "locked"
                self.logger.debug(
                    "Escalation deferred to next sweep",
                    task_id=task.task_id,
                    reason=result.skipped_reason,
                )
                results.append(result)
                continue

            result.notified = True
            self.record_escalation(task.task_id, result.severity, now)
            self.metrics.escalation_sent()
            self.logger.info(
                "Escalated overdue task",
                task_id=task.task_id,
                severity=result.severity.value,
                days_overdue=result.days_overdue,
            )
            results.append(result)

        # Tasks that are no longer overdue (completed or rescheduled) are resolved
        if complete:
            for task_id in list(self._escalations):
                if task_id not in overdue_ids:
                    self.forget(task_id)

        return results
