"""Notification schemas: engine inputs, user preferences and outcomes."""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from care_notifier.errors import SchedulingError
from care_notifier.utils.time import to_naive_utc


class TaskType(str, Enum):
    WATERING = "watering"
    FEEDING = "feeding"
    INSPECTION = "inspection"
    PRUNING = "pruning"
    HARVEST = "harvest"
    TRANSPLANT = "transplant"
    TRAINING = "training"
    DEFOLIATION = "defoliation"
    FLUSHING = "flushing"


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class TaskNotificationConfig(BaseModel):
    """
    Everything the engine needs to know about one task.

    Built by the task-management layer and immutable once submitted; a new
    config with the same task_id supersedes the previous one.
    """
    model_config = ConfigDict(frozen=True, use_enum_values=False)

    task_id: str
    plant_id: str
    plant_name: str = ""
    task_type: TaskType
    task_title: str = ""
    due_date: datetime
    priority: TaskPriority = TaskPriority.MEDIUM
    estimated_duration: Optional[int] = None  # minutes
    is_recurring: bool = False
    user_id: Optional[str] = None
    interval_hours: Optional[int] = None  # recurrence interval, default 24h
    max_notifications: Optional[int] = None  # recurrence cap

    @field_validator("due_date")
    @classmethod
    def normalize_due_date(cls, value: datetime) -> datetime:
        return to_naive_utc(value)

    def with_due_date(self, due_date: datetime) -> "TaskNotificationConfig":
        """Return a copy of this config due at ``due_date``."""
        return self.model_copy(update={"due_date": to_naive_utc(due_date)})


DEFAULT_ACTIVE_HOURS = [9, 10, 11, 17, 18, 19]  # morning and evening
DEFAULT_ADVANCE_MINUTES = 30
URGENT_ADVANCE_MINUTES = 60  # high and critical priority


class UserActivityProfile(BaseModel):
    """Historical engagement pattern of a user, read-only for the engine."""
    model_config = ConfigDict(frozen=True)

    user_id: str
    most_active_hours: List[int] = Field(default_factory=lambda: list(DEFAULT_ACTIVE_HOURS))
    timezone: str = "UTC"
    weekday_preference: bool = False


class NotificationPreferences(BaseModel):
    """Per-user notification preferences read from the preference store."""
    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    quiet_hours_start: Optional[str] = None  # HH:MM
    quiet_hours_end: Optional[str] = None  # HH:MM
    batching_enabled: bool = True
    max_batch_size: Optional[int] = Field(default=None, ge=1)
    # None: lead time follows task priority
    reminder_advance_minutes: Optional[int] = Field(default=None, ge=0)

    def advance_for(self, priority: TaskPriority) -> timedelta:
        """How long before the due date the reminder goes out."""
        if self.reminder_advance_minutes is not None:
            return timedelta(minutes=self.reminder_advance_minutes)
        if priority in (TaskPriority.HIGH, TaskPriority.CRITICAL):
            return timedelta(minutes=URGENT_ADVANCE_MINUTES)
        return timedelta(minutes=DEFAULT_ADVANCE_MINUTES)


class NotificationContent(BaseModel):
    """What the transport is asked to show."""
    model_config = ConfigDict(frozen=True)

    title: str
    body: str
    category_id: str = "plant_care"
    priority: str = "normal"
    data: Dict[str, Any] = Field(default_factory=dict)


@dataclass
class BatchOutcome:
    """Result of schedule_multiple: successes plus collected failures."""
    scheduled: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    batch_ids: List[str] = field(default_factory=list)
    failures: List[SchedulingError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scheduled": self.scheduled,
            "skipped": self.skipped,
            "batch_ids": self.batch_ids,
            "failures": [failure.to_dict() for failure in self.failures],
        }


class RescheduleRequest(BaseModel):
    due_date: datetime

    @field_validator("due_date")
    @classmethod
    def normalize_due_date(cls, value: datetime) -> datetime:
        return to_naive_utc(value)


class DeliveryEventRequest(BaseModel):
    """Inbound transport callback payload."""
    status: str = Field(..., pattern=r"^(sent|delivered|read|failed)$")
    timestamp: Optional[datetime] = None
    reason: Optional[str] = None


class DeliveryRecordResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    notification_id: str
    task_id: str
    batch_id: Optional[str] = None
    handle: Optional[str] = None
    status: str
    scheduled_for: datetime
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    read_at: Optional[datetime] = None
    retry_count: int = 0
    failure_reason: Optional[str] = None
    category_id: str
    is_escalation: bool = False
    title: str
    body: str
