"""Recurring notification schedule model for SQLModel."""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from pydantic import BaseModel, ValidationError as PydanticValidationError
from sqlalchemy import JSON, Column, DateTime, UniqueConstraint
from sqlmodel import Field, SQLModel

from care_notifier.services.config_validator import MAX_INTERVAL_HOURS
from care_notifier.services.quiet_hours import QuietHoursGate
from care_notifier.utils.time import from_local, to_local, utcnow

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_HOURS = 24


class NotificationSettings(BaseModel):
    """Typed view of a schedule entry's settings blob."""

    enable_push: bool = True
    enable_email: bool = False
    quiet_hours_start: Optional[str] = None  # HH:MM
    quiet_hours_end: Optional[str] = None  # HH:MM
    advance_notice_minutes: int = 30
    max_daily_notifications: Optional[int] = None  # stored, not enforced
    priority: str = "normal"  # low, normal, high


def merge_settings(current: NotificationSettings, update: Dict[str, Any]) -> NotificationSettings:
    """
    Merge ``update`` into ``current`` field by field.

    Args:
        current: Existing settings
        update: Field changes; a None value means "no change"

    Returns:
        New validated settings

    Raises:
        ValueError: If ``update`` names an unknown field
    """
    unknown = set(update) - set(NotificationSettings.model_fields)
    if unknown:
        raise ValueError(f"Unknown notification settings: {', '.join(sorted(unknown))}")

    merged = current.model_dump()
    merged.update({key: value for key, value in update.items() if value is not None})
    return NotificationSettings.model_validate(merged)


class ScheduleEntry(SQLModel, table=True):
    """Recurrence rule for one (plant, task type) pair."""

    __tablename__ = "notification_schedules"
    __table_args__ = (UniqueConstraint("plant_id", "task_type", name="uq_schedule_plant_task_type"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    plant_id: str = Field(index=True, max_length=100)
    task_type: str = Field(max_length=30)
    task_id: str = Field(index=True, max_length=100)
    user_id: str = Field(max_length=100)
    next_notification: datetime = Field(sa_column=Column(DateTime(timezone=False), nullable=False))
    interval_hours: int = Field(default=DEFAULT_INTERVAL_HOURS)
    max_notifications: Optional[int] = Field(default=None)
    sent_count: int = Field(default=0)
    is_active: bool = Field(default=True)
    is_deleted: bool = Field(default=False)
    settings_json: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    version: int = Field(default=1)
    created_at: datetime = Field(default_factory=utcnow, sa_column=Column(DateTime(timezone=False), nullable=False))
    updated_at: datetime = Field(default_factory=utcnow, sa_column=Column(DateTime(timezone=False), nullable=False))
    last_sent_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=False)))

    @property
    def settings(self) -> NotificationSettings:
        """Settings validated on read; an unreadable blob yields the defaults."""
        try:
            return NotificationSettings.model_validate(self.settings_json or {})
        except PydanticValidationError as e:
            logger.error(f"Invalid settings on schedule {self.id}, using defaults: {str(e)}")
            return NotificationSettings()

    def touch(self):
        self.updated_at = utcnow()

    # Status

    def is_valid(self) -> bool:
        return self.is_active and not self.is_deleted

    def is_due(self, now: Optional[datetime] = None) -> bool:
        return self.next_notification <= (now or utcnow())

    def has_reached_max_notifications(self) -> bool:
        return self.max_notifications is not None and self.sent_count >= self.max_notifications

    def should_send_notification(self, now: Optional[datetime] = None) -> bool:
        return self.is_valid() and self.is_due(now) and not self.has_reached_max_notifications()

    # Timing

    def calculate_next_notification(self) -> datetime:
        return self.next_notification + timedelta(hours=self.interval_hours)

    def is_in_quiet_hours(self, at: datetime, timezone: str = "UTC") -> bool:
        settings = self.settings
        return QuietHoursGate().is_quiet(
            to_local(at, timezone), settings.quiet_hours_start, settings.quiet_hours_end
        )

    def get_next_valid_notification_time(self, timezone: str = "UTC") -> datetime:
        """Next occurrence after the interval, moved out of quiet hours."""
        settings = self.settings
        candidate = to_local(self.calculate_next_notification(), timezone)
        allowed = QuietHoursGate().next_allowed_instant(
            candidate, settings.quiet_hours_start, settings.quiet_hours_end
        )
        return max(from_local(allowed, timezone), self.calculate_next_notification())

    # Mutations

    def update_interval(self, hours: int):
        if hours <= 0 or hours > MAX_INTERVAL_HOURS:
            raise ValueError(f"Interval must be between 1 and {MAX_INTERVAL_HOURS} hours")
        self.interval_hours = hours
        self.touch()

    def update_settings(self, **changes):
        self.settings_json = merge_settings(self.settings, changes).model_dump()
        self.touch()

    def record_send(self, at: Optional[datetime] = None, timezone: str = "UTC") -> bool:
        """
        Record a sent notification and advance to the next occurrence.

        Returns:
            False when the cap was already reached; the entry is deactivated
            instead of counting past it
        """
        if self.has_reached_max_notifications():
            self.deactivate()
            return False

        self.sent_count += 1
        self.last_sent_at = at or utcnow()
        self.next_notification = self.get_next_valid_notification_time(timezone)
        if self.has_reached_max_notifications():
            self.is_active = False
        self.touch()
        return True

    def skip(self, timezone: str = "UTC"):
        """Move to the next occurrence without counting a send."""
        self.next_notification = self.get_next_valid_notification_time(timezone)
        self.touch()

    def activate(self):
        self.is_active = True
        self.touch()

    def deactivate(self):
        self.is_active = False
        self.touch()

    def mark_as_deleted(self):
        self.is_deleted = True
        self.is_active = False
        self.touch()

    def reset_sent_count(self):
        self.sent_count = 0
        self.last_sent_at = None
        self.touch()

    def revive(self, task_id: str, user_id: str, next_notification: datetime):
        """Bring a soft-deleted or inactive entry back for a new task."""
        self.task_id = task_id
        self.user_id = user_id
        self.next_notification = next_notification
        self.is_deleted = False
        self.is_active = True
        self.reset_sent_count()
