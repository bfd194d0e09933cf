"""
Collaborator interfaces the engine depends on.

The engine never talks to a database, the task layer or the user profile
service directly; it goes through these abstract stores.
"""

import abc
from datetime import datetime
from typing import List, Optional, Sequence

from care_notifier.models.delivery_record import DeliveryRecord
from care_notifier.models.schedule_entry import ScheduleEntry
from care_notifier.schemas.notification import (
    NotificationPreferences,
    TaskNotificationConfig,
    UserActivityProfile,
)


class ScheduleStore(abc.ABC):
    """Persistence for schedule entries and delivery records."""

    @abc.abstractmethod
    async def get_entry(self, plant_id: str, task_type: str) -> Optional[ScheduleEntry]:
        """Entry for a (plant, task type) pair, soft-deleted ones included."""

    @abc.abstractmethod
    async def get_entry_for_task(self, task_id: str) -> Optional[ScheduleEntry]:
        """Most recently updated entry owned by ``task_id``."""

    @abc.abstractmethod
    async def create_entry(self, entry: ScheduleEntry) -> ScheduleEntry:
        """
        Insert a new entry.

        Raises:
            SchedulingConflictError: If an entry for the pair already exists
        """

    @abc.abstractmethod
    async def update_entry(self, entry: ScheduleEntry, expected_version: int) -> ScheduleEntry:
        """
        Write ``entry`` if the stored version still equals ``expected_version``.

        Returns:
            The entry with its version incremented

        Raises:
            SchedulingConflictError: If another writer got there first
        """

    @abc.abstractmethod
    async def list_entries(self, include_deleted: bool = False) -> List[ScheduleEntry]:
        pass

    @abc.abstractmethod
    async def add_records(self, records: Sequence[DeliveryRecord]) -> None:
        pass

    @abc.abstractmethod
    async def update_records(self, records: Sequence[DeliveryRecord]) -> None:
        pass

    @abc.abstractmethod
    async def get_record(self, notification_id: str) -> Optional[DeliveryRecord]:
        pass

    @abc.abstractmethod
    async def list_records(self, task_id: str) -> List[DeliveryRecord]:
        pass

    @abc.abstractmethod
    async def list_records_by_handle(self, handle: str) -> List[DeliveryRecord]:
        pass

    @abc.abstractmethod
    async def delete_records(self, notification_ids: Sequence[str]) -> None:
        pass


class PreferenceStore(abc.ABC):
    """Read-only access to user preferences and activity profiles."""

    @abc.abstractmethod
    async def get_preferences(self, user_id: str) -> Optional[NotificationPreferences]:
        pass

    @abc.abstractmethod
    async def get_activity_profile(self, user_id: str) -> Optional[UserActivityProfile]:
        pass


class TaskSource(abc.ABC):
    """Read-only view of the task-management layer."""

    @abc.abstractmethod
    async def get_task(self, task_id: str) -> Optional[TaskNotificationConfig]:
        pass

    @abc.abstractmethod
    async def list_overdue(self, now: datetime) -> List[TaskNotificationConfig]:
        pass
