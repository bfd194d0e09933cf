"""In-memory preference store and task source for development and tests."""
from datetime import datetime
from typing import Dict, List, Optional

from care_notifier.schemas.notification import (
    NotificationPreferences,
    TaskNotificationConfig,
    UserActivityProfile,
)
from care_notifier.stores.base import PreferenceStore, TaskSource


class InMemoryPreferenceStore(PreferenceStore):
    """Preferences and profiles kept in dictionaries keyed by user id."""

    def __init__(self):
        self._preferences: Dict[str, NotificationPreferences] = {}
        self._profiles: Dict[str, UserActivityProfile] = {}

    def set_preferences(self, user_id: str, preferences: NotificationPreferences):
        self._preferences[user_id] = preferences

    def set_profile(self, profile: UserActivityProfile):
        self._profiles[profile.user_id] = profile

    async def get_preferences(self, user_id: str) -> Optional[NotificationPreferences]:
        return self._preferences.get(user_id)

    async def get_activity_profile(self, user_id: str) -> Optional[UserActivityProfile]:
        return self._profiles.get(user_id)


class InMemoryTaskSource(TaskSource):
    """Task configs kept in a dictionary keyed by task id."""

    def __init__(self):
        self._tasks: Dict[str, TaskNotificationConfig] = {}

    def upsert(self, config: TaskNotificationConfig):
        self._tasks[config.task_id] = config

    def remove(self, task_id: str):
        self._tasks.pop(task_id, None)

    async def get_task(self, task_id: str) -> Optional[TaskNotificationConfig]:
        return self._tasks.get(task_id)

    async def list_overdue(self, now: datetime) -> List[TaskNotificationConfig]:
        overdue = [task for task in self._tasks.values() if task.due_date < now]
        return sorted(overdue, key=lambda task: task.due_date)
