import asyncio
from datetime import datetime, timedelta

import pytest

from care_notifier.config import EngineSettings
from care_notifier.db.config import create_db_engine
from care_notifier.db.init import init_db
from care_notifier.errors import TransportError
from care_notifier.providers.base_provider import NotificationTransport
from care_notifier.schemas.notification import (
    NotificationPreferences,
    TaskNotificationConfig,
    TaskType,
    UserActivityProfile,
)
from care_notifier.services.scheduler import TaskNotificationScheduler
from care_notifier.stores.memory import InMemoryPreferenceStore, InMemoryTaskSource
from care_notifier.stores.sql_store import SQLScheduleStore

NOW = datetime(2024, 6, 3, 8, 0)
USER = "grower"


class FakeTransport(NotificationTransport):
    """Records requests; queued failure reasons are raised one per request."""

    def __init__(self):
        super().__init__()
        self.requests = []
        self.cancelled = []
        self.failures = []
        self.hang = False

    async def request_delivery(self, content, when):
        if self.hang:
            await asyncio.sleep(10)
        if self.failures:
            raise TransportError(self.failures.pop(0))
        handle = f"h{len(self.requests) + 1}"
        self.requests.append((handle, content, when))
        return handle

    async def cancel_delivery(self, handle):
        self.cancelled.append(handle)

    @property
    def last(self):
        return self.requests[-1]


class FixedClock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


async def no_sleep(seconds):
    await asyncio.sleep(0)


def make_config(task_id="task-1", plant_id="plant-1", due=None, **overrides):
    values = dict(
        task_id=task_id,
        plant_id=plant_id,
        plant_name="Blue Dream #1",
        task_type=TaskType.WATERING,
        task_title="Water Blue Dream",
        due_date=due or datetime(2024, 6, 4, 9, 0),
        user_id=USER,
    )
    values.update(overrides)
    return TaskNotificationConfig(**values)


@pytest.fixture
def engine():
    db_engine = create_db_engine("sqlite://")
    init_db(db_engine)
    yield db_engine
    db_engine.dispose()


@pytest.fixture
def store(engine):
    return SQLScheduleStore(engine)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def preferences():
    prefs = InMemoryPreferenceStore()
    # Every hour active so the optimizer leaves instants alone
    prefs.set_profile(UserActivityProfile(user_id=USER, most_active_hours=list(range(24))))
    prefs.set_preferences(USER, NotificationPreferences(reminder_advance_minutes=0))
    return prefs


@pytest.fixture
def task_source():
    return InMemoryTaskSource()


@pytest.fixture
def settings():
    return EngineSettings(database_url="sqlite://")


@pytest.fixture
def scheduler(store, transport, preferences, task_source, settings, clock):
    return TaskNotificationScheduler(
        store=store,
        transport=transport,
        preferences=preferences,
        task_source=task_source,
        settings=settings,
        clock=clock,
        sleep=no_sleep,
    )
