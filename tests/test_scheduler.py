import asyncio
import time
from datetime import datetime, timedelta

import pytest

from care_notifier.config import EngineSettings
from care_notifier.errors import NotFoundError, PersistenceError, ValidationError
from care_notifier.schemas.notification import NotificationPreferences, TaskPriority, TaskType
from care_notifier.services.escalation_monitor import OverdueSeverity
from care_notifier.services.scheduler import TaskNotificationScheduler
from care_notifier.stores.sql_store import SQLScheduleStore

from tests.conftest import NOW, USER, make_config, no_sleep

DUE = datetime(2024, 6, 4, 9, 0)


def run(coro):
    return asyncio.run(coro)


def records_for(scheduler, task_id):
    return run(scheduler.get_delivery_records(task_id))


def test_schedule_requests_single_notification(scheduler, transport):
    batch_id = run(scheduler.schedule(make_config()))

    assert batch_id is not None
    handle, content, when = transport.last
    assert when == DUE
    assert content.title == "💧 Water Blue Dream"
    assert content.data["taskIds"] == ["task-1"]

    [record] = records_for(scheduler, "task-1")
    assert record.status == "scheduled"
    assert record.handle == handle
    assert record.batch_id == batch_id
    assert record.scheduled_for == DUE

    stats = scheduler.get_stats()
    assert stats["active_batches"] == 1
    assert stats["notifications_scheduled_total"] == 1


def test_invalid_config_raises_validation_error(scheduler, transport):
    with pytest.raises(ValidationError) as excinfo:
        run(scheduler.schedule(make_config(plant_id="", estimated_duration=0)))
    assert len(excinfo.value.errors) == 2
    assert transport.requests == []
    assert scheduler.get_stats()["scheduling_errors_total"] == 1


def test_past_due_task_is_scheduled_shortly_after_now(scheduler, transport):
    run(scheduler.schedule(make_config(due=NOW - timedelta(hours=2))))
    assert transport.last[2] == NOW + timedelta(minutes=1)


def test_reminder_advance_and_quiet_hours_are_applied(scheduler, transport, preferences):
    preferences.set_preferences(
        USER,
        NotificationPreferences(quiet_hours_start="22:00", quiet_hours_end="07:00", reminder_advance_minutes=30),
    )
    run(scheduler.schedule(make_config(due=datetime(2024, 6, 4, 23, 59))))
    # 23:29 is quiet, so the reminder moves to the first allowed step
    assert transport.last[2] == datetime(2024, 6, 5, 7, 29)


def test_disabled_user_gets_nothing(scheduler, transport, preferences):
    preferences.set_preferences(USER, NotificationPreferences(enabled=False))
    assert run(scheduler.schedule(make_config())) is None
    assert transport.requests == []


def test_second_task_for_same_plant_merges_into_pending_batch(scheduler, transport):
    async def scenario():
        first = await scheduler.schedule(make_config("water"))
        second = await scheduler.schedule(
            make_config("feed", due=DUE + timedelta(minutes=30), task_type=TaskType.FEEDING)
        )
        return first, second

    first, second = run(scenario())

    assert first == second
    assert transport.cancelled == ["h1"]
    handle, content, when = transport.last
    assert handle == "h2"
    assert when == DUE
    assert "2 tasks for Blue Dream #1" in content.body
    assert content.data["taskIds"] == ["water", "feed"]

    records = records_for(scheduler, "water") + records_for(scheduler, "feed")
    assert {record.handle for record in records} == {"h2"}
    assert {record.batch_id for record in records} == {first}
    assert scheduler.get_stats()["batches_created_total"] == 1


def test_task_outside_window_gets_its_own_batch(scheduler, transport):
    async def scenario():
        first = await scheduler.schedule(make_config("water"))
        second = await scheduler.schedule(make_config("feed", due=DUE + timedelta(hours=3)))
        return first, second

    first, second = run(scenario())
    assert first != second
    assert transport.cancelled == []
    assert scheduler.get_stats()["active_batches"] == 2


def test_schedule_multiple_batches_per_plant_and_collects_failures(scheduler, transport):
    configs = [
        make_config("a"),
        make_config("b", due=DUE + timedelta(minutes=20)),
        make_config("c", plant_id="plant-2", plant_name="Gelato"),
        make_config("bad", plant_id=""),
        make_config("a", due=DUE + timedelta(minutes=10)),
    ]
    outcome = run(scheduler.schedule_multiple(configs))

    assert not outcome.ok
    assert [failure.task_id for failure in outcome.failures] == ["bad"]
    assert sorted(outcome.scheduled) == ["a", "b", "c"]
    assert len(outcome.batch_ids) == 2
    assert len(transport.requests) == 2

    # The later config for "a" won
    [record] = records_for(scheduler, "a")
    assert record.scheduled_for == DUE + timedelta(minutes=10)


def test_cancel_voids_handle_and_is_idempotent(scheduler, transport, store):
    async def scenario():
        await scheduler.schedule(make_config())
        await scheduler.cancel("task-1")
        await scheduler.cancel("task-1")

    run(scenario())
    assert transport.cancelled == ["h1"]
    assert records_for(scheduler, "task-1") == []
    assert scheduler.get_stats()["active_batches"] == 0
    assert scheduler.get_stats()["tracked_tasks"] == 0


def test_cancelling_one_member_reissues_the_rest(scheduler, transport):
    async def scenario():
        batch_id = await scheduler.schedule(make_config("water"))
        await scheduler.schedule(make_config("feed", due=DUE + timedelta(minutes=30), task_type=TaskType.FEEDING))
        await scheduler.cancel("water")
        return batch_id

    batch_id = run(scenario())

    assert transport.cancelled == ["h1", "h2"]
    handle, content, when = transport.last
    assert handle == "h3"
    assert when == DUE + timedelta(minutes=30)
    assert content.data["taskIds"] == ["feed"]

    [record] = records_for(scheduler, "feed")
    assert record.handle == "h3"
    assert record.batch_id == batch_id
    assert records_for(scheduler, "water") == []


def test_reschedule_moves_the_notification(scheduler, transport):
    async def scenario():
        await scheduler.schedule(make_config())
        await scheduler.reschedule("task-1", DUE + timedelta(days=1))

    run(scenario())
    assert transport.cancelled == ["h1"]
    assert transport.last[2] == DUE + timedelta(days=1)
    [record] = records_for(scheduler, "task-1")
    assert record.scheduled_for == DUE + timedelta(days=1)


def test_reschedule_uses_task_source_for_untracked_tasks(scheduler, transport, task_source):
    task_source.upsert(make_config("external"))
    run(scheduler.reschedule("external", DUE + timedelta(hours=1)))
    assert transport.last[2] == DUE + timedelta(hours=1)


def test_reschedule_unknown_task_raises(scheduler):
    with pytest.raises(NotFoundError):
        run(scheduler.reschedule("missing", DUE))


def test_fatal_delivery_failure_is_not_retried(scheduler, transport):
    async def scenario():
        await scheduler.schedule(make_config())
        return await scheduler.on_delivery_event("h1", "failed", reason="permission_denied")

    assert run(scenario())
    [record] = records_for(scheduler, "task-1")
    assert record.status == "failed"
    assert record.retry_count == 0
    assert record.failure_reason == "permission_denied"
    assert len(transport.requests) == 1
    assert scheduler.get_stats()["notifications_failed_total"] == 1
    assert scheduler.get_stats()["active_batches"] == 0


def test_retryable_delivery_failure_requests_again_after_backoff(scheduler, transport):
    async def scenario():
        await scheduler.schedule(make_config())
        await scheduler.on_delivery_event("h1", "sent", timestamp=DUE)
        await scheduler.on_delivery_event("h1", "failed", reason="device_offline")

    run(scenario())
    handle, _, when = transport.last
    assert handle == "h2"
    assert when == NOW + timedelta(seconds=1)

    [record] = records_for(scheduler, "task-1")
    assert record.status == "scheduled"
    assert record.retry_count == 1
    assert record.handle == "h2"
    assert scheduler.get_stats()["retry_attempts_total"] == 1


def test_failed_request_is_retried_in_background(scheduler, transport):
    transport.failures = ["network_error"]

    async def scenario():
        await scheduler.schedule(make_config())
        await scheduler.stop(drain=True)

    run(scenario())
    [record] = records_for(scheduler, "task-1")
    assert record.handle == "h1"
    assert record.retry_count == 1
    assert record.status == "scheduled"
    assert scheduler.get_stats()["retry_attempts_total"] == 1


def test_request_that_keeps_failing_ends_failed(scheduler, transport):
    transport.failures = ["network_error"] * 10

    async def scenario():
        await scheduler.schedule(make_config())
        await scheduler.stop(drain=True)

    run(scenario())
    [record] = records_for(scheduler, "task-1")
    assert record.status == "failed"
    assert record.retry_count == 5
    assert transport.requests == []


def test_request_timeout_is_a_retryable_failure(scheduler, transport, settings):
    settings.operation_timeout_seconds = 0.05
    transport.hang = True

    async def scenario():
        await scheduler.schedule(make_config())
        await scheduler.stop()

    run(scenario())
    [record] = records_for(scheduler, "task-1")
    assert record.failure_reason == "timeout"
    assert record.retry_count == 1


def test_delivery_events_update_records_and_counters(scheduler, transport):
    async def scenario():
        await scheduler.schedule(make_config())
        await scheduler.on_delivery_event("h1", "delivered", timestamp=DUE)
        await scheduler.on_delivery_event("h1", "read", timestamp=DUE + timedelta(minutes=3))
        # Late "sent" after "read" is ignored
        await scheduler.on_delivery_event("h1", "sent", timestamp=DUE)

    run(scenario())
    [record] = records_for(scheduler, "task-1")
    assert record.status == "read"
    assert record.sent_at == DUE
    assert record.read_at == DUE + timedelta(minutes=3)

    stats = scheduler.get_stats()
    assert stats["notifications_sent_total"] == 1
    assert stats["notifications_delivered_total"] == 1
    assert stats["notifications_read_total"] == 1
    assert stats["active_batches"] == 0


def test_unknown_handle_is_reported(scheduler):
    assert run(scheduler.on_delivery_event("nope", "sent")) is False


def test_recurring_task_schedules_next_occurrence_until_cap(scheduler, transport, store):
    config = make_config(is_recurring=True, interval_hours=24, max_notifications=2)

    async def scenario():
        await scheduler.schedule(config)
        await scheduler.on_delivery_event("h1", "sent", timestamp=DUE)
        await scheduler.on_delivery_event("h2", "sent", timestamp=DUE + timedelta(days=1))
        return await store.get_entry("plant-1", "watering")

    entry = run(scenario())
    assert [when for _, _, when in transport.requests] == [DUE, DUE + timedelta(days=1)]
    assert entry.sent_count == 2
    assert not entry.is_active


def test_capped_recurring_entry_skips_delivery(scheduler, transport, store):
    config = make_config(is_recurring=True, max_notifications=1)

    async def scenario():
        await scheduler.schedule(config)
        await scheduler.on_delivery_event("h1", "sent", timestamp=DUE)
        return await scheduler.schedule(config.with_due_date(DUE + timedelta(days=3)))

    assert run(scenario()) is None
    assert len(transport.requests) == 1


def test_cancel_with_task_removed_soft_deletes_and_revives(scheduler, store):
    config = make_config(is_recurring=True)

    async def scenario():
        await scheduler.schedule(config)
        await scheduler.cancel("task-1", task_removed=True)
        deleted = await store.get_entry("plant-1", "watering")
        await scheduler.schedule(make_config("task-2", is_recurring=True))
        revived = await store.get_entry("plant-1", "watering")
        return deleted, revived

    deleted, revived = run(scenario())
    assert deleted.is_deleted and not deleted.is_active
    assert revived.is_valid()
    assert revived.task_id == "task-2"
    assert revived.sent_count == 0


def test_overdue_sweep_escalates_once(scheduler, transport):
    config = make_config(due=NOW - timedelta(days=2.8))

    async def scenario():
        await scheduler.schedule(config)
        first = await scheduler.process_overdue()
        second = await scheduler.process_overdue()
        return first, second

    first, second = run(scenario())

    [result] = first
    assert result.notified
    assert result.severity == OverdueSeverity.CRITICAL
    assert result.days_overdue == 2
    assert result.deliver_at == NOW

    handle, content, when = transport.last
    assert content.category_id == "overdue_tasks"
    assert content.body == "Blue Dream #1 needs watering (2 days overdue)"
    assert when == NOW
    # The pending reminder was replaced by the escalation
    assert transport.cancelled == ["h1"]

    [record] = records_for(scheduler, "task-1")
    assert record.is_escalation
    assert record.notification_id == result.notification_id

    assert second[0].skipped_reason == "already_escalated"
    stats = scheduler.get_stats()
    assert stats["overdue_escalations"] == 1
    assert stats["escalations_sent_total"] == 1


def test_non_critical_escalation_respects_quiet_hours(scheduler, preferences, task_source, clock):
    clock.now = datetime(2024, 6, 3, 23, 0)
    preferences.set_preferences(USER, NotificationPreferences(quiet_hours_start="22:00", quiet_hours_end="07:00"))
    task_source.upsert(make_config(due=clock.now - timedelta(days=2.5)))

    [result] = run(scheduler.process_overdue())

    assert result.severity == OverdueSeverity.HIGH
    assert result.deliver_at == datetime(2024, 6, 4, 7, 30)


def test_task_source_outage_does_not_repeat_escalation(scheduler, transport, task_source, monkeypatch):
    task_source.upsert(make_config(due=NOW - timedelta(days=2.9)))
    healthy = task_source.list_overdue

    async def unavailable(now):
        raise ConnectionError("task service down")

    async def scenario():
        first = await scheduler.process_overdue()
        monkeypatch.setattr(task_source, "list_overdue", unavailable)
        during = await scheduler.process_overdue()
        monkeypatch.setattr(task_source, "list_overdue", healthy)
        after = await scheduler.process_overdue()
        return first, during, after

    first, during, after = run(scenario())
    assert first[0].notified
    assert during == []
    assert after[0].skipped_reason == "already_escalated"
    stats = scheduler.get_stats()
    assert stats["escalations_sent_total"] == 1
    assert stats["overdue_sweep_errors_total"] == 1


def test_overdue_sweep_skips_locked_tasks(scheduler, transport, task_source):
    task_source.upsert(make_config(due=NOW - timedelta(days=2.9)))

    async def scenario():
        async with scheduler._locks.hold("task-1"):
            locked = await scheduler.process_overdue()
        unlocked = await scheduler.process_overdue()
        return locked, unlocked

    locked, unlocked = run(scenario())
    assert locked[0].skipped_reason == "locked"
    assert not locked[0].notified
    assert unlocked[0].notified


def test_optimize_timing_never_raises(scheduler, preferences):
    from care_notifier.schemas.notification import UserActivityProfile

    preferences.set_profile(UserActivityProfile(user_id="night-owl", most_active_hours=[17]))
    configs = [make_config("a", due=datetime(2024, 6, 4, 15, 0)), make_config("b", due=datetime(2024, 6, 4, 9, 0))]
    results = run(scheduler.optimize_timing("night-owl", configs))
    assert results == [datetime(2024, 6, 4, 17, 0), datetime(2024, 6, 4, 9, 0)]


def test_start_and_stop_run_the_poll_loop(scheduler, transport, task_source):
    task_source.upsert(make_config(due=NOW - timedelta(days=2.9)))

    async def scenario():
        async with scheduler:
            await asyncio.sleep(0.05)
            assert transport.is_initialized
        return scheduler.get_stats()

    stats = run(scenario())
    assert stats["escalations_sent_total"] == 1
    assert not transport.is_initialized


def test_default_lead_time_follows_priority(scheduler, transport, preferences):
    preferences.set_preferences(USER, NotificationPreferences())

    async def scenario():
        await scheduler.schedule(make_config("routine"))
        await scheduler.schedule(make_config("urgent", plant_id="plant-2", priority=TaskPriority.CRITICAL))

    run(scenario())
    assert [when for _, _, when in transport.requests] == [
        DUE - timedelta(minutes=30),
        DUE - timedelta(hours=1),
    ]


def test_schedule_multiple_joins_pending_batch_of_same_plant(scheduler, transport):
    async def scenario():
        first = await scheduler.schedule(make_config("water"))
        outcome = await scheduler.schedule_multiple(
            [make_config("feed", due=DUE + timedelta(minutes=30), task_type=TaskType.FEEDING)]
        )
        return first, outcome

    first, outcome = run(scenario())

    assert outcome.scheduled == ["feed"]
    assert outcome.batch_ids == [first]
    assert transport.cancelled == ["h1"]
    assert len(transport.requests) == 2
    handle, content, when = transport.last
    assert when == DUE
    assert content.data["taskIds"] == ["water", "feed"]
    assert scheduler.get_stats()["active_batches"] == 1


class SlowRecordStore(SQLScheduleStore):
    def _merge_records(self, records, action):
        time.sleep(0.5)
        return super()._merge_records(records, action)


def test_slow_store_times_out_without_blocking(engine, transport, preferences, clock):
    scheduler = TaskNotificationScheduler(
        store=SlowRecordStore(engine),
        transport=transport,
        preferences=preferences,
        settings=EngineSettings(database_url="sqlite://", operation_timeout_seconds=0.05, store_retry_attempts=1),
        clock=clock,
        sleep=no_sleep,
    )

    async def scenario():
        started = time.monotonic()
        with pytest.raises(PersistenceError):
            await scheduler.schedule(make_config())
        return time.monotonic() - started

    assert run(scenario()) < 0.4
    assert transport.requests == []
    assert scheduler.get_stats()["scheduling_errors_total"] == 1


class FlakyUpdateStore(SQLScheduleStore):
    def __init__(self, engine, failures):
        super().__init__(engine)
        self.failures = failures

    def _merge_records(self, records, action):
        if action == "update" and self.failures:
            self.failures -= 1
            raise PersistenceError("database is locked")
        return super()._merge_records(records, action)


def test_unstored_handle_is_cancelled_and_records_fail(engine, transport, preferences, settings, clock):
    store = FlakyUpdateStore(engine, failures=settings.store_retry_attempts)
    scheduler = TaskNotificationScheduler(
        store=store,
        transport=transport,
        preferences=preferences,
        settings=settings,
        clock=clock,
        sleep=no_sleep,
    )

    with pytest.raises(PersistenceError):
        run(scheduler.schedule(make_config()))

    assert transport.cancelled == ["h1"]
    [record] = records_for(scheduler, "task-1")
    assert record.status == "failed"
    assert record.failure_reason == "persistence_error"
    stats = scheduler.get_stats()
    assert stats["active_batches"] == 0
    assert stats["notifications_failed_total"] == 1


def test_settled_one_off_task_is_left_to_the_task_source(scheduler, transport, task_source):
    config = make_config()
    task_source.upsert(config)

    async def scenario():
        await scheduler.schedule(config)
        await scheduler.on_delivery_event("h1", "delivered", timestamp=DUE)
        released = scheduler.get_stats()["tracked_tasks"]
        batch_id = await scheduler.reschedule("task-1", DUE + timedelta(days=1))
        return released, batch_id

    released, batch_id = run(scenario())
    assert released == 0
    assert batch_id is not None
    assert transport.last[2] == DUE + timedelta(days=1)
