from datetime import datetime, timedelta

import pytest

from care_notifier.models.delivery_record import DeliveryRecord, DeliveryStatus
from care_notifier.models.schedule_entry import NotificationSettings, ScheduleEntry, merge_settings

NOW = datetime(2024, 6, 3, 8, 0)


def make_entry(**overrides):
    values = dict(
        plant_id="plant-1",
        task_type="watering",
        task_id="task-1",
        user_id="grower",
        next_notification=NOW - timedelta(minutes=5),
        interval_hours=24,
    )
    values.update(overrides)
    return ScheduleEntry(**values)


def make_record(**overrides):
    values = dict(task_id="task-1", plant_id="plant-1", user_id="grower", scheduled_for=NOW)
    values.update(overrides)
    return DeliveryRecord(**values)


def test_capped_entry_should_not_send_even_when_due():
    entry = make_entry(max_notifications=3, sent_count=3)
    assert entry.is_due(NOW)
    assert entry.has_reached_max_notifications()
    assert not entry.should_send_notification(NOW)


def test_should_send_requires_active_due_and_not_deleted():
    entry = make_entry()
    assert entry.should_send_notification(NOW)

    entry.deactivate()
    assert not entry.should_send_notification(NOW)

    entry.activate()
    entry.mark_as_deleted()
    assert not entry.is_valid()
    assert not entry.should_send_notification(NOW)


def test_record_send_advances_by_interval():
    entry = make_entry(next_notification=datetime(2024, 6, 3, 9, 0), max_notifications=5)
    assert entry.record_send(NOW)
    assert entry.sent_count == 1
    assert entry.last_sent_at == NOW
    assert entry.next_notification == datetime(2024, 6, 4, 9, 0)


def test_record_send_at_cap_deactivates_instead_of_counting():
    entry = make_entry(max_notifications=2, sent_count=2)
    assert not entry.record_send(NOW)
    assert entry.sent_count == 2
    assert not entry.is_active


def test_reaching_cap_deactivates_entry():
    entry = make_entry(max_notifications=1)
    entry.record_send(NOW)
    assert entry.sent_count == 1
    assert not entry.is_active


def test_next_valid_time_respects_quiet_hours():
    entry = make_entry(next_notification=datetime(2024, 6, 3, 23, 0))
    entry.update_settings(quiet_hours_start="22:00", quiet_hours_end="07:00")
    assert entry.get_next_valid_notification_time() == datetime(2024, 6, 5, 7, 30)
    assert entry.is_in_quiet_hours(datetime(2024, 6, 3, 23, 0))


def test_skip_moves_forward_without_counting():
    entry = make_entry(next_notification=datetime(2024, 6, 3, 9, 0))
    entry.skip()
    assert entry.next_notification == datetime(2024, 6, 4, 9, 0)
    assert entry.sent_count == 0


def test_update_interval_bounds():
    entry = make_entry()
    entry.update_interval(8760)
    assert entry.interval_hours == 8760
    with pytest.raises(ValueError):
        entry.update_interval(0)
    with pytest.raises(ValueError):
        entry.update_interval(8761)


def test_merge_settings_keeps_fields_for_none():
    current = NotificationSettings(quiet_hours_start="22:00", quiet_hours_end="07:00", priority="high")
    merged = merge_settings(current, {"quiet_hours_start": None, "advance_notice_minutes": 10})
    assert merged.quiet_hours_start == "22:00"
    assert merged.advance_notice_minutes == 10
    assert merged.priority == "high"

    with pytest.raises(ValueError):
        merge_settings(current, {"volume": 11})


def test_unreadable_settings_blob_yields_defaults():
    entry = make_entry(settings_json={"advance_notice_minutes": "soon"})
    assert entry.settings == NotificationSettings()


def test_reset_and_revive():
    entry = make_entry(sent_count=4)
    entry.mark_as_deleted()
    entry.revive("task-2", "grower", NOW)
    assert entry.is_valid()
    assert entry.sent_count == 0
    assert entry.task_id == "task-2"


def test_delivery_record_happy_path():
    record = make_record()
    assert record.is_pending()
    assert record.mark_sent(NOW)
    assert record.mark_delivered(NOW + timedelta(seconds=5))
    assert record.mark_read(NOW + timedelta(minutes=1))
    assert record.status == DeliveryStatus.READ.value
    assert record.is_terminal()


def test_delivered_without_sent_backfills_timestamp():
    record = make_record()
    at = NOW + timedelta(minutes=1)
    assert record.mark_delivered(at)
    assert record.sent_at == at
    assert record.delivered_at == at


def test_out_of_order_events_are_ignored():
    record = make_record()
    record.mark_delivered(NOW)
    assert not record.mark_sent(NOW)
    assert not record.mark_failed("network_error")
    assert record.status == DeliveryStatus.DELIVERED.value


def test_schedule_retry_requeues_attempt():
    record = make_record(handle="h1")
    record.mark_sent(NOW)
    assert record.schedule_retry("network_error", NOW + timedelta(seconds=1), "h2")
    assert record.status == DeliveryStatus.SCHEDULED.value
    assert record.retry_count == 1
    assert record.handle == "h2"
    assert record.sent_at is None
