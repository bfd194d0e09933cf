"""
Task Notification Scheduler.

The single entry point of the engine. Plans delivery instants, batches
tasks per plant, keeps recurrence entries in sync, talks to the transport
and reacts to its delivery callbacks.
"""

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set, Tuple

from care_notifier.config import EngineSettings
from care_notifier.errors import (
    NotFoundError,
    PersistenceError,
    SchedulingConflictError,
    SchedulingError,
    TransportError,
    ValidationError,
)
from care_notifier.models.delivery_record import DeliveryRecord, DeliveryStatus
from care_notifier.models.schedule_entry import NotificationSettings, ScheduleEntry
from care_notifier.providers.base_provider import NotificationTransport
from care_notifier.schemas.notification import (
    BatchOutcome,
    NotificationContent,
    NotificationPreferences,
    TaskNotificationConfig,
    TaskPriority,
)
from care_notifier.services.batch_assembler import Batch, BatchAssembler, PendingNotification
from care_notifier.services.config_validator import NotificationConfigValidator
from care_notifier.services.escalation_monitor import (
    EscalationMonitor,
    EscalationResult,
    OverdueSeverity,
)
from care_notifier.services.notification_content import (
    build_escalation_content,
    build_task_content,
)
from care_notifier.services.profile_cache import ProfileCache
from care_notifier.services.quiet_hours import QuietHoursGate
from care_notifier.services.retry_coordinator import FailureReason, RetryCoordinator
from care_notifier.services.timing_optimizer import ActivityTimingOptimizer
from care_notifier.stores.base import PreferenceStore, ScheduleStore, TaskSource
from care_notifier.utils.keyed_lock import KeyedLock
from care_notifier.utils.logger import StructuredLogger
from care_notifier.utils.metrics import MetricsCollector
from care_notifier.utils.time import from_local, to_local, to_naive_utc, utcnow

logger = logging.getLogger(__name__)

BATCH = "batch"
ESCALATION = "escalation"

MIN_LEAD_TIME = timedelta(minutes=1)
MAX_CONFLICT_RETRIES = 5
STORE_BACKOFF_SECONDS = 0.1


def batch_key(batch_id: str) -> str:
    return f"batch:{batch_id}"


@dataclass
class ActiveBatch:
    """A delivery that has been requested but not yet sent."""
    batch: Batch
    user_id: str
    kind: str
    content: NotificationContent
    records: Dict[str, DeliveryRecord] = field(default_factory=dict)
    handle: Optional[str] = None


class TaskNotificationScheduler:
    """
    Notification engine facade.

    Every public operation on a task runs under that task's lock; shared
    batch state is guarded by a per-batch lock taken after the task locks.
    """

    def __init__(
        self,
        store: ScheduleStore,
        transport: NotificationTransport,
        preferences: PreferenceStore,
        task_source: Optional[TaskSource] = None,
        settings: Optional[EngineSettings] = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.store = store
        self.transport = transport
        self.task_source = task_source
        self.settings = settings or EngineSettings()
        self._clock = clock
        self._sleep = sleep

        self.metrics = MetricsCollector()
        self.logger = StructuredLogger("notification-engine")
        self.gate = QuietHoursGate()
        self.optimizer = ActivityTimingOptimizer(self.gate, self.settings.activity_tolerance_hours)
        self.assembler = BatchAssembler()
        self.retry = RetryCoordinator(self.settings.max_retry_attempts)
        self.escalations = EscalationMonitor(self.settings.critical_horizon, self.metrics)
        self.cache = ProfileCache(
            preferences,
            ttl=self.settings.profile_cache_ttl,
            clock=clock,
            timeout=self.settings.operation_timeout_seconds,
        )

        self._locks = KeyedLock()
        self._configs: Dict[str, TaskNotificationConfig] = {}
        self._batches: Dict[str, ActiveBatch] = {}
        self._task_batches: Dict[str, str] = {}
        self._retry_tasks: Set[asyncio.Task] = set()
        self._poll_task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    # Lifecycle

    async def start(self):
        """Initialize the transport and start the overdue poll loop."""
        if self._poll_task is not None and not self._poll_task.done():
            return
        if not self.transport.is_initialized:
            await self.transport.initialize()
        self._stop_event = asyncio.Event()
        self._poll_task = asyncio.create_task(self._poll_loop())
        self.logger.info("Notification engine started", poll_seconds=self.settings.overdue_poll_seconds)

    async def stop(self, drain: bool = False):
        """
        Stop the poll loop and pending retry timers.

        Args:
            drain: Let pending retries run to completion instead of cancelling them
        """
        if self._stop_event is not None:
            self._stop_event.set()
        if self._poll_task is not None:
            await self._poll_task
            self._poll_task = None

        if drain:
            while self._retry_tasks:
                await asyncio.gather(*list(self._retry_tasks), return_exceptions=True)
        else:
            for task in list(self._retry_tasks):
                task.cancel()
            await asyncio.gather(*list(self._retry_tasks), return_exceptions=True)
        self._retry_tasks.clear()

        self.cache.clear()
        if self.transport.is_initialized:
            await self.transport.cleanup()
        self.logger.info("Notification engine stopped")

    async def __aenter__(self) -> "TaskNotificationScheduler":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    async def _poll_loop(self):
        while not self._stop_event.is_set():
            try:
                await self.process_overdue()
            except Exception as e:
                self.metrics.sweep_error()
                self.logger.exception("Overdue sweep failed", error=str(e))

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.settings.overdue_poll_seconds)
            except asyncio.TimeoutError:
                pass

    def clear_cache(self):
        self.cache.clear()

    # Public operations

    async def schedule(self, config: TaskNotificationConfig) -> Optional[str]:
        """
        Schedule the notification for one task.

        Args:
            config: Task to notify about; supersedes any earlier config with
                the same task_id

        Returns:
            Id of the batch the task was placed in, or None when the user has
            notifications disabled or the recurrence cap is reached

        Raises:
            ValidationError: If the config is invalid
            PersistenceError: If the schedule store stays unavailable
        """
        self._validate(config)
        async with self._locks.hold(config.task_id):
            with self.metrics.timer("schedule_seconds"):
                try:
                    return await self._schedule_locked(config)
                except SchedulingError as e:
                    self.metrics.scheduling_error()
                    self.logger.error("Failed to schedule notification", task_id=config.task_id, error=str(e))
                    raise

    async def schedule_multiple(self, configs: Sequence[TaskNotificationConfig]) -> BatchOutcome:
        """
        Schedule many tasks at once, batching them per plant.

        Failures are collected per config in the outcome and never raised.
        When the same task id appears more than once, the last config wins.
        """
        outcome = BatchOutcome()
        latest: "OrderedDict[str, TaskNotificationConfig]" = OrderedDict()
        for config in configs:
            latest.pop(config.task_id, None)
            latest[config.task_id] = config

        valid: List[TaskNotificationConfig] = []
        for config in latest.values():
            try:
                self._validate(config)
                valid.append(config)
            except ValidationError as e:
                outcome.failures.append(e)

        async with self._locks.hold_many(config.task_id for config in valid):
            planned: Dict[str, Tuple[NotificationPreferences, List[PendingNotification]]] = {}
            for config in valid:
                try:
                    await self._void_task(config.task_id)
                    self.escalations.forget(config.task_id)
                    plan = await self._plan(config)
                except SchedulingError as e:
                    self.metrics.scheduling_error()
                    outcome.failures.append(e)
                    continue
                except Exception as e:
                    self.metrics.scheduling_error()
                    outcome.failures.append(SchedulingError(str(e), config.task_id))
                    continue

                if plan is None:
                    outcome.skipped.append(config.task_id)
                    continue
                prefs, user_id, pending = plan
                planned.setdefault(user_id, (prefs, []))[1].append(pending)

            for user_id, (prefs, pending) in planned.items():
                unmerged: List[PendingNotification] = []
                for item in sorted(pending, key=lambda member: (member.deliver_at, member.config.task_id)):
                    try:
                        batch_id = await self._try_merge(item, prefs, user_id)
                    except SchedulingError as e:
                        self.metrics.scheduling_error()
                        outcome.failures.append(SchedulingError(e.message, item.config.task_id))
                        continue
                    if batch_id is None:
                        unmerged.append(item)
                        continue
                    outcome.scheduled.append(item.config.task_id)
                    if batch_id not in outcome.batch_ids:
                        outcome.batch_ids.append(batch_id)

                batches = self.assembler.assemble(
                    unmerged,
                    window=self.settings.batch_window,
                    max_batch_size=prefs.max_batch_size or self.settings.max_batch_size,
                    batching_enabled=prefs.batching_enabled,
                )
                for batch in batches:
                    try:
                        await self._issue(batch, user_id, BATCH)
                    except SchedulingError as e:
                        self.metrics.scheduling_error()
                        for task_id in batch.task_ids:
                            outcome.failures.append(SchedulingError(e.message, task_id))
                        continue
                    outcome.batch_ids.append(batch.batch_id)
                    outcome.scheduled.extend(batch.task_ids)

        self.logger.info(
            "Scheduled notifications",
            scheduled=len(outcome.scheduled),
            skipped=len(outcome.skipped),
            failed=len(outcome.failures),
            batches=len(outcome.batch_ids),
        )
        return outcome

    async def cancel(self, task_id: str, task_removed: bool = False):
        """
        Cancel everything pending for ``task_id``. Idempotent.

        Args:
            task_id: Task to cancel
            task_removed: The task itself was deleted; soft-delete its
                recurrence entry instead of only deactivating it
        """
        async with self._locks.hold(task_id):
            await self._void_task(task_id)
            self._configs.pop(task_id, None)
            self.escalations.forget(task_id)

            if task_removed:
                entry = await self._mutate_entry_for_task(task_id, lambda entry: entry.mark_as_deleted())
            else:
                entry = await self._mutate_entry_for_task(task_id, lambda entry: entry.deactivate())

            self.logger.info(
                "Cancelled task notifications",
                task_id=task_id,
                task_removed=task_removed,
                schedule_id=entry.id if entry else None,
            )

    async def reschedule(self, task_id: str, new_due_date: datetime) -> Optional[str]:
        """
        Cancel and schedule ``task_id`` again at ``new_due_date`` atomically.

        Raises:
            NotFoundError: If the task is neither tracked nor known to the task source
        """
        async with self._locks.hold(task_id):
            config = self._configs.get(task_id)
            if config is None and self.task_source is not None:
                config = await self._with_timeout(self.task_source.get_task(task_id))
            if config is None:
                raise NotFoundError(f"Task {task_id} not found", task_id)

            return await self._schedule_locked(config.with_due_date(new_due_date), reset_next=True)

    async def process_overdue(self, now: Optional[datetime] = None) -> List[EscalationResult]:
        """
        Run one overdue sweep.

        Tasks come from the task source when one is configured, plus the
        tasks this engine is tracking. Tasks whose lock is held are reported
        with skipped_reason "locked" and re-checked on the next sweep.
        """
        now = to_naive_utc(now) if now else self._clock()
        complete = True
        tasks: Dict[str, TaskNotificationConfig] = {
            task_id: config for task_id, config in self._configs.items() if config.due_date < now
        }
        if self.task_source is not None:
            try:
                for config in await self._with_timeout(self.task_source.list_overdue(now)):
                    tasks[config.task_id] = config
            except Exception as e:
                complete = False
                self.metrics.sweep_error()
                self.logger.error("Failed to list overdue tasks", error=str(e))

        with self.metrics.timer("overdue_sweep_seconds"):
            results = await self.escalations.process_overdue(
                now, list(tasks.values()), self._deliver_escalation, complete=complete
            )

        notified = sum(1 for result in results if result.notified)
        if results:
            self.logger.info("Overdue sweep complete", overdue=len(results), escalated=notified)
        return results

    async def optimize_timing(self, user_id: str, configs: Sequence[TaskNotificationConfig]) -> List[datetime]:
        """Optimized delivery instants for ``configs``; falls back to due dates on any failure."""
        try:
            profile = await self.cache.get_profile(user_id)
            prefs = await self.cache.get_preferences(user_id)
        except Exception as e:
            self.logger.error("Failed to load user profile for timing", user_id=user_id, error=str(e))
            return [config.due_date for config in configs]
        return self.optimizer.optimize(configs, profile, prefs.quiet_hours_start, prefs.quiet_hours_end)

    def get_stats(self) -> Dict[str, Any]:
        stats = {
            "active_batches": len(self._batches),
            "overdue_escalations": self.escalations.tracked_count,
            "cached_user_patterns": self.cache.cached_user_patterns,
            "tracked_tasks": len(self._configs),
            "pending_retries": len(self._retry_tasks),
        }
        stats.update(self.metrics.get_metrics()["counters"])
        return stats

    async def get_delivery_records(self, task_id: str) -> List[DeliveryRecord]:
        return await self._store_call(self.store.list_records, task_id)

    async def on_delivery_event(
        self,
        handle: str,
        status: str,
        timestamp: Optional[datetime] = None,
        reason: Optional[str] = None,
    ) -> bool:
        """
        Apply a transport callback to the records behind ``handle``.

        Args:
            handle: Transport handle the event refers to
            status: One of sent, delivered, read, failed
            timestamp: When it happened; defaults to now
            reason: Failure reason for "failed" events

        Returns:
            False when the handle is unknown
        """
        if status not in (
            DeliveryStatus.SENT.value,
            DeliveryStatus.DELIVERED.value,
            DeliveryStatus.READ.value,
            DeliveryStatus.FAILED.value,
        ):
            raise ValueError(f"Unknown delivery status: {status}")

        known = await self._store_call(self.store.list_records_by_handle, handle)
        if not known:
            self.logger.warning("Delivery event for unknown handle", handle=handle, status=status)
            return False

        at = to_naive_utc(timestamp) if timestamp else self._clock()
        task_ids = sorted({record.task_id for record in known})
        batch_id = known[0].batch_id

        async with self._locks.hold_many(task_ids):
            async with self._locks.hold(batch_key(batch_id)):
                active = self._batches.get(batch_id)
                if active is not None and active.handle == handle:
                    records = list(active.records.values())
                else:
                    active = None
                    records = await self._store_call(self.store.list_records_by_handle, handle)

                if status == DeliveryStatus.FAILED.value:
                    follow_ups = await self._on_callback_failure(active, records, reason)
                else:
                    follow_ups = await self._on_callback_progress(active, records, status, at)

            for config in follow_ups:
                await self._schedule_follow_up(config, at)

            if self.task_source is not None:
                self._release_settled(records)

        return True

    def _release_settled(self, records: List[DeliveryRecord]):
        """
        Stop tracking one-off tasks whose notification is settled.

        Only used with a task source, which keeps reporting the task to the
        overdue sweep and to reschedule. Without one, tasks stay tracked until
        cancelled so they remain eligible for escalation.
        """
        for record in records:
            config = self._configs.get(record.task_id)
            if config is None or config.is_recurring or not record.is_terminal():
                continue
            if record.task_id in self._task_batches:
                continue
            del self._configs[record.task_id]

    # Scheduling pipeline (task lock held)

    def _validate(self, config: TaskNotificationConfig):
        result = NotificationConfigValidator.validate(config)
        if not result["valid"]:
            self.metrics.scheduling_error()
            raise ValidationError(result["errors"], config.task_id)
        for warning in result["warnings"]:
            self.logger.debug("Config warning", task_id=config.task_id, warning=warning)

    async def _schedule_locked(self, config: TaskNotificationConfig, reset_next: bool = False) -> Optional[str]:
        await self._void_task(config.task_id)
        self.escalations.forget(config.task_id)

        plan = await self._plan(config, reset_next)
        if plan is None:
            return None
        prefs, user_id, pending = plan

        merged = await self._try_merge(pending, prefs, user_id)
        if merged is not None:
            return merged

        batch = Batch(
            plant_id=config.plant_id,
            plant_name=config.plant_name,
            user_id=user_id,
            members=[pending],
        )
        await self._issue(batch, user_id, BATCH)
        return batch.batch_id

    async def _plan(
        self,
        config: TaskNotificationConfig,
        reset_next: bool = False,
    ) -> Optional[Tuple[NotificationPreferences, str, PendingNotification]]:
        """Track ``config`` and work out when it should be delivered; None means skip."""
        user_id = config.user_id or self.settings.default_user_id
        self._configs[config.task_id] = config

        prefs = await self.cache.get_preferences(user_id)
        if not prefs.enabled:
            self.logger.info("Notifications disabled for user, skipping", task_id=config.task_id, user_id=user_id)
            return None

        if config.is_recurring:
            entry = await self._ensure_entry(config, user_id, prefs, reset_next)
            if not entry.is_valid() or entry.has_reached_max_notifications():
                self.logger.info(
                    "Recurrence limit reached, skipping",
                    task_id=config.task_id,
                    sent_count=entry.sent_count,
                    max_notifications=entry.max_notifications,
                )
                return None

        profile = await self.cache.get_profile(user_id)
        now = self._clock()
        natural = config.due_date - prefs.advance_for(config.priority)
        if natural <= now:
            natural = now + MIN_LEAD_TIME

        try:
            deliver_at = self.optimizer.adjust(natural, profile, prefs.quiet_hours_start, prefs.quiet_hours_end)
        except Exception as e:
            self.logger.error("Timing optimization failed", task_id=config.task_id, error=str(e))
            deliver_at = natural

        return prefs, user_id, PendingNotification(config=config, deliver_at=deliver_at)

    async def _try_merge(
        self,
        pending: PendingNotification,
        prefs: NotificationPreferences,
        user_id: str,
    ) -> Optional[str]:
        """Add ``pending`` to a compatible pending batch of the same plant."""
        if not prefs.batching_enabled:
            return None
        max_size = prefs.max_batch_size or self.settings.max_batch_size

        for batch_id, active in list(self._batches.items()):
            if active.kind != BATCH or active.user_id != user_id:
                continue
            if active.batch.plant_id != pending.config.plant_id:
                continue
            if not self._fits(active, pending, max_size):
                continue

            async with self._locks.hold(batch_key(batch_id)):
                if self._batches.get(batch_id) is not active or not self._fits(active, pending, max_size):
                    continue
                await self._merge_into(active, pending)
                return batch_id

        return None

    def _fits(self, active: ActiveBatch, pending: PendingNotification, max_size: int) -> bool:
        batches = self.assembler.assemble(
            active.batch.members + [pending],
            window=self.settings.batch_window,
            max_batch_size=max_size,
        )
        return len(batches) == 1

    async def _merge_into(self, active: ActiveBatch, pending: PendingNotification):
        if active.handle:
            await self._cancel_handle(active.handle)
            active.handle = None

        members = active.batch.members + [pending]
        active.batch.members = sorted(members, key=lambda member: (member.deliver_at, member.config.task_id))
        active.content = build_task_content(active.batch.configs, active.batch.batch_id)

        record = self._new_record(pending.config, active)
        await self._store_call(self.store.add_records, [record])
        active.records[pending.config.task_id] = record
        self._task_batches[pending.config.task_id] = active.batch.batch_id

        self.metrics.notification_scheduled()
        if active.batch.size == 2:
            self.metrics.batch_created()
        self.logger.info(
            "Merged task into pending batch",
            task_id=pending.config.task_id,
            batch_id=active.batch.batch_id,
            size=active.batch.size,
        )
        await self._reissue(active)

    async def _issue(
        self,
        batch: Batch,
        user_id: str,
        kind: str,
        content: Optional[NotificationContent] = None,
    ) -> ActiveBatch:
        """Persist records for a new batch and request its delivery."""
        active = ActiveBatch(
            batch=batch,
            user_id=user_id,
            kind=kind,
            content=content or build_task_content(batch.configs, batch.batch_id),
        )
        active.records = {member.config.task_id: self._new_record(member.config, active) for member in batch.members}
        await self._store_call(self.store.add_records, list(active.records.values()))
        self._register(active)

        self.metrics.notification_scheduled(batch.size)
        if batch.is_composite:
            self.metrics.batch_created()

        await self._deliver(active)
        return active

    async def _abandon_records(self, records: List[DeliveryRecord]):
        """Mark records whose handle could not be stored as failed, best effort."""
        for record in records:
            if record.mark_failed(FailureReason.PERSISTENCE_ERROR.value):
                self.metrics.notification_failed()
        try:
            await self._with_timeout(self.store.update_records(records))
        except (PersistenceError, asyncio.TimeoutError) as e:
            self.logger.error(
                "Could not record failed deliveries",
                task_ids=[record.task_id for record in records],
                error=str(e) or "timeout",
            )

    def _new_record(self, config: TaskNotificationConfig, active: ActiveBatch) -> DeliveryRecord:
        return DeliveryRecord(
            task_id=config.task_id,
            plant_id=config.plant_id,
            user_id=active.user_id,
            batch_id=active.batch.batch_id,
            status=DeliveryStatus.SCHEDULED.value,
            scheduled_for=active.batch.deliver_at,
            category_id=active.content.category_id,
            is_escalation=active.kind == ESCALATION,
            title=active.content.title,
            body=active.content.body,
        )

    async def _reissue(self, active: ActiveBatch):
        """Refresh every record of ``active`` and request it under a new handle."""
        for record in active.records.values():
            record.scheduled_for = active.batch.deliver_at
            record.title = active.content.title
            record.body = active.content.body
            record.handle = None
        active.handle = None
        await self._store_call(self.store.update_records, list(active.records.values()))
        await self._deliver(active)

    async def _deliver(self, active: ActiveBatch):
        when = max(active.batch.deliver_at, self._clock())
        try:
            handle = await self._request(active.content, when, active.batch.task_ids)
        except TransportError as e:
            await self._on_request_failure(active, e.reason)
            return

        active.handle = handle
        for record in active.records.values():
            record.handle = handle
        try:
            await self._store_call(self.store.update_records, list(active.records.values()))
        except PersistenceError:
            await self._cancel_handle(handle)
            self._unregister(active)
            await self._abandon_records(list(active.records.values()))
            raise

        self.logger.info(
            "Notification requested",
            batch_id=active.batch.batch_id,
            task_ids=active.batch.task_ids,
            deliver_at=when.isoformat(),
            handle=handle,
        )

    def _register(self, active: ActiveBatch):
        self._batches[active.batch.batch_id] = active
        for task_id in active.records:
            self._task_batches[task_id] = active.batch.batch_id

    def _unregister(self, active: ActiveBatch):
        batch_id = active.batch.batch_id
        if self._batches.get(batch_id) is active:
            del self._batches[batch_id]
        for task_id in active.records:
            if self._task_batches.get(task_id) == batch_id:
                del self._task_batches[task_id]

    async def _void_task(self, task_id: str):
        """Cancel the pending delivery of ``task_id``, re-issuing any batch mates."""
        batch_id = self._task_batches.get(task_id)
        if batch_id is None:
            await self._void_stored_records(task_id)
            return

        async with self._locks.hold(batch_key(batch_id)):
            active = self._batches.get(batch_id)
            if active is None or task_id not in active.records:
                self._task_batches.pop(task_id, None)
                return

            if active.handle:
                await self._cancel_handle(active.handle)
                active.handle = None

            record = active.records.pop(task_id)
            del self._task_batches[task_id]
            await self._store_call(self.store.delete_records, [record.notification_id])

            active.batch.members = [m for m in active.batch.members if m.config.task_id != task_id]
            if not active.batch.members:
                del self._batches[batch_id]
                return

            if active.kind == BATCH:
                active.content = build_task_content(active.batch.configs, batch_id)
            self.logger.debug("Re-issuing batch without cancelled task", task_id=task_id, batch_id=batch_id)
            await self._reissue(active)

    async def _void_stored_records(self, task_id: str):
        # Pending records this instance does not hold in memory, e.g. after a restart
        records = await self._store_call(self.store.list_records, task_id)
        pending = [record for record in records if record.is_pending()]
        if not pending:
            return
        for handle in {record.handle for record in pending if record.handle}:
            await self._cancel_handle(handle)
        await self._store_call(self.store.delete_records, [record.notification_id for record in pending])

    # Transport

    async def _request(self, content: NotificationContent, when: datetime, task_ids: List[str]) -> str:
        try:
            return await asyncio.wait_for(
                self.transport.request_delivery(content, when),
                timeout=self.settings.operation_timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise TransportError(FailureReason.TIMEOUT.value, "delivery request timed out")
        except TransportError:
            raise
        except Exception as e:
            self.logger.error("Unexpected transport error", task_ids=task_ids, error=str(e))
            raise TransportError("transport_error", str(e))

    async def _cancel_handle(self, handle: str):
        try:
            await asyncio.wait_for(
                self.transport.cancel_delivery(handle),
                timeout=self.settings.operation_timeout_seconds,
            )
        except (TransportError, asyncio.TimeoutError) as e:
            self.logger.warning("Failed to cancel delivery", handle=handle, error=str(e) or "timeout")

    async def _on_request_failure(self, active: ActiveBatch, reason: str):
        retry_count = max(record.retry_count for record in active.records.values())
        decision = self.retry.next_retry(reason, retry_count)
        if not decision.retry:
            await self._fail_batch(active, reason)
            return

        for record in active.records.values():
            record.retry_count += 1
            record.failure_reason = reason
        await self._store_call(self.store.update_records, list(active.records.values()))
        self.metrics.retry_attempt()
        self.logger.warning(
            "Delivery request failed, retrying",
            batch_id=active.batch.batch_id,
            reason=reason,
            attempt=decision.attempt,
            delay_seconds=decision.delay.total_seconds(),
        )
        self._spawn_retry(active.batch.batch_id, decision.delay)

    def _spawn_retry(self, batch_id: str, delay: timedelta):
        task = asyncio.create_task(self._retry_later(batch_id, delay))
        self._retry_tasks.add(task)
        task.add_done_callback(self._retry_tasks.discard)

    async def _retry_later(self, batch_id: str, delay: timedelta):
        await self._sleep(delay.total_seconds())
        if batch_id not in self._batches:
            return

        async with self._locks.hold(batch_key(batch_id)):
            active = self._batches.get(batch_id)
            if active is None or active.handle is not None:
                return
            try:
                await self._deliver(active)
            except SchedulingError as e:
                self.logger.error("Retry failed", batch_id=batch_id, error=str(e))

    async def _fail_batch(self, active: ActiveBatch, reason: Optional[str]):
        for record in active.records.values():
            if record.mark_failed(reason):
                self.metrics.notification_failed()
        await self._store_call(self.store.update_records, list(active.records.values()))
        self._unregister(active)
        self.logger.error(
            "Notification failed",
            batch_id=active.batch.batch_id,
            task_ids=list(active.records),
            reason=reason,
        )

        if active.kind == BATCH:
            for config in active.batch.configs:
                if config.is_recurring:
                    await self._skip_occurrence(config)

    # Delivery callbacks (task and batch locks held)

    async def _on_callback_progress(
        self,
        active: Optional[ActiveBatch],
        records: List[DeliveryRecord],
        status: str,
        at: datetime,
    ) -> List[TaskNotificationConfig]:
        follow_ups: List[TaskNotificationConfig] = []
        changed: List[DeliveryRecord] = []

        for record in records:
            was_pending = record.is_pending()
            if status == DeliveryStatus.SENT.value:
                applied = record.mark_sent(at)
            elif status == DeliveryStatus.DELIVERED.value:
                applied = record.mark_delivered(at)
            else:
                applied = record.mark_read(at)
            if not applied:
                continue
            changed.append(record)

            if was_pending:
                self.metrics.notification_sent()
            if status == DeliveryStatus.DELIVERED.value:
                self.metrics.notification_delivered()
            elif status == DeliveryStatus.READ.value:
                self.metrics.notification_read()

            if was_pending and not record.is_escalation:
                config = self._configs.get(record.task_id)
                if config is not None and config.is_recurring:
                    next_config = await self._record_send(config, at)
                    if next_config is not None:
                        follow_ups.append(next_config)

        if changed:
            await self._store_call(self.store.update_records, changed)
        if active is not None and not any(record.is_pending() for record in records):
            self._unregister(active)
        return follow_ups

    async def _on_callback_failure(
        self,
        active: Optional[ActiveBatch],
        records: List[DeliveryRecord],
        reason: Optional[str],
    ) -> List[TaskNotificationConfig]:
        records = [record for record in records if not record.is_terminal()]
        if not records:
            return []

        content = active.content if active is not None else self._content_from_records(records)
        while True:
            decision = self.retry.next_retry(reason, max(record.retry_count for record in records))
            if not decision.retry:
                break

            when = self._clock() + decision.delay
            self.metrics.retry_attempt()
            try:
                handle = await self._request(content, when, [record.task_id for record in records])
            except TransportError as e:
                for record in records:
                    record.schedule_retry(reason, when)
                reason = e.reason
                continue

            for record in records:
                record.schedule_retry(reason, when, handle)
            await self._store_call(self.store.update_records, records)
            self._track_retried(active, records, content, handle)
            self.logger.warning(
                "Delivery failed, retry requested",
                handle=handle,
                reason=reason,
                attempt=decision.attempt,
                deliver_at=when.isoformat(),
            )
            return []

        for record in records:
            if record.mark_failed(reason):
                self.metrics.notification_failed()
        await self._store_call(self.store.update_records, records)
        if active is not None:
            self._unregister(active)
        self.logger.error(
            "Notification failed",
            task_ids=[record.task_id for record in records],
            reason=reason,
        )

        follow_ups: List[TaskNotificationConfig] = []
        for record in records:
            config = self._configs.get(record.task_id)
            if record.is_escalation or config is None or not config.is_recurring:
                continue
            entry = await self._skip_occurrence(config)
            if entry is not None and entry.is_valid() and not entry.has_reached_max_notifications():
                follow_ups.append(config.with_due_date(entry.next_notification))
        return follow_ups

    def _track_retried(
        self,
        active: Optional[ActiveBatch],
        records: List[DeliveryRecord],
        content: NotificationContent,
        handle: str,
    ):
        """Make a retried delivery cancellable again."""
        if active is not None:
            active.handle = handle
            self._register(active)
            return

        configs = [self._configs.get(record.task_id) for record in records]
        if any(config is None for config in configs):
            return
        first = records[0]
        batch = Batch(
            plant_id=first.plant_id,
            plant_name=configs[0].plant_name,
            user_id=first.user_id,
            members=[PendingNotification(config=config, deliver_at=first.scheduled_for) for config in configs],
            batch_id=first.batch_id,
        )
        retried = ActiveBatch(
            batch=batch,
            user_id=first.user_id,
            kind=ESCALATION if first.is_escalation else BATCH,
            content=content,
            records={record.task_id: record for record in records},
            handle=handle,
        )
        self._register(retried)

    @staticmethod
    def _content_from_records(records: List[DeliveryRecord]) -> NotificationContent:
        first = records[0]
        return NotificationContent(
            title=first.title,
            body=first.body,
            category_id=first.category_id,
            priority="high" if first.is_escalation else "normal",
            data={
                "batchId": first.batch_id,
                "taskIds": [record.task_id for record in records],
                "plantIds": sorted({record.plant_id for record in records}),
            },
        )

    async def _schedule_follow_up(self, config: TaskNotificationConfig, at: datetime):
        try:
            batch_id = await self._schedule_locked(config)
        except SchedulingError as e:
            self.metrics.scheduling_error()
            self.logger.error("Failed to schedule next occurrence", task_id=config.task_id, error=str(e))
            return
        self.logger.info(
            "Scheduled next occurrence",
            task_id=config.task_id,
            due_date=config.due_date.isoformat(),
            batch_id=batch_id,
            after=at.isoformat(),
        )

    # Escalations

    async def _deliver_escalation(self, task: TaskNotificationConfig, result: EscalationResult) -> bool:
        if self._locks.is_locked(task.task_id):
            return False

        async with self._locks.hold(task.task_id):
            user_id = task.user_id or self.settings.default_user_id
            prefs = await self.cache.get_preferences(user_id)
            if not prefs.enabled:
                result.skipped_reason = "disabled"
                return False

            now = self._clock()
            deliver_at = now
            if result.severity != OverdueSeverity.CRITICAL:
                profile = await self.cache.get_profile(user_id)
                local = to_local(now, profile.timezone)
                allowed = self.gate.next_allowed_instant(local, prefs.quiet_hours_start, prefs.quiet_hours_end)
                deliver_at = max(from_local(allowed, profile.timezone), now)

            # An escalation supersedes the pending reminder
            await self._void_task(task.task_id)

            content = build_escalation_content(task, result.severity.value, result.days_overdue)
            batch = Batch(
                plant_id=task.plant_id,
                plant_name=task.plant_name,
                user_id=user_id,
                members=[PendingNotification(config=task, deliver_at=deliver_at)],
            )
            active = await self._issue(batch, user_id, ESCALATION, content)

            result.deliver_at = deliver_at
            result.notification_id = active.records[task.task_id].notification_id
            return True

    # Recurrence entries

    async def _ensure_entry(
        self,
        config: TaskNotificationConfig,
        user_id: str,
        prefs: NotificationPreferences,
        reset_next: bool,
    ) -> ScheduleEntry:
        """Create, revive or update the recurrence entry of a recurring task."""
        interval = config.interval_hours or 24
        settings = NotificationSettings(
            quiet_hours_start=prefs.quiet_hours_start,
            quiet_hours_end=prefs.quiet_hours_end,
            advance_notice_minutes=int(prefs.advance_for(config.priority).total_seconds() // 60),
            priority="high" if config.priority in (TaskPriority.HIGH, TaskPriority.CRITICAL) else "normal",
        )

        for _ in range(MAX_CONFLICT_RETRIES):
            entry = await self._store_call(self.store.get_entry, config.plant_id, config.task_type.value)
            try:
                if entry is None:
                    entry = ScheduleEntry(
                        plant_id=config.plant_id,
                        task_type=config.task_type.value,
                        task_id=config.task_id,
                        user_id=user_id,
                        next_notification=config.due_date,
                        interval_hours=interval,
                        max_notifications=config.max_notifications,
                        settings_json=settings.model_dump(),
                    )
                    return await self._store_call(self.store.create_entry, entry)

                expected = entry.version
                if entry.is_deleted:
                    entry.revive(config.task_id, user_id, config.due_date)
                else:
                    if not entry.is_active and not entry.has_reached_max_notifications():
                        entry.activate()
                    if reset_next or entry.task_id != config.task_id:
                        entry.next_notification = config.due_date
                    entry.task_id = config.task_id
                    entry.user_id = user_id

                entry.interval_hours = interval
                entry.max_notifications = config.max_notifications
                entry.update_settings(**settings.model_dump())
                return await self._store_call(self.store.update_entry, entry, expected)
            except SchedulingConflictError:
                self.logger.debug("Schedule changed concurrently, re-reading", task_id=config.task_id)

        raise PersistenceError("Schedule kept changing concurrently", config.task_id)

    async def _mutate_entry(
        self,
        load: Callable[[], Awaitable[Optional[ScheduleEntry]]],
        mutate: Callable[[ScheduleEntry], Any],
    ) -> Optional[ScheduleEntry]:
        """Re-read and re-apply ``mutate`` until the conditional update wins."""
        for _ in range(MAX_CONFLICT_RETRIES):
            entry = await load()
            if entry is None:
                return None
            expected = entry.version
            mutate(entry)
            try:
                return await self._store_call(self.store.update_entry, entry, expected)
            except SchedulingConflictError:
                self.logger.debug("Schedule changed concurrently, re-reading", schedule_id=entry.id)

        raise PersistenceError("Schedule kept changing concurrently")

    async def _mutate_entry_for_task(self, task_id: str, mutate) -> Optional[ScheduleEntry]:
        return await self._mutate_entry(
            lambda: self._store_call(self.store.get_entry_for_task, task_id),
            mutate,
        )

    async def _mutate_entry_for_config(self, config: TaskNotificationConfig, mutate) -> Optional[ScheduleEntry]:
        return await self._mutate_entry(
            lambda: self._store_call(self.store.get_entry, config.plant_id, config.task_type.value),
            mutate,
        )

    async def _record_send(self, config: TaskNotificationConfig, at: datetime) -> Optional[TaskNotificationConfig]:
        """Count a sent occurrence; returns the next occurrence's config while the rule is live."""
        profile = await self.cache.get_profile(config.user_id or self.settings.default_user_id)
        entry = await self._mutate_entry_for_config(
            config, lambda entry: entry.record_send(at, profile.timezone)
        )
        if entry is None or not entry.is_valid() or entry.has_reached_max_notifications():
            return None
        return config.with_due_date(entry.next_notification)

    async def _skip_occurrence(self, config: TaskNotificationConfig) -> Optional[ScheduleEntry]:
        profile = await self.cache.get_profile(config.user_id or self.settings.default_user_id)
        return await self._mutate_entry_for_config(config, lambda entry: entry.skip(profile.timezone))

    # Store access

    async def _with_timeout(self, awaitable: Awaitable[Any]) -> Any:
        return await asyncio.wait_for(awaitable, timeout=self.settings.operation_timeout_seconds)

    async def _store_call(self, method: Callable[..., Awaitable[Any]], *args) -> Any:
        """Call a store method with a timeout, retrying persistence failures with backoff."""
        attempts = self.settings.store_retry_attempts
        for attempt in range(attempts):
            try:
                return await self._with_timeout(method(*args))
            except (PersistenceError, asyncio.TimeoutError) as e:
                if attempt == attempts - 1:
                    if isinstance(e, PersistenceError):
                        raise
                    raise PersistenceError(f"{method.__name__} timed out")
                self.logger.warning(
                    "Store call failed, retrying",
                    operation=method.__name__,
                    attempt=attempt + 1,
                    error=str(e) or "timeout",
                )
                await self._sleep(STORE_BACKOFF_SECONDS * 2 ** attempt)
