"""SQL-backed schedule store built on SQLModel sessions."""
import asyncio
import logging
import threading
from typing import Any, Callable, List, Optional, Sequence

from sqlalchemy import delete, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, col, select

from care_notifier.errors import PersistenceError, SchedulingConflictError
from care_notifier.models.delivery_record import DeliveryRecord
from care_notifier.models.schedule_entry import ScheduleEntry
from care_notifier.stores.base import ScheduleStore
from care_notifier.utils.time import utcnow

logger = logging.getLogger(__name__)


class SQLScheduleStore(ScheduleStore):
    """
    Schedule store for any SQLAlchemy database URL.

    Every call runs in its own short session on a worker thread, so a slow
    database never blocks the event loop and callers can time calls out.
    Returned models are detached and safe to mutate before handing them
    back to ``update_*``.
    """

    def __init__(self, engine: Engine):
        self.engine = engine
        # A StaticPool hands every thread the same connection
        self._serial = threading.Lock() if isinstance(engine.pool, StaticPool) else None

    def _session(self) -> Session:
        return Session(self.engine, expire_on_commit=False)

    async def _run(self, work: Callable[..., Any], *args) -> Any:
        return await asyncio.to_thread(self._call, work, *args)

    def _call(self, work: Callable[..., Any], *args) -> Any:
        if self._serial is None:
            return work(*args)
        with self._serial:
            return work(*args)

    # Schedule entries

    async def get_entry(self, plant_id: str, task_type: str) -> Optional[ScheduleEntry]:
        return await self._run(self._get_entry, plant_id, task_type)

    def _get_entry(self, plant_id: str, task_type: str) -> Optional[ScheduleEntry]:
        try:
            with self._session() as session:
                statement = select(ScheduleEntry).where(
                    ScheduleEntry.plant_id == plant_id,
                    ScheduleEntry.task_type == task_type,
                )
                return session.exec(statement).first()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to load schedule for plant {plant_id}: {str(e)}")

    async def get_entry_for_task(self, task_id: str) -> Optional[ScheduleEntry]:
        return await self._run(self._get_entry_for_task, task_id)

    def _get_entry_for_task(self, task_id: str) -> Optional[ScheduleEntry]:
        try:
            with self._session() as session:
                statement = (
                    select(ScheduleEntry)
                    .where(ScheduleEntry.task_id == task_id)
                    .order_by(col(ScheduleEntry.updated_at).desc())
                )
                return session.exec(statement).first()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to load schedule: {str(e)}", task_id)

    async def create_entry(self, entry: ScheduleEntry) -> ScheduleEntry:
        return await self._run(self._create_entry, entry)

    def _create_entry(self, entry: ScheduleEntry) -> ScheduleEntry:
        try:
            with self._session() as session:
                session.add(entry)
                session.commit()
                session.refresh(entry)
                logger.info(f"Created schedule {entry.id} for {entry.plant_id}/{entry.task_type}")
                return entry
        except IntegrityError:
            raise SchedulingConflictError(
                f"Schedule for {entry.plant_id}/{entry.task_type} already exists", entry.task_id
            )
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to create schedule: {str(e)}", entry.task_id)

    async def update_entry(self, entry: ScheduleEntry, expected_version: int) -> ScheduleEntry:
        return await self._run(self._update_entry, entry, expected_version)

    def _update_entry(self, entry: ScheduleEntry, expected_version: int) -> ScheduleEntry:
        entry.updated_at = utcnow()
        values = entry.model_dump(exclude={"id", "version"})
        statement = (
            update(ScheduleEntry)
            .where(
                ScheduleEntry.id == entry.id,
                ScheduleEntry.version == expected_version,
            )
            .values(version=expected_version + 1, **values)
        )

        try:
            with self.engine.begin() as connection:
                result = connection.execute(statement)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to update schedule {entry.id}: {str(e)}", entry.task_id)

        if result.rowcount == 0:
            raise SchedulingConflictError(
                f"Schedule {entry.id} changed since version {expected_version}", entry.task_id
            )

        entry.version = expected_version + 1
        return entry

    async def list_entries(self, include_deleted: bool = False) -> List[ScheduleEntry]:
        return await self._run(self._list_entries, include_deleted)

    def _list_entries(self, include_deleted: bool) -> List[ScheduleEntry]:
        try:
            with self._session() as session:
                statement = select(ScheduleEntry)
                if not include_deleted:
                    statement = statement.where(ScheduleEntry.is_deleted == False)  # noqa: E712
                return list(session.exec(statement).all())
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to list schedules: {str(e)}")

    # Delivery records

    async def add_records(self, records: Sequence[DeliveryRecord]) -> None:
        if records:
            await self._run(self._merge_records, list(records), "store")

    async def update_records(self, records: Sequence[DeliveryRecord]) -> None:
        if records:
            await self._run(self._merge_records, list(records), "update")

    def _merge_records(self, records: List[DeliveryRecord], action: str) -> None:
        # merge keeps a timed-out insert safe to retry
        try:
            with self._session() as session:
                for record in records:
                    session.merge(record)
                session.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to {action} delivery records: {str(e)}", records[0].task_id)

    async def get_record(self, notification_id: str) -> Optional[DeliveryRecord]:
        return await self._run(self._get_record, notification_id)

    def _get_record(self, notification_id: str) -> Optional[DeliveryRecord]:
        try:
            with self._session() as session:
                return session.get(DeliveryRecord, notification_id)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to load delivery record {notification_id}: {str(e)}")

    async def list_records(self, task_id: str) -> List[DeliveryRecord]:
        return await self._run(self._list_records, task_id)

    def _list_records(self, task_id: str) -> List[DeliveryRecord]:
        try:
            with self._session() as session:
                statement = (
                    select(DeliveryRecord)
                    .where(DeliveryRecord.task_id == task_id)
                    .order_by(col(DeliveryRecord.created_at))
                )
                return list(session.exec(statement).all())
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to list delivery records: {str(e)}", task_id)

    async def list_records_by_handle(self, handle: str) -> List[DeliveryRecord]:
        return await self._run(self._list_records_by_handle, handle)

    def _list_records_by_handle(self, handle: str) -> List[DeliveryRecord]:
        try:
            with self._session() as session:
                statement = select(DeliveryRecord).where(DeliveryRecord.handle == handle)
                return list(session.exec(statement).all())
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to list delivery records for handle {handle}: {str(e)}")

    async def delete_records(self, notification_ids: Sequence[str]) -> None:
        if notification_ids:
            await self._run(self._delete_records, list(notification_ids))

    def _delete_records(self, notification_ids: List[str]) -> None:
        try:
            statement = delete(DeliveryRecord).where(
                col(DeliveryRecord.notification_id).in_(notification_ids)
            )
            with self.engine.begin() as connection:
                connection.execute(statement)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to delete delivery records: {str(e)}")
