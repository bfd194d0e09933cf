"""Delivery record model for SQLModel."""
import logging
import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import Column, DateTime
from sqlmodel import Field, SQLModel

from care_notifier.utils.time import utcnow

logger = logging.getLogger(__name__)


class DeliveryStatus(str, Enum):
    SCHEDULED = "scheduled"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({
    DeliveryStatus.DELIVERED.value,
    DeliveryStatus.READ.value,
    DeliveryStatus.FAILED.value,
})


class DeliveryRecord(SQLModel, table=True):
    """One notification attempt for one task."""

    __tablename__ = "delivery_records"

    notification_id: str = Field(default_factory=lambda: uuid.uuid4().hex, primary_key=True)
    task_id: str = Field(index=True, max_length=100)
    plant_id: str = Field(max_length=100)
    user_id: str = Field(max_length=100)
    batch_id: Optional[str] = Field(default=None, index=True)
    handle: Optional[str] = Field(default=None, index=True)
    status: str = Field(default=DeliveryStatus.SCHEDULED.value, max_length=20)
    scheduled_for: datetime = Field(sa_column=Column(DateTime(timezone=False), nullable=False))
    sent_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=False)))
    delivered_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=False)))
    read_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=False)))
    retry_count: int = Field(default=0)
    failure_reason: Optional[str] = Field(default=None, max_length=50)
    category_id: str = Field(default="plant_care", max_length=30)
    is_escalation: bool = Field(default=False)
    title: str = Field(default="")
    body: str = Field(default="")
    created_at: datetime = Field(default_factory=utcnow, sa_column=Column(DateTime(timezone=False), nullable=False))
    updated_at: datetime = Field(default_factory=utcnow, sa_column=Column(DateTime(timezone=False), nullable=False))

    def is_pending(self) -> bool:
        return self.status == DeliveryStatus.SCHEDULED.value

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def _ignore(self, event: str) -> bool:
        logger.info(
            f"Ignoring out-of-order '{event}' for notification {self.notification_id} in state {self.status}"
        )
        return False

    def mark_sent(self, at: Optional[datetime] = None) -> bool:
        if self.status != DeliveryStatus.SCHEDULED.value:
            return self._ignore("sent")
        self.status = DeliveryStatus.SENT.value
        self.sent_at = at or utcnow()
        self.updated_at = utcnow()
        return True

    def mark_delivered(self, at: Optional[datetime] = None) -> bool:
        if self.status not in (DeliveryStatus.SCHEDULED.value, DeliveryStatus.SENT.value):
            return self._ignore("delivered")
        at = at or utcnow()
        self.sent_at = self.sent_at or at
        self.delivered_at = at
        self.status = DeliveryStatus.DELIVERED.value
        self.updated_at = utcnow()
        return True

    def mark_read(self, at: Optional[datetime] = None) -> bool:
        if self.status in (DeliveryStatus.READ.value, DeliveryStatus.FAILED.value):
            return self._ignore("read")
        at = at or utcnow()
        self.sent_at = self.sent_at or at
        self.delivered_at = self.delivered_at or at
        self.read_at = at
        self.status = DeliveryStatus.READ.value
        self.updated_at = utcnow()
        return True

    def mark_failed(self, reason: Optional[str]) -> bool:
        if self.is_terminal():
            return self._ignore("failed")
        self.status = DeliveryStatus.FAILED.value
        self.failure_reason = reason
        self.updated_at = utcnow()
        return True

    def schedule_retry(self, reason: Optional[str], at: datetime, handle: Optional[str] = None) -> bool:
        """Put a failed-but-retryable attempt back in the queue."""
        if self.is_terminal():
            return self._ignore("retry")
        self.status = DeliveryStatus.SCHEDULED.value
        self.failure_reason = reason
        self.retry_count += 1
        self.scheduled_for = at
        self.sent_at = None
        if handle is not None:
            self.handle = handle
        self.updated_at = utcnow()
        return True
