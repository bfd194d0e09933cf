"""Batch Assembler.

Groups pending notifications for the same plant into one composite
notification so a grower is not pinged once per task.
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence

from care_notifier.schemas.notification import TaskNotificationConfig

DEFAULT_BATCH_WINDOW = timedelta(minutes=60)
DEFAULT_MAX_BATCH_SIZE = 5


@dataclass(frozen=True)
class PendingNotification:
    """A task config paired with its candidate delivery instant."""
    config: TaskNotificationConfig
    deliver_at: datetime

    @staticmethod
    def from_config(config: TaskNotificationConfig) -> "PendingNotification":
        return PendingNotification(config=config, deliver_at=config.due_date)


@dataclass
class Batch:
    """Tasks of one plant that will be delivered as one notification."""
    plant_id: str
    plant_name: str
    user_id: Optional[str]
    members: List[PendingNotification]
    batch_id: str = field(default_factory=lambda: f"batch_{uuid.uuid4().hex[:12]}")

    @property
    def deliver_at(self) -> datetime:
        return self.members[0].deliver_at

    @property
    def task_ids(self) -> List[str]:
        return [member.config.task_id for member in self.members]

    @property
    def configs(self) -> List[TaskNotificationConfig]:
        return [member.config for member in self.members]

    @property
    def size(self) -> int:
        return len(self.members)

    @property
    def is_composite(self) -> bool:
        return self.size >= 2


class BatchAssembler:
    """Pure, side-effect free grouping of pending notifications."""

    def assemble(
        self,
        pending: Sequence[PendingNotification],
        window: timedelta = DEFAULT_BATCH_WINDOW,
        max_batch_size: int = DEFAULT_MAX_BATCH_SIZE,
        batching_enabled: bool = True,
    ) -> List[Batch]:
        """
        Group pending notifications into batches.

        Args:
            pending: Configs with their candidate delivery instants
            window: Members must fall within this span of the batch's first member
            max_batch_size: Maximum members per batch
            batching_enabled: When False every config is its own batch

        Returns:
            Batches ordered by delivery instant
        """
        max_batch_size = max(1, max_batch_size)
        by_plant: Dict[str, List[PendingNotification]] = {}
        for item in pending:
            by_plant.setdefault(item.config.plant_id, []).append(item)

        batches: List[Batch] = []
        for plant_id, items in by_plant.items():
            ordered = sorted(items, key=lambda item: (item.deliver_at, item.config.task_id))
            current: List[PendingNotification] = []

            for item in ordered:
                fits = (
                    batching_enabled
                    and current
                    and len(current) < max_batch_size
                    and item.deliver_at - current[0].deliver_at <= window
                )
                if current and not fits:
                    batches.append(self._close(plant_id, current))
                    current = []
                current.append(item)

            if current:
                batches.append(self._close(plant_id, current))

        batches.sort(key=lambda batch: (batch.deliver_at, batch.plant_id))
        return batches

    @staticmethod
    def _close(plant_id: str, members: List[PendingNotification]) -> Batch:
        first = members[0].config
        return Batch(
            plant_id=plant_id,
            plant_name=first.plant_name,
            user_id=first.user_id,
            members=list(members),
        )
