"""Activity Timing Optimizer.

Nudges notification instants toward the hours a user is usually active.
"""
import logging
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from care_notifier.schemas.notification import TaskNotificationConfig, UserActivityProfile
from care_notifier.services.quiet_hours import QuietHoursGate
from care_notifier.utils.time import from_local, to_local, to_naive_utc

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE_HOURS = 3


class ActivityTimingOptimizer:
    """Shift instants forward to the nearest active hour within a tolerance."""

    def __init__(self, gate: Optional[QuietHoursGate] = None, tolerance_hours: int = DEFAULT_TOLERANCE_HOURS):
        self.gate = gate or QuietHoursGate()
        self.tolerance_hours = tolerance_hours

    def hours_to_active(self, hour: int, active_hours: Sequence[int]) -> Optional[int]:
        """Forward distance in hours from ``hour`` to the nearest active hour."""
        distances = [(active % 24 - hour) % 24 for active in active_hours if 0 <= active <= 23]
        if not distances:
            return None
        return min(distances)

    def shift_local(self, local_instant: datetime, active_hours: Sequence[int]) -> datetime:
        """Apply the active-hour shift to a wall-clock instant."""
        distance = self.hours_to_active(local_instant.hour, active_hours)
        if distance is None or distance == 0 or distance > self.tolerance_hours:
            return local_instant

        top_of_hour = local_instant.replace(minute=0, second=0, microsecond=0)
        return top_of_hour + timedelta(hours=distance)

    def adjust(
        self,
        instant: datetime,
        profile: UserActivityProfile,
        quiet_start: Optional[str] = None,
        quiet_end: Optional[str] = None,
    ) -> datetime:
        """
        Optimize a single naive UTC instant for ``profile``.

        The shifted instant is accepted only if it clears the quiet-hours
        gate; otherwise the original instant is gated instead.
        """
        instant = to_naive_utc(instant)
        local = to_local(instant, profile.timezone)
        shifted = self.shift_local(local, profile.most_active_hours)

        if shifted != local and self.gate.is_quiet(shifted, quiet_start, quiet_end):
            logger.debug(f"Active-hour shift to {shifted} lands in quiet hours, keeping {local}")
            shifted = local

        gated = self.gate.next_allowed_instant(shifted, quiet_start, quiet_end)
        result = from_local(gated, profile.timezone)
        # Wall-clock round trips can move an instant back across a DST overlap
        return max(result, instant)

    def optimize(
        self,
        candidates: Sequence[TaskNotificationConfig],
        profile: UserActivityProfile,
        quiet_start: Optional[str] = None,
        quiet_end: Optional[str] = None,
    ) -> List[datetime]:
        """
        Optimize delivery instants for a list of task configs.

        Args:
            candidates: Task configs; their due dates are the starting instants
            profile: The user's activity profile
            quiet_start: Quiet-hours start, "HH:MM"
            quiet_end: Quiet-hours end, "HH:MM"

        Returns:
            One instant per config, in input order. A config that cannot be
            optimized keeps its original due date.
        """
        optimized: List[datetime] = []
        for config in candidates:
            try:
                optimized.append(self.adjust(config.due_date, profile, quiet_start, quiet_end))
            except Exception as e:
                logger.error(f"Timing optimization failed for task {config.task_id}: {str(e)}")
                optimized.append(config.due_date)
        return optimized
