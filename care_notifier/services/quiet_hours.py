"""Quiet Hours Gate.

Keeps notifications out of the user's do-not-disturb window.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

logger = logging.getLogger(__name__)

MINUTES_PER_DAY = 24 * 60
QUIET_HOURS_STEP = timedelta(minutes=30)


def parse_time_of_day(value: Optional[str]) -> Optional[int]:
    """
    Parse an ``HH:MM`` string into minutes since midnight.

    Args:
        value: Time string such as "22:00"

    Returns:
        Minute of day, or None when the string is missing or malformed
    """
    if not isinstance(value, str):
        return None

    parts = value.strip().split(":")
    if len(parts) != 2:
        return None

    try:
        hour = int(parts[0], 10)
        minute = int(parts[1], 10)
    except ValueError:
        return None

    if hour < 0 or hour > 23 or minute < 0 or minute > 59:
        return None

    return hour * 60 + minute


@dataclass(frozen=True)
class QuietHoursWindow:
    """A parsed quiet-hours window; both ends are inclusive."""
    start_minute: int
    end_minute: int

    @property
    def crosses_midnight(self) -> bool:
        return self.start_minute > self.end_minute

    def contains(self, instant: datetime) -> bool:
        current = instant.hour * 60 + instant.minute
        if not self.crosses_midnight:
            return self.start_minute <= current <= self.end_minute
        return current >= self.start_minute or current <= self.end_minute


class QuietHoursGate:
    """Moves candidate instants out of quiet hours."""

    def __init__(self, step: timedelta = QUIET_HOURS_STEP):
        self.step = step
        # Upper bound on steps: one full day
        self.max_steps = max(1, int(timedelta(days=1) / step))

    @staticmethod
    def window(quiet_start: Optional[str], quiet_end: Optional[str]) -> Optional[QuietHoursWindow]:
        """
        Build the quiet-hours window.

        Returns None (quiet hours disabled) when either bound is missing or
        malformed, so a bad preference never suppresses a notification.
        """
        if quiet_start is None or quiet_end is None:
            return None

        start = parse_time_of_day(quiet_start)
        end = parse_time_of_day(quiet_end)
        if start is None or end is None:
            logger.warning(
                f"Malformed quiet hours '{quiet_start}'-'{quiet_end}', quiet hours disabled"
            )
            return None

        return QuietHoursWindow(start_minute=start, end_minute=end)

    def is_quiet(self, candidate: datetime, quiet_start: Optional[str], quiet_end: Optional[str]) -> bool:
        window = self.window(quiet_start, quiet_end)
        return window is not None and window.contains(candidate)

    def next_allowed_instant(
        self,
        candidate: datetime,
        quiet_start: Optional[str],
        quiet_end: Optional[str],
    ) -> datetime:
        """
        Return the next valid notification time at or after ``candidate``.

        Args:
            candidate: Wall-clock instant in the user's time zone
            quiet_start: Window start, "HH:MM"
            quiet_end: Window end, "HH:MM"

        Returns:
            ``candidate`` itself when it is outside quiet hours, otherwise the
            first 30-minute step that is
        """
        window = self.window(quiet_start, quiet_end)
        if window is None or not window.contains(candidate):
            return candidate

        next_time = candidate
        for _ in range(self.max_steps):
            next_time = next_time + self.step
            if not window.contains(next_time):
                return next_time

        logger.warning(
            f"Quiet hours '{quiet_start}'-'{quiet_end}' cover the whole day, ignoring them"
        )
        return candidate
