"""Time helpers. The engine stores and compares naive UTC datetimes."""
import logging
from datetime import datetime, timezone

import pytz

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Normalize an aware datetime to naive UTC; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(pytz.utc).replace(tzinfo=None)


def resolve_timezone(name: str):
    """Return the pytz zone for ``name``, falling back to UTC for unknown names."""
    try:
        return pytz.timezone(name or "UTC")
    except pytz.UnknownTimeZoneError:
        logger.warning(f"Unknown timezone '{name}', falling back to UTC")
        return pytz.utc


def to_local(value: datetime, tz_name: str) -> datetime:
    """Convert a naive UTC datetime into naive wall-clock time in ``tz_name``."""
    zone = resolve_timezone(tz_name)
    return pytz.utc.localize(to_naive_utc(value)).astimezone(zone).replace(tzinfo=None)


def from_local(value: datetime, tz_name: str) -> datetime:
    """Convert naive wall-clock time in ``tz_name`` back into naive UTC."""
    zone = resolve_timezone(tz_name)
    # is_dst=False resolves DST gaps and overlaps instead of raising
    localized = zone.localize(value, is_dst=False)
    return localized.astimezone(pytz.utc).replace(tzinfo=None)
