"""Quiet hours evaluation for partner notifications."""
import logging
import re
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from processor.models import NotificationSettings

logger = logging.getLogger(__name__)

MINUTES_PER_DAY = 24 * 60
TIME_PATTERN = re.compile(r'(\d+):(\d+)', re.ASCII)


def parse_minute_of_day(value: Optional[str]) -> Optional[int]:
    """
    Parse an "HH:MM" string into minutes after midnight.

    Args:
        value: Time string such as "22:00" or "7:30"

    Returns:
        Minute of day in [0, 1440) or None if the value is missing or invalid
    """
    if not value or not isinstance(value, str):
        return None

    match = TIME_PATTERN.fullmatch(value.strip())
    if match is None:
        return None

    hour = int(match.group(1))
    minute = int(match.group(2))
    if not (0 <= hour < 24 and 0 <= minute < 60):
        return None

    return hour * 60 + minute


def is_suppressed(settings: Optional[NotificationSettings], now: datetime) -> bool:
    """
    Decide whether notifications are currently inside the quiet hours window.

    Only the wall-clock hour and minute of `now` are read, so callers pass
    `now` already converted to the zone the window is declared in (see
    `local_now`). A window with equal start and end is empty.

    Args:
        settings: Notification preferences, may be None
        now: Current time on the relevant wall clock

    Returns:
        True if a notification must be suppressed
    """
    if settings is None or not settings.quiet_hours_enabled:
        return False

    start = parse_minute_of_day(settings.quiet_hours_start)
    end = parse_minute_of_day(settings.quiet_hours_end)
    if start is None or end is None:
        return False

    current = now.hour * 60 + now.minute

    # Window spans midnight, e.g. 22:00 - 07:00
    if start > end:
        return current >= start or current < end

    return start <= current < end


def resolve_zone(name: Optional[str], default: str = 'UTC'):
    """Return the named time zone, falling back to `default` when unknown."""
    for candidate in (name, default):
        if not candidate:
            continue
        try:
            return ZoneInfo(candidate)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning(f"Unknown time zone '{candidate}'")
    return timezone.utc


def local_now(
    settings: Optional[NotificationSettings],
    now: datetime,
    default_zone: str = 'UTC'
) -> datetime:
    """Convert `now` to the wall clock the quiet hours window refers to."""
    zone_name = settings.time_zone if settings is not None else None
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(resolve_zone(zone_name, default_zone))
