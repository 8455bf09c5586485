from datetime import datetime, timezone
from zoneinfo import ZoneInfo

from freeride.core.config import settings


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    # Some drivers (SQLite) hand back naive values for timezone-aware columns; they are stored as UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def operating_zone() -> ZoneInfo:
    return ZoneInfo(settings.FREE_DAYS_TIMEZONE)


def to_operating_time(value: datetime) -> datetime:
    """Express a ride timestamp in the operating zone; naive input is already local."""
    zone = operating_zone()
    if value.tzinfo is None:
        return value.replace(tzinfo=zone)
    return value.astimezone(zone)


def ride_time_utc(value: datetime) -> datetime:
    return as_utc(to_operating_time(value))
