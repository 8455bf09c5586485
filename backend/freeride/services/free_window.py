import math
from dataclasses import dataclass
from datetime import datetime, timedelta

from freeride.core.clock import as_utc, to_operating_time

SECONDS_PER_HOUR = 3600


@dataclass
class OvertimeResult:
    window_end: datetime | None
    overtime_hours: int
    overtime_cost: float


def window_contains(start_hour: int | None, end_hour: int | None, ride_start: datetime) -> bool:
    """True when the ride's start hour falls in [start_hour, end_hour). No window matches everything."""
    if start_hour is None and end_hour is None:
        return True
    hour = to_operating_time(ride_start).hour
    low = 0 if start_hour is None else start_hour
    high = 24 if end_hour is None else end_hour
    return low <= hour < high


def free_window_end(end_hour: int, ride_start: datetime) -> datetime:
    local_start = to_operating_time(ride_start)
    window_end = local_start.replace(hour=end_hour, minute=0, second=0, microsecond=0)
    if window_end <= local_start:
        window_end += timedelta(days=1)
    return window_end


def compute_overtime(end_hour: int | None, ride_start: datetime, ride_end: datetime, hourly_rate: float) -> OvertimeResult:
    if end_hour is None:
        return OvertimeResult(window_end=None, overtime_hours=0, overtime_cost=0)
    window_end = free_window_end(end_hour, ride_start)
    excess = (as_utc(to_operating_time(ride_end)) - as_utc(window_end)).total_seconds()
    if excess <= 0:
        return OvertimeResult(window_end=window_end, overtime_hours=0, overtime_cost=0)
    hours = math.ceil(excess / SECONDS_PER_HOUR)
    return OvertimeResult(window_end=window_end, overtime_hours=hours, overtime_cost=hours * hourly_rate)
