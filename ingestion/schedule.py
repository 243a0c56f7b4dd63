"""
Next-run calculation for recurring sync schedules.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Union
from zoneinfo import ZoneInfo

from schemas.api import SyncSchedule, WEEKDAYS


def _first_of_next_month(value: datetime) -> datetime:
    if value.month == 12:
        return value.replace(year=value.year + 1, month=1, day=1)
    return value.replace(month=value.month + 1, day=1)


def _advance_to_weekday(value: datetime, allowed: list) -> datetime:
    for offset in range(8):
        candidate = value + timedelta(days=offset)
        if candidate.weekday() in allowed:
            return candidate
    return value


def calculate_next_sync_time(
    schedule: Union[SyncSchedule, Dict[str, Any]],
    now: Optional[datetime] = None
) -> datetime:
    """
    Compute the next run after ``now`` for a schedule.

    HOURLY runs at the configured minute of every hour. DAILY runs at HH:MM,
    optionally only on the listed weekdays. WEEKLY runs at HH:MM on the first
    listed weekday, or every seven days when none is listed. MONTHLY runs at
    HH:MM on the first day of the month.

    Returns:
        Timezone-aware datetime in UTC
    """
    if not isinstance(schedule, SyncSchedule):
        schedule = SyncSchedule(**schedule)

    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    zone = ZoneInfo(schedule.timezone)
    local_now = now.astimezone(zone)
    hour, minute = (int(p) for p in schedule.time.split(":"))
    allowed_days = [WEEKDAYS.index(d) for d in schedule.days_of_week]

    if schedule.interval == "HOURLY":
        next_run = local_now.replace(minute=minute, second=0, microsecond=0)
        if next_run <= local_now:
            next_run += timedelta(hours=1)
        return next_run.astimezone(timezone.utc)

    next_run = local_now.replace(hour=hour, minute=minute, second=0, microsecond=0)

    if schedule.interval == "MONTHLY":
        next_run = next_run.replace(day=1)
        if next_run <= local_now:
            next_run = _first_of_next_month(next_run)
        return next_run.astimezone(timezone.utc)

    if schedule.interval == "WEEKLY" and not allowed_days:
        if next_run <= local_now:
            next_run += timedelta(weeks=1)
        return next_run.astimezone(timezone.utc)

    if next_run <= local_now:
        next_run += timedelta(days=1)

    if schedule.interval == "WEEKLY":
        next_run = _advance_to_weekday(next_run, allowed_days[:1])
    elif allowed_days:
        next_run = _advance_to_weekday(next_run, allowed_days)

    return next_run.astimezone(timezone.utc)
