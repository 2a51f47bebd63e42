"""
Schedule evaluation for scheduled tasks.

Three schedule types are supported:
- cron: standard 5-field expression evaluated in the configured time zone
- interval: a positive integer number of milliseconds
- once: an ISO-8601 timestamp (naive values are read in the configured zone)

All returned instants are timezone-aware UTC datetimes.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from hearth.errors import ScheduleParseError


class ScheduleType(str, Enum):
    CRON = "cron"
    INTERVAL = "interval"
    ONCE = "once"


def to_iso(dt: datetime) -> str:
    """Canonical storage form: UTC with millisecond precision."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds")


def parse_iso(value: str) -> datetime:
    """Parse a stored timestamp back into an aware UTC datetime."""
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _zone(tz_name: str) -> ZoneInfo:
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ScheduleParseError(f"Unknown time zone: {tz_name}") from e


def _parse_type(schedule_type: str | ScheduleType) -> ScheduleType:
    try:
        return ScheduleType(schedule_type)
    except ValueError as e:
        raise ScheduleParseError(f"Unknown schedule type: {schedule_type!r}") from e


def _next_cron(expression: str, now: datetime, tz_name: str) -> datetime:
    if len(expression.split()) != 5 or not croniter.is_valid(expression):
        raise ScheduleParseError(f"Invalid cron expression: {expression!r}")
    local_now = now.astimezone(_zone(tz_name))
    next_fire = croniter(expression, local_now).get_next(datetime)
    return next_fire.astimezone(timezone.utc)


def _interval_ms(value: str) -> int:
    text = str(value).strip()
    if not text.isdecimal():
        raise ScheduleParseError(f"Invalid interval value: {value!r}")
    try:
        ms = int(text)
    except ValueError as e:
        raise ScheduleParseError(f"Invalid interval value: {value!r}") from e
    if ms <= 0:
        raise ScheduleParseError(f"Interval must be positive: {value!r}")
    return ms


def _parse_once(value: str, tz_name: str) -> datetime:
    try:
        dt = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    except ValueError as e:
        raise ScheduleParseError(f"Invalid timestamp: {value!r}") from e
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=_zone(tz_name))
    return dt.astimezone(timezone.utc)


def first_run(
    schedule_type: str | ScheduleType,
    schedule_value: str,
    *,
    now: datetime,
    tz_name: str,
) -> datetime:
    """
    Compute the first fire time of a new task.

    This is also the validation entry point for schedules arriving over the
    control plane. A `once` timestamp in the past is returned as-is so the
    next scheduler tick picks it up.

    Raises:
        ScheduleParseError: if the schedule cannot be evaluated
    """
    kind = _parse_type(schedule_type)
    if kind is ScheduleType.CRON:
        return _next_cron(schedule_value, now, tz_name)
    if kind is ScheduleType.INTERVAL:
        return now + timedelta(milliseconds=_interval_ms(schedule_value))
    return _parse_once(schedule_value, tz_name)


def next_run_after_execution(
    schedule_type: str | ScheduleType,
    schedule_value: str,
    *,
    now: datetime,
    tz_name: str,
) -> datetime | None:
    """Compute the fire time following an execution; None once exhausted."""
    kind = _parse_type(schedule_type)
    if kind is ScheduleType.CRON:
        return _next_cron(schedule_value, now, tz_name)
    if kind is ScheduleType.INTERVAL:
        return now + timedelta(milliseconds=_interval_ms(schedule_value))
    return None
