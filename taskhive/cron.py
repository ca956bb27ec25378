"""Cron expression helpers backed by croniter."""

from __future__ import annotations

import re
from datetime import UTC, datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import CroniterBadCronError, CroniterBadDateError, croniter

_DAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]
_INTERVAL_RE = re.compile(r"^\*/(\d+)$")
_NUMBER_RE = re.compile(r"^\d+$")


def _zone(timezone: str | None) -> ZoneInfo:
    return ZoneInfo(timezone or "UTC")


def validate_cron_expression(expr: str, timezone: str = "UTC") -> str | None:
    """Return an error message, or None when the expression and timezone are valid."""
    try:
        _zone(timezone)
    except (ZoneInfoNotFoundError, ValueError):
        return f"Unknown timezone: {timezone}"
    if not croniter.is_valid(expr):
        return f"Invalid cron expression: {expr!r}"
    return None


def compute_next_run_at(expr: str, timezone: str = "UTC", *, now: datetime | None = None) -> datetime | None:
    """Next fire time strictly after ``now``, in UTC. None for unusable input."""
    reference = now or datetime.now(UTC)
    try:
        local_now = reference.astimezone(_zone(timezone))
        next_local = croniter(expr, local_now).get_next(datetime)
    except (CroniterBadCronError, CroniterBadDateError, ZoneInfoNotFoundError, ValueError, KeyError):
        return None
    return next_local.astimezone(UTC)


def compute_next_runs(
    expr: str, timezone: str = "UTC", count: int = 3, *, now: datetime | None = None
) -> list[datetime]:
    runs: list[datetime] = []
    reference = now
    for _ in range(count):
        next_run = compute_next_run_at(expr, timezone, now=reference)
        if next_run is None:
            break
        runs.append(next_run)
        reference = next_run
    return runs


def describe_schedule(expr: str) -> str:
    """Human-readable description for the common cron shapes."""
    parts = expr.split()
    if len(parts) < 5:
        return expr

    minute, hour, day_of_month, month, day_of_week = parts[:5]
    rest_wild = day_of_month == "*" and month == "*" and day_of_week == "*"

    if minute == "*" and hour == "*" and rest_wild:
        return "Every minute"

    minute_interval = _INTERVAL_RE.match(minute)
    if minute_interval and hour == "*" and rest_wild:
        return f"Every {minute_interval.group(1)} minutes"

    if _NUMBER_RE.match(minute) and hour == "*" and rest_wild:
        return f"Every hour at :{minute.zfill(2)}"

    hour_interval = _INTERVAL_RE.match(hour)
    if _NUMBER_RE.match(minute) and hour_interval and rest_wild:
        return f"Every {hour_interval.group(1)} hours at :{minute.zfill(2)}"

    if not (_NUMBER_RE.match(minute) and _NUMBER_RE.match(hour)):
        return expr
    at = f"{hour.zfill(2)}:{minute.zfill(2)}"

    if rest_wild:
        return f"Daily at {at}"

    if day_of_month == "*" and month == "*" and re.match(r"^\d$", day_of_week):
        day = _DAY_NAMES[int(day_of_week) % 7]
        return f"Weekly on {day} at {at}"

    if _NUMBER_RE.match(day_of_month) and month == "*" and day_of_week == "*":
        return f"Monthly on day {day_of_month} at {at}"

    return expr
