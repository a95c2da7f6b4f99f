"""Cron helpers: UTC evaluation plus display summaries for generated patterns."""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from typing import Callable, Literal, Optional

from croniter import croniter

from .errors import InvalidCronError

IntervalUnit = Literal["minutes", "hours", "days"]

_NUMBER = r"(\d+)"


def validate_cron(expression: str) -> str:
    """Return the normalised expression or raise :class:`InvalidCronError`."""
    normalised = " ".join(expression.split())
    if len(normalised.split(" ")) != 5 or not croniter.is_valid(normalised):
        raise InvalidCronError(f"Invalid cron expression: {expression!r}")
    return normalised


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def next_fire_after(expression: str, after: datetime) -> datetime:
    """First fire time strictly after ``after``."""
    return croniter(validate_cron(expression), _as_utc(after)).get_next(datetime)


def latest_fire_at_or_before(expression: str, moment: datetime) -> datetime:
    """Most recent fire time that is not later than ``moment``."""
    # Fire times are whole minutes, so searching backwards from the start of
    # the following minute includes a fire exactly at ``moment``.
    start = _as_utc(moment).replace(second=0, microsecond=0) + timedelta(minutes=1)
    return croniter(validate_cron(expression), start).get_prev(datetime)


def due_fire_time(
    expression: str, window_start: Optional[datetime], now: datetime
) -> Optional[datetime]:
    """Latest fire time in ``(window_start, now]``, or ``None`` when nothing is due.

    A backlog of several missed fire times collapses to the most recent one.
    """
    latest = latest_fire_at_or_before(expression, now)
    if window_start is not None and latest <= _as_utc(window_start):
        return None
    return latest


def interval_to_cron(amount: int, unit: IntervalUnit, start_from: Optional[str] = None) -> str:
    """Build the cron expression for "every N units, starting from HH:MM"."""
    if amount <= 0:
        raise ValueError("amount must be positive")
    hour, minute = _parse_clock(start_from) if start_from else (0, 0)
    if unit == "minutes":
        return f"{minute}-59/{amount} {hour} * * *" if start_from else f"*/{amount} * * * *"
    if unit == "hours":
        return f"{minute} {hour}-23/{amount} * * *" if start_from else f"0 */{amount} * * *"
    if unit == "days":
        return f"{minute} {hour} */{amount} * *" if start_from else f"0 0 */{amount} * *"
    raise ValueError(f"Unsupported interval unit: {unit}")


def time_to_cron(clock: str) -> str:
    """Daily cron expression for ``HH:MM``."""
    hour, minute = _parse_clock(clock)
    return f"{minute} {hour} * * *"


def _parse_clock(clock: str) -> tuple[int, int]:
    match = re.fullmatch(r"(\d{1,2}):(\d{2})", clock.strip())
    if not match:
        raise ValueError(f"Expected HH:MM, got {clock!r}")
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        raise ValueError(f"Expected HH:MM, got {clock!r}")
    return hour, minute


def _plural(amount: int, unit: str) -> str:
    return f"{unit}" if amount == 1 else f"{amount} {unit}s"


_PATTERNS: list[tuple[re.Pattern[str], Callable[[re.Match[str]], str]]] = [
    (re.compile(r"\* \* \* \* \*"), lambda m: "Every minute"),
    (
        re.compile(rf"\*/{_NUMBER} \* \* \* \*"),
        lambda m: f"Every {_plural(int(m[1]), 'minute')}",
    ),
    (
        re.compile(rf"0 \*/{_NUMBER} \* \* \*"),
        lambda m: f"Every {_plural(int(m[1]), 'hour')}",
    ),
    (
        re.compile(rf"0 0 \*/{_NUMBER} \* \*"),
        lambda m: f"Every {_plural(int(m[1]), 'day')}",
    ),
    (
        re.compile(rf"{_NUMBER}-59/{_NUMBER} {_NUMBER} \* \* \*"),
        lambda m: f"Every {_plural(int(m[2]), 'minute')} from {int(m[3]):02d}:{int(m[1]):02d}",
    ),
    (
        re.compile(rf"{_NUMBER} {_NUMBER}-23/{_NUMBER} \* \* \*"),
        lambda m: f"Every {_plural(int(m[3]), 'hour')} from {int(m[2]):02d}:{int(m[1]):02d}",
    ),
    (
        re.compile(rf"{_NUMBER} {_NUMBER} \*/{_NUMBER} \* \*"),
        lambda m: f"Every {_plural(int(m[3]), 'day')} at {int(m[2]):02d}:{int(m[1]):02d}",
    ),
    (
        re.compile(rf"{_NUMBER} {_NUMBER} \* \* \*"),
        lambda m: f"Daily at {int(m[2]):02d}:{int(m[1]):02d}",
    ),
]


def describe_cron(expression: str) -> str:
    """Human-readable summary for display only; unknown shapes are returned as-is."""
    normalised = " ".join(expression.split())
    for pattern, render in _PATTERNS:
        match = pattern.fullmatch(normalised)
        if match:
            return render(match)
    return normalised
