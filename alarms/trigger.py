from __future__ import annotations

import re
from datetime import datetime, timedelta
from enum import Enum
from typing import Iterable, Optional, Tuple

_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})$")

SATURDAY = 6
SUNDAY = 0
WEEKEND_DAYS = frozenset({SATURDAY, SUNDAY})


class RepeatType(str, Enum):
    ONCE = "once"
    DAILY = "daily"
    WEEKDAYS = "weekdays"
    WEEKENDS = "weekends"
    CUSTOM = "custom"

    @classmethod
    def coerce(cls, value) -> "RepeatType":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as exc:
            raise ValueError(f"Unknown repeat type: {value!r}") from exc


def parse_time_of_day(value: str) -> Tuple[int, int]:
    """Parse an "HH:MM" 24-hour string into an (hour, minute) pair."""
    match = _TIME_RE.match(str(value).strip())
    if not match:
        raise ValueError(f"Time must be in HH:MM format, got {value!r}")
    hour, minute = int(match.group(1)), int(match.group(2))
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValueError(f"Time out of range: {value!r}")
    return hour, minute


def format_time_of_day(hour: int, minute: int) -> str:
    return f"{hour:02d}:{minute:02d}"


def weekday_index(moment: datetime) -> int:
    """Day of week with 0=Sunday .. 6=Saturday."""
    return moment.isoweekday() % 7


def compute_next_occurrence(
    time_of_day: str,
    repeat_type: RepeatType | str,
    repeat_days: Optional[Iterable[int]],
    now: datetime,
) -> Optional[datetime]:
    """Return the next instant strictly after ``now`` matching the repeat policy.

    ``None`` means the policy can never fire (a custom policy with no days).
    The candidate keeps the tzinfo of ``now``, so day steps move the wall clock
    by one calendar day.
    """
    hour, minute = parse_time_of_day(time_of_day)
    repeat_type = RepeatType.coerce(repeat_type)

    candidate = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)

    if repeat_type is RepeatType.ONCE:
        return candidate if candidate > now else None

    if repeat_type is RepeatType.DAILY:
        return candidate

    if repeat_type is RepeatType.WEEKDAYS:
        while weekday_index(candidate) in WEEKEND_DAYS:
            candidate += timedelta(days=1)
        return candidate

    if repeat_type is RepeatType.WEEKENDS:
        while weekday_index(candidate) not in WEEKEND_DAYS:
            candidate += timedelta(days=1)
        return candidate

    days = set(repeat_days or ())
    if not days:
        return None
    if not days & set(range(7)):
        # nothing in 0..6 can ever match
        return None
    while weekday_index(candidate) not in days:
        candidate += timedelta(days=1)
    return candidate
