"""
Calling-window policy: Monday to Friday, 09:00 (inclusive) to 19:00 (exclusive)
local time in the target zone.
"""

from __future__ import annotations

import math
from datetime import datetime, time, timedelta, timezone, tzinfo
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pharmacall.shared.exceptions import InvalidTimezoneError

DEFAULT_TIMEZONE = "America/New_York"
WINDOW_START = time(9, 0)
WINDOW_END = time(19, 0)
# Monday=0 .. Friday=4
BUSINESS_DAYS = frozenset(range(5))


@lru_cache(maxsize=64)
def resolve_timezone(name: str) -> tzinfo:
    """Look up an IANA zone, failing fast on unknown identifiers."""
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise InvalidTimezoneError(
            message=f"Unknown time zone: {name!r}",
            details={"timezone": name},
        ) from exc


def _local_now(tz_name: str, now: datetime | None) -> datetime:
    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(resolve_timezone(tz_name))


def is_within_calling_window(
    tz_name: str = DEFAULT_TIMEZONE,
    now: datetime | None = None,
) -> bool:
    """Whether ``now`` falls inside Mon-Fri [09:00, 19:00) in ``tz_name``."""
    local = _local_now(tz_name, now)
    return local.weekday() in BUSINESS_DAYS and WINDOW_START <= local.time() < WINDOW_END


def next_window_start(
    tz_name: str = DEFAULT_TIMEZONE,
    now: datetime | None = None,
) -> datetime:
    """Next Mon-Fri 09:00 local instant strictly after ``now``."""
    local = _local_now(tz_name, now)
    zone = resolve_timezone(tz_name)

    day = local.date()
    if local.time() >= WINDOW_START:
        day += timedelta(days=1)
    while day.weekday() not in BUSINESS_DAYS:
        day += timedelta(days=1)

    # zoneinfo resolves 09:00 unambiguously; DST transitions happen at 02:00
    return datetime.combine(day, WINDOW_START, tzinfo=zone)


def delay_until_next_window(
    tz_name: str = DEFAULT_TIMEZONE,
    now: datetime | None = None,
) -> int:
    """Seconds until calling is allowed again; 0 while inside the window.

    Rounded up so a scheduled run never lands before 09:00:00.
    """
    if now is None:
        now = datetime.now(timezone.utc)
    if is_within_calling_window(tz_name, now):
        return 0
    target = next_window_start(tz_name, now)
    # aware datetimes sharing one tzinfo subtract as wall clock; compare in UTC
    start_utc = target.astimezone(timezone.utc)
    now_utc = _local_now(tz_name, now).astimezone(timezone.utc)
    delta = (start_utc - now_utc).total_seconds()
    return max(1, math.ceil(delta))
