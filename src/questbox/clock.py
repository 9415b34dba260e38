from __future__ import annotations

"""Calendar-day helpers: every day string is a local `YYYY-MM-DD`."""

import re
from datetime import UTC, date, datetime, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

DAY_PATTERN = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")


def local_now(timezone: str | None = None) -> datetime:
    """Return an aware `now` in the given IANA zone, or in the system zone."""

    if timezone:
        try:
            return datetime.now(tz=ZoneInfo(timezone))
        except ZoneInfoNotFoundError:
            pass
    return datetime.now().astimezone()


def ensure_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.astimezone()
    return value


def day_string(value: date | datetime) -> str:
    if isinstance(value, datetime):
        value = value.date()
    return value.isoformat()


def parse_day(value: str) -> date:
    """Parse a day string from its components, never through a UTC instant."""

    match = DAY_PATTERN.match(value.strip())
    if not match:
        raise ValueError(f"not a YYYY-MM-DD day string: {value!r}")
    year, month, day = (int(part) for part in match.groups())
    return date(year, month, day)


def previous_day(day: date) -> date:
    return day - timedelta(days=1)


def week_start(day: date) -> date:
    """Most recent Sunday on or before `day`."""

    return day - timedelta(days=(day.weekday() + 1) % 7)


def week_days(day: date) -> list[str]:
    start = week_start(day)
    return [day_string(start + timedelta(days=offset)) for offset in range(7)]


def now_iso(now: datetime | None = None) -> str:
    value = now or datetime.now(tz=UTC)
    return ensure_aware(value).isoformat()


def parse_instant(value: str | None) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed
