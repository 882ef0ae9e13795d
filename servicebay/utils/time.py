from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import dateparser
from tzlocal import get_localzone_name


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime, tz_name: str = "UTC") -> datetime:
    """Attach ``tz_name`` to naive datetimes and normalise everything to UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=resolve_timezone(tz_name))
    return value.astimezone(timezone.utc)


def hours_until(moment: datetime, now: datetime | None = None) -> float:
    now = now or utcnow()
    return (ensure_aware(moment) - now).total_seconds() / 3600


# Hour windows for part-of-day phrases; dateparser does not understand them.
DAY_PARTS = {"morning": (8, 12), "afternoon": (12, 17), "evening": (17, 20)}
_DAY_PART_RE = re.compile(r"\b(?:in the |this )?(morning|afternoon|evening)\b")
_WEEK_RE = re.compile(r"\b(this|next)?\s*week\b")


def parse_human_range(value: str, timezone_name: str) -> tuple[datetime | None, datetime | None]:
    """Turn phrases such as "tomorrow morning" or "next week" into a ``(start, end)`` window."""
    if not value or not value.strip():
        return None, None

    lowered = value.lower().strip()
    week = _WEEK_RE.search(lowered)
    if week:
        today = datetime.now(resolve_timezone(timezone_name)).replace(hour=0, minute=0, second=0, microsecond=0)
        start = today + timedelta(days=7 - today.weekday()) if week.group(1) == "next" else today
        return start, start + timedelta(days=7)

    part = _DAY_PART_RE.search(lowered)
    remainder = " ".join(_DAY_PART_RE.sub(" ", lowered).split()) or "today"

    settings = {
        "RETURN_AS_TIMEZONE_AWARE": True,
        "TIMEZONE": timezone_name,
        "TO_TIMEZONE": timezone_name,
        "PREFER_DATES_FROM": "future",
    }
    parsed = dateparser.parse(remainder, settings=settings)
    if not parsed:
        return None, None

    start = parsed.replace(hour=0, minute=0, second=0, microsecond=0)
    if part:
        first, last = DAY_PARTS[part.group(1)]
        return start.replace(hour=first), start.replace(hour=last)
    return start, start + timedelta(days=1)


def resolve_timezone(name: str | None) -> ZoneInfo:
    try:
        return ZoneInfo(name or "UTC")
    except ZoneInfoNotFoundError:
        return ZoneInfo(get_local_timezone())


def get_local_timezone() -> str:
    try:
        return get_localzone_name() or "UTC"
    except Exception:
        return "UTC"
