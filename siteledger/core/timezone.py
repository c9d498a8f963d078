"""
Calendar helpers.

Amounts are bucketed by the reporting company's local calendar, not by UTC
day boundaries. Stored datetimes are timezone-aware UTC.
"""

from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from siteledger.core.config import settings
from siteledger.core.errors import ValidationError


def load_zone(tz_name: str) -> ZoneInfo:
    """Resolve an IANA name. Raises ValueError for names the tz database lacks."""
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown timezone: {tz_name!r}") from exc


def company_tz(tz_name: str | None = None) -> ZoneInfo:
    try:
        return load_zone(tz_name or settings.DEFAULT_TIMEZONE)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc


def ensure_aware(dt: datetime) -> datetime:
    """Naive datetimes are treated as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def local_date(dt: datetime, tz: ZoneInfo) -> date:
    return ensure_aware(dt).astimezone(tz).date()


def month_key(dt: datetime, tz: ZoneInfo) -> str:
    """'YYYY-MM' of the local calendar month containing dt."""
    d = local_date(dt, tz)
    return f"{d.year:04d}-{d.month:02d}"


def start_of_day(d: date, tz: ZoneInfo) -> datetime:
    return datetime.combine(d, time.min, tzinfo=tz).astimezone(timezone.utc)


def end_of_day(d: date, tz: ZoneInfo) -> datetime:
    """Last microsecond of the local day, in UTC."""
    return start_of_day(d + timedelta(days=1), tz) - timedelta(microseconds=1)


def months_between(start: date, end: date) -> list[str]:
    """All 'YYYY-MM' keys from start's month through end's month inclusive."""
    if end < start:
        return []
    keys = []
    year, month = start.year, start.month
    while (year, month) <= (end.year, end.month):
        keys.append(f"{year:04d}-{month:02d}")
        month += 1
        if month > 12:
            month = 1
            year += 1
    return keys


def days_between(start: date, end: date) -> list[date]:
    return [start + timedelta(days=i) for i in range((end - start).days + 1)]
