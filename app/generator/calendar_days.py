from __future__ import annotations

import calendar
import datetime
from typing import Dict, List, Tuple

ISO_FORMAT = "%Y-%m-%d"


def month_start(value: datetime.date | datetime.datetime | str) -> datetime.date:
    """Return the first day of the month containing ``value``."""
    if isinstance(value, str):
        text = value.strip()
        try:
            if len(text) == 7:
                value = datetime.date.fromisoformat(f"{text}-01")
            else:
                value = datetime.date.fromisoformat(text[:10])
        except ValueError as exc:
            raise ValueError(f"Month must be YYYY-MM or YYYY-MM-DD, got '{text}'.") from exc
    if isinstance(value, datetime.datetime):
        value = value.date()
    if not isinstance(value, datetime.date):
        raise TypeError("month must be a date, datetime or ISO string.")
    return value.replace(day=1)


def business_days(month: datetime.date | datetime.datetime | str) -> List[datetime.date]:
    """Monday-Friday dates of the month, ascending. Holidays are not skipped."""
    first = month_start(month)
    _, length = calendar.monthrange(first.year, first.month)
    days = (first + datetime.timedelta(days=offset) for offset in range(length))
    return [day for day in days if day.weekday() < 5]


def iso(day: datetime.date) -> str:
    return day.strftime(ISO_FORMAT)


def parse_iso(value: str | datetime.date) -> datetime.date:
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    return datetime.date.fromisoformat(str(value).strip()[:10])


def business_day_isos(month: datetime.date | datetime.datetime | str) -> List[str]:
    return [iso(day) for day in business_days(month)]


def week_key(day: datetime.date) -> Tuple[int, int]:
    iso_year, iso_week, _ = day.isocalendar()
    return iso_year, iso_week


def chunk_by_weeks(days: List[datetime.date]) -> List[List[datetime.date]]:
    """Group consecutive business days into Monday-first calendar weeks."""
    chunks: Dict[Tuple[int, int], List[datetime.date]] = {}
    for day in days:
        chunks.setdefault(week_key(day), []).append(day)
    return list(chunks.values())


def day_label(day: datetime.date) -> str:
    """Short header label, e.g. ``Mon 3 Nov``."""
    return f"{day:%a} {day.day} {day:%b}"


def long_day_label(day: datetime.date) -> str:
    """Full label, e.g. ``Monday 3 November 2025``."""
    return f"{day:%A} {day.day} {day:%B %Y}"
