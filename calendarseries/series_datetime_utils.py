"""UTC date/time helpers shared by the calendarseries modules."""

import logging
import os
from datetime import UTC, date, datetime, time, timedelta
from typing import Union

from dateutil import parser as date_parser

logger = logging.getLogger(__name__)

DateLike = Union[date, datetime, str]


def ensure_utc(dt: datetime) -> datetime:
    """Return ``dt`` as an aware UTC datetime (naive values are taken as UTC)."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def parse_utc(value: Union[datetime, str]) -> datetime:
    """Parse an ISO-8601 string (``Z`` suffix accepted) into an aware UTC datetime."""
    if isinstance(value, datetime):
        return ensure_utc(value)
    return ensure_utc(date_parser.isoparse(value))


def as_date(value: DateLike) -> date:
    """Reduce a date, datetime or ``YYYY-MM-DD[...]`` string to a date."""
    if isinstance(value, datetime):
        return ensure_utc(value).date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if "T" in text:
        text = text.split("T", 1)[0]
    return date.fromisoformat(text)


def start_of_day(day: DateLike) -> datetime:
    """First instant of ``day`` in UTC."""
    return datetime.combine(as_date(day), time.min, tzinfo=UTC)


def end_of_day(day: DateLike) -> datetime:
    """Last representable instant of ``day`` in UTC (inclusive bound)."""
    return datetime.combine(as_date(day), time.max, tzinfo=UTC)


def timestamp_key(dt: datetime) -> str:
    """Canonical key for an occurrence timestamp: UTC, second precision."""
    return ensure_utc(dt).replace(microsecond=0).isoformat()


def date_key(day: DateLike) -> str:
    """``YYYY-MM-DD`` key for a date."""
    return as_date(day).isoformat()


def at_time_of(day: date, template: datetime) -> datetime:
    """Place ``template``'s UTC time of day on ``day``."""
    template = ensure_utc(template)
    return datetime.combine(day, template.timetz()).replace(microsecond=0)


def minutes_between(start: datetime, end: datetime) -> int:
    """Whole minutes from ``start`` to ``end`` (may be negative)."""
    return int((end - start) // timedelta(minutes=1))


def now_utc() -> datetime:
    """Current UTC time.

    Can be overridden for testing via the CALENDARSERIES_TEST_TIME environment
    variable (ISO 8601, e.g. "2025-01-13T08:00:00Z").
    """
    test_time = os.environ.get("CALENDARSERIES_TEST_TIME")
    if test_time:
        try:
            return parse_utc(test_time)
        except (ValueError, OverflowError) as e:
            logger.warning("Failed to parse CALENDARSERIES_TEST_TIME=%r: %s", test_time, e)
    return datetime.now(UTC)
