"""Recurrence rule expansion for calendarseries.

Turns a ``RecurrenceRule`` plus the series start into the concrete occurrence
start times inside a date range. Expansion is delegated to ``dateutil.rrule``;
this module only maps the rule onto rrule arguments and enforces the range
and safety limits.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Optional

from dateutil.rrule import DAILY, MO, MONTHLY, WEEKLY, rrule, weekday

from .series_datetime_utils import DateLike, end_of_day, ensure_utc, start_of_day, timestamp_key
from .series_models import WEEKDAY_CODES, Frequency, RecurrenceRule

logger = logging.getLogger(__name__)

_RRULE_FREQUENCIES: dict[Frequency, int] = {
    Frequency.DAILY: DAILY,
    Frequency.WEEKLY: WEEKLY,
    Frequency.MONTHLY: MONTHLY,
}

_RRULE_WEEKDAYS: dict[str, weekday] = {code: weekday(index) for index, code in enumerate(WEEKDAY_CODES)}


@dataclass
class RRuleExpanderConfig:
    """Configuration for recurrence expansion."""

    max_occurrences_per_rule: int = 1000

    @classmethod
    def from_settings(cls, settings: Any) -> "RRuleExpanderConfig":
        """Extract expansion settings from a settings object.

        Args:
            settings: Object with optional ``max_occurrences_per_rule`` attribute

        Returns:
            RRuleExpanderConfig with values from settings or defaults
        """
        return cls(
            max_occurrences_per_rule=getattr(settings, "max_occurrences_per_rule", 1000),
        )


class RecurrenceRuleEngine:
    """Expands recurrence rules into occurrence start times.

    Stateless apart from its configuration; every call is pure and can be
    repeated with the same result.
    """

    def __init__(self, settings: Any = None):
        config = RRuleExpanderConfig.from_settings(settings)
        self.max_occurrences = max(1, config.max_occurrences_per_rule)

    def build_rrule(self, rule: RecurrenceRule, series_start: datetime) -> Optional[rrule]:
        """Map a RecurrenceRule onto a dateutil rrule anchored at ``series_start``.

        Returns:
            The rrule, or None for frequencies the engine does not support
        """
        frequency = rule.frequency_enum
        if frequency is None:
            logger.debug("Unsupported recurrence frequency %r; nothing to expand", rule.frequency)
            return None

        dtstart = ensure_utc(series_start).replace(microsecond=0)
        kwargs: dict[str, Any] = {
            "dtstart": dtstart,
            "interval": rule.interval,
            "wkst": MO,
        }

        if frequency == Frequency.WEEKLY:
            codes = rule.by_week_days or [WEEKDAY_CODES[dtstart.weekday()]]
            kwargs["byweekday"] = [_RRULE_WEEKDAYS[code] for code in codes]
        elif frequency == Frequency.MONTHLY:
            kwargs["bymonthday"] = list(rule.by_month_days or [dtstart.day])

        if rule.end_date is not None:
            kwargs["until"] = end_of_day(rule.end_date)

        return rrule(_RRULE_FREQUENCIES[frequency], **kwargs)

    def expand(
        self,
        rule: RecurrenceRule,
        series_start: datetime,
        range_start: DateLike,
        range_end: DateLike,
    ) -> list[datetime]:
        """Occurrence start times of ``rule`` within ``[range_start, range_end]``.

        Range bounds are inclusive at day granularity and the rule's end date
        is an inclusive day bound. Time of day always comes from
        ``series_start``.

        Args:
            rule: Recurrence rule
            series_start: Start of the series master (first possible occurrence)
            range_start: First day of the range
            range_end: Last day of the range

        Returns:
            Sorted list of aware UTC datetimes (empty for unknown frequencies)
        """
        window_start = start_of_day(range_start)
        window_end = end_of_day(range_end)
        if window_end < window_start:
            return []

        recurrence = self.build_rrule(rule, series_start)
        if recurrence is None:
            return []

        occurrences: list[datetime] = []
        for occurrence in recurrence.xafter(window_start, inc=True):
            if occurrence > window_end:
                break
            if len(occurrences) >= self.max_occurrences:
                logger.warning(
                    "Recurrence expansion limited to %d occurrences (rule=%s, range=%s..%s)",
                    self.max_occurrences,
                    rule.to_wire(),
                    window_start.date(),
                    window_end.date(),
                )
                break
            occurrences.append(occurrence)

        logger.debug(
            "Expanded %s rule from %s into %d occurrences for %s..%s",
            rule.frequency,
            series_start.isoformat(),
            len(occurrences),
            window_start.date(),
            window_end.date(),
        )
        return occurrences

    def expand_dates(
        self,
        rule: RecurrenceRule,
        series_start: datetime,
        range_start: DateLike,
        range_end: DateLike,
    ) -> list[date]:
        """Like ``expand`` but returns the occurrence dates only."""
        return [occurrence.date() for occurrence in self.expand(rule, series_start, range_start, range_end)]

    def produces(self, rule: RecurrenceRule, series_start: datetime, timestamp: datetime) -> bool:
        """Whether ``timestamp`` is exactly one of the rule's occurrences."""
        wanted = timestamp_key(timestamp)
        return any(
            timestamp_key(occurrence) == wanted
            for occurrence in self.expand(rule, series_start, timestamp, timestamp)
        )


_default_engine: Optional[RecurrenceRuleEngine] = None


def expand(
    rule: RecurrenceRule,
    series_start: datetime,
    range_start: DateLike,
    range_end: DateLike,
) -> list[datetime]:
    """Module-level convenience wrapper around a default RecurrenceRuleEngine."""
    global _default_engine  # noqa: PLW0603
    if _default_engine is None:
        _default_engine = RecurrenceRuleEngine()
    return _default_engine.expand(rule, series_start, range_start, range_end)
