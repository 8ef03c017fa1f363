"""Occurrence materialization for calendarseries.

Combines persisted rows (standalone events, series masters and overrides)
with recurrence expansion into the list of occurrences visible in a date
range. Overrides shadow the rule timestamp they replace; cancelled overrides
suppress it without emitting anything.
"""

import logging
import math
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from dateutil.relativedelta import relativedelta

from .series_datetime_utils import (
    DateLike,
    end_of_day,
    minutes_between,
    start_of_day,
    timestamp_key,
)
from .series_exceptions import InvalidRecurrenceRuleError
from .series_models import (
    DisplaySlot,
    EventRow,
    EventViewModel,
    OccurrenceKind,
    RecurrenceRule,
    VirtualInstanceId,
)
from .series_rrule_expander import RecurrenceRuleEngine

logger = logging.getLogger(__name__)


@dataclass
class MaterializerConfig:
    """Configuration for occurrence materialization."""

    visible_start_hour: int = 6
    visible_end_hour: int = 22
    slot_minutes: int = 30
    range_padding_months: int = 6

    @classmethod
    def from_settings(cls, settings: Any) -> "MaterializerConfig":
        """Extract materializer settings from a settings object.

        Args:
            settings: Object with optional visibility/padding attributes

        Returns:
            MaterializerConfig with values from settings or defaults
        """
        return cls(
            visible_start_hour=getattr(settings, "visible_start_hour", 6),
            visible_end_hour=getattr(settings, "visible_end_hour", 22),
            slot_minutes=getattr(settings, "slot_minutes", 30),
            range_padding_months=getattr(settings, "range_padding_months", 6),
        )


@dataclass
class _ActiveSeries:
    master: EventRow
    rule: RecurrenceRule


class InstanceMaterializer:
    """Builds EventViewModels for a date range from persisted rows."""

    def __init__(self, settings: Any = None, engine: Optional[RecurrenceRuleEngine] = None):
        self.config = MaterializerConfig.from_settings(settings)
        self.engine = engine or RecurrenceRuleEngine(settings)

    def materialize(
        self,
        rows: Iterable[EventRow],
        range_start: DateLike,
        range_end: DateLike,
        apply_visibility: bool = True,
    ) -> list[EventViewModel]:
        """Materialize all occurrences in ``[range_start, range_end]``.

        Args:
            rows: Every row that may contribute (standalone, masters, overrides)
            range_start: First day of the range (inclusive)
            range_end: Last day of the range (inclusive)
            apply_visibility: Drop/clip occurrences against the visible hour window

        Returns:
            Occurrences sorted by (start_utc, id)
        """
        window_start = start_of_day(range_start)
        window_end = end_of_day(range_end)
        padding = relativedelta(months=self.config.range_padding_months)
        widened_start = window_start - padding
        widened_end = window_end + padding

        standalone: list[EventRow] = []
        masters: list[EventRow] = []
        overrides: list[EventRow] = []
        for row in rows:
            kind = row.kind
            if kind == OccurrenceKind.OVERRIDE:
                overrides.append(row)
            elif kind == OccurrenceKind.SERIES_MASTER:
                masters.append(row)
            else:
                standalone.append(row)

        active = self._active_series(masters, widened_start, widened_end)
        override_lookup = self._collect_overrides(overrides)

        views: list[EventViewModel] = []
        used_overrides: set[int] = set()
        virtual_count = 0
        suppressed_count = 0

        def in_range(moment: datetime) -> bool:
            return window_start <= moment <= window_end

        for series_id in sorted(active):
            series = active[series_id]
            for occurrence in self.engine.expand(
                series.rule, series.master.start_utc, widened_start, widened_end
            ):
                override = override_lookup.get((series_id, timestamp_key(occurrence)))
                if override is not None:
                    used_overrides.add(override.id)
                    if override.is_cancelled:
                        suppressed_count += 1
                    elif in_range(override.start_utc):
                        views.append(self.view_for_row(override, series.master))
                    continue
                if in_range(occurrence):
                    views.append(self.virtual_view(series.master, occurrence, series.rule))
                    virtual_count += 1

        orphan_count = 0
        for override in overrides:
            if override.id in used_overrides or override.is_cancelled:
                continue
            if override.original_start_utc is not None:
                winner = override_lookup.get((override.series_id, timestamp_key(override.original_start_utc)))
                if winner is not None and winner.id != override.id:
                    continue
            series = active.get(override.series_id)
            if series is not None:
                logger.warning(
                    "Override %s of series %s replaces %s, which the rule does not produce",
                    override.id,
                    override.series_id,
                    override.original_start_utc,
                )
                if in_range(override.start_utc):
                    views.append(self.view_for_row(override, series.master))
                continue
            if in_range(override.start_utc):
                views.append(self.view_for_row(override))
                orphan_count += 1

        for row in standalone:
            if in_range(row.start_utc):
                views.append(self.view_for_row(row))

        hidden_count = 0
        if apply_visibility:
            visible: list[EventViewModel] = []
            for view in views:
                clipped = self.apply_visibility(view)
                if clipped is None:
                    hidden_count += 1
                else:
                    visible.append(clipped)
            views = visible

        views.sort(key=lambda view: (view.start_utc, view.id))

        logger.debug(
            f"Materialized {len(views)} occurrences for {window_start.date()}..{window_end.date()} "
            f"({len(active)} active series, {virtual_count} virtual, {len(used_overrides)} overrides matched, "
            f"{suppressed_count} cancelled, {orphan_count} orphaned, {hidden_count} outside visible hours)"
        )
        return views

    def _active_series(
        self, masters: list[EventRow], widened_start: datetime, widened_end: datetime
    ) -> dict[int, _ActiveSeries]:
        """Series masters with a parseable rule whose window meets the widened range."""
        active: dict[int, _ActiveSeries] = {}
        for master in masters:
            try:
                rule = master.rule
            except InvalidRecurrenceRuleError as e:
                logger.warning(f"Skipping series {master.id}: invalid recurrence rule: {e}")
                continue
            if rule is None:
                logger.warning(f"Skipping series {master.id}: recurring event without a rule")
                continue

            series_end = end_of_day(rule.end_date) if rule.end_date is not None else None
            if master.start_utc > widened_end:
                continue
            if series_end is not None and series_end < widened_start:
                continue
            active[master.id] = _ActiveSeries(master=master, rule=rule)
        return active

    def _collect_overrides(self, overrides: list[EventRow]) -> dict[tuple[int, str], EventRow]:
        """Index overrides by (series_id, normalized original timestamp)."""
        lookup: dict[tuple[int, str], EventRow] = {}
        for override in overrides:
            if override.original_start_utc is None or override.series_id is None:
                continue
            key = (override.series_id, timestamp_key(override.original_start_utc))
            existing = lookup.get(key)
            if existing is not None:
                # Two rows claim the same slot: the live one wins, then the newest id
                if existing.is_cancelled == override.is_cancelled:
                    keep = existing if existing.id > override.id else override
                else:
                    keep = existing if not existing.is_cancelled else override
                logger.warning(
                    "Overrides %s and %s both replace %s of series %s; using %s",
                    existing.id,
                    override.id,
                    key[1],
                    key[0],
                    keep.id,
                )
                lookup[key] = keep
            else:
                lookup[key] = override
        return lookup

    def virtual_view(
        self,
        master: EventRow,
        occurrence_start: datetime,
        rule: Optional[RecurrenceRule] = None,
    ) -> EventViewModel:
        """View of the rule-generated occurrence of ``master`` at ``occurrence_start``."""
        virtual_id = VirtualInstanceId(series_id=master.id, occurrence_date=occurrence_start.date())
        return EventViewModel(
            id=str(virtual_id),
            kind=OccurrenceKind.VIRTUAL,
            virtual_id=virtual_id,
            series_id=master.id,
            owner_id=master.owner_id,
            title=master.title,
            description=master.description,
            color=master.color,
            start_utc=occurrence_start,
            end_utc=occurrence_start + master.duration,
            original_start_utc=occurrence_start,
            recurrence_rule=rule if rule is not None else master.rule,
        )

    def view_for_row(self, row: EventRow, master: Optional[EventRow] = None) -> EventViewModel:
        """Unfiltered view of a single persisted row.

        Args:
            row: Row to present
            master: Live series master when ``row`` is an override of an active series.
                Without it an override is presented as a liberated standalone occurrence.

        Returns:
            EventViewModel for the row
        """
        kind = row.kind
        recurrence_rule: Optional[RecurrenceRule] = None
        virtual_id: Optional[VirtualInstanceId] = None

        if kind == OccurrenceKind.OVERRIDE:
            if master is None:
                kind = OccurrenceKind.STANDALONE
            else:
                recurrence_rule = self._safe_rule(master)
            if row.series_id is not None and row.original_start_utc is not None:
                virtual_id = VirtualInstanceId(
                    series_id=row.series_id, occurrence_date=row.original_start_utc.date()
                )
        elif kind == OccurrenceKind.SERIES_MASTER:
            recurrence_rule = self._safe_rule(row)

        return EventViewModel(
            id=str(row.id),
            kind=kind,
            row_id=row.id,
            virtual_id=virtual_id,
            series_id=row.series_id,
            owner_id=row.owner_id,
            title=row.title,
            description=row.description,
            color=row.color,
            start_utc=row.start_utc,
            end_utc=row.end_utc,
            original_start_utc=row.original_start_utc,
            recurrence_rule=recurrence_rule,
            is_cancelled=row.is_cancelled,
        )

    @staticmethod
    def _safe_rule(row: EventRow) -> Optional[RecurrenceRule]:
        try:
            return row.rule
        except InvalidRecurrenceRuleError:
            return None

    def apply_visibility(self, view: EventViewModel) -> Optional[EventViewModel]:
        """Clip ``view`` to the visible hour window of its start day.

        Returns:
            A copy carrying its display slot, or None when the occurrence lies
            entirely outside the window
        """
        day_start = start_of_day(view.start_utc)
        window_start = day_start + timedelta(hours=self.config.visible_start_hour)
        window_end = day_start + timedelta(hours=self.config.visible_end_hour)

        start = view.start_utc
        end = max(view.end_utc, start)
        if start >= window_end:
            return None
        if end < window_start or (end == window_start and start < window_start):
            return None

        slot = self.config.slot_minutes
        window_minutes = minutes_between(window_start, window_end)
        clipped_start = max(start, window_start)
        clipped_end = min(end, window_end)

        start_minutes = (minutes_between(window_start, clipped_start) // slot) * slot
        end_minutes = math.ceil(
            (clipped_end - window_start) / timedelta(minutes=slot)
        ) * slot
        duration_minutes = max(slot, end_minutes - start_minutes)
        duration_minutes = min(duration_minutes, max(slot, window_minutes - start_minutes))

        display = DisplaySlot(
            start_minutes=start_minutes,
            duration_minutes=duration_minutes,
            is_clipped=start < window_start or end > window_end,
        )
        return view.model_copy(update={"display": display})
