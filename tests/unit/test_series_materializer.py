"""Unit tests for series_materializer module."""

import logging
import random
from datetime import UTC, date, datetime
from types import SimpleNamespace
from typing import Optional

import pytest

from calendarseries.series_materializer import InstanceMaterializer, MaterializerConfig
from calendarseries.series_models import EventRow, OccurrenceKind, RecurrenceRule
from calendarseries.series_datetime_utils import timestamp_key

pytestmark = [pytest.mark.unit, pytest.mark.fast]


def utc(year: int, month: int, day: int, hour: int = 0, minute: int = 0) -> datetime:
    return datetime(year, month, day, hour, minute, tzinfo=UTC)


class TestInstanceMaterializer:
    """Tests for InstanceMaterializer.materialize."""

    def setup_method(self):
        self.materializer = InstanceMaterializer()
        self.master = EventRow(
            id=1,
            owner_id=7,
            title="Standup",
            color="#336699",
            start_utc=utc(2025, 1, 6, 9),
            end_utc=utc(2025, 1, 6, 10),
            is_recurring=True,
            recurrence_rule=RecurrenceRule(frequency="WEEKLY", by_week_days=["MO", "WE"]),
        )

    def create_override(
        self,
        row_id: int,
        original: datetime,
        start: datetime,
        end: datetime,
        series_id: int = 1,
        is_cancelled: bool = False,
        title: str = "Standup (moved)",
    ) -> EventRow:
        return EventRow(
            id=row_id,
            owner_id=7,
            title=title,
            start_utc=start,
            end_utc=end,
            series_id=series_id,
            original_start_utc=original,
            is_cancelled=is_cancelled,
        )

    def create_standalone(
        self, row_id: int, start: datetime, end: datetime, title: str = "Dentist"
    ) -> EventRow:
        return EventRow(id=row_id, owner_id=7, title=title, start_utc=start, end_utc=end)

    def january(self, rows: list[EventRow], apply_visibility: bool = True):
        return self.materializer.materialize(rows, "2025-01-01", "2025-01-31", apply_visibility)

    def find(self, views, view_id: str) -> Optional[object]:
        return next((view for view in views if view.id == view_id), None)

    def test_series_master_expands_to_virtual_instances(self):
        views = self.january([self.master])

        assert [view.id for view in views] == [
            f"1_2025-01-{day:02d}" for day in (6, 8, 13, 15, 20, 22, 27, 29)
        ]
        first = views[0]
        assert first.kind == OccurrenceKind.VIRTUAL
        assert first.row_id is None
        assert first.series_id == 1
        assert first.title == "Standup"
        assert first.color == "#336699"
        assert first.end_utc - first.start_utc == self.master.duration
        assert first.original_start_utc == first.start_utc
        assert first.instance_key == "1_2025-01-06"

    def test_override_moves_occurrence(self):
        """Override moving Jan 13 to Jan 14 10:00 replaces the Jan 13 virtual instance."""
        override = self.create_override(
            2, utc(2025, 1, 13, 9), utc(2025, 1, 14, 10), utc(2025, 1, 14, 11)
        )
        views = self.january([self.master, override])

        assert not [view for view in views if view.start_utc.date() == date(2025, 1, 13)]
        moved = self.find(views, "2")
        assert moved is not None
        assert moved.kind == OccurrenceKind.OVERRIDE
        assert moved.series_id == 1
        assert moved.start_utc == utc(2025, 1, 14, 10)
        assert moved.title == "Standup (moved)"
        assert len(views) == 8

    def test_shadowing_holds_for_every_override(self):
        overrides = [
            self.create_override(2, utc(2025, 1, 13, 9), utc(2025, 1, 14, 10), utc(2025, 1, 14, 11)),
            self.create_override(3, utc(2025, 1, 20, 9), utc(2025, 1, 20, 12), utc(2025, 1, 20, 13)),
            self.create_override(
                4, utc(2025, 1, 22, 9), utc(2025, 1, 22, 9), utc(2025, 1, 22, 10), is_cancelled=True
            ),
        ]
        views = self.january([self.master, *overrides])

        virtual_slots = {
            (view.series_id, timestamp_key(view.original_start_utc))
            for view in views
            if view.kind == OccurrenceKind.VIRTUAL
        }
        for override in overrides:
            assert (override.series_id, timestamp_key(override.original_start_utc)) not in virtual_slots

    def test_cancelled_override_suppresses_date(self):
        tombstone = self.create_override(
            2, utc(2025, 1, 15, 9), utc(2025, 1, 15, 9), utc(2025, 1, 15, 10), is_cancelled=True
        )
        views = self.january([self.master, tombstone])

        assert len(views) == 7
        assert self.find(views, "1_2025-01-15") is None
        assert self.find(views, "2") is None

    def test_override_original_timestamp_is_normalized(self):
        """Microseconds on the stored original timestamp do not break shadowing."""
        override = self.create_override(
            2,
            datetime(2025, 1, 13, 9, 0, 0, 250000, tzinfo=UTC),
            utc(2025, 1, 13, 11),
            utc(2025, 1, 13, 12),
        )
        views = self.january([self.master, override])
        assert self.find(views, "1_2025-01-13") is None
        assert self.find(views, "2") is not None

    def test_materialize_is_deterministic(self):
        rows = [
            self.master,
            self.create_override(2, utc(2025, 1, 13, 9), utc(2025, 1, 14, 10), utc(2025, 1, 14, 11)),
            self.create_standalone(3, utc(2025, 1, 14, 10), utc(2025, 1, 14, 11)),
            self.create_standalone(4, utc(2025, 1, 2, 15), utc(2025, 1, 2, 16)),
        ]
        first = self.january(rows)
        second = self.january(rows)
        shuffled = rows[:]
        random.Random(4).shuffle(shuffled)
        third = self.january(shuffled)

        assert first == second == third
        assert [(v.start_utc, v.id) for v in first] == sorted((v.start_utc, v.id) for v in first)

    def test_no_duplicate_timestamps_within_series(self):
        views = self.materializer.materialize([self.master], "2025-01-01", "2025-12-31")
        keys = [timestamp_key(view.start_utc) for view in views]
        assert len(keys) == len(set(keys))

    def test_orphaned_override_is_emitted_as_standalone(self):
        orphan = self.create_override(
            2, utc(2025, 1, 13, 9), utc(2025, 1, 14, 10), utc(2025, 1, 14, 11), series_id=99
        )
        views = self.january([orphan])

        assert len(views) == 1
        assert views[0].kind == OccurrenceKind.STANDALONE
        assert views[0].series_id == 99
        assert views[0].is_liberated

    def test_cancelled_orphan_is_not_emitted(self):
        orphan = self.create_override(
            2, utc(2025, 1, 13, 9), utc(2025, 1, 13, 9), utc(2025, 1, 13, 10), series_id=99, is_cancelled=True
        )
        assert self.january([orphan]) == []

    def test_override_of_inactive_series_is_orphaned(self):
        ended = self.master.model_copy(update={"recurrence_end_date": date(2024, 3, 1)})
        override = self.create_override(
            2, utc(2024, 2, 26, 9), utc(2025, 1, 14, 10), utc(2025, 1, 14, 11)
        )
        views = self.january([ended, override])
        assert [view.kind for view in views] == [OccurrenceKind.STANDALONE]

    def test_override_of_unproduced_timestamp_is_kept_and_logged(self, caplog):
        # 2025-01-14 is a Tuesday; the rule never produces it
        override = self.create_override(
            2, utc(2025, 1, 14, 9), utc(2025, 1, 14, 12), utc(2025, 1, 14, 13)
        )
        with caplog.at_level(logging.WARNING, logger="calendarseries.series_materializer"):
            views = self.january([self.master, override])

        emitted = self.find(views, "2")
        assert emitted is not None
        assert emitted.kind == OccurrenceKind.OVERRIDE
        assert len(views) == 9
        assert "does not produce" in caplog.text

    def test_master_straddling_range_start_is_expanded(self):
        daily = EventRow(
            id=5,
            owner_id=7,
            title="Meds",
            start_utc=utc(2024, 11, 1, 8),
            end_utc=utc(2024, 11, 1, 8, 15),
            is_recurring=True,
            recurrence_rule='{"frequency": "DAILY"}',
        )
        moved_in = self.create_override(
            6, utc(2024, 12, 31, 8), utc(2025, 1, 2, 12), utc(2025, 1, 2, 12, 15), series_id=5
        )
        views = self.january([daily, moved_in])

        assert len([v for v in views if v.kind == OccurrenceKind.VIRTUAL]) == 31
        assert self.find(views, "6").kind == OccurrenceKind.OVERRIDE

    def test_override_moved_out_of_range_is_not_emitted(self):
        override = self.create_override(
            2, utc(2025, 1, 29, 9), utc(2025, 2, 3, 9), utc(2025, 2, 3, 10)
        )
        views = self.january([self.master, override])
        assert self.find(views, "2") is None
        assert self.find(views, "1_2025-01-29") is None

    def test_invalid_rule_emits_nothing(self, caplog):
        broken = EventRow(
            id=8,
            start_utc=utc(2025, 1, 6, 9),
            end_utc=utc(2025, 1, 6, 10),
            is_recurring=True,
            recurrence_rule="{not json",
        )
        with caplog.at_level(logging.WARNING, logger="calendarseries.series_materializer"):
            views = self.january([broken])
        assert views == []
        assert "invalid recurrence rule" in caplog.text

    def test_duplicate_overrides_for_one_slot_emit_once(self):
        first = self.create_override(2, utc(2025, 1, 13, 9), utc(2025, 1, 13, 11), utc(2025, 1, 13, 12))
        second = self.create_override(3, utc(2025, 1, 13, 9), utc(2025, 1, 13, 14), utc(2025, 1, 13, 15))
        views = self.january([self.master, first, second])
        on_13th = [v for v in views if v.start_utc.date() == date(2025, 1, 13)]
        assert [v.id for v in on_13th] == ["3"]


class TestVisibilityWindow:
    """Tests for visible-hour filtering and slot clipping."""

    def setup_method(self):
        self.materializer = InstanceMaterializer()

    def materialize_one(self, start: datetime, end: datetime):
        row = EventRow(id=1, start_utc=start, end_utc=end)
        return self.materializer.materialize([row], start.date(), start.date())

    def test_event_before_window_is_dropped(self):
        assert self.materialize_one(utc(2025, 1, 13, 3), utc(2025, 1, 13, 4)) == []

    def test_event_after_window_is_dropped(self):
        assert self.materialize_one(utc(2025, 1, 13, 22), utc(2025, 1, 13, 23)) == []

    def test_event_inside_window_is_snapped_to_grid(self):
        (view,) = self.materialize_one(utc(2025, 1, 13, 9, 10), utc(2025, 1, 13, 9, 20))
        assert view.display.start_minutes == 180
        assert view.display.duration_minutes == 30
        assert not view.display.is_clipped

    def test_event_overlapping_window_start_is_clipped(self):
        (view,) = self.materialize_one(utc(2025, 1, 13, 5), utc(2025, 1, 13, 7))
        assert view.display.start_minutes == 0
        assert view.display.duration_minutes == 60
        assert view.display.is_clipped
        # the occurrence keeps its real times
        assert view.start_utc == utc(2025, 1, 13, 5)

    def test_event_overlapping_window_end_is_clipped(self):
        (view,) = self.materialize_one(utc(2025, 1, 13, 21, 45), utc(2025, 1, 13, 23))
        assert view.display.start_minutes == 930
        assert view.display.duration_minutes == 30
        assert view.display.is_clipped

    def test_visibility_can_be_disabled(self):
        row = EventRow(id=1, start_utc=utc(2025, 1, 13, 3), end_utc=utc(2025, 1, 13, 4))
        views = self.materializer.materialize([row], "2025-01-13", "2025-01-13", apply_visibility=False)
        assert len(views) == 1
        assert views[0].display is None

    def test_custom_window_from_settings(self):
        materializer = InstanceMaterializer(
            SimpleNamespace(visible_start_hour=0, visible_end_hour=24, slot_minutes=15, range_padding_months=1)
        )
        row = EventRow(id=1, start_utc=utc(2025, 1, 13, 3), end_utc=utc(2025, 1, 13, 3, 20))
        (view,) = materializer.materialize([row], "2025-01-13", "2025-01-13")
        assert view.display.start_minutes == 180
        assert view.display.duration_minutes == 30

    def test_config_defaults(self):
        config = MaterializerConfig.from_settings(None)
        assert (config.visible_start_hour, config.visible_end_hour) == (6, 22)
        assert config.slot_minutes == 30
        assert config.range_padding_months == 6
