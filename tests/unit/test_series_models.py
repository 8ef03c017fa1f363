"""Unit tests for series_models module."""

import json
from datetime import UTC, date, datetime

import pytest
from pydantic import ValidationError

from calendarseries.series_exceptions import InvalidInstanceIdError, InvalidRecurrenceRuleError
from calendarseries.series_models import (
    EffectiveSubtask,
    EventRow,
    EventViewModel,
    Frequency,
    OccurrenceKind,
    RecurrenceRule,
    SubtaskOrigin,
    VirtualInstanceId,
)

pytestmark = [pytest.mark.unit, pytest.mark.fast]


class TestRecurrenceRule:
    """Tests for RecurrenceRule sanitizing and wire format."""

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [(0, 1), (-4, 1), (45, 30), (2.5, 3), (2.4, 2), ("7", 7), ("abc", 1), (None, 1)],
    )
    def test_interval_is_clamped_and_rounded(self, raw, expected):
        """Interval is rounded and clamped to 1..30; garbage becomes 1."""
        rule = RecurrenceRule(frequency="DAILY", interval=raw)
        assert rule.interval == expected

    def test_week_days_are_normalized(self):
        """Codes are upper-cased, unknown codes dropped, duplicates removed, ISO order kept."""
        rule = RecurrenceRule(frequency="WEEKLY", by_week_days=["we", "mo", "XX", "MO", "su"])
        assert rule.by_week_days == ["MO", "WE", "SU"]

    def test_month_days_are_clamped_sorted_and_unique(self):
        rule = RecurrenceRule(frequency="MONTHLY", by_month_days=[31, 0, 40, 15, 15, "x"])
        assert rule.by_month_days == [1, 15, 31]

    def test_frequency_is_upper_cased(self):
        rule = RecurrenceRule(frequency="weekly")
        assert rule.frequency == "WEEKLY"
        assert rule.frequency_enum == Frequency.WEEKLY

    def test_unknown_frequency_is_kept(self):
        """Unknown frequencies are not rejected; they simply have no enum value."""
        rule = RecurrenceRule(frequency="YEARLY")
        assert rule.frequency == "YEARLY"
        assert rule.frequency_enum is None

    def test_aliases_are_accepted(self):
        rule = RecurrenceRule.model_validate(
            {"frequency": "WEEKLY", "byWeekDays": ["TU"], "endDate": "2025-02-01"}
        )
        assert rule.by_week_days == ["TU"]
        assert rule.end_date == date(2025, 2, 1)

    def test_from_wire_parses_json_and_separate_end_date(self):
        rule = RecurrenceRule.from_wire(
            '{"frequency": "MONTHLY", "interval": 2, "byMonthDays": [15]}',
            "2025-06-30T00:00:00Z",
        )
        assert rule is not None
        assert rule.frequency == "MONTHLY"
        assert rule.interval == 2
        assert rule.by_month_days == [15]
        assert rule.end_date == date(2025, 6, 30)

    @pytest.mark.parametrize("stored", [None, "", "   "])
    def test_from_wire_without_rule_returns_none(self, stored):
        assert RecurrenceRule.from_wire(stored) is None

    @pytest.mark.parametrize("stored", ["{not json", '"WEEKLY"', '{"interval": 2}', '{"frequency": ""}'])
    def test_from_wire_rejects_malformed_rules(self, stored):
        with pytest.raises(InvalidRecurrenceRuleError):
            RecurrenceRule.from_wire(stored)

    def test_to_wire_omits_end_date(self):
        rule = RecurrenceRule(frequency="WEEKLY", by_week_days=["MO"], end_date=date(2025, 3, 1))
        payload = json.loads(rule.to_wire())
        assert payload == {"frequency": "WEEKLY", "interval": 1, "byWeekDays": ["MO"]}


class TestEventRow:
    """Tests for EventRow validation and classification."""

    def create_row(self, **overrides) -> EventRow:
        data = {
            "id": 10,
            "start_utc": datetime(2025, 1, 13, 9, 0, tzinfo=UTC),
            "end_utc": datetime(2025, 1, 13, 10, 0, tzinfo=UTC),
        }
        data.update(overrides)
        return EventRow(**data)

    def test_plain_row_is_standalone(self):
        assert self.create_row().kind == OccurrenceKind.STANDALONE

    def test_recurring_row_is_series_master(self):
        row = self.create_row(is_recurring=True, recurrence_rule='{"frequency": "DAILY"}')
        assert row.kind == OccurrenceKind.SERIES_MASTER
        assert row.rule is not None
        assert row.rule.frequency == "DAILY"

    def test_row_with_series_id_is_override(self):
        row = self.create_row(series_id=1, original_start_utc=datetime(2025, 1, 13, 9, 0))
        assert row.kind == OccurrenceKind.OVERRIDE

    def test_master_and_override_at_once_is_rejected(self):
        with pytest.raises(ValidationError):
            self.create_row(is_recurring=True, series_id=1)

    def test_end_before_start_is_rejected(self):
        with pytest.raises(ValidationError):
            self.create_row(end_utc=datetime(2025, 1, 13, 8, 0, tzinfo=UTC))

    def test_naive_datetimes_are_taken_as_utc(self):
        row = self.create_row(
            start_utc=datetime(2025, 1, 13, 9, 0),
            end_utc="2025-01-13T10:00:00Z",
        )
        assert row.start_utc.tzinfo is not None
        assert row.start_utc == datetime(2025, 1, 13, 9, 0, tzinfo=UTC)
        assert row.end_utc == datetime(2025, 1, 13, 10, 0, tzinfo=UTC)

    def test_rule_object_is_stored_as_json(self):
        row = self.create_row(
            is_recurring=True,
            recurrence_rule=RecurrenceRule(frequency="WEEKLY", by_week_days=["MO"]),
        )
        assert isinstance(row.recurrence_rule, str)
        assert json.loads(row.recurrence_rule)["byWeekDays"] == ["MO"]

    def test_end_date_iso_datetime_is_truncated(self):
        row = self.create_row(
            is_recurring=True,
            recurrence_rule='{"frequency": "DAILY"}',
            recurrence_end_date="2025-02-01T12:30:00Z",
        )
        assert row.recurrence_end_date == date(2025, 2, 1)
        assert row.rule.end_date == date(2025, 2, 1)


class TestVirtualInstanceId:
    """Tests for the structured virtual occurrence id."""

    def test_parse_and_render(self):
        virtual_id = VirtualInstanceId.parse("12_2025-01-13")
        assert virtual_id.series_id == 12
        assert virtual_id.occurrence_date == date(2025, 1, 13)
        assert str(virtual_id) == "12_2025-01-13"

    @pytest.mark.parametrize("value", ["abc", "12", "12_2025-1-3", "x_2025-01-13", "12_2025-13-01"])
    def test_invalid_ids_raise(self, value):
        with pytest.raises(InvalidInstanceIdError):
            VirtualInstanceId.parse(value)

    def test_try_parse_returns_none_for_row_ids(self):
        assert VirtualInstanceId.try_parse("42") is None

    def test_ids_are_hashable_values(self):
        first = VirtualInstanceId(series_id=1, occurrence_date=date(2025, 1, 6))
        second = VirtualInstanceId.parse("1_2025-01-06")
        assert first == second
        assert len({first, second}) == 1


class TestEventViewModel:
    """Tests for derived EventViewModel properties."""

    def test_instance_key_of_virtual_is_virtual_id(self):
        virtual_id = VirtualInstanceId(series_id=1, occurrence_date=date(2025, 1, 13))
        view = EventViewModel(
            id=str(virtual_id),
            kind=OccurrenceKind.VIRTUAL,
            virtual_id=virtual_id,
            series_id=1,
            start_utc=datetime(2025, 1, 13, 9, 0, tzinfo=UTC),
            end_utc=datetime(2025, 1, 13, 10, 0, tzinfo=UTC),
        )
        assert view.instance_key == "1_2025-01-13"
        assert view.is_series_bound
        assert not view.is_liberated

    def test_instance_key_of_override_is_row_id(self):
        view = EventViewModel(
            id="5",
            kind=OccurrenceKind.OVERRIDE,
            row_id=5,
            virtual_id=VirtualInstanceId(series_id=1, occurrence_date=date(2025, 1, 13)),
            series_id=1,
            start_utc=datetime(2025, 1, 14, 10, 0, tzinfo=UTC),
            end_utc=datetime(2025, 1, 14, 11, 0, tzinfo=UTC),
        )
        assert view.instance_key == "5"
        assert view.is_series_bound

    def test_standalone_with_series_id_is_liberated(self):
        view = EventViewModel(
            id="5",
            kind=OccurrenceKind.STANDALONE,
            row_id=5,
            series_id=99,
            start_utc=datetime(2025, 1, 14, 10, 0, tzinfo=UTC),
            end_utc=datetime(2025, 1, 14, 11, 0, tzinfo=UTC),
        )
        assert view.is_liberated
        assert not view.is_series_bound


class TestEffectiveSubtask:
    def test_key_requires_id(self):
        assert EffectiveSubtask(text="new").key is None
        assert EffectiveSubtask(id=3, text="x", origin=SubtaskOrigin.CUSTOM).key == (
            SubtaskOrigin.CUSTOM,
            3,
        )
