"""Shared fixtures for calendarseries tests."""

from collections.abc import Generator
from datetime import UTC, datetime
from types import SimpleNamespace
from typing import Any

import pytest

from calendarseries.series_models import EventRow, RecurrenceRule
from calendarseries.series_store import InMemoryEventStore, InMemorySubtaskStore


def pytest_configure(config: Any) -> None:
    """Register test markers."""
    config.addinivalue_line("markers", "unit: Fast unit tests")
    config.addinivalue_line("markers", "fast: Tests that finish in milliseconds")
    config.addinivalue_line("markers", "integration: Multi-component tests")


@pytest.fixture(autouse=True)
def clean_test_environment(monkeypatch: Any) -> Generator[None, Any, None]:
    """Keep CALENDARSERIES_* variables from leaking into or out of a test."""
    for key in (
        "CALENDARSERIES_TEST_TIME",
        "CALENDARSERIES_DEBUG",
        "CALENDARSERIES_LOG_LEVEL",
        "CALENDARSERIES_VISIBLE_START_HOUR",
        "CALENDARSERIES_VISIBLE_END_HOUR",
        "CALENDARSERIES_SLOT_MINUTES",
        "CALENDARSERIES_RANGE_PADDING_MONTHS",
        "CALENDARSERIES_MAX_OCCURRENCES_PER_RULE",
        "CALENDARSERIES_API_BASE_URL",
        "CALENDARSERIES_REQUEST_TIMEOUT_SECONDS",
    ):
        monkeypatch.delenv(key, raising=False)
    yield


@pytest.fixture
def simple_settings() -> SimpleNamespace:
    """Settings object with the default visibility window and padding."""
    return SimpleNamespace(
        visible_start_hour=6,
        visible_end_hour=22,
        slot_minutes=30,
        range_padding_months=6,
        max_occurrences_per_rule=1000,
    )


@pytest.fixture
def weekly_master() -> EventRow:
    """Series master 1: Mondays and Wednesdays 09:00-10:00 UTC from 2025-01-06."""
    return EventRow(
        id=1,
        owner_id=7,
        title="Standup",
        start_utc=datetime(2025, 1, 6, 9, 0, tzinfo=UTC),
        end_utc=datetime(2025, 1, 6, 10, 0, tzinfo=UTC),
        is_recurring=True,
        recurrence_rule=RecurrenceRule(frequency="WEEKLY", interval=1, by_week_days=["MO", "WE"]),
    )


@pytest.fixture
def event_store(weekly_master: EventRow) -> InMemoryEventStore:
    """In-memory event store seeded with the weekly series master."""
    return InMemoryEventStore([weekly_master])


@pytest.fixture
def subtask_store() -> InMemorySubtaskStore:
    return InMemorySubtaskStore()
