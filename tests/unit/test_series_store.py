"""Unit tests for the in-memory stores in series_store."""

from datetime import UTC, datetime

import pytest

from calendarseries.series_exceptions import EventNotFoundError, PersistenceError
from calendarseries.series_models import EventRow, OccurrenceKind
from calendarseries.series_store import InMemoryEventStore, InMemorySubtaskStore

pytestmark = [pytest.mark.unit, pytest.mark.fast]


def utc(month: int, day: int, hour: int = 0) -> datetime:
    return datetime(2025, month, day, hour, 0, tzinfo=UTC)


class TestInMemoryEventStore:
    """Tests for InMemoryEventStore."""

    @pytest.mark.asyncio
    async def test_create_assigns_next_id(self, event_store):
        row = await event_store.create(
            {"id": 99, "owner_id": 7, "start_utc": utc(1, 20, 9), "end_utc": utc(1, 20, 10)}
        )
        assert row.id == 2
        assert event_store.get(2) == row

    @pytest.mark.asyncio
    async def test_update_merges_fields(self, event_store):
        row = await event_store.update(1, {"title": "Sync"})
        assert row.title == "Sync"
        assert row.kind == OccurrenceKind.SERIES_MASTER
        assert event_store.calls_to("update") == [(1, {"title": "Sync"})]

    @pytest.mark.asyncio
    async def test_update_and_delete_of_unknown_id_raise_not_found(self, event_store):
        with pytest.raises(EventNotFoundError) as exc_info:
            await event_store.update(42, {"title": "x"})
        assert exc_info.value.status_code == 404
        assert not exc_info.value.retryable

        with pytest.raises(EventNotFoundError):
            await event_store.delete(42)

    @pytest.mark.asyncio
    async def test_fail_next_raises_once(self, event_store):
        event_store.fail_next("delete")
        with pytest.raises(PersistenceError) as exc_info:
            await event_store.delete(1)
        assert exc_info.value.retryable
        assert exc_info.value.status_code == 503
        assert event_store.get(1) is not None

        await event_store.delete(1)
        assert event_store.get(1) is None

    @pytest.mark.asyncio
    async def test_list_by_owner_and_range(self, weekly_master):
        store = InMemoryEventStore(
            [
                weekly_master,
                EventRow(id=2, owner_id=7, start_utc=utc(3, 1, 9), end_utc=utc(3, 1, 10)),
                EventRow(id=3, owner_id=8, start_utc=utc(1, 10, 9), end_utc=utc(1, 10, 10)),
                # override moved out of range whose original slot is inside it
                EventRow(
                    id=4,
                    owner_id=7,
                    series_id=1,
                    original_start_utc=utc(1, 13, 9),
                    start_utc=utc(2, 20, 9),
                    end_utc=utc(2, 20, 10),
                ),
                EventRow(
                    id=5,
                    owner_id=7,
                    is_recurring=True,
                    recurrence_rule='{"frequency": "DAILY"}',
                    recurrence_end_date="2024-12-01",
                    start_utc=datetime(2024, 11, 1, 9, tzinfo=UTC),
                    end_utc=datetime(2024, 11, 1, 10, tzinfo=UTC),
                ),
            ]
        )

        rows = await store.list_by_owner_and_range(7, "2025-01-01", "2025-01-31")
        assert [row.id for row in rows] == [1, 4]

    @pytest.mark.asyncio
    async def test_list_without_owner_returns_every_owner(self, weekly_master):
        store = InMemoryEventStore(
            [weekly_master, EventRow(id=3, owner_id=8, start_utc=utc(1, 10, 9), end_utc=utc(1, 10, 10))]
        )
        rows = await store.list_by_owner_and_range(None, "2025-01-01", "2025-01-31")
        assert [row.id for row in rows] == [1, 3]


class TestInMemorySubtaskStore:
    """Tests for InMemorySubtaskStore."""

    @pytest.mark.asyncio
    async def test_masters_are_listed_by_sort_order(self, subtask_store):
        await subtask_store.create_master(1, "second", sort_order=2)
        await subtask_store.create_master(1, "first", sort_order=1)
        await subtask_store.create_master(2, "other series")

        masters = await subtask_store.list_masters(1)
        assert [m.text for m in masters] == ["first", "second"]

    @pytest.mark.asyncio
    async def test_instance_state_upserts(self, subtask_store, monkeypatch):
        monkeypatch.setenv("CALENDARSERIES_TEST_TIME", "2025-01-13T08:00:00Z")
        master = await subtask_store.create_master(1, "Agenda")

        await subtask_store.toggle_completion_for_instance(master.id, "1_2025-01-13", True)
        state = await subtask_store.hide_for_instance(master.id, "1_2025-01-13")

        assert state.completed
        assert state.hidden
        assert state.completed_at == utc(1, 13, 8)
        assert len(subtask_store.states) == 1

        cleared = await subtask_store.toggle_completion_for_instance(master.id, "1_2025-01-13", False)
        assert cleared.completed_at is None

    @pytest.mark.asyncio
    async def test_deleting_master_drops_its_states(self, subtask_store):
        master = await subtask_store.create_master(1, "Agenda")
        await subtask_store.toggle_completion_for_instance(master.id, "1_2025-01-13", True)

        await subtask_store.delete_master(master.id)

        assert subtask_store.states == {}
        assert await subtask_store.list_instance_states("1_2025-01-13") == []

    @pytest.mark.asyncio
    async def test_updating_unknown_subtask_raises(self):
        store = InMemorySubtaskStore()
        with pytest.raises(PersistenceError):
            await store.update_master(5, {"text": "x"})
        with pytest.raises(PersistenceError):
            await store.update_custom(5, {"text": "x"})

    @pytest.mark.asyncio
    async def test_custom_crud(self, subtask_store):
        custom = await subtask_store.create_custom("7", "Bring slides", sort_order=3)
        updated = await subtask_store.update_custom(custom.id, {"completed": True})
        assert updated.completed
        assert [c.id for c in await subtask_store.list_custom("7")] == [custom.id]

        await subtask_store.delete_custom(custom.id)
        assert await subtask_store.list_custom("7") == []
