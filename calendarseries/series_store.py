"""Persistence protocols and in-memory stores for calendarseries.

The engine talks to storage only through ``EventStore`` and ``SubtaskStore``.
The in-memory implementations back the tests and local tools; they keep a
call log and can be told to fail the next call of a given method.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import datetime
from typing import Any, Optional, Protocol

from .series_datetime_utils import DateLike, end_of_day, now_utc, start_of_day
from .series_exceptions import EventNotFoundError, InvalidRecurrenceRuleError, PersistenceError
from .series_models import (
    CustomSubtask,
    EventRow,
    OccurrenceKind,
    SubtaskInstanceState,
    SubtaskMaster,
)

logger = logging.getLogger(__name__)


class EventStore(Protocol):
    """Protocol for the event persistence collaborator."""

    async def create(self, fields: Mapping[str, Any]) -> EventRow:
        """Persist a new event row.

        Args:
            fields: Column values (without id)

        Returns:
            The stored row with its assigned id
        """
        ...

    async def update(self, event_id: int, fields: Mapping[str, Any]) -> EventRow:
        """Update columns of an existing row.

        Raises:
            EventNotFoundError: If no row has ``event_id``
        """
        ...

    async def delete(self, event_id: int) -> None:
        """Delete a row.

        Raises:
            EventNotFoundError: If no row has ``event_id``
        """
        ...

    async def list_by_owner_and_range(
        self, owner_id: Optional[int], range_start: DateLike, range_end: DateLike
    ) -> list[EventRow]:
        """Rows of ``owner_id`` relevant to ``[range_start, range_end]``."""
        ...


class SubtaskStore(Protocol):
    """Protocol for the subtask persistence collaborator."""

    async def list_masters(self, owner_event_id: int) -> list[SubtaskMaster]: ...

    async def create_master(
        self, owner_event_id: int, text: str, sort_order: int = 0, completed: bool = False
    ) -> SubtaskMaster: ...

    async def update_master(self, subtask_id: int, fields: Mapping[str, Any]) -> SubtaskMaster: ...

    async def delete_master(self, subtask_id: int) -> None: ...

    async def list_instance_states(self, instance_key: str) -> list[SubtaskInstanceState]: ...

    async def toggle_completion_for_instance(
        self, subtask_id: int, instance_key: str, completed: bool
    ) -> SubtaskInstanceState:
        """Upsert the completion of master subtask ``subtask_id`` for one occurrence."""
        ...

    async def hide_for_instance(
        self, subtask_id: int, instance_key: str, hidden: bool = True
    ) -> SubtaskInstanceState:
        """Upsert the hidden flag of master subtask ``subtask_id`` for one occurrence."""
        ...

    async def list_custom(self, instance_key: str) -> list[CustomSubtask]: ...

    async def create_custom(
        self, instance_key: str, text: str, sort_order: int = 0, completed: bool = False
    ) -> CustomSubtask: ...

    async def update_custom(self, custom_id: int, fields: Mapping[str, Any]) -> CustomSubtask: ...

    async def delete_custom(self, custom_id: int) -> None: ...


class _FailureInjection:
    """Call log plus one-shot failures, shared by the in-memory stores."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self._failures: dict[str, list[Exception]] = {}

    def fail_next(self, method: str, error: Optional[Exception] = None) -> None:
        """Make the next call of ``method`` raise ``error`` (a retryable PersistenceError by default)."""
        self._failures.setdefault(method, []).append(
            error or PersistenceError(f"{method} failed", status_code=503)
        )

    def calls_to(self, method: str) -> list[tuple[Any, ...]]:
        """Arguments of every logged call to ``method``."""
        return [args for name, args in self.calls if name == method]

    def _record(self, method: str, *args: Any) -> None:
        self.calls.append((method, args))
        pending = self._failures.get(method)
        if pending:
            error = pending.pop(0)
            logger.debug("Injected failure for %s%r: %s", method, args, error)
            raise error


class InMemoryEventStore(_FailureInjection):
    """EventStore keeping rows in a dict."""

    def __init__(self, rows: Optional[list[EventRow]] = None) -> None:
        super().__init__()
        self._rows: dict[int, EventRow] = {}
        self._next_id = 1
        for row in rows or []:
            self.add(row)

    def add(self, row: EventRow) -> EventRow:
        """Insert a row with a preset id (test setup, not logged)."""
        self._rows[row.id] = row
        self._next_id = max(self._next_id, row.id + 1)
        return row

    def get(self, event_id: int) -> Optional[EventRow]:
        return self._rows.get(event_id)

    @property
    def rows(self) -> list[EventRow]:
        """All rows ordered by id."""
        return [self._rows[key] for key in sorted(self._rows)]

    async def create(self, fields: Mapping[str, Any]) -> EventRow:
        self._record("create", dict(fields))
        data = {key: value for key, value in fields.items() if key != "id"}
        row = EventRow.model_validate({**data, "id": self._next_id})
        self._next_id += 1
        self._rows[row.id] = row
        logger.debug("Created event %s (%s)", row.id, row.kind.value)
        return row

    async def update(self, event_id: int, fields: Mapping[str, Any]) -> EventRow:
        self._record("update", event_id, dict(fields))
        existing = self._rows.get(event_id)
        if existing is None:
            raise EventNotFoundError(event_id)
        merged = existing.model_dump()
        merged.update({key: value for key, value in fields.items() if key != "id"})
        row = EventRow.model_validate(merged)
        self._rows[event_id] = row
        return row

    async def delete(self, event_id: int) -> None:
        self._record("delete", event_id)
        if self._rows.pop(event_id, None) is None:
            raise EventNotFoundError(event_id)

    async def list_by_owner_and_range(
        self, owner_id: Optional[int], range_start: DateLike, range_end: DateLike
    ) -> list[EventRow]:
        self._record("list_by_owner_and_range", owner_id, range_start, range_end)
        window_start = start_of_day(range_start)
        window_end = end_of_day(range_end)
        return [
            row
            for row in self.rows
            if (owner_id is None or row.owner_id == owner_id)
            and _row_touches_range(row, window_start, window_end)
        ]


def _row_touches_range(row: EventRow, window_start: datetime, window_end: datetime) -> bool:
    if row.kind == OccurrenceKind.SERIES_MASTER:
        if row.start_utc > window_end:
            return False
        try:
            rule = row.rule
        except InvalidRecurrenceRuleError:
            return True
        end_date = rule.end_date if rule is not None else None
        return end_date is None or end_of_day(end_date) >= window_start

    if row.start_utc <= window_end and row.end_utc >= window_start:
        return True
    # Overrides must come back whenever the slot they replace is in range
    original = row.original_start_utc
    return original is not None and window_start <= original <= window_end


class InMemorySubtaskStore(_FailureInjection):
    """SubtaskStore keeping the three tiers in dicts."""

    def __init__(self) -> None:
        super().__init__()
        self.masters: dict[int, SubtaskMaster] = {}
        self.states: dict[tuple[int, str], SubtaskInstanceState] = {}
        self.customs: dict[int, CustomSubtask] = {}
        self._next_master_id = 1
        self._next_custom_id = 1

    async def list_masters(self, owner_event_id: int) -> list[SubtaskMaster]:
        self._record("list_masters", owner_event_id)
        found = [m for m in self.masters.values() if m.owner_event_id == owner_event_id]
        return sorted(found, key=lambda m: (m.sort_order, m.id))

    async def create_master(
        self, owner_event_id: int, text: str, sort_order: int = 0, completed: bool = False
    ) -> SubtaskMaster:
        self._record("create_master", owner_event_id, text, sort_order, completed)
        master = SubtaskMaster(
            id=self._next_master_id,
            owner_event_id=owner_event_id,
            text=text,
            sort_order=sort_order,
            completed=completed,
        )
        self._next_master_id += 1
        self.masters[master.id] = master
        return master

    async def update_master(self, subtask_id: int, fields: Mapping[str, Any]) -> SubtaskMaster:
        self._record("update_master", subtask_id, dict(fields))
        existing = self.masters.get(subtask_id)
        if existing is None:
            raise PersistenceError(f"Subtask {subtask_id} not found", status_code=404, retryable=False)
        updated = existing.model_copy(update=dict(fields))
        self.masters[subtask_id] = updated
        return updated

    async def delete_master(self, subtask_id: int) -> None:
        self._record("delete_master", subtask_id)
        self.masters.pop(subtask_id, None)
        for key in [key for key in self.states if key[0] == subtask_id]:
            del self.states[key]

    async def list_instance_states(self, instance_key: str) -> list[SubtaskInstanceState]:
        self._record("list_instance_states", instance_key)
        return [state for (_, key), state in self.states.items() if key == instance_key]

    async def toggle_completion_for_instance(
        self, subtask_id: int, instance_key: str, completed: bool
    ) -> SubtaskInstanceState:
        self._record("toggle_completion_for_instance", subtask_id, instance_key, completed)
        state = self._state(subtask_id, instance_key).model_copy(
            update={"completed": completed, "completed_at": now_utc() if completed else None}
        )
        self.states[(subtask_id, instance_key)] = state
        return state

    async def hide_for_instance(
        self, subtask_id: int, instance_key: str, hidden: bool = True
    ) -> SubtaskInstanceState:
        self._record("hide_for_instance", subtask_id, instance_key, hidden)
        state = self._state(subtask_id, instance_key).model_copy(update={"hidden": hidden})
        self.states[(subtask_id, instance_key)] = state
        return state

    def _state(self, subtask_id: int, instance_key: str) -> SubtaskInstanceState:
        return self.states.get(
            (subtask_id, instance_key),
            SubtaskInstanceState(subtask_master_id=subtask_id, instance_key=instance_key),
        )

    async def list_custom(self, instance_key: str) -> list[CustomSubtask]:
        self._record("list_custom", instance_key)
        found = [c for c in self.customs.values() if c.instance_key == instance_key]
        return sorted(found, key=lambda c: (c.sort_order, c.id))

    async def create_custom(
        self, instance_key: str, text: str, sort_order: int = 0, completed: bool = False
    ) -> CustomSubtask:
        self._record("create_custom", instance_key, text, sort_order, completed)
        custom = CustomSubtask(
            id=self._next_custom_id,
            instance_key=instance_key,
            text=text,
            sort_order=sort_order,
            completed=completed,
        )
        self._next_custom_id += 1
        self.customs[custom.id] = custom
        return custom

    async def update_custom(self, custom_id: int, fields: Mapping[str, Any]) -> CustomSubtask:
        self._record("update_custom", custom_id, dict(fields))
        existing = self.customs.get(custom_id)
        if existing is None:
            raise PersistenceError(f"Custom subtask {custom_id} not found", status_code=404, retryable=False)
        updated = existing.model_copy(update=dict(fields))
        self.customs[custom_id] = updated
        return updated

    async def delete_custom(self, custom_id: int) -> None:
        self._record("delete_custom", custom_id)
        self.customs.pop(custom_id, None)
