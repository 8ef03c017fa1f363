"""Occurrence state transitions for calendarseries.

``OverrideReconciler`` turns user edits of single occurrences into storage
writes: a virtual instance becomes an override when moved or edited, a
cancelled override (tombstone) when deleted, and a brand-new series when its
recurrence is edited. Every mutation receives the occurrence it acts on and
never reads state captured earlier.

Concurrency model: one commit per occurrence id at a time. A second commit
for an id whose commit is still running is dropped (logged, returns None).
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Optional, TypeVar

from dateutil.relativedelta import relativedelta

from .series_cache import OccurrenceCache
from .series_datetime_utils import DateLike, as_date, ensure_utc, timestamp_key
from .series_exceptions import (
    CommitFailedError,
    EventNotFoundError,
    InvalidOccurrenceError,
    InvalidRecurrenceRuleError,
    PersistenceError,
    SeriesDeleteError,
)
from .series_logging import commit_context
from .series_materializer import InstanceMaterializer
from .series_models import (
    EventRow,
    EventViewModel,
    OccurrenceKind,
    RecurrenceRule,
    VirtualInstanceId,
)
from .series_save_queue import SaveQueue, SaveResult
from .series_store import EventStore, SubtaskStore
from .series_subtask_migrator import SubtaskMigrator
from .series_subtasks import SubtaskInheritanceResolver

logger = logging.getLogger(__name__)

T = TypeVar("T")

EDITABLE_FIELDS = frozenset({"title", "description", "color"})


def _merge_fields(pending: dict[str, Any], newer: dict[str, Any]) -> dict[str, Any]:
    return {**pending, **newer}


class OverrideReconciler:
    """Applies occurrence-level mutations to the event and subtask stores."""

    def __init__(
        self,
        events: EventStore,
        subtasks: SubtaskStore,
        materializer: Optional[InstanceMaterializer] = None,
        cache: Optional[OccurrenceCache] = None,
        settings: Any = None,
    ):
        """Initialize the reconciler.

        Args:
            events: Event persistence collaborator
            subtasks: Subtask persistence collaborator
            materializer: Materializer used to build views (created from settings if omitted)
            cache: Optional optimistic cache kept in sync with commits
            settings: Config-like object (visibility, padding, expansion cap)
        """
        self.events = events
        self.subtasks = subtasks
        self.materializer = materializer or InstanceMaterializer(settings)
        self.engine = self.materializer.engine
        self.cache = cache
        self.resolver = SubtaskInheritanceResolver(subtasks)
        self.migrator = SubtaskMigrator(self.resolver)

        self._locks: set[str] = set()
        # virtual id -> id of the row that replaced it
        self._aliases: dict[str, str] = {}
        self._save_queues: dict[str, SaveQueue[dict[str, Any], Optional[EventViewModel]]] = {}
        self._queued_targets: dict[str, EventViewModel] = {}
        # occurrence id -> last saved view, restored when a queued save fails
        self._queued_baselines: dict[str, Optional[EventViewModel]] = {}

    # ------------------------------------------------------------------
    # Loading and lookup
    # ------------------------------------------------------------------

    async def load(
        self, owner_id: Optional[int], range_start: DateLike, range_end: DateLike
    ) -> tuple[list[EventRow], list[EventViewModel]]:
        """Fetch the rows around a range and materialize it.

        Rows are fetched over the range widened by the configured padding so
        series and overrides straddling the boundary are seen. The attached
        cache, if any, is replaced with the result.

        Returns:
            (rows, views) so callers can pass the rows to later mutations
        """
        padding = relativedelta(months=self.materializer.config.range_padding_months)
        rows = await self.events.list_by_owner_and_range(
            owner_id, as_date(range_start) - padding, as_date(range_end) + padding
        )
        views = self.materializer.materialize(rows, range_start, range_end)
        if self.cache is not None:
            self.cache.replace_all(views)
        return rows, views

    def resolve_alias(self, instance_id: str) -> str:
        """Follow id aliases left behind by virtual -> override conversions."""
        seen: set[str] = set()
        current = str(instance_id)
        while current in self._aliases and current not in seen:
            seen.add(current)
            current = self._aliases[current]
        return current

    def is_locked(self, occurrence_id: str) -> bool:
        return str(occurrence_id) in self._locks

    def locate(self, instance_id: str, rows: Sequence[EventRow]) -> EventViewModel:
        """Resolve a wire id against ``rows``.

        Accepts a virtual id (``{seriesId}_{YYYY-MM-DD}``) or a row id; ids of
        converted virtual instances are redirected to their override.

        Raises:
            InvalidInstanceIdError: If the id is neither a row id nor a virtual id
            InvalidOccurrenceError: If the id does not match any occurrence
        """
        wire_id = self.resolve_alias(str(instance_id).strip())
        by_id = {row.id: row for row in rows}

        if wire_id.isdigit():
            row = by_id.get(int(wire_id))
            if row is None:
                raise InvalidOccurrenceError(f"No event with id {wire_id}")
            master = self._live_master(by_id, row.series_id)
            if row.kind == OccurrenceKind.OVERRIDE and master is not None:
                self._check_override_slot(row, master)
            return self.materializer.view_for_row(row, master)

        virtual_id = VirtualInstanceId.parse(wire_id)
        master = self._live_master(by_id, virtual_id.series_id)
        if master is None:
            raise InvalidOccurrenceError(f"Series {virtual_id.series_id} of {wire_id} not found")
        try:
            rule = master.rule
        except InvalidRecurrenceRuleError as e:
            raise InvalidOccurrenceError(f"Series {master.id} has an invalid rule: {e}") from e
        if rule is None:
            raise InvalidOccurrenceError(f"Series {master.id} has no recurrence rule")

        occurrences = self.engine.expand(
            rule, master.start_utc, virtual_id.occurrence_date, virtual_id.occurrence_date
        )
        if not occurrences:
            raise InvalidOccurrenceError(f"Series {master.id} has no occurrence on {virtual_id.occurrence_date}")
        occurrence_start = occurrences[0]

        wanted = timestamp_key(occurrence_start)
        for row in rows:
            if (
                row.kind == OccurrenceKind.OVERRIDE
                and row.series_id == master.id
                and row.original_start_utc is not None
                and timestamp_key(row.original_start_utc) == wanted
            ):
                return self.materializer.view_for_row(row, master)
        return self.materializer.virtual_view(master, occurrence_start, rule)

    @staticmethod
    def _live_master(by_id: Mapping[int, EventRow], series_id: Optional[int]) -> Optional[EventRow]:
        if series_id is None:
            return None
        master = by_id.get(series_id)
        if master is None or master.kind != OccurrenceKind.SERIES_MASTER:
            return None
        return master

    def _check_override_slot(self, override: EventRow, master: EventRow) -> None:
        try:
            rule = master.rule
        except InvalidRecurrenceRuleError:
            return
        if rule is None or override.original_start_utc is None:
            return
        if not self.engine.produces(rule, master.start_utc, override.original_start_utc):
            logger.warning(
                "Override %s replaces %s, which series %s does not produce",
                override.id,
                override.original_start_utc.isoformat(),
                master.id,
            )

    # ------------------------------------------------------------------
    # Commit plumbing
    # ------------------------------------------------------------------

    @contextmanager
    def _hold(self, key: str) -> Iterator[bool]:
        """Acquire the per-id lock; yields False when a commit for ``key`` is running."""
        if key in self._locks:
            yield False
            return
        self._locks.add(key)
        try:
            yield True
        finally:
            self._locks.discard(key)

    async def _commit(
        self,
        occurrence_id: str,
        operation: str,
        action: Callable[[], Awaitable[T]],
        optimistic: Optional[Callable[[OccurrenceCache], None]] = None,
        reconcile: Optional[Callable[[OccurrenceCache, T], None]] = None,
    ) -> Optional[T]:
        """Run ``action`` as one commit for ``occurrence_id``.

        Args:
            occurrence_id: Lock key (wire id of the occurrence)
            operation: Name used in log messages
            action: Coroutine function performing the storage writes
            optimistic: Cache change applied before ``action`` runs
            reconcile: Cache change applied with the action's result

        Returns:
            The action's result, or None when the commit was dropped

        Raises:
            CommitFailedError: Storage failed; the cache was rolled back
        """
        with self._hold(occurrence_id) as acquired:
            if not acquired:
                logger.debug("Dropping %s for %s: a commit is already in flight", operation, occurrence_id)
                return None

            with commit_context() as commit_id:
                snapshot = self.cache.snapshot() if self.cache is not None else None
                if self.cache is not None and optimistic is not None:
                    optimistic(self.cache)
                try:
                    result = await action()
                except PersistenceError as e:
                    if snapshot is not None:
                        self.cache.restore(snapshot)
                    logger.warning(
                        "%s of %s failed (commit %s, status=%s): %s",
                        operation,
                        occurrence_id,
                        commit_id,
                        e.status_code,
                        e,
                    )
                    raise CommitFailedError(occurrence_id, retryable=e.retryable) from e
                except Exception:
                    if snapshot is not None:
                        self.cache.restore(snapshot)
                    raise

                if self.cache is not None and reconcile is not None:
                    reconcile(self.cache, result)
                logger.info("%s of %s committed (commit %s)", operation, occurrence_id, commit_id)
                return result

    @staticmethod
    def _row_fields(occurrence: EventViewModel) -> dict[str, Any]:
        """Column values recreating ``occurrence`` as a row."""
        fields: dict[str, Any] = {
            "owner_id": occurrence.owner_id,
            "title": occurrence.title,
            "description": occurrence.description,
            "color": occurrence.color,
            "start_utc": occurrence.start_utc,
            "end_utc": occurrence.end_utc,
            "is_cancelled": occurrence.is_cancelled,
        }
        if occurrence.kind == OccurrenceKind.SERIES_MASTER and occurrence.recurrence_rule is not None:
            fields["is_recurring"] = True
            fields["recurrence_rule"] = occurrence.recurrence_rule.to_wire()
            fields["recurrence_end_date"] = occurrence.recurrence_rule.end_date
        elif occurrence.series_id is not None:
            fields["series_id"] = occurrence.series_id
            fields["original_start_utc"] = occurrence.original_start_utc
        return fields

    def _override_fields(self, occurrence: EventViewModel, **changes: Any) -> dict[str, Any]:
        """Fields of an override replacing the virtual ``occurrence``."""
        fields = self._row_fields(occurrence)
        fields["series_id"] = occurrence.series_id
        fields["original_start_utc"] = occurrence.original_start_utc or occurrence.start_utc
        fields.update(changes)
        return fields

    def _override_view(self, row: EventRow, occurrence: EventViewModel) -> EventViewModel:
        """View of an override row created for the series-bound ``occurrence``."""
        view = self.materializer.view_for_row(row)
        return view.model_copy(
            update={"kind": OccurrenceKind.OVERRIDE, "recurrence_rule": occurrence.recurrence_rule}
        )

    def _view_after_update(self, row: EventRow, occurrence: EventViewModel) -> EventViewModel:
        if occurrence.kind == OccurrenceKind.OVERRIDE and row.kind == OccurrenceKind.OVERRIDE:
            return self._override_view(row, occurrence)
        return self.materializer.view_for_row(row)

    async def _update_with_fallback(
        self, occurrence: EventViewModel, fields: Mapping[str, Any]
    ) -> EventRow:
        """Update the occurrence's row; recreate it first when the store no longer has it."""
        if occurrence.row_id is None:
            raise InvalidOccurrenceError(f"Occurrence {occurrence.id} has no row to update")
        try:
            return await self.events.update(occurrence.row_id, fields)
        except EventNotFoundError:
            logger.info("Event %s not found on update; recreating it before retrying", occurrence.row_id)

        created = await self.events.create(self._row_fields(occurrence))
        self._aliases[occurrence.id] = str(created.id)
        if occurrence.virtual_id is not None:
            self._aliases[str(occurrence.virtual_id)] = str(created.id)
        return await self.events.update(created.id, fields)

    async def _convert_virtual(self, occurrence: EventViewModel, **changes: Any) -> EventViewModel:
        """Persist the virtual ``occurrence`` as an override and move its subtasks over."""
        row = await self.events.create(self._override_fields(occurrence, **changes))
        view = self._override_view(row, occurrence)
        self._aliases[occurrence.id] = view.id
        if not row.is_cancelled:
            await self.migrator.migrate(occurrence, view)
        logger.debug("Virtual occurrence %s is now override %s", occurrence.id, row.id)
        return view

    @staticmethod
    def _replace_in_cache(old_id: str) -> Callable[[OccurrenceCache, EventViewModel], None]:
        def reconcile(cache: OccurrenceCache, view: EventViewModel) -> None:
            cache.upsert(view, replaces=old_id)

        return reconcile

    # ------------------------------------------------------------------
    # Occurrence mutations
    # ------------------------------------------------------------------

    async def move_occurrence(
        self, occurrence: EventViewModel, new_start: datetime, new_end: datetime
    ) -> Optional[EventViewModel]:
        """Move and/or resize one occurrence.

        A virtual instance becomes an override of its rule timestamp; rows are
        updated in place (a series master move shifts the whole series).

        Returns:
            The occurrence after the move, or None when the commit was dropped
        """
        new_start = ensure_utc(new_start)
        new_end = ensure_utc(new_end)
        if new_end < new_start:
            raise InvalidOccurrenceError(f"Occurrence {occurrence.id} cannot end before it starts")

        async def action() -> EventViewModel:
            if occurrence.kind == OccurrenceKind.VIRTUAL:
                return await self._convert_virtual(occurrence, start_utc=new_start, end_utc=new_end)
            row = await self._update_with_fallback(
                occurrence, {"start_utc": new_start, "end_utc": new_end}
            )
            return self._view_after_update(row, occurrence)

        def optimistic(cache: OccurrenceCache) -> None:
            cache.upsert(occurrence.model_copy(update={"start_utc": new_start, "end_utc": new_end}))

        return await self._commit(
            occurrence.id, "move", action, optimistic, self._replace_in_cache(occurrence.id)
        )

    async def update_occurrence(
        self, occurrence: EventViewModel, fields: Mapping[str, Any]
    ) -> Optional[EventViewModel]:
        """Edit title, description or color of one occurrence.

        Raises:
            InvalidOccurrenceError: If ``fields`` contains anything else
        """
        unknown = set(fields) - EDITABLE_FIELDS
        if unknown:
            raise InvalidOccurrenceError(f"Fields {sorted(unknown)} cannot be edited on an occurrence")
        changes = dict(fields)

        async def action() -> EventViewModel:
            if occurrence.kind == OccurrenceKind.VIRTUAL:
                return await self._convert_virtual(occurrence, **changes)
            row = await self._update_with_fallback(occurrence, changes)
            return self._view_after_update(row, occurrence)

        def optimistic(cache: OccurrenceCache) -> None:
            cache.upsert(occurrence.model_copy(update=changes))

        return await self._commit(
            occurrence.id, "update", action, optimistic, self._replace_in_cache(occurrence.id)
        )

    def queue_update(self, occurrence: EventViewModel, fields: Mapping[str, Any]) -> int:
        """Queue a field edit (e.g. per keystroke) for ``occurrence``.

        Edits for the same occurrence are merged while a save is running; at
        most one save per occurrence is in flight.

        Returns:
            The generation stamp of this edit
        """
        unknown = set(fields) - EDITABLE_FIELDS
        if unknown:
            raise InvalidOccurrenceError(f"Fields {sorted(unknown)} cannot be edited on an occurrence")

        key = occurrence.id
        self._queued_targets.setdefault(key, occurrence)
        queue = self._save_queues.get(key)
        if queue is None:

            async def save(payload: dict[str, Any]) -> Optional[EventViewModel]:
                target = self._queued_targets[key]
                try:
                    result = await self.update_occurrence(target, payload)
                except CommitFailedError:
                    self._restore_queued_baseline(key, target)
                    raise
                if not self._save_queues[key].has_pending:
                    self._queued_baselines.pop(key, None)
                elif result is not None:
                    self._queued_baselines[key] = result
                if result is None:
                    logger.warning("Queued save for %s was dropped by a concurrent commit", key)
                else:
                    self._queued_targets[key] = result
                return result

            queue = SaveQueue(save, merge=_merge_fields, name=f"occurrence-{key}")
            self._save_queues[key] = queue

        if self.cache is not None:
            current = self.cache.get(self._queued_targets[key].id)
            if key not in self._queued_baselines:
                self._queued_baselines[key] = current
            current = current or self._queued_targets[key]
            self.cache.upsert(current.model_copy(update=dict(fields)))
        return queue.submit(dict(fields))

    def _restore_queued_baseline(self, key: str, target: EventViewModel) -> None:
        """Put the last saved view of a queued occurrence back into the cache."""
        if key not in self._queued_baselines or self.cache is None:
            return
        if self._save_queues[key].has_pending:
            baseline = self._queued_baselines[key]
        else:
            baseline = self._queued_baselines.pop(key)
        if baseline is None:
            self.cache.remove(target.id)
        else:
            self.cache.upsert(baseline, replaces=target.id)

    async def flush_updates(self) -> dict[str, Optional[SaveResult[Optional[EventViewModel]]]]:
        """Wait for every queued edit to be saved.

        Returns:
            Last save result per queued occurrence id

        Raises:
            CommitFailedError: The first failure among the queued saves
        """
        keys = list(self._save_queues)
        outcomes = await asyncio.gather(
            *(self._save_queues[key].flush() for key in keys), return_exceptions=True
        )
        results: dict[str, Optional[SaveResult[Optional[EventViewModel]]]] = {}
        first_error: Optional[BaseException] = None
        for key, outcome in zip(keys, outcomes):
            if isinstance(outcome, BaseException):
                first_error = first_error or outcome
                continue
            results[key] = outcome
        if first_error is not None:
            raise first_error
        return results

    async def delete_occurrence(self, occurrence: EventViewModel) -> Optional[EventViewModel]:
        """Delete only this occurrence.

        Series occurrences are replaced by a cancelled override (tombstone) so
        the date is never emitted again; standalone rows are deleted.

        Returns:
            The tombstone for series occurrences, the deleted view for
            standalone ones, or None when the commit was dropped

        Raises:
            InvalidOccurrenceError: For a series master (use delete_series)
        """
        if occurrence.kind == OccurrenceKind.SERIES_MASTER:
            raise InvalidOccurrenceError(
                f"Event {occurrence.id} is a series master; delete the whole series instead"
            )

        async def action() -> EventViewModel:
            if occurrence.kind == OccurrenceKind.VIRTUAL:
                return await self._convert_virtual(
                    occurrence,
                    start_utc=occurrence.original_start_utc or occurrence.start_utc,
                    end_utc=occurrence.end_utc,
                    is_cancelled=True,
                )
            if occurrence.kind == OccurrenceKind.OVERRIDE:
                row = await self._update_with_fallback(occurrence, {"is_cancelled": True})
                return self._override_view(row, occurrence)
            try:
                await self.events.delete(occurrence.row_id)
            except EventNotFoundError:
                logger.info("Event %s was already deleted", occurrence.row_id)
            return occurrence

        def optimistic(cache: OccurrenceCache) -> None:
            cache.remove(occurrence.id)

        def reconcile(cache: OccurrenceCache, result: EventViewModel) -> None:
            cache.remove(result.id)

        return await self._commit(occurrence.id, "delete", action, optimistic, reconcile)

    async def restore_occurrence(self, tombstone: EventViewModel) -> Optional[str]:
        """Bring back an occurrence deleted with delete_occurrence.

        Deleting the tombstone lets the rule timestamp materialize again.

        Returns:
            Virtual id of the restored occurrence, or None when dropped

        Raises:
            InvalidOccurrenceError: If ``tombstone`` is not a cancelled override
        """
        if not tombstone.is_cancelled or tombstone.row_id is None or tombstone.series_id is None:
            raise InvalidOccurrenceError(f"Occurrence {tombstone.id} is not a cancelled occurrence")
        original = tombstone.original_start_utc or tombstone.start_utc
        virtual_id = str(VirtualInstanceId(series_id=tombstone.series_id, occurrence_date=original.date()))

        async def action() -> str:
            await self.events.delete(tombstone.row_id)
            self._aliases.pop(virtual_id, None)
            return virtual_id

        return await self._commit(tombstone.id, "restore", action)

    async def edit_recurrence(
        self, occurrence: EventViewModel, rule: RecurrenceRule
    ) -> Optional[EventViewModel]:
        """Apply ``rule`` starting from ``occurrence``.

        A plain standalone event or a series master is edited in place. Any
        occurrence that belongs (or belonged) to a series becomes a brand-new
        series master at its current time; the old series keeps all its other
        occurrences and the original slot is tombstoned.

        Returns:
            View of the resulting series master, or None when dropped
        """
        in_place = occurrence.kind == OccurrenceKind.SERIES_MASTER or (
            occurrence.kind == OccurrenceKind.STANDALONE and not occurrence.is_liberated
        )
        rule_fields = {
            "is_recurring": True,
            "recurrence_rule": rule.to_wire(),
            "recurrence_end_date": rule.end_date,
        }

        async def edit_in_place() -> EventViewModel:
            row = await self._update_with_fallback(occurrence, rule_fields)
            return self.materializer.view_for_row(row)

        async def split_off() -> EventViewModel:
            fields = self._row_fields(occurrence)
            fields.update(rule_fields)
            fields.update({"series_id": None, "original_start_utc": None, "is_cancelled": False})
            master = await self.events.create(fields)
            master_view = self.materializer.view_for_row(master)

            await self.migrator.migrate(occurrence, master_view)

            original = occurrence.original_start_utc or occurrence.start_utc
            slot = {
                "start_utc": original,
                "end_utc": original + (occurrence.end_utc - occurrence.start_utc),
                "is_cancelled": True,
            }
            tombstone: Optional[EventRow] = None
            try:
                if occurrence.kind == OccurrenceKind.OVERRIDE:
                    # The override keeps shadowing its slot; it only turns into a tombstone
                    tombstone = await self._update_with_fallback(occurrence, slot)
                elif occurrence.kind == OccurrenceKind.VIRTUAL:
                    tombstone = await self.events.create(self._override_fields(occurrence, **slot))
                elif occurrence.row_id is not None:
                    try:
                        await self.events.delete(occurrence.row_id)
                    except EventNotFoundError:
                        logger.info("Event %s was already deleted", occurrence.row_id)
            except PersistenceError:
                await self._discard_split_master(master.id)
                raise

            if tombstone is not None:
                logger.debug("Series %s slot %s tombstoned by %s", occurrence.series_id, original, tombstone.id)
                if occurrence.virtual_id is not None:
                    self._aliases[str(occurrence.virtual_id)] = str(tombstone.id)

            logger.info(
                "Occurrence %s split off into new series %s (%s)",
                occurrence.id,
                master.id,
                rule.frequency,
            )
            return master_view

        def optimistic(cache: OccurrenceCache) -> None:
            if not in_place:
                cache.remove(occurrence.id)

        return await self._commit(
            occurrence.id,
            "edit recurrence",
            edit_in_place if in_place else split_off,
            optimistic,
            self._replace_in_cache(occurrence.id),
        )

    async def _discard_split_master(self, master_id: int) -> None:
        """Remove a just-created series master whose split could not finish."""
        try:
            for item in await self.subtasks.list_masters(master_id):
                await self.subtasks.delete_master(item.id)
            await self.events.delete(master_id)
        except PersistenceError as e:
            logger.warning("Could not remove series %s after a failed split: %s", master_id, e)
        else:
            logger.info("Removed series %s after a failed split", master_id)

    # ------------------------------------------------------------------
    # Series mutations
    # ------------------------------------------------------------------

    async def update_series(
        self, master: EventRow, fields: Mapping[str, Any]
    ) -> Optional[EventRow]:
        """Edit a series master in place; every virtual occurrence follows.

        Raises:
            InvalidOccurrenceError: If ``master`` is not a series master or
                ``fields`` would turn it into an override
        """
        if master.kind != OccurrenceKind.SERIES_MASTER:
            raise InvalidOccurrenceError(f"Event {master.id} is not a series master")
        changes = dict(fields)
        if changes.get("series_id") is not None or changes.get("original_start_utc") is not None:
            raise InvalidOccurrenceError("A series master cannot be turned into an override")
        rule = changes.get("recurrence_rule")
        if isinstance(rule, RecurrenceRule):
            changes["recurrence_rule"] = rule.to_wire()
            changes.setdefault("recurrence_end_date", rule.end_date)

        async def action() -> EventRow:
            return await self.events.update(master.id, changes)

        def reconcile(cache: OccurrenceCache, row: EventRow) -> None:
            # Virtual occurrences must be re-materialized from the new master
            cache.remove_series(row.id)

        return await self._commit(str(master.id), "series update", action, reconcile=reconcile)

    async def delete_series(
        self,
        series_id: int,
        rows: Iterable[EventRow],
        views: Iterable[EventViewModel] = (),
    ) -> Optional[list[int]]:
        """Delete a series master and every override of it, tombstones included.

        Overrides are collected from ``rows`` and, by row id, from ``views``;
        virtual ids are never sent to the store. Every delete is attempted
        independently.

        Returns:
            Deleted row ids, or None when a commit for the series is running

        Raises:
            SeriesDeleteError: If any delete failed (after all were attempted)
        """
        targets: list[int] = [series_id]
        for row in rows:
            if row.kind == OccurrenceKind.OVERRIDE and row.series_id == series_id:
                targets.append(row.id)
        for view in views:
            if view.kind != OccurrenceKind.VIRTUAL and view.row_id is not None and view.series_id == series_id:
                targets.append(view.row_id)
        targets = list(dict.fromkeys(targets))

        key = str(series_id)
        with self._hold(key) as acquired:
            if not acquired:
                logger.debug("Dropping series delete for %s: a commit is already in flight", series_id)
                return None

            with commit_context() as commit_id:
                snapshot = self.cache.snapshot() if self.cache is not None else None
                if self.cache is not None:
                    self.cache.remove_series(series_id)

                outcomes = await asyncio.gather(
                    *(self.events.delete(row_id) for row_id in targets), return_exceptions=True
                )

                deleted: list[int] = []
                failures: dict[int, Exception] = {}
                for row_id, outcome in zip(targets, outcomes):
                    if isinstance(outcome, EventNotFoundError):
                        logger.debug("Row %s of series %s was already gone", row_id, series_id)
                        deleted.append(row_id)
                    elif isinstance(outcome, Exception):
                        failures[row_id] = outcome
                    else:
                        deleted.append(row_id)

                deleted_keys = {str(row_id) for row_id in deleted}
                self._aliases = {
                    alias: target
                    for alias, target in self._aliases.items()
                    if not (alias.startswith(f"{series_id}_") or target in deleted_keys)
                }

                if failures:
                    if snapshot is not None:
                        self.cache.restore(snapshot)
                        for row_id in deleted:
                            self.cache.remove(str(row_id))
                    logger.warning(
                        "Series %s delete (commit %s): %d of %d rows failed",
                        series_id,
                        commit_id,
                        len(failures),
                        len(targets),
                    )
                    raise SeriesDeleteError(series_id, deleted, failures)

                logger.info(
                    "Series %s deleted (commit %s): %d rows", series_id, commit_id, len(deleted)
                )
                return deleted
