"""Subtask migration between occurrence representations.

When an occurrence changes representation (a virtual instance becomes an
override, an occurrence becomes a new series master) its subtasks and their
completion follow it to the new instance key.
"""

import logging
from collections import Counter
from dataclasses import dataclass
from typing import Optional

from .series_exceptions import InvalidOccurrenceError
from .series_models import (
    EffectiveSubtask,
    EventViewModel,
    OccurrenceKind,
    SubtaskMaster,
    SubtaskOrigin,
)
from .series_subtasks import SubtaskInheritanceResolver, count_completed

logger = logging.getLogger(__name__)


@dataclass
class MigrationResult:
    """Summary of one migrate() call."""

    source_key: str
    target_key: str
    same_series: bool
    completed: int = 0
    upserted_states: int = 0
    copied_customs: int = 0
    created_masters: int = 0
    deleted_masters: int = 0
    skipped: int = 0


class SubtaskMigrator:
    """Moves an occurrence's effective subtasks onto another occurrence."""

    def __init__(self, resolver: SubtaskInheritanceResolver):
        self.resolver = resolver
        self.store = resolver.store

    async def migrate(self, old: EventViewModel, new: EventViewModel) -> MigrationResult:
        """Carry the effective subtasks of ``old`` over to ``new``.

        Within one series only instance states and custom rows are written
        under the new key; the series' masters are shared and never copied.
        Across series (or out of a series) new SubtaskMaster rows are created
        under the new owner with the completion copied. Re-running with the
        same target skips what is already there.

        Args:
            old: Occurrence before the representation change
            new: Occurrence after the representation change

        Returns:
            MigrationResult with per-tier counts

        Raises:
            InvalidOccurrenceError: If ``new`` has no row to own copied masters
        """
        items = await self.resolver.resolve(old)
        same_series = (
            old.is_series_bound
            and new.is_series_bound
            and old.series_id is not None
            and old.series_id == new.series_id
        )
        result = MigrationResult(
            source_key=old.instance_key,
            target_key=new.instance_key,
            same_series=same_series,
            completed=count_completed(items),
        )

        if same_series:
            await self._migrate_within_series(old, new, items, result)
        else:
            await self._migrate_to_owner(old, new, items, result)

        logger.info(
            "Migrated subtasks %s -> %s (same_series=%s): %d completed, %d states, "
            "%d customs, %d masters created, %d masters deleted, %d skipped",
            result.source_key,
            result.target_key,
            result.same_series,
            result.completed,
            result.upserted_states,
            result.copied_customs,
            result.created_masters,
            result.deleted_masters,
            result.skipped,
        )
        return result

    async def _migrate_within_series(
        self,
        old: EventViewModel,
        new: EventViewModel,
        items: list[EffectiveSubtask],
        result: MigrationResult,
    ) -> None:
        if result.source_key == result.target_key:
            return

        for state in await self.store.list_instance_states(result.source_key):
            if state.hidden:
                await self.store.hide_for_instance(state.subtask_master_id, result.target_key)
                result.upserted_states += 1

        # Each target row already there stands in for one source item
        existing = Counter((c.text, c.sort_order) for c in await self.store.list_custom(result.target_key))
        for item in items:
            if item.origin == SubtaskOrigin.MASTER:
                if item.completed:
                    await self.store.toggle_completion_for_instance(item.id, result.target_key, True)
                    result.upserted_states += 1
                continue
            if existing[(item.text, item.sort_order)] > 0:
                existing[(item.text, item.sort_order)] -= 1
                result.skipped += 1
                continue
            await self.store.create_custom(
                result.target_key, item.text, sort_order=item.sort_order, completed=item.completed
            )
            result.copied_customs += 1

    async def _migrate_to_owner(
        self,
        old: EventViewModel,
        new: EventViewModel,
        items: list[EffectiveSubtask],
        result: MigrationResult,
    ) -> None:
        owner_id: Optional[int] = new.series_id if new.is_series_bound else new.row_id
        if owner_id is None:
            raise InvalidOccurrenceError(f"Occurrence {new.id} has no row to own migrated subtasks")

        source_owner = old.series_id if old.is_series_bound else old.row_id
        if source_owner == owner_id and result.source_key == result.target_key:
            return

        existing: dict[tuple[str, int], list[SubtaskMaster]] = {}
        for master in await self.store.list_masters(owner_id):
            existing.setdefault((master.text, master.sort_order), []).append(master)
        for item in items:
            matches = existing.get((item.text, item.sort_order))
            if matches:
                match = matches.pop(0)
                result.skipped += 1
                if new.is_series_bound and item.completed:
                    await self.store.toggle_completion_for_instance(match.id, result.target_key, True)
                    result.upserted_states += 1
                continue
            if new.is_series_bound:
                created = await self.store.create_master(owner_id, item.text, sort_order=item.sort_order)
                if item.completed:
                    await self.store.toggle_completion_for_instance(created.id, result.target_key, True)
                    result.upserted_states += 1
            else:
                await self.store.create_master(
                    owner_id, item.text, sort_order=item.sort_order, completed=item.completed
                )
            result.created_masters += 1

        # Only a plain standalone event owns masters nobody else depends on
        plain_standalone = old.kind == OccurrenceKind.STANDALONE and not old.is_liberated
        if plain_standalone and old.row_id is not None and old.row_id != owner_id:
            for item in items:
                if item.origin == SubtaskOrigin.MASTER and item.id is not None:
                    await self.store.delete_master(item.id)
                    result.deleted_masters += 1
