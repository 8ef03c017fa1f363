"""Three-tier subtask inheritance for calendarseries.

Tier 1 is the SubtaskMaster list owned by a series master (or a standalone
event), tier 2 the per-occurrence SubtaskInstanceState overrides (completion
and hidden flag), tier 3 the per-occurrence CustomSubtask additions.

``SubtaskInheritanceResolver`` flattens the tiers for one occurrence;
``SubtaskEditor`` writes edits back to the tier that owns them.
"""

import logging
from collections.abc import Sequence
from typing import Optional

from .series_exceptions import SubtaskScopeRequiredError
from .series_models import (
    ChangeScope,
    EffectiveSubtask,
    EventViewModel,
    SubtaskChanges,
    SubtaskOrigin,
)
from .series_store import SubtaskStore

logger = logging.getLogger(__name__)

_ORIGIN_RANK = {SubtaskOrigin.MASTER: 0, SubtaskOrigin.CUSTOM: 1}


def _sort_key(item: EffectiveSubtask) -> tuple[int, int, int]:
    return (item.sort_order, _ORIGIN_RANK[item.origin], item.id if item.id is not None else 0)


def count_completed(items: Sequence[EffectiveSubtask]) -> int:
    """Number of completed subtasks in ``items``."""
    return sum(1 for item in items if item.completed)


class SubtaskInheritanceResolver:
    """Resolves the effective subtask list of an occurrence."""

    def __init__(self, store: SubtaskStore):
        self.store = store

    async def resolve(self, occurrence: EventViewModel) -> list[EffectiveSubtask]:
        """Effective subtasks of ``occurrence``, ordered by sort_order (masters first on ties).

        Series-bound occurrences (virtual instances and overrides of a live
        series) inherit the series' masters with this occurrence's states and
        custom additions applied. Standalone events and series masters read
        their own masters with the stored completion.
        """
        if occurrence.is_series_bound and occurrence.series_id is not None:
            return await self._resolve_series_bound(occurrence)

        if occurrence.row_id is None:
            return []
        masters = await self.store.list_masters(occurrence.row_id)
        items = [
            EffectiveSubtask(
                id=master.id,
                text=master.text,
                completed=master.completed,
                origin=SubtaskOrigin.MASTER,
                sort_order=master.sort_order,
            )
            for master in masters
        ]
        return sorted(items, key=_sort_key)

    async def _resolve_series_bound(self, occurrence: EventViewModel) -> list[EffectiveSubtask]:
        instance_key = occurrence.instance_key
        masters = await self.store.list_masters(occurrence.series_id)
        states = {
            state.subtask_master_id: state
            for state in await self.store.list_instance_states(instance_key)
        }

        items: list[EffectiveSubtask] = []
        hidden = 0
        for master in masters:
            state = states.get(master.id)
            if state is not None and state.hidden:
                hidden += 1
                continue
            items.append(
                EffectiveSubtask(
                    id=master.id,
                    text=master.text,
                    completed=state.completed if state is not None else False,
                    origin=SubtaskOrigin.MASTER,
                    sort_order=master.sort_order,
                )
            )

        customs = await self.store.list_custom(instance_key)
        items.extend(
            EffectiveSubtask(
                id=custom.id,
                text=custom.text,
                completed=custom.completed,
                origin=SubtaskOrigin.CUSTOM,
                sort_order=custom.sort_order,
            )
            for custom in customs
        )

        logger.debug(
            "Resolved %d subtasks for %s (%d inherited hidden, %d custom)",
            len(items),
            instance_key,
            hidden,
            len(customs),
        )
        return sorted(items, key=_sort_key)


def detect_structural_changes(
    current: Sequence[EffectiveSubtask], original: Sequence[EffectiveSubtask]
) -> SubtaskChanges:
    """Compare two subtask lists, ignoring completion-only differences.

    Args:
        current: Edited list
        original: List as resolved before editing

    Returns:
        SubtaskChanges with added (no id or unknown id), removed and modified
        (text or sort order changed) items
    """
    original_by_key = {item.key: item for item in original if item.key is not None}
    changes = SubtaskChanges()
    seen: set[tuple[SubtaskOrigin, int]] = set()

    for item in current:
        key = item.key
        before = original_by_key.get(key) if key is not None else None
        if before is None:
            changes.added.append(item)
            continue
        seen.add(key)
        if item.text != before.text or item.sort_order != before.sort_order:
            changes.modified.append(item)

    changes.removed.extend(item for key, item in original_by_key.items() if key not in seen)
    return changes


class SubtaskEditor:
    """Persists subtask edits made on one occurrence."""

    def __init__(self, store: SubtaskStore, resolver: Optional[SubtaskInheritanceResolver] = None):
        self.store = store
        self.resolver = resolver or SubtaskInheritanceResolver(store)

    async def toggle(
        self, occurrence: EventViewModel, item: EffectiveSubtask, completed: bool
    ) -> EffectiveSubtask:
        """Set the completion of ``item`` on ``occurrence``.

        Inherited items of series-bound occurrences are toggled through an
        instance-state upsert so siblings are untouched; custom items and the
        masters of standalone events are updated directly.

        Raises:
            ValueError: If ``item`` has not been saved yet
        """
        if item.id is None:
            raise ValueError("Cannot toggle a subtask that has not been saved")

        if item.origin == SubtaskOrigin.CUSTOM:
            await self.store.update_custom(item.id, {"completed": completed})
        elif occurrence.is_series_bound:
            await self.store.toggle_completion_for_instance(item.id, occurrence.instance_key, completed)
        else:
            await self.store.update_master(item.id, {"completed": completed})

        logger.debug(
            "Subtask %s:%s on %s set completed=%s",
            item.origin.value,
            item.id,
            occurrence.instance_key,
            completed,
        )
        return item.model_copy(update={"completed": completed})

    async def apply_changes(
        self,
        occurrence: EventViewModel,
        current: Sequence[EffectiveSubtask],
        original: Sequence[EffectiveSubtask],
        scope: Optional[ChangeScope] = None,
    ) -> list[EffectiveSubtask]:
        """Persist the difference between ``original`` and ``current``.

        Args:
            occurrence: Occurrence being edited
            current: Edited subtask list
            original: Subtask list as resolved before editing
            scope: THIS_DAY or WHOLE_SERIES; required for structural changes
                on a series-bound occurrence

        Returns:
            The re-resolved subtask list

        Raises:
            SubtaskScopeRequiredError: Structural changes on a series-bound
                occurrence without a scope
        """
        changes = detect_structural_changes(current, original)
        series_bound = occurrence.is_series_bound

        if changes.has_changes and series_bound and scope is None:
            raise SubtaskScopeRequiredError(changes)

        this_day = series_bound and scope == ChangeScope.THIS_DAY
        instance_key = occurrence.instance_key
        owner_id = occurrence.series_id if series_bound else occurrence.row_id

        for item in changes.removed:
            if item.origin == SubtaskOrigin.CUSTOM:
                await self.store.delete_custom(item.id)
            elif this_day:
                await self.store.hide_for_instance(item.id, instance_key)
            else:
                await self.store.delete_master(item.id)

        replaced_keys: set[tuple[SubtaskOrigin, int]] = set()
        for item in changes.modified:
            if item.origin == SubtaskOrigin.CUSTOM:
                await self.store.update_custom(
                    item.id, {"text": item.text, "sort_order": item.sort_order}
                )
            elif this_day:
                replaced_keys.add(item.key)
                await self.store.hide_for_instance(item.id, instance_key)
                await self.store.create_custom(
                    instance_key, item.text, sort_order=item.sort_order, completed=item.completed
                )
            else:
                await self.store.update_master(
                    item.id, {"text": item.text, "sort_order": item.sort_order}
                )

        for item in changes.added:
            if this_day:
                await self.store.create_custom(
                    instance_key, item.text, sort_order=item.sort_order, completed=item.completed
                )
            elif owner_id is None:
                logger.warning("Dropping new subtask %r: occurrence %s has no owner row", item.text, occurrence.id)
            elif series_bound:
                created = await self.store.create_master(owner_id, item.text, sort_order=item.sort_order)
                if item.completed:
                    await self.store.toggle_completion_for_instance(created.id, instance_key, True)
            else:
                await self.store.create_master(
                    owner_id, item.text, sort_order=item.sort_order, completed=item.completed
                )

        # Completion-only differences
        original_by_key = {item.key: item for item in original if item.key is not None}
        for item in current:
            key = item.key
            if key is None or key in replaced_keys:
                continue
            before = original_by_key.get(key)
            if before is not None and before.completed != item.completed:
                await self.toggle(occurrence, item, item.completed)

        if changes.has_changes:
            logger.info(
                "Applied subtask changes to %s (scope=%s): %s",
                instance_key,
                scope.value if scope is not None else "direct",
                changes.counts(),
            )
        return await self.resolver.resolve(occurrence)
