"""Optimistic occurrence cache with snapshot/rollback.

Holds the occurrences a caller is currently showing. Mutations are applied
here before the storage round-trip completes and rolled back to the
pre-mutation snapshot if it fails.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Optional

from .series_models import EventViewModel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheSnapshot:
    """Immutable copy of the cache contents at one version."""

    version: int
    entries: tuple[tuple[str, EventViewModel], ...] = field(default_factory=tuple)


class OccurrenceCache:
    """Occurrences keyed by their wire id.

    Example:
        cache = OccurrenceCache(materializer.materialize(rows, start, end))
        snapshot = cache.snapshot()
        cache.upsert(moved_view)
        try:
            await store.update(...)
        except PersistenceError:
            cache.restore(snapshot)
    """

    def __init__(self, views: Optional[Iterable[EventViewModel]] = None):
        self._entries: dict[str, EventViewModel] = {}
        self.version = 0
        self.stats = {"snapshots": 0, "rollbacks": 0}
        if views is not None:
            self.replace_all(views)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, occurrence_id: object) -> bool:
        return occurrence_id in self._entries

    def get(self, occurrence_id: str) -> Optional[EventViewModel]:
        return self._entries.get(occurrence_id)

    def views(self) -> list[EventViewModel]:
        """Cached occurrences sorted by (start_utc, id)."""
        return sorted(self._entries.values(), key=lambda view: (view.start_utc, view.id))

    def replace_all(self, views: Iterable[EventViewModel]) -> None:
        """Replace the contents, e.g. after re-materializing from storage."""
        self._entries = {view.id: view for view in views}
        self.version += 1

    def upsert(self, view: EventViewModel, replaces: Optional[str] = None) -> None:
        """Insert or replace ``view``; drop the entry ``replaces`` when its id changed."""
        if replaces is not None and replaces != view.id:
            self._entries.pop(replaces, None)
        self._entries[view.id] = view
        self.version += 1

    def remove(self, occurrence_id: str) -> Optional[EventViewModel]:
        removed = self._entries.pop(occurrence_id, None)
        if removed is not None:
            self.version += 1
        return removed

    def remove_series(self, series_id: int) -> int:
        """Drop every occurrence belonging to ``series_id``; returns how many were dropped."""
        doomed = [
            key
            for key, view in self._entries.items()
            if view.series_id == series_id or view.row_id == series_id
        ]
        for key in doomed:
            del self._entries[key]
        if doomed:
            self.version += 1
        return len(doomed)

    def snapshot(self) -> CacheSnapshot:
        self.stats["snapshots"] += 1
        return CacheSnapshot(version=self.version, entries=tuple(self._entries.items()))

    def restore(self, snapshot: CacheSnapshot) -> None:
        """Roll back to ``snapshot``."""
        self._entries = dict(snapshot.entries)
        self.version += 1
        self.stats["rollbacks"] += 1
        logger.debug("Occurrence cache rolled back to version %d", snapshot.version)
