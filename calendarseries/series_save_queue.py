"""Single-flight save queue with trailing-edge coalescing.

Per-keystroke edits are submitted here instead of being saved directly. At
most one save runs at a time; while it runs, newer submissions collapse into
one pending payload that is saved as soon as the running save finishes.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

P = TypeVar("P")
R = TypeVar("R")


@dataclass
class SaveResult(Generic[R]):
    """Result of one save, stamped with the generation it was submitted at."""

    generation: int
    value: R


class SaveQueue(Generic[P, R]):
    """Coalescing save queue.

    Example:
        queue = SaveQueue(save_fields, merge=lambda old, new: {**old, **new})
        queue.submit({"title": "Wa"})
        queue.submit({"title": "Walk"})   # merged while the first save runs
        result = await queue.flush()
        if queue.is_stale(result.generation):
            ...
    """

    def __init__(
        self,
        save: Callable[[P], Awaitable[R]],
        merge: Optional[Callable[[P, P], P]] = None,
        name: str = "save-queue",
    ):
        """Initialize the queue.

        Args:
            save: Coroutine function persisting one payload
            merge: Combines the pending payload with a newer one; without it
                the newer payload replaces the pending one
            name: Label used in log messages
        """
        self._save = save
        self._merge = merge
        self.name = name

        self.generation = 0
        self._pending: Optional[P] = None
        self._pending_generation = 0
        self._has_pending = False
        self._in_flight = False
        self._task: Optional[asyncio.Task[None]] = None

        self.last_result: Optional[SaveResult[R]] = None
        self._last_error: Optional[Exception] = None
        self.stats = {"submitted": 0, "saved": 0, "coalesced": 0, "failed": 0}

    @property
    def in_flight(self) -> bool:
        """Whether a save is currently running."""
        return self._in_flight

    @property
    def has_pending(self) -> bool:
        """Whether a payload is waiting for the running save to finish."""
        return self._has_pending

    def is_stale(self, generation: int) -> bool:
        """Whether a result stamped ``generation`` has been superseded by a newer submit."""
        return generation < self.generation

    def submit(self, payload: P) -> int:
        """Queue ``payload`` for saving and return its generation.

        Must be called from a running event loop.
        """
        self.generation += 1
        self.stats["submitted"] += 1

        if self._has_pending and self._merge is not None:
            self._pending = self._merge(self._pending, payload)
            self.stats["coalesced"] += 1
        else:
            if self._has_pending:
                self.stats["coalesced"] += 1
            self._pending = payload
        self._pending_generation = self.generation
        self._has_pending = True

        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._drain())
        return self.generation

    async def _drain(self) -> None:
        while self._has_pending:
            payload = self._pending
            generation = self._pending_generation
            self._pending = None
            self._has_pending = False

            self._in_flight = True
            try:
                value = await self._save(payload)
            except Exception as e:
                self._last_error = e
                self.stats["failed"] += 1
                logger.warning("%s: save of generation %d failed: %s", self.name, generation, e)
            else:
                self.last_result = SaveResult(generation=generation, value=value)
                self.stats["saved"] += 1
                logger.debug("%s: saved generation %d", self.name, generation)
            finally:
                self._in_flight = False

    async def flush(self) -> Optional[SaveResult[R]]:
        """Wait until nothing is running or pending.

        Returns:
            The most recent successful SaveResult, if any

        Raises:
            Exception: The last save error since the previous flush
        """
        while self._task is not None and not self._task.done():
            await asyncio.shield(self._task)

        error = self._last_error
        if error is not None:
            self._last_error = None
            raise error
        return self.last_result

    def get_stats(self) -> dict[str, Any]:
        return {
            **self.stats,
            "generation": self.generation,
            "in_flight": self._in_flight,
            "has_pending": self._has_pending,
        }
