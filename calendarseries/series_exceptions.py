"""Exception hierarchy for the calendarseries engine.

Mutation entry points raise these instead of generic exceptions so callers can
tell a retryable storage failure apart from bad input or a decision that only
the user can make.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from .series_models import SubtaskChanges


class SeriesEngineError(Exception):
    """Base exception for all calendarseries errors."""


class InvalidRecurrenceRuleError(SeriesEngineError, ValueError):
    """A recurrence rule could not be parsed.

    Raised when:
    - recurrence_rule is not valid JSON
    - the decoded rule has no frequency
    """


class InvalidInstanceIdError(SeriesEngineError, ValueError):
    """An occurrence id does not match the ``{seriesId}_{YYYY-MM-DD}`` pattern."""


class InvalidOccurrenceError(SeriesEngineError):
    """The occurrence cannot take part in the requested transition.

    Raised when:
    - an id does not resolve to any known occurrence
    - an override would replace a timestamp the rule never produces
    - the occurrence kind does not support the operation
    """


class PersistenceError(SeriesEngineError):
    """The persistence collaborator failed.

    Attributes:
        status_code: HTTP-like status when the backend reported one
        retryable: Whether repeating the same request may succeed
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retryable: bool = True,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class EventNotFoundError(PersistenceError):
    """``update``/``delete`` addressed an id the store does not know (HTTP 404)."""

    def __init__(self, event_id: Any) -> None:
        super().__init__(f"Event {event_id} not found", status_code=404, retryable=False)
        self.event_id = event_id


class CommitFailedError(SeriesEngineError):
    """A user mutation could not be committed and was rolled back.

    ``user_message`` is safe to show as-is; the original storage error is
    chained as ``__cause__``.
    """

    def __init__(
        self,
        occurrence_id: str,
        user_message: str = "The change could not be saved. Please try again.",
        retryable: bool = True,
    ) -> None:
        super().__init__(f"Commit failed for occurrence {occurrence_id}: {user_message}")
        self.occurrence_id = occurrence_id
        self.user_message = user_message
        self.retryable = retryable


class SeriesDeleteError(SeriesEngineError):
    """Some rows of a "whole series" delete failed.

    Every row is attempted; ``deleted`` lists the ids that went through and
    ``failures`` maps each failed id to its error.
    """

    def __init__(self, series_id: int, deleted: list[int], failures: dict[int, Exception]) -> None:
        super().__init__(
            f"Deleting series {series_id} failed for {len(failures)} of "
            f"{len(deleted) + len(failures)} rows"
        )
        self.series_id = series_id
        self.deleted = deleted
        self.failures = failures


class SubtaskScopeRequiredError(SeriesEngineError):
    """Structural subtask changes on a series occurrence need a this-day/whole-series choice."""

    def __init__(self, changes: SubtaskChanges) -> None:
        super().__init__(
            "Subtask changes must be applied to this day only or to the whole series "
            f"(added={len(changes.added)}, removed={len(changes.removed)}, "
            f"modified={len(changes.modified)})"
        )
        self.changes = changes
