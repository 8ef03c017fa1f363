"""Data models for recurring events, occurrences and subtasks - calendarseries."""

import json
import math
import re
from collections.abc import Mapping
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_serializer,
    field_validator,
    model_validator,
)

from .series_datetime_utils import as_date, ensure_utc
from .series_exceptions import InvalidInstanceIdError, InvalidRecurrenceRuleError

# ISO-8601 order: index == datetime.weekday()
WEEKDAY_CODES: tuple[str, ...] = ("MO", "TU", "WE", "TH", "FR", "SA", "SU")

MIN_INTERVAL = 1
MAX_INTERVAL = 30

VIRTUAL_ID_PATTERN = re.compile(r"^(\d+)_(\d{4}-\d{2}-\d{2})$")


class Frequency(str, Enum):
    """Supported recurrence frequencies."""

    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"


class OccurrenceKind(str, Enum):
    """What a row or materialized occurrence represents.

    Decided once (``EventRow.kind`` / the materializer) and carried on every
    ``EventViewModel`` so downstream code never inspects fields to guess.
    """

    SERIES_MASTER = "series_master"
    OVERRIDE = "override"
    VIRTUAL = "virtual"
    STANDALONE = "standalone"


class SubtaskOrigin(str, Enum):
    """Tier an effective subtask comes from."""

    MASTER = "master"
    CUSTOM = "custom"


class ChangeScope(str, Enum):
    """Where structural subtask edits on a series occurrence are applied."""

    THIS_DAY = "this_day"
    WHOLE_SERIES = "whole_series"


def _coerce_end_date(value: Any) -> Any:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    if isinstance(value, (date, str)):
        return as_date(value)
    return value


class RecurrenceRule(BaseModel):
    """Recurrence definition owned by a series master.

    Input is sanitized rather than rejected: the interval is clamped to
    1..30, unknown weekday codes are dropped and month days are clamped to
    1..31. Only a missing frequency is an error.
    """

    frequency: str = Field(..., description="DAILY, WEEKLY or MONTHLY")
    interval: int = Field(default=1, description="Step between periods (1..30)")
    by_week_days: list[str] = Field(
        default_factory=list, alias="byWeekDays", description="ISO weekday codes (WEEKLY)"
    )
    by_month_days: list[int] = Field(
        default_factory=list, alias="byMonthDays", description="Days of month (MONTHLY)"
    )
    end_date: Optional[date] = Field(
        default=None, alias="endDate", description="Inclusive last date of the series"
    )

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("frequency", mode="before")
    @classmethod
    def _normalize_frequency(cls, value: Any) -> str:
        text = "" if value is None else str(value).strip().upper()
        if not text:
            raise ValueError("frequency is required")
        return text

    @field_validator("interval", mode="before")
    @classmethod
    def _clamp_interval(cls, value: Any) -> int:
        try:
            number = float(value)
        except (TypeError, ValueError):
            return MIN_INTERVAL
        if not math.isfinite(number):
            return MIN_INTERVAL
        return max(MIN_INTERVAL, min(MAX_INTERVAL, math.floor(number + 0.5)))

    @field_validator("by_week_days", mode="before")
    @classmethod
    def _normalize_week_days(cls, value: Any) -> list[str]:
        if not value:
            return []
        if isinstance(value, str):
            value = value.split(",")
        codes = {str(code).strip().upper() for code in value}
        return [code for code in WEEKDAY_CODES if code in codes]

    @field_validator("by_month_days", mode="before")
    @classmethod
    def _normalize_month_days(cls, value: Any) -> list[int]:
        if not value:
            return []
        days: set[int] = set()
        for raw in value:
            try:
                number = float(raw)
            except (TypeError, ValueError):
                continue
            if math.isfinite(number):
                days.add(max(1, min(31, math.floor(number + 0.5))))
        return sorted(days)

    @field_validator("end_date", mode="before")
    @classmethod
    def _normalize_end_date(cls, value: Any) -> Any:
        return _coerce_end_date(value)

    @property
    def frequency_enum(self) -> Optional[Frequency]:
        """Frequency as enum, or None when the engine does not support it."""
        try:
            return Frequency(self.frequency)
        except ValueError:
            return None

    def to_wire(self) -> str:
        """JSON for the ``recurrence_rule`` column (end date travels separately)."""
        payload: dict[str, Any] = {"frequency": self.frequency, "interval": self.interval}
        if self.by_week_days:
            payload["byWeekDays"] = list(self.by_week_days)
        if self.by_month_days:
            payload["byMonthDays"] = list(self.by_month_days)
        return json.dumps(payload)

    @classmethod
    def from_wire(
        cls,
        recurrence_rule: Union[str, Mapping[str, Any], None],
        recurrence_end_date: Union[date, str, None] = None,
    ) -> Optional["RecurrenceRule"]:
        """Build a rule from the persisted ``recurrence_rule``/``recurrence_end_date`` pair.

        Returns:
            The rule, or None when no rule is stored

        Raises:
            InvalidRecurrenceRuleError: If the stored rule is malformed
        """
        if recurrence_rule is None or (isinstance(recurrence_rule, str) and not recurrence_rule.strip()):
            return None

        if isinstance(recurrence_rule, str):
            try:
                data = json.loads(recurrence_rule)
            except json.JSONDecodeError as exc:
                raise InvalidRecurrenceRuleError(f"recurrence_rule is not valid JSON: {exc}") from exc
        else:
            data = recurrence_rule

        if not isinstance(data, Mapping):
            raise InvalidRecurrenceRuleError("recurrence_rule must be a JSON object")

        data = dict(data)
        if recurrence_end_date is not None:
            data["endDate"] = recurrence_end_date

        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise InvalidRecurrenceRuleError(str(exc)) from exc


class EventRow(BaseModel):
    """Persisted event row: exactly one of series master, override or standalone."""

    id: int = Field(..., description="Row id")
    owner_id: Optional[int] = Field(default=None, description="Owning user")
    title: str = Field(default="", description="Event title")
    description: Optional[str] = Field(default=None, description="Event description")

    start_utc: datetime = Field(..., description="Start (UTC)")
    end_utc: datetime = Field(..., description="End (UTC)")
    color: Optional[str] = Field(default=None, description="Display color")

    is_recurring: bool = Field(default=False, description="Series master flag")
    recurrence_rule: Optional[str] = Field(default=None, description="JSON-encoded rule")
    recurrence_end_date: Optional[date] = Field(default=None, description="Inclusive end date")

    series_id: Optional[int] = Field(default=None, description="Series master this row overrides")
    original_start_utc: Optional[datetime] = Field(
        default=None, description="Rule timestamp this override replaces"
    )
    is_cancelled: bool = Field(
        default=False, description="Override tombstone: the replaced occurrence is deleted"
    )

    @field_validator("start_utc", "end_utc", "original_start_utc", mode="after")
    @classmethod
    def _to_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value) if value is not None else None

    @field_validator("recurrence_rule", mode="before")
    @classmethod
    def _encode_rule(cls, value: Any) -> Any:
        if isinstance(value, RecurrenceRule):
            return value.to_wire()
        if isinstance(value, Mapping):
            return json.dumps(dict(value))
        return value

    @field_validator("recurrence_end_date", mode="before")
    @classmethod
    def _normalize_end_date(cls, value: Any) -> Any:
        return _coerce_end_date(value)

    @model_validator(mode="after")
    def _check_representation(self) -> "EventRow":
        if self.is_recurring and self.series_id is not None:
            raise ValueError(
                f"event {self.id} cannot be both a series master and an override"
            )
        if self.end_utc < self.start_utc:
            raise ValueError(f"event {self.id} ends before it starts")
        return self

    @property
    def kind(self) -> OccurrenceKind:
        """Representation of this row."""
        if self.series_id is not None:
            return OccurrenceKind.OVERRIDE
        if self.is_recurring:
            return OccurrenceKind.SERIES_MASTER
        return OccurrenceKind.STANDALONE

    @property
    def duration(self) -> timedelta:
        return self.end_utc - self.start_utc

    @property
    def rule(self) -> Optional[RecurrenceRule]:
        """Parsed recurrence rule (raises InvalidRecurrenceRuleError when malformed)."""
        return RecurrenceRule.from_wire(self.recurrence_rule, self.recurrence_end_date)


class VirtualInstanceId(BaseModel):
    """Structured identity of a rule-generated, non-persisted occurrence.

    Rendered on the wire as ``{seriesId}_{YYYY-MM-DD}``.
    """

    series_id: int
    occurrence_date: date

    model_config = ConfigDict(frozen=True)

    def __str__(self) -> str:
        return f"{self.series_id}_{self.occurrence_date.isoformat()}"

    @classmethod
    def parse(cls, value: str) -> "VirtualInstanceId":
        """Parse a wire id.

        Raises:
            InvalidInstanceIdError: If ``value`` does not match the virtual id pattern
        """
        match = VIRTUAL_ID_PATTERN.match(str(value).strip())
        if not match:
            raise InvalidInstanceIdError(f"Not a virtual instance id: {value!r}")
        try:
            occurrence_date = date.fromisoformat(match.group(2))
        except ValueError as exc:
            raise InvalidInstanceIdError(f"Invalid date in virtual instance id: {value!r}") from exc
        return cls(series_id=int(match.group(1)), occurrence_date=occurrence_date)

    @classmethod
    def try_parse(cls, value: str) -> Optional["VirtualInstanceId"]:
        try:
            return cls.parse(value)
        except InvalidInstanceIdError:
            return None


class DisplaySlot(BaseModel):
    """Position of an occurrence inside the visible hour window."""

    start_minutes: int = Field(..., description="Minutes from the visible window start")
    duration_minutes: int = Field(..., description="Visible duration, grid aligned")
    is_clipped: bool = Field(default=False, description="Occurrence extends past the window")


class EventViewModel(BaseModel):
    """One materialized occurrence as handed to callers."""

    id: str = Field(..., description="Row id or virtual id")
    kind: OccurrenceKind
    row_id: Optional[int] = Field(default=None, description="Persisted row, None when virtual")
    virtual_id: Optional[VirtualInstanceId] = None
    series_id: Optional[int] = None
    owner_id: Optional[int] = None

    title: str = ""
    description: Optional[str] = None
    color: Optional[str] = None

    start_utc: datetime
    end_utc: datetime
    original_start_utc: Optional[datetime] = None
    recurrence_rule: Optional[RecurrenceRule] = None
    is_cancelled: bool = False

    display: Optional[DisplaySlot] = None

    @property
    def instance_key(self) -> str:
        """Key for per-occurrence subtask state."""
        if self.kind == OccurrenceKind.VIRTUAL and self.virtual_id is not None:
            return str(self.virtual_id)
        return str(self.row_id) if self.row_id is not None else self.id

    @property
    def occurrence_date(self) -> date:
        return self.start_utc.date()

    @property
    def is_series_bound(self) -> bool:
        """Virtual instance or override of a live series."""
        return (
            self.kind in (OccurrenceKind.VIRTUAL, OccurrenceKind.OVERRIDE)
            and self.series_id is not None
        )

    @property
    def is_liberated(self) -> bool:
        """Standalone occurrence that used to belong to a series."""
        return self.kind == OccurrenceKind.STANDALONE and (
            self.series_id is not None or self.original_start_utc is not None
        )

    @field_serializer("start_utc", "end_utc")
    def serialize_datetime(self, dt: datetime) -> str:
        return dt.isoformat()


class SubtaskMaster(BaseModel):
    """Subtask definition owned by a series master or standalone event."""

    id: int
    owner_event_id: int
    text: str
    sort_order: int = 0
    completed: bool = Field(
        default=False, description="Completion when resolved directly (standalone/master)"
    )


class SubtaskInstanceState(BaseModel):
    """Per-occurrence override of an inherited subtask."""

    subtask_master_id: int
    instance_key: str
    completed: bool = False
    hidden: bool = False
    completed_at: Optional[datetime] = None


class CustomSubtask(BaseModel):
    """Subtask that exists for one occurrence only."""

    id: int
    instance_key: str
    text: str
    sort_order: int = 0
    completed: bool = False


class EffectiveSubtask(BaseModel):
    """Subtask as seen by one occurrence after inheritance is resolved."""

    id: Optional[int] = Field(default=None, description="Source row id, None for new drafts")
    text: str
    completed: bool = False
    origin: SubtaskOrigin = SubtaskOrigin.MASTER
    sort_order: int = 0

    @property
    def key(self) -> Optional[tuple[SubtaskOrigin, int]]:
        return (self.origin, self.id) if self.id is not None else None


class SubtaskChanges(BaseModel):
    """Structural differences between two subtask lists."""

    added: list[EffectiveSubtask] = Field(default_factory=list)
    removed: list[EffectiveSubtask] = Field(default_factory=list)
    modified: list[EffectiveSubtask] = Field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.added or self.removed or self.modified)

    def counts(self) -> dict[str, int]:
        return {
            "added": len(self.added),
            "removed": len(self.removed),
            "modified": len(self.modified),
        }
