"""calendarseries - recurring event expansion, occurrence reconciliation and subtask inheritance.

Typical use::

    reconciler = OverrideReconciler(event_store, subtask_store, settings=load_config())
    rows, views = await reconciler.load(owner_id, "2025-01-01", "2025-01-31")
    moved = await reconciler.move_occurrence(views[0], new_start, new_end)
"""

__version__ = "1.0.0"

from .series_config import Config, ConfigManager, load_config
from .series_exceptions import (
    CommitFailedError,
    EventNotFoundError,
    InvalidInstanceIdError,
    InvalidOccurrenceError,
    InvalidRecurrenceRuleError,
    PersistenceError,
    SeriesDeleteError,
    SeriesEngineError,
    SubtaskScopeRequiredError,
)
from .series_materializer import InstanceMaterializer
from .series_models import (
    ChangeScope,
    EffectiveSubtask,
    EventRow,
    EventViewModel,
    OccurrenceKind,
    RecurrenceRule,
    VirtualInstanceId,
)
from .series_reconciler import OverrideReconciler
from .series_rrule_expander import RecurrenceRuleEngine
from .series_subtask_migrator import SubtaskMigrator
from .series_subtasks import SubtaskEditor, SubtaskInheritanceResolver

__all__ = [
    "ChangeScope",
    "CommitFailedError",
    "Config",
    "ConfigManager",
    "EffectiveSubtask",
    "EventNotFoundError",
    "EventRow",
    "EventViewModel",
    "InstanceMaterializer",
    "InvalidInstanceIdError",
    "InvalidOccurrenceError",
    "InvalidRecurrenceRuleError",
    "OccurrenceKind",
    "OverrideReconciler",
    "PersistenceError",
    "RecurrenceRule",
    "RecurrenceRuleEngine",
    "SeriesDeleteError",
    "SeriesEngineError",
    "SubtaskEditor",
    "SubtaskInheritanceResolver",
    "SubtaskMigrator",
    "SubtaskScopeRequiredError",
    "VirtualInstanceId",
    "__version__",
]
