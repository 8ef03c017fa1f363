"""
Central logging configuration for calendarseries.

Every commit made by the reconciler runs under a commit id kept in a context
variable; ``CommitIdFilter`` copies it onto log records so all lines of one
user mutation can be correlated, including the HTTP requests it issued.
"""

import logging
import os
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Optional

# Context variable holding the id of the commit currently being executed
commit_id_var: ContextVar[str] = ContextVar("commit_id", default="")

NO_COMMIT_ID = "no-commit"

_NOISY_LOGGERS = ("httpx", "httpcore", "asyncio")

_LEVEL_NAMES = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

_PACKAGE_LOGGERS = (
    "calendarseries",
    "calendarseries.series_rrule_expander",
    "calendarseries.series_materializer",
    "calendarseries.series_reconciler",
    "calendarseries.series_subtasks",
    "calendarseries.series_subtask_migrator",
    "calendarseries.series_http_store",
)


def new_commit_id() -> str:
    """Generate a short commit id."""
    return uuid.uuid4().hex[:12]


def get_commit_id() -> str:
    """Get the current commit id from context.

    Returns:
        Current commit id, or "no-commit" outside a commit
    """
    commit_id = commit_id_var.get()
    return commit_id if commit_id else NO_COMMIT_ID


@contextmanager
def commit_context(commit_id: Optional[str] = None) -> Iterator[str]:
    """Run the enclosed block under a (fresh) commit id."""
    token = commit_id_var.set(commit_id or new_commit_id())
    try:
        yield commit_id_var.get()
    finally:
        commit_id_var.reset(token)


class CommitIdFilter(logging.Filter):
    """Add the current commit id to all log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.commit_id = get_commit_id()
        return True


def configure_logging(
    debug_mode: bool = False, force_debug: Optional[bool] = None, level: Optional[str] = None
) -> None:
    """
    Configure logging for calendarseries.

    Args:
        debug_mode: Whether to enable debug logging for calendarseries modules
        force_debug: Override debug mode setting (None to use env var detection)
        level: Root log level outside debug mode, e.g. ``Config.log_level``

    Environment Variables:
        CALENDARSERIES_DEBUG: Set to '1', 'true', 'yes' to force debug logging
        CALENDARSERIES_LOG_LEVEL: Override root log level (DEBUG, INFO, WARNING, ERROR)
    """
    env_debug = os.getenv("CALENDARSERIES_DEBUG", "").lower() in ("1", "true", "yes")
    env_log_level = os.getenv("CALENDARSERIES_LOG_LEVEL", "").upper()

    if force_debug is not None:
        final_debug = force_debug
    elif env_debug:
        final_debug = True
    else:
        final_debug = debug_mode

    root_level = logging.DEBUG if final_debug else logging.INFO
    if not final_debug and level is not None and level.upper() in _LEVEL_NAMES:
        root_level = getattr(logging, level.upper())
    if env_log_level in _LEVEL_NAMES:
        root_level = getattr(logging, env_log_level)

    root_logger = logging.getLogger()
    root_logger.setLevel(root_level)

    commit_filter = CommitIdFilter()
    if not root_logger.handlers:
        handler = logging.StreamHandler()
        handler.setLevel(root_level)
        handler.setFormatter(
            logging.Formatter("[%(asctime)s] [%(commit_id)s] %(levelname)s - %(name)s - %(message)s")
        )
        handler.addFilter(commit_filter)
        root_logger.addHandler(handler)
    else:
        for existing_handler in root_logger.handlers:
            if not any(isinstance(f, CommitIdFilter) for f in existing_handler.filters):
                existing_handler.addFilter(commit_filter)

    for logger_name in _NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(logging.WARNING)

    package_level = logging.DEBUG if final_debug else logging.INFO
    for logger_name in _PACKAGE_LOGGERS:
        logging.getLogger(logger_name).setLevel(package_level)

    if final_debug:
        root_logger.info("Debug logging enabled for calendarseries modules")
    else:
        root_logger.info("Production logging configuration applied")


def reset_logging_to_debug() -> None:
    """Reset all loggers, including the quieted third-party ones, to DEBUG."""
    logging.getLogger().setLevel(logging.DEBUG)
    for logger_name in (*_NOISY_LOGGERS, *_PACKAGE_LOGGERS):
        logging.getLogger(logger_name).setLevel(logging.DEBUG)

    logging.getLogger().info("All loggers reset to DEBUG level for troubleshooting")


def get_logging_status() -> dict[str, str]:
    """
    Get current logging configuration status.

    Returns:
        Dictionary mapping logger names to their current levels
    """
    status = {"root": logging.getLevelName(logging.getLogger().level)}
    for logger_name in ("calendarseries", *_NOISY_LOGGERS):
        status[logger_name] = logging.getLevelName(logging.getLogger(logger_name).level)
    return status
