"""Unit tests for series_logging module."""

import logging

import pytest

from calendarseries.series_config import Config
from calendarseries.series_logging import (
    NO_COMMIT_ID,
    CommitIdFilter,
    commit_context,
    configure_logging,
    get_commit_id,
    get_logging_status,
    reset_logging_to_debug,
)

pytestmark = [pytest.mark.unit, pytest.mark.fast]

_TOUCHED_LOGGERS = (
    "calendarseries",
    "calendarseries.series_rrule_expander",
    "calendarseries.series_materializer",
    "calendarseries.series_reconciler",
    "calendarseries.series_subtasks",
    "calendarseries.series_subtask_migrator",
    "calendarseries.series_http_store",
    "httpx",
    "httpcore",
    "asyncio",
)


@pytest.fixture
def isolated_logging():
    """Restore root handlers and logger levels changed by configure_logging."""
    root = logging.getLogger()
    saved_handlers = list(root.handlers)
    saved_filters = {handler: list(handler.filters) for handler in saved_handlers}
    saved_levels = {name: logging.getLogger(name).level for name in _TOUCHED_LOGGERS}
    saved_root_level = root.level
    yield root
    for handler in list(root.handlers):
        if handler not in saved_handlers:
            root.removeHandler(handler)
    for handler, filters in saved_filters.items():
        handler.filters = filters
    for name, level in saved_levels.items():
        logging.getLogger(name).setLevel(level)
    root.setLevel(saved_root_level)


class TestCommitContext:
    def test_outside_commit(self):
        assert get_commit_id() == NO_COMMIT_ID

    def test_commit_id_is_set_and_reset(self):
        with commit_context() as commit_id:
            assert get_commit_id() == commit_id
            assert len(commit_id) == 12
        assert get_commit_id() == NO_COMMIT_ID

    def test_explicit_and_nested_commit_ids(self):
        with commit_context("outer"):
            with commit_context("inner"):
                assert get_commit_id() == "inner"
            assert get_commit_id() == "outer"

    def test_filter_adds_commit_id_to_records(self):
        record = logging.LogRecord("calendarseries", logging.INFO, __file__, 1, "msg", None, None)
        with commit_context("abc123"):
            assert CommitIdFilter().filter(record)
        assert record.commit_id == "abc123"


class TestConfigureLogging:
    """Tests for configure_logging and friends."""

    def test_production_levels(self, isolated_logging):
        configure_logging()

        status = get_logging_status()
        assert status["calendarseries"] == "INFO"
        assert status["httpx"] == "WARNING"
        assert status["httpcore"] == "WARNING"
        assert status["asyncio"] == "WARNING"

    def test_debug_mode(self, isolated_logging):
        configure_logging(debug_mode=True)
        assert get_logging_status()["calendarseries"] == "DEBUG"
        assert logging.getLogger("calendarseries.series_reconciler").level == logging.DEBUG

    def test_env_debug_and_force_override(self, isolated_logging, monkeypatch):
        monkeypatch.setenv("CALENDARSERIES_DEBUG", "true")
        configure_logging()
        assert get_logging_status()["calendarseries"] == "DEBUG"

        configure_logging(force_debug=False)
        assert get_logging_status()["calendarseries"] == "INFO"

    def test_env_log_level_sets_root(self, isolated_logging, monkeypatch):
        monkeypatch.setenv("CALENDARSERIES_LOG_LEVEL", "error")
        configure_logging()
        assert get_logging_status()["root"] == "ERROR"

    def test_configured_level_sets_root(self, isolated_logging):
        Config.from_dict({"log_level": "warning"}).configure_logging()

        status = get_logging_status()
        assert status["root"] == "WARNING"
        assert status["calendarseries"] == "INFO"

    def test_debug_mode_wins_over_configured_level(self, isolated_logging):
        configure_logging(debug_mode=True, level="ERROR")
        assert get_logging_status()["root"] == "DEBUG"

    def test_env_log_level_wins_over_configured_level(self, isolated_logging, monkeypatch):
        monkeypatch.setenv("CALENDARSERIES_LOG_LEVEL", "error")
        configure_logging(level="WARNING")
        assert get_logging_status()["root"] == "ERROR"

    def test_existing_handlers_get_commit_filter_once(self, isolated_logging):
        handler = logging.NullHandler()
        isolated_logging.addHandler(handler)

        configure_logging()
        configure_logging()

        assert sum(isinstance(f, CommitIdFilter) for f in handler.filters) == 1

    def test_reset_to_debug(self, isolated_logging):
        configure_logging()
        reset_logging_to_debug()
        status = get_logging_status()
        assert set(status.values()) == {"DEBUG"}
