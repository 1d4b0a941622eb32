"""Tests for renobid.logging_config module."""

import logging
from decimal import Decimal

import pytest

from renobid.logging_config import (
    log_money_movement,
    log_saga_step,
    log_transition,
    log_workflow_event,
    setup_renobid_logging,
    setup_workflow_log,
    workflow_logger,
)


@pytest.fixture(autouse=True)
def clean_renobid_logger():
    """Remove all handlers from the renobid loggers before/after each test."""
    logger = logging.getLogger("renobid")
    for each in (logger, workflow_logger):
        each.handlers.clear()
    logger.setLevel(logging.WARNING)
    yield
    for each in (logger, workflow_logger):
        for handler in each.handlers:
            handler.close()
        each.handlers.clear()
    logger.setLevel(logging.WARNING)


@pytest.fixture
def log_dir(tmp_path, monkeypatch):
    """Set RENOBID_DATA_DIR so logs go to a temp directory."""
    monkeypatch.setenv("RENOBID_DATA_DIR", str(tmp_path))
    return tmp_path / "logs"


def read_events(log_dir):
    files = list(log_dir.glob("workflow-events-*.log"))
    assert len(files) == 1
    return files[0].read_text(encoding="utf-8")


class TestSetupRenobidLogging:
    """Tests for setup_renobid_logging."""

    def test_returns_logger(self, log_dir):
        logger = setup_renobid_logging()
        assert isinstance(logger, logging.Logger)
        assert logger.name == "renobid"

    def test_creates_dated_log_file(self, log_dir):
        """Should create local-{date}.log in the logs directory."""
        assert not log_dir.exists()
        setup_renobid_logging()
        log_files = list(log_dir.glob("local-*.log"))
        assert len(log_files) == 1

    def test_default_level_info(self, log_dir):
        assert setup_renobid_logging().level == logging.INFO

    def test_level_case_insensitive(self, log_dir):
        assert setup_renobid_logging(level="warning").level == logging.WARNING

    def test_unknown_level_falls_back_to_info(self, log_dir):
        assert setup_renobid_logging(level="chatty").level == logging.INFO

    def test_console_handler_only_when_debugging(self, log_dir):
        logger = setup_renobid_logging()
        streams = [h for h in logger.handlers if not isinstance(h, logging.FileHandler)]
        assert streams == []

        logger = setup_renobid_logging(level="DEBUG")
        streams = [h for h in logger.handlers if not isinstance(h, logging.FileHandler)]
        assert len(streams) == 1

    def test_repeated_setup_reuses_handlers(self, log_dir):
        """Calling setup twice must not duplicate handlers."""
        setup_renobid_logging(level="DEBUG")
        logger = setup_renobid_logging(level="DEBUG")
        assert len(logger.handlers) == 2

    def test_module_loggers_write_to_file(self, log_dir):
        setup_renobid_logging()
        logging.getLogger("renobid.escrow.ledger").info("Escrow created | id=e1")
        for handler in logging.getLogger("renobid").handlers:
            handler.flush()
        content = next(log_dir.glob("local-*.log")).read_text(encoding="utf-8")
        assert "renobid.escrow.ledger" in content
        assert "Escrow created | id=e1" in content


@pytest.fixture
def events_log(log_dir):
    setup_workflow_log()
    return log_dir


class TestWorkflowEvents:
    """Tests for the workflow event log."""

    def test_dropped_before_setup(self, log_dir):
        log_workflow_event("match_created", "project=p1")
        assert not log_dir.exists()

    def test_setup_is_idempotent(self, log_dir):
        setup_workflow_log()
        assert len(setup_workflow_log().handlers) == 1

    def test_kept_out_of_debug_log(self, log_dir):
        setup_renobid_logging()
        log_workflow_event("match_created", "project=p1")
        debug = next(log_dir.glob("local-*.log")).read_text(encoding="utf-8")
        assert "match_created" not in debug
        assert "project=p1" in read_events(log_dir)

    def test_event_line_format(self, events_log):
        log_workflow_event("match_created", "project=p1 bid=b1", actor="homeowner-1")
        line = read_events(events_log).strip()
        assert "| match_created | actor=homeowner-1 | project=p1 bid=b1" in line

    def test_system_actor_by_default(self, events_log):
        log_workflow_event("saga", "saga=s1")
        assert "actor=system" in read_events(events_log)

    def test_transition(self, events_log):
        log_transition("project", "p1", "OPEN", "BIDDING_CLOSED", "homeowner-1")
        log_transition("bid", "b1", None, "PENDING", "contractor-1")
        content = read_events(events_log)
        assert "project=p1 | OPEN -> BIDDING_CLOSED" in content
        assert "bid=b1 | - -> PENDING" in content

    def test_saga_step_truncates_errors(self, events_log):
        log_saga_step("s1", "CREATE_FEE", "FAILED", error="x" * 500)
        content = read_events(events_log)
        assert "step=CREATE_FEE | status=FAILED" in content
        assert "x" * 201 not in content

    def test_money_movement(self, events_log):
        log_money_movement("e1", "PARTIAL_RELEASE", Decimal("5000000"), "admin-1")
        assert "escrow=e1 | type=PARTIAL_RELEASE | amount=5000000" in read_events(events_log)

    def test_events_append(self, events_log):
        log_workflow_event("a", "first")
        log_workflow_event("b", "second")
        assert len(read_events(events_log).splitlines()) == 2
