"""
Logging setup for renobid.

Core modules log through ``logging.getLogger(__name__)`` under the
``renobid`` logger. ``setup_renobid_logging`` attaches a dated file handler.
Workflow events (status transitions, saga steps, money movements) are
records on the ``renobid.workflow`` logger, which writes to its own
append-only event file and does not propagate into the debug output.
"""

import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
WORKFLOW_FORMAT = "%(asctime)s | %(event)s | actor=%(actor)s | %(message)s"
WORKFLOW_LOGGER = "renobid.workflow"

workflow_logger = logging.getLogger(WORKFLOW_LOGGER)
workflow_logger.propagate = False


def get_log_dir() -> Path:
    """Directory holding renobid log files."""
    base = os.environ.get("RENOBID_DATA_DIR") or str(Path.home() / ".renobid")
    return Path(base) / "logs"


def setup_renobid_logging(level: str = "INFO") -> logging.Logger:
    """Configure the ``renobid`` logger.

    Args:
        level: Log level name, case-insensitive. Unknown names fall back to INFO.

    Returns:
        The configured ``renobid`` logger. Calling this again reuses the
        existing handlers.
    """
    logger = logging.getLogger("renobid")
    resolved = getattr(logging, str(level).upper(), None)
    if not isinstance(resolved, int):
        resolved = logging.INFO
    logger.setLevel(resolved)

    log_dir = get_log_dir()
    log_dir.mkdir(parents=True, exist_ok=True)
    formatter = logging.Formatter(LOG_FORMAT)

    if not any(isinstance(h, logging.FileHandler) for h in logger.handlers):
        date = datetime.now().strftime("%Y-%m-%d")
        file_handler = logging.FileHandler(log_dir / f"local-{date}.log", encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    has_console = any(
        isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
        for h in logger.handlers
    )
    if resolved <= logging.DEBUG and not has_console:
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        logger.addHandler(console)

    setup_workflow_log()
    return logger


def setup_workflow_log() -> logging.Logger:
    """Attach today's workflow event file to ``renobid.workflow``.

    Until this runs, workflow events are dropped.
    """
    workflow_logger.setLevel(logging.INFO)
    if not any(isinstance(h, logging.FileHandler) for h in workflow_logger.handlers):
        log_dir = get_log_dir()
        log_dir.mkdir(parents=True, exist_ok=True)
        date = datetime.now().strftime("%Y-%m-%d")
        handler = logging.FileHandler(log_dir / f"workflow-events-{date}.log", encoding="utf-8")
        handler.setFormatter(logging.Formatter(WORKFLOW_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S"))
        workflow_logger.addHandler(handler)
    return workflow_logger


def log_workflow_event(event_type: str, details: str, actor: Optional[str] = None) -> None:
    """Emit one workflow event record."""
    workflow_logger.info(details, extra={"event": event_type, "actor": actor or "system"})


def log_transition(
    entity: str,
    entity_id: str,
    from_status: Optional[str],
    to_status: str,
    actor: Optional[str] = None,
) -> None:
    """Record a status transition."""
    log_workflow_event(
        "transition",
        f"{entity}={entity_id} | {from_status or '-'} -> {to_status}",
        actor=actor,
    )


def log_saga_step(saga_id: str, step: str, status: str, error: Optional[str] = None) -> None:
    """Record a saga step outcome."""
    details = f"saga={saga_id} | step={step} | status={status}"
    if error:
        details += f" | error={error[:200]}"
    log_workflow_event("saga", details)


def log_money_movement(escrow_id: str, tx_type: str, amount, actor: Optional[str] = None) -> None:
    """Record an escrow transaction-log entry."""
    log_workflow_event("escrow", f"escrow={escrow_id} | type={tx_type} | amount={amount}", actor=actor)
