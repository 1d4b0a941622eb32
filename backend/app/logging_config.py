"""Logging configuration for the Renobid backend."""

import logging

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

_configured = False


def configure_logging(level: str = "INFO") -> None:
    """Send app and core logs to stderr. Safe to call more than once."""
    global _configured
    if _configured:
        return
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
    _configured = True


def get_logger(name: str) -> logging.Logger:
    """Get a named logger for a backend module."""
    return logging.getLogger(name)


def log_request_error(logger: logging.Logger, method: str, path: str, code: str, message: str) -> None:
    """Log a domain error answered to a client."""
    logger.info(f"{method} {path} | error={code} | {message}")
