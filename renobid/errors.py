"""
Domain errors for renobid.

Every ledger raises a subclass of RenobidError carrying a stable ``code``.
The HTTP status is looked up in the subclass's ``STATUS_CODES`` table so the
same code always maps to the same status, wherever it is raised.
"""

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RenobidError(Exception):
    """Base class for all renobid domain errors."""

    STATUS_CODES: Dict[str, int] = {}
    retryable: bool = False

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details or {}
        self.status_code = self.STATUS_CODES.get(code, 500)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the JSON error body."""
        return {"code": self.code, "message": self.message, "details": self.details}

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


class ProjectError(RenobidError):
    """Project ledger errors."""

    STATUS_CODES = {
        "PROJECT_NOT_FOUND": 404,
        "PROJECT_ACCESS_DENIED": 403,
        "PROJECT_INVALID_TRANSITION": 400,
        "PROJECT_INVALID_STATUS": 400,
        "PROJECT_NOT_OPEN": 400,
        "BID_DEADLINE_PASSED": 400,
        "BID_MAX_REACHED": 400,
    }


class BidError(RenobidError):
    """Bid sub-ledger errors."""

    STATUS_CODES = {
        "BID_NOT_FOUND": 404,
        "BID_ACCESS_DENIED": 403,
        "BID_INVALID_STATUS": 400,
        "BID_INVALID_TRANSITION": 400,
        "BID_ALREADY_EXISTS": 409,
    }


class EscrowError(RenobidError):
    """Escrow and milestone ledger errors."""

    STATUS_CODES = {
        "ESCROW_NOT_FOUND": 404,
        "MILESTONE_NOT_FOUND": 404,
        "MILESTONE_ACCESS_DENIED": 403,
        "ESCROW_INVALID_TRANSITION": 400,
        "ESCROW_INVALID_AMOUNT": 400,
        "ESCROW_NOT_ACTIVE": 400,
        "MILESTONE_INVALID_STATUS": 400,
        "PREVIOUS_MILESTONE_NOT_COMPLETED": 400,
        "MILESTONES_ALREADY_EXIST": 409,
        "ESCROW_ALREADY_EXISTS": 409,
    }


class FeeError(RenobidError):
    """Fee ledger errors."""

    STATUS_CODES = {
        "FEE_NOT_FOUND": 404,
        "FEE_INVALID_TRANSITION": 400,
        "FEE_ALREADY_EXISTS": 409,
    }


class MatchError(RenobidError):
    """Match orchestration errors."""

    STATUS_CODES = {
        "MATCH_NOT_FOUND": 404,
        "SAGA_NOT_FOUND": 404,
        "ESCROW_NOT_HELD": 400,
        "MATCH_ALREADY_EXISTS": 409,
        "ESCROW_CREATION_FAILED": 500,
        "FEE_CREATION_FAILED": 500,
    }


class ValidationError(RenobidError):
    """Malformed input, rejected before any write."""

    STATUS_CODES = {"VALIDATION_ERROR": 400}

    def __init__(self, message: str, fields: Optional[List[str]] = None):
        super().__init__("VALIDATION_ERROR", message, {"fields": fields} if fields else None)
        self.fields = fields or []


class ConcurrentModificationError(RenobidError):
    """A guarded write lost a race against another writer."""

    STATUS_CODES = {"CONCURRENT_MODIFICATION": 409}

    def __init__(self, collection: str, doc_id: str):
        super().__init__(
            "CONCURRENT_MODIFICATION",
            f"{collection}/{doc_id} was modified by another request. Please refresh and try again.",
            {"collection": collection, "id": doc_id},
        )


class StoreUnavailableError(RenobidError):
    """The document store could not be reached."""

    STATUS_CODES = {"STORE_UNAVAILABLE": 503}
    retryable = True

    def __init__(self, message: str = "Document store unavailable"):
        super().__init__("STORE_UNAVAILABLE", message)


def is_retryable(error: BaseException) -> bool:
    """Whether ``error`` is worth another attempt."""
    return isinstance(error, RenobidError) and error.retryable


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    initial_delay: float = 0.1,
    max_delay: float = 5.0,
    multiplier: float = 2.0,
) -> T:
    """Run ``operation``, retrying retryable errors with exponential backoff.

    Non-retryable errors (including every transition guard failure) propagate
    on the first attempt.
    """
    delay = initial_delay
    attempt = 0
    while True:
        try:
            return await operation()
        except RenobidError as e:
            if not is_retryable(e) or attempt >= max_retries:
                raise
            attempt += 1
            # Full jitter on top of the capped exponential delay
            sleep_for = min(delay, max_delay) * (0.5 + random.random() / 2)
            logger.warning(f"Retryable error {e.code}, attempt {attempt}/{max_retries}")
            await asyncio.sleep(sleep_for)
            delay *= multiplier
