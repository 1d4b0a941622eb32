"""
Human-readable document codes.

Codes look like ``PRJ26100007``: prefix, two-digit year, two-digit month and
a four-digit sequence. The sequence for each (prefix, month) lives in a
``counters`` document, so a restarted process continues where the last one
stopped instead of handing out duplicates.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from renobid.errors import ConcurrentModificationError
from renobid.store import CONFLICT, DocumentStore

logger = logging.getLogger(__name__)

COUNTERS_COLLECTION = "counters"

PROJECT_PREFIX = "PRJ"
BID_PREFIX = "BID"
ESCROW_PREFIX = "ESC"
FEE_PREFIX = "FEE"


class CodeGenerator:
    """Allocates sequential codes from persisted counters."""

    def __init__(self, store: DocumentStore, max_attempts: int = 10):
        self.store = store
        self.max_attempts = max_attempts

    async def next_code(self, prefix: str, now: Optional[datetime] = None) -> str:
        now = now or datetime.now(timezone.utc)
        period = now.strftime("%y%m")
        counter_id = f"{prefix}{period}"

        for _ in range(self.max_attempts):
            counter = await self.store.get(COUNTERS_COLLECTION, counter_id)
            if counter is None:
                created, error = await self.store.create(
                    COUNTERS_COLLECTION, counter_id, {"prefix": prefix, "period": period, "value": 1}
                )
                if error is None:
                    return f"{counter_id}{1:04d}"
                # Someone else created it first; go round again
                continue

            updated, error = await self.store.update(
                COUNTERS_COLLECTION,
                counter_id,
                {"value": counter["value"] + 1},
                expected={"version": counter["version"]},
            )
            if error is None:
                return f"{counter_id}{updated['value']:04d}"
            if error != CONFLICT:
                break
            logger.debug(f"Counter {counter_id} contended, retrying")

        raise ConcurrentModificationError(COUNTERS_COLLECTION, counter_id)
