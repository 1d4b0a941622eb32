"""
Durable record of one bid-selection saga.

The saga document is written before the first side effect and updated as
each step completes, so a crashed or failed selection can be driven forward
or compensated later from what the record says happened.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from renobid.types import DocumentModel, format_datetime, utc_now

SAGAS_COLLECTION = "match_sagas"

SAGA_NAMESPACE = uuid.UUID("b4e9f7a2-0c3d-4a16-8e5b-92d1c6f0a7e8")


class SagaStatus(str, Enum):
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    COMPENSATING = "COMPENSATING"
    COMPENSATED = "COMPENSATED"
    FAILED = "FAILED"


class SagaStep(str, Enum):
    """Forward steps in execution order, then their compensations."""

    SELECT_BID = "SELECT_BID"
    MATCH_PROJECT = "MATCH_PROJECT"
    CREATE_ESCROW = "CREATE_ESCROW"
    CREATE_FEE = "CREATE_FEE"
    CANCEL_FEE = "CANCEL_FEE"
    CANCEL_ESCROW = "CANCEL_ESCROW"
    REVERT_PROJECT = "REVERT_PROJECT"
    REVERT_BID = "REVERT_BID"


FORWARD_STEPS = (
    SagaStep.SELECT_BID,
    SagaStep.MATCH_PROJECT,
    SagaStep.CREATE_ESCROW,
    SagaStep.CREATE_FEE,
)

# Compensation step -> the forward step it undoes
COMPENSATES = {
    SagaStep.CANCEL_FEE: SagaStep.CREATE_FEE,
    SagaStep.CANCEL_ESCROW: SagaStep.CREATE_ESCROW,
    SagaStep.REVERT_PROJECT: SagaStep.MATCH_PROJECT,
    SagaStep.REVERT_BID: SagaStep.SELECT_BID,
}

STEP_DONE = "DONE"
STEP_FAILED = "FAILED"


def saga_id_for(project_id: str, bid_id: str, match_round: int = 0) -> str:
    return str(uuid.uuid5(SAGA_NAMESPACE, f"match:{project_id}:{bid_id}:{match_round}"))


def make_step(
    step: SagaStep, status: str = STEP_DONE, error: Optional[str] = None, at: Optional[datetime] = None
) -> Dict[str, Any]:
    return {
        "name": step.value,
        "status": status,
        "at": format_datetime(at or utc_now()),
        "error": error,
    }


@dataclass
class MatchSaga(DocumentModel):
    """Progress of selecting ``bid_id`` for ``project_id`` in one match round."""

    id: str
    project_id: str
    bid_id: str
    homeowner_id: str
    match_round: int = 0
    status: str = SagaStatus.RUNNING.value
    steps: List[Dict[str, Any]] = field(default_factory=list)
    escrow_id: Optional[str] = None
    fee_id: Optional[str] = None
    error: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    version: int = 0

    DATETIME_FIELDS = ("created_at", "updated_at")

    def __post_init__(self):
        self.status = getattr(self.status, "value", self.status)
        valid = [s.value for s in SagaStatus]
        if self.status not in valid:
            raise ValueError(f"Invalid status: {self.status}. Must be one of {valid}")
        if self.created_at is None:
            self.created_at = utc_now()
        if self.updated_at is None:
            self.updated_at = self.created_at

    def completed_steps(self) -> Set[SagaStep]:
        """Forward steps whose effects are currently in place.

        A forward step counts once it is recorded DONE and stops counting
        when its compensation is recorded DONE.
        """
        done: Set[SagaStep] = set()
        for record in self.steps:
            if record.get("status") != STEP_DONE:
                continue
            step = SagaStep(record["name"])
            if step in COMPENSATES:
                done.discard(COMPENSATES[step])
            else:
                done.add(step)
        return done
