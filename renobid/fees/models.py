"""
Fee transaction models.

Fees are what the platform charges: a win fee to the contractor whose bid
is selected, and a one-off verification fee. Like escrows they are
bookkeeping records; collection happens outside this system.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, Optional

from renobid.types import DEFAULT_CURRENCY, DocumentModel, to_decimal, utc_now

FEES_COLLECTION = "fee_transactions"

FEE_NAMESPACE = uuid.UUID("1d7a8c52-93e4-4f0b-8b2e-5e6f7a9c0d31")


class FeeType(str, Enum):
    WIN_FEE = "WIN_FEE"
    VERIFICATION_FEE = "VERIFICATION_FEE"


class FeeStatus(str, Enum):
    """Fee lifecycle status."""

    PENDING = "PENDING"
    PAID = "PAID"
    CANCELLED = "CANCELLED"


FEE_STATUS_TRANSITIONS: Dict[FeeStatus, set] = {
    FeeStatus.PENDING: {FeeStatus.PAID, FeeStatus.CANCELLED},
    FeeStatus.PAID: set(),
    FeeStatus.CANCELLED: set(),
}


def can_transition_fee(from_status: str, to_status: str) -> bool:
    try:
        return FeeStatus(to_status) in FEE_STATUS_TRANSITIONS[FeeStatus(from_status)]
    except ValueError:
        return False


def fee_id_for(project_id: str, bid_id: str, match_round: int = 0) -> str:
    """Deterministic win-fee id for one match of a bid to a project."""
    return str(uuid.uuid5(FEE_NAMESPACE, f"win_fee:{project_id}:{bid_id}:{match_round}"))


@dataclass
class FeeTransaction(DocumentModel):
    """A fee charged to a user.

    Win fees carry the project and bid they were charged for; verification
    fees carry neither.
    """

    id: str
    user_id: str
    type: str
    amount: Decimal
    project_id: Optional[str] = None
    bid_id: Optional[str] = None
    code: str = ""
    match_round: int = 0
    currency: str = DEFAULT_CURRENCY
    status: str = FeeStatus.PENDING.value
    paid_by: Optional[str] = None
    paid_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    version: int = 0

    DATETIME_FIELDS = ("paid_at", "cancelled_at", "created_at", "updated_at")
    MONEY_FIELDS = ("amount",)

    def __post_init__(self):
        """Validate fields after initialization."""
        self.status = getattr(self.status, "value", self.status)
        valid = [s.value for s in FeeStatus]
        if self.status not in valid:
            raise ValueError(f"Invalid status: {self.status}. Must be one of {valid}")
        self.type = getattr(self.type, "value", self.type)
        valid_types = [t.value for t in FeeType]
        if self.type not in valid_types:
            raise ValueError(f"Invalid fee type: {self.type}. Must be one of {valid_types}")
        if not self.user_id:
            raise ValueError("user_id is required")
        self.amount = to_decimal(self.amount)
        if self.amount is None or self.amount < 0:
            raise ValueError("Fee amount must not be negative")
        if self.type == FeeType.WIN_FEE.value and not (self.project_id and self.bid_id):
            raise ValueError("Win fees require project_id and bid_id")
        if self.created_at is None:
            self.created_at = utc_now()
        if self.updated_at is None:
            self.updated_at = self.created_at
