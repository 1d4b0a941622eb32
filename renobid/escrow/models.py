"""
Escrow and milestone data models.

An escrow records custody of the homeowner's deposit for a matched project.
It is bookkeeping only: no payment gateway is involved. Every movement is
appended to the escrow's ``transactions`` log, which is never rewritten.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from renobid.types import DEFAULT_CURRENCY, DocumentModel, format_datetime, to_decimal, utc_now

ESCROWS_COLLECTION = "escrows"
MILESTONES_SUBCOLLECTION = "milestones"

# Namespace for deterministic escrow/milestone ids
ESCROW_NAMESPACE = uuid.UUID("6f1c2d0e-5b4a-4e8f-9a61-3c2b7d9e4f10")


class EscrowStatus(str, Enum):
    """Escrow lifecycle status."""

    PENDING = "PENDING"
    HELD = "HELD"
    PARTIAL_RELEASED = "PARTIAL_RELEASED"
    RELEASED = "RELEASED"
    REFUNDED = "REFUNDED"
    DISPUTED = "DISPUTED"
    CANCELLED = "CANCELLED"


class MilestoneStatus(str, Enum):
    """Milestone lifecycle status."""

    PENDING = "PENDING"
    REQUESTED = "REQUESTED"
    CONFIRMED = "CONFIRMED"
    DISPUTED = "DISPUTED"


class EscrowTransactionType(str, Enum):
    """Kinds of entries in an escrow's transaction log."""

    DEPOSIT = "DEPOSIT"
    RELEASE = "RELEASE"
    PARTIAL_RELEASE = "PARTIAL_RELEASE"
    REFUND = "REFUND"
    DISPUTE = "DISPUTE"
    CANCEL = "CANCEL"


class DisputeResolution(str, Enum):
    RELEASE = "RELEASE"
    REFUND = "REFUND"


ESCROW_STATUS_TRANSITIONS: Dict[EscrowStatus, set] = {
    EscrowStatus.PENDING: {EscrowStatus.HELD, EscrowStatus.CANCELLED},
    EscrowStatus.HELD: {
        EscrowStatus.PARTIAL_RELEASED,
        EscrowStatus.RELEASED,
        EscrowStatus.REFUNDED,
        EscrowStatus.DISPUTED,
    },
    # Repeated partial releases stay in PARTIAL_RELEASED
    EscrowStatus.PARTIAL_RELEASED: {
        EscrowStatus.PARTIAL_RELEASED,
        EscrowStatus.RELEASED,
        EscrowStatus.REFUNDED,
        EscrowStatus.DISPUTED,
    },
    EscrowStatus.DISPUTED: {EscrowStatus.RELEASED, EscrowStatus.REFUNDED},
    EscrowStatus.RELEASED: set(),
    EscrowStatus.REFUNDED: set(),
    EscrowStatus.CANCELLED: set(),
}

MILESTONE_STATUS_TRANSITIONS: Dict[MilestoneStatus, set] = {
    MilestoneStatus.PENDING: {MilestoneStatus.REQUESTED},
    MilestoneStatus.REQUESTED: {MilestoneStatus.CONFIRMED, MilestoneStatus.DISPUTED},
    MilestoneStatus.CONFIRMED: set(),
    MilestoneStatus.DISPUTED: set(),
}

TERMINAL_ESCROW_STATUSES = (EscrowStatus.RELEASED, EscrowStatus.REFUNDED, EscrowStatus.CANCELLED)

# Escrow statuses in which funds are held and milestones may progress
ACTIVE_ESCROW_STATUSES = (EscrowStatus.HELD, EscrowStatus.PARTIAL_RELEASED)

DEFAULT_MILESTONES = (
    {"name": "50% Completion", "percentage": 50, "release_percentage": Decimal("50")},
    {"name": "100% Completion", "percentage": 100, "release_percentage": Decimal("50")},
)


def can_transition_escrow(from_status: str, to_status: str) -> bool:
    """Check if an escrow status transition is valid."""
    try:
        return EscrowStatus(to_status) in ESCROW_STATUS_TRANSITIONS[EscrowStatus(from_status)]
    except ValueError:
        return False


def escrow_id_for(project_id: str, bid_id: str, match_round: int = 0) -> str:
    """Deterministic escrow id for one match of a bid to a project."""
    return str(uuid.uuid5(ESCROW_NAMESPACE, f"escrow:{project_id}:{bid_id}:{match_round}"))


def milestone_id_for(escrow_id: str, percentage: int) -> str:
    return str(uuid.uuid5(ESCROW_NAMESPACE, f"milestone:{escrow_id}:{percentage}"))


def milestones_collection(escrow_id: str) -> str:
    return f"{ESCROWS_COLLECTION}/{escrow_id}/{MILESTONES_SUBCOLLECTION}"


def make_transaction(
    tx_type: EscrowTransactionType,
    amount: Decimal,
    note: Optional[str],
    actor: Optional[str],
    date: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Build one transaction-log entry in stored form."""
    return {
        "type": tx_type.value,
        "amount": str(amount),
        "date": format_datetime(date or utc_now()),
        "note": note,
        "actor": actor,
    }


@dataclass
class Escrow(DocumentModel):
    """Custody record for a matched project's deposit.

    Invariant: 0 <= released_amount <= amount, and RELEASED implies the
    whole amount has been released.
    """

    id: str
    project_id: str
    bid_id: str
    homeowner_id: str
    amount: Decimal
    contractor_id: Optional[str] = None
    code: str = ""
    match_round: int = 0
    released_amount: Decimal = Decimal("0")
    currency: str = DEFAULT_CURRENCY
    status: str = EscrowStatus.PENDING.value
    transactions: List[Dict[str, Any]] = field(default_factory=list)
    confirmed_by: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    released_by: Optional[str] = None
    released_at: Optional[datetime] = None
    refunded_by: Optional[str] = None
    refunded_at: Optional[datetime] = None
    refund_reason: Optional[str] = None
    disputed_by: Optional[str] = None
    disputed_at: Optional[datetime] = None
    dispute_reason: Optional[str] = None
    dispute_resolution: Optional[str] = None
    dispute_resolved_by: Optional[str] = None
    dispute_resolved_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    version: int = 0

    DATETIME_FIELDS = (
        "confirmed_at",
        "released_at",
        "refunded_at",
        "disputed_at",
        "dispute_resolved_at",
        "cancelled_at",
        "created_at",
        "updated_at",
    )
    MONEY_FIELDS = ("amount", "released_amount")

    def __post_init__(self):
        """Validate fields after initialization."""
        valid = [s.value for s in EscrowStatus]
        self.status = getattr(self.status, "value", self.status)
        if self.status not in valid:
            raise ValueError(f"Invalid status: {self.status}. Must be one of {valid}")
        self.amount = to_decimal(self.amount)
        self.released_amount = to_decimal(self.released_amount) or Decimal("0")
        if self.amount is None or self.amount <= 0:
            raise ValueError("Escrow amount must be positive")
        if not Decimal("0") <= self.released_amount <= self.amount:
            raise ValueError("released_amount must lie between 0 and amount")
        if self.created_at is None:
            self.created_at = utc_now()
        if self.updated_at is None:
            self.updated_at = self.created_at

    @property
    def remaining(self) -> Decimal:
        return self.amount - self.released_amount

    @property
    def is_terminal(self) -> bool:
        return self.status in [s.value for s in TERMINAL_ESCROW_STATUSES]


@dataclass
class Milestone(DocumentModel):
    """A completion checkpoint on an escrow.

    ``percentage`` is the completion threshold and orders milestones;
    ``release_percentage`` is the share of the escrow paid out for it.
    """

    id: str
    escrow_id: str
    project_id: str
    name: str
    percentage: int
    release_percentage: Decimal
    status: str = MilestoneStatus.PENDING.value
    requested_by: Optional[str] = None
    requested_at: Optional[datetime] = None
    confirmed_by: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    disputed_by: Optional[str] = None
    disputed_at: Optional[datetime] = None
    dispute_reason: Optional[str] = None
    released_amount: Optional[Decimal] = None
    released_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    version: int = 0

    DATETIME_FIELDS = ("requested_at", "confirmed_at", "disputed_at", "released_at", "created_at")
    MONEY_FIELDS = ("release_percentage", "released_amount")

    def __post_init__(self):
        valid = [s.value for s in MilestoneStatus]
        self.status = getattr(self.status, "value", self.status)
        if self.status not in valid:
            raise ValueError(f"Invalid status: {self.status}. Must be one of {valid}")
        if not self.name or not self.name.strip():
            raise ValueError("Milestone name is required")
        self.percentage = int(self.percentage)
        if not 1 <= self.percentage <= 100:
            raise ValueError("Milestone percentage must be between 1 and 100")
        self.release_percentage = to_decimal(self.release_percentage)
        if not Decimal("0") <= self.release_percentage <= Decimal("100"):
            raise ValueError("release_percentage must be between 0 and 100")
        self.released_amount = to_decimal(self.released_amount)
        if self.created_at is None:
            self.created_at = utc_now()

    @property
    def is_paid(self) -> bool:
        return self.released_at is not None
