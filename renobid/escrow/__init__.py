"""Escrow custody and milestones.

Models:
- Escrow: custody record of a matched project's deposit
- Milestone: completion checkpoint under an escrow

Ledger:
- EscrowLedger: escrow and milestone state machines
"""

from renobid.escrow.ledger import EscrowLedger
from renobid.escrow.models import (
    ACTIVE_ESCROW_STATUSES,
    DEFAULT_MILESTONES,
    ESCROW_STATUS_TRANSITIONS,
    DisputeResolution,
    Escrow,
    EscrowStatus,
    EscrowTransactionType,
    Milestone,
    MilestoneStatus,
    escrow_id_for,
    milestones_collection,
)

__all__ = [
    "Escrow",
    "Milestone",
    "EscrowStatus",
    "MilestoneStatus",
    "EscrowTransactionType",
    "DisputeResolution",
    "ESCROW_STATUS_TRANSITIONS",
    "ACTIVE_ESCROW_STATUSES",
    "DEFAULT_MILESTONES",
    "escrow_id_for",
    "milestones_collection",
    "EscrowLedger",
]
