"""Projects and bids.

Models:
- Project: a renovation job posted by a homeowner
- Bid: a contractor's offer, stored under its project
- ProjectStatus / BidStatus: lifecycle statuses

Ledger:
- ProjectLedger: project and bid state machines
"""

from renobid.projects.ledger import ProjectLedger
from renobid.projects.models import (
    ACTIVE_BID_STATUSES,
    BID_STATUS_TRANSITIONS,
    PROJECT_STATUS_TRANSITIONS,
    Bid,
    BidStatus,
    Project,
    ProjectStatus,
    bids_collection,
)

__all__ = [
    "Project",
    "Bid",
    "ProjectStatus",
    "BidStatus",
    "PROJECT_STATUS_TRANSITIONS",
    "BID_STATUS_TRANSITIONS",
    "ACTIVE_BID_STATUSES",
    "bids_collection",
    "ProjectLedger",
]
