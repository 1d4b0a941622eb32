"""
Project and bid data models.

Projects move through the marketplace lifecycle: drafted by a homeowner,
approved by an admin, opened for bids, matched to one winning bid, worked
and completed. Bids live in a sub-collection under their project.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from renobid.types import DocumentModel, to_decimal, utc_now

PROJECTS_COLLECTION = "projects"
BIDS_SUBCOLLECTION = "bids"


class ProjectStatus(str, Enum):
    """Project lifecycle status."""

    DRAFT = "DRAFT"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    REJECTED = "REJECTED"
    OPEN = "OPEN"
    BIDDING_CLOSED = "BIDDING_CLOSED"
    MATCHED = "MATCHED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class BidStatus(str, Enum):
    """Bid lifecycle status."""

    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    SELECTED = "SELECTED"
    WITHDRAWN = "WITHDRAWN"


PROJECT_STATUS_TRANSITIONS: Dict[ProjectStatus, set] = {
    ProjectStatus.DRAFT: {ProjectStatus.PENDING_APPROVAL, ProjectStatus.CANCELLED},
    ProjectStatus.PENDING_APPROVAL: {ProjectStatus.OPEN, ProjectStatus.REJECTED},
    ProjectStatus.REJECTED: {ProjectStatus.PENDING_APPROVAL, ProjectStatus.CANCELLED},
    ProjectStatus.OPEN: {ProjectStatus.BIDDING_CLOSED, ProjectStatus.CANCELLED},
    ProjectStatus.BIDDING_CLOSED: {
        ProjectStatus.MATCHED,
        ProjectStatus.OPEN,
        ProjectStatus.CANCELLED,
    },
    ProjectStatus.MATCHED: {ProjectStatus.IN_PROGRESS, ProjectStatus.CANCELLED},
    ProjectStatus.IN_PROGRESS: {ProjectStatus.COMPLETED, ProjectStatus.CANCELLED},
    ProjectStatus.COMPLETED: set(),
    ProjectStatus.CANCELLED: set(),
}

BID_STATUS_TRANSITIONS: Dict[BidStatus, set] = {
    BidStatus.PENDING: {BidStatus.APPROVED, BidStatus.REJECTED},
    BidStatus.APPROVED: {BidStatus.SELECTED, BidStatus.WITHDRAWN},
    BidStatus.REJECTED: set(),
    BidStatus.SELECTED: set(),
    BidStatus.WITHDRAWN: set(),
}

# Statuses that count against max_bids and block a second bid by the same contractor
ACTIVE_BID_STATUSES = (BidStatus.PENDING, BidStatus.APPROVED, BidStatus.SELECTED)

# Project statuses in which selected_bid_id must be set
MATCHED_STATUSES = (ProjectStatus.MATCHED, ProjectStatus.IN_PROGRESS, ProjectStatus.COMPLETED)


def can_transition_project(from_status: str, to_status: str) -> bool:
    """Check if a project status transition is valid."""
    try:
        return ProjectStatus(to_status) in PROJECT_STATUS_TRANSITIONS[ProjectStatus(from_status)]
    except ValueError:
        return False


def can_transition_bid(from_status: str, to_status: str) -> bool:
    """Check if a bid status transition is valid."""
    try:
        return BidStatus(to_status) in BID_STATUS_TRANSITIONS[BidStatus(from_status)]
    except ValueError:
        return False


def bids_collection(project_id: str) -> str:
    return f"{PROJECTS_COLLECTION}/{project_id}/{BIDS_SUBCOLLECTION}"


@dataclass
class Project(DocumentModel):
    """A renovation job posted by a homeowner.

    Attributes:
        id: Document id
        code: Human-readable code (PRJyymmNNNN)
        owner_id: Homeowner who posted the project
        status: Lifecycle status (see ProjectStatus)
        selected_bid_id: Winning bid, set while matched, in progress or completed
        max_bids: Cap on active bids
        bid_deadline: Bids are accepted strictly before this instant
        match_round: Number of matches undone so far; scopes idempotency keys
    """

    id: str
    owner_id: str
    title: str
    code: str = ""
    description: str = ""
    category_id: Optional[str] = None
    region_id: Optional[str] = None
    address: str = ""
    area: Optional[float] = None
    budget_min: Optional[Decimal] = None
    budget_max: Optional[Decimal] = None
    timeline: Optional[str] = None
    requirements: Optional[str] = None
    images: List[str] = field(default_factory=list)
    status: str = ProjectStatus.DRAFT.value
    selected_bid_id: Optional[str] = None
    max_bids: int = 10
    bid_deadline: Optional[datetime] = None
    matched_at: Optional[datetime] = None
    published_at: Optional[datetime] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    review_note: Optional[str] = None
    match_round: int = 0
    cancel_reason: Optional[str] = None
    cancelled_by: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    version: int = 0

    DATETIME_FIELDS = (
        "bid_deadline",
        "matched_at",
        "published_at",
        "reviewed_at",
        "cancelled_at",
        "created_at",
        "updated_at",
    )
    MONEY_FIELDS = ("budget_min", "budget_max")

    def __post_init__(self):
        """Validate fields after initialization."""
        valid = [s.value for s in ProjectStatus]
        self.status = getattr(self.status, "value", self.status)
        if self.status not in valid:
            raise ValueError(f"Invalid status: {self.status}. Must be one of {valid}")
        if not self.owner_id:
            raise ValueError("owner_id is required")
        if not self.title or not self.title.strip():
            raise ValueError("Title is required")
        if self.max_bids < 1:
            raise ValueError("max_bids must be at least 1")
        if self.area is not None and self.area <= 0:
            raise ValueError("Area must be positive")

        self.budget_min = to_decimal(self.budget_min)
        self.budget_max = to_decimal(self.budget_max)
        for budget in (self.budget_min, self.budget_max):
            if budget is not None and budget < 0:
                raise ValueError("Budget must not be negative")
        if (
            self.budget_min is not None
            and self.budget_max is not None
            and self.budget_min > self.budget_max
        ):
            raise ValueError("budget_min must not exceed budget_max")

        if self.created_at is None:
            self.created_at = utc_now()
        if self.updated_at is None:
            self.updated_at = self.created_at

    @property
    def is_terminal(self) -> bool:
        return self.status in (ProjectStatus.COMPLETED.value, ProjectStatus.CANCELLED.value)

    @property
    def is_matched(self) -> bool:
        return self.status in [s.value for s in MATCHED_STATUSES]

    def can_transition_to(self, new_status: str) -> bool:
        return can_transition_project(self.status, new_status)


@dataclass
class Bid(DocumentModel):
    """A contractor's offer on a project."""

    id: str
    project_id: str
    contractor_id: str
    price: Decimal
    timeline: str = ""
    proposal: str = ""
    code: str = ""
    attachments: List[Dict[str, Any]] = field(default_factory=list)
    response_time_hours: Optional[float] = None
    status: str = BidStatus.PENDING.value
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    review_note: Optional[str] = None
    withdrawn_at: Optional[datetime] = None
    selected_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    version: int = 0

    DATETIME_FIELDS = ("reviewed_at", "withdrawn_at", "selected_at", "created_at", "updated_at")
    MONEY_FIELDS = ("price",)

    def __post_init__(self):
        """Validate fields after initialization."""
        valid = [s.value for s in BidStatus]
        self.status = getattr(self.status, "value", self.status)
        if self.status not in valid:
            raise ValueError(f"Invalid status: {self.status}. Must be one of {valid}")
        if not self.contractor_id:
            raise ValueError("contractor_id is required")
        self.price = to_decimal(self.price)
        if self.price is None or self.price <= 0:
            raise ValueError("Price must be positive")

        if self.created_at is None:
            self.created_at = utc_now()
        if self.updated_at is None:
            self.updated_at = self.created_at

    @property
    def is_active(self) -> bool:
        return self.status in [s.value for s in ACTIVE_BID_STATUSES]

    def can_transition_to(self, new_status: str) -> bool:
        return can_transition_bid(self.status, new_status)
