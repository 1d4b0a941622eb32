"""Pydantic models for API requests and responses."""

from datetime import datetime
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

# =============================================================================
# Project Models
# =============================================================================

class ProjectCreate(BaseModel):
    """Request to create a draft project."""
    title: str = Field(..., min_length=1, max_length=200)
    description: str = ""
    category_id: str | None = None
    region_id: str | None = None
    address: str = ""
    area: float | None = Field(None, gt=0)
    budget_min: Decimal | None = Field(None, ge=0)
    budget_max: Decimal | None = Field(None, ge=0)
    timeline: str | None = None
    requirements: str | None = None
    images: list[str] = Field(default_factory=list)


class ProjectUpdate(BaseModel):
    """Partial edit of a draft project; only fields sent are changed."""
    title: str | None = Field(None, min_length=1, max_length=200)
    description: str | None = None
    category_id: str | None = None
    region_id: str | None = None
    address: str | None = None
    area: float | None = Field(None, gt=0)
    budget_min: Decimal | None = Field(None, ge=0)
    budget_max: Decimal | None = Field(None, ge=0)
    timeline: str | None = None
    requirements: str | None = None
    images: list[str] | None = None


class SubmitProjectRequest(BaseModel):
    """Submit for approval; the deadline defaults from the bidding policy."""
    bid_deadline: datetime | None = None

    @field_validator("bid_deadline")
    @classmethod
    def deadline_must_be_aware(cls, v: datetime | None) -> datetime | None:
        if v is not None and v.tzinfo is None:
            raise ValueError("bid_deadline must include a timezone")
        return v


class ProjectResponse(BaseModel):
    """Project details response."""
    id: str
    code: str
    owner_id: str
    title: str
    description: str
    category_id: str | None = None
    region_id: str | None = None
    address: str
    area: float | None = None
    budget_min: Decimal | None = None
    budget_max: Decimal | None = None
    timeline: str | None = None
    requirements: str | None = None
    images: list[str]
    status: str
    selected_bid_id: str | None = None
    max_bids: int
    bid_deadline: datetime | None = None
    matched_at: datetime | None = None
    published_at: datetime | None = None
    reviewed_by: str | None = None
    reviewed_at: datetime | None = None
    review_note: str | None = None
    match_round: int
    cancel_reason: str | None = None
    cancelled_by: str | None = None
    cancelled_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class ProjectListResponse(BaseModel):
    projects: list[ProjectResponse]
    limit: int
    offset: int


# =============================================================================
# Bid Models
# =============================================================================

class BidCreate(BaseModel):
    """Request to bid on an open project."""
    price: Decimal = Field(..., gt=0)
    timeline: str = Field(..., min_length=1)
    proposal: str = Field(..., min_length=1)
    attachments: list[dict[str, Any]] = Field(default_factory=list)


class BidUpdate(BaseModel):
    price: Decimal | None = Field(None, gt=0)
    timeline: str | None = Field(None, min_length=1)
    proposal: str | None = Field(None, min_length=1)
    attachments: list[dict[str, Any]] | None = None


class BidResponse(BaseModel):
    """Bid details response."""
    id: str
    code: str
    project_id: str
    contractor_id: str
    price: Decimal
    timeline: str
    proposal: str
    attachments: list[dict[str, Any]]
    response_time_hours: float | None = None
    status: str
    reviewed_by: str | None = None
    reviewed_at: datetime | None = None
    review_note: str | None = None
    withdrawn_at: datetime | None = None
    selected_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class BidListResponse(BaseModel):
    bids: list[BidResponse]
    total: int


class SelectBidRequest(BaseModel):
    bid_id: str = Field(..., min_length=1)


# =============================================================================
# Shared Action Models
# =============================================================================

class NoteRequest(BaseModel):
    """Optional admin note attached to an action."""
    note: str | None = None


class RejectRequest(BaseModel):
    note: str = Field(..., min_length=1)


class ReasonRequest(BaseModel):
    reason: str = Field(..., min_length=1)


# =============================================================================
# Escrow Models
# =============================================================================

class EscrowTransactionResponse(BaseModel):
    type: str
    amount: Decimal
    date: datetime
    note: str | None = None
    actor: str | None = None


class EscrowResponse(BaseModel):
    """Escrow details response, including its transaction log."""
    id: str
    code: str
    project_id: str
    bid_id: str
    homeowner_id: str
    contractor_id: str | None = None
    amount: Decimal
    released_amount: Decimal
    currency: str
    status: str
    transactions: list[EscrowTransactionResponse]
    confirmed_by: str | None = None
    confirmed_at: datetime | None = None
    released_by: str | None = None
    released_at: datetime | None = None
    refunded_by: str | None = None
    refunded_at: datetime | None = None
    refund_reason: str | None = None
    disputed_by: str | None = None
    disputed_at: datetime | None = None
    dispute_reason: str | None = None
    dispute_resolution: str | None = None
    dispute_resolved_by: str | None = None
    dispute_resolved_at: datetime | None = None
    cancelled_by: str | None = None
    cancelled_at: datetime | None = None
    cancel_reason: str | None = None
    created_at: datetime
    updated_at: datetime


class EscrowListResponse(BaseModel):
    escrows: list[EscrowResponse]
    limit: int
    offset: int


class MilestoneResponse(BaseModel):
    id: str
    escrow_id: str
    project_id: str
    name: str
    percentage: int
    release_percentage: Decimal
    status: str
    requested_by: str | None = None
    requested_at: datetime | None = None
    confirmed_by: str | None = None
    confirmed_at: datetime | None = None
    disputed_by: str | None = None
    disputed_at: datetime | None = None
    dispute_reason: str | None = None
    released_amount: Decimal | None = None
    released_at: datetime | None = None
    created_at: datetime


class PartialReleaseRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)
    note: str | None = None


class ResolveDisputeRequest(BaseModel):
    resolution: Literal["RELEASE", "REFUND"]
    note: str | None = None


# =============================================================================
# Fee Models
# =============================================================================

class FeeResponse(BaseModel):
    """Fee transaction response."""
    id: str
    code: str
    user_id: str
    project_id: str | None = None
    bid_id: str | None = None
    type: str
    amount: Decimal
    currency: str
    status: str
    paid_by: str | None = None
    paid_at: datetime | None = None
    cancelled_by: str | None = None
    cancelled_at: datetime | None = None
    cancel_reason: str | None = None
    created_at: datetime
    updated_at: datetime


class FeeListResponse(BaseModel):
    fees: list[FeeResponse]
    limit: int
    offset: int


class FeeStatsResponse(BaseModel):
    total_pending: int
    total_paid: int
    total_cancelled: int
    pending_amount: Decimal
    paid_amount: Decimal


class CancelFeeRequest(BaseModel):
    reason: str | None = None


# =============================================================================
# Match Models
# =============================================================================

class SagaStepResponse(BaseModel):
    name: str
    status: str
    at: datetime
    error: str | None = None


class SagaResponse(BaseModel):
    id: str
    project_id: str
    bid_id: str
    homeowner_id: str
    match_round: int
    status: str
    steps: list[SagaStepResponse]
    escrow_id: str | None = None
    fee_id: str | None = None
    error: str | None = None
    created_at: datetime
    updated_at: datetime


class SagaListResponse(BaseModel):
    sagas: list[SagaResponse]


class MatchResponse(BaseModel):
    """Result of selecting a bid."""
    project: ProjectResponse
    bid: BidResponse
    escrow: EscrowResponse
    fee: FeeResponse
    saga_id: str


class MatchDetailsResponse(BaseModel):
    project: ProjectResponse
    bid: BidResponse
    escrow: EscrowResponse | None = None
    milestones: list[MilestoneResponse]
    fees: list[FeeResponse]


class MatchListResponse(BaseModel):
    matches: list[MatchDetailsResponse]
    total: int
    page: int
    limit: int


# =============================================================================
# Settings Models
# =============================================================================

class BiddingPolicyResponse(BaseModel):
    max_bids_per_project: int
    default_bid_duration_days: int
    min_bid_duration_days: int
    max_bid_duration_days: int
    escrow_percentage: Decimal
    escrow_min_amount: Decimal
    escrow_max_amount: Decimal | None = None
    verification_fee: Decimal
    win_fee_percentage: Decimal


class BiddingPolicyUpdate(BaseModel):
    """Partial policy update; omitted fields keep their current value."""
    max_bids_per_project: int | None = Field(None, ge=1)
    default_bid_duration_days: int | None = Field(None, ge=1)
    min_bid_duration_days: int | None = Field(None, ge=1)
    max_bid_duration_days: int | None = Field(None, ge=1)
    escrow_percentage: Decimal | None = Field(None, ge=0, le=100)
    escrow_min_amount: Decimal | None = Field(None, ge=0)
    escrow_max_amount: Decimal | None = Field(None, ge=0)
    verification_fee: Decimal | None = Field(None, ge=0)
    win_fee_percentage: Decimal | None = Field(None, ge=0, le=100)


# =============================================================================
# Converters
# =============================================================================

def to_project_response(project) -> ProjectResponse:
    return ProjectResponse(**project.to_dict())


def to_bid_response(bid) -> BidResponse:
    return BidResponse(**bid.to_dict())


def to_escrow_response(escrow) -> EscrowResponse:
    return EscrowResponse(**escrow.to_dict())


def to_milestone_response(milestone) -> MilestoneResponse:
    return MilestoneResponse(**milestone.to_dict())


def to_fee_response(fee) -> FeeResponse:
    return FeeResponse(**fee.to_dict())


def to_saga_response(saga) -> SagaResponse:
    return SagaResponse(**saga.to_dict())


def to_match_details_response(details) -> MatchDetailsResponse:
    return MatchDetailsResponse(
        project=to_project_response(details.project),
        bid=to_bid_response(details.bid),
        escrow=to_escrow_response(details.escrow) if details.escrow else None,
        milestones=[to_milestone_response(m) for m in details.milestones],
        fees=[to_fee_response(f) for f in details.fees],
    )
