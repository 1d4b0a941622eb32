"""Contractor routes: browsing open projects, bidding, milestone requests."""

from fastapi import APIRouter, Query, Request, status

from renobid.errors import EscrowError
from renobid.projects import ProjectStatus

from ..auth import ContractorUser
from ..logging_config import get_logger
from ..models import (
    BidCreate,
    BidResponse,
    BidUpdate,
    MilestoneResponse,
    ProjectListResponse,
    to_bid_response,
    to_milestone_response,
    to_project_response,
)
from ..rate_limit import bid_limit, get_caller_key, limiter
from ..services import ServicesDep

logger = get_logger("renobid.api.contractor")
router = APIRouter(prefix="/contractor", tags=["contractor"])


@router.get("/projects", response_model=ProjectListResponse)
@limiter.limit("60/minute")
async def list_open_projects(
    request: Request,
    auth: ContractorUser,
    services: ServicesDep,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    """Projects currently accepting bids."""
    projects = await services.projects.list_projects(
        status=ProjectStatus.OPEN, limit=limit, offset=offset
    )
    return ProjectListResponse(
        projects=[to_project_response(p) for p in projects], limit=limit, offset=offset
    )


@router.post(
    "/projects/{project_id}/bids", response_model=BidResponse, status_code=status.HTTP_201_CREATED
)
@limiter.limit(bid_limit, key_func=get_caller_key)
async def create_bid(
    request: Request,
    project_id: str,
    body: BidCreate,
    auth: ContractorUser,
    services: ServicesDep,
):
    """
    Bid on an open project.

    One active bid per contractor per project; bids close at the project's
    deadline or once it has max_bids active bids.
    """
    logger.info(f"POST /contractor/projects/{project_id}/bids | contractor={auth.user_id}")
    bid = await services.projects.create_bid(
        project_id,
        auth.user_id,
        body.price,
        body.timeline,
        body.proposal,
        attachments=body.attachments,
    )
    logger.info(f"Bid created | id={bid.id} | project={project_id} | contractor={auth.user_id}")
    return to_bid_response(bid)


@router.put("/projects/{project_id}/bids/{bid_id}", response_model=BidResponse)
@limiter.limit(bid_limit, key_func=get_caller_key)
async def update_bid(
    request: Request,
    project_id: str,
    bid_id: str,
    body: BidUpdate,
    auth: ContractorUser,
    services: ServicesDep,
):
    logger.info(f"PUT /contractor/projects/{project_id}/bids/{bid_id} | contractor={auth.user_id}")
    bid = await services.projects.update_bid(
        project_id, bid_id, auth.user_id, **body.model_dump(exclude_unset=True)
    )
    return to_bid_response(bid)


@router.post("/projects/{project_id}/bids/{bid_id}/withdraw", response_model=BidResponse)
@limiter.limit(bid_limit, key_func=get_caller_key)
async def withdraw_bid(
    request: Request,
    project_id: str,
    bid_id: str,
    auth: ContractorUser,
    services: ServicesDep,
):
    logger.info(
        f"POST /contractor/projects/{project_id}/bids/{bid_id}/withdraw | contractor={auth.user_id}"
    )
    bid = await services.projects.withdraw_bid(project_id, bid_id, auth.user_id)
    return to_bid_response(bid)


@router.get("/escrow/{escrow_id}/milestones", response_model=list[MilestoneResponse])
@limiter.limit("60/minute")
async def list_milestones(
    request: Request, escrow_id: str, auth: ContractorUser, services: ServicesDep
):
    escrow = await services.escrows.get_escrow(escrow_id)
    if escrow.contractor_id != auth.user_id:
        raise EscrowError("MILESTONE_ACCESS_DENIED", "Only the matched contractor can view milestones")
    return [to_milestone_response(m) for m in await services.escrows.list_milestones(escrow_id)]


@router.post(
    "/escrow/{escrow_id}/milestones/{milestone_id}/request", response_model=MilestoneResponse
)
@limiter.limit("20/minute")
async def request_milestone(
    request: Request,
    escrow_id: str,
    milestone_id: str,
    auth: ContractorUser,
    services: ServicesDep,
):
    """Claim a milestone is complete; the homeowner confirms or disputes it."""
    logger.info(
        f"POST /contractor/escrow/{escrow_id}/milestones/{milestone_id}/request "
        f"| contractor={auth.user_id}"
    )
    milestone = await services.escrows.request_completion(escrow_id, milestone_id, auth.user_id)
    return to_milestone_response(milestone)
