"""Homeowner routes.

Project drafting and submission, bid selection, and the post-match
workflow (start, complete, cancel, milestone confirmation).
"""

from fastapi import APIRouter, Query, Request, status

from renobid.errors import ProjectError
from renobid.projects import ProjectStatus

from ..auth import HomeownerUser
from ..logging_config import get_logger
from ..models import (
    BidListResponse,
    MatchDetailsResponse,
    MatchResponse,
    MilestoneResponse,
    ProjectCreate,
    ProjectListResponse,
    ProjectResponse,
    ProjectUpdate,
    ReasonRequest,
    SelectBidRequest,
    SubmitProjectRequest,
    to_bid_response,
    to_escrow_response,
    to_fee_response,
    to_match_details_response,
    to_milestone_response,
    to_project_response,
)
from ..rate_limit import get_caller_key, limiter, selection_limit
from ..services import ServicesDep

logger = get_logger("renobid.api.homeowner")
router = APIRouter(prefix="/homeowner", tags=["homeowner"])


# =============================================================================
# Helper Functions
# =============================================================================


async def get_owned_project(services, project_id: str, owner_id: str):
    """Load a project, rejecting callers who do not own it."""
    project = await services.projects.get_project(project_id)
    if project.owner_id != owner_id:
        raise ProjectError("PROJECT_ACCESS_DENIED", "Only the project owner can view this project")
    return project


# =============================================================================
# Projects
# =============================================================================


@router.post("/projects", response_model=ProjectResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("20/minute")
async def create_project(
    request: Request,
    body: ProjectCreate,
    auth: HomeownerUser,
    services: ServicesDep,
):
    """Create a DRAFT project owned by the caller."""
    logger.info(f"POST /homeowner/projects | owner={auth.user_id} | title={body.title[:50]}")
    fields = body.model_dump(exclude={"title"})
    project = await services.projects.create_project(auth.user_id, body.title, **fields)
    return to_project_response(project)


@router.get("/projects", response_model=ProjectListResponse)
@limiter.limit("60/minute")
async def list_my_projects(
    request: Request,
    auth: HomeownerUser,
    services: ServicesDep,
    status_filter: ProjectStatus | None = Query(None, alias="status"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    projects = await services.projects.list_projects(
        status=status_filter, owner_id=auth.user_id, limit=limit, offset=offset
    )
    return ProjectListResponse(
        projects=[to_project_response(p) for p in projects], limit=limit, offset=offset
    )


@router.get("/projects/{project_id}", response_model=ProjectResponse)
@limiter.limit("60/minute")
async def get_project(request: Request, project_id: str, auth: HomeownerUser, services: ServicesDep):
    project = await get_owned_project(services, project_id, auth.user_id)
    return to_project_response(project)


@router.put("/projects/{project_id}", response_model=ProjectResponse)
@limiter.limit("30/minute")
async def update_project(
    request: Request,
    project_id: str,
    body: ProjectUpdate,
    auth: HomeownerUser,
    services: ServicesDep,
):
    """Edit a DRAFT or REJECTED project. Only fields sent are changed."""
    logger.info(f"PUT /homeowner/projects/{project_id} | owner={auth.user_id}")
    project = await services.projects.update_project(
        project_id, auth.user_id, **body.model_dump(exclude_unset=True)
    )
    return to_project_response(project)


@router.delete("/projects/{project_id}", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit("20/minute")
async def delete_project(request: Request, project_id: str, auth: HomeownerUser, services: ServicesDep):
    logger.info(f"DELETE /homeowner/projects/{project_id} | owner={auth.user_id}")
    await services.projects.delete_project(project_id, auth.user_id)


@router.post("/projects/{project_id}/submit", response_model=ProjectResponse)
@limiter.limit("10/minute")
async def submit_project(
    request: Request,
    project_id: str,
    auth: HomeownerUser,
    services: ServicesDep,
    body: SubmitProjectRequest | None = None,
):
    """Send the project for admin approval with its bid deadline."""
    logger.info(f"POST /homeowner/projects/{project_id}/submit | owner={auth.user_id}")
    deadline = body.bid_deadline if body else None
    project = await services.projects.submit(project_id, auth.user_id, bid_deadline=deadline)
    return to_project_response(project)


@router.post("/projects/{project_id}/close-bidding", response_model=ProjectResponse)
@limiter.limit("10/minute")
async def close_bidding(request: Request, project_id: str, auth: HomeownerUser, services: ServicesDep):
    logger.info(f"POST /homeowner/projects/{project_id}/close-bidding | owner={auth.user_id}")
    project = await services.projects.close_bidding(project_id, auth.user_id)
    return to_project_response(project)


@router.post("/projects/{project_id}/reopen-bidding", response_model=ProjectResponse)
@limiter.limit("10/minute")
async def reopen_bidding(
    request: Request,
    project_id: str,
    auth: HomeownerUser,
    services: ServicesDep,
    body: SubmitProjectRequest | None = None,
):
    logger.info(f"POST /homeowner/projects/{project_id}/reopen-bidding | owner={auth.user_id}")
    deadline = body.bid_deadline if body else None
    project = await services.projects.reopen_bidding(project_id, auth.user_id, bid_deadline=deadline)
    return to_project_response(project)


@router.get("/projects/{project_id}/bids", response_model=BidListResponse)
@limiter.limit("60/minute")
async def list_project_bids(
    request: Request, project_id: str, auth: HomeownerUser, services: ServicesDep
):
    """Bids on the caller's project."""
    await get_owned_project(services, project_id, auth.user_id)
    bids = await services.projects.list_bids(project_id)
    return BidListResponse(bids=[to_bid_response(b) for b in bids], total=len(bids))


# =============================================================================
# Matching
# =============================================================================


@router.post("/projects/{project_id}/select-bid", response_model=MatchResponse)
@limiter.limit(selection_limit, key_func=get_caller_key)
async def select_bid(
    request: Request,
    project_id: str,
    body: SelectBidRequest,
    auth: HomeownerUser,
    services: ServicesDep,
):
    """
    Select the winning bid.

    Creates the escrow (PENDING, awaiting the deposit) and the contractor's
    win fee. Safe to retry: a repeated request returns the same match.
    """
    logger.info(
        f"POST /homeowner/projects/{project_id}/select-bid | owner={auth.user_id} | bid={body.bid_id}"
    )
    result = await services.matches.select_bid(project_id, body.bid_id, auth.user_id)
    logger.info(f"Match created | project={project_id} | escrow={result.escrow.id}")
    return MatchResponse(
        project=to_project_response(result.project),
        bid=to_bid_response(result.bid),
        escrow=to_escrow_response(result.escrow),
        fee=to_fee_response(result.fee),
        saga_id=result.saga.id,
    )


@router.get("/projects/{project_id}/match", response_model=MatchDetailsResponse)
@limiter.limit("60/minute")
async def get_match(request: Request, project_id: str, auth: HomeownerUser, services: ServicesDep):
    await get_owned_project(services, project_id, auth.user_id)
    details = await services.matches.get_match(project_id)
    return to_match_details_response(details)


@router.post("/projects/{project_id}/start", response_model=MatchDetailsResponse)
@limiter.limit("10/minute")
async def start_project(request: Request, project_id: str, auth: HomeownerUser, services: ServicesDep):
    """Start work once the deposit is held; creates the milestones."""
    logger.info(f"POST /homeowner/projects/{project_id}/start | owner={auth.user_id}")
    details = await services.matches.start_project(project_id, auth.user_id)
    return to_match_details_response(details)


@router.post("/projects/{project_id}/complete", response_model=MatchDetailsResponse)
@limiter.limit("10/minute")
async def complete_project(
    request: Request, project_id: str, auth: HomeownerUser, services: ServicesDep
):
    logger.info(f"POST /homeowner/projects/{project_id}/complete | owner={auth.user_id}")
    details = await services.matches.complete_project(project_id, auth.user_id)
    return to_match_details_response(details)


@router.post("/projects/{project_id}/cancel", response_model=ProjectResponse)
@limiter.limit("10/minute")
async def cancel_project(
    request: Request,
    project_id: str,
    body: ReasonRequest,
    auth: HomeownerUser,
    services: ServicesDep,
):
    """Cancel the project; a held deposit is refunded and pending fees cancelled."""
    logger.info(f"POST /homeowner/projects/{project_id}/cancel | owner={auth.user_id}")
    project = await services.matches.cancel_project(project_id, auth.user_id, body.reason)
    return to_project_response(project)


# =============================================================================
# Milestones
# =============================================================================


@router.post(
    "/escrow/{escrow_id}/milestones/{milestone_id}/confirm", response_model=MilestoneResponse
)
@limiter.limit("20/minute")
async def confirm_milestone(
    request: Request,
    escrow_id: str,
    milestone_id: str,
    auth: HomeownerUser,
    services: ServicesDep,
):
    logger.info(
        f"POST /homeowner/escrow/{escrow_id}/milestones/{milestone_id}/confirm | owner={auth.user_id}"
    )
    milestone = await services.escrows.confirm_completion(escrow_id, milestone_id, auth.user_id)
    return to_milestone_response(milestone)


@router.post(
    "/escrow/{escrow_id}/milestones/{milestone_id}/dispute", response_model=MilestoneResponse
)
@limiter.limit("20/minute")
async def dispute_milestone(
    request: Request,
    escrow_id: str,
    milestone_id: str,
    body: ReasonRequest,
    auth: HomeownerUser,
    services: ServicesDep,
):
    """Reject a completion claim; the escrow is frozen until an admin resolves it."""
    logger.info(
        f"POST /homeowner/escrow/{escrow_id}/milestones/{milestone_id}/dispute | owner={auth.user_id}"
    )
    milestone = await services.escrows.dispute_milestone(
        escrow_id, milestone_id, auth.user_id, body.reason
    )
    return to_milestone_response(milestone)
