"""Admin routes: project and bid review, match management, bidding settings.

All endpoints require a token with the admin role.
"""

from fastapi import APIRouter, Query, Request

from renobid.escrow import EscrowStatus
from renobid.fees import FeeStatus
from renobid.matching import SagaStatus
from renobid.projects import ProjectStatus

from ..auth import AdminUser
from ..logging_config import get_logger
from ..models import (
    BiddingPolicyResponse,
    BiddingPolicyUpdate,
    BidResponse,
    MatchDetailsResponse,
    MatchListResponse,
    NoteRequest,
    ProjectListResponse,
    ProjectResponse,
    ReasonRequest,
    RejectRequest,
    SagaListResponse,
    SagaResponse,
    to_bid_response,
    to_match_details_response,
    to_project_response,
    to_saga_response,
)
from ..rate_limit import limiter
from ..services import ServicesDep

logger = get_logger("renobid.api.admin")
router = APIRouter(prefix="/admin", tags=["admin"])


# =============================================================================
# Project Review
# =============================================================================


@router.get("/projects", response_model=ProjectListResponse)
@limiter.limit("60/minute")
async def list_projects(
    request: Request,
    admin: AdminUser,
    services: ServicesDep,
    status_filter: ProjectStatus | None = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    projects = await services.projects.list_projects(status=status_filter, limit=limit, offset=offset)
    return ProjectListResponse(
        projects=[to_project_response(p) for p in projects], limit=limit, offset=offset
    )


@router.put("/projects/{project_id}/approve", response_model=ProjectResponse)
@limiter.limit("30/minute")
async def approve_project(
    request: Request,
    project_id: str,
    admin: AdminUser,
    services: ServicesDep,
    body: NoteRequest | None = None,
):
    """Publish a project for bidding."""
    logger.info(f"PUT /admin/projects/{project_id}/approve | admin={admin.user_id}")
    project = await services.projects.approve(project_id, admin.user_id, body.note if body else None)
    return to_project_response(project)


@router.put("/projects/{project_id}/reject", response_model=ProjectResponse)
@limiter.limit("30/minute")
async def reject_project(
    request: Request,
    project_id: str,
    body: RejectRequest,
    admin: AdminUser,
    services: ServicesDep,
):
    logger.info(f"PUT /admin/projects/{project_id}/reject | admin={admin.user_id}")
    project = await services.projects.reject(project_id, admin.user_id, body.note)
    return to_project_response(project)


@router.put("/projects/{project_id}/bids/{bid_id}/approve", response_model=BidResponse)
@limiter.limit("30/minute")
async def approve_bid(
    request: Request,
    project_id: str,
    bid_id: str,
    admin: AdminUser,
    services: ServicesDep,
    body: NoteRequest | None = None,
):
    logger.info(f"PUT /admin/projects/{project_id}/bids/{bid_id}/approve | admin={admin.user_id}")
    bid = await services.projects.approve_bid(
        project_id, bid_id, admin.user_id, body.note if body else None
    )
    return to_bid_response(bid)


@router.put("/projects/{project_id}/bids/{bid_id}/reject", response_model=BidResponse)
@limiter.limit("30/minute")
async def reject_bid(
    request: Request,
    project_id: str,
    bid_id: str,
    body: RejectRequest,
    admin: AdminUser,
    services: ServicesDep,
):
    logger.info(f"PUT /admin/projects/{project_id}/bids/{bid_id}/reject | admin={admin.user_id}")
    bid = await services.projects.reject_bid(project_id, bid_id, admin.user_id, body.note)
    return to_bid_response(bid)


# =============================================================================
# Matches
# =============================================================================


@router.get("/matches", response_model=MatchListResponse)
@limiter.limit("60/minute")
async def list_matches(
    request: Request,
    admin: AdminUser,
    services: ServicesDep,
    escrow_status: EscrowStatus | None = Query(None),
    fee_status: FeeStatus | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
):
    page_result = await services.matches.list_matches(
        escrow_status=escrow_status, fee_status=fee_status, page=page, limit=limit
    )
    return MatchListResponse(
        matches=[to_match_details_response(m) for m in page_result.items],
        total=page_result.total,
        page=page_result.page,
        limit=page_result.limit,
    )


@router.get("/matches/sagas", response_model=SagaListResponse)
@limiter.limit("30/minute")
async def list_sagas(
    request: Request,
    admin: AdminUser,
    services: ServicesDep,
    status_filter: SagaStatus | None = Query(None, alias="status"),
):
    """Selection sagas, e.g. ``?status=FAILED`` to find matches needing recovery."""
    sagas = await services.matches.list_sagas(status=status_filter)
    return SagaListResponse(sagas=[to_saga_response(s) for s in sagas])


@router.post("/matches/sagas/{saga_id}/recover", response_model=SagaResponse)
@limiter.limit("10/minute")
async def recover_saga(request: Request, saga_id: str, admin: AdminUser, services: ServicesDep):
    """Drive an interrupted saga forward, or finish compensating a failed one."""
    logger.info(f"POST /admin/matches/sagas/{saga_id}/recover | admin={admin.user_id}")
    saga = await services.matches.recover_saga(saga_id, admin.user_id)
    return to_saga_response(saga)


@router.get("/matches/{project_id}", response_model=MatchDetailsResponse)
@limiter.limit("60/minute")
async def get_match(request: Request, project_id: str, admin: AdminUser, services: ServicesDep):
    details = await services.matches.get_match(project_id)
    return to_match_details_response(details)


@router.put("/matches/{project_id}/approve", response_model=MatchDetailsResponse)
@limiter.limit("30/minute")
async def approve_match(
    request: Request,
    project_id: str,
    admin: AdminUser,
    services: ServicesDep,
    body: NoteRequest | None = None,
):
    """Confirm the homeowner's deposit has arrived (escrow PENDING -> HELD)."""
    logger.info(f"PUT /admin/matches/{project_id}/approve | admin={admin.user_id}")
    details = await services.matches.approve_match(
        project_id, admin.user_id, body.note if body else None
    )
    return to_match_details_response(details)


@router.put("/matches/{project_id}/reject", response_model=ProjectResponse)
@limiter.limit("30/minute")
async def reject_match(
    request: Request,
    project_id: str,
    body: ReasonRequest,
    admin: AdminUser,
    services: ServicesDep,
):
    """Undo the match: escrow cancelled or refunded, fees cancelled, bidding closed again."""
    logger.info(f"PUT /admin/matches/{project_id}/reject | admin={admin.user_id}")
    project = await services.matches.reject_match(project_id, admin.user_id, body.reason)
    return to_project_response(project)


@router.put("/matches/{project_id}/cancel", response_model=ProjectResponse)
@limiter.limit("30/minute")
async def cancel_match(
    request: Request,
    project_id: str,
    body: ReasonRequest,
    admin: AdminUser,
    services: ServicesDep,
):
    logger.info(f"PUT /admin/matches/{project_id}/cancel | admin={admin.user_id}")
    project = await services.matches.cancel_project(
        project_id, admin.user_id, body.reason, is_admin=True
    )
    return to_project_response(project)


# =============================================================================
# Settings
# =============================================================================


@router.get("/settings/bidding", response_model=BiddingPolicyResponse)
@limiter.limit("60/minute")
async def get_bidding_settings(request: Request, admin: AdminUser, services: ServicesDep):
    policy = await services.policy.get_policy()
    return BiddingPolicyResponse(**policy.to_dict())


@router.put("/settings/bidding", response_model=BiddingPolicyResponse)
@limiter.limit("10/minute")
async def update_bidding_settings(
    request: Request,
    body: BiddingPolicyUpdate,
    admin: AdminUser,
    services: ServicesDep,
):
    changes = body.model_dump(exclude_unset=True)
    logger.info(f"PUT /admin/settings/bidding | admin={admin.user_id} | fields={sorted(changes)}")
    policy = await services.policy.update_policy(**changes)
    return BiddingPolicyResponse(**policy.to_dict())
