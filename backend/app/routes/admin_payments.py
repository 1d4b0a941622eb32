"""Admin escrow and fee routes.

Escrow here is bookkeeping of custody: each endpoint records a money
movement the operator has carried out, it does not move money itself.
"""

from fastapi import APIRouter, Query, Request

from renobid.escrow import EscrowStatus
from renobid.fees import FeeStatus, FeeType

from ..auth import AdminUser
from ..logging_config import get_logger
from ..models import (
    CancelFeeRequest,
    EscrowListResponse,
    EscrowResponse,
    FeeListResponse,
    FeeResponse,
    FeeStatsResponse,
    MilestoneResponse,
    NoteRequest,
    PartialReleaseRequest,
    ReasonRequest,
    ResolveDisputeRequest,
    to_escrow_response,
    to_fee_response,
    to_milestone_response,
)
from ..rate_limit import get_caller_key, limiter, money_limit
from ..services import ServicesDep

logger = get_logger("renobid.api.admin_payments")
router = APIRouter(prefix="/admin", tags=["admin", "payments"])


# =============================================================================
# Escrow
# =============================================================================


@router.get("/escrow", response_model=EscrowListResponse)
@limiter.limit("60/minute")
async def list_escrows(
    request: Request,
    admin: AdminUser,
    services: ServicesDep,
    status_filter: EscrowStatus | None = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    escrows = await services.escrows.list_escrows(status=status_filter, limit=limit, offset=offset)
    return EscrowListResponse(
        escrows=[to_escrow_response(e) for e in escrows], limit=limit, offset=offset
    )


@router.get("/escrow/{escrow_id}", response_model=EscrowResponse)
@limiter.limit("60/minute")
async def get_escrow(request: Request, escrow_id: str, admin: AdminUser, services: ServicesDep):
    return to_escrow_response(await services.escrows.get_escrow(escrow_id))


@router.put("/escrow/{escrow_id}/confirm", response_model=EscrowResponse)
@limiter.limit(money_limit, key_func=get_caller_key)
async def confirm_deposit(
    request: Request,
    escrow_id: str,
    admin: AdminUser,
    services: ServicesDep,
    body: NoteRequest | None = None,
):
    logger.info(f"PUT /admin/escrow/{escrow_id}/confirm | admin={admin.user_id}")
    escrow = await services.escrows.confirm_deposit(
        escrow_id, admin.user_id, body.note if body else None
    )
    return to_escrow_response(escrow)


@router.put("/escrow/{escrow_id}/release", response_model=EscrowResponse)
@limiter.limit(money_limit, key_func=get_caller_key)
async def release_escrow(
    request: Request,
    escrow_id: str,
    admin: AdminUser,
    services: ServicesDep,
    body: NoteRequest | None = None,
):
    logger.info(f"PUT /admin/escrow/{escrow_id}/release | admin={admin.user_id}")
    escrow = await services.escrows.release(escrow_id, admin.user_id, body.note if body else None)
    return to_escrow_response(escrow)


@router.put("/escrow/{escrow_id}/partial-release", response_model=EscrowResponse)
@limiter.limit(money_limit, key_func=get_caller_key)
async def partial_release_escrow(
    request: Request,
    escrow_id: str,
    body: PartialReleaseRequest,
    admin: AdminUser,
    services: ServicesDep,
):
    logger.info(
        f"PUT /admin/escrow/{escrow_id}/partial-release | admin={admin.user_id} | amount={body.amount}"
    )
    escrow = await services.escrows.partial_release(
        escrow_id, admin.user_id, body.amount, body.note
    )
    return to_escrow_response(escrow)


@router.put("/escrow/{escrow_id}/refund", response_model=EscrowResponse)
@limiter.limit(money_limit, key_func=get_caller_key)
async def refund_escrow(
    request: Request,
    escrow_id: str,
    body: ReasonRequest,
    admin: AdminUser,
    services: ServicesDep,
):
    logger.info(f"PUT /admin/escrow/{escrow_id}/refund | admin={admin.user_id}")
    escrow = await services.escrows.refund(escrow_id, admin.user_id, body.reason)
    return to_escrow_response(escrow)


@router.put("/escrow/{escrow_id}/dispute", response_model=EscrowResponse)
@limiter.limit("30/minute")
async def dispute_escrow(
    request: Request,
    escrow_id: str,
    body: ReasonRequest,
    admin: AdminUser,
    services: ServicesDep,
):
    logger.info(f"PUT /admin/escrow/{escrow_id}/dispute | admin={admin.user_id}")
    escrow = await services.escrows.mark_disputed(escrow_id, admin.user_id, body.reason)
    return to_escrow_response(escrow)


@router.put("/escrow/{escrow_id}/resolve", response_model=EscrowResponse)
@limiter.limit(money_limit, key_func=get_caller_key)
async def resolve_dispute(
    request: Request,
    escrow_id: str,
    body: ResolveDisputeRequest,
    admin: AdminUser,
    services: ServicesDep,
):
    logger.info(
        f"PUT /admin/escrow/{escrow_id}/resolve | admin={admin.user_id} | resolution={body.resolution}"
    )
    escrow = await services.escrows.resolve_dispute(
        escrow_id, admin.user_id, body.resolution, body.note
    )
    return to_escrow_response(escrow)


@router.put("/escrow/{escrow_id}/cancel", response_model=EscrowResponse)
@limiter.limit(money_limit, key_func=get_caller_key)
async def cancel_escrow(
    request: Request,
    escrow_id: str,
    body: ReasonRequest,
    admin: AdminUser,
    services: ServicesDep,
):
    logger.info(f"PUT /admin/escrow/{escrow_id}/cancel | admin={admin.user_id}")
    escrow = await services.escrows.cancel(escrow_id, admin.user_id, body.reason)
    return to_escrow_response(escrow)


@router.get("/escrow/{escrow_id}/milestones", response_model=list[MilestoneResponse])
@limiter.limit("60/minute")
async def list_milestones(request: Request, escrow_id: str, admin: AdminUser, services: ServicesDep):
    await services.escrows.get_escrow(escrow_id)
    return [to_milestone_response(m) for m in await services.escrows.list_milestones(escrow_id)]


@router.post("/escrow/{escrow_id}/milestones/{milestone_id}/release", response_model=EscrowResponse)
@limiter.limit(money_limit, key_func=get_caller_key)
async def release_milestone(
    request: Request,
    escrow_id: str,
    milestone_id: str,
    admin: AdminUser,
    services: ServicesDep,
):
    """Pay out a confirmed milestone's share of the escrow."""
    logger.info(
        f"POST /admin/escrow/{escrow_id}/milestones/{milestone_id}/release | admin={admin.user_id}"
    )
    escrow = await services.escrows.release_milestone(escrow_id, milestone_id, admin.user_id)
    return to_escrow_response(escrow)


# =============================================================================
# Fees
# =============================================================================


@router.get("/fees", response_model=FeeListResponse)
@limiter.limit("60/minute")
async def list_fees(
    request: Request,
    admin: AdminUser,
    services: ServicesDep,
    status_filter: FeeStatus | None = Query(None, alias="status"),
    fee_type: FeeType | None = Query(None, alias="type"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    fees = await services.fees.list_fees(
        status=status_filter, fee_type=fee_type, limit=limit, offset=offset
    )
    return FeeListResponse(fees=[to_fee_response(f) for f in fees], limit=limit, offset=offset)


@router.get("/fees/stats", response_model=FeeStatsResponse)
@limiter.limit("30/minute")
async def fee_stats(request: Request, admin: AdminUser, services: ServicesDep):
    return FeeStatsResponse(**await services.fees.get_stats())


@router.put("/fees/{fee_id}/paid", response_model=FeeResponse)
@limiter.limit(money_limit, key_func=get_caller_key)
async def mark_fee_paid(request: Request, fee_id: str, admin: AdminUser, services: ServicesDep):
    logger.info(f"PUT /admin/fees/{fee_id}/paid | admin={admin.user_id}")
    return to_fee_response(await services.fees.mark_paid(fee_id, admin.user_id))


@router.put("/fees/{fee_id}/cancel", response_model=FeeResponse)
@limiter.limit(money_limit, key_func=get_caller_key)
async def cancel_fee(
    request: Request,
    fee_id: str,
    admin: AdminUser,
    services: ServicesDep,
    body: CancelFeeRequest | None = None,
):
    logger.info(f"PUT /admin/fees/{fee_id}/cancel | admin={admin.user_id}")
    fee = await services.fees.cancel(fee_id, admin.user_id, body.reason if body else None)
    return to_fee_response(fee)
