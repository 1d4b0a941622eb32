"""
Match orchestrator.

Coordinates ProjectLedger, EscrowLedger and FeeLedger for the operations
that span more than one of them. Bid selection runs as a saga: select the
bid, match the project, open the escrow, charge the win fee. If a step
fails the completed ones are compensated in reverse order.

All operations on one project are serialized by a keyed lock; the ledgers'
guarded writes catch anything that slips past it from another process.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from renobid.errors import (
    BidError,
    ConcurrentModificationError,
    EscrowError,
    FeeError,
    MatchError,
    ProjectError,
    RenobidError,
    ValidationError,
)
from renobid.escrow import ACTIVE_ESCROW_STATUSES, Escrow, EscrowLedger, EscrowStatus, Milestone
from renobid.escrow.models import escrow_id_for
from renobid.fees import FeeLedger, FeeStatus, FeeTransaction, FeeType
from renobid.fees.models import fee_id_for
from renobid.locks import KeyedLock
from renobid.logging_config import log_saga_step, log_workflow_event
from renobid.matching.saga import (
    SAGAS_COLLECTION,
    STEP_DONE,
    STEP_FAILED,
    MatchSaga,
    SagaStatus,
    SagaStep,
    make_step,
    saga_id_for,
)
from renobid.policy import PolicyProvider, calculate_escrow_amount, calculate_win_fee
from renobid.projects import Bid, BidStatus, Project, ProjectLedger, ProjectStatus
from renobid.store import CONFLICT, DocumentStore, eq
from renobid.types import serialize_changes, utc_now

logger = logging.getLogger(__name__)


@dataclass
class MatchResult:
    project: Project
    bid: Bid
    escrow: Escrow
    fee: FeeTransaction
    saga: MatchSaga


@dataclass
class MatchDetails:
    """Read model of a matched project and everything hanging off it."""

    project: Project
    bid: Bid
    escrow: Optional[Escrow] = None
    milestones: List[Milestone] = field(default_factory=list)
    fees: List[FeeTransaction] = field(default_factory=list)


@dataclass
class MatchPage:
    items: List[MatchDetails]
    total: int
    page: int
    limit: int


class MatchOrchestrator:
    """Cross-ledger workflows: selection saga, approval, start, completion, cancellation."""

    def __init__(
        self,
        projects: ProjectLedger,
        escrows: EscrowLedger,
        fees: FeeLedger,
        policy: PolicyProvider,
        store: DocumentStore,
        locks: Optional[KeyedLock] = None,
        clock=utc_now,
    ):
        self.projects = projects
        self.escrows = escrows
        self.fees = fees
        self.policy = policy
        self.store = store
        self.locks = locks or KeyedLock()
        self.clock = clock

    # =========================================================================
    # Saga bookkeeping
    # =========================================================================

    async def _save_saga(self, saga: MatchSaga, changes: Dict[str, Any]) -> MatchSaga:
        updated, error = await self.store.update(
            SAGAS_COLLECTION,
            saga.id,
            serialize_changes({**changes, "updated_at": self.clock()}),
            expected={"version": saga.version},
        )
        if error is not None:
            if error == CONFLICT:
                logger.warning(f"Race detected on saga {saga.id}")
            raise ConcurrentModificationError(SAGAS_COLLECTION, saga.id)
        return MatchSaga.from_dict(updated)

    async def _record_step(
        self,
        saga: MatchSaga,
        step: SagaStep,
        status: str = STEP_DONE,
        error: Optional[str] = None,
        **changes,
    ) -> MatchSaga:
        steps = [*saga.steps, make_step(step, status, error, self.clock())]
        log_saga_step(saga.id, step.value, status, error)
        return await self._save_saga(saga, {"steps": steps, **changes})

    async def get_saga(self, saga_id: str) -> MatchSaga:
        doc = await self.store.get(SAGAS_COLLECTION, saga_id)
        if doc is None:
            raise MatchError("SAGA_NOT_FOUND", f"Saga {saga_id} not found")
        return MatchSaga.from_dict(doc)

    async def list_sagas(
        self, status: Optional[SagaStatus] = None, limit: int = 100, offset: int = 0
    ) -> List[MatchSaga]:
        filters = []
        if status is not None:
            filters.append(eq("status", getattr(status, "value", status)))
        docs = await self.store.query(
            SAGAS_COLLECTION, filters, order_by="created_at", descending=True,
            limit=limit, offset=offset,
        )
        return [MatchSaga.from_dict(d) for d in docs]

    async def _open_saga(self, project: Project, bid: Bid, homeowner_id: str) -> MatchSaga:
        saga = MatchSaga(
            id=saga_id_for(project.id, bid.id, project.match_round),
            project_id=project.id,
            bid_id=bid.id,
            homeowner_id=homeowner_id,
            match_round=project.match_round,
            created_at=self.clock(),
        )
        created, error = await self.store.create(SAGAS_COLLECTION, saga.id, saga.to_dict())
        if error is None:
            log_workflow_event(
                "saga_started", f"saga={saga.id} project={project.id} bid={bid.id}", homeowner_id
            )
            return MatchSaga.from_dict(created)

        existing = await self.get_saga(saga.id)
        if existing.status == SagaStatus.COMPENSATED:
            # Earlier attempt was fully undone before the project moved; run again
            return await self._save_saga(existing, {"status": SagaStatus.RUNNING, "error": None})
        if existing.status in (SagaStatus.FAILED, SagaStatus.COMPENSATING):
            raise MatchError(
                "MATCH_ALREADY_EXISTS",
                "A previous match attempt for this bid needs recovery",
                {"saga_id": existing.id},
            )
        return existing

    # =========================================================================
    # Selection saga
    # =========================================================================

    async def select_bid(self, project_id: str, bid_id: str, homeowner_id: str) -> MatchResult:
        """Select the winning bid and set up escrow and win fee.

        Retrying after success returns the stored result; retrying after a
        crash converges on the same escrow and fee records.
        """
        async with self.locks.hold(project_id):
            project = await self.projects.get_project(project_id)
            if project.owner_id != homeowner_id:
                raise ProjectError(
                    "PROJECT_ACCESS_DENIED", "Only the project owner can select a bid"
                )

            saga_doc = await self.store.get(
                SAGAS_COLLECTION, saga_id_for(project_id, bid_id, project.match_round)
            )
            if saga_doc is not None:
                if saga_doc["status"] == SagaStatus.COMPLETED.value:
                    return await self._result(MatchSaga.from_dict(saga_doc))
                if saga_doc["status"] == SagaStatus.RUNNING.value:
                    # Interrupted attempt; pick up where it stopped
                    return await self._run_forward(MatchSaga.from_dict(saga_doc))
                if saga_doc["status"] in (SagaStatus.FAILED.value, SagaStatus.COMPENSATING.value):
                    raise MatchError(
                        "MATCH_ALREADY_EXISTS",
                        "A previous match attempt for this bid needs recovery",
                        {"saga_id": saga_doc["id"]},
                    )

            if project.status == ProjectStatus.MATCHED and project.selected_bid_id != bid_id:
                raise MatchError(
                    "MATCH_ALREADY_EXISTS",
                    "Project is already matched to another bid",
                    {"selected_bid_id": project.selected_bid_id},
                )
            if project.status != ProjectStatus.BIDDING_CLOSED:
                raise ProjectError(
                    "PROJECT_INVALID_STATUS",
                    f"Bids can only be selected once bidding is closed, project is {project.status}",
                )
            bid = await self.projects.get_bid(project_id, bid_id)
            if bid.status != BidStatus.APPROVED:
                raise BidError(
                    "BID_INVALID_STATUS", f"Only approved bids can be selected, got {bid.status}"
                )

            saga = await self._open_saga(project, bid, homeowner_id)
            logger.info(f"Selecting bid {bid_id} for project {project_id} | saga={saga.id}")
            return await self._run_forward(saga)

    async def _run_forward(self, saga: MatchSaga) -> MatchResult:
        """Execute the forward steps not yet recorded as done."""
        done = saga.completed_steps()
        actor = saga.homeowner_id
        step = SagaStep.SELECT_BID
        try:
            bid = await self.projects.get_bid(saga.project_id, saga.bid_id)
            if SagaStep.SELECT_BID not in done:
                bid = await self.projects.select_bid(saga.project_id, saga.bid_id, actor)
                saga = await self._record_step(saga, step)

            step = SagaStep.MATCH_PROJECT
            if SagaStep.MATCH_PROJECT not in done:
                project = await self.projects.get_project(saga.project_id)
                if not (
                    project.status == ProjectStatus.MATCHED
                    and project.selected_bid_id == saga.bid_id
                ):
                    await self.projects.transition_status(
                        saga.project_id, ProjectStatus.MATCHED, actor, selected_bid_id=saga.bid_id
                    )
                saga = await self._record_step(saga, step)

            policy = await self.policy.get_policy()

            step = SagaStep.CREATE_ESCROW
            if SagaStep.CREATE_ESCROW not in done:
                calculation = calculate_escrow_amount(bid.price, policy)
                try:
                    escrow = await self.escrows.create_escrow(
                        saga.project_id,
                        saga.bid_id,
                        saga.homeowner_id,
                        calculation.amount,
                        contractor_id=bid.contractor_id,
                        match_round=saga.match_round,
                    )
                except RenobidError:
                    raise
                except Exception as e:
                    raise MatchError(
                        "ESCROW_CREATION_FAILED", f"Could not create escrow: {e}"
                    ) from e
                saga = await self._record_step(saga, step, escrow_id=escrow.id)

            step = SagaStep.CREATE_FEE
            if SagaStep.CREATE_FEE not in done:
                try:
                    fee = await self.fees.create_win_fee(
                        saga.project_id,
                        saga.bid_id,
                        bid.contractor_id,
                        calculate_win_fee(bid.price, policy),
                        match_round=saga.match_round,
                    )
                except RenobidError:
                    raise
                except Exception as e:
                    raise MatchError("FEE_CREATION_FAILED", f"Could not create win fee: {e}") from e
                saga = await self._record_step(saga, step, fee_id=fee.id)
        except Exception as e:
            logger.error(f"Saga {saga.id} failed at {step.value}: {e}")
            saga = await self._record_step(
                saga, step, STEP_FAILED, str(e), status=SagaStatus.COMPENSATING, error=str(e)
            )
            await self._compensate(saga, actor)
            raise

        saga = await self._save_saga(saga, {"status": SagaStatus.COMPLETED})
        log_workflow_event(
            "match_created", f"project={saga.project_id} bid={saga.bid_id} saga={saga.id}", actor
        )
        return await self._result(saga)

    async def _find_fee(self, fee_id: str) -> Optional[FeeTransaction]:
        try:
            return await self.fees.get_fee(fee_id)
        except FeeError as e:
            if e.code != "FEE_NOT_FOUND":
                raise
            return None

    async def _find_escrow(self, escrow_id: str) -> Optional[Escrow]:
        try:
            return await self.escrows.get_escrow(escrow_id)
        except EscrowError as e:
            if e.code != "ESCROW_NOT_FOUND":
                raise
            return None

    async def _compensate(self, saga: MatchSaga, actor_id: str) -> MatchSaga:
        """Undo the saga's effects in reverse order.

        Ids are deterministic, so effects applied before a crash but never
        recorded are found and undone too. On failure the saga is left
        FAILED for ``recover_saga``.
        """
        if saga.status != SagaStatus.COMPENSATING:
            saga = await self._save_saga(saga, {"status": SagaStatus.COMPENSATING})
        reason = f"Match compensation for saga {saga.id}"
        step = SagaStep.CANCEL_FEE
        try:
            fee = await self._find_fee(
                saga.fee_id or fee_id_for(saga.project_id, saga.bid_id, saga.match_round)
            )
            if fee is not None and fee.status == FeeStatus.PENDING:
                await self.fees.cancel(fee.id, actor_id, reason)
                saga = await self._record_step(saga, step)

            step = SagaStep.CANCEL_ESCROW
            escrow = await self._find_escrow(
                saga.escrow_id or escrow_id_for(saga.project_id, saga.bid_id, saga.match_round)
            )
            if escrow is not None and escrow.status == EscrowStatus.PENDING:
                await self.escrows.cancel(escrow.id, actor_id, reason)
                saga = await self._record_step(saga, step)

            step = SagaStep.REVERT_PROJECT
            project = await self.projects.get_project(saga.project_id)
            if project.status == ProjectStatus.MATCHED and project.selected_bid_id == saga.bid_id:
                await self.projects.revert_match(saga.project_id, actor_id)
                saga = await self._record_step(saga, step)

            step = SagaStep.REVERT_BID
            bid = await self.projects.get_bid(saga.project_id, saga.bid_id)
            if bid.status == BidStatus.SELECTED:
                await self.projects.revert_selection(saga.project_id, saga.bid_id, actor_id)
                saga = await self._record_step(saga, step)
        except Exception as e:
            logger.exception(f"Compensation of saga {saga.id} failed at {step.value}")
            saga = await self._record_step(
                saga, step, STEP_FAILED, str(e), status=SagaStatus.FAILED, error=str(e)
            )
            log_workflow_event("saga_failed", f"saga={saga.id} step={step.value} error={e}", actor_id)
            return saga

        saga = await self._save_saga(saga, {"status": SagaStatus.COMPENSATED})
        log_workflow_event("saga_compensated", f"saga={saga.id}", actor_id)
        return saga

    async def recover_saga(self, saga_id: str, admin_id: str) -> MatchSaga:
        """Finish an interrupted saga.

        RUNNING sagas are driven forward; FAILED or COMPENSATING ones are
        compensated again. Finished sagas are returned unchanged.
        """
        saga = await self.get_saga(saga_id)
        async with self.locks.hold(saga.project_id):
            saga = await self.get_saga(saga_id)
            logger.info(f"Recovering saga {saga_id} in status {saga.status} | admin={admin_id}")
            if saga.status == SagaStatus.RUNNING:
                result = await self._run_forward(saga)
                return result.saga
            if saga.status in (SagaStatus.FAILED, SagaStatus.COMPENSATING):
                return await self._compensate(saga, admin_id)
            return saga

    async def _result(self, saga: MatchSaga) -> MatchResult:
        return MatchResult(
            project=await self.projects.get_project(saga.project_id),
            bid=await self.projects.get_bid(saga.project_id, saga.bid_id),
            escrow=await self.escrows.get_escrow(saga.escrow_id),
            fee=await self.fees.get_fee(saga.fee_id),
            saga=saga,
        )

    # =========================================================================
    # Post-match workflows
    # =========================================================================

    @staticmethod
    def _require_status(project: Project, status: ProjectStatus) -> None:
        if project.status != status:
            raise ProjectError(
                "PROJECT_INVALID_STATUS",
                f"Project must be {status.value}, got {project.status}",
            )

    @staticmethod
    def _require_owner(project: Project, user_id: str) -> None:
        if project.owner_id != user_id:
            raise ProjectError(
                "PROJECT_ACCESS_DENIED", "Only the project owner can perform this action"
            )

    async def approve_match(
        self, project_id: str, admin_id: str, note: Optional[str] = None
    ) -> MatchDetails:
        """Admin confirms the homeowner's deposit has arrived."""
        async with self.locks.hold(project_id):
            project = await self.projects.get_project(project_id)
            self._require_status(project, ProjectStatus.MATCHED)
            escrow = await self.escrows.get_by_project(project_id)
            if escrow.status == EscrowStatus.PENDING:
                await self.escrows.confirm_deposit(escrow.id, admin_id, note)
            log_workflow_event("match_approved", f"project={project_id}", admin_id)
            return await self.get_match(project_id)

    async def reject_match(self, project_id: str, admin_id: str, reason: str) -> Project:
        """Undo a match and return the project to BIDDING_CLOSED."""
        if not reason or not reason.strip():
            raise ValidationError("A rejection reason is required", fields=["reason"])
        async with self.locks.hold(project_id):
            project = await self.projects.get_project(project_id)
            self._require_status(project, ProjectStatus.MATCHED)
            bid_id = project.selected_bid_id

            await self._settle_escrow(project_id, admin_id, reason)
            await self.fees.cancel_pending_for_project(project_id, admin_id, reason)
            project = await self.projects.revert_match(project_id, admin_id)
            if bid_id:
                await self.projects.revert_selection(project_id, bid_id, admin_id)

            log_workflow_event("match_rejected", f"project={project_id} reason={reason}", admin_id)
            return project

    async def _settle_escrow(self, project_id: str, actor_id: str, reason: str) -> Optional[Escrow]:
        """Cancel a PENDING escrow or refund whatever is still held.

        A DISPUTED escrow is left for an admin to resolve.
        """
        escrow = await self.escrows.find_by_project(project_id)
        if escrow is None:
            return None
        if escrow.status == EscrowStatus.PENDING:
            return await self.escrows.cancel(escrow.id, actor_id, reason)
        if escrow.status in ACTIVE_ESCROW_STATUSES:
            return await self.escrows.refund(escrow.id, actor_id, reason)
        return escrow

    async def start_project(self, project_id: str, homeowner_id: str) -> MatchDetails:
        """Begin work once the deposit is held; sets up the milestones."""
        async with self.locks.hold(project_id):
            project = await self.projects.get_project(project_id)
            self._require_owner(project, homeowner_id)
            self._require_status(project, ProjectStatus.MATCHED)

            escrow = await self.escrows.find_by_project(project_id)
            if escrow is None or escrow.status != EscrowStatus.HELD:
                raise MatchError(
                    "ESCROW_NOT_HELD", "The deposit must be confirmed before work starts"
                )
            if not await self.escrows.list_milestones(escrow.id):
                await self.escrows.create_default_milestones(escrow.id)

            await self.projects.transition_status(
                project_id, ProjectStatus.IN_PROGRESS, homeowner_id
            )
            log_workflow_event("project_started", f"project={project_id}", homeowner_id)
            return await self.get_match(project_id)

    async def complete_project(self, project_id: str, homeowner_id: str) -> MatchDetails:
        """Finish the project, releasing whatever the escrow still holds."""
        async with self.locks.hold(project_id):
            project = await self.projects.get_project(project_id)
            self._require_owner(project, homeowner_id)
            self._require_status(project, ProjectStatus.IN_PROGRESS)

            escrow = await self.escrows.find_by_project(project_id)
            await self.projects.transition_status(project_id, ProjectStatus.COMPLETED, homeowner_id)
            # A DISPUTED escrow stays with the admin
            if escrow is not None and escrow.status in ACTIVE_ESCROW_STATUSES:
                await self.escrows.release(escrow.id, homeowner_id, "Released on project completion")
            log_workflow_event("project_completed", f"project={project_id}", homeowner_id)
            return await self.get_match(project_id)

    async def cancel_project(
        self, project_id: str, actor_id: str, reason: str, is_admin: bool = False
    ) -> Project:
        """Cancel a project, settling escrow and fees first if it was matched."""
        if not reason or not reason.strip():
            raise ValidationError("A cancellation reason is required", fields=["reason"])
        async with self.locks.hold(project_id):
            project = await self.projects.get_project(project_id)
            if not is_admin:
                self._require_owner(project, actor_id)

            if project.status not in (ProjectStatus.MATCHED, ProjectStatus.IN_PROGRESS):
                return await self.projects.cancel(project_id, actor_id, reason, is_admin=is_admin)

            await self._settle_escrow(project_id, actor_id, reason)
            await self.fees.cancel_pending_for_project(project_id, actor_id, reason)
            project = await self.projects.transition_status(
                project_id,
                ProjectStatus.CANCELLED,
                actor_id,
                cancel_reason=reason,
                cancelled_by=actor_id,
                cancelled_at=self.clock(),
            )
            log_workflow_event("project_cancelled", f"project={project_id} reason={reason}", actor_id)
            return project

    # =========================================================================
    # Views
    # =========================================================================

    async def _details(self, project: Project, escrow: Optional[Escrow] = None) -> MatchDetails:
        bid = await self.projects.get_bid(project.id, project.selected_bid_id)
        if escrow is None:
            escrow = await self.escrows.find_by_project(project.id)
        milestones = await self.escrows.list_milestones(escrow.id) if escrow else []
        fees = [
            f for f in await self.fees.list_by_project(project.id)
            if f.type == FeeType.WIN_FEE
        ]
        return MatchDetails(project=project, bid=bid, escrow=escrow, milestones=milestones, fees=fees)

    async def get_match(self, project_id: str) -> MatchDetails:
        project = await self.projects.get_project(project_id)
        if not project.selected_bid_id:
            raise MatchError("MATCH_NOT_FOUND", f"Project {project_id} has no match")
        return await self._details(project)

    async def list_matches(
        self,
        escrow_status: Optional[EscrowStatus] = None,
        fee_status: Optional[FeeStatus] = None,
        page: int = 1,
        limit: int = 20,
    ) -> MatchPage:
        """Matches, newest first, optionally filtered by escrow or fee status."""
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive", fields=["page", "limit"])
        items = []
        for escrow in await self.escrows.list_escrows(status=escrow_status, limit=None):
            project = await self.projects.get_project(escrow.project_id)
            if (
                project.selected_bid_id != escrow.bid_id
                or project.match_round != escrow.match_round
            ):
                continue
            details = await self._details(project, escrow)
            if fee_status is not None:
                wanted = getattr(fee_status, "value", fee_status)
                if not any(f.status == wanted for f in details.fees):
                    continue
            items.append(details)
        start = (page - 1) * limit
        return MatchPage(items=items[start:start + limit], total=len(items), page=page, limit=limit)
