"""Tests for the match orchestrator: the selection saga and post-match workflows."""

import asyncio
from decimal import Decimal

import pytest

from renobid.errors import BidError, EscrowError, MatchError, ProjectError, ValidationError
from renobid.escrow import DisputeResolution, EscrowStatus, escrow_id_for
from renobid.fees import FeeStatus
from renobid.fees.models import fee_id_for
from renobid.matching import MatchResult, SagaStatus, SagaStep, saga_id_for
from renobid.matching.saga import MatchSaga, make_step
from renobid.projects import BidStatus, ProjectStatus

HOMEOWNER = "homeowner-1"
CONTRACTOR = "contractor-1"
ADMIN = "admin-1"


async def approved_match(orchestrator, closed_project):
    project, bid = closed_project
    await orchestrator.select_bid(project.id, bid.id, HOMEOWNER)
    await orchestrator.approve_match(project.id, ADMIN)
    return project, bid


def step_names(saga):
    return [(s["name"], s["status"]) for s in saga.steps]


class TestMatchSaga:
    """Tests for the saga record."""

    def test_completed_steps_drop_compensated(self):
        saga = MatchSaga(
            id="s1", project_id="p1", bid_id="b1", homeowner_id=HOMEOWNER,
            steps=[
                make_step(SagaStep.SELECT_BID),
                make_step(SagaStep.MATCH_PROJECT),
                make_step(SagaStep.CREATE_ESCROW, "FAILED", "boom"),
                make_step(SagaStep.REVERT_PROJECT),
            ],
        )
        assert saga.completed_steps() == {SagaStep.SELECT_BID}

    def test_deterministic_ids_per_round(self):
        assert saga_id_for("p1", "b1", 0) == saga_id_for("p1", "b1", 0)
        assert saga_id_for("p1", "b1", 0) != saga_id_for("p1", "b1", 1)


class TestSelectBid:
    """Tests for the happy path and its preconditions."""

    @pytest.mark.asyncio
    async def test_select_creates_escrow_and_fee(self, orchestrator, closed_project, clock):
        project, bid = closed_project

        result = await orchestrator.select_bid(project.id, bid.id, HOMEOWNER)

        assert isinstance(result, MatchResult)
        assert result.project.status == ProjectStatus.MATCHED
        assert result.project.selected_bid_id == bid.id
        assert result.project.matched_at == clock()
        assert result.bid.status == BidStatus.SELECTED

        assert result.escrow.id == escrow_id_for(project.id, bid.id, 0)
        assert result.escrow.status == EscrowStatus.PENDING
        assert result.escrow.amount == Decimal("10000000")
        assert result.escrow.contractor_id == CONTRACTOR
        assert result.escrow.homeowner_id == HOMEOWNER
        assert result.escrow.transactions[0]["note"] == "Escrow created"

        assert result.fee.id == fee_id_for(project.id, bid.id, 0)
        assert result.fee.amount == Decimal("5000000")
        assert result.fee.user_id == CONTRACTOR
        assert result.fee.status == FeeStatus.PENDING

        assert result.saga.status == SagaStatus.COMPLETED
        assert step_names(result.saga) == [
            ("SELECT_BID", "DONE"),
            ("MATCH_PROJECT", "DONE"),
            ("CREATE_ESCROW", "DONE"),
            ("CREATE_FEE", "DONE"),
        ]

    @pytest.mark.asyncio
    async def test_escrow_floor(self, orchestrator, market):
        project, bid = await market.closed_project_with_bid(price=Decimal("5000000"))
        result = await orchestrator.select_bid(project.id, bid.id, HOMEOWNER)
        assert result.escrow.amount == Decimal("1000000")
        assert result.fee.amount == Decimal("250000")

    @pytest.mark.asyncio
    async def test_escrow_ceiling_from_policy(self, orchestrator, market, policy):
        await policy.update_policy(escrow_max_amount="8000000")
        project, bid = await market.closed_project_with_bid()
        result = await orchestrator.select_bid(project.id, bid.id, HOMEOWNER)
        assert result.escrow.amount == Decimal("8000000")

    @pytest.mark.asyncio
    async def test_retry_returns_stored_result(self, orchestrator, closed_project, escrows, fees):
        project, bid = closed_project
        first = await orchestrator.select_bid(project.id, bid.id, HOMEOWNER)
        second = await orchestrator.select_bid(project.id, bid.id, HOMEOWNER)

        assert second.escrow.id == first.escrow.id
        assert second.fee.id == first.fee.id
        assert second.saga.version == first.saga.version
        assert len(await escrows.list_escrows(project_id=project.id)) == 1
        assert len(await fees.list_by_project(project.id)) == 1

    @pytest.mark.asyncio
    async def test_owner_only(self, orchestrator, closed_project):
        project, bid = closed_project
        with pytest.raises(ProjectError) as exc_info:
            await orchestrator.select_bid(project.id, bid.id, "someone-else")
        assert exc_info.value.code == "PROJECT_ACCESS_DENIED"

    @pytest.mark.asyncio
    async def test_bidding_must_be_closed(self, orchestrator, market):
        project = await market.open_project()
        bid = await market.approved_bid(project.id)
        with pytest.raises(ProjectError) as exc_info:
            await orchestrator.select_bid(project.id, bid.id, HOMEOWNER)
        assert exc_info.value.code == "PROJECT_INVALID_STATUS"
        assert await orchestrator.list_sagas() == []

    @pytest.mark.asyncio
    async def test_bid_must_be_approved(self, orchestrator, market, projects):
        project = await market.open_project()
        pending = await projects.create_bid(
            project.id, "contractor-7", Decimal("90000000"), "10 weeks", "Budget option"
        )
        await projects.close_bidding(project.id, HOMEOWNER)
        with pytest.raises(BidError) as exc_info:
            await orchestrator.select_bid(project.id, pending.id, HOMEOWNER)
        assert exc_info.value.code == "BID_INVALID_STATUS"
        assert (await projects.get_project(project.id)).status == ProjectStatus.BIDDING_CLOSED

    @pytest.mark.asyncio
    async def test_second_bid_refused_once_matched(self, orchestrator, market, projects):
        project = await market.open_project()
        first = await market.approved_bid(project.id, "c1")
        second = await market.approved_bid(project.id, "c2")
        await projects.close_bidding(project.id, HOMEOWNER)
        await orchestrator.select_bid(project.id, first.id, HOMEOWNER)

        with pytest.raises(MatchError) as exc_info:
            await orchestrator.select_bid(project.id, second.id, HOMEOWNER)
        assert exc_info.value.code == "MATCH_ALREADY_EXISTS"
        assert exc_info.value.status_code == 409
        assert (await projects.get_bid(project.id, second.id)).status == BidStatus.APPROVED

    @pytest.mark.asyncio
    async def test_concurrent_selections_single_winner(self, orchestrator, market, projects):
        project = await market.open_project()
        first = await market.approved_bid(project.id, "c1")
        second = await market.approved_bid(project.id, "c2")
        await projects.close_bidding(project.id, HOMEOWNER)

        results = await asyncio.gather(
            orchestrator.select_bid(project.id, first.id, HOMEOWNER),
            orchestrator.select_bid(project.id, second.id, HOMEOWNER),
            return_exceptions=True,
        )

        matches = [r for r in results if isinstance(r, MatchResult)]
        errors = [r for r in results if isinstance(r, Exception)]
        assert len(matches) == 1
        assert len(errors) == 1
        assert errors[0].code == "MATCH_ALREADY_EXISTS"
        stored = await projects.get_project(project.id)
        assert stored.selected_bid_id == matches[0].bid.id
        selected = await projects.list_bids(project.id, status=BidStatus.SELECTED)
        assert [b.id for b in selected] == [matches[0].bid.id]


class TestCompensation:
    """Tests for failure handling inside the saga."""

    @pytest.mark.asyncio
    async def test_fee_failure_is_compensated(
        self, orchestrator, closed_project, fees, escrows, projects, monkeypatch
    ):
        project, bid = closed_project

        async def fee_ledger_down(*args, **kwargs):
            raise RuntimeError("fee ledger offline")

        monkeypatch.setattr(fees, "create_win_fee", fee_ledger_down)

        with pytest.raises(MatchError) as exc_info:
            await orchestrator.select_bid(project.id, bid.id, HOMEOWNER)
        assert exc_info.value.code == "FEE_CREATION_FAILED"
        assert exc_info.value.status_code == 500

        saga = await orchestrator.get_saga(saga_id_for(project.id, bid.id, 0))
        assert saga.status == SagaStatus.COMPENSATED
        assert "fee ledger offline" in saga.error
        assert step_names(saga)[3:] == [
            ("CREATE_FEE", "FAILED"),
            ("CANCEL_ESCROW", "DONE"),
            ("REVERT_PROJECT", "DONE"),
            ("REVERT_BID", "DONE"),
        ]
        assert saga.completed_steps() == set()

        escrow = await escrows.get_escrow(escrow_id_for(project.id, bid.id, 0))
        assert escrow.status == EscrowStatus.CANCELLED
        reverted = await projects.get_project(project.id)
        assert reverted.status == ProjectStatus.BIDDING_CLOSED
        assert reverted.selected_bid_id is None
        assert reverted.match_round == 1
        assert (await projects.get_bid(project.id, bid.id)).status == BidStatus.APPROVED

    @pytest.mark.asyncio
    async def test_selection_succeeds_after_compensation(
        self, orchestrator, closed_project, fees, monkeypatch
    ):
        project, bid = closed_project

        async def fee_ledger_down(*args, **kwargs):
            raise RuntimeError("fee ledger offline")

        monkeypatch.setattr(fees, "create_win_fee", fee_ledger_down)
        with pytest.raises(MatchError):
            await orchestrator.select_bid(project.id, bid.id, HOMEOWNER)
        monkeypatch.undo()

        result = await orchestrator.select_bid(project.id, bid.id, HOMEOWNER)

        assert result.saga.match_round == 1
        assert result.escrow.id == escrow_id_for(project.id, bid.id, 1)
        assert result.escrow.status == EscrowStatus.PENDING

    @pytest.mark.asyncio
    async def test_ledger_errors_propagate_unchanged(
        self, orchestrator, closed_project, escrows, monkeypatch
    ):
        project, bid = closed_project

        async def refuse(*args, **kwargs):
            raise EscrowError("ESCROW_INVALID_AMOUNT", "Escrow amount must be positive")

        monkeypatch.setattr(escrows, "create_escrow", refuse)

        with pytest.raises(EscrowError) as exc_info:
            await orchestrator.select_bid(project.id, bid.id, HOMEOWNER)
        assert exc_info.value.code == "ESCROW_INVALID_AMOUNT"
        saga = await orchestrator.get_saga(saga_id_for(project.id, bid.id, 0))
        assert saga.status == SagaStatus.COMPENSATED

    @pytest.mark.asyncio
    async def test_failed_compensation_needs_recovery(
        self, orchestrator, closed_project, fees, escrows, projects, monkeypatch
    ):
        project, bid = closed_project
        real_cancel = escrows.cancel

        async def fee_ledger_down(*args, **kwargs):
            raise RuntimeError("fee ledger offline")

        async def escrow_cancel_down(*args, **kwargs):
            raise RuntimeError("escrow store offline")

        monkeypatch.setattr(fees, "create_win_fee", fee_ledger_down)
        monkeypatch.setattr(escrows, "cancel", escrow_cancel_down)

        with pytest.raises(MatchError):
            await orchestrator.select_bid(project.id, bid.id, HOMEOWNER)

        saga_id = saga_id_for(project.id, bid.id, 0)
        saga = await orchestrator.get_saga(saga_id)
        assert saga.status == SagaStatus.FAILED
        assert step_names(saga)[-1] == ("CANCEL_ESCROW", "FAILED")
        assert [s.id for s in await orchestrator.list_sagas(status=SagaStatus.FAILED)] == [saga_id]

        # Until recovered, retrying the selection is refused
        with pytest.raises(MatchError) as exc_info:
            await orchestrator.select_bid(project.id, bid.id, HOMEOWNER)
        assert exc_info.value.code == "MATCH_ALREADY_EXISTS"
        assert exc_info.value.details == {"saga_id": saga_id}

        monkeypatch.setattr(escrows, "cancel", real_cancel)
        recovered = await orchestrator.recover_saga(saga_id, ADMIN)

        assert recovered.status == SagaStatus.COMPENSATED
        assert (await escrows.get_escrow(escrow_id_for(project.id, bid.id, 0))).status == (
            EscrowStatus.CANCELLED
        )
        assert (await projects.get_project(project.id)).status == ProjectStatus.BIDDING_CLOSED
        assert (await projects.get_bid(project.id, bid.id)).status == BidStatus.APPROVED

    @pytest.mark.asyncio
    async def test_interrupted_saga_converges_on_retry(
        self, orchestrator, closed_project, escrows, fees, monkeypatch
    ):
        """A crash after the escrow write but before it was recorded."""
        project, bid = closed_project
        real_create = escrows.create_escrow

        async def create_then_crash(*args, **kwargs):
            await real_create(*args, **kwargs)
            raise asyncio.CancelledError()

        monkeypatch.setattr(escrows, "create_escrow", create_then_crash)
        with pytest.raises(asyncio.CancelledError):
            await orchestrator.select_bid(project.id, bid.id, HOMEOWNER)
        monkeypatch.undo()

        saga = await orchestrator.get_saga(saga_id_for(project.id, bid.id, 0))
        assert saga.status == SagaStatus.RUNNING
        assert saga.completed_steps() == {SagaStep.SELECT_BID, SagaStep.MATCH_PROJECT}

        result = await orchestrator.select_bid(project.id, bid.id, HOMEOWNER)

        assert result.saga.status == SagaStatus.COMPLETED
        assert result.escrow.id == escrow_id_for(project.id, bid.id, 0)
        assert len(await escrows.list_escrows(project_id=project.id)) == 1
        assert len(await fees.list_by_project(project.id)) == 1

    @pytest.mark.asyncio
    async def test_recover_running_saga(self, orchestrator, closed_project, fees, monkeypatch):
        project, bid = closed_project
        real_create = fees.create_win_fee

        async def create_then_crash(*args, **kwargs):
            await real_create(*args, **kwargs)
            raise asyncio.CancelledError()

        monkeypatch.setattr(fees, "create_win_fee", create_then_crash)
        with pytest.raises(asyncio.CancelledError):
            await orchestrator.select_bid(project.id, bid.id, HOMEOWNER)
        monkeypatch.undo()

        saga = await orchestrator.recover_saga(saga_id_for(project.id, bid.id, 0), ADMIN)

        assert saga.status == SagaStatus.COMPLETED
        assert saga.fee_id == fee_id_for(project.id, bid.id, 0)

    @pytest.mark.asyncio
    async def test_recover_unknown_saga(self, orchestrator):
        with pytest.raises(MatchError) as exc_info:
            await orchestrator.recover_saga("missing", ADMIN)
        assert exc_info.value.code == "SAGA_NOT_FOUND"


class TestApproveAndReject:
    """Tests for admin review of a match."""

    @pytest.mark.asyncio
    async def test_approve_holds_deposit(self, orchestrator, closed_project):
        project, bid = closed_project
        await orchestrator.select_bid(project.id, bid.id, HOMEOWNER)

        details = await orchestrator.approve_match(project.id, ADMIN, "Transfer received")

        assert details.escrow.status == EscrowStatus.HELD
        assert details.escrow.confirmed_by == ADMIN
        assert details.project.status == ProjectStatus.MATCHED
        assert details.fees[0].status == FeeStatus.PENDING

    @pytest.mark.asyncio
    async def test_approve_requires_match(self, orchestrator, closed_project):
        project, _ = closed_project
        with pytest.raises(ProjectError) as exc_info:
            await orchestrator.approve_match(project.id, ADMIN)
        assert exc_info.value.code == "PROJECT_INVALID_STATUS"

    @pytest.mark.asyncio
    async def test_reject_pending_match(self, orchestrator, closed_project, escrows, fees, projects):
        project, bid = closed_project
        result = await orchestrator.select_bid(project.id, bid.id, HOMEOWNER)

        reverted = await orchestrator.reject_match(project.id, ADMIN, "Contractor unreachable")

        assert reverted.status == ProjectStatus.BIDDING_CLOSED
        assert reverted.selected_bid_id is None
        assert reverted.match_round == 1
        assert (await escrows.get_escrow(result.escrow.id)).status == EscrowStatus.CANCELLED
        assert (await fees.get_fee(result.fee.id)).status == FeeStatus.CANCELLED
        assert (await projects.get_bid(project.id, bid.id)).status == BidStatus.APPROVED

    @pytest.mark.asyncio
    async def test_reject_held_match_refunds(self, orchestrator, closed_project, escrows):
        project, bid = await approved_match(orchestrator, closed_project)

        await orchestrator.reject_match(project.id, ADMIN, "Licence expired")

        escrow = await escrows.get_escrow(escrow_id_for(project.id, bid.id, 0))
        assert escrow.status == EscrowStatus.REFUNDED
        assert escrow.transactions[-1]["amount"] == "10000000"

    @pytest.mark.asyncio
    async def test_reject_leaves_disputed_escrow(self, orchestrator, closed_project, escrows):
        project, bid = await approved_match(orchestrator, closed_project)
        escrow_id = escrow_id_for(project.id, bid.id, 0)
        await escrows.mark_disputed(escrow_id, HOMEOWNER, "Deposit contested")

        reverted = await orchestrator.reject_match(project.id, ADMIN, "Licence expired")

        assert reverted.status == ProjectStatus.BIDDING_CLOSED
        assert (await escrows.get_escrow(escrow_id)).status == EscrowStatus.DISPUTED

    @pytest.mark.asyncio
    async def test_rematch_after_reject(self, orchestrator, market, projects):
        project = await market.open_project()
        first = await market.approved_bid(project.id, "c1")
        second = await market.approved_bid(project.id, "c2", price=Decimal("120000000"))
        await projects.close_bidding(project.id, HOMEOWNER)
        await orchestrator.select_bid(project.id, first.id, HOMEOWNER)
        await orchestrator.approve_match(project.id, ADMIN)
        await orchestrator.reject_match(project.id, ADMIN, "Contractor withdrew")

        result = await orchestrator.select_bid(project.id, second.id, HOMEOWNER)

        assert result.project.selected_bid_id == second.id
        assert result.escrow.amount == Decimal("12000000")
        assert result.saga.match_round == 1

    @pytest.mark.asyncio
    async def test_reject_requires_reason(self, orchestrator, closed_project):
        project, _ = closed_project
        with pytest.raises(ValidationError):
            await orchestrator.reject_match(project.id, ADMIN, "")


class TestProjectWork:
    """Tests for start, completion and cancellation."""

    @pytest.mark.asyncio
    async def test_start_requires_held_escrow(self, orchestrator, closed_project):
        project, bid = closed_project
        await orchestrator.select_bid(project.id, bid.id, HOMEOWNER)
        with pytest.raises(MatchError) as exc_info:
            await orchestrator.start_project(project.id, HOMEOWNER)
        assert exc_info.value.code == "ESCROW_NOT_HELD"

    @pytest.mark.asyncio
    async def test_start_creates_milestones(self, orchestrator, closed_project):
        project, _ = await approved_match(orchestrator, closed_project)

        details = await orchestrator.start_project(project.id, HOMEOWNER)

        assert details.project.status == ProjectStatus.IN_PROGRESS
        assert [m.name for m in details.milestones] == ["50% Completion", "100% Completion"]

    @pytest.mark.asyncio
    async def test_start_reuses_existing_milestones(self, orchestrator, closed_project, escrows):
        project, bid = await approved_match(orchestrator, closed_project)
        escrow_id = escrow_id_for(project.id, bid.id, 0)
        await escrows.create_milestones(
            escrow_id, [{"name": "Everything", "percentage": 100, "release_percentage": "100"}]
        )

        details = await orchestrator.start_project(project.id, HOMEOWNER)

        assert [m.name for m in details.milestones] == ["Everything"]

    @pytest.mark.asyncio
    async def test_complete_releases_escrow(self, orchestrator, closed_project):
        project, _ = await approved_match(orchestrator, closed_project)
        await orchestrator.start_project(project.id, HOMEOWNER)

        details = await orchestrator.complete_project(project.id, HOMEOWNER)

        assert details.project.status == ProjectStatus.COMPLETED
        assert details.escrow.status == EscrowStatus.RELEASED
        assert details.escrow.released_amount == Decimal("10000000")

    @pytest.mark.asyncio
    async def test_complete_leaves_disputed_escrow(self, orchestrator, closed_project, escrows):
        project, bid = await approved_match(orchestrator, closed_project)
        await orchestrator.start_project(project.id, HOMEOWNER)
        escrow_id = escrow_id_for(project.id, bid.id, 0)
        await escrows.mark_disputed(escrow_id, HOMEOWNER, "Leaking roof")

        details = await orchestrator.complete_project(project.id, HOMEOWNER)

        assert details.project.status == ProjectStatus.COMPLETED
        assert details.escrow.status == EscrowStatus.DISPUTED
        assert details.escrow.released_amount == Decimal("0")

        resolved = await escrows.resolve_dispute(escrow_id, ADMIN, DisputeResolution.RELEASE)
        assert resolved.status == EscrowStatus.RELEASED

    @pytest.mark.asyncio
    async def test_complete_requires_in_progress(self, orchestrator, closed_project):
        project, _ = await approved_match(orchestrator, closed_project)
        with pytest.raises(ProjectError) as exc_info:
            await orchestrator.complete_project(project.id, HOMEOWNER)
        assert exc_info.value.code == "PROJECT_INVALID_STATUS"

    @pytest.mark.asyncio
    async def test_cancel_after_partial_release_refunds_remainder(
        self, orchestrator, closed_project, escrows, fees
    ):
        project, bid = await approved_match(orchestrator, closed_project)
        await orchestrator.start_project(project.id, HOMEOWNER)
        escrow_id = escrow_id_for(project.id, bid.id, 0)
        await escrows.partial_release(escrow_id, ADMIN, Decimal("5000000"))

        cancelled = await orchestrator.cancel_project(project.id, HOMEOWNER, "Moving abroad")

        assert cancelled.status == ProjectStatus.CANCELLED
        assert cancelled.cancel_reason == "Moving abroad"
        escrow = await escrows.get_escrow(escrow_id)
        assert escrow.status == EscrowStatus.REFUNDED
        assert escrow.released_amount == Decimal("5000000")
        assert escrow.transactions[-1]["type"] == "REFUND"
        assert escrow.transactions[-1]["amount"] == "5000000"
        assert (await fees.get_fee(fee_id_for(project.id, bid.id, 0))).status == FeeStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_leaves_disputed_escrow(self, orchestrator, closed_project, escrows, fees):
        project, bid = await approved_match(orchestrator, closed_project)
        await orchestrator.start_project(project.id, HOMEOWNER)
        escrow_id = escrow_id_for(project.id, bid.id, 0)
        await escrows.mark_disputed(escrow_id, HOMEOWNER, "Work abandoned")

        cancelled = await orchestrator.cancel_project(project.id, HOMEOWNER, "Contractor vanished")

        assert cancelled.status == ProjectStatus.CANCELLED
        escrow = await escrows.get_escrow(escrow_id)
        assert escrow.status == EscrowStatus.DISPUTED
        assert escrow.transactions[-1]["type"] == "DISPUTE"
        assert (await fees.get_fee(fee_id_for(project.id, bid.id, 0))).status == FeeStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_matched_keeps_paid_fee(self, orchestrator, closed_project, escrows, fees):
        project, bid = closed_project
        result = await orchestrator.select_bid(project.id, bid.id, HOMEOWNER)
        await fees.mark_paid(result.fee.id, ADMIN)

        await orchestrator.cancel_project(project.id, ADMIN, "Fraud review", is_admin=True)

        assert (await escrows.get_escrow(result.escrow.id)).status == EscrowStatus.CANCELLED
        assert (await fees.get_fee(result.fee.id)).status == FeeStatus.PAID

    @pytest.mark.asyncio
    async def test_cancel_unmatched_project(self, orchestrator, market):
        project = await market.open_project()
        cancelled = await orchestrator.cancel_project(project.id, HOMEOWNER, "No longer needed")
        assert cancelled.status == ProjectStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_checks_owner_and_reason(self, orchestrator, market):
        project = await market.open_project()
        with pytest.raises(ValidationError):
            await orchestrator.cancel_project(project.id, HOMEOWNER, " ")
        with pytest.raises(ProjectError) as exc_info:
            await orchestrator.cancel_project(project.id, "someone-else", "Mine")
        assert exc_info.value.code == "PROJECT_ACCESS_DENIED"

    @pytest.mark.asyncio
    async def test_completed_project_cannot_be_cancelled(self, orchestrator, closed_project):
        project, _ = await approved_match(orchestrator, closed_project)
        await orchestrator.start_project(project.id, HOMEOWNER)
        await orchestrator.complete_project(project.id, HOMEOWNER)
        with pytest.raises(ProjectError) as exc_info:
            await orchestrator.cancel_project(project.id, HOMEOWNER, "Too late")
        assert exc_info.value.code == "PROJECT_INVALID_TRANSITION"


class TestMatchViews:
    """Tests for get_match and list_matches."""

    @pytest.mark.asyncio
    async def test_get_match(self, orchestrator, closed_project):
        project, bid = closed_project
        await orchestrator.select_bid(project.id, bid.id, HOMEOWNER)

        details = await orchestrator.get_match(project.id)

        assert details.bid.id == bid.id
        assert details.escrow.status == EscrowStatus.PENDING
        assert details.milestones == []
        assert len(details.fees) == 1

    @pytest.mark.asyncio
    async def test_get_match_without_selection(self, orchestrator, closed_project):
        project, _ = closed_project
        with pytest.raises(MatchError) as exc_info:
            await orchestrator.get_match(project.id)
        assert exc_info.value.code == "MATCH_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_list_matches_filters(self, orchestrator, market, fees):
        held_project, held_bid = await market.closed_project_with_bid()
        pending_project, pending_bid = await market.closed_project_with_bid()
        await orchestrator.select_bid(held_project.id, held_bid.id, HOMEOWNER)
        pending_result = await orchestrator.select_bid(pending_project.id, pending_bid.id, HOMEOWNER)
        await orchestrator.approve_match(held_project.id, ADMIN)
        await fees.mark_paid(pending_result.fee.id, ADMIN)

        everything = await orchestrator.list_matches()
        assert everything.total == 2

        held = await orchestrator.list_matches(escrow_status=EscrowStatus.HELD)
        assert [m.project.id for m in held.items] == [held_project.id]

        paid = await orchestrator.list_matches(fee_status=FeeStatus.PAID)
        assert [m.project.id for m in paid.items] == [pending_project.id]

        page = await orchestrator.list_matches(page=2, limit=1)
        assert page.total == 2
        assert len(page.items) == 1

    @pytest.mark.asyncio
    async def test_list_matches_skips_undone_matches(self, orchestrator, closed_project):
        project, bid = closed_project
        await orchestrator.select_bid(project.id, bid.id, HOMEOWNER)
        await orchestrator.reject_match(project.id, ADMIN, "Contractor unreachable")

        assert (await orchestrator.list_matches()).total == 0

    @pytest.mark.asyncio
    async def test_list_matches_validates_paging(self, orchestrator):
        with pytest.raises(ValidationError):
            await orchestrator.list_matches(page=0)
