"""Tests for escrow milestones and milestone payouts."""

from decimal import Decimal

import pytest
import pytest_asyncio

from renobid.errors import ConcurrentModificationError, EscrowError, ValidationError
from renobid.escrow import EscrowStatus
from renobid.escrow.models import MilestoneStatus

HOMEOWNER = "homeowner-1"
CONTRACTOR = "contractor-1"
ADMIN = "admin-1"


@pytest_asyncio.fixture
async def milestones(escrows, held_escrow):
    """Default 50/100 milestones on the held 10,000,000 escrow."""
    return await escrows.create_default_milestones(held_escrow.id)


async def complete(escrows, escrow_id, milestone):
    await escrows.request_completion(escrow_id, milestone.id, CONTRACTOR)
    return await escrows.confirm_completion(escrow_id, milestone.id, HOMEOWNER)


class TestCreateMilestones:
    """Tests for milestone creation and validation."""

    @pytest.mark.asyncio
    async def test_default_set(self, milestones, held_escrow):
        assert [(m.name, m.percentage, m.release_percentage) for m in milestones] == [
            ("50% Completion", 50, Decimal("50")),
            ("100% Completion", 100, Decimal("50")),
        ]
        assert all(m.status == MilestoneStatus.PENDING for m in milestones)
        assert all(m.project_id == held_escrow.project_id for m in milestones)

    @pytest.mark.asyncio
    async def test_listed_by_percentage(self, escrows, held_escrow):
        await escrows.create_milestones(
            held_escrow.id,
            [
                {"name": "Handover", "percentage": 100, "release_percentage": "40"},
                {"name": "Demolition", "percentage": 20, "release_percentage": "20"},
                {"name": "Rough-in", "percentage": 60, "release_percentage": "40"},
            ],
        )
        listed = await escrows.list_milestones(held_escrow.id)
        assert [m.name for m in listed] == ["Demolition", "Rough-in", "Handover"]

    @pytest.mark.asyncio
    async def test_release_percentages_must_sum_to_100(self, escrows, held_escrow):
        with pytest.raises(ValidationError):
            await escrows.create_milestones(
                held_escrow.id,
                [
                    {"name": "Half", "percentage": 50, "release_percentage": "50"},
                    {"name": "Done", "percentage": 100, "release_percentage": "40"},
                ],
            )

    @pytest.mark.asyncio
    async def test_rounding_tolerance(self, escrows, held_escrow):
        created = await escrows.create_milestones(
            held_escrow.id,
            [
                {"name": "One", "percentage": 33, "release_percentage": "33.33"},
                {"name": "Two", "percentage": 66, "release_percentage": "33.33"},
                {"name": "Three", "percentage": 100, "release_percentage": "33.33"},
            ],
        )
        assert len(created) == 3

    @pytest.mark.asyncio
    async def test_percentages_must_be_unique(self, escrows, held_escrow):
        with pytest.raises(ValidationError):
            await escrows.create_milestones(
                held_escrow.id,
                [
                    {"name": "A", "percentage": 50, "release_percentage": "50"},
                    {"name": "B", "percentage": 50, "release_percentage": "50"},
                ],
            )

    @pytest.mark.asyncio
    async def test_only_one_batch(self, escrows, milestones, held_escrow):
        with pytest.raises(EscrowError) as exc_info:
            await escrows.create_default_milestones(held_escrow.id)
        assert exc_info.value.code == "MILESTONES_ALREADY_EXIST"


class TestCompletionFlow:
    """Tests for request -> confirm / dispute."""

    @pytest.mark.asyncio
    async def test_request_and_confirm(self, escrows, held_escrow, milestones, clock):
        first = milestones[0]
        requested = await escrows.request_completion(held_escrow.id, first.id, CONTRACTOR)
        assert requested.status == MilestoneStatus.REQUESTED
        assert requested.requested_at == clock()

        confirmed = await escrows.confirm_completion(held_escrow.id, first.id, HOMEOWNER)
        assert confirmed.status == MilestoneStatus.CONFIRMED
        assert confirmed.confirmed_by == HOMEOWNER

    @pytest.mark.asyncio
    async def test_confirmation_moves_no_money(self, escrows, held_escrow, milestones):
        await complete(escrows, held_escrow.id, milestones[0])
        escrow = await escrows.get_escrow(held_escrow.id)
        assert escrow.status == EscrowStatus.HELD
        assert escrow.released_amount == Decimal("0")

    @pytest.mark.asyncio
    async def test_must_follow_order(self, escrows, held_escrow, milestones):
        with pytest.raises(EscrowError) as exc_info:
            await escrows.request_completion(held_escrow.id, milestones[1].id, CONTRACTOR)
        assert exc_info.value.code == "PREVIOUS_MILESTONE_NOT_COMPLETED"
        assert exc_info.value.details == {"milestone_id": milestones[0].id}

    @pytest.mark.asyncio
    async def test_requested_is_not_enough_for_next(self, escrows, held_escrow, milestones):
        await escrows.request_completion(held_escrow.id, milestones[0].id, CONTRACTOR)
        with pytest.raises(EscrowError) as exc_info:
            await escrows.request_completion(held_escrow.id, milestones[1].id, CONTRACTOR)
        assert exc_info.value.code == "PREVIOUS_MILESTONE_NOT_COMPLETED"

    @pytest.mark.asyncio
    async def test_only_matched_contractor_requests(self, escrows, held_escrow, milestones):
        with pytest.raises(EscrowError) as exc_info:
            await escrows.request_completion(held_escrow.id, milestones[0].id, "contractor-9")
        assert exc_info.value.code == "MILESTONE_ACCESS_DENIED"
        assert exc_info.value.status_code == 403

    @pytest.mark.asyncio
    async def test_only_homeowner_confirms(self, escrows, held_escrow, milestones):
        await escrows.request_completion(held_escrow.id, milestones[0].id, CONTRACTOR)
        with pytest.raises(EscrowError) as exc_info:
            await escrows.confirm_completion(held_escrow.id, milestones[0].id, CONTRACTOR)
        assert exc_info.value.code == "MILESTONE_ACCESS_DENIED"

    @pytest.mark.asyncio
    async def test_requires_active_escrow(self, escrows):
        escrow = await escrows.create_escrow(
            "project-9", "bid-9", HOMEOWNER, Decimal("2000000"), contractor_id=CONTRACTOR
        )
        created = await escrows.create_default_milestones(escrow.id)
        with pytest.raises(EscrowError) as exc_info:
            await escrows.request_completion(escrow.id, created[0].id, CONTRACTOR)
        assert exc_info.value.code == "ESCROW_NOT_ACTIVE"

    @pytest.mark.asyncio
    async def test_confirm_requires_request(self, escrows, held_escrow, milestones):
        with pytest.raises(EscrowError) as exc_info:
            await escrows.confirm_completion(held_escrow.id, milestones[0].id, HOMEOWNER)
        assert exc_info.value.code == "MILESTONE_INVALID_STATUS"

    @pytest.mark.asyncio
    async def test_dispute_freezes_escrow(self, escrows, held_escrow, milestones):
        await escrows.request_completion(held_escrow.id, milestones[0].id, CONTRACTOR)
        disputed = await escrows.dispute_milestone(
            held_escrow.id, milestones[0].id, HOMEOWNER, "Plumbing leaks"
        )
        assert disputed.status == MilestoneStatus.DISPUTED
        assert disputed.dispute_reason == "Plumbing leaks"

        escrow = await escrows.get_escrow(held_escrow.id)
        assert escrow.status == EscrowStatus.DISPUTED
        assert "Plumbing leaks" in escrow.dispute_reason

    @pytest.mark.asyncio
    async def test_dispute_rolled_back_when_escrow_refuses(
        self, escrows, held_escrow, milestones, monkeypatch
    ):
        await escrows.request_completion(held_escrow.id, milestones[0].id, CONTRACTOR)

        async def raced(*args, **kwargs):
            raise ConcurrentModificationError("escrows", held_escrow.id)

        monkeypatch.setattr(escrows, "mark_disputed", raced)

        with pytest.raises(ConcurrentModificationError):
            await escrows.dispute_milestone(
                held_escrow.id, milestones[0].id, HOMEOWNER, "Plumbing leaks"
            )

        milestone = await escrows.get_milestone(held_escrow.id, milestones[0].id)
        assert milestone.status == MilestoneStatus.REQUESTED
        assert milestone.dispute_reason is None
        assert (await escrows.get_escrow(held_escrow.id)).status == EscrowStatus.HELD

    @pytest.mark.asyncio
    async def test_unknown_milestone(self, escrows, held_escrow, milestones):
        with pytest.raises(EscrowError) as exc_info:
            await escrows.get_milestone(held_escrow.id, "missing")
        assert exc_info.value.code == "MILESTONE_NOT_FOUND"


class TestReleaseMilestone:
    """Tests for paying out confirmed milestones."""

    @pytest.mark.asyncio
    async def test_release_each_share(self, escrows, held_escrow, milestones):
        await complete(escrows, held_escrow.id, milestones[0])
        escrow = await escrows.release_milestone(held_escrow.id, milestones[0].id, ADMIN)
        assert escrow.status == EscrowStatus.PARTIAL_RELEASED
        assert escrow.released_amount == Decimal("5000000")
        assert escrow.transactions[-1]["note"] == "Milestone '50% Completion' released"

        paid = await escrows.get_milestone(held_escrow.id, milestones[0].id)
        assert paid.released_amount == Decimal("5000000")
        assert paid.is_paid

        await complete(escrows, held_escrow.id, milestones[1])
        escrow = await escrows.release_milestone(held_escrow.id, milestones[1].id, ADMIN)
        assert escrow.status == EscrowStatus.RELEASED
        assert escrow.released_amount == escrow.amount

    @pytest.mark.asyncio
    async def test_last_milestone_takes_remainder(self, escrows):
        escrow = await escrows.create_escrow(
            "project-9", "bid-9", HOMEOWNER, Decimal("1000"), contractor_id=CONTRACTOR
        )
        await escrows.confirm_deposit(escrow.id, ADMIN)
        created = await escrows.create_milestones(
            escrow.id,
            [
                {"name": "One", "percentage": 33, "release_percentage": "33.33"},
                {"name": "Two", "percentage": 66, "release_percentage": "33.33"},
                {"name": "Three", "percentage": 100, "release_percentage": "33.34"},
            ],
        )
        amounts = []
        for milestone in created:
            await complete(escrows, escrow.id, milestone)
            before = (await escrows.get_escrow(escrow.id)).released_amount
            after = (await escrows.release_milestone(escrow.id, milestone.id, ADMIN)).released_amount
            amounts.append(after - before)

        assert amounts == [Decimal("333"), Decimal("333"), Decimal("334")]
        assert (await escrows.get_escrow(escrow.id)).status == EscrowStatus.RELEASED

    @pytest.mark.asyncio
    async def test_requires_confirmed(self, escrows, held_escrow, milestones):
        await escrows.request_completion(held_escrow.id, milestones[0].id, CONTRACTOR)
        with pytest.raises(EscrowError) as exc_info:
            await escrows.release_milestone(held_escrow.id, milestones[0].id, ADMIN)
        assert exc_info.value.code == "MILESTONE_INVALID_STATUS"

    @pytest.mark.asyncio
    async def test_not_paid_twice(self, escrows, held_escrow, milestones):
        await complete(escrows, held_escrow.id, milestones[0])
        await escrows.release_milestone(held_escrow.id, milestones[0].id, ADMIN)
        with pytest.raises(EscrowError) as exc_info:
            await escrows.release_milestone(held_escrow.id, milestones[0].id, ADMIN)
        assert exc_info.value.code == "MILESTONE_INVALID_STATUS"
        assert (await escrows.get_escrow(held_escrow.id)).released_amount == Decimal("5000000")

    @pytest.mark.asyncio
    async def test_failed_release_clears_stamp(self, escrows, held_escrow, milestones):
        """If the escrow refuses the payout the milestone stays unpaid."""
        await complete(escrows, held_escrow.id, milestones[0])
        await escrows.mark_disputed(held_escrow.id, HOMEOWNER, "Billing disagreement")

        with pytest.raises(EscrowError) as exc_info:
            await escrows.release_milestone(held_escrow.id, milestones[0].id, ADMIN)
        assert exc_info.value.code == "ESCROW_INVALID_TRANSITION"

        milestone = await escrows.get_milestone(held_escrow.id, milestones[0].id)
        assert not milestone.is_paid
        assert milestone.released_amount is None
