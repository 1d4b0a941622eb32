"""Every status edge missing from a transition table is refused by the ledgers.

Each case forces a document into a source status, attempts the move and
checks that the stored status and version are untouched.
"""

from decimal import Decimal

import pytest

from renobid.errors import EscrowError, FeeError, ProjectError
from renobid.escrow import DisputeResolution, EscrowStatus
from renobid.escrow.models import ESCROWS_COLLECTION
from renobid.fees import FeeStatus
from renobid.fees.models import FEES_COLLECTION
from renobid.projects import PROJECT_STATUS_TRANSITIONS, ProjectStatus
from renobid.projects.models import PROJECTS_COLLECTION

HOMEOWNER = "homeowner-1"
CONTRACTOR = "contractor-1"
ADMIN = "admin-1"

PROJECT_EDGES_OUTSIDE_TABLE = [
    (source, target)
    for source in ProjectStatus
    for target in ProjectStatus
    if target not in PROJECT_STATUS_TRANSITIONS[source]
]

# Source statuses each escrow operation accepts
ESCROW_OPERATIONS = {
    "confirm_deposit": (
        {EscrowStatus.PENDING},
        lambda escrows, escrow_id: escrows.confirm_deposit(escrow_id, ADMIN),
    ),
    "release": (
        {EscrowStatus.HELD, EscrowStatus.PARTIAL_RELEASED, EscrowStatus.DISPUTED},
        lambda escrows, escrow_id: escrows.release(escrow_id, ADMIN),
    ),
    "partial_release": (
        {EscrowStatus.HELD, EscrowStatus.PARTIAL_RELEASED},
        lambda escrows, escrow_id: escrows.partial_release(escrow_id, ADMIN, Decimal("1000000")),
    ),
    "refund": (
        {EscrowStatus.HELD, EscrowStatus.PARTIAL_RELEASED, EscrowStatus.DISPUTED},
        lambda escrows, escrow_id: escrows.refund(escrow_id, ADMIN, "Refund"),
    ),
    "mark_disputed": (
        {EscrowStatus.HELD, EscrowStatus.PARTIAL_RELEASED},
        lambda escrows, escrow_id: escrows.mark_disputed(escrow_id, HOMEOWNER, "Poor work"),
    ),
    "resolve_dispute": (
        {EscrowStatus.DISPUTED},
        lambda escrows, escrow_id: escrows.resolve_dispute(
            escrow_id, ADMIN, DisputeResolution.RELEASE
        ),
    ),
    "cancel": (
        {EscrowStatus.PENDING},
        lambda escrows, escrow_id: escrows.cancel(escrow_id, ADMIN, "Match rejected"),
    ),
}

ESCROW_CASES = [
    (name, source)
    for name, (allowed, _) in ESCROW_OPERATIONS.items()
    for source in EscrowStatus
    if source not in allowed
]

FEE_OPERATIONS = {
    "mark_paid": lambda fees, fee_id: fees.mark_paid(fee_id, ADMIN),
    "cancel": lambda fees, fee_id: fees.cancel(fee_id, ADMIN, "Duplicate"),
}

FEE_CASES = [
    (name, source)
    for name in FEE_OPERATIONS
    for source in (FeeStatus.PAID, FeeStatus.CANCELLED)
]


async def force_status(store, collection, doc_id, status):
    doc, error = await store.update(collection, doc_id, {"status": status.value})
    assert error is None
    return doc


class TestProjectClosure:
    """transition_status refuses every edge the table leaves out."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("source,target", PROJECT_EDGES_OUTSIDE_TABLE)
    async def test_edge_refused(self, projects, store, source, target):
        project = await projects.create_project(HOMEOWNER, "Bathroom refit")
        before = await force_status(store, PROJECTS_COLLECTION, project.id, source)

        with pytest.raises(ProjectError) as exc_info:
            await projects.transition_status(project.id, target, ADMIN)

        assert exc_info.value.code == "PROJECT_INVALID_TRANSITION"
        stored = await store.get(PROJECTS_COLLECTION, project.id)
        assert stored["status"] == source.value
        assert stored["version"] == before["version"]


class TestEscrowClosure:
    """Escrow operations refuse source statuses outside their edges."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("operation,source", ESCROW_CASES)
    async def test_operation_refused(self, escrows, store, operation, source):
        escrow = await escrows.create_escrow(
            "project-1", "bid-1", HOMEOWNER, Decimal("10000000"), contractor_id=CONTRACTOR
        )
        before = await force_status(store, ESCROWS_COLLECTION, escrow.id, source)
        _, attempt = ESCROW_OPERATIONS[operation]

        with pytest.raises(EscrowError) as exc_info:
            await attempt(escrows, escrow.id)

        assert exc_info.value.code == "ESCROW_INVALID_TRANSITION"
        stored = await store.get(ESCROWS_COLLECTION, escrow.id)
        assert stored["status"] == source.value
        assert stored["version"] == before["version"]
        assert len(stored["transactions"]) == len(before["transactions"])


class TestFeeClosure:
    """Paid and cancelled fees are final."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("operation,source", FEE_CASES)
    async def test_operation_refused(self, fees, store, operation, source):
        fee = await fees.create_win_fee("project-1", "bid-1", CONTRACTOR, Decimal("5000000"))
        before = await force_status(store, FEES_COLLECTION, fee.id, source)

        with pytest.raises(FeeError) as exc_info:
            await FEE_OPERATIONS[operation](fees, fee.id)

        assert exc_info.value.code == "FEE_INVALID_TRANSITION"
        stored = await store.get(FEES_COLLECTION, fee.id)
        assert stored["status"] == source.value
        assert stored["version"] == before["version"]
