"""
Escrow ledger.

Owns Escrow documents and their Milestone sub-collection. Each operation
validates the transition first, then writes the new status, amounts and
the appended transaction-log entry in a single guarded update.

Milestone confirmation never moves money by itself. Paying out a confirmed
milestone is a separate admin step (``release_milestone``) that performs a
``partial_release`` of the milestone's share.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional

from renobid.codes import ESCROW_PREFIX, CodeGenerator
from renobid.errors import ConcurrentModificationError, EscrowError, ValidationError
from renobid.escrow.models import (
    ACTIVE_ESCROW_STATUSES,
    DEFAULT_MILESTONES,
    ESCROWS_COLLECTION,
    DisputeResolution,
    Escrow,
    EscrowStatus,
    EscrowTransactionType,
    Milestone,
    MilestoneStatus,
    TERMINAL_ESCROW_STATUSES,
    can_transition_escrow,
    escrow_id_for,
    make_transaction,
    milestone_id_for,
    milestones_collection,
)
from renobid.logging_config import log_money_movement, log_transition
from renobid.store import CONFLICT, NOT_FOUND, DocumentStore, eq, in_
from renobid.types import round_money, serialize_changes, to_decimal, utc_now

logger = logging.getLogger(__name__)

# Release percentages may be entered with rounding error
RELEASE_SUM_TOLERANCE = Decimal("0.01")

# Escrows that are not yet settled; a project has at most one
LIVE_ESCROW_STATUSES = [s.value for s in EscrowStatus if s not in TERMINAL_ESCROW_STATUSES]


class EscrowLedger:
    """Escrow and milestone state machines over a DocumentStore."""

    def __init__(
        self,
        store: DocumentStore,
        codes: CodeGenerator,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.codes = codes
        self.clock = clock

    # =========================================================================
    # Internal helpers
    # =========================================================================

    async def _write(
        self,
        escrow: Escrow,
        changes: Dict[str, Any],
        transaction: Optional[Dict[str, Any]] = None,
    ) -> Escrow:
        data = {**changes, "updated_at": self.clock()}
        if transaction is not None:
            data["transactions"] = [*escrow.transactions, transaction]
        updated, error = await self.store.update(
            ESCROWS_COLLECTION,
            escrow.id,
            serialize_changes(data),
            expected={"status": escrow.status, "version": escrow.version},
        )
        if error == NOT_FOUND:
            raise EscrowError("ESCROW_NOT_FOUND", f"Escrow {escrow.id} not found")
        if error == CONFLICT:
            logger.warning(f"Race detected on escrow {escrow.id}: expected status {escrow.status}")
            raise ConcurrentModificationError(ESCROWS_COLLECTION, escrow.id)
        return Escrow.from_dict(updated)

    def _check_transition(self, escrow: Escrow, target: EscrowStatus) -> None:
        if not can_transition_escrow(escrow.status, target):
            raise EscrowError(
                "ESCROW_INVALID_TRANSITION",
                f"Cannot transition escrow from {escrow.status} to {target.value}",
                {"from": escrow.status, "to": target.value},
            )

    async def _move(
        self,
        escrow: Escrow,
        target: EscrowStatus,
        actor_id: Optional[str],
        tx_type: EscrowTransactionType,
        amount: Decimal,
        note: Optional[str],
        **updates,
    ) -> Escrow:
        """Validate, log and apply one status change."""
        self._check_transition(escrow, target)
        transaction = make_transaction(tx_type, amount, note, actor_id, self.clock())
        updated = await self._write(escrow, {"status": target, **updates}, transaction)
        log_transition("escrow", escrow.id, escrow.status, target.value, actor_id)
        log_money_movement(escrow.id, tx_type.value, amount, actor_id)
        logger.info(
            f"Escrow {escrow.id} {escrow.status} -> {target.value} | {tx_type.value} {amount} "
            f"| actor={actor_id}"
        )
        return updated

    async def _write_milestone(self, milestone: Milestone, changes: Dict[str, Any]) -> Milestone:
        collection = milestones_collection(milestone.escrow_id)
        updated, error = await self.store.update(
            collection,
            milestone.id,
            serialize_changes(changes),
            expected={"status": milestone.status, "version": milestone.version},
        )
        if error == NOT_FOUND:
            raise EscrowError("MILESTONE_NOT_FOUND", f"Milestone {milestone.id} not found")
        if error == CONFLICT:
            raise ConcurrentModificationError(collection, milestone.id)
        return Milestone.from_dict(updated)

    # =========================================================================
    # Escrows
    # =========================================================================

    async def create_escrow(
        self,
        project_id: str,
        bid_id: str,
        homeowner_id: str,
        amount: Decimal,
        contractor_id: Optional[str] = None,
        match_round: int = 0,
    ) -> Escrow:
        """Open a PENDING escrow for a match.

        The id is derived from (project, bid, match round): calling this
        again for the same match returns the existing escrow instead of
        creating a second one.
        """
        amount = to_decimal(amount)
        if amount is None or amount <= 0:
            raise EscrowError("ESCROW_INVALID_AMOUNT", "Escrow amount must be positive")

        escrow_id = escrow_id_for(project_id, bid_id, match_round)
        existing = await self.store.get(ESCROWS_COLLECTION, escrow_id)
        if existing is not None:
            logger.info(f"Escrow {escrow_id} already exists for project {project_id}, reusing")
            return Escrow.from_dict(existing)

        live = await self.store.query(
            ESCROWS_COLLECTION,
            [eq("project_id", project_id), in_("status", LIVE_ESCROW_STATUSES)],
        )
        if live:
            raise EscrowError(
                "ESCROW_ALREADY_EXISTS",
                f"Project {project_id} already has escrow {live[0]['id']}",
                {"escrow_id": live[0]["id"]},
            )

        now = self.clock()
        escrow = Escrow(
            id=escrow_id,
            project_id=project_id,
            bid_id=bid_id,
            homeowner_id=homeowner_id,
            contractor_id=contractor_id,
            amount=amount,
            match_round=match_round,
            transactions=[
                make_transaction(
                    EscrowTransactionType.DEPOSIT, amount, "Escrow created", homeowner_id, now
                )
            ],
            created_at=now,
        )
        escrow.code = await self.codes.next_code(ESCROW_PREFIX, now)

        created, error = await self.store.create(ESCROWS_COLLECTION, escrow_id, escrow.to_dict())
        if error is not None:
            # Lost a creation race for the same match; the winner's record is ours too
            return await self.get_escrow(escrow_id)

        log_transition("escrow", escrow_id, None, escrow.status, homeowner_id)
        log_money_movement(escrow_id, EscrowTransactionType.DEPOSIT.value, amount, homeowner_id)
        logger.info(f"Escrow created | id={escrow_id} | project={project_id} | amount={amount}")
        return Escrow.from_dict(created)

    async def get_escrow(self, escrow_id: str) -> Escrow:
        doc = await self.store.get(ESCROWS_COLLECTION, escrow_id)
        if doc is None:
            raise EscrowError("ESCROW_NOT_FOUND", f"Escrow {escrow_id} not found")
        return Escrow.from_dict(doc)

    async def find_by_project(self, project_id: str) -> Optional[Escrow]:
        """The project's current escrow: the unsettled one, else the most recent."""
        docs = await self.store.query(
            ESCROWS_COLLECTION, [eq("project_id", project_id)], order_by="created_at", descending=True
        )
        if not docs:
            return None
        for doc in docs:
            if doc["status"] in LIVE_ESCROW_STATUSES:
                return Escrow.from_dict(doc)
        return Escrow.from_dict(docs[0])

    async def get_by_project(self, project_id: str) -> Escrow:
        escrow = await self.find_by_project(project_id)
        if escrow is None:
            raise EscrowError("ESCROW_NOT_FOUND", f"No escrow for project {project_id}")
        return escrow

    async def get_by_code(self, code: str) -> Escrow:
        docs = await self.store.query(ESCROWS_COLLECTION, [eq("code", code)], limit=1)
        if not docs:
            raise EscrowError("ESCROW_NOT_FOUND", f"Escrow {code} not found")
        return Escrow.from_dict(docs[0])

    async def list_escrows(
        self,
        status: Optional[EscrowStatus] = None,
        project_id: Optional[str] = None,
        limit: Optional[int] = 100,
        offset: int = 0,
    ) -> List[Escrow]:
        filters = []
        if status is not None:
            filters.append(eq("status", getattr(status, "value", status)))
        if project_id is not None:
            filters.append(eq("project_id", project_id))
        docs = await self.store.query(
            ESCROWS_COLLECTION, filters, order_by="created_at", descending=True,
            limit=limit, offset=offset,
        )
        return [Escrow.from_dict(d) for d in docs]

    async def confirm_deposit(
        self, escrow_id: str, admin_id: str, note: Optional[str] = None
    ) -> Escrow:
        """PENDING -> HELD once the deposit has been received."""
        escrow = await self.get_escrow(escrow_id)
        return await self._move(
            escrow,
            EscrowStatus.HELD,
            admin_id,
            EscrowTransactionType.DEPOSIT,
            escrow.amount,
            note or "Deposit confirmed by admin",
            confirmed_by=admin_id,
            confirmed_at=self.clock(),
        )

    async def _release_remaining(
        self, escrow: Escrow, admin_id: str, note: Optional[str], **updates
    ) -> Escrow:
        return await self._move(
            escrow,
            EscrowStatus.RELEASED,
            admin_id,
            EscrowTransactionType.RELEASE,
            escrow.remaining,
            note or "Funds released to contractor",
            released_amount=escrow.amount,
            released_by=admin_id,
            released_at=self.clock(),
            **updates,
        )

    async def _refund_remaining(
        self, escrow: Escrow, admin_id: str, reason: Optional[str], **updates
    ) -> Escrow:
        return await self._move(
            escrow,
            EscrowStatus.REFUNDED,
            admin_id,
            EscrowTransactionType.REFUND,
            escrow.remaining,
            reason or "Funds refunded to homeowner",
            refunded_by=admin_id,
            refunded_at=self.clock(),
            refund_reason=reason,
            **updates,
        )

    async def release(self, escrow_id: str, admin_id: str, note: Optional[str] = None) -> Escrow:
        """Release everything still held."""
        escrow = await self.get_escrow(escrow_id)
        return await self._release_remaining(escrow, admin_id, note)

    async def partial_release(
        self, escrow_id: str, admin_id: str, amount: Decimal, note: Optional[str] = None
    ) -> Escrow:
        """Release part of the held funds.

        Releasing exactly the remainder moves the escrow to RELEASED.
        """
        escrow = await self.get_escrow(escrow_id)
        if escrow.status not in (EscrowStatus.HELD, EscrowStatus.PARTIAL_RELEASED):
            raise EscrowError(
                "ESCROW_INVALID_TRANSITION",
                f"Cannot partially release escrow in status {escrow.status}",
            )

        amount = to_decimal(amount)
        if amount is None or amount <= 0:
            raise EscrowError("ESCROW_INVALID_AMOUNT", "Release amount must be positive")
        if amount > escrow.remaining:
            raise EscrowError(
                "ESCROW_INVALID_AMOUNT",
                f"Release amount {amount} exceeds remaining {escrow.remaining}",
                {"requested": str(amount), "remaining": str(escrow.remaining)},
            )

        released = escrow.released_amount + amount
        if released >= escrow.amount:
            target = EscrowStatus.RELEASED
            updates = {"released_by": admin_id, "released_at": self.clock()}
        else:
            target = EscrowStatus.PARTIAL_RELEASED
            updates = {}
        return await self._move(
            escrow,
            target,
            admin_id,
            EscrowTransactionType.PARTIAL_RELEASE,
            amount,
            note or "Partial release",
            released_amount=released,
            **updates,
        )

    async def refund(self, escrow_id: str, admin_id: str, reason: str) -> Escrow:
        """Return the unreleased remainder to the homeowner."""
        escrow = await self.get_escrow(escrow_id)
        return await self._refund_remaining(escrow, admin_id, reason)

    async def mark_disputed(self, escrow_id: str, user_id: str, reason: str) -> Escrow:
        if not reason or not reason.strip():
            raise ValidationError("A dispute reason is required", fields=["reason"])
        escrow = await self.get_escrow(escrow_id)
        return await self._move(
            escrow,
            EscrowStatus.DISPUTED,
            user_id,
            EscrowTransactionType.DISPUTE,
            Decimal("0"),
            reason,
            disputed_by=user_id,
            disputed_at=self.clock(),
            dispute_reason=reason,
        )

    async def resolve_dispute(
        self,
        escrow_id: str,
        admin_id: str,
        resolution: DisputeResolution,
        note: Optional[str] = None,
    ) -> Escrow:
        """Settle a disputed escrow by releasing or refunding the remainder."""
        resolution = DisputeResolution(resolution)
        escrow = await self.get_escrow(escrow_id)
        if escrow.status != EscrowStatus.DISPUTED:
            raise EscrowError(
                "ESCROW_INVALID_TRANSITION",
                f"Only disputed escrows can be resolved, got {escrow.status}",
            )
        resolved = {
            "dispute_resolution": resolution.value,
            "dispute_resolved_by": admin_id,
            "dispute_resolved_at": self.clock(),
        }
        if resolution == DisputeResolution.RELEASE:
            return await self._release_remaining(escrow, admin_id, note, **resolved)
        return await self._refund_remaining(escrow, admin_id, note, **resolved)

    async def cancel(self, escrow_id: str, admin_id: str, reason: Optional[str] = None) -> Escrow:
        """PENDING -> CANCELLED; nothing was deposited so nothing moves."""
        escrow = await self.get_escrow(escrow_id)
        return await self._move(
            escrow,
            EscrowStatus.CANCELLED,
            admin_id,
            EscrowTransactionType.CANCEL,
            Decimal("0"),
            reason or "Escrow cancelled",
            cancelled_by=admin_id,
            cancelled_at=self.clock(),
            cancel_reason=reason,
        )

    # =========================================================================
    # Milestones
    # =========================================================================

    @staticmethod
    def _validate_milestone_specs(specs: List[Dict[str, Any]]) -> None:
        if not specs:
            raise ValidationError("At least one milestone is required", fields=["milestones"])
        percentages = [int(s["percentage"]) for s in specs]
        if len(set(percentages)) != len(percentages):
            raise ValidationError("Milestone percentages must be unique", fields=["percentage"])
        total = sum((to_decimal(s["release_percentage"]) for s in specs), Decimal("0"))
        if abs(total - Decimal("100")) > RELEASE_SUM_TOLERANCE:
            raise ValidationError(
                f"Release percentages must sum to 100, got {total}",
                fields=["release_percentage"],
            )

    async def create_milestones(
        self, escrow_id: str, specs: Iterable[Dict[str, Any]]
    ) -> List[Milestone]:
        """Create an escrow's milestones in one batch."""
        specs = list(specs)
        self._validate_milestone_specs(specs)
        escrow = await self.get_escrow(escrow_id)
        collection = milestones_collection(escrow_id)
        if await self.store.count(collection) > 0:
            raise EscrowError(
                "MILESTONES_ALREADY_EXIST", f"Escrow {escrow_id} already has milestones"
            )

        now = self.clock()
        created = []
        for spec in sorted(specs, key=lambda s: int(s["percentage"])):
            try:
                milestone = Milestone(
                    id=milestone_id_for(escrow_id, int(spec["percentage"])),
                    escrow_id=escrow_id,
                    project_id=escrow.project_id,
                    name=spec["name"],
                    percentage=spec["percentage"],
                    release_percentage=spec["release_percentage"],
                    created_at=now,
                )
            except (KeyError, ValueError) as e:
                raise ValidationError(f"Invalid milestone: {e}") from e
            doc, error = await self.store.create(collection, milestone.id, milestone.to_dict())
            if error is not None:
                doc = await self.store.get(collection, milestone.id)
            created.append(Milestone.from_dict(doc))

        logger.info(f"Created {len(created)} milestones for escrow {escrow_id}")
        return created

    async def create_default_milestones(self, escrow_id: str) -> List[Milestone]:
        return await self.create_milestones(escrow_id, [dict(m) for m in DEFAULT_MILESTONES])

    async def list_milestones(self, escrow_id: str) -> List[Milestone]:
        docs = await self.store.query(milestones_collection(escrow_id), order_by="percentage")
        return [Milestone.from_dict(d) for d in docs]

    async def get_milestone(self, escrow_id: str, milestone_id: str) -> Milestone:
        doc = await self.store.get(milestones_collection(escrow_id), milestone_id)
        if doc is None:
            raise EscrowError("MILESTONE_NOT_FOUND", f"Milestone {milestone_id} not found")
        return Milestone.from_dict(doc)

    async def request_completion(
        self, escrow_id: str, milestone_id: str, contractor_id: str
    ) -> Milestone:
        """Contractor claims a milestone is done.

        Every milestone with a lower completion percentage must already be
        CONFIRMED; work cannot be claimed out of order.
        """
        escrow = await self.get_escrow(escrow_id)
        if escrow.contractor_id != contractor_id:
            raise EscrowError(
                "MILESTONE_ACCESS_DENIED", "Only the matched contractor can request completion"
            )
        if escrow.status not in ACTIVE_ESCROW_STATUSES:
            raise EscrowError("ESCROW_NOT_ACTIVE", f"Escrow is {escrow.status}, not holding funds")

        milestone = await self.get_milestone(escrow_id, milestone_id)
        if milestone.status != MilestoneStatus.PENDING:
            raise EscrowError(
                "MILESTONE_INVALID_STATUS",
                f"Cannot request completion of milestone in status {milestone.status}",
            )

        for other in await self.list_milestones(escrow_id):
            if other.percentage < milestone.percentage and other.status != MilestoneStatus.CONFIRMED:
                raise EscrowError(
                    "PREVIOUS_MILESTONE_NOT_COMPLETED",
                    f"Milestone '{other.name}' must be confirmed first",
                    {"milestone_id": other.id},
                )

        updated = await self._write_milestone(
            milestone,
            {
                "status": MilestoneStatus.REQUESTED,
                "requested_by": contractor_id,
                "requested_at": self.clock(),
            },
        )
        log_transition("milestone", milestone_id, milestone.status, "REQUESTED", contractor_id)
        return updated

    async def confirm_completion(
        self, escrow_id: str, milestone_id: str, homeowner_id: str
    ) -> Milestone:
        escrow = await self.get_escrow(escrow_id)
        if escrow.homeowner_id != homeowner_id:
            raise EscrowError(
                "MILESTONE_ACCESS_DENIED", "Only the homeowner can confirm milestones"
            )
        milestone = await self.get_milestone(escrow_id, milestone_id)
        if milestone.status != MilestoneStatus.REQUESTED:
            raise EscrowError(
                "MILESTONE_INVALID_STATUS",
                f"Cannot confirm milestone in status {milestone.status}",
            )
        updated = await self._write_milestone(
            milestone,
            {
                "status": MilestoneStatus.CONFIRMED,
                "confirmed_by": homeowner_id,
                "confirmed_at": self.clock(),
            },
        )
        log_transition("milestone", milestone_id, milestone.status, "CONFIRMED", homeowner_id)
        return updated

    async def dispute_milestone(
        self, escrow_id: str, milestone_id: str, homeowner_id: str, reason: str
    ) -> Milestone:
        """Reject a completion claim; the escrow is frozen as DISPUTED too."""
        if not reason or not reason.strip():
            raise ValidationError("A dispute reason is required", fields=["reason"])
        escrow = await self.get_escrow(escrow_id)
        if escrow.homeowner_id != homeowner_id:
            raise EscrowError(
                "MILESTONE_ACCESS_DENIED", "Only the homeowner can dispute milestones"
            )
        milestone = await self.get_milestone(escrow_id, milestone_id)
        if milestone.status != MilestoneStatus.REQUESTED:
            raise EscrowError(
                "MILESTONE_INVALID_STATUS",
                f"Cannot dispute milestone in status {milestone.status}",
            )

        updated = await self._write_milestone(
            milestone,
            {
                "status": MilestoneStatus.DISPUTED,
                "disputed_by": homeowner_id,
                "disputed_at": self.clock(),
                "dispute_reason": reason,
            },
        )
        log_transition("milestone", milestone_id, milestone.status, "DISPUTED", homeowner_id)

        if escrow.status in ACTIVE_ESCROW_STATUSES:
            try:
                await self.mark_disputed(
                    escrow_id, homeowner_id, f"Milestone '{milestone.name}': {reason}"
                )
            except Exception:
                # Put the claim back so the milestone and escrow agree
                await self._write_milestone(
                    updated,
                    {
                        "status": MilestoneStatus.REQUESTED,
                        "disputed_by": None,
                        "disputed_at": None,
                        "dispute_reason": None,
                    },
                )
                raise
        return updated

    async def release_milestone(self, escrow_id: str, milestone_id: str, admin_id: str) -> Escrow:
        """Pay out a confirmed milestone's share of the escrow.

        The share is ``amount * release_percentage / 100``; the last unpaid
        milestone receives the exact remainder so rounding never strands
        funds. The milestone is stamped before money moves, so two admins
        cannot pay the same milestone twice.
        """
        escrow = await self.get_escrow(escrow_id)
        milestone = await self.get_milestone(escrow_id, milestone_id)
        if milestone.status != MilestoneStatus.CONFIRMED:
            raise EscrowError(
                "MILESTONE_INVALID_STATUS",
                f"Only confirmed milestones can be released, got {milestone.status}",
            )
        if milestone.is_paid:
            raise EscrowError("MILESTONE_INVALID_STATUS", "Milestone has already been released")

        unpaid = [m for m in await self.list_milestones(escrow_id) if not m.is_paid]
        if len(unpaid) == 1:
            share = escrow.remaining
        else:
            share = min(
                round_money(escrow.amount * milestone.release_percentage / Decimal("100")),
                escrow.remaining,
            )

        stamped = await self._write_milestone(
            milestone, {"released_amount": share, "released_at": self.clock()}
        )
        if share <= 0:
            return escrow

        try:
            return await self.partial_release(
                escrow_id, admin_id, share, note=f"Milestone '{milestone.name}' released"
            )
        except Exception:
            # Undo the stamp so the milestone can be released again
            await self._write_milestone(stamped, {"released_amount": None, "released_at": None})
            raise
