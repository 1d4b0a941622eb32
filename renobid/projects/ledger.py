"""
Project ledger.

Owns Project documents and their Bid sub-collection, and is the only code
that changes their status. Every write is guarded by the status and version
the decision was made on, so two racing requests cannot both apply a
transition from the same source state.
"""

import logging
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from renobid.codes import BID_PREFIX, PROJECT_PREFIX, CodeGenerator
from renobid.errors import BidError, ConcurrentModificationError, ProjectError, ValidationError
from renobid.locks import KeyedLock
from renobid.logging_config import log_transition
from renobid.policy import PolicyProvider
from renobid.projects.models import (
    ACTIVE_BID_STATUSES,
    PROJECTS_COLLECTION,
    Bid,
    BidStatus,
    Project,
    ProjectStatus,
    bids_collection,
    can_transition_bid,
    can_transition_project,
)
from renobid.store import CONFLICT, NOT_FOUND, DocumentStore, eq, in_
from renobid.types import serialize_changes, to_decimal, utc_now

logger = logging.getLogger(__name__)

# Fields an owner may edit while drafting
EDITABLE_PROJECT_FIELDS = (
    "title",
    "description",
    "category_id",
    "region_id",
    "address",
    "area",
    "budget_min",
    "budget_max",
    "timeline",
    "requirements",
    "images",
)


class ProjectLedger:
    """Project and bid state machines over a DocumentStore."""

    def __init__(
        self,
        store: DocumentStore,
        codes: CodeGenerator,
        policy: PolicyProvider,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.codes = codes
        self.policy = policy
        self.clock = clock
        # Serializes bid creation with project writes (status, max_bids, one bid per contractor)
        self._project_locks = KeyedLock()

    # =========================================================================
    # Internal helpers
    # =========================================================================

    async def _write_project(self, project: Project, changes: Dict[str, Any]) -> Project:
        """Apply ``changes`` only if the project is still as we read it.

        Waits for any bid being placed on the project, so a bid never lands
        after the project has left OPEN.
        """
        async with self._project_locks.hold(project.id):
            updated, error = await self.store.update(
                PROJECTS_COLLECTION,
                project.id,
                serialize_changes({**changes, "updated_at": self.clock()}),
                expected={"status": project.status, "version": project.version},
            )
        if error == NOT_FOUND:
            raise ProjectError("PROJECT_NOT_FOUND", f"Project {project.id} not found")
        if error == CONFLICT:
            logger.warning(f"Race detected on project {project.id}: expected status {project.status}")
            raise ConcurrentModificationError(PROJECTS_COLLECTION, project.id)
        return Project.from_dict(updated)

    async def _write_bid(self, bid: Bid, changes: Dict[str, Any]) -> Bid:
        updated, error = await self.store.update(
            bids_collection(bid.project_id),
            bid.id,
            serialize_changes({**changes, "updated_at": self.clock()}),
            expected={"status": bid.status, "version": bid.version},
        )
        if error == NOT_FOUND:
            raise BidError("BID_NOT_FOUND", f"Bid {bid.id} not found")
        if error == CONFLICT:
            logger.warning(f"Race detected on bid {bid.id}: expected status {bid.status}")
            raise ConcurrentModificationError(bids_collection(bid.project_id), bid.id)
        return Bid.from_dict(updated)

    async def _transition(
        self, project: Project, target: ProjectStatus, actor_id: Optional[str], **updates
    ) -> Project:
        if not can_transition_project(project.status, target):
            raise ProjectError(
                "PROJECT_INVALID_TRANSITION",
                f"Cannot transition project from {project.status} to {target.value}",
                {"from": project.status, "to": target.value},
            )
        updated = await self._write_project(project, {"status": target, **updates})
        log_transition("project", project.id, project.status, target.value, actor_id)
        logger.info(f"Project {project.id} {project.status} -> {target.value} | actor={actor_id}")
        return updated

    async def _transition_bid(
        self, bid: Bid, target: BidStatus, actor_id: Optional[str], **updates
    ) -> Bid:
        if not can_transition_bid(bid.status, target):
            raise BidError(
                "BID_INVALID_TRANSITION",
                f"Cannot transition bid from {bid.status} to {target.value}",
                {"from": bid.status, "to": target.value},
            )
        updated = await self._write_bid(bid, {"status": target, **updates})
        log_transition("bid", bid.id, bid.status, target.value, actor_id)
        return updated

    @staticmethod
    def _require_owner(project: Project, owner_id: str) -> None:
        if project.owner_id != owner_id:
            raise ProjectError(
                "PROJECT_ACCESS_DENIED", "Only the project owner can perform this action"
            )

    async def _validate_deadline(self, bid_deadline: Optional[datetime]) -> datetime:
        """Resolve and bound a bid deadline against the policy."""
        policy = await self.policy.get_policy()
        now = self.clock()
        if bid_deadline is None:
            return now + timedelta(days=policy.default_bid_duration_days)
        if bid_deadline.tzinfo is None:
            raise ValidationError("bid_deadline must be timezone-aware", fields=["bid_deadline"])
        if bid_deadline <= now:
            raise ValidationError("Bid deadline must be in the future", fields=["bid_deadline"])
        earliest = now + timedelta(days=policy.min_bid_duration_days)
        latest = now + timedelta(days=policy.max_bid_duration_days)
        if not earliest <= bid_deadline <= latest:
            raise ValidationError(
                f"Bid deadline must be between {policy.min_bid_duration_days} and "
                f"{policy.max_bid_duration_days} days from now",
                fields=["bid_deadline"],
            )
        return bid_deadline

    # =========================================================================
    # Projects
    # =========================================================================

    async def create_project(self, owner_id: str, title: str, **fields) -> Project:
        """Create a DRAFT project owned by ``owner_id``."""
        unknown = set(fields) - set(EDITABLE_PROJECT_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown project fields: {sorted(unknown)}", fields=sorted(unknown))

        policy = await self.policy.get_policy()
        now = self.clock()
        try:
            project = Project(
                id=str(uuid.uuid4()),
                owner_id=owner_id,
                title=title,
                max_bids=policy.max_bids_per_project,
                created_at=now,
                **fields,
            )
        except (TypeError, ValueError) as e:
            raise ValidationError(str(e)) from e
        project.code = await self.codes.next_code(PROJECT_PREFIX, now)

        created, _ = await self.store.create(PROJECTS_COLLECTION, project.id, project.to_dict())
        log_transition("project", project.id, None, project.status, owner_id)
        logger.info(f"Project created | id={project.id} | code={project.code} | owner={owner_id}")
        return Project.from_dict(created)

    async def get_project(self, project_id: str) -> Project:
        doc = await self.store.get(PROJECTS_COLLECTION, project_id)
        if doc is None:
            raise ProjectError("PROJECT_NOT_FOUND", f"Project {project_id} not found")
        return Project.from_dict(doc)

    async def list_projects(
        self,
        status: Optional[ProjectStatus] = None,
        owner_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Project]:
        filters = []
        if status is not None:
            filters.append(eq("status", getattr(status, "value", status)))
        if owner_id is not None:
            filters.append(eq("owner_id", owner_id))
        docs = await self.store.query(
            PROJECTS_COLLECTION, filters, order_by="created_at", descending=True,
            limit=limit, offset=offset,
        )
        return [Project.from_dict(d) for d in docs]

    async def update_project(self, project_id: str, owner_id: str, **fields) -> Project:
        """Edit a project while it is still a draft (or bounced back by review)."""
        project = await self.get_project(project_id)
        self._require_owner(project, owner_id)
        if project.status not in (ProjectStatus.DRAFT, ProjectStatus.REJECTED):
            raise ProjectError(
                "PROJECT_INVALID_STATUS", f"Cannot edit project in status {project.status}"
            )
        unknown = set(fields) - set(EDITABLE_PROJECT_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown project fields: {sorted(unknown)}", fields=sorted(unknown))

        try:
            # Validate the merged result before touching the store
            Project.from_dict({**project.to_dict(), **serialize_changes(fields)})
        except (TypeError, ValueError) as e:
            raise ValidationError(str(e), fields=sorted(fields)) from e

        return await self._write_project(project, fields)

    async def delete_project(self, project_id: str, owner_id: str) -> None:
        project = await self.get_project(project_id)
        self._require_owner(project, owner_id)
        if project.status != ProjectStatus.DRAFT:
            raise ProjectError(
                "PROJECT_INVALID_STATUS", "Only draft projects can be deleted"
            )
        await self.store.delete(PROJECTS_COLLECTION, project_id)
        logger.info(f"Project deleted | id={project_id} | owner={owner_id}")

    async def submit(
        self, project_id: str, owner_id: str, bid_deadline: Optional[datetime] = None
    ) -> Project:
        """Send a draft (or rejected) project for admin approval."""
        project = await self.get_project(project_id)
        self._require_owner(project, owner_id)
        deadline = await self._validate_deadline(bid_deadline)
        return await self._transition(
            project, ProjectStatus.PENDING_APPROVAL, owner_id, bid_deadline=deadline
        )

    async def approve(self, project_id: str, admin_id: str, note: Optional[str] = None) -> Project:
        """Publish a project for bidding."""
        project = await self.get_project(project_id)
        now = self.clock()
        return await self._transition(
            project,
            ProjectStatus.OPEN,
            admin_id,
            published_at=now,
            reviewed_by=admin_id,
            reviewed_at=now,
            review_note=note,
        )

    async def reject(self, project_id: str, admin_id: str, note: str) -> Project:
        if not note or not note.strip():
            raise ValidationError("A rejection note is required", fields=["note"])
        project = await self.get_project(project_id)
        now = self.clock()
        return await self._transition(
            project,
            ProjectStatus.REJECTED,
            admin_id,
            reviewed_by=admin_id,
            reviewed_at=now,
            review_note=note,
        )

    async def close_bidding(self, project_id: str, owner_id: str) -> Project:
        project = await self.get_project(project_id)
        self._require_owner(project, owner_id)
        return await self._transition(project, ProjectStatus.BIDDING_CLOSED, owner_id)

    async def reopen_bidding(
        self, project_id: str, owner_id: str, bid_deadline: Optional[datetime] = None
    ) -> Project:
        project = await self.get_project(project_id)
        self._require_owner(project, owner_id)
        deadline = await self._validate_deadline(bid_deadline)
        return await self._transition(project, ProjectStatus.OPEN, owner_id, bid_deadline=deadline)

    async def cancel(
        self, project_id: str, actor_id: str, reason: str, is_admin: bool = False
    ) -> Project:
        """Cancel a project that has no match yet.

        Matched and in-progress projects hold money and are cancelled by the
        match orchestrator, which settles escrow and fees first.
        """
        project = await self.get_project(project_id)
        if not is_admin:
            self._require_owner(project, actor_id)
        if project.status in (ProjectStatus.MATCHED, ProjectStatus.IN_PROGRESS):
            raise ProjectError(
                "PROJECT_INVALID_STATUS",
                f"Cannot cancel {project.status} project without settling its match",
            )
        return await self._transition(
            project,
            ProjectStatus.CANCELLED,
            actor_id,
            cancel_reason=reason,
            cancelled_by=actor_id,
            cancelled_at=self.clock(),
        )

    async def transition_status(
        self,
        project_id: str,
        target: ProjectStatus,
        actor_id: Optional[str] = None,
        **updates,
    ) -> Project:
        """Generic guarded transition used by the match orchestrator."""
        target = ProjectStatus(target)
        project = await self.get_project(project_id)
        if target == ProjectStatus.MATCHED:
            updates.setdefault("matched_at", self.clock())
        return await self._transition(project, target, actor_id, **updates)

    async def revert_match(self, project_id: str, actor_id: Optional[str] = None) -> Project:
        """Undo a match: MATCHED -> BIDDING_CLOSED.

        This edge is deliberately absent from the transition table; only
        match compensation may take it.
        """
        project = await self.get_project(project_id)
        if project.status != ProjectStatus.MATCHED:
            raise ProjectError(
                "PROJECT_INVALID_STATUS",
                f"Cannot revert match of project in status {project.status}",
            )
        updated = await self._write_project(
            project,
            {
                "status": ProjectStatus.BIDDING_CLOSED,
                "selected_bid_id": None,
                "matched_at": None,
                "match_round": project.match_round + 1,
            },
        )
        log_transition(
            "project", project_id, project.status, ProjectStatus.BIDDING_CLOSED.value, actor_id
        )
        return updated

    # =========================================================================
    # Bids
    # =========================================================================

    async def count_active_bids(self, project_id: str) -> int:
        return await self.store.count(
            bids_collection(project_id),
            [in_("status", [s.value for s in ACTIVE_BID_STATUSES])],
        )

    async def add_bid(self, project: Project, now: Optional[datetime] = None) -> None:
        """Check that ``project`` can take one more bid right now."""
        now = now or self.clock()
        if project.status != ProjectStatus.OPEN:
            raise ProjectError("PROJECT_NOT_OPEN", "Project is not open for bidding")
        if project.bid_deadline is None or now >= project.bid_deadline:
            raise ProjectError("BID_DEADLINE_PASSED", "Bid deadline has passed")
        if await self.count_active_bids(project.id) >= project.max_bids:
            raise ProjectError(
                "BID_MAX_REACHED", f"Project already has the maximum of {project.max_bids} bids"
            )

    async def has_contractor_bid(self, project_id: str, contractor_id: str) -> bool:
        """Whether the contractor already has an active bid on the project."""
        count = await self.store.count(
            bids_collection(project_id),
            [
                eq("contractor_id", contractor_id),
                in_("status", [s.value for s in ACTIVE_BID_STATUSES]),
            ],
        )
        return count > 0

    async def create_bid(
        self,
        project_id: str,
        contractor_id: str,
        price: Decimal,
        timeline: str,
        proposal: str,
        attachments: Optional[List[Dict[str, Any]]] = None,
    ) -> Bid:
        """Place a bid on an open project."""
        price = to_decimal(price)
        if price is None or price <= 0:
            raise ValidationError("Price must be positive", fields=["price"])
        if not proposal or not proposal.strip():
            raise ValidationError("A proposal is required", fields=["proposal"])

        async with self._project_locks.hold(project_id):
            project = await self.get_project(project_id)
            now = self.clock()
            await self.add_bid(project, now)
            if await self.has_contractor_bid(project_id, contractor_id):
                raise BidError(
                    "BID_ALREADY_EXISTS", "You already have an active bid on this project"
                )

            response_time_hours = None
            if project.published_at is not None:
                hours = (now - project.published_at).total_seconds() / 3600
                response_time_hours = round(hours, 1)

            bid = Bid(
                id=str(uuid.uuid4()),
                project_id=project_id,
                contractor_id=contractor_id,
                price=price,
                timeline=timeline,
                proposal=proposal,
                attachments=list(attachments or []),
                response_time_hours=response_time_hours,
                created_at=now,
            )
            bid.code = await self.codes.next_code(BID_PREFIX, now)
            created, _ = await self.store.create(bids_collection(project_id), bid.id, bid.to_dict())

        log_transition("bid", bid.id, None, bid.status, contractor_id)
        logger.info(
            f"Bid created | id={bid.id} | project={project_id} | contractor={contractor_id}"
        )
        return Bid.from_dict(created)

    async def get_bid(self, project_id: str, bid_id: str) -> Bid:
        doc = await self.store.get(bids_collection(project_id), bid_id)
        if doc is None:
            raise BidError("BID_NOT_FOUND", f"Bid {bid_id} not found")
        return Bid.from_dict(doc)

    async def list_bids(
        self, project_id: str, status: Optional[BidStatus] = None
    ) -> List[Bid]:
        filters = []
        if status is not None:
            filters.append(eq("status", getattr(status, "value", status)))
        docs = await self.store.query(bids_collection(project_id), filters, order_by="created_at")
        return [Bid.from_dict(d) for d in docs]

    async def update_bid(
        self,
        project_id: str,
        bid_id: str,
        contractor_id: str,
        price: Optional[Decimal] = None,
        timeline: Optional[str] = None,
        proposal: Optional[str] = None,
        attachments: Optional[List[Dict[str, Any]]] = None,
    ) -> Bid:
        """Edit a bid that is still awaiting review."""
        bid = await self.get_bid(project_id, bid_id)
        if bid.contractor_id != contractor_id:
            raise BidError("BID_ACCESS_DENIED", "Only the bidding contractor can edit this bid")
        if bid.status != BidStatus.PENDING:
            raise BidError("BID_INVALID_STATUS", f"Cannot edit bid in status {bid.status}")

        changes: Dict[str, Any] = {}
        if price is not None:
            price = to_decimal(price)
            if price <= 0:
                raise ValidationError("Price must be positive", fields=["price"])
            changes["price"] = price
        if timeline is not None:
            changes["timeline"] = timeline
        if proposal is not None:
            changes["proposal"] = proposal
        if attachments is not None:
            changes["attachments"] = list(attachments)
        if not changes:
            return bid
        return await self._write_bid(bid, changes)

    async def withdraw_bid(self, project_id: str, bid_id: str, contractor_id: str) -> Bid:
        bid = await self.get_bid(project_id, bid_id)
        if bid.contractor_id != contractor_id:
            raise BidError("BID_ACCESS_DENIED", "Only the bidding contractor can withdraw this bid")
        return await self._transition_bid(
            bid, BidStatus.WITHDRAWN, contractor_id, withdrawn_at=self.clock()
        )

    async def approve_bid(
        self, project_id: str, bid_id: str, admin_id: str, note: Optional[str] = None
    ) -> Bid:
        """Admin review: PENDING -> APPROVED while the project is still open."""
        project = await self.get_project(project_id)
        bid = await self.get_bid(project_id, bid_id)
        if bid.status != BidStatus.PENDING:
            raise BidError("BID_INVALID_STATUS", f"Cannot approve bid in status {bid.status}")
        if project.status != ProjectStatus.OPEN:
            raise ProjectError("PROJECT_NOT_OPEN", "Project is not open for bidding")
        return await self._transition_bid(
            bid,
            BidStatus.APPROVED,
            admin_id,
            reviewed_by=admin_id,
            reviewed_at=self.clock(),
            review_note=note,
        )

    async def reject_bid(self, project_id: str, bid_id: str, admin_id: str, note: str) -> Bid:
        if not note or not note.strip():
            raise ValidationError("A rejection note is required", fields=["note"])
        bid = await self.get_bid(project_id, bid_id)
        if bid.status != BidStatus.PENDING:
            raise BidError("BID_INVALID_STATUS", f"Cannot reject bid in status {bid.status}")
        return await self._transition_bid(
            bid,
            BidStatus.REJECTED,
            admin_id,
            reviewed_by=admin_id,
            reviewed_at=self.clock(),
            review_note=note,
        )

    async def select_bid(self, project_id: str, bid_id: str, actor_id: Optional[str] = None) -> Bid:
        """Mark one bid SELECTED, demoting any other selected sibling to APPROVED.

        Selecting the already-selected bid is a no-op, so a retried match
        converges.
        """
        bid = await self.get_bid(project_id, bid_id)
        if bid.status == BidStatus.SELECTED:
            return bid
        if bid.status != BidStatus.APPROVED:
            raise BidError("BID_INVALID_STATUS", f"Only approved bids can be selected, got {bid.status}")

        for sibling in await self.list_bids(project_id, status=BidStatus.SELECTED):
            if sibling.id != bid_id:
                await self.revert_selection(project_id, sibling.id, actor_id)

        return await self._transition_bid(bid, BidStatus.SELECTED, actor_id, selected_at=self.clock())

    async def revert_selection(
        self, project_id: str, bid_id: str, actor_id: Optional[str] = None
    ) -> Bid:
        """Compensation edge: SELECTED -> APPROVED, leaving the bid eligible again."""
        bid = await self.get_bid(project_id, bid_id)
        if bid.status == BidStatus.APPROVED:
            return bid
        if bid.status != BidStatus.SELECTED:
            raise BidError("BID_INVALID_STATUS", f"Cannot revert bid in status {bid.status}")
        updated = await self._write_bid(bid, {"status": BidStatus.APPROVED, "selected_at": None})
        log_transition("bid", bid_id, bid.status, BidStatus.APPROVED.value, actor_id)
        return updated
