"""
Fee ledger.

Owns FeeTransaction documents. Win fees are keyed deterministically by
(project, bid, match round) so a retried match reuses the same record.
"""

import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from renobid.codes import FEE_PREFIX, CodeGenerator
from renobid.errors import ConcurrentModificationError, FeeError, ValidationError
from renobid.fees.models import (
    FEES_COLLECTION,
    FeeStatus,
    FeeTransaction,
    FeeType,
    can_transition_fee,
    fee_id_for,
)
from renobid.logging_config import log_transition
from renobid.policy import PolicyProvider
from renobid.store import CONFLICT, NOT_FOUND, DocumentStore, Filter, eq
from renobid.types import serialize_changes, to_decimal, utc_now

logger = logging.getLogger(__name__)


class FeeLedger:
    """Fee state machine over a DocumentStore."""

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

    async def _transition(
        self, fee: FeeTransaction, target: FeeStatus, actor_id: Optional[str], **updates
    ) -> FeeTransaction:
        if not can_transition_fee(fee.status, target):
            raise FeeError(
                "FEE_INVALID_TRANSITION",
                f"Cannot transition fee from {fee.status} to {target.value}",
                {"from": fee.status, "to": target.value},
            )
        changes = {"status": target, "updated_at": self.clock(), **updates}
        updated, error = await self.store.update(
            FEES_COLLECTION,
            fee.id,
            serialize_changes(changes),
            expected={"status": fee.status, "version": fee.version},
        )
        if error == NOT_FOUND:
            raise FeeError("FEE_NOT_FOUND", f"Fee {fee.id} not found")
        if error == CONFLICT:
            logger.warning(f"Race detected on fee {fee.id}: expected status {fee.status}")
            raise ConcurrentModificationError(FEES_COLLECTION, fee.id)
        log_transition("fee", fee.id, fee.status, target.value, actor_id)
        logger.info(f"Fee {fee.id} {fee.status} -> {target.value} | actor={actor_id}")
        return FeeTransaction.from_dict(updated)

    async def _insert(self, fee: FeeTransaction) -> FeeTransaction:
        fee.code = await self.codes.next_code(FEE_PREFIX, fee.created_at)
        created, error = await self.store.create(FEES_COLLECTION, fee.id, fee.to_dict())
        if error is not None:
            return await self.get_fee(fee.id)
        log_transition("fee", fee.id, None, fee.status, fee.user_id)
        logger.info(
            f"Fee created | id={fee.id} | type={fee.type} | user={fee.user_id} | amount={fee.amount}"
        )
        return FeeTransaction.from_dict(created)

    async def create_win_fee(
        self,
        project_id: str,
        bid_id: str,
        contractor_id: str,
        amount: Decimal,
        match_round: int = 0,
    ) -> FeeTransaction:
        """Charge the winning contractor; idempotent per match round."""
        amount = to_decimal(amount)
        if amount is None or amount < 0:
            raise ValidationError("Fee amount must not be negative", fields=["amount"])

        fee_id = fee_id_for(project_id, bid_id, match_round)
        existing = await self.store.get(FEES_COLLECTION, fee_id)
        if existing is not None:
            return FeeTransaction.from_dict(existing)

        live = await self.store.query(
            FEES_COLLECTION,
            [
                eq("project_id", project_id),
                eq("bid_id", bid_id),
                eq("type", FeeType.WIN_FEE.value),
                Filter("status", "!=", FeeStatus.CANCELLED.value),
            ],
        )
        if live:
            raise FeeError(
                "FEE_ALREADY_EXISTS",
                f"Bid {bid_id} already has win fee {live[0]['id']}",
                {"fee_id": live[0]["id"]},
            )

        return await self._insert(
            FeeTransaction(
                id=fee_id,
                user_id=contractor_id,
                type=FeeType.WIN_FEE,
                amount=amount,
                project_id=project_id,
                bid_id=bid_id,
                match_round=match_round,
                created_at=self.clock(),
            )
        )

    async def create_verification_fee(self, user_id: str) -> FeeTransaction:
        policy = await self.policy.get_policy()
        return await self._insert(
            FeeTransaction(
                id=str(uuid.uuid4()),
                user_id=user_id,
                type=FeeType.VERIFICATION_FEE,
                amount=policy.verification_fee,
                created_at=self.clock(),
            )
        )

    async def get_fee(self, fee_id: str) -> FeeTransaction:
        doc = await self.store.get(FEES_COLLECTION, fee_id)
        if doc is None:
            raise FeeError("FEE_NOT_FOUND", f"Fee {fee_id} not found")
        return FeeTransaction.from_dict(doc)

    async def get_by_code(self, code: str) -> FeeTransaction:
        docs = await self.store.query(FEES_COLLECTION, [eq("code", code)], limit=1)
        if not docs:
            raise FeeError("FEE_NOT_FOUND", f"Fee {code} not found")
        return FeeTransaction.from_dict(docs[0])

    async def _list(self, filters: List[Filter], limit: Optional[int] = None, offset: int = 0):
        docs = await self.store.query(
            FEES_COLLECTION, filters, order_by="created_at", descending=True,
            limit=limit, offset=offset,
        )
        return [FeeTransaction.from_dict(d) for d in docs]

    async def list_by_project(self, project_id: str) -> List[FeeTransaction]:
        return await self._list([eq("project_id", project_id)])

    async def list_by_bid(self, bid_id: str) -> List[FeeTransaction]:
        return await self._list([eq("bid_id", bid_id)])

    async def list_by_user(self, user_id: str) -> List[FeeTransaction]:
        return await self._list([eq("user_id", user_id)])

    async def list_fees(
        self,
        status: Optional[FeeStatus] = None,
        fee_type: Optional[FeeType] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[FeeTransaction]:
        filters = []
        if status is not None:
            filters.append(eq("status", getattr(status, "value", status)))
        if fee_type is not None:
            filters.append(eq("type", getattr(fee_type, "value", fee_type)))
        return await self._list(filters, limit=limit, offset=offset)

    async def mark_paid(self, fee_id: str, admin_id: str) -> FeeTransaction:
        fee = await self.get_fee(fee_id)
        return await self._transition(
            fee, FeeStatus.PAID, admin_id, paid_by=admin_id, paid_at=self.clock()
        )

    async def cancel(self, fee_id: str, admin_id: str, reason: Optional[str] = None) -> FeeTransaction:
        fee = await self.get_fee(fee_id)
        return await self._transition(
            fee,
            FeeStatus.CANCELLED,
            admin_id,
            cancelled_by=admin_id,
            cancelled_at=self.clock(),
            cancel_reason=reason,
        )

    async def cancel_pending_for_project(
        self, project_id: str, admin_id: str, reason: Optional[str] = None
    ) -> List[FeeTransaction]:
        """Cancel every PENDING fee of a project; paid fees are left alone."""
        pending = await self._list(
            [eq("project_id", project_id), eq("status", FeeStatus.PENDING.value)]
        )
        return [await self.cancel(fee.id, admin_id, reason) for fee in pending]

    async def get_stats(self) -> Dict[str, Any]:
        """Counts per status and the pending/paid totals."""
        stats: Dict[str, Any] = {}
        for status in FeeStatus:
            fees = await self._list([eq("status", status.value)])
            stats[f"total_{status.value.lower()}"] = len(fees)
            if status != FeeStatus.CANCELLED:
                stats[f"{status.value.lower()}_amount"] = sum(
                    (f.amount for f in fees), Decimal("0")
                )
        return stats
