"""
Bidding policy: bid limits, escrow sizing and platform fees.

The policy is stored as the ``settings/bidding`` document and edited by
admins. Ledgers only read it; ``PolicyProvider`` caches the parsed value for
a short time since it changes rarely.
"""

import logging
import time
from dataclasses import asdict, dataclass, fields
from decimal import Decimal
from typing import Any, Dict, Optional

from renobid.errors import ValidationError
from renobid.store import DocumentStore
from renobid.types import round_money, to_decimal

logger = logging.getLogger(__name__)

SETTINGS_COLLECTION = "settings"
BIDDING_SETTINGS_ID = "bidding"

_MONEY_FIELDS = ("escrow_percentage", "escrow_min_amount", "escrow_max_amount",
                 "verification_fee", "win_fee_percentage")


@dataclass
class BiddingPolicy:
    """Platform-wide bidding settings."""

    max_bids_per_project: int = 10
    default_bid_duration_days: int = 7
    min_bid_duration_days: int = 3
    max_bid_duration_days: int = 30
    escrow_percentage: Decimal = Decimal("10")
    escrow_min_amount: Decimal = Decimal("1000000")
    escrow_max_amount: Optional[Decimal] = None
    verification_fee: Decimal = Decimal("500000")
    win_fee_percentage: Decimal = Decimal("5")

    def __post_init__(self):
        for name in _MONEY_FIELDS:
            setattr(self, name, to_decimal(getattr(self, name)))

        if self.max_bids_per_project < 1:
            raise ValueError("max_bids_per_project must be at least 1")
        if not 1 <= self.min_bid_duration_days <= self.max_bid_duration_days:
            raise ValueError("Bid duration bounds are inconsistent")
        if not self.min_bid_duration_days <= self.default_bid_duration_days <= self.max_bid_duration_days:
            raise ValueError("default_bid_duration_days must lie within the duration bounds")
        if not Decimal("0") <= self.escrow_percentage <= Decimal("100"):
            raise ValueError("escrow_percentage must be between 0 and 100")
        if not Decimal("0") <= self.win_fee_percentage <= Decimal("100"):
            raise ValueError("win_fee_percentage must be between 0 and 100")
        if self.escrow_min_amount < 0 or self.verification_fee < 0:
            raise ValueError("Amounts must not be negative")
        if self.escrow_max_amount is not None and self.escrow_max_amount < self.escrow_min_amount:
            raise ValueError("escrow_max_amount must not be below escrow_min_amount")

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for name in _MONEY_FIELDS:
            value = data[name]
            data[name] = str(value) if value is not None else None
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BiddingPolicy":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class EscrowCalculation:
    """Result of sizing an escrow from a bid price."""

    amount: Decimal
    percentage: Decimal
    min_applied: bool
    max_applied: bool


def calculate_escrow_amount(bid_price: Decimal, policy: BiddingPolicy) -> EscrowCalculation:
    """``clamp(price * escrow_percentage / 100, min, max)``."""
    raw = round_money(to_decimal(bid_price) * policy.escrow_percentage / Decimal("100"))
    amount = raw
    min_applied = max_applied = False
    if amount < policy.escrow_min_amount:
        amount = policy.escrow_min_amount
        min_applied = True
    if policy.escrow_max_amount is not None and amount > policy.escrow_max_amount:
        amount = policy.escrow_max_amount
        max_applied = True
    return EscrowCalculation(
        amount=amount,
        percentage=policy.escrow_percentage,
        min_applied=min_applied,
        max_applied=max_applied,
    )


def calculate_win_fee(bid_price: Decimal, policy: BiddingPolicy) -> Decimal:
    return round_money(to_decimal(bid_price) * policy.win_fee_percentage / Decimal("100"))


class PolicyProvider:
    """Reads and caches the bidding policy."""

    def __init__(self, store: DocumentStore, ttl_seconds: float = 60.0):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self._cached: Optional[BiddingPolicy] = None
        self._loaded_at = 0.0

    async def get_policy(self) -> BiddingPolicy:
        if self._cached is not None and time.monotonic() - self._loaded_at < self.ttl_seconds:
            return self._cached

        doc = await self.store.get(SETTINGS_COLLECTION, BIDDING_SETTINGS_ID)
        if doc is None:
            policy = BiddingPolicy()
        else:
            try:
                policy = BiddingPolicy.from_dict(doc)
            except ValueError as e:
                # A bad stored document must not take the marketplace down
                logger.error(f"Invalid bidding settings, using defaults: {e}")
                policy = BiddingPolicy()

        self._cached = policy
        self._loaded_at = time.monotonic()
        return policy

    async def update_policy(self, **changes) -> BiddingPolicy:
        """Validate and persist a partial policy update."""
        current = await self.get_policy()
        merged = {**current.to_dict(), **changes}
        try:
            policy = BiddingPolicy.from_dict(merged)
        except (TypeError, ValueError) as e:
            raise ValidationError(str(e), fields=sorted(changes)) from e

        data = policy.to_dict()
        existing = await self.store.get(SETTINGS_COLLECTION, BIDDING_SETTINGS_ID)
        if existing is None:
            await self.store.create(SETTINGS_COLLECTION, BIDDING_SETTINGS_ID, data)
        else:
            await self.store.update(SETTINGS_COLLECTION, BIDDING_SETTINGS_ID, data)

        self.invalidate()
        logger.info(f"Bidding policy updated: {sorted(changes)}")
        return policy

    def invalidate(self) -> None:
        self._cached = None
        self._loaded_at = 0.0
