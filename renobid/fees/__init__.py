"""Platform fees.

- FeeTransaction: a win or verification fee charged to a user
- FeeLedger: fee state machine
"""

from renobid.fees.ledger import FeeLedger
from renobid.fees.models import (
    FEE_STATUS_TRANSITIONS,
    FeeStatus,
    FeeTransaction,
    FeeType,
    fee_id_for,
)

__all__ = [
    "FeeTransaction",
    "FeeStatus",
    "FeeType",
    "FEE_STATUS_TRANSITIONS",
    "fee_id_for",
    "FeeLedger",
]
