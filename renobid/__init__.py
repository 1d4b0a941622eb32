"""
Renobid - Bidding marketplace core for home renovation.

Homeowners post projects, contractors bid, and a selected bid becomes a
match backed by an escrow deposit and a platform win fee.
"""

from .escrow import EscrowLedger
from .fees import FeeLedger
from .matching import MatchOrchestrator
from .policy import BiddingPolicy, PolicyProvider
from .projects import ProjectLedger

try:
    from importlib.metadata import version

    __version__ = version("renobid")
except Exception:
    __version__ = "0.0.0"

__all__ = [
    "ProjectLedger",
    "EscrowLedger",
    "FeeLedger",
    "MatchOrchestrator",
    "BiddingPolicy",
    "PolicyProvider",
]
