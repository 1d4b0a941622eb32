"""Matching workflows that span projects, escrow and fees.

- MatchOrchestrator: bid-selection saga and post-match workflows
- MatchSaga: durable record of one selection attempt
"""

from renobid.matching.orchestrator import MatchDetails, MatchOrchestrator, MatchPage, MatchResult
from renobid.matching.saga import MatchSaga, SagaStatus, SagaStep, saga_id_for

__all__ = [
    "MatchOrchestrator",
    "MatchResult",
    "MatchDetails",
    "MatchPage",
    "MatchSaga",
    "SagaStatus",
    "SagaStep",
    "saga_id_for",
]
