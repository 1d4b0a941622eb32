"""Ledger wiring.

Everything the routes need is built once per app in ``build_services`` and
kept on ``app.state.services``; routes receive it through ``get_services``.
"""

from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, Request

from renobid.codes import CodeGenerator
from renobid.escrow import EscrowLedger
from renobid.fees import FeeLedger
from renobid.matching import MatchOrchestrator
from renobid.policy import PolicyProvider
from renobid.projects import ProjectLedger
from renobid.store import DocumentStore
from renobid.types import utc_now


@dataclass
class Services:
    store: DocumentStore
    codes: CodeGenerator
    policy: PolicyProvider
    projects: ProjectLedger
    escrows: EscrowLedger
    fees: FeeLedger
    matches: MatchOrchestrator


def build_services(
    store: DocumentStore, policy_cache_seconds: float = 60.0, clock=utc_now
) -> Services:
    codes = CodeGenerator(store)
    policy = PolicyProvider(store, ttl_seconds=policy_cache_seconds)
    projects = ProjectLedger(store, codes, policy, clock=clock)
    escrows = EscrowLedger(store, codes, clock=clock)
    fees = FeeLedger(store, codes, policy, clock=clock)
    matches = MatchOrchestrator(projects, escrows, fees, policy, store, clock=clock)
    return Services(
        store=store,
        codes=codes,
        policy=policy,
        projects=projects,
        escrows=escrows,
        fees=fees,
        matches=matches,
    )


def get_services(request: Request) -> Services:
    """FastAPI dependency for the app's ledgers."""
    return request.app.state.services


# Type alias for dependency injection
ServicesDep = Annotated[Services, Depends(get_services)]
