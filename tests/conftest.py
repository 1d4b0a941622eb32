"""
Pytest fixtures and test configuration for renobid tests.
"""

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
import pytest_asyncio

from renobid.codes import CodeGenerator
from renobid.escrow import EscrowLedger
from renobid.fees import FeeLedger
from renobid.matching import MatchOrchestrator
from renobid.policy import PolicyProvider
from renobid.projects import ProjectLedger
from renobid.store import InMemoryDocumentStore

HOMEOWNER = "homeowner-1"
CONTRACTOR = "contractor-1"
OTHER_CONTRACTOR = "contractor-2"
ADMIN = "admin-1"


class FakeClock:
    """Settable clock; ledgers call it instead of datetime.now()."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class Marketplace:
    """Drives projects and bids into the states the tests start from."""

    def __init__(self, projects: ProjectLedger, clock: FakeClock):
        self.projects = projects
        self.clock = clock

    async def open_project(self, owner_id: str = HOMEOWNER, title: str = "Kitchen remodel", **fields):
        project = await self.projects.create_project(owner_id, title, **fields)
        await self.projects.submit(project.id, owner_id)
        return await self.projects.approve(project.id, ADMIN)

    async def approved_bid(
        self, project_id: str, contractor_id: str = CONTRACTOR, price: Decimal = Decimal("100000000")
    ):
        self.clock.advance(minutes=1)
        bid = await self.projects.create_bid(
            project_id, contractor_id, price, "8 weeks", "Full remodel with new cabinets"
        )
        return await self.projects.approve_bid(project_id, bid.id, ADMIN)

    async def closed_project_with_bid(
        self, price: Decimal = Decimal("100000000"), contractor_id: str = CONTRACTOR
    ):
        """An owner-closed project holding one APPROVED bid."""
        project = await self.open_project()
        bid = await self.approved_bid(project.id, contractor_id, price)
        project = await self.projects.close_bidding(project.id, HOMEOWNER)
        return project, bid


# =============================================================================
# Environment
# =============================================================================


@pytest.fixture(autouse=True)
def renobid_data_dir(tmp_path, monkeypatch):
    """Keep workflow event logs out of the home directory."""
    monkeypatch.setenv("RENOBID_DATA_DIR", str(tmp_path))
    yield tmp_path
    for name in ("renobid", "renobid.workflow"):
        logger = logging.getLogger(name)
        for handler in list(logger.handlers):
            handler.close()
            logger.removeHandler(handler)


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc))


# =============================================================================
# Ledgers
# =============================================================================


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def codes(store):
    return CodeGenerator(store)


@pytest.fixture
def policy(store):
    return PolicyProvider(store, ttl_seconds=0)


@pytest.fixture
def projects(store, codes, policy, clock):
    return ProjectLedger(store, codes, policy, clock=clock)


@pytest.fixture
def escrows(store, codes, clock):
    return EscrowLedger(store, codes, clock=clock)


@pytest.fixture
def fees(store, codes, policy, clock):
    return FeeLedger(store, codes, policy, clock=clock)


@pytest.fixture
def orchestrator(projects, escrows, fees, policy, store, clock):
    return MatchOrchestrator(projects, escrows, fees, policy, store, clock=clock)


@pytest.fixture
def market(projects, clock):
    return Marketplace(projects, clock)


# =============================================================================
# Prepared states
# =============================================================================


@pytest_asyncio.fixture
async def closed_project(market):
    """(project, bid): bidding closed with one approved 100,000,000 VND bid."""
    return await market.closed_project_with_bid()


@pytest_asyncio.fixture
async def held_escrow(escrows):
    """A HELD escrow of 10,000,000 VND with no milestones."""
    escrow = await escrows.create_escrow(
        "project-1", "bid-1", HOMEOWNER, Decimal("10000000"), contractor_id=CONTRACTOR
    )
    return await escrows.confirm_deposit(escrow.id, ADMIN)
