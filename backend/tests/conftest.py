"""Pytest configuration and fixtures."""

import os
import secrets

import pytest

# Generate a unique test secret for this test run to prevent token forgery
_TEST_JWT_SECRET = f"test-only-{secrets.token_urlsafe(32)}"

os.environ.setdefault("JWT_SECRET_KEY", _TEST_JWT_SECRET)
os.environ.setdefault("DOCUMENT_STORE", "memory")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")

from app.main import app  # noqa: E402
from app.services import build_services  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from renobid.store import InMemoryDocumentStore  # noqa: E402

HOMEOWNER_ID = "usr_TEST_HOMEOWNER"
CONTRACTOR_ID = "usr_TEST_CONTRACTOR"
ADMIN_ID = "usr_TEST_ADMIN"


def make_headers(user_id: str, role: str) -> dict:
    from app.auth import create_access_token
    from app.config import get_settings

    token = create_access_token(user_id, role, get_settings())
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture(autouse=True)
def fresh_services(tmp_path, monkeypatch):
    """Each test gets an empty in-memory store."""
    monkeypatch.setenv("RENOBID_DATA_DIR", str(tmp_path))
    app.state.services = build_services(InMemoryDocumentStore(), policy_cache_seconds=0)
    yield app.state.services
    app.state.services = None


@pytest.fixture
def client():
    """Create a test client."""
    return TestClient(app)


@pytest.fixture
def homeowner_headers():
    return make_headers(HOMEOWNER_ID, "homeowner")


@pytest.fixture
def contractor_headers():
    return make_headers(CONTRACTOR_ID, "contractor")


@pytest.fixture
def admin_headers():
    return make_headers(ADMIN_ID, "admin")
