"""
Pytest Configuration and Centralized Fixtures.

Provides reusable mocks and fixtures for testing:
- Database sessions and query results
- Account rows and plans
- A gateway resolving the standard test payment
- API test client with database overrides
"""

import os
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession

from helpers import (
    DATABASE_URL,
    JWT_SECRET,
    KEY_ID,
    KEY_SECRET,
    WEBHOOK_SECRET,
    create_account,
    create_plan_data,
    gateway_order,
    gateway_payment,
    make_result,
    make_token,
)

# Set required environment variables BEFORE importing app modules
os.environ.setdefault("DATABASE_URL", DATABASE_URL)
os.environ.setdefault("JWT_SECRET", JWT_SECRET)
os.environ.setdefault("RAZORPAY_KEY_ID", KEY_ID)
os.environ.setdefault("RAZORPAY_KEY_SECRET", KEY_SECRET)
os.environ.setdefault("RAZORPAY_WEBHOOK_SECRET", WEBHOOK_SECRET)

from token_ledger.config import Settings, settings  # noqa: E402
from token_ledger.db.models import Account  # noqa: E402
from token_ledger.models.domain import PlanData  # noqa: E402

# ============================================================================
# Database Session Fixtures
# ============================================================================


@pytest.fixture
def db_session() -> AsyncMock:
    """Create a mock database session with sensible defaults."""
    session = AsyncMock(spec=AsyncSession)

    session.flush = AsyncMock()
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    session.close = AsyncMock()
    session.add = MagicMock()
    session.get = AsyncMock(return_value=None)
    session.execute = AsyncMock(return_value=make_result())

    return session


@pytest.fixture
def account() -> Account:
    """Account holding 100 free tokens."""
    return create_account()


@pytest.fixture
def session_with_account(db_session: AsyncMock, account: Account) -> AsyncMock:
    """Session whose lookups return `account` and read it back on verification."""
    db_session.execute = AsyncMock(return_value=make_result(scalar=account))
    db_session.get = AsyncMock(return_value=account)
    return db_session


# ============================================================================
# Domain Fixtures
# ============================================================================


@pytest.fixture
def plan_data() -> PlanData:
    """Paid plan granting 5000 tokens for 499.00 INR."""
    return create_plan_data()


@pytest.fixture
def gateway(plan_data: PlanData) -> AsyncMock:
    """Gateway resolving pay_123/order_123 to user-1 buying `plan_data`."""
    mock = AsyncMock()
    mock.provider_name = "razorpay"
    mock.fetch_payment = AsyncMock(return_value=gateway_payment())
    mock.fetch_order = AsyncMock(return_value=gateway_order(plan_data.plan_id))
    return mock


@pytest.fixture
def test_settings() -> Settings:
    """Settings copy that tests may tweak freely."""
    return settings.model_copy()


# ============================================================================
# Auth Fixtures
# ============================================================================


@pytest.fixture
def auth_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {make_token()}"}


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {make_token('admin-1', role='admin')}"}


# ============================================================================
# FastAPI Test Client Fixtures
# ============================================================================


@pytest.fixture
def app() -> FastAPI:
    """FastAPI app for testing."""
    from token_ledger.main import app as main_app

    return main_app


@pytest.fixture
def client(app: FastAPI, db_session: AsyncMock) -> TestClient:
    """Test client with both database dependencies bound to the mock session."""
    from token_ledger.db.session import get_read_db, get_write_db

    async def override_db():
        yield db_session

    app.dependency_overrides[get_write_db] = override_db
    app.dependency_overrides[get_read_db] = override_db

    yield TestClient(app, raise_server_exceptions=False)

    app.dependency_overrides.clear()
