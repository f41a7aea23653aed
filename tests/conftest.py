"""
Pytest fixtures for credits service tests.

This module provides:
- A fresh SQLite ledger database per test
- Ledger store, transaction engine, usage meter and payment processor
- An HTTP client for the FastAPI app with auth helpers
"""

import os
import warnings

# Configure the environment before the service modules read settings
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./.pytest-credits.db")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key-with-at-least-32-characters")
os.environ.setdefault("INTERNAL_SERVICE_TOKEN", "test-internal-service-token")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_placeholder")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_placeholder")
os.environ.setdefault("STRIPE_PRICE_PREMIUM", "price_premium_monthly")
os.environ.setdefault("STRIPE_PRICE_ENTERPRISE", "price_enterprise_monthly")

warnings.filterwarnings(
    "ignore", message="JWT_SECRET_KEY not set - using auto-generated secret", category=UserWarning
)

from collections.abc import AsyncGenerator  # noqa: E402
from pathlib import Path  # noqa: E402
from typing import Any  # noqa: E402
from unittest.mock import MagicMock  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from jose import jwt as jose_jwt  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker  # noqa: E402

from credits_service.config import settings  # noqa: E402
from credits_service.database import (  # noqa: E402
    create_engine_for_url,
    create_session_factory,
    create_tables,
    get_session_factory,
)
from credits_service.dependencies import get_stripe_gateway  # noqa: E402
from credits_service.ledger import LedgerStore, TransactionEngine  # noqa: E402
from credits_service.main import app  # noqa: E402
from credits_service.middleware.rate_limit import limiter  # noqa: E402
from credits_service.services.metering import UsageMeter  # noqa: E402
from credits_service.services.payment_events import PaymentEventProcessor  # noqa: E402
from credits_service.services.stripe_gateway import StripeGateway  # noqa: E402

TEST_ACCOUNT_ID = "acct-test-0001"
OTHER_ACCOUNT_ID = "acct-test-0002"

PRICE_TIERS = {
    "price_premium_monthly": "premium",
    "price_enterprise_monthly": "enterprise",
}


def make_access_token(account_id: str) -> str:
    """Sign a token the way the auth service does."""
    return jose_jwt.encode(
        {"sub": account_id, "type": "access"},
        settings.JWT_SECRET_KEY,
        algorithm=settings.JWT_ALGORITHM,
    )


def auth_headers(account_id: str = TEST_ACCOUNT_ID) -> dict[str, str]:
    return {"Authorization": f"Bearer {make_access_token(account_id)}"}


def internal_headers() -> dict[str, str]:
    return {"X-Internal-Service-Token": settings.INTERNAL_SERVICE_TOKEN}


@pytest_asyncio.fixture
async def db_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed SQLite database so concurrent sessions really contend."""
    engine = create_engine_for_url(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(db_engine)


@pytest.fixture
def store(session_factory: async_sessionmaker[AsyncSession]) -> LedgerStore:
    return LedgerStore(session_factory)


@pytest.fixture
def ledger(store: LedgerStore) -> TransactionEngine:
    return TransactionEngine(store)


@pytest.fixture
def meter(
    ledger: TransactionEngine, session_factory: async_sessionmaker[AsyncSession]
) -> UsageMeter:
    return UsageMeter(ledger, session_factory)


@pytest.fixture
def processor(
    ledger: TransactionEngine, session_factory: async_sessionmaker[AsyncSession]
) -> PaymentEventProcessor:
    return PaymentEventProcessor(ledger, session_factory, price_tiers=PRICE_TIERS)


@pytest.fixture
def mock_gateway() -> MagicMock:
    """Stripe gateway double; webhook verification is patched per test."""
    return MagicMock(spec=StripeGateway)


@pytest_asyncio.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession],
    mock_gateway: MagicMock,
) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client wired to the per-test database."""
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_stripe_gateway] = lambda: mock_gateway
    limiter.enabled = False

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as http_client:
        yield http_client

    app.dependency_overrides.clear()
    limiter.enabled = True


def stripe_event(event_type: str, data_object: dict[str, Any], event_id: str) -> dict[str, Any]:
    """Build a Stripe event body."""
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "data": {"object": data_object},
    }
