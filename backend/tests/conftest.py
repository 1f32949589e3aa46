"""Pytest configuration and fixtures for async testing."""
import os

# Settings are read at import time; point them at SQLite before anything imports edubilling
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("PRODUCT_CACHE_BACKEND", "memory")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("SLACK_REFUND_WEBHOOK_URL", "")

import hashlib
import hmac
import json
import time
from datetime import datetime, timedelta
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from edubilling.cache import InMemoryProductCache
from edubilling.config import settings
from edubilling.database import Base
from edubilling.main import app
from edubilling.models import Account, Payment, Plan, User
from utils.factories import AccountFactory, PaymentFactory, PlanFactory, UserFactory
from utils.fake_stripe import FakeStripeAdapter, RecordingNotifier

# Fixed "now" handed to services as their clock
NOW = datetime(2026, 3, 2, 12, 0, 0)


@pytest_asyncio.fixture(scope="function")
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Create a fresh in-memory database and session for each test.

    Yields:
        AsyncSession: Database session for testing
    """
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
    async with session_factory() as session:
        yield session
        await session.rollback()

    await engine.dispose()


@pytest.fixture
def fake_stripe() -> FakeStripeAdapter:
    """Stripe adapter double recording every call."""
    return FakeStripeAdapter()


@pytest.fixture
def notifier() -> RecordingNotifier:
    """Notification double recording every message."""
    return RecordingNotifier()


@pytest.fixture
def product_cache() -> InMemoryProductCache:
    """Empty product cache."""
    return InMemoryProductCache()


async def persist(db: AsyncSession, *objects: Any) -> None:
    """Add and commit model instances."""
    db.add_all(objects)
    await db.commit()


@pytest_asyncio.fixture
async def single_class_plan(db_session: AsyncSession) -> Plan:
    """$25/month or $240/year, one teacher, $5 (monthly) or $60 (yearly) per extra teacher."""
    plan = Plan(**PlanFactory.create({"name": "Single Class", "slug": "single-class"}))
    await persist(db_session, plan)
    return plan


@pytest_asyncio.fixture
async def school_plan(db_session: AsyncSession) -> Plan:
    """$99/month or $990/year, ten teachers."""
    plan = Plan(
        **PlanFactory.create(
            {
                "name": "School",
                "slug": "school",
                "price_monthly": 9900,
                "price_yearly": 99000,
                "max_teachers": 10,
                "max_students": 300,
                "max_classes": 20,
            }
        )
    )
    await persist(db_session, plan)
    return plan


@pytest_asyncio.fixture
async def account(db_session: AsyncSession) -> Account:
    """Account on a free trial that has already used its card trial."""
    account = Account(**AccountFactory.create({"has_used_trial": True}))
    await persist(db_session, account)
    return account


async def make_account(db: AsyncSession, **overrides: Any) -> Account:
    """Persist an account built from the factory."""
    account = Account(**AccountFactory.create(overrides))
    await persist(db, account)
    return account


async def make_payment(db: AsyncSession, account: Account, plan: Plan, **overrides: Any) -> Payment:
    """Persist a ledger row built from the factory."""
    payment = Payment(**PaymentFactory.create({"account_id": account.id, "plan_id": plan.id, **overrides}))
    await persist(db, payment)
    return payment


async def make_users(db: AsyncSession, account: Account, count: int, **overrides: Any) -> list[User]:
    """Persist ``count`` users of an account."""
    users = [User(**UserFactory.create({"account_id": account.id, **overrides})) for _ in range(count)]
    await persist(db, *users)
    return users


def sign_webhook(payload: bytes, secret: str | None = None, timestamp: int | None = None) -> str:
    """Build a Stripe-Signature header for ``payload``."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new((secret or settings.stripe_webhook_secret).encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def stripe_event(event_type: str, obj: dict[str, Any], event_id: str = "evt_test_1") -> dict[str, Any]:
    """Minimal Stripe event envelope."""
    return {"id": event_id, "object": "event", "type": event_type, "data": {"object": obj}}


def encode_event(event: dict[str, Any]) -> bytes:
    return json.dumps(event).encode("utf-8")


def minutes_ago(minutes: int, now: datetime = NOW) -> datetime:
    return now - timedelta(minutes=minutes)


@pytest_asyncio.fixture(scope="function")
async def api_client(
    db_session: AsyncSession,
    account: Account,
    fake_stripe: FakeStripeAdapter,
    notifier: RecordingNotifier,
    product_cache: InMemoryProductCache,
) -> AsyncGenerator[AsyncClient, None]:
    """
    Create an async HTTP client authenticated as the ``account`` fixture.

    Args:
        db_session: Test database session fixture
        account: Account the token belongs to

    Yields:
        AsyncClient: Async HTTP client for API testing
    """
    from edubilling.api.deps import get_current_user, get_notifier, get_product_cache, get_stripe_adapter
    from edubilling.database import get_db

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        """Override database dependency to use test database."""
        yield db_session

    async def override_current_user() -> dict[str, Any]:
        return {"sub": "7d0f6b5e-2a4c-4f47-9f3b-0c8e1d2a3b4c", "account_id": str(account.id), "role": "admin"}

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_current_user
    app.dependency_overrides[get_stripe_adapter] = lambda: fake_stripe
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_product_cache] = lambda: product_cache

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    # Clean up
    app.dependency_overrides.clear()
