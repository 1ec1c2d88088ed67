"""
Pytest configuration and fixtures.
"""
import os

os.environ["STRIPE_SECRET_KEY"] = "sk_test_fake_key_for_testing"
os.environ["STRIPE_PUBLISHABLE_KEY"] = "pk_test_fake_key_for_testing"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_fake_secret"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["REDIS_URL"] = "redis://localhost:6379/15"
os.environ["APP_ENV"] = "test"
os.environ["PUBLIC_BASE_URL"] = "https://shop.test"

from typing import Any, AsyncGenerator, Dict  # noqa: E402
from unittest.mock import AsyncMock, MagicMock  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool  # noqa: E402

from checkout_platform.core.attribution import AttributionService  # noqa: E402
from checkout_platform.core.checkout import CheckoutService  # noqa: E402
from checkout_platform.core.coupons import CouponService  # noqa: E402
from checkout_platform.core.idempotency import IdempotencyManager  # noqa: E402
from checkout_platform.core.settlement import SettlementEngine  # noqa: E402
from checkout_platform.database import connection  # noqa: E402
from checkout_platform.database.models import Base, Course, User  # noqa: E402
from checkout_platform.integrations.stripe_client import StripeClient  # noqa: E402
from factories import make_course, make_user  # noqa: E402


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, Any]:
    """In-memory SQLite engine shared by every session of a test."""
    test_engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(
    engine: AsyncEngine, monkeypatch: pytest.MonkeyPatch
) -> async_sessionmaker[AsyncSession]:
    """Session factory, also installed as the application's."""
    factory = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )
    monkeypatch.setattr(connection, "_engine", engine)
    monkeypatch.setattr(connection, "_async_session_factory", factory)
    return factory


@pytest_asyncio.fixture
async def db(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, Any]:
    """Create test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def fake_redis() -> AsyncMock:
    """Redis client backed by a dict."""
    store: Dict[str, Any] = {}

    def _setex(key: str, ttl: int, value: Any) -> bool:
        store[key] = value
        return True

    def _delete(*keys: str) -> int:
        return sum(1 for key in keys if store.pop(key, None) is not None)

    redis = AsyncMock()
    redis.store = store
    redis.get.side_effect = lambda key: store.get(key)
    redis.setex.side_effect = _setex
    redis.delete.side_effect = _delete
    redis.exists.side_effect = lambda key: int(key in store)
    redis.ping.return_value = True
    return redis


@pytest.fixture
def mock_stripe_client() -> AsyncMock:
    """Stripe client returning a fresh PaymentIntent per call."""
    client = AsyncMock(spec=StripeClient)
    counter = {"n": 0}

    def _create_payment_intent(**kwargs: Any) -> MagicMock:
        counter["n"] += 1
        payment_intent = MagicMock()
        payment_intent.id = f"pi_test_{counter['n']}"
        payment_intent.client_secret = f"pi_test_{counter['n']}_secret"
        payment_intent.status = "requires_payment_method"
        payment_intent.amount = kwargs["amount_cents"]
        return payment_intent

    client.create_payment_intent = AsyncMock(side_effect=_create_payment_intent)
    client.create_refund = AsyncMock()
    client.list_payment_intents = AsyncMock()
    return client


@pytest.fixture
def mock_redlock() -> MagicMock:
    redlock = MagicMock()
    redlock.lock.return_value = MagicMock(name="lock")
    return redlock


@pytest.fixture
def idempotency_manager(fake_redis: AsyncMock) -> IdempotencyManager:
    return IdempotencyManager(redis_client=fake_redis)


@pytest.fixture
def settlement_engine(idempotency_manager: IdempotencyManager) -> SettlementEngine:
    return SettlementEngine(idempotency_manager=idempotency_manager)


@pytest.fixture
def checkout_service(
    mock_stripe_client: AsyncMock,
    idempotency_manager: IdempotencyManager,
    settlement_engine: SettlementEngine,
    mock_redlock: MagicMock,
) -> CheckoutService:
    coupon_service = CouponService()
    settlement_engine.coupon_service = coupon_service
    service = CheckoutService(
        stripe_client=mock_stripe_client,
        idempotency_manager=idempotency_manager,
        attribution_service=AttributionService(),
        settlement_engine=settlement_engine,
        coupon_service=coupon_service,
    )
    service.redlock = mock_redlock
    return service


@pytest_asyncio.fixture
async def producer(db: AsyncSession) -> User:
    return await make_user(db, "producer@example.com")


@pytest_asyncio.fixture
async def course(db: AsyncSession, producer: User) -> Course:
    return await make_course(db, producer)
