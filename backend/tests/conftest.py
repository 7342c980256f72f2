"""
Pytest configuration and shared fixtures for the checkout service tests.

Provides an in-memory SQLite record store seeded with a small catalog,
a file-backed store for multi-session tests, an httpx client bound to
the FastAPI app, a recording SMS sender and scriptable payment gateways.
"""
import os, sys
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from decimal import Decimal
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from config import settings

# ── Test Configuration ───────────────────────────────────────────────
# Set test-only values for settings that would normally come from .env
if not settings.jwt_secret:
    settings.jwt_secret = "test-jwt-secret-for-pytest-only"
settings.public_base_url = "http://test"

from main import app  # noqa: E402
from database import Base, get_db  # noqa: E402
from deps import get_gateways  # noqa: E402
from middleware.rate_limit import _limiter  # noqa: E402
from services.gateways.base import ConfirmationResult, SessionResult  # noqa: E402
from domain.errors import GatewayRejectedError  # noqa: E402

GUEST_PHONE = "01712345678"
GUEST_PHONE_NORMALIZED = "8801712345678"


# ── Database Fixtures ────────────────────────────────────────────────


@pytest_asyncio.fixture(scope="function")
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Create an in-memory SQLite database session for each test.

    Uses StaticPool to allow in-memory SQLite with async SQLAlchemy.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async_session_maker = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )

    async with async_session_maker() as session:
        yield session

    await engine.dispose()


def seed_store(session: AsyncSession) -> None:
    """
    Add the catalog and checkout settings to session (caller commits).

    Shipping options mirror the pricing examples:
        inside_dhaka   base 100, free from 1000
        outside_dhaka  base 100, free from 2000, 40 off from 1000
    """
    from db_models import PaymentMethod, Product, ShippingOption

    session.add_all([
        Product(id=1, slug="cotton-kurti", name="Cotton Kurti", price=Decimal("500.00"), active=True),
        Product(id=2, slug="silk-scarf", name="Silk Scarf", price=Decimal("300.00"), active=True),
        Product(id=3, slug="retired-tee", name="Retired Tee", price=Decimal("250.00"), active=False),
        ShippingOption(
            id="inside_dhaka", name="Inside Dhaka", base_price=Decimal("100.00"),
            free_shipping_threshold=Decimal("1000.00"), enabled=True, sort_order=1,
        ),
        ShippingOption(
            id="outside_dhaka", name="Outside Dhaka", base_price=Decimal("100.00"),
            free_shipping_threshold=Decimal("2000.00"),
            discount_threshold=Decimal("1000.00"), discount_amount=Decimal("40.00"),
            enabled=True, sort_order=2,
        ),
        ShippingOption(id="pickup", name="Store Pickup", base_price=Decimal("0.00"), enabled=False, sort_order=3),
        PaymentMethod(id="cod", name="Cash on Delivery", type="cod", enabled=True, is_default=True, sort_order=2),
        PaymentMethod(
            id="bkash_manual", name="bKash (Send Money)", type="bkash", enabled=True,
            account_number="01800000000", instructions="Send money and keep the TrxID", sort_order=1,
        ),
        PaymentMethod(id="nagad", name="Nagad", type="nagad", enabled=False, sort_order=3),
        PaymentMethod(id="bkash_pay", name="bKash Payment", type="bkash_gateway", enabled=True, sort_order=4),
        PaymentMethod(id="card", name="Card / Mobile Banking", type="sslcommerz", enabled=True, sort_order=5),
    ])


@pytest_asyncio.fixture
async def store(db_session: AsyncSession) -> AsyncSession:
    """In-memory store with the seeded catalog."""
    seed_store(db_session)
    await db_session.commit()
    return db_session


@pytest_asyncio.fixture(scope="function")
async def file_store(tmp_path) -> AsyncGenerator[async_sessionmaker, None]:
    """
    Seeded SQLite file shared by independent sessions.

    Each session gets its own pooled connection, so concurrent requests
    contend for the database the way separate workers do.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'store.db'}")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_maker() as session:
        seed_store(session)
        await session.commit()

    yield session_maker

    await engine.dispose()


# ── Test Data Fixtures ────────────────────────────────────────────────


@pytest.fixture
def cart() -> list[dict]:
    """500 x 2 + 300 x 1 = 1300."""
    return [
        {"product_id": 1, "quantity": 2, "size": "M"},
        {"product_id": 2, "quantity": 1},
    ]


@pytest.fixture
def address() -> dict:
    return {
        "full_name": "Nusrat Jahan",
        "phone": GUEST_PHONE,
        "address_line": "House 12, Road 5, Dhanmondi",
        "city": "Dhaka",
    }


class RecordingSender:
    """SMS sender double; keeps every (phone, message) it was asked to send."""

    def __init__(self, fail: bool = False):
        self.messages: list[tuple[str, str]] = []
        self.fail = fail

    async def send(self, phone: str, message: str) -> None:
        if self.fail:
            from services.notification_service import SmsDeliveryError
            raise SmsDeliveryError("provider down")
        self.messages.append((phone, message))


@pytest.fixture
def sms_outbox() -> RecordingSender:
    return RecordingSender()


class FakeGateway:
    """
    Scriptable hosted gateway.

    confirm_result may be a ConfirmationResult, or an exception instance
    to raise from confirm().
    """

    def __init__(self, provider: str):
        self.provider = provider
        self.created: list = []
        self.confirmed: list[str] = []
        self.confirm_result = None
        self.create_error = None

    async def create_session(self, request):
        if self.create_error is not None:
            raise self.create_error
        self.created.append(request)
        n = len(self.created)
        return SessionResult(
            session_token=f"{self.provider}-token-{n}",
            redirect_url=f"https://pay.example/{self.provider}/{n}",
        )

    async def confirm(self, token: str):
        self.confirmed.append(token)
        if isinstance(self.confirm_result, Exception):
            raise self.confirm_result
        if self.confirm_result is None:
            raise GatewayRejectedError(self.provider, "not scripted")
        return self.confirm_result


@pytest.fixture
def gateways() -> dict:
    return {
        "bkash_gateway": FakeGateway("bkash_gateway"),
        "sslcommerz": FakeGateway("sslcommerz"),
    }


def confirmation(transaction_id: str, amount: str, reference: str | None = None) -> ConfirmationResult:
    return ConfirmationResult(transaction_id=transaction_id, amount=Decimal(amount), reference=reference)


# ── HTTP Client ──────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def _reset_rate_limiter():
    _limiter.reset()
    yield
    _limiter.reset()


@pytest_asyncio.fixture(scope="function")
async def client(store: AsyncSession, gateways: dict):
    """
    httpx client for the FastAPI app with the in-memory store and fake gateways.
    """
    async def override_get_db():
        yield store

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateways] = lambda: gateways

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c

    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers() -> dict:
    from middleware.auth import issue_access_token
    token = issue_access_token(user_id="admin-1", role="admin")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def buyer_headers() -> dict:
    from middleware.auth import issue_access_token
    token = issue_access_token(user_id="buyer-42", role="buyer")
    return {"Authorization": f"Bearer {token}"}
