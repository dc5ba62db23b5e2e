import os
import uuid
from collections.abc import AsyncGenerator
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal

os.environ["STRIPE_SECRET_KEY"] = ""  # Force mock mode in tests
os.environ["STRIPE_WEBHOOK_SECRET"] = ""
os.environ["RESEND_API_KEY"] = ""
os.environ["ADMIN_API_KEY"] = "test-admin-key"
os.environ.setdefault("METRICS_API_KEY", "")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from cleanbook.database import Base, get_db
from cleanbook.main import app
from cleanbook.models.booking import BookingRequest
from cleanbook.models.enums import PaymentStatus, SettlementKind
from cleanbook.models.payment import Payment
from cleanbook.services.booking_cache import BookingViewCache
from cleanbook.services.booking_store import BookingStore
from cleanbook.services.lifecycle import BookingDraft, BookingLifecycleEngine
from cleanbook.services.notifications import NotificationDispatcher
from cleanbook.services.stripe_service import (
    ConfirmedPayment,
    Connected,
    IntentHandle,
    PlatformOnly,
    RefundReceipt,
)

ADMIN_HEADERS = {"X-Admin-Key": "test-admin-key"}

# Use SQLite for tests (in-memory)
TEST_DB_URL = "sqlite+aiosqlite:///:memory:"

engine = create_async_engine(TEST_DB_URL, echo=False)
test_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db() -> AsyncGenerator[AsyncSession, None]:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with test_session() as session:
        yield session

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture
async def client(db: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    async def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.state.booking_cache = BookingViewCache(ttl_seconds=60)

    # Reset rate limiter storage between tests to avoid 429 errors
    from cleanbook.utils.rate_limit import limiter
    limiter.reset()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


class FakeGateway:
    """Stand-in for StripeGateway that records calls and can be told to fail."""

    def __init__(self):
        self.intents: dict[str, tuple[int, IntentHandle]] = {}
        self.intent_business: dict[str, str | None] = {}
        self.refunds: list[tuple[str, object]] = []
        self.confirm_error: Exception | None = None
        self.refund_error: Exception | None = None
        self.charged_amount: int | None = None
        self.next_intent_id: str | None = None

    async def create_intent(
        self,
        amount_minor,
        metadata=None,
        connected_account_id=None,
        platform_fee_minor=None,
        idempotency_key=None,
    ):
        intent_id = self.next_intent_id or f"pi_test_{len(self.intents) + 1}"
        self.next_intent_id = None
        settlement = Connected(connected_account_id) if connected_account_id else PlatformOnly()
        handle = IntentHandle(intent_id=intent_id, client_secret=f"{intent_id}_secret_abc", settlement=settlement)
        self.intents[intent_id] = (amount_minor, handle)
        self.intent_business[intent_id] = (metadata or {}).get("business_id")
        return handle

    async def confirm(self, client_secret):
        if self.confirm_error is not None:
            raise self.confirm_error
        intent_id = client_secret.split("_secret_", 1)[0]
        amount_minor, handle = self.intents[intent_id]
        return ConfirmedPayment(
            payment_intent_id=intent_id,
            amount_minor=self.charged_amount or amount_minor,
            settlement=handle.settlement,
            card_last4="4242",
            card_brand="visa",
            business_id=self.intent_business[intent_id],
        )

    async def refund(self, payment_intent_id, settlement, idempotency_key=None):
        self.refunds.append((payment_intent_id, settlement))
        if self.refund_error is not None:
            raise self.refund_error
        return RefundReceipt(refund_id=f"re_{payment_intent_id}", status="succeeded")


def make_draft(**overrides) -> BookingDraft:
    values = dict(
        customer_id=uuid.uuid4(),
        customer_name="Alice Customer",
        customer_email="alice@example.com",
        customer_phone="+447700900001",
        business_id=uuid.uuid4(),
        business_name="Sparkle Cleaning",
        service_id=uuid.uuid4(),
        service_name="Deep Clean",
        category="cleaning",
        requested_date=date.today() + timedelta(days=3),
        requested_time=time(10, 0),
        total_cost=Decimal("50.00"),
        special_instructions="Key under the mat",
    )
    values.update(overrides)
    return BookingDraft(**values)


def build_booking(**overrides) -> tuple[BookingRequest, Payment]:
    """An unsaved booking and its payment, bypassing the engine."""
    total = overrides.pop("total_cost", Decimal("85.00"))
    intent_id = overrides.pop("payment_intent_id", f"pi_test_{uuid.uuid4().hex[:8]}")
    now = datetime.now(timezone.utc)
    booking = BookingRequest(
        id=overrides.pop("id", uuid.uuid4()),
        customer_id=overrides.pop("customer_id", uuid.uuid4()),
        customer_name="Alice Customer",
        customer_email="alice@example.com",
        business_id=overrides.pop("business_id", uuid.uuid4()),
        business_name="Sparkle Cleaning",
        service_id=uuid.uuid4(),
        service_name="Deep Clean",
        category="cleaning",
        requested_date=date.today() + timedelta(days=3),
        requested_time=time(10, 0),
        total_cost=total,
        platform_fee=Decimal("12.75"),
        business_earnings=total - Decimal("12.75"),
        created_at=overrides.pop("created_at", now),
        updated_at=now,
    )
    for name, value in overrides.items():
        setattr(booking, name, value)
    payment = Payment(
        stripe_payment_intent_id=intent_id,
        card_last4="4242",
        card_brand="visa",
        amount=total,
        platform_fee=Decimal("12.75"),
        business_earnings=total - Decimal("12.75"),
        currency="gbp",
        status=PaymentStatus.SUCCEEDED,
        settlement_mode=SettlementKind.PLATFORM_ONLY,
        paid_at=now,
    )
    return booking, payment


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def cache() -> BookingViewCache:
    return BookingViewCache(ttl_seconds=60)


@pytest_asyncio.fixture
async def store(db: AsyncSession) -> BookingStore:
    return BookingStore(db)


@pytest_asyncio.fixture
async def booking_engine(
    db: AsyncSession, store: BookingStore, gateway: FakeGateway, cache: BookingViewCache
) -> BookingLifecycleEngine:
    return BookingLifecycleEngine(store, NotificationDispatcher(db), gateway=gateway, cache=cache)


async def confirm_immediately(handle: IntentHandle) -> str:
    """Payer that completes the payment step straight away."""
    return handle.client_secret


@pytest_asyncio.fixture
async def pending_booking(booking_engine: BookingLifecycleEngine) -> BookingRequest:
    return await booking_engine.create_booking(make_draft(), confirm_immediately)


@pytest_asyncio.fixture
async def accepted_booking(booking_engine: BookingLifecycleEngine, pending_booking: BookingRequest) -> BookingRequest:
    return await booking_engine.accept(pending_booking.id, "See you then")


def booking_payload(**overrides) -> dict:
    """JSON body for POST /bookings, without the client secret."""
    draft = make_draft()
    payload = {
        "customer_id": str(draft.customer_id),
        "customer_name": draft.customer_name,
        "customer_email": draft.customer_email,
        "customer_phone": draft.customer_phone,
        "business_id": str(draft.business_id),
        "business_name": draft.business_name,
        "service_id": str(draft.service_id),
        "service_name": draft.service_name,
        "category": draft.category,
        "requested_date": draft.requested_date.isoformat(),
        "requested_time": "10:00:00",
        "total_cost": "50.00",
        "special_instructions": draft.special_instructions,
    }
    payload.update(overrides)
    return payload


async def create_booking_via_api(client: AsyncClient, **overrides) -> dict:
    """Run both checkout phases over HTTP and return the created booking."""
    payload = booking_payload(**overrides)
    intent = await client.post(
        "/payments/intents",
        json={"business_id": payload["business_id"], "total_cost": payload["total_cost"]},
    )
    assert intent.status_code == 201, intent.text
    payload["client_secret"] = intent.json()["client_secret"]
    response = await client.post("/bookings", json=payload)
    assert response.status_code == 201, response.text
    return response.json()["booking"]
