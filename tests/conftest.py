"""Shared fixtures: a throwaway SQLite database per test plus in-memory fakes
for the push provider, the payment gateway and the event publisher."""

import asyncio
import math
import os
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

os.environ.setdefault("DISPATCH_DB", "sqlite+aiosqlite:///./.dispatch-test.db")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("PAYMENT_WEBHOOK_SECRET", "whsec_test")

import pytest

from shared.database import Base, get_engine, get_session

from app.dispatch import Actor, DispatchService
from app.enums import ActorKind, PartyKind, WalletStatus
from app.models import PlatformSettings, Service, Vendor, Wallet
from app.payments import PaymentGateway, PaymentService
from app.schemas import CreateBookingRequest

NOW = datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)
TODAY = NOW.date()

ORIGIN = (12.9716, 77.5946)
SERVICE_ID = "svc-deep-clean"
SLOT = "10:00-11:00"

REQUESTER = Actor(id="user-1", kind=ActorKind.USER.value)
ADMIN = Actor(id="admin-1", kind=ActorKind.ADMIN.value)


def east_of(origin: tuple[float, float], km: float) -> tuple[float, float]:
    """A point `km` kilometres due east of `origin`."""
    lat, lon = origin
    km_per_degree = 6371 * math.pi / 180 * math.cos(math.radians(lat))
    return lat, lon + km / km_per_degree


class Clock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class FakeNotifier:
    """Records sends; tokens listed in `failing` fail, tokens in `raising` raise."""

    def __init__(self, failing=(), raising=(), expect_concurrent: int = 0):
        self.failing = set(failing)
        self.raising = set(raising)
        self.sent = []
        self.expect_concurrent = expect_concurrent
        self.in_flight = 0
        self.max_in_flight = 0
        self._all_started = asyncio.Event()

    async def notify(self, token: str, payload: dict) -> bool:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.expect_concurrent:
                if self.in_flight >= self.expect_concurrent:
                    self._all_started.set()
                # sequential sends would never see the others start
                await asyncio.wait_for(self._all_started.wait(), timeout=2)

            self.sent.append((token, payload))
            if token in self.raising:
                raise ConnectionError("push provider reset the connection")
            return token not in self.failing
        finally:
            self.in_flight -= 1


class FakePublisher:
    enabled = True

    def __init__(self):
        self.emitted = []

    async def emit(self, event_type: str, data: dict):
        self.emitted.append((event_type, data))

    async def publish(self, routing_key: str, message_body: str):
        self.emitted.append((routing_key, message_body))

    def types(self) -> list[str]:
        return [t for t, _ in self.emitted]


class FakeGateway(PaymentGateway):
    def __init__(self):
        super().__init__(base_url="http://gateway.test", webhook_secret="whsec_test")
        self.orders = []

    async def create_order(self, amount, metadata):
        self.orders.append((amount, metadata))
        return f"order_{len(self.orders)}"


@pytest.fixture
async def engine(tmp_path):
    engine = get_engine(f"sqlite+aiosqlite:///{tmp_path / 'dispatch.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return get_session(engine)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def publisher():
    return FakePublisher()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def dispatch(session_factory, notifier, publisher, clock):
    return DispatchService(
        session_factory=session_factory,
        notifier=notifier,
        publisher=publisher,
        clock=clock,
        request_timeout_seconds=150,
        vendor_response_timeout_seconds=150,
    )


@pytest.fixture
def payments(session_factory, gateway, publisher, clock):
    return PaymentService(
        session_factory=session_factory,
        gateway=gateway,
        publisher=publisher,
        clock=clock,
    )


async def seed_platform(
    session_factory,
    booking_rate="10",
    billing_rate="20",
    service_rate=None,
    base_price="1000",
    platform_fee="0",
    tax_rate="0",
    membership_rate="0",
    minimum_wallet_balance="0",
):
    async with session_factory() as session:
        async with session.begin():
            session.add(
                PlatformSettings(
                    id=1,
                    commission_per_service_booking=Decimal(booking_rate),
                    commission_per_billing=Decimal(billing_rate),
                    platform_fee=Decimal(platform_fee),
                    service_tax_rate=Decimal(tax_rate),
                    membership_discount_rate=Decimal(membership_rate),
                    minimum_wallet_balance=Decimal(minimum_wallet_balance),
                    currency="INR",
                )
            )
            session.add(
                Service(
                    id=SERVICE_ID,
                    title="Deep cleaning",
                    base_price=Decimal(base_price),
                    commission_rate=Decimal(service_rate) if service_rate is not None else None,
                    is_active=True,
                )
            )


async def add_vendor(
    session_factory,
    vendor_id: str,
    km: float = 2.0,
    radius_km: float = 10.0,
    balance="500",
    pending="0",
    pending_since: datetime | None = None,
    wallet_status: str = WalletStatus.ACTIVE.value,
    push_token: str | None = "default",
    located: bool = True,
    **flags,
):
    lat, lon = east_of(ORIGIN, km)
    async with session_factory() as session:
        async with session.begin():
            session.add(
                Vendor(
                    id=vendor_id,
                    name=vendor_id.title(),
                    is_online=flags.get("is_online", True),
                    is_available=flags.get("is_available", True),
                    is_blocked=flags.get("is_blocked", False),
                    block_reason=flags.get("block_reason"),
                    service_ids=flags.get("service_ids", [SERVICE_ID]),
                    service_radius_km=radius_km,
                    latitude=lat if located else None,
                    longitude=lon if located else None,
                    push_token=f"token-{vendor_id}" if push_token == "default" else push_token,
                    push_platform="android",
                )
            )
            session.add(
                Wallet(
                    id=f"wallet-{vendor_id}",
                    party_id=vendor_id,
                    party_kind=PartyKind.VENDOR.value,
                    balance=Decimal(balance),
                    pending_balance=Decimal(pending),
                    pending_since=pending_since,
                    currency="INR",
                    status=wallet_status,
                    recent_transaction_ids=[],
                )
            )


def booking_request(booking_date: date = TODAY, time_slot: str = SLOT, **overrides) -> CreateBookingRequest:
    data = {
        "service_id": SERVICE_ID,
        "date": booking_date,
        "time_slot": time_slot,
        "latitude": ORIGIN[0],
        "longitude": ORIGIN[1],
    }
    data.update(overrides)
    return CreateBookingRequest(**data)


def vendor_actor(vendor_id: str) -> Actor:
    return Actor(id=vendor_id, kind=ActorKind.VENDOR.value)


async def load(session_factory, model, key):
    async with session_factory() as session:
        return await session.get(model, key)


COMPLETION_PATH = ["accepted", "confirmed", "on_route", "arrived", "in_progress", "completed"]


async def completed_booking(dispatch, vendor_id: str = "vendor-a", add_ons=None):
    """Create a booking, let `vendor_id` win it and drive it to completion."""
    booking = await dispatch.create_booking(booking_request(), REQUESTER)
    await dispatch.accept_booking(booking.id, vendor_id)
    actor = vendor_actor(vendor_id)
    for status in COMPLETION_PATH:
        if status == "completed" and add_ons:
            await dispatch.add_add_ons(booking.id, vendor_id, add_ons)
        booking = await dispatch.advance_booking(booking.id, actor, status)
    return booking
