from datetime import datetime, timedelta, timezone

import pytest
from jose import jwt

from escrow_service.bookings import BookingRecordManager
from escrow_service.config import Settings
from escrow_service.db import create_all, get_engine, get_session
from escrow_service.errors import GatewayError
from escrow_service.gateway import GatewaySession, GatewayVerification
from escrow_service.orchestrator import BookingOrchestrator
from escrow_service.payments import EscrowPaymentManager
from escrow_service.refund_worker import AutoRefundScheduler
from escrow_service.schemas import CreateBookingRequest

JWT_SECRET = "test-secret"
T0 = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class RecordingPublisher:
    enabled = False

    def __init__(self):
        self.events = []

    async def connect(self):
        return

    async def close(self):
        return

    async def publish_event(self, event_type: str, data: dict):
        self.events.append((event_type, data))

    def of_type(self, event_type: str) -> list[dict]:
        return [data for et, data in self.events if et == event_type]


class FakeGateway:
    def __init__(self):
        self.sessions = []
        self.fail_next = 0
        self.redirect_override = None
        self.verify_status = "success"
        self.raise_next = None

    async def create_session(self, amount, currency, customer_email, reference):
        self.sessions.append(
            {"amount": amount, "currency": currency, "email": customer_email, "reference": reference}
        )
        if self.raise_next is not None:
            exc, self.raise_next = self.raise_next, None
            raise exc
        if self.fail_next:
            self.fail_next -= 1
            raise GatewayError("Timeout calling payment gateway: /transaction/initialize")
        url = self.redirect_override or f"https://checkout.paystack.com/{reference}"
        return GatewaySession(session_id=f"ac_{reference}", redirect_url=url)

    async def verify(self, reference):
        return GatewayVerification(reference=reference, status=self.verify_status)


def booking_request(**overrides) -> CreateBookingRequest:
    data = {
        "customer_id": "cust-1",
        "customer_name": "Ada Obi",
        "customer_email": "ada@example.com",
        "customer_phone": "+2348000000000",
        "provider_id": "prov-1",
        "provider_name": "Tunde Plumbing",
        "provider_email": "tunde@example.com",
        "service_type": "Plumbing",
        "description": "Kitchen sink leaking",
        "location": "12 Allen Avenue, Ikeja",
        "booking_type": "immediate",
        "budget": "₦5,000 - ₦10,000",
    }
    data.update(overrides)
    return CreateBookingRequest(**data)


def make_token(sub: str = "ada@example.com", roles=("customer",)) -> str:
    return jwt.encode({"sub": sub, "roles": list(roles)}, JWT_SECRET, algorithm="HS256")


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'escrow.db'}",
        jwt_secret=JWT_SECRET,
        gateway_secret_key="sk_test_123",
    )


@pytest.fixture
async def session_factory(settings):
    engine = get_engine(settings.database_url)
    await create_all(engine)
    yield get_session(engine)
    await engine.dispose()


@pytest.fixture
def clock():
    return FakeClock(T0)


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def bookings(session_factory, settings, publisher, clock):
    return BookingRecordManager(session_factory, settings, publisher, clock=clock)


@pytest.fixture
def payments(session_factory, bookings, gateway, publisher, settings, clock):
    return EscrowPaymentManager(session_factory, bookings, gateway, publisher, settings, clock=clock)


@pytest.fixture
def orchestrator(bookings, payments):
    return BookingOrchestrator(bookings, payments)


@pytest.fixture
def scheduler(session_factory, payments):
    return AutoRefundScheduler(session_factory, payments, tick_seconds=0.01)
