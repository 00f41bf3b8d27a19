import logging
import uuid

from sqlalchemy import exists, select, update

from .amounts import normalize_amount
from .config import Settings
from .db import utcnow
from .errors import InvalidStateError, NotFoundError, ValidationError
from .events import booking_data
from .models import (
    Booking,
    Payment,
    BOOKING_AWAITING_PAYMENT,
    BOOKING_PENDING,
    BOOKING_CONFIRMED,
    BOOKING_COMPLETED,
    BOOKING_CANCELLED,
    BOOKING_STATUSES,
    PAYMENT_CONFIRMED,
    PAYMENT_RELEASED,
)
from .schemas import CreateBookingRequest

logger = logging.getLogger(__name__)

SERVICE_TYPES = (
    "House Cleaning",
    "Plumbing",
    "Electrical",
    "Hair Stylist",
    "Generator Repairer",
    "Carpenter",
    "Vulcanizer",
    "Car Wash",
    "Garden Care",
    "Handyman",
    "Painting",
    "AC/Fridge Technician",
    "Tiler",
    "Mason/Bricklayer",
    "Welder",
    "Pest Control",
    "Auto Mechanic",
    "Panel Beater",
    "Auto Electrician",
    "Makeup Artist",
    "Nail Technician",
    "Spa/Massage Therapist",
    "Tailor",
    "Nanny/Babysitter",
    "Cook/Chef",
    "Laundry Worker",
    "Gardener",
    "Security Guard",
    "CCTV Installer",
    "Solar Technician",
    "Inverter Technician",
    "IT Support",
    "Interior Designer",
    "TV Repairer",
)

_SERVICE_LOOKUP = {s.lower(): s for s in SERVICE_TYPES}

# status -> statuses it may move to
TRANSITIONS = {
    BOOKING_AWAITING_PAYMENT: {BOOKING_PENDING, BOOKING_CANCELLED},
    BOOKING_PENDING: {BOOKING_CONFIRMED, BOOKING_CANCELLED},
    BOOKING_CONFIRMED: {BOOKING_COMPLETED, BOOKING_CANCELLED},
    BOOKING_COMPLETED: set(),
    BOOKING_CANCELLED: set(),
}


def canonical_service_type(value: str) -> str:
    key = (value or "").strip().lower()
    if key not in _SERVICE_LOOKUP:
        raise ValidationError(f"Unknown service type: {value!r}")
    return _SERVICE_LOOKUP[key]


class BookingRecordManager:
    """
    Owns the booking row: creation, duplicate coalescing and status changes.

    Every status change is a conditional UPDATE on the current status, so two
    writers racing on one booking resolve to a single winner.
    """

    def __init__(self, session_factory, settings: Settings, publisher, clock=utcnow):
        self.session_factory = session_factory
        self.settings = settings
        self.publisher = publisher
        self.clock = clock

    async def create(self, data: CreateBookingRequest) -> Booking:
        service_type = canonical_service_type(data.service_type)
        now = self.clock()

        booking = Booking(
            booking_id=str(uuid.uuid4()),
            customer_id=data.customer_id,
            customer_name=data.customer_name,
            customer_email=data.customer_email,
            customer_phone=data.customer_phone,
            provider_id=data.provider_id,
            provider_name=data.provider_name,
            provider_email=data.provider_email,
            service_type=service_type,
            description=data.description or "",
            location=data.location,
            timeframe=data.timeframe,
            special_requests=data.special_requests,
            booking_type=data.booking_type,
            budget=data.budget,
            amount=normalize_amount(data.budget),
            status=BOOKING_AWAITING_PAYMENT,
            requested_at=now,
            updated_at=now,
        )

        async with self.session_factory() as db:
            db.add(booking)
            await db.commit()

        logger.info("booking created booking_id=%s amount=%s", booking.booking_id, booking.amount)
        await self.publisher.publish_event("booking.created", booking_data(booking))
        return booking

    async def find_open_duplicate(self, data: CreateBookingRequest) -> Booking | None:
        service_type = canonical_service_type(data.service_type)
        since = self.clock() - self.settings.duplicate_window

        async with self.session_factory() as db:
            res = await db.execute(
                select(Booking)
                .where(
                    Booking.customer_id == data.customer_id,
                    Booking.provider_id == data.provider_id,
                    Booking.service_type == service_type,
                    Booking.status == BOOKING_AWAITING_PAYMENT,
                    Booking.requested_at >= since,
                )
                .order_by(Booking.requested_at.desc())
                .limit(1)
            )
            return res.scalar_one_or_none()

    async def create_or_reuse(self, data: CreateBookingRequest) -> tuple[Booking, bool]:
        """Returns (booking, created)."""
        existing = await self.find_open_duplicate(data)
        if existing:
            logger.info("reusing open booking booking_id=%s", existing.booking_id)
            return existing, False
        return await self.create(data), True

    async def get(self, booking_id: str) -> Booking:
        async with self.session_factory() as db:
            res = await db.execute(select(Booking).where(Booking.booking_id == booking_id))
            booking = res.scalar_one_or_none()
        if not booking:
            raise NotFoundError(f"Booking not found: {booking_id}")
        return booking

    async def update_status(self, booking_id: str, status: str) -> Booking:
        if status not in BOOKING_STATUSES:
            raise ValidationError(f"Unknown booking status: {status}")

        booking = await self.get(booking_id)
        current = booking.status
        if current == status:
            return booking

        if status not in TRANSITIONS[current]:
            raise InvalidStateError(f"Booking {booking_id} cannot move from {current} to {status}")

        async with self.session_factory() as db:
            if status == BOOKING_COMPLETED:
                paid = await db.execute(
                    select(Payment.payment_id).where(
                        Payment.booking_id == booking_id,
                        Payment.status.in_((PAYMENT_CONFIRMED, PAYMENT_RELEASED)),
                    )
                )
                if paid.first() is None:
                    raise InvalidStateError(
                        f"Booking {booking_id} cannot be completed before its payment is confirmed"
                    )

            now = self.clock()
            values = {"status": status, "updated_at": now}
            if status == BOOKING_CONFIRMED:
                values["accepted_at"] = now
            elif status == BOOKING_COMPLETED:
                values["completed_at"] = now

            stmt = (
                update(Booking)
                .where(Booking.booking_id == booking_id, Booking.status == current)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if status == BOOKING_COMPLETED:
                stmt = stmt.where(
                    exists().where(
                        Payment.booking_id == booking_id,
                        Payment.status.in_((PAYMENT_CONFIRMED, PAYMENT_RELEASED)),
                    )
                )

            res = await db.execute(stmt)
            if res.rowcount != 1:
                await db.rollback()
                raise InvalidStateError(
                    f"Booking {booking_id} changed concurrently; {current} -> {status} not applied"
                )
            await db.commit()

        booking = await self.get(booking_id)
        logger.info("booking %s: %s -> %s", booking_id, current, status)
        await self.publisher.publish_event(
            "booking.status_changed", {**booking_data(booking), "previous_status": current}
        )
        return booking
