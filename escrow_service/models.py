from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint, text

from .db import Base

BOOKING_AWAITING_PAYMENT = "awaiting_payment"
BOOKING_PENDING = "pending"
BOOKING_CONFIRMED = "confirmed"
BOOKING_COMPLETED = "completed"
BOOKING_CANCELLED = "cancelled"

BOOKING_STATUSES = (
    BOOKING_AWAITING_PAYMENT,
    BOOKING_PENDING,
    BOOKING_CONFIRMED,
    BOOKING_COMPLETED,
    BOOKING_CANCELLED,
)

PAYMENT_HELD = "held"
PAYMENT_CONFIRMED = "confirmed"
PAYMENT_RELEASED = "released"
PAYMENT_REFUNDED = "refunded"
PAYMENT_FAILED = "failed"

PAYMENT_STATUSES = (
    PAYMENT_HELD,
    PAYMENT_CONFIRMED,
    PAYMENT_RELEASED,
    PAYMENT_REFUNDED,
    PAYMENT_FAILED,
)
PAYMENT_TERMINAL = (PAYMENT_RELEASED, PAYMENT_REFUNDED, PAYMENT_FAILED)


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True)
    booking_id = Column(String, unique=True, nullable=False, index=True)

    customer_id = Column(String, nullable=False, index=True)
    customer_name = Column(String, nullable=False)
    customer_email = Column(String, nullable=False)
    customer_phone = Column(String, nullable=True)

    provider_id = Column(String, nullable=False, index=True)
    provider_name = Column(String, nullable=False)
    provider_email = Column(String, nullable=False)

    service_type = Column(String, nullable=False)
    description = Column(Text, nullable=False, default="")
    location = Column(String, nullable=False)
    timeframe = Column(String, nullable=False)  # ASAP / "<date> at <time>" / Flexible
    special_requests = Column(Text, nullable=True)
    booking_type = Column(String, nullable=False, default="immediate")

    budget = Column(String, nullable=True)
    amount = Column(Integer, nullable=False)

    status = Column(String, nullable=False, index=True)

    requested_at = Column(DateTime(timezone=True), nullable=False)
    accepted_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (
        UniqueConstraint("booking_id", "attempt", name="uq_payments_booking_attempt"),
        # at most one live (non-failed) payment per booking
        Index(
            "uq_payments_live_booking",
            "booking_id",
            unique=True,
            postgresql_where=text("status != 'failed'"),
            sqlite_where=text("status != 'failed'"),
        ),
    )

    id = Column(Integer, primary_key=True)
    payment_id = Column(String, unique=True, nullable=False, index=True)
    booking_id = Column(String, ForeignKey("bookings.booking_id"), nullable=False, index=True)
    attempt = Column(Integer, nullable=False)

    amount = Column(Integer, nullable=False)
    commission = Column(Integer, nullable=False)
    provider_amount = Column(Integer, nullable=False)
    currency = Column(String, nullable=False)

    status = Column(String, nullable=False, index=True)

    gateway_session_id = Column(String, nullable=True)
    redirect_url = Column(String, nullable=True)
    failure_reason = Column(String, nullable=True)
    refund_reason = Column(String, nullable=True)

    held_at = Column(DateTime(timezone=True), nullable=False)
    auto_refund_at = Column(DateTime(timezone=True), nullable=False, index=True)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    released_at = Column(DateTime(timezone=True), nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False)
