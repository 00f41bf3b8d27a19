import json
import uuid
from datetime import datetime, timezone

from .models import Booking, Payment


SOURCE = "escrow-service"
ENVELOPE_VERSION = 1


def build_event(event_type: str, data: dict, occurred_at: datetime | None = None) -> dict:
    """Envelope for every escrow event; aggregate_id is the booking_id or payment_id in data."""
    if "." not in event_type:
        raise ValueError(f"event_type must look like <aggregate>.<action>: {event_type!r}")
    aggregate = event_type.split(".", 1)[0]

    return {
        "event_id": str(uuid.uuid4()),
        "event_type": event_type,
        "version": ENVELOPE_VERSION,
        "source": SOURCE,
        "aggregate_id": data.get(f"{aggregate}_id"),
        "occurred_at": (occurred_at or datetime.now(timezone.utc)).isoformat(),
        "data": data,
    }


def to_json(event: dict) -> str:
    # Decimal and datetime values in data are written as strings
    return json.dumps(event, separators=(",", ":"), ensure_ascii=False, default=str)


def booking_data(booking: Booking) -> dict:
    return {
        "booking_id": booking.booking_id,
        "status": booking.status,
        "customer_id": booking.customer_id,
        "customer_email": booking.customer_email,
        "provider_id": booking.provider_id,
        "provider_email": booking.provider_email,
        "service_type": booking.service_type,
        "amount": booking.amount,
    }


def payment_data(payment: Payment) -> dict:
    return {
        "payment_id": payment.payment_id,
        "booking_id": payment.booking_id,
        "attempt": payment.attempt,
        "status": payment.status,
        "amount": payment.amount,
        "commission": payment.commission,
        "provider_amount": payment.provider_amount,
        "currency": payment.currency,
    }
