from typing import List

from fastapi import APIRouter, Depends, Request

from .bookings import BookingRecordManager
from .errors import InvalidStateError
from .models import BOOKING_CONFIRMED, BOOKING_COMPLETED, PAYMENT_TERMINAL
from .orchestrator import BookingOrchestrator
from .payments import EscrowPaymentManager
from .schemas import (
    BookingResponse,
    BookingWithPaymentResponse,
    CreateBookingRequest,
    GatewayCallback,
    PaymentResponse,
    RefundRequest,
)
from .security import get_current_user, require_booking_party, require_role, verify_gateway_signature

router = APIRouter()


def get_bookings(request: Request) -> BookingRecordManager:
    return request.app.state.bookings


def get_payments(request: Request) -> EscrowPaymentManager:
    return request.app.state.payments


def get_orchestrator(request: Request) -> BookingOrchestrator:
    return request.app.state.orchestrator


# ================= BOOKINGS =================

@router.post("/bookings-with-payment", response_model=BookingWithPaymentResponse, tags=["Bookings"])
async def create_booking_with_payment(
    data: CreateBookingRequest,
    user=Depends(get_current_user),
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
):
    require_role(user, ["customer", "admin"])
    require_booking_party(user, data, roles=("customer",))
    return await orchestrator.request_booking_with_payment(data)


@router.post("/bookings/{booking_id}/payment", response_model=BookingWithPaymentResponse, tags=["Bookings"])
async def retry_booking_payment(
    booking_id: str,
    user=Depends(get_current_user),
    bookings: BookingRecordManager = Depends(get_bookings),
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
):
    require_role(user, ["customer", "admin"])
    require_booking_party(user, await bookings.get(booking_id), roles=("customer",))
    return await orchestrator.retry_payment(booking_id)


@router.get("/bookings/{booking_id}", response_model=BookingResponse, tags=["Bookings"])
async def get_booking(
    booking_id: str,
    user=Depends(get_current_user),
    bookings: BookingRecordManager = Depends(get_bookings),
):
    require_role(user, ["customer", "provider", "admin"])
    booking = await bookings.get(booking_id)
    require_booking_party(user, booking)
    return booking


@router.post("/bookings/{booking_id}/accept", response_model=BookingResponse, tags=["Bookings"])
async def accept_booking(
    booking_id: str,
    user=Depends(get_current_user),
    bookings: BookingRecordManager = Depends(get_bookings),
):
    require_role(user, ["provider", "admin"])
    require_booking_party(user, await bookings.get(booking_id), roles=("provider",))
    return await bookings.update_status(booking_id, BOOKING_CONFIRMED)


@router.post("/bookings/{booking_id}/complete", response_model=BookingResponse, tags=["Bookings"])
async def complete_booking(
    booking_id: str,
    user=Depends(get_current_user),
    bookings: BookingRecordManager = Depends(get_bookings),
):
    require_role(user, ["customer", "provider", "admin"])
    require_booking_party(user, await bookings.get(booking_id))
    return await bookings.update_status(booking_id, BOOKING_COMPLETED)


@router.post("/bookings/{booking_id}/cancel", response_model=BookingResponse, tags=["Bookings"])
async def cancel_booking(
    booking_id: str,
    data: RefundRequest,
    user=Depends(get_current_user),
    bookings: BookingRecordManager = Depends(get_bookings),
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
):
    require_role(user, ["customer", "provider", "admin"])
    require_booking_party(user, await bookings.get(booking_id))
    return await orchestrator.cancel_booking(booking_id, data.reason)


@router.get("/bookings/{booking_id}/payments", response_model=List[PaymentResponse], tags=["Payments"])
async def list_booking_payments(
    booking_id: str,
    user=Depends(get_current_user),
    bookings: BookingRecordManager = Depends(get_bookings),
    payments: EscrowPaymentManager = Depends(get_payments),
):
    require_role(user, ["customer", "provider", "admin"])
    require_booking_party(user, await bookings.get(booking_id))
    return await payments.list_payments(booking_id)


# ================= PAYMENTS =================

async def payment_for_party(
    payment_id: str,
    user: dict,
    bookings: BookingRecordManager,
    payments: EscrowPaymentManager,
    roles: tuple[str, ...] = ("customer", "provider"),
):
    payment = await payments.get_payment(payment_id)
    require_booking_party(user, await bookings.get(payment.booking_id), roles=roles)
    return payment


@router.get("/payments/{payment_id}", response_model=PaymentResponse, tags=["Payments"])
async def get_payment(
    payment_id: str,
    user=Depends(get_current_user),
    bookings: BookingRecordManager = Depends(get_bookings),
    payments: EscrowPaymentManager = Depends(get_payments),
):
    require_role(user, ["customer", "provider", "admin"])
    return await payment_for_party(payment_id, user, bookings, payments)


@router.post(
    "/payments/{payment_id}/callback",
    response_model=PaymentResponse,
    tags=["Payments"],
    dependencies=[Depends(verify_gateway_signature)],
)
async def gateway_callback(
    payment_id: str,
    data: GatewayCallback,
    payments: EscrowPaymentManager = Depends(get_payments),
):
    return await payments.confirm_callback(payment_id, data.status)


@router.post("/payments/{payment_id}/verify", response_model=PaymentResponse, tags=["Payments"])
async def verify_payment(
    payment_id: str,
    user=Depends(get_current_user),
    bookings: BookingRecordManager = Depends(get_bookings),
    payments: EscrowPaymentManager = Depends(get_payments),
):
    require_role(user, ["customer", "admin"])
    await payment_for_party(payment_id, user, bookings, payments, roles=("customer",))
    return await payments.verify_payment(payment_id)


@router.post("/payments/{payment_id}/release", response_model=PaymentResponse, tags=["Payments"])
async def release_payment(
    payment_id: str,
    user=Depends(get_current_user),
    bookings: BookingRecordManager = Depends(get_bookings),
    payments: EscrowPaymentManager = Depends(get_payments),
):
    # customer confirms the provider showed up and did the work
    require_role(user, ["customer", "admin"])
    payment = await payment_for_party(payment_id, user, bookings, payments, roles=("customer",))
    if payment.status in PAYMENT_TERMINAL:
        raise InvalidStateError(f"Payment {payment_id} is already {payment.status}")
    return await payments.release_payment(payment.booking_id)


@router.post("/payments/{payment_id}/refund", response_model=PaymentResponse, tags=["Payments"])
async def refund_payment(
    payment_id: str,
    data: RefundRequest,
    user=Depends(get_current_user),
    bookings: BookingRecordManager = Depends(get_bookings),
    payments: EscrowPaymentManager = Depends(get_payments),
):
    require_role(user, ["customer", "provider", "admin"])
    payment = await payment_for_party(payment_id, user, bookings, payments)
    if payment.status in PAYMENT_TERMINAL:
        raise InvalidStateError(f"Payment {payment_id} is already {payment.status}")
    return await payments.refund_payment(payment.booking_id, data.reason)
