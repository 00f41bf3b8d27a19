import logging

from sqlalchemy.exc import SQLAlchemyError

from .bookings import BookingRecordManager
from .errors import BookingCreationError, EscrowError, PaymentInitializationError, ValidationError
from .models import Booking, PAYMENT_HELD, PAYMENT_CONFIRMED, BOOKING_CANCELLED
from .payments import EscrowPaymentManager
from .schemas import BookingWithPaymentResponse, CreateBookingRequest

logger = logging.getLogger(__name__)


class BookingOrchestrator:
    """
    Create-then-pay workflow.

    The stored booking is the checkpoint: once it exists it is never rolled
    back, and payment initialization can be retried against it any number of
    times without producing a second booking or a second live payment.
    """

    def __init__(self, bookings: BookingRecordManager, payments: EscrowPaymentManager):
        self.bookings = bookings
        self.payments = payments

    async def request_booking_with_payment(self, data: CreateBookingRequest) -> BookingWithPaymentResponse:
        try:
            booking, created = await self.bookings.create_or_reuse(data)
        except ValidationError:
            raise
        except SQLAlchemyError as e:
            logger.error("booking creation failed customer_id=%s: %s", data.customer_id, e)
            raise BookingCreationError(f"Booking could not be created: {e}") from e

        if not created:
            logger.info("duplicate submission coalesced into booking_id=%s", booking.booking_id)

        return await self._initialize(booking)

    async def retry_payment(self, booking_id: str) -> BookingWithPaymentResponse:
        booking = await self.bookings.get(booking_id)
        return await self._initialize(booking)

    async def _initialize(self, booking: Booking) -> BookingWithPaymentResponse:
        try:
            init = await self.payments.initialize_payment(
                booking.booking_id,
                booking.amount,
                booking.customer_email,
            )
        except (EscrowError, SQLAlchemyError) as e:
            logger.warning("payment initialization failed booking_id=%s: %s", booking.booking_id, e)
            raise PaymentInitializationError(str(e), booking_id=booking.booking_id) from e

        return BookingWithPaymentResponse(
            redirect_url=init.redirect_url,
            booking_id=booking.booking_id,
            payment_id=init.payment_id,
        )

    async def cancel_booking(self, booking_id: str, reason: str) -> Booking:
        """Cancels the booking, returning any escrowed funds to the customer first."""
        payment = await self.payments.get_active_payment(booking_id)
        if payment and payment.status in (PAYMENT_HELD, PAYMENT_CONFIRMED):
            await self.payments.refund_payment(booking_id, reason)
            return await self.bookings.get(booking_id)
        return await self.bookings.update_status(booking_id, BOOKING_CANCELLED)
