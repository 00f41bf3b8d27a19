"""
Escrow payment lifecycle for a booking.

    (none)    -> held         initialize_payment
    held      -> confirmed    gateway success
    held      -> failed       gateway failure or init error; a retry opens a new attempt
    held      -> refunded     refund_payment, or auto-refund once the deadline passes
    confirmed -> released     release_payment, booking completed
    confirmed -> refunded     refund_payment

Each transition is applied as an UPDATE guarded by the expected current
status. A caller that loses a race sees either a no-op (the same outcome was
already applied) or InvalidStateError.
"""
import logging
import uuid
from datetime import timedelta
from decimal import Decimal, ROUND_HALF_UP

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from .bookings import BookingRecordManager
from .config import Settings
from .db import utcnow
from .errors import GatewayError, InvalidStateError, NotFoundError, ValidationError
from .events import payment_data
from .gateway import FAILED_STATUSES, GATEWAY_SUCCESS, is_trusted_redirect
from .models import (
    Payment,
    BOOKING_AWAITING_PAYMENT,
    BOOKING_PENDING,
    BOOKING_CONFIRMED,
    BOOKING_COMPLETED,
    BOOKING_CANCELLED,
    PAYMENT_HELD,
    PAYMENT_CONFIRMED,
    PAYMENT_RELEASED,
    PAYMENT_REFUNDED,
    PAYMENT_FAILED,
)
from .schemas import PaymentInitResponse

logger = logging.getLogger(__name__)

# gateway statuses that leave an attempt where it is
PENDING_STATUSES = {"pending", "ongoing", "processing", "queued"}

AUTO_REFUND_REASON = "auto_refund_deadline_elapsed"


def split_amount(amount: int, rate: Decimal) -> tuple[int, int]:
    """(commission, provider_amount); the two always add back up to amount."""
    commission = int((Decimal(amount) * rate).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return commission, amount - commission


class EscrowPaymentManager:
    def __init__(
        self,
        session_factory,
        bookings: BookingRecordManager,
        gateway,
        publisher,
        settings: Settings,
        clock=utcnow,
    ):
        self.session_factory = session_factory
        self.bookings = bookings
        self.gateway = gateway
        self.publisher = publisher
        self.settings = settings
        self.clock = clock

    # ---- reads ----

    async def get_payment(self, payment_id: str) -> Payment:
        async with self.session_factory() as db:
            res = await db.execute(select(Payment).where(Payment.payment_id == payment_id))
            payment = res.scalar_one_or_none()
        if not payment:
            raise NotFoundError(f"Payment not found: {payment_id}")
        return payment

    async def get_active_payment(self, booking_id: str) -> Payment | None:
        """Latest attempt that has not failed. There is at most one."""
        async with self.session_factory() as db:
            res = await db.execute(
                select(Payment)
                .where(Payment.booking_id == booking_id, Payment.status != PAYMENT_FAILED)
                .order_by(Payment.attempt.desc())
                .limit(1)
            )
            return res.scalar_one_or_none()

    async def list_payments(self, booking_id: str) -> list[Payment]:
        async with self.session_factory() as db:
            res = await db.execute(
                select(Payment).where(Payment.booking_id == booking_id).order_by(Payment.attempt)
            )
            return list(res.scalars().all())

    # ---- initialization ----

    async def initialize_payment(
        self,
        booking_id: str,
        amount: int,
        customer_email: str,
    ) -> PaymentInitResponse:
        if amount is None or amount <= 0:
            raise ValidationError("amount must be positive")

        booking = await self.bookings.get(booking_id)
        if booking.status != BOOKING_AWAITING_PAYMENT:
            raise ValidationError(
                f"Booking {booking_id} is {booking.status}, expected {BOOKING_AWAITING_PAYMENT}"
            )
        if amount != booking.amount:
            raise ValidationError(
                f"amount {amount} does not match booking amount {booking.amount}"
            )

        existing = await self.get_active_payment(booking_id)
        if existing and await self._fail_if_abandoned(existing):
            existing = None
        if existing:
            return self._existing_redirect(existing)

        payment = await self._open_attempt(booking_id, amount)
        if payment is None:
            # another request opened the attempt first
            existing = await self.get_active_payment(booking_id)
            if existing:
                return self._existing_redirect(existing)
            raise GatewayError("Payment attempt could not be opened", booking_id=booking_id)

        try:
            session = await self.gateway.create_session(
                amount=payment.amount,
                currency=payment.currency,
                customer_email=customer_email,
                reference=payment.payment_id,
            )
            if not is_trusted_redirect(session.redirect_url, self.settings.gateway_redirect_pattern):
                raise GatewayError(f"Untrusted payment redirect: {session.redirect_url!r}")
        except Exception as e:
            await self._transition(
                payment.payment_id,
                (PAYMENT_HELD,),
                PAYMENT_FAILED,
                failure_reason=str(e)[:500],
            )
            logger.warning("payment init failed booking_id=%s payment_id=%s: %s",
                           booking_id, payment.payment_id, e)
            await self.publisher.publish_event(
                "payment.failed", {**payment_data(payment), "status": PAYMENT_FAILED, "reason": str(e)}
            )
            raise GatewayError(str(e), booking_id=booking_id) from e
        except BaseException:
            # cancelled mid-call: free the booking for a new attempt
            await self._transition(
                payment.payment_id,
                (PAYMENT_HELD,),
                PAYMENT_FAILED,
                conditions=(Payment.redirect_url.is_(None),),
                failure_reason="initialization interrupted",
            )
            logger.warning("payment init interrupted booking_id=%s payment_id=%s",
                           booking_id, payment.payment_id)
            raise

        stored = await self._transition(
            payment.payment_id,
            (PAYMENT_HELD,),
            PAYMENT_HELD,
            gateway_session_id=session.session_id,
            redirect_url=session.redirect_url,
        )
        if not stored:
            raise GatewayError(
                f"Payment {payment.payment_id} changed during initialization", booking_id=booking_id
            )

        payment = await self.get_payment(payment.payment_id)
        logger.info("payment held booking_id=%s payment_id=%s amount=%s",
                    booking_id, payment.payment_id, payment.amount)
        await self.publisher.publish_event("payment.held", payment_data(payment))
        return PaymentInitResponse(payment_id=payment.payment_id, redirect_url=payment.redirect_url)

    def _existing_redirect(self, payment: Payment) -> PaymentInitResponse:
        if payment.status not in (PAYMENT_HELD, PAYMENT_CONFIRMED):
            raise InvalidStateError(f"Payment {payment.payment_id} is already {payment.status}")
        if not payment.redirect_url:
            raise GatewayError(
                "Payment initialization already in progress", booking_id=payment.booking_id
            )
        return PaymentInitResponse(payment_id=payment.payment_id, redirect_url=payment.redirect_url)

    async def _fail_if_abandoned(self, payment: Payment) -> bool:
        """
        A held attempt that never got a redirect and has not been touched for
        longer than a gateway call can take was left behind by a crash.
        """
        if payment.status != PAYMENT_HELD or payment.redirect_url:
            return False

        cutoff = self.clock() - timedelta(seconds=self.settings.gateway_timeout)
        failed = await self._transition(
            payment.payment_id,
            (PAYMENT_HELD,),
            PAYMENT_FAILED,
            conditions=(Payment.redirect_url.is_(None), Payment.updated_at <= cutoff),
            failure_reason="initialization abandoned",
        )
        if failed:
            logger.warning("abandoned payment attempt failed payment_id=%s", payment.payment_id)
        return failed

    async def _open_attempt(self, booking_id: str, amount: int) -> Payment | None:
        commission, provider_amount = split_amount(amount, self.settings.commission_rate)
        now = self.clock()

        async with self.session_factory() as db:
            res = await db.execute(
                select(func.max(Payment.attempt)).where(Payment.booking_id == booking_id)
            )
            attempt = (res.scalar() or 0) + 1

            payment = Payment(
                payment_id=str(uuid.uuid4()),
                booking_id=booking_id,
                attempt=attempt,
                amount=amount,
                commission=commission,
                provider_amount=provider_amount,
                currency=self.settings.currency,
                status=PAYMENT_HELD,
                held_at=now,
                auto_refund_at=now + self.settings.auto_refund_window,
                updated_at=now,
            )
            db.add(payment)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                return None
        return payment

    # ---- gateway outcome ----

    async def confirm_callback(self, payment_id: str, gateway_status: str, paid_at=None) -> Payment:
        status = (gateway_status or "").strip().lower()
        if status == GATEWAY_SUCCESS:
            target = PAYMENT_CONFIRMED
        elif status in FAILED_STATUSES:
            target = PAYMENT_FAILED
        elif status in PENDING_STATUSES:
            return await self.get_payment(payment_id)
        else:
            raise ValidationError(f"Unknown gateway status: {gateway_status!r}")

        payment = await self.get_payment(payment_id)
        if self._already_applied(payment.status, target):
            return payment
        if payment.status != PAYMENT_HELD:
            raise InvalidStateError(
                f"Payment {payment_id} is {payment.status}; cannot apply gateway {status}"
            )

        now = self.clock()
        if target == PAYMENT_CONFIRMED:
            moved = await self._transition(
                payment_id, (PAYMENT_HELD,), PAYMENT_CONFIRMED, confirmed_at=now, paid_at=paid_at or now
            )
        else:
            moved = await self._transition(
                payment_id, (PAYMENT_HELD,), PAYMENT_FAILED, failure_reason=f"gateway:{status}"
            )

        payment = await self.get_payment(payment_id)
        if not moved:
            if self._already_applied(payment.status, target):
                return payment
            raise InvalidStateError(
                f"Payment {payment_id} is {payment.status}; cannot apply gateway {status}"
            )

        logger.info("payment %s: held -> %s", payment_id, target)
        if target == PAYMENT_CONFIRMED:
            booking = await self.bookings.get(payment.booking_id)
            if booking.status == BOOKING_AWAITING_PAYMENT:
                await self.bookings.update_status(booking.booking_id, BOOKING_PENDING)
            await self.publisher.publish_event("payment.confirmed", payment_data(payment))
        else:
            await self.publisher.publish_event("payment.failed", payment_data(payment))
        return payment

    @staticmethod
    def _already_applied(current: str, target: str) -> bool:
        if current == target:
            return True
        # a replayed success after release is stale, not an error
        return target == PAYMENT_CONFIRMED and current == PAYMENT_RELEASED

    async def verify_payment(self, payment_id: str) -> Payment:
        payment = await self.get_payment(payment_id)
        try:
            result = await self.gateway.verify(payment.payment_id)
        except GatewayError as e:
            e.booking_id = payment.booking_id
            raise
        return await self.confirm_callback(payment_id, result.status, paid_at=result.paid_at)

    # ---- release / refund ----

    async def release_payment(self, booking_id: str) -> Payment:
        booking = await self.bookings.get(booking_id)
        payment = await self.get_active_payment(booking_id)
        if not payment:
            raise InvalidStateError(f"Booking {booking_id} has no payment to release")
        if payment.status != PAYMENT_CONFIRMED:
            raise InvalidStateError(f"Payment {payment.payment_id} is {payment.status}, not confirmed")
        if booking.status != BOOKING_COMPLETED:
            raise InvalidStateError(f"Booking {booking_id} is {booking.status}, not completed")

        moved = await self._transition(
            payment.payment_id, (PAYMENT_CONFIRMED,), PAYMENT_RELEASED, released_at=self.clock()
        )
        if not moved:
            raise InvalidStateError(f"Payment {payment.payment_id} changed concurrently; not released")

        payment = await self.get_payment(payment.payment_id)
        logger.info("payment released payment_id=%s provider_amount=%s",
                    payment.payment_id, payment.provider_amount)
        await self.publisher.publish_event(
            "payment.released",
            {
                **payment_data(payment),
                "transfer": {
                    "provider_id": booking.provider_id,
                    "provider_email": booking.provider_email,
                    "amount": payment.provider_amount,
                    "currency": payment.currency,
                },
            },
        )
        return payment

    async def refund_payment(self, booking_id: str, reason: str) -> Payment:
        payment = await self.get_active_payment(booking_id)
        if not payment:
            await self.bookings.get(booking_id)
            raise InvalidStateError(f"Booking {booking_id} has no refundable payment")
        if payment.status not in (PAYMENT_HELD, PAYMENT_CONFIRMED):
            raise InvalidStateError(f"Payment {payment.payment_id} is {payment.status}; cannot refund")

        refunded = await self._refund(payment, (PAYMENT_HELD, PAYMENT_CONFIRMED), reason)
        if refunded is None:
            raise InvalidStateError(f"Payment {payment.payment_id} changed concurrently; not refunded")
        return refunded

    async def refund_if_expired(self, payment_id: str) -> Payment | None:
        """Auto-refund one held payment past its deadline. None if another runner won."""
        payment = await self.get_payment(payment_id)
        return await self._refund(payment, (PAYMENT_HELD,), AUTO_REFUND_REASON, expired_by=self.clock())

    async def _refund(self, payment: Payment, from_statuses, reason: str, expired_by=None) -> Payment | None:
        moved = await self._transition(
            payment.payment_id,
            from_statuses,
            PAYMENT_REFUNDED,
            expired_by=expired_by,
            refund_reason=reason,
            refunded_at=self.clock(),
        )
        if not moved:
            return None

        payment = await self.get_payment(payment.payment_id)
        logger.info("payment refunded payment_id=%s reason=%s", payment.payment_id, reason)
        await self.publisher.publish_event(
            "payment.refunded", {**payment_data(payment), "reason": reason}
        )

        booking = await self.bookings.get(payment.booking_id)
        if booking.status in (BOOKING_AWAITING_PAYMENT, BOOKING_PENDING, BOOKING_CONFIRMED):
            try:
                await self.bookings.update_status(booking.booking_id, BOOKING_CANCELLED)
            except InvalidStateError as e:
                logger.warning("refunded payment %s but booking not cancelled: %s",
                               payment.payment_id, e)
        return payment

    async def _transition(
        self, payment_id: str, from_statuses, to_status: str, expired_by=None, conditions=(), **values
    ) -> bool:
        stmt = (
            update(Payment)
            .where(Payment.payment_id == payment_id, Payment.status.in_(tuple(from_statuses)), *conditions)
            .values(status=to_status, updated_at=self.clock(), **values)
            .execution_options(synchronize_session=False)
        )
        if expired_by is not None:
            stmt = stmt.where(Payment.auto_refund_at <= expired_by)

        async with self.session_factory() as db:
            res = await db.execute(stmt)
            await db.commit()
        return res.rowcount == 1
