import asyncio
import logging

from sqlalchemy import select

from .models import Payment, PAYMENT_HELD
from .payments import EscrowPaymentManager

logger = logging.getLogger(__name__)


class AutoRefundScheduler:
    """
    Refunds held payments whose auto-refund deadline has passed.

    Several instances may run at once; the guarded held -> refunded update in
    EscrowPaymentManager lets exactly one of them refund a given payment.
    """

    def __init__(self, session_factory, payments: EscrowPaymentManager, tick_seconds: float, batch_size: int = 50):
        self.session_factory = session_factory
        self.payments = payments
        self.tick_seconds = tick_seconds
        self.batch_size = batch_size

    async def due_payment_ids(self) -> list[str]:
        now = self.payments.clock()
        async with self.session_factory() as db:
            res = await db.execute(
                select(Payment.payment_id)
                .where(Payment.status == PAYMENT_HELD, Payment.auto_refund_at <= now)
                .order_by(Payment.auto_refund_at)
                .limit(self.batch_size)
            )
            return list(res.scalars().all())

    async def run_once(self) -> list[str]:
        refunded = []
        for payment_id in await self.due_payment_ids():
            payment = await self.payments.refund_if_expired(payment_id)
            if payment is not None:
                refunded.append(payment_id)
        if refunded:
            logger.info("auto-refunded %d payment(s)", len(refunded))
        return refunded

    async def loop(self, stop_event: asyncio.Event):
        while not stop_event.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("auto-refund tick failed")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.tick_seconds)
            except asyncio.TimeoutError:
                continue
