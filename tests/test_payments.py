import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from escrow_service.config import COMMISSION_RATE
from escrow_service.errors import GatewayError, InvalidStateError, NotFoundError, ValidationError
from escrow_service.payments import split_amount

from .conftest import booking_request


def assert_split(payment):
    assert payment.commission + payment.provider_amount == payment.amount


async def held_payment(bookings, payments, **overrides):
    booking = await bookings.create(booking_request(**overrides))
    init = await payments.initialize_payment(booking.booking_id, booking.amount, booking.customer_email)
    return booking, await payments.get_payment(init.payment_id)


async def completed_booking(bookings, payments):
    booking, payment = await held_payment(bookings, payments)
    await payments.confirm_callback(payment.payment_id, "success")
    await bookings.update_status(booking.booking_id, "confirmed")
    await bookings.update_status(booking.booking_id, "completed")
    return booking, payment


@pytest.mark.parametrize("amount", [1, 3, 7, 999, 1000, 5000, 12345, 10_000_001])
def test_split_always_adds_up(amount):
    commission, provider_amount = split_amount(amount, COMMISSION_RATE)
    assert commission + provider_amount == amount
    assert commission == int((Decimal(amount) * COMMISSION_RATE + Decimal("0.5")) // 1)


def test_split_uses_configured_rate():
    assert split_amount(5000, COMMISSION_RATE) == (1000, 4000)
    assert split_amount(5000, Decimal("0.10")) == (500, 4500)


class TestInitialize:

    async def test_holds_payment(self, bookings, payments, gateway, publisher, clock):
        booking, payment = await held_payment(bookings, payments)

        assert payment.status == "held"
        assert payment.amount == booking.amount == 5000
        assert payment.commission == 1000
        assert payment.provider_amount == 4000
        assert payment.currency == "NGN"
        assert payment.redirect_url == f"https://checkout.paystack.com/{payment.payment_id}"
        assert payment.auto_refund_at - payment.held_at == timedelta(hours=72)
        assert gateway.sessions[0]["reference"] == payment.payment_id
        assert gateway.sessions[0]["email"] == "ada@example.com"
        assert publisher.of_type("payment.held")[0]["payment_id"] == payment.payment_id

    async def test_rejects_non_positive_amount(self, bookings, payments):
        booking = await bookings.create(booking_request())
        with pytest.raises(ValidationError):
            await payments.initialize_payment(booking.booking_id, 0, booking.customer_email)

    async def test_rejects_unknown_booking(self, payments):
        with pytest.raises(NotFoundError):
            await payments.initialize_payment("nope", 5000, "ada@example.com")

    async def test_rejects_amount_other_than_booking_amount(self, bookings, payments):
        booking = await bookings.create(booking_request())
        with pytest.raises(ValidationError):
            await payments.initialize_payment(booking.booking_id, 4999, booking.customer_email)

    async def test_rejects_booking_not_awaiting_payment(self, bookings, payments):
        booking = await bookings.create(booking_request())
        await bookings.update_status(booking.booking_id, "cancelled")
        with pytest.raises(ValidationError):
            await payments.initialize_payment(booking.booking_id, booking.amount, booking.customer_email)

    async def test_reinitialize_returns_existing_payment(self, bookings, payments, gateway):
        booking, payment = await held_payment(bookings, payments)

        again = await payments.initialize_payment(booking.booking_id, booking.amount, booking.customer_email)
        assert again.payment_id == payment.payment_id
        assert again.redirect_url == payment.redirect_url
        assert len(gateway.sessions) == 1

    async def test_gateway_error_fails_attempt_and_keeps_booking(self, bookings, payments, gateway):
        booking = await bookings.create(booking_request())
        gateway.fail_next = 1

        with pytest.raises(GatewayError) as exc:
            await payments.initialize_payment(booking.booking_id, booking.amount, booking.customer_email)
        assert exc.value.booking_id == booking.booking_id

        attempts = await payments.list_payments(booking.booking_id)
        assert [p.status for p in attempts] == ["failed"]
        assert attempts[0].failure_reason
        assert (await bookings.get(booking.booking_id)).status == "awaiting_payment"

        retry = await payments.initialize_payment(booking.booking_id, booking.amount, booking.customer_email)
        attempts = await payments.list_payments(booking.booking_id)
        assert [(p.attempt, p.status) for p in attempts] == [(1, "failed"), (2, "held")]
        assert retry.payment_id == attempts[1].payment_id

    @pytest.mark.parametrize(
        "url",
        [
            "https://checkout.paystack.com.evil.io/abc",
            "http://checkout.paystack.com/abc",
            "https://evil.example.com/pay",
            "javascript:alert(1)",
        ],
    )
    async def test_untrusted_redirect_is_never_returned(self, bookings, payments, gateway, url):
        booking = await bookings.create(booking_request())
        gateway.redirect_override = url

        with pytest.raises(GatewayError):
            await payments.initialize_payment(booking.booking_id, booking.amount, booking.customer_email)

        attempts = await payments.list_payments(booking.booking_id)
        assert attempts[0].status == "failed"
        assert attempts[0].redirect_url is None

    async def test_concurrent_initialization_opens_one_live_payment(self, bookings, payments):
        booking = await bookings.create(booking_request())

        results = await asyncio.gather(
            payments.initialize_payment(booking.booking_id, booking.amount, booking.customer_email),
            payments.initialize_payment(booking.booking_id, booking.amount, booking.customer_email),
            return_exceptions=True,
        )

        successes = [r for r in results if not isinstance(r, Exception)]
        assert successes
        assert len({r.payment_id for r in successes}) == 1
        for r in results:
            if isinstance(r, Exception):
                assert isinstance(r, GatewayError)

        live = [p for p in await payments.list_payments(booking.booking_id) if p.status != "failed"]
        assert len(live) == 1

    async def test_cancelled_gateway_call_frees_booking_for_retry(self, orchestrator, payments, gateway):
        gateway.raise_next = asyncio.CancelledError()

        with pytest.raises(asyncio.CancelledError):
            await orchestrator.request_booking_with_payment(booking_request())

        first = await payments.get_payment(gateway.sessions[0]["reference"])
        assert first.status == "failed"
        assert first.redirect_url is None

        result = await orchestrator.request_booking_with_payment(booking_request())
        attempts = await payments.list_payments(result.booking_id)
        assert [(p.attempt, p.status) for p in attempts] == [(1, "failed"), (2, "held")]
        assert result.redirect_url == attempts[1].redirect_url

    async def test_attempt_left_without_redirect_is_replaced_once_stale(self, bookings, payments, settings, clock):
        booking = await bookings.create(booking_request())
        # a process that died between opening the attempt and storing its redirect
        orphan = await payments._open_attempt(booking.booking_id, booking.amount)

        with pytest.raises(GatewayError, match="in progress"):
            await payments.initialize_payment(booking.booking_id, booking.amount, booking.customer_email)

        clock.advance(seconds=settings.gateway_timeout + 1)
        init = await payments.initialize_payment(booking.booking_id, booking.amount, booking.customer_email)

        assert init.payment_id != orphan.payment_id
        orphan = await payments.get_payment(orphan.payment_id)
        assert orphan.status == "failed"
        assert orphan.failure_reason == "initialization abandoned"
        assert (await payments.get_payment(init.payment_id)).status == "held"

    async def test_stale_attempt_with_redirect_is_kept(self, bookings, payments, gateway, clock):
        booking, payment = await held_payment(bookings, payments)

        clock.advance(hours=1)
        again = await payments.initialize_payment(booking.booking_id, booking.amount, booking.customer_email)

        assert again.payment_id == payment.payment_id
        assert len(gateway.sessions) == 1


class TestCallback:

    async def test_success_confirms_and_moves_booking_to_pending(self, bookings, payments, publisher):
        booking, payment = await held_payment(bookings, payments)

        confirmed = await payments.confirm_callback(payment.payment_id, "success")
        assert confirmed.status == "confirmed"
        assert confirmed.confirmed_at is not None
        assert_split(confirmed)
        assert (await bookings.get(booking.booking_id)).status == "pending"
        assert len(publisher.of_type("payment.confirmed")) == 1

    async def test_success_twice_is_a_noop(self, bookings, payments, publisher):
        _, payment = await held_payment(bookings, payments)

        first = await payments.confirm_callback(payment.payment_id, "success")
        second = await payments.confirm_callback(payment.payment_id, "success")
        assert first.status == second.status == "confirmed"
        assert len(publisher.of_type("payment.confirmed")) == 1

    async def test_failure_twice_is_a_noop(self, bookings, payments):
        booking, payment = await held_payment(bookings, payments)

        await payments.confirm_callback(payment.payment_id, "failed")
        again = await payments.confirm_callback(payment.payment_id, "failed")
        assert again.status == "failed"
        assert (await bookings.get(booking.booking_id)).status == "awaiting_payment"

    async def test_abandoned_counts_as_failure(self, bookings, payments):
        _, payment = await held_payment(bookings, payments)
        assert (await payments.confirm_callback(payment.payment_id, "abandoned")).status == "failed"

    async def test_pending_gateway_status_changes_nothing(self, bookings, payments):
        _, payment = await held_payment(bookings, payments)
        assert (await payments.confirm_callback(payment.payment_id, "ongoing")).status == "held"

    async def test_unknown_gateway_status(self, bookings, payments):
        _, payment = await held_payment(bookings, payments)
        with pytest.raises(ValidationError):
            await payments.confirm_callback(payment.payment_id, "maybe")

    async def test_success_after_failure_is_invalid(self, bookings, payments):
        _, payment = await held_payment(bookings, payments)
        await payments.confirm_callback(payment.payment_id, "failed")
        with pytest.raises(InvalidStateError):
            await payments.confirm_callback(payment.payment_id, "success")

    async def test_verify_applies_gateway_status(self, bookings, payments, gateway):
        _, payment = await held_payment(bookings, payments)
        gateway.verify_status = "success"
        assert (await payments.verify_payment(payment.payment_id)).status == "confirmed"


class TestRelease:

    async def test_release_after_completion(self, bookings, payments, publisher):
        booking, payment = await completed_booking(bookings, payments)

        released = await payments.release_payment(booking.booking_id)
        assert released.status == "released"
        assert released.released_at is not None
        assert_split(released)

        event = publisher.of_type("payment.released")[0]
        assert event["transfer"]["amount"] == 4000
        assert event["transfer"]["provider_email"] == "tunde@example.com"

    async def test_confirmed_but_booking_not_completed(self, bookings, payments):
        booking, payment = await held_payment(bookings, payments)
        await payments.confirm_callback(payment.payment_id, "success")
        await bookings.update_status(booking.booking_id, "confirmed")

        with pytest.raises(InvalidStateError):
            await payments.release_payment(booking.booking_id)
        assert (await payments.get_payment(payment.payment_id)).status == "confirmed"

    async def test_booking_completed_but_payment_not_confirmed(self, bookings, payments):
        booking, payment = await completed_booking(bookings, payments)
        # dispute after completion returns the money
        await payments.refund_payment(booking.booking_id, "dispute")
        assert (await bookings.get(booking.booking_id)).status == "completed"

        with pytest.raises(InvalidStateError):
            await payments.release_payment(booking.booking_id)

    async def test_held_payment_cannot_be_released(self, bookings, payments):
        booking, _ = await held_payment(bookings, payments)
        with pytest.raises(InvalidStateError):
            await payments.release_payment(booking.booking_id)

    async def test_success_callback_after_release_is_stale_noop(self, bookings, payments):
        booking, payment = await completed_booking(bookings, payments)
        await payments.release_payment(booking.booking_id)

        replay = await payments.confirm_callback(payment.payment_id, "success")
        assert replay.status == "released"


class TestRefund:

    async def test_refund_held_cancels_booking(self, bookings, payments, publisher):
        booking, payment = await held_payment(bookings, payments)

        refunded = await payments.refund_payment(booking.booking_id, "customer_cancelled")
        assert refunded.status == "refunded"
        assert refunded.refund_reason == "customer_cancelled"
        assert_split(refunded)
        assert (await bookings.get(booking.booking_id)).status == "cancelled"
        assert publisher.of_type("payment.refunded")[0]["amount"] == 5000

    async def test_refund_confirmed(self, bookings, payments):
        booking, payment = await held_payment(bookings, payments)
        await payments.confirm_callback(payment.payment_id, "success")

        refunded = await payments.refund_payment(booking.booking_id, "provider_no_show")
        assert refunded.status == "refunded"
        assert (await bookings.get(booking.booking_id)).status == "cancelled"

    async def test_refund_twice_is_invalid(self, bookings, payments):
        booking, _ = await held_payment(bookings, payments)
        await payments.refund_payment(booking.booking_id, "first")
        with pytest.raises(InvalidStateError):
            await payments.refund_payment(booking.booking_id, "second")

    async def test_failed_payment_cannot_be_refunded(self, bookings, payments):
        booking, payment = await held_payment(bookings, payments)
        await payments.confirm_callback(payment.payment_id, "failed")
        with pytest.raises(InvalidStateError):
            await payments.refund_payment(booking.booking_id, "late")


class TestTerminalStates:

    async def test_released_is_final(self, bookings, payments):
        booking, payment = await completed_booking(bookings, payments)
        await payments.release_payment(booking.booking_id)

        with pytest.raises(InvalidStateError):
            await payments.refund_payment(booking.booking_id, "too late")
        with pytest.raises(InvalidStateError):
            await payments.release_payment(booking.booking_id)
        with pytest.raises(InvalidStateError):
            await payments.confirm_callback(payment.payment_id, "failed")
        assert (await payments.get_payment(payment.payment_id)).status == "released"

    async def test_refunded_is_final(self, bookings, payments):
        booking, payment = await held_payment(bookings, payments)
        await payments.refund_payment(booking.booking_id, "cancelled")

        with pytest.raises(InvalidStateError):
            await payments.confirm_callback(payment.payment_id, "success")
        assert (await payments.refund_if_expired(payment.payment_id)) is None
        assert (await payments.get_payment(payment.payment_id)).status == "refunded"

    async def test_failed_is_final(self, bookings, payments):
        booking, payment = await held_payment(bookings, payments)
        await payments.confirm_callback(payment.payment_id, "failed")

        with pytest.raises(InvalidStateError):
            await payments.release_payment(booking.booking_id)
        assert (await payments.get_payment(payment.payment_id)).status == "failed"
