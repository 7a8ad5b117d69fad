from __future__ import annotations

from datetime import timedelta

import pytest

from rentals.errors import (
    ConflictError,
    PaymentCaptureError,
    PaymentRefundError,
    ValidationError,
)
from rentals.services.payment_authorization import PaymentAuthorizationService
from rentals.services.payment_gateway import GatewayError
from rentals.utils import ensure_utc, now_utc
from tests.fakes import make_booking_doc


async def _insert(test_db, booking_id: str, **overrides):
    doc = make_booking_doc(booking_id, **overrides)
    await test_db.bookings.insert_one(doc)
    return doc


@pytest.mark.anyio
async def test_authorize_records_hold_with_extended_window(test_db, fake_gateway, payments):
    await _insert(test_db, "bkg_auth", payment_status="PENDING", payment_intent_ref=None, authorized_minor=None)

    outcome = await payments.authorize("bkg_auth", 45000, 20000)

    assert outcome.authorized is True
    assert outcome.amount_minor == 65000
    booking = await test_db.bookings.find_one({"_id": "bkg_auth"})
    assert booking["payment_status"] == "AUTHORIZED"
    assert booking["extended_hold"] is True
    hold = ensure_utc(booking["hold_expires_at"]) - now_utc()
    assert timedelta(days=29) < hold <= timedelta(days=30)


@pytest.mark.anyio
async def test_authorize_without_extended_hold_uses_default_window(test_db, fake_gateway, payments):
    fake_gateway.extended_hold = False
    await _insert(test_db, "bkg_auth", payment_status="PENDING", payment_intent_ref=None)

    await payments.authorize("bkg_auth", 45000, 20000)

    booking = await test_db.bookings.find_one({"_id": "bkg_auth"})
    hold = ensure_utc(booking["hold_expires_at"]) - now_utc()
    assert timedelta(days=6) < hold <= timedelta(days=7)


@pytest.mark.anyio
async def test_authorize_rejects_second_live_hold(test_db, fake_gateway, payments):
    await _insert(test_db, "bkg_auth")

    with pytest.raises(ConflictError):
        await payments.authorize("bkg_auth", 45000, 20000)
    assert fake_gateway.calls_for("authorize") == []


@pytest.mark.anyio
async def test_authorize_validates_amounts(test_db, payments):
    await _insert(test_db, "bkg_auth", payment_status="PENDING", payment_intent_ref=None)

    with pytest.raises(ValidationError):
        await payments.authorize("bkg_auth", 0, 20000)
    with pytest.raises(ValidationError):
        await payments.authorize("bkg_auth", 45000, -1)


@pytest.mark.anyio
async def test_capture_marks_booking_paid(test_db, fake_gateway, payments):
    await _insert(test_db, "bkg_cap")
    fake_gateway.intents["pi_bkg_cap"] = {"amount": 65000, "status": "requires_capture"}

    outcome = await payments.capture("bkg_cap")

    assert outcome.charge_ref == "ch_pi_bkg_cap"
    assert outcome.captured_minor == 65000
    (call,) = fake_gateway.calls_for("capture")
    assert call["idempotency_key"] == "capture-bkg_cap"

    booking = await test_db.bookings.find_one({"_id": "bkg_cap"})
    assert booking["payment_status"] == "PAID"
    assert booking["captured_minor"] == 65000
    assert booking["charge_ref"] == "ch_pi_bkg_cap"


@pytest.mark.anyio
async def test_declined_capture_marks_payment_failed(test_db, fake_gateway, payments):
    await _insert(test_db, "bkg_cap")
    fake_gateway.capture_error = GatewayError("expired_for_capture", "Authorization expired")

    with pytest.raises(PaymentCaptureError) as exc:
        await payments.capture("bkg_cap", 65000)
    assert exc.value.retryable is False

    booking = await test_db.bookings.find_one({"_id": "bkg_cap"})
    assert booking["payment_status"] == "FAILED"
    assert booking["payment_failure_reason"] == "Authorization expired"


@pytest.mark.anyio
async def test_capture_timeout_keeps_authorization(test_db, fake_gateway):
    fake_gateway.delay = 0.5
    payments = PaymentAuthorizationService(test_db, fake_gateway, timeout_seconds=0.05)
    await _insert(test_db, "bkg_cap")

    with pytest.raises(PaymentCaptureError) as exc:
        await payments.capture("bkg_cap", 65000)
    assert exc.value.retryable is True

    booking = await test_db.bookings.find_one({"_id": "bkg_cap"})
    assert booking["payment_status"] == "AUTHORIZED"
    assert "timed out" in booking["payment_failure_reason"]


@pytest.mark.anyio
async def test_cancel_authorization_is_idempotent(test_db, fake_gateway, payments):
    await _insert(test_db, "bkg_cancel")

    assert await payments.cancel_authorization("bkg_cancel", "guest changed plans") is True
    assert await payments.cancel_authorization("bkg_cancel", "guest changed plans") is True

    assert len(fake_gateway.calls_for("cancel")) == 1
    booking = await test_db.bookings.find_one({"_id": "bkg_cancel"})
    assert booking["payment_status"] == "CANCELLED"
    assert booking["authorization_cancel_reason"] == "guest changed plans"


@pytest.mark.anyio
async def test_cancel_after_capture_is_a_conflict(test_db, fake_gateway, payments):
    await _insert(test_db, "bkg_paid", payment_status="PAID", captured_minor=65000)

    with pytest.raises(ConflictError):
        await payments.cancel_authorization("bkg_paid", "too late")
    assert fake_gateway.calls_for("cancel") == []


@pytest.mark.anyio
async def test_partial_refund_uses_stable_idempotency_key(test_db, fake_gateway, payments):
    await _insert(test_db, "bkg_ref", payment_status="PAID", captured_minor=65000)

    first = await payments.refund_partial("bkg_ref", 20000)
    second = await payments.refund_partial("bkg_ref", 20000)

    assert first.refund_ref == second.refund_ref
    assert first.amount_minor == 20000
    # the second call short-circuits on the stored refund ref
    (call,) = fake_gateway.calls_for("refund")
    assert call["idempotency_key"] == "deposit-refund-bkg_ref"


@pytest.mark.anyio
async def test_refund_guards(test_db, fake_gateway, payments):
    await _insert(test_db, "bkg_unpaid")
    await _insert(test_db, "bkg_paid", payment_status="PAID", captured_minor=10000)

    with pytest.raises(ConflictError):
        await payments.refund_partial("bkg_unpaid", 20000)
    with pytest.raises(ValidationError):
        await payments.refund_partial("bkg_paid", 20000)
    with pytest.raises(ValidationError):
        await payments.refund_partial("bkg_paid", 0)

    fake_gateway.refund_error = GatewayError("processing_error", "try again", retryable=True)
    with pytest.raises(PaymentRefundError) as exc:
        await payments.refund_partial("bkg_paid", 5000)
    assert exc.value.retryable is True
