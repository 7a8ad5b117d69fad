from __future__ import annotations

"""Booking-aware wrapper around the payment gateway.

Each operation reads the booking, calls the gateway under a hard deadline and
records the outcome on the booking. It does not decide *when* an operation
may run: fleet approval before capture is enforced by the callers in
fleet_review and booking_payments.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Dict, Optional, TypeVar

from rentals.config import (
    DEFAULT_HOLD_DAYS,
    EXTENDED_HOLD_DAYS,
    PAYMENT_CURRENCY,
    PAYMENT_GATEWAY_TIMEOUT_SECONDS,
)
from rentals.domain.booking_states import (
    LIVE_PAYMENT_STATUSES,
    BookingStatus,
    PaymentStatus,
)
from rentals.errors import (
    AppError,
    ConflictError,
    NotFoundError,
    PaymentAuthorizationError,
    PaymentCaptureError,
    PaymentRefundError,
    ValidationError,
)
from rentals.repositories.booking_repository import BookingRepository
from rentals.services.payment_gateway import (
    INTENT_CANCELED,
    AuthorizationResult,
    GatewayError,
    PaymentGateway,
)
from rentals.utils import now_utc

logger = logging.getLogger(__name__)

T = TypeVar("T")


def authorize_idempotency_key(booking_id: str) -> str:
    return f"authorize-{booking_id}"


def capture_idempotency_key(booking_id: str) -> str:
    return f"capture-{booking_id}"


def deposit_refund_idempotency_key(booking_id: str) -> str:
    return f"deposit-refund-{booking_id}"


@dataclass
class AuthorizationOutcome:
    auth_ref: str
    status: str
    authorized: bool
    amount_minor: int
    client_secret: Optional[str] = None


@dataclass
class CaptureOutcome:
    charge_ref: str
    captured_minor: int


@dataclass
class RefundOutcome:
    refund_ref: str
    amount_minor: int


class PaymentAuthorizationService:
    def __init__(
        self,
        db,
        gateway: PaymentGateway,
        *,
        timeout_seconds: float = PAYMENT_GATEWAY_TIMEOUT_SECONDS,
        currency: str = PAYMENT_CURRENCY,
    ) -> None:
        self.db = db
        self.gateway = gateway
        self.timeout_seconds = timeout_seconds
        self.currency = currency
        self.bookings = BookingRepository(db)

    async def _call(self, awaitable: Awaitable[T], error_cls: type[AppError], operation: str) -> T:
        """Await a gateway call with a hard deadline, mapping failures to `error_cls`."""

        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            raise error_cls(  # type: ignore[call-arg]
                f"Payment gateway timed out during {operation}",
                {"operation": operation, "timeout_seconds": self.timeout_seconds},
                retryable=True,
            )
        except GatewayError as exc:
            raise error_cls(  # type: ignore[call-arg]
                exc.message,
                {"operation": operation, "gateway_code": exc.code, **exc.details},
                retryable=exc.retryable,
            ) from exc

    async def _require_booking(self, booking_id: str) -> Dict[str, Any]:
        booking = await self.bookings.get(booking_id)
        if not booking:
            raise NotFoundError("Booking not found", {"booking_id": booking_id})
        return booking

    def _hold_fields(self, result: AuthorizationResult) -> Dict[str, Any]:
        now = now_utc()
        if result.capture_before is not None:
            expires_at = result.capture_before
        elif result.extended_hold:
            expires_at = now + timedelta(days=EXTENDED_HOLD_DAYS)
        else:
            expires_at = now + timedelta(days=DEFAULT_HOLD_DAYS)
        return {
            "payment_status": PaymentStatus.AUTHORIZED.value,
            "authorized_minor": result.amount_minor,
            "authorized_at": now,
            "extended_hold": bool(result.extended_hold),
            "hold_expires_at": expires_at,
        }

    async def authorize(
        self,
        booking_id: str,
        trip_amount_minor: int,
        deposit_minor: int,
        *,
        customer_ref: Optional[str] = None,
        method_ref: Optional[str] = None,
    ) -> AuthorizationOutcome:
        """Place a manual-capture hold for trip amount plus deposit.

        The booking is only marked AUTHORIZED when the processor reports the
        hold is in place. An intent that still needs client-side confirmation
        is recorded with payment_status PENDING; `sync_authorization` promotes
        it later.
        """

        if trip_amount_minor <= 0 or deposit_minor < 0:
            raise ValidationError(
                "Authorization amounts out of range",
                {"trip_amount_minor": trip_amount_minor, "deposit_minor": deposit_minor},
            )

        booking = await self._require_booking(booking_id)
        if booking.get("payment_intent_ref") and booking.get("payment_status") in LIVE_PAYMENT_STATUSES:
            raise ConflictError(
                "Booking already has a live authorization",
                {"booking_id": booking_id, "payment_status": booking.get("payment_status")},
            )

        request = {
            "trip_amount_minor": int(trip_amount_minor),
            "deposit_minor": int(deposit_minor),
            "customer_ref": customer_ref,
            "method_ref": method_ref,
        }
        amount_minor = request["trip_amount_minor"] + request["deposit_minor"]
        # stored before the gateway call so a hold whose response is lost can be
        # replayed under the same idempotency key
        await self.bookings.set_fields(
            booking_id,
            {"authorization_request": request, "payment_requested_minor": amount_minor},
        )

        result = await self._gateway_authorize(booking, request)

        if result.status == INTENT_CANCELED:
            raise PaymentAuthorizationError(
                "Authorization was cancelled by the processor",
                {"auth_ref": result.auth_ref, "status": result.status},
            )

        updates: Dict[str, Any] = {
            "payment_intent_ref": result.auth_ref,
            "payment_failure_reason": None,
            "payment_failure_retryable": None,
        }
        if result.is_held:
            updates.update(self._hold_fields(result))

        after = await self.bookings.transition(
            booking_id,
            expected={"payment_status": PaymentStatus.PENDING.value},
            updates=updates,
        )
        if after is None:
            # Another actor moved the booking while the gateway call was in flight;
            # release the hold rather than leave it dangling.
            logger.warning("Booking %s changed during authorization, releasing %s", booking_id, result.auth_ref)
            await self._release_quietly(result.auth_ref)
            raise ConflictError("Booking changed during authorization", {"booking_id": booking_id})

        logger.info(
            "Authorization %s for booking %s: status=%s amount_minor=%s",
            result.auth_ref,
            booking_id,
            result.status,
            amount_minor,
        )
        return AuthorizationOutcome(
            auth_ref=result.auth_ref,
            status=result.status,
            authorized=result.is_held,
            amount_minor=amount_minor,
            client_secret=result.client_secret,
        )

    async def _gateway_authorize(self, booking: Dict[str, Any], request: Dict[str, Any]) -> AuthorizationResult:
        """Create the hold, replaying once under the same key when the outcome is unknown.

        A timed-out or dropped request may still have placed the hold; the
        processor answers a replay with the original intent instead of a
        second one.
        """

        booking_id = booking["_id"]
        metadata = {
            "booking_id": booking_id,
            "reference_id": str(booking.get("reference_id") or ""),
            "car_id": str(booking.get("car_id") or ""),
            "trip_amount_minor": str(request["trip_amount_minor"]),
            "deposit_minor": str(request["deposit_minor"]),
        }

        def attempt() -> Awaitable[AuthorizationResult]:
            return self.gateway.authorize(
                amount_minor=request["trip_amount_minor"] + request["deposit_minor"],
                currency=self.currency,
                metadata=metadata,
                customer_ref=request.get("customer_ref"),
                method_ref=request.get("method_ref"),
                extended_hold=True,
                idempotency_key=authorize_idempotency_key(booking_id),
            )

        try:
            return await self._call(attempt(), PaymentAuthorizationError, "authorize")
        except PaymentAuthorizationError as exc:
            if not exc.retryable:
                raise
            logger.warning("Authorization outcome unknown for booking %s (%s), replaying", booking_id, exc.message)
        return await self._call(attempt(), PaymentAuthorizationError, "authorize")

    async def record_authorization_failure(self, booking_id: str, exc: PaymentAuthorizationError) -> Dict[str, Any]:
        """Record a failed hold attempt.

        A retryable failure leaves payment PENDING: the hold may exist at the
        processor and `sync_authorization` replays the request to find out.
        Anything else fails the booking.
        """

        updates: Dict[str, Any] = {
            "payment_failure_reason": exc.message,
            "payment_failure_retryable": bool(exc.retryable),
        }
        if not exc.retryable:
            updates["status"] = BookingStatus.PAYMENT_FAILED.value
            updates["payment_status"] = PaymentStatus.FAILED.value
        after = await self.bookings.transition(
            booking_id,
            expected={"payment_status": PaymentStatus.PENDING.value},
            updates=updates,
        )
        return after or await self._require_booking(booking_id)

    async def _recover_intent_ref(self, booking: Dict[str, Any]) -> Optional[str]:
        """Intent id of a hold whose create response never arrived, if one was requested."""

        request = booking.get("authorization_request")
        if booking.get("payment_intent_ref") or not request:
            return booking.get("payment_intent_ref")
        result = await self._gateway_authorize(booking, request)
        await self.bookings.transition(
            booking["_id"],
            expected={"payment_intent_ref": None},
            updates={"payment_intent_ref": result.auth_ref},
        )
        logger.info("Recovered authorization %s for booking %s", result.auth_ref, booking["_id"])
        return result.auth_ref

    async def _release_quietly(self, auth_ref: str) -> None:
        try:
            await self._call(self.gateway.cancel(auth_ref=auth_ref), PaymentAuthorizationError, "cancel")
        except PaymentAuthorizationError as exc:
            logger.error("Could not release orphaned authorization %s: %s", auth_ref, exc)

    async def sync_authorization(self, booking_id: str) -> Dict[str, Any]:
        """Bring a PENDING authorization up to date.

        After client-side confirmation the intent is re-read. When the create
        call itself never answered, the request is replayed under its
        idempotency key, which either returns the hold that was placed or
        places it now.
        """

        booking = await self._require_booking(booking_id)
        auth_ref = booking.get("payment_intent_ref")
        if booking.get("payment_status") != PaymentStatus.PENDING.value:
            return booking
        if not auth_ref:
            request = booking.get("authorization_request")
            if not request:
                raise ConflictError("Booking has no authorization to sync", {"booking_id": booking_id})
            try:
                await self.authorize(
                    booking_id,
                    request["trip_amount_minor"],
                    request["deposit_minor"],
                    customer_ref=request.get("customer_ref"),
                    method_ref=request.get("method_ref"),
                )
            except PaymentAuthorizationError as exc:
                logger.error("Authorization replay failed for booking %s: %s", booking_id, exc)
                await self.record_authorization_failure(booking_id, exc)
                raise
            return await self._require_booking(booking_id)

        result = await self._call(
            self.gateway.retrieve(auth_ref=auth_ref),
            PaymentAuthorizationError,
            "retrieve",
        )

        if result.is_held:
            after = await self.bookings.transition(
                booking_id,
                expected={"payment_status": PaymentStatus.PENDING.value, "payment_intent_ref": auth_ref},
                updates=self._hold_fields(result),
            )
        elif result.status == INTENT_CANCELED:
            after = await self.bookings.transition(
                booking_id,
                expected={"payment_status": PaymentStatus.PENDING.value, "payment_intent_ref": auth_ref},
                updates={
                    "payment_status": PaymentStatus.FAILED.value,
                    "status": BookingStatus.PAYMENT_FAILED.value,
                    "payment_failure_reason": "authorization cancelled by processor",
                },
            )
        else:
            after = None

        return after or await self._require_booking(booking_id)

    async def capture(self, booking_id: str, amount_minor: Optional[int] = None) -> CaptureOutcome:
        booking = await self._require_booking(booking_id)
        auth_ref = booking.get("payment_intent_ref")
        if not auth_ref:
            raise ConflictError("Booking has no authorization to capture", {"booking_id": booking_id})
        if amount_minor is not None and amount_minor <= 0:
            raise ValidationError("Capture amount must be > 0", {"amount_minor": amount_minor})

        try:
            result = await self._call(
                self.gateway.capture(
                    auth_ref=auth_ref,
                    amount_minor=amount_minor,
                    idempotency_key=capture_idempotency_key(booking_id),
                ),
                PaymentCaptureError,
                "capture",
            )
        except PaymentCaptureError as exc:
            updates: Dict[str, Any] = {"payment_failure_reason": exc.message}
            if not exc.retryable:
                updates["payment_status"] = PaymentStatus.FAILED.value
            await self.bookings.set_fields(booking_id, updates)
            logger.error("Capture failed for booking %s (%s): %s", booking_id, auth_ref, exc.message)
            raise

        paid = {
            "payment_status": PaymentStatus.PAID.value,
            "charge_ref": result.charge_ref,
            "captured_minor": result.captured_minor,
            "captured_at": now_utc(),
            "payment_failure_reason": None,
        }
        after = await self.bookings.transition(
            booking_id,
            expected={"payment_status": {"$in": sorted(LIVE_PAYMENT_STATUSES)}},
            updates=paid,
        )
        if after is None:
            # the money has moved regardless; record it and flag the booking
            current = await self._require_booking(booking_id)
            logger.error(
                "Captured %s for booking %s but it moved to %s/%s meanwhile",
                result.charge_ref,
                booking_id,
                current.get("status"),
                current.get("payment_status"),
            )
            await self.bookings.set_fields(booking_id, {**paid, "capture_needs_reconcile": True})
        logger.info("Captured %s minor units for booking %s", result.captured_minor, booking_id)
        return CaptureOutcome(charge_ref=result.charge_ref, captured_minor=result.captured_minor)

    async def cancel_authorization(self, booking_id: str, reason: str) -> bool:
        """Release the hold. Already-cancelled holds count as success."""

        booking = await self._require_booking(booking_id)
        payment_status = booking.get("payment_status")
        if payment_status == PaymentStatus.CANCELLED.value:
            return True
        if payment_status == PaymentStatus.PAID.value:
            raise ConflictError("Payment already captured; refund instead", {"booking_id": booking_id})

        auth_ref = booking.get("payment_intent_ref")
        if not auth_ref and payment_status == PaymentStatus.PENDING.value:
            auth_ref = await self._recover_intent_ref(booking)
        already = False
        if auth_ref:
            result = await self._call(
                self.gateway.cancel(auth_ref=auth_ref),
                PaymentAuthorizationError,
                "cancel",
            )
            already = result.already_cancelled

        await self.bookings.transition(
            booking_id,
            expected={"payment_status": {"$ne": PaymentStatus.PAID.value}},
            updates={
                "payment_status": PaymentStatus.CANCELLED.value,
                "authorization_cancelled_at": now_utc(),
                "authorization_cancel_reason": reason,
            },
        )
        logger.info(
            "Authorization %s for booking %s released (already_cancelled=%s): %s",
            auth_ref,
            booking_id,
            already,
            reason,
        )
        return True

    async def refund_partial(self, booking_id: str, amount_minor: int) -> RefundOutcome:
        """Refund part of a captured payment (security deposit release).

        The idempotency key is derived from the booking id, so a retry after a
        client timeout resolves to the same refund at the processor.
        """

        if amount_minor <= 0:
            raise ValidationError("Refund amount must be > 0", {"amount_minor": amount_minor})

        booking = await self._require_booking(booking_id)
        if booking.get("deposit_refund_ref"):
            return RefundOutcome(
                refund_ref=booking["deposit_refund_ref"],
                amount_minor=int(booking.get("deposit_refunded_minor") or amount_minor),
            )
        if booking.get("payment_status") != PaymentStatus.PAID.value:
            raise ConflictError(
                "Only captured payments can be refunded",
                {"booking_id": booking_id, "payment_status": booking.get("payment_status")},
            )
        captured = int(booking.get("captured_minor") or 0)
        if captured and amount_minor > captured:
            raise ValidationError(
                "Refund exceeds captured amount",
                {"amount_minor": amount_minor, "captured_minor": captured},
            )

        result = await self._call(
            self.gateway.refund(
                auth_ref=booking["payment_intent_ref"],
                amount_minor=amount_minor,
                idempotency_key=deposit_refund_idempotency_key(booking_id),
            ),
            PaymentRefundError,
            "refund",
        )
        await self.bookings.set_fields(
            booking_id,
            {
                "deposit_refund_ref": result.refund_ref,
                "deposit_refunded_minor": result.amount_minor,
                "deposit_released_at": now_utc(),
            },
        )
        logger.info("Refunded %s minor units for booking %s (%s)", result.amount_minor, booking_id, result.refund_ref)
        return RefundOutcome(refund_ref=result.refund_ref, amount_minor=result.amount_minor)
