from __future__ import annotations

"""Money movements that happen after a booking exists: capture once the fleet
has approved, guest cancellation before capture, and the security-deposit
release after the trip.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from rentals.domain.booking_states import (
    LIVE_PAYMENT_STATUSES,
    TERMINAL_BOOKING_STATUSES,
    BookingStatus,
    CancelledBy,
    FleetStatus,
    PaymentStatus,
)
from rentals.errors import AppError, ConflictError, NotFoundError
from rentals.repositories.booking_repository import BookingRepository
from rentals.services.payment_authorization import (
    CaptureOutcome,
    PaymentAuthorizationService,
    RefundOutcome,
)
from rentals.utils import ensure_utc, now_utc, to_minor_units

logger = logging.getLogger(__name__)

CAPTURE_CLAIM_TIMEOUT = timedelta(minutes=5)


@dataclass
class DepositRelease:
    refund_ref: Optional[str]
    amount_minor: int
    booking: Dict[str, Any]


class BookingPaymentsService:
    def __init__(self, db, payments: PaymentAuthorizationService) -> None:
        self.db = db
        self.payments = payments
        self.bookings = BookingRepository(db)

    async def _require(self, booking_id: str, account_id: Optional[str] = None) -> Dict[str, Any]:
        booking = await self.bookings.get(booking_id)
        # a guest asking about someone else's booking sees the same 404
        if not booking or (account_id is not None and booking.get("account_id") != account_id):
            raise NotFoundError("Booking not found", {"booking_id": booking_id})
        return booking

    async def capture_trip_payment(
        self,
        booking_id: str,
        reviewer: str,
        amount_minor: Optional[int] = None,
    ) -> CaptureOutcome:
        """Capture the held amount once the fleet has approved.

        The booking is claimed with `capture_started_at` before the processor
        is called; a guest cancellation cannot take a claimed booking. A claim
        older than CAPTURE_CLAIM_TIMEOUT is treated as abandoned.
        """

        await self._require(booking_id)
        now = now_utc()
        claimed = await self.bookings.transition(
            booking_id,
            expected={
                "status": BookingStatus.CONFIRMED.value,
                "fleet_status": FleetStatus.APPROVED.value,
                "payment_status": PaymentStatus.AUTHORIZED.value,
                "$or": [
                    {"capture_started_at": None},
                    {"capture_started_at": {"$lt": now - CAPTURE_CLAIM_TIMEOUT}},
                ],
            },
            updates={"capture_started_at": now, "captured_by": reviewer},
        )
        if claimed is None:
            booking = await self._require(booking_id)
            raise ConflictError(
                "Capture requires an approved booking with an authorized payment",
                {
                    "booking_id": booking_id,
                    "fleet_status": booking.get("fleet_status"),
                    "payment_status": booking.get("payment_status"),
                    "capture_in_progress": booking.get("capture_started_at") is not None,
                },
            )

        try:
            return await self.payments.capture(booking_id, amount_minor)
        except AppError:
            # let a later attempt claim the booking again
            await self.bookings.transition(
                booking_id,
                expected={
                    "capture_started_at": claimed["capture_started_at"],
                    "payment_status": {"$ne": PaymentStatus.PAID.value},
                },
                updates={"capture_started_at": None},
            )
            raise

    async def cancel_by_guest(
        self,
        booking_id: str,
        reason: str,
        *,
        account_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Guest cancellation before capture.

        Same ordering as a fleet rejection: claim the cancellation, then
        release the hold, recording (not raising) a failed release.
        """

        await self._require(booking_id, account_id)
        now = now_utc()
        after = await self.bookings.transition(
            booking_id,
            expected={
                "status": {"$nin": sorted(TERMINAL_BOOKING_STATUSES)},
                "payment_status": {"$in": sorted(LIVE_PAYMENT_STATUSES)},
                "capture_started_at": None,
            },
            updates={
                "status": BookingStatus.CANCELLED.value,
                "cancelled_by": CancelledBy.GUEST.value,
                "cancellation_reason": reason,
                "cancelled_at": now,
            },
        )
        if after is None:
            current = await self._require(booking_id)
            raise ConflictError(
                "Booking can no longer be cancelled",
                {
                    "booking_id": booking_id,
                    "status": current.get("status"),
                    "payment_status": current.get("payment_status"),
                },
            )
        logger.info("Booking %s cancelled by guest: %s", booking_id, reason)

        try:
            await self.payments.cancel_authorization(booking_id, reason=f"guest cancelled: {reason}")
        except AppError as exc:
            logger.error("Could not release authorization for cancelled booking %s: %s", booking_id, exc)
            await self.bookings.set_fields(booking_id, {"authorization_release_error": exc.message})

        return await self.bookings.get(booking_id) or after

    async def release_security_deposit(self, booking_id: str, *, now: Optional[datetime] = None) -> DepositRelease:
        booking = await self._require(booking_id)
        if booking.get("deposit_refund_ref") or booking.get("status") == BookingStatus.COMPLETED.value:
            return DepositRelease(
                refund_ref=booking.get("deposit_refund_ref"),
                amount_minor=int(booking.get("deposit_refunded_minor") or 0),
                booking=booking,
            )
        if booking.get("payment_status") != PaymentStatus.PAID.value:
            raise ConflictError(
                "Deposit can only be released after capture",
                {"booking_id": booking_id, "payment_status": booking.get("payment_status")},
            )
        end_date = booking.get("end_date")
        if end_date is not None and ensure_utc(end_date) > ensure_utc(now or now_utc()):
            raise ConflictError("Trip has not ended yet", {"booking_id": booking_id})

        deposit_minor = to_minor_units(booking.get("security_deposit") or 0)
        outcome: Optional[RefundOutcome] = None
        if deposit_minor > 0:
            outcome = await self.payments.refund_partial(booking_id, deposit_minor)

        after = await self.bookings.transition(
            booking_id,
            expected={"status": BookingStatus.CONFIRMED.value, "payment_status": PaymentStatus.PAID.value},
            updates={"status": BookingStatus.COMPLETED.value, "completed_at": now_utc()},
        )
        logger.info("Deposit released for booking %s (%s minor units)", booking_id, deposit_minor)
        return DepositRelease(
            refund_ref=outcome.refund_ref if outcome else None,
            amount_minor=outcome.amount_minor if outcome else 0,
            booking=after or await self._require(booking_id),
        )
