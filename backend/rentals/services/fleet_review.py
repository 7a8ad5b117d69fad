from __future__ import annotations

"""Human fleet review gate.

Every adjudication is one conditional update on the booking: the write only
lands if the booking is still in a state the transition may start from. A
reviewer who loses a race gets a ConflictError naming the state the winner
left behind. Notifications are written to the outbox after the transition
commits and never affect its outcome.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from pymongo.errors import PyMongoError

from rentals.config import PUBLIC_BASE_URL
from rentals.domain.booking_states import (
    BookingStatus,
    CancelledBy,
    FleetStatus,
    PaymentStatus,
    fleet_sources_for,
)
from rentals.errors import AppError, ConflictError, NotFoundError, ValidationError
from rentals.repositories.account_repository import BookingDocumentRepository
from rentals.repositories.booking_repository import BookingRepository
from rentals.repositories.catalog_repository import CatalogRepository, car_summary
from rentals.services import notification_outbox as outbox
from rentals.services.notifications import (
    PRIORITY_HIGH,
    BellPairNotice,
    BookingConfirmedNotice,
    ContactInfo,
    GuestMessage,
)
from rentals.services.payment_authorization import PaymentAuthorizationService
from rentals.utils import ensure_utc, now_utc, start_of_utc_day

logger = logging.getLogger(__name__)


def _date_str(value: Any) -> str:
    return ensure_utc(value).date().isoformat() if isinstance(value, datetime) else str(value or "")


def _guest_url(booking_id: str) -> str:
    return f"{PUBLIC_BASE_URL}/rentals/dashboard/bookings/{booking_id}"


def _host_url(booking_id: str) -> str:
    return f"{PUBLIC_BASE_URL}/host/bookings/{booking_id}"


class FleetReviewService:
    # payments is only needed by reject; the queue reads work without a gateway
    def __init__(self, db, payments: Optional[PaymentAuthorizationService] = None) -> None:
        self.db = db
        self.payments = payments
        self.bookings = BookingRepository(db)
        self.documents = BookingDocumentRepository(db)
        self.catalog = CatalogRepository(db)

    async def list_pending(self, limit: int = 50) -> List[Dict[str, Any]]:
        return await self.bookings.list_pending_review(limit=max(1, min(limit, 200)))

    async def get_booking(self, booking_id: str) -> Dict[str, Any]:
        booking = await self.bookings.get(booking_id)
        if not booking:
            raise NotFoundError("Booking not found", {"booking_id": booking_id})
        booking["documents"] = await self.documents.list_for_booking(booking_id)
        return booking

    async def _conflict(self, booking_id: str) -> AppError:
        """Explain why a guarded transition did not match."""

        current = await self.bookings.get(booking_id)
        if not current:
            return NotFoundError("Booking not found", {"booking_id": booking_id})
        fleet_status = current.get("fleet_status")
        payment_status = current.get("payment_status")
        if fleet_status in (FleetStatus.PENDING.value, FleetStatus.NEEDS_INFO.value) and (
            payment_status != PaymentStatus.AUTHORIZED.value
        ):
            return ConflictError(
                "payment is not authorized",
                {"booking_id": booking_id, "fleet_status": fleet_status, "payment_status": payment_status},
            )
        return ConflictError(
            f"already {str(fleet_status).lower()}",
            {"booking_id": booking_id, "fleet_status": fleet_status, "payment_status": payment_status},
        )

    async def approve(self, booking_id: str, reviewer: str, notes: Optional[str] = None) -> Dict[str, Any]:
        now = now_utc()
        after = await self.bookings.transition(
            booking_id,
            expected={
                "fleet_status": {"$in": fleet_sources_for(FleetStatus.APPROVED)},
                "payment_status": PaymentStatus.AUTHORIZED.value,
            },
            updates={
                "fleet_status": FleetStatus.APPROVED.value,
                "status": BookingStatus.CONFIRMED.value,
                "fleet_reviewed_by": reviewer,
                "fleet_reviewed_at": now,
                "fleet_notes": notes,
            },
        )
        if after is None:
            raise await self._conflict(booking_id)

        logger.info("Booking %s approved by %s", booking_id, reviewer)
        await self._notify_approved(after)
        return after

    async def reject(
        self,
        booking_id: str,
        reviewer: str,
        reason: str,
        notes: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Reject and release the hold.

        The rejection is committed first so that only the winning reviewer
        releases the hold. A failed release is recorded on the booking and the
        rejection stands; the processor expires the hold on its own.
        """

        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("Rejection reason is required", {"field": "reason"})

        now = now_utc()
        after = await self.bookings.transition(
            booking_id,
            expected={
                "fleet_status": {"$in": fleet_sources_for(FleetStatus.REJECTED)},
                "payment_status": PaymentStatus.AUTHORIZED.value,
            },
            updates={
                "fleet_status": FleetStatus.REJECTED.value,
                "status": BookingStatus.CANCELLED.value,
                "cancelled_by": CancelledBy.SYSTEM.value,
                "cancellation_reason": reason,
                "cancelled_at": now,
                "fleet_reviewed_by": reviewer,
                "fleet_reviewed_at": now,
                "fleet_notes": notes,
            },
        )
        if after is None:
            raise await self._conflict(booking_id)
        logger.info("Booking %s rejected by %s: %s", booking_id, reviewer, reason)

        try:
            await self.payments.cancel_authorization(booking_id, reason=f"fleet rejected: {reason}")
        except AppError as exc:
            logger.error("Could not release authorization for rejected booking %s: %s", booking_id, exc)
            await self.bookings.set_fields(booking_id, {"authorization_release_error": exc.message})

        guest = after.get("guest") or {}
        await outbox.publish(
            self.db,
            kind=outbox.KIND_GUEST_SMS,
            booking_id=booking_id,
            payload=GuestMessage(
                booking_id=booking_id,
                to=guest.get("phone"),
                template="booking_rejected",
                variables={
                    "guest_name": guest.get("name") or "there",
                    "booking_code": after.get("reference_id"),
                    "reason": reason,
                },
            ),
        )
        return await self.bookings.get(booking_id) or after

    async def request_documents(
        self,
        booking_id: str,
        reviewer: str,
        documents_needed: List[str],
        message: Optional[str] = None,
    ) -> Dict[str, Any]:
        needed = [d.strip() for d in documents_needed or [] if d and d.strip()]
        if not needed:
            raise ValidationError("At least one document must be requested", {"field": "documents_needed"})

        now = now_utc()
        after = await self.bookings.transition(
            booking_id,
            expected={
                "fleet_status": {"$in": fleet_sources_for(FleetStatus.NEEDS_INFO)},
                "payment_status": PaymentStatus.AUTHORIZED.value,
            },
            updates={
                "fleet_status": FleetStatus.NEEDS_INFO.value,
                "documents_requested": needed,
                "documents_request_message": message,
                "documents_requested_by": reviewer,
                "documents_requested_at": now,
            },
        )
        if after is None:
            raise await self._conflict(booking_id)
        logger.info("Booking %s needs info (%s) per %s", booking_id, ", ".join(needed), reviewer)

        guest = after.get("guest") or {}
        await outbox.publish(
            self.db,
            kind=outbox.KIND_GUEST_SMS,
            booking_id=booking_id,
            payload=GuestMessage(
                booking_id=booking_id,
                to=guest.get("phone"),
                template="documents_requested",
                variables={
                    "guest_name": guest.get("name") or "there",
                    "booking_code": after.get("reference_id"),
                    "documents": ", ".join(needed),
                    "message": message or "",
                },
            ),
        )
        return after

    async def resubmit_documents(
        self,
        booking_id: str,
        documents: List[Dict[str, str]],
        *,
        account_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Guest supplied the requested documents: NEEDS_INFO -> PENDING.

        `created_at` is left alone, so the booking goes back to its original
        place in the FIFO queue.
        """

        if not documents:
            raise ValidationError("No documents supplied", {"field": "documents"})

        booking = await self.bookings.get(booking_id)
        if not booking or (account_id is not None and booking.get("account_id") != account_id):
            raise NotFoundError("Booking not found", {"booking_id": booking_id})
        if booking.get("fleet_status") != FleetStatus.NEEDS_INFO.value:
            raise ConflictError(
                "Booking is not waiting for documents",
                {"booking_id": booking_id, "fleet_status": booking.get("fleet_status")},
            )

        await self.documents.attach(booking_id=booking_id, account_id=booking.get("account_id"), documents=documents)
        after = await self.bookings.transition(
            booking_id,
            expected={
                "fleet_status": FleetStatus.NEEDS_INFO.value,
                "payment_status": PaymentStatus.AUTHORIZED.value,
            },
            updates={
                "fleet_status": FleetStatus.PENDING.value,
                "documents_requested": [],
                "documents_resubmitted_at": now_utc(),
            },
        )
        if after is None:
            raise await self._conflict(booking_id)
        logger.info("Booking %s back in fleet queue after document resubmission", booking_id)
        return after

    async def stats(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        day_start = start_of_utc_day(now)
        pending = await self.bookings.count(
            {"fleet_status": FleetStatus.PENDING.value, "payment_status": PaymentStatus.AUTHORIZED.value}
        )
        needs_info = await self.bookings.count({"fleet_status": FleetStatus.NEEDS_INFO.value})
        reviewed = await self.bookings.list_reviewed_since(day_start)

        approved = [b for b in reviewed if b["fleet_status"] == FleetStatus.APPROVED.value]
        rejected = [b for b in reviewed if b["fleet_status"] == FleetStatus.REJECTED.value]
        latencies = [
            (ensure_utc(b["fleet_reviewed_at"]) - ensure_utc(b["created_at"])).total_seconds() / 60.0
            for b in reviewed
            if b.get("created_at")
        ]
        avg = round(sum(latencies) / len(latencies), 1) if latencies else 0.0
        return {
            "pending": pending,
            "approved_today": len(approved),
            "rejected_today": len(rejected),
            "needs_info": needs_info,
            "avg_review_minutes": avg,
        }

    async def _notify_approved(self, booking: Dict[str, Any]) -> None:
        booking_id = booking["_id"]
        try:
            host = await self.catalog.get_host(booking.get("host_id")) or {}
            car = await self.catalog.get_car(booking.get("car_id")) or {"_id": booking.get("car_id")}
        except PyMongoError as exc:
            logger.error("Could not load host/car for approval notice on %s: %s", booking_id, exc)
            host, car = {}, {"_id": booking.get("car_id")}

        guest = booking.get("guest") or {}
        summary = car_summary(car)
        confirmed = BookingConfirmedNotice(
            booking_id=booking_id,
            booking_code=booking.get("reference_id") or "",
            guest=ContactInfo(name=guest.get("name"), email=guest.get("email"), phone=guest.get("phone")),
            host=ContactInfo(name=host.get("name"), email=host.get("email"), phone=host.get("phone")),
            car_summary=summary,
            start_date=_date_str(booking.get("start_date")),
            end_date=_date_str(booking.get("end_date")),
            guest_id=booking.get("account_id"),
            host_id=booking.get("host_id"),
            car_id=booking.get("car_id"),
        )
        bell = BellPairNotice(
            booking_id=booking_id,
            type="booking_confirmed",
            guest_id=booking.get("account_id"),
            host_id=booking.get("host_id"),
            guest_title="Booking confirmed",
            guest_message=f"Your {summary} booking {confirmed.booking_code} is confirmed.",
            host_title="New booking",
            host_message=f"{summary} booked {confirmed.start_date} to {confirmed.end_date} ({confirmed.booking_code}).",
            guest_action_url=_guest_url(booking_id),
            host_action_url=_host_url(booking_id),
            priority=PRIORITY_HIGH,
        )
        await outbox.publish(self.db, kind=outbox.KIND_BOOKING_CONFIRMED, booking_id=booking_id, payload=confirmed)
        await outbox.publish(self.db, kind=outbox.KIND_BELL_PAIR, booking_id=booking_id, payload=bell)

