from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, Query

from rentals.auth import get_reviewer
from rentals.db import get_db
from rentals.deps import get_booking_payments, get_fleet_queue, get_fleet_review
from rentals.schemas_bookings import (
    ApproveRequest,
    CaptureRequest,
    FleetStatsResponse,
    RejectRequest,
    RequestDocumentsRequest,
)
from rentals.services import notification_outbox as outbox
from rentals.services.booking_payments import BookingPaymentsService
from rentals.services.fleet_review import FleetReviewService
from rentals.utils import serialize_doc

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/fleet/bookings", tags=["fleet_review"])


@router.get("/pending")
async def list_pending(
    limit: int = Query(50, ge=1, le=200),
    reviewer: str = Depends(get_reviewer),
    fleet: FleetReviewService = Depends(get_fleet_queue),
) -> Dict[str, Any]:
    items = await fleet.list_pending(limit=limit)
    return {"items": serialize_doc(items), "count": len(items)}


@router.get("/stats", response_model=FleetStatsResponse)
async def stats(
    reviewer: str = Depends(get_reviewer),
    fleet: FleetReviewService = Depends(get_fleet_queue),
):
    return await fleet.stats()


@router.get("/{booking_id}")
async def get_booking(
    booking_id: str,
    reviewer: str = Depends(get_reviewer),
    fleet: FleetReviewService = Depends(get_fleet_queue),
):
    return serialize_doc(await fleet.get_booking(booking_id))


@router.post("/{booking_id}/approve")
async def approve(
    booking_id: str,
    payload: ApproveRequest,
    reviewer: str = Depends(get_reviewer),
    fleet: FleetReviewService = Depends(get_fleet_review),
):
    return serialize_doc(await fleet.approve(booking_id, reviewer, payload.notes))


@router.post("/{booking_id}/reject")
async def reject(
    booking_id: str,
    payload: RejectRequest,
    reviewer: str = Depends(get_reviewer),
    fleet: FleetReviewService = Depends(get_fleet_review),
):
    return serialize_doc(await fleet.reject(booking_id, reviewer, payload.reason, payload.notes))


@router.post("/{booking_id}/request-documents")
async def request_documents(
    booking_id: str,
    payload: RequestDocumentsRequest,
    reviewer: str = Depends(get_reviewer),
    fleet: FleetReviewService = Depends(get_fleet_review),
):
    booking = await fleet.request_documents(booking_id, reviewer, payload.documents_needed, payload.message)
    return serialize_doc(booking)


@router.post("/{booking_id}/capture")
async def capture(
    booking_id: str,
    payload: CaptureRequest,
    reviewer: str = Depends(get_reviewer),
    service: BookingPaymentsService = Depends(get_booking_payments),
):
    outcome = await service.capture_trip_payment(booking_id, reviewer, payload.amount_minor)
    return {"booking_id": booking_id, "charge_ref": outcome.charge_ref, "captured_minor": outcome.captured_minor}


@router.post("/{booking_id}/release-deposit")
async def release_deposit(
    booking_id: str,
    reviewer: str = Depends(get_reviewer),
    service: BookingPaymentsService = Depends(get_booking_payments),
):
    released = await service.release_security_deposit(booking_id)
    return {
        "booking_id": booking_id,
        "refund_ref": released.refund_ref,
        "amount_minor": released.amount_minor,
        "status": released.booking.get("status"),
    }


@router.post("/{booking_id}/notifications/requeue")
async def requeue_notifications(
    booking_id: str,
    reviewer: str = Depends(get_reviewer),
    db=Depends(get_db),
) -> Dict[str, Any]:
    """Replay this booking's dead-lettered notifications."""
    requeued = await outbox.requeue_dead(db, booking_id=booking_id)
    logger.info("Reviewer %s requeued %s notifications for booking %s", reviewer, requeued, booking_id)
    return {"booking_id": booking_id, "requeued": requeued}
