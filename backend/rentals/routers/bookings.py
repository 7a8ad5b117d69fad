from __future__ import annotations

"""Guest-facing booking endpoints."""

from dataclasses import asdict
from typing import Any, Dict

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from rentals.auth import ROLE_GUEST, require_roles
from rentals.config import PAYMENT_CURRENCY
from rentals.db import get_db
from rentals.deps import (
    get_booking_orchestrator,
    get_booking_payments,
    get_fleet_review,
    get_payment_authorization,
)
from rentals.errors import NotFoundError, UnavailableError, ValidationError
from rentals.repositories.booking_repository import BookingRepository
from rentals.repositories.catalog_repository import CatalogRepository
from rentals.schemas_bookings import (
    BookingCreateRequest,
    BookingCreateResponse,
    CancelBookingRequest,
    DocumentsResubmitRequest,
    QuoteRequest,
    QuoteResponse,
)
from rentals.services.booking_orchestrator import BookingOrchestrator
from rentals.services.booking_payments import BookingPaymentsService
from rentals.services.fleet_review import FleetReviewService
from rentals.services.payment_authorization import PaymentAuthorizationService
from rentals.services.pricing import quote
from rentals.utils import ensure_utc, round_money, serialize_doc

router = APIRouter(prefix="/api/rentals", tags=["rental_bookings"])

PUBLIC_BOOKING_FIELDS = (
    "_id",
    "reference_id",
    "car_id",
    "status",
    "fleet_status",
    "payment_status",
    "start_date",
    "end_date",
    "number_of_days",
    "daily_rate",
    "trip_amount",
    "service_fee",
    "tax_amount",
    "security_deposit",
    "total_amount",
    "currency",
    "documents_requested",
    "documents_request_message",
    "cancellation_reason",
    "cancelled_by",
    "hold_expires_at",
    "created_at",
)


def build_booking_public_view(booking: Dict[str, Any]) -> Dict[str, Any]:
    """Guest-safe projection: no processor refs, no internal failure reasons."""
    return serialize_doc({k: booking.get(k) for k in PUBLIC_BOOKING_FIELDS if k in booking})


@router.post("/quote", response_model=QuoteResponse)
async def quote_trip(payload: QuoteRequest, db=Depends(get_db)):
    car = await CatalogRepository(db).get_car(payload.car_id)
    if not car:
        raise NotFoundError("Car not found", {"car_id": payload.car_id})
    if not car.get("is_active"):
        raise UnavailableError("Car is not available for booking", {"car_id": payload.car_id})
    if ensure_utc(payload.end_date) <= ensure_utc(payload.start_date):
        raise ValidationError("End date must be after start date", {"field": "end_date"})

    breakdown = quote(car.get("daily_rate") or 0, payload.start_date, payload.end_date)
    return QuoteResponse(
        car_id=payload.car_id,
        security_deposit=float(round_money(car.get("deposit_amount") or 0)),
        currency=PAYMENT_CURRENCY,
        **breakdown.as_floats(),
    )


@router.post("/bookings", response_model=BookingCreateResponse, status_code=201)
async def create_booking(
    payload: BookingCreateRequest,
    orchestrator: BookingOrchestrator = Depends(get_booking_orchestrator),
):
    """Create a booking and place the payment hold.

    201 when everything went through. 202 when the booking exists but account
    setup needs support, or when the hold outcome is still unknown. 402 when
    the hold failed (the booking ids are still returned so the guest has a
    reference).
    """
    result = await orchestrator.create_booking(payload)
    body = BookingCreateResponse(**asdict(result)).model_dump()
    if not result.ok:
        return JSONResponse(status_code=402, content=body)
    if result.warning:
        return JSONResponse(status_code=202, content=body)
    return body


@router.get("/bookings/{reference_id}")
async def get_booking_by_reference(reference_id: str, db=Depends(get_db)):
    booking = await BookingRepository(db).get_by_reference(reference_id.strip().upper())
    if not booking:
        raise NotFoundError("Booking not found", {"reference_id": reference_id})
    return build_booking_public_view(booking)


@router.post("/bookings/{booking_id}/payment/sync")
async def sync_payment(
    booking_id: str,
    payments: PaymentAuthorizationService = Depends(get_payment_authorization),
):
    booking = await payments.sync_authorization(booking_id)
    return build_booking_public_view(booking)


@router.post("/bookings/{booking_id}/cancel")
async def cancel_booking(
    booking_id: str,
    payload: CancelBookingRequest,
    principal: Dict[str, Any] = Depends(require_roles([ROLE_GUEST])),
    service: BookingPaymentsService = Depends(get_booking_payments),
):
    booking = await service.cancel_by_guest(booking_id, payload.reason, account_id=str(principal.get("sub")))
    return build_booking_public_view(booking)


@router.post("/bookings/{booking_id}/documents")
async def resubmit_documents(
    booking_id: str,
    payload: DocumentsResubmitRequest,
    principal: Dict[str, Any] = Depends(require_roles([ROLE_GUEST])),
    fleet: FleetReviewService = Depends(get_fleet_review),
):
    booking = await fleet.resubmit_documents(
        booking_id,
        [d.model_dump(mode="json") for d in payload.documents],
        account_id=str(principal.get("sub")),
    )
    return build_booking_public_view(booking)
