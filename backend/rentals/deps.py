from __future__ import annotations

"""FastAPI dependencies wiring services to the app-owned collaborators.

The payment gateway and notification dispatcher are constructed once at
startup and kept on `app.state`; tests override `get_payment_gateway` (and
`get_db`) through `app.dependency_overrides`.
"""

from typing import Any

from fastapi import Depends, Request

from rentals.db import get_db
from rentals.errors import AppError
from rentals.services.booking_orchestrator import BookingOrchestrator
from rentals.services.booking_payments import BookingPaymentsService
from rentals.services.fleet_review import FleetReviewService
from rentals.services.payment_authorization import PaymentAuthorizationService
from rentals.services.payment_gateway import PaymentGateway


async def get_payment_gateway(request: Request) -> PaymentGateway:
    gateway = getattr(request.app.state, "payment_gateway", None)
    if gateway is None:
        raise AppError(
            status_code=503,
            code="PAYMENT_GATEWAY_UNAVAILABLE",
            message="Payment processing is not configured",
            retryable=True,
        )
    return gateway


async def get_payment_authorization(
    db: Any = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> PaymentAuthorizationService:
    return PaymentAuthorizationService(db, gateway)


async def get_booking_orchestrator(
    db: Any = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    payments: PaymentAuthorizationService = Depends(get_payment_authorization),
) -> BookingOrchestrator:
    return BookingOrchestrator(db, gateway, payments=payments)


async def get_fleet_queue(db: Any = Depends(get_db)) -> FleetReviewService:
    return FleetReviewService(db)


async def get_fleet_review(
    db: Any = Depends(get_db),
    payments: PaymentAuthorizationService = Depends(get_payment_authorization),
) -> FleetReviewService:
    return FleetReviewService(db, payments)


async def get_booking_payments(
    db: Any = Depends(get_db),
    payments: PaymentAuthorizationService = Depends(get_payment_authorization),
) -> BookingPaymentsService:
    return BookingPaymentsService(db, payments)
