from __future__ import annotations

"""Visitor purchase intent -> durable booking -> payment hold.

Order of operations matters here:

1. everything that can be rejected without side effects (input ranges, car,
   host, supplied account) is checked first;
2. the booking row is written next and is never deleted afterwards;
3. account bootstrapping and the payment hold follow, and their failures are
   recorded on the booking instead of unwinding it.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Tuple

from pymongo.errors import DuplicateKeyError, PyMongoError

from rentals.config import PAYMENT_CURRENCY
from rentals.domain.booking_states import BookingStatus, FleetStatus, PaymentStatus
from rentals.domain.verification import verification_from_payload, verification_to_doc
from rentals.errors import (
    AccountCreationError,
    ConflictError,
    NotFoundError,
    PaymentAuthorizationError,
    UnavailableError,
    ValidationError,
)
from rentals.repositories.account_repository import AccountRepository, BookingDocumentRepository
from rentals.repositories.booking_repository import BookingRepository
from rentals.repositories.catalog_repository import HOST_APPROVED, CatalogRepository
from rentals.schemas_bookings import BookingCreateRequest
from rentals.services.account_resolver import AccountResolver
from rentals.services.auto_login import AutoLoginTokenService, build_auto_login_url
from rentals.services.payment_authorization import PaymentAuthorizationService
from rentals.services.payment_gateway import PaymentGateway
from rentals.services.pricing import quote
from rentals.utils import ensure_utc, generate_reference_id, now_utc, round_money, to_minor_units

logger = logging.getLogger(__name__)

ACCOUNT_SETUP_WARNING = "account setup failed, contact support"
PAYMENT_FAILED_MESSAGE = "payment authorization failed"
PAYMENT_PENDING_WARNING = "payment authorization still pending, retry payment sync"
MAX_REFERENCE_ATTEMPTS = 5


@dataclass
class CreateBookingResult:
    ok: bool
    booking_id: str
    reference_id: str
    status: str
    payment_status: str
    account_id: Optional[str] = None
    auth_token: Optional[str] = None
    auto_login_url: Optional[str] = None
    payment_ref: Optional[str] = None
    client_secret: Optional[str] = None
    warning: Optional[str] = None
    error: Optional[str] = None


class BookingOrchestrator:
    def __init__(
        self,
        db,
        gateway: PaymentGateway,
        *,
        reference_factory: Callable[[], str] = generate_reference_id,
        payments: Optional[PaymentAuthorizationService] = None,
    ) -> None:
        self.db = db
        self.bookings = BookingRepository(db)
        self.accounts = AccountRepository(db)
        self.documents = BookingDocumentRepository(db)
        self.catalog = CatalogRepository(db)
        self.resolver = AccountResolver(db)
        self.tokens = AutoLoginTokenService(db)
        self.payments = payments or PaymentAuthorizationService(db, gateway)
        self.reference_factory = reference_factory

    # ------------------------------------------------------------------
    # validation (no side effects)
    # ------------------------------------------------------------------

    def _validate(self, req: BookingCreateRequest, now: datetime) -> Tuple[datetime, datetime, Decimal]:
        if not (req.car_id or "").strip():
            raise ValidationError("Car is required", {"field": "car_id"})
        if req.start_date is None or req.end_date is None:
            raise ValidationError("Start and end dates are required", {"field": "start_date/end_date"})

        start = ensure_utc(req.start_date)
        end = ensure_utc(req.end_date)
        if end <= start:
            raise ValidationError(
                "End date must be after start date",
                {"start_date": start.isoformat(), "end_date": end.isoformat()},
            )
        if start <= now:
            raise ValidationError("Start date must be in the future", {"start_date": start.isoformat()})

        total = round_money(req.total_amount)
        if total <= 0:
            raise ValidationError("Total amount must be greater than zero", {"total_amount": float(total)})
        if req.security_deposit is not None and req.security_deposit < 0:
            raise ValidationError("Security deposit cannot be negative", {"security_deposit": req.security_deposit})
        return start, end, total

    async def _load_car_and_host(self, car_id: str) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        car = await self.catalog.get_car(car_id)
        if not car:
            raise NotFoundError("Car not found", {"car_id": car_id})
        if not car.get("is_active"):
            raise UnavailableError("Car is not available for booking", {"car_id": car_id})

        host = await self.catalog.get_host(car.get("host_id"))
        if not host:
            raise NotFoundError("Host not found", {"car_id": car_id, "host_id": car.get("host_id")})
        if host.get("approval_status") != HOST_APPROVED:
            raise UnavailableError("Host is not accepting bookings", {"host_id": host["_id"]})
        return car, host

    # ------------------------------------------------------------------
    # booking row
    # ------------------------------------------------------------------

    async def _insert_booking(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        for attempt in range(1, MAX_REFERENCE_ATTEMPTS + 1):
            doc["reference_id"] = self.reference_factory()
            try:
                return await self.bookings.insert(doc)
            except DuplicateKeyError as exc:
                if "reference_id" not in str(exc):
                    raise
                logger.warning("Reference id collision on %s (attempt %s)", doc["reference_id"], attempt)
        raise ConflictError("Could not allocate a booking reference", {"attempts": MAX_REFERENCE_ATTEMPTS})

    async def create_booking(self, req: BookingCreateRequest) -> CreateBookingResult:
        now = now_utc()
        start, end, total = self._validate(req, now)
        car, host = await self._load_car_and_host(req.car_id.strip())

        if req.account_id:
            account = await self.accounts.get(req.account_id)
            if not account:
                raise NotFoundError("Account not found", {"account_id": req.account_id})

        deposit = round_money(
            req.security_deposit if req.security_deposit is not None else (car.get("deposit_amount") or 0)
        )
        breakdown = quote(car.get("daily_rate") or 0, start, end)
        if abs(breakdown.total_amount - total) > Decimal("0.01"):
            logger.warning(
                "Submitted total %s differs from quoted %s for car %s", total, breakdown.total_amount, car["_id"]
            )

        verification = verification_from_payload(req.verification.model_dump() if req.verification else None)
        guest = req.guest.model_dump()
        guest["email"] = str(guest["email"]).strip().lower()

        booking_id = str(uuid.uuid4())
        doc: Dict[str, Any] = {
            "_id": booking_id,
            "car_id": car["_id"],
            "host_id": host["_id"],
            "account_id": req.account_id,
            "guest": guest,
            "start_date": start,
            "end_date": end,
            "number_of_days": breakdown.number_of_days,
            "daily_rate": float(breakdown.daily_rate),
            "trip_amount": float(breakdown.trip_amount),
            "service_fee": float(breakdown.service_fee),
            "tax_amount": float(breakdown.tax_amount),
            "quoted_total": float(breakdown.total_amount),
            "security_deposit": float(deposit),
            "total_amount": float(total),
            "currency": PAYMENT_CURRENCY,
            "status": BookingStatus.PENDING_REVIEW.value,
            "fleet_status": FleetStatus.PENDING.value,
            "payment_status": PaymentStatus.PENDING.value,
            "payment_intent_ref": None,
            "verification": verification_to_doc(verification),
            "documents_requested": [],
            "created_at": now,
            "updated_at": now,
        }
        booking = await self._insert_booking(doc)
        reference_id = booking["reference_id"]
        logger.info("Booking %s (%s) created for car %s", booking_id, reference_id, car["_id"])

        result = CreateBookingResult(
            ok=True,
            booking_id=booking_id,
            reference_id=reference_id,
            status=BookingStatus.PENDING_REVIEW.value,
            payment_status=PaymentStatus.PENDING.value,
            account_id=req.account_id,
        )
        documents = [d.model_dump(mode="json") for d in req.documents]

        if req.account_id:
            if documents:
                await self.documents.attach(booking_id=booking_id, account_id=req.account_id, documents=documents)
        else:
            try:
                await self._bootstrap_account(result, guest, documents, verification)
            except (AccountCreationError, PyMongoError) as exc:
                logger.error("Account setup failed for booking %s: %s", booking_id, exc)
                await self.bookings.set_fields(booking_id, {"account_setup_error": str(exc)})
                result.warning = ACCOUNT_SETUP_WARNING
                return result

        await self._authorize(result, total, deposit, req)
        return result

    async def _bootstrap_account(self, result: CreateBookingResult, guest, documents, verification) -> None:
        resolved = await self.resolver.resolve_or_create(
            guest,
            booking_id=result.booking_id,
            documents=documents,
            verification=verification,
        )
        await self.bookings.set_fields(result.booking_id, {"account_id": resolved.account_id})
        result.account_id = resolved.account_id

        if not resolved.is_new:
            if documents:
                await self.documents.attach(
                    booking_id=result.booking_id, account_id=resolved.account_id, documents=documents
                )
            return

        issued = await self.tokens.issue(result.booking_id, resolved.account_id)
        result.auth_token = issued.token
        result.auto_login_url = build_auto_login_url(issued.token, result.booking_id)

    async def _authorize(
        self,
        result: CreateBookingResult,
        total: Decimal,
        deposit: Decimal,
        req: BookingCreateRequest,
    ) -> None:
        try:
            outcome = await self.payments.authorize(
                result.booking_id,
                to_minor_units(total),
                to_minor_units(deposit),
                customer_ref=req.customer_ref,
                method_ref=req.payment_method_ref,
            )
        except PaymentAuthorizationError as exc:
            logger.error("Authorization failed for booking %s: %s", result.booking_id, exc)
            await self.payments.record_authorization_failure(result.booking_id, exc)
            if exc.retryable:
                # the hold may exist; payment/sync settles it
                result.warning = PAYMENT_PENDING_WARNING
                return
            result.ok = False
            result.status = BookingStatus.PAYMENT_FAILED.value
            result.payment_status = PaymentStatus.FAILED.value
            result.error = PAYMENT_FAILED_MESSAGE
            return

        result.payment_ref = outcome.auth_ref
        result.client_secret = outcome.client_secret
        if outcome.authorized:
            result.payment_status = PaymentStatus.AUTHORIZED.value