"""In-memory collaborators for tests: a payment gateway and a notification dispatcher."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from rentals.errors import ExternalDispatchError
from rentals.services.payment_gateway import (
    INTENT_CANCELED,
    INTENT_REQUIRES_CAPTURE,
    INTENT_SUCCEEDED,
    AuthorizationResult,
    CancelResult,
    CaptureResult,
    RefundResult,
)
from rentals.services.notifications import (
    BellPairNotice,
    BookingConfirmedNotice,
    GuestMessage,
    NotificationDispatcher,
)
from rentals.utils import now_utc


class FakeGateway:
    """PaymentGateway double that records every call.

    Knobs: set `*_error` to an exception to make that operation raise,
    `authorize_status` to control the intent state, `delay` to slow every call,
    `authorize_delays` to slow successive authorize calls one by one.
    """

    def __init__(self) -> None:
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self.intents: Dict[str, Dict[str, Any]] = {}
        self.intents_by_key: Dict[str, str] = {}
        self.refunds_by_key: Dict[str, RefundResult] = {}
        self.authorize_status = INTENT_REQUIRES_CAPTURE
        self.extended_hold = True
        self.authorize_error: Optional[Exception] = None
        self.capture_error: Optional[Exception] = None
        self.cancel_error: Optional[Exception] = None
        self.refund_error: Optional[Exception] = None
        self.delay = 0.0
        self.authorize_delays: List[float] = []

    def calls_for(self, name: str) -> List[Dict[str, Any]]:
        return [kw for op, kw in self.calls if op == name]

    async def _enter(self, name: str, **kwargs: Any) -> None:
        self.calls.append((name, kwargs))
        if self.delay:
            await asyncio.sleep(self.delay)

    async def authorize(
        self,
        *,
        amount_minor: int,
        currency: str,
        metadata: Dict[str, str],
        customer_ref: Optional[str] = None,
        method_ref: Optional[str] = None,
        extended_hold: bool = True,
        idempotency_key: Optional[str] = None,
    ) -> AuthorizationResult:
        """Like the processor, the hold exists before the response goes out.

        A call repeated under the same idempotency key returns the first
        intent. A delay that outlasts the caller's deadline therefore leaves a
        hold behind that only a replay can reveal.
        """

        self.calls.append(
            (
                "authorize",
                {
                    "amount_minor": amount_minor,
                    "currency": currency,
                    "metadata": metadata,
                    "customer_ref": customer_ref,
                    "method_ref": method_ref,
                    "extended_hold": extended_hold,
                    "idempotency_key": idempotency_key,
                },
            )
        )
        if self.authorize_error:
            raise self.authorize_error
        auth_ref = self.intents_by_key.get(idempotency_key) if idempotency_key else None
        if auth_ref is None:
            auth_ref = f"pi_fake_{len(self.intents) + 1}"
            self.intents[auth_ref] = {"amount": amount_minor, "status": self.authorize_status}
            if idempotency_key:
                self.intents_by_key[idempotency_key] = auth_ref
        delay = self.authorize_delays.pop(0) if self.authorize_delays else self.delay
        if delay:
            await asyncio.sleep(delay)
        intent = self.intents[auth_ref]
        return AuthorizationResult(
            auth_ref=auth_ref,
            status=intent["status"],
            amount_minor=intent["amount"],
            client_secret=f"{auth_ref}_secret",
            extended_hold=self.extended_hold,
        )

    async def capture(
        self,
        *,
        auth_ref: str,
        amount_minor: Optional[int] = None,
        idempotency_key: Optional[str] = None,
    ) -> CaptureResult:
        await self._enter("capture", auth_ref=auth_ref, amount_minor=amount_minor, idempotency_key=idempotency_key)
        if self.capture_error:
            raise self.capture_error
        intent = self.intents.setdefault(auth_ref, {"amount": 0, "status": INTENT_REQUIRES_CAPTURE})
        intent["status"] = INTENT_SUCCEEDED
        return CaptureResult(charge_ref=f"ch_{auth_ref}", captured_minor=amount_minor or intent["amount"])

    async def cancel(self, *, auth_ref: str) -> CancelResult:
        await self._enter("cancel", auth_ref=auth_ref)
        if self.cancel_error:
            raise self.cancel_error
        intent = self.intents.setdefault(auth_ref, {"amount": 0, "status": INTENT_REQUIRES_CAPTURE})
        if intent["status"] == INTENT_CANCELED:
            return CancelResult(already_cancelled=True)
        intent["status"] = INTENT_CANCELED
        return CancelResult(already_cancelled=False)

    async def refund(self, *, auth_ref: str, amount_minor: int, idempotency_key: str) -> RefundResult:
        await self._enter("refund", auth_ref=auth_ref, amount_minor=amount_minor, idempotency_key=idempotency_key)
        if self.refund_error:
            raise self.refund_error
        if idempotency_key not in self.refunds_by_key:
            self.refunds_by_key[idempotency_key] = RefundResult(
                refund_ref=f"re_{len(self.refunds_by_key) + 1}",
                amount_minor=amount_minor,
            )
        return self.refunds_by_key[idempotency_key]

    async def retrieve(self, *, auth_ref: str) -> AuthorizationResult:
        await self._enter("retrieve", auth_ref=auth_ref)
        intent = self.intents.setdefault(auth_ref, {"amount": 0, "status": INTENT_REQUIRES_CAPTURE})
        return AuthorizationResult(
            auth_ref=auth_ref,
            status=intent["status"],
            amount_minor=intent["amount"],
            extended_hold=self.extended_hold,
        )


class RecordingDispatcher(NotificationDispatcher):
    """Dispatcher that records deliveries and can be told to fail the next N calls."""

    def __init__(self, fail_times: int = 0) -> None:
        self.fail_times = fail_times
        self.confirmed: List[BookingConfirmedNotice] = []
        self.bells: List[BellPairNotice] = []
        self.guest_messages: List[GuestMessage] = []

    def _maybe_fail(self) -> None:
        if self.fail_times > 0:
            self.fail_times -= 1
            raise ExternalDispatchError("provider down")

    async def notify_booking_confirmed(self, notice: BookingConfirmedNotice) -> None:
        self._maybe_fail()
        self.confirmed.append(notice)

    async def notify_bell_pair(self, notice: BellPairNotice) -> None:
        self._maybe_fail()
        self.bells.append(notice)

    async def notify_guest(self, message: GuestMessage) -> None:
        self._maybe_fail()
        self.guest_messages.append(message)


def make_booking_doc(booking_id: str, **overrides: Any) -> Dict[str, Any]:
    """A booking row as the orchestrator leaves it after a successful hold (+2d .. +5d, 450 + 200)."""

    now = now_utc()
    doc: Dict[str, Any] = {
        "_id": booking_id,
        "reference_id": f"BK-{booking_id.upper()}",
        "car_id": "car1",
        "host_id": "host1",
        "account_id": "acct_1",
        "guest": {"name": "A B", "email": "a@b.com", "phone": "555-0100"},
        "start_date": now + timedelta(days=2),
        "end_date": now + timedelta(days=5),
        "number_of_days": 3,
        "daily_rate": 150.0,
        "trip_amount": 450.0,
        "service_fee": 67.5,
        "tax_amount": 43.47,
        "security_deposit": 200.0,
        "total_amount": 450.0,
        "currency": "usd",
        "status": "PENDING_REVIEW",
        "fleet_status": "PENDING",
        "payment_status": "AUTHORIZED",
        "payment_intent_ref": f"pi_{booking_id}",
        "authorized_minor": 65000,
        "documents_requested": [],
        "created_at": now,
        "updated_at": now,
    }
    doc.update(overrides)
    return doc
