from __future__ import annotations

"""Payment processor boundary.

`PaymentGateway` is the small surface the booking core needs from a card
processor: manual-capture authorization, capture, cancel, refund and
retrieve. `StripeGateway` is the production implementation; it is constructed
explicitly at startup (see server.py) and handed to the services that need
it, so tests can pass their own implementation instead.

All amounts are integer minor units. The Stripe SDK is synchronous, so every
call runs in a worker thread via anyio.to_thread.run_sync to avoid blocking
the event loop.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol

import anyio
import stripe  # type: ignore

logger = logging.getLogger(__name__)


# Processor intent states we care about.
INTENT_REQUIRES_CAPTURE = "requires_capture"
INTENT_SUCCEEDED = "succeeded"
INTENT_CANCELED = "canceled"


class GatewayError(Exception):
    def __init__(
        self,
        code: str,
        message: str,
        *,
        retryable: bool = False,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.retryable = retryable
        self.details = details or {}


@dataclass
class AuthorizationResult:
    auth_ref: str
    status: str
    amount_minor: int
    client_secret: Optional[str] = None
    extended_hold: Optional[bool] = None
    capture_before: Optional[datetime] = None

    @property
    def is_held(self) -> bool:
        return self.status == INTENT_REQUIRES_CAPTURE


@dataclass
class CaptureResult:
    charge_ref: str
    captured_minor: int


@dataclass
class CancelResult:
    already_cancelled: bool = False


@dataclass
class RefundResult:
    refund_ref: str
    amount_minor: int


class PaymentGateway(Protocol):
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
    ) -> AuthorizationResult:  # pragma: no cover - interface
        ...

    async def capture(
        self,
        *,
        auth_ref: str,
        amount_minor: Optional[int] = None,
        idempotency_key: Optional[str] = None,
    ) -> CaptureResult:  # pragma: no cover - interface
        ...

    async def cancel(self, *, auth_ref: str) -> CancelResult:  # pragma: no cover - interface
        ...

    async def refund(
        self,
        *,
        auth_ref: str,
        amount_minor: int,
        idempotency_key: str,
    ) -> RefundResult:  # pragma: no cover - interface
        ...

    async def retrieve(self, *, auth_ref: str) -> AuthorizationResult:  # pragma: no cover - interface
        ...


def _to_dict(obj: Any) -> Dict[str, Any]:
    return obj.to_dict() if hasattr(obj, "to_dict") else dict(obj)


def _card_details(intent: Dict[str, Any]) -> Dict[str, Any]:
    charge = intent.get("latest_charge")
    if not isinstance(charge, dict):
        return {}
    return ((charge.get("payment_method_details") or {}).get("card")) or {}


def authorization_from_intent(intent: Dict[str, Any]) -> AuthorizationResult:
    card = _card_details(intent)
    extended = (card.get("extended_authorization") or {}).get("status")
    capture_before = card.get("capture_before")
    return AuthorizationResult(
        auth_ref=str(intent["id"]),
        status=str(intent.get("status") or ""),
        amount_minor=int(intent.get("amount") or 0),
        client_secret=intent.get("client_secret"),
        extended_hold=(extended == "enabled") if extended else None,
        capture_before=(
            datetime.fromtimestamp(int(capture_before), tz=timezone.utc) if capture_before else None
        ),
    )


def _gateway_error(exc: "stripe.StripeError") -> GatewayError:  # type: ignore[name-defined]
    retryable = isinstance(exc, (stripe.APIConnectionError, stripe.RateLimitError))
    code = getattr(exc, "code", None) or exc.__class__.__name__
    details: Dict[str, Any] = {}
    decline_code = getattr(exc, "decline_code", None)
    if decline_code:
        details["decline_code"] = decline_code
    message = getattr(exc, "user_message", None) or str(exc) or "payment processor error"
    return GatewayError(str(code), message, retryable=retryable, details=details)


def _rejects_extended_authorization(exc: Exception) -> bool:
    param = getattr(exc, "param", None) or ""
    return "request_extended_authorization" in param or "extended_authorization" in str(exc)


class StripeGateway:
    """PaymentGateway backed by the Stripe SDK."""

    def __init__(self, api_key: str) -> None:
        if not api_key:
            raise RuntimeError("STRIPE_API_KEY is not configured")
        self._client = stripe.StripeClient(api_key)  # type: ignore[attr-defined]

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
        if amount_minor <= 0:
            raise ValueError("amount_minor must be > 0")

        params: Dict[str, Any] = {
            "amount": int(amount_minor),
            "currency": currency.lower(),
            "capture_method": "manual",
            "metadata": metadata,
            "expand": ["latest_charge"],
        }
        if customer_ref:
            params["customer"] = customer_ref
        if method_ref:
            params["payment_method"] = method_ref
            params["confirm"] = True
            params["automatic_payment_methods"] = {"enabled": True, "allow_redirects": "never"}

        def _create(with_extended: bool) -> Dict[str, Any]:
            call_params = dict(params)
            options: Dict[str, Any] = {}
            if with_extended:
                call_params["payment_method_options"] = {
                    "card": {"request_extended_authorization": "if_available"}
                }
            if idempotency_key:
                # a different request body must not reuse the first attempt's key
                options["idempotency_key"] = idempotency_key if with_extended else f"{idempotency_key}-std"
            intent = self._client.payment_intents.create(params=call_params, options=options)
            return _to_dict(intent)

        try:
            try:
                intent = await anyio.to_thread.run_sync(_create, extended_hold)
            except stripe.InvalidRequestError as exc:
                if not extended_hold or not _rejects_extended_authorization(exc):
                    raise
                logger.info("Extended authorization unavailable, using the standard hold window")
                intent = await anyio.to_thread.run_sync(_create, False)
        except stripe.StripeError as exc:
            raise _gateway_error(exc) from exc

        result = authorization_from_intent(intent)
        if result.extended_hold is None and extended_hold:
            result.extended_hold = False
        return result

    async def capture(
        self,
        *,
        auth_ref: str,
        amount_minor: Optional[int] = None,
        idempotency_key: Optional[str] = None,
    ) -> CaptureResult:
        def _capture() -> Dict[str, Any]:
            params: Dict[str, Any] = {}
            if amount_minor is not None:
                params["amount_to_capture"] = int(amount_minor)
            options: Dict[str, Any] = {}
            if idempotency_key:
                options["idempotency_key"] = idempotency_key
            intent = self._client.payment_intents.capture(auth_ref, params=params, options=options)
            return _to_dict(intent)

        try:
            intent = await anyio.to_thread.run_sync(_capture)
        except stripe.StripeError as exc:
            raise _gateway_error(exc) from exc

        charge = intent.get("latest_charge")
        charge_ref = charge.get("id") if isinstance(charge, dict) else charge
        return CaptureResult(
            charge_ref=str(charge_ref or intent["id"]),
            captured_minor=int(intent.get("amount_received") or 0),
        )

    async def cancel(self, *, auth_ref: str) -> CancelResult:
        def _cancel() -> Dict[str, Any]:
            intent = self._client.payment_intents.cancel(auth_ref, params={"cancellation_reason": "abandoned"})
            return _to_dict(intent)

        try:
            await anyio.to_thread.run_sync(_cancel)
            return CancelResult(already_cancelled=False)
        except stripe.InvalidRequestError as exc:
            # Cancelling an intent the processor already cancelled/expired is an
            # unexpected-state error; confirm the state before calling it success.
            current = await self.retrieve(auth_ref=auth_ref)
            if current.status == INTENT_CANCELED:
                return CancelResult(already_cancelled=True)
            raise _gateway_error(exc) from exc
        except stripe.StripeError as exc:
            raise _gateway_error(exc) from exc

    async def refund(
        self,
        *,
        auth_ref: str,
        amount_minor: int,
        idempotency_key: str,
    ) -> RefundResult:
        if amount_minor <= 0:
            raise ValueError("amount_minor must be > 0")

        def _refund() -> Dict[str, Any]:
            refund = self._client.refunds.create(
                params={"payment_intent": auth_ref, "amount": int(amount_minor)},
                options={"idempotency_key": idempotency_key},
            )
            return _to_dict(refund)

        try:
            refund = await anyio.to_thread.run_sync(_refund)
        except stripe.StripeError as exc:
            raise _gateway_error(exc) from exc
        return RefundResult(refund_ref=str(refund["id"]), amount_minor=int(refund.get("amount") or amount_minor))

    async def retrieve(self, *, auth_ref: str) -> AuthorizationResult:
        def _retrieve() -> Dict[str, Any]:
            intent = self._client.payment_intents.retrieve(auth_ref, params={"expand": ["latest_charge"]})
            return _to_dict(intent)

        try:
            intent = await anyio.to_thread.run_sync(_retrieve)
        except stripe.StripeError as exc:
            raise _gateway_error(exc) from exc
        return authorization_from_intent(intent)
