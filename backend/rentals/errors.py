from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


@dataclass
class AppError(Exception):
    status_code: int
    code: str
    message: str
    details: Optional[Dict[str, Any]] = None
    retryable: Optional[bool] = None

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "details": self.details or {},
        }
        if self.retryable is not None:
            payload["retryable"] = self.retryable
        return {"error": payload}


class ErrorCode(str, Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    UNAVAILABLE = "UNAVAILABLE"
    CONFLICT = "CONFLICT"
    ACCOUNT_CREATION_FAILED = "ACCOUNT_CREATION_FAILED"
    PAYMENT_AUTHORIZATION_FAILED = "PAYMENT_AUTHORIZATION_FAILED"
    PAYMENT_CAPTURE_FAILED = "PAYMENT_CAPTURE_FAILED"
    PAYMENT_REFUND_FAILED = "PAYMENT_REFUND_FAILED"
    EXTERNAL_DISPATCH_FAILED = "EXTERNAL_DISPATCH_FAILED"


def _make(status_code: int, code: ErrorCode, message: str, details, retryable) -> Dict[str, Any]:
    return {
        "status_code": status_code,
        "code": code.value,
        "message": message,
        "details": details,
        "retryable": retryable,
    }


class ValidationError(AppError):
    """Malformed or out-of-range input. Raised before any durable write."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(**_make(422, ErrorCode.VALIDATION_ERROR, message, details, None))


class NotFoundError(AppError):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(**_make(404, ErrorCode.NOT_FOUND, message, details, None))


class UnavailableError(AppError):
    """Entity exists but is not eligible (inactive car, unapproved host)."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(**_make(409, ErrorCode.UNAVAILABLE, message, details, None))


class ConflictError(AppError):
    """A state-machine guard was violated, usually by a concurrent actor."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(**_make(409, ErrorCode.CONFLICT, message, details, None))


class AccountCreationError(AppError):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(**_make(500, ErrorCode.ACCOUNT_CREATION_FAILED, message, details, True))


class PaymentAuthorizationError(AppError):
    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        *,
        retryable: bool = False,
    ) -> None:
        super().__init__(**_make(402, ErrorCode.PAYMENT_AUTHORIZATION_FAILED, message, details, retryable))


class PaymentCaptureError(AppError):
    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        *,
        retryable: bool = False,
    ) -> None:
        super().__init__(**_make(402, ErrorCode.PAYMENT_CAPTURE_FAILED, message, details, retryable))


class PaymentRefundError(AppError):
    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        *,
        retryable: bool = False,
    ) -> None:
        super().__init__(**_make(402, ErrorCode.PAYMENT_REFUND_FAILED, message, details, retryable))


class ExternalDispatchError(AppError):
    """Notification delivery failure. Logged by the outbox worker, never surfaced to callers."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(**_make(502, ErrorCode.EXTERNAL_DISPATCH_FAILED, message, details, True))


def error_response(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {
        "error": {
            "code": code,
            "message": message,
            "details": details or {},
        }
    }
