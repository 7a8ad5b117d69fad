from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, EmailStr, Field

from rentals.domain.booking_states import DocumentType


class GuestContact(BaseModel):
    name: Optional[str] = None
    email: EmailStr
    phone: Optional[str] = None


class DocumentIn(BaseModel):
    type: DocumentType
    url: str = Field(min_length=1)


class VerificationIn(BaseModel):
    """Result of the upstream AI document check, when the booking form ran it."""

    is_valid: bool
    confidence: Optional[float] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    reason: Optional[str] = None


class QuoteRequest(BaseModel):
    car_id: str
    start_date: datetime
    end_date: datetime


class QuoteResponse(BaseModel):
    car_id: str
    number_of_days: int
    daily_rate: float
    trip_amount: float
    service_fee: float
    tax_amount: float
    total_amount: float
    security_deposit: float
    currency: str


class BookingCreateRequest(BaseModel):
    # Presence and range checks live in the orchestrator so they are enforced
    # the same way for every caller.
    car_id: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    total_amount: float
    security_deposit: Optional[float] = None
    guest: GuestContact
    # Set when the booker is already signed in.
    account_id: Optional[str] = None
    documents: List[DocumentIn] = Field(default_factory=list)
    verification: Optional[VerificationIn] = None
    customer_ref: Optional[str] = None
    payment_method_ref: Optional[str] = None


class BookingCreateResponse(BaseModel):
    ok: bool
    booking_id: str
    reference_id: str
    account_id: Optional[str] = None
    status: str
    payment_status: str
    auth_token: Optional[str] = None
    auto_login_url: Optional[str] = None
    payment_ref: Optional[str] = None
    client_secret: Optional[str] = None
    warning: Optional[str] = None
    error: Optional[str] = None


class CancelBookingRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=500)


class DocumentsResubmitRequest(BaseModel):
    documents: List[DocumentIn] = Field(min_length=1)


class ApproveRequest(BaseModel):
    notes: Optional[str] = None


class RejectRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=500)
    notes: Optional[str] = None


class RequestDocumentsRequest(BaseModel):
    documents_needed: List[str] = Field(min_length=1)
    message: Optional[str] = None


class CaptureRequest(BaseModel):
    amount_minor: Optional[int] = Field(default=None, gt=0)


class FleetStatsResponse(BaseModel):
    pending: int
    approved_today: int
    rejected_today: int
    needs_info: int
    avg_review_minutes: float


class AutoLoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    account_id: str
    booking_id: str
