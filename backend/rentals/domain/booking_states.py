from __future__ import annotations

from enum import Enum


class BookingStatus(str, Enum):
    PENDING_REVIEW = "PENDING_REVIEW"
    CONFIRMED = "CONFIRMED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"


class FleetStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    NEEDS_INFO = "NEEDS_INFO"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    AUTHORIZED = "AUTHORIZED"
    PAID = "PAID"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class CancelledBy(str, Enum):
    SYSTEM = "SYSTEM"
    GUEST = "GUEST"


class DocumentType(str, Enum):
    LICENSE_FRONT = "LICENSE_FRONT"
    LICENSE_BACK = "LICENSE_BACK"
    SELFIE = "SELFIE"
    OTHER = "OTHER"


TERMINAL_BOOKING_STATUSES = frozenset(
    {BookingStatus.CANCELLED.value, BookingStatus.COMPLETED.value, BookingStatus.PAYMENT_FAILED.value}
)

# Payment states in which the booking still holds a live processor intent.
LIVE_PAYMENT_STATUSES = frozenset({PaymentStatus.PENDING.value, PaymentStatus.AUTHORIZED.value})

# Fleet adjudication graph. NEEDS_INFO -> PENDING happens on guest resubmission only.
FLEET_TRANSITIONS: dict[str, frozenset[str]] = {
    FleetStatus.PENDING.value: frozenset(
        {FleetStatus.APPROVED.value, FleetStatus.REJECTED.value, FleetStatus.NEEDS_INFO.value}
    ),
    FleetStatus.NEEDS_INFO.value: frozenset({FleetStatus.REJECTED.value, FleetStatus.PENDING.value}),
    FleetStatus.APPROVED.value: frozenset(),
    FleetStatus.REJECTED.value: frozenset(),
}


def fleet_sources_for(target: FleetStatus) -> list[str]:
    """States from which a fleet transition into `target` is legal."""
    return sorted(src for src, targets in FLEET_TRANSITIONS.items() if target.value in targets)
