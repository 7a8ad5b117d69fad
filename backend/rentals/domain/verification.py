from __future__ import annotations

"""Outcome of the upstream AI document check, as a closed set of variants.

The booking form may or may not have run the check; when it ran it either
accepted the documents (with a confidence score and the extracted fields) or
rejected them. Persisted on the booking under `verification` with a `kind`
discriminator.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union


@dataclass(frozen=True)
class Verified:
    confidence: float
    data: Dict[str, Any] = field(default_factory=dict)
    kind: str = "VERIFIED"


@dataclass(frozen=True)
class Unverified:
    reason: Optional[str] = None
    kind: str = "UNVERIFIED"


@dataclass(frozen=True)
class NotAttempted:
    kind: str = "NOT_ATTEMPTED"


VerificationResult = Union[Verified, Unverified, NotAttempted]


def verification_from_payload(payload: Optional[Dict[str, Any]]) -> VerificationResult:
    """Build a VerificationResult from the validator's `{isValid, confidence, data, reason}` shape."""

    if not payload:
        return NotAttempted()
    if payload.get("is_valid") is True:
        return Verified(
            confidence=float(payload.get("confidence") or 0.0),
            data=dict(payload.get("data") or {}),
        )
    return Unverified(reason=payload.get("reason"))


def verification_to_doc(result: VerificationResult) -> Dict[str, Any]:
    if isinstance(result, Verified):
        return {"kind": result.kind, "confidence": result.confidence, "data": result.data}
    if isinstance(result, Unverified):
        return {"kind": result.kind, "reason": result.reason}
    return {"kind": result.kind}
