from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional

from pymongo.errors import DuplicateKeyError, PyMongoError

from rentals.domain.verification import NotAttempted, VerificationResult, Verified
from rentals.errors import AccountCreationError, ValidationError
from rentals.repositories.account_repository import (
    AccountRepository,
    BookingDocumentRepository,
    normalize_email,
)
from rentals.utils import now_utc

logger = logging.getLogger(__name__)

ACCOUNT_SOURCE_BOOKING_FLOW = "booking-flow"

VERIFICATION_PENDING = "PENDING"
VERIFICATION_AI_VERIFIED = "AI_VERIFIED"


@dataclass
class ResolvedAccount:
    account_id: str
    is_new: bool


class AccountResolver:
    """Map visitor contact details to exactly one guest account per email.

    Existing accounts are returned untouched. A lost race on the unique email
    index is treated as "someone else created it first" and resolves to the
    winner's account.
    """

    def __init__(self, db) -> None:
        self.db = db
        self.accounts = AccountRepository(db)
        self.documents = BookingDocumentRepository(db)

    async def resolve_or_create(
        self,
        contact: Dict[str, Any],
        *,
        booking_id: str,
        documents: Optional[Iterable[Dict[str, str]]] = None,
        verification: VerificationResult = NotAttempted(),
    ) -> ResolvedAccount:
        email = normalize_email(contact.get("email") or "")
        if not email:
            raise ValidationError("Guest email is required", {"field": "email"})

        try:
            existing = await self.accounts.find_by_email(email)
            if existing:
                return ResolvedAccount(account_id=str(existing["_id"]), is_new=False)

            account_id = str(uuid.uuid4())
            doc = {
                "_id": account_id,
                "email": email,
                "name": contact.get("name"),
                "phone": contact.get("phone"),
                "verification_status": (
                    VERIFICATION_AI_VERIFIED if isinstance(verification, Verified) else VERIFICATION_PENDING
                ),
                "source": ACCOUNT_SOURCE_BOOKING_FLOW,
                "created_at": now_utc(),
            }
            try:
                await self.accounts.insert(doc)
            except DuplicateKeyError:
                winner = await self.accounts.find_by_email(email)
                if not winner:
                    raise AccountCreationError(
                        "Account vanished after duplicate email insert",
                        {"booking_id": booking_id},
                    )
                logger.info("Concurrent account creation for booking %s resolved to %s", booking_id, winner["_id"])
                return ResolvedAccount(account_id=str(winner["_id"]), is_new=False)

            if documents:
                await self.documents.attach(booking_id=booking_id, account_id=account_id, documents=documents)
        except PyMongoError as exc:
            logger.error("Account store failure for booking %s: %s", booking_id, exc, exc_info=True)
            raise AccountCreationError("Could not create guest account", {"booking_id": booking_id}) from exc

        logger.info("Created account %s for booking %s (source=%s)", account_id, booking_id, ACCOUNT_SOURCE_BOOKING_FLOW)
        return ResolvedAccount(account_id=account_id, is_new=True)
