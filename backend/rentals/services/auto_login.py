from __future__ import annotations

"""Single-use auto-login tokens for freshly bootstrapped guest accounts.

The raw token goes out once (in the delivery URL) and only its sha256 hash is
stored. Redemption is one `find_one_and_update` that clears the hash, so two
concurrent redemptions cannot both succeed. Expired tokens are cleared by the
same operation instead of a background sweep.
"""

import logging
import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional
from urllib.parse import urlencode

from pymongo import ReturnDocument

from rentals.config import AUTO_LOGIN_TTL_HOURS, PUBLIC_BASE_URL
from rentals.errors import AppError, ValidationError
from rentals.utils import ensure_utc, now_utc, sha256_hex

logger = logging.getLogger(__name__)

TOKEN_BYTES = 32
TOKEN_LENGTH = TOKEN_BYTES * 2

REASON_MALFORMED = "malformed"
REASON_NOT_FOUND = "not_found"
REASON_EXPIRED = "expired"


@dataclass
class IssuedToken:
    token: str
    expires_at: datetime


@dataclass
class TokenValidation:
    valid: bool
    booking_id: Optional[str] = None
    account_id: Optional[str] = None
    reason: Optional[str] = None


class InvalidAutoLoginToken(AppError):
    def __init__(self, reason: str) -> None:
        super().__init__(
            status_code=401,
            code="AUTO_LOGIN_INVALID",
            message="Auto-login link is invalid or has expired",
            details={"reason": reason},
        )


def _well_formed(token: str) -> bool:
    return (
        isinstance(token, str)
        and len(token) == TOKEN_LENGTH
        and all(c in string.hexdigits for c in token)
    )


def build_auto_login_url(token: str, booking_id: str, base_url: str = PUBLIC_BASE_URL) -> str:
    query = urlencode({"token": token, "booking": booking_id})
    return f"{base_url.rstrip('/')}/auth/auto-login?{query}"


class AutoLoginTokenService:
    def __init__(self, db, *, ttl_hours: int = AUTO_LOGIN_TTL_HOURS) -> None:
        self.db = db
        self.ttl = timedelta(hours=ttl_hours)

    async def issue(self, booking_id: str, account_id: str) -> IssuedToken:
        """Mint a token for `booking_id`, replacing any earlier token for the same booking."""

        if not booking_id or not account_id:
            raise ValidationError("booking_id and account_id are required")

        token = secrets.token_hex(TOKEN_BYTES)
        now = now_utc()
        expires_at = now + self.ttl
        await self.db.auto_login_tokens.update_one(
            {"booking_id": booking_id},
            {
                "$set": {
                    "token_hash": sha256_hex(token),
                    "account_id": account_id,
                    "expires_at": expires_at,
                    "created_at": now,
                    "consumed_at": None,
                },
                "$setOnInsert": {"booking_id": booking_id},
            },
            upsert=True,
        )
        logger.info("Issued auto-login token for booking %s (expires %s)", booking_id, expires_at.isoformat())
        return IssuedToken(token=token, expires_at=expires_at)

    async def validate(
        self,
        token: str,
        *,
        booking_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> TokenValidation:
        """Redeem `token`. A token validates successfully at most once.

        When `booking_id` is given the token only matches if it was issued for
        that booking; a mismatch leaves the token untouched.
        """

        if not _well_formed(token):
            return TokenValidation(valid=False, reason=REASON_MALFORMED)

        current = ensure_utc(now or now_utc())
        query = {"token_hash": sha256_hex(token.lower())}
        if booking_id is not None:
            query["booking_id"] = booking_id
        before = await self.db.auto_login_tokens.find_one_and_update(
            query,
            {"$set": {"token_hash": None, "consumed_at": current}},
            return_document=ReturnDocument.BEFORE,
        )
        if before is None:
            return TokenValidation(valid=False, reason=REASON_NOT_FOUND)

        if ensure_utc(before["expires_at"]) <= current:
            logger.info("Expired auto-login token cleared for booking %s", before.get("booking_id"))
            return TokenValidation(
                valid=False,
                booking_id=before.get("booking_id"),
                reason=REASON_EXPIRED,
            )

        return TokenValidation(
            valid=True,
            booking_id=before.get("booking_id"),
            account_id=before.get("account_id"),
        )

    async def consume(
        self,
        token: str,
        *,
        booking_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> str:
        """Redeem `token` and return the account id, raising InvalidAutoLoginToken otherwise."""

        result = await self.validate(token, booking_id=booking_id, now=now)
        if not result.valid or not result.account_id:
            raise InvalidAutoLoginToken(result.reason or REASON_NOT_FOUND)
        return result.account_id
