"""
Indexes backing the booking core.

Several invariants depend on these existing (unique email, unique reference
id, one token per booking, one document per type per booking), so startup
must call `ensure_rental_indexes` before serving traffic.
"""
from __future__ import annotations

import logging

from pymongo import ASCENDING, DESCENDING
from pymongo.errors import OperationFailure

logger = logging.getLogger(__name__)


async def ensure_rental_indexes(db) -> None:
    async def _safe_create(collection, *args, **kwargs):
        try:
            await collection.create_index(*args, **kwargs)
        except OperationFailure as e:
            msg = str(e).lower()
            if (
                "indexoptionsconflict" in msg
                or "indexkeyspecsconflict" in msg
                or "already exists" in msg
            ):
                logger.warning(
                    "[rental_indexes] Keeping existing index for %s (name=%s): %s",
                    collection.name,
                    kwargs.get("name"),
                    msg,
                )
                return
            raise

    # bookings
    await _safe_create(db.bookings, [("reference_id", ASCENDING)], unique=True, name="uniq_booking_reference")
    await _safe_create(
        db.bookings,
        [("fleet_status", ASCENDING), ("payment_status", ASCENDING), ("created_at", ASCENDING)],
        name="fleet_queue_fifo",
    )
    await _safe_create(
        db.bookings,
        [("fleet_status", ASCENDING), ("fleet_reviewed_at", DESCENDING)],
        name="fleet_reviewed",
    )
    await _safe_create(db.bookings, [("account_id", ASCENDING), ("created_at", DESCENDING)], name="bookings_by_account")

    # accounts
    await _safe_create(db.accounts, [("email", ASCENDING)], unique=True, name="uniq_account_email")

    # auto-login tokens
    await _safe_create(db.auto_login_tokens, [("booking_id", ASCENDING)], unique=True, name="uniq_token_booking")
    await _safe_create(db.auto_login_tokens, [("token_hash", ASCENDING)], name="token_lookup")

    # booking documents
    await _safe_create(
        db.booking_documents,
        [("booking_id", ASCENDING), ("type", ASCENDING)],
        unique=True,
        name="uniq_document_type_per_booking",
    )

    # notification outbox
    await _safe_create(
        db.notification_outbox,
        [("status", ASCENDING), ("next_run_at", ASCENDING), ("created_at", ASCENDING)],
        name="outbox_claim",
    )
    await _safe_create(db.notification_outbox, [("booking_id", ASCENDING)], name="outbox_by_booking")
