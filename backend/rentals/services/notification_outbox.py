from __future__ import annotations

"""Durable outbox for guest/host notifications.

Producers call `publish`, which only writes a row and never raises for store
failures. The worker claims rows, replays them through a NotificationDispatcher
and applies retry/backoff; rows that exhaust `max_attempts` end up `dead` where
operators can inspect them and `requeue_dead` them.
"""

import logging
import uuid
from dataclasses import asdict, is_dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional

from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from rentals.config import NOTIFICATION_MAX_ATTEMPTS
from rentals.errors import ExternalDispatchError
from rentals.services.notifications import (
    BellPairNotice,
    BookingConfirmedNotice,
    GuestMessage,
    NotificationDispatcher,
)
from rentals.utils import now_utc

logger = logging.getLogger(__name__)

KIND_BOOKING_CONFIRMED = "booking.confirmed"
KIND_BELL_PAIR = "bell.pair"
KIND_GUEST_SMS = "guest.sms"

STATUS_PENDING = "pending"
STATUS_RUNNING = "running"
STATUS_FAILED = "failed"
STATUS_SENT = "sent"
STATUS_DEAD = "dead"

Handler = Callable[[NotificationDispatcher, Dict[str, Any]], Awaitable[None]]


async def _handle_booking_confirmed(dispatcher: NotificationDispatcher, payload: Dict[str, Any]) -> None:
    await dispatcher.notify_booking_confirmed(BookingConfirmedNotice.from_payload(payload))


async def _handle_bell_pair(dispatcher: NotificationDispatcher, payload: Dict[str, Any]) -> None:
    await dispatcher.notify_bell_pair(BellPairNotice.from_payload(payload))


async def _handle_guest_sms(dispatcher: NotificationDispatcher, payload: Dict[str, Any]) -> None:
    await dispatcher.notify_guest(GuestMessage.from_payload(payload))


HANDLERS: Dict[str, Handler] = {
    KIND_BOOKING_CONFIRMED: _handle_booking_confirmed,
    KIND_BELL_PAIR: _handle_bell_pair,
    KIND_GUEST_SMS: _handle_guest_sms,
}


async def enqueue_notification(
    db,
    *,
    kind: str,
    booking_id: str,
    payload: Any,
    max_attempts: int = NOTIFICATION_MAX_ATTEMPTS,
    run_at: Optional[datetime] = None,
) -> Dict[str, Any]:
    if kind not in HANDLERS:
        raise ValueError(f"unknown notification kind: {kind}")

    now = now_utc()
    doc: Dict[str, Any] = {
        "_id": str(uuid.uuid4()),
        "kind": kind,
        "booking_id": booking_id,
        "payload": asdict(payload) if is_dataclass(payload) else dict(payload or {}),
        "status": STATUS_PENDING,
        "attempts": 0,
        "max_attempts": max_attempts,
        "locked_by": None,
        "locked_at": None,
        "next_run_at": run_at or now,
        "last_error": None,
        "created_at": now,
        "updated_at": now,
    }
    await db.notification_outbox.insert_one(doc)
    return doc


async def publish(db, *, kind: str, booking_id: str, payload: Any) -> bool:
    """Enqueue a notification, logging instead of raising on store failure.

    Returns False when the row could not be written. The caller's state change
    has already been committed and stays committed either way.
    """

    try:
        await enqueue_notification(db, kind=kind, booking_id=booking_id, payload=payload)
    except PyMongoError as exc:
        err = ExternalDispatchError(
            "Could not enqueue notification",
            {"kind": kind, "booking_id": booking_id, "error": str(exc)},
        )
        logger.error("%s", err, exc_info=True)
        return False
    return True


async def claim_notification(
    db,
    *,
    worker_id: str,
    now: Optional[datetime] = None,
    lock_ttl_seconds: int = 300,
) -> Optional[Dict[str, Any]]:
    """Atomically claim the oldest due row. Stale locks from crashed workers are reclaimed."""

    if now is None:
        now = now_utc()
    lock_expiry = now - timedelta(seconds=lock_ttl_seconds)

    query = {
        "status": {"$in": [STATUS_PENDING, STATUS_FAILED, STATUS_RUNNING]},
        "next_run_at": {"$lte": now},
        "$or": [
            {"locked_at": None},
            {"locked_at": {"$lt": lock_expiry}},
        ],
    }
    return await db.notification_outbox.find_one_and_update(
        query,
        {
            "$set": {
                "status": STATUS_RUNNING,
                "locked_by": worker_id,
                "locked_at": now,
                "updated_at": now,
            }
        },
        sort=[("created_at", 1)],
        return_document=ReturnDocument.AFTER,
    )


def _compute_backoff(attempts: int, base_seconds: int = 30) -> timedelta:
    delay = base_seconds * (2 ** max(attempts - 1, 0))
    return timedelta(seconds=min(delay, 3600))


async def _mark_sent(db, row: Dict[str, Any], now: datetime) -> None:
    await db.notification_outbox.update_one(
        {"_id": row["_id"]},
        {
            "$set": {
                "status": STATUS_SENT,
                "attempts": int(row.get("attempts") or 0) + 1,
                "last_error": None,
                "locked_by": None,
                "locked_at": None,
                "sent_at": now,
                "updated_at": now,
            }
        },
    )


async def _mark_failed(db, row: Dict[str, Any], error: str, now: datetime) -> str:
    attempts = int(row.get("attempts") or 0) + 1
    max_attempts = int(row.get("max_attempts") or NOTIFICATION_MAX_ATTEMPTS)

    if attempts >= max_attempts:
        status = STATUS_DEAD
        next_run_at = None
    else:
        status = STATUS_FAILED
        next_run_at = now + _compute_backoff(attempts)

    await db.notification_outbox.update_one(
        {"_id": row["_id"]},
        {
            "$set": {
                "status": status,
                "attempts": attempts,
                "last_error": error,
                "next_run_at": next_run_at,
                "locked_by": None,
                "locked_at": None,
                "updated_at": now,
            }
        },
    )
    return status


async def process_notification(
    db,
    row: Dict[str, Any],
    dispatcher: NotificationDispatcher,
    *,
    now: Optional[datetime] = None,
) -> str:
    """Deliver one claimed row. Returns the row's resulting status."""

    now = now or now_utc()
    kind = row.get("kind") or ""
    handler = HANDLERS.get(kind)
    if handler is None:
        return await _mark_failed(db, row, f"NO_HANDLER for kind={kind}", now)

    try:
        await handler(dispatcher, row.get("payload") or {})
    except Exception as exc:
        status = await _mark_failed(db, row, str(exc), now)
        log = logger.error if status == STATUS_DEAD else logger.warning
        log("Notification %s (%s) for booking %s failed -> %s: %s", row["_id"], kind, row.get("booking_id"), status, exc)
        return status

    await _mark_sent(db, row, now)
    return STATUS_SENT


async def dispatch_pending_notifications(
    db,
    dispatcher: NotificationDispatcher,
    *,
    worker_id: str = "notification-worker",
    limit: int = 20,
    now: Optional[datetime] = None,
) -> int:
    """Claim and deliver up to `limit` due rows. Returns how many were processed."""

    processed = 0
    while processed < limit:
        row = await claim_notification(db, worker_id=worker_id, now=now)
        if row is None:
            break
        await process_notification(db, row, dispatcher, now=now)
        processed += 1
    return processed


async def requeue_dead(db, *, booking_id: Optional[str] = None) -> int:
    """Give dead rows a fresh set of attempts."""

    flt: Dict[str, Any] = {"status": STATUS_DEAD}
    if booking_id:
        flt["booking_id"] = booking_id
    now = now_utc()
    res = await db.notification_outbox.update_many(
        flt,
        {"$set": {"status": STATUS_PENDING, "attempts": 0, "next_run_at": now, "updated_at": now}},
    )
    return res.modified_count
