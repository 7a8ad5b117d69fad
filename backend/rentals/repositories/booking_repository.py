from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, ReturnDocument

from rentals.domain.booking_states import FleetStatus, PaymentStatus
from rentals.repositories.base_repository import get_collection, stamp_updated
from rentals.utils import now_utc


class BookingRepository:
    """Durable booking records.

    State changes that other actors may race on go through `transition`, which
    is a single conditional `find_one_and_update`; plain `set_fields` is only
    used for writes that no other actor contends for (audit fields, failure
    reasons recorded by the owning request).
    """

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db
        self._col = get_collection(db, "bookings")

    async def insert(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a new booking. Propagates DuplicateKeyError on reference_id collisions."""

        await self._col.insert_one(doc)
        return doc

    async def get(self, booking_id: str) -> Optional[Dict[str, Any]]:
        return await self._col.find_one({"_id": booking_id})

    async def get_by_reference(self, reference_id: str) -> Optional[Dict[str, Any]]:
        return await self._col.find_one({"reference_id": reference_id})

    async def set_fields(self, booking_id: str, updates: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return await self._col.find_one_and_update(
            {"_id": booking_id},
            {"$set": stamp_updated(updates, now_utc())},
            return_document=ReturnDocument.AFTER,
        )

    async def transition(
        self,
        booking_id: str,
        *,
        expected: Dict[str, Any],
        updates: Dict[str, Any],
    ) -> Optional[Dict[str, Any]]:
        """Apply `updates` only if every field in `expected` still matches.

        `expected` values may be plain values or Mongo operator dicts
        (e.g. ``{"$in": [...]}``). Returns the updated document, or None when
        the guard did not match (booking missing or state already moved on).
        """

        query: Dict[str, Any] = {"_id": booking_id}
        query.update(expected)
        return await self._col.find_one_and_update(
            query,
            {"$set": stamp_updated(updates, now_utc())},
            return_document=ReturnDocument.AFTER,
        )

    async def list_pending_review(self, limit: int = 50) -> List[Dict[str, Any]]:
        """FIFO fleet queue: oldest submitted first."""

        cursor = (
            self._col.find(
                {
                    "fleet_status": FleetStatus.PENDING.value,
                    "payment_status": PaymentStatus.AUTHORIZED.value,
                }
            )
            .sort([("created_at", ASCENDING), ("_id", ASCENDING)])
            .limit(limit)
        )
        return await cursor.to_list(length=limit)

    async def count(self, flt: Dict[str, Any]) -> int:
        return await self._col.count_documents(flt)

    async def list_reviewed_since(self, since: datetime, *, limit: int = 1000) -> List[Dict[str, Any]]:
        cursor = self._col.find(
            {
                "fleet_status": {"$in": [FleetStatus.APPROVED.value, FleetStatus.REJECTED.value]},
                "fleet_reviewed_at": {"$gte": since},
            },
            {"fleet_status": 1, "fleet_reviewed_at": 1, "created_at": 1},
        ).sort("fleet_reviewed_at", -1).limit(limit)
        return await cursor.to_list(length=limit)
