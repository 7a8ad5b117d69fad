from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from rentals.repositories.base_repository import get_collection
from rentals.utils import now_utc


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class AccountRepository:
    """Guest accounts, keyed by a unique lower-cased email."""

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db
        self._col = get_collection(db, "accounts")

    async def find_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        return await self._col.find_one({"email": normalize_email(email)})

    async def get(self, account_id: str) -> Optional[Dict[str, Any]]:
        return await self._col.find_one({"_id": account_id})

    async def insert(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        """Insert an account. DuplicateKeyError means another request won the email."""

        doc = dict(doc)
        doc["email"] = normalize_email(doc["email"])
        await self._col.insert_one(doc)
        return doc


class BookingDocumentRepository:
    """Append-only evidence rows, at most one per (booking, type)."""

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db
        self._col = get_collection(db, "booking_documents")

    async def attach(
        self,
        *,
        booking_id: str,
        account_id: Optional[str],
        documents: Iterable[Dict[str, str]],
    ) -> int:
        """Insert documents that do not exist yet for this booking. Returns how many were new."""

        created = 0
        now = now_utc()
        for item in documents:
            res = await self._col.update_one(
                {"booking_id": booking_id, "type": item["type"]},
                {
                    "$setOnInsert": {
                        "booking_id": booking_id,
                        "account_id": account_id,
                        "type": item["type"],
                        "url": item["url"],
                        "created_at": now,
                    }
                },
                upsert=True,
            )
            if res.upserted_id is not None:
                created += 1
        return created

    async def list_for_booking(self, booking_id: str) -> List[Dict[str, Any]]:
        cursor = self._col.find({"booking_id": booking_id}).sort("created_at", 1)
        return await cursor.to_list(length=100)
