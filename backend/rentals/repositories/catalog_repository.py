from __future__ import annotations

from typing import Any, Dict, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from rentals.repositories.base_repository import get_collection


HOST_APPROVED = "APPROVED"


class CatalogRepository:
    """Read-only access to cars and their hosts."""

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db
        self._cars = get_collection(db, "cars")
        self._hosts = get_collection(db, "hosts")

    async def get_car(self, car_id: str) -> Optional[Dict[str, Any]]:
        return await self._cars.find_one({"_id": car_id})

    async def get_host(self, host_id: str) -> Optional[Dict[str, Any]]:
        return await self._hosts.find_one({"_id": host_id})


def car_summary(car: Dict[str, Any]) -> str:
    parts = [str(car.get(k)) for k in ("year", "make", "model") if car.get(k)]
    return " ".join(parts) or str(car.get("_id"))
