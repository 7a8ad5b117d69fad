from __future__ import annotations

from typing import Any, Dict

from motor.motor_asyncio import AsyncIOMotorCollection, AsyncIOMotorDatabase


def get_collection(db: AsyncIOMotorDatabase, name: str) -> AsyncIOMotorCollection:
    """Return a Motor collection from the given database.

    This is the only place where repositories should obtain collections.
    """

    return db[name]


def stamp_updated(updates: Dict[str, Any], now) -> Dict[str, Any]:
    """Copy `updates` and add `updated_at` unless the caller already set it."""

    out = dict(updates or {})
    out.setdefault("updated_at", now)
    return out
