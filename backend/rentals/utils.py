from __future__ import annotations

import hashlib
import secrets
import string
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Union

from bson import ObjectId


REFERENCE_ALPHABET = string.digits + string.ascii_uppercase
REFERENCE_PREFIX = "BK"
REFERENCE_LENGTH = 6

CENT = Decimal("0.01")


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Return `value` as an aware UTC datetime.

    Mongo hands back naive datetimes unless the client is tz-aware; those are
    already UTC, so we only attach the zone.
    """

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def start_of_utc_day(value: datetime | None = None) -> datetime:
    current = ensure_utc(value or now_utc())
    return current.replace(hour=0, minute=0, second=0, microsecond=0)


def serialize_doc(doc: Any) -> Any:
    """Recursively convert MongoDB docs into JSON-serializable structures."""
    if doc is None:
        return None

    if isinstance(doc, ObjectId):
        return str(doc)

    if isinstance(doc, datetime):
        return ensure_utc(doc).isoformat()

    if isinstance(doc, list):
        return [serialize_doc(x) for x in doc]

    if isinstance(doc, dict):
        out: dict[str, Any] = {}
        for k, v in doc.items():
            if k == "_id":
                out["id"] = serialize_doc(v)
            else:
                out[k] = serialize_doc(v)
        return out

    return doc


def generate_reference_id() -> str:
    """Human-presentable booking reference, e.g. ``BK-7Q2ZKD``."""
    body = "".join(secrets.choice(REFERENCE_ALPHABET) for _ in range(REFERENCE_LENGTH))
    return f"{REFERENCE_PREFIX}-{body}"


def to_decimal(value: Union[int, float, str, Decimal]) -> Decimal:
    if isinstance(value, Decimal):
        return value
    # str() first so 0.1 stays 0.1 instead of its binary expansion
    return Decimal(str(value))


def round_money(value: Union[int, float, str, Decimal]) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Union[int, float, str, Decimal]) -> int:
    """Convert a decimal currency amount to integer cents (round half up)."""
    return int(round_money(amount) * 100)


def sha256_hex(raw: str) -> str:
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()
