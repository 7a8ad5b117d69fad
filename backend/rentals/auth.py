from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import jwt
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from rentals.config import GUEST_SESSION_MINUTES

bearer_scheme = HTTPBearer(auto_error=False)

ROLE_GUEST = "guest"
ROLE_FLEET_REVIEWER = "fleet_reviewer"


def _jwt_secret() -> str:
    # Default only for dev/testing.
    return os.environ.get("JWT_SECRET", "dev_jwt_secret_change_me")


def create_access_token(
    *,
    subject: str,
    roles: list[str],
    minutes: int = GUEST_SESSION_MINUTES,
    extra: Optional[dict[str, Any]] = None,
) -> str:
    now = datetime.now(timezone.utc)
    payload: dict[str, Any] = {
        "sub": subject,
        "roles": roles,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=minutes)).timestamp()),
    }
    if extra:
        payload.update(extra)
    return jwt.encode(payload, _jwt_secret(), algorithm="HS256")


def decode_token(token: str) -> dict[str, Any]:
    try:
        return jwt.decode(token, _jwt_secret(), algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")


async def get_current_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> dict[str, Any]:
    if credentials is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return decode_token(credentials.credentials)


def require_roles(required: list[str]):
    async def _dep(principal: dict[str, Any] = Depends(get_current_principal)) -> dict[str, Any]:
        roles = set(principal.get("roles") or [])
        if not roles.intersection(set(required)):
            raise HTTPException(status_code=403, detail="Forbidden")
        return principal

    return _dep


async def get_reviewer(principal: dict[str, Any] = Depends(require_roles([ROLE_FLEET_REVIEWER]))) -> str:
    """Reviewer identity string stamped on adjudicated bookings."""
    return str(principal.get("sub") or "")
