from __future__ import annotations

"""Redeem the auto-login link sent to freshly bootstrapped guests."""

import logging

from fastapi import APIRouter, Depends, Query

from rentals.auth import ROLE_GUEST, create_access_token
from rentals.db import get_db
from rentals.schemas_bookings import AutoLoginResponse
from rentals.services.auto_login import AutoLoginTokenService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auto_login"])


@router.get("/auto-login", response_model=AutoLoginResponse)
async def auto_login(
    token: str = Query(..., min_length=1, max_length=128),
    booking: str = Query(..., min_length=1),
    db=Depends(get_db),
):
    account_id = await AutoLoginTokenService(db).consume(token, booking_id=booking)
    access_token = create_access_token(subject=account_id, roles=[ROLE_GUEST], extra={"booking_id": booking})
    logger.info("Auto-login redeemed for booking %s", booking)
    return AutoLoginResponse(access_token=access_token, account_id=account_id, booking_id=booking)
