from __future__ import annotations

import asyncio
import logging
import socket

from rentals.db import get_db
from rentals.services.notification_outbox import dispatch_pending_notifications
from rentals.services.notifications import NotificationDispatcher

logger = logging.getLogger("notification_worker")


async def notification_dispatch_loop(dispatcher: NotificationDispatcher, *, sleep_seconds: float = 5) -> None:
    """Background loop that drains the notification outbox."""
    db = await get_db()
    worker_id = f"{socket.gethostname()}-notifications"
    while True:
        try:
            processed = await dispatch_pending_notifications(db, dispatcher, worker_id=worker_id)
            if processed:
                logger.info("Notification worker processed %s rows", processed)
        except Exception as e:  # pragma: no cover
            logger.error("Notification worker loop error: %s", e, exc_info=True)

        await asyncio.sleep(sleep_seconds)
