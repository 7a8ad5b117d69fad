from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from fastapi import FastAPI
from starlette.middleware.cors import CORSMiddleware

ROOT_DIR = Path(__file__).parent

# Load .env only if exists (development fallback); must run before rentals.config is imported
env_path = ROOT_DIR / ".env"
if env_path.exists():
    load_dotenv(env_path)

from rentals.config import APP_NAME, APP_VERSION, ENABLE_NOTIFICATION_WORKER, STRIPE_API_KEY  # noqa: E402
from rentals.db import close_mongo, connect_mongo, get_db, ping_db  # noqa: E402
from rentals.exception_handlers import register_exception_handlers  # noqa: E402
from rentals.indexes.rental_indexes import ensure_rental_indexes  # noqa: E402
from rentals.middleware.correlation_id import CorrelationIdMiddleware  # noqa: E402
from rentals.notification_worker import notification_dispatch_loop  # noqa: E402
from rentals.routers.auto_login import router as auto_login_router  # noqa: E402
from rentals.routers.bookings import router as bookings_router  # noqa: E402
from rentals.routers.fleet_review import router as fleet_review_router  # noqa: E402
from rentals.services.notifications import InAppNotificationDispatcher  # noqa: E402
from rentals.services.payment_gateway import StripeGateway  # noqa: E402
from rentals.services.sms.provider import get_sms_provider  # noqa: E402

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("rentals-core")

app = FastAPI(title=APP_NAME, version=APP_VERSION)

app.add_middleware(CorrelationIdMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get("CORS_ORIGINS", "*").split(","),
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

# Routers (/api prefix is on each router)
app.include_router(bookings_router)
app.include_router(fleet_review_router)
app.include_router(auto_login_router)

app.state.payment_gateway = None
app.state.notification_dispatcher = None


@app.get("/api/health")
async def health() -> dict[str, Any]:
    """Health check with database ping"""
    return {
        "ok": await ping_db(),
        "service": "rentals-core",
        "payments_configured": app.state.payment_gateway is not None,
    }


@app.on_event("startup")
async def _startup() -> None:
    await connect_mongo()
    db = await get_db()
    await ensure_rental_indexes(db)

    if STRIPE_API_KEY:
        app.state.payment_gateway = StripeGateway(STRIPE_API_KEY)
    else:
        logger.warning("STRIPE_API_KEY is not set; booking creation will answer 503")

    dispatcher = InAppNotificationDispatcher(db, get_sms_provider(os.environ.get("SMS_PROVIDER", "mock")))
    app.state.notification_dispatcher = dispatcher
    logger.info("Startup complete")

    if ENABLE_NOTIFICATION_WORKER:
        app.state.notification_task = asyncio.create_task(notification_dispatch_loop(dispatcher))


@app.on_event("shutdown")
async def _shutdown() -> None:
    task = getattr(app.state, "notification_task", None)
    if task is not None:
        task.cancel()
    await close_mongo()
    logger.info("Shutdown complete")
