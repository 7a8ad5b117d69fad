"""Shared test configuration and fixtures for backend tests.

Key principles:
- No remote BASE_URL usage; all HTTP calls go through the local ASGI app.
- Single Motor/Mongo client per test session, one throwaway database per test.
- httpx.AsyncClient over ASGITransport for all HTTP tests.
- AnyIO is the single async runner via pytest-anyio (@pytest.mark.anyio).
- The payment gateway is always the in-memory FakeGateway; nothing talks to Stripe.
"""

from typing import Any, AsyncGenerator, Callable, Dict

import os
import uuid
from datetime import timedelta

import httpx
import pytest
from httpx import ASGITransport
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import PyMongoError

os.environ.setdefault("JWT_SECRET", "test_jwt_secret")
os.environ.setdefault("PUBLIC_BASE_URL", "https://rentals.test")

from server import app  # noqa: E402
from rentals.auth import ROLE_FLEET_REVIEWER, ROLE_GUEST, create_access_token  # noqa: E402
from rentals.db import get_db  # noqa: E402
from rentals.deps import get_payment_gateway  # noqa: E402
from rentals.indexes.rental_indexes import ensure_rental_indexes  # noqa: E402
from rentals.schemas_bookings import BookingCreateRequest  # noqa: E402
from rentals.services.payment_authorization import PaymentAuthorizationService  # noqa: E402
from rentals.utils import now_utc  # noqa: E402
from tests.fakes import FakeGateway, RecordingDispatcher  # noqa: E402


MONGO_URL = os.environ.get("TEST_MONGO_URL") or os.environ.get("MONGO_URL", "mongodb://localhost:27017")

CAR_ID = "car1"
HOST_ID = "host1"


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    """Force pytest-anyio to use asyncio event loop."""

    return "asyncio"


@pytest.fixture(scope="session")
async def motor_client() -> AsyncGenerator[AsyncIOMotorClient, None]:
    """Session-scoped Motor client. Tests needing Mongo are skipped when it is unreachable."""

    client = AsyncIOMotorClient(MONGO_URL, serverSelectionTimeoutMS=2000)
    try:
        await client.admin.command("ping")
    except PyMongoError as exc:
        client.close()
        pytest.skip(f"MongoDB not reachable at {MONGO_URL}: {exc}")
    try:
        yield client
    finally:
        client.close()


@pytest.fixture(scope="function")
async def test_db(motor_client: AsyncIOMotorClient) -> AsyncGenerator[Any, None]:
    """Function-scoped isolated database with production indexes, dropped on teardown."""

    db_name = f"rentals_test_{uuid.uuid4().hex}"
    db = motor_client[db_name]
    await ensure_rental_indexes(db)
    try:
        yield db
    finally:
        await motor_client.drop_database(db_name)


@pytest.fixture
async def seeded_catalog(test_db) -> Dict[str, str]:
    """One approved host with one active car, plus an inactive car and an unapproved host."""

    await test_db.hosts.insert_many(
        [
            {"_id": HOST_ID, "name": "Hana Host", "email": "host@rentals.test", "phone": "555-0199", "approval_status": "APPROVED"},
            {"_id": "host_pending", "name": "Pat Pending", "approval_status": "PENDING"},
        ]
    )
    await test_db.cars.insert_many(
        [
            {
                "_id": CAR_ID,
                "host_id": HOST_ID,
                "is_active": True,
                "daily_rate": 150.0,
                "deposit_amount": 200.0,
                "make": "Tesla",
                "model": "Model 3",
                "year": 2024,
            },
            {"_id": "car_inactive", "host_id": HOST_ID, "is_active": False, "daily_rate": 90.0},
            {"_id": "car_unapproved_host", "host_id": "host_pending", "is_active": True, "daily_rate": 90.0},
        ]
    )
    return {"car_id": CAR_ID, "host_id": HOST_ID}


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def payments(test_db, fake_gateway) -> PaymentAuthorizationService:
    return PaymentAuthorizationService(test_db, fake_gateway, timeout_seconds=1.0)


@pytest.fixture
def booking_request() -> Callable[..., BookingCreateRequest]:
    """Factory for the canonical visitor booking (+2d .. +5d, 450.00 + 200.00 deposit)."""

    def _make(**overrides: Any) -> BookingCreateRequest:
        now = now_utc()
        data: Dict[str, Any] = {
            "car_id": CAR_ID,
            "start_date": now + timedelta(days=2),
            "end_date": now + timedelta(days=5),
            "total_amount": 450.00,
            "security_deposit": 200.00,
            "guest": {"email": "a@b.com", "name": "A B", "phone": "555-0100"},
        }
        data.update(overrides)
        return BookingCreateRequest(**data)

    return _make


@pytest.fixture(scope="function")
async def app_with_overrides(test_db, fake_gateway) -> AsyncGenerator[Any, None]:
    """FastAPI app whose get_db and gateway dependencies point at the test doubles."""

    async def override_get_db():
        yield test_db

    async def override_gateway():
        return fake_gateway

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_gateway] = override_gateway
    try:
        yield app
    finally:
        app.dependency_overrides.clear()


@pytest.fixture(scope="function")
async def async_client(app_with_overrides) -> AsyncGenerator[httpx.AsyncClient, None]:
    transport = ASGITransport(app=app_with_overrides)
    async with httpx.AsyncClient(transport=transport, base_url="http://test", timeout=30.0) as client:
        yield client


@pytest.fixture
def reviewer_headers() -> Dict[str, str]:
    token = create_access_token(subject="reviewer-1", roles=[ROLE_FLEET_REVIEWER])
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def guest_headers() -> Callable[[str], Dict[str, str]]:
    def _make(account_id: str) -> Dict[str, str]:
        token = create_access_token(subject=account_id, roles=[ROLE_GUEST])
        return {"Authorization": f"Bearer {token}"}

    return _make
