from __future__ import annotations

from datetime import timedelta

import pytest

from rentals.deps import get_payment_gateway
from rentals.utils import now_utc
from tests.fakes import make_booking_doc


async def _insert(test_db, booking_id: str, **overrides):
    doc = make_booking_doc(booking_id, **overrides)
    await test_db.bookings.insert_one(doc)
    return doc


@pytest.mark.anyio
async def test_fleet_endpoints_require_reviewer(async_client, guest_headers):
    resp = await async_client.get("/api/fleet/bookings/pending")
    assert resp.status_code == 401

    resp = await async_client.get("/api/fleet/bookings/pending", headers=guest_headers("acct_1"))
    assert resp.status_code == 403


@pytest.mark.anyio
async def test_pending_queue_and_detail(async_client, test_db, reviewer_headers):
    await _insert(test_db, "bkg_1")

    resp = await async_client.get("/api/fleet/bookings/pending", headers=reviewer_headers)
    assert resp.status_code == 200
    data = resp.json()
    assert data["count"] == 1
    assert data["items"][0]["id"] == "bkg_1"

    detail = await async_client.get("/api/fleet/bookings/bkg_1", headers=reviewer_headers)
    assert detail.status_code == 200
    assert detail.json()["documents"] == []


@pytest.mark.anyio
async def test_approve_twice_is_conflict(async_client, test_db, seeded_catalog, reviewer_headers):
    await _insert(test_db, "bkg_1")

    resp = await async_client.post("/api/fleet/bookings/bkg_1/approve", json={}, headers=reviewer_headers)
    assert resp.status_code == 200
    assert resp.json()["fleet_reviewed_by"] == "reviewer-1"

    again = await async_client.post("/api/fleet/bookings/bkg_1/approve", json={}, headers=reviewer_headers)
    assert again.status_code == 409
    assert again.json()["error"]["message"] == "already approved"


@pytest.mark.anyio
async def test_reject_needs_reason_and_releases_hold(async_client, test_db, fake_gateway, reviewer_headers):
    await _insert(test_db, "bkg_1")

    resp = await async_client.post("/api/fleet/bookings/bkg_1/reject", json={}, headers=reviewer_headers)
    assert resp.status_code == 422

    resp = await async_client.post(
        "/api/fleet/bookings/bkg_1/reject", json={"reason": "licence expired"}, headers=reviewer_headers
    )
    assert resp.status_code == 200
    assert resp.json()["payment_status"] == "CANCELLED"
    assert len(fake_gateway.calls_for("cancel")) == 1


@pytest.mark.anyio
async def test_document_request_and_guest_resubmission(async_client, test_db, reviewer_headers, guest_headers):
    await _insert(test_db, "bkg_1")

    resp = await async_client.post(
        "/api/fleet/bookings/bkg_1/request-documents",
        json={"documents_needed": ["LICENSE_BACK"], "message": "Back side please"},
        headers=reviewer_headers,
    )
    assert resp.status_code == 200
    assert resp.json()["fleet_status"] == "NEEDS_INFO"

    docs = {"documents": [{"type": "LICENSE_BACK", "url": "https://files.test/back.jpg"}]}
    stranger = await async_client.post(
        "/api/rentals/bookings/bkg_1/documents", json=docs, headers=guest_headers("acct_other")
    )
    assert stranger.status_code == 404

    resp = await async_client.post("/api/rentals/bookings/bkg_1/documents", json=docs, headers=guest_headers("acct_1"))
    assert resp.status_code == 200
    assert resp.json()["fleet_status"] == "PENDING"


@pytest.mark.anyio
async def test_capture_and_deposit_release(async_client, test_db, fake_gateway, reviewer_headers):
    await _insert(test_db, "bkg_1")
    await _insert(
        test_db,
        "bkg_done",
        status="CONFIRMED",
        fleet_status="APPROVED",
        payment_status="PAID",
        captured_minor=65000,
        start_date=now_utc() - timedelta(days=4),
        end_date=now_utc() - timedelta(days=1),
    )

    early = await async_client.post("/api/fleet/bookings/bkg_1/capture", json={}, headers=reviewer_headers)
    assert early.status_code == 409

    await async_client.post("/api/fleet/bookings/bkg_1/approve", json={}, headers=reviewer_headers)
    resp = await async_client.post(
        "/api/fleet/bookings/bkg_1/capture", json={"amount_minor": 45000}, headers=reviewer_headers
    )
    assert resp.status_code == 200
    assert resp.json() == {"booking_id": "bkg_1", "charge_ref": "ch_pi_bkg_1", "captured_minor": 45000}

    released = await async_client.post("/api/fleet/bookings/bkg_done/release-deposit", headers=reviewer_headers)
    assert released.status_code == 200
    assert released.json()["amount_minor"] == 20000
    assert released.json()["status"] == "COMPLETED"


@pytest.mark.anyio
async def test_guest_cancel_endpoint(async_client, test_db, fake_gateway, guest_headers):
    await _insert(test_db, "bkg_1")

    stranger = await async_client.post(
        "/api/rentals/bookings/bkg_1/cancel", json={"reason": "nope"}, headers=guest_headers("acct_other")
    )
    assert stranger.status_code == 404

    resp = await async_client.post(
        "/api/rentals/bookings/bkg_1/cancel", json={"reason": "plans changed"}, headers=guest_headers("acct_1")
    )
    assert resp.status_code == 200
    assert resp.json()["status"] == "CANCELLED"
    assert resp.json()["cancelled_by"] == "GUEST"


@pytest.mark.anyio
async def test_stats_endpoint(async_client, test_db, reviewer_headers):
    await _insert(test_db, "bkg_1")

    resp = await async_client.get("/api/fleet/bookings/stats", headers=reviewer_headers)
    assert resp.status_code == 200
    assert resp.json() == {
        "pending": 1,
        "approved_today": 0,
        "rejected_today": 0,
        "needs_info": 0,
        "avg_review_minutes": 0.0,
    }


@pytest.mark.anyio
async def test_queue_reads_work_without_a_payment_gateway(
    app_with_overrides, async_client, test_db, seeded_catalog, reviewer_headers
):
    app_with_overrides.dependency_overrides.pop(get_payment_gateway)
    await _insert(test_db, "bkg_1")

    pending = await async_client.get("/api/fleet/bookings/pending", headers=reviewer_headers)
    assert pending.status_code == 200
    assert pending.json()["count"] == 1
    stats = await async_client.get("/api/fleet/bookings/stats", headers=reviewer_headers)
    assert stats.status_code == 200
    detail = await async_client.get("/api/fleet/bookings/bkg_1", headers=reviewer_headers)
    assert detail.status_code == 200

    reject = await async_client.post(
        "/api/fleet/bookings/bkg_1/reject", json={"reason": "licence expired"}, headers=reviewer_headers
    )
    assert reject.status_code == 503
    assert reject.json()["error"]["code"] == "PAYMENT_GATEWAY_UNAVAILABLE"

    now = now_utc()
    create = await async_client.post(
        "/api/rentals/bookings",
        json={
            "car_id": "car1",
            "start_date": (now + timedelta(days=2)).isoformat(),
            "end_date": (now + timedelta(days=5)).isoformat(),
            "total_amount": 450.0,
            "guest": {"email": "new@b.com", "name": "New Guest"},
        },
    )
    assert create.status_code == 503
    assert await test_db.bookings.count_documents({}) == 1
    booking = await test_db.bookings.find_one({"_id": "bkg_1"})
    assert booking["fleet_status"] == "PENDING"


@pytest.mark.anyio
async def test_reviewer_can_requeue_dead_notifications(async_client, test_db, reviewer_headers, guest_headers):
    await test_db.notification_outbox.insert_many(
        [
            {"_id": "n1", "kind": "guest.sms", "booking_id": "bkg_1", "status": "dead", "attempts": 5},
            {"_id": "n2", "kind": "guest.sms", "booking_id": "bkg_2", "status": "dead", "attempts": 5},
        ]
    )

    forbidden = await async_client.post(
        "/api/fleet/bookings/bkg_1/notifications/requeue", headers=guest_headers("acct_1")
    )
    assert forbidden.status_code == 403

    resp = await async_client.post("/api/fleet/bookings/bkg_1/notifications/requeue", headers=reviewer_headers)
    assert resp.status_code == 200
    assert resp.json() == {"booking_id": "bkg_1", "requeued": 1}
    row = await test_db.notification_outbox.find_one({"_id": "n1"})
    assert row["status"] == "pending"
    assert row["attempts"] == 0
    untouched = await test_db.notification_outbox.find_one({"_id": "n2"})
    assert untouched["status"] == "dead"
