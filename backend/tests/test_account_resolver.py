from __future__ import annotations

import asyncio

import pytest
from pymongo.errors import PyMongoError

from rentals.domain.verification import Verified
from rentals.errors import AccountCreationError, ValidationError
from rentals.services.account_resolver import (
    ACCOUNT_SOURCE_BOOKING_FLOW,
    VERIFICATION_AI_VERIFIED,
    VERIFICATION_PENDING,
    AccountResolver,
)


CONTACT = {"email": "a@b.com", "name": "A B", "phone": "555-0100"}


@pytest.mark.anyio
async def test_same_email_resolves_to_same_account(test_db):
    resolver = AccountResolver(test_db)

    first = await resolver.resolve_or_create(CONTACT, booking_id="bkg_1")
    second = await resolver.resolve_or_create(
        {"email": "  A@B.COM ", "name": "Someone Else"}, booking_id="bkg_2"
    )

    assert first.is_new is True
    assert second.is_new is False
    assert second.account_id == first.account_id
    assert await test_db.accounts.count_documents({}) == 1

    account = await test_db.accounts.find_one({"_id": first.account_id})
    assert account["email"] == "a@b.com"
    # existing accounts are never overwritten by later bookings
    assert account["name"] == "A B"
    assert account["source"] == ACCOUNT_SOURCE_BOOKING_FLOW
    assert account["verification_status"] == VERIFICATION_PENDING


@pytest.mark.anyio
async def test_verified_documents_mark_account_ai_verified(test_db):
    resolver = AccountResolver(test_db)
    resolved = await resolver.resolve_or_create(
        CONTACT,
        booking_id="bkg_1",
        documents=[
            {"type": "LICENSE_FRONT", "url": "https://files.test/front.jpg"},
            {"type": "SELFIE", "url": "https://files.test/selfie.jpg"},
        ],
        verification=Verified(confidence=0.97),
    )

    account = await test_db.accounts.find_one({"_id": resolved.account_id})
    assert account["verification_status"] == VERIFICATION_AI_VERIFIED

    docs = await test_db.booking_documents.find({"booking_id": "bkg_1"}).to_list(length=10)
    assert {d["type"] for d in docs} == {"LICENSE_FRONT", "SELFIE"}
    assert all(d["account_id"] == resolved.account_id for d in docs)


@pytest.mark.anyio
async def test_concurrent_resolution_creates_one_account(test_db):
    resolver = AccountResolver(test_db)

    results = await asyncio.gather(
        *(resolver.resolve_or_create(CONTACT, booking_id=f"bkg_{i}") for i in range(4))
    )

    assert len({r.account_id for r in results}) == 1
    assert sum(1 for r in results if r.is_new) == 1
    assert await test_db.accounts.count_documents({"email": "a@b.com"}) == 1


@pytest.mark.anyio
async def test_lost_insert_race_resolves_to_winner(test_db, monkeypatch):
    await test_db.accounts.insert_one({"_id": "acct_winner", "email": "a@b.com"})
    resolver = AccountResolver(test_db)

    real_find = resolver.accounts.find_by_email
    calls = {"n": 0}

    async def find_misses_once(email):
        # the first lookup runs "before" the winner committed
        calls["n"] += 1
        if calls["n"] == 1:
            return None
        return await real_find(email)

    monkeypatch.setattr(resolver.accounts, "find_by_email", find_misses_once)

    resolved = await resolver.resolve_or_create(CONTACT, booking_id="bkg_1")
    assert resolved.account_id == "acct_winner"
    assert resolved.is_new is False
    assert calls["n"] == 2


@pytest.mark.anyio
async def test_store_failure_raises_account_creation_error(test_db, monkeypatch):
    resolver = AccountResolver(test_db)

    async def boom(doc):
        raise PyMongoError("connection reset")

    monkeypatch.setattr(resolver.accounts, "insert", boom)

    with pytest.raises(AccountCreationError) as exc:
        await resolver.resolve_or_create(CONTACT, booking_id="bkg_1")
    assert exc.value.retryable is True
    assert await test_db.accounts.count_documents({}) == 0


@pytest.mark.anyio
async def test_email_is_required(test_db):
    with pytest.raises(ValidationError):
        await AccountResolver(test_db).resolve_or_create({"email": "  "}, booking_id="bkg_1")
