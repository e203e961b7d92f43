"""Storage layer: atomic enqueue/debit, conditional pair claim, ledger."""

import asyncio

import pytest

from conftest import seed_user
from matchmaking.database import CREDIT_CHARGE, CREDIT_MATCH
from matchmaking.models import EnqueueStatus, Gender


@pytest.mark.asyncio
async def test_enqueue_debits_and_logs(store):
    await seed_user(store, "x", "male", credit=25)
    status, entry = await store.enqueue_waiting("x", Gender.MALE, 10)
    assert status is EnqueueStatus.OK
    assert entry.is_waiting and entry.gender is Gender.MALE
    assert await store.get_credit("x") == 15
    logs = await store.get_credit_logs("x")
    assert [(l["action"], l["amount"]) for l in logs] == [(CREDIT_MATCH, -10)]


@pytest.mark.asyncio
async def test_enqueue_unknown_user(store):
    status, entry = await store.enqueue_waiting("ghost", Gender.MALE, 10)
    assert status is EnqueueStatus.UNKNOWN_USER
    assert entry is None


@pytest.mark.asyncio
async def test_enqueue_insufficient_balance_changes_nothing(store):
    await seed_user(store, "x", "male", credit=9)
    status, entry = await store.enqueue_waiting("x", Gender.MALE, 10)
    assert status is EnqueueStatus.INSUFFICIENT_BALANCE
    assert entry is None
    assert await store.get_credit("x") == 9
    assert await store.get_credit_logs("x") == []
    assert await store.get_queue_history("x") == []


@pytest.mark.asyncio
async def test_concurrent_enqueue_keeps_one_waiting_entry(store):
    await seed_user(store, "x", "male", credit=100)
    results = await asyncio.gather(*[store.enqueue_waiting("x", Gender.MALE, 10) for _ in range(5)])
    statuses = [s for s, _ in results]
    assert statuses.count(EnqueueStatus.OK) == 1
    assert statuses.count(EnqueueStatus.ALREADY_WAITING) == 4
    assert await store.get_credit("x") == 90
    assert len(await store.get_queue_history("x")) == 1


@pytest.mark.asyncio
async def test_claim_pair_is_single_shot(store):
    await seed_user(store, "a", "male")
    await seed_user(store, "b", "female")
    _, a = await store.enqueue_waiting("a", Gender.MALE, 10)
    _, b = await store.enqueue_waiting("b", Gender.FEMALE, 10)

    room = await store.claim_pair(a, b)
    assert room is not None
    assert await store.claim_pair(a, b) is None
    assert not await store.is_entry_waiting(a.id)
    assert not await store.is_entry_waiting(b.id)
    assert len(await store.get_chat_rooms("a")) == 1


@pytest.mark.asyncio
async def test_claim_pair_rolls_back_when_one_side_is_gone(store):
    await seed_user(store, "a", "male")
    await seed_user(store, "b", "female")
    _, a = await store.enqueue_waiting("a", Gender.MALE, 10)
    _, b = await store.enqueue_waiting("b", Gender.FEMALE, 10)
    assert await store.cancel_waiting("b")

    assert await store.claim_pair(a, b) is None
    # a's flip was undone together with the failed claim
    assert await store.is_entry_waiting(a.id)
    assert await store.get_chat_rooms("a") == []


@pytest.mark.asyncio
async def test_oldest_waiting_is_fifo_and_skips_self(store):
    for uid in ("f1", "f2"):
        await seed_user(store, uid, "female")
        await store.enqueue_waiting(uid, Gender.FEMALE, 10)
    oldest = await store.oldest_waiting(Gender.FEMALE, exclude_user_id="m1")
    assert oldest.user_id == "f1"
    oldest = await store.oldest_waiting(Gender.FEMALE, exclude_user_id="f1")
    assert oldest.user_id == "f2"
    assert await store.oldest_waiting(Gender.MALE, exclude_user_id="f1") is None


@pytest.mark.asyncio
async def test_charge_credit(store):
    await seed_user(store, "x", "male", credit=0)
    assert await store.charge_credit("x", 30) == 30
    assert await store.charge_credit("ghost", 30) is None
    logs = await store.get_credit_logs("x")
    assert logs[0]["action"] == CREDIT_CHARGE and logs[0]["amount"] == 30


@pytest.mark.asyncio
async def test_save_user_keeps_balance_on_update(store):
    await seed_user(store, "x", "male", credit=50)
    await seed_user(store, "x", "male", credit=0, city="Busan")
    user = await store.get_user("x")
    assert user["credit"] == 50
    assert user["city"] == "Busan"


@pytest.mark.asyncio
async def test_public_profile_projection(store):
    await seed_user(store, "x", "female", profile_images=["a.jpg", "b.jpg"])
    profile = await store.get_public_profile("x")
    assert profile.id == "x"
    assert profile.profile_images == ["a.jpg", "b.jpg"]
    assert await store.get_public_profile("ghost") is None
