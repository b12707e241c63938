"""Unit tests for the rolling chat quota."""

import asyncio
from datetime import timedelta

import pytest

from cobra_chat.services.quota_tracker import QUOTA_ROOT, QuotaTracker, format_time_until_reset
from cobra_chat.utils.errors import QuotaExceededError, ValidationError


@pytest.fixture
def quota(store, clock):
    return QuotaTracker(store, limit=5, window=timedelta(hours=5), clock=clock)


@pytest.mark.asyncio
async def test_first_check_opens_a_window(quota, store, clock):
    status = await quota.check("u1")

    assert status.count == 0
    assert status.allowed
    assert status.remaining == 5
    assert status.reset_at == clock.now + timedelta(hours=5)
    assert store.snapshot()[QUOTA_ROOT]["u1"]["count"] == 0


@pytest.mark.asyncio
async def test_limit_is_enforced(quota):
    for expected in range(1, 6):
        status = await quota.increment("u1")
        assert status.count == expected
        assert status.remaining == 5 - expected

    assert not (await quota.check("u1")).allowed
    with pytest.raises(QuotaExceededError) as exc_info:
        await quota.increment("u1")
    assert exc_info.value.status.remaining == 0
    assert exc_info.value.status.count == 5


@pytest.mark.asyncio
async def test_window_resets_lazily(quota, clock):
    for _ in range(5):
        await quota.increment("u1")

    clock.advance(hours=4, minutes=59)
    assert not (await quota.check("u1")).allowed

    clock.advance(minutes=1)
    status = await quota.check("u1")
    assert status.allowed
    assert status.count == 0
    assert status.reset_at == clock.now + timedelta(hours=5)


@pytest.mark.asyncio
async def test_users_are_independent(quota):
    for _ in range(5):
        await quota.increment("u1")

    assert (await quota.check("u2")).remaining == 5


@pytest.mark.asyncio
async def test_check_fails_open_when_store_is_down(quota, store):
    store.fail_reads = True

    status = await quota.check("u1")

    assert status.allowed
    assert status.degraded
    assert status.remaining == 5


@pytest.mark.asyncio
async def test_empty_user_id_is_rejected(quota):
    with pytest.raises(ValidationError):
        await quota.check("")


@pytest.mark.asyncio
async def test_concurrent_increments_never_go_negative(quota):
    results = await asyncio.gather(*(quota.increment("u1") for _ in range(8)), return_exceptions=True)

    statuses = [r for r in results if not isinstance(r, Exception)]
    assert statuses
    assert all(s.remaining >= 0 for s in statuses)
    assert all(isinstance(r, QuotaExceededError) for r in results if isinstance(r, Exception))
    final = await quota.check("u1")
    assert 1 <= final.count <= 5


@pytest.mark.asyncio
async def test_reset_and_all_records(quota, clock):
    for _ in range(5):
        await quota.increment("u1")

    status = await quota.reset("u1")

    assert status.count == 0
    assert status.allowed
    assert set(await quota.all_records()) == {"u1"}


@pytest.mark.asyncio
async def test_stored_epoch_millis_are_understood(quota, store, clock):
    reset_ms = int((clock.now + timedelta(hours=1)).timestamp() * 1000)
    await store.set(f"{QUOTA_ROOT}/u1", {"count": 3, "resetAt": reset_ms})

    status = await quota.check("u1")

    assert status.count == 3
    assert status.remaining == 2


# ============================================================================
# format_time_until_reset
# ============================================================================

def test_countdown_formatting(clock):
    assert format_time_until_reset(clock.now + timedelta(hours=2, minutes=5), clock.now) == "2h 5m"
    assert format_time_until_reset(clock.now + timedelta(minutes=12, seconds=30), clock.now) == "12m"
    assert format_time_until_reset(clock.now - timedelta(seconds=1), clock.now) == "Soon"
    assert format_time_until_reset(clock.now, clock.now) == "Soon"


@pytest.mark.asyncio
async def test_unreadable_reset_time_starts_a_new_window(quota, store, clock):
    await store.set(f"{QUOTA_ROOT}/u1", {"count": 5, "resetAt": "not-a-date"})

    status = await quota.check("u1")

    assert not status.degraded
    assert status.count == 0
    assert status.reset_at == clock.now + timedelta(hours=5)
    assert store.snapshot()[QUOTA_ROOT]["u1"]["resetAt"] == status.reset_at.isoformat()

    for _ in range(5):
        await quota.increment("u1")
    with pytest.raises(QuotaExceededError):
        await quota.increment("u1")
