import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from tiered_assistant.config import RateLimitConfig
from tiered_assistant.errors import LimiterBackendError
from tiered_assistant.limits.rate_limiter import RateLimiter, next_reset
from tiered_assistant.limits.store import InMemoryCounterStore, SqliteCounterStore


class _BrokenStore:
    async def increment_and_get(self, key: str, ttl_seconds: int) -> int:
        raise ConnectionError("counter backend down")

    async def get(self, key: str) -> int:
        raise ConnectionError("counter backend down")


class _Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.mark.asyncio
async def test_limit_admits_exactly_n_requests() -> None:
    limiter = RateLimiter(InMemoryCounterStore(), RateLimitConfig(pro_research_daily_limit=3))

    decisions = [await limiter.check_and_increment("user-1", 3) for _ in range(4)]

    assert [decision.allowed for decision in decisions] == [True, True, True, False]
    assert [decision.remaining for decision in decisions] == [2, 1, 0, 0]


@pytest.mark.asyncio
async def test_ungated_tiers_never_touch_the_counter() -> None:
    limiter = RateLimiter(InMemoryCounterStore(), RateLimitConfig(pro_research_daily_limit=1))

    for tier in (1, 2, 1, 2):
        decision = await limiter.check_and_increment("user-1", tier)
        assert decision.allowed
        assert decision.remaining is None

    assert (await limiter.get_usage("user-1")).count == 0


@pytest.mark.asyncio
async def test_concurrent_requests_never_exceed_limit_in_memory() -> None:
    limiter = RateLimiter(InMemoryCounterStore(), RateLimitConfig(pro_research_daily_limit=10))

    decisions = await asyncio.gather(*(limiter.check_and_increment("user-1", 3) for _ in range(40)))

    assert sum(decision.allowed for decision in decisions) == 10
    assert sorted(d.remaining for d in decisions if d.allowed) == list(range(10))


@pytest.mark.asyncio
async def test_concurrent_requests_never_exceed_limit_sqlite(tmp_path) -> None:
    store = SqliteCounterStore(tmp_path / "usage.db")
    limiter = RateLimiter(store, RateLimitConfig(pro_research_daily_limit=5))

    decisions = await asyncio.gather(*(limiter.check_and_increment("user-1", 3) for _ in range(20)))

    assert sum(decision.allowed for decision in decisions) == 5
    usage = await limiter.get_usage("user-1")
    assert usage.count == 5
    assert usage.remaining == 0


@pytest.mark.asyncio
async def test_sqlite_counter_is_shared_across_store_instances(tmp_path) -> None:
    path = tmp_path / "usage.db"
    first = RateLimiter(SqliteCounterStore(path), RateLimitConfig(pro_research_daily_limit=2))
    second = RateLimiter(SqliteCounterStore(path), RateLimitConfig(pro_research_daily_limit=2))

    assert (await first.check_and_increment("user-1", 3)).allowed
    assert (await second.check_and_increment("user-1", 3)).allowed
    assert not (await first.check_and_increment("user-1", 3)).allowed


@pytest.mark.asyncio
async def test_users_are_counted_independently() -> None:
    limiter = RateLimiter(InMemoryCounterStore(), RateLimitConfig(pro_research_daily_limit=1))

    assert (await limiter.check_and_increment("alice", 3)).allowed
    assert not (await limiter.check_and_increment("alice", 3)).allowed
    assert (await limiter.check_and_increment("bob", 3)).allowed


@pytest.mark.asyncio
async def test_window_rolls_over_at_utc_midnight() -> None:
    clock = _Clock(datetime(2025, 3, 1, 23, 59, tzinfo=timezone.utc))
    limiter = RateLimiter(InMemoryCounterStore(), RateLimitConfig(pro_research_daily_limit=1), clock=clock)

    first = await limiter.check_and_increment("user-1", 3)
    assert first.allowed
    assert first.reset_at == datetime(2025, 3, 2, tzinfo=timezone.utc)
    assert not (await limiter.check_and_increment("user-1", 3)).allowed

    clock.now = datetime(2025, 3, 2, 0, 0, 1, tzinfo=timezone.utc)
    assert (await limiter.check_and_increment("user-1", 3)).allowed


def test_next_reset_uses_utc() -> None:
    local = datetime(2025, 3, 1, 22, 0, tzinfo=timezone(timedelta(hours=-5)))

    assert next_reset(local) == datetime(2025, 3, 3, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_fail_open_admits_with_degraded_flag() -> None:
    limiter = RateLimiter(_BrokenStore(), RateLimitConfig(fail_open=True))

    decision = await limiter.check_and_increment("user-1", 3)

    assert decision.allowed
    assert decision.degraded
    assert decision.remaining is None


@pytest.mark.asyncio
async def test_fail_closed_raises_backend_error() -> None:
    limiter = RateLimiter(_BrokenStore(), RateLimitConfig(fail_open=False))

    with pytest.raises(LimiterBackendError):
        await limiter.check_and_increment("user-1", 3)


@pytest.mark.asyncio
async def test_usage_is_read_only_and_clamped() -> None:
    limiter = RateLimiter(InMemoryCounterStore(), RateLimitConfig(pro_research_daily_limit=2))
    for _ in range(3):
        await limiter.check_and_increment("user-1", 3)

    first = await limiter.get_usage("user-1")
    second = await limiter.get_usage("user-1")

    assert first == second
    assert first.count == 2
    assert first.limit == 2
    assert first.remaining == 0


@pytest.mark.asyncio
async def test_usage_surfaces_backend_failure() -> None:
    limiter = RateLimiter(_BrokenStore())

    with pytest.raises(LimiterBackendError):
        await limiter.get_usage("user-1")


@pytest.mark.asyncio
async def test_in_memory_counter_expires_after_ttl() -> None:
    now = [1000.0]
    store = InMemoryCounterStore(clock=lambda: now[0])

    assert await store.increment_and_get("k", 60) == 1
    assert await store.increment_and_get("k", 60) == 2
    now[0] += 61
    assert await store.get("k") == 0
    assert await store.increment_and_get("k", 60) == 1


@pytest.mark.asyncio
async def test_in_memory_store_drops_past_days() -> None:
    now = [datetime(2025, 1, 1, 12, tzinfo=timezone.utc).timestamp()]
    store = InMemoryCounterStore(clock=lambda: now[0])
    limiter = RateLimiter(
        store,
        RateLimitConfig(pro_research_daily_limit=5),
        clock=lambda: datetime.fromtimestamp(now[0], tz=timezone.utc),
    )

    for _ in range(365):
        assert (await limiter.check_and_increment("user-1", 3)).allowed
        now[0] += 86400

    assert len(store) == 1


@pytest.mark.asyncio
async def test_expired_key_is_removed_on_read() -> None:
    now = [1000.0]
    store = InMemoryCounterStore(clock=lambda: now[0])
    await store.increment_and_get("k", 60)

    now[0] += 61

    assert await store.get("k") == 0
    assert len(store) == 0
