"""Per-user daily admission control for the deep research tier."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from tiered_assistant.config import RateLimitConfig
from tiered_assistant.errors import LimiterBackendError
from tiered_assistant.limits.store import CounterStore
from tiered_assistant.types import AdmissionDecision, UsageSnapshot

logger = logging.getLogger(__name__)

GATED_TIER = 3


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RateLimiter:
    """Admits at most `pro_research_daily_limit` tier-3 requests per user per UTC day.

    Atomicity is delegated to the counter store: the count returned by
    `increment_and_get` decides admission, so two concurrent requests can
    never both take the last slot.

    When the store fails, `fail_open` decides between admitting the request
    with a degraded flag and propagating `LimiterBackendError`.
    """

    def __init__(
        self,
        store: CounterStore,
        config: RateLimitConfig | None = None,
        *,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.store = store
        self.config = config or RateLimitConfig()
        self._clock = clock

    @property
    def daily_limit(self) -> int:
        return self.config.pro_research_daily_limit

    async def check_and_increment(self, user_id: str, tier: int) -> AdmissionDecision:
        now = self._clock()
        reset_at = next_reset(now)
        if tier != GATED_TIER:
            return AdmissionDecision(allowed=True, remaining=None, reset_at=reset_at)

        ttl_seconds = max(1, int((reset_at - now).total_seconds()))
        try:
            count = await self.store.increment_and_get(self._key(user_id, now), ttl_seconds)
        except Exception as exc:
            if not self.config.fail_open:
                if isinstance(exc, LimiterBackendError):
                    raise
                raise LimiterBackendError(f"Counter store unavailable: {exc}") from exc
            logger.warning(
                "Rate limiter backend failed for user %s; admitting tier %d request (fail-open): %s",
                user_id,
                tier,
                exc,
            )
            return AdmissionDecision(allowed=True, remaining=None, reset_at=reset_at, degraded=True)

        allowed = count <= self.daily_limit
        remaining = max(0, self.daily_limit - count)
        if not allowed:
            logger.info("User %s exceeded the daily deep research limit (%d)", user_id, self.daily_limit)
        return AdmissionDecision(allowed=allowed, remaining=remaining, reset_at=reset_at)

    async def get_usage(self, user_id: str) -> UsageSnapshot:
        now = self._clock()
        try:
            raw_count = await self.store.get(self._key(user_id, now))
        except LimiterBackendError:
            raise
        except Exception as exc:
            raise LimiterBackendError(f"Counter store unavailable: {exc}") from exc

        count = min(raw_count, self.daily_limit)
        return UsageSnapshot(
            count=count,
            limit=self.daily_limit,
            remaining=self.daily_limit - count,
            reset_at=next_reset(now),
        )

    def _key(self, user_id: str, now: datetime) -> str:
        return f"{self.config.key_prefix}:{user_id}:{now.astimezone(timezone.utc).date().isoformat()}"


def next_reset(now: datetime) -> datetime:
    """Return the next UTC midnight after `now`."""
    current = now.astimezone(timezone.utc)
    midnight = current.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight + timedelta(days=1)
