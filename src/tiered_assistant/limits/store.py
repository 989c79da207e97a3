"""Atomic counter stores backing the rate limiter."""

from __future__ import annotations

import asyncio
import contextlib
import sqlite3
import time
from collections.abc import Callable
from pathlib import Path
from typing import Protocol

from tiered_assistant.errors import LimiterBackendError


class CounterStore(Protocol):
    async def increment_and_get(self, key: str, ttl_seconds: int) -> int:
        """Atomically increment `key` and return the new value.

        The key expires `ttl_seconds` after it is first created.
        """
        ...

    async def get(self, key: str) -> int:
        ...


class InMemoryCounterStore:
    """Single-process counter store guarded by an asyncio lock.

    Expired windows are dropped whenever a new window opens, so keys for past
    days do not accumulate.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = asyncio.Lock()
        self._values: dict[str, tuple[int, float]] = {}

    def __len__(self) -> int:
        return len(self._values)

    async def increment_and_get(self, key: str, ttl_seconds: int) -> int:
        async with self._lock:
            now = self._clock()
            count, expires_at = self._values.get(key, (0, 0.0))
            if expires_at <= now:
                self._purge_expired(now)
                count, expires_at = 0, now + ttl_seconds
            count += 1
            self._values[key] = (count, expires_at)
            return count

    async def get(self, key: str) -> int:
        async with self._lock:
            count, expires_at = self._values.get(key, (0, 0.0))
            if expires_at <= self._clock():
                self._values.pop(key, None)
                return 0
            return count

    def _purge_expired(self, now: float) -> None:
        expired = [key for key, (_, expires_at) in self._values.items() if expires_at <= now]
        for key in expired:
            del self._values[key]


class SqliteCounterStore:
    """Counter store shared by every process that opens the same database file.

    Each increment is a single UPSERT statement, so concurrent writers never
    observe a lost update.
    """

    def __init__(self, db_path: str | Path, *, clock: Callable[[], float] = time.time) -> None:
        self.db_path = Path(db_path)
        self._clock = clock
        _ensure_counter_table(self.db_path)

    async def increment_and_get(self, key: str, ttl_seconds: int) -> int:
        return await asyncio.to_thread(self._increment_sync, key, ttl_seconds)

    async def get(self, key: str) -> int:
        return await asyncio.to_thread(self._get_sync, key)

    def _increment_sync(self, key: str, ttl_seconds: int) -> int:
        now = self._clock()
        try:
            with contextlib.closing(sqlite3.connect(self.db_path, timeout=5.0)) as conn:
                row = conn.execute(
                    """
                    INSERT INTO usage_counters(key, count, expires_at) VALUES(?, 1, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        count = CASE WHEN usage_counters.expires_at <= ? THEN 1
                                     ELSE usage_counters.count + 1 END,
                        expires_at = CASE WHEN usage_counters.expires_at <= ? THEN excluded.expires_at
                                          ELSE usage_counters.expires_at END
                    RETURNING count
                    """,
                    (key, now + ttl_seconds, now, now),
                ).fetchone()
                conn.commit()
        except sqlite3.Error as exc:
            raise LimiterBackendError(f"Counter store unavailable: {exc}") from exc
        return int(row[0])

    def _get_sync(self, key: str) -> int:
        try:
            with contextlib.closing(sqlite3.connect(self.db_path, timeout=5.0)) as conn:
                row = conn.execute(
                    "SELECT count FROM usage_counters WHERE key = ? AND expires_at > ?",
                    (key, self._clock()),
                ).fetchone()
        except sqlite3.Error as exc:
            raise LimiterBackendError(f"Counter store unavailable: {exc}") from exc
        return int(row[0]) if row else 0


def _ensure_counter_table(db_path: Path) -> None:
    with contextlib.closing(sqlite3.connect(db_path)) as conn:
        conn.execute(
            "CREATE TABLE IF NOT EXISTS usage_counters "
            "(key TEXT PRIMARY KEY, count INTEGER NOT NULL, expires_at REAL NOT NULL)"
        )
        conn.commit()
