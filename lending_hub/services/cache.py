"""In-memory cache over an optional SQLite tier, with stale fallback.

One instance per process, constructed by the caller and passed to the
aggregator and data source clients.
"""
from __future__ import annotations

import asyncio
import logging
import pickle
import sqlite3
import time
from dataclasses import replace
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable

from ..interfaces.cache_store import CacheStore
from ..models import CacheEntry

logger = logging.getLogger(__name__)

_MINUTE = 60.0
_HOUR = 60 * _MINUTE
_DAY = 24 * _HOUR


class CacheCategory(str, Enum):
    POOL = "pool"
    POSITION = "position"
    PRICE = "price"
    FALLBACK = "fallback"
    METADATA = "metadata"


CACHE_TTLS: dict[CacheCategory, float] = {
    CacheCategory.POOL: 3 * _DAY,
    CacheCategory.POSITION: 5 * _MINUTE,
    CacheCategory.PRICE: 1 * _HOUR,
    CacheCategory.FALLBACK: 7 * _DAY,
    CacheCategory.METADATA: 30 * _DAY,
}


def cache_key(
    category: CacheCategory | str,
    chain_id: int,
    protocol: Any = None,
    asset: str | None = None,
    user: str | None = None,
    *extra: Any,
) -> str:
    """Build a cache key scoped by chain so networks never collide.

    Examples:
        cache_key("pool", 8453, "aave") → "pool:8453:aave"
        cache_key("position", 8453, "morpho", None, "0xAb") → "position:8453:morpho:-:0xab"
    """
    parts = [CacheCategory(category).value, str(chain_id)]
    for part in (protocol, asset, user, *extra):
        if part is None:
            parts.append("-")
        else:
            parts.append(str(getattr(part, "value", part)).lower())
    while parts[-1] == "-":
        parts.pop()
    return ":".join(parts)


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


class MemoryCacheStore:
    """Fast dict-backed tier."""

    def __init__(self) -> None:
        self._entries: dict[str, CacheEntry] = {}

    def load(self, key: str) -> CacheEntry | None:
        return self._entries.get(key)

    def save(self, key: str, entry: CacheEntry) -> None:
        self._entries[key] = entry

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._entries)

    def clear(self) -> None:
        self._entries.clear()


class SqliteCacheStore:
    """Persistent tier backed by a single SQLite table.

    Payloads are pickled; each write replaces the whole row.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = str(path)
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self.path, timeout=30.0)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS cache_entries (
                key TEXT PRIMARY KEY,
                payload BLOB NOT NULL,
                created_at REAL NOT NULL,
                expires_at REAL NOT NULL,
                source TEXT NOT NULL,
                category TEXT NOT NULL
            )
            """
        )
        self._conn.commit()

    def load(self, key: str) -> CacheEntry | None:
        try:
            row = self._conn.execute(
                "SELECT * FROM cache_entries WHERE key = ?", (key,)
            ).fetchone()
            if row is None:
                return None
            return CacheEntry(
                payload=pickle.loads(row["payload"]),
                created_at=row["created_at"],
                expires_at=row["expires_at"],
                source=row["source"],
                category=row["category"],
            )
        except (sqlite3.Error, pickle.UnpicklingError, AttributeError, EOFError) as e:
            logger.warning("Persistent cache read failed for %s: %s", key, e)
            return None

    def save(self, key: str, entry: CacheEntry) -> None:
        try:
            self._conn.execute(
                "INSERT OR REPLACE INTO cache_entries "
                "(key, payload, created_at, expires_at, source, category) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    key,
                    pickle.dumps(entry.payload),
                    entry.created_at,
                    entry.expires_at,
                    entry.source,
                    entry.category,
                ),
            )
            self._conn.commit()
        except (sqlite3.Error, pickle.PicklingError, TypeError) as e:
            logger.warning("Persistent cache write failed for %s: %s", key, e)

    def delete(self, key: str) -> None:
        self._conn.execute("DELETE FROM cache_entries WHERE key = ?", (key,))
        self._conn.commit()

    def keys(self) -> list[str]:
        return [row["key"] for row in self._conn.execute("SELECT key FROM cache_entries")]

    def clear(self) -> None:
        self._conn.execute("DELETE FROM cache_entries")
        self._conn.commit()

    def close(self) -> None:
        self._conn.close()


# ---------------------------------------------------------------------------
# Tiered cache
# ---------------------------------------------------------------------------


class TieredCache:
    """Memory tier first, persistent tier second, stale entries as fallback."""

    def __init__(
        self,
        persistent: CacheStore | None = None,
        clock: Callable[[], float] = time.time,
        stale_retention: float = CACHE_TTLS[CacheCategory.FALLBACK],
    ) -> None:
        self._memory = MemoryCacheStore()
        self._persistent = persistent
        self._clock = clock
        self._stale_retention = stale_retention
        self._stats = {"hits": 0, "misses": 0, "fallbacks": 0, "fetches": 0, "coalesced": 0}
        self._inflight: dict[str, asyncio.Task] = {}

    def _load(self, key: str) -> CacheEntry | None:
        entry = self._memory.load(key)
        if entry is not None:
            return entry
        if self._persistent is None:
            return None
        entry = self._persistent.load(key)
        if entry is not None:
            self._memory.save(key, entry)
        return entry

    def get_entry(self, key: str) -> CacheEntry | None:
        """Return the fresh entry for ``key`` or None."""
        entry = self._load(key)
        if entry is None or entry.is_expired(self._clock()):
            self._stats["misses"] += 1
            return None
        self._stats["hits"] += 1
        return entry

    def get(self, key: str) -> Any | None:
        entry = self.get_entry(key)
        return entry.payload if entry is not None else None

    def get_stale(self, key: str) -> CacheEntry | None:
        """Return an entry even if expired, as long as it is within retention."""
        entry = self._load(key)
        if entry is None:
            return None
        if self._clock() >= entry.expires_at + self._stale_retention:
            return None
        return entry

    def set(
        self,
        key: str,
        data: Any,
        category: CacheCategory | str,
        source: str = "api",
    ) -> CacheEntry:
        """Write ``data`` to both tiers with the category's TTL."""
        category = CacheCategory(category)
        now = self._clock()
        entry = CacheEntry(
            payload=data,
            created_at=now,
            expires_at=now + CACHE_TTLS[category],
            source=source,
            category=category.value,
        )
        self._memory.save(key, entry)
        if self._persistent is not None:
            self._persistent.save(key, entry)
        return entry

    async def get_or_fetch(
        self,
        key: str,
        category: CacheCategory | str,
        fetch_fn: Callable[[], Awaitable[Any]],
        force_refresh: bool = False,
        source: str = "api",
    ) -> CacheEntry:
        """Return a fresh hit, else fetch and cache, else serve a stale entry.

        Concurrent misses on one key share a single fetch. The fetch error
        propagates only when no stale entry exists.
        """
        if not force_refresh:
            entry = self.get_entry(key)
            if entry is not None:
                return entry

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.create_task(self._fetch(key, category, fetch_fn, source))
            self._inflight[key] = task
            task.add_done_callback(lambda done: self._forget(key, done))
        else:
            self._stats["coalesced"] += 1
        return await asyncio.shield(task)

    def _forget(self, key: str, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    async def _fetch(
        self,
        key: str,
        category: CacheCategory | str,
        fetch_fn: Callable[[], Awaitable[Any]],
        source: str,
    ) -> CacheEntry:
        self._stats["fetches"] += 1
        try:
            data = await fetch_fn()
        except Exception as e:
            stale = self.get_stale(key)
            if stale is None:
                raise
            self._stats["fallbacks"] += 1
            logger.warning(
                "Fetch for %s failed (%s); serving cached data from %.0fs ago",
                key,
                e,
                stale.age(self._clock()),
            )
            return replace(stale, source="fallback")

        return self.set(key, data, category, source=source)

    def invalidate(self, key: str) -> None:
        self._memory.delete(key)
        if self._persistent is not None:
            self._persistent.delete(key)

    def invalidate_prefix(self, prefix: str) -> int:
        keys = set(self._memory.keys())
        if self._persistent is not None:
            keys.update(self._persistent.keys())
        matched = [k for k in keys if k.startswith(prefix)]
        for key in matched:
            self.invalidate(key)
        return len(matched)

    def purge_expired(self) -> int:
        """Drop entries that are past their stale-retention window."""
        now = self._clock()
        keys = set(self._memory.keys())
        if self._persistent is not None:
            keys.update(self._persistent.keys())

        purged = 0
        for key in keys:
            entry = self._load(key)
            if entry is not None and now >= entry.expires_at + self._stale_retention:
                self.invalidate(key)
                purged += 1
        if purged:
            logger.debug("Purged %d expired cache entries", purged)
        return purged

    def clear(self) -> None:
        self._memory.clear()
        if self._persistent is not None:
            self._persistent.clear()

    def stats(self) -> dict[str, int]:
        return {**self._stats, "memory_entries": len(self._memory.keys())}
