"""
Decision cache with generation-tagged entries.

Background:
    Every cached decision is tagged with the generation counter of its
    (user, tenant) pair at the time it was computed. Administrative mutations
    bump that counter inside the same store transaction and publish the new
    value here before returning. A lookup whose tag is older than the current
    generation is a miss, whatever TTL it has left.

The cache client is injected. ``InMemoryCacheClient`` is the single-process
implementation; a shared backend only needs the same atomic operations.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Protocol
from urllib.parse import quote

logger = logging.getLogger(__name__)


class CacheClient(Protocol):
    """Key-value operations the engine needs; all must be atomic per key."""

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str, ttl_seconds: float | None = None) -> None: ...

    def delete(self, key: str) -> None: ...

    def incr(self, key: str, ttl_seconds: float) -> tuple[int, float]:
        """Increment a counter, setting ``ttl_seconds`` on first use. Returns (count, ttl_remaining)."""
        ...

    def compare_and_set(
        self, key: str, expected: str | None, value: str, ttl_seconds: float | None = None
    ) -> bool: ...

    def ttl(self, key: str) -> float | None: ...


class InMemoryCacheClient:
    """
    Thread-safe in-memory cache with per-key TTL.

    ``clock`` defaults to ``time.monotonic``; tests pass a fake clock to move
    time forward without sleeping. Expired entries are dropped when read, and
    every write sweeps the whole table at most once per ``sweep_interval_seconds``.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic, sweep_interval_seconds: float = 60.0) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._data: dict[str, tuple[str, float | None]] = {}
        self._sweep_interval = sweep_interval_seconds
        self._next_sweep = float("-inf")

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def _sweep(self, now: float) -> None:
        if now < self._next_sweep:
            return
        self._next_sweep = now + self._sweep_interval
        expired = [k for k, (_v, exp) in self._data.items() if exp is not None and now >= exp]
        for key in expired:
            del self._data[key]
        if expired:
            logger.debug("Swept %s expired cache entries", len(expired))

    def _live(self, key: str, now: float) -> tuple[str, float | None] | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        _value, expires_at = entry
        if expires_at is not None and now >= expires_at:
            del self._data[key]
            return None
        return entry

    def _expiry(self, now: float, ttl_seconds: float | None) -> float | None:
        return None if ttl_seconds is None else now + ttl_seconds

    def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._live(key, self._clock())
            return entry[0] if entry else None

    def set(self, key: str, value: str, ttl_seconds: float | None = None) -> None:
        with self._lock:
            now = self._clock()
            self._sweep(now)
            self._data[key] = (value, self._expiry(now, ttl_seconds))

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def incr(self, key: str, ttl_seconds: float) -> tuple[int, float]:
        with self._lock:
            now = self._clock()
            self._sweep(now)
            entry = self._live(key, now)
            if entry is None:
                expires_at = now + ttl_seconds
                self._data[key] = ("1", expires_at)
                return 1, ttl_seconds
            value, expires_at = entry
            count = int(value) + 1
            self._data[key] = (str(count), expires_at)
            remaining = ttl_seconds if expires_at is None else max(expires_at - now, 0.0)
            return count, remaining

    def compare_and_set(
        self, key: str, expected: str | None, value: str, ttl_seconds: float | None = None
    ) -> bool:
        with self._lock:
            now = self._clock()
            self._sweep(now)
            entry = self._live(key, now)
            current = entry[0] if entry else None
            if current != expected:
                return False
            self._data[key] = (value, self._expiry(now, ttl_seconds))
            return True

    def ttl(self, key: str) -> float | None:
        with self._lock:
            now = self._clock()
            entry = self._live(key, now)
            if entry is None or entry[1] is None:
                return None
            return entry[1] - now


@dataclass(frozen=True)
class CacheStats:
    hits: int
    misses: int

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


def _segment(value: str) -> str:
    # Ids may contain ':'; escape them so two different (user, tenant) pairs never share a key.
    return quote(value, safe="")


def decision_key(
    user_id: str, tenant_id: str, resource_type: str, action: str, resource_id: str | None = None
) -> str:
    parts = [user_id, tenant_id, resource_type, action]
    if resource_id:
        parts.append(resource_id)
    return "perm:" + ":".join(_segment(p) for p in parts)


def generation_key(user_id: str, tenant_id: str) -> str:
    return f"gen:{_segment(user_id)}:{_segment(tenant_id)}"


class PermissionCache:
    """Boolean decision cache keyed per (user, tenant, resource, action[, id])."""

    def __init__(self, client: CacheClient, ttl_seconds: float = 3600) -> None:
        self._client = client
        self._ttl = ttl_seconds
        self._stats_lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    @property
    def client(self) -> CacheClient:
        return self._client

    # ---- Generation counter ---------------------------------------------------------

    def current_generation(
        self, user_id: str, tenant_id: str, loader: Callable[[str, str], int]
    ) -> int:
        """Return the published generation, loading it from the store when unknown."""
        key = generation_key(user_id, tenant_id)
        raw = self._client.get(key)
        if raw is not None:
            return int(raw)
        loaded = loader(user_id, tenant_id)
        self.publish_generation(user_id, tenant_id, loaded)
        return int(self._client.get(key) or loaded)

    def publish_generation(self, user_id: str, tenant_id: str, generation: int) -> None:
        """
        Advance the mirrored generation; never moves it backwards.

        The mirror expires with the decision TTL; an expired mirror is
        reloaded from the store, which always holds the latest value.
        """
        key = generation_key(user_id, tenant_id)
        while True:
            raw = self._client.get(key)
            if raw is not None and int(raw) >= generation:
                return
            if self._client.compare_and_set(key, raw, str(generation), self._ttl):
                logger.debug("Generation published user=%s tenant=%s gen=%s", user_id, tenant_id, generation)
                return

    # ---- Decisions ------------------------------------------------------------------

    def get(self, key: str, generation: int) -> bool | None:
        raw = self._client.get(key)
        hit = None
        if raw is not None:
            tag, _, value = raw.partition("|")
            if tag == str(generation):
                hit = value == "true"
        with self._stats_lock:
            if hit is None:
                self._misses += 1
            else:
                self._hits += 1
        return hit

    def put(
        self,
        key: str,
        user_id: str,
        tenant_id: str,
        generation: int,
        granted: bool,
        ttl_seconds: float | None = None,
    ) -> bool:
        """
        Store a decision computed under ``generation``.

        Returns False (and stores nothing) when the generation has moved on
        since the decision was computed.
        """
        published = self._client.get(generation_key(user_id, tenant_id))
        if published is not None and int(published) != generation:
            logger.debug("Dropping stale cache write key=%s gen=%s published=%s", key, generation, published)
            return False
        ttl = self._ttl if ttl_seconds is None else min(ttl_seconds, self._ttl)
        if ttl <= 0:
            return False
        self._client.set(key, f"{generation}|{'true' if granted else 'false'}", ttl)
        return True

    def stats(self) -> CacheStats:
        with self._stats_lock:
            return CacheStats(hits=self._hits, misses=self._misses)
