"""Webhook idempotency: deduplication of Bling redeliveries.

Security contract:
- Dedup key is SHA-256 of "{eventId}-{resourceId}" (hex)
- Keys are recorded only after the invoice side effect succeeded
- Keys live for the dedup window (default 24h), then expire
- Duplicate deliveries are acked with 200 (Bling retries on errors)
- If Redis is down, lookups fail open: the invoice applier is an
  idempotent upsert, so a missed duplicate costs one redundant write
"""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from typing import Protocol, runtime_checkable

import redis

logger = logging.getLogger(__name__)

DEFAULT_DEDUP_TTL_SECONDS = 86400  # 24 hours

# Key prefix for webhook dedup
_KEY_PREFIX = "webhook:seen:bling"


def dedup_key(event_id: str, resource_id: str) -> str:
    """Deterministic identity of an (event, resource) pair."""
    return hashlib.sha256(f"{event_id}-{resource_id}".encode("utf-8")).hexdigest()


@runtime_checkable
class DedupStore(Protocol):
    """Where the pipeline remembers which deliveries were already applied."""

    def seen(self, key: str) -> bool:
        """True if ``key`` was recorded inside the dedup window."""
        ...

    def record(self, key: str) -> None:
        """Remember ``key`` for the dedup window."""
        ...


class RedisDedupStore:
    """Redis-backed dedup store (one key per delivery, TTL = window)."""

    def __init__(
        self,
        redis_url: str | None = None,
        *,
        ttl_seconds: int = DEFAULT_DEDUP_TTL_SECONDS,
        client: redis.Redis | None = None,
    ):
        if client is None:
            client = redis.from_url(redis_url or "redis://localhost:6379/0", decode_responses=True)
        self._redis = client
        self._ttl = ttl_seconds

    @staticmethod
    def _full_key(key: str) -> str:
        return f"{_KEY_PREFIX}:{key}"

    def seen(self, key: str) -> bool:
        try:
            found = bool(self._redis.exists(self._full_key(key)))
        except redis.RedisError:
            # Redis down: fail open
            logger.warning("Redis unavailable for webhook dedup, allowing %s", key[:12], exc_info=True)
            return False
        if found:
            logger.info("Duplicate Bling delivery detected: %s", key[:12])
        return found

    def record(self, key: str) -> None:
        try:
            self._redis.set(self._full_key(key), "1", ex=self._ttl)
        except redis.RedisError:
            logger.warning("Failed to mark webhook as seen: %s", key[:12], exc_info=True)


class InMemoryDedupStore:
    """Single-process dedup store with the same window semantics.

    Thread-safe: the pipeline calls it from worker threads.
    """

    def __init__(
        self,
        ttl_seconds: int = DEFAULT_DEDUP_TTL_SECONDS,
        clock=time.monotonic,
        sweep_threshold: int = 1024,
    ):
        self._ttl = ttl_seconds
        self._clock = clock
        self._expiry: dict[str, float] = {}
        self._lock = threading.Lock()
        self._min_sweep = sweep_threshold
        self._sweep_at = sweep_threshold

    def seen(self, key: str) -> bool:
        now = self._clock()
        with self._lock:
            expires = self._expiry.get(key)
            if expires is None:
                return False
            if expires <= now:
                del self._expiry[key]
                return False
            return True

    def record(self, key: str) -> None:
        now = self._clock()
        with self._lock:
            self._expiry[key] = now + self._ttl
            if len(self._expiry) > self._sweep_at:
                self._sweep(now)

    def _sweep(self, now: float) -> None:
        """Drop expired keys. Caller holds the lock."""
        expired = [k for k, expires in self._expiry.items() if expires <= now]
        for k in expired:
            del self._expiry[k]
        # next sweep once the live set has doubled
        self._sweep_at = max(self._min_sweep, 2 * len(self._expiry))

    def __len__(self) -> int:
        return len(self._expiry)
