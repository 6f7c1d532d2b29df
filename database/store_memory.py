"""
InMemoryQueueStore — Dict/deque-backed store for fallback, development and testing.

Features:
  - Zero dependencies (no Redis)
  - Full interface compatibility with RedisQueueStore
  - Atomic push/pop: no operation awaits while mutating, so on a single
    event loop each call runs under mutual exclusion
  - TTLs evaluated against an injectable clock, lazily on read and in bulk
    by sweep_expired()
  - All data lost on process restart

Best for: Redis outages, local development, unit tests.
"""
from __future__ import annotations

import time
import structlog
from collections import deque
from typing import Callable, Optional

from database.store_base import QueueStore
from models.schemas import QueueTier

logger = structlog.get_logger()


class InMemoryQueueStore(QueueStore):
    """Full-featured in-process store with the same contract as RedisQueueStore."""

    name = "memory"

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lists: dict[tuple[str, QueueTier], deque[str]] = {}   # (tenant, tier) → items, oldest first
        self._values: dict[str, tuple[str, Optional[float]]] = {}   # key → (value, expires_at)
        logger.info("inmemory_store_initialized")

    async def ping(self) -> bool:
        return True

    # ── Lists ─────────────────────────────────────────────

    def _list(self, tenant_id: str, tier: QueueTier) -> deque[str]:
        return self._lists.setdefault((tenant_id, QueueTier(tier)), deque())

    async def push(self, tenant_id: str, tier: QueueTier, item: str) -> int:
        items = self._list(tenant_id, tier)
        items.append(item)
        return len(items)

    async def pop(self, tenant_id: str, tier: QueueTier) -> Optional[str]:
        items = self._lists.get((tenant_id, QueueTier(tier)))
        if not items:
            return None
        return items.popleft()

    async def length(self, tenant_id: str, tier: QueueTier) -> int:
        return len(self._lists.get((tenant_id, QueueTier(tier)), ()))

    async def list(self, tenant_id: str, tier: QueueTier, limit: int = 50) -> list[str]:
        items = self._lists.get((tenant_id, QueueTier(tier)), ())
        return list(items)[:limit]

    async def remove(self, tenant_id: str, tier: QueueTier, item: str) -> bool:
        items = self._lists.get((tenant_id, QueueTier(tier)))
        if not items:
            return False
        try:
            items.remove(item)
        except ValueError:
            return False
        return True

    async def clear(self, tenant_id: str, tier: QueueTier) -> int:
        items = self._lists.pop((tenant_id, QueueTier(tier)), None)
        return len(items) if items else 0

    # ── Key-value ─────────────────────────────────────────

    def _live(self, key: str) -> Optional[str]:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._values[key]
            return None
        return value

    def _expiry(self, ttl_seconds: Optional[float]) -> Optional[float]:
        return self._clock() + ttl_seconds if ttl_seconds else None

    async def get(self, key: str) -> Optional[str]:
        return self._live(key)

    async def set(
        self, key: str, value: str, ttl_seconds: Optional[float] = None,
        only_if_absent: bool = False,
    ) -> bool:
        if only_if_absent and self._live(key) is not None:
            return False
        self._values[key] = (value, self._expiry(ttl_seconds))
        return True

    async def increment_and_expire(self, key: str, ttl_seconds: float) -> int:
        current = int(self._live(key) or 0) + 1
        self._values[key] = (str(current), self._expiry(ttl_seconds))
        return current

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._values.pop(key, None) is not None:
                removed += 1
        return removed

    async def delete_prefix(self, prefix: str) -> int:
        doomed = [k for k in self._values if k.startswith(prefix)]
        for key in doomed:
            del self._values[key]
        return len(doomed)

    # ── Housekeeping ──────────────────────────────────────

    def sweep_expired(self) -> int:
        """Drop every expired key-value entry. Returns how many were dropped."""
        now = self._clock()
        expired = [k for k, (_, exp) in self._values.items() if exp is not None and exp <= now]
        for key in expired:
            del self._values[key]
        if expired:
            logger.debug("inmemory_store_swept", expired=len(expired))
        return len(expired)

    def queued_items(self) -> dict[tuple[str, QueueTier], list[str]]:
        """Snapshot of every non-empty list, keyed by (tenant, tier); used for migration."""
        return {k: list(v) for k, v in self._lists.items() if v}

    def stats(self) -> dict[str, int]:
        return {
            "lists": len([v for v in self._lists.values() if v]),
            "queued": sum(len(v) for v in self._lists.values()),
            "keys": len(self._values),
        }
