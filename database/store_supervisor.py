"""
SupervisedQueueStore — Owns the active store and swaps it on detected failure.

Callers talk to one QueueStore. Behind it:
  - the primary (networked) store serves every call while it answers
  - the first StoreUnavailableError flips the supervisor to the in-process
    fallback and the failed call is replayed there, so callers never see it
  - restore_primary(), driven by the periodic health routine, pings the
    primary and, once it answers, moves queued lists back before switching

Key-value state (duplicate records, rate counters, status records) written
while on the fallback is not migrated; queued state on the primary at the
moment of failover is best-effort and may be lost.
"""
from __future__ import annotations

import structlog
from typing import Any, Awaitable, Callable, Optional

from database.store_base import QueueStore, StoreUnavailableError
from database.store_memory import InMemoryQueueStore
from models.schemas import QueueTier

logger = structlog.get_logger()


class SupervisedQueueStore(QueueStore):
    """A QueueStore that transparently degrades to an in-process fallback."""

    def __init__(
        self,
        primary: QueueStore,
        fallback: Optional[InMemoryQueueStore] = None,
        fallback_enabled: bool = True,
    ):
        self.primary = primary
        self.fallback = fallback or InMemoryQueueStore()
        self.fallback_enabled = fallback_enabled
        self._active: QueueStore = primary
        self.failovers = 0

    @property
    def name(self) -> str:
        return self._active.name

    @property
    def active(self) -> QueueStore:
        return self._active

    @property
    def degraded(self) -> bool:
        return self._active is not self.primary

    # ── Switching ─────────────────────────────────────────

    def _fail_over(self, error: StoreUnavailableError) -> None:
        self._active = self.fallback
        self.failovers += 1
        logger.warning("store_failover",
                       from_backend=self.primary.name,
                       to_backend=self.fallback.name,
                       error=str(error))

    async def _run(self, op: Callable[[QueueStore], Awaitable[Any]]) -> Any:
        store = self._active
        try:
            return await op(store)
        except StoreUnavailableError as e:
            if store is not self.primary or not self.fallback_enabled:
                raise
            self._fail_over(e)
            return await op(self._active)

    async def restore_primary(self) -> bool:
        """Switch back to the primary once it answers. Returns True if now on primary."""
        if not self.degraded:
            return True
        try:
            await self.primary.ping()
            moved = 0
            for (tenant_id, tier), items in self.fallback.queued_items().items():
                for item in items:
                    await self.primary.push(tenant_id, tier, item)
                    moved += 1
                await self.fallback.clear(tenant_id, tier)
        except StoreUnavailableError as e:
            logger.info("store_primary_still_unavailable", error=str(e))
            return False
        self._active = self.primary
        logger.info("store_primary_restored", backend=self.primary.name, migrated=moved)
        return True

    # ── Lifecycle ─────────────────────────────────────────

    async def connect(self) -> None:
        try:
            await self.primary.connect()
        except StoreUnavailableError as e:
            if not self.fallback_enabled:
                raise
            self._fail_over(e)

    async def close(self) -> None:
        await self.primary.close()
        await self.fallback.close()

    async def ping(self) -> bool:
        return await self._run(lambda s: s.ping())

    # ── Lists ─────────────────────────────────────────────

    async def push(self, tenant_id: str, tier: QueueTier, item: str) -> int:
        return await self._run(lambda s: s.push(tenant_id, tier, item))

    async def pop(self, tenant_id: str, tier: QueueTier) -> Optional[str]:
        return await self._run(lambda s: s.pop(tenant_id, tier))

    async def length(self, tenant_id: str, tier: QueueTier) -> int:
        return await self._run(lambda s: s.length(tenant_id, tier))

    async def list(self, tenant_id: str, tier: QueueTier, limit: int = 50) -> list[str]:
        return await self._run(lambda s: s.list(tenant_id, tier, limit))

    async def remove(self, tenant_id: str, tier: QueueTier, item: str) -> bool:
        return await self._run(lambda s: s.remove(tenant_id, tier, item))

    async def clear(self, tenant_id: str, tier: QueueTier) -> int:
        return await self._run(lambda s: s.clear(tenant_id, tier))

    # ── Key-value ─────────────────────────────────────────

    async def get(self, key: str) -> Optional[str]:
        return await self._run(lambda s: s.get(key))

    async def set(
        self, key: str, value: str, ttl_seconds: Optional[float] = None,
        only_if_absent: bool = False,
    ) -> bool:
        return await self._run(lambda s: s.set(key, value, ttl_seconds, only_if_absent))

    async def increment_and_expire(self, key: str, ttl_seconds: float) -> int:
        return await self._run(lambda s: s.increment_and_expire(key, ttl_seconds))

    async def delete(self, *keys: str) -> int:
        return await self._run(lambda s: s.delete(*keys))

    async def delete_prefix(self, prefix: str) -> int:
        return await self._run(lambda s: s.delete_prefix(prefix))
