"""
Abstract Queue Store — Interface for all storage backends.

Implementations:
  - RedisQueueStore      (networked, durable; redis.asyncio)
  - InMemoryQueueStore   (dict/deque based, single-process, no persistence)
  - SupervisedQueueStore (owns one of each, swaps to the fallback on failure)

Two facilities share one contract:
  - ordered two-tier lists per tenant (priority / regular), FIFO by push order
  - key-value entries with optional expiry, used by the duplicate guard and
    the rate governor

Items are opaque strings; callers own serialization.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from models.schemas import QueueTier


class StoreUnavailableError(Exception):
    """The backend could not be reached. Distinct from an empty result."""

    def __init__(self, message: str, backend: str = ""):
        self.backend = backend
        super().__init__(message)


class QueueStore(ABC):
    """Interface that all queue store backends must implement."""

    name: str = "abstract"

    # ── Lifecycle ─────────────────────────────────────────────

    async def connect(self) -> None:
        """Establish connection to the backend."""

    async def close(self) -> None:
        """Gracefully shut down."""

    @abstractmethod
    async def ping(self) -> bool:
        """Return True when the backend answers; raise StoreUnavailableError otherwise."""
        ...

    # ── Lists ─────────────────────────────────────────────────

    @abstractmethod
    async def push(self, tenant_id: str, tier: QueueTier, item: str) -> int:
        """Append an item; returns the new list length. Never rejects on capacity."""
        ...

    @abstractmethod
    async def pop(self, tenant_id: str, tier: QueueTier) -> Optional[str]:
        """Remove and return the oldest item, or None when empty."""
        ...

    @abstractmethod
    async def length(self, tenant_id: str, tier: QueueTier) -> int:
        ...

    @abstractmethod
    async def list(self, tenant_id: str, tier: QueueTier, limit: int = 50) -> list[str]:
        """Non-destructive peek, oldest first."""
        ...

    @abstractmethod
    async def remove(self, tenant_id: str, tier: QueueTier, item: str) -> bool:
        """Remove one occurrence of a specific item. Returns whether it was found."""
        ...

    @abstractmethod
    async def clear(self, tenant_id: str, tier: QueueTier) -> int:
        """Drop every item in a tier; returns how many were removed."""
        ...

    # ── Key-value ─────────────────────────────────────────────

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def set(
        self, key: str, value: str, ttl_seconds: Optional[float] = None,
        only_if_absent: bool = False,
    ) -> bool:
        """Store a value. With only_if_absent, returns False if the key already exists."""
        ...

    @abstractmethod
    async def increment_and_expire(self, key: str, ttl_seconds: float) -> int:
        """Atomically increment a counter and (re)set its expiry; returns the new value."""
        ...

    @abstractmethod
    async def delete(self, *keys: str) -> int:
        ...

    @abstractmethod
    async def delete_prefix(self, prefix: str) -> int:
        """Delete every key starting with prefix."""
        ...
