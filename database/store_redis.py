"""
RedisQueueStore — Production store backed by Redis lists and string keys.

- Tier lists use RPUSH / LPOP so index 0 is always the oldest entry
- Counters use INCR + PEXPIRE in one MULTI transaction
- Every connectivity failure surfaces as StoreUnavailableError so the
  supervisor can fail over; an empty list is simply None
"""
from __future__ import annotations

import math
import re
import structlog
from typing import Any, Awaitable, Optional

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from database.keys import queue_key
from database.store_base import QueueStore, StoreUnavailableError
from models.schemas import QueueTier

logger = structlog.get_logger()

_CONNECTIVITY_ERRORS = (RedisConnectionError, RedisTimeoutError, OSError)
_GLOB_SPECIAL = re.compile(r"([*?\[\]\\])")


def _ttl_ms(ttl_seconds: float) -> int:
    return max(1, int(math.ceil(ttl_seconds * 1000)))


class RedisQueueStore(QueueStore):
    """Networked, durable queue store."""

    name = "redis"

    def __init__(self, redis_url: str = "redis://localhost:6379", client: Any = None):
        self._redis_url = redis_url
        self._redis = client

    async def connect(self) -> None:
        if self._redis is None:
            self._redis = aioredis.from_url(
                self._redis_url,
                decode_responses=True,
                max_connections=20,
            )
        await self.ping()
        logger.info("redis_store_connected", url=self._redis_url)

    async def close(self) -> None:
        if self._redis is not None:
            try:
                await self._redis.aclose()
            except _CONNECTIVITY_ERRORS as e:
                logger.warning("redis_store_close_error", error=str(e))

    async def _call(self, op: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await awaitable
        except _CONNECTIVITY_ERRORS as e:
            logger.warning("redis_store_unavailable", op=op, error=str(e))
            raise StoreUnavailableError(f"Redis {op} failed: {e}", backend=self.name) from e

    def _client(self):
        if self._redis is None:
            raise StoreUnavailableError("Redis store is not connected", backend=self.name)
        return self._redis

    async def ping(self) -> bool:
        return bool(await self._call("ping", self._client().ping()))

    # ── Lists ─────────────────────────────────────────────

    async def push(self, tenant_id: str, tier: QueueTier, item: str) -> int:
        return int(await self._call("push", self._client().rpush(queue_key(tenant_id, tier), item)))

    async def pop(self, tenant_id: str, tier: QueueTier) -> Optional[str]:
        return await self._call("pop", self._client().lpop(queue_key(tenant_id, tier)))

    async def length(self, tenant_id: str, tier: QueueTier) -> int:
        return int(await self._call("length", self._client().llen(queue_key(tenant_id, tier))))

    async def list(self, tenant_id: str, tier: QueueTier, limit: int = 50) -> list[str]:
        if limit <= 0:
            return []
        return await self._call(
            "list", self._client().lrange(queue_key(tenant_id, tier), 0, limit - 1),
        )

    async def remove(self, tenant_id: str, tier: QueueTier, item: str) -> bool:
        removed = await self._call("remove", self._client().lrem(queue_key(tenant_id, tier), 1, item))
        return int(removed) > 0

    async def clear(self, tenant_id: str, tier: QueueTier) -> int:
        key = queue_key(tenant_id, tier)

        async def _clear() -> int:
            async with self._client().pipeline(transaction=True) as pipe:
                pipe.llen(key)
                pipe.delete(key)
                count, _ = await pipe.execute()
            return int(count)

        return await self._call("clear", _clear())

    # ── Key-value ─────────────────────────────────────────

    async def get(self, key: str) -> Optional[str]:
        return await self._call("get", self._client().get(key))

    async def set(
        self, key: str, value: str, ttl_seconds: Optional[float] = None,
        only_if_absent: bool = False,
    ) -> bool:
        px = _ttl_ms(ttl_seconds) if ttl_seconds else None
        result = await self._call(
            "set", self._client().set(key, value, px=px, nx=only_if_absent),
        )
        return bool(result)

    async def increment_and_expire(self, key: str, ttl_seconds: float) -> int:
        async def _incr() -> int:
            async with self._client().pipeline(transaction=True) as pipe:
                pipe.incr(key)
                pipe.pexpire(key, _ttl_ms(ttl_seconds))
                value, _ = await pipe.execute()
            return int(value)

        return await self._call("increment_and_expire", _incr())

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._call("delete", self._client().delete(*keys)))

    async def delete_prefix(self, prefix: str) -> int:
        pattern = _GLOB_SPECIAL.sub(r"\\\1", prefix) + "*"

        async def _scan_delete() -> int:
            removed = 0
            batch: list[str] = []
            async for key in self._client().scan_iter(match=pattern, count=500):
                batch.append(key)
                if len(batch) >= 500:
                    removed += await self._client().delete(*batch)
                    batch = []
            if batch:
                removed += await self._client().delete(*batch)
            return removed

        return await self._call("delete_prefix", _scan_delete())
