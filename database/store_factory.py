"""
Store Factory — Create the right queue store backend from configuration.

Configuration in settings.yaml:
    queue:
      # Queue store backend
      #   "redis"   — Redis lists/keys behind a supervisor that falls back
      #               to the in-process store when Redis is unreachable
      #   "memory"  — In-process store only (development, testing)
      backend: "memory"
      redis_url: "redis://localhost:6379"
      fallback_enabled: true

Usage:
    from database.store_factory import create_store
    store = create_store(settings.queue)
    await store.connect()

The store is constructed explicitly and handed to the components that need
it; there is no module-level singleton.
"""
from __future__ import annotations

import time
import structlog
from typing import Callable

from config.settings import QueueConfig
from database.store_base import QueueStore
from database.store_memory import InMemoryQueueStore

logger = structlog.get_logger()


def create_store(
    config: QueueConfig = None,
    clock: Callable[[], float] = time.time,
) -> QueueStore:
    """
    Factory: create the appropriate queue store backend.

    Args:
        config: QueueConfig with backend "redis" | "memory" (default: "memory")
        clock: time source for the in-process store's TTLs
    """
    config = config or QueueConfig()

    if config.backend == "redis":
        from database.store_redis import RedisQueueStore
        from database.store_supervisor import SupervisedQueueStore
        store = SupervisedQueueStore(
            primary=RedisQueueStore(redis_url=config.redis_url),
            fallback=InMemoryQueueStore(clock=clock),
            fallback_enabled=config.fallback_enabled,
        )
        logger.info("store_created", backend="redis", fallback=config.fallback_enabled)
        return store

    logger.info("store_created", backend="memory")
    return InMemoryQueueStore(clock=clock)
