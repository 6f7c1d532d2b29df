"""
Database layer — Queue Store backends.

Backends:
  - Redis (networked, durable)
  - In-memory (single process; also the automatic fallback)
  - Supervised (Redis primary with transparent in-memory failover)

Quick start:
  from database import create_store
  store = create_store(settings.queue)
  await store.connect()
  await store.push("tenant-1", QueueTier.REGULAR, payload)
"""
from database.store_base import QueueStore, StoreUnavailableError
from database.store_memory import InMemoryQueueStore
from database.store_redis import RedisQueueStore
from database.store_supervisor import SupervisedQueueStore
from database.store_factory import create_store

__all__ = [
    # Store interface
    "QueueStore", "StoreUnavailableError",
    # Store backends
    "InMemoryQueueStore", "RedisQueueStore", "SupervisedQueueStore",
    # Factory
    "create_store",
]
