"""Shared test fixtures for NotifyPace."""
import asyncio
import random
import time
from datetime import datetime, timezone

import pytest

from channels.mock_adapter import MockAdapter
from config.settings import Settings
from core.behavior import HumanBehaviorEngine
from database.store_base import StoreUnavailableError
from database.store_memory import InMemoryQueueStore
from job_queue.pipeline import DeliveryPipeline

# Wednesday 2024-01-03 10:00 UTC, inside the default Mon–Fri 09:00–17:00 window
WED_10_UTC = datetime(2024, 1, 3, 10, 0, tzinfo=timezone.utc).timestamp()


def at_utc(*args) -> float:
    return datetime(*args, tzinfo=timezone.utc).timestamp()


class FakeClock:
    """Epoch clock whose sleep advances time instead of waiting."""

    def __init__(self, start: float = WED_10_UTC):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += max(0.0, seconds)
        await asyncio.sleep(0)


class FlakyStore(InMemoryQueueStore):
    """In-memory store that raises StoreUnavailableError while `down` is set."""

    name = "flaky"

    def __init__(self, clock=time.time):
        super().__init__(clock=clock)
        self.down = False

    def _check(self):
        if self.down:
            raise StoreUnavailableError("flaky store is down", backend=self.name)

    async def ping(self):
        self._check()
        return True

    async def push(self, tenant_id, tier, item):
        self._check()
        return await super().push(tenant_id, tier, item)

    async def pop(self, tenant_id, tier):
        self._check()
        return await super().pop(tenant_id, tier)

    async def length(self, tenant_id, tier):
        self._check()
        return await super().length(tenant_id, tier)

    async def list(self, tenant_id, tier, limit=50):
        self._check()
        return await super().list(tenant_id, tier, limit)

    async def remove(self, tenant_id, tier, item):
        self._check()
        return await super().remove(tenant_id, tier, item)

    async def clear(self, tenant_id, tier):
        self._check()
        return await super().clear(tenant_id, tier)

    async def get(self, key):
        self._check()
        return await super().get(key)

    async def set(self, key, value, ttl_seconds=None, only_if_absent=False):
        self._check()
        return await super().set(key, value, ttl_seconds, only_if_absent)

    async def increment_and_expire(self, key, ttl_seconds):
        self._check()
        return await super().increment_and_expire(key, ttl_seconds)

    async def delete(self, *keys):
        self._check()
        return await super().delete(*keys)

    async def delete_prefix(self, prefix):
        self._check()
        return await super().delete_prefix(prefix)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return Settings()


@pytest.fixture
def store(clock) -> InMemoryQueueStore:
    return InMemoryQueueStore(clock=clock)


@pytest.fixture
def adapter(clock) -> MockAdapter:
    return MockAdapter(clock=clock, rng=random.Random(7))


@pytest.fixture
def make_pipeline(clock, settings, store, adapter):
    """Build a pipeline wired to the fake clock; any collaborator can be swapped."""

    def _make(**overrides) -> DeliveryPipeline:
        return DeliveryPipeline(
            overrides.get("store") or store,
            overrides.get("adapter") or adapter,
            overrides.get("settings") or settings,
            entities=overrides.get("entities"),
            behavior=HumanBehaviorEngine(random.Random(42)),
            clock=clock,
            sleep=clock.sleep,
        )

    return _make


@pytest.fixture
def pipeline(make_pipeline) -> DeliveryPipeline:
    return make_pipeline()


def message(recipient: str = "+923001234567", content: str = "Your fee is due", **extra) -> dict:
    return {"recipient_address": recipient, "content": content, **extra}
