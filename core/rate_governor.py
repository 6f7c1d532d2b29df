"""
Rate Governor — per-tenant send caps, spacing and the business-hours gate.

Gates:
  - counters: hourly and daily, hard caps; incremented only by record_send()
    after a successful dispatch, expiring at the window boundary
  - spacing:  minimum delay since the tenant's last successful send;
    reported as a wait in seconds, never a rejection
  - business hours: the effective window for the rate-limiting service

Buckets are computed in the configured local timezone.
"""
from __future__ import annotations

import time
import structlog
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional
from zoneinfo import ZoneInfo

from config.settings import RateLimitConfig
from core.time_config import TimeConfigService
from database.keys import rate_key, spacing_key
from database.store_base import QueueStore
from models.schemas import BusinessHoursWindow, RateDecision

logger = structlog.get_logger()

RATE_LIMITED = "rate_limited"


class RateGovernor:

    def __init__(
        self,
        store: QueueStore,
        config: Optional[RateLimitConfig] = None,
        time_config: Optional[TimeConfigService] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.config = config or RateLimitConfig()
        self.time_config = time_config or TimeConfigService()
        self._tz = ZoneInfo(self.time_config.timezone)
        self._clock = clock

    # ── Buckets ───────────────────────────────────────────

    def _local(self, epoch: Optional[float] = None) -> datetime:
        ts = self._clock() if epoch is None else epoch
        return datetime.fromtimestamp(ts, tz=timezone.utc).astimezone(self._tz)

    def _keys(self, tenant_id: str, local: datetime) -> tuple[str, str]:
        return (
            rate_key(tenant_id, "hourly", local.strftime("%Y-%m-%d-%H")),
            rate_key(tenant_id, "daily", local.strftime("%Y-%m-%d")),
        )

    @staticmethod
    def _next_hour(local: datetime) -> datetime:
        return local.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)

    @staticmethod
    def _next_midnight(local: datetime) -> datetime:
        return datetime.combine((local + timedelta(days=1)).date(), datetime.min.time(), tzinfo=local.tzinfo)

    def window_reset_at(self, limit: Optional[str]) -> float:
        """Epoch seconds at which the named counter window rolls over."""
        local = self._local()
        boundary = self._next_midnight(local) if limit == "daily" else self._next_hour(local)
        return boundary.timestamp()

    async def _count(self, key: str) -> int:
        value = await self.store.get(key)
        return int(value) if value else 0

    # ── Gates ─────────────────────────────────────────────

    async def check(self, tenant_id: str) -> RateDecision:
        """Counter gate plus advisory spacing wait."""
        local = self._local()
        hourly_key, daily_key = self._keys(tenant_id, local)
        hourly = await self._count(hourly_key)
        daily = await self._count(daily_key)

        if hourly >= self.config.hourly_limit:
            logger.info("rate_limit_reached", tenant_id=tenant_id, limit="hourly", count=hourly)
            return RateDecision(
                allowed=False,
                reason=f"Hourly limit exceeded. Limit: {self.config.hourly_limit}, Current: {hourly}",
                limit="hourly", hourly_count=hourly, daily_count=daily,
            )
        if daily >= self.config.daily_limit:
            logger.info("rate_limit_reached", tenant_id=tenant_id, limit="daily", count=daily)
            return RateDecision(
                allowed=False,
                reason=f"Daily limit exceeded. Limit: {self.config.daily_limit}, Current: {daily}",
                limit="daily", hourly_count=hourly, daily_count=daily,
            )

        return RateDecision(
            allowed=True,
            wait_seconds=await self.spacing_wait(tenant_id),
            hourly_count=hourly,
            daily_count=daily,
        )

    async def spacing_wait(self, tenant_id: str) -> float:
        last = await self.store.get(spacing_key(tenant_id))
        if last is None:
            return 0.0
        elapsed = self._clock() - float(last)
        return max(0.0, self.config.min_spacing_seconds - elapsed)

    def within_business_hours(
        self, tenant_id: str, override: Optional[BusinessHoursWindow] = None,
    ) -> bool:
        return self.time_config.is_within_business_hours(
            self._local(), service="rate_limiting", tenant_id=tenant_id, override=override,
        )

    def next_window_start(
        self, tenant_id: str, override: Optional[BusinessHoursWindow] = None,
    ) -> float:
        """Epoch seconds at which the effective window next opens."""
        opens = self.time_config.next_window_start(
            self._local(), service="rate_limiting", tenant_id=tenant_id, override=override,
        )
        return opens.timestamp()

    async def daily_count(self, tenant_id: str) -> int:
        _, daily_key = self._keys(tenant_id, self._local())
        return await self._count(daily_key)

    # ── Bookkeeping ───────────────────────────────────────

    async def record_send(self, tenant_id: str) -> None:
        now = self._clock()
        local = self._local(now)
        hourly_key, daily_key = self._keys(tenant_id, local)
        await self.store.increment_and_expire(
            hourly_key, (self._next_hour(local) - local).total_seconds() + 60,
        )
        await self.store.increment_and_expire(
            daily_key, (self._next_midnight(local) - local).total_seconds() + 60,
        )
        await self.store.set(spacing_key(tenant_id), repr(now), ttl_seconds=86400)

    async def stats(self, tenant_id: str) -> dict[str, Any]:
        local = self._local()
        hourly_key, daily_key = self._keys(tenant_id, local)
        last = await self.store.get(spacing_key(tenant_id))
        return {
            "hourly_count": await self._count(hourly_key),
            "hourly_limit": self.config.hourly_limit,
            "daily_count": await self._count(daily_key),
            "daily_limit": self.config.daily_limit,
            "min_spacing_seconds": self.config.min_spacing_seconds,
            "last_send_at": float(last) if last else None,
        }

    async def reset(self, tenant_id: str) -> int:
        removed = await self.store.delete_prefix(f"ratecap:{tenant_id}:")
        removed += await self.store.delete(spacing_key(tenant_id))
        logger.info("rate_limits_reset", tenant_id=tenant_id, removed=removed)
        return removed
