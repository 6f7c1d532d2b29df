"""
Duplicate Guard — content-hash and per-type daily-cap suppression.

Evaluated once, at submission time:
  1. content check: md5 over recipient:content:type; a live record for the
     same (tenant, recipient, hash) inside the window rejects the message
     as content_duplicate, otherwise a record is stored with TTL = window
  2. daily cap: a per-(tenant, recipient, type, local day) counter; if the
     value before this submission already reached the cap the message is
     rejected as daily_cap_exceeded. The counter expires at local midnight.

The first rejection short-circuits, so a content duplicate never touches
the daily counter.
"""
from __future__ import annotations

import hashlib
import json
import time
import structlog
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from config.settings import DuplicateConfig
from database.keys import daily_cap_key, duplicate_key
from database.store_base import QueueStore
from models.schemas import DuplicateCheck, MessageEnvelope

logger = structlog.get_logger()

CONTENT_DUPLICATE = "content_duplicate"
DAILY_CAP_EXCEEDED = "daily_cap_exceeded"


def content_hash(recipient: str, content: str, message_type: str) -> str:
    return hashlib.md5(f"{recipient}:{content}:{message_type}".encode("utf-8")).hexdigest()


def seconds_until_local_midnight(now: datetime) -> float:
    """now must be aware; the result is at least one second."""
    tomorrow = (now + timedelta(days=1)).date()
    midnight = datetime.combine(tomorrow, datetime.min.time(), tzinfo=now.tzinfo)
    return max(1.0, (midnight - now).total_seconds())


class DuplicateGuard:

    def __init__(
        self,
        store: QueueStore,
        config: Optional[DuplicateConfig] = None,
        timezone_name: str = "UTC",
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.config = config or DuplicateConfig()
        self._tz = ZoneInfo(timezone_name)
        self._clock = clock

    def _local_now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc).astimezone(self._tz)

    async def check(
        self,
        tenant_id: str,
        envelope: MessageEnvelope,
        check_content: Optional[bool] = None,
        check_daily_cap: Optional[bool] = None,
        window_seconds: Optional[int] = None,
        daily_cap: Optional[int] = None,
        message_type: Optional[str] = None,
    ) -> DuplicateCheck:
        check_content = self.config.check_content if check_content is None else check_content
        check_daily_cap = self.config.check_daily_cap if check_daily_cap is None else check_daily_cap
        window = window_seconds or self.config.window_seconds
        cap = self.config.daily_cap if daily_cap is None else daily_cap
        mtype = message_type or envelope.type

        digest = content_hash(envelope.recipient_address, envelope.content, mtype)

        if check_content:
            result = await self._check_content(tenant_id, envelope, digest, window)
            if result.duplicate:
                return result

        if check_daily_cap:
            result = await self._check_daily_cap(tenant_id, envelope.recipient_address, mtype, cap)
            if result.duplicate:
                result.content_hash = digest
                return result

        return DuplicateCheck(duplicate=False, content_hash=digest)

    async def _check_content(
        self, tenant_id: str, envelope: MessageEnvelope, digest: str, window: int,
    ) -> DuplicateCheck:
        key = duplicate_key(tenant_id, envelope.recipient_address, digest)
        now = self._clock()
        record = json.dumps({
            "message_id": envelope.id,
            "tenant_id": tenant_id,
            "recipient_address": envelope.recipient_address,
            "content_hash": digest,
            "timestamp": now,
        })

        if await self.store.set(key, record, ttl_seconds=window, only_if_absent=True):
            return DuplicateCheck(duplicate=False, content_hash=digest)

        existing = await self.store.get(key)
        if existing is not None:
            previous = json.loads(existing)
            if now - float(previous.get("timestamp", 0)) < window:
                logger.warning("duplicate_content_rejected",
                               tenant_id=tenant_id,
                               recipient=envelope.recipient_address,
                               original_message_id=previous.get("message_id"))
                return DuplicateCheck(
                    duplicate=True,
                    reason=CONTENT_DUPLICATE,
                    content_hash=digest,
                    original_message_id=previous.get("message_id"),
                )

        # Stale or vanished between the two calls; this submission owns the record now.
        await self.store.set(key, record, ttl_seconds=window)
        return DuplicateCheck(duplicate=False, content_hash=digest)

    async def _check_daily_cap(
        self, tenant_id: str, recipient: str, message_type: str, cap: int,
    ) -> DuplicateCheck:
        local_now = self._local_now()
        key = daily_cap_key(tenant_id, recipient, message_type, local_now.date().isoformat())
        count = await self.store.increment_and_expire(key, seconds_until_local_midnight(local_now))
        previous = count - 1
        if previous >= cap:
            logger.warning("duplicate_daily_cap_rejected",
                           tenant_id=tenant_id, recipient=recipient,
                           message_type=message_type, count=previous, cap=cap)
            return DuplicateCheck(
                duplicate=True,
                reason=DAILY_CAP_EXCEEDED,
                daily_count=previous,
                daily_cap=cap,
            )
        return DuplicateCheck(duplicate=False, daily_count=count, daily_cap=cap)

    async def clear_tenant(self, tenant_id: str) -> int:
        """Remove every duplicate record and daily counter for a tenant."""
        removed = await self.store.delete_prefix(f"dup:{tenant_id}:")
        removed += await self.store.delete_prefix(f"dupcap:{tenant_id}:")
        logger.info("duplicate_records_cleared", tenant_id=tenant_id, removed=removed)
        return removed
