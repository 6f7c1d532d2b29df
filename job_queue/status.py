"""
Status records — the write-back side of the pipeline.

One `status:<message_id>` record per envelope, rewritten on every transition
and kept for status_ttl_seconds. Each record carries the latest envelope and
a bounded transition history.
"""
from __future__ import annotations

import time
import structlog
from datetime import datetime, timezone
from typing import Callable, Optional

from pydantic import ValidationError

from database.keys import status_key
from database.store_base import QueueStore
from models.schemas import MessageEnvelope, MessageStatus, MessageStatusRecord, StatusTransition

logger = structlog.get_logger()

MAX_HISTORY = 50


class StatusBook:

    def __init__(
        self,
        store: QueueStore,
        ttl_seconds: int = 7 * 24 * 3600,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    async def read(self, message_id: str) -> Optional[MessageStatusRecord]:
        raw = await self.store.get(status_key(message_id))
        if raw is None:
            return None
        try:
            return MessageStatusRecord.model_validate_json(raw)
        except ValidationError as e:
            logger.error("status_record_corrupt", message_id=message_id, error=str(e))
            return None

    async def write(
        self,
        envelope: MessageEnvelope,
        status: MessageStatus,
        reason: str = "",
        provider_message_id: Optional[str] = None,
    ) -> MessageStatusRecord:
        now = self._now()
        envelope.status = status
        previous = await self.read(envelope.id)
        history = list(previous.history) if previous else []
        history.append(StatusTransition(status=status, at=now, reason=reason))

        record = MessageStatusRecord(
            message_id=envelope.id,
            tenant_id=envelope.tenant_id,
            status=status,
            attempts=envelope.metadata.attempts,
            reason=reason,
            provider_message_id=provider_message_id or (previous.provider_message_id if previous else None),
            updated_at=now,
            history=history[-MAX_HISTORY:],
            envelope=envelope,
        )
        await self.store.set(status_key(envelope.id), record.model_dump_json(), ttl_seconds=self.ttl_seconds)
        logger.debug("message_status_written", message_id=envelope.id,
                     tenant_id=envelope.tenant_id, status=status.value, reason=reason)
        return record
