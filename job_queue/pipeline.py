"""
Delivery Pipeline — the service facade callers submit messages through.

Owns the collaborators and the per-tenant worker registry:

  enqueue ─▶ validate ─▶ resolve template ─▶ rate check ─▶ duplicate guard
          ─▶ status "queued" ─▶ push (priority | regular) ─▶ start worker

  worker registry: tenant id → TenantState (lock, pause flag, burst history,
  drain task). A drain task exists only while the tenant has work; idle
  tenant states are reaped by housekeeping once their burst window expired.

Exposed operations: enqueue, enqueue_bulk, status, list_messages,
message_status, pause, resume, clear, cancel, retry, housekeeping, health.
"""
from __future__ import annotations

import asyncio
import time
import structlog
from typing import Any, Awaitable, Callable, Optional, Union

from pydantic import ValidationError

from backend.connector import EntityStore
from channels.base import ChannelAdapter
from config.settings import Settings
from core.behavior import BURST_WINDOW_MS, HumanBehaviorEngine
from core.duplicates import DuplicateGuard
from core.rate_governor import RATE_LIMITED, RateGovernor
from core.time_config import TimeConfigService
from database.store_base import QueueStore, StoreUnavailableError
from database.store_memory import InMemoryQueueStore
from database.store_supervisor import SupervisedQueueStore
from job_queue.status import StatusBook
from job_queue.worker import TIERS, DeliveryWorker, TenantState, decode, encode
from models.schemas import (
    BehaviorConfig, BulkEnqueueResult, EnqueueResult, EnvelopeMetadata,
    MessageEnvelope, MessageRequest, MessageStatus, MessageStatusRecord,
    QueueStatus, QueueTier,
)
from utils.templates import default_template, render

logger = structlog.get_logger()

INVALID_ENVELOPE = "invalid_envelope"
TEMPLATE_NOT_FOUND = "template_not_found"
NOT_RETRYABLE = "not_retryable"


class DeliveryPipeline:
    """
    Usage:
        pipeline = DeliveryPipeline(store, adapter, settings)
        result = await pipeline.enqueue("org-1", {"recipient_address": "+92300…", "content": "Hi"})
        await pipeline.shutdown()
    """

    def __init__(
        self,
        store: QueueStore,
        adapter: ChannelAdapter,
        settings: Optional[Settings] = None,
        *,
        entities: Optional[EntityStore] = None,
        time_config: Optional[TimeConfigService] = None,
        behavior: Optional[HumanBehaviorEngine] = None,
        duplicates: Optional[DuplicateGuard] = None,
        governor: Optional[RateGovernor] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings or Settings()
        self.store = store
        self.adapter = adapter
        self.entities = entities
        self._clock = clock
        self._sleep = sleep

        self.time_config = time_config or TimeConfigService(self.settings.time)
        self.behavior = behavior or HumanBehaviorEngine()
        self.duplicates = duplicates or DuplicateGuard(
            store, self.settings.duplicates, self.time_config.timezone, clock=clock,
        )
        self.governor = governor or RateGovernor(
            store, self.settings.rate_limit, self.time_config, clock=clock,
        )
        self.statuses = StatusBook(store, self.settings.queue.status_ttl_seconds, clock=clock)
        self._tenants: dict[str, TenantState] = {}

    # ── Registry ──────────────────────────────────────────

    def _state(self, tenant_id: str) -> TenantState:
        state = self._tenants.get(tenant_id)
        if state is None:
            state = TenantState(tenant_id, history_size=self.settings.queue.burst_history_size)
            self._tenants[tenant_id] = state
        return state

    def _ensure_worker(self, tenant_id: str) -> None:
        state = self._state(tenant_id)
        state.dirty = True
        if state.paused or state.processing:
            return
        worker = DeliveryWorker(
            state, self.store, self.adapter, self.governor, self.behavior,
            self.time_config, self.statuses, self.settings.queue,
            clock=self._clock, sleep=self._sleep,
        )
        state.task = asyncio.create_task(worker.run(), name=f"delivery-worker:{tenant_id}")
        state.task.add_done_callback(lambda task, tid=tenant_id: self._on_worker_done(tid, task))

    def _on_worker_done(self, tenant_id: str, task: asyncio.Task) -> None:
        state = self._tenants.get(tenant_id)
        if state is not None and state.task is task:
            state.task = None
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("worker_crashed", tenant_id=tenant_id, error=str(error),
                         exc_info=error)

    # ── Enqueue ───────────────────────────────────────────

    def _behavior(self, override: Union[BehaviorConfig, dict[str, Any], None]) -> BehaviorConfig:
        if isinstance(override, BehaviorConfig):
            return override
        defaults = self.settings.behavior
        base = {
            "pattern": defaults.pattern,
            "typing_speed": defaults.typing_speed,
            "enable_typing_indicator": defaults.enable_typing_indicator,
            "enable_jitter": defaults.enable_jitter,
        }
        return BehaviorConfig(**{**base, **(override or {})})

    async def _resolve_content(self, tenant_id: str, request: MessageRequest) -> Optional[str]:
        if not request.template_ref:
            return request.content
        template = None
        if self.entities is not None:
            template = await self.entities.get_template(tenant_id, request.template_ref)
        template = template or default_template(request.template_ref)
        if template is None:
            return None
        text, missing = render(template.content, request.template_data)
        if missing:
            logger.warning("template_placeholders_unreplaced", tenant_id=tenant_id,
                           template_id=request.template_ref, missing=missing)
        return text

    async def enqueue(
        self,
        tenant_id: str,
        message: Union[MessageRequest, dict[str, Any]],
        behavior: Union[BehaviorConfig, dict[str, Any], None] = None,
    ) -> EnqueueResult:
        """Validate, gate and queue one message. Policy rejections are results, not exceptions."""
        try:
            request = message if isinstance(message, MessageRequest) else MessageRequest(**message)
            config = self._behavior(behavior)
        except (ValidationError, TypeError) as e:
            logger.warning("enqueue_rejected", tenant_id=tenant_id, reason=INVALID_ENVELOPE, error=str(e))
            return EnqueueResult(accepted=False, reason=INVALID_ENVELOPE, detail=str(e))

        content = await self._resolve_content(tenant_id, request)
        if content is None:
            logger.warning("enqueue_rejected", tenant_id=tenant_id, reason=TEMPLATE_NOT_FOUND,
                           template_id=request.template_ref)
            return EnqueueResult(accepted=False, reason=TEMPLATE_NOT_FOUND,
                                 detail=f"template {request.template_ref!r} not found")

        try:
            envelope = MessageEnvelope(
                tenant_id=tenant_id,
                recipient_address=request.recipient_address,
                content=content,
                template_ref=request.template_ref,
                priority=request.priority,
                type=request.type,
                behavior_config=config,
                metadata=EnvelopeMetadata(
                    max_attempts=request.max_attempts or self.settings.queue.default_max_attempts,
                    estimated_length=len(content),
                ),
                context=request.context,
            )
        except ValidationError as e:
            logger.warning("enqueue_rejected", tenant_id=tenant_id, reason=INVALID_ENVELOPE, error=str(e))
            return EnqueueResult(accepted=False, reason=INVALID_ENVELOPE, detail=str(e))

        rate = await self.governor.check(tenant_id)
        if not rate.allowed:
            logger.info("enqueue_rejected", tenant_id=tenant_id, reason=RATE_LIMITED, detail=rate.reason)
            return EnqueueResult(accepted=False, reason=RATE_LIMITED, detail=rate.reason)

        dup = await self.duplicates.check(tenant_id, envelope)
        if dup.duplicate:
            return EnqueueResult(accepted=False, reason=dup.reason,
                                 detail=dup.original_message_id or "")

        return await self._push_new(envelope)

    async def _push_new(self, envelope: MessageEnvelope) -> EnqueueResult:
        tenant_id = envelope.tenant_id
        await self.statuses.write(envelope, MessageStatus.QUEUED)
        position = await self.store.push(tenant_id, envelope.tier, encode(envelope))
        if envelope.tier == QueueTier.REGULAR:
            position += await self.store.length(tenant_id, QueueTier.PRIORITY)
        self._ensure_worker(tenant_id)

        estimated = position * self.behavior.estimate_delay_ms(envelope.behavior_config.pattern)
        logger.info("message_enqueued", tenant_id=tenant_id, message_id=envelope.id,
                    tier=envelope.tier.value, position=position)
        return EnqueueResult(
            accepted=True,
            message_id=envelope.id,
            estimated_delay_ms=estimated,
            queue_position=position,
        )

    async def enqueue_bulk(
        self,
        tenant_id: str,
        messages: list[Union[MessageRequest, dict[str, Any]]],
        behavior: Union[BehaviorConfig, dict[str, Any], None] = None,
        batch_size: Optional[int] = None,
    ) -> BulkEnqueueResult:
        """Interleave recipients, split into batches and enqueue each message with its batch slot."""
        size = max(1, batch_size or self.settings.behavior.batch_size)
        ordered = self.behavior.optimal_order(
            messages,
            key=lambda m: m.recipient_address if isinstance(m, MessageRequest) else str(m.get("recipient_address", "")),
        )
        try:
            base = self._behavior(behavior).model_dump()
        except (ValidationError, TypeError) as e:
            rejected = EnqueueResult(accepted=False, reason=INVALID_ENVELOPE, detail=str(e))
            return BulkEnqueueResult(total_messages=len(messages), failure_count=len(messages),
                                     results=[rejected] * len(messages))

        result = BulkEnqueueResult(total_messages=len(messages))
        for start in range(0, len(ordered), size):
            batch = ordered[start:start + size]
            result.batches += 1
            for position, message in enumerate(batch):
                slot = {**base, "batch_index": result.batches - 1,
                        "batch_position": position, "batch_size": len(batch)}
                outcome = await self.enqueue(tenant_id, message, slot)
                result.results.append(outcome)
                if outcome.accepted:
                    result.success_count += 1
                else:
                    result.failure_count += 1

        logger.info("bulk_enqueued", tenant_id=tenant_id, total=result.total_messages,
                    accepted=result.success_count, rejected=result.failure_count,
                    batches=result.batches)
        return result

    # ── Inspection ────────────────────────────────────────

    async def status(self, tenant_id: str) -> QueueStatus:
        state = self._tenants.get(tenant_id)
        history = state.history if state else ()
        burst = self.behavior.analyze_burst(history, self._clock() * 1000)
        return QueueStatus(
            tenant_id=tenant_id,
            priority_length=await self.store.length(tenant_id, QueueTier.PRIORITY),
            regular_length=await self.store.length(tenant_id, QueueTier.REGULAR),
            processing=bool(state and state.processing),
            paused=bool(state and state.paused),
            recent_sends=burst.messages_in_window,
            burst=burst,
            store_backend=self.store.name,
        )

    async def list_messages(
        self, tenant_id: str, tier: QueueTier = QueueTier.REGULAR, limit: int = 50,
    ) -> list[MessageEnvelope]:
        raw = await self.store.list(tenant_id, tier, limit)
        return [env for env in (decode(r) for r in raw) if env is not None]

    async def message_status(self, message_id: str) -> Optional[MessageStatusRecord]:
        return await self.statuses.read(message_id)

    # ── Administration ────────────────────────────────────

    async def pause(self, tenant_id: str) -> None:
        self._state(tenant_id).paused = True
        logger.info("tenant_paused", tenant_id=tenant_id)

    async def resume(self, tenant_id: str) -> None:
        state = self._state(tenant_id)
        state.paused = False
        logger.info("tenant_resumed", tenant_id=tenant_id)
        for tier in TIERS:
            if await self.store.length(tenant_id, tier):
                self._ensure_worker(tenant_id)
                break

    async def clear(self, tenant_id: str) -> int:
        """Drop every queued envelope in both tiers; each is recorded as cancelled."""
        state = self._state(tenant_id)
        removed = 0
        async with state.lock:
            for tier in TIERS:
                items = await self.store.list(tenant_id, tier, await self.store.length(tenant_id, tier))
                removed += await self.store.clear(tenant_id, tier)
                for raw in items:
                    envelope = decode(raw)
                    if envelope is not None:
                        await self.statuses.write(envelope, MessageStatus.CANCELLED, reason="cleared")
        logger.info("queue_cleared", tenant_id=tenant_id, removed=removed)
        return removed

    async def cancel(self, tenant_id: str, message_id: str) -> bool:
        """Cancel a message that has not started dispatching. Returns whether it was cancelled."""
        state = self._state(tenant_id)
        async with state.lock:
            for tier in TIERS:
                items = await self.store.list(tenant_id, tier, await self.store.length(tenant_id, tier))
                for raw in items:
                    envelope = decode(raw)
                    if envelope is None or envelope.id != message_id:
                        continue
                    if not await self.store.remove(tenant_id, tier, raw):
                        return False
                    await self.statuses.write(envelope, MessageStatus.CANCELLED, reason="cancelled")
                    logger.info("message_cancelled", tenant_id=tenant_id, message_id=message_id)
                    return True

            if state.current_id == message_id and not state.dispatching:
                state.cancelled_ids.add(message_id)
                logger.info("message_cancel_requested", tenant_id=tenant_id, message_id=message_id)
                return True
        return False

    async def retry(self, tenant_id: str, message_id: str) -> EnqueueResult:
        """Re-queue a terminally failed message with its attempt count reset."""
        record = await self.statuses.read(message_id)
        if (record is None or record.envelope is None or record.tenant_id != tenant_id
                or record.status != MessageStatus.FAILED):
            current = record.status.value if record else "unknown"
            return EnqueueResult(accepted=False, message_id=message_id, reason=NOT_RETRYABLE,
                                 detail=f"message is {current}")

        envelope = record.envelope
        envelope.metadata.attempts = 0
        envelope.metadata.not_before = None
        envelope.metadata.last_error = ""
        logger.info("message_manual_retry", tenant_id=tenant_id, message_id=message_id)
        return await self._push_new(envelope)

    # ── Housekeeping ──────────────────────────────────────

    async def housekeeping(self) -> dict[str, Any]:
        """Periodic health routine: restore the primary store, sweep TTLs, restart stalled drains."""
        report: dict[str, Any] = {"restored": None, "swept": 0, "restarted": 0, "reaped": 0}
        try:
            if isinstance(self.store, SupervisedQueueStore):
                report["restored"] = await self.store.restore_primary()
                report["swept"] = self.store.fallback.sweep_expired()
            elif isinstance(self.store, InMemoryQueueStore):
                report["swept"] = self.store.sweep_expired()

            for tenant_id, state in list(self._tenants.items()):
                if state.paused or state.processing:
                    continue
                queued = 0
                for tier in TIERS:
                    queued += await self.store.length(tenant_id, tier)
                if queued:
                    self._ensure_worker(tenant_id)
                    report["restarted"] += 1
                elif self._clock() - state.last_active > BURST_WINDOW_MS / 1000:
                    del self._tenants[tenant_id]
                    report["reaped"] += 1
        except StoreUnavailableError as e:
            logger.warning("housekeeping_store_error", error=str(e))
            report["error"] = str(e)

        logger.info("housekeeping_complete", **report)
        return report

    async def health(self) -> dict[str, Any]:
        return {
            "store_backend": self.store.name,
            "store_degraded": isinstance(self.store, SupervisedQueueStore) and self.store.degraded,
            "channel_connected": await self.adapter.check_health(),
            "channel": await self.adapter.health_details(),
            "tenants": len(self._tenants),
            "active_workers": sum(1 for s in self._tenants.values() if s.processing),
        }

    # ── Lifecycle ─────────────────────────────────────────

    async def wait_until_idle(self, tenant_id: Optional[str] = None) -> None:
        """Await running drains (one tenant, or all) until none is left."""
        while True:
            states = [self._tenants[tenant_id]] if tenant_id in self._tenants else (
                [] if tenant_id else list(self._tenants.values())
            )
            tasks = [s.task for s in states if s.processing]
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)

    async def shutdown(self) -> None:
        tasks = [s.task for s in self._tenants.values() if s.processing]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("pipeline_shutdown", workers_stopped=len(tasks))
