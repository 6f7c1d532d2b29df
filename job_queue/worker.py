"""
Delivery Worker — drains one tenant's queue, one envelope at a time.

Lifecycle: idle → draining → idle. The pipeline starts a worker on the first
enqueue for an idle tenant; the worker returns when both tiers are empty (or
the tenant is paused). A later enqueue starts a fresh drain.

Per envelope:
  1. business hours      outside the window → postponed, re-queued with a
                         not-before at the next window start
  2. rate caps           reached → postponed until the window rolls over;
                         spacing → sleep the remaining wait
  3. burst analysis      critical risk → sleep the recommended cooldown
  4. human delay         sleep compute_delay()
  5. typing simulation   indicator on the gateway, sleep the typing time
  6. dispatch            bounded by dispatch_timeout_seconds
  7. write-back          sent | retrying (re-queued with backoff) | failed

Deferred envelopes stay in the store with metadata.not_before; the worker
rotates past them and, when nothing is ready, sleeps until the earliest
wake-up or the poll interval, whichever is sooner.
"""
from __future__ import annotations

import asyncio
import time
import structlog
from collections import deque
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from pydantic import ValidationError

from channels.base import ChannelAdapter, ChannelError
from config.settings import QueueConfig
from core.behavior import HumanBehaviorEngine
from core.rate_governor import RateGovernor
from core.time_config import TimeConfigService
from database.store_base import QueueStore
from job_queue.status import StatusBook
from models.schemas import (
    BurstAnalysis, MessageEnvelope, MessageStatus, QueueTier, RiskLevel, SendResult,
)

logger = structlog.get_logger()

TIERS = (QueueTier.PRIORITY, QueueTier.REGULAR)


@dataclass
class TenantState:
    """Everything the pipeline keeps per tenant between drains."""
    tenant_id: str
    history_size: int = 50
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    paused: bool = False
    task: Optional[asyncio.Task] = None
    dirty: bool = False                     # set on push; forces one more scan before idling
    current_id: Optional[str] = None        # popped, not yet dispatched
    dispatching: bool = False
    cancelled_ids: set[str] = field(default_factory=set)
    last_active: float = 0.0
    history: Optional[deque] = None         # send timestamps, ms

    def __post_init__(self):
        if self.history is None:
            self.history = deque(maxlen=self.history_size)

    @property
    def processing(self) -> bool:
        return self.task is not None and not self.task.done()


def encode(envelope: MessageEnvelope) -> str:
    return envelope.model_dump_json()


def decode(raw: str) -> Optional[MessageEnvelope]:
    try:
        return MessageEnvelope.model_validate_json(raw)
    except ValidationError as e:
        logger.error("queue_item_corrupt", error=str(e), item=raw[:200])
        return None


class DeliveryWorker:
    """One drain of one tenant's queue."""

    def __init__(
        self,
        state: TenantState,
        store: QueueStore,
        adapter: ChannelAdapter,
        governor: RateGovernor,
        behavior: HumanBehaviorEngine,
        time_config: TimeConfigService,
        statuses: StatusBook,
        config: Optional[QueueConfig] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.state = state
        self.tenant_id = state.tenant_id
        self.store = store
        self.adapter = adapter
        self.governor = governor
        self.behavior = behavior
        self.time_config = time_config
        self.statuses = statuses
        self.config = config or QueueConfig()
        self._clock = clock
        self._sleep = sleep

    # ── Loop ──────────────────────────────────────────────

    async def run(self) -> int:
        """Drain until both tiers are empty or the tenant is paused. Returns envelopes handled."""
        handled = 0
        logger.info("worker_started", tenant_id=self.tenant_id)
        while not self.state.paused:
            envelope = await self._next_ready()
            if envelope is None:
                break
            await self._process(envelope)
            handled += 1
            self.state.last_active = self._clock()
        logger.info("worker_idle", tenant_id=self.tenant_id, handled=handled,
                    paused=self.state.paused)
        return handled

    async def _next_ready(self) -> Optional[MessageEnvelope]:
        """Pop the first ready envelope, priority tier first, rotating past deferred ones."""
        while not self.state.paused:
            self.state.dirty = False
            now = self._clock()
            earliest: Optional[float] = None
            waiting = False

            for tier in TIERS:
                async with self.state.lock:
                    for _ in range(await self.store.length(self.tenant_id, tier)):
                        raw = await self.store.pop(self.tenant_id, tier)
                        if raw is None:
                            break
                        envelope = decode(raw)
                        if envelope is None:
                            continue
                        if envelope.is_ready(now):
                            self.state.current_id = envelope.id
                            return envelope
                        await self.store.push(self.tenant_id, tier, raw)
                        waiting = True
                        wake = envelope.metadata.not_before
                        earliest = wake if earliest is None else min(earliest, wake)

            if self.state.dirty:
                continue
            if not waiting:
                return None
            wait = self.config.poll_interval_seconds
            if earliest is not None:
                wait = min(wait, max(0.0, earliest - now))
            logger.debug("worker_waiting", tenant_id=self.tenant_id, seconds=wait)
            await self._sleep(wait)
        return None

    async def _requeue(self, envelope: MessageEnvelope) -> None:
        await self.store.push(self.tenant_id, envelope.tier, encode(envelope))
        self.state.dirty = True

    async def _defer(
        self, envelope: MessageEnvelope, status: MessageStatus, not_before: float, reason: str,
    ) -> None:
        envelope.metadata.not_before = not_before
        await self.statuses.write(envelope, status, reason=reason)
        await self._requeue(envelope)

    # ── One envelope ──────────────────────────────────────

    async def _process(self, envelope: MessageEnvelope) -> None:
        try:
            await self._deliver(envelope)
        except asyncio.CancelledError:
            if not self.state.dispatching and envelope.id not in self.state.cancelled_ids:
                # Hand the envelope back so shutdown loses nothing it had popped.
                await self._requeue(envelope)
                logger.info("worker_cancelled_requeued", tenant_id=self.tenant_id,
                            message_id=envelope.id)
            raise
        except Exception as e:
            logger.error("worker_envelope_error", tenant_id=self.tenant_id,
                         message_id=envelope.id, error=str(e), exc_info=True)
            await self._handle_failure(envelope, f"{type(e).__name__}: {e}")
        finally:
            self.state.current_id = None
            self.state.dispatching = False
            self.state.cancelled_ids.discard(envelope.id)

    async def _deliver(self, envelope: MessageEnvelope) -> bool:
        """Gate, pace and dispatch one envelope. Returns True once dispatch was attempted."""
        behavior = envelope.behavior_config
        window = behavior.business_hours

        # 1. Business hours
        if not self.governor.within_business_hours(self.tenant_id, window):
            wake = self.governor.next_window_start(self.tenant_id, window)
            logger.info("message_postponed", tenant_id=self.tenant_id,
                        message_id=envelope.id, reason="outside_business_hours", until=wake)
            await self._defer(envelope, MessageStatus.POSTPONED, wake, "outside_business_hours")
            return False

        # 2. Rate caps and spacing
        decision = await self.governor.check(self.tenant_id)
        if not decision.allowed:
            wake = self.governor.window_reset_at(decision.limit)
            logger.info("message_postponed", tenant_id=self.tenant_id,
                        message_id=envelope.id, reason=decision.reason, until=wake)
            await self._defer(envelope, MessageStatus.POSTPONED, wake, decision.reason)
            return False
        if decision.wait_seconds > 0:
            await self._sleep(decision.wait_seconds)

        # 3. Burst
        burst = self.analyze_burst()
        if burst.risk_level == RiskLevel.CRITICAL:
            logger.warning("burst_cooldown", tenant_id=self.tenant_id,
                           messages_in_window=burst.messages_in_window,
                           cooldown_ms=burst.recommended_cooldown_ms)
            await self._sleep(burst.recommended_cooldown_ms / 1000)

        # 4. Human delay
        local_day = self.time_config.now_local(self._clock()).date()
        delay_ms = self.behavior.compute_delay(
            behavior.pattern,
            len(envelope.content),
            position=behavior.batch_position,
            batch_size=behavior.batch_size,
            daily_count=decision.daily_count,
            day=local_day,
            typing_speed=behavior.typing_speed,
            jitter=behavior.enable_jitter,
        )
        await self._sleep(delay_ms / 1000)

        # 5. Typing
        if behavior.enable_typing_indicator:
            typing_ms = self.behavior.typing_time(len(envelope.content), behavior.typing_speed)
            await self.adapter.show_typing(self.tenant_id, envelope.recipient_address, typing_ms)
            await self._sleep(typing_ms / 1000)

        if envelope.id in self.state.cancelled_ids:
            await self.statuses.write(envelope, MessageStatus.CANCELLED, reason="cancelled")
            logger.info("message_cancelled", tenant_id=self.tenant_id, message_id=envelope.id)
            return False

        # 6. Dispatch
        self.state.dispatching = True
        await self.statuses.write(envelope, MessageStatus.SENDING)
        result = await self._dispatch(envelope)
        self.state.history.append(self._clock() * 1000)

        # 7. Write-back
        if result.success:
            await self.governor.record_send(self.tenant_id)
            envelope.metadata.last_error = ""
            await self.statuses.write(envelope, MessageStatus.SENT,
                                      provider_message_id=result.provider_message_id)
            logger.info("message_sent", tenant_id=self.tenant_id, message_id=envelope.id,
                        recipient=envelope.recipient_address,
                        attempts=envelope.metadata.attempts + 1)
        else:
            await self._handle_failure(envelope, result.error or "unknown error")
        return True

    async def _dispatch(self, envelope: MessageEnvelope) -> SendResult:
        timeout = self.config.dispatch_timeout_seconds
        try:
            return await asyncio.wait_for(
                self.adapter.send(self.tenant_id, envelope.recipient_address, envelope.content),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            error = f"dispatch timed out after {timeout}s"
            self.adapter.breaker(self.tenant_id).failed()
            self.adapter.counters.rejected(self.tenant_id, error)
            return SendResult(success=False, error=error)
        except ChannelError as e:
            return SendResult(success=False, error=str(e))
        except Exception as e:
            logger.error("dispatch_unexpected_error", tenant_id=self.tenant_id,
                         message_id=envelope.id, error=str(e), exc_info=True)
            return SendResult(success=False, error=f"{type(e).__name__}: {e}")

    async def _handle_failure(self, envelope: MessageEnvelope, error: str) -> None:
        meta = envelope.metadata
        meta.attempts += 1
        meta.last_error = error

        if meta.attempts < meta.max_attempts:
            backoff = self.config.retry_backoff_base_seconds * (2 ** meta.attempts)
            logger.warning("message_retry_scheduled", tenant_id=self.tenant_id,
                           message_id=envelope.id, attempts=meta.attempts,
                           max_attempts=meta.max_attempts, backoff_seconds=backoff, error=error)
            await self._defer(envelope, MessageStatus.RETRYING, self._clock() + backoff, error)
            return

        meta.not_before = None
        await self.statuses.write(envelope, MessageStatus.FAILED, reason=error)
        logger.error("message_failed", tenant_id=self.tenant_id, message_id=envelope.id,
                     attempts=meta.attempts, error=error)

    # ── Burst history ─────────────────────────────────────

    def analyze_burst(self) -> BurstAnalysis:
        return self.behavior.analyze_burst(self.state.history, self._clock() * 1000)
