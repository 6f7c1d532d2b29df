"""
Channel Adapters — shared plumbing for outbound gateways.

Provides:
- ChannelError: a transport failure reported by a gateway
- SessionBreaker: per-tenant circuit breaker (each tenant owns one gateway session)
- DeliveryCounters: sent/failed/latency bookkeeping, overall and per tenant
- ChannelAdapter: abstract base; send() runs one attempt through the breaker

Retry and backoff belong to the delivery worker, never to an adapter.
"""
from __future__ import annotations

import abc
import time
import structlog
from collections import Counter, deque
from typing import Any, Callable, Optional

from models.schemas import SendResult

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """A gateway could not deliver; the worker counts it as a failed attempt."""

    def __init__(self, message: str, channel: str = ""):
        self.channel = channel
        super().__init__(message)


class SessionUnavailableError(ChannelError):
    def __init__(self, channel: str, tenant_id: str):
        self.tenant_id = tenant_id
        super().__init__(f"Circuit breaker open for {channel} session of {tenant_id}", channel)


# ══════════════════════════════════════════════════════════════
#  SESSION BREAKER
# ══════════════════════════════════════════════════════════════

class SessionBreaker:
    """
    Circuit breaker for one tenant's gateway session.

    closed ──(threshold consecutive failures)──▶ open
    open ──(cooldown elapsed)──▶ half_open: one probe send is let through
    half_open ──success──▶ closed, ──failure──▶ open again
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        cooldown_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._tripped_at: Optional[float] = None
        self.consecutive_failures = 0
        self.trips = 0

    @property
    def state(self) -> str:
        if self._tripped_at is None:
            return "closed"
        if self._clock() - self._tripped_at >= self.cooldown_seconds:
            return "half_open"
        return "open"

    def allows(self) -> bool:
        return self.state != "open"

    def failed(self) -> None:
        self.consecutive_failures += 1
        if self.state == "half_open" or self.consecutive_failures >= self.failure_threshold:
            self._tripped_at = self._clock()
            self.trips += 1

    def succeeded(self) -> None:
        self._tripped_at = None
        self.consecutive_failures = 0

    def snapshot(self) -> dict[str, Any]:
        return {"state": self.state, "consecutive_failures": self.consecutive_failures,
                "trips": self.trips}


# ══════════════════════════════════════════════════════════════
#  DELIVERY COUNTERS
# ══════════════════════════════════════════════════════════════

class DeliveryCounters:
    """In-process delivery statistics for one adapter."""

    def __init__(self, window: int = 200):
        self.sent = Counter()
        self.failed = Counter()
        self._latencies: deque[float] = deque(maxlen=window)
        self._errors: deque[str] = deque(maxlen=20)

    def delivered(self, tenant_id: str, latency_ms: float) -> None:
        self.sent[tenant_id] += 1
        self._latencies.append(latency_ms)

    def rejected(self, tenant_id: str, error: str) -> None:
        self.failed[tenant_id] += 1
        self._errors.append(error)

    @property
    def avg_latency_ms(self) -> float:
        if not self._latencies:
            return 0.0
        return sum(self._latencies) / len(self._latencies)

    def failure_rate(self, tenant_id: Optional[str] = None) -> float:
        if tenant_id is None:
            sent, failed = sum(self.sent.values()), sum(self.failed.values())
        else:
            sent, failed = self.sent[tenant_id], self.failed[tenant_id]
        return failed / (sent + failed) if sent + failed else 0.0

    def summary(self) -> dict[str, Any]:
        return {
            "sent": sum(self.sent.values()),
            "failed": sum(self.failed.values()),
            "failure_rate": round(self.failure_rate(), 4),
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "recent_errors": list(self._errors)[-5:],
        }


# ══════════════════════════════════════════════════════════════
#  CHANNEL ADAPTER — Abstract Base
# ══════════════════════════════════════════════════════════════

class ChannelAdapter(abc.ABC):
    """
    Base class for all outbound gateways.

    Subclasses implement _do_send, raising ChannelError when the gateway
    refuses or is unreachable, and check_health. send() never raises a
    ChannelError; it answers with a SendResult.
    """

    name: str = "abstract"
    failure_threshold: int = 5
    cooldown_seconds: float = 60.0

    def __init__(self):
        self._breakers: dict[str, SessionBreaker] = {}
        self.counters = DeliveryCounters()

    def breaker(self, tenant_id: str) -> SessionBreaker:
        if tenant_id not in self._breakers:
            self._breakers[tenant_id] = SessionBreaker(self.failure_threshold, self.cooldown_seconds)
        return self._breakers[tenant_id]

    # ── Gateway hooks ─────────────────────────────────────────

    @abc.abstractmethod
    async def _do_send(self, tenant_id: str, recipient: str, content: str) -> Optional[str]:
        """Deliver one message; returns the provider message id if any."""
        ...

    @abc.abstractmethod
    async def check_health(self, tenant_id: Optional[str] = None) -> bool:
        """True when the gateway is connected."""
        ...

    async def show_typing(self, tenant_id: str, recipient: str, duration_ms: int) -> None:
        """Typing indicator; gateways without one ignore it."""

    # ── Send ──────────────────────────────────────────────────

    async def send(self, tenant_id: str, recipient: str, content: str) -> SendResult:
        breaker = self.breaker(tenant_id)
        if not breaker.allows():
            error = str(SessionUnavailableError(self.name, tenant_id))
            self.counters.rejected(tenant_id, error)
            return SendResult(success=False, error=error)

        started = time.monotonic()
        try:
            provider_id = await self._do_send(tenant_id, recipient, content)
        except ChannelError as e:
            breaker.failed()
            self.counters.rejected(tenant_id, str(e))
            logger.warning("channel_send_failed", channel=self.name, tenant_id=tenant_id,
                           recipient=recipient, error=str(e), breaker=breaker.state)
            return SendResult(success=False, error=str(e))

        breaker.succeeded()
        self.counters.delivered(tenant_id, (time.monotonic() - started) * 1000)
        return SendResult(success=True, provider_message_id=provider_id)

    # ── Health ────────────────────────────────────────────────

    async def health_details(self) -> dict[str, Any]:
        return {
            "channel": self.name,
            "sessions": {tenant: b.snapshot() for tenant, b in self._breakers.items()},
            "delivery": self.counters.summary(),
        }

    async def shutdown(self) -> None:
        pass
