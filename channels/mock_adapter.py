"""
Mock Channel Adapter — in-process gateway for development and tests.

Records every delivered message, supports a random success rate and a
script of forced failures, and can hang to exercise dispatch timeouts.
"""
from __future__ import annotations

import asyncio
import random
import uuid
import structlog
from dataclasses import dataclass
from typing import Optional

from channels.base import ChannelAdapter, ChannelError

logger = structlog.get_logger()


@dataclass
class SentMessage:
    tenant_id: str
    recipient: str
    content: str
    provider_message_id: str
    sent_at: float


class MockAdapter(ChannelAdapter):

    name = "mock"

    def __init__(
        self,
        success_rate: float = 1.0,
        fail_next: int = 0,
        hang: bool = False,
        clock=None,
        rng: Optional[random.Random] = None,
    ):
        super().__init__()
        self.success_rate = success_rate
        self.fail_next = fail_next
        self.hang = hang
        self.connected = True
        self._clock = clock
        self._rng = rng or random.Random()
        self.sent: list[SentMessage] = []
        self.typing: list[tuple[str, str, int]] = []
        self.attempts = 0

    async def _do_send(self, tenant_id: str, recipient: str, content: str) -> Optional[str]:
        self.attempts += 1
        if self.hang:
            await asyncio.Event().wait()
        if self.fail_next > 0:
            self.fail_next -= 1
            raise ChannelError("mock gateway scripted failure", self.name)
        if self._rng.random() >= self.success_rate:
            raise ChannelError("mock gateway random failure", self.name)

        provider_id = f"mock_{uuid.uuid4().hex[:12]}"
        self.sent.append(SentMessage(
            tenant_id=tenant_id,
            recipient=recipient,
            content=content,
            provider_message_id=provider_id,
            sent_at=self._clock() if self._clock else 0.0,
        ))
        logger.info("mock_message_sent", tenant_id=tenant_id, recipient=recipient)
        return provider_id

    async def show_typing(self, tenant_id: str, recipient: str, duration_ms: int) -> None:
        self.typing.append((tenant_id, recipient, duration_ms))

    async def check_health(self, tenant_id: Optional[str] = None) -> bool:
        return self.connected
