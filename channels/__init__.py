"""Outbound channel adapters (the gateway that actually delivers a message)."""
from __future__ import annotations

import structlog

from channels.base import (
    ChannelAdapter,
    ChannelError,
    DeliveryCounters,
    SessionBreaker,
    SessionUnavailableError,
)
from channels.mock_adapter import MockAdapter
from channels.whatsapp_adapter import WhatsAppAdapter
from config.settings import ChannelConfig

logger = structlog.get_logger()


def create_channel_adapter(config: ChannelConfig = None) -> ChannelAdapter:
    """Factory function to create the configured gateway adapter."""
    config = config or ChannelConfig()
    if config.type == "wppconnect" and config.base_url:
        return WhatsAppAdapter(config)
    logger.warning("using_mock_channel", reason="no gateway configured")
    return MockAdapter(success_rate=config.success_rate)


__all__ = [
    "ChannelAdapter", "ChannelError", "DeliveryCounters", "SessionBreaker", "SessionUnavailableError",
    "MockAdapter", "WhatsAppAdapter", "create_channel_adapter",
]
