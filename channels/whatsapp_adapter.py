"""
WhatsApp Channel Adapter — WPPConnect HTTP gateway integration.

Provides:
- Phone number normalization
- One session per tenant (session name = prefix + tenant id)
- Outbound text via POST /api/<session>/send-message
- Typing indicator via POST /api/<session>/typing
- Server health via GET /healthz
"""
from __future__ import annotations

import re
import structlog
from typing import Any, Optional

import httpx

from channels.base import ChannelAdapter, ChannelError
from config.settings import ChannelConfig

logger = structlog.get_logger()


class WhatsAppAdapter(ChannelAdapter):
    """Sends through a WPPConnect server; one HTTP attempt per send."""

    name = "whatsapp"

    def __init__(self, config: Optional[ChannelConfig] = None, client: Optional[httpx.AsyncClient] = None):
        super().__init__()
        self.config = config or ChannelConfig(type="wppconnect")
        self.client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            headers = {}
            if self.config.token:
                headers["Authorization"] = f"Bearer {self.config.token}"
            self.client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers=headers,
                timeout=self.config.timeout_seconds,
            )
        return self.client

    # ── Phone normalization ───────────────────────────────────

    @staticmethod
    def _normalize_phone(phone: str) -> str:
        """Normalize phone to digits only, stripping +, spaces, dashes."""
        return re.sub(r"[^\d]", "", phone)

    def session_for(self, tenant_id: str) -> str:
        return f"{self.config.session_prefix}{tenant_id}"

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        client = await self._get_client()
        try:
            response = await client.post(path, json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ChannelError(f"WPPConnect HTTP error: {e.response.status_code}", self.name) from e
        except httpx.HTTPError as e:
            raise ChannelError(f"WPPConnect transport error: {e}", self.name) from e
        try:
            body = response.json()
        except ValueError:
            body = {}
        if isinstance(body, dict) and body.get("error"):
            raise ChannelError(f"WPPConnect API error: {body['error']}", self.name)
        return body if isinstance(body, dict) else {"response": body}

    # ── Outbound ──────────────────────────────────────────────

    async def _do_send(self, tenant_id: str, recipient: str, content: str) -> Optional[str]:
        phone = self._normalize_phone(recipient)
        body = await self._post(
            f"/api/{self.session_for(tenant_id)}/send-message",
            {"phone": phone, "message": content},
        )
        response = body.get("response")
        provider_id = body.get("id")
        if provider_id is None and isinstance(response, dict):
            provider_id = response.get("id")
        if provider_id is None and isinstance(response, list) and response:
            provider_id = response[0].get("id") if isinstance(response[0], dict) else None
        logger.info("whatsapp_message_sent", tenant_id=tenant_id, phone=phone)
        return str(provider_id) if provider_id is not None else None

    async def show_typing(self, tenant_id: str, recipient: str, duration_ms: int) -> None:
        try:
            await self._post(
                f"/api/{self.session_for(tenant_id)}/typing",
                {"phone": self._normalize_phone(recipient), "value": True},
            )
        except ChannelError as e:
            # Cosmetic; the send itself decides success.
            logger.debug("whatsapp_typing_failed", tenant_id=tenant_id, error=str(e))

    # ── Health ────────────────────────────────────────────────

    async def check_health(self, tenant_id: Optional[str] = None) -> bool:
        client = await self._get_client()
        try:
            response = await client.get("/healthz")
        except httpx.HTTPError as e:
            logger.warning("whatsapp_health_check_failed", error=str(e))
            return False
        if response.status_code != 200:
            return False
        try:
            return response.json().get("message") == "OK"
        except ValueError:
            return False

    async def shutdown(self) -> None:
        if self.client:
            await self.client.aclose()
