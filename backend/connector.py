"""
Entity Store Connector — read-only access to the business records rules match.

The pipeline never owns fees, students or templates; it reads them:
  - list_rules():           automation rules across tenants
  - list_entities():        candidate records for a tenant and entity type
  - get_template():         a tenant's message template by id
  - update_rule_last_run(): the one write, so a rule fires once per window

Implementations:
  - RESTEntityStore    (httpx + tenacity against the business backend)
  - InMemoryEntityStore (development and tests)
"""
from __future__ import annotations

import abc
import structlog
from datetime import datetime
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import EntityStoreConfig
from models.schemas import AutomationRule, MessageTemplate

logger = structlog.get_logger()


class EntityStore(abc.ABC):
    """Abstract base for all entity store connectors."""

    @abc.abstractmethod
    async def list_rules(self) -> list[AutomationRule]:
        ...

    @abc.abstractmethod
    async def list_entities(self, tenant_id: str, entity_type: str = "students") -> list[dict[str, Any]]:
        ...

    @abc.abstractmethod
    async def get_template(self, tenant_id: str, template_id: str) -> Optional[MessageTemplate]:
        ...

    @abc.abstractmethod
    async def update_rule_last_run(self, rule_id: str, at: datetime) -> bool:
        ...

    async def close(self) -> None:
        pass


class RESTEntityStore(EntityStore):
    """
    REST backend connector.

    Endpoints (relative to base_url):
        GET /rules
        GET /tenants/{tenant_id}/{entity_type}
        GET /tenants/{tenant_id}/templates/{template_id}
        PUT /rules/{rule_id}/last-run
    """

    def __init__(self, config: EntityStoreConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self.client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            headers = {}
            if self.config.token:
                headers["Authorization"] = f"Bearer {self.config.token}"
            self.client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers=headers,
                timeout=30.0,
            )
        return self.client

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=10),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _request(self, method: str, url: str, **kwargs) -> Any:
        client = await self._get_client()
        response = await client.request(method, url, **kwargs)
        response.raise_for_status()
        return response.json()

    @staticmethod
    def _unwrap(result: Any) -> list[dict[str, Any]]:
        if isinstance(result, list):
            return result
        return result.get("data", result.get("results", []))

    async def list_rules(self) -> list[AutomationRule]:
        try:
            raw = self._unwrap(await self._request("GET", "/rules"))
        except httpx.HTTPError as e:
            logger.error("entity_store_fetch_rules_failed", error=str(e))
            return []
        return [AutomationRule(**r) for r in raw]

    async def list_entities(self, tenant_id: str, entity_type: str = "students") -> list[dict[str, Any]]:
        try:
            return self._unwrap(await self._request("GET", f"/tenants/{tenant_id}/{entity_type}"))
        except httpx.HTTPError as e:
            logger.error("entity_store_fetch_entities_failed",
                         tenant_id=tenant_id, entity_type=entity_type, error=str(e))
            return []

    async def get_template(self, tenant_id: str, template_id: str) -> Optional[MessageTemplate]:
        try:
            raw = await self._request("GET", f"/tenants/{tenant_id}/templates/{template_id}")
        except httpx.HTTPStatusError as e:
            if e.response.status_code != 404:
                logger.error("entity_store_fetch_template_failed",
                             tenant_id=tenant_id, template_id=template_id, error=str(e))
            return None
        except httpx.HTTPError as e:
            logger.error("entity_store_fetch_template_failed",
                         tenant_id=tenant_id, template_id=template_id, error=str(e))
            return None
        return MessageTemplate(**raw)

    async def update_rule_last_run(self, rule_id: str, at: datetime) -> bool:
        try:
            await self._request("PUT", f"/rules/{rule_id}/last-run", json={"last_run_at": at.isoformat()})
            return True
        except httpx.HTTPError as e:
            logger.error("entity_store_update_rule_failed", rule_id=rule_id, error=str(e))
            return False

    async def close(self):
        if self.client:
            await self.client.aclose()


class InMemoryEntityStore(EntityStore):
    """Dict-backed entity store for development and testing."""

    def __init__(
        self,
        rules: Optional[list[AutomationRule]] = None,
        entities: Optional[dict[str, dict[str, list[dict[str, Any]]]]] = None,
        templates: Optional[dict[str, dict[str, MessageTemplate]]] = None,
    ):
        self._rules: dict[str, AutomationRule] = {r.id: r for r in rules or []}
        self._entities = entities or {}        # tenant → entity_type → records
        self._templates = templates or {}      # tenant → template_id → template

    def add_rule(self, rule: AutomationRule) -> None:
        self._rules[rule.id] = rule

    def add_entities(self, tenant_id: str, entity_type: str, records: list[dict[str, Any]]) -> None:
        self._entities.setdefault(tenant_id, {}).setdefault(entity_type, []).extend(records)

    def add_template(self, tenant_id: str, template: MessageTemplate) -> None:
        self._templates.setdefault(tenant_id, {})[template.id] = template

    async def list_rules(self) -> list[AutomationRule]:
        return list(self._rules.values())

    async def list_entities(self, tenant_id: str, entity_type: str = "students") -> list[dict[str, Any]]:
        return list(self._entities.get(tenant_id, {}).get(entity_type, []))

    async def get_template(self, tenant_id: str, template_id: str) -> Optional[MessageTemplate]:
        return self._templates.get(tenant_id, {}).get(template_id)

    async def update_rule_last_run(self, rule_id: str, at: datetime) -> bool:
        rule = self._rules.get(rule_id)
        if rule is None:
            return False
        self._rules[rule_id] = rule.model_copy(update={"last_run_at": at})
        return True


def create_entity_store(config: EntityStoreConfig = None) -> EntityStore:
    """Factory function to create the appropriate entity store connector."""
    config = config or EntityStoreConfig()
    if config.backend == "rest" and config.base_url:
        return RESTEntityStore(config)
    logger.warning("using_inmemory_entity_store", reason="no backend configured or base_url empty")
    return InMemoryEntityStore()
