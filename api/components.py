"""
Component wiring shared by the API and the cron sweep script.

Importing this module builds nothing; callers decide when to wire.
"""
from __future__ import annotations

from typing import Any, Optional

from backend.connector import EntityStore, create_entity_store
from channels import create_channel_adapter
from config.settings import Settings
from database import create_store
from job_queue import DeliveryPipeline, PeriodicTask
from rules.engine import RuleEvaluator

HOUSEKEEPING_INTERVAL_SECONDS = 300


def build_components(settings: Settings, entities: Optional[EntityStore] = None) -> dict[str, Any]:
    store = create_store(settings.queue)
    adapter = create_channel_adapter(settings.channel)
    entities = entities or create_entity_store(settings.entities)
    pipeline = DeliveryPipeline(store, adapter, settings, entities=entities)
    evaluator = RuleEvaluator(entities, pipeline, settings.automation)
    return {
        "store": store,
        "adapter": adapter,
        "entities": entities,
        "pipeline": pipeline,
        "evaluator": evaluator,
        "tasks": [
            PeriodicTask("rule_sweep", evaluator.sweep, settings.automation.sweep_interval_seconds),
            PeriodicTask("housekeeping", pipeline.housekeeping, HOUSEKEEPING_INTERVAL_SECONDS),
        ],
    }
