"""
Rule Evaluator — matches entities against automation rules and submits messages.

Invoked by an external scheduler (cron via scripts/run_sweep.py, or the API
process's periodic task). One sweep:
  1. load every rule; skip disabled ones
  2. schedule: local time within the grace period of the rule's time, and
     today allowed by its frequency (daily, or weekly on named weekdays)
  3. skip a rule that already ran inside the current grace window
  4. resolve the template (entity store, then the built-in catalogue)
  5. filter the tenant's entities by the rule criteria, render the content
     and submit one message per match through the pipeline
A failing rule is logged and recorded in the report; the sweep continues.
"""
from __future__ import annotations

import time
import structlog
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional
from zoneinfo import ZoneInfo

from backend.connector import EntityStore
from config.settings import AutomationConfig
from core.time_config import TimeConfigService
from job_queue.pipeline import DeliveryPipeline
from models.schemas import AutomationRule, MessageRequest, MessageTemplate, SweepReport
from utils.conditions import days_until, evaluate_conditions, evaluate_due_date, get_nested_value
from utils.templates import default_template, render

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Rule Evaluator
# ──────────────────────────────────────────────────────────────

class RuleEvaluator:
    """
    Sweeps automation rules; the pipeline applies the same duplicate and
    rate gates to rule-generated messages as to any other submission.
    """

    def __init__(
        self,
        entities: EntityStore,
        pipeline: DeliveryPipeline,
        config: Optional[AutomationConfig] = None,
        time_config: Optional[TimeConfigService] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.entities = entities
        self.pipeline = pipeline
        self.config = config or AutomationConfig()
        self.time_config = time_config or pipeline.time_config
        self._tz = ZoneInfo(self.time_config.timezone)
        self._clock = clock
        self._last_runs: dict[str, datetime] = {}

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc).astimezone(self._tz)

    # ── Schedule ──────────────────────────────────────────────

    def is_scheduled(self, rule: AutomationRule, now: datetime) -> bool:
        hours, minutes = rule.schedule.time.split(":")
        rule_minutes = int(hours) * 60 + int(minutes)
        current = now.hour * 60 + now.minute
        if abs(current - rule_minutes) > self.config.grace_period_minutes:
            return False

        if rule.schedule.frequency == "daily":
            return True
        if rule.schedule.frequency == "weekly":
            return now.strftime("%A").lower() in rule.schedule.days_of_week
        logger.warning("rule_unknown_frequency", rule_id=rule.id, frequency=rule.schedule.frequency)
        return False

    def already_ran(self, rule: AutomationRule, now: datetime) -> bool:
        """True if the rule fired inside the window now belongs to."""
        window = timedelta(minutes=2 * self.config.grace_period_minutes + 1)
        last = max(
            (t for t in (rule.last_run_at, self._last_runs.get(rule.id)) if t is not None),
            default=None,
        )
        if last is None:
            return False
        if last.tzinfo is None:
            last = last.replace(tzinfo=timezone.utc)
        return now - last < window

    # ── Criteria ──────────────────────────────────────────────

    def matches(self, rule: AutomationRule, entity: dict[str, Any], now: datetime) -> bool:
        if not get_nested_value(entity, rule.recipient_field):
            return False
        criteria = rule.criteria
        if criteria.status is not None and get_nested_value(entity, criteria.status_field) != criteria.status:
            return False
        if criteria.due_date is not None and not evaluate_due_date(criteria.due_date, entity, now):
            return False
        for field, expected in criteria.equals.items():
            if get_nested_value(entity, field) != expected:
                return False
        return evaluate_conditions(criteria.conditions, entity)

    def render_for(
        self, rule: AutomationRule, template: MessageTemplate, entity: dict[str, Any], now: datetime,
    ) -> str:
        data = dict(entity)
        if rule.criteria.due_date is not None:
            diff = days_until(get_nested_value(entity, rule.criteria.due_date.field), now)
            if diff is not None:
                data.setdefault("days_overdue", max(0, -diff))
                data.setdefault("days_until_due", diff)
        text, missing = render(template.content, data)
        if missing:
            logger.warning("template_placeholders_unreplaced", rule_id=rule.id,
                           template_id=template.id, entity_id=entity.get("id"), missing=missing)
        return text

    async def _template(self, rule: AutomationRule) -> Optional[MessageTemplate]:
        template = await self.entities.get_template(rule.tenant_id, rule.template_id)
        if template is None:
            template = default_template(rule.template_id)
            if template is not None:
                logger.info("rule_using_default_template", rule_id=rule.id, template_id=rule.template_id)
        return template

    # ── Sweep ─────────────────────────────────────────────────

    async def sweep(self) -> SweepReport:
        now = self._now()
        rules = await self.entities.list_rules()
        report = SweepReport(rules_total=len(rules), started_at=now)

        for rule in rules:
            try:
                reason = await self._evaluate(rule, now, report)
            except Exception as e:
                report.errors += 1
                reason = "error"
                logger.error("rule_evaluation_error", rule_id=rule.id, error=str(e), exc_info=True)
            if reason:
                report.skipped[rule.id] = reason

        logger.info("rule_sweep_complete", rules=report.rules_total, matched=report.rules_matched,
                    submitted=report.submitted, rejected=report.rejected,
                    skipped=len(report.skipped), errors=report.errors)
        return report

    async def _evaluate(self, rule: AutomationRule, now: datetime, report: SweepReport) -> Optional[str]:
        """Run one rule. Returns a skip reason, or None when it executed."""
        if not rule.enabled:
            return "disabled"
        if not self.is_scheduled(rule, now):
            return "not_scheduled"
        if self.already_ran(rule, now):
            return "already_ran"
        if not rule.template_id:
            logger.warning("rule_skipped", rule_id=rule.id, reason="no_template")
            return "no_template"

        template = await self._template(rule)
        if template is None:
            logger.warning("rule_skipped", rule_id=rule.id, reason="template_not_found",
                           template_id=rule.template_id)
            return "template_not_found"

        report.rules_matched += 1
        self._last_runs[rule.id] = now
        entities = await self.entities.list_entities(rule.tenant_id, rule.entity_type)
        matching = [e for e in entities if self.matches(rule, e, now)]
        logger.info("rule_executing", rule_id=rule.id, tenant_id=rule.tenant_id,
                    candidates=len(entities), matching=len(matching))

        for entity in matching:
            request = MessageRequest(
                recipient_address=str(get_nested_value(entity, rule.recipient_field)),
                content=self.render_for(rule, template, entity, now),
                priority=rule.priority,
                type=rule.message_type,
                context={"rule_id": rule.id, "entity_id": entity.get("id"), "template_id": template.id},
            )
            result = await self.pipeline.enqueue(rule.tenant_id, request, rule.behavior)
            if result.accepted:
                report.submitted += 1
            else:
                report.rejected += 1
                logger.info("rule_message_rejected", rule_id=rule.id,
                            entity_id=entity.get("id"), reason=result.reason)

        await self.entities.update_rule_last_run(rule.id, now)
        return None
