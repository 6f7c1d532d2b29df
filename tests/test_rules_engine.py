"""
Tests for the Rule Evaluator.

The tenant is paused before every sweep so submitted messages stay in the
queue where their rendered content can be inspected.
"""
from datetime import datetime, timezone

import pytest

from backend.connector import InMemoryEntityStore
from models.schemas import (
    AutomationRule, DueDateCriterion, MessageTemplate, QueueTier, RuleCondition,
    RuleCriteria, RuleSchedule,
)
from rules.engine import RuleEvaluator


STUDENTS = [
    {"id": "s1", "student_name": "Ayesha", "whatsapp_number": "+923001111111",
     "fee_amount": "PKR 5,000", "due_date": "2024-01-01", "payment_status": "pending", "class_id": "C-7"},
    {"id": "s2", "student_name": "Bilal", "whatsapp_number": "+923002222222",
     "fee_amount": "PKR 4,500", "due_date": "2024-01-10", "payment_status": "pending", "class_id": "C-8"},
    {"id": "s3", "student_name": "Hina", "whatsapp_number": "+923003333333",
     "fee_amount": "PKR 5,000", "due_date": "2023-12-20", "payment_status": "paid", "class_id": "C-7"},
    {"id": "s4", "student_name": "Omar", "whatsapp_number": "",
     "fee_amount": "PKR 5,000", "due_date": "2023-12-20", "payment_status": "pending", "class_id": "C-7"},
]


def overdue_rule(**overrides) -> AutomationRule:
    fields = dict(
        id="rule-overdue",
        tenant_id="org-1",
        name="Overdue fees",
        schedule=RuleSchedule(time="10:01"),
        criteria=RuleCriteria(status="pending", due_date=DueDateCriterion(condition="overdue")),
        template_id="overdue-notice",
    )
    fields.update(overrides)
    return AutomationRule(**fields)


@pytest.fixture
def entities():
    store = InMemoryEntityStore()
    store.add_entities("org-1", "students", [dict(s) for s in STUDENTS])
    return store


@pytest.fixture
def rule_pipeline(make_pipeline, entities):
    return make_pipeline(entities=entities)


@pytest.fixture
def evaluator(entities, rule_pipeline, clock):
    return RuleEvaluator(entities, rule_pipeline, clock=clock)


async def queued_contents(pipeline, tenant_id="org-1"):
    return [env.content for env in await pipeline.list_messages(tenant_id, QueueTier.REGULAR)]


# ──────────────────────────────────────────────────────────────
#  Matching and submission
# ──────────────────────────────────────────────────────────────

class TestSweep:
    @pytest.mark.asyncio
    async def test_overdue_rule_submits_rendered_messages(self, evaluator, entities, rule_pipeline):
        entities.add_rule(overdue_rule())
        await rule_pipeline.pause("org-1")

        report = await evaluator.sweep()

        assert report.rules_total == 1
        assert report.rules_matched == 1
        assert report.submitted == 1
        assert report.skipped == {}
        contents = await queued_contents(rule_pipeline)
        assert len(contents) == 1
        assert "Dear Ayesha" in contents[0]
        assert "3 days overdue" in contents[0]

        queued = (await rule_pipeline.list_messages("org-1"))[0]
        assert queued.recipient_address == "+923001111111"
        assert queued.type == "automation"
        assert queued.context == {"rule_id": "rule-overdue", "entity_id": "s1", "template_id": "overdue-notice"}

    @pytest.mark.asyncio
    async def test_tenant_template_preferred_over_builtin(self, evaluator, entities, rule_pipeline):
        entities.add_template("org-1", MessageTemplate(id="overdue-notice", content="Pay {fee_amount} now"))
        entities.add_rule(overdue_rule())
        await rule_pipeline.pause("org-1")

        await evaluator.sweep()
        assert await queued_contents(rule_pipeline) == ["Pay PKR 5,000 now"]

    @pytest.mark.asyncio
    async def test_equals_and_conditions_filter(self, evaluator, entities, rule_pipeline):
        entities.add_rule(overdue_rule(
            id="rule-c7",
            criteria=RuleCriteria(
                equals={"class_id": "C-8"},
                conditions=[RuleCondition(field="payment_status", operator="neq", value="paid")],
            ),
            template_id="fee-reminder",
        ))
        await rule_pipeline.pause("org-1")

        report = await evaluator.sweep()
        assert report.submitted == 1
        contents = await queued_contents(rule_pipeline)
        assert contents[0].startswith("Dear Bilal")

    @pytest.mark.asyncio
    async def test_before_due_window(self, evaluator, entities, rule_pipeline):
        entities.add_rule(overdue_rule(
            id="rule-soon",
            criteria=RuleCriteria(status="pending", due_date=DueDateCriterion(condition="before", days=7)),
            template_id="fee-reminder",
        ))
        await rule_pipeline.pause("org-1")

        report = await evaluator.sweep()
        # Ayesha (past due) and Bilal (6 days out); Omar has no number
        assert report.submitted == 2

    @pytest.mark.asyncio
    async def test_pipeline_rejections_are_counted(self, evaluator, entities, rule_pipeline):
        twin = dict(STUDENTS[0], id="s1-copy")
        entities.add_entities("org-1", "students", [twin])
        entities.add_rule(overdue_rule())
        await rule_pipeline.pause("org-1")

        report = await evaluator.sweep()
        assert report.submitted == 1
        assert report.rejected == 1

    @pytest.mark.asyncio
    async def test_rule_records_last_run(self, evaluator, entities, rule_pipeline, clock):
        entities.add_rule(overdue_rule())
        await rule_pipeline.pause("org-1")
        await evaluator.sweep()

        rule = (await entities.list_rules())[0]
        assert rule.last_run_at == datetime.fromtimestamp(clock(), tz=timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Skips
# ──────────────────────────────────────────────────────────────

class TestSkips:
    @pytest.mark.asyncio
    async def test_skip_reasons(self, evaluator, entities, rule_pipeline):
        entities.add_rule(overdue_rule(id="off", enabled=False))
        entities.add_rule(overdue_rule(id="later", schedule=RuleSchedule(time="11:00")))
        entities.add_rule(overdue_rule(id="untemplated", template_id=None))
        entities.add_rule(overdue_rule(id="unknown-template", template_id="does-not-exist"))
        await rule_pipeline.pause("org-1")

        report = await evaluator.sweep()
        assert report.skipped == {
            "off": "disabled",
            "later": "not_scheduled",
            "untemplated": "no_template",
            "unknown-template": "template_not_found",
        }
        assert report.submitted == 0

    @pytest.mark.asyncio
    async def test_weekly_rule_runs_on_named_days_only(self, evaluator, entities, rule_pipeline):
        entities.add_rule(overdue_rule(
            id="wed", schedule=RuleSchedule(time="10:00", frequency="weekly", days_of_week=["Wednesday"]),
        ))
        entities.add_rule(overdue_rule(
            id="mon", schedule=RuleSchedule(time="10:00", frequency="weekly", days_of_week=["monday"]),
        ))
        await rule_pipeline.pause("org-1")

        report = await evaluator.sweep()
        assert "wed" not in report.skipped
        assert report.skipped["mon"] == "not_scheduled"

    @pytest.mark.asyncio
    async def test_fires_once_per_grace_window(self, evaluator, entities, rule_pipeline, clock):
        entities.add_rule(overdue_rule())
        await rule_pipeline.pause("org-1")

        first = await evaluator.sweep()
        clock.advance(60)
        second = await evaluator.sweep()

        assert first.submitted == 1
        assert second.skipped == {"rule-overdue": "already_ran"}
        assert len(await queued_contents(rule_pipeline)) == 1

    @pytest.mark.asyncio
    async def test_failing_rule_does_not_stop_the_sweep(self, entities, rule_pipeline, clock):
        class BrokenStore(InMemoryEntityStore):
            async def list_entities(self, tenant_id, entity_type="students"):
                if tenant_id == "org-broken":
                    raise ConnectionError("entity backend unreachable")
                return await super().list_entities(tenant_id, entity_type)

        store = BrokenStore(entities={"org-1": {"students": [dict(s) for s in STUDENTS]}})
        store.add_rule(overdue_rule(id="broken", tenant_id="org-broken"))
        store.add_rule(overdue_rule())
        await rule_pipeline.pause("org-1")

        report = await RuleEvaluator(store, rule_pipeline, clock=clock).sweep()
        assert report.errors == 1
        assert report.skipped == {"broken": "error"}
        assert report.submitted == 1


class TestSchedule:
    def test_grace_period(self, evaluator, clock):
        now = datetime.fromtimestamp(clock(), tz=timezone.utc)
        assert evaluator.is_scheduled(overdue_rule(schedule=RuleSchedule(time="09:58")), now) is True
        assert evaluator.is_scheduled(overdue_rule(schedule=RuleSchedule(time="09:57")), now) is False
        assert evaluator.is_scheduled(overdue_rule(schedule=RuleSchedule(time="10:02")), now) is True

    def test_unknown_frequency_never_scheduled(self, evaluator, clock):
        now = datetime.fromtimestamp(clock(), tz=timezone.utc)
        rule = overdue_rule(schedule=RuleSchedule(time="10:00", frequency="monthly"))
        assert evaluator.is_scheduled(rule, now) is False
