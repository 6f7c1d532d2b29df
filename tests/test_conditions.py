"""Tests for the entity filter helpers: field access, operators and due dates."""
from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from models.schemas import DueDateCriterion, RuleCondition
from utils.conditions import (
    days_until, evaluate_condition, evaluate_conditions, evaluate_due_date, get_nested_value, parse_due,
)

NOW = datetime(2024, 1, 3, 10, 0, tzinfo=timezone.utc)


class TestGetNestedValue:
    def test_flat_and_nested(self):
        student = {"student_name": "Ayesha", "fee": {"amount": 5000, "status": "pending"}}
        assert get_nested_value(student, "student_name") == "Ayesha"
        assert get_nested_value(student, "fee.status") == "pending"

    def test_missing_paths(self):
        assert get_nested_value({"a": 1}, "b") is None
        assert get_nested_value({"a": {"b": 1}}, "a.c") is None
        assert get_nested_value({"a": 1}, "a.b") is None


class TestEvaluateCondition:
    @pytest.mark.parametrize("operator,value,field_value,expected", [
        ("eq", "pending", "pending", True),
        ("eq", "pending", "paid", False),
        ("neq", "paid", "pending", True),
        ("gt", 1000, 5000, True),
        ("gt", 5000, 5000, False),
        ("gte", 5000, 5000, True),
        ("lt", 50, 30, True),
        ("lte", 50, 51, False),
        ("in", ["C-7", "C-8"], "C-7", True),
        ("in", ["C-7", "C-8"], "C-9", False),
        ("contains", "Khan", "Bilal Khan", True),
        ("regex", r"^\+92", "+923001234567", True),
        ("regex", r"^\+92", "+14155550100", False),
    ])
    def test_operators(self, operator, value, field_value, expected):
        cond = RuleCondition(field="f", operator=operator, value=value)
        assert evaluate_condition(cond, {"f": field_value}) is expected

    def test_exists_and_not_exists(self):
        exists = RuleCondition(field="whatsapp_number", operator="exists")
        missing = RuleCondition(field="whatsapp_number", operator="not_exists")
        assert evaluate_condition(exists, {"whatsapp_number": "+923001234567"})
        assert not evaluate_condition(exists, {"email": "a@b.com"})
        assert evaluate_condition(missing, {"email": "a@b.com"})

    def test_numeric_string_is_coerced(self):
        cond = RuleCondition(field="fee_amount", operator="gt", value=100)
        assert evaluate_condition(cond, {"fee_amount": "200"})

    def test_unknown_operator_or_bad_value_is_false(self):
        assert not evaluate_condition(RuleCondition(field="x", operator="between", value=1), {"x": 1})
        assert not evaluate_condition(RuleCondition(field="x", operator="gt", value=10), {"x": "n/a"})


class TestEvaluateConditions:
    def test_empty_list_passes(self):
        assert evaluate_conditions([], {"anything": True})

    def test_all_must_pass(self):
        conditions = [
            RuleCondition(field="fee_amount", operator="gt", value=100),
            RuleCondition(field="payment_status", operator="eq", value="pending"),
        ]
        assert evaluate_conditions(conditions, {"fee_amount": 200, "payment_status": "pending"})
        assert not evaluate_conditions(conditions, {"fee_amount": 200, "payment_status": "paid"})


class TestDueDates:
    def test_parse_accepts_dates_datetimes_and_strings(self):
        tz = ZoneInfo("UTC")
        assert parse_due(date(2024, 1, 1), tz) == datetime(2024, 1, 1, tzinfo=tz)
        assert parse_due("2024-01-01", tz) == datetime(2024, 1, 1, tzinfo=tz)
        assert parse_due("2024-01-01T12:00:00Z", tz) == datetime(2024, 1, 1, 12, tzinfo=timezone.utc)
        assert parse_due("", tz) is None
        assert parse_due("next tuesday", tz) is None

    def test_days_until_floors(self):
        assert days_until("2024-01-01", NOW) == -3
        assert days_until("2024-01-04", NOW) == 0
        assert days_until("2024-01-10", NOW) == 6
        assert days_until(None, NOW) is None

    @pytest.mark.parametrize("condition,days,due,expected", [
        ("overdue", 0, "2024-01-01", True),
        ("overdue", 0, "2024-01-04", False),
        ("before", 7, "2024-01-10", True),
        ("before", 3, "2024-01-10", False),
        ("before", 7, "2024-01-01", True),
        ("after", 5, "2024-01-10", True),
        ("after", 7, "2024-01-10", False),
        ("sometime", 0, "2024-01-01", False),
    ])
    def test_evaluate_due_date(self, condition, days, due, expected):
        criterion = DueDateCriterion(condition=condition, days=days)
        assert evaluate_due_date(criterion, {"due_date": due}, NOW) is expected

    def test_missing_due_date_never_matches(self):
        criterion = DueDateCriterion(condition="overdue", field="fee.due")
        assert evaluate_due_date(criterion, {"fee": {}}, NOW) is False
