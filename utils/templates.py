"""
Message template rendering and the built-in template catalogue.

Placeholders are `{name}` tokens resolved against a flat data mapping;
unknown placeholders are left in place and reported back to the caller.
"""
from __future__ import annotations

import re
from typing import Any, Optional

from models.schemas import MessageTemplate

_PLACEHOLDER = re.compile(r"\{(\w+)\}")


DEFAULT_TEMPLATES: dict[str, MessageTemplate] = {
    t.id: t for t in [
        MessageTemplate(
            id="fee-reminder",
            name="Fee Reminder",
            content=(
                "Dear {student_name}, this is a reminder that your fee of {fee_amount} "
                "is due on {due_date}. Please make the payment to avoid any late fees. Thank you!"
            ),
            category="fee",
            variables=["student_name", "fee_amount", "due_date"],
        ),
        MessageTemplate(
            id="overdue-notice",
            name="Overdue Notice",
            content=(
                "Dear {student_name}, your fee of {fee_amount} was due on {due_date} and is now "
                "{days_overdue} days overdue. Please make the payment immediately to avoid further penalties."
            ),
            category="fee",
            variables=["student_name", "fee_amount", "due_date", "days_overdue"],
        ),
        MessageTemplate(
            id="payment-confirmation",
            name="Payment Confirmation",
            content=(
                "Dear {student_name}, thank you for your payment of {fee_amount}. Your payment "
                "has been received and processed successfully. Thank you for your prompt payment!"
            ),
            category="fee",
            variables=["student_name", "fee_amount"],
        ),
        MessageTemplate(
            id="general-template",
            name="General Template",
            content=(
                "Hello {student_name}, this is a general message from {institute_name}. We hope "
                "this message finds you well. If you have any questions, please don't hesitate "
                "to contact us at {contact_number}."
            ),
            category="general",
            variables=["student_name", "institute_name", "contact_number"],
        ),
    ]
}


def default_template(template_id: str) -> Optional[MessageTemplate]:
    return DEFAULT_TEMPLATES.get(template_id)


def render(content: str, data: dict[str, Any]) -> tuple[str, list[str]]:
    """Substitute `{key}` placeholders. Returns (text, unreplaced placeholder names)."""
    missing: list[str] = []

    def _sub(match: re.Match) -> str:
        key = match.group(1)
        value = data.get(key)
        if value is None:
            missing.append(key)
            return match.group(0)
        return str(value)

    return _PLACEHOLDER.sub(_sub, content), missing
