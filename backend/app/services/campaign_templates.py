"""Step sequences and message bodies for each dunning campaign type.

The tables are read-only: templates are frozen dataclasses holding tuples,
and the lookup maps are wrapped in ``MappingProxyType``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import timedelta
from types import MappingProxyType
from typing import Any

from app.core.exceptions import InputValidationError


@dataclass(frozen=True)
class CampaignStep:
    offset: timedelta
    channels: tuple[str, ...]


@dataclass(frozen=True)
class CampaignTemplate:
    campaign_type: str
    steps: tuple[CampaignStep, ...]
    default_channels: tuple[str, ...]

    @property
    def total_steps(self) -> int:
        return len(self.steps)

    def step(self, sequence_step: int) -> CampaignStep:
        """Return the 1-based step."""
        if not 1 <= sequence_step <= self.total_steps:
            raise InputValidationError(
                f"Step {sequence_step} is outside 1..{self.total_steps} for {self.campaign_type}"
            )
        return self.steps[sequence_step - 1]


def _steps(*entries: tuple[int, tuple[str, ...]]) -> tuple[CampaignStep, ...]:
    return tuple(CampaignStep(offset=timedelta(days=days), channels=ch) for days, ch in entries)


CAMPAIGN_TEMPLATES: MappingProxyType[str, CampaignTemplate] = MappingProxyType(
    {
        "standard": CampaignTemplate(
            campaign_type="standard",
            steps=_steps(
                (1, ("email",)),
                (3, ("email",)),
                (7, ("email", "sms")),
                (10, ("email", "sms")),
                (30, ("email",)),
            ),
            default_channels=("email",),
        ),
        "high_value": CampaignTemplate(
            campaign_type="high_value",
            steps=_steps(
                (1, ("email",)),
                (2, ("email", "sms")),
                (5, ("email", "sms")),
                (8, ("email", "sms", "in_app")),
                (14, ("email", "sms")),
            ),
            default_channels=("email", "sms"),
        ),
        "at_risk": CampaignTemplate(
            campaign_type="at_risk",
            steps=_steps(
                (0, ("email", "in_app")),
                (1, ("email", "in_app")),
                (3, ("email", "in_app", "sms")),
                (7, ("email", "in_app", "sms")),
            ),
            default_channels=("email", "in_app"),
        ),
    }
)


def get_template(campaign_type: str) -> CampaignTemplate:
    template = CAMPAIGN_TEMPLATES.get(campaign_type)
    if template is None:
        raise InputValidationError(f"Unknown campaign type: {campaign_type}")
    return template


_MESSAGES: MappingProxyType[str, str] = MappingProxyType(
    {
        "standard_email_step1": (
            "Hi {{customer_name}}, we couldn't process your payment of {{amount}}. "
            "Please update your payment method at {{billing_url}}."
        ),
        "standard_email_step2": (
            "Hi {{customer_name}}, your payment of {{amount}} is still outstanding. "
            "Update your billing details at {{billing_url}} to keep your account in good standing."
        ),
        "standard_email_step3": (
            "{{customer_name}}, your account will soon be limited. "
            "Resolve the payment of {{amount}} at {{billing_url}}."
        ),
        "standard_sms_step3": (
            "{{company_name}}: payment of {{amount}} failed. Update it at {{billing_url}}"
        ),
        "standard_email_step4": (
            "{{customer_name}}, some features of your account are now restricted. "
            "Pay {{amount}} at {{billing_url}} to restore full access."
        ),
        "standard_sms_step4": (
            "{{company_name}}: your account is restricted. Pay {{amount}} at {{billing_url}}"
        ),
        "standard_email_step5": (
            "{{customer_name}}, this is our final notice about {{amount}}. "
            "Contact {{support_email}} if you need help."
        ),
        "high_value_email_step1": (
            "Hi {{customer_name}}, a payment of {{amount}} didn't go through. "
            "Your account team is here to help at {{support_email}}."
        ),
        "high_value_sms_step2": (
            "{{company_name}}: payment of {{amount}} failed. Call {{support_phone}} or visit {{billing_url}}"
        ),
        "high_value_in_app_step4": (
            "Your payment of {{amount}} is overdue. Update your billing details to avoid interruption."
        ),
        "at_risk_email_step1": (
            "Hi {{customer_name}}, we noticed another failed payment of {{amount}}. "
            "Please update your payment method at {{billing_url}}."
        ),
        "at_risk_in_app_step1": "Payment of {{amount}} failed. Update your payment method.",
    }
)

_FALLBACKS: MappingProxyType[str, str] = MappingProxyType(
    {
        "email": (
            "Hi {{customer_name}}, your payment of {{amount}} to {{company_name}} "
            "needs attention. Update your billing details at {{billing_url}}."
        ),
        "sms": "{{company_name}}: payment of {{amount}} needs attention. {{billing_url}}",
        "in_app": "Your payment of {{amount}} needs attention.",
        "push": "Payment of {{amount}} needs attention.",
    }
)

_VARIABLE = re.compile(r"\{\{\s*(\w+)\s*\}\}")


def template_key(campaign_type: str, channel: str, sequence_step: int) -> str:
    return f"{campaign_type}_{channel}_step{sequence_step}"


def message_body(key: str, channel: str) -> str:
    """Body for ``key``, or the channel's generic body."""
    return _MESSAGES.get(key) or _FALLBACKS.get(channel) or _FALLBACKS["email"]


def render(body: str, personalization: dict[str, Any]) -> str:
    """Substitute ``{{var}}`` placeholders; unknown variables render empty."""
    return _VARIABLE.sub(lambda m: str(personalization.get(m.group(1), "")), body)
