"""Rules deciding when a restricted account is suspended.

A policy is any callable taking a ``SuspensionContext`` and returning True
when the account should be suspended. ``SUSPENSION_POLICY`` selects one of
the named policies below.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

from app.core.config import settings
from app.models.dunning_campaign import CompletionReason, DunningCampaign, DunningCampaignStatus
from app.models.payment_failure import PaymentFailure
from app.models.shared import ensure_utc


@dataclass
class SuspensionContext:
    """Outstanding failures of one customer and the campaigns attached to them."""

    now: datetime
    failures: list[PaymentFailure]
    campaigns: list[DunningCampaign] = field(default_factory=list)


SuspensionPolicy = Callable[[SuspensionContext], bool]


def campaign_exhausted(context: SuspensionContext) -> bool:
    """Suspend once a campaign ran out of steps without the payment being recovered."""
    return any(
        c.status == DunningCampaignStatus.COMPLETED.value
        and c.completion_reason == CompletionReason.SEQUENCE_EXHAUSTED.value
        for c in context.campaigns
    )


def failure_count(context: SuspensionContext) -> bool:
    return len(context.failures) >= settings.SUSPENSION_FAILURE_THRESHOLD


def time_based(context: SuspensionContext) -> bool:
    created = [ensure_utc(f.created_at) for f in context.failures if f.created_at is not None]
    if not created:
        return False
    return context.now - min(created) >= timedelta(days=settings.SUSPENSION_AFTER_DAYS)


SUSPENSION_POLICIES: dict[str, SuspensionPolicy] = {
    "campaign_exhausted": campaign_exhausted,
    "failure_count": failure_count,
    "time_based": time_based,
}


def get_suspension_policy(name: str | None = None) -> SuspensionPolicy:
    policy_name = name or settings.SUSPENSION_POLICY
    try:
        return SUSPENSION_POLICIES[policy_name]
    except KeyError:
        raise ValueError(f"Unknown suspension policy: {policy_name}") from None
