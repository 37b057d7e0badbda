"""Account access tiers driven by a customer's billing health.

The state is never edited in place. Every transition appends a row, and the
newest row is the customer's current state. Automatic transitions are always
derived from the customer's current failures and campaigns, so the order in
which payment events arrive does not matter.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.auth import SYSTEM_CALLER, Caller, require_admin, require_customer_access
from app.core.config import settings
from app.core.exceptions import InputValidationError, InvalidStateError, NotFoundError
from app.models.account_state import AccountState, AccountStateType
from app.models.payment_failure import PaymentFailureStatus
from app.models.shared import ensure_utc, utc_now
from app.repositories.account_state_repository import AccountStateRepository
from app.repositories.dunning_campaign_repository import DunningCampaignRepository
from app.repositories.payment_failure_repository import PaymentFailureRepository
from app.schemas.account_state import AccountStateUpdate
from app.services.audit_service import AuditService
from app.services.customer_segments import get_customer_segment, grace_period_days
from app.services.suspension_policies import (
    SuspensionContext,
    SuspensionPolicy,
    get_suspension_policy,
)

logger = logging.getLogger(__name__)

ACTIVE = AccountStateType.ACTIVE.value
GRACE_PERIOD = AccountStateType.GRACE_PERIOD.value
RESTRICTED = AccountStateType.RESTRICTED.value
SUSPENDED = AccountStateType.SUSPENDED.value
REACTIVATED = AccountStateType.REACTIVATED.value

# Transitions allowed without a manual override
ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    ACTIVE: frozenset({GRACE_PERIOD}),
    GRACE_PERIOD: frozenset({RESTRICTED, ACTIVE}),
    RESTRICTED: frozenset({SUSPENDED, ACTIVE}),
    SUSPENDED: frozenset({ACTIVE, REACTIVATED}),
    REACTIVATED: frozenset({GRACE_PERIOD, ACTIVE}),
}

# Severity order used when escalating one step at a time
ESCALATION_PATH = (ACTIVE, GRACE_PERIOD, RESTRICTED, SUSPENDED)

MASTER_FEATURES: tuple[str, ...] = (
    "basic_access",
    "new_data_creation",
    "advanced_features",
    "api_access",
    "data_export",
    "integrations",
    "team_management",
)

STATE_RESTRICTIONS: dict[str, tuple[str, ...]] = {
    ACTIVE: (),
    GRACE_PERIOD: (),
    REACTIVATED: (),
    RESTRICTED: ("new_data_creation", "advanced_features", "api_access"),
    SUSPENDED: MASTER_FEATURES,
}


def restrictions_for(state: str) -> list[str]:
    return list(STATE_RESTRICTIONS.get(state, ()))


def _rank(state: str) -> int:
    # reactivated behaves like active
    if state == REACTIVATED:
        return 0
    return ESCALATION_PATH.index(state)


class AccountStateService:
    """Derives and enforces a customer's access tier."""

    def __init__(self, db: Session, suspension_policy: SuspensionPolicy | None = None):
        self.db = db
        self.repo = AccountStateRepository(db)
        self.failure_repo = PaymentFailureRepository(db)
        self.campaign_repo = DunningCampaignRepository(db)
        self.audit = AuditService(db)
        self.suspension_policy = suspension_policy or get_suspension_policy()

    def get_account_state(self, customer_id: UUID, caller: Caller) -> AccountState:
        require_customer_access(caller, customer_id, "view account state")
        return self._current_or_initial(customer_id)

    def get_history(
        self, customer_id: UUID, caller: Caller, skip: int = 0, limit: int = 100
    ) -> list[AccountState]:
        require_customer_access(caller, customer_id, "view account state history")
        return self.repo.get_history(customer_id, skip=skip, limit=limit)

    def get_feature_restrictions(self, customer_id: UUID, caller: Caller) -> dict:
        require_customer_access(caller, customer_id, "view feature restrictions")
        current = self._current_or_initial(customer_id)
        restrictions = list(current.feature_restrictions or [])
        return {
            "account_state": current.state,
            "restrictions": restrictions,
            "allowed_features": [f for f in MASTER_FEATURES if f not in restrictions],
            "grace_period_end": (
                ensure_utc(current.grace_period_end) if current.state == GRACE_PERIOD else None
            ),
        }

    def check_feature_access(self, customer_id: UUID, feature: str, caller: Caller) -> dict:
        if feature not in MASTER_FEATURES:
            raise InputValidationError(f"Unknown feature: {feature}")
        info = self.get_feature_restrictions(customer_id, caller)
        allowed = feature in info["allowed_features"]
        return {
            "feature": feature,
            "allowed": allowed,
            "reason": None if allowed else f"Feature restricted while account is {info['account_state']}",
            "grace_period_end": info["grace_period_end"],
        }

    def recalculate(
        self,
        customer_id: UUID,
        caller: Caller = SYSTEM_CALLER,
        now: datetime | None = None,
    ) -> AccountState:
        """Bring the account in line with the customer's outstanding failures.

        A manual override freezes the account; the current row is returned
        unchanged.
        """
        require_admin(caller, "recalculate account state")
        now = now or utc_now()
        current = self._current_or_initial(customer_id)
        if current.manual_override:
            logger.info("Account %s is under manual override, skipping recalculation", customer_id)
            return current

        target, reason = self._derive_target(customer_id, current, now)

        if target == ACTIVE:
            if current.state in (ACTIVE, REACTIVATED):
                return current
            return self._append(
                current,
                ACTIVE,
                reason,
                caller,
                reactivation_date=now if current.state in (RESTRICTED, SUSPENDED) else None,
            )

        # Never de-escalate while failures are still outstanding
        if _rank(target) <= _rank(current.state):
            return current

        row = current
        start = _rank(current.state) + 1
        for state in ESCALATION_PATH[start : _rank(target) + 1]:
            row = self._append(row, state, reason, caller, now=now)
        return row

    def process_expired_grace_periods(self, now: datetime | None = None) -> int:
        """Recalculate every account whose grace period has run out."""
        now = now or utc_now()
        moved = 0
        for customer_id in self.repo.get_customer_ids_in_state(GRACE_PERIOD):
            current = self.repo.get_current(customer_id)
            if current is None or current.manual_override:
                continue
            grace_end = ensure_utc(current.grace_period_end)
            if grace_end is None or grace_end > now:
                continue
            updated = self.recalculate(customer_id, SYSTEM_CALLER, now)
            if updated.id != current.id:
                moved += 1
        if moved:
            logger.info("Moved %d accounts out of expired grace periods", moved)
        return moved

    def update_account_state(
        self,
        data: AccountStateUpdate,
        caller: Caller,
        now: datetime | None = None,
    ) -> AccountState:
        """Admin transition.

        ``account_state_id`` must name the customer's current row. Moves off
        the transition graph need ``manual_override`` with a reason. Clearing
        an existing override hands the account back to automatic
        recalculation.
        """
        require_admin(caller, "update account state")
        now = now or utc_now()

        row = self.repo.get_by_id(data.account_state_id)
        if row is None:
            raise NotFoundError("Account state not found")
        latest = self.repo.get_current(row.customer_id)  # type: ignore[arg-type]
        if latest is not None and latest.id != row.id:
            raise InvalidStateError("Account state is not the current state", current=latest)

        manual_override = (
            bool(row.manual_override) if data.manual_override is None else data.manual_override
        )
        if data.manual_override is True and not data.override_reason:
            raise InputValidationError("override_reason is required when manual_override is set")
        override_reason = data.override_reason or (row.override_reason if manual_override else None)

        off_graph = data.state != row.state and data.state not in ALLOWED_TRANSITIONS[row.state]
        if off_graph and not manual_override:
            raise InvalidStateError(
                f"Transition {row.state} -> {data.state} requires manual_override", current=row
            )

        new_row = self._append(
            row,
            data.state,
            data.reason,
            caller,
            now=now,
            manual_override=manual_override,
            override_reason=override_reason,
            override_by=(data.override_by or caller.actor_id) if manual_override else None,
            reactivation_date=(
                now
                if data.state in (ACTIVE, REACTIVATED) and row.state in (RESTRICTED, SUSPENDED)
                else None
            ),
        )

        if row.manual_override and not manual_override:
            return self.recalculate(row.customer_id, caller, now)  # type: ignore[arg-type]
        return new_row

    def _current_or_initial(self, customer_id: UUID) -> AccountState:
        current = self.repo.get_current(customer_id)
        if current is not None:
            return current
        try:
            row = self.repo.append(
                customer_id,
                state=ACTIVE,
                reason="initial_state",
                feature_restrictions=[],
            )
        except IntegrityError:
            # another request created the first row
            self.db.rollback()
            existing = self.repo.get_current(customer_id)
            if existing is None:
                raise
            return existing
        self.audit.log_create("account_state", customer_id, data={"state": ACTIVE})
        return row

    def _derive_target(
        self, customer_id: UUID, current: AccountState, now: datetime
    ) -> tuple[str, str]:
        outstanding = [
            f
            for f in self.failure_repo.get_for_customer(customer_id)
            if f.status != PaymentFailureStatus.RESOLVED.value
        ]
        if not outstanding:
            return ACTIVE, "all_failures_resolved"

        # an abandoned failure suspends regardless of the configured policy
        if any(f.status == PaymentFailureStatus.ABANDONED.value for f in outstanding):
            return SUSPENDED, "payment_failure_abandoned"

        campaigns = self.campaign_repo.get_for_failures([f.id for f in outstanding])
        if self.suspension_policy(SuspensionContext(now=now, failures=outstanding, campaigns=campaigns)):
            return SUSPENDED, "suspension_policy_triggered"

        if any(
            f.status in (PaymentFailureStatus.ESCALATED.value, PaymentFailureStatus.ABANDONED.value)
            for f in outstanding
        ):
            return RESTRICTED, "payment_failure_escalated"

        grace_end = ensure_utc(current.grace_period_end)
        if current.state == GRACE_PERIOD and grace_end is not None and grace_end <= now:
            return RESTRICTED, "grace_period_expired"

        threshold = timedelta(hours=settings.GRACE_THRESHOLD_HOURS)
        if any(now - ensure_utc(f.created_at) >= threshold for f in outstanding):  # type: ignore[operator]
            return GRACE_PERIOD, "payment_failure_unresolved"

        return str(current.state), "failure_within_grace_threshold"

    def _append(
        self,
        previous: AccountState,
        state: str,
        reason: str,
        caller: Caller,
        now: datetime | None = None,
        manual_override: bool = False,
        override_reason: str | None = None,
        override_by: str | None = None,
        reactivation_date: datetime | None = None,
    ) -> AccountState:
        now = now or utc_now()
        customer_id: UUID = previous.customer_id  # type: ignore[assignment]

        grace_period_end = None
        if state == GRACE_PERIOD:
            if previous.state == GRACE_PERIOD and previous.grace_period_end is not None:
                grace_period_end = previous.grace_period_end
            else:
                segment = get_customer_segment(self.db, customer_id, now)
                grace_period_end = now + timedelta(days=grace_period_days(segment))
        elif state == RESTRICTED:
            grace_period_end = previous.grace_period_end

        suspension_date = None
        if state == SUSPENDED:
            suspension_date = (
                previous.suspension_date if previous.state == SUSPENDED else now
            )

        row = self.repo.append(
            customer_id,
            state=state,
            previous_state=previous.state,
            reason=reason,
            grace_period_end=grace_period_end,
            suspension_date=suspension_date,
            reactivation_date=reactivation_date,
            feature_restrictions=restrictions_for(state),
            manual_override=manual_override,
            override_reason=override_reason,
            override_by=override_by,
            metadata_={},
        )
        self.audit.log_status_change(
            "account_state",
            customer_id,
            str(previous.state),
            state,
            caller=caller,
            reason=reason,
        )
        logger.info(
            "Account %s moved %s -> %s (%s)", customer_id, previous.state, state, reason
        )
        return row
