"""
Entitlement reconciler.

Brings a tenant's stored entitlement into agreement with the current time
and its subscription history. Reconciliation is lazy (run on read by the
guard) and idempotent: running it again on an already reconciled tenant is
a no-op.

State machine (derived, never stored):

    NORMAL        no temporary upgrade, base entitlement still running
    BASE_EXPIRED  no temporary upgrade, base entitlement lapsed
    TEMP_ACTIVE   temporary upgrade running
    TEMP_EXPIRED  temporary upgrade lapsed, not yet reverted

Transitions:

    BASE_EXPIRED on a non-default plan    -> downgrade to the default plan
    TEMP_EXPIRED, prior plan time left    -> revert with carryover: the prior
                                             plan resumes until the absolute
                                             end date recorded in its history
    TEMP_EXPIRED, prior plan lapsed too   -> downgrade to the default plan

Each transition is one transaction guarded by compare-and-set writes on
tenant.is_temporary_upgrade and history.reverted. A losing concurrent
writer gets LedgerWriteConflictError, rolls back and re-reads; on re-read
the tenant is already reconciled and the retry is a no-op.
"""

import logging
import os
from datetime import datetime
from typing import Optional, Tuple

from sqlalchemy.orm import Session

from pos_backend.constants.plans import DEFAULT_PLAN
from pos_backend.entitlements.audit import EntitlementAuditLogger, get_audit_logger
from pos_backend.entitlements.cascade import CascadeActivator
from pos_backend.entitlements.errors import (
    InvariantViolationError,
    LedgerWriteConflictError,
    TenantNotFoundError,
)
from pos_backend.entitlements.models import (
    EntitlementUpdate,
    ReconcileOutcome,
    ReconcileState,
    TransitionKind,
)
from pos_backend.models.subscription import PeriodStatus, SubscriptionPeriod
from pos_backend.models.tenant import Tenant
from pos_backend.platform.clock import Clock, get_clock
from pos_backend.platform.request_context import RequestActor
from pos_backend.repositories.entitlement_ledger import EntitlementLedger
from pos_backend.services.plan_features_service import PlanFeaturesService

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = int(os.getenv("ENTITLEMENT_RECONCILE_MAX_RETRIES", "3"))


def classify_state(
    tenant: Tenant,
    temporary_period: Optional[SubscriptionPeriod],
    now: datetime,
) -> ReconcileState:
    """Derive the reconciliation state of a tenant at `now`."""
    if tenant.is_temporary_upgrade:
        if temporary_period is not None and temporary_period.end_date > now:
            return ReconcileState.TEMP_ACTIVE
        return ReconcileState.TEMP_EXPIRED

    if tenant.entitlement_end is None or tenant.entitlement_end < now:
        return ReconcileState.BASE_EXPIRED
    return ReconcileState.NORMAL


class Reconciler:
    """
    Reconciles one tenant at a time against a single database session.

    Usage:
        reconciler = Reconciler(db_session)
        outcome = reconciler.reconcile(tenant_id)
        if outcome.changed:
            ...
    """

    def __init__(
        self,
        db_session: Session,
        clock: Optional[Clock] = None,
        max_retries: Optional[int] = None,
        plan_features: Optional[PlanFeaturesService] = None,
        cascade: Optional[CascadeActivator] = None,
        audit: Optional[EntitlementAuditLogger] = None,
    ):
        self.db = db_session
        self.clock = clock or get_clock()
        self.max_retries = DEFAULT_MAX_RETRIES if max_retries is None else max_retries
        self.ledger = EntitlementLedger(db_session)
        self.plan_features = plan_features or PlanFeaturesService(db_session, self.clock)
        self.cascade = cascade or CascadeActivator(db_session, self.clock, self.plan_features)
        self.audit = audit or get_audit_logger()

    def reconcile(
        self,
        tenant_id: str,
        now: Optional[datetime] = None,
        actor: Optional[RequestActor] = None,
    ) -> ReconcileOutcome:
        """
        Reconcile a tenant and cascade any resulting activation change.

        Args:
            tenant_id: Tenant to reconcile
            now: Evaluation instant (defaults to the clock, re-read per attempt)
            actor: Who triggered the reconciliation, for the cascade and audit

        Returns:
            ReconcileOutcome describing the state found and the transition applied

        Raises:
            TenantNotFoundError: tenant does not exist
            LedgerWriteConflictError: still conflicting after max_retries retries
            InvariantViolationError: a transition would corrupt the ledger
        """
        attempts = 0
        while True:
            attempts += 1
            at = now or self.clock.now()
            try:
                outcome, from_plan, became_active = self._reconcile_once(tenant_id, at)
                break
            except LedgerWriteConflictError as e:
                if attempts > self.max_retries:
                    logger.error(
                        "Entitlement reconciliation kept conflicting, giving up",
                        extra={"tenant_id": tenant_id, "attempts": attempts, "operation": e.operation},
                    )
                    raise
                logger.warning(
                    "Concurrent entitlement update, retrying reconciliation",
                    extra={"tenant_id": tenant_id, "attempt": attempts, "operation": e.operation},
                )

        outcome.attempts = attempts
        if outcome.changed:
            self.audit.log_transition(outcome, from_plan, actor)

        if became_active is not None:
            outcome.cascade = self.cascade.apply_activation_cascade(
                tenant_id, became_active, actor, at
            )
        return outcome

    # ------------------------------------------------------------------
    # One attempt = one transaction
    # ------------------------------------------------------------------

    def _reconcile_once(
        self, tenant_id: str, now: datetime
    ) -> Tuple[ReconcileOutcome, str, Optional[bool]]:
        """
        Returns (outcome, plan before the attempt, cascade direction or None).
        """
        with self.ledger.transaction():
            tenant = self.ledger.get_tenant(tenant_id)
            if tenant is None:
                raise TenantNotFoundError(tenant_id)
            from_plan = tenant.current_plan

            if not tenant.is_temporary_upgrade:
                outcome, became_active = self._reconcile_base(tenant, now)
                return outcome, from_plan, became_active

            temporary_period = self.ledger.get_active_temporary_period(tenant_id)
            state = classify_state(tenant, temporary_period, now)
            if state == ReconcileState.TEMP_ACTIVE:
                return self._unchanged(tenant, state), from_plan, None

            outcome, became_active = self._revert_temporary_upgrade(tenant, temporary_period, now)
            return outcome, from_plan, became_active

    def _reconcile_base(
        self, tenant: Tenant, now: datetime
    ) -> Tuple[ReconcileOutcome, Optional[bool]]:
        state = classify_state(tenant, None, now)
        if state == ReconcileState.NORMAL:
            return self._unchanged(tenant, state), None

        if tenant.current_plan == DEFAULT_PLAN.value:
            # Nothing left to downgrade; staff stay deactivated.
            return self._unchanged(tenant, state), False

        outcome = self._downgrade_to_default(
            tenant,
            state=state,
            entitlement_end=tenant.entitlement_end,
            now=now,
            expected_temporary_upgrade=False,
        )
        return outcome, False

    def _revert_temporary_upgrade(
        self,
        tenant: Tenant,
        temporary_period: Optional[SubscriptionPeriod],
        now: datetime,
    ) -> Tuple[ReconcileOutcome, Optional[bool]]:
        tenant_id = tenant.id
        prior_plan = tenant.prior_plan or (temporary_period.prior_plan if temporary_period else None)

        if temporary_period is None:
            logger.warning(
                "Tenant flagged as temporarily upgraded without an active upgrade period",
                extra={"tenant_id": tenant_id, "prior_plan": prior_plan},
            )
            lapsed_at = tenant.entitlement_end if tenant.entitlement_end and tenant.entitlement_end <= now else now
        else:
            lapsed_at = temporary_period.end_date

        history = None
        if prior_plan:
            history = self.ledger.get_latest_non_temporary_history(tenant_id, prior_plan)

        if history is None or history.end_date <= now:
            return self._downgrade_to_default(
                tenant,
                state=ReconcileState.TEMP_EXPIRED,
                entitlement_end=lapsed_at,
                now=now,
                expected_temporary_upgrade=True,
                record_lapse=True,
            ), False

        # Claim the history entry first; a concurrent reverter fails here.
        self.ledger.mark_history_reverted(tenant_id, history.id)
        self.ledger.update_tenant_entitlement(
            tenant_id,
            EntitlementUpdate(
                current_plan=prior_plan,
                entitlement_end=history.end_date,
                is_temporary_upgrade=False,
                prior_plan=None,
                entitlement_start=now,
            ),
            expected_temporary_upgrade=True,
        )
        self.ledger.expire_periods(tenant_id)
        period = self._create_carryover_period(tenant_id, prior_plan, now, history.end_date)
        self._verify_single_active_base_period(tenant_id, now)

        logger.info(
            "Temporary upgrade reverted with carryover",
            extra={
                "tenant_id": tenant_id,
                "restored_plan": prior_plan,
                "entitlement_end": history.end_date.isoformat(),
                "history_id": history.id,
            },
        )
        return ReconcileOutcome(
            tenant_id=tenant_id,
            state=ReconcileState.TEMP_EXPIRED,
            transition=TransitionKind.REVERT_WITH_CARRYOVER,
            plan=prior_plan,
            entitlement_end=history.end_date,
            created_period_id=period.id,
            reverted_history_id=history.id,
        ), True

    def _downgrade_to_default(
        self,
        tenant: Tenant,
        state: ReconcileState,
        entitlement_end: Optional[datetime],
        now: datetime,
        expected_temporary_upgrade: bool,
        record_lapse: bool = False,
    ) -> ReconcileOutcome:
        """
        Move the tenant to the default plan with no residual entitlement.

        With record_lapse, a zero-length EXPIRED default-plan period is
        written at the lapse instant so the ledger shows where the tenant
        fell back.
        """
        tenant_id = tenant.id
        self.ledger.update_tenant_entitlement(
            tenant_id,
            EntitlementUpdate(
                current_plan=DEFAULT_PLAN.value,
                entitlement_end=entitlement_end,
                is_temporary_upgrade=False,
                prior_plan=None,
            ),
            expected_temporary_upgrade=expected_temporary_upgrade,
            expected_plan=None if expected_temporary_upgrade else tenant.current_plan,
        )

        created_period_id = None
        if record_lapse:
            self.ledger.expire_periods(tenant_id)
            lapse_at = entitlement_end or now
            period = self.ledger.create_period(
                tenant_id,
                DEFAULT_PLAN.value,
                start_date=lapse_at,
                end_date=lapse_at,
                status=PeriodStatus.EXPIRED.value,
            )
            created_period_id = period.id
        else:
            self.ledger.expire_periods(tenant_id, ended_before=now)

        self.plan_features.apply_plan_features(tenant_id, DEFAULT_PLAN.value, now)

        logger.info(
            "Tenant downgraded to default plan",
            extra={
                "tenant_id": tenant_id,
                "state": state.value,
                "entitlement_end": entitlement_end.isoformat() if entitlement_end else None,
            },
        )
        return ReconcileOutcome(
            tenant_id=tenant_id,
            state=state,
            transition=TransitionKind.DOWNGRADE_TO_DEFAULT,
            plan=DEFAULT_PLAN.value,
            entitlement_end=entitlement_end,
            created_period_id=created_period_id,
        )

    def _create_carryover_period(
        self, tenant_id: str, plan: str, now: datetime, end_date: datetime
    ) -> SubscriptionPeriod:
        if end_date <= now:
            raise InvariantViolationError(
                f"Carryover period for {plan} would end at {end_date.isoformat()}, "
                f"not after {now.isoformat()}",
                tenant_id,
            )
        return self.ledger.create_period(tenant_id, plan, start_date=now, end_date=end_date)

    def _verify_single_active_base_period(self, tenant_id: str, now: datetime) -> None:
        base_periods = [
            p for p in self.ledger.get_active_subscription_periods(tenant_id, now)
            if not p.is_temporary_upgrade
        ]
        if len(base_periods) > 1:
            raise InvariantViolationError(
                f"{len(base_periods)} overlapping ACTIVE base periods after revert",
                tenant_id,
            )

    @staticmethod
    def _unchanged(tenant: Tenant, state: ReconcileState) -> ReconcileOutcome:
        return ReconcileOutcome(
            tenant_id=tenant.id,
            state=state,
            transition=TransitionKind.NONE,
            plan=tenant.current_plan,
            entitlement_end=tenant.entitlement_end,
        )
