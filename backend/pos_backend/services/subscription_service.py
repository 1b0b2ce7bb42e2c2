"""
Subscription service: administrative grant operations.

Every operation reconciles the tenant first, so it always starts from the
tenant's effective entitlement, then writes period, history and tenant
changes in one transaction, then cascades staff activation.

- extend_subscription: add days to a plan (from the current end if it is
  still running, else from now). During a temporary upgrade only the
  prior plan can be extended; the extension lands in its history so the
  carryover picks it up when the upgrade ends.
- upgrade_subscription: temporary | until_end | custom.
- extend_subscription_custom: add days keeping the current plan.
- reduce_subscription: pull the end date in, never into the past.
- get_entitlement_status: reconciled status view.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from pos_backend.api.schemas.entitlements import EntitlementStatus
from pos_backend.constants.plans import SubscriptionPlan, UpgradeType, plan_rank
from pos_backend.entitlements.cascade import CascadeActivator
from pos_backend.entitlements.errors import (
    LedgerWriteConflictError,
    SubscriptionOperationError,
    TenantNotFoundError,
)
from pos_backend.entitlements.models import EntitlementUpdate
from pos_backend.entitlements.reconciler import Reconciler
from pos_backend.models.tenant import Tenant
from pos_backend.platform.clock import Clock, get_clock
from pos_backend.platform.request_context import RequestActor
from pos_backend.repositories.addon_repository import AddonRepository
from pos_backend.repositories.entitlement_ledger import EntitlementLedger
from pos_backend.services.plan_features_service import PlanFeaturesService

logger = logging.getLogger(__name__)

DEFAULT_TEMPORARY_UPGRADE_DAYS = 30


class SubscriptionService:
    """Grant, upgrade, extend and reduce tenant subscriptions."""

    def __init__(self, db_session: Session, clock: Optional[Clock] = None):
        self.db = db_session
        self.clock = clock or get_clock()
        self.ledger = EntitlementLedger(db_session)
        self.addons = AddonRepository(db_session)
        self.plan_features = PlanFeaturesService(db_session, self.clock)
        self.cascade = CascadeActivator(db_session, self.clock, self.plan_features)
        self.reconciler = Reconciler(
            db_session, self.clock, plan_features=self.plan_features, cascade=self.cascade
        )

    # ------------------------------------------------------------------
    # Grants
    # ------------------------------------------------------------------

    def extend_subscription(
        self,
        tenant_id: str,
        plan: str,
        duration_days: int,
        actor: Optional[RequestActor] = None,
    ) -> Tenant:
        """
        Extend the tenant's subscription on `plan` by `duration_days`.

        Raises:
            TenantNotFoundError: tenant does not exist
            SubscriptionOperationError: non-positive duration, or a different
                plan requested while a temporary upgrade is running
        """
        plan = SubscriptionPlan(plan).value
        self._require_positive(tenant_id, duration_days)

        attempts = 0
        while True:
            attempts += 1
            try:
                new_end, now = self._extend_once(tenant_id, plan, duration_days, actor)
                break
            except LedgerWriteConflictError as e:
                if attempts > self.reconciler.max_retries:
                    raise
                logger.warning(
                    "Concurrent entitlement update, retrying extension",
                    extra={"tenant_id": tenant_id, "attempt": attempts, "operation": e.operation},
                )

        logger.info(
            "Subscription extended",
            extra={"tenant_id": tenant_id, "plan": plan, "duration_days": duration_days,
                   "entitlement_end": new_end.isoformat()},
        )
        self.cascade.apply_activation_cascade(tenant_id, True, actor, now)
        return self._get_tenant(tenant_id)

    def _extend_once(
        self, tenant_id: str, plan: str, duration_days: int, actor: Optional[RequestActor]
    ):
        tenant, now = self._reconciled_tenant(tenant_id, actor)

        with self.ledger.transaction():
            if tenant.is_temporary_upgrade:
                new_end = self._extend_base_under_upgrade(tenant, plan, duration_days, now)
                clamp_to = max(new_end, tenant.entitlement_end)
            else:
                running = tenant.entitlement_end is not None and tenant.entitlement_end >= now
                start = tenant.entitlement_end if running else now
                new_end = start + timedelta(days=duration_days)

                self.ledger.expire_periods(tenant_id, is_temporary_upgrade=False)
                period = self.ledger.create_period(tenant_id, plan, now, new_end)
                self.ledger.create_history_entry(
                    tenant_id, plan, start, new_end, subscription_period_id=period.id
                )
                self.ledger.update_tenant_entitlement(
                    tenant_id,
                    EntitlementUpdate(
                        current_plan=plan,
                        entitlement_end=new_end,
                        entitlement_start=tenant.entitlement_start if running else now,
                    ),
                    expected_temporary_upgrade=False,
                )
                self.plan_features.apply_plan_features(tenant_id, plan, now)
                clamp_to = new_end

            self.addons.clamp_expiries(tenant_id, clamp_to)

        return new_end, now

    def _extend_base_under_upgrade(
        self, tenant: Tenant, plan: str, duration_days: int, now: datetime
    ) -> datetime:
        if plan != tenant.prior_plan:
            raise SubscriptionOperationError(
                f"Only {tenant.prior_plan} can be extended while a temporary upgrade is active",
                tenant.id,
            )
        # Rewrites the upgrade fields unchanged; conflicts if a revert won the race.
        self.ledger.update_tenant_entitlement(
            tenant.id,
            EntitlementUpdate(
                current_plan=tenant.current_plan,
                entitlement_end=tenant.entitlement_end,
                is_temporary_upgrade=True,
                prior_plan=tenant.prior_plan,
            ),
            expected_temporary_upgrade=True,
            expected_plan=tenant.current_plan,
        )

        history = self.ledger.get_latest_non_temporary_history(tenant.id, plan)
        start = history.end_date if history is not None and history.end_date >= now else now
        new_end = start + timedelta(days=duration_days)

        self.ledger.expire_periods(tenant.id, is_temporary_upgrade=False)
        period = self.ledger.create_period(tenant.id, plan, now, new_end)
        self.ledger.create_history_entry(
            tenant.id, plan, start, new_end, subscription_period_id=period.id
        )
        return new_end

    def upgrade_subscription(
        self,
        tenant_id: str,
        new_plan: str,
        upgrade_type: str,
        custom_duration_days: Optional[int] = None,
        actor: Optional[RequestActor] = None,
    ) -> Tenant:
        """
        Move the tenant to a higher plan.

        Args:
            upgrade_type: 'temporary' (time-boxed, reverts to the current plan),
                'until_end' (new plan for the rest of the current window) or
                'custom' (new plan for custom_duration_days, at least until
                the current window ends)

        Raises:
            TenantNotFoundError: tenant does not exist
            SubscriptionOperationError: expired subscription, upgrade already
                running, plan not higher, or missing custom duration
        """
        new_plan = SubscriptionPlan(new_plan).value
        upgrade_type = UpgradeType(upgrade_type)
        tenant, now = self._reconciled_tenant(tenant_id, actor)

        if tenant.entitlement_end is None or tenant.entitlement_end <= now:
            raise SubscriptionOperationError("Subscription has expired. Please extend first.", tenant_id)
        if tenant.is_temporary_upgrade:
            raise SubscriptionOperationError(
                "A temporary upgrade is already active; wait until it ends", tenant_id
            )
        if plan_rank(new_plan) <= plan_rank(tenant.current_plan):
            raise SubscriptionOperationError(
                f"{new_plan} is not an upgrade from {tenant.current_plan}", tenant_id
            )

        current_plan = tenant.current_plan
        current_end = tenant.entitlement_end

        with self.ledger.transaction():
            if upgrade_type == UpgradeType.TEMPORARY:
                days = custom_duration_days or DEFAULT_TEMPORARY_UPGRADE_DAYS
                self._require_positive(tenant_id, days)
                upgrade_end = now + timedelta(days=days)
                self._record_base_before_upgrade(tenant, now)

                period = self.ledger.create_period(
                    tenant_id, new_plan, now, upgrade_end,
                    is_temporary_upgrade=True, prior_plan=current_plan,
                )
                self.ledger.create_history_entry(
                    tenant_id, new_plan, now, upgrade_end,
                    is_temporary_upgrade=True, subscription_period_id=period.id,
                )
                update = EntitlementUpdate(
                    current_plan=new_plan,
                    entitlement_end=upgrade_end,
                    is_temporary_upgrade=True,
                    prior_plan=current_plan,
                    entitlement_start=now,
                )
            else:
                if upgrade_type == UpgradeType.CUSTOM:
                    if not custom_duration_days:
                        raise SubscriptionOperationError("Custom upgrades need a duration", tenant_id)
                    self._require_positive(tenant_id, custom_duration_days)
                    upgrade_end = max(now + timedelta(days=custom_duration_days), current_end)
                else:
                    upgrade_end = current_end

                self.ledger.expire_periods(tenant_id, is_temporary_upgrade=False)
                period = self.ledger.create_period(tenant_id, new_plan, now, upgrade_end)
                self.ledger.create_history_entry(
                    tenant_id, new_plan, now, upgrade_end, subscription_period_id=period.id
                )
                update = EntitlementUpdate(
                    current_plan=new_plan,
                    entitlement_end=upgrade_end,
                    entitlement_start=now,
                )

            self.ledger.update_tenant_entitlement(
                tenant_id, update, expected_temporary_upgrade=False, expected_plan=current_plan
            )

        logger.info(
            "Subscription upgraded",
            extra={
                "tenant_id": tenant_id,
                "from_plan": current_plan,
                "to_plan": new_plan,
                "upgrade_type": upgrade_type.value,
                "entitlement_end": upgrade_end.isoformat(),
            },
        )
        self.cascade.apply_activation_cascade(tenant_id, True, actor, now)
        return self._get_tenant(tenant_id)

    def _record_base_before_upgrade(self, tenant: Tenant, now: datetime) -> None:
        """
        Make sure the plan being temporarily replaced has a history entry
        carrying its absolute end date, so it can be restored later.
        """
        latest = self.ledger.get_latest_non_temporary_history(tenant.id, tenant.current_plan)
        if latest is not None and latest.end_date == tenant.entitlement_end:
            return
        self.ledger.create_history_entry(
            tenant.id,
            tenant.current_plan,
            tenant.entitlement_start or now,
            tenant.entitlement_end,
        )

    def extend_subscription_custom(
        self,
        tenant_id: str,
        duration_days: int,
        actor: Optional[RequestActor] = None,
    ) -> Tenant:
        """
        Extend by `duration_days` keeping the current plan.

        A running temporary upgrade is extended as an upgrade; otherwise this
        is extend_subscription on the current plan.
        """
        self._require_positive(tenant_id, duration_days)
        tenant, now = self._reconciled_tenant(tenant_id, actor)
        if not tenant.is_temporary_upgrade:
            return self.extend_subscription(tenant_id, tenant.current_plan, duration_days, actor)

        temporary_period = self.ledger.get_active_temporary_period(tenant_id)
        start = max(tenant.entitlement_end, now)
        new_end = start + timedelta(days=duration_days)

        with self.ledger.transaction():
            if temporary_period is not None:
                self.ledger.set_period_end(tenant_id, temporary_period.id, new_end)
            self.ledger.create_history_entry(
                tenant_id, tenant.current_plan, start, new_end,
                is_temporary_upgrade=True,
                subscription_period_id=temporary_period.id if temporary_period else None,
            )
            self.ledger.update_tenant_entitlement(
                tenant_id,
                EntitlementUpdate(
                    current_plan=tenant.current_plan,
                    entitlement_end=new_end,
                    is_temporary_upgrade=True,
                    prior_plan=tenant.prior_plan,
                ),
                expected_temporary_upgrade=True,
            )

        logger.info(
            "Temporary upgrade extended",
            extra={"tenant_id": tenant_id, "duration_days": duration_days, "entitlement_end": new_end.isoformat()},
        )
        return self._get_tenant(tenant_id)

    def reduce_subscription(
        self,
        tenant_id: str,
        duration_days: int,
        actor: Optional[RequestActor] = None,
    ) -> Tenant:
        """
        Move the current entitlement end `duration_days` earlier.

        Raises:
            SubscriptionOperationError: no entitlement to reduce, or the new
                end would not be in the future
        """
        self._require_positive(tenant_id, duration_days)
        tenant, now = self._reconciled_tenant(tenant_id, actor)
        if tenant.entitlement_end is None:
            raise SubscriptionOperationError("No active subscription to reduce", tenant_id)

        current_end = tenant.entitlement_end
        new_end = current_end - timedelta(days=duration_days)
        if new_end <= now:
            raise SubscriptionOperationError(
                f"Cannot reduce subscription by {duration_days} days; it would end in the past",
                tenant_id,
            )

        with self.ledger.transaction():
            matching = [
                p for p in self.ledger.get_active_subscription_periods(tenant_id, now)
                if p.end_date == current_end and p.is_temporary_upgrade == tenant.is_temporary_upgrade
            ]
            for period in matching:
                self.ledger.set_period_end(tenant_id, period.id, new_end)
            start = matching[0].start_date if matching else (tenant.entitlement_start or now)
            self.ledger.create_history_entry(
                tenant_id, tenant.current_plan, start, new_end,
                is_temporary_upgrade=tenant.is_temporary_upgrade,
                subscription_period_id=matching[0].id if matching else None,
            )
            self.ledger.update_tenant_entitlement(
                tenant_id,
                EntitlementUpdate(
                    current_plan=tenant.current_plan,
                    entitlement_end=new_end,
                    is_temporary_upgrade=tenant.is_temporary_upgrade,
                    prior_plan=tenant.prior_plan,
                ),
                expected_temporary_upgrade=tenant.is_temporary_upgrade,
            )

        logger.info(
            "Subscription reduced",
            extra={
                "tenant_id": tenant_id,
                "duration_days": duration_days,
                "previous_end": current_end.isoformat(),
                "entitlement_end": new_end.isoformat(),
            },
        )
        return self._get_tenant(tenant_id)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_entitlement_status(
        self, tenant_id: str, actor: Optional[RequestActor] = None
    ) -> EntitlementStatus:
        """Reconcile, then describe the tenant's effective entitlement."""
        tenant, now = self._reconciled_tenant(tenant_id, actor)
        end = self.ledger.latest_entitlement_end(tenant_id, now, tenant)

        remaining = (end - now).total_seconds() if end is not None else 0
        remaining = max(int(remaining), 0)
        return EntitlementStatus(
            tenant_id=tenant.id,
            plan=tenant.current_plan,
            entitlement_start=tenant.entitlement_start,
            entitlement_end=end,
            is_temporary_upgrade=tenant.is_temporary_upgrade,
            prior_plan=tenant.prior_plan,
            is_expired=end is None or end <= now,
            days_remaining=remaining // 86400,
            hours_remaining=(remaining % 86400) // 3600,
            minutes_remaining=(remaining % 3600) // 60,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _reconciled_tenant(self, tenant_id: str, actor: Optional[RequestActor]):
        now = self.clock.now()
        self.reconciler.reconcile(tenant_id, now=now, actor=actor)
        return self._get_tenant(tenant_id), now

    def _get_tenant(self, tenant_id: str) -> Tenant:
        tenant = self.ledger.get_tenant(tenant_id)
        if tenant is None:
            raise TenantNotFoundError(tenant_id)
        return tenant

    @staticmethod
    def _require_positive(tenant_id: str, duration_days: int) -> None:
        if duration_days is None or duration_days <= 0:
            raise SubscriptionOperationError("Duration must be a positive number of days", tenant_id)
