"""
Entitlement ledger: data access for the tenant entitlement fields,
subscription periods and subscription history.

All mutations of one reconciliation happen inside a single
`transaction()` block. Writes that guard a transition use compare-and-set
(UPDATE ... WHERE <expected state>) and raise LedgerWriteConflictError when
no row matched, so two concurrent reconciliations of the same tenant can
never both apply a transition.
"""

import logging
import math
from contextlib import contextmanager
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from pos_backend.constants.plans import DEFAULT_PLAN, SubscriptionPlan
from pos_backend.entitlements.errors import LedgerWriteConflictError
from pos_backend.entitlements.models import EntitlementUpdate
from pos_backend.models.subscription import SubscriptionPeriod, PeriodStatus
from pos_backend.models.subscription_history import SubscriptionHistoryEntry
from pos_backend.models.tenant import Tenant

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400


def duration_in_days(start: datetime, end: datetime) -> int:
    """Whole days between two instants, rounded up, never negative."""
    seconds = (end - start).total_seconds()
    if seconds <= 0:
        return 0
    return math.ceil(seconds / SECONDS_PER_DAY)


class EntitlementLedger:
    """
    Repository for entitlement state.

    All methods enforce tenant isolation via tenant_id parameter.
    """

    def __init__(self, db_session: Session):
        """
        Initialize ledger with database session.

        Args:
            db_session: SQLAlchemy database session
        """
        self.db = db_session

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self):
        """
        Commit everything done inside the block, or roll all of it back.

        Usage:
            with ledger.transaction():
                ledger.mark_history_reverted(...)
                ledger.update_tenant_entitlement(...)
        """
        try:
            yield self
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        """Load the tenant, bypassing any stale copy in the identity map."""
        return (
            self.db.query(Tenant)
            .populate_existing()
            .filter(Tenant.id == tenant_id)
            .first()
        )

    def get_active_subscription_periods(
        self, tenant_id: str, now: datetime
    ) -> List[SubscriptionPeriod]:
        """
        ACTIVE periods that have not yet ended, latest end first.
        """
        return (
            self.db.query(SubscriptionPeriod)
            .populate_existing()
            .filter(
                SubscriptionPeriod.tenant_id == tenant_id,
                SubscriptionPeriod.status == PeriodStatus.ACTIVE.value,
                SubscriptionPeriod.end_date >= now,
            )
            .order_by(SubscriptionPeriod.end_date.desc())
            .all()
        )

    def get_active_temporary_period(self, tenant_id: str) -> Optional[SubscriptionPeriod]:
        """Most recent ACTIVE temporary-upgrade period, whether or not it has ended."""
        return (
            self.db.query(SubscriptionPeriod)
            .populate_existing()
            .filter(
                SubscriptionPeriod.tenant_id == tenant_id,
                SubscriptionPeriod.status == PeriodStatus.ACTIVE.value,
                SubscriptionPeriod.is_temporary_upgrade.is_(True),
            )
            .order_by(SubscriptionPeriod.end_date.desc(), SubscriptionPeriod.created_at.desc())
            .first()
        )

    def get_latest_non_temporary_history(
        self, tenant_id: str, plan: str
    ) -> Optional[SubscriptionHistoryEntry]:
        """
        Most recently recorded, unreverted, non-temporary grant of `plan`.

        This is the carryover source when a temporary upgrade ends.
        """
        return (
            self.db.query(SubscriptionHistoryEntry)
            .populate_existing()
            .filter(
                SubscriptionHistoryEntry.tenant_id == tenant_id,
                SubscriptionHistoryEntry.plan_type == SubscriptionPlan(plan).value,
                SubscriptionHistoryEntry.is_temporary_upgrade.is_(False),
                SubscriptionHistoryEntry.reverted.is_(False),
            )
            .order_by(SubscriptionHistoryEntry.created_at.desc())
            .first()
        )

    def get_history(self, tenant_id: str) -> List[SubscriptionHistoryEntry]:
        """All history entries for a tenant, newest first."""
        return (
            self.db.query(SubscriptionHistoryEntry)
            .filter(SubscriptionHistoryEntry.tenant_id == tenant_id)
            .order_by(SubscriptionHistoryEntry.created_at.desc())
            .all()
        )

    def get_periods(self, tenant_id: str, status: Optional[str] = None) -> List[SubscriptionPeriod]:
        """All periods for a tenant, optionally by status, latest end first."""
        query = self.db.query(SubscriptionPeriod).filter(
            SubscriptionPeriod.tenant_id == tenant_id
        )
        if status:
            query = query.filter(SubscriptionPeriod.status == status)
        return query.order_by(SubscriptionPeriod.end_date.desc()).all()

    def latest_entitlement_end(
        self, tenant_id: str, now: datetime, tenant: Optional[Tenant] = None
    ) -> Optional[datetime]:
        """
        Latest of tenant.entitlement_end and every unexpired ACTIVE period end.

        Returns None when the tenant has never been entitled.
        """
        if tenant is None:
            tenant = self.get_tenant(tenant_id)
        candidates = []
        if tenant is not None and tenant.entitlement_end is not None:
            candidates.append(tenant.entitlement_end)
        candidates.extend(
            period.end_date
            for period in self.get_active_subscription_periods(tenant_id, now)
        )
        if not candidates:
            return None
        return max(candidates)

    def list_tenants_needing_reconcile(
        self, now: datetime, limit: int, after_id: Optional[str] = None
    ) -> List[str]:
        """
        Tenant ids a reconciliation would change: temporary upgrades whose
        end has passed and lapsed non-default plans.

        Ordered by id; pass the last id of the previous batch as `after_id`
        to page through candidates.
        """
        query = self.db.query(Tenant.id).filter(
            or_(
                and_(
                    Tenant.is_temporary_upgrade.is_(True),
                    or_(Tenant.entitlement_end.is_(None), Tenant.entitlement_end <= now),
                ),
                and_(
                    Tenant.current_plan != DEFAULT_PLAN.value,
                    or_(Tenant.entitlement_end.is_(None), Tenant.entitlement_end < now),
                ),
            )
        )
        if after_id is not None:
            query = query.filter(Tenant.id > after_id)
        rows = query.order_by(Tenant.id).limit(limit).all()
        return [row[0] for row in rows]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_period(
        self,
        tenant_id: str,
        plan: str,
        start_date: datetime,
        end_date: datetime,
        status: str = PeriodStatus.ACTIVE.value,
        is_temporary_upgrade: bool = False,
        prior_plan: Optional[str] = None,
    ) -> SubscriptionPeriod:
        """Add a subscription period and flush it to obtain its id."""
        period = SubscriptionPeriod(
            tenant_id=tenant_id,
            plan=SubscriptionPlan(plan).value,
            start_date=start_date,
            end_date=end_date,
            status=status,
            is_temporary_upgrade=is_temporary_upgrade,
            prior_plan=SubscriptionPlan(prior_plan).value if prior_plan else None,
        )
        self.db.add(period)
        self.db.flush()

        logger.info(
            "Subscription period created",
            extra={
                "tenant_id": tenant_id,
                "period_id": period.id,
                "plan": period.plan,
                "status": status,
                "is_temporary_upgrade": is_temporary_upgrade,
                "end_date": end_date.isoformat(),
            },
        )
        return period

    def create_history_entry(
        self,
        tenant_id: str,
        plan: str,
        start_date: datetime,
        end_date: datetime,
        is_temporary_upgrade: bool = False,
        subscription_period_id: Optional[str] = None,
    ) -> SubscriptionHistoryEntry:
        """Append a history entry. History rows are never updated except `reverted`."""
        entry = SubscriptionHistoryEntry(
            tenant_id=tenant_id,
            subscription_period_id=subscription_period_id,
            plan_type=SubscriptionPlan(plan).value,
            start_date=start_date,
            end_date=end_date,
            duration_days=duration_in_days(start_date, end_date),
            is_temporary_upgrade=is_temporary_upgrade,
            reverted=False,
        )
        self.db.add(entry)
        self.db.flush()
        return entry

    def mark_history_reverted(self, tenant_id: str, history_id: str) -> None:
        """
        Flip `reverted` false -> true.

        Raises:
            LedgerWriteConflictError: the entry was already reverted
        """
        updated = (
            self.db.query(SubscriptionHistoryEntry)
            .filter(
                SubscriptionHistoryEntry.id == history_id,
                SubscriptionHistoryEntry.tenant_id == tenant_id,
                SubscriptionHistoryEntry.reverted.is_(False),
            )
            .update({SubscriptionHistoryEntry.reverted: True}, synchronize_session=False)
        )
        if updated == 0:
            raise LedgerWriteConflictError(tenant_id, "mark_history_reverted")
        self._expire_loaded(SubscriptionHistoryEntry, history_id)

    def expire_periods(
        self,
        tenant_id: str,
        exclude_ids: Iterable[str] = (),
        ended_before: Optional[datetime] = None,
        is_temporary_upgrade: Optional[bool] = None,
    ) -> int:
        """
        Mark ACTIVE periods EXPIRED.

        Args:
            tenant_id: Tenant whose periods are expired
            exclude_ids: Periods to leave ACTIVE
            ended_before: Only expire periods whose end_date is before this instant
            is_temporary_upgrade: Only expire upgrade (True) or base (False) periods

        Returns:
            Number of periods expired
        """
        query = self.db.query(SubscriptionPeriod).filter(
            SubscriptionPeriod.tenant_id == tenant_id,
            SubscriptionPeriod.status == PeriodStatus.ACTIVE.value,
        )
        exclude_ids = list(exclude_ids)
        if exclude_ids:
            query = query.filter(SubscriptionPeriod.id.notin_(exclude_ids))
        if ended_before is not None:
            query = query.filter(SubscriptionPeriod.end_date < ended_before)
        if is_temporary_upgrade is not None:
            query = query.filter(SubscriptionPeriod.is_temporary_upgrade.is_(is_temporary_upgrade))

        count = query.update(
            {SubscriptionPeriod.status: PeriodStatus.EXPIRED.value},
            synchronize_session=False,
        )
        if count:
            self._expire_all_of(SubscriptionPeriod)
        return count

    def set_period_end(self, tenant_id: str, period_id: str, end_date: datetime) -> None:
        """Move the end of a still-ACTIVE period."""
        updated = (
            self.db.query(SubscriptionPeriod)
            .filter(
                SubscriptionPeriod.id == period_id,
                SubscriptionPeriod.tenant_id == tenant_id,
                SubscriptionPeriod.status == PeriodStatus.ACTIVE.value,
            )
            .update({SubscriptionPeriod.end_date: end_date}, synchronize_session=False)
        )
        if updated == 0:
            raise LedgerWriteConflictError(tenant_id, "set_period_end")
        self._expire_loaded(SubscriptionPeriod, period_id)

    def update_tenant_entitlement(
        self,
        tenant_id: str,
        update: EntitlementUpdate,
        expected_temporary_upgrade: bool,
        expected_plan: Optional[str] = None,
    ) -> None:
        """
        Compare-and-set the tenant's entitlement fields.

        The update only applies while the row still has the expected
        is_temporary_upgrade flag (and plan, when given).

        Raises:
            LedgerWriteConflictError: the tenant row changed since it was read
        """
        values = {
            Tenant.current_plan: SubscriptionPlan(update.current_plan).value,
            Tenant.entitlement_end: update.entitlement_end,
            Tenant.is_temporary_upgrade: update.is_temporary_upgrade,
            Tenant.prior_plan: SubscriptionPlan(update.prior_plan).value if update.prior_plan else None,
        }
        if update.entitlement_start is not None:
            values[Tenant.entitlement_start] = update.entitlement_start

        query = self.db.query(Tenant).filter(
            Tenant.id == tenant_id,
            Tenant.is_temporary_upgrade.is_(expected_temporary_upgrade),
        )
        if expected_plan is not None:
            query = query.filter(Tenant.current_plan == SubscriptionPlan(expected_plan).value)

        updated = query.update(values, synchronize_session=False)
        if updated == 0:
            raise LedgerWriteConflictError(tenant_id, "update_tenant_entitlement")
        self._expire_loaded(Tenant, tenant_id)

        logger.info(
            "Tenant entitlement updated",
            extra={
                "tenant_id": tenant_id,
                "plan": values[Tenant.current_plan],
                "entitlement_end": update.entitlement_end.isoformat() if update.entitlement_end else None,
                "is_temporary_upgrade": update.is_temporary_upgrade,
            },
        )

    # ------------------------------------------------------------------
    # Identity map upkeep after bulk UPDATEs
    # ------------------------------------------------------------------

    def _expire_loaded(self, model, pk) -> None:
        instance = self.db.identity_map.get(self.db.identity_key(model, pk))
        if instance is not None:
            self.db.expire(instance)

    def _expire_all_of(self, model) -> None:
        for instance in list(self.db.identity_map.values()):
            if isinstance(instance, model):
                self.db.expire(instance)
