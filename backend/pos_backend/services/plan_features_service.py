"""
Plan features service.

Resolves a tenant's effective resource limits (plan base + active addons)
and enforces them after a plan change by disabling the rows that no longer
fit. ADMIN_TENANT accounts are never disabled.

Retention order when users exceed the limit:
    ADMIN_TENANT (always) > CASHIER > KITCHEN > SUPERVISOR, oldest first.
Outlets and products keep the oldest rows.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from pos_backend.config.plan_features import PlanFeaturesLoader, get_plan_features_loader
from pos_backend.constants.permissions import STAFF_RETENTION_PRIORITY, UserRole
from pos_backend.constants.plans import RESOURCE_ADDON_TYPES, ResourceType, SubscriptionPlan
from pos_backend.platform.clock import Clock, get_clock
from pos_backend.repositories.addon_repository import AddonRepository
from pos_backend.repositories.resource_repository import TenantResourceRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EffectiveLimit:
    """Resolved capacity for one resource type. total=None means unlimited."""

    resource_type: str
    plan_limit: Optional[int]
    addon_limit: int

    @property
    def total(self) -> Optional[int]:
        if self.plan_limit is None:
            return None
        return self.plan_limit + self.addon_limit


@dataclass
class PlanFeaturesResult:
    """Rows disabled while enforcing a plan's limits."""

    tenant_id: str
    plan: str
    users_disabled: List[str] = field(default_factory=list)
    outlets_disabled: List[str] = field(default_factory=list)
    products_disabled: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "tenant_id": self.tenant_id,
            "plan": self.plan,
            "users_disabled": len(self.users_disabled),
            "outlets_disabled": len(self.outlets_disabled),
            "products_disabled": len(self.products_disabled),
        }


class PlanFeaturesService:
    """Limit resolution and enforcement for one database session."""

    def __init__(
        self,
        db_session: Session,
        clock: Optional[Clock] = None,
        loader: Optional[PlanFeaturesLoader] = None,
    ):
        self.db = db_session
        self.clock = clock or get_clock()
        self.loader = loader or get_plan_features_loader()
        self.addons = AddonRepository(db_session)
        self.resources = TenantResourceRepository(db_session)

    def get_effective_limit(
        self,
        tenant_id: str,
        plan: str,
        resource_type: str,
        now: Optional[datetime] = None,
    ) -> EffectiveLimit:
        """
        Plan base limit plus the capacity of active resource addons.

        An unlimited plan stays unlimited regardless of addons.
        """
        now = now or self.clock.now()
        resource = ResourceType(resource_type)
        plan_limit = self.loader.get_plan_limit(plan, resource.value)
        addon_limit = self.addons.sum_active_limit(
            tenant_id, RESOURCE_ADDON_TYPES[resource].value, now
        )
        return EffectiveLimit(
            resource_type=resource.value,
            plan_limit=plan_limit,
            addon_limit=addon_limit,
        )

    def get_effective_limits(
        self, tenant_id: str, plan: str, now: Optional[datetime] = None
    ) -> Dict[str, EffectiveLimit]:
        now = now or self.clock.now()
        return {
            resource.value: self.get_effective_limit(tenant_id, plan, resource.value, now)
            for resource in ResourceType
        }

    def apply_plan_features(
        self, tenant_id: str, plan: str, now: Optional[datetime] = None
    ) -> PlanFeaturesResult:
        """
        Disable users, outlets and products beyond the plan's effective limits.

        Flushes but does not commit; the caller owns the transaction.
        """
        now = now or self.clock.now()
        plan = SubscriptionPlan(plan).value
        limits = self.get_effective_limits(tenant_id, plan, now)
        result = PlanFeaturesResult(tenant_id=tenant_id, plan=plan)

        user_limit = limits[ResourceType.USERS.value].total
        if user_limit is not None:
            result.users_disabled = self._enforce_user_limit(tenant_id, user_limit)

        for resource, target in (
            (ResourceType.OUTLETS, result.outlets_disabled),
            (ResourceType.PRODUCTS, result.products_disabled),
        ):
            limit = limits[resource.value].total
            if limit is None:
                continue
            active = [row for row in self.resources.list_resources(tenant_id, resource.value) if row.is_active]
            for row in active[limit:]:
                row.is_active = False
                target.append(row.id)

        self.db.flush()

        if result.users_disabled or result.outlets_disabled or result.products_disabled:
            logger.info("Plan limits enforced", extra=result.to_dict())
        return result

    def _enforce_user_limit(self, tenant_id: str, limit: int) -> List[str]:
        admins = self.resources.list_users_by_roles(
            tenant_id, [UserRole.ADMIN_TENANT], is_active=True
        )
        remaining = limit - len(admins)
        disabled = []
        for role in STAFF_RETENTION_PRIORITY:
            for user in self.resources.list_users_by_roles(tenant_id, [role], is_active=True):
                if remaining > 0:
                    remaining -= 1
                    continue
                user.is_active = False
                disabled.append(user.id)
        return disabled
