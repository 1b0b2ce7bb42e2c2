"""
Limit checker: can the tenant create one more outlet, user or product?

Pure read. Uses the tenant's stored plan; it does not reconcile.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from pos_backend.constants.plans import ResourceType
from pos_backend.entitlements.errors import TenantNotFoundError
from pos_backend.entitlements.models import LimitCheckResult
from pos_backend.models.tenant import Tenant
from pos_backend.platform.clock import Clock, get_clock
from pos_backend.repositories.resource_repository import TenantResourceRepository
from pos_backend.services.plan_features_service import PlanFeaturesService

logger = logging.getLogger(__name__)


class LimitChecker:
    """Capacity checks against plan base limits plus active addons."""

    def __init__(
        self,
        db_session: Session,
        clock: Optional[Clock] = None,
        plan_features: Optional[PlanFeaturesService] = None,
    ):
        self.db = db_session
        self.clock = clock or get_clock()
        self.plan_features = plan_features or PlanFeaturesService(db_session, self.clock)
        self.resources = TenantResourceRepository(db_session)

    def check_limit(
        self,
        tenant_id: str,
        resource_type: str,
        now: Optional[datetime] = None,
    ) -> LimitCheckResult:
        """
        Check whether one more `resource_type` fits.

        Args:
            tenant_id: Tenant to check
            resource_type: 'outlets', 'users' or 'products'
            now: Instant used to decide which addons are active

        Returns:
            LimitCheckResult with allowed = limit is None or current < limit

        Raises:
            TenantNotFoundError: tenant does not exist
            ValueError: unknown resource type
        """
        resource = ResourceType(resource_type)
        now = now or self.clock.now()

        tenant = self.db.query(Tenant).filter(Tenant.id == tenant_id).first()
        if tenant is None:
            raise TenantNotFoundError(tenant_id)

        effective = self.plan_features.get_effective_limit(
            tenant_id, tenant.current_plan, resource.value, now
        )
        current = self.resources.count_active(tenant_id, resource.value)
        limit = effective.total
        allowed = limit is None or current < limit

        if not allowed:
            logger.info(
                "Resource limit reached",
                extra={
                    "tenant_id": tenant_id,
                    "resource_type": resource.value,
                    "current": current,
                    "limit": limit,
                    "plan": tenant.current_plan,
                },
            )

        return LimitCheckResult(
            allowed=allowed,
            current=current,
            limit=limit,
            resource_type=resource.value,
            plan_limit=effective.plan_limit,
            addon_limit=effective.addon_limit,
        )
