"""
Cascade activator.

After an entitlement change is committed, staff accounts (CASHIER, KITCHEN,
SUPERVISOR) follow the tenant: deactivated when entitlement is lost,
reactivated (within the user limit, oldest first) when it is regained.
ADMIN_TENANT and SUPER_ADMIN accounts are never touched.

A tenant admin who is explicitly editing user status wins: the cascade is
skipped for that actor.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from pos_backend.constants.permissions import CASCADE_ROLES
from pos_backend.constants.plans import ResourceType
from pos_backend.entitlements.models import CascadeResult
from pos_backend.models.tenant import Tenant
from pos_backend.platform.clock import Clock, get_clock
from pos_backend.platform.request_context import RequestActor
from pos_backend.repositories.resource_repository import TenantResourceRepository
from pos_backend.services.plan_features_service import PlanFeaturesService

logger = logging.getLogger(__name__)


class CascadeActivator:
    """Propagates tenant activation to dependent staff accounts."""

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

    def apply_activation_cascade(
        self,
        tenant_id: str,
        became_active: bool,
        actor: Optional[RequestActor] = None,
        now: Optional[datetime] = None,
    ) -> CascadeResult:
        """
        Activate or deactivate the tenant's staff accounts.

        Runs in its own transaction: commits on success, rolls back and
        re-raises on failure.
        """
        result = CascadeResult(tenant_id=tenant_id, became_active=became_active)

        if actor is not None and actor.is_tenant_admin_manual_edit:
            result.skipped = True
            logger.info(
                "Activation cascade skipped for manual user-status edit",
                extra={"tenant_id": tenant_id, "user_id": actor.user_id},
            )
            return result

        now = now or self.clock.now()
        try:
            if became_active:
                result.users_activated = self._activate(tenant_id, now)
            else:
                result.users_deactivated = self._deactivate(tenant_id)
            self.db.commit()
        except Exception:
            logger.error(
                "Activation cascade failed",
                extra={"tenant_id": tenant_id, "became_active": became_active},
                exc_info=True,
            )
            self.db.rollback()
            raise

        if result.users_activated or result.users_deactivated:
            logger.info("Activation cascade applied", extra=result.to_dict())
        return result

    def _deactivate(self, tenant_id: str) -> int:
        users = self.resources.list_users_by_roles(tenant_id, CASCADE_ROLES, is_active=True)
        return self.resources.set_users_active(tenant_id, [u.id for u in users], False)

    def _activate(self, tenant_id: str, now: datetime) -> int:
        tenant = self.db.query(Tenant).filter(Tenant.id == tenant_id).first()
        if tenant is None:
            return 0

        inactive = self.resources.list_users_by_roles(tenant_id, CASCADE_ROLES, is_active=False)
        if not inactive:
            return 0

        limit = self.plan_features.get_effective_limit(
            tenant_id, tenant.current_plan, ResourceType.USERS.value, now
        ).total
        if limit is None:
            candidates = inactive
        else:
            slots = limit - self.resources.count_active(tenant_id, ResourceType.USERS.value)
            candidates = inactive[:max(slots, 0)]

        return self.resources.set_users_active(tenant_id, [u.id for u in candidates], True)
