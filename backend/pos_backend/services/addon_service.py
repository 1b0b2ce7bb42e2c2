"""
Addon service: catalog, subscription and lookup of tenant addons.

Resource addons (ADD_USERS, ADD_OUTLETS, ADD_PRODUCTS) may be bought
repeatedly; each active grant adds its limit to the plan's built-in limit.
Feature addons (BUSINESS_ANALYTICS, EXPORT_REPORTS, RECEIPT_EDITOR) can be
held once at a time.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from pos_backend.config.plan_features import AddonCatalogEntry, PlanFeaturesLoader, get_plan_features_loader
from pos_backend.constants.plans import RESOURCE_ADDON_TYPES
from pos_backend.entitlements.errors import AddonOperationError, TenantNotFoundError
from pos_backend.models.addon import AddonGrant
from pos_backend.models.tenant import Tenant
from pos_backend.platform.clock import Clock, get_clock
from pos_backend.repositories.addon_repository import AddonRepository
from pos_backend.repositories.resource_repository import TenantResourceRepository

logger = logging.getLogger(__name__)

_RESOURCE_BY_ADDON_TYPE = {addon.value: resource.value for resource, addon in RESOURCE_ADDON_TYPES.items()}


@dataclass
class TenantAddonUsage:
    """An active addon grant with the current usage of what it caps."""

    grant: AddonGrant
    current_usage: int

    @property
    def is_limit_reached(self) -> bool:
        if not self.grant.limit:
            return False
        return self.current_usage >= self.grant.limit

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.grant.id,
            "addon_id": self.grant.addon_id,
            "addon_type": self.grant.addon_type,
            "addon_name": self.grant.addon_name,
            "status": self.grant.status,
            "limit": self.grant.limit,
            "subscribed_at": self.grant.subscribed_at.isoformat(),
            "end_date": self.grant.end_date.isoformat() if self.grant.end_date else None,
            "current_usage": self.current_usage,
            "is_limit_reached": self.is_limit_reached,
        }


class AddonService:
    """Addon operations for one database session."""

    def __init__(
        self,
        db_session: Session,
        clock: Optional[Clock] = None,
        loader: Optional[PlanFeaturesLoader] = None,
    ):
        self.db = db_session
        self.clock = clock or get_clock()
        self.loader = loader or get_plan_features_loader()
        self.repository = AddonRepository(db_session)
        self.resources = TenantResourceRepository(db_session)

    def get_available_addons(self) -> List[AddonCatalogEntry]:
        return self.loader.get_addon_catalog()

    def get_tenant_addons(self, tenant_id: str) -> List[TenantAddonUsage]:
        """Active, unexpired grants with usage, newest purchase first."""
        now = self.clock.now()
        grants = self.repository.get_active_addons(tenant_id, now)
        result = []
        for grant in sorted(grants, key=lambda g: g.subscribed_at, reverse=True):
            resource = _RESOURCE_BY_ADDON_TYPE.get(grant.addon_type)
            usage = self.resources.count_active(tenant_id, resource) if resource else 0
            result.append(TenantAddonUsage(grant=grant, current_usage=usage))
        return result

    def has_active_addon(self, tenant_id: str, addon_type: str) -> bool:
        return bool(self.repository.get_active_addons(tenant_id, self.clock.now(), addon_type))

    def subscribe_addon(
        self,
        tenant_id: str,
        addon_id: str,
        duration_days: Optional[int] = None,
    ) -> AddonGrant:
        """
        Subscribe the tenant to a catalog addon.

        Expiry is now + duration_days when given, otherwise the tenant's
        current entitlement end (perpetual if the tenant has none).

        Raises:
            TenantNotFoundError: tenant does not exist
            AddonOperationError: unknown addon, or feature addon already active
        """
        tenant = self.db.query(Tenant).filter(Tenant.id == tenant_id).first()
        if tenant is None:
            raise TenantNotFoundError(tenant_id)

        entry = self.loader.get_addon(addon_id)
        if entry is None:
            raise AddonOperationError(f"Unknown addon: {addon_id}", tenant_id)
        if duration_days is not None and duration_days <= 0:
            raise AddonOperationError("Addon duration must be positive", tenant_id)

        now = self.clock.now()
        if duration_days:
            end_date = now + timedelta(days=duration_days)
        else:
            end_date = tenant.entitlement_end

        is_resource_addon = entry.type in _RESOURCE_BY_ADDON_TYPE
        if not is_resource_addon and self.repository.get_active_addons(tenant_id, now, entry.type):
            raise AddonOperationError("Addon already subscribed", tenant_id)

        grant = self.repository.create(
            tenant_id=tenant_id,
            addon_id=entry.id,
            addon_type=entry.type,
            addon_name=entry.name,
            subscribed_at=now,
            end_date=end_date,
            limit=entry.limit if is_resource_addon else None,
        )
        self.db.commit()
        return grant

    def extend_addon(self, tenant_id: str, grant_id: str, duration_days: int) -> AddonGrant:
        """Push a grant's expiry out by duration_days from its current expiry (or now)."""
        grant = self._get_grant(tenant_id, grant_id)
        if duration_days <= 0:
            raise AddonOperationError("Addon duration must be positive", tenant_id)
        base = grant.end_date or self.clock.now()
        grant.end_date = base + timedelta(days=duration_days)
        self.db.commit()
        return grant

    def reduce_addon(self, tenant_id: str, grant_id: str, duration_days: int) -> AddonGrant:
        """Pull a grant's expiry in; never into the past."""
        grant = self._get_grant(tenant_id, grant_id)
        if duration_days <= 0:
            raise AddonOperationError("Addon duration must be positive", tenant_id)
        if grant.end_date is None:
            raise AddonOperationError("Addon has no expiry date to reduce", tenant_id)
        new_end = grant.end_date - timedelta(days=duration_days)
        if new_end < self.clock.now():
            raise AddonOperationError("Cannot reduce addon to a date in the past", tenant_id)
        grant.end_date = new_end
        self.db.commit()
        return grant

    def unsubscribe_addon(self, tenant_id: str, grant_id: str) -> AddonGrant:
        grant = self._get_grant(tenant_id, grant_id)
        self.repository.deactivate(grant)
        self.db.commit()
        logger.info(
            "Addon unsubscribed",
            extra={"tenant_id": tenant_id, "addon_id": grant.addon_id, "addon_type": grant.addon_type},
        )
        return grant

    def _get_grant(self, tenant_id: str, grant_id: str) -> AddonGrant:
        grant = self.repository.get_by_id(grant_id, tenant_id)
        if grant is None:
            raise AddonOperationError("Addon not found", tenant_id)
        return grant


def addon_display_name(addon_type: str) -> str:
    """Human-readable name for an addon type, from the catalog."""
    for entry in get_plan_features_loader().get_addon_catalog():
        if entry.type == addon_type:
            return entry.name
    return addon_type
