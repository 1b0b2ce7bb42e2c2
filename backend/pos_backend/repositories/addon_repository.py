"""
Addon ledger: data access for tenant addon grants.
"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from pos_backend.models.addon import AddonGrant, AddonStatus

logger = logging.getLogger(__name__)


class AddonRepository:
    """
    Repository for addon grants.

    All methods enforce tenant isolation via tenant_id parameter.
    """

    def __init__(self, db_session: Session):
        self.db = db_session

    def get_by_id(self, grant_id: str, tenant_id: str) -> Optional[AddonGrant]:
        return self.db.query(AddonGrant).filter(
            AddonGrant.id == grant_id,
            AddonGrant.tenant_id == tenant_id,
        ).first()

    def get_active_addons(
        self, tenant_id: str, now: datetime, addon_type: Optional[str] = None
    ) -> List[AddonGrant]:
        """
        Active grants that are perpetual or expire after `now`.
        """
        query = self.db.query(AddonGrant).filter(
            AddonGrant.tenant_id == tenant_id,
            AddonGrant.status == AddonStatus.ACTIVE.value,
            or_(AddonGrant.end_date.is_(None), AddonGrant.end_date > now),
        )
        if addon_type is not None:
            query = query.filter(AddonGrant.addon_type == getattr(addon_type, "value", addon_type))
        return query.order_by(AddonGrant.subscribed_at.asc()).all()

    def sum_active_limit(self, tenant_id: str, addon_type: str, now: datetime) -> int:
        """Total extra capacity granted by active addons of `addon_type`."""
        return sum(
            grant.limit or 0
            for grant in self.get_active_addons(tenant_id, now, addon_type)
        )

    def create(
        self,
        tenant_id: str,
        addon_id: str,
        addon_type: str,
        addon_name: str,
        subscribed_at: datetime,
        end_date: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> AddonGrant:
        grant = AddonGrant(
            tenant_id=tenant_id,
            addon_id=addon_id,
            addon_type=getattr(addon_type, "value", addon_type),
            addon_name=addon_name,
            status=AddonStatus.ACTIVE.value,
            limit=limit,
            subscribed_at=subscribed_at,
            end_date=end_date,
        )
        self.db.add(grant)
        self.db.flush()

        logger.info(
            "Addon grant created",
            extra={
                "tenant_id": tenant_id,
                "addon_id": addon_id,
                "addon_type": grant.addon_type,
                "limit": limit,
                "end_date": end_date.isoformat() if end_date else None,
            },
        )
        return grant

    def deactivate(self, grant: AddonGrant) -> AddonGrant:
        grant.status = AddonStatus.INACTIVE.value
        self.db.flush()
        return grant

    def clamp_expiries(self, tenant_id: str, not_after: datetime) -> int:
        """
        Pull the expiry of active grants that outlive `not_after` back to it.

        Returns number of grants changed.
        """
        grants = self.db.query(AddonGrant).filter(
            AddonGrant.tenant_id == tenant_id,
            AddonGrant.status == AddonStatus.ACTIVE.value,
            AddonGrant.end_date.isnot(None),
            AddonGrant.end_date > not_after,
        ).all()
        for grant in grants:
            grant.end_date = not_after
        if grants:
            self.db.flush()
        return len(grants)
