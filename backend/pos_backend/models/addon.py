"""
Addon grant model.

An addon is purchased per tenant. Resource addons (ADD_USERS, ADD_OUTLETS,
ADD_PRODUCTS) carry a `limit` that is added on top of the plan's built-in
limit; feature addons (e.g. BUSINESS_ANALYTICS) unlock functionality.
"""

import enum

from sqlalchemy import Column, String, Integer, Enum, Index

from pos_backend.db_base import Base
from pos_backend.models.base import TimestampMixin, TenantScopedMixin, UTCDateTime, generate_uuid


class AddonStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class AddonGrant(Base, TimestampMixin, TenantScopedMixin):
    """A tenant's subscription to one addon."""

    __tablename__ = "tenant_addons"

    id = Column(
        String(255),
        primary_key=True,
        default=generate_uuid,
        comment="Primary key (UUID)"
    )

    addon_id = Column(
        String(100),
        nullable=False,
        comment="Catalog identifier (e.g. add_users)"
    )

    addon_type = Column(
        String(50),
        nullable=False,
        index=True,
        comment="Addon type (e.g. ADD_USERS)"
    )

    addon_name = Column(
        String(255),
        nullable=False,
        comment="Display name at time of purchase"
    )

    status = Column(
        Enum(AddonStatus.ACTIVE.value, AddonStatus.INACTIVE.value, name="addon_status"),
        default=AddonStatus.ACTIVE.value,
        nullable=False,
        comment="active or inactive"
    )

    limit = Column(
        Integer,
        nullable=True,
        comment="Extra capacity granted (NULL for feature addons)"
    )

    subscribed_at = Column(
        UTCDateTime(),
        nullable=False,
        comment="Purchase time"
    )

    end_date = Column(
        UTCDateTime(),
        nullable=True,
        comment="Expiry (NULL = perpetual)"
    )

    __table_args__ = (
        Index("ix_tenant_addons_tenant_type_status", "tenant_id", "addon_type", "status"),
    )

    def __repr__(self) -> str:
        return f"<AddonGrant(id={self.id}, tenant_id={self.tenant_id}, type={self.addon_type}, status={self.status})>"

    def is_effective_at(self, now) -> bool:
        """Check if the grant is active and unexpired at `now`."""
        if self.status != AddonStatus.ACTIVE.value:
            return False
        return self.end_date is None or self.end_date > now
