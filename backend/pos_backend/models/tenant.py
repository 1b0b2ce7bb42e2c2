"""
Tenant model for the multi-tenant POS platform.

A Tenant is one merchant business. Besides identity it carries the
entitlement fields the engine owns:

- current_plan / entitlement_start / entitlement_end: the effective plan window
- is_temporary_upgrade / prior_plan: set while a time-boxed upgrade is running

Those four fields are written only by the reconciler and the administrative
grant operations in SubscriptionService; everything else reads them.
"""

from sqlalchemy import Column, String, Boolean, Index
from sqlalchemy.orm import relationship

from pos_backend.db_base import Base
from pos_backend.models.base import TimestampMixin, UTCDateTime, generate_uuid
from pos_backend.constants.plans import DEFAULT_PLAN


class Tenant(Base, TimestampMixin):
    """
    Tenant represents a merchant business and its entitlement state.

    Tenant.id IS the tenant_id used across all tenant-scoped models.
    """

    __tablename__ = "tenants"

    id = Column(
        String(255),
        primary_key=True,
        default=generate_uuid,
        comment="Primary key - this IS the tenant_id used across all models"
    )

    name = Column(
        String(255),
        nullable=False,
        comment="Display name of the tenant (business name)"
    )

    is_active = Column(
        Boolean,
        nullable=False,
        default=True,
        comment="Administrative activation flag, independent of entitlement"
    )

    # Entitlement
    current_plan = Column(
        String(20),
        nullable=False,
        default=DEFAULT_PLAN.value,
        index=True,
        comment="Effective plan: BASIC, PRO, ENTERPRISE"
    )

    entitlement_start = Column(
        UTCDateTime(),
        nullable=True,
        comment="Start of the current entitlement window"
    )

    entitlement_end = Column(
        UTCDateTime(),
        nullable=True,
        comment="End of the current entitlement window (NULL = never entitled)"
    )

    is_temporary_upgrade = Column(
        Boolean,
        nullable=False,
        default=False,
        comment="True while a time-boxed upgrade is in effect"
    )

    prior_plan = Column(
        String(20),
        nullable=True,
        comment="Plan to return to when the temporary upgrade ends"
    )

    users = relationship(
        "User",
        back_populates="tenant",
        lazy="dynamic",
        cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_tenants_temporary_upgrade", "is_temporary_upgrade"),
    )

    def __repr__(self) -> str:
        return (
            f"<Tenant(id={self.id}, plan={self.current_plan}, "
            f"end={self.entitlement_end}, temporary={self.is_temporary_upgrade})>"
        )

    @property
    def has_ever_been_entitled(self) -> bool:
        return self.entitlement_end is not None
