"""
Subscription period model.

A SubscriptionPeriod is one interval during which a tenant is (or was)
entitled to a plan. Periods may overlap when a temporary upgrade runs on
top of a base subscription; the tenant row holds the resolved outcome.
"""

import enum

from sqlalchemy import Column, String, Boolean, Enum, Index

from pos_backend.db_base import Base
from pos_backend.models.base import TimestampMixin, TenantScopedMixin, UTCDateTime, generate_uuid


class PeriodStatus(str, enum.Enum):
    """Subscription period status values."""
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"


class SubscriptionPeriod(Base, TimestampMixin, TenantScopedMixin):
    """One plan interval for a tenant."""

    __tablename__ = "subscription_periods"

    id = Column(
        String(255),
        primary_key=True,
        default=generate_uuid,
        comment="Primary key (UUID)"
    )

    plan = Column(
        String(20),
        nullable=False,
        comment="Plan granted by this period"
    )

    start_date = Column(
        UTCDateTime(),
        nullable=False,
        comment="Period start"
    )

    end_date = Column(
        UTCDateTime(),
        nullable=False,
        comment="Period end"
    )

    status = Column(
        Enum(
            PeriodStatus.ACTIVE.value, PeriodStatus.EXPIRED.value,
            name="subscription_period_status"
        ),
        default=PeriodStatus.ACTIVE.value,
        nullable=False,
        index=True,
        comment="ACTIVE or EXPIRED"
    )

    is_temporary_upgrade = Column(
        Boolean,
        nullable=False,
        default=False,
        comment="True for a time-boxed upgrade period"
    )

    prior_plan = Column(
        String(20),
        nullable=True,
        comment="Plan in effect before this temporary upgrade"
    )

    __table_args__ = (
        Index("ix_subscription_periods_tenant_status", "tenant_id", "status"),
        Index("ix_subscription_periods_tenant_end", "tenant_id", "end_date"),
    )

    def __repr__(self) -> str:
        return (
            f"<SubscriptionPeriod(id={self.id}, tenant_id={self.tenant_id}, plan={self.plan}, "
            f"status={self.status}, temporary={self.is_temporary_upgrade})>"
        )

    @property
    def is_active(self) -> bool:
        return self.status == PeriodStatus.ACTIVE.value
