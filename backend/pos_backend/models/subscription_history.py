"""
Subscription history model.

Append-only log of plan grants. The only mutation ever made to a row is
flipping `reverted` from false to true, once, when the reconciler restores
the plan it describes after a temporary upgrade ends.
"""

from sqlalchemy import Column, String, Integer, Boolean, ForeignKey, Index

from pos_backend.db_base import Base
from pos_backend.models.base import TenantScopedMixin, UTCDateTime, generate_uuid, utcnow


class SubscriptionHistoryEntry(Base, TenantScopedMixin):
    """Immutable record of a plan grant."""

    __tablename__ = "subscription_history"

    id = Column(
        String(255),
        primary_key=True,
        default=generate_uuid,
        comment="Primary key (UUID)"
    )

    subscription_period_id = Column(
        String(255),
        ForeignKey("subscription_periods.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
        comment="Period this entry describes, when there is one"
    )

    plan_type = Column(
        String(20),
        nullable=False,
        comment="Plan granted"
    )

    start_date = Column(
        UTCDateTime(),
        nullable=False,
        comment="Grant start"
    )

    end_date = Column(
        UTCDateTime(),
        nullable=False,
        comment="Grant end (absolute date preserved across temporary upgrades)"
    )

    duration_days = Column(
        Integer,
        nullable=False,
        default=0,
        comment="Length of the grant in whole days"
    )

    is_temporary_upgrade = Column(
        Boolean,
        nullable=False,
        default=False,
        comment="True for a time-boxed upgrade grant"
    )

    reverted = Column(
        Boolean,
        nullable=False,
        default=False,
        comment="Set once when this grant has been restored after an upgrade"
    )

    created_at = Column(
        UTCDateTime(),
        nullable=False,
        default=utcnow,
        comment="Insertion time; orders entries for carryover lookups"
    )

    __table_args__ = (
        Index(
            "ix_subscription_history_carryover",
            "tenant_id", "plan_type", "is_temporary_upgrade", "reverted",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<SubscriptionHistoryEntry(id={self.id}, tenant_id={self.tenant_id}, "
            f"plan={self.plan_type}, end={self.end_date}, reverted={self.reverted})>"
        )
