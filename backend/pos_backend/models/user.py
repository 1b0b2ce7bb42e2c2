"""
POS user account model.

Users belong to exactly one tenant (SUPER_ADMIN users may have no tenant).
The entitlement engine only reads role/created_at and flips is_active for
tenant staff roles.
"""

from sqlalchemy import Column, String, Boolean, ForeignKey, Index
from sqlalchemy.orm import relationship

from pos_backend.db_base import Base
from pos_backend.models.base import TimestampMixin, generate_uuid
from pos_backend.constants.permissions import UserRole


class User(Base, TimestampMixin):
    """A person who logs in to a tenant's POS."""

    __tablename__ = "users"

    id = Column(
        String(255),
        primary_key=True,
        default=generate_uuid,
        comment="Primary key (UUID)"
    )

    tenant_id = Column(
        String(255),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
        comment="Owning tenant (NULL for platform super admins)"
    )

    email = Column(
        String(255),
        nullable=False,
        index=True,
        comment="Login email"
    )

    name = Column(
        String(255),
        nullable=True,
        comment="Display name"
    )

    role = Column(
        String(20),
        nullable=False,
        default=UserRole.CASHIER.value,
        comment="SUPER_ADMIN, ADMIN_TENANT, SUPERVISOR, CASHIER, KITCHEN"
    )

    is_active = Column(
        Boolean,
        nullable=False,
        default=True,
        comment="Whether the account may log in"
    )

    tenant = relationship("Tenant", back_populates="users")

    __table_args__ = (
        Index("ix_users_tenant_role", "tenant_id", "role"),
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, tenant_id={self.tenant_id}, role={self.role}, active={self.is_active})>"
