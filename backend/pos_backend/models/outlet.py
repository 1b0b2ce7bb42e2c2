"""
Outlet and product models.

Owned by the catalog subsystem; the entitlement engine only counts them and
toggles is_active when plan limits are enforced.
"""

from sqlalchemy import Column, String, Boolean, Index

from pos_backend.db_base import Base
from pos_backend.models.base import TimestampMixin, TenantScopedMixin, generate_uuid


class Outlet(Base, TimestampMixin, TenantScopedMixin):
    """A physical store location."""

    __tablename__ = "outlets"

    id = Column(String(255), primary_key=True, default=generate_uuid)
    name = Column(String(255), nullable=False, comment="Outlet name")
    is_active = Column(Boolean, nullable=False, default=True, comment="Whether the outlet can trade")

    __table_args__ = (
        Index("ix_outlets_tenant_active", "tenant_id", "is_active"),
    )

    def __repr__(self) -> str:
        return f"<Outlet(id={self.id}, tenant_id={self.tenant_id}, active={self.is_active})>"


class Product(Base, TimestampMixin, TenantScopedMixin):
    """A sellable catalog item."""

    __tablename__ = "products"

    id = Column(String(255), primary_key=True, default=generate_uuid)
    name = Column(String(255), nullable=False, comment="Product name")
    is_active = Column(Boolean, nullable=False, default=True, comment="Whether the product can be sold")

    __table_args__ = (
        Index("ix_products_tenant_active", "tenant_id", "is_active"),
    )

    def __repr__(self) -> str:
        return f"<Product(id={self.id}, tenant_id={self.tenant_id}, active={self.is_active})>"
