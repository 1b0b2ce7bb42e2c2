"""
Database models for tenants, subscriptions, addons and the rows they cap.

All tenant-scoped models inherit from TenantScopedMixin.
"""

from pos_backend.models.base import TimestampMixin, TenantScopedMixin, UTCDateTime
from pos_backend.models.tenant import Tenant
from pos_backend.models.user import User
from pos_backend.models.subscription import SubscriptionPeriod, PeriodStatus
from pos_backend.models.subscription_history import SubscriptionHistoryEntry
from pos_backend.models.addon import AddonGrant, AddonStatus
from pos_backend.models.outlet import Outlet, Product

__all__ = [
    "TimestampMixin",
    "TenantScopedMixin",
    "UTCDateTime",
    "Tenant",
    "User",
    "SubscriptionPeriod",
    "PeriodStatus",
    "SubscriptionHistoryEntry",
    "AddonGrant",
    "AddonStatus",
    "Outlet",
    "Product",
]
