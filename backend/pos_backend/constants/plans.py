"""
Subscription plans, addon types and limit-bearing resource types.
"""

from enum import Enum


class SubscriptionPlan(str, Enum):
    """Plan tiers a tenant can be entitled to."""
    BASIC = "BASIC"
    PRO = "PRO"
    ENTERPRISE = "ENTERPRISE"


# Plan a tenant falls back to when nothing else entitles it
DEFAULT_PLAN = SubscriptionPlan.BASIC

PLAN_TIER_ORDER = {
    SubscriptionPlan.BASIC: 0,
    SubscriptionPlan.PRO: 1,
    SubscriptionPlan.ENTERPRISE: 2,
}


def plan_rank(plan) -> int:
    """Return the tier rank of a plan (higher is more capable)."""
    return PLAN_TIER_ORDER[SubscriptionPlan(plan)]


class ResourceType(str, Enum):
    """Resources whose count is capped by plan and addons."""
    OUTLETS = "outlets"
    USERS = "users"
    PRODUCTS = "products"


class AddonType(str, Enum):
    """Addon catalog types."""
    ADD_OUTLETS = "ADD_OUTLETS"
    ADD_USERS = "ADD_USERS"
    ADD_PRODUCTS = "ADD_PRODUCTS"
    BUSINESS_ANALYTICS = "BUSINESS_ANALYTICS"
    EXPORT_REPORTS = "EXPORT_REPORTS"
    RECEIPT_EDITOR = "RECEIPT_EDITOR"


# Addons that raise a resource limit
RESOURCE_ADDON_TYPES = {
    ResourceType.OUTLETS: AddonType.ADD_OUTLETS,
    ResourceType.USERS: AddonType.ADD_USERS,
    ResourceType.PRODUCTS: AddonType.ADD_PRODUCTS,
}


class UpgradeType(str, Enum):
    """How a plan upgrade relates to the existing entitlement window."""
    TEMPORARY = "temporary"    # Time-boxed; reverts to the prior plan afterwards
    UNTIL_END = "until_end"    # Replaces the plan for the rest of the current window
    CUSTOM = "custom"          # Replaces the plan for an explicit number of days
