"""
POS user roles and the role groups the entitlement engine acts on.

Role Hierarchy:
- Platform: SUPER_ADMIN (cross-tenant operator)
- Tenant: ADMIN_TENANT > SUPERVISOR > CASHIER / KITCHEN

Only the tenant staff roles are ever activated or deactivated as a side
effect of entitlement changes; admin accounts stay untouched so that a
tenant can always log in and renew.
"""

from enum import Enum
from typing import FrozenSet


class UserRole(str, Enum):
    """
    User roles within the POS platform.

    Keep in sync with the roles issued by the authentication layer.
    """
    SUPER_ADMIN = "SUPER_ADMIN"
    ADMIN_TENANT = "ADMIN_TENANT"
    SUPERVISOR = "SUPERVISOR"
    CASHIER = "CASHIER"
    KITCHEN = "KITCHEN"


# Roles that bypass the synchronous entitlement check
PRIVILEGED_ROLES: FrozenSet[UserRole] = frozenset({
    UserRole.SUPER_ADMIN,
    UserRole.ADMIN_TENANT,
})

# Roles whose is_active flag follows the tenant's entitlement
CASCADE_ROLES: FrozenSet[UserRole] = frozenset({
    UserRole.CASHIER,
    UserRole.KITCHEN,
    UserRole.SUPERVISOR,
})

# Order in which staff accounts are kept when a user limit is enforced
STAFF_RETENTION_PRIORITY = (
    UserRole.CASHIER,
    UserRole.KITCHEN,
    UserRole.SUPERVISOR,
)


def is_privileged(role) -> bool:
    """Check whether a role skips the synchronous entitlement check."""
    try:
        return UserRole(role) in PRIVILEGED_ROLES
    except ValueError:
        return False
