"""
Request actor context.

Authentication runs upstream and leaves the caller's identity on
request.state. The entitlement guard and cascade only need the role,
the user id, the tenant id and whether the call is a manual user-status
edit performed by a tenant admin.
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from pos_backend.constants.permissions import UserRole, is_privileged


@dataclass(frozen=True)
class RequestActor:
    """Identity of whoever triggered an entitlement check or transition."""

    role: Optional[str] = None
    user_id: Optional[str] = None
    tenant_id: Optional[str] = None
    manual_user_status_edit: bool = False

    @property
    def is_privileged(self) -> bool:
        return self.role is not None and is_privileged(self.role)

    @property
    def is_tenant_admin_manual_edit(self) -> bool:
        """True when a tenant admin is explicitly editing user status."""
        return self.role == UserRole.ADMIN_TENANT.value and self.manual_user_status_edit

    @classmethod
    def system(cls) -> "RequestActor":
        """Actor used by background sweeps and administrative jobs."""
        return cls(role=None, user_id=None, tenant_id=None)


def get_request_actor(request: Request) -> RequestActor:
    """
    Build the actor from request.state.

    Upstream auth middleware is expected to set `user_role`, `user_id`,
    `tenant_id` and, for user-status endpoints, `manual_user_status_edit`.
    """
    role = getattr(request.state, "user_role", None)
    if isinstance(role, UserRole):
        role = role.value
    return RequestActor(
        role=role,
        user_id=getattr(request.state, "user_id", None),
        tenant_id=getattr(request.state, "tenant_id", None),
        manual_user_status_edit=bool(getattr(request.state, "manual_user_status_edit", False)),
    )
