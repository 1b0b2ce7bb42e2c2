"""
Typed results produced by the entitlement engine.
"""

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from pos_backend.entitlements.errors import DENIAL_ERRORS, DENIAL_MESSAGES, DenialReason, EntitlementError


class ReconcileState(str, enum.Enum):
    """Entitlement state derived from the tenant row and its periods."""
    NORMAL = "NORMAL"
    TEMP_ACTIVE = "TEMP_ACTIVE"
    TEMP_EXPIRED = "TEMP_EXPIRED"
    BASE_EXPIRED = "BASE_EXPIRED"


class TransitionKind(str, enum.Enum):
    """Corrective transition applied by a reconciliation."""
    NONE = "none"
    REVERT_WITH_CARRYOVER = "revert_with_carryover"
    DOWNGRADE_TO_DEFAULT = "downgrade_to_default"


@dataclass
class CascadeResult:
    """Outcome of an activation cascade."""

    tenant_id: str
    became_active: bool
    skipped: bool = False
    users_activated: int = 0
    users_deactivated: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "became_active": self.became_active,
            "skipped": self.skipped,
            "users_activated": self.users_activated,
            "users_deactivated": self.users_deactivated,
        }


@dataclass
class ReconcileOutcome:
    """Result of one reconciliation of a tenant."""

    tenant_id: str
    state: ReconcileState
    transition: TransitionKind
    plan: str
    entitlement_end: Optional[datetime]
    attempts: int = 1
    created_period_id: Optional[str] = None
    reverted_history_id: Optional[str] = None
    cascade: Optional[CascadeResult] = None

    @property
    def changed(self) -> bool:
        return self.transition != TransitionKind.NONE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "state": self.state.value,
            "transition": self.transition.value,
            "plan": self.plan,
            "entitlement_end": self.entitlement_end.isoformat() if self.entitlement_end else None,
            "attempts": self.attempts,
            "created_period_id": self.created_period_id,
            "reverted_history_id": self.reverted_history_id,
            "cascade": self.cascade.to_dict() if self.cascade else None,
        }


@dataclass(frozen=True)
class AccessDecision:
    """
    Guard verdict. Denials are values, never exceptions.

    Use AccessDecision.allow() / AccessDecision.deny(reason).
    """

    allowed: bool
    reason: Optional[DenialReason] = None
    tenant_id: Optional[str] = None
    plan: Optional[str] = None
    entitlement_end: Optional[datetime] = None

    @classmethod
    def allow(cls, tenant_id=None, plan=None, entitlement_end=None) -> "AccessDecision":
        return cls(allowed=True, tenant_id=tenant_id, plan=plan, entitlement_end=entitlement_end)

    @classmethod
    def deny(cls, reason: DenialReason, tenant_id=None, plan=None, entitlement_end=None) -> "AccessDecision":
        return cls(
            allowed=False,
            reason=reason,
            tenant_id=tenant_id,
            plan=plan,
            entitlement_end=entitlement_end,
        )

    @property
    def message(self) -> Optional[str]:
        if self.reason is None:
            return None
        return DENIAL_MESSAGES[self.reason]

    def to_error(self) -> Optional[EntitlementError]:
        """Return the matching exception for a denial, for callers that raise."""
        if self.allowed or self.reason is None:
            return None
        error_cls = DENIAL_ERRORS.get(self.reason)
        if error_cls is None:
            return EntitlementError(self.message, self.tenant_id)
        if self.reason == DenialReason.SUBSCRIPTION_EXPIRED:
            return error_cls(self.tenant_id, self.entitlement_end)
        return error_cls(self.tenant_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "reason": self.reason.value if self.reason else None,
            "message": self.message,
            "tenant_id": self.tenant_id,
            "plan": self.plan,
            "entitlement_end": self.entitlement_end.isoformat() if self.entitlement_end else None,
        }


@dataclass(frozen=True)
class LimitCheckResult:
    """Capacity check for one resource type. limit=None means unlimited."""

    allowed: bool
    current: int
    limit: Optional[int]
    resource_type: str = ""
    plan_limit: Optional[int] = None
    addon_limit: int = 0

    @property
    def remaining(self) -> Optional[int]:
        if self.limit is None:
            return None
        return max(self.limit - self.current, 0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "current": self.current,
            "limit": self.limit,
            "resource_type": self.resource_type,
            "plan_limit": self.plan_limit,
            "addon_limit": self.addon_limit,
            "remaining": self.remaining,
        }


@dataclass
class EntitlementUpdate:
    """New values for the tenant's entitlement fields."""

    current_plan: str
    entitlement_end: Optional[datetime]
    is_temporary_upgrade: bool = False
    prior_plan: Optional[str] = None
    entitlement_start: Optional[datetime] = None
