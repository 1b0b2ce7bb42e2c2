"""
Structured error classes for the entitlement engine.

Denials returned by the guard are typed results (see DenialReason); the
exception classes exist for callers that prefer raising, and for the two
engine failure modes:

- LedgerWriteConflictError: a compare-and-set write found the row already
  changed by a concurrent reconciliation. Transient; the reconciler retries.
- InvariantViolationError: a transition would leave the ledger inconsistent.
  Fatal for the attempt; the transaction is rolled back and the error raised.
"""

import enum
from typing import Optional

from fastapi import status


class DenialReason(str, enum.Enum):
    """Machine-readable reasons the guard can deny access."""
    TENANT_ID_MISSING = "TENANT_ID_MISSING"
    TENANT_NOT_FOUND = "TENANT_NOT_FOUND"
    TENANT_INACTIVE = "TENANT_INACTIVE"
    NO_SUBSCRIPTION = "NO_SUBSCRIPTION"
    SUBSCRIPTION_EXPIRED = "SUBSCRIPTION_EXPIRED"


DENIAL_MESSAGES = {
    DenialReason.TENANT_ID_MISSING: "Tenant ID is required",
    DenialReason.TENANT_NOT_FOUND: "Tenant not found",
    DenialReason.TENANT_INACTIVE: "Tenant is inactive",
    DenialReason.NO_SUBSCRIPTION: "No active subscription found",
    DenialReason.SUBSCRIPTION_EXPIRED: "Subscription has expired",
}


class EntitlementError(Exception):
    """Base exception for entitlement errors."""

    code: str = "entitlement_error"
    http_status: int = status.HTTP_403_FORBIDDEN

    def __init__(self, message: str, tenant_id: Optional[str] = None):
        self.message = message
        self.tenant_id = tenant_id
        super().__init__(message)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON response."""
        return {
            "error": self.code,
            "message": self.message,
            "tenant_id": self.tenant_id,
        }


class TenantNotFoundError(EntitlementError):
    code = DenialReason.TENANT_NOT_FOUND.value
    http_status = status.HTTP_404_NOT_FOUND

    def __init__(self, tenant_id: Optional[str]):
        super().__init__(DENIAL_MESSAGES[DenialReason.TENANT_NOT_FOUND], tenant_id)


class TenantInactiveError(EntitlementError):
    code = DenialReason.TENANT_INACTIVE.value

    def __init__(self, tenant_id: str):
        super().__init__(DENIAL_MESSAGES[DenialReason.TENANT_INACTIVE], tenant_id)


class NoSubscriptionError(EntitlementError):
    code = DenialReason.NO_SUBSCRIPTION.value

    def __init__(self, tenant_id: str):
        super().__init__(DENIAL_MESSAGES[DenialReason.NO_SUBSCRIPTION], tenant_id)


class SubscriptionExpiredError(EntitlementError):
    code = DenialReason.SUBSCRIPTION_EXPIRED.value

    def __init__(self, tenant_id: str, expired_at=None):
        self.expired_at = expired_at
        super().__init__(DENIAL_MESSAGES[DenialReason.SUBSCRIPTION_EXPIRED], tenant_id)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["expired_at"] = self.expired_at.isoformat() if self.expired_at else None
        return data


DENIAL_ERRORS = {
    DenialReason.TENANT_NOT_FOUND: TenantNotFoundError,
    DenialReason.TENANT_INACTIVE: TenantInactiveError,
    DenialReason.NO_SUBSCRIPTION: NoSubscriptionError,
    DenialReason.SUBSCRIPTION_EXPIRED: SubscriptionExpiredError,
}


class LedgerWriteConflictError(EntitlementError):
    """A conditional ledger write matched zero rows."""

    code = "ledger_write_conflict"
    http_status = status.HTTP_409_CONFLICT

    def __init__(self, tenant_id: str, operation: str):
        self.operation = operation
        super().__init__(
            f"Concurrent entitlement update detected during {operation}", tenant_id
        )


class InvariantViolationError(EntitlementError):
    """A transition would break a ledger invariant."""

    code = "entitlement_invariant_violation"
    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR


class SubscriptionOperationError(EntitlementError):
    """An administrative grant operation was rejected."""

    code = "subscription_operation_rejected"
    http_status = status.HTTP_400_BAD_REQUEST


class AddonOperationError(EntitlementError):
    """An addon subscribe/unsubscribe request was rejected."""

    code = "addon_operation_rejected"
    http_status = status.HTTP_400_BAD_REQUEST
