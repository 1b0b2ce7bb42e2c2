"""
Tenant entitlement engine.

Modules:
- reconciler: Reconciler, repairs a tenant's entitlement when upgrades or subscriptions lapse
- guard: EntitlementGuard, per-request Allow / Deny(reason) decision
- cascade: CascadeActivator, staff account activation following entitlement changes
- limits: LimitChecker, plan + addon capacity checks
- background: fire-and-forget reconciliation for privileged requests
- audit: structured transition and denial events

Only errors and result types are re-exported here; the ledger repository
depends on them, so this package must not import the engine modules.
"""

from pos_backend.entitlements.errors import (
    DenialReason,
    EntitlementError,
    TenantNotFoundError,
    TenantInactiveError,
    NoSubscriptionError,
    SubscriptionExpiredError,
    LedgerWriteConflictError,
    InvariantViolationError,
)
from pos_backend.entitlements.models import (
    AccessDecision,
    CascadeResult,
    EntitlementUpdate,
    LimitCheckResult,
    ReconcileOutcome,
    ReconcileState,
    TransitionKind,
)

__all__ = [
    "DenialReason",
    "EntitlementError",
    "TenantNotFoundError",
    "TenantInactiveError",
    "NoSubscriptionError",
    "SubscriptionExpiredError",
    "LedgerWriteConflictError",
    "InvariantViolationError",
    "AccessDecision",
    "CascadeResult",
    "EntitlementUpdate",
    "LimitCheckResult",
    "ReconcileOutcome",
    "ReconcileState",
    "TransitionKind",
]
