"""
Entitlement guard: the per-request gate.

- SUPER_ADMIN and ADMIN_TENANT are never blocked, so they can always
  manage an expired tenant. Their requests only schedule a background
  reconciliation.
- Every other role waits for a synchronous reconciliation, then gets
  Allow or Deny(reason) from the reconciled state.

Denials are AccessDecision values, not exceptions.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from pos_backend.entitlements.audit import EntitlementAuditLogger, get_audit_logger
from pos_backend.entitlements.background import BackgroundReconcileDispatcher, get_background_dispatcher
from pos_backend.entitlements.errors import DenialReason, TenantNotFoundError
from pos_backend.entitlements.models import AccessDecision
from pos_backend.entitlements.reconciler import Reconciler
from pos_backend.platform.clock import Clock, get_clock
from pos_backend.platform.request_context import RequestActor
from pos_backend.repositories.entitlement_ledger import EntitlementLedger

logger = logging.getLogger(__name__)


class EntitlementGuard:
    """Decides whether a request may proceed for a tenant."""

    def __init__(
        self,
        db_session: Session,
        clock: Optional[Clock] = None,
        reconciler: Optional[Reconciler] = None,
        dispatcher: Optional[BackgroundReconcileDispatcher] = None,
        audit: Optional[EntitlementAuditLogger] = None,
    ):
        self.db = db_session
        self.clock = clock or get_clock()
        self.reconciler = reconciler or Reconciler(db_session, self.clock)
        self.dispatcher = dispatcher
        self.ledger = EntitlementLedger(db_session)
        self.audit = audit or get_audit_logger()

    def check_access(
        self,
        tenant_id: Optional[str],
        actor: Optional[RequestActor] = None,
        now: Optional[datetime] = None,
    ) -> AccessDecision:
        """
        Allow or deny a request for `tenant_id` made by `actor`.

        Args:
            tenant_id: Tenant the request is scoped to (may be missing)
            actor: Caller identity; defaults to an anonymous non-privileged actor
            now: Evaluation instant (defaults to the clock)

        Returns:
            AccessDecision.allow(...) or AccessDecision.deny(reason, ...)
        """
        actor = actor or RequestActor(tenant_id=tenant_id)

        if actor.is_privileged:
            if tenant_id:
                dispatcher = self.dispatcher or get_background_dispatcher()
                dispatcher.dispatch(tenant_id, actor, now)
            return AccessDecision.allow(tenant_id=tenant_id)

        if not tenant_id:
            return self._deny(DenialReason.TENANT_ID_MISSING, actor)

        now = now or self.clock.now()
        try:
            self.reconciler.reconcile(tenant_id, now=now, actor=actor)
        except TenantNotFoundError:
            return self._deny(DenialReason.TENANT_NOT_FOUND, actor, tenant_id=tenant_id)

        tenant = self.ledger.get_tenant(tenant_id)
        if tenant is None:
            return self._deny(DenialReason.TENANT_NOT_FOUND, actor, tenant_id=tenant_id)

        plan = tenant.current_plan
        if not tenant.is_active:
            return self._deny(DenialReason.TENANT_INACTIVE, actor, tenant_id=tenant_id, plan=plan)

        effective_end = self.ledger.latest_entitlement_end(tenant_id, now, tenant)
        if effective_end is None:
            return self._deny(DenialReason.NO_SUBSCRIPTION, actor, tenant_id=tenant_id, plan=plan)
        if effective_end <= now:
            return self._deny(
                DenialReason.SUBSCRIPTION_EXPIRED,
                actor,
                tenant_id=tenant_id,
                plan=plan,
                entitlement_end=effective_end,
            )

        return AccessDecision.allow(tenant_id=tenant_id, plan=plan, entitlement_end=effective_end)

    def _deny(self, reason: DenialReason, actor: RequestActor, **fields) -> AccessDecision:
        decision = AccessDecision.deny(reason, **fields)
        self.audit.log_denial(decision, actor)
        return decision
