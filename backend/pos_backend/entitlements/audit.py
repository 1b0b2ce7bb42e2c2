"""
Entitlement audit logging.

Every committed entitlement transition and every guard denial is written to
the dedicated "entitlements.audit" logger as a structured event, so
operators can trace why a tenant changed plan or lost access.
"""

import json
import logging
import uuid
from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pos_backend.entitlements.models import AccessDecision, ReconcileOutcome
from pos_backend.platform.request_context import RequestActor

logger = logging.getLogger(__name__)

# Dedicated audit logger for structured logging
audit_logger = logging.getLogger("entitlements.audit")


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class TransitionEvent:
    """A committed corrective transition."""

    tenant_id: str
    transition: str
    from_plan: Optional[str]
    to_plan: str
    entitlement_end: Optional[str] = None
    reverted_history_id: Optional[str] = None
    created_period_id: Optional[str] = None
    actor_role: Optional[str] = None
    actor_user_id: Optional[str] = None
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


@dataclass
class AccessDenialEvent:
    """A guard denial."""

    tenant_id: Optional[str]
    reason: str
    plan: Optional[str] = None
    entitlement_end: Optional[str] = None
    actor_role: Optional[str] = None
    actor_user_id: Optional[str] = None
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


class EntitlementAuditLogger:
    """Writes transition and denial events to the audit log."""

    def log_transition(
        self,
        outcome: ReconcileOutcome,
        from_plan: Optional[str],
        actor: Optional[RequestActor] = None,
    ) -> TransitionEvent:
        event = TransitionEvent(
            tenant_id=outcome.tenant_id,
            transition=outcome.transition.value,
            from_plan=from_plan,
            to_plan=outcome.plan,
            entitlement_end=_iso(outcome.entitlement_end),
            reverted_history_id=outcome.reverted_history_id,
            created_period_id=outcome.created_period_id,
            actor_role=actor.role if actor else None,
            actor_user_id=actor.user_id if actor else None,
        )
        audit_logger.info(
            "entitlement_transition",
            extra={"event_type": "entitlement_transition", **event.to_dict()},
        )
        return event

    def log_denial(
        self,
        decision: AccessDecision,
        actor: Optional[RequestActor] = None,
    ) -> AccessDenialEvent:
        event = AccessDenialEvent(
            tenant_id=decision.tenant_id,
            reason=decision.reason.value if decision.reason else "unknown",
            plan=decision.plan,
            entitlement_end=_iso(decision.entitlement_end),
            actor_role=actor.role if actor else None,
            actor_user_id=actor.user_id if actor else None,
        )
        audit_logger.warning(
            "access_denied",
            extra={"event_type": "access_denied", **event.to_dict()},
        )
        return event


_audit_logger: Optional[EntitlementAuditLogger] = None


def get_audit_logger() -> EntitlementAuditLogger:
    """Return the process-wide audit logger."""
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = EntitlementAuditLogger()
    return _audit_logger
