"""
Entitlement check dependencies.

Provides reusable FastAPI dependencies that gate routes on the tenant's
entitlement, on addons and on resource limits.

Usage:
    @router.post("/orders", dependencies=[Depends(require_entitlement)])
    async def create_order(...): ...

    @router.post("/outlets", dependencies=[Depends(require_entitlement), Depends(require_limit("outlets"))])
    async def create_outlet(...): ...

    @router.get("/analytics", dependencies=[Depends(require_addon(AddonType.BUSINESS_ANALYTICS))])
    async def analytics(...): ...
"""

import logging
from typing import Callable

from fastapi import Depends, HTTPException, Request, status

from pos_backend.api.schemas.entitlements import (
    AddonRequiredResponse,
    EntitlementDenialResponse,
    LimitExceededResponse,
)
from pos_backend.constants.permissions import UserRole
from pos_backend.constants.plans import AddonType, ResourceType
from pos_backend.database.session import get_db_session
from pos_backend.entitlements.errors import DenialReason, TenantNotFoundError
from pos_backend.entitlements.guard import EntitlementGuard
from pos_backend.entitlements.limits import LimitChecker
from pos_backend.entitlements.models import AccessDecision
from pos_backend.platform.request_context import RequestActor, get_request_actor
from pos_backend.services.addon_service import AddonService, addon_display_name

logger = logging.getLogger(__name__)


def get_entitlement_guard(db_session=Depends(get_db_session)) -> EntitlementGuard:
    """Guard bound to the request's database session."""
    return EntitlementGuard(db_session)


def require_entitlement(
    request: Request,
    actor: RequestActor = Depends(get_request_actor),
    guard: EntitlementGuard = Depends(get_entitlement_guard),
) -> AccessDecision:
    """
    Dependency that blocks requests from tenants without an entitlement.

    Raises 404 when the tenant does not exist and 403 for every other
    denial. The decision is also stored on request.state.entitlement.
    """
    decision = guard.check_access(actor.tenant_id, actor)
    if not decision.allowed:
        logger.warning(
            "Request blocked by entitlement guard",
            extra={
                "tenant_id": actor.tenant_id,
                "role": actor.role,
                "reason": decision.reason.value,
                "path": request.url.path,
            },
        )
        body = EntitlementDenialResponse(
            reason=decision.reason.value,
            message=decision.message,
            tenant_id=decision.tenant_id,
            plan=decision.plan,
            entitlement_end=decision.entitlement_end,
        )
        status_code = (
            status.HTTP_404_NOT_FOUND
            if decision.reason == DenialReason.TENANT_NOT_FOUND
            else status.HTTP_403_FORBIDDEN
        )
        raise HTTPException(status_code=status_code, detail=body.model_dump(mode="json"))

    request.state.entitlement = decision
    return decision


def require_addon(addon_type: AddonType) -> Callable:
    """
    Factory for a dependency that requires an active addon.

    SUPER_ADMIN always passes; ADMIN_TENANT passes for BUSINESS_ANALYTICS.
    """
    addon_type = AddonType(addon_type)

    def check_addon(
        actor: RequestActor = Depends(get_request_actor),
        db_session=Depends(get_db_session),
    ) -> None:
        if actor.role == UserRole.SUPER_ADMIN.value:
            return
        if actor.role == UserRole.ADMIN_TENANT.value and addon_type == AddonType.BUSINESS_ANALYTICS:
            return

        if not actor.tenant_id or not AddonService(db_session).has_active_addon(actor.tenant_id, addon_type.value):
            name = addon_display_name(addon_type.value)
            logger.warning(
                "Addon required",
                extra={"tenant_id": actor.tenant_id, "addon_type": addon_type.value},
            )
            body = AddonRequiredResponse(
                addon_type=addon_type.value,
                message=f"{name} addon is required to access this feature",
            )
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=body.model_dump(mode="json"))

    return check_addon


def require_limit(resource_type: ResourceType) -> Callable:
    """Factory for a dependency that refuses creation once a limit is reached."""
    resource_type = ResourceType(resource_type)

    def check_limit(
        actor: RequestActor = Depends(get_request_actor),
        db_session=Depends(get_db_session),
    ) -> None:
        if actor.role == UserRole.SUPER_ADMIN.value:
            return
        try:
            result = LimitChecker(db_session).check_limit(actor.tenant_id, resource_type.value)
        except TenantNotFoundError as e:
            raise HTTPException(status_code=e.http_status, detail=e.to_dict())

        if not result.allowed:
            body = LimitExceededResponse(
                resource_type=resource_type.value,
                current=result.current,
                limit=result.limit,
                message=f"Limit reached for {resource_type.value}: {result.current}/{result.limit}",
            )
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=body.model_dump(mode="json"))

    return check_limit


# Pre-configured checks for common features
check_business_analytics_addon = require_addon(AddonType.BUSINESS_ANALYTICS)
check_export_reports_addon = require_addon(AddonType.EXPORT_REPORTS)
check_receipt_editor_addon = require_addon(AddonType.RECEIPT_EDITOR)
