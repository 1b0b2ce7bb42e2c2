"""
Pydantic schemas for entitlement guard responses and status views.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class EntitlementDenialResponse(BaseModel):
    """Body of a 403/404 raised when the guard denies a request."""
    error: str = Field(default="entitlement_denied")
    reason: str = Field(..., description="Machine-readable denial reason", examples=["SUBSCRIPTION_EXPIRED"])
    message: str = Field(..., description="Human-readable message")
    tenant_id: Optional[str] = None
    plan: Optional[str] = None
    entitlement_end: Optional[datetime] = None


class LimitExceededResponse(BaseModel):
    """Body of a 403 raised when a resource limit is reached."""
    error: str = Field(default="limit_reached")
    resource_type: str = Field(..., examples=["outlets"])
    current: int
    limit: Optional[int] = Field(None, description="None means unlimited")
    message: str


class AddonRequiredResponse(BaseModel):
    """Body of a 403 raised when a feature needs an addon."""
    error: str = Field(default="addon_required")
    addon_type: str = Field(..., examples=["BUSINESS_ANALYTICS"])
    message: str


class EntitlementStatus(BaseModel):
    """Reconciled view of a tenant's entitlement."""
    model_config = ConfigDict(from_attributes=True)

    tenant_id: str
    plan: str
    entitlement_start: Optional[datetime] = None
    entitlement_end: Optional[datetime] = None
    is_temporary_upgrade: bool = False
    prior_plan: Optional[str] = None
    is_expired: bool
    days_remaining: int = 0
    hours_remaining: int = 0
    minutes_remaining: int = 0
