"""Pydantic schemas for request/response payloads."""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    status: str = Field(description="Service status", examples=["ok"])


# ==========================================================================
# WEBHOOKS
# ==========================================================================

class WebhookResponse(BaseModel):
    """Acknowledgement returned to the payment gateway.

    WHAT: success=true tells the gateway not to redeliver
    WHY: Any non-2xx response (or a timeout) makes the gateway retry
    """

    success: bool = Field(default=True, description="Event accepted")
    event_id: Optional[str] = Field(None, description="Gateway event id")
    event_type: Optional[str] = Field(None, description="Event type")
    action: Optional[str] = Field(None, description="processed | created | duplicate | ignored | subscription_not_found | plan_not_found")
    message: Optional[str] = None


# ==========================================================================
# PLANS & STATUS
# ==========================================================================

class PlanOut(BaseModel):
    plan_id: UUID = Field(validation_alias="id")
    name: str
    tier: str
    price_amount: Decimal
    currency: str
    billing_interval: str
    features: List[str] = Field(default_factory=list)
    limits: Dict[str, Optional[int]] = Field(default_factory=dict)

    model_config = {"from_attributes": True, "populate_by_name": True}


class EntitlementOut(BaseModel):
    """Serialized EntitlementDecision."""

    allowed: bool
    block_access: bool
    valid: bool
    reason: Optional[str] = None
    message: Optional[str] = None
    warning: Optional[str] = None
    feature_set: List[str] = Field(default_factory=list)
    source: Optional[str] = None
    generation: Optional[str] = None
    status: Optional[str] = None
    subscription_id: Optional[str] = None
    upgrade_required: bool = False
    requires_action: bool = False


class SubscriptionOut(BaseModel):
    subscription_id: UUID
    workspace_id: Optional[UUID] = None
    user_id: Optional[UUID] = None
    plan_id: Optional[UUID] = None
    plan_name: Optional[str] = None
    status: str
    tier: Optional[str] = None
    billing_interval: str
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    trial_end_date: Optional[datetime] = None
    grace_period_end: Optional[datetime] = None
    auto_renew: bool
    features: List[str] = Field(default_factory=list)
    custom_features: List[str] = Field(default_factory=list)
    limits: Dict[str, Optional[int]] = Field(default_factory=dict)
    total_credits: Decimal = Decimal("0")
    scheduled_plan_id: Optional[UUID] = None
    scheduled_change_at: Optional[datetime] = None


class SubscriptionStatusResponse(BaseModel):
    """Response from GET /billing/status.

    WHAT: The caller's effective subscription (either generation) plus the
          entitlement decision the request pipeline would apply
    """

    has_subscription: bool
    generation: Optional[str] = Field(None, description="workspace | legacy")
    subscription: Optional[SubscriptionOut] = None
    is_expired: bool = False
    is_in_grace_period: bool = False
    can_renew: bool = False
    days_remaining: Optional[int] = None
    entitlement: EntitlementOut


# ==========================================================================
# CHECKOUT / SELF-SERVICE
# ==========================================================================

class CheckoutCreateRequest(BaseModel):
    plan_id: UUID = Field(description="Plan to purchase")
    billing_interval: Literal["monthly", "yearly"] = "monthly"
    success_url: Optional[str] = Field(None, description="Redirect URL after successful checkout")
    cancel_url: Optional[str] = Field(None, description="Redirect URL if checkout is abandoned")


class CheckoutCreateResponse(BaseModel):
    checkout_url: str
    session_id: str


class CheckoutConfirmRequest(BaseModel):
    session_id: str


class CheckoutConfirmResponse(BaseModel):
    success: bool
    status: str = Field(description="pending | completed")
    subscription_id: Optional[UUID] = None
    message: Optional[str] = None


class CancelSubscriptionRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class CancelSubscriptionResponse(BaseModel):
    success: bool = True
    subscription_id: UUID
    status: str
    grace_period_end: Optional[datetime] = None
    message: str


class UpgradeRequest(BaseModel):
    plan_id: UUID


class DowngradeRequest(BaseModel):
    plan_id: UUID


class UsageCheckRequest(BaseModel):
    limit_key: Literal["patients", "users", "locations", "storage", "api_calls"]
    current_usage: int = Field(ge=0)


class UsageCheckResponse(BaseModel):
    allowed: bool
    limit_key: str
    limit: Optional[int] = None
    current: int


# ==========================================================================
# ADMIN LIFECYCLE OPERATIONS
# ==========================================================================

class ExtendTrialRequest(BaseModel):
    days: int = Field(ge=1, le=365)
    reason: Optional[str] = None


class ApplyCreditRequest(BaseModel):
    amount: Decimal = Field(gt=0)
    reason: Optional[str] = None
    credit_type: str = "manual"


class ChangePlanRequest(BaseModel):
    plan_id: UUID
    reason: Optional[str] = None
    effective_date: Optional[datetime] = None
    prorated: bool = False


class PauseRequest(BaseModel):
    pause_until: Optional[datetime] = None
    reason: Optional[str] = None


class ReasonRequest(BaseModel):
    reason: Optional[str] = None


class ManualPaymentRequest(BaseModel):
    amount: Decimal = Field(gt=0)
    currency: str = "NGN"
    payment_method: str = "bank_transfer"
    reference: Optional[str] = None
    notes: Optional[str] = None


class ActivatePlanRequest(BaseModel):
    plan_id: UUID
    billing_interval: Optional[Literal["monthly", "yearly"]] = None
    trial_days: Optional[int] = Field(None, ge=1, le=365)


class AdjustmentResponse(BaseModel):
    success: bool = True
    operation: str
    subscription_id: Optional[UUID] = None
    workspace_id: Optional[UUID] = None
    status: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
