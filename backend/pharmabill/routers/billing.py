"""Self-service billing endpoints.

WHAT: Plan catalogue, subscription status, entitlement checks, hosted
      checkout, cancellation, upgrades and scheduled downgrades for the caller
WHY: Owners manage their pharmacy's subscription without operator help;
     every staff member can see what their subscription allows

Key flows:
    1. Checkout: POST /billing/checkout → gateway checkout, persist mapping
    2. Confirm: POST /billing/checkout/confirm → activate plan once paid
    3. Status: GET /billing/status → effective subscription + entitlement
    4. Cancel: POST /billing/cancel → grace period, stop renewals
    5. Upgrade: POST /billing/upgrade → immediate plan change, prorated
    6. Downgrade: POST /billing/downgrade → plan change at end of term

REFERENCES:
    - pharmabill/services/billing/compatibility.py (which subscription answers)
    - pharmabill/services/billing/entitlements.py (access decisions)
    - pharmabill/services/billing/lifecycle.py (activation, downgrades)
"""

import logging
import math
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from .. import schemas
from ..database import get_db
from ..deps import (
    Settings,
    get_adjustments,
    get_entitlement_resolver,
    get_locks,
    get_payment_gateway,
    get_principal,
    get_settings,
    get_transition_engine,
    require_entitlement,
)
from ..models import (
    BillingIntervalEnum,
    CheckoutSession,
    CheckoutStatusEnum,
    Plan,
    Subscription,
    SubscriptionStatusEnum,
    User,
    Workspace,
)
from ..services.billing.compatibility import ResolvedSubscription
from ..services.billing.entitlements import EntitlementDecision, EntitlementResolver
from ..services.billing.exceptions import (
    CancellationError,
    LifecycleError,
    PaymentGatewayError,
    SubscriptionBusyError,
)
from ..services.billing.lifecycle import SubscriptionAdjustments
from ..services.billing.locks import SubscriptionLockRegistry
from ..services.billing.payment_gateway import HttpPaymentGateway
from ..services.billing.principal import Principal
from ..services.billing.transitions import SubscriptionTransitionEngine
from ..utils.time import as_utc, utcnow
from .admin import lifecycle_http_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["Billing"])

PAID_SESSION_STATES = {"paid", "complete", "completed", "succeeded"}
RENEWABLE_STATUSES = {
    SubscriptionStatusEnum.expired.value,
    SubscriptionStatusEnum.cancelled.value,
    SubscriptionStatusEnum.grace_period.value,
    SubscriptionStatusEnum.past_due.value,
    SubscriptionStatusEnum.suspended.value,
}


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================


def _billing_workspace(principal: Principal, db: Session) -> Workspace:
    """Return the caller's workspace if they may manage its billing.

    WHAT: Owner of the workspace, or an administrator
    WHY: Staff members share the subscription but must not buy or cancel it
    """
    if not principal.workspace_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No workspace associated with this account")
    workspace = db.get(Workspace, principal.workspace_id)
    if workspace is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Workspace not found")
    if workspace.owner_id != principal.user_id and not principal.bypass_entitlements:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only the workspace owner can manage billing")
    return workspace


def _interval_price(plan: Plan, billing_interval: str) -> Decimal:
    """Price of `plan` charged per `billing_interval`.

    Plans are priced in their own interval; a monthly plan bought yearly is
    charged twelve months up front and vice versa.
    """
    price = Decimal(plan.price_amount)
    if billing_interval == plan.billing_interval:
        return price
    if billing_interval == BillingIntervalEnum.yearly.value:
        return price * 12
    return (price / 12).quantize(Decimal("0.01"))


def _subscription_out(resolved: ResolvedSubscription) -> schemas.SubscriptionOut:
    subscription = resolved.subscription
    return schemas.SubscriptionOut(
        subscription_id=subscription.id,
        workspace_id=subscription.workspace_id,
        user_id=subscription.user_id,
        plan_id=subscription.plan_id,
        plan_name=resolved.plan.name if resolved.plan else None,
        status=subscription.status,
        tier=subscription.tier,
        billing_interval=subscription.billing_interval,
        start_date=as_utc(subscription.start_date),
        end_date=as_utc(subscription.end_date),
        trial_end_date=as_utc(subscription.trial_end_date),
        grace_period_end=as_utc(subscription.grace_period_end),
        auto_renew=bool(subscription.auto_renew),
        features=list(subscription.features or []),
        custom_features=list(subscription.custom_features or []),
        limits=dict(subscription.limits or {}),
        total_credits=subscription.total_credits or Decimal("0"),
        scheduled_plan_id=subscription.scheduled_plan_id,
        scheduled_change_at=as_utc(subscription.scheduled_change_at),
    )


def _entitlement_out(decision: EntitlementDecision) -> schemas.EntitlementOut:
    return schemas.EntitlementOut(
        allowed=decision.allowed,
        block_access=decision.block_access,
        valid=decision.valid,
        reason=decision.reason,
        message=decision.message,
        warning=decision.warning,
        feature_set=sorted(decision.feature_set),
        source=decision.source,
        generation=decision.generation,
        status=decision.status,
        subscription_id=decision.subscription_id,
        upgrade_required=decision.upgrade_required,
        requires_action=decision.requires_action,
    )


# =============================================================================
# PLANS, STATUS & ENTITLEMENTS
# =============================================================================


@router.get("/plans", response_model=List[schemas.PlanOut], summary="List purchasable plans")
def list_plans(db: Session = Depends(get_db)):
    plans = (
        db.query(Plan)
        .filter(Plan.is_active.is_(True))
        .order_by(Plan.price_amount.asc())
        .all()
    )
    return [schemas.PlanOut.model_validate(plan) for plan in plans]


@router.get(
    "/status",
    response_model=schemas.SubscriptionStatusResponse,
    summary="Get subscription status",
    description="""
    Effective subscription for the caller, resolved workspace-first with a
    fallback to a legacy per-user subscription, plus the entitlement
    decision the request pipeline applies.
    """,
)
def get_billing_status(
    principal: Principal = Depends(get_principal),
    resolver: EntitlementResolver = Depends(get_entitlement_resolver),
):
    resolved = resolver.shim.resolve(principal)
    decision = resolver.resolve(principal, resolved=resolved)

    if resolved is None:
        return schemas.SubscriptionStatusResponse(
            has_subscription=False,
            entitlement=_entitlement_out(decision),
        )

    now = resolver.now
    subscription = resolved.subscription
    end_date = as_utc(subscription.end_date)
    grace_end = as_utc(subscription.grace_period_end)

    days_remaining = None
    if end_date is not None:
        days_remaining = max(0, math.ceil((end_date - now).total_seconds() / 86400))

    in_grace = (
        subscription.status == SubscriptionStatusEnum.grace_period.value
        and grace_end is not None
        and grace_end > now
    )
    is_expired = (
        subscription.status == SubscriptionStatusEnum.expired.value
        or decision.reason in ("trial_expired", "grace_period_ended")
    )

    return schemas.SubscriptionStatusResponse(
        has_subscription=True,
        generation=resolved.generation,
        subscription=_subscription_out(resolved),
        is_expired=is_expired,
        is_in_grace_period=in_grace,
        can_renew=is_expired or subscription.status in RENEWABLE_STATUSES,
        days_remaining=days_remaining,
        entitlement=_entitlement_out(decision),
    )


@router.get("/entitlements", response_model=schemas.EntitlementOut, summary="Check an entitlement")
def check_entitlement(
    feature: Optional[str] = Query(None, description="Feature key to check"),
    principal: Principal = Depends(get_principal),
    resolver: EntitlementResolver = Depends(get_entitlement_resolver),
):
    return _entitlement_out(resolver.resolve(principal, requested_feature=feature))


@router.post(
    "/usage/check",
    response_model=schemas.UsageCheckResponse,
    responses={402: {"description": "Subscription blocked"}, 429: {"description": "Plan limit reached"}},
    summary="Check a plan limit before creating a resource",
    dependencies=[Depends(require_entitlement())],
)
def check_usage(
    payload: schemas.UsageCheckRequest,
    principal: Principal = Depends(get_principal),
    resolver: EntitlementResolver = Depends(get_entitlement_resolver),
):
    result = resolver.check_limit(principal, payload.limit_key, payload.current_usage)
    if not result.allowed:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={
                "reason": "limit_exceeded",
                "limit_key": result.limit_key,
                "limit": result.limit,
                "current": result.current,
                "upgrade_required": True,
            },
        )
    return schemas.UsageCheckResponse(
        allowed=True,
        limit_key=result.limit_key,
        limit=result.limit,
        current=result.current,
    )


# =============================================================================
# CHECKOUT
# =============================================================================


@router.post(
    "/checkout",
    response_model=schemas.CheckoutCreateResponse,
    summary="Open a hosted checkout",
    description="""
    Create a gateway checkout for the caller's workspace and persist the
    session → workspace/plan mapping so confirmation can activate the
    right plan. Owner (or administrator) only.
    """,
)
def create_checkout(
    payload: schemas.CheckoutCreateRequest,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
    gateway: HttpPaymentGateway = Depends(get_payment_gateway),
    settings: Settings = Depends(get_settings),
):
    workspace = _billing_workspace(principal, db)

    plan = db.get(Plan, payload.plan_id)
    if plan is None or not plan.is_active:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Plan not found")

    owner = db.get(User, workspace.owner_id) if workspace.owner_id else None
    billing_email = workspace.billing_email or (owner.email if owner else principal.email)

    try:
        if not workspace.gateway_customer_id:
            workspace.gateway_customer_id = gateway.create_customer(
                email=billing_email,
                name=workspace.name,
                metadata={"workspaceId": str(workspace.id)},
            )
            db.commit()

        amount = _interval_price(plan, payload.billing_interval)
        session = gateway.create_checkout_session(
            customer_id=workspace.gateway_customer_id,
            amount_minor=int(amount * 100),
            currency=plan.currency,
            success_url=payload.success_url or f"{settings.FRONTEND_URL}/settings/billing?checkout=success",
            cancel_url=payload.cancel_url or f"{settings.FRONTEND_URL}/settings/billing?checkout=cancelled",
            metadata={
                "workspaceId": str(workspace.id),
                "userId": str(principal.user_id),
                "planId": str(plan.id),
                "billingInterval": payload.billing_interval,
            },
        )
    except PaymentGatewayError as e:
        logger.error(f"[BILLING] Checkout creation failed for workspace {workspace.id}: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Payment gateway unavailable")

    db.add(CheckoutSession(
        session_id=session["id"],
        workspace_id=workspace.id,
        user_id=principal.user_id,
        plan_id=plan.id,
        billing_interval=payload.billing_interval,
        status=CheckoutStatusEnum.pending.value,
    ))
    db.commit()

    logger.info(f"[BILLING] Checkout {session['id']} opened for workspace {workspace.id} on {plan.name}")
    return schemas.CheckoutCreateResponse(checkout_url=session["url"], session_id=session["id"])


@router.post(
    "/checkout/confirm",
    response_model=schemas.CheckoutConfirmResponse,
    summary="Confirm a completed checkout",
    description="""
    Called when the customer returns from the hosted checkout. Activates
    the purchased plan exactly once per session; repeated confirmations
    return the subscription created the first time.
    """,
)
def confirm_checkout(
    payload: schemas.CheckoutConfirmRequest,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
    gateway: HttpPaymentGateway = Depends(get_payment_gateway),
    adjustments: SubscriptionAdjustments = Depends(get_adjustments),
    locks: SubscriptionLockRegistry = Depends(get_locks),
):
    mapping = db.query(CheckoutSession).filter(CheckoutSession.session_id == payload.session_id).first()
    if mapping is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Checkout session not found")
    if mapping.workspace_id != principal.workspace_id and not principal.bypass_entitlements:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Checkout belongs to another workspace")

    if mapping.status == CheckoutStatusEnum.completed.value:
        return schemas.CheckoutConfirmResponse(
            success=True,
            status=CheckoutStatusEnum.completed.value,
            subscription_id=mapping.subscription_id,
            message="Checkout already confirmed",
        )

    try:
        session = gateway.retrieve_checkout_session(payload.session_id)
    except PaymentGatewayError as e:
        logger.error(f"[BILLING] Could not retrieve checkout {payload.session_id}: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Payment gateway unavailable")

    session_state = str(session.get("payment_status") or session.get("status") or "").lower()
    if session_state not in PAID_SESSION_STATES:
        return schemas.CheckoutConfirmResponse(
            success=False,
            status=CheckoutStatusEnum.pending.value,
            message="Payment not completed yet",
        )

    try:
        with locks.hold(f"checkout:{mapping.session_id}"):
            db.refresh(mapping)
            if mapping.status != CheckoutStatusEnum.completed.value:
                # Marked before activation so both rows land in the same commit
                mapping.status = CheckoutStatusEnum.completed.value
                mapping.completed_at = utcnow()
                result = adjustments.activate_plan(
                    mapping.workspace_id,
                    mapping.plan_id,
                    billing_interval=mapping.billing_interval,
                    purchased_by=mapping.user_id,
                    gateway_subscription_id=session.get("subscription"),
                )
                mapping.subscription_id = result.subscription_id
                db.commit()
    except LifecycleError as e:
        db.rollback()
        raise lifecycle_http_error(e)
    except SubscriptionBusyError:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Checkout is being confirmed, retry shortly")

    logger.info(f"[BILLING] Checkout {mapping.session_id} confirmed; subscription {mapping.subscription_id}")
    return schemas.CheckoutConfirmResponse(
        success=True,
        status=CheckoutStatusEnum.completed.value,
        subscription_id=mapping.subscription_id,
    )


# =============================================================================
# CANCELLATION & PLAN CHANGES
# =============================================================================


@router.post("/cancel", response_model=schemas.CancelSubscriptionResponse, summary="Cancel the subscription")
def cancel_subscription(
    payload: schemas.CancelSubscriptionRequest,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
    engine: SubscriptionTransitionEngine = Depends(get_transition_engine),
):
    """Cancel into a grace period; access continues until it ends."""
    if principal.workspace_id:
        _billing_workspace(principal, db)

    try:
        result = engine.cancel_by_user(principal, reason=payload.reason)
    except CancellationError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except SubscriptionBusyError:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Subscription is being updated, retry shortly")

    subscription = db.get(Subscription, result.subscription_id)
    return schemas.CancelSubscriptionResponse(
        subscription_id=result.subscription_id,
        status=result.status_after,
        grace_period_end=as_utc(subscription.grace_period_end) if subscription else None,
        message="Subscription cancelled. Access continues until the grace period ends.",
    )


@router.post(
    "/upgrade",
    response_model=schemas.AdjustmentResponse,
    summary="Upgrade to a higher plan",
    description="""
    Switch the caller's active subscription to a more expensive plan right
    away. The prorated difference for the remaining term is returned in
    `details.prorated_amount`. Cheaper or equal plans are rejected; use
    /billing/downgrade for those.
    """,
)
def upgrade_plan(
    payload: schemas.UpgradeRequest,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
    resolver: EntitlementResolver = Depends(get_entitlement_resolver),
    adjustments: SubscriptionAdjustments = Depends(get_adjustments),
):
    if principal.workspace_id:
        _billing_workspace(principal, db)

    resolved = resolver.shim.resolve(principal)
    if resolved is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No subscription found")

    try:
        result = adjustments.upgrade_plan(resolved.subscription.id, payload.plan_id, changed_by=str(principal.user_id))
    except LifecycleError as e:
        raise lifecycle_http_error(e)
    except SubscriptionBusyError:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Subscription is being updated, retry shortly")

    return schemas.AdjustmentResponse(
        operation=result.operation,
        subscription_id=result.subscription_id,
        workspace_id=result.workspace_id,
        status=result.status,
        details=result.details,
    )


@router.post("/downgrade", response_model=schemas.AdjustmentResponse, summary="Schedule a downgrade")
def schedule_downgrade(
    payload: schemas.DowngradeRequest,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
    resolver: EntitlementResolver = Depends(get_entitlement_resolver),
    adjustments: SubscriptionAdjustments = Depends(get_adjustments),
):
    """Move to a cheaper plan when the current term ends."""
    if principal.workspace_id:
        _billing_workspace(principal, db)

    resolved = resolver.shim.resolve(principal)
    if resolved is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No subscription found")

    try:
        result = adjustments.schedule_downgrade(resolved.subscription.id, payload.plan_id)
    except LifecycleError as e:
        raise lifecycle_http_error(e)
    except SubscriptionBusyError:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Subscription is being updated, retry shortly")

    return schemas.AdjustmentResponse(
        operation=result.operation,
        subscription_id=result.subscription_id,
        workspace_id=result.workspace_id,
        status=result.status,
        details=result.details,
    )
