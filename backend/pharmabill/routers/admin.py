"""Administrative subscription lifecycle endpoints.

WHAT: Operator actions on a workspace's subscription outside the webhook
      path: trial extension, credits, plan changes, pause/resume, manual
      payments, activation and reactivation
WHY: Support staff need to correct billing state (offline bank transfers,
     goodwill credits, holiday pauses) without touching the database
REFERENCES:
    - pharmabill/services/billing/lifecycle.py

Access: principals with the entitlement-bypass capability only.
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException

from ..deps import get_adjustments, require_super_admin
from ..schemas import (
    ActivatePlanRequest,
    AdjustmentResponse,
    ApplyCreditRequest,
    ChangePlanRequest,
    ExtendTrialRequest,
    ManualPaymentRequest,
    PauseRequest,
    ReasonRequest,
)
from ..services.billing.exceptions import LifecycleError, SubscriptionBusyError
from ..services.billing.lifecycle import AdjustmentResult, SubscriptionAdjustments
from ..services.billing.principal import Principal

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin/workspaces", tags=["Admin"])

LIFECYCLE_ERROR_STATUS = {
    "workspace_not_found": 404,
    "subscription_not_found": 404,
    "plan_not_found": 404,
    "invalid_state": 409,
    "invalid_argument": 400,
}


def lifecycle_http_error(error: LifecycleError) -> HTTPException:
    return HTTPException(
        status_code=LIFECYCLE_ERROR_STATUS.get(error.code, 400),
        detail={"success": False, "code": error.code, "message": error.message},
    )


def _respond(result: AdjustmentResult) -> AdjustmentResponse:
    return AdjustmentResponse(
        operation=result.operation,
        subscription_id=result.subscription_id,
        workspace_id=result.workspace_id,
        status=result.status,
        details=result.details,
    )


def _run(operation, *args, **kwargs) -> AdjustmentResponse:
    try:
        return _respond(operation(*args, **kwargs))
    except LifecycleError as e:
        logger.info(f"[LIFECYCLE] {operation.__name__} rejected: {e.code} - {e.message}")
        raise lifecycle_http_error(e)
    except SubscriptionBusyError:
        raise HTTPException(status_code=409, detail="Subscription is being updated, retry shortly")


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.post("/{workspace_id}/subscription/trial/extend", response_model=AdjustmentResponse)
def extend_trial(
    workspace_id: UUID,
    payload: ExtendTrialRequest,
    principal: Principal = Depends(require_super_admin),
    adjustments: SubscriptionAdjustments = Depends(get_adjustments),
):
    logger.info(f"[ADMIN] {principal.email} extending trial for {workspace_id} by {payload.days} days")
    return _run(adjustments.extend_trial, workspace_id, payload.days, reason=payload.reason)


@router.post("/{workspace_id}/subscription/credits", response_model=AdjustmentResponse)
def apply_credit(
    workspace_id: UUID,
    payload: ApplyCreditRequest,
    principal: Principal = Depends(require_super_admin),
    adjustments: SubscriptionAdjustments = Depends(get_adjustments),
):
    return _run(
        adjustments.apply_credit,
        workspace_id,
        payload.amount,
        reason=payload.reason,
        credit_type=payload.credit_type,
        applied_by=principal.email,
    )


@router.post("/{workspace_id}/subscription/plan", response_model=AdjustmentResponse)
def change_plan(
    workspace_id: UUID,
    payload: ChangePlanRequest,
    principal: Principal = Depends(require_super_admin),
    adjustments: SubscriptionAdjustments = Depends(get_adjustments),
):
    return _run(
        adjustments.change_plan,
        workspace_id,
        payload.plan_id,
        reason=payload.reason,
        effective_date=payload.effective_date,
        prorated=payload.prorated,
        changed_by=principal.email,
    )


@router.post("/{workspace_id}/subscription/pause", response_model=AdjustmentResponse)
def pause_subscription(
    workspace_id: UUID,
    payload: PauseRequest,
    principal: Principal = Depends(require_super_admin),
    adjustments: SubscriptionAdjustments = Depends(get_adjustments),
):
    return _run(adjustments.pause, workspace_id, pause_until=payload.pause_until, reason=payload.reason)


@router.post("/{workspace_id}/subscription/resume", response_model=AdjustmentResponse)
def resume_subscription(
    workspace_id: UUID,
    payload: ReasonRequest,
    principal: Principal = Depends(require_super_admin),
    adjustments: SubscriptionAdjustments = Depends(get_adjustments),
):
    return _run(adjustments.resume, workspace_id, reason=payload.reason)


@router.post("/{workspace_id}/subscription/payments", response_model=AdjustmentResponse)
def record_manual_payment(
    workspace_id: UUID,
    payload: ManualPaymentRequest,
    principal: Principal = Depends(require_super_admin),
    adjustments: SubscriptionAdjustments = Depends(get_adjustments),
):
    logger.info(f"[ADMIN] {principal.email} recording manual payment of {payload.amount} for {workspace_id}")
    return _run(
        adjustments.record_manual_payment,
        workspace_id,
        payload.amount,
        payment_method=payload.payment_method,
        reference=payload.reference,
        notes=payload.notes,
        currency=payload.currency,
    )


@router.post("/{workspace_id}/subscription/activate", response_model=AdjustmentResponse)
def activate_plan(
    workspace_id: UUID,
    payload: ActivatePlanRequest,
    principal: Principal = Depends(require_super_admin),
    adjustments: SubscriptionAdjustments = Depends(get_adjustments),
):
    return _run(
        adjustments.activate_plan,
        workspace_id,
        payload.plan_id,
        billing_interval=payload.billing_interval,
        trial_days=payload.trial_days,
    )


@router.post("/{workspace_id}/subscription/reactivate", response_model=AdjustmentResponse)
def reactivate_subscription(
    workspace_id: UUID,
    payload: ReasonRequest,
    principal: Principal = Depends(require_super_admin),
    adjustments: SubscriptionAdjustments = Depends(get_adjustments),
):
    return _run(adjustments.reactivate, workspace_id, reason=payload.reason)
