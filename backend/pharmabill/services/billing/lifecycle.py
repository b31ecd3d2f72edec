"""Administrative lifecycle operations.

WHAT:
    Operator-invoked adjustments to workspace subscriptions, outside the
    webhook path: trial extension, credits, plan changes with proration,
    pause/resume, manual payments, explicit activation and reactivation,
    and scheduled downgrades.

WHY:
    Every operation validates all of its inputs first and only then mutates,
    under the same per-subscription lock the webhook handlers use, committing
    once. A rejected operation raises LifecycleError and leaves nothing
    half-applied.

REFERENCES:
    - pharmabill/routers/admin.py (operator API)
    - pharmabill/routers/billing.py (scheduled downgrade, checkout activation)
    - pharmabill/services/billing/sweeper.py (auto-resume, due downgrades)
"""

import logging
import math
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Iterator, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from pharmabill.models import (
    TERMINAL_STATUSES,
    BillingIntervalEnum,
    Payment,
    PaymentStatusEnum,
    Plan,
    PlanChange,
    Subscription,
    SubscriptionCredit,
    SubscriptionStatusEnum,
    Workspace,
)
from pharmabill.utils.time import as_utc, utcnow

from .compatibility import CompatibilityShim, CurrentOwner
from .exceptions import LifecycleError
from .locks import SubscriptionLockRegistry

logger = logging.getLogger(__name__)

DAYS_PER_RATE_PERIOD = Decimal(30)
BILLING_PERIOD_DAYS = {
    BillingIntervalEnum.monthly.value: 30,
    BillingIntervalEnum.yearly.value: 365,
}
CENTS = Decimal("0.01")


@dataclass
class AdjustmentResult:
    operation: str
    subscription_id: Optional[UUID]
    workspace_id: Optional[UUID] = None
    status: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


def billing_period(billing_interval: Optional[str]) -> timedelta:
    return timedelta(days=BILLING_PERIOD_DAYS.get(billing_interval or "", 30))


def prorate(old_price, new_price, end_date: Optional[datetime], now: datetime) -> Decimal:
    """(new daily rate - old daily rate) x remaining whole days, daily rate = price / 30."""
    remaining_days = 0
    if end_date is not None:
        remaining_days = max(0, math.ceil((as_utc(end_date) - now).total_seconds() / 86400))
    old_rate = Decimal(old_price or 0) / DAYS_PER_RATE_PERIOD
    new_rate = Decimal(new_price or 0) / DAYS_PER_RATE_PERIOD
    return ((new_rate - old_rate) * remaining_days).quantize(CENTS)


def _positive_amount(amount) -> Decimal:
    try:
        value = Decimal(str(amount))
    except (ArithmeticError, ValueError) as e:
        raise LifecycleError("invalid_argument", f"Invalid amount: {amount!r}") from e
    if not value.is_finite() or value <= 0:
        raise LifecycleError("invalid_argument", "Amount must be greater than zero")
    return value.quantize(CENTS)


class SubscriptionAdjustments:
    """Administrative operations on workspace subscriptions.

    Args:
        db: Session; committed once per successful operation
        locks: Per-subscription lock registry shared with the webhook path
    """

    def __init__(self, db: Session, locks: Optional[SubscriptionLockRegistry] = None):
        self.db = db
        self.locks = locks or SubscriptionLockRegistry()
        self.shim = CompatibilityShim(db)

    # =========================================================================
    # TRIAL & CREDITS
    # =========================================================================

    def extend_trial(self, workspace_id: UUID, days: int, reason: Optional[str] = None, now: Optional[datetime] = None) -> AdjustmentResult:
        now = now or utcnow()
        if days is None or days < 1:
            raise LifecycleError("invalid_argument", "Trial extension must be at least one day")
        workspace = self._workspace(workspace_id)
        subscription = self.shim.find_subscription(CurrentOwner(workspace_id=workspace.id))

        status = workspace.subscription_status or (subscription.status if subscription else None)
        if status != SubscriptionStatusEnum.trial.value:
            raise LifecycleError("invalid_state", f"Workspace is not in trial (status: {status})")

        with self._locked(subscription) as subscription:
            base = as_utc(workspace.trial_end_date) or now
            new_end = base + timedelta(days=days)
            workspace.trial_end_date = new_end
            if subscription is not None and subscription.status == SubscriptionStatusEnum.trial.value:
                subscription.trial_end_date = new_end
                subscription.end_date = new_end
            self._commit()

        logger.info(f"[LIFECYCLE] Trial for workspace {workspace.id} extended by {days} days to {new_end.isoformat()} ({reason})")
        return AdjustmentResult(
            operation="extend_trial",
            subscription_id=subscription.id if subscription else None,
            workspace_id=workspace.id,
            status=SubscriptionStatusEnum.trial.value,
            details={"trial_end_date": new_end.isoformat(), "days_added": days, "reason": reason},
        )

    def apply_credit(
        self,
        workspace_id: UUID,
        amount,
        reason: Optional[str] = None,
        credit_type: str = "manual",
        applied_by: str = "admin",
        now: Optional[datetime] = None,
    ) -> AdjustmentResult:
        now = now or utcnow()
        value = _positive_amount(amount)
        workspace = self._workspace(workspace_id)
        subscription = self._subscription(workspace)

        with self._locked(subscription) as subscription:
            subscription.credit_log.append(SubscriptionCredit(
                amount=value,
                credit_type=credit_type,
                reason=reason,
                applied_by=applied_by,
                applied_at=now,
            ))
            total = sum((Decimal(c.amount) for c in subscription.credit_log), Decimal("0"))
            subscription.total_credits = total
            self._commit()

        logger.info(f"[LIFECYCLE] Credit {value} applied to subscription {subscription.id}; total {total}")
        return AdjustmentResult(
            operation="apply_credit",
            subscription_id=subscription.id,
            workspace_id=workspace.id,
            status=subscription.status,
            details={"amount": str(value), "total_credits": str(total), "credit_type": credit_type},
        )

    # =========================================================================
    # PLAN CHANGES
    # =========================================================================

    def change_plan(
        self,
        workspace_id: UUID,
        plan_id: UUID,
        reason: Optional[str] = None,
        effective_date: Optional[datetime] = None,
        prorated: bool = False,
        changed_by: str = "admin",
        now: Optional[datetime] = None,
    ) -> AdjustmentResult:
        now = now or utcnow()
        workspace = self._workspace(workspace_id)
        subscription = self._subscription(workspace)
        plan = self._plan(plan_id)

        with self._locked(subscription) as subscription:
            prorated_amount = self._apply_plan(subscription, plan, reason, effective_date or now, prorated, changed_by, now)
            self.shim.sync_pointers(subscription)
            self._commit()

        logger.info(f"[LIFECYCLE] Subscription {subscription.id} moved to plan {plan.name} (prorated={prorated_amount})")
        return AdjustmentResult(
            operation="change_plan",
            subscription_id=subscription.id,
            workspace_id=workspace.id,
            status=subscription.status,
            details={
                "plan_id": str(plan.id),
                "tier": plan.tier,
                "prorated_amount": str(prorated_amount) if prorated_amount is not None else None,
            },
        )

    def upgrade_plan(
        self,
        subscription_id: UUID,
        plan_id: UUID,
        changed_by: str = "user",
        now: Optional[datetime] = None,
    ) -> AdjustmentResult:
        """Move an active subscription to a more expensive plan immediately.

        The prorated difference for the rest of the term is recorded on the
        plan change and returned; it is not charged here.
        """
        now = now or utcnow()
        subscription = self.db.get(Subscription, subscription_id)
        if subscription is None:
            raise LifecycleError("subscription_not_found", "Subscription not found")
        plan = self._plan(plan_id)
        if not plan.is_active:
            raise LifecycleError("plan_not_found", "Plan not found")
        if subscription.status != SubscriptionStatusEnum.active.value:
            raise LifecycleError("invalid_state", f"Cannot upgrade a {subscription.status} subscription")
        current_price = subscription.plan.price_amount if subscription.plan else subscription.price_at_purchase
        if Decimal(plan.price_amount) <= Decimal(current_price or 0):
            raise LifecycleError("invalid_argument", "Target plan is not an upgrade; use the downgrade endpoint")

        with self._locked(subscription) as subscription:
            if subscription.status != SubscriptionStatusEnum.active.value:
                raise LifecycleError("invalid_state", f"Cannot upgrade a {subscription.status} subscription")
            prorated_amount = self._apply_plan(subscription, plan, "Upgrade", now, True, changed_by, now)
            self.shim.sync_pointers(subscription)
            self._commit()

        logger.info(f"[LIFECYCLE] Subscription {subscription.id} upgraded to {plan.name} (prorated={prorated_amount})")
        return AdjustmentResult(
            operation="upgrade_plan",
            subscription_id=subscription.id,
            workspace_id=subscription.workspace_id,
            status=subscription.status,
            details={
                "plan_id": str(plan.id),
                "tier": plan.tier,
                "prorated_amount": str(prorated_amount),
            },
        )

    def schedule_downgrade(self, subscription_id: UUID, plan_id: UUID, now: Optional[datetime] = None) -> AdjustmentResult:
        """Record a downgrade that takes effect when the current term ends."""
        now = now or utcnow()
        subscription = self.db.get(Subscription, subscription_id)
        if subscription is None:
            raise LifecycleError("subscription_not_found", "Subscription not found")
        plan = self._plan(plan_id)
        if subscription.status not in (SubscriptionStatusEnum.active.value, SubscriptionStatusEnum.trial.value):
            raise LifecycleError("invalid_state", f"Cannot schedule a downgrade while {subscription.status}")
        if subscription.plan is not None and Decimal(plan.price_amount) >= Decimal(subscription.plan.price_amount):
            raise LifecycleError("invalid_argument", "Target plan is not a downgrade")

        with self._locked(subscription) as subscription:
            effective = as_utc(subscription.end_date) or now
            subscription.scheduled_plan_id = plan.id
            subscription.scheduled_change_at = effective
            self._commit()

        logger.info(f"[LIFECYCLE] Downgrade of {subscription.id} to {plan.name} scheduled for {effective.isoformat()}")
        return AdjustmentResult(
            operation="schedule_downgrade",
            subscription_id=subscription.id,
            workspace_id=subscription.workspace_id,
            status=subscription.status,
            details={"plan_id": str(plan.id), "effective_date": effective.isoformat()},
        )

    def apply_scheduled_downgrade(self, subscription_id: UUID, now: Optional[datetime] = None) -> Optional[AdjustmentResult]:
        """Apply a due scheduled downgrade; returns None when nothing is due."""
        now = now or utcnow()
        subscription = self.db.get(Subscription, subscription_id)
        if subscription is None:
            return None

        with self._locked(subscription) as subscription:
            due_at = as_utc(subscription.scheduled_change_at)
            if subscription.scheduled_plan_id is None or due_at is None or due_at > now:
                return None
            plan = self.db.get(Plan, subscription.scheduled_plan_id)
            if plan is None:
                logger.error(f"[LIFECYCLE] Scheduled plan {subscription.scheduled_plan_id} for {subscription.id} no longer exists")
                subscription.scheduled_plan_id = None
                subscription.scheduled_change_at = None
                self._commit()
                return None
            self._apply_plan(subscription, plan, "Scheduled downgrade", due_at, False, "system", now)
            self.shim.sync_pointers(subscription)
            self._commit()

        return AdjustmentResult(
            operation="scheduled_downgrade",
            subscription_id=subscription.id,
            workspace_id=subscription.workspace_id,
            status=subscription.status,
            details={"plan_id": str(plan.id)},
        )

    # =========================================================================
    # PAUSE / RESUME
    # =========================================================================

    def pause(
        self,
        workspace_id: UUID,
        pause_until: Optional[datetime] = None,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> AdjustmentResult:
        now = now or utcnow()
        workspace = self._workspace(workspace_id)
        subscription = self._subscription(workspace)
        if subscription.is_paused:
            raise LifecycleError("invalid_state", "Subscription is already paused")
        if subscription.status in TERMINAL_STATUSES:
            raise LifecycleError("invalid_state", f"Cannot pause a {subscription.status} subscription")
        if pause_until is not None and as_utc(pause_until) <= now:
            raise LifecycleError("invalid_argument", "pause_until must be in the future")

        with self._locked(subscription) as subscription:
            subscription.paused_original_status = subscription.status
            subscription.paused_original_end_date = subscription.end_date
            subscription.paused_at = now
            subscription.pause_until = as_utc(pause_until)
            subscription.pause_reason = reason
            subscription.status = SubscriptionStatusEnum.paused.value
            self.shim.sync_pointers(subscription)
            self._commit()

        logger.info(f"[LIFECYCLE] Subscription {subscription.id} paused until {pause_until} ({reason})")
        return AdjustmentResult(
            operation="pause",
            subscription_id=subscription.id,
            workspace_id=workspace.id,
            status=SubscriptionStatusEnum.paused.value,
            details={"pause_until": as_utc(pause_until).isoformat() if pause_until else None},
        )

    def resume(self, workspace_id: UUID, reason: Optional[str] = None, now: Optional[datetime] = None) -> AdjustmentResult:
        workspace = self._workspace(workspace_id)
        subscription = self._subscription(workspace)
        return self.resume_subscription(subscription.id, reason, now)

    def resume_subscription(self, subscription_id: UUID, reason: Optional[str] = None, now: Optional[datetime] = None) -> AdjustmentResult:
        """Restore a paused subscription, extending its term by the paused interval."""
        now = now or utcnow()
        subscription = self.db.get(Subscription, subscription_id)
        if subscription is None:
            raise LifecycleError("subscription_not_found", "Subscription not found")
        if not subscription.is_paused:
            raise LifecycleError("invalid_state", "Subscription is not paused")

        with self._locked(subscription) as subscription:
            if not subscription.is_paused:
                raise LifecycleError("invalid_state", "Subscription is not paused")
            paused_for = now - (as_utc(subscription.paused_at) or now)
            original_end = as_utc(subscription.paused_original_end_date)
            subscription.end_date = original_end + paused_for if original_end else None
            subscription.status = subscription.paused_original_status or SubscriptionStatusEnum.active.value
            subscription.clear_pause_snapshot()
            self.shim.sync_pointers(subscription)
            self._commit()

        logger.info(f"[LIFECYCLE] Subscription {subscription.id} resumed after {paused_for} ({reason})")
        return AdjustmentResult(
            operation="resume",
            subscription_id=subscription.id,
            workspace_id=subscription.workspace_id,
            status=subscription.status,
            details={
                "paused_days": paused_for.days,
                "end_date": subscription.end_date.isoformat() if subscription.end_date else None,
            },
        )

    # =========================================================================
    # PAYMENTS & ACTIVATION
    # =========================================================================

    def record_manual_payment(
        self,
        workspace_id: UUID,
        amount,
        payment_method: str = "bank_transfer",
        reference: Optional[str] = None,
        notes: Optional[str] = None,
        currency: str = "NGN",
        now: Optional[datetime] = None,
    ) -> AdjustmentResult:
        now = now or utcnow()
        value = _positive_amount(amount)
        workspace = self._workspace(workspace_id)
        subscription = self._subscription(workspace)

        with self._locked(subscription) as subscription:
            subscription.payments.append(Payment(
                amount=value,
                currency=currency,
                status=PaymentStatusEnum.completed.value,
                provider="manual",
                payment_method=payment_method,
                external_reference=reference,
                is_manual=True,
                notes=notes,
                paid_at=now,
            ))
            reactivated = subscription.status in (SubscriptionStatusEnum.past_due.value, SubscriptionStatusEnum.suspended.value)
            if reactivated:
                subscription.status = SubscriptionStatusEnum.active.value
                subscription.end_date = (as_utc(subscription.end_date) or now) + billing_period(subscription.billing_interval)
            self.shim.sync_pointers(subscription)
            self._commit()

        logger.info(f"[LIFECYCLE] Manual payment {value} {currency} recorded for {subscription.id} (reactivated={reactivated})")
        return AdjustmentResult(
            operation="record_manual_payment",
            subscription_id=subscription.id,
            workspace_id=workspace.id,
            status=subscription.status,
            details={
                "amount": str(value),
                "reactivated": reactivated,
                "end_date": subscription.end_date.isoformat() if subscription.end_date else None,
            },
        )

    def activate_plan(
        self,
        workspace_id: UUID,
        plan_id: UUID,
        billing_interval: Optional[str] = None,
        trial_days: Optional[int] = None,
        purchased_by: Optional[UUID] = None,
        gateway_subscription_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> AdjustmentResult:
        """Create a workspace subscription explicitly and make it current."""
        now = now or utcnow()
        workspace = self._workspace(workspace_id)
        plan = self._plan(plan_id)
        interval = billing_interval or plan.billing_interval
        if interval not in BILLING_PERIOD_DAYS:
            raise LifecycleError("invalid_argument", f"Unknown billing interval: {interval}")
        if trial_days is not None and trial_days < 1:
            raise LifecycleError("invalid_argument", "trial_days must be at least one day")

        with self.locks.hold(f"owner:{workspace.id}"):
            if trial_days:
                status = SubscriptionStatusEnum.trial.value
                trial_end = now + timedelta(days=trial_days)
                end_date = trial_end
            else:
                status = SubscriptionStatusEnum.active.value
                trial_end = None
                end_date = now + billing_period(interval)

            subscription = Subscription(
                workspace_id=workspace.id,
                user_id=purchased_by,
                plan_id=plan.id,
                status=status,
                tier=plan.tier,
                billing_interval=interval,
                start_date=now,
                end_date=end_date,
                trial_end_date=trial_end,
                auto_renew=True,
                features=list(plan.features or []),
                custom_features=[],
                limits=dict(plan.limits or {}),
                price_at_purchase=plan.price_amount,
                total_credits=0,
                gateway_subscription_id=gateway_subscription_id,
            )
            self.db.add(subscription)
            self.db.flush()
            self.shim.sync_pointers(subscription, make_current=True)
            if trial_end is not None:
                workspace.trial_end_date = trial_end
            self._commit()

        logger.info(f"[LIFECYCLE] Workspace {workspace.id} activated on {plan.name} ({status})")
        return AdjustmentResult(
            operation="activate_plan",
            subscription_id=subscription.id,
            workspace_id=workspace.id,
            status=status,
            details={"plan_id": str(plan.id), "end_date": end_date.isoformat()},
        )

    def reactivate(self, workspace_id: UUID, reason: Optional[str] = None, now: Optional[datetime] = None) -> AdjustmentResult:
        """Administrative reactivation of a suspended or past-due subscription."""
        now = now or utcnow()
        workspace = self._workspace(workspace_id)
        subscription = self._subscription(workspace)
        allowed_from = (SubscriptionStatusEnum.suspended.value, SubscriptionStatusEnum.past_due.value)
        if subscription.status not in allowed_from:
            raise LifecycleError("invalid_state", f"Cannot reactivate a {subscription.status} subscription")

        with self._locked(subscription) as subscription:
            status_before = subscription.status
            subscription.status = SubscriptionStatusEnum.active.value
            end_date = as_utc(subscription.end_date)
            if end_date is None or end_date < now:
                subscription.end_date = now + billing_period(subscription.billing_interval)
            self.shim.sync_pointers(subscription)
            self._commit()

        logger.warning(f"[LIFECYCLE] Subscription {subscription.id} reactivated from {status_before} ({reason})")
        return AdjustmentResult(
            operation="reactivate",
            subscription_id=subscription.id,
            workspace_id=workspace.id,
            status=subscription.status,
            details={"previous_status": status_before, "reason": reason},
        )

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _workspace(self, workspace_id: UUID) -> Workspace:
        workspace = self.db.get(Workspace, workspace_id)
        if workspace is None:
            raise LifecycleError("workspace_not_found", "Workspace not found")
        return workspace

    def _subscription(self, workspace: Workspace) -> Subscription:
        subscription = self.shim.find_subscription(CurrentOwner(workspace_id=workspace.id))
        if subscription is None:
            raise LifecycleError("subscription_not_found", "Workspace has no subscription")
        return subscription

    def _plan(self, plan_id: UUID) -> Plan:
        plan = self.db.get(Plan, plan_id)
        if plan is None:
            raise LifecycleError("plan_not_found", "Plan not found")
        return plan

    @contextmanager
    def _locked(self, subscription: Optional[Subscription]) -> Iterator[Optional[Subscription]]:
        """Hold the subscription lock and yield a fresh copy of it."""
        if subscription is None:
            yield None
            return
        with self.locks.hold(subscription.id):
            self.db.expire(subscription)
            try:
                yield subscription
            except Exception:
                self.db.rollback()
                raise

    def _apply_plan(
        self,
        subscription: Subscription,
        plan: Plan,
        reason: Optional[str],
        effective_date: datetime,
        prorated: bool,
        changed_by: str,
        now: datetime,
    ) -> Optional[Decimal]:
        old_plan = subscription.plan
        prorated_amount = None
        if prorated:
            old_price = old_plan.price_amount if old_plan else subscription.price_at_purchase
            prorated_amount = prorate(old_price, plan.price_amount, subscription.end_date, now)

        subscription.plan_change_log.append(PlanChange(
            from_plan_id=old_plan.id if old_plan else None,
            to_plan_id=plan.id,
            from_plan_name=old_plan.name if old_plan else None,
            to_plan_name=plan.name,
            effective_date=effective_date,
            reason=reason,
            prorated_amount=prorated_amount,
            changed_by=changed_by,
            changed_at=now,
        ))
        subscription.plan_id = plan.id
        subscription.plan = plan
        subscription.tier = plan.tier
        subscription.features = list(plan.features or [])
        subscription.limits = dict(plan.limits or {})
        subscription.price_at_purchase = plan.price_amount
        subscription.scheduled_plan_id = None
        subscription.scheduled_change_at = None
        return prorated_amount

    def _commit(self) -> None:
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
