"""Subscription state transition engine.

WHAT:
    Applies verified gateway events to subscription records according to the
    lifecycle state machine, and implements user-initiated cancellation.

    States: trial, active, past_due, grace_period, suspended, expired,
    cancelled (plus paused, set only by administrative operations).

    payment.successful        -> Payment(completed), status=active, renewal success
    payment.failed            -> Payment(failed), renewal failure, policy evaluation
    subscription.created      -> create from event fields, or update status/dates
    subscription.renewed      -> same as created
    subscription.canceled     -> status=cancelled, auto_renew=False
    subscription.expiring_soon-> log + notify only

WHY:
    Deliveries are at-least-once and may arrive concurrently. Each handler:
    1. resolves the target subscription without holding a lock
    2. takes the per-subscription lock and re-reads the record
    3. checks the event id against the webhook log (and payments) BEFORE any insert
    4. mutates, refreshes the owner's entitlement pointers, commits
    5. notifies, after the commit, through a notifier that never raises

    A replayed event therefore never creates a second payment, never counts a
    renewal failure twice, and never sends a second email.

REFERENCES:
    - pharmabill/routers/webhooks.py (caller)
    - pharmabill/services/billing/renewal_policy.py
    - pharmabill/services/billing/compatibility.py (owner resolution, pointers)
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from pharmabill.models import (
    BillingIntervalEnum,
    Payment,
    PaymentStatusEnum,
    Plan,
    RenewalAttempt,
    Subscription,
    SubscriptionStatusEnum,
    SubscriptionWebhookEvent,
    User,
    Workspace,
)
from pharmabill.telemetry import capture_message
from pharmabill.utils.time import utcnow

from . import webhook_gateway as events
from .compatibility import CompatibilityShim, CurrentOwner, LegacyOwner
from .exceptions import CancellationError, PaymentGatewayError
from .locks import SubscriptionLockRegistry
from .notifier import NotificationContext, Notifier, Recipient
from .principal import Principal
from .renewal_policy import RenewalPolicy
from .webhook_gateway import WebhookEvent

logger = logging.getLogger(__name__)

DEFAULT_GRACE_PERIOD_DAYS = 7

KNOWN_STATUSES = frozenset(s.value for s in SubscriptionStatusEnum)


@dataclass
class TransitionResult:
    """Outcome of applying one event (or a user cancellation).

    action: processed | created | duplicate | ignored | cancelled |
            subscription_not_found | plan_not_found
    """
    action: str
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    subscription_id: Optional[UUID] = None
    status_before: Optional[str] = None
    status_after: Optional[str] = None
    suspended: bool = False

    @property
    def mutated(self) -> bool:
        return self.action in ("processed", "created", "cancelled")


class SubscriptionTransitionEngine:
    """Applies gateway events and user cancellations to subscriptions.

    Args:
        db: Session; the engine commits it after each successful transition
        notifier: Notifier (wrap in SafeNotifier; failures must not propagate)
        policy: Renewal & suspension policy
        locks: Per-subscription lock registry
        gateway: Payment gateway client used for best-effort cancellation
        grace_period_days: Grace period granted on user cancellation
    """

    def __init__(
        self,
        db: Session,
        notifier: Notifier,
        policy: Optional[RenewalPolicy] = None,
        locks: Optional[SubscriptionLockRegistry] = None,
        gateway=None,
        grace_period_days: int = DEFAULT_GRACE_PERIOD_DAYS,
    ):
        self.db = db
        self.notifier = notifier
        self.policy = policy or RenewalPolicy()
        self.locks = locks or SubscriptionLockRegistry()
        self.gateway = gateway
        self.grace_period_days = grace_period_days
        self.shim = CompatibilityShim(db)
        self._handlers: Dict[str, Callable[[WebhookEvent, datetime], TransitionResult]] = {
            events.PAYMENT_SUCCESSFUL: self._on_payment_successful,
            events.PAYMENT_FAILED: self._on_payment_failed,
            events.SUBSCRIPTION_CREATED: self._on_subscription_upsert,
            events.SUBSCRIPTION_RENEWED: self._on_subscription_upsert,
            events.SUBSCRIPTION_CANCELED: self._on_subscription_canceled,
            events.SUBSCRIPTION_EXPIRING_SOON: self._on_expiring_soon,
        }

    # =========================================================================
    # ENTRY POINT
    # =========================================================================

    def apply(self, event: WebhookEvent, now: Optional[datetime] = None) -> TransitionResult:
        handler = self._handlers.get(event.type)
        if handler is None:
            logger.info(f"[WEBHOOK] Ignoring unhandled event type {event.type} ({event.id})")
            return TransitionResult(action="ignored", event_id=event.id, event_type=event.type)

        if self._event_seen(event.id):
            logger.info(f"[WEBHOOK] Event {event.id} already processed, skipping")
            return TransitionResult(action="duplicate", event_id=event.id, event_type=event.type)

        result = handler(event, now or utcnow())
        logger.info(
            f"[WEBHOOK] {event.type} {event.id}: {result.action} "
            f"(subscription={result.subscription_id}, {result.status_before} -> {result.status_after})"
        )
        return result

    # =========================================================================
    # PAYMENT EVENTS
    # =========================================================================

    def _on_payment_successful(self, event: WebhookEvent, now: datetime) -> TransitionResult:
        data = event.payment_data()
        target = self._resolve_payment_target(data)
        if target is None:
            return self._not_found(event)

        with self.locks.hold(target.id):
            subscription = self._reload(target.id)
            if self._already_processed(subscription, event.id):
                return TransitionResult(action="duplicate", event_id=event.id, event_type=event.type, subscription_id=subscription.id)

            status_before = subscription.status
            payment = Payment(
                amount=data.amount_major,
                currency=data.currency,
                status=PaymentStatusEnum.completed.value,
                provider=event.provider,
                payment_method=data.payment_method,
                external_reference=data.reference,
                event_id=event.id,
                paid_at=now,
            )
            subscription.payments.append(payment)
            self._set_status(subscription, SubscriptionStatusEnum.active.value)
            subscription.grace_period_end = None
            if data.end_date is not None:
                subscription.end_date = data.end_date
            subscription.renewal_log.append(RenewalAttempt(event_id=event.id, attempted_at=now, successful=True))
            self._log_event(subscription, event, now)
            self.shim.sync_pointers(subscription)

            if not self._commit(event.id):
                return TransitionResult(action="duplicate", event_id=event.id, event_type=event.type, subscription_id=target.id)

        self.notifier.payment_received(
            self._recipient(subscription),
            self._context(subscription, amount=str(payment.amount), currency=payment.currency),
        )
        return TransitionResult(
            action="processed",
            event_id=event.id,
            event_type=event.type,
            subscription_id=subscription.id,
            status_before=status_before,
            status_after=subscription.status,
        )

    def _on_payment_failed(self, event: WebhookEvent, now: datetime) -> TransitionResult:
        data = event.payment_data()
        target = self._resolve_payment_target(data)
        if target is None:
            return self._not_found(event)

        with self.locks.hold(target.id):
            subscription = self._reload(target.id)
            if self._already_processed(subscription, event.id):
                return TransitionResult(action="duplicate", event_id=event.id, event_type=event.type, subscription_id=subscription.id)

            status_before = subscription.status
            reason = data.failure_reason or "Payment failed"
            subscription.payments.append(Payment(
                amount=data.amount_major,
                currency=data.currency,
                status=PaymentStatusEnum.failed.value,
                provider=event.provider,
                payment_method=data.payment_method,
                external_reference=data.reference,
                event_id=event.id,
                failure_reason=reason,
            ))
            subscription.renewal_log.append(RenewalAttempt(event_id=event.id, attempted_at=now, successful=False, error=reason))

            decision = self.policy.evaluate(subscription.renewal_attempts, subscription.status)
            if decision.suspend:
                self._set_status(subscription, SubscriptionStatusEnum.suspended.value)
                logger.warning(f"[BILLING] Subscription {subscription.id} suspended: {decision.reason}")
                capture_message(
                    f"Subscription {subscription.id} suspended",
                    level="warning",
                    extra={"failed_attempts": decision.failed_count, "event_id": event.id},
                )

            self._log_event(subscription, event, now)
            self.shim.sync_pointers(subscription)

            if not self._commit(event.id):
                return TransitionResult(action="duplicate", event_id=event.id, event_type=event.type, subscription_id=target.id)

        self.notifier.payment_failed(
            self._recipient(subscription),
            self._context(
                subscription,
                amount=str(data.amount_major),
                currency=data.currency,
                failure_reason=reason,
                failed_attempts=decision.failed_count,
            ),
        )
        return TransitionResult(
            action="processed",
            event_id=event.id,
            event_type=event.type,
            subscription_id=subscription.id,
            status_before=status_before,
            status_after=subscription.status,
            suspended=decision.suspend,
        )

    # =========================================================================
    # SUBSCRIPTION EVENTS
    # =========================================================================

    def _on_subscription_upsert(self, event: WebhookEvent, now: datetime) -> TransitionResult:
        data = event.subscription_data()
        target = self._resolve_subscription_target(data)
        if target is None:
            return self._create_from_event(event, data, now)

        with self.locks.hold(target.id):
            subscription = self._reload(target.id)
            if self._already_processed(subscription, event.id):
                return TransitionResult(action="duplicate", event_id=event.id, event_type=event.type, subscription_id=subscription.id)

            status_before = subscription.status
            new_status = data.status
            if new_status is None and event.type == events.SUBSCRIPTION_RENEWED:
                new_status = SubscriptionStatusEnum.active.value
            if new_status is not None:
                if new_status in KNOWN_STATUSES:
                    self._set_status(subscription, new_status)
                else:
                    logger.warning(f"[WEBHOOK] Event {event.id} carries unknown status {new_status!r}; status unchanged")
            if data.start_date is not None:
                subscription.start_date = data.start_date
            if data.end_date is not None:
                subscription.end_date = data.end_date
            if data.gateway_subscription_id and not subscription.gateway_subscription_id:
                subscription.gateway_subscription_id = data.gateway_subscription_id
            self._log_event(subscription, event, now)
            self.shim.sync_pointers(subscription)

            if not self._commit(event.id):
                return TransitionResult(action="duplicate", event_id=event.id, event_type=event.type, subscription_id=target.id)

        self.notifier.subscription_activated_or_renewed(self._recipient(subscription), self._context(subscription))
        return TransitionResult(
            action="processed",
            event_id=event.id,
            event_type=event.type,
            subscription_id=subscription.id,
            status_before=status_before,
            status_after=subscription.status,
        )

    def _create_from_event(self, event: WebhookEvent, data: events.SubscriptionEventData, now: datetime) -> TransitionResult:
        workspace_id = data.owner_workspace_id
        user_id = data.owner_user_id
        workspace = self.db.get(Workspace, workspace_id) if workspace_id else None
        user = self.db.get(User, user_id) if user_id else None
        if workspace is None and user is None:
            logger.error(f"[WEBHOOK] {event.type} {event.id}: no owner (workspace/user) resolvable")
            return self._not_found(event)

        plan = None
        if data.plan_id:
            plan_uuid = data.plan_uuid
            plan = self.db.get(Plan, plan_uuid) if plan_uuid else None
            if plan is None:
                logger.error(f"[WEBHOOK] {event.type} {event.id}: plan {data.plan_id} not found")
                return TransitionResult(action="plan_not_found", event_id=event.id, event_type=event.type)

        # Serialize concurrent creations for the same gateway subscription (or owner)
        lock_key = f"gateway:{data.gateway_subscription_id}" if data.gateway_subscription_id else f"owner:{workspace_id or user_id}"
        with self.locks.hold(lock_key):
            self.db.expire_all()
            if self._event_seen(event.id):
                return TransitionResult(action="duplicate", event_id=event.id, event_type=event.type)
            existing = self._resolve_subscription_target(data)
            if existing is not None:
                # Created by a concurrent delivery of a sibling event; treat as update
                return self._on_subscription_upsert(event, now)

            status = data.status if data.status in KNOWN_STATUSES else SubscriptionStatusEnum.active.value
            subscription = Subscription(
                workspace_id=workspace.id if workspace else None,
                user_id=user.id if user else None,
                plan_id=plan.id if plan else None,
                status=status,
                tier=data.tier or (plan.tier if plan else None),
                billing_interval=data.billing_interval or (plan.billing_interval if plan else BillingIntervalEnum.monthly.value),
                start_date=data.start_date or now,
                end_date=data.end_date,
                trial_end_date=data.trial_end_date,
                auto_renew=True,
                features=list(data.features if data.features is not None else (plan.features if plan else [])),
                custom_features=[],
                limits=dict(plan.limits or {}) if plan else {},
                price_at_purchase=plan.price_amount if plan else None,
                total_credits=0,
                gateway_subscription_id=data.gateway_subscription_id,
                gateway_customer_id=data.customer_id,
            )
            self.db.add(subscription)
            self._log_event(subscription, event, now)
            self.db.flush()
            self.shim.sync_pointers(subscription, make_current=True)

            if not self._commit(event.id):
                return TransitionResult(action="duplicate", event_id=event.id, event_type=event.type)

        self.notifier.subscription_activated_or_renewed(self._recipient(subscription), self._context(subscription))
        return TransitionResult(
            action="created",
            event_id=event.id,
            event_type=event.type,
            subscription_id=subscription.id,
            status_after=subscription.status,
        )

    def _on_subscription_canceled(self, event: WebhookEvent, now: datetime) -> TransitionResult:
        data = event.subscription_data()
        target = self._resolve_subscription_target(data) or self.shim.subscription_for_metadata(
            data.owner_workspace_id, data.owner_user_id
        )
        if target is None:
            return self._not_found(event)

        with self.locks.hold(target.id):
            subscription = self._reload(target.id)
            if self._already_processed(subscription, event.id):
                return TransitionResult(action="duplicate", event_id=event.id, event_type=event.type, subscription_id=subscription.id)

            status_before = subscription.status
            self._set_status(subscription, SubscriptionStatusEnum.cancelled.value)
            subscription.auto_renew = False
            self._log_event(subscription, event, now)
            self.shim.sync_pointers(subscription)

            if not self._commit(event.id):
                return TransitionResult(action="duplicate", event_id=event.id, event_type=event.type, subscription_id=target.id)

        self.notifier.subscription_cancelled(self._recipient(subscription), self._context(subscription))
        return TransitionResult(
            action="processed",
            event_id=event.id,
            event_type=event.type,
            subscription_id=subscription.id,
            status_before=status_before,
            status_after=subscription.status,
        )

    def _on_expiring_soon(self, event: WebhookEvent, now: datetime) -> TransitionResult:
        data = event.subscription_data()
        target = self._resolve_subscription_target(data) or self.shim.subscription_for_metadata(
            data.owner_workspace_id, data.owner_user_id
        )
        if target is None:
            return self._not_found(event)

        with self.locks.hold(target.id):
            subscription = self._reload(target.id)
            if self._already_processed(subscription, event.id):
                return TransitionResult(action="duplicate", event_id=event.id, event_type=event.type, subscription_id=subscription.id)

            self._log_event(subscription, event, now)
            if not self._commit(event.id):
                return TransitionResult(action="duplicate", event_id=event.id, event_type=event.type, subscription_id=target.id)

        self.notifier.expiring_soon(
            self._recipient(subscription),
            self._context(subscription, days_remaining=data.days_remaining),
        )
        return TransitionResult(
            action="processed",
            event_id=event.id,
            event_type=event.type,
            subscription_id=subscription.id,
            status_before=subscription.status,
            status_after=subscription.status,
        )

    # =========================================================================
    # USER-INITIATED CANCELLATION
    # =========================================================================

    def cancel_by_user(self, principal: Principal, reason: Optional[str] = None, now: Optional[datetime] = None) -> TransitionResult:
        """Cancel the principal's active subscription into a grace period.

        The gateway is asked to stop renewing first; a gateway failure is
        logged and does not abort the local cancellation.

        Raises:
            CancellationError: No active subscription for the principal
        """
        now = now or utcnow()
        target = self._active_subscription_for(principal)
        if target is None:
            raise CancellationError("No active subscription found")

        if target.gateway_subscription_id and self.gateway is not None:
            try:
                self.gateway.cancel_subscription(target.gateway_subscription_id)
            except PaymentGatewayError as e:
                logger.error(f"[BILLING] Gateway cancellation failed for {target.id}, continuing locally: {e}")

        with self.locks.hold(target.id):
            subscription = self._reload(target.id)
            if subscription.status != SubscriptionStatusEnum.active.value:
                raise CancellationError("No active subscription found")

            status_before = subscription.status
            subscription.status = SubscriptionStatusEnum.grace_period.value
            subscription.grace_period_end = now + timedelta(days=self.grace_period_days)
            subscription.auto_renew = False
            self.shim.sync_pointers(subscription)
            self._commit()

        logger.info(
            f"[BILLING] Subscription {subscription.id} cancelled by {principal.user_id}"
            f" (reason={reason!r}); grace period ends {subscription.grace_period_end.isoformat()}"
        )
        self.notifier.subscription_cancelled(
            self._recipient(subscription),
            self._context(subscription, grace_period_end=subscription.grace_period_end.date().isoformat()),
        )
        return TransitionResult(
            action="cancelled",
            subscription_id=subscription.id,
            status_before=status_before,
            status_after=subscription.status,
        )

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _resolve_payment_target(self, data: events.PaymentEventData) -> Optional[Subscription]:
        """metadata subscription id -> gateway id -> workspace -> legacy user."""
        local_id = data.metadata.subscription_uuid
        if local_id:
            subscription = self.db.get(Subscription, local_id)
            if subscription is not None:
                return subscription
        if data.gateway_subscription_id:
            subscription = self._by_gateway_id(data.gateway_subscription_id)
            if subscription is not None:
                return subscription
        return self.shim.subscription_for_metadata(data.metadata.workspace_uuid, data.metadata.user_uuid)

    def _resolve_subscription_target(self, data: events.SubscriptionEventData) -> Optional[Subscription]:
        if data.gateway_subscription_id:
            subscription = self._by_gateway_id(data.gateway_subscription_id)
            if subscription is not None:
                return subscription
        local_id = data.metadata.subscription_uuid
        if local_id:
            return self.db.get(Subscription, local_id)
        return None

    def _by_gateway_id(self, gateway_subscription_id: str) -> Optional[Subscription]:
        return (
            self.db.query(Subscription)
            .filter(Subscription.gateway_subscription_id == gateway_subscription_id)
            .first()
        )

    def _active_subscription_for(self, principal: Principal) -> Optional[Subscription]:
        for owner in self.shim.owners_for(principal):
            query = self.db.query(Subscription).filter(Subscription.status == SubscriptionStatusEnum.active.value)
            if isinstance(owner, CurrentOwner):
                query = query.filter(Subscription.workspace_id == owner.workspace_id)
            else:
                query = query.filter(Subscription.user_id == owner.user_id, Subscription.workspace_id.is_(None))
            subscription = query.order_by(Subscription.created_at.desc()).first()
            if subscription is not None:
                return subscription
        return None

    def _reload(self, subscription_id) -> Subscription:
        """Fresh read of a subscription (and its logs) inside the lock."""
        subscription = self.db.get(Subscription, subscription_id)
        self.db.expire(subscription)
        return subscription

    def _event_seen(self, event_id: str) -> bool:
        logged = self.db.query(SubscriptionWebhookEvent.id).filter(SubscriptionWebhookEvent.event_id == event_id).first()
        if logged is not None:
            return True
        return self.db.query(Payment.id).filter(Payment.event_id == event_id).first() is not None

    def _already_processed(self, subscription: Subscription, event_id: str) -> bool:
        return event_id in subscription.webhook_log or self._event_seen(event_id)

    def _set_status(self, subscription: Subscription, status: str) -> None:
        if subscription.is_paused and status != SubscriptionStatusEnum.paused.value:
            subscription.clear_pause_snapshot()
        subscription.status = status

    def _log_event(self, subscription: Subscription, event: WebhookEvent, now: datetime) -> None:
        subscription.webhook_log.append(SubscriptionWebhookEvent(
            event_id=event.id,
            event_type=event.type,
            payload=event.data,
            processed_at=now,
        ))

    def _commit(self, event_id: Optional[str] = None) -> bool:
        """Commit; returns False when a concurrent writer already recorded `event_id`."""
        try:
            self.db.commit()
            return True
        except IntegrityError:
            self.db.rollback()
            if event_id and self._event_seen(event_id):
                logger.info(f"[WEBHOOK] Event {event_id} recorded concurrently, treating as duplicate")
                return False
            raise
        except Exception:
            self.db.rollback()
            raise

    def _not_found(self, event: WebhookEvent) -> TransitionResult:
        logger.error(f"[WEBHOOK] {event.type} {event.id}: subscription not found")
        return TransitionResult(action="subscription_not_found", event_id=event.id, event_type=event.type)

    def _recipient(self, subscription: Subscription) -> Recipient:
        owner = self.shim.owner_of(subscription)
        if isinstance(owner, CurrentOwner):
            workspace = self.db.get(Workspace, owner.workspace_id)
            if workspace is not None:
                owner_user = self.db.get(User, workspace.owner_id) if workspace.owner_id else None
                email = workspace.billing_email or (owner_user.email if owner_user else None)
                return Recipient(email=email, name=owner_user.name if owner_user else workspace.name)
        if isinstance(owner, LegacyOwner):
            user = self.db.get(User, owner.user_id)
            if user is not None:
                return Recipient(email=user.email, name=user.name)
        return Recipient(email=None)

    def _context(self, subscription: Subscription, **values) -> NotificationContext:
        plan = subscription.plan
        return NotificationContext(
            plan_name=plan.name if plan else subscription.tier,
            end_date=subscription.end_date.date().isoformat() if subscription.end_date else None,
            **values,
        )
