"""Tests for the subscription transition engine.

WHAT: Event → state transitions, idempotency, suspension policy, owner
      pointers and user cancellation
WHY: Every automatic state change goes through this engine

REFERENCES:
  - pharmabill/services/billing/transitions.py
  - pharmabill/services/billing/renewal_policy.py
"""

from datetime import timedelta
from unittest.mock import patch

import pytest

from pharmabill.models import (
    Payment,
    PaymentStatusEnum,
    RenewalAttempt,
    Subscription,
    SubscriptionStatusEnum,
    SubscriptionWebhookEvent,
)
from pharmabill.services.billing.exceptions import CancellationError, ImmutablePaymentError
from pharmabill.services.billing.lifecycle import SubscriptionAdjustments
from pharmabill.services.billing.principal import Principal
from pharmabill.services.billing.renewal_policy import FailureCountMode, RenewalPolicy
from pharmabill.utils.time import as_utc, utcnow


def _payment_data(subscription, amount=500000, **extra):
    data = {
        "reference": "ref-1",
        "amount": amount,
        "currency": "NGN",
        "metadata": {"subscriptionId": str(subscription.id)},
    }
    data.update(extra)
    return data


def _assert_pause_snapshot_cleared(subscription):
    assert subscription.paused_original_status is None
    assert subscription.paused_original_end_date is None
    assert subscription.paused_at is None
    assert subscription.pause_until is None
    assert subscription.pause_reason is None


class TestPaymentEvents:
    """payment.successful / payment.failed handling."""

    def test_payment_successful_records_payment_and_renewal(self, transition_engine, make_event, make_subscription, workspace, basic_plan, db):
        """A successful payment activates, records the payment and moves end_date."""
        subscription = make_subscription(
            workspace=workspace,
            plan=basic_plan,
            status=SubscriptionStatusEnum.grace_period.value,
            grace_period_end=utcnow() + timedelta(days=2),
        )
        new_end = (utcnow() + timedelta(days=60)).replace(microsecond=0)

        result = transition_engine.apply(make_event(
            "evt_1", "payment.successful", _payment_data(subscription, endDate=new_end.isoformat()),
        ))

        assert result.action == "processed"
        assert result.status_before == SubscriptionStatusEnum.grace_period.value
        db.refresh(subscription)
        assert subscription.status == SubscriptionStatusEnum.active.value
        assert subscription.grace_period_end is None
        assert as_utc(subscription.end_date) == new_end

        payment = db.query(Payment).one()
        assert payment.status == PaymentStatusEnum.completed.value
        assert str(payment.amount) == "5000.00"
        assert payment.event_id == "evt_1"
        assert [a.successful for a in subscription.renewal_attempts] == [True]
        assert subscription.payment_history == [payment]

    def test_payment_failed_below_threshold_keeps_status(self, transition_engine, make_event, make_subscription, workspace, basic_plan, db, notifier):
        """Failures below the threshold record the attempt but leave status alone."""
        subscription = make_subscription(workspace=workspace, plan=basic_plan)

        first = transition_engine.apply(make_event(
            "evt_f1", "payment.failed", _payment_data(subscription, failureReason="Insufficient funds"),
        ))
        second = transition_engine.apply(make_event("evt_f2", "payment.failed", _payment_data(subscription)))

        assert first.action == "processed"
        assert second.suspended is False
        assert second.status_after == SubscriptionStatusEnum.active.value
        db.refresh(subscription)
        assert subscription.status == SubscriptionStatusEnum.active.value
        assert [a.successful for a in subscription.renewal_attempts] == [False, False]
        assert db.query(Payment).filter(Payment.event_id == "evt_f1").one().failure_reason == "Insufficient funds"
        kind, recipient, context = notifier.sent[0]
        assert kind == "payment_failed"
        assert recipient.email == "billing@greencross.test"
        assert context.failed_attempts == 1

    @pytest.mark.parametrize("status", ["trial", "grace_period", "past_due"])
    def test_single_failure_never_changes_status(self, status, transition_engine, make_event, make_subscription, workspace, basic_plan, db):
        """No status is rewritten by a failure that does not reach the threshold."""
        subscription = make_subscription(workspace=workspace, plan=basic_plan, status=status)

        transition_engine.apply(make_event("evt_f1", "payment.failed", _payment_data(subscription)))

        db.refresh(subscription)
        assert subscription.status == status

    def test_third_failure_suspends(self, transition_engine, make_event, make_subscription, workspace, basic_plan, db):
        """The third failed attempt suspends and reports a Sentry warning."""
        subscription = make_subscription(workspace=workspace, plan=basic_plan)

        with patch("pharmabill.services.billing.transitions.capture_message") as captured:
            for n in range(1, 4):
                result = transition_engine.apply(make_event(f"evt_f{n}", "payment.failed", _payment_data(subscription)))

        assert result.suspended is True
        db.refresh(subscription)
        assert subscription.status == SubscriptionStatusEnum.suspended.value
        assert db.query(RenewalAttempt).filter(RenewalAttempt.successful.is_(False)).count() == 3
        captured.assert_called_once()

    def test_all_time_mode_counts_failures_across_successes(self, transition_engine, make_event, make_subscription, workspace, basic_plan, db):
        """Default counting keeps failures from before a success."""
        subscription = make_subscription(workspace=workspace, plan=basic_plan)

        transition_engine.apply(make_event("f1", "payment.failed", _payment_data(subscription)))
        transition_engine.apply(make_event("f2", "payment.failed", _payment_data(subscription)))
        transition_engine.apply(make_event("s1", "payment.successful", _payment_data(subscription)))
        result = transition_engine.apply(make_event("f3", "payment.failed", _payment_data(subscription)))

        assert result.suspended is True

    def test_since_last_success_mode_resets_after_success(self, db, notifier, locks, make_event, make_subscription, workspace, basic_plan):
        """since_last_success only counts failures after the latest success."""
        from pharmabill.services.billing.transitions import SubscriptionTransitionEngine

        engine = SubscriptionTransitionEngine(
            db,
            notifier=notifier,
            policy=RenewalPolicy(threshold=3, count_mode=FailureCountMode.SINCE_LAST_SUCCESS),
            locks=locks,
        )
        subscription = make_subscription(workspace=workspace, plan=basic_plan)

        engine.apply(make_event("f1", "payment.failed", _payment_data(subscription)))
        engine.apply(make_event("f2", "payment.failed", _payment_data(subscription)))
        engine.apply(make_event("s1", "payment.successful", _payment_data(subscription)))
        result = engine.apply(make_event("f3", "payment.failed", _payment_data(subscription)))

        assert result.suspended is False
        db.refresh(subscription)
        assert subscription.status == SubscriptionStatusEnum.active.value

    def test_failure_on_cancelled_subscription_keeps_status(self, transition_engine, make_event, make_subscription, workspace, basic_plan, db):
        """Terminal statuses are never revived or suspended by a failure."""
        subscription = make_subscription(workspace=workspace, plan=basic_plan, status=SubscriptionStatusEnum.cancelled.value)

        transition_engine.apply(make_event("f1", "payment.failed", _payment_data(subscription)))

        db.refresh(subscription)
        assert subscription.status == SubscriptionStatusEnum.cancelled.value

    def test_payment_resolves_by_gateway_subscription_id(self, transition_engine, make_event, make_subscription, workspace, basic_plan, db):
        """data.subscriptionId is matched against the gateway subscription id."""
        subscription = make_subscription(workspace=workspace, plan=basic_plan, gateway_subscription_id="sub_gw_1")

        result = transition_engine.apply(make_event(
            "evt_gw", "payment.successful", {"amount": 100, "subscriptionId": "sub_gw_1"},
        ))

        assert result.subscription_id == subscription.id

    def test_payment_resolves_legacy_owner_by_user_id(self, transition_engine, make_event, make_subscription, legacy_user, basic_plan, db):
        """metadata.userId finds a per-user subscription and updates the user's pointers."""
        subscription = make_subscription(user=legacy_user, plan=basic_plan, status=SubscriptionStatusEnum.past_due.value)

        result = transition_engine.apply(make_event(
            "evt_legacy", "payment.successful", {"amount": 100, "metadata": {"userId": str(legacy_user.id)}},
        ))

        assert result.subscription_id == subscription.id
        db.refresh(legacy_user)
        assert legacy_user.current_subscription_id == subscription.id
        assert legacy_user.subscription_tier == "basic"


class TestSuspensionAndRecovery:
    """Trial → active → suspended → manually recovered, end to end."""

    def test_trial_to_suspended_to_manual_recovery(self, transition_engine, make_event, make_subscription, workspace, basic_plan, locks, db):
        """Three failures suspend; a manual payment reactivates for one more billing period."""
        subscription = make_subscription(workspace=workspace, plan=basic_plan, status=SubscriptionStatusEnum.trial.value)

        transition_engine.apply(make_event("e1", "payment.successful", _payment_data(subscription)))
        db.refresh(subscription)
        assert subscription.status == SubscriptionStatusEnum.active.value

        for event_id in ("e2", "e3"):
            transition_engine.apply(make_event(event_id, "payment.failed", _payment_data(subscription)))
            db.refresh(subscription)
            assert subscription.status == SubscriptionStatusEnum.active.value

        result = transition_engine.apply(make_event("e4", "payment.failed", _payment_data(subscription)))
        assert result.suspended is True
        db.refresh(subscription)
        assert subscription.status == SubscriptionStatusEnum.suspended.value
        db.refresh(workspace)
        assert workspace.subscription_status == SubscriptionStatusEnum.suspended.value

        end_before = as_utc(subscription.end_date)
        SubscriptionAdjustments(db, locks).record_manual_payment(workspace.id, "5000.00", reference="BANK-001")

        db.refresh(subscription)
        assert subscription.status == SubscriptionStatusEnum.active.value
        assert as_utc(subscription.end_date) == end_before + timedelta(days=30)
        db.refresh(workspace)
        assert workspace.subscription_status == SubscriptionStatusEnum.active.value
        assert [a.successful for a in subscription.renewal_attempts] == [True, False, False, False]


class TestPauseSnapshot:
    """Webhook transitions out of paused drop the pause snapshot."""

    def _paused(self, make_subscription, workspace, basic_plan, locks, db, **fields):
        subscription = make_subscription(workspace=workspace, plan=basic_plan, **fields)
        SubscriptionAdjustments(db, locks).pause(workspace.id, pause_until=utcnow() + timedelta(days=10), reason="Renovation")
        db.refresh(subscription)
        assert subscription.paused_at is not None
        return subscription

    def test_payment_successful_clears_snapshot(self, transition_engine, make_event, make_subscription, workspace, basic_plan, locks, db):
        """A payment that activates a paused subscription leaves no snapshot behind."""
        subscription = self._paused(make_subscription, workspace, basic_plan, locks, db)

        transition_engine.apply(make_event("evt_ps", "payment.successful", _payment_data(subscription)))

        db.refresh(subscription)
        assert subscription.status == SubscriptionStatusEnum.active.value
        _assert_pause_snapshot_cleared(subscription)

    def test_canceled_event_clears_snapshot(self, transition_engine, make_event, make_subscription, workspace, basic_plan, locks, db):
        """Gateway cancellation of a paused subscription clears the snapshot."""
        subscription = self._paused(make_subscription, workspace, basic_plan, locks, db, gateway_subscription_id="sub_gw_p")

        transition_engine.apply(make_event("evt_pc", "subscription.canceled", {"subscriptionId": "sub_gw_p"}))

        db.refresh(subscription)
        assert subscription.status == SubscriptionStatusEnum.cancelled.value
        _assert_pause_snapshot_cleared(subscription)

    def test_threshold_suspension_clears_snapshot(self, transition_engine, make_event, make_subscription, workspace, basic_plan, locks, db):
        """Suspension by the failure threshold clears the snapshot."""
        subscription = self._paused(make_subscription, workspace, basic_plan, locks, db)

        for n in range(1, 4):
            transition_engine.apply(make_event(f"evt_pf{n}", "payment.failed", _payment_data(subscription)))

        db.refresh(subscription)
        assert subscription.status == SubscriptionStatusEnum.suspended.value
        _assert_pause_snapshot_cleared(subscription)

    def test_failure_below_threshold_keeps_pause(self, transition_engine, make_event, make_subscription, workspace, basic_plan, locks, db):
        """A single failure leaves a paused subscription paused, snapshot intact."""
        subscription = self._paused(make_subscription, workspace, basic_plan, locks, db)

        transition_engine.apply(make_event("evt_pf", "payment.failed", _payment_data(subscription)))

        db.refresh(subscription)
        assert subscription.status == SubscriptionStatusEnum.paused.value
        assert subscription.paused_original_status == SubscriptionStatusEnum.active.value
        assert subscription.pause_reason == "Renovation"


class TestIdempotency:
    """Replayed and concurrently delivered events."""

    def test_replay_is_a_noop(self, transition_engine, make_event, make_subscription, workspace, basic_plan, db, notifier):
        """The same event twice inserts one payment, one attempt and one email."""
        subscription = make_subscription(workspace=workspace, plan=basic_plan)
        event = make_event("evt_1", "payment.failed", _payment_data(subscription))

        first = transition_engine.apply(event)
        second = transition_engine.apply(event)

        assert first.action == "processed"
        assert second.action == "duplicate"
        assert db.query(Payment).count() == 1
        assert db.query(RenewalAttempt).count() == 1
        assert db.query(SubscriptionWebhookEvent).count() == 1
        assert len(notifier.sent) == 1

    def test_concurrent_writer_detected_at_commit(self, transition_engine, make_event, make_subscription, workspace, basic_plan, db):
        """Another writer inserted the same event between our check and our commit."""
        other = make_subscription(workspace=workspace, plan=basic_plan)
        db.add(Payment(subscription_id=other.id, amount=1, status=PaymentStatusEnum.pending.value, event_id="evt_race"))
        db.commit()
        target = make_subscription(workspace=workspace, plan=basic_plan)

        with patch.object(transition_engine, "_event_seen", side_effect=[False, False, True]):
            result = transition_engine.apply(make_event("evt_race", "payment.successful", _payment_data(target)))

        assert result.action == "duplicate"
        assert db.query(Payment).filter(Payment.event_id == "evt_race").count() == 1

    def test_unknown_event_type_is_ignored(self, transition_engine, make_event, db):
        """Unrecognised types are acknowledged without mutation."""
        result = transition_engine.apply(make_event("evt_u", "invoice.created", {}))
        assert result.action == "ignored"
        assert result.mutated is False


class TestSubscriptionEvents:
    """subscription.* handling."""

    def test_created_event_creates_workspace_subscription(self, transition_engine, make_event, workspace, pro_plan, db, notifier):
        """An unmatched created event builds the subscription and makes it current."""
        end = utcnow() + timedelta(days=30)
        result = transition_engine.apply(make_event("evt_c1", "subscription.created", {
            "subscriptionId": "sub_gw_9",
            "customerId": "cus_9",
            "planId": str(pro_plan.id),
            "status": "active",
            "endDate": end.isoformat(),
            "workspaceId": str(workspace.id),
        }))

        assert result.action == "created"
        subscription = db.get(Subscription, result.subscription_id)
        assert subscription.workspace_id == workspace.id
        assert subscription.tier == "professional"
        assert "analytics" in subscription.features
        assert "evt_c1" in subscription.webhook_log
        db.refresh(workspace)
        assert workspace.current_subscription_id == subscription.id
        assert workspace.current_plan_id == pro_plan.id
        assert workspace.subscription_status == "active"
        assert notifier.kinds() == ["subscription_activated_or_renewed"]

    def test_created_event_without_owner_is_not_found(self, transition_engine, make_event, db):
        """No workspace or user to own it: nothing is created."""
        result = transition_engine.apply(make_event("evt_c2", "subscription.created", {"subscriptionId": "sub_gw_x"}))
        assert result.action == "subscription_not_found"
        assert db.query(Subscription).count() == 0

    def test_created_event_with_unknown_plan(self, transition_engine, make_event, workspace, db):
        """An unknown planId is reported, not guessed."""
        result = transition_engine.apply(make_event("evt_c3", "subscription.created", {
            "planId": "2b1f7a0e-8d57-4c6e-9a2f-6c3a1d9b0e11",
            "workspaceId": str(workspace.id),
        }))
        assert result.action == "plan_not_found"

    def test_renewed_event_updates_existing(self, transition_engine, make_event, make_subscription, workspace, basic_plan, db):
        """Renewal of a known subscription activates it and moves end_date."""
        subscription = make_subscription(
            workspace=workspace, plan=basic_plan, status=SubscriptionStatusEnum.past_due.value, gateway_subscription_id="sub_gw_2",
        )
        new_end = (utcnow() + timedelta(days=45)).replace(microsecond=0)

        result = transition_engine.apply(make_event("evt_r1", "subscription.renewed", {
            "subscriptionId": "sub_gw_2", "endDate": new_end.isoformat(),
        }))

        assert result.action == "processed"
        db.refresh(subscription)
        assert subscription.status == SubscriptionStatusEnum.active.value
        assert as_utc(subscription.end_date) == new_end

    def test_unknown_status_leaves_status_unchanged(self, transition_engine, make_event, make_subscription, workspace, basic_plan, db):
        """A status value outside the enum is logged and ignored."""
        subscription = make_subscription(workspace=workspace, plan=basic_plan, gateway_subscription_id="sub_gw_3")

        transition_engine.apply(make_event("evt_r2", "subscription.created", {"subscriptionId": "sub_gw_3", "status": "on_hold"}))

        db.refresh(subscription)
        assert subscription.status == SubscriptionStatusEnum.active.value

    def test_canceled_event(self, transition_engine, make_event, make_subscription, workspace, basic_plan, db, notifier):
        """Gateway cancellation is immediate and turns auto-renew off."""
        subscription = make_subscription(workspace=workspace, plan=basic_plan, gateway_subscription_id="sub_gw_4")

        result = transition_engine.apply(make_event("evt_x1", "subscription.canceled", {"subscriptionId": "sub_gw_4"}))

        assert result.status_after == SubscriptionStatusEnum.cancelled.value
        db.refresh(subscription)
        assert subscription.auto_renew is False
        db.refresh(workspace)
        assert workspace.subscription_status == SubscriptionStatusEnum.cancelled.value
        assert notifier.kinds() == ["subscription_cancelled"]

    def test_expiring_soon_only_notifies(self, transition_engine, make_event, make_subscription, workspace, basic_plan, db, notifier):
        """expiring_soon logs and notifies with no status change."""
        subscription = make_subscription(workspace=workspace, plan=basic_plan, gateway_subscription_id="sub_gw_5")

        transition_engine.apply(make_event("evt_e1", "subscription.expiring_soon", {"subscriptionId": "sub_gw_5", "daysRemaining": 3}))

        db.refresh(subscription)
        assert subscription.status == SubscriptionStatusEnum.active.value
        kind, _, context = notifier.sent[0]
        assert kind == "expiring_soon"
        assert context.days_remaining == 3

    def test_event_for_old_subscription_does_not_move_pointer(self, transition_engine, make_event, make_subscription, workspace, basic_plan, pro_plan, db):
        """Paying an old subscription does not steal the workspace's current pointer."""
        old = make_subscription(workspace=workspace, plan=basic_plan, status=SubscriptionStatusEnum.past_due.value, gateway_subscription_id="sub_old")
        current = make_subscription(workspace=workspace, plan=pro_plan)

        transition_engine.apply(make_event("evt_old", "payment.successful", {"amount": 100, "subscriptionId": "sub_old"}))

        db.refresh(workspace)
        db.refresh(old)
        assert old.status == SubscriptionStatusEnum.active.value
        assert workspace.current_subscription_id == current.id
        assert workspace.current_plan_id == pro_plan.id


class TestNotificationFailures:
    """Notifier outages never undo a transition."""

    def test_notifier_failure_does_not_undo_transition(self, db, locks, make_event, make_subscription, workspace, basic_plan):
        """A raising notifier behind SafeNotifier leaves the committed state in place."""
        from unittest.mock import Mock

        from pharmabill.services.billing.notifier import SafeNotifier
        from pharmabill.services.billing.transitions import SubscriptionTransitionEngine

        broken = Mock()
        broken.payment_received.side_effect = RuntimeError("smtp down")
        engine = SubscriptionTransitionEngine(db, notifier=SafeNotifier(broken), locks=locks)
        subscription = make_subscription(workspace=workspace, plan=basic_plan, status=SubscriptionStatusEnum.past_due.value)

        result = engine.apply(make_event("evt_n1", "payment.successful", _payment_data(subscription)))

        assert result.action == "processed"
        db.refresh(subscription)
        assert subscription.status == SubscriptionStatusEnum.active.value


class TestPaymentImmutability:
    """Settled payments are read-only."""

    def test_completed_payment_cannot_be_modified(self, transition_engine, make_event, make_subscription, workspace, basic_plan, db):
        """Updating a completed payment is refused at flush time."""
        subscription = make_subscription(workspace=workspace, plan=basic_plan)
        transition_engine.apply(make_event("evt_p", "payment.successful", _payment_data(subscription)))

        payment = db.query(Payment).one()
        assert payment.status == PaymentStatusEnum.completed.value
        payment.amount = 1
        with pytest.raises(ImmutablePaymentError):
            db.commit()
        db.rollback()


class TestUserCancellation:
    """cancel_by_user grace-period flow."""

    def test_cancel_enters_grace_period(self, transition_engine, make_subscription, workspace, owner, basic_plan, gateway, db, notifier):
        """Cancellation stops gateway renewal and grants seven days of grace."""
        subscription = make_subscription(workspace=workspace, plan=basic_plan, gateway_subscription_id="sub_gw_c")
        now = utcnow()

        result = transition_engine.cancel_by_user(Principal.from_user(owner), reason="Closing branch", now=now)

        assert result.action == "cancelled"
        db.refresh(subscription)
        assert subscription.status == SubscriptionStatusEnum.grace_period.value
        assert subscription.auto_renew is False
        assert as_utc(subscription.grace_period_end) == now + timedelta(days=7)
        assert gateway.cancelled == ["sub_gw_c"]
        assert notifier.kinds() == ["subscription_cancelled"]

    def test_gateway_failure_does_not_block_cancellation(self, transition_engine, make_subscription, workspace, owner, basic_plan, gateway, gateway_error, db):
        """A gateway error is logged and local cancellation still happens."""
        subscription = make_subscription(workspace=workspace, plan=basic_plan, gateway_subscription_id="sub_gw_d")
        gateway.fail_with = gateway_error

        transition_engine.cancel_by_user(Principal.from_user(owner))

        db.refresh(subscription)
        assert subscription.status == SubscriptionStatusEnum.grace_period.value

    def test_cancel_without_active_subscription_raises(self, transition_engine, make_subscription, workspace, owner, basic_plan):
        """Only an active subscription can be cancelled by its owner."""
        make_subscription(workspace=workspace, plan=basic_plan, status=SubscriptionStatusEnum.past_due.value)

        with pytest.raises(CancellationError):
            transition_engine.cancel_by_user(Principal.from_user(owner))

    def test_legacy_user_can_cancel(self, transition_engine, make_subscription, legacy_user, basic_plan, db):
        """Per-user subscriptions are found through the legacy owner."""
        subscription = make_subscription(user=legacy_user, plan=basic_plan)

        result = transition_engine.cancel_by_user(Principal.from_user(legacy_user))

        assert result.subscription_id == subscription.id
