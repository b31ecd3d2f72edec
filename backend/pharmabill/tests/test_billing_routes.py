"""Tests for the self-service billing API.

WHAT: /billing plans, status, entitlements, usage checks, checkout,
      cancellation, upgrades and downgrades through the HTTP surface
WHY: Covers owner-only authorization, gateway interaction and the legacy
     response aliases that older clients depend on

REFERENCES:
  - pharmabill/routers/billing.py
  - pharmabill/middleware.py
  - pharmabill/deps.py (require_entitlement)
"""

from datetime import timedelta
from decimal import Decimal

from pharmabill.models import CheckoutSession, Subscription, SubscriptionStatusEnum, Workspace
from pharmabill.utils.time import utcnow


class TestPlans:
    """GET /billing/plans lists what a pharmacy can buy."""

    def test_lists_active_plans_by_price(self, client, pro_plan, basic_plan):
        """Plans come back cheapest first."""
        response = client.get("/billing/plans")

        assert response.status_code == 200
        names = [plan["name"] for plan in response.json()]
        assert names == ["Basic", "Professional"]

    def test_inactive_plans_hidden(self, client, basic_plan, pro_plan, db):
        """Retired plans are not offered."""
        pro_plan.is_active = False
        db.commit()
        names = [plan["name"] for plan in client.get("/billing/plans").json()]
        assert names == ["Basic"]


class TestStatus:
    """GET /billing/status summarizes the caller's subscription."""

    def test_workspace_subscription(self, client, owner, workspace, basic_plan, make_subscription, auth_headers):
        """An active workspace subscription reports plan, days left and access."""
        subscription = make_subscription(workspace=workspace, plan=basic_plan)

        response = client.get("/billing/status", headers=auth_headers(owner))

        assert response.status_code == 200
        body = response.json()
        assert body["has_subscription"] is True
        assert body["generation"] == "workspace"
        assert body["subscription"]["subscription_id"] == str(subscription.id)
        assert body["subscription"]["plan_name"] == "Basic"
        assert body["days_remaining"] == 30
        assert body["is_expired"] is False
        assert body["can_renew"] is False
        assert body["entitlement"]["allowed"] is True

    def test_legacy_field_aliases_present(self, client, owner, workspace, basic_plan, make_subscription, auth_headers):
        """Older clients still find the renamed fields under their old names."""
        make_subscription(workspace=workspace, plan=basic_plan)

        subscription = client.get("/billing/status", headers=auth_headers(owner)).json()["subscription"]

        assert subscription["workplace_id"] == subscription["workspace_id"] == str(workspace.id)
        assert subscription["current_plan_id"] == subscription["plan_id"] == str(basic_plan.id)
        assert subscription["subscription_tier"] == "basic"
        assert subscription["current_subscription_id"] == subscription["subscription_id"]

    def test_aliases_disabled(self, app, client, owner, workspace, basic_plan, make_subscription, auth_headers, monkeypatch):
        """LEGACY_ALIASES_ENABLED=false serves only the current field names."""
        from pharmabill.deps import get_settings
        from pharmabill.main import create_app
        from fastapi.testclient import TestClient

        monkeypatch.setenv("LEGACY_ALIASES_ENABLED", "false")
        get_settings.cache_clear()
        try:
            plain_app = create_app()
            plain_app.dependency_overrides = dict(app.dependency_overrides)
            make_subscription(workspace=workspace, plan=basic_plan)
            body = TestClient(plain_app).get("/billing/status", headers=auth_headers(owner)).json()
        finally:
            get_settings.cache_clear()
        assert "workplace_id" not in body["subscription"]

    def test_legacy_user_resolves_through_legacy_generation(self, client, legacy_user, basic_plan, make_subscription, auth_headers):
        """A user-owned subscription is still found for accounts without a workspace."""
        make_subscription(user=legacy_user, plan=basic_plan)
        body = client.get("/billing/status", headers=auth_headers(legacy_user)).json()
        assert body["generation"] == "legacy"
        assert body["subscription"]["workspace_id"] is None

    def test_no_subscription(self, client, owner, auth_headers):
        """No subscription is reported as invalid but not blocked."""
        body = client.get("/billing/status", headers=auth_headers(owner)).json()
        assert body["has_subscription"] is False
        assert body["subscription"] is None
        assert body["entitlement"]["valid"] is False
        assert body["entitlement"]["block_access"] is False

    def test_grace_period(self, client, owner, workspace, basic_plan, make_subscription, auth_headers):
        """A cancelled subscription in grace can be renewed."""
        make_subscription(workspace=workspace, plan=basic_plan, status="grace_period", grace_period_end=utcnow() + timedelta(days=3))
        body = client.get("/billing/status", headers=auth_headers(owner)).json()
        assert body["is_in_grace_period"] is True
        assert body["can_renew"] is True

    def test_expired_trial_reports_expired(self, client, owner, workspace, basic_plan, make_subscription, auth_headers):
        """A trial past its end date reads as expired before the sweeper runs."""
        make_subscription(
            workspace=workspace,
            plan=basic_plan,
            status=SubscriptionStatusEnum.trial.value,
            trial_end_date=utcnow() - timedelta(days=1),
            end_in_days=-1,
        )
        body = client.get("/billing/status", headers=auth_headers(owner)).json()
        assert body["is_expired"] is True
        assert body["can_renew"] is True
        assert body["days_remaining"] == 0
        assert body["entitlement"]["reason"] == "trial_expired"

    def test_requires_authentication(self, client):
        """Anonymous callers get 401."""
        assert client.get("/billing/status").status_code == 401


class TestEntitlementsAndUsage:
    """Feature checks and plan-limit checks."""

    def test_feature_check(self, client, owner, workspace, basic_plan, make_subscription, auth_headers):
        """Plan features are granted; others ask for an upgrade."""
        make_subscription(workspace=workspace, plan=basic_plan)
        headers = auth_headers(owner)

        granted = client.get("/billing/entitlements", params={"feature": "prescriptions"}, headers=headers).json()
        denied = client.get("/billing/entitlements", params={"feature": "analytics"}, headers=headers).json()

        assert granted["allowed"] is True
        assert granted["source"] == "subscription"
        assert denied["allowed"] is False
        assert denied["upgrade_required"] is True

    def test_usage_under_limit(self, client, owner, workspace, basic_plan, make_subscription, auth_headers):
        """Usage below the plan limit may grow by one."""
        make_subscription(workspace=workspace, plan=basic_plan)
        response = client.post("/billing/usage/check", json={"limit_key": "users", "current_usage": 1}, headers=auth_headers(owner))
        assert response.status_code == 200
        assert response.json()["limit"] == 3

    def test_usage_over_limit_is_429(self, client, owner, workspace, basic_plan, make_subscription, auth_headers):
        """Usage at the limit is refused with the limit in the detail."""
        make_subscription(workspace=workspace, plan=basic_plan)
        response = client.post("/billing/usage/check", json={"limit_key": "patients", "current_usage": 500}, headers=auth_headers(owner))
        assert response.status_code == 429
        detail = response.json()["detail"]
        assert detail["reason"] == "limit_exceeded"
        assert detail["limit"] == 500

    def test_unknown_limit_key_is_422(self, client, owner, auth_headers):
        """Only the known limit keys are accepted."""
        response = client.post("/billing/usage/check", json={"limit_key": "branches", "current_usage": 1}, headers=auth_headers(owner))
        assert response.status_code == 422

    def test_usage_check_blocked_for_suspended_subscription(self, client, owner, workspace, basic_plan, make_subscription, auth_headers):
        """A suspended pharmacy cannot create resources even under its limits."""
        make_subscription(workspace=workspace, plan=basic_plan, status=SubscriptionStatusEnum.suspended.value)

        response = client.post("/billing/usage/check", json={"limit_key": "users", "current_usage": 0}, headers=auth_headers(owner))

        assert response.status_code == 402
        detail = response.json()["detail"]
        assert detail["reason"] == "subscription_suspended"
        assert detail["requires_action"] is True

    def test_usage_check_blocked_for_expired_trial(self, client, owner, workspace, basic_plan, make_subscription, auth_headers):
        """An expired trial is blocked before the limit is looked at."""
        make_subscription(
            workspace=workspace,
            plan=basic_plan,
            status=SubscriptionStatusEnum.trial.value,
            trial_end_date=utcnow() - timedelta(days=1),
            end_in_days=-1,
        )
        response = client.post("/billing/usage/check", json={"limit_key": "users", "current_usage": 0}, headers=auth_headers(owner))
        assert response.status_code == 402
        assert response.json()["detail"]["reason"] == "trial_expired"

    def test_usage_check_without_subscription_is_degraded(self, client, owner, auth_headers):
        """No subscription context fails open and says so in a header."""
        response = client.post("/billing/usage/check", json={"limit_key": "users", "current_usage": 0}, headers=auth_headers(owner))
        assert response.status_code == 200
        assert response.headers["X-Entitlement-Status"] == "degraded"
        assert response.headers["X-Entitlement-Reason"] == "no_subscription"


class TestCheckout:
    """Hosted checkout creation and confirmation."""

    def test_checkout_creates_customer_and_session(self, client, owner, workspace, basic_plan, gateway, auth_headers, db):
        """First checkout creates the gateway customer and records the session."""
        response = client.post("/billing/checkout", json={"plan_id": str(basic_plan.id)}, headers=auth_headers(owner))

        assert response.status_code == 200
        body = response.json()
        assert body["session_id"] == "cs_1"
        assert body["checkout_url"].endswith("/cs_1")

        session = gateway.sessions["cs_1"]
        assert session["amount"] == 500000
        assert session["currency"] == "NGN"
        assert session["metadata"]["workspaceId"] == str(workspace.id)
        assert session["metadata"]["planId"] == str(basic_plan.id)
        assert gateway.customers[0]["email"] == "billing@greencross.test"

        db.expire_all()
        assert db.get(Workspace, workspace.id).gateway_customer_id == "cus_1"
        mapping = db.query(CheckoutSession).one()
        assert mapping.status == "pending"

    def test_yearly_checkout_of_monthly_plan_charges_twelve_months(self, client, owner, basic_plan, gateway, auth_headers):
        """Yearly billing of a monthly plan is charged up front."""
        client.post("/billing/checkout", json={"plan_id": str(basic_plan.id), "billing_interval": "yearly"}, headers=auth_headers(owner))
        assert gateway.sessions["cs_1"]["amount"] == 6000000

    def test_existing_customer_reused(self, client, owner, workspace, basic_plan, gateway, auth_headers, db):
        """A workspace with a gateway customer does not get a second one."""
        workspace.gateway_customer_id = "cus_existing"
        db.commit()
        client.post("/billing/checkout", json={"plan_id": str(basic_plan.id)}, headers=auth_headers(owner))
        assert gateway.customers == []
        assert gateway.sessions["cs_1"]["customer"] == "cus_existing"

    def test_staff_cannot_checkout(self, client, pharmacist, owner, basic_plan, auth_headers):
        """Staff members get 403."""
        response = client.post("/billing/checkout", json={"plan_id": str(basic_plan.id)}, headers=auth_headers(pharmacist))
        assert response.status_code == 403

    def test_user_without_workspace_is_400(self, client, legacy_user, basic_plan, auth_headers):
        """Checkout needs a workspace to bill."""
        response = client.post("/billing/checkout", json={"plan_id": str(basic_plan.id)}, headers=auth_headers(legacy_user))
        assert response.status_code == 400

    def test_gateway_failure_is_502(self, client, owner, basic_plan, gateway, gateway_error, auth_headers, db):
        """A gateway error leaves no half-created session behind."""
        gateway.fail_with = gateway_error
        response = client.post("/billing/checkout", json={"plan_id": str(basic_plan.id)}, headers=auth_headers(owner))
        assert response.status_code == 502
        assert db.query(CheckoutSession).count() == 0

    def test_confirm_unpaid_session_is_pending(self, client, owner, basic_plan, auth_headers, db):
        """Confirming before payment creates nothing."""
        headers = auth_headers(owner)
        session_id = client.post("/billing/checkout", json={"plan_id": str(basic_plan.id)}, headers=headers).json()["session_id"]

        body = client.post("/billing/checkout/confirm", json={"session_id": session_id}, headers=headers).json()

        assert body["success"] is False
        assert body["status"] == "pending"
        assert db.query(Subscription).count() == 0

    def test_confirm_paid_session_activates_once(self, client, owner, workspace, basic_plan, gateway, auth_headers, db):
        """Repeated confirmation of a paid session returns the same subscription."""
        headers = auth_headers(owner)
        session_id = client.post("/billing/checkout", json={"plan_id": str(basic_plan.id)}, headers=headers).json()["session_id"]
        gateway.sessions[session_id]["payment_status"] = "paid"
        gateway.sessions[session_id]["subscription"] = "sub_gw_1"

        first = client.post("/billing/checkout/confirm", json={"session_id": session_id}, headers=headers)
        second = client.post("/billing/checkout/confirm", json={"session_id": session_id}, headers=headers)

        assert first.status_code == 200
        assert first.json()["status"] == "completed"
        assert second.json()["subscription_id"] == first.json()["subscription_id"]
        assert db.query(Subscription).count() == 1

        db.expire_all()
        subscription = db.query(Subscription).one()
        assert subscription.status == SubscriptionStatusEnum.active.value
        assert subscription.gateway_subscription_id == "sub_gw_1"
        assert subscription.user_id == owner.id
        assert db.get(Workspace, workspace.id).current_subscription_id == subscription.id

    def test_confirm_unknown_session_is_404(self, client, owner, auth_headers):
        """Sessions we never created are not found."""
        response = client.post("/billing/checkout/confirm", json={"session_id": "cs_missing"}, headers=auth_headers(owner))
        assert response.status_code == 404

    def test_confirm_other_workspace_is_403(self, client, owner, basic_plan, auth_headers, db):
        """An owner cannot confirm another pharmacy's checkout."""
        from pharmabill.models import RoleEnum, User

        other_workspace = Workspace(name="Other Pharmacy")
        db.add(other_workspace)
        db.flush()
        other_owner = User(email="other@pharmacy.test", name="Other", role=RoleEnum.owner, workspace_id=other_workspace.id, features=[])
        db.add(other_owner)
        db.flush()
        other_workspace.owner_id = other_owner.id
        db.commit()

        session_id = client.post(
            "/billing/checkout", json={"plan_id": str(basic_plan.id)}, headers=auth_headers(other_owner)
        ).json()["session_id"]

        response = client.post("/billing/checkout/confirm", json={"session_id": session_id}, headers=auth_headers(owner))
        assert response.status_code == 403


class TestCancelAndDowngrade:
    """Owner cancellation and scheduled downgrades."""

    def test_owner_cancels_into_grace_period(self, client, owner, workspace, basic_plan, make_subscription, gateway, notifier, auth_headers, db):
        """Cancelling stops renewal at the gateway and starts the grace period."""
        subscription = make_subscription(workspace=workspace, plan=basic_plan, gateway_subscription_id="sub_gw_9")

        response = client.post("/billing/cancel", json={"reason": "Closing branch"}, headers=auth_headers(owner))

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == SubscriptionStatusEnum.grace_period.value
        assert body["grace_period_end"] is not None
        assert gateway.cancelled == ["sub_gw_9"]
        assert notifier.kinds() == ["subscription_cancelled"]
        db.refresh(subscription)
        assert subscription.auto_renew is False

    def test_staff_cannot_cancel(self, client, pharmacist, owner, workspace, basic_plan, make_subscription, auth_headers):
        """Staff members get 403."""
        make_subscription(workspace=workspace, plan=basic_plan)
        assert client.post("/billing/cancel", json={}, headers=auth_headers(pharmacist)).status_code == 403

    def test_cancel_without_active_subscription_is_404(self, client, owner, workspace, basic_plan, make_subscription, auth_headers):
        """Only an active subscription can be cancelled."""
        make_subscription(workspace=workspace, plan=basic_plan, status="suspended")
        assert client.post("/billing/cancel", json={}, headers=auth_headers(owner)).status_code == 404

    def test_schedule_downgrade(self, client, owner, workspace, basic_plan, pro_plan, make_subscription, auth_headers, db):
        """The downgrade is recorded but the current plan stays until term end."""
        subscription = make_subscription(workspace=workspace, plan=pro_plan)

        response = client.post("/billing/downgrade", json={"plan_id": str(basic_plan.id)}, headers=auth_headers(owner))

        assert response.status_code == 200
        assert response.json()["details"]["plan_id"] == str(basic_plan.id)
        db.refresh(subscription)
        assert subscription.scheduled_plan_id == basic_plan.id
        assert subscription.plan_id == pro_plan.id

    def test_downgrade_to_pricier_plan_is_400(self, client, owner, workspace, basic_plan, pro_plan, make_subscription, auth_headers):
        """A more expensive target is not a downgrade."""
        make_subscription(workspace=workspace, plan=basic_plan)
        response = client.post("/billing/downgrade", json={"plan_id": str(pro_plan.id)}, headers=auth_headers(owner))
        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "invalid_argument"

    def test_downgrade_without_subscription_is_404(self, client, owner, basic_plan, auth_headers):
        """No subscription to downgrade."""
        response = client.post("/billing/downgrade", json={"plan_id": str(basic_plan.id)}, headers=auth_headers(owner))
        assert response.status_code == 404


class TestUpgrade:
    """POST /billing/upgrade switches plans immediately and reports proration."""

    def test_owner_upgrades_with_prorated_difference(self, client, owner, workspace, basic_plan, pro_plan, make_subscription, auth_headers, db):
        """Basic to Professional with 30 days left costs the full monthly difference."""
        subscription = make_subscription(workspace=workspace, plan=basic_plan)

        response = client.post("/billing/upgrade", json={"plan_id": str(pro_plan.id)}, headers=auth_headers(owner))

        assert response.status_code == 200
        body = response.json()
        assert body["operation"] == "upgrade_plan"
        assert body["status"] == SubscriptionStatusEnum.active.value
        assert body["details"]["plan_id"] == str(pro_plan.id)
        assert body["details"]["tier"] == "professional"
        assert body["details"]["prorated_amount"] == "10000.00"

        db.expire_all()
        subscription = db.get(Subscription, subscription.id)
        assert subscription.plan_id == pro_plan.id
        assert "analytics" in subscription.features
        change = subscription.plan_changes[-1]
        assert change.reason == "Upgrade"
        assert change.prorated_amount == Decimal("10000.00")
        assert change.changed_by == str(owner.id)
        assert db.get(Workspace, workspace.id).current_plan_id == pro_plan.id

    def test_upgraded_plan_grants_new_features(self, client, owner, workspace, basic_plan, pro_plan, make_subscription, auth_headers):
        """The entitlement check sees the new plan right after the upgrade."""
        make_subscription(workspace=workspace, plan=basic_plan)
        headers = auth_headers(owner)

        client.post("/billing/upgrade", json={"plan_id": str(pro_plan.id)}, headers=headers)

        granted = client.get("/billing/entitlements", params={"feature": "analytics"}, headers=headers).json()
        assert granted["allowed"] is True

    def test_cheaper_plan_is_400(self, client, owner, workspace, basic_plan, pro_plan, make_subscription, auth_headers, db):
        """Moving down is a downgrade and must go through /billing/downgrade."""
        subscription = make_subscription(workspace=workspace, plan=pro_plan)

        response = client.post("/billing/upgrade", json={"plan_id": str(basic_plan.id)}, headers=auth_headers(owner))

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "invalid_argument"
        db.refresh(subscription)
        assert subscription.plan_id == pro_plan.id

    def test_same_plan_is_400(self, client, owner, workspace, basic_plan, make_subscription, auth_headers):
        """Re-selecting the current plan is not an upgrade."""
        make_subscription(workspace=workspace, plan=basic_plan)
        response = client.post("/billing/upgrade", json={"plan_id": str(basic_plan.id)}, headers=auth_headers(owner))
        assert response.status_code == 400

    def test_staff_cannot_upgrade(self, client, pharmacist, owner, workspace, basic_plan, pro_plan, make_subscription, auth_headers):
        """Only the workspace owner manages billing."""
        make_subscription(workspace=workspace, plan=basic_plan)
        response = client.post("/billing/upgrade", json={"plan_id": str(pro_plan.id)}, headers=auth_headers(pharmacist))
        assert response.status_code == 403

    def test_suspended_subscription_is_409(self, client, owner, workspace, basic_plan, pro_plan, make_subscription, auth_headers):
        """A suspended pharmacy has to pay before changing plans."""
        make_subscription(workspace=workspace, plan=basic_plan, status=SubscriptionStatusEnum.suspended.value)
        response = client.post("/billing/upgrade", json={"plan_id": str(pro_plan.id)}, headers=auth_headers(owner))
        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "invalid_state"

    def test_upgrade_without_subscription_is_404(self, client, owner, pro_plan, auth_headers):
        """No subscription to change."""
        response = client.post("/billing/upgrade", json={"plan_id": str(pro_plan.id)}, headers=auth_headers(owner))
        assert response.status_code == 404

    def test_unknown_plan_is_404(self, client, owner, workspace, basic_plan, make_subscription, auth_headers):
        """Plan ids that do not exist are not found."""
        make_subscription(workspace=workspace, plan=basic_plan)
        response = client.post(
            "/billing/upgrade",
            json={"plan_id": "00000000-0000-0000-0000-000000000000"},
            headers=auth_headers(owner),
        )
        assert response.status_code == 404
