"""Pytest configuration for billing integration tests

WHAT: Shared fixtures for HTTP endpoint and engine-level tests
WHY: Consistent database isolation, auth tokens and fake collaborators
REFERENCES:
    - pharmabill/main.py: FastAPI application
    - pharmabill/deps.py: Dependency injection
    - pharmabill/services/billing/transitions.py: Transition engine
"""

import json
import os
from datetime import timedelta
from decimal import Decimal
from typing import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Set test environment before the application modules read it
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("NOMBA_WEBHOOK_SECRET", "test-webhook-secret")

from pharmabill.models import (  # noqa: E402
    Base,
    Plan,
    RoleEnum,
    Subscription,
    SubscriptionStatusEnum,
    User,
    Workspace,
)
from pharmabill.services.billing.compatibility import CompatibilityShim  # noqa: E402
from pharmabill.services.billing.exceptions import PaymentGatewayError  # noqa: E402
from pharmabill.services.billing.locks import SubscriptionLockRegistry  # noqa: E402
from pharmabill.services.billing.renewal_policy import RenewalPolicy  # noqa: E402
from pharmabill.services.billing.transitions import SubscriptionTransitionEngine  # noqa: E402
from pharmabill.services.billing.webhook_gateway import compute_signature, parse_event  # noqa: E402
from pharmabill.utils.time import utcnow  # noqa: E402

WEBHOOK_SECRET = os.environ["NOMBA_WEBHOOK_SECRET"]


# ============================================================================
# Fake collaborators
# ============================================================================

class RecordingNotifier:
    """Notifier that records every call instead of sending anything."""

    def __init__(self):
        self.sent = []

    def _record(self, kind, recipient, context):
        self.sent.append((kind, recipient, context))

    def payment_received(self, recipient, context):
        self._record("payment_received", recipient, context)

    def payment_failed(self, recipient, context):
        self._record("payment_failed", recipient, context)

    def subscription_activated_or_renewed(self, recipient, context):
        self._record("subscription_activated_or_renewed", recipient, context)

    def subscription_cancelled(self, recipient, context):
        self._record("subscription_cancelled", recipient, context)

    def expiring_soon(self, recipient, context):
        self._record("expiring_soon", recipient, context)

    def kinds(self):
        return [kind for kind, _, _ in self.sent]


class FakeGateway:
    """In-memory stand-in for HttpPaymentGateway."""

    def __init__(self):
        self.customers = []
        self.sessions = {}
        self.cancelled = []
        self.fail_with = None

    def _maybe_fail(self):
        if self.fail_with is not None:
            raise self.fail_with

    def create_customer(self, email, name=None, metadata=None):
        self._maybe_fail()
        customer_id = f"cus_{len(self.customers) + 1}"
        self.customers.append({"id": customer_id, "email": email, "name": name, "metadata": metadata})
        return customer_id

    def create_checkout_session(self, customer_id, amount_minor, currency, success_url, cancel_url, metadata):
        self._maybe_fail()
        session_id = f"cs_{len(self.sessions) + 1}"
        self.sessions[session_id] = {
            "id": session_id,
            "url": f"https://checkout.example.test/{session_id}",
            "customer": customer_id,
            "amount": amount_minor,
            "currency": currency,
            "metadata": metadata,
            "payment_status": "unpaid",
        }
        return self.sessions[session_id]

    def retrieve_checkout_session(self, session_id):
        self._maybe_fail()
        return self.sessions[session_id]

    def cancel_subscription(self, gateway_subscription_id):
        self._maybe_fail()
        self.cancelled.append(gateway_subscription_id)


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine():
    """In-memory SQLite shared across threads (TestClient runs handlers in a threadpool)."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db(test_db_engine) -> Generator[Session, None, None]:
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_db_engine)
    session = SessionLocal()
    yield session
    session.rollback()
    session.close()


# ============================================================================
# Collaborator Fixtures
# ============================================================================

@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def locks():
    return SubscriptionLockRegistry(timeout_seconds=2)


@pytest.fixture
def transition_engine(db, notifier, locks, gateway):
    return SubscriptionTransitionEngine(
        db,
        notifier=notifier,
        policy=RenewalPolicy(threshold=3),
        locks=locks,
        gateway=gateway,
        grace_period_days=7,
    )


# ============================================================================
# Application & Client Fixtures
# ============================================================================

@pytest.fixture
def app(db, notifier, gateway, locks):
    from pharmabill.database import get_db
    from pharmabill.deps import get_locks, get_notifier, get_payment_gateway
    from pharmabill.main import create_app

    test_app = create_app()

    def override_get_db():
        yield db

    test_app.dependency_overrides[get_db] = override_get_db
    test_app.dependency_overrides[get_notifier] = lambda: notifier
    test_app.dependency_overrides[get_payment_gateway] = lambda: gateway
    test_app.dependency_overrides[get_locks] = lambda: locks
    return test_app


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)


@pytest.fixture
def auth_headers():
    """Build Bearer headers for a user."""
    from pharmabill.security import create_access_token

    def _headers(user: User) -> dict:
        return {"Authorization": f"Bearer {create_access_token(user.email)}"}

    return _headers


# ============================================================================
# Model Fixtures
# ============================================================================

@pytest.fixture
def basic_plan(db):
    plan = Plan(
        name="Basic",
        tier="basic",
        price_amount=Decimal("5000.00"),
        currency="NGN",
        billing_interval="monthly",
        features=["inventory", "prescriptions"],
        limits={"users": 3, "locations": 1, "patients": 500},
        is_active=True,
    )
    db.add(plan)
    db.commit()
    return plan


@pytest.fixture
def pro_plan(db):
    plan = Plan(
        name="Professional",
        tier="professional",
        price_amount=Decimal("15000.00"),
        currency="NGN",
        billing_interval="monthly",
        features=["inventory", "prescriptions", "analytics", "multi_location"],
        limits={"users": 10, "locations": 5, "patients": None},
        is_active=True,
    )
    db.add(plan)
    db.commit()
    return plan


@pytest.fixture
def workspace(db):
    workspace = Workspace(name="Green Cross Pharmacy", billing_email="billing@greencross.test")
    db.add(workspace)
    db.commit()
    return workspace


@pytest.fixture
def owner(db, workspace):
    user = User(email="owner@greencross.test", name="Ada Obi", role=RoleEnum.owner, workspace_id=workspace.id, features=[])
    db.add(user)
    db.flush()
    workspace.owner_id = user.id
    db.commit()
    return user


@pytest.fixture
def pharmacist(db, workspace):
    user = User(email="pharmacist@greencross.test", name="Tunde Bello", role=RoleEnum.pharmacist, workspace_id=workspace.id, features=[])
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def super_admin(db):
    user = User(email="ops@pharmabill.test", name="Ops", role=RoleEnum.super_admin, workspace_id=None, features=[])
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def legacy_user(db):
    """User from before workspaces existed; owns a subscription directly."""
    user = User(email="legacy@chemist.test", name="Legacy Chemist", role=RoleEnum.owner, workspace_id=None, features=[])
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def make_subscription(db):
    """Create a subscription and point its owner at it."""

    def _make(
        workspace=None,
        user=None,
        plan=None,
        status=SubscriptionStatusEnum.active.value,
        end_in_days=30,
        **fields,
    ) -> Subscription:
        now = utcnow()
        subscription = Subscription(
            workspace_id=workspace.id if workspace else None,
            user_id=user.id if user else None,
            plan_id=plan.id if plan else None,
            status=status,
            tier=plan.tier if plan else None,
            billing_interval="monthly",
            start_date=now - timedelta(days=1),
            end_date=now + timedelta(days=end_in_days) if end_in_days is not None else None,
            auto_renew=True,
            features=list(plan.features) if plan else [],
            custom_features=[],
            limits=dict(plan.limits) if plan else {},
            price_at_purchase=plan.price_amount if plan else None,
            total_credits=0,
        )
        for name, value in fields.items():
            setattr(subscription, name, value)
        db.add(subscription)
        db.flush()
        CompatibilityShim(db).sync_pointers(subscription, make_current=True)
        db.commit()
        return subscription

    return _make


# ============================================================================
# Webhook helpers
# ============================================================================

@pytest.fixture
def make_event():
    """Build a parsed WebhookEvent from a payload dict."""

    def _make(event_id, event_type, data):
        body = json.dumps({"id": event_id, "type": event_type, "data": data}).encode()
        return parse_event(body, provider="nomba")

    return _make


@pytest.fixture
def post_webhook(client):
    """POST a signed webhook delivery."""

    def _post(payload, signature=None, provider="nomba"):
        body = json.dumps(payload).encode()
        headers = {"Content-Type": "application/json"}
        headers[f"{provider}-signature"] = signature if signature is not None else compute_signature(body, WEBHOOK_SECRET)
        return client.post(f"/webhooks/{provider}", content=body, headers=headers)

    return _post


@pytest.fixture
def gateway_error():
    return PaymentGatewayError("gateway down", status_code=503)
