"""SQLAlchemy ORM models and enums.

This module defines the subscription store: workspaces and users (the two
generations of subscription owners), plans, subscriptions, payments, and the
append-only child logs hanging off a subscription (webhook events, renewal
attempts, credits, plan changes).

Subscriptions are never hard-deleted; history is preserved in the child logs.
"""

import uuid
import enum
from datetime import timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
    event,
    inspect,
)
from sqlalchemy.orm import declarative_base, relationship

from .services.billing.exceptions import ImmutablePaymentError
from .services.billing.ledger import AppendOnlyLog
from .utils.time import utcnow


# Single Base used by the entire application
Base = declarative_base()


class UTCDateTime(TypeDecorator):
    """DateTime column that always round-trips as aware UTC."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


# Enums ---------------------------------------------------------

class RoleEnum(str, enum.Enum):
    super_admin = "super_admin"
    owner = "owner"
    pharmacist = "pharmacist"
    pharmacy_team = "pharmacy_team"
    intern_pharmacist = "intern_pharmacist"


class SubscriptionStatusEnum(str, enum.Enum):
    trial = "trial"
    active = "active"
    past_due = "past_due"
    grace_period = "grace_period"
    suspended = "suspended"
    expired = "expired"
    cancelled = "cancelled"
    paused = "paused"


# Statuses from which no billing event revives a subscription on its own
TERMINAL_STATUSES = frozenset({SubscriptionStatusEnum.expired.value, SubscriptionStatusEnum.cancelled.value})


class SubscriptionTierEnum(str, enum.Enum):
    free_trial = "free_trial"
    basic = "basic"
    pro = "pro"
    enterprise = "enterprise"


class BillingIntervalEnum(str, enum.Enum):
    monthly = "monthly"
    yearly = "yearly"


class PaymentStatusEnum(str, enum.Enum):
    pending = "pending"
    completed = "completed"
    failed = "failed"
    refunded = "refunded"


SETTLED_PAYMENT_STATUSES = frozenset({PaymentStatusEnum.completed.value, PaymentStatusEnum.failed.value})


class CheckoutStatusEnum(str, enum.Enum):
    pending = "pending"
    completed = "completed"
    expired = "expired"


# Owners ----------------------------------------------------------

class Workspace(Base):
    """Billable tenant (a pharmacy business).

    The workspace carries the *current generation* entitlement pointers:
    `current_subscription_id`, `current_plan_id` and a mirrored
    `subscription_status`, refreshed after every subscription mutation.
    """
    __tablename__ = "workspaces"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    owner_id = Column(Uuid, nullable=True)
    billing_email = Column(String, nullable=True)
    gateway_customer_id = Column(String, nullable=True)

    current_subscription_id = Column(Uuid, nullable=True)
    current_plan_id = Column(Uuid, ForeignKey("plans.id"), nullable=True)
    subscription_status = Column(String, nullable=True)
    trial_end_date = Column(UTCDateTime(timezone=True), nullable=True)

    created_at = Column(UTCDateTime(timezone=True), default=utcnow)

    users = relationship("User", back_populates="workspace")
    subscriptions = relationship("Subscription", back_populates="workspace")

    def __str__(self):
        return self.name


class User(Base):
    """Principal record.

    `features` holds per-user feature overrides. The `current_subscription_id`,
    `current_plan_id` and `subscription_tier` columns are the legacy per-user
    entitlement pointers kept alive for accounts not yet moved to a workspace
    subscription.
    """
    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    email = Column(String, unique=True, index=True, nullable=False)
    name = Column(String, nullable=False)
    role = Column(Enum(RoleEnum, values_callable=lambda obj: [e.value for e in obj]), nullable=False)
    workspace_id = Column(Uuid, ForeignKey("workspaces.id"), nullable=True)
    features = Column(JSON, default=list)

    # Legacy per-user subscription pointers
    current_subscription_id = Column(Uuid, nullable=True)
    current_plan_id = Column(Uuid, nullable=True)
    subscription_tier = Column(String, nullable=True)

    created_at = Column(UTCDateTime(timezone=True), default=utcnow)

    workspace = relationship("Workspace", back_populates="users")

    def __str__(self):
        return self.email


# Catalogue -------------------------------------------------------

class Plan(Base):
    """Pricing plan.

    `limits` keys: patients, users, locations, storage, api_calls.
    A null limit means unlimited.
    """
    __tablename__ = "plans"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    tier = Column(String, nullable=False)
    price_amount = Column(Numeric(12, 2), nullable=False, default=0)
    currency = Column(String, nullable=False, default="NGN")
    billing_interval = Column(String, nullable=False, default=BillingIntervalEnum.monthly.value)
    features = Column(JSON, default=list)
    limits = Column(JSON, default=dict)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(UTCDateTime(timezone=True), default=utcnow)

    def __str__(self):
        return f"{self.name} ({self.tier})"


# Subscriptions ---------------------------------------------------

class Subscription(Base):
    """Entitlement record for exactly one owner.

    Exactly one of `workspace_id` (current generation) or `user_id` (legacy
    generation) identifies the owner; `user_id` may additionally be set on
    workspace subscriptions to remember who purchased it.

    `status` is a plain string so that values outside SubscriptionStatusEnum
    written by older code still load; the resolver treats them as unknown.
    """
    __tablename__ = "subscriptions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    workspace_id = Column(Uuid, ForeignKey("workspaces.id"), nullable=True, index=True)
    user_id = Column(Uuid, ForeignKey("users.id"), nullable=True, index=True)
    plan_id = Column(Uuid, ForeignKey("plans.id"), nullable=True)

    status = Column(String, nullable=False, default=SubscriptionStatusEnum.trial.value)
    tier = Column(String, nullable=True)
    billing_interval = Column(String, nullable=False, default=BillingIntervalEnum.monthly.value)

    start_date = Column(UTCDateTime(timezone=True), nullable=True)
    end_date = Column(UTCDateTime(timezone=True), nullable=True)
    trial_end_date = Column(UTCDateTime(timezone=True), nullable=True)
    grace_period_end = Column(UTCDateTime(timezone=True), nullable=True)
    auto_renew = Column(Boolean, default=True, nullable=False)

    features = Column(JSON, default=list)
    custom_features = Column(JSON, default=list)
    limits = Column(JSON, default=dict)

    price_at_purchase = Column(Numeric(12, 2), nullable=True)
    total_credits = Column(Numeric(12, 2), nullable=False, default=0)

    gateway_subscription_id = Column(String, unique=True, nullable=True)
    gateway_customer_id = Column(String, nullable=True)

    # Pause snapshot (set while status == paused)
    paused_original_status = Column(String, nullable=True)
    paused_original_end_date = Column(UTCDateTime(timezone=True), nullable=True)
    paused_at = Column(UTCDateTime(timezone=True), nullable=True)
    pause_until = Column(UTCDateTime(timezone=True), nullable=True)
    pause_reason = Column(Text, nullable=True)

    # Downgrade scheduled to take effect at end_date
    scheduled_plan_id = Column(Uuid, ForeignKey("plans.id"), nullable=True)
    scheduled_change_at = Column(UTCDateTime(timezone=True), nullable=True)

    version = Column(Integer, nullable=False, default=1)

    created_at = Column(UTCDateTime(timezone=True), default=utcnow)
    updated_at = Column(UTCDateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __mapper_args__ = {"version_id_col": version}

    workspace = relationship("Workspace", back_populates="subscriptions")
    user = relationship("User")
    plan = relationship("Plan", foreign_keys=[plan_id])
    scheduled_plan = relationship("Plan", foreign_keys=[scheduled_plan_id])

    payments = relationship("Payment", back_populates="subscription", order_by="Payment.created_at")
    webhook_events = relationship("SubscriptionWebhookEvent", order_by="SubscriptionWebhookEvent.id")
    renewal_attempts = relationship("RenewalAttempt", order_by="RenewalAttempt.id")
    credits = relationship("SubscriptionCredit", order_by="SubscriptionCredit.id")
    plan_changes = relationship("PlanChange", order_by="PlanChange.id")

    # Append-only views over the child collections. Mutating code goes
    # through these so duplicate keys are rejected before a flush.

    @property
    def webhook_log(self) -> AppendOnlyLog:
        return AppendOnlyLog(self.webhook_events, key=lambda entry: entry.event_id, name="webhook_events")

    @property
    def renewal_log(self) -> AppendOnlyLog:
        return AppendOnlyLog(self.renewal_attempts, key=lambda entry: entry.event_id, name="renewal_attempts")

    @property
    def credit_log(self) -> AppendOnlyLog:
        return AppendOnlyLog(self.credits, name="credits")

    @property
    def plan_change_log(self) -> AppendOnlyLog:
        return AppendOnlyLog(self.plan_changes, name="plan_changes")

    @property
    def payment_history(self) -> list:
        """Completed payments in the order they were received."""
        return [p for p in self.payments if p.status == PaymentStatusEnum.completed.value]

    @property
    def is_paused(self) -> bool:
        return self.status == SubscriptionStatusEnum.paused.value

    def clear_pause_snapshot(self) -> None:
        """Drop the pause snapshot; callers do this whenever status leaves paused."""
        self.paused_original_status = None
        self.paused_original_end_date = None
        self.paused_at = None
        self.pause_until = None
        self.pause_reason = None

    def __str__(self):
        return f"Subscription {self.id} ({self.status})"


class Payment(Base):
    """Individual payment; immutable once completed or failed."""
    __tablename__ = "payments"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    subscription_id = Column(Uuid, ForeignKey("subscriptions.id"), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String, nullable=False, default="NGN")
    status = Column(String, nullable=False, default=PaymentStatusEnum.pending.value)
    provider = Column(String, nullable=True)
    payment_method = Column(String, nullable=True)
    external_reference = Column(String, nullable=True, index=True)
    event_id = Column(String, unique=True, nullable=True)
    failure_reason = Column(Text, nullable=True)
    is_manual = Column(Boolean, default=False, nullable=False)
    notes = Column(Text, nullable=True)
    paid_at = Column(UTCDateTime(timezone=True), nullable=True)
    created_at = Column(UTCDateTime(timezone=True), default=utcnow)

    subscription = relationship("Subscription", back_populates="payments")

    def __str__(self):
        return f"{self.amount} {self.currency} ({self.status})"


@event.listens_for(Payment, "before_update")
def _reject_settled_payment_updates(mapper, connection, target):
    state = inspect(target)
    if not any(attr.history.has_changes() for attr in state.attrs):
        return
    history = state.attrs.status.history
    previous = history.deleted[0] if history.deleted else target.status
    if previous in SETTLED_PAYMENT_STATUSES:
        raise ImmutablePaymentError(f"Payment {target.id} is {previous} and cannot be modified")


# Append-only child logs -----------------------------------------

class SubscriptionWebhookEvent(Base):
    """Processed gateway event; the dedup key for webhook replays."""
    __tablename__ = "subscription_webhook_events"
    __table_args__ = (
        UniqueConstraint("subscription_id", "event_id", name="uq_subscription_webhook_event"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    subscription_id = Column(Uuid, ForeignKey("subscriptions.id"), nullable=False, index=True)
    event_id = Column(String, nullable=False)
    event_type = Column(String, nullable=False)
    payload = Column(JSON, nullable=True)
    processed_at = Column(UTCDateTime(timezone=True), default=utcnow)


class RenewalAttempt(Base):
    __tablename__ = "renewal_attempts"
    __table_args__ = (
        UniqueConstraint("subscription_id", "event_id", name="uq_renewal_attempt_event"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    subscription_id = Column(Uuid, ForeignKey("subscriptions.id"), nullable=False, index=True)
    event_id = Column(String, nullable=True)
    attempted_at = Column(UTCDateTime(timezone=True), default=utcnow)
    successful = Column(Boolean, nullable=False)
    error = Column(Text, nullable=True)


class SubscriptionCredit(Base):
    __tablename__ = "subscription_credits"

    id = Column(Integer, primary_key=True, autoincrement=True)
    subscription_id = Column(Uuid, ForeignKey("subscriptions.id"), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    credit_type = Column(String, nullable=False, default="manual")
    reason = Column(Text, nullable=True)
    applied_by = Column(String, nullable=True)
    applied_at = Column(UTCDateTime(timezone=True), default=utcnow)


class PlanChange(Base):
    __tablename__ = "plan_changes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    subscription_id = Column(Uuid, ForeignKey("subscriptions.id"), nullable=False, index=True)
    from_plan_id = Column(Uuid, nullable=True)
    to_plan_id = Column(Uuid, nullable=False)
    from_plan_name = Column(String, nullable=True)
    to_plan_name = Column(String, nullable=True)
    effective_date = Column(UTCDateTime(timezone=True), nullable=False)
    reason = Column(Text, nullable=True)
    prorated_amount = Column(Numeric(12, 2), nullable=True)
    changed_by = Column(String, nullable=True)
    changed_at = Column(UTCDateTime(timezone=True), default=utcnow)


# Checkout ---------------------------------------------------------

class CheckoutSession(Base):
    """Maps a gateway checkout session to the workspace and plan it was opened for."""
    __tablename__ = "checkout_sessions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    session_id = Column(String, unique=True, nullable=False, index=True)
    workspace_id = Column(Uuid, ForeignKey("workspaces.id"), nullable=False)
    user_id = Column(Uuid, ForeignKey("users.id"), nullable=True)
    plan_id = Column(Uuid, ForeignKey("plans.id"), nullable=False)
    billing_interval = Column(String, nullable=False, default=BillingIntervalEnum.monthly.value)
    status = Column(String, nullable=False, default=CheckoutStatusEnum.pending.value)
    subscription_id = Column(Uuid, nullable=True)
    created_at = Column(UTCDateTime(timezone=True), default=utcnow)
    completed_at = Column(UTCDateTime(timezone=True), nullable=True)
