"""Webhook authentication and event parsing.

WHAT:
    - verify_signature(): HMAC-SHA256 of the raw request body against the
      provider's signature header, compared in constant time
    - parse_event(): decode the body into a typed WebhookEvent, validating the
      data block for every recognised event type

WHY:
    Signature verification is the only thing standing between the internet
    and subscription state, so it fails closed: an unconfigured secret
    rejects every delivery instead of accepting unsigned ones.

    The MAC is computed over the raw bytes, never over re-serialised JSON;
    key order or whitespace differences would otherwise break valid signatures.

REFERENCES:
    - pharmabill/routers/webhooks.py
    - HMAC: https://docs.python.org/3/library/hmac.html
"""

import hashlib
import hmac
import json
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .exceptions import MalformedEventError, SignatureVerificationError

logger = logging.getLogger(__name__)


# =============================================================================
# EVENT TYPES
# =============================================================================

PAYMENT_SUCCESSFUL = "payment.successful"
PAYMENT_FAILED = "payment.failed"
SUBSCRIPTION_CREATED = "subscription.created"
SUBSCRIPTION_RENEWED = "subscription.renewed"
SUBSCRIPTION_CANCELED = "subscription.canceled"
SUBSCRIPTION_EXPIRING_SOON = "subscription.expiring_soon"

PAYMENT_EVENTS = frozenset({PAYMENT_SUCCESSFUL, PAYMENT_FAILED})
SUBSCRIPTION_EVENTS = frozenset({
    SUBSCRIPTION_CREATED,
    SUBSCRIPTION_RENEWED,
    SUBSCRIPTION_CANCELED,
    SUBSCRIPTION_EXPIRING_SOON,
})
RECOGNISED_EVENTS = PAYMENT_EVENTS | SUBSCRIPTION_EVENTS


def _as_uuid(value: Optional[str]) -> Optional[UUID]:
    if not value:
        return None
    try:
        return UUID(str(value))
    except ValueError:
        logger.warning(f"[WEBHOOK] Ignoring non-UUID identifier in event: {value!r}")
        return None


class _EventModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")


class EventMetadata(_EventModel):
    """Our own identifiers, echoed back by the gateway."""
    subscription_id: Optional[str] = Field(default=None, alias="subscriptionId")
    workspace_id: Optional[str] = Field(default=None, alias="workspaceId")
    user_id: Optional[str] = Field(default=None, alias="userId")

    @property
    def subscription_uuid(self) -> Optional[UUID]:
        return _as_uuid(self.subscription_id)

    @property
    def workspace_uuid(self) -> Optional[UUID]:
        return _as_uuid(self.workspace_id)

    @property
    def user_uuid(self) -> Optional[UUID]:
        return _as_uuid(self.user_id)


class PaymentEventData(_EventModel):
    reference: Optional[str] = None
    # Minor currency units (kobo)
    amount: Decimal = Decimal("0")
    currency: str = "NGN"
    payment_method: Optional[str] = Field(default=None, alias="paymentMethod")
    failure_reason: Optional[str] = Field(default=None, alias="failureReason")
    gateway_subscription_id: Optional[str] = Field(default=None, alias="subscriptionId")
    end_date: Optional[datetime] = Field(default=None, alias="endDate")
    metadata: EventMetadata = Field(default_factory=EventMetadata)

    @property
    def amount_major(self) -> Decimal:
        return (self.amount / Decimal(100)).quantize(Decimal("0.01"))


class SubscriptionEventData(_EventModel):
    gateway_subscription_id: Optional[str] = Field(default=None, alias="subscriptionId")
    customer_id: Optional[str] = Field(default=None, alias="customerId")
    plan_id: Optional[str] = Field(default=None, alias="planId")
    tier: Optional[str] = None
    status: Optional[str] = None
    billing_interval: Optional[str] = Field(default=None, alias="billingInterval")
    start_date: Optional[datetime] = Field(default=None, alias="startDate")
    end_date: Optional[datetime] = Field(default=None, alias="endDate")
    trial_end_date: Optional[datetime] = Field(default=None, alias="trialEndDate")
    features: Optional[List[str]] = None
    days_remaining: Optional[int] = Field(default=None, alias="daysRemaining")
    workspace_id: Optional[str] = Field(default=None, alias="workspaceId")
    user_id: Optional[str] = Field(default=None, alias="userId")
    metadata: EventMetadata = Field(default_factory=EventMetadata)

    @property
    def plan_uuid(self) -> Optional[UUID]:
        return _as_uuid(self.plan_id)

    @property
    def owner_workspace_id(self) -> Optional[UUID]:
        return _as_uuid(self.workspace_id) or self.metadata.workspace_uuid

    @property
    def owner_user_id(self) -> Optional[UUID]:
        return _as_uuid(self.user_id) or self.metadata.user_uuid


class WebhookEvent(BaseModel):
    """Gateway event envelope: unique id, type, type-specific data."""
    model_config = ConfigDict(coerce_numbers_to_str=True)

    id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    data: Dict[str, Any] = Field(default_factory=dict)
    provider: Optional[str] = None

    @property
    def recognised(self) -> bool:
        return self.type in RECOGNISED_EVENTS

    def payment_data(self) -> PaymentEventData:
        return PaymentEventData.model_validate(self.data)

    def subscription_data(self) -> SubscriptionEventData:
        return SubscriptionEventData.model_validate(self.data)


# =============================================================================
# SIGNATURE VERIFICATION
# =============================================================================

def compute_signature(raw_body: bytes, shared_secret: str) -> str:
    return hmac.new(shared_secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_signature(raw_body: bytes, signature_header: Optional[str], shared_secret: Optional[str]) -> None:
    """Authenticate a webhook delivery.

    Raises:
        SignatureVerificationError: 500 if the secret is not configured,
            400 if the header is missing, 401 if the signature does not match
    """
    if not shared_secret:
        logger.error("[WEBHOOK] Webhook secret not configured - rejecting delivery")
        raise SignatureVerificationError("Webhook secret not configured", status_code=500)

    if not signature_header or not signature_header.strip():
        logger.warning("[WEBHOOK] Missing signature header")
        raise SignatureVerificationError("Missing signature", status_code=400)

    expected = compute_signature(raw_body, shared_secret)
    provided = signature_header.strip().lower().encode("utf-8")
    if not hmac.compare_digest(expected.encode("utf-8"), provided):
        logger.warning("[WEBHOOK] Invalid signature")
        raise SignatureVerificationError("Invalid signature", status_code=401)


# =============================================================================
# PARSING
# =============================================================================

def parse_event(raw_body: bytes, provider: Optional[str] = None) -> WebhookEvent:
    """Decode a verified body into a WebhookEvent.

    The data block of recognised event types is validated here so malformed
    deliveries are rejected before any handler runs.

    Raises:
        MalformedEventError: body is not JSON, lacks id/type, or carries invalid data
    """
    try:
        payload = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError) as e:
        raise MalformedEventError(f"Body is not valid JSON: {e}") from e

    if not isinstance(payload, dict):
        raise MalformedEventError("Event body must be a JSON object")

    try:
        event = WebhookEvent.model_validate({**payload, "provider": provider})
        if event.type in PAYMENT_EVENTS:
            event.payment_data()
        elif event.type in SUBSCRIPTION_EVENTS:
            event.subscription_data()
    except ValidationError as e:
        raise MalformedEventError(f"Invalid event: {e.errors()[0].get('msg')}") from e

    return event
