"""Billing service exceptions.

WHAT:
    One hierarchy for every failure the subscription engine can raise.
    Routers translate these into HTTP responses; nothing below the router
    layer knows about status codes except `SignatureVerificationError`,
    whose code is part of the webhook contract.

REFERENCES:
    - pharmabill/routers/webhooks.py
    - pharmabill/routers/admin.py
"""

from typing import Optional


class BillingError(Exception):
    """Base class for subscription engine errors."""


class SignatureVerificationError(BillingError):
    """Webhook could not be authenticated.

    `status_code` follows the ingestion contract:
    500 (secret not configured), 400 (missing header), 401 (mismatch).
    """

    def __init__(self, message: str, status_code: int):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class MalformedEventError(BillingError):
    """Webhook body is not a valid event envelope."""


class SubscriptionNotFoundError(BillingError):
    """No subscription could be resolved for an event or principal."""


class CancellationError(BillingError):
    """User-initiated cancellation could not proceed."""


class DuplicateLogEntryError(BillingError):
    """An append-only log already holds an entry with the same key."""

    def __init__(self, log_name: str, key):
        super().__init__(f"{log_name} already contains entry {key!r}")
        self.log_name = log_name
        self.key = key


class SubscriptionBusyError(BillingError):
    """The per-subscription lock could not be acquired in time."""


class PaymentGatewayError(BillingError):
    """Call to the external payment gateway failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ImmutablePaymentError(BillingError):
    """Attempt to modify a payment that already reached a terminal status."""


class LifecycleError(BillingError):
    """Administrative lifecycle operation rejected before any mutation.

    `code` is one of: workspace_not_found, subscription_not_found,
    plan_not_found, invalid_state, invalid_argument.
    """

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message
