"""Billing notifications.

WHAT:
    The transition engine announces lifecycle events through the `Notifier`
    interface. `EmailNotifier` delivers them through the Resend SDK;
    `LoggingNotifier` is used when no API key is configured.
    `SafeNotifier` wraps any notifier so that delivery failures are logged
    and never propagate into the state transition that triggered them.

WHY:
    State is committed before notifications are sent. A notification is a
    side effect of a transition, not part of it: a mail outage must not leave
    a payment unrecorded or make the gateway retry an already applied event.

REFERENCES:
    - Resend Python SDK: https://resend.com/docs/api-reference/emails/send-email
    - pharmabill/services/billing/transitions.py
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol

import resend

logger = logging.getLogger(__name__)


@dataclass
class Recipient:
    email: Optional[str]
    name: Optional[str] = None


@dataclass
class NotificationContext:
    """Values available to notification templates."""
    plan_name: Optional[str] = None
    amount: Optional[str] = None
    currency: Optional[str] = None
    end_date: Optional[str] = None
    grace_period_end: Optional[str] = None
    days_remaining: Optional[int] = None
    failure_reason: Optional[str] = None
    failed_attempts: Optional[int] = None
    extra: Dict[str, Any] = field(default_factory=dict)


class Notifier(Protocol):
    def payment_received(self, recipient: Recipient, context: NotificationContext) -> None: ...

    def payment_failed(self, recipient: Recipient, context: NotificationContext) -> None: ...

    def subscription_activated_or_renewed(self, recipient: Recipient, context: NotificationContext) -> None: ...

    def subscription_cancelled(self, recipient: Recipient, context: NotificationContext) -> None: ...

    def expiring_soon(self, recipient: Recipient, context: NotificationContext) -> None: ...


# =============================================================================
# TEMPLATES
# =============================================================================

def _greeting(recipient: Recipient) -> str:
    return f"Hello {recipient.name}," if recipient.name else "Hello,"


def _render(kind: str, recipient: Recipient, ctx: NotificationContext) -> tuple[str, str]:
    """Return (subject, text body) for a notification kind."""
    plan = ctx.plan_name or "your plan"
    if kind == "payment_received":
        subject = "Payment received"
        body = f"We received your payment of {ctx.amount} {ctx.currency} for {plan}."
    elif kind == "payment_failed":
        subject = "Payment failed"
        body = f"Your payment for {plan} could not be processed"
        if ctx.failure_reason:
            body += f": {ctx.failure_reason}"
        body += ". Please update your payment method to avoid interruption."
    elif kind == "subscription_activated_or_renewed":
        subject = "Subscription active"
        body = f"Your {plan} subscription is active"
        if ctx.end_date:
            body += f" until {ctx.end_date}"
        body += "."
    elif kind == "subscription_cancelled":
        subject = "Subscription cancelled"
        body = f"Your {plan} subscription has been cancelled."
        if ctx.grace_period_end:
            body += f" You keep access until {ctx.grace_period_end}."
    elif kind == "expiring_soon":
        subject = "Subscription expiring soon"
        days = ctx.days_remaining if ctx.days_remaining is not None else "a few"
        body = f"Your {plan} subscription expires in {days} days. Renew to keep access."
    else:
        raise ValueError(f"Unknown notification kind: {kind}")
    return subject, f"{_greeting(recipient)}\n\n{body}\n"


# =============================================================================
# IMPLEMENTATIONS
# =============================================================================

class _TemplateNotifier:
    """Maps each Notifier method onto `_deliver(kind, ...)`."""

    def _deliver(self, kind: str, recipient: Recipient, context: NotificationContext) -> None:
        raise NotImplementedError

    def payment_received(self, recipient, context):
        self._deliver("payment_received", recipient, context)

    def payment_failed(self, recipient, context):
        self._deliver("payment_failed", recipient, context)

    def subscription_activated_or_renewed(self, recipient, context):
        self._deliver("subscription_activated_or_renewed", recipient, context)

    def subscription_cancelled(self, recipient, context):
        self._deliver("subscription_cancelled", recipient, context)

    def expiring_soon(self, recipient, context):
        self._deliver("expiring_soon", recipient, context)


class LoggingNotifier(_TemplateNotifier):
    """Logs notifications instead of sending them (no email provider configured)."""

    def _deliver(self, kind, recipient, context):
        subject, _ = _render(kind, recipient, context)
        logger.info(f"[NOTIFY] Resend not configured, would send '{subject}' to {recipient.email}")


class EmailNotifier(_TemplateNotifier):
    """Sends notifications through the Resend SDK with a bounded timeout."""

    def __init__(self, api_key: str, from_email: str, timeout_seconds: float = 10.0):
        self.from_email = from_email
        self.timeout_seconds = timeout_seconds
        resend.api_key = api_key
        # Module-level client; the SDK has no per-call timeout
        resend.default_http_client = resend.RequestsClient(timeout=max(1, int(timeout_seconds)))
        self.resend_client = resend

    def _deliver(self, kind, recipient, context):
        if not recipient.email:
            logger.info(f"[NOTIFY] No recipient email for {kind}; skipping")
            return
        subject, text = _render(kind, recipient, context)
        response = self.resend_client.Emails.send({
            "from": self.from_email,
            "to": [recipient.email],
            "subject": subject,
            "text": text,
        })
        message_id = response.get("id") if isinstance(response, dict) else None
        logger.info(f"[NOTIFY] Sent '{subject}' to {recipient.email}, id={message_id}")


class SafeNotifier:
    """Wraps a notifier; failures are logged and swallowed."""

    def __init__(self, inner: Notifier):
        self.inner = inner

    def _call(self, method: str, recipient: Recipient, context: NotificationContext) -> None:
        try:
            getattr(self.inner, method)(recipient, context)
        except Exception as e:
            logger.warning(f"[NOTIFY] {method} to {recipient.email} failed: {e}")

    def payment_received(self, recipient, context):
        self._call("payment_received", recipient, context)

    def payment_failed(self, recipient, context):
        self._call("payment_failed", recipient, context)

    def subscription_activated_or_renewed(self, recipient, context):
        self._call("subscription_activated_or_renewed", recipient, context)

    def subscription_cancelled(self, recipient, context):
        self._call("subscription_cancelled", recipient, context)

    def expiring_soon(self, recipient, context):
        self._call("expiring_soon", recipient, context)


def notifier_from_settings() -> Notifier:
    """Build the notifier configured for this process."""
    from pharmabill.deps import get_settings

    settings = get_settings()
    if settings.RESEND_API_KEY:
        inner: Notifier = EmailNotifier(
            api_key=settings.RESEND_API_KEY,
            from_email=settings.NOTIFY_FROM_EMAIL,
            timeout_seconds=settings.COLLABORATOR_TIMEOUT_SECONDS,
        )
    else:
        inner = LoggingNotifier()
    return SafeNotifier(inner)
