"""External payment gateway client.

WHAT:
    Thin httpx client for the hosted payment gateway: customers, checkout
    sessions, and subscription cancellation. Every call is bounded by a
    timeout and failures surface as PaymentGatewayError.

WHY:
    The gateway is the authority on money movement; this service only asks it
    to start checkouts and stop renewals. State changes arrive back through
    signed webhooks (routers/webhooks.py).

REFERENCES:
    - pharmabill/routers/billing.py (checkout, cancel)
    - pharmabill/services/billing/transitions.py (best-effort cancel)
"""

import logging
from typing import Any, Dict, Optional

import httpx

from .exceptions import PaymentGatewayError

logger = logging.getLogger(__name__)


class HttpPaymentGateway:
    """Payment gateway REST client.

    Args:
        base_url: Gateway API root, e.g. https://api.nomba.com/v1
        secret_key: Server-side API key
        timeout_seconds: Per-request timeout
        transport: Optional httpx transport (tests use httpx.MockTransport)
    """

    def __init__(
        self,
        base_url: str,
        secret_key: Optional[str],
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.secret_key = secret_key
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if not self.secret_key:
            raise PaymentGatewayError("Payment gateway is not configured")

        url = f"{self.base_url}{path}"
        headers = {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }
        try:
            with httpx.Client(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = client.request(method, url, headers=headers, json=payload)
        except httpx.TimeoutException as e:
            logger.error(f"[GATEWAY] Timeout calling {method} {path}")
            raise PaymentGatewayError(f"Gateway timeout: {e}") from e
        except httpx.HTTPError as e:
            logger.error(f"[GATEWAY] Transport error calling {method} {path}: {e}")
            raise PaymentGatewayError(f"Gateway unreachable: {e}") from e

        if response.status_code >= 400:
            logger.error(f"[GATEWAY] {method} {path} failed: {response.status_code} - {response.text}")
            raise PaymentGatewayError(f"Gateway error: {response.text}", status_code=response.status_code)

        if not response.content:
            return {}
        return response.json()

    def create_customer(self, email: str, name: Optional[str] = None, metadata: Optional[Dict[str, str]] = None) -> str:
        data = self._request("POST", "/customers", {"email": email, "name": name, "metadata": metadata or {}})
        customer_id = data.get("id")
        if not customer_id:
            raise PaymentGatewayError("Gateway returned no customer id")
        logger.info(f"[GATEWAY] Created customer {customer_id} for {email}")
        return customer_id

    def create_checkout_session(
        self,
        customer_id: str,
        amount_minor: int,
        currency: str,
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
    ) -> Dict[str, Any]:
        """Open a hosted checkout; returns {"id", "url"}."""
        data = self._request(
            "POST",
            "/checkout/sessions",
            {
                "customer": customer_id,
                "amount": amount_minor,
                "currency": currency,
                "success_url": success_url,
                "cancel_url": cancel_url,
                "metadata": metadata,
            },
        )
        if not data.get("id") or not data.get("url"):
            raise PaymentGatewayError("Gateway returned an incomplete checkout session")
        return data

    def retrieve_checkout_session(self, session_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/checkout/sessions/{session_id}")

    def cancel_subscription(self, gateway_subscription_id: str) -> None:
        self._request("POST", f"/subscriptions/{gateway_subscription_id}/cancel")
        logger.info(f"[GATEWAY] Cancelled gateway subscription {gateway_subscription_id}")


def gateway_from_settings() -> HttpPaymentGateway:
    from pharmabill.deps import get_settings

    settings = get_settings()
    return HttpPaymentGateway(
        base_url=settings.PAYMENT_GATEWAY_API_URL,
        secret_key=settings.PAYMENT_GATEWAY_SECRET_KEY,
        timeout_seconds=settings.COLLABORATOR_TIMEOUT_SECONDS,
    )
