"""Payment gateway webhook ingestion.

WHAT: Receives signed lifecycle events from the payment gateway and hands
      them to the subscription transition engine
WHY: The gateway is the authority on payments; its events drive every
     automatic subscription state change
REFERENCES:
    - pharmabill/services/billing/webhook_gateway.py (verification, parsing)
    - pharmabill/services/billing/transitions.py (state machine)

Response contract (the gateway retries on anything but 2xx):
    200  processed, duplicate, ignored (unknown type) or unresolvable target
    400  missing signature header or malformed event
    401  signature mismatch
    404  unknown provider
    500  secret not configured, or unhandled failure while applying the event
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from ..deps import Settings, get_settings, get_transition_engine
from ..schemas import WebhookResponse
from ..services.billing.exceptions import MalformedEventError, SignatureVerificationError
from ..services.billing.transitions import SubscriptionTransitionEngine
from ..services.billing.webhook_gateway import parse_event, verify_signature
from ..telemetry import capture_exception

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.post("/{provider}", response_model=WebhookResponse)
async def handle_payment_webhook(
    provider: str,
    request: Request,
    settings: Settings = Depends(get_settings),
    engine: SubscriptionTransitionEngine = Depends(get_transition_engine),
):
    """Handle a payment gateway event.

    Security:
        - HMAC-SHA256 over the raw body, header `<provider>-signature`
        - Fails closed when the provider secret is not configured

    Idempotency:
        - Replayed event ids are acknowledged without any mutation
    """
    provider = provider.lower()
    if provider not in settings.webhook_providers:
        raise HTTPException(status_code=404, detail="Unknown webhook provider")

    body = await request.body()
    signature = request.headers.get(f"{provider}-signature")

    try:
        verify_signature(body, signature, settings.webhook_secret(provider))
    except SignatureVerificationError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)

    try:
        event = parse_event(body, provider=provider)
    except MalformedEventError as e:
        logger.warning(f"[WEBHOOK] Rejected malformed {provider} event: {e}")
        raise HTTPException(status_code=400, detail=str(e))

    if not event.recognised:
        logger.info(f"[WEBHOOK] Unhandled {provider} event type: {event.type}")
        return WebhookResponse(event_id=event.id, event_type=event.type, action="ignored")

    logger.info(f"[WEBHOOK] Received {provider} event {event.type} ({event.id})")

    try:
        result = await run_in_threadpool(engine.apply, event)
    except Exception as e:
        logger.exception(f"[WEBHOOK] Failed to apply {event.type} {event.id}: {e}")
        capture_exception(e, extra={"provider": provider, "event_id": event.id, "event_type": event.type})
        return JSONResponse(
            status_code=500,
            content={"success": False, "event_id": event.id, "event_type": event.type, "message": "Webhook processing failed"},
        )

    return WebhookResponse(
        event_id=event.id,
        event_type=event.type,
        action=result.action,
    )
