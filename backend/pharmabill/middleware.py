"""Response middleware for clients still on the per-user subscription model.

WHAT: Adds the old field names (workplace_id, current_plan_id,
      subscription_tier, current_subscription_id) next to the current ones
      in every JSON response
WHY: Older dashboard and mobile builds read the legacy names; they keep
     working until LEGACY_ALIASES_ENABLED is switched off

REFERENCES:
    - pharmabill/services/billing/compatibility.py (alias table)
"""

import json
import logging

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from .services.billing.compatibility import inject_legacy_aliases

logger = logging.getLogger(__name__)


class LegacyAliasMiddleware(BaseHTTPMiddleware):
    """Rewrite JSON bodies to carry legacy field aliases."""

    async def dispatch(self, request, call_next):
        response = await call_next(request)

        content_type = response.headers.get("content-type", "")
        if not content_type.startswith("application/json"):
            return response

        body = b"".join([chunk async for chunk in response.body_iterator])
        try:
            payload = json.loads(body)
        except ValueError:
            logger.warning(f"[COMPAT] Non-JSON body on {request.url.path} despite {content_type}")
            return _rebuild(response, body)

        return _rebuild(response, json.dumps(inject_legacy_aliases(payload)).encode("utf-8"))


def _rebuild(response, body: bytes) -> Response:
    """New response with `body`, keeping every original header line (repeated
    Set-Cookie included) except Content-Length."""
    rebuilt = Response(content=body, status_code=response.status_code)
    rebuilt.raw_headers = [
        (name, value) for name, value in response.headers.raw if name.lower() != b"content-length"
    ] + [(b"content-length", str(len(body)).encode("latin-1"))]
    return rebuilt
