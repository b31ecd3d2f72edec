"""
Sentry Error Tracking
=====================

Centralized error tracking and performance monitoring using Sentry.

Related files:
- pharmabill/main.py: Initializes Sentry on app startup
- pharmabill/deps.py: Sets user context after authentication
- pharmabill/routers/webhooks.py: Captures unhandled webhook failures
- pharmabill/workers/billing_worker.py: Captures sweep failures

Environment Variables:
- SENTRY_DSN: Sentry project DSN (required for Sentry to work)
- ENVIRONMENT: Environment name (production, staging, development)
"""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from typing import Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.redis import RedisIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

logger = logging.getLogger(__name__)


@lru_cache()
def get_sentry_dsn() -> Optional[str]:
    """Get Sentry DSN from environment variable."""
    return os.environ.get("SENTRY_DSN")


def init_sentry() -> bool:
    """
    Initialize Sentry SDK for FastAPI.

    Should be called once during application startup.

    Returns:
        True if Sentry was initialized, False when no DSN is configured
        or initialization failed.
    """
    dsn = get_sentry_dsn()
    if not dsn:
        logger.info("[SENTRY] SENTRY_DSN not set - error tracking disabled")
        return False

    environment = os.environ.get("ENVIRONMENT", "development")

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                SqlalchemyIntegration(),
                RedisIntegration(),
                LoggingIntegration(
                    level=logging.INFO,         # INFO+ as breadcrumbs
                    event_level=logging.ERROR,  # ERROR+ as events
                ),
            ],
            traces_sample_rate=0.1,
            # Payment payloads carry customer emails; user context is set explicitly
            send_default_pii=False,
            release=os.environ.get("RELEASE_VERSION"),
        )
        logger.debug(f"[SENTRY] Initialized for {environment} environment")
        return True

    except Exception as e:
        logger.error(f"[SENTRY] Failed to initialize: {e}")
        return False


def set_user_context(
    user_id: str,
    email: Optional[str] = None,
    workspace_id: Optional[str] = None,
) -> None:
    """
    Attach user info to subsequent Sentry events in this request.

    Called by deps.get_current_user after successful authentication.
    """
    sentry_sdk.set_user({
        "id": user_id,
        "email": email,
        "workspace_id": workspace_id,
    })


def capture_exception(exception: Exception, extra: Optional[dict] = None) -> None:
    """
    Manually capture an exception to Sentry.

    Use for exceptions that are handled (e.g. turned into a 500 for the
    payment gateway to retry) but should still be tracked.

    Args:
        exception: The exception to capture
        extra: Additional context to attach to the event
    """
    if not sentry_sdk.is_initialized():
        logger.error(f"Exception (Sentry disabled): {exception}")
        return

    with sentry_sdk.new_scope() as scope:
        if extra:
            for key, value in extra.items():
                scope.set_extra(key, value)
        sentry_sdk.capture_exception(exception)


def capture_message(message: str, level: str = "info", extra: Optional[dict] = None) -> None:
    """
    Capture a message to Sentry (e.g. a subscription suspension audit event).
    """
    if not sentry_sdk.is_initialized():
        logger.log(logging.getLevelName(level.upper()), f"Message (Sentry disabled): {message}")
        return

    with sentry_sdk.new_scope() as scope:
        if extra:
            for key, value in extra.items():
                scope.set_extra(key, value)
        sentry_sdk.capture_message(message, level=level)
