"""
Telemetry Module
================

Observability for the billing service.

Components:
- sentry.py: Error tracking and performance monitoring

Environment Variables:
- SENTRY_DSN: Sentry project DSN
- ENVIRONMENT: Environment name (production, staging, development)

Related modules:
- pharmabill/main.py: Initializes Sentry on startup
- pharmabill/deps.py: Sets user context after authentication
- pharmabill/routers/webhooks.py: Reports unhandled webhook failures
"""

from pharmabill.telemetry.sentry import (
    init_sentry,
    set_user_context,
    capture_exception,
    capture_message,
)

__all__ = [
    "init_sentry",
    "set_user_context",
    "capture_exception",
    "capture_message",
]
