"""Environment loading and startup configuration checks.

WHAT:
    - load_env_file(): read backend/.env for local development
    - require_env(): mandatory variables (DATABASE_URL, JWT_SECRET), loading
      .env once before giving up
    - missing_billing_secrets(): collaborator secrets the billing engine can
      run without, each with what stops working while it is unset

WHY:
    Gateway and webhook secrets in production come from the deployment
    environment, so an exported variable always wins over the file. A missing
    webhook secret is not fatal at import time (the endpoint fails closed),
    but operators should see it at startup rather than on the first delivery.

REFERENCES:
    - pharmabill/database.py, pharmabill/security.py (require_env)
    - pharmabill/main.py (startup report)
"""

import logging
import os
from typing import List, Optional, Tuple

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def load_env_file(path: Optional[str] = None) -> bool:
    """Load `path` (default: .env found from the cwd) without overriding exports."""
    loaded = load_dotenv(dotenv_path=path, override=False)
    if loaded:
        logger.info("[STARTUP] Loaded local .env file (exported variables were not overwritten)")
    return loaded


def require_env(name: str) -> str:
    """Value of a mandatory variable; tries the local .env once before raising."""
    value = os.getenv(name)
    if not value:
        load_env_file()
        value = os.getenv(name)
    if not value:
        raise RuntimeError(f"{name} is not set. Ensure backend/.env is created or the variable is exported.")
    return value


def missing_billing_secrets(settings) -> List[Tuple[str, str]]:
    """(variable, consequence) for every unset collaborator secret."""
    missing = []
    for provider in settings.webhook_providers:
        if not settings.webhook_secret(provider):
            missing.append((
                f"{provider.upper()}_WEBHOOK_SECRET",
                f"{provider} webhooks are rejected with 500 until it is set",
            ))
    if not settings.PAYMENT_GATEWAY_SECRET_KEY:
        missing.append(("PAYMENT_GATEWAY_SECRET_KEY", "checkout and gateway cancellation are unavailable"))
    if not settings.RESEND_API_KEY:
        missing.append(("RESEND_API_KEY", "billing notifications are logged instead of emailed"))
    return missing
