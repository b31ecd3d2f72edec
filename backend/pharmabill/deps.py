"""Dependency providers and settings management."""

import logging
from functools import lru_cache
from typing import Callable, Optional

from fastapi import Cookie, Depends, Header, HTTPException, Response, status
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.orm import Session

from .database import get_db
from .models import User
from .security import decode_token
from .services.billing.entitlements import EntitlementDecision, EntitlementResolver
from .services.billing.lifecycle import SubscriptionAdjustments
from .services.billing.locks import SubscriptionLockRegistry, get_lock_registry
from .services.billing.notifier import Notifier, notifier_from_settings
from .services.billing.payment_gateway import HttpPaymentGateway, gateway_from_settings
from .services.billing.principal import Principal
from .services.billing.renewal_policy import FailureCountMode, RenewalPolicy
from .services.billing.transitions import SubscriptionTransitionEngine
from .telemetry import set_user_context

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    BACKEND_CORS_ORIGINS: str = "http://localhost:3000"
    FRONTEND_URL: str = "http://localhost:3000"
    ADMIN_SECRET_KEY: str = "supersecretkey-change-this-in-production"
    ADMIN_USERNAME: str = "admin"
    ADMIN_PASSWORD: Optional[str] = None

    # Redis (distributed subscription locks, arq worker). Unset = in-process locks.
    REDIS_URL: Optional[str] = None
    LOCK_TIMEOUT_SECONDS: float = 10.0

    # Webhooks: comma-separated provider names; each needs <PROVIDER>_WEBHOOK_SECRET
    WEBHOOK_PROVIDERS: str = "nomba"
    NOMBA_WEBHOOK_SECRET: Optional[str] = None

    # Payment gateway
    PAYMENT_GATEWAY_API_URL: str = "https://api.nomba.com/v1"
    PAYMENT_GATEWAY_SECRET_KEY: Optional[str] = None

    # Notifications
    RESEND_API_KEY: Optional[str] = None
    NOTIFY_FROM_EMAIL: str = "PharmaBill <billing@pharmabill.app>"

    COLLABORATOR_TIMEOUT_SECONDS: float = 10.0

    # Lifecycle policy
    GRACE_PERIOD_DAYS: int = 7
    RENEWAL_FAILURE_THRESHOLD: int = 3
    RENEWAL_FAILURE_COUNT_MODE: FailureCountMode = FailureCountMode.ALL_TIME

    # Legacy response aliases (workplace_id, subscription_tier...) during migration
    LEGACY_ALIASES_ENABLED: bool = True

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def webhook_providers(self) -> list[str]:
        return [p.strip().lower() for p in self.WEBHOOK_PROVIDERS.split(",") if p.strip()]

    def webhook_secret(self, provider: str) -> Optional[str]:
        """Shared secret for `provider`, read from <PROVIDER>_WEBHOOK_SECRET."""
        return getattr(self, f"{provider.upper()}_WEBHOOK_SECRET", None)


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


# =============================================================================
# AUTHENTICATION
# =============================================================================

def get_current_user(
    db: Session = Depends(get_db),
    access_token: Optional[str] = Cookie(default=None, alias="access_token"),
    authorization: Optional[str] = Header(default=None),
) -> User:
    """Resolve the current user from the `access_token` cookie or a Bearer header.

    The token value is expected to be in the form: "Bearer <jwt>" (prefix optional).
    """
    raw = access_token or authorization
    if not raw:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    token = raw[len("Bearer "):] if raw.startswith("Bearer ") else raw

    try:
        payload = decode_token(token)
    except Exception:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    subject = payload.get("sub")
    if not subject:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")

    user = db.query(User).filter(User.email == subject).first()
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")

    set_user_context(
        user_id=str(user.id),
        email=user.email,
        workspace_id=str(user.workspace_id) if user.workspace_id else None,
    )
    return user


def get_principal(user: User = Depends(get_current_user)) -> Principal:
    return Principal.from_user(user)


def require_super_admin(principal: Principal = Depends(get_principal)) -> Principal:
    if not principal.bypass_entitlements:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Administrator access required")
    return principal


# =============================================================================
# BILLING SERVICES
# =============================================================================

def get_notifier() -> Notifier:
    return notifier_from_settings()


def get_payment_gateway() -> HttpPaymentGateway:
    return gateway_from_settings()


def get_locks() -> SubscriptionLockRegistry:
    return get_lock_registry()


def get_renewal_policy(settings: Settings = Depends(get_settings)) -> RenewalPolicy:
    return RenewalPolicy(
        threshold=settings.RENEWAL_FAILURE_THRESHOLD,
        count_mode=settings.RENEWAL_FAILURE_COUNT_MODE,
    )


def get_transition_engine(
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
    policy: RenewalPolicy = Depends(get_renewal_policy),
    locks: SubscriptionLockRegistry = Depends(get_locks),
    gateway: HttpPaymentGateway = Depends(get_payment_gateway),
    settings: Settings = Depends(get_settings),
) -> SubscriptionTransitionEngine:
    return SubscriptionTransitionEngine(
        db,
        notifier=notifier,
        policy=policy,
        locks=locks,
        gateway=gateway,
        grace_period_days=settings.GRACE_PERIOD_DAYS,
    )


def get_adjustments(
    db: Session = Depends(get_db),
    locks: SubscriptionLockRegistry = Depends(get_locks),
) -> SubscriptionAdjustments:
    return SubscriptionAdjustments(db, locks)


def get_entitlement_resolver(db: Session = Depends(get_db)) -> EntitlementResolver:
    return EntitlementResolver(db)


# =============================================================================
# ENTITLEMENT GATE
# =============================================================================

def entitlement_error_detail(decision: EntitlementDecision) -> dict:
    return {
        "reason": decision.reason,
        "message": decision.message,
        "subscription_status": decision.status,
        "requires_action": decision.requires_action,
        "upgrade_required": decision.upgrade_required,
    }


def require_entitlement(feature: Optional[str] = None) -> Callable[..., EntitlementDecision]:
    """Build a dependency that gates a route on the caller's subscription.

    - blocked (expired trial, suspended, cancelled...) -> 402
    - requested feature not in the plan              -> 403
    - no subscription context / unknown status       -> allowed, response
      marked with X-Entitlement-Status: degraded

    Usage:
        @router.get("/inventory", dependencies=[Depends(require_entitlement("inventory"))])

    POST /billing/usage/check is gated with `require_entitlement()` so a
    blocked subscription cannot create new resources.
    """

    def dependency(
        response: Response,
        principal: Principal = Depends(get_principal),
        resolver: EntitlementResolver = Depends(get_entitlement_resolver),
    ) -> EntitlementDecision:
        decision = resolver.resolve(principal, requested_feature=feature)

        if decision.block_access:
            logger.info(f"[ENTITLEMENT] Blocked {principal.user_id}: {decision.reason}")
            raise HTTPException(status_code=status.HTTP_402_PAYMENT_REQUIRED, detail=entitlement_error_detail(decision))

        if not decision.allowed:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=entitlement_error_detail(decision))

        if decision.degraded:
            response.headers["X-Entitlement-Status"] = "degraded"
            response.headers["X-Entitlement-Reason"] = decision.warning or decision.reason or "unknown"
        elif decision.warning:
            response.headers["X-Entitlement-Warning"] = decision.warning
        return decision

    return dependency
