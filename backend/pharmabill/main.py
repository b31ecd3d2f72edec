"""FastAPI application entrypoint.

Configures CORS, the legacy alias middleware, includes routers, mounts the
read-only admin panel and exposes a healthcheck endpoint.
"""

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqladmin import Admin, ModelView
from starlette.middleware.sessions import SessionMiddleware
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from . import models, schemas  # noqa: E402
from .authentication import SimpleAuth  # noqa: E402
from .database import engine  # noqa: E402
from .deps import get_settings  # noqa: E402
from .middleware import LegacyAliasMiddleware  # noqa: E402
from .routers import admin as admin_router  # noqa: E402
from .routers import billing as billing_router  # noqa: E402
from .routers import webhooks as webhooks_router  # noqa: E402
from .services.billing.locks import get_lock_registry  # noqa: E402
from .telemetry import init_sentry  # noqa: E402
from .utils.env import missing_billing_secrets  # noqa: E402


# SQLAdmin views are read-only; every billing mutation goes through the
# lifecycle API so it is locked, validated and logged.

class _ReadOnlyView(ModelView):
    can_create = False
    can_edit = False
    can_delete = False


class WorkspaceAdmin(_ReadOnlyView, model=models.Workspace):
    column_list = [
        models.Workspace.id,
        models.Workspace.name,
        models.Workspace.subscription_status,
        models.Workspace.trial_end_date,
        models.Workspace.created_at,
    ]
    column_searchable_list = ["name", "billing_email"]
    column_sortable_list = ["name", "created_at"]
    name = "Workspace"
    name_plural = "Workspaces"
    icon = "fa-solid fa-prescription-bottle-medical"


class UserAdmin(_ReadOnlyView, model=models.User):
    column_list = [models.User.id, models.User.email, models.User.name, models.User.role, models.User.workspace_id]
    column_searchable_list = ["email", "name"]
    column_sortable_list = ["email", "name", "role"]
    name = "User"
    name_plural = "Users"
    icon = "fa-solid fa-user"


class PlanAdmin(_ReadOnlyView, model=models.Plan):
    column_list = [
        models.Plan.name,
        models.Plan.tier,
        models.Plan.price_amount,
        models.Plan.currency,
        models.Plan.billing_interval,
        models.Plan.is_active,
    ]
    column_sortable_list = ["name", "price_amount"]
    name = "Plan"
    name_plural = "Plans"
    icon = "fa-solid fa-tags"


class SubscriptionAdmin(_ReadOnlyView, model=models.Subscription):
    column_list = [
        models.Subscription.id,
        models.Subscription.workspace_id,
        models.Subscription.user_id,
        models.Subscription.status,
        models.Subscription.tier,
        models.Subscription.end_date,
        models.Subscription.gateway_subscription_id,
    ]
    column_searchable_list = ["gateway_subscription_id", "status"]
    column_sortable_list = ["status", "end_date", "created_at"]
    name = "Subscription"
    name_plural = "Subscriptions"
    icon = "fa-solid fa-receipt"


class PaymentAdmin(_ReadOnlyView, model=models.Payment):
    column_list = [
        models.Payment.id,
        models.Payment.subscription_id,
        models.Payment.amount,
        models.Payment.currency,
        models.Payment.status,
        models.Payment.is_manual,
        models.Payment.paid_at,
    ]
    column_searchable_list = ["external_reference", "event_id"]
    column_sortable_list = ["paid_at", "amount", "status"]
    name = "Payment"
    name_plural = "Payments"
    icon = "fa-solid fa-money-bill"


def create_app() -> FastAPI:
    init_sentry()

    app = FastAPI(
        title="PharmaBill API",
        description="""
        Subscription lifecycle and entitlement engine for pharmacy workspaces.

        This API provides endpoints for:
        - Payment gateway webhook ingestion
        - Subscription status, entitlements and plan limits
        - Hosted checkout, cancellation, upgrades and scheduled downgrades
        - Operator lifecycle adjustments (trials, credits, pauses, manual payments)

        Authenticated endpoints accept the JWT either as the `access_token`
        cookie or as a Bearer Authorization header.
        """,
        version="1.0.0",
        license_info={
            "name": "Proprietary",
        },
    )

    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")

    settings = get_settings()

    if settings.ADMIN_SECRET_KEY == "supersecretkey-change-this-in-production":
        logger.warning("[STARTUP] Using default admin secret key. Set ADMIN_SECRET_KEY for production.")

    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.ADMIN_SECRET_KEY
    )

    allowed_origins = [origin.strip() for origin in settings.BACKEND_CORS_ORIGINS.split(",") if origin.strip()]
    if settings.FRONTEND_URL not in allowed_origins:
        allowed_origins.append(settings.FRONTEND_URL)

    logger.info(f"[CORS] Allowed origins: {allowed_origins}")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if settings.LEGACY_ALIASES_ENABLED:
        app.add_middleware(LegacyAliasMiddleware)

    app.include_router(webhooks_router.router)
    app.include_router(billing_router.router)
    app.include_router(admin_router.router)

    @app.get(
        "/health",
        response_model=schemas.HealthResponse,
        tags=["Health"],
        summary="Health check",
        description="""
        Simple health check endpoint to verify the API is running.

        This endpoint:
        - Does not require authentication
        - Returns basic service status
        - Can be used for load balancer health checks
        """
    )
    def health():
        return schemas.HealthResponse(status="ok")

    @app.on_event("startup")
    async def startup_event():
        """Report the lock backend and any billing secrets left unset."""
        registry = get_lock_registry()
        if registry.distributed:
            if registry.health_check():
                logger.info("[STARTUP] Redis subscription locks are healthy")
            else:
                logger.warning("[STARTUP] Redis lock backend unreachable - lifecycle mutations will fail until it recovers")
        else:
            logger.info("[STARTUP] Using in-process subscription locks (single instance only)")
        for name, consequence in missing_billing_secrets(settings):
            logger.warning(f"[STARTUP] {name} is not set - {consequence}")

    # Operator panel lives under /admin/panel; /admin/workspaces/* is the lifecycle API
    admin = Admin(
        app,
        engine,
        base_url="/admin/panel",
        title="PharmaBill Admin",
        authentication_backend=SimpleAuth(secret_key=settings.ADMIN_SECRET_KEY),
    )
    admin.add_view(WorkspaceAdmin)
    admin.add_view(UserAdmin)
    admin.add_view(PlanAdmin)
    admin.add_view(SubscriptionAdmin)
    admin.add_view(PaymentAdmin)

    return app


app = create_app()
