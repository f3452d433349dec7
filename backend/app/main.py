"""FastAPI application entrypoint.

Configures CORS and the legacy QR redirect, includes routers, and exposes a
healthcheck endpoint.
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import logging
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from .deps import get_settings
from .middleware import LegacyQrRedirectMiddleware
from .routers import admin as admin_router
from .routers import stripe_webhooks as stripe_webhooks_router
from .telemetry import init_observability
from . import schemas


def create_app() -> FastAPI:
    observability = init_observability()
    logger.info(f"[STARTUP] Observability: {observability}")

    app = FastAPI(
        title="Billing API",
        description="""
        Backend for subscription billing and legacy link handling.

        This API provides endpoints for:
        - Stripe webhook ingestion (subscription lifecycle, invoices, checkout)
        - Operator inspection and replay of failed webhook events
        - Redirects for legacy compressed QR code links

        ## Webhooks

        Stripe deliveries are verified with the Stripe-Signature header and
        applied at most once per event id.
        """,
        version="1.0.0",
    )

    # Trust X-Forwarded-Proto from the load balancer so redirects keep https
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")

    settings = get_settings()

    # BACKEND_CORS_ORIGINS is a comma-separated list
    allowed_origins = [
        origin.strip() for origin in settings.BACKEND_CORS_ORIGINS.split(",") if origin.strip()
    ]
    logger.info(f"[CORS] Allowed origins: {allowed_origins}")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_middleware(LegacyQrRedirectMiddleware)

    app.include_router(stripe_webhooks_router.router)
    app.include_router(admin_router.router)

    @app.get(
        "/health",
        response_model=schemas.HealthResponse,
        tags=["Health"],
        summary="Health check",
        description="""
        Simple health check endpoint to verify the API is running.

        Does not require authentication and can be used for load balancer
        health checks.
        """
    )
    def health():
        return schemas.HealthResponse(status="ok")

    return app


app = create_app()
