"""
Sentry Error Tracking
=====================

Centralized error tracking for the billing backend.

Related files:
- app/main.py: Initializes Sentry in create_app()
- app/services/stripe_webhook_service.py: Reports retryable webhook failures

Environment Variables:
- SENTRY_DSN: Sentry project DSN (Sentry stays disabled without it)
- ENVIRONMENT: Environment name (production, staging, development)
- RELEASE_VERSION: Release tag set by CI/CD
"""

from __future__ import annotations

import os
import logging
from typing import Optional
from functools import lru_cache

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

logger = logging.getLogger(__name__)


@lru_cache()
def get_sentry_dsn() -> Optional[str]:
    return os.environ.get("SENTRY_DSN")


def init_sentry() -> bool:
    """
    Initialize Sentry SDK for FastAPI.

    Returns:
        True if Sentry was initialized, False when no DSN is configured or
        the SDK rejected the configuration.
    """
    dsn = get_sentry_dsn()
    if not dsn:
        return False

    environment = os.environ.get("ENVIRONMENT", "development")

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                SqlalchemyIntegration(),
                LoggingIntegration(
                    level=logging.INFO,        # INFO+ as breadcrumbs
                    event_level=logging.ERROR,  # ERROR+ as events
                ),
            ],
            traces_sample_rate=0.1,
            # Webhook payloads carry customer ids and emails
            send_default_pii=False,
            release=os.environ.get("RELEASE_VERSION"),
        )
        logger.debug(f"[SENTRY] Initialized for {environment} environment")
        return True

    except Exception as e:
        logger.error(f"[SENTRY] Failed to initialize: {e}")
        return False


def capture_exception(exception: BaseException, extra: Optional[dict] = None) -> None:
    """
    Manually capture an exception to Sentry.

    Use this for exceptions that are caught and translated (for example into
    an HTTP 5xx) but should still be tracked. A no-op when Sentry is not
    initialized.

    Example:
        except SQLAlchemyError as e:
            capture_exception(e, extra={"stripe_event_id": event.id})
            raise TransientStoreFailure(...)
    """
    with sentry_sdk.new_scope() as scope:
        if extra:
            for key, value in extra.items():
                scope.set_extra(key, value)
        sentry_sdk.capture_exception(exception)
