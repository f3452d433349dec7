"""Dependency providers and settings management."""

import hmac
from functools import lru_cache
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    BACKEND_CORS_ORIGINS: str = "https://www.mortality.watch,http://localhost:3000"

    # Stripe
    # Secrets are SecretStr so they never render in logs or reprs
    STRIPE_WEBHOOK_SECRET: Optional[SecretStr] = None
    STRIPE_SECRET_KEY: Optional[SecretStr] = None
    STRIPE_API_URL: str = "https://api.stripe.com"
    STRIPE_API_TIMEOUT_SECONDS: float = 10.0
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300
    STRIPE_PRICE_MONTHLY: Optional[str] = None
    STRIPE_PRICE_YEARLY: Optional[str] = None

    # Admin endpoints (failed webhook inspection / replay)
    ADMIN_SECRET: Optional[str] = None

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


def verify_admin_secret(
    x_admin_secret: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> bool:
    """Verify the X-Admin-Secret header for operator endpoints."""
    if not settings.ADMIN_SECRET:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin endpoints not configured",
        )
    if not x_admin_secret or not hmac.compare_digest(x_admin_secret, settings.ADMIN_SECRET):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin secret",
        )
    return True
