"""Pytest configuration for app integration tests

WHAT: Provides shared fixtures for webhook, admin and middleware tests
WHY: Ensures consistent test setup, database isolation, and signed Stripe payloads
REFERENCES:
    - app/main.py: FastAPI application
    - app/database.py: Database configuration
    - app/deps.py: Settings and admin secret dependency
    - app/services/stripe_webhook_service.py: Webhook pipeline
"""

import pytest
import os
import json
import hashlib
import hmac
import time
from typing import Any, Dict, Generator, Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool
from fastapi.testclient import TestClient

# Ensure backend is in path
import sys
from pathlib import Path
BACKEND_ROOT = Path(__file__).resolve().parents[2]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

# Set test environment
TEST_WEBHOOK_SECRET = "whsec_test_secret"
TEST_ADMIN_SECRET = "test-admin-secret"

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ["STRIPE_WEBHOOK_SECRET"] = TEST_WEBHOOK_SECRET
os.environ["STRIPE_SECRET_KEY"] = "sk_test_123"
os.environ["ADMIN_SECRET"] = TEST_ADMIN_SECRET
os.environ["STRIPE_PRICE_MONTHLY"] = "price_monthly"
os.environ["STRIPE_PRICE_YEARLY"] = "price_yearly"


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine():
    """Create in-memory test database engine."""
    # StaticPool: the webhook route runs the pipeline in a worker thread
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # Create all tables
    from app.database import Base
    Base.metadata.create_all(bind=engine)

    yield engine

    # Cleanup
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def test_db_session(test_db_engine) -> Generator[Session, None, None]:
    """Create test database session with rollback."""
    SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=test_db_engine
    )

    session = SessionLocal()
    yield session
    session.rollback()
    session.close()


# ============================================================================
# Application & Client Fixtures
# ============================================================================

@pytest.fixture
def settings():
    """Fresh settings built from the test environment."""
    from app.deps import get_settings

    get_settings.cache_clear()
    yield get_settings()
    get_settings.cache_clear()


@pytest.fixture
def app(test_db_session, settings):
    """Create FastAPI test application."""
    from app.main import create_app

    test_app = create_app()

    # Override database dependency
    from app.database import get_db

    def override_get_db():
        yield test_db_session

    test_app.dependency_overrides[get_db] = override_get_db

    return test_app


@pytest.fixture
def client(app) -> TestClient:
    """Create TestClient for HTTP testing."""
    return TestClient(app)


@pytest.fixture
def admin_headers():
    return {"X-Admin-Secret": TEST_ADMIN_SECRET}


# ============================================================================
# Model Fixtures
# ============================================================================

@pytest.fixture
def test_user(test_db_session):
    """Create a free-tier test user."""
    from app.models import User, UserTierEnum

    user = User(email="test@example.com", tier=UserTierEnum.free.value)

    test_db_session.add(user)
    test_db_session.commit()
    test_db_session.refresh(user)

    return user


# ============================================================================
# Stripe Payload Helpers
# ============================================================================

def sign_payload(payload: bytes, secret: str = TEST_WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header the way Stripe does."""
    ts = timestamp if timestamp is not None else int(time.time())
    signed = f"{ts}.".encode("utf-8") + payload
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


def subscription_object(
    subscription_id: str = "sub_123",
    customer: str = "cus_123",
    status: str = "active",
    user_id: Optional[int] = None,
    period_end: int = 1740787200,  # 2025-03-01T00:00:00Z
    price_id: str = "price_monthly",
    **extra: Any,
) -> Dict[str, Any]:
    obj = {
        "id": subscription_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "current_period_start": period_end - 30 * 86400,
        "current_period_end": period_end,
        "cancel_at_period_end": False,
        "canceled_at": None,
        "trial_end": None,
        "metadata": {"userId": str(user_id)} if user_id is not None else {},
        "items": {
            "object": "list",
            "data": [{"id": "si_1", "price": {"id": price_id, "recurring": {"interval": "month"}}}],
        },
    }
    obj.update(extra)
    return obj


def stripe_event(
    event_id: str,
    event_type: str,
    obj: Dict[str, Any],
    created: int = 1735689600,  # 2025-01-01T00:00:00Z
) -> Dict[str, Any]:
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": created,
        "livemode": False,
        "data": {"object": obj},
    }


@pytest.fixture
def post_event(client):
    """POST a signed Stripe event and return the response."""
    def _post(event: Dict[str, Any], signature: Optional[str] = None):
        body = json.dumps(event).encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            "Stripe-Signature": signature if signature is not None else sign_payload(body),
        }
        return client.post("/api/stripe/webhook", content=body, headers=headers)

    return _post


# ============================================================================
# Notes
# ============================================================================
#
# USAGE:
#
# # Webhook test
# def test_subscription_created(post_event, test_user):
#     event = stripe_event("evt_1", "customer.subscription.created",
#                          subscription_object(user_id=test_user.id))
#     response = post_event(event)
#     assert response.status_code == 200
#
# ============================================================================
