"""
Telemetry Module
================

Error tracking for the billing backend.

Components:
- sentry.py: Error tracking (FastAPI + SQLAlchemy integrations)

Environment Variables:
- SENTRY_DSN: Sentry project DSN

Usage:
    from app.telemetry import init_observability

    init_observability()
"""

from app.telemetry.sentry import init_sentry, capture_exception


def init_observability() -> dict:
    """
    Initialize all observability tools.

    Returns:
        Dict with status of each tool initialization, e.g. {"sentry": False}
    """
    return {
        "sentry": init_sentry(),
    }


__all__ = [
    "init_observability",
    "init_sentry",
    "capture_exception",
]
