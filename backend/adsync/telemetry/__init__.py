"""
Telemetry Module
================

Observability stack for the adsync backend.

Components:
- sentry.py: Error tracking for handled and unhandled failures

Environment Variables:
- SENTRY_DSN: Sentry project DSN
- ENVIRONMENT: Environment name reported with every event

Usage:
    from adsync.telemetry import init_observability, capture_exception

    init_observability()  # once per process
"""

from adsync.telemetry.sentry import (
    init_sentry,
    capture_exception,
    capture_message,
)


def init_observability() -> dict:
    """Initialize all observability tools and report which ones are active."""
    return {"sentry": init_sentry()}


__all__ = [
    "init_observability",
    "init_sentry",
    "capture_exception",
    "capture_message",
]
