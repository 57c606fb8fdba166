"""
Sentry Error Tracking
=====================

Centralized error reporting for the API process and the arq worker.

Related files:
- adsync/main.py: Initializes Sentry on app startup
- adsync/workers/arq_worker.py: Initializes Sentry on worker startup
- adsync/services/*.py: Handled sync/resolution failures reported with context

Environment Variables:
- SENTRY_DSN: Sentry project DSN (Sentry stays disabled when unset)
- ENVIRONMENT: Environment name (production, staging, development)
- RELEASE_VERSION: Release identifier set by CI
"""

from __future__ import annotations

import logging
import os
from typing import Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

logger = logging.getLogger(__name__)

_initialized = False


def get_sentry_dsn() -> Optional[str]:
    """Return the configured DSN, or None when error tracking is disabled."""
    return os.environ.get("SENTRY_DSN") or None


def is_enabled() -> bool:
    return _initialized


def init_sentry() -> bool:
    """
    Initialize the Sentry SDK.

    Should be called once per process, before the FastAPI app or the worker
    starts handling work.

    Returns:
        True if Sentry was initialized, False when no DSN is configured or
        initialization failed.
    """
    global _initialized

    dsn = get_sentry_dsn()
    if not dsn:
        logger.debug("[SENTRY] SENTRY_DSN not set - error tracking disabled")
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
                    level=logging.INFO,         # INFO+ as breadcrumbs
                    event_level=logging.ERROR,  # ERROR+ as events
                ),
            ],
            traces_sample_rate=0.1,
            send_default_pii=False,
            release=os.environ.get("RELEASE_VERSION"),
        )
    except Exception as e:
        logger.error("[SENTRY] Failed to initialize: %s", e)
        return False

    _initialized = True
    logger.info("[SENTRY] Initialized for %s environment", environment)
    return True


def capture_exception(exception: BaseException, extra: Optional[dict] = None) -> None:
    """
    Report a handled exception to Sentry.

    Use this for failures that are caught and turned into result objects
    (per-account sync errors, per-ad resolution errors) but should still be
    visible in monitoring.

    Args:
        exception: The exception to capture
        extra: Additional context (workspace_id, account_id, operation, ...)
    """
    if not _initialized:
        logger.debug("[SENTRY] Disabled, not capturing: %r", exception)
        return

    try:
        with sentry_sdk.new_scope() as scope:
            for key, value in (extra or {}).items():
                scope.set_extra(key, value)
            sentry_sdk.capture_exception(exception)
    except Exception as e:
        logger.error("[SENTRY] Failed to capture exception: %s", e)


def capture_message(message: str, level: str = "info", extra: Optional[dict] = None) -> None:
    """
    Report a notable non-exception event to Sentry.

    Args:
        message: The message to capture
        level: Severity level (debug, info, warning, error, fatal)
        extra: Additional context to attach
    """
    if not _initialized:
        logger.log(logging.getLevelName(level.upper()), "Message (Sentry disabled): %s", message)
        return

    try:
        with sentry_sdk.new_scope() as scope:
            for key, value in (extra or {}).items():
                scope.set_extra(key, value)
            sentry_sdk.capture_message(message, level=level)
    except Exception as e:
        logger.error("[SENTRY] Failed to capture message: %s", e)
