"""
Sentry configuration for error tracking.

Captures unhandled exceptions and delivery-loop failures.
"""
import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from wa_gateway.config import settings
from wa_gateway.logging_config import logger


def configure_sentry():
    """
    Initialize Sentry with FastAPI and SQLAlchemy integrations.

    Requires SENTRY_DSN environment variable to be set.
    """
    dsn = settings.SENTRY_DSN

    if not dsn:
        logger.warning("sentry_disabled", reason="SENTRY_DSN not set")
        return

    sentry_sdk.init(
        dsn=dsn,
        integrations=[
            FastApiIntegration(),
            SqlalchemyIntegration(),
        ],
        before_send=add_context,
        # Sample rate: capture 10% of transactions for performance monitoring
        traces_sample_rate=0.1,
        environment=settings.ENVIRONMENT,
        release=settings.APP_VERSION,
    )

    logger.info("sentry_initialized", dsn_prefix=dsn[:20])


def add_context(event, hint):
    """
    Tag error events with the gateway component.

    Account context is attached by callers through sentry_sdk scopes.
    """
    event.setdefault("tags", {}).setdefault("component", "wa-gateway")
    return event


def capture_exception(exc_info=None):
    """
    Capture an exception to Sentry.

    Usage:
        try:
            # some code
        except Exception:
            capture_exception()
    """
    if sentry_sdk.get_client().is_active():
        sentry_sdk.capture_exception(exc_info)


def capture_message(message, level="info"):
    """Capture a message to Sentry."""
    if sentry_sdk.get_client().is_active():
        sentry_sdk.capture_message(message, level=level)
