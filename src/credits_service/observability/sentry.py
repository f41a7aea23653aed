"""Sentry SDK initialization for the credits service."""

import logging
import os
from typing import Any

import sentry_sdk
from sentry_sdk.integrations.asyncio import AsyncioIntegration
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration

from credits_service.config import settings

DEFAULT_TRACES_SAMPLE_RATE = 0.2  # 20% of transactions in production
DEV_TRACES_SAMPLE_RATE = 1.0

SENSITIVE_HEADERS = (
    "authorization",
    "cookie",
    "stripe-signature",
    "x-internal-service-token",
)
SENSITIVE_EXTRA_KEYS = ("password", "token", "secret", "api_key", "apikey", "credentials")

HEALTH_TRANSACTIONS = ("/health", "/metrics")


def _before_send(event: Any, _hint: dict[str, Any]) -> Any:
    """Scrub credentials from events before they leave the process."""
    request = event.get("request")
    if request is not None:
        headers = request.get("headers")
        if isinstance(headers, dict):
            for header in list(headers):
                if header.lower() in SENSITIVE_HEADERS:
                    headers[header] = "[Filtered]"

    extra = event.get("extra")
    if isinstance(extra, dict):
        for key in list(extra):
            if any(sensitive in key.lower() for sensitive in SENSITIVE_EXTRA_KEYS):
                extra[key] = "[Filtered]"
    return event


def _before_send_transaction(event: Any, _hint: dict[str, Any]) -> Any:
    if event.get("transaction", "") in HEALTH_TRANSACTIONS:
        return None
    return event


def init_sentry(service_name: str = "credits-service") -> bool:
    """Initialize Sentry if a DSN is configured.

    Returns:
        True if Sentry was initialized, False if SENTRY_DSN is not set
    """
    dsn = settings.SENTRY_DSN or os.environ.get("SENTRY_DSN")
    if not dsn:
        return False

    is_production = settings.ENVIRONMENT == "production"
    traces_rate = settings.SENTRY_TRACES_SAMPLE_RATE
    if traces_rate is None:
        traces_rate = DEFAULT_TRACES_SAMPLE_RATE if is_production else DEV_TRACES_SAMPLE_RATE

    sentry_sdk.init(
        dsn=dsn,
        environment=settings.ENVIRONMENT,
        release=f"{service_name}@{settings.VERSION}",
        traces_sample_rate=traces_rate,
        integrations=[
            StarletteIntegration(transaction_style="endpoint"),
            FastApiIntegration(transaction_style="endpoint"),
            AsyncioIntegration(),
            SqlalchemyIntegration(),
            LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
        ],
        before_send=_before_send,
        before_send_transaction=_before_send_transaction,
        send_default_pii=False,
        attach_stacktrace=True,
        server_name=service_name,
    )
    return True
