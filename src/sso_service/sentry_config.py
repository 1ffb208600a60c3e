"""
Sentry configuration for error tracking.

Enabled only when SENTRY_DSN is set.
"""

import logging

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from sso_service.api.cookies import ACCESS_TOKEN_COOKIE, REFRESH_TOKEN_COOKIE
from sso_service.config.settings import Settings

logger = logging.getLogger(__name__)

_SENSITIVE_QUERY_PARAMS = ("code", "state")


def scrub_event(event, hint):
    """Drop session cookies and authorization codes from error events"""
    request = event.get("request") or {}

    cookies = request.get("cookies")
    if isinstance(cookies, dict):
        for name in (ACCESS_TOKEN_COOKIE, REFRESH_TOKEN_COOKIE):
            if name in cookies:
                cookies[name] = "[Filtered]"

    query = request.get("query_string")
    if isinstance(query, str) and any(f"{p}=" in query for p in _SENSITIVE_QUERY_PARAMS):
        request["query_string"] = "[Filtered]"

    return event


def configure_sentry(settings: Settings) -> bool:
    """
    Initialize Sentry with FastAPI and SQLAlchemy integrations.

    Returns:
        True if Sentry was initialized
    """
    if not settings.sentry_dsn:
        logger.info("SENTRY_DSN not set, Sentry disabled")
        return False

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        integrations=[
            FastApiIntegration(),
            SqlalchemyIntegration(),
        ],
        before_send=scrub_event,
        send_default_pii=False,
        traces_sample_rate=0.1,
        environment=settings.environment,
        release=settings.service_version,
    )
    logger.info("Sentry initialized")
    return True
