"""
Sentry integration for error tracking.

Provides:
- Automatic exception capture with stacktrace
- SQLAlchemy query errors
- Queue worker / periodic job context tagging

PII is disabled and request bodies are never captured.
"""

import logging
import os
import re
from contextlib import contextmanager
from typing import Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

logger = logging.getLogger(__name__)

_sentry_initialized = False

_SENSITIVE_HEADERS = ("x-api-key", "x-apisports-key", "authorization", "cookie", "set-cookie")


def scrub_sensitive_data(event: dict, hint: dict) -> Optional[dict]:
    """Scrub API keys and tokens from Sentry events before sending."""
    try:
        request = event.get("request") or {}
        headers = request.get("headers") or {}
        for key in list(headers.keys()):
            if key.lower() in _SENSITIVE_HEADERS:
                headers[key] = "[REDACTED]"
        request["headers"] = headers

        query_string = request.get("query_string")
        if isinstance(query_string, str) and query_string:
            request["query_string"] = re.sub(
                r"(?i)(token|api_key|key|secret|password)=([^&]*)",
                r"\1=[REDACTED]",
                query_string,
            )

        if "data" in request:
            request["data"] = "[SCRUBBED]"
        event["request"] = request

        # httpx breadcrumbs carry the provider URLs; the forecast endpoint key may sit in the query
        for crumb in (event.get("breadcrumbs") or {}).get("values", []):
            url = (crumb.get("data") or {}).get("url")
            if isinstance(url, str) and "?" in url:
                crumb["data"]["url"] = url.split("?", 1)[0]
    except Exception as e:
        logger.warning(f"Sentry scrubbing error (continuing): {e}")

    return event


def init_sentry() -> bool:
    """
    Initialize Sentry SDK if SENTRY_DSN is configured.

    Environment variables:
    - SENTRY_DSN: Required. Sentry DSN from project settings.
    - SENTRY_ENABLED: Optional. Set to 'false' to disable even with DSN.
    - SENTRY_ENVIRONMENT / SENTRY_RELEASE: Optional tags.
    - SENTRY_TRACES_SAMPLE_RATE: Optional. Default 0.05.
    """
    global _sentry_initialized

    if _sentry_initialized:
        return True

    if os.getenv("SENTRY_ENABLED", "true").lower() == "false":
        logger.info("Sentry disabled via SENTRY_ENABLED=false")
        return False

    dsn = os.getenv("SENTRY_DSN")
    if not dsn:
        logger.info("Sentry not configured (SENTRY_DSN not set)")
        return False

    environment = os.getenv("SENTRY_ENVIRONMENT", "development")
    release = os.getenv("SENTRY_RELEASE", "unknown")
    traces_sample_rate = float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.05"))

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        release=release,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
            LoggingIntegration(level=logging.ERROR, event_level=logging.ERROR),
        ],
        traces_sample_rate=traces_sample_rate,
        send_default_pii=False,
        before_send=scrub_sensitive_data,
        ignore_errors=[KeyboardInterrupt, SystemExit],
    )

    _sentry_initialized = True
    logger.info(f"Sentry initialized: env={environment}, traces_sample_rate={traces_sample_rate}")
    return True


@contextmanager
def sentry_job_context(job_id: str, **extra_tags):
    """
    Tag the current scope with job context and capture exceptions before re-raising.

    Usage:
        with sentry_job_context("live_poll"):
            await poller.poll_cycle()
    """
    if not _sentry_initialized:
        yield
        return

    with sentry_sdk.new_scope() as scope:
        scope.set_tag("job_id", job_id)
        scope.set_context("job", {"job_id": job_id, **extra_tags})
        for key, value in extra_tags.items():
            if value is not None:
                scope.set_tag(key, str(value))
        try:
            yield scope
        except Exception as e:
            sentry_sdk.capture_exception(e)
            raise


def capture_exception(exception: Exception, job_id: str = None, **extra_context) -> None:
    """Capture an exception that is handled (not re-raised) by the caller."""
    if not _sentry_initialized:
        return

    with sentry_sdk.new_scope() as scope:
        if job_id:
            scope.set_tag("job_id", job_id)
        for key, value in extra_context.items():
            scope.set_extra(key, value)
        sentry_sdk.capture_exception(exception)
