"""Error tracking through Sentry.

Nothing is sent unless a DSN is configured. Events and reported context are
scrubbed of credentials before they leave the process.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration

from tollgate.config import Settings
from tollgate.logging import get_logger, is_sensitive_key

logger = get_logger(__name__)


def scrub(data: Any, *, depth: int = 0) -> Any:
    """Redact credential-looking keys in nested dicts and lists."""
    if depth > 10:
        return "[max depth exceeded]"
    if isinstance(data, dict):
        return {
            key: "[REDACTED]" if is_sensitive_key(str(key)) else scrub(value, depth=depth + 1)
            for key, value in data.items()
        }
    if isinstance(data, list):
        return [scrub(item, depth=depth + 1) for item in data]
    return data


def before_send(event: Dict[str, Any], hint: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    request = event.get("request")
    if isinstance(request, dict):
        request.pop("cookies", None)
        if "headers" in request:
            request["headers"] = scrub(request["headers"])
        if "data" in request:
            request["data"] = scrub(request["data"])
    if "extra" in event:
        event["extra"] = scrub(event["extra"])
    if "contexts" in event:
        event["contexts"] = scrub(event["contexts"])
    return event


def init_tracking(settings: Settings) -> bool:
    if not settings.sentry_dsn:
        logger.info("error_tracking_disabled")
        return False
    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.environment,
        traces_sample_rate=settings.sentry_traces_sample_rate,
        integrations=[
            StarletteIntegration(transaction_style="endpoint"),
            FastApiIntegration(transaction_style="endpoint"),
        ],
        send_default_pii=False,
        before_send=before_send,
    )
    logger.info("error_tracking_enabled", environment=settings.environment)
    return True


def report_exception(exc: BaseException, **context: Any) -> None:
    """Send ``exc`` to error tracking unless its class opts out.

    Service errors carry a ``track`` flag; credential mistakes and other
    routine client errors set it to ``False`` and are never reported.
    """
    if getattr(exc, "track", True) is False:
        return
    with sentry_sdk.new_scope() as scope:
        if context:
            scope.set_context("request", scrub(context))
        sentry_sdk.capture_exception(exc)
