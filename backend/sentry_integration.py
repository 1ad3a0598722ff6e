"""
Bank Reconciliation Core - Sentry Integration

Error tracking for upstream bank feed failures and unexpected persistence errors.
Calls are no-ops until init_sentry() succeeds with a DSN.
"""

import os
import logging
from typing import Optional, Dict, Any

import sentry_sdk
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

logger = logging.getLogger(__name__)

# Keys redacted from event payloads
SENSITIVE_KEYS = [
    "password", "token", "secret", "api_key", "authorization",
    "login", "iban", "bic", "cookie"
]


def init_sentry(
    dsn: Optional[str] = None,
    environment: str = "development",
    release: Optional[str] = None,
    sample_rate: float = 1.0,
) -> bool:
    """
    Initialize Sentry error tracking.

    Args:
        dsn: Sentry DSN (from environment if not provided)
        environment: Environment name (production, staging, development)
        release: Release version
        sample_rate: Error sampling rate (0.0 to 1.0)

    Returns:
        True if Sentry was initialized, False otherwise
    """
    dsn = dsn or os.environ.get("SENTRY_DSN", "")

    if not dsn:
        logger.info("Sentry DSN not configured. Error tracking disabled.")
        return False

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            release=release or os.environ.get("GIT_SHA", "unknown"),
            sample_rate=sample_rate,
            integrations=[
                SqlalchemyIntegration(),
                LoggingIntegration(
                    level=logging.INFO,
                    event_level=logging.ERROR
                ),
            ],
            send_default_pii=False,
            before_send=filter_sensitive_data,
        )

        logger.info(f"Sentry initialized for environment: {environment}")
        return True

    except Exception as e:
        logger.error(f"Failed to initialize Sentry: {e}")
        return False


def redact_dict(d: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively replace values of sensitive keys."""
    if not isinstance(d, dict):
        return d

    result = {}
    for key, value in d.items():
        key_lower = str(key).lower()
        if any(s in key_lower for s in SENSITIVE_KEYS):
            result[key] = "[REDACTED]"
        elif isinstance(value, dict):
            result[key] = redact_dict(value)
        elif isinstance(value, list):
            result[key] = [redact_dict(v) if isinstance(v, dict) else v for v in value]
        else:
            result[key] = value
    return result


def filter_sensitive_data(event: Dict[str, Any], hint: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Filter sensitive data from Sentry events.
    """
    if "request" in event:
        if "headers" in event["request"]:
            event["request"]["headers"] = redact_dict(event["request"]["headers"])
        if "data" in event["request"]:
            event["request"]["data"] = redact_dict(event["request"]["data"])

    if "extra" in event:
        event["extra"] = redact_dict(event["extra"])

    return event


def capture_exception(exception: Exception, **kwargs) -> Optional[str]:
    """
    Capture an exception to Sentry.

    Args:
        exception: The exception to capture
        **kwargs: Additional context

    Returns:
        Event ID if captured, None otherwise
    """
    try:
        with sentry_sdk.new_scope() as scope:
            for key, value in kwargs.items():
                scope.set_extra(key, value)
            return sentry_sdk.capture_exception(exception)
    except Exception as e:
        logger.error(f"Failed to capture exception to Sentry: {e}")
        return None
