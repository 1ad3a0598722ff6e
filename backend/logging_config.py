"""
Bank Reconciliation Core - Structured JSON Logging

Provides structured logging for production environments.
Outputs JSON format for log aggregation (Datadog, CloudWatch, etc.)
"""

import logging
import json
import sys
import os
from datetime import datetime, timezone
from typing import Any, Dict
import traceback


# Attributes every LogRecord carries; anything else came in through `extra`
_RESERVED_ATTRS = frozenset([
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "message", "taskName",
])

# Reconciliation audit fields, indexed at the top level of each log line
AUDIT_FIELDS = ("event", "ledger_transaction_id", "link_id", "actor")


class JSONFormatter(logging.Formatter):
    """
    Custom formatter that outputs JSON logs.
    Compatible with log aggregation services.
    """

    def __init__(self, service_name: str = "bank-reconciliation"):
        super().__init__()
        self.service_name = service_name
        self.environment = os.environ.get("ENVIRONMENT", "development")
        self.hostname = os.environ.get("HOSTNAME", "unknown")

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
            "environment": self.environment,
            "hostname": self.hostname,
        }

        log_data["location"] = {
            "file": record.pathname,
            "line": record.lineno,
            "function": record.funcName,
        }

        if record.exc_info:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": traceback.format_exception(*record.exc_info) if record.exc_info[0] else None,
            }

        for key in AUDIT_FIELDS:
            if key in record.__dict__:
                log_data[key] = record.__dict__[key]

        extra_fields = {
            key: value for key, value in record.__dict__.items()
            if key not in _RESERVED_ATTRS and key not in AUDIT_FIELDS
        }
        if extra_fields:
            log_data["extra"] = extra_fields

        return json.dumps(log_data, default=str)


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    service_name: str = "bank-reconciliation"
) -> logging.Logger:
    """
    Configure logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_format: Use JSON format (True for production)
        service_name: Service name for log aggregation

    Returns:
        Configured root logger
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(getattr(logging, level.upper(), logging.INFO))

    if json_format:
        handler.setFormatter(JSONFormatter(service_name=service_name))
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        ))

    root_logger.addHandler(handler)

    # Suppress noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    return root_logger
