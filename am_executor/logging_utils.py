#!/usr/bin/env python3
"""
am-executor - Logging Utilities

Structured logging for the executor service. Every record is stamped with
the correlation ID of the webhook request it belongs to, so the output of a
spawned command can be tied back to the notification that triggered it.

Key Features:
- NDJSON (newline-delimited JSON) format, opt-in via LOG_JSON_ENABLED
- Plain text format otherwise
- Correlation ID injection from the Flask request context
- Thread-safe

Usage:
    from am_executor.logging_utils import setup_json_logging

    logger = setup_json_logging(service_name="am-executor", version="0.3.0")
    logger.info("Processing alert", extra={"receiver": "team-x"})

Environment Variables:
    LOG_JSON_ENABLED: Enable JSON logging (default: false)
    LOG_LEVEL: Logging level override (default: INFO, DEBUG with -v)
    POD_NAME: Kubernetes pod name for metadata
"""

import os
import json
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict

from flask import g, has_request_context

# LogRecord attributes that are never copied into the JSON "extra" fields
_RESERVED_ATTRS = frozenset([
    "name",
    "msg",
    "args",
    "created",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "message",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "thread",
    "threadName",
    "taskName",
    "exc_info",
    "exc_text",
    "stack_info",
    "correlation_id",
])


class CorrelationIdFilter(logging.Filter):
    """Automatically adds correlation ID to all log records."""

    def filter(self, record):
        if getattr(record, "correlation_id", None):
            return True
        if has_request_context():
            record.correlation_id = g.get("correlation_id", "system")
        else:
            # Outside request context (startup, watchers, etc.)
            record.correlation_id = "system"
        return True


class NDJSONFormatter(logging.Formatter):
    """
    Formatter that outputs logs as NDJSON (newline-delimited JSON).

    Each log record is serialized as a single JSON object on one line.

    Fields included:
    - timestamp: ISO 8601 format with timezone
    - level, message, logger, module, function, line, thread
    - service, version, pod_name
    - correlation_id: Request correlation ID ("system" outside requests)
    - error: Exception details (if exception present)
    - any field passed via ``extra={}``
    """

    def __init__(self, service_name: str, version: str):
        super().__init__()
        self.service_name = service_name
        self.version = version
        self.pod_name = os.getenv("POD_NAME", "unknown")

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "thread": threading.get_ident(),
            "service": self.service_name,
            "version": self.version,
            "pod_name": self.pod_name,
            "correlation_id": getattr(record, "correlation_id", None) or "system",
        }

        if record.exc_info:
            log_entry["error"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": self.formatException(record.exc_info),
            }

        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS:
                continue
            try:
                json.dumps(value)
                log_entry[key] = value
            except (TypeError, ValueError):
                log_entry[key] = str(value)

        return json.dumps(log_entry, default=str)


def setup_json_logging(
    service_name: str,
    version: str,
    level: str = "INFO",
) -> logging.Logger:
    """
    Configure root logging for the service.

    Idempotent: existing root handlers are replaced, so it can be called
    again (e.g. from tests) without duplicating output.

    Args:
        service_name: Name reported in JSON records
        version: Service version string
        level: Default level, overridden by LOG_LEVEL

    Returns:
        The configured root logger
    """
    json_enabled = os.getenv("LOG_JSON_ENABLED", "false").lower() in (
        "true",
        "1",
        "yes",
        "on",
    )
    log_level = os.getenv("LOG_LEVEL", level).upper()

    logger = logging.getLogger()
    logger.handlers.clear()
    logger.setLevel(getattr(logging, log_level, logging.INFO))

    handler = logging.StreamHandler()
    handler.setLevel(logger.level)
    # On the handler, so records from third-party loggers (werkzeug) get it too
    handler.addFilter(CorrelationIdFilter())

    if json_enabled:
        handler.setFormatter(NDJSONFormatter(service_name=service_name, version=version))
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s - %(levelname)s - [%(correlation_id)s] - %(message)s"
        ))

    logger.addHandler(handler)

    if json_enabled:
        logger.info(f"JSON logging enabled for service={service_name} version={version}")
    else:
        logger.info(f"Standard logging enabled for service={service_name}")

    return logger
