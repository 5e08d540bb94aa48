"""
Structured logging for the stock ledger.

Every record is written as one JSON object. Request-scoped context (request
id, correlation id, acting party) travels in context variables set by
RequestLoggingMiddleware, so service code only passes domain fields:

    logger.info("Stock reserved", extra={'extra_fields': {'stock_id': 7}})
"""

import json
import logging
import logging.handlers
import os
import sys
import time
import traceback
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)
correlation_id_var: ContextVar[Optional[str]] = ContextVar('correlation_id', default=None)
actor_var: ContextVar[Optional[str]] = ContextVar('actor', default=None)

REDACTED = "***REDACTED***"


class StructuredFormatter(logging.Formatter):
    """Render a record as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "@timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": os.getenv('SERVICE_NAME', 'stock-ledger-service'),
            "environment": os.getenv('ENVIRONMENT', 'development'),
            "version": os.getenv('SERVICE_VERSION', '1.0.0'),
            "source": f"{record.module}.{record.funcName}:{record.lineno}",
        }

        trace = {
            key: var.get()
            for key, var in (
                ("request_id", request_id_var),
                ("correlation_id", correlation_id_var),
                ("actor", actor_var),
            )
            if var.get()
        }
        if trace:
            entry["trace"] = trace

        fields = getattr(record, 'extra_fields', None)
        if fields:
            entry["custom"] = fields

        duration_ms = getattr(record, 'duration_ms', None)
        if duration_ms is not None:
            entry["performance"] = {"duration_ms": duration_ms}

        if record.exc_info:
            exc_type, exc_value, exc_tb = record.exc_info
            entry["error"] = {
                "type": exc_type.__name__,
                "message": str(exc_value),
                "code": getattr(exc_value, 'code', None),
                "stacktrace": traceback.format_exception(exc_type, exc_value, exc_tb),
            }

        return json.dumps(entry, default=str)


class PerformanceFilter(logging.Filter):
    """Lift a ``duration_ms`` found in extra_fields to the record itself."""

    def filter(self, record: logging.LogRecord) -> bool:
        fields = getattr(record, 'extra_fields', None)
        if isinstance(fields, dict) and 'duration_ms' in fields:
            record.duration_ms = round(fields['duration_ms'], 3)
        return True


class SecurityFilter(logging.Filter):
    """Mask credentials that end up in extra_fields."""

    SENSITIVE_FIELDS = frozenset({'password', 'token', 'api_key', 'secret', 'authorization', 'cookie'})

    def filter(self, record: logging.LogRecord) -> bool:
        fields = getattr(record, 'extra_fields', None)
        if isinstance(fields, dict):
            record.extra_fields = {
                key: REDACTED if key.lower() in self.SENSITIVE_FIELDS else value
                for key, value in fields.items()
            }
        return True


def setup_logging(
    service_name: str,
    level: str = "INFO",
    enable_console: bool = True,
    log_file: Optional[str] = None,
) -> None:
    """Route the root logger through StructuredFormatter.

    Args:
        service_name: stamped on every record as ``service``
        level: root log level name
        enable_console: write to stdout
        log_file: also write to a rotating file at this path
    """
    os.environ['SERVICE_NAME'] = service_name

    handlers = []
    if enable_console:
        handlers.append(logging.StreamHandler(sys.stdout))
    if log_file:
        handlers.append(logging.handlers.RotatingFileHandler(log_file, maxBytes=10 * 1024 * 1024, backupCount=5))

    formatter = StructuredFormatter()
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper()))
    root.handlers = []
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(PerformanceFilter())
        handler.addFilter(SecurityFilter())
        root.addHandler(handler)

    # SQL echo stays opt-in through the engine
    logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)
    logging.getLogger('uvicorn.access').setLevel(logging.WARNING)

    root.info(
        "Logging initialized",
        extra={'extra_fields': {'level': level, 'console': enable_console, 'log_file': log_file}}
    )


class LoggerAdapter(logging.LoggerAdapter):
    """Adapter whose bound fields are merged into every record's extra_fields."""

    def process(self, msg, kwargs):
        extra = dict(kwargs.get('extra') or {})
        if self.extra:
            extra['extra_fields'] = {**self.extra, **extra.get('extra_fields', {})}
        kwargs['extra'] = extra
        return msg, kwargs


def get_logger(name: str, **bound: Any) -> LoggerAdapter:
    """Logger for ``name``; keyword arguments are attached to every record."""
    return LoggerAdapter(logging.getLogger(name), bound)


def set_request_context(
    request_id: Optional[str] = None,
    correlation_id: Optional[str] = None,
    actor: Optional[str] = None,
) -> None:
    """Bind trace context for the current task.

    ``correlation_id`` is usually a checkout reference; ``actor`` the
    customer, operator or system job acting on stock.
    """
    if request_id:
        request_id_var.set(request_id)
    if correlation_id:
        correlation_id_var.set(correlation_id)
    if actor:
        actor_var.set(actor)


def generate_request_id() -> str:
    return uuid.uuid4().hex


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log each request with its outcome and duration; echo X-Request-ID."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get('X-Request-ID') or generate_request_id()
        set_request_context(
            request_id=request_id,
            correlation_id=request.headers.get('X-Correlation-ID'),
            actor=request.headers.get('X-Actor'),
        )
        logger = get_logger(__name__, method=request.method, path=request.url.path)

        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            logger.error(
                "Request failed",
                exc_info=True,
                extra={'extra_fields': {'duration_ms': (time.perf_counter() - started) * 1000}}
            )
            raise

        logger.info(
            f"{request.method} {request.url.path} -> {response.status_code}",
            extra={
                'extra_fields': {
                    'status_code': response.status_code,
                    'duration_ms': (time.perf_counter() - started) * 1000,
                }
            }
        )
        response.headers['X-Request-ID'] = request_id
        return response
