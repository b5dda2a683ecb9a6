"""
Structured logging configuration

Every record is emitted as one JSON object carrying the service name,
the request/correlation ids of the HTTP request being served and any
``extra_fields`` the caller attached. Payment identifiers found in the
custom fields are lifted into a ``payment`` block so a single checkout
can be followed across the callback, poll and finalize requests.
"""

import logging
import logging.handlers
import os
import sys
import json
import re
import time
import traceback
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from contextvars import ContextVar
import uuid
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

REDACTED = "***REDACTED***"
# Keys lifted out of extra_fields into the "payment" block
PAYMENT_KEYS = ("checkout_request_id", "transaction_id", "order_id", "mpesa_receipt_number")
# Probe endpoints hit every few seconds; logged at DEBUG only
QUIET_PATHS = frozenset({"/health", "/health/live", "/health/ready", "/health/startup", "/metrics"})

request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)
correlation_id_var: ContextVar[Optional[str]] = ContextVar('correlation_id', default=None)
user_id_var: ContextVar[Optional[str]] = ContextVar('user_id', default=None)

class StructuredFormatter(logging.Formatter):
    """JSON structured logging formatter"""

    def __init__(self, service_name: Optional[str] = None):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        log_obj: Dict[str, Any] = {
            "@timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name or os.getenv('SERVICE_NAME', 'pharmacy-checkout'),
            "environment": os.getenv('ENVIRONMENT', 'development'),
        }

        trace = {
            "request_id": request_id_var.get(),
            "correlation_id": correlation_id_var.get(),
            "user_id": user_id_var.get(),
        }
        trace = {k: v for k, v in trace.items() if v}
        if trace:
            log_obj["trace"] = trace

        if record.levelno >= logging.WARNING:
            log_obj["location"] = {
                "module": record.module,
                "function": record.funcName,
                "line": record.lineno,
            }

        if record.exc_info:
            log_obj["error"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "stacktrace": traceback.format_exception(*record.exc_info)
            }

        custom = dict(getattr(record, 'extra_fields', None) or {})
        payment = {key: custom.pop(key) for key in PAYMENT_KEYS if custom.get(key) is not None}
        if payment:
            log_obj["payment"] = payment
        if custom:
            log_obj["custom"] = custom

        return json.dumps(log_obj, default=str)

class SecurityFilter(logging.Filter):
    """Redact credentials and mask subscriber phone numbers"""

    SENSITIVE_FIELDS = [
        'password', 'passkey', 'access_token', 'api_key', 'secret',
        'authorization', 'cookie', 'consumer_secret'
    ]
    _credential = re.compile(
        r"(?i)\b(" + "|".join(SENSITIVE_FIELDS) + r")(['\"]?\s*[:=]\s*['\"]?)([^\s,'\"}]+)"
    )
    _bearer = re.compile(r"(?i)\bbearer\s+[\w\-.~+/]+=*")
    # Kenyan MSISDN in canonical form
    _msisdn = re.compile(r"\b254\d{6}(\d{3})\b")

    def _scrub(self, text: str) -> str:
        text = self._credential.sub(rf"\1\2{REDACTED}", text)
        text = self._bearer.sub(f"Bearer {REDACTED}", text)
        return self._msisdn.sub(r"***\1", text)

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = self._scrub(record.msg)
        extra_fields = getattr(record, 'extra_fields', None)
        if isinstance(extra_fields, dict):
            record.extra_fields = {
                k: (REDACTED if k.lower() in self.SENSITIVE_FIELDS
                    else self._scrub(v) if isinstance(v, str) else v)
                for k, v in extra_fields.items()
            }
        return True

def setup_logging(
    service_name: str,
    level: str = "INFO",
    enable_console: bool = True,
    log_file: Optional[str] = None
) -> None:
    """
    Setup structured logging for the service

    Args:
        service_name: Name reported in every record
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        enable_console: Write records to stdout
        log_file: Also write to this rotating file when given
    """
    os.environ['SERVICE_NAME'] = service_name

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))
    root_logger.handlers = []

    handlers = []
    if enable_console:
        handlers.append(logging.StreamHandler(sys.stdout))
    if log_file:
        handlers.append(logging.handlers.RotatingFileHandler(log_file, maxBytes=10485760, backupCount=5))

    formatter = StructuredFormatter(service_name)
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(SecurityFilter())
        root_logger.addHandler(handler)

    # httpx logs every gateway URL at INFO
    logging.getLogger('httpx').setLevel(logging.WARNING)
    logging.getLogger('uvicorn.access').setLevel(logging.WARNING)
    logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)

    root_logger.info(
        "Logging initialized",
        extra={'extra_fields': {'level': level, 'file': log_file}}
    )

class LoggerAdapter(logging.LoggerAdapter):
    """Adapter that merges fields bound at creation into each record's extra_fields"""

    def process(self, msg, kwargs):
        extra = dict(kwargs.get('extra') or {})
        if self.extra:
            extra['extra_fields'] = {**self.extra, **(extra.get('extra_fields') or {})}
        kwargs['extra'] = extra
        return msg, kwargs

    def bind(self, **fields) -> "LoggerAdapter":
        return LoggerAdapter(self.logger, {**self.extra, **fields})

def get_logger(name: str, **fields) -> LoggerAdapter:
    """Get a logger; keyword arguments are attached to every record it emits"""
    return LoggerAdapter(logging.getLogger(name), fields)

def set_request_context(
    request_id: Optional[str] = None,
    correlation_id: Optional[str] = None,
    user_id: Optional[str] = None
) -> None:
    """Set request context for log correlation"""
    if request_id:
        request_id_var.set(request_id)
    if correlation_id:
        correlation_id_var.set(correlation_id)
    if user_id:
        user_id_var.set(user_id)

def generate_request_id() -> str:
    return str(uuid.uuid4())

class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Logs one line per request with its status and duration, and echoes
    the request id back in ``X-Request-ID``
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get('X-Request-ID') or generate_request_id()
        # Gateway callbacks carry no ids of their own; correlate on request id
        correlation_id = request.headers.get('X-Correlation-ID') or request_id
        request_id_var.set(request_id)
        correlation_id_var.set(correlation_id)
        user_id_var.set(None)

        logger = get_logger(__name__)
        path = request.url.path
        level = logging.DEBUG if path in QUIET_PATHS else logging.INFO
        start_time = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception:
            logger.error(
                f"Request failed: {request.method} {path}",
                exc_info=True,
                extra={'extra_fields': {
                    'method': request.method,
                    'path': path,
                    'duration_ms': round((time.perf_counter() - start_time) * 1000, 2),
                }}
            )
            raise

        logger.log(
            level,
            f"{request.method} {path} -> {response.status_code}",
            extra={'extra_fields': {
                'method': request.method,
                'path': path,
                'status_code': response.status_code,
                'duration_ms': round((time.perf_counter() - start_time) * 1000, 2),
                'client_host': request.client.host if request.client else None,
            }}
        )

        response.headers['X-Request-ID'] = request_id
        return response
