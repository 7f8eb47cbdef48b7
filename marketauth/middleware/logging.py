"""
Structured Logging Middleware

JSON request logging with a per-request ID that is propagated into every
log record emitted while the request is handled.
"""

import json
import logging
import time
import uuid
from collections.abc import Callable
from contextvars import ContextVar
from datetime import datetime, timezone

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

REQUEST_ID_HEADER = "X-Request-ID"

# Paths that are not worth an access log line
QUIET_PATHS = frozenset({"/health"})

request_id_var: ContextVar[str] = ContextVar("request_id", default="")


class RequestIdFilter(logging.Filter):
    """Attach the current request ID to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get("")
        return True


class StructuredFormatter(logging.Formatter):
    """One JSON object per log line."""

    EXTRA_FIELDS = ("user_id", "method", "path", "status_code", "duration_ms", "client_ip")

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", ""),
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key in self.EXTRA_FIELDS:
            if hasattr(record, key):
                log_data[key] = getattr(record, key)

        return json.dumps(log_data, default=str)


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.headers.get("X-Real-IP", request.client.host if request.client else "unknown")


class StructuredLoggingMiddleware(BaseHTTPMiddleware):
    """
    Access log middleware.

    Sets the request ID (taken from ``X-Request-ID`` or generated), echoes
    it on the response and logs method, path, status, duration, client IP
    and, once the bearer token was resolved, the user ID.
    """

    def __init__(self, app: ASGIApp, logger_name: str = "marketauth.access"):
        super().__init__(app)
        self.logger = logging.getLogger(logger_name)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request_id_var.set(request_id)
        start_time = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as e:
            self._log_request(request, 500, start_time, request_id, error=str(e))
            raise

        response.headers[REQUEST_ID_HEADER] = request_id
        self._log_request(request, response.status_code, start_time, request_id)
        return response

    def _log_request(
        self,
        request: Request,
        status_code: int,
        start_time: float,
        request_id: str,
        error: str | None = None,
    ) -> None:
        if request.url.path in QUIET_PATHS:
            return

        duration_ms = (time.perf_counter() - start_time) * 1000

        if status_code >= 500:
            log_level = logging.ERROR
        elif status_code >= 400:
            log_level = logging.WARNING
        else:
            log_level = logging.INFO

        extra = {
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "status_code": status_code,
            "duration_ms": round(duration_ms, 2),
            "client_ip": _client_ip(request),
        }

        # Set by get_current_user
        user_id = getattr(request.state, "user_id", None)
        if user_id:
            extra["user_id"] = user_id

        message = f"{request.method} {request.url.path} - {status_code} ({duration_ms:.2f}ms)"
        if error:
            message += f" - Error: {error}"

        self.logger.log(log_level, message, extra=extra)


def setup_structured_logging(log_level: str = "INFO", json_format: bool = True) -> None:
    """
    Configure root logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_format: Use the JSON formatter (plain text otherwise)
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level.upper()))
    root_logger.handlers.clear()

    handler = logging.StreamHandler()
    if json_format:
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s"))
    handler.addFilter(RequestIdFilter())
    root_logger.addHandler(handler)

    for logger_name, level in {
        "marketauth": log_level,
        "marketauth.access": log_level,
        "uvicorn.access": "WARNING",
        "sqlalchemy.engine": "WARNING",
        "httpx": "WARNING",
    }.items():
        logging.getLogger(logger_name).setLevel(getattr(logging, level.upper()))


def get_request_id() -> str:
    return request_id_var.get("")
