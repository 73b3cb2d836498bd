"""Structured request logging middleware.

Logs every request with:
- method, path, status_code, duration_ms
- request_id (taken from an inbound X-Request-ID or generated per request,
  and echoed on the response)
- source (hubspot / rentman) for webhook deliveries

Health check and scrape paths (/health, /metrics) log at debug level.
"""

from __future__ import annotations

import logging
import time
import uuid

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.crmsync.config import Environment, get_settings

logger = structlog.get_logger(__name__)

QUIET_PATHS = ("/health", "/metrics")
WEBHOOK_PREFIX = "/webhooks/"

# Outbound calls are logged by the system clients
NOISY_LOGGERS = ("httpx", "httpcore")


def configure_structlog() -> None:
    """JSON output in production, console rendering elsewhere."""
    settings = get_settings()
    logging.basicConfig(format="%(message)s", level=settings.LOG_LEVEL.upper())
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if settings.ENVIRONMENT == Environment.production:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _request_context(request: Request, request_id: str) -> dict[str, str]:
    context = {"request_id": request_id}
    path = request.url.path
    if path.startswith(WEBHOOK_PREFIX):
        context["source"] = path[len(WEBHOOK_PREFIX):].strip("/")
    return context


class LoggingMiddleware(BaseHTTPMiddleware):
    """Logs each request and binds its request id for downstream log lines.

    Webhook background tasks run inside the same context, so dispatcher and
    synchronizer events of a delivery share the request id.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        context = _request_context(request, request_id)
        started = time.monotonic()
        structlog.contextvars.bind_contextvars(**context)

        try:
            response = await call_next(request)
        except Exception:
            logger.exception(
                "http.request_failed",
                method=request.method,
                path=request.url.path,
                duration_ms=round((time.monotonic() - started) * 1000, 2),
            )
            raise
        finally:
            structlog.contextvars.unbind_contextvars(*context)

        response.headers["X-Request-ID"] = request_id
        status_code = response.status_code
        if status_code >= 500:
            log_method = logger.error
        elif status_code >= 400:
            log_method = logger.warning
        elif request.url.path.startswith(QUIET_PATHS):
            log_method = logger.debug
        else:
            log_method = logger.info

        log_method(
            "http.request_completed",
            method=request.method,
            path=request.url.path,
            status_code=status_code,
            duration_ms=round((time.monotonic() - started) * 1000, 2),
            **context,
        )
        return response
