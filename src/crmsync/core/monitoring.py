"""Prometheus metrics and Sentry integration.

Provides:
- MetricsMiddleware: ASGI middleware for HTTP request metrics
- record_api_call(): Counter for outbound HubSpot / Rentman calls
- record_webhook(): Counter for inbound webhook deliveries by outcome
- record_sync_item(): Counter for replayed entities by kind/action/status
- init_sentry(): Initialize Sentry for the FastAPI app
- get_metrics_response(): Prometheus exposition for /metrics
"""

from __future__ import annotations

import time

from prometheus_client import (
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# ── HTTP Metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── Sync Metrics ─────────────────────────────────────────────────────────────

external_api_requests_total = Counter(
    "external_api_requests_total",
    "Outbound calls to HubSpot and Rentman",
    ["system", "method", "status_code"],
)

webhook_deliveries_total = Counter(
    "webhook_deliveries_total",
    "Inbound webhook deliveries by final state",
    ["system", "state"],
)

sync_items_total = Counter(
    "sync_items_total",
    "Replayed entities by kind, action and status",
    ["kind", "action", "status"],
)

sync_run_active = Gauge(
    "sync_run_active",
    "1 while a batch synchronization run holds the run lock",
)


def record_api_call(system: str, method: str, status_code: int | str) -> None:
    external_api_requests_total.labels(
        system=system,
        method=method,
        status_code=str(status_code),
    ).inc()


def record_webhook(system: str, state: str) -> None:
    webhook_deliveries_total.labels(system=system, state=state).inc()


def record_sync_item(kind: str, action: str, status: str) -> None:
    sync_items_total.labels(kind=kind, action=action, status=status).inc()


# ── Metrics Middleware ───────────────────────────────────────────────────────


class MetricsMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that records Prometheus metrics for every HTTP request.

    Skips /metrics itself. Endpoints are labelled by route template
    (/sync/history/{run_id}) so per-id paths share one series.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        start_time = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start_time
        route = request.scope.get("route")
        endpoint = getattr(route, "path", None) or "unmatched"

        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=str(response.status_code),
        ).inc()

        http_request_duration_seconds.labels(
            method=request.method,
            endpoint=endpoint,
        ).observe(duration)

        return response


# ── Sentry Integration ───────────────────────────────────────────────────────


def init_sentry(dsn: str, environment: str) -> None:
    """Initialize Sentry SDK.

    Args:
        dsn: Sentry DSN string.
        environment: Deployment environment (development, staging, production).
    """
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.starlette import StarletteIntegration

    traces_sample_rate = 0.1 if environment == "production" else 1.0

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        traces_sample_rate=traces_sample_rate,
        integrations=[
            StarletteIntegration(),
            FastApiIntegration(),
        ],
    )


# ── Metrics Endpoint ─────────────────────────────────────────────────────────


def get_metrics_response() -> Response:
    """Generate Prometheus exposition format response."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
