"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, Sentry,
lifespan events that build the sync services, and the v1 API router.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.responses import Response

from src.crmsync.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.crmsync.api.v1.router import router as v1_router
from src.crmsync.config import Settings, get_settings
from src.crmsync.core.database import close_db, get_session, init_db
from src.crmsync.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.crmsync.sync.clients import HubSpotClient, RentmanClient
from src.crmsync.sync.coordinator import SyncCoordinator
from src.crmsync.sync.correlation import CorrelationStore
from src.crmsync.sync.dispatch import DeduplicationWindow, WebhookDispatcher
from src.crmsync.sync.documents import DocumentLinker
from src.crmsync.sync.financials import FinancialRefresher
from src.crmsync.sync.kinds import EntityKind
from src.crmsync.sync.recorder import SyncLogRepository
from src.crmsync.sync.retry import BackoffPolicy, ConsistencyWait
from src.crmsync.sync.synchronizers import build_synchronizers


def build_services(app: FastAPI, settings: Settings) -> None:
    """Wire clients, store, synchronizers, dispatcher and coordinator onto app.state."""
    backoff = BackoffPolicy.from_settings(settings)
    hubspot = HubSpotClient(
        settings.HUBSPOT_API_TOKEN,
        settings.HUBSPOT_BASE_URL,
        change_sources=settings.HUBSPOT_SELF_CHANGE_SOURCES,
        backoff=backoff,
        timeout=settings.HTTP_TIMEOUT_SECONDS,
    )
    rentman = RentmanClient(
        settings.RENTMAN_ACCESS_TOKEN,
        settings.RENTMAN_BASE_URL,
        integration_user_id=settings.RENTMAN_INTEGRATION_USER_ID,
        backoff=backoff,
        timeout=settings.HTTP_TIMEOUT_SECONDS,
    )
    store = CorrelationStore(session_factory=get_session)
    repository = SyncLogRepository(session_factory=get_session)
    synchronizers = build_synchronizers(
        hubspot,
        rentman,
        store,
        wait=ConsistencyWait.from_settings(settings),
        settings=settings,
    )

    app.state.hubspot_client = hubspot
    app.state.rentman_client = rentman
    app.state.correlation_store = store
    app.state.sync_log_repository = repository
    app.state.synchronizers = synchronizers
    app.state.dispatcher = WebhookDispatcher(
        synchronizers,
        repository,
        [hubspot.origin_tag, rentman.origin_tag],
        ignored_change_sources=settings.HUBSPOT_IGNORED_CHANGE_SOURCES,
        dedup_window=DeduplicationWindow(settings.WEBHOOK_DEDUP_WINDOW_SECONDS),
        history_size=settings.WEBHOOK_HISTORY_SIZE,
        financials=FinancialRefresher(
            rentman, synchronizers[EntityKind.DEAL], synchronizers[EntityKind.ORDER]
        ),
        documents=DocumentLinker.from_settings(settings, store, hubspot, rentman),
    )
    app.state.coordinator = SyncCoordinator(synchronizers, repository)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB, Sentry and sync services; close on shutdown."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()
    await init_db()

    # Initialize Sentry if DSN is configured
    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    build_services(app, settings)
    if not settings.HUBSPOT_API_TOKEN or not settings.RENTMAN_ACCESS_TOKEN:
        log.warning(
            "startup.missing_api_tokens",
            hubspot=bool(settings.HUBSPOT_API_TOKEN),
            rentman=bool(settings.RENTMAN_ACCESS_TOKEN),
        )
    log.info("startup.sync_services_initialized", environment=settings.ENVIRONMENT.value)

    yield

    await app.state.hubspot_client.aclose()
    await app.state.rentman_client.aclose()
    await close_db()
    log.info("shutdown.complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="CRM Sync",
        description="HubSpot and Rentman synchronization service",
        version="0.4.0",
        lifespan=lifespan,
        docs_url="/docs" if settings.ENVIRONMENT.value != "production" else None,
    )

    # Middleware (outermost first)
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(MetricsMiddleware)

    app.include_router(v1_router)

    @app.get("/metrics", include_in_schema=False)
    async def metrics() -> Response:
        return get_metrics_response()

    return app


app = create_app()
