"""FastAPI dependency injection for the sync services and operator access.

The lifespan builds one dispatcher, coordinator, correlation store and log
repository per process and keeps them on ``app.state``; these dependencies
hand them to endpoint function signatures.
"""

from __future__ import annotations

import secrets

from fastapi import Depends, HTTPException, Request, status

from src.crmsync.config import get_settings
from src.crmsync.sync.coordinator import SyncCoordinator
from src.crmsync.sync.correlation import CorrelationStore
from src.crmsync.sync.dispatch import WebhookDispatcher
from src.crmsync.sync.recorder import SyncLogRepository


def _state(request: Request, name: str):
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{name} is not initialized",
        )
    return service


async def get_dispatcher(request: Request) -> WebhookDispatcher:
    return _state(request, "dispatcher")


async def get_coordinator(request: Request) -> SyncCoordinator:
    return _state(request, "coordinator")


async def get_repository(request: Request) -> SyncLogRepository:
    return _state(request, "sync_log_repository")


async def get_store(request: Request) -> CorrelationStore:
    return _state(request, "correlation_store")


async def verify_operator(request: Request) -> str:
    """Check the X-API-Key header against OPERATOR_API_KEY.

    An empty OPERATOR_API_KEY disables the check. Returns the caller label
    recorded as ``triggered_by`` on manual runs.

    Raises:
        HTTPException(401): If a key is configured and the header does not match.
    """
    expected = get_settings().OPERATOR_API_KEY
    if not expected:
        return "operator"
    provided = request.headers.get("X-API-Key", "")
    if not secrets.compare_digest(provided, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
        )
    return "operator"


# Alias for cleaner endpoint signatures
require_operator = Depends(verify_operator)
