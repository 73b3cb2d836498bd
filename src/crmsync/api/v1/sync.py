"""Operational sync API -- run status, history, errors and manual triggers.

Manual triggers answer with the run's final counters. A trigger that finds
another batch run in progress gets 409 with the rejected result instead of
waiting for the lock.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from src.crmsync.api.deps import (
    get_coordinator,
    get_dispatcher,
    get_repository,
    verify_operator,
)
from src.crmsync.sync.coordinator import SyncCoordinator
from src.crmsync.sync.dispatch import WebhookDispatcher
from src.crmsync.sync.kinds import EntityKind
from src.crmsync.sync.recorder import SyncLogRepository
from src.crmsync.sync.schemas import (
    SyncErrorRead,
    SyncOptions,
    SyncRunDetails,
    SyncRunRead,
    SyncRunResult,
    WebhookDeliveryRead,
)

router = APIRouter(prefix="/sync", tags=["sync"], dependencies=[Depends(verify_operator)])

FINANCIAL_KINDS = frozenset({EntityKind.DEAL, EntityKind.ORDER})


# ── Request / Response Schemas ───────────────────────────────────────────────


class SingleSyncRequest(BaseModel):
    """Replay one entity; give exactly one of the two ids."""

    kind: EntityKind
    hubspot_id: str | None = None
    rentman_id: str | None = None


class SingleSyncResponse(BaseModel):
    run: SyncRunResult
    outcome: dict[str, Any]


class ResolveErrorRequest(BaseModel):
    resolved_by: str = Field(default="operator", min_length=1)
    notes: str | None = None


def _run_response(result: SyncRunResult) -> Any:
    if result.rejected:
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content=result.model_dump(mode="json"),
        )
    return result


# ── Status & History ─────────────────────────────────────────────────────────


@router.get("/status")
async def sync_status(coordinator: SyncCoordinator = Depends(get_coordinator)) -> dict[str, Any]:
    """Whether a batch run currently holds the run lock."""
    return coordinator.status()


@router.get("/summary")
async def sync_summary(
    coordinator: SyncCoordinator = Depends(get_coordinator),
    repository: SyncLogRepository = Depends(get_repository),
) -> dict[str, Any]:
    """Correlation counts, last run and unresolved errors."""
    summary = await repository.statistics()
    summary["run_state"] = coordinator.status()
    return summary


@router.get("/history", response_model=list[SyncRunRead])
async def sync_history(
    limit: int = Query(default=20, ge=1, le=200),
    sync_type: str | None = Query(default=None),
    repository: SyncLogRepository = Depends(get_repository),
):
    return await repository.recent_runs(limit=limit, sync_type=sync_type)


@router.get("/history/{run_id}", response_model=SyncRunDetails)
async def sync_run_details(
    run_id: int,
    repository: SyncLogRepository = Depends(get_repository),
):
    details = await repository.run_details(run_id)
    if details is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Run {run_id} not found")
    return details


@router.get("/errors", response_model=list[SyncErrorRead])
async def sync_errors(
    limit: int = Query(default=50, ge=1, le=500),
    repository: SyncLogRepository = Depends(get_repository),
):
    """Unresolved errors, newest first."""
    return await repository.unresolved_errors(limit=limit)


@router.post("/errors/{error_id}/resolve", response_model=SyncErrorRead)
async def resolve_sync_error(
    error_id: int,
    body: ResolveErrorRequest,
    repository: SyncLogRepository = Depends(get_repository),
):
    resolved = await repository.resolve_error(error_id, body.resolved_by, body.notes)
    if resolved is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Error {error_id} not found")
    return resolved


@router.get("/webhooks", response_model=list[WebhookDeliveryRead])
async def recent_webhooks(
    limit: int = Query(default=50, ge=1, le=500),
    dispatcher: WebhookDispatcher = Depends(get_dispatcher),
):
    """Most recent webhook deliveries and their final states."""
    return [delivery.to_read() for delivery in dispatcher.recent(limit)]


# ── Triggers ─────────────────────────────────────────────────────────────────


@router.post("/run", response_model=SyncRunResult)
async def run_full_sync(
    options: SyncOptions | None = None,
    coordinator: SyncCoordinator = Depends(get_coordinator),
):
    """Run a batch pass over the selected kinds, parents first."""
    options = options or SyncOptions(triggered_by="operator")
    return _run_response(await coordinator.run_full_sync(options))


@router.post("/run/{kind}", response_model=SyncRunResult)
async def run_kind_sync(
    kind: EntityKind,
    options: SyncOptions | None = None,
    coordinator: SyncCoordinator = Depends(get_coordinator),
):
    options = options or SyncOptions(triggered_by="operator")
    return _run_response(await coordinator.run_single_type_sync(kind, options))


@router.post("/single", response_model=SingleSyncResponse)
async def sync_single(
    body: SingleSyncRequest,
    coordinator: SyncCoordinator = Depends(get_coordinator),
):
    """Replay one entity identified by its HubSpot or its Rentman id."""
    try:
        result, outcome = await coordinator.sync_single(
            body.kind,
            hubspot_id=body.hubspot_id,
            rentman_id=body.rentman_id,
            triggered_by="operator",
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    return SingleSyncResponse(run=result, outcome=outcome.model_dump(mode="json"))


@router.post("/financials/{kind}", response_model=SyncRunResult)
async def sync_financials(
    kind: EntityKind,
    coordinator: SyncCoordinator = Depends(get_coordinator),
):
    """Refresh deal amounts or order prices from Rentman."""
    if kind not in FINANCIAL_KINDS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"{kind.value} has no financial fields",
        )
    return _run_response(await coordinator.sync_financials(kind, triggered_by="operator"))
