"""Sync run bookkeeping -- SyncRun, SyncItemLog and SyncError rows.

SyncLogRepository is the persistence layer (session_factory pattern, same
as CorrelationStore). SyncRecorder wraps one run: it opens the SyncRun,
appends an item row per replayed entity, appends a classified SyncError for
every failure and closes the run with its final counters.

None of this affects reconciliation; it exists for triage and the
operational API.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import func, select

from src.crmsync.core.monitoring import record_sync_item, sync_run_active
from src.crmsync.sync.correlation import SessionFactory
from src.crmsync.sync.errors import (
    Severity,
    classify_error,
    error_severity,
    error_status_code,
)
from src.crmsync.sync.kinds import SYNC_ORDER, EntityKind, SyncDirection, SystemName
from src.crmsync.sync.models import (
    CORRELATION_MODELS,
    SyncErrorModel,
    SyncItemLogModel,
    SyncRunModel,
)
from src.crmsync.sync.schemas import (
    ItemAction,
    ItemStatus,
    ReplayOutcome,
    RunStatus,
    SyncErrorRead,
    SyncItemRead,
    SyncRunDetails,
    SyncRunRead,
    SyncStats,
)

logger = structlog.get_logger(__name__)


# ── Serialization Helpers ───────────────────────────────────────────────────


def _run_to_schema(model: SyncRunModel) -> SyncRunRead:
    return SyncRunRead(
        id=model.id,
        sync_type=model.sync_type,
        direction=model.direction,
        triggered_by=model.triggered_by,
        status=model.status,
        total_items=model.total_items or 0,
        processed_items=model.processed_items or 0,
        success_count=model.success_count or 0,
        error_count=model.error_count or 0,
        skip_count=model.skip_count or 0,
        error_message=model.error_message,
        metadata=model.metadata_json or {},
        started_at=model.started_at,
        completed_at=model.completed_at,
        duration_ms=model.duration_ms,
    )


def _item_to_schema(model: SyncItemLogModel) -> SyncItemRead:
    return SyncItemRead(
        id=model.id,
        sync_run_id=model.sync_run_id,
        kind=model.kind,
        hubspot_id=model.hubspot_id,
        rentman_id=model.rentman_id,
        action=model.action,
        status=model.status,
        error_message=model.error_message,
        error_code=model.error_code,
        created_at=model.created_at,
    )


def _error_to_schema(model: SyncErrorModel) -> SyncErrorRead:
    return SyncErrorRead(
        id=model.id,
        sync_run_id=model.sync_run_id,
        sync_item_log_id=model.sync_item_log_id,
        error_type=model.error_type,
        severity=model.severity,
        source_system=model.source_system,
        message=model.message,
        error_code=model.error_code,
        context=model.context or {},
        resolved=bool(model.resolved),
        resolved_by=model.resolved_by,
        resolution_notes=model.resolution_notes,
        resolved_at=model.resolved_at,
        created_at=model.created_at,
    )


class SyncLogRepository:
    """Async CRUD over the operational sync tables.

    Args:
        session_factory: Callable returning an async generator of AsyncSession.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def create_run(
        self,
        sync_type: str,
        direction: str,
        triggered_by: str,
        metadata: dict[str, Any] | None = None,
    ) -> int:
        async for session in self._session_factory():
            model = SyncRunModel(
                sync_type=sync_type,
                direction=direction,
                triggered_by=triggered_by,
                status=RunStatus.STARTED.value,
                metadata_json=metadata or {},
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return model.id
        raise RuntimeError("session factory yielded no session")

    async def update_run(self, run_id: int, **fields: Any) -> None:
        async for session in self._session_factory():
            model = await session.get(SyncRunModel, run_id)
            if model is None:
                logger.warning("recorder.run_missing", run_id=run_id)
                return
            for name, value in fields.items():
                setattr(model, name, value)
            await session.commit()

    async def add_item(
        self,
        run_id: int,
        kind: str,
        action: str,
        status: str,
        *,
        hubspot_id: str | None = None,
        rentman_id: str | None = None,
        error_message: str | None = None,
        error_code: str | None = None,
        data_after: dict[str, Any] | None = None,
    ) -> int:
        async for session in self._session_factory():
            model = SyncItemLogModel(
                sync_run_id=run_id,
                kind=kind,
                hubspot_id=hubspot_id,
                rentman_id=rentman_id,
                action=action,
                status=status,
                error_message=error_message,
                error_code=error_code,
                data_after=data_after,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return model.id
        raise RuntimeError("session factory yielded no session")

    async def add_error(
        self,
        *,
        run_id: int | None,
        error_type: str,
        severity: str,
        source_system: str,
        message: str,
        error_code: str | None = None,
        context: dict[str, Any] | None = None,
        item_log_id: int | None = None,
    ) -> int:
        async for session in self._session_factory():
            model = SyncErrorModel(
                sync_run_id=run_id,
                sync_item_log_id=item_log_id,
                error_type=error_type,
                severity=severity,
                source_system=source_system,
                message=message,
                error_code=error_code,
                context=context or {},
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return model.id
        raise RuntimeError("session factory yielded no session")

    async def recent_runs(self, limit: int = 20, sync_type: str | None = None) -> list[SyncRunRead]:
        async for session in self._session_factory():
            stmt = select(SyncRunModel).order_by(SyncRunModel.id.desc()).limit(limit)
            if sync_type:
                stmt = stmt.where(SyncRunModel.sync_type == sync_type)
            result = await session.execute(stmt)
            return [_run_to_schema(row) for row in result.scalars().all()]
        return []

    async def run_details(self, run_id: int) -> SyncRunDetails | None:
        async for session in self._session_factory():
            run = await session.get(SyncRunModel, run_id)
            if run is None:
                return None
            items = await session.execute(
                select(SyncItemLogModel)
                .where(SyncItemLogModel.sync_run_id == run_id)
                .order_by(SyncItemLogModel.id)
            )
            errors = await session.execute(
                select(SyncErrorModel)
                .where(SyncErrorModel.sync_run_id == run_id)
                .order_by(SyncErrorModel.id)
            )
            return SyncRunDetails(
                run=_run_to_schema(run),
                items=[_item_to_schema(row) for row in items.scalars().all()],
                errors=[_error_to_schema(row) for row in errors.scalars().all()],
            )
        return None

    async def unresolved_errors(self, limit: int = 50) -> list[SyncErrorRead]:
        async for session in self._session_factory():
            result = await session.execute(
                select(SyncErrorModel)
                .where(SyncErrorModel.resolved.is_(False))
                .order_by(SyncErrorModel.id.desc())
                .limit(limit)
            )
            return [_error_to_schema(row) for row in result.scalars().all()]
        return []

    async def resolve_error(
        self,
        error_id: int,
        resolved_by: str,
        notes: str | None = None,
    ) -> SyncErrorRead | None:
        async for session in self._session_factory():
            model = await session.get(SyncErrorModel, error_id)
            if model is None:
                return None
            model.resolved = True
            model.resolved_by = resolved_by
            model.resolution_notes = notes
            model.resolved_at = datetime.now(timezone.utc)
            await session.commit()
            await session.refresh(model)
            return _error_to_schema(model)
        return None

    async def statistics(self) -> dict[str, Any]:
        """Correlation counts per kind, last run and unresolved error count."""
        async for session in self._session_factory():
            counts: dict[str, int] = {}
            for kind in SYNC_ORDER:
                model = CORRELATION_MODELS[kind]
                counts[kind.value] = int(
                    await session.scalar(select(func.count()).select_from(model)) or 0
                )
            unresolved = int(
                await session.scalar(
                    select(func.count())
                    .select_from(SyncErrorModel)
                    .where(SyncErrorModel.resolved.is_(False))
                )
                or 0
            )
            total_runs = int(
                await session.scalar(select(func.count()).select_from(SyncRunModel)) or 0
            )
            last = await session.scalar(
                select(SyncRunModel).order_by(SyncRunModel.id.desc()).limit(1)
            )
            return {
                "correlations": counts,
                "total_runs": total_runs,
                "unresolved_errors": unresolved,
                "last_run": _run_to_schema(last).model_dump(mode="json") if last else None,
            }
        return {}


class SyncRecorder:
    """Bookkeeping for one sync run.

    Counters follow the run: ``total`` is what the caller announced or what
    was logged, ``processed`` every logged item, ``success`` / ``error`` /
    ``skip`` by item status.
    """

    def __init__(
        self,
        repository: SyncLogRepository,
        sync_type: str,
        direction: SyncDirection | str = SyncDirection.BIDIRECTIONAL,
        triggered_by: str = "system",
        *,
        track_active: bool = False,
    ) -> None:
        self._repository = repository
        self.sync_type = sync_type
        self.direction = direction.value if isinstance(direction, SyncDirection) else direction
        self.triggered_by = triggered_by
        self.run_id: int | None = None
        self.stats = SyncStats()
        self.errors: list[str] = []
        self._track_active = track_active
        self._started: float | None = None

    async def start(self, metadata: dict[str, Any] | None = None) -> int:
        self._started = time.perf_counter()
        self.run_id = await self._repository.create_run(
            self.sync_type, self.direction, self.triggered_by, metadata
        )
        if self._track_active:
            sync_run_active.set(1)
        logger.info(
            "recorder.run_started",
            run_id=self.run_id,
            sync_type=self.sync_type,
            direction=self.direction,
            triggered_by=self.triggered_by,
        )
        return self.run_id

    def add_total(self, count: int) -> None:
        self.stats.total += count

    async def log_item(
        self,
        kind: EntityKind,
        action: ItemAction,
        status: ItemStatus,
        *,
        hubspot_id: str | None = None,
        rentman_id: str | None = None,
        error_message: str | None = None,
        error_code: str | None = None,
        data_after: dict[str, Any] | None = None,
    ) -> int | None:
        self.stats.processed += 1
        if status is ItemStatus.SUCCESS:
            self.stats.success += 1
        elif status is ItemStatus.SKIPPED:
            self.stats.skip += 1
        else:
            self.stats.error += 1
        if self.stats.total < self.stats.processed:
            self.stats.total = self.stats.processed
        record_sync_item(kind.value, action.value, status.value)
        if self.run_id is None:
            return None
        return await self._repository.add_item(
            self.run_id,
            kind.value,
            action.value,
            status.value,
            hubspot_id=hubspot_id,
            rentman_id=rentman_id,
            error_message=error_message,
            error_code=error_code,
            data_after=data_after,
        )

    async def log_outcome(self, outcome: ReplayOutcome) -> int | None:
        return await self.log_item(
            outcome.kind,
            outcome.action,
            outcome.status,
            hubspot_id=outcome.hubspot_id,
            rentman_id=outcome.rentman_id,
            error_message=outcome.reason if outcome.status is not ItemStatus.SUCCESS else None,
            data_after=outcome.data_after,
        )

    async def log_error(
        self,
        exc: BaseException,
        *,
        source_system: SystemName | str,
        item_log_id: int | None = None,
        severity: Severity | None = None,
        context: dict[str, Any] | None = None,
    ) -> int | None:
        message = str(exc) or exc.__class__.__name__
        self.errors.append(message)
        if self.run_id is None:
            return None
        return await self._repository.add_error(
            run_id=self.run_id,
            error_type=classify_error(exc).value,
            severity=(severity or error_severity(exc)).value,
            source_system=source_system.value if isinstance(source_system, SystemName) else source_system,
            message=message,
            error_code=error_status_code(exc),
            context=context,
            item_log_id=item_log_id,
        )

    async def record_failure(
        self,
        exc: BaseException,
        *,
        kind: EntityKind,
        action: ItemAction,
        source_system: SystemName,
        hubspot_id: str | None = None,
        rentman_id: str | None = None,
    ) -> None:
        """Log a failed replay as an error item plus a classified SyncError."""
        item_id = await self.log_item(
            kind,
            ItemAction.ERROR,
            ItemStatus.FAILED,
            hubspot_id=hubspot_id,
            rentman_id=rentman_id,
            error_message=str(exc),
            error_code=error_status_code(exc),
        )
        await self.log_error(
            exc,
            source_system=source_system,
            item_log_id=item_id,
            context={
                "kind": kind.value,
                "attempted_action": action.value,
                "hubspot_id": hubspot_id,
                "rentman_id": rentman_id,
            },
        )

    def final_status(self) -> RunStatus:
        if self.stats.error and not self.stats.success and not self.stats.skip:
            return RunStatus.FAILED
        if self.stats.error:
            return RunStatus.PARTIAL
        return RunStatus.COMPLETED

    async def complete(self, status: RunStatus | None = None) -> RunStatus:
        status = status or self.final_status()
        await self._finish(status)
        logger.info(
            "recorder.run_completed",
            run_id=self.run_id,
            sync_type=self.sync_type,
            status=status.value,
            **self.stats.model_dump(),
        )
        return status

    async def fail(self, exc: BaseException | str) -> RunStatus:
        """Abort the run: status ``failed`` plus a critical SyncError."""
        message = str(exc)
        if isinstance(exc, BaseException):
            await self.log_error(exc, source_system="system", severity=Severity.CRITICAL)
        else:
            self.errors.append(message)
        await self._finish(RunStatus.FAILED, error_message=message)
        logger.error("recorder.run_failed", run_id=self.run_id, sync_type=self.sync_type, error=message)
        return RunStatus.FAILED

    async def _finish(self, status: RunStatus, error_message: str | None = None) -> None:
        if self._track_active:
            sync_run_active.set(0)
        if self.run_id is None:
            return
        duration_ms = (
            int((time.perf_counter() - self._started) * 1000) if self._started is not None else None
        )
        await self._repository.update_run(
            self.run_id,
            status=status.value,
            total_items=self.stats.total,
            processed_items=self.stats.processed,
            success_count=self.stats.success,
            error_count=self.stats.error,
            skip_count=self.stats.skip,
            error_message=error_message or ("; ".join(self.errors[:5]) if self.errors else None),
            completed_at=datetime.now(timezone.utc),
            duration_ms=duration_ms,
        )
