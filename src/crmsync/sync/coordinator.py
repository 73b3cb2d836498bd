"""Sync coordinator -- batch runs, single-entity resyncs and the run lock.

The coordinator owns the only RunState. Full, single-kind and financial runs
must acquire it first; a trigger that finds another run in progress gets a
rejected SyncRunResult back instead of an exception. Webhook dispatch does
not take the lock, so a batch run and live webhooks may overlap; both go
through the same idempotent synchronizer paths.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any

import structlog

from src.crmsync.sync.kinds import SYNC_ORDER, EntityKind, SyncDirection, SystemName
from src.crmsync.sync.recorder import SyncLogRepository, SyncRecorder
from src.crmsync.sync.schemas import (
    ItemAction,
    ItemStatus,
    ReplayOutcome,
    SyncOptions,
    SyncRunResult,
    SyncStats,
)
from src.crmsync.sync.synchronizers.registry import SynchronizerTable

logger = structlog.get_logger(__name__)

RunBody = Callable[[SyncRecorder], Awaitable[dict[str, SyncStats]]]


class RunState:
    """Exclusive marker for the batch run currently in progress."""

    def __init__(self) -> None:
        self._current: str | None = None
        self._started_at: datetime | None = None

    def try_acquire(self, label: str) -> bool:
        """Claim the run slot; False when another run holds it."""
        if self._current is not None:
            return False
        self._current = label
        self._started_at = datetime.now(timezone.utc)
        return True

    def release(self) -> None:
        self._current = None
        self._started_at = None

    @property
    def current(self) -> str | None:
        return self._current

    @property
    def started_at(self) -> datetime | None:
        return self._started_at


class SyncCoordinator:
    """Outward API of the sync core for operators and schedulers.

    Args:
        synchronizers: EntityKind -> synchronizer lookup table.
        repository: Sync log repository backing every run's recorder.
        run_state: Shared run lock; a fresh one when omitted.
    """

    def __init__(
        self,
        synchronizers: SynchronizerTable,
        repository: SyncLogRepository,
        run_state: RunState | None = None,
    ) -> None:
        self._synchronizers = synchronizers
        self._repository = repository
        self.run_state = run_state or RunState()

    # ── Batch Runs ──────────────────────────────────────────────────────

    async def run_full_sync(self, options: SyncOptions | None = None) -> SyncRunResult:
        """Replay every selected kind, parents first."""
        options = options or SyncOptions()
        kinds = [kind for kind in SYNC_ORDER if kind in options.entity_kinds]

        async def body(recorder: SyncRecorder) -> dict[str, SyncStats]:
            per_kind: dict[str, SyncStats] = {}
            for kind in kinds:
                per_kind[kind.value] = await self._sync_kind(kind, options, recorder)
            return per_kind

        return await self._run(
            "full",
            "full",
            options.direction,
            options.triggered_by,
            body,
            metadata=options.model_dump(mode="json"),
        )

    async def run_single_type_sync(
        self,
        kind: EntityKind,
        options: SyncOptions | None = None,
    ) -> SyncRunResult:
        options = options or SyncOptions()

        async def body(recorder: SyncRecorder) -> dict[str, SyncStats]:
            return {kind.value: await self._sync_kind(kind, options, recorder)}

        return await self._run(
            kind.value,
            kind.value,
            options.direction,
            options.triggered_by,
            body,
            metadata=options.model_dump(mode="json"),
        )

    async def sync_financials(self, kind: EntityKind, triggered_by: str = "system") -> SyncRunResult:
        """Refresh deal amounts or order prices only."""
        synchronizer = self._synchronizers[kind]

        async def body(recorder: SyncRecorder) -> dict[str, SyncStats]:
            return {kind.value: await synchronizer.sync_financials(recorder)}

        return await self._run(
            f"financials:{kind.value}",
            f"financials_{kind.value}",
            SyncDirection.RENTMAN_TO_HUBSPOT,
            triggered_by,
            body,
        )

    async def _sync_kind(
        self,
        kind: EntityKind,
        options: SyncOptions,
        recorder: SyncRecorder,
    ) -> SyncStats:
        synchronizer = self._synchronizers[kind]
        stats = SyncStats()
        for origin in (SystemName.HUBSPOT, SystemName.RENTMAN):
            if not options.direction.includes(origin) or not synchronizer.supports_batch(origin):
                continue
            logger.info("coordinator.kind_started", kind=kind.value, origin=origin.value)
            stats = stats.merge(
                await synchronizer.sync_batch(origin, batch_size=options.batch_size, recorder=recorder)
            )
        return stats

    async def _run(
        self,
        label: str,
        sync_type: str,
        direction: SyncDirection,
        triggered_by: str,
        body: RunBody,
        *,
        metadata: dict[str, Any] | None = None,
    ) -> SyncRunResult:
        if not self.run_state.try_acquire(label):
            logger.warning(
                "coordinator.run_rejected",
                requested=label,
                running=self.run_state.current,
            )
            return SyncRunResult(sync_type=sync_type, rejected=True, running=self.run_state.current)

        recorder = SyncRecorder(
            self._repository, sync_type, direction, triggered_by, track_active=True
        )
        per_kind: dict[str, SyncStats] = {}
        try:
            try:
                await recorder.start(metadata)
                per_kind = await body(recorder)
            except Exception as exc:
                # Batch-level failure (e.g. origin unreachable): abort the run
                logger.error(
                    "coordinator.run_aborted",
                    sync_type=sync_type,
                    run_id=recorder.run_id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                status = await recorder.fail(exc)
            else:
                status = await recorder.complete()
        finally:
            self.run_state.release()

        return SyncRunResult(
            run_id=recorder.run_id,
            sync_type=sync_type,
            status=status,
            stats=recorder.stats,
            per_kind=per_kind,
            errors=list(recorder.errors),
        )

    # ── Single Entity ───────────────────────────────────────────────────

    async def sync_single(
        self,
        kind: EntityKind,
        *,
        hubspot_id: str | None = None,
        rentman_id: str | None = None,
        triggered_by: str = "manual",
    ) -> tuple[SyncRunResult, ReplayOutcome]:
        """Replay one entity from whichever side's id was given.

        Raises:
            ValueError: Unless exactly one of the two ids is given.
        """
        if (hubspot_id is None) == (rentman_id is None):
            raise ValueError("give exactly one of hubspot_id / rentman_id")
        origin = SystemName.HUBSPOT if hubspot_id is not None else SystemName.RENTMAN
        origin_id = hubspot_id if hubspot_id is not None else rentman_id
        direction = (
            SyncDirection.HUBSPOT_TO_RENTMAN
            if origin is SystemName.HUBSPOT
            else SyncDirection.RENTMAN_TO_HUBSPOT
        )

        recorder = SyncRecorder(self._repository, f"single_{kind.value}", direction, triggered_by)
        await recorder.start({"kind": kind.value, "origin": origin.value, "origin_id": origin_id})
        outcome = await self._synchronizers[kind].replay(
            ItemAction.UPDATE, origin, origin_id, recorder=recorder
        )
        status = await recorder.complete()
        logger.info(
            "coordinator.single_synced",
            kind=kind.value,
            origin=origin.value,
            origin_id=origin_id,
            action=outcome.action.value,
            status=outcome.status.value,
        )
        result = SyncRunResult(
            run_id=recorder.run_id,
            sync_type=recorder.sync_type,
            status=status,
            stats=recorder.stats,
            per_kind={kind.value: recorder.stats},
            errors=[outcome.reason] if outcome.status is ItemStatus.FAILED and outcome.reason else [],
        )
        return result, outcome

    # ── Status ──────────────────────────────────────────────────────────

    def status(self) -> dict[str, Any]:
        started_at = self.run_state.started_at
        return {
            "running": self.run_state.current is not None,
            "current": self.run_state.current,
            "started_at": started_at.isoformat() if started_at else None,
            "kinds": [kind.value for kind in self._synchronizers],
        }

