"""Base synchronizer -- the uniform contract every entity kind implements.

Subclasses implement on_create / on_update / on_delete with their kind's
field mapping and linking rules. External callers (dispatcher, coordinator)
go through ``replay`` and ``replay_delete``, which wrap those hooks with the
failure policy: an exception while replaying one entity is classified,
recorded as an error item plus a SyncError, and returned as a failed
ReplayOutcome instead of propagating, so sibling entities in the same batch
or webhook keep processing.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from src.crmsync.config import Settings, get_settings
from src.crmsync.sync.associations import AssociationReconciler
from src.crmsync.sync.clients.base import SystemClient
from src.crmsync.sync.correlation import CorrelationStore
from src.crmsync.sync.errors import DuplicateObjectError, UnsupportedOperationError
from src.crmsync.sync.kinds import EntityKind, SystemName
from src.crmsync.sync.recorder import SyncRecorder
from src.crmsync.sync.retry import ConsistencyWait
from src.crmsync.sync.schemas import (
    CorrelationRecord,
    HubSpotEvent,
    ItemAction,
    ItemStatus,
    ReplayOutcome,
    SyncStats,
)

logger = structlog.get_logger(__name__)


def record_id(record: dict[str, Any] | None) -> str | None:
    """The id of a HubSpot or Rentman record as a string."""
    if not record or record.get("id") is None:
        return None
    return str(record["id"])


def ids_for(system: SystemName, origin_id: Any, destination_id: Any = None) -> dict[str, Any]:
    """ReplayOutcome id kwargs for an origin id and optional destination id."""
    origin = None if origin_id is None else str(origin_id)
    destination = None if destination_id is None else str(destination_id)
    if system is SystemName.HUBSPOT:
        return {"hubspot_id": origin, "rentman_id": destination}
    return {"rentman_id": origin, "hubspot_id": destination}


def _stats_since(before: SyncStats, now: SyncStats) -> SyncStats:
    return SyncStats(
        total=now.total - before.total,
        processed=now.processed - before.processed,
        success=now.success - before.success,
        error=now.error - before.error,
        skip=now.skip - before.skip,
    )


class EntitySynchronizer(ABC):
    """Replays one entity kind between HubSpot and Rentman.

    Args:
        hubspot: HubSpot system client.
        rentman: Rentman system client.
        store: Correlation store.
        reconciler: Association reconciler for destination edges.
        wait: Consistency wait used when a counterpart may not exist yet.
        settings: Application settings (pipelines, fallbacks).
    """

    kind: EntityKind
    # Origins this kind is replayed from
    origins: frozenset[SystemName] = frozenset({SystemName.HUBSPOT, SystemName.RENTMAN})
    # Origins walked by batch runs; None means every origin above
    batch_origins: frozenset[SystemName] | None = None

    def __init__(
        self,
        *,
        hubspot: SystemClient,
        rentman: SystemClient,
        store: CorrelationStore,
        reconciler: AssociationReconciler,
        wait: ConsistencyWait | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.hubspot = hubspot
        self.rentman = rentman
        self.store = store
        self.reconciler = reconciler
        self.wait = wait or ConsistencyWait()
        self.settings = settings or get_settings()
        self._logger = structlog.get_logger(__name__).bind(kind=self.kind.value)

    def client(self, system: SystemName) -> SystemClient:
        return self.hubspot if system is SystemName.HUBSPOT else self.rentman

    def supports(self, origin: SystemName) -> bool:
        return origin in self.origins

    def supports_batch(self, origin: SystemName) -> bool:
        return origin in (self.batch_origins or self.origins)

    # ── Hooks ───────────────────────────────────────────────────────────

    @abstractmethod
    async def on_create(
        self,
        origin: SystemName,
        origin_id: str,
        *,
        record: dict[str, Any] | None = None,
    ) -> ReplayOutcome:
        """Replay a newly created origin entity.

        ``record`` is the already fetched origin record (batch passes);
        when None the hook fetches it.
        """
        ...

    @abstractmethod
    async def on_update(
        self,
        origin: SystemName,
        origin_id: str,
        *,
        record: dict[str, Any] | None = None,
        changes: dict[str, Any] | None = None,
    ) -> ReplayOutcome:
        """Replay a changed origin entity; uncorrelated entities are created."""
        ...

    @abstractmethod
    async def on_delete(self, origin: SystemName, origin_id: str) -> ReplayOutcome:
        """Replay the deletion of one origin entity."""
        ...

    async def on_association_change(self, event: HubSpotEvent) -> ReplayOutcome:
        """React to a HubSpot association-change event touching this kind."""
        return ReplayOutcome.skipped(self.kind, "association changes are not replayed for this kind")

    async def sync_financials(self, recorder: SyncRecorder) -> SyncStats:
        """Refresh amounts only (deals and orders)."""
        raise UnsupportedOperationError(f"{self.kind.value} has no financial fields")

    def amount_properties(self, record: dict[str, Any]) -> dict[str, Any]:
        """HubSpot amount properties for a Rentman record."""
        raise UnsupportedOperationError(f"{self.kind.value} has no financial fields")

    # ── Replay Wrappers ─────────────────────────────────────────────────

    async def replay(
        self,
        action: ItemAction,
        origin: SystemName,
        origin_id: Any,
        *,
        recorder: SyncRecorder | None = None,
        record: dict[str, Any] | None = None,
        changes: dict[str, Any] | None = None,
    ) -> ReplayOutcome:
        """Run one hook under the failure policy and record the outcome."""
        origin_id = str(origin_id)
        if not self.supports(origin):
            outcome = ReplayOutcome.skipped(
                self.kind,
                f"{self.kind.value} is not replayed from {origin.value}",
                **ids_for(origin, origin_id),
            )
        elif action is ItemAction.CREATE:
            outcome = await self._guard(
                action, origin, origin_id, lambda: self.on_create(origin, origin_id, record=record)
            )
        elif action is ItemAction.UPDATE:
            outcome = await self._guard(
                action,
                origin,
                origin_id,
                lambda: self.on_update(origin, origin_id, record=record, changes=changes),
            )
        elif action is ItemAction.DELETE:
            outcome = await self._guard(
                action, origin, origin_id, lambda: self.on_delete(origin, origin_id)
            )
        else:
            raise ValueError(f"cannot replay action {action.value}")
        return await self._record(outcome, recorder)

    async def replay_delete(
        self,
        origin: SystemName,
        origin_ids: list[Any],
        *,
        recorder: SyncRecorder | None = None,
    ) -> list[ReplayOutcome]:
        """Replay deletions for every id; one failure does not stop the rest."""
        outcomes = []
        for origin_id in origin_ids:
            outcomes.append(
                await self.replay(ItemAction.DELETE, origin, origin_id, recorder=recorder)
            )
        return outcomes

    async def replay_association(
        self,
        event: HubSpotEvent,
        *,
        recorder: SyncRecorder | None = None,
    ) -> ReplayOutcome:
        outcome = await self._guard(
            ItemAction.UPDATE,
            SystemName.HUBSPOT,
            str(event.from_object_id),
            lambda: self.on_association_change(event),
        )
        return await self._record(outcome, recorder)

    async def _guard(
        self,
        action: ItemAction,
        origin: SystemName,
        origin_id: str,
        hook: Callable[[], Awaitable[ReplayOutcome]],
    ) -> ReplayOutcome:
        try:
            return await hook()
        except Exception as exc:
            self._logger.error(
                "sync.replay_failed",
                action=action.value,
                origin=origin.value,
                origin_id=origin_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return ReplayOutcome(
                kind=self.kind,
                action=ItemAction.ERROR,
                status=ItemStatus.FAILED,
                reason=str(exc) or type(exc).__name__,
                error=exc,
                attempted=action,
                origin=origin,
                **ids_for(origin, origin_id),
            )

    async def _record(
        self,
        outcome: ReplayOutcome,
        recorder: SyncRecorder | None,
    ) -> ReplayOutcome:
        if outcome.status is ItemStatus.SKIPPED:
            self._logger.info(
                "sync.replay_skipped",
                hubspot_id=outcome.hubspot_id,
                rentman_id=outcome.rentman_id,
                reason=outcome.reason,
            )
        if recorder is None:
            return outcome
        if outcome.error is not None:
            await recorder.record_failure(
                outcome.error,
                kind=self.kind,
                action=outcome.attempted or ItemAction.ERROR,
                source_system=outcome.origin or SystemName.HUBSPOT,
                hubspot_id=outcome.hubspot_id,
                rentman_id=outcome.rentman_id,
            )
        else:
            await recorder.log_outcome(outcome)
        return outcome

    # ── Batch ───────────────────────────────────────────────────────────

    async def sync_batch(
        self,
        origin: SystemName,
        *,
        batch_size: int,
        recorder: SyncRecorder,
    ) -> SyncStats:
        """Replay every origin entity of this kind, page by page.

        Per-item failures are recorded and skipped; a failure to list a page
        propagates so the caller can abort the run.
        """
        before = recorder.stats.model_copy()
        client = self.client(origin)
        cursor: str | None = None
        pages = 0
        while True:
            items, cursor = await client.list_page(self.kind, limit=batch_size, cursor=cursor)
            pages += 1
            recorder.add_total(len(items))
            for item in items:
                item_id = record_id(item)
                if item_id is None:
                    continue
                await self.replay(
                    ItemAction.UPDATE,
                    origin,
                    item_id,
                    recorder=recorder,
                    record=item,
                )
            if not cursor or not items:
                break
        self._logger.info(
            "sync.batch_completed",
            origin=origin.value,
            pages=pages,
            processed=recorder.stats.processed - before.processed,
        )
        return _stats_since(before, recorder.stats)

    # ── Financials ──────────────────────────────────────────────────────

    async def _refresh_amounts(self, recorder: SyncRecorder) -> SyncStats:
        """Push the amount properties of every correlated Rentman record."""
        before = recorder.stats.model_copy()
        cursor: str | None = None
        while True:
            items, cursor = await self.rentman.list_page(
                self.kind, limit=self.settings.DEFAULT_BATCH_SIZE, cursor=cursor
            )
            recorder.add_total(len(items))
            for item in items:
                rentman_id = record_id(item)
                if rentman_id is None:
                    continue
                await self.refresh_amount(rentman_id, recorder=recorder, record=item)
            if not cursor or not items:
                break
        stats = _stats_since(before, recorder.stats)
        self._logger.info("sync.financials_refreshed", **stats.model_dump())
        return stats

    async def refresh_amount(
        self,
        rentman_id: Any,
        *,
        recorder: SyncRecorder | None = None,
        record: dict[str, Any] | None = None,
    ) -> ReplayOutcome:
        """Push the amount properties of one Rentman record to its HubSpot twin."""
        rentman_id = str(rentman_id)

        async def _push() -> ReplayOutcome:
            correlation = await self.store.find_by_b(self.kind, rentman_id)
            if correlation is None or correlation.hubspot_id is None:
                return ReplayOutcome.skipped(self.kind, "not correlated", rentman_id=rentman_id)
            current = record if record is not None else await self.rentman.get(self.kind, rentman_id)
            if current is None:
                return ReplayOutcome.skipped(
                    self.kind, "not found on rentman", rentman_id=rentman_id
                )
            properties = self.amount_properties(current)
            await self.hubspot.update(self.kind, correlation.hubspot_id, properties)
            return ReplayOutcome(
                kind=self.kind,
                action=ItemAction.UPDATE,
                data_after=properties,
                hubspot_id=correlation.hubspot_id,
                rentman_id=rentman_id,
            )

        outcome = await self._guard(ItemAction.UPDATE, SystemName.RENTMAN, rentman_id, _push)
        return await self._record(outcome, recorder)

    # ── Shared Helpers ──────────────────────────────────────────────────

    async def find_correlation(self, origin: SystemName, origin_id: Any) -> CorrelationRecord | None:
        return await self.store.find(self.kind, origin, origin_id)

    async def wait_for_correlation(
        self,
        kind: EntityKind,
        system: SystemName,
        external_id: Any,
        *,
        require: SystemName | None = None,
    ) -> CorrelationRecord | None:
        """Poll the store until ``external_id`` is correlated.

        With ``require`` set, the record must also carry an id on that
        system (the counterpart has actually been created).
        """
        if external_id is None:
            return None

        async def _lookup() -> CorrelationRecord | None:
            record = await self.store.find(kind, system, external_id)
            if record is None:
                return None
            if require is not None and record.external_id(require) is None:
                return None
            return record

        return await self.wait.wait_for(
            _lookup,
            description=f"{kind.value} correlation",
            kind=kind.value,
            system=system.value,
            external_id=str(external_id),
        )

    async def create_or_link(
        self,
        destination: SystemName,
        data: dict[str, Any],
        *,
        parent_id: str | None = None,
        natural_key: dict[str, Any] | None = None,
    ) -> tuple[str, bool]:
        """Create the destination object unless a natural-key match exists.

        Returns:
            (destination id, created) -- ``created`` is False when an existing
            object was linked instead.
        """
        client = self.client(destination)
        if natural_key and all(natural_key.values()):
            matches = await client.search(self.kind, natural_key)
            if matches:
                existing = record_id(matches[0])
                self._logger.info(
                    "sync.linked_by_natural_key",
                    destination=destination.value,
                    existing_id=existing,
                    natural_key=natural_key,
                )
                return existing, False
        try:
            created = await client.create(self.kind, data, parent_id=parent_id)
        except DuplicateObjectError as exc:
            if exc.existing_id is None:
                raise
            self._logger.info(
                "sync.linked_existing_duplicate",
                destination=destination.value,
                existing_id=exc.existing_id,
            )
            return str(exc.existing_id), False
        new_id = record_id(created)
        if new_id is None:
            raise ValueError(f"{destination.value} create returned no id for {self.kind.value}")
        return new_id, True
