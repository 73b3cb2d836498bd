"""Order synchronizer -- Rentman subproject -> HubSpot order.

Orders are replayed from Rentman only. Each order hangs off its project's
deal and inherits the deal's customer edges; every change recomputes the
deal stage from the stages of all of the project's subprojects.
"""

from __future__ import annotations

from typing import Any

from src.crmsync.sync.kinds import EntityKind, SystemName
from src.crmsync.sync.mapping import (
    display_name,
    extract_id_from_ref,
    order_to_hubspot,
    sanitize_number,
)
from src.crmsync.sync.recorder import SyncRecorder
from src.crmsync.sync.schemas import (
    CorrelationRecord,
    ItemAction,
    ParentLinks,
    ReplayOutcome,
    SyncStats,
)
from src.crmsync.sync.status import StatusAggregator
from src.crmsync.sync.synchronizers.base import EntitySynchronizer


def _links_under(deal: CorrelationRecord) -> ParentLinks:
    return ParentLinks(
        parent=deal.local_id,
        organization=deal.parent_local_id,
        person=deal.person_local_id,
    )


class OrderSynchronizer(EntitySynchronizer):
    kind = EntityKind.ORDER
    origins = frozenset({SystemName.RENTMAN})

    def __init__(self, *, status: StatusAggregator, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.status = status

    def _properties(self, subproject: dict[str, Any]) -> dict[str, Any]:
        return order_to_hubspot(subproject, pipeline=self.settings.ORDER_PIPELINE_ID)

    async def on_create(
        self,
        origin: SystemName,
        origin_id: str,
        *,
        record: dict[str, Any] | None = None,
    ) -> ReplayOutcome:
        existing = await self.find_correlation(origin, origin_id)
        if existing is not None and existing.hubspot_id is not None:
            return await self.on_update(origin, origin_id, record=record)

        subproject = record or await self.rentman.get(self.kind, origin_id)
        if subproject is None:
            return ReplayOutcome.skipped(self.kind, "not found on rentman", rentman_id=origin_id)

        project_id = extract_id_from_ref(subproject.get("project"))
        deal = await self.wait_for_correlation(
            EntityKind.DEAL, SystemName.RENTMAN, project_id, require=SystemName.HUBSPOT
        )
        if deal is None:
            return ReplayOutcome.skipped(
                self.kind, f"deal for project {project_id} is not synchronized yet", rentman_id=origin_id
            )

        data = self._properties(subproject)
        order_id, _ = await self.create_or_link(SystemName.HUBSPOT, data, parent_id=deal.hubspot_id)
        correlation = await self.store.upsert(
            self.kind,
            hubspot_id=order_id,
            rentman_id=origin_id,
            display_name=display_name(self.kind, SystemName.RENTMAN, subproject),
            links=_links_under(deal),
        )
        await self.reconciler.ensure_edges(correlation)
        await self.status.recompute(deal)
        self._logger.info(
            "sync.order_created",
            local_id=correlation.local_id,
            hubspot_id=order_id,
            rentman_id=origin_id,
            deal_local_id=deal.local_id,
        )
        return ReplayOutcome(
            kind=self.kind,
            action=ItemAction.CREATE,
            hubspot_id=order_id,
            rentman_id=origin_id,
            data_after=data,
        )

    async def on_update(
        self,
        origin: SystemName,
        origin_id: str,
        *,
        record: dict[str, Any] | None = None,
        changes: dict[str, Any] | None = None,
    ) -> ReplayOutcome:
        correlation = await self.find_correlation(origin, origin_id)
        if correlation is None or correlation.hubspot_id is None:
            return await self.on_create(origin, origin_id, record=record)

        subproject = record or await self.rentman.get(self.kind, origin_id)
        if subproject is None:
            return ReplayOutcome.skipped(
                self.kind, "not found on rentman", hubspot_id=correlation.hubspot_id, rentman_id=origin_id
            )

        data = self._properties(subproject)
        await self.hubspot.update(self.kind, correlation.hubspot_id, data)
        name = display_name(self.kind, SystemName.RENTMAN, subproject)
        if name != correlation.display_name:
            await self.store.update_name(self.kind, correlation.local_id, name)

        deal = await self.store.find_by_b(
            EntityKind.DEAL, extract_id_from_ref(subproject.get("project"))
        )
        if deal is not None:
            await self.reconciler.reconcile(correlation, _links_under(deal))
        else:
            deal = await self.store.get(EntityKind.DEAL, correlation.parent_local_id)
        await self.status.recompute(deal)
        self._logger.info(
            "sync.order_updated",
            local_id=correlation.local_id,
            hubspot_id=correlation.hubspot_id,
            rentman_id=origin_id,
        )
        return ReplayOutcome(
            kind=self.kind,
            action=ItemAction.UPDATE,
            hubspot_id=correlation.hubspot_id,
            rentman_id=origin_id,
            data_after=data,
        )

    async def on_delete(self, origin: SystemName, origin_id: str) -> ReplayOutcome:
        correlation = await self.find_correlation(origin, origin_id)
        if correlation is None:
            return ReplayOutcome.skipped(self.kind, "not correlated", rentman_id=origin_id)

        if correlation.hubspot_id is not None:
            await self.hubspot.delete(self.kind, correlation.hubspot_id)
        await self.store.delete_record(self.kind, correlation.local_id)
        deal = await self.store.get(EntityKind.DEAL, correlation.parent_local_id)
        await self.status.recompute(deal)
        self._logger.info(
            "sync.order_deleted",
            local_id=correlation.local_id,
            hubspot_id=correlation.hubspot_id,
            rentman_id=origin_id,
        )
        return ReplayOutcome(
            kind=self.kind,
            action=ItemAction.DELETE,
            hubspot_id=correlation.hubspot_id,
            rentman_id=origin_id,
        )

    def amount_properties(self, record: dict[str, Any]) -> dict[str, Any]:
        return {"hs_total_price": sanitize_number(record.get("project_total_price"))}

    async def sync_financials(self, recorder: SyncRecorder) -> SyncStats:
        return await self._refresh_amounts(recorder)
