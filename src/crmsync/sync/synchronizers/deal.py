"""Deal synchronizer -- Rentman project -> HubSpot deal, plus project requests.

Deal fields are owned by Rentman. The HubSpot side only originates project
requests: a new HubSpot deal with a usage period becomes a Rentman project
request, and when a planner converts that request into a project, the
project's create event claims the existing deal instead of creating a
second one. Setting ``opret_i_rentam_request`` to ``Proev Igen`` on the deal
retries a request that failed.
"""

from __future__ import annotations

from typing import Any

from src.crmsync.sync.clients.hubspot import associated_ids
from src.crmsync.sync.clients.rentman import PROJECT_REFERENCE_FIELDS, rentman_ref
from src.crmsync.sync.kinds import EntityKind, SystemName
from src.crmsync.sync.mapping import (
    REQUEST_RETRY_VALUE,
    deal_request_properties,
    deal_to_hubspot,
    display_name,
    extract_id_from_ref,
    project_request_from_deal,
    rentman_app_url,
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
from src.crmsync.sync.synchronizers.base import EntitySynchronizer, ids_for, record_id

REQUEST_PROPERTY = "opret_i_rentam_request"


class DealSynchronizer(EntitySynchronizer):
    kind = EntityKind.DEAL
    # HubSpot deals only originate project requests, never a batch replay
    batch_origins = frozenset({SystemName.RENTMAN})

    def _project_url(self, project_id: str) -> str:
        return rentman_app_url(self.settings.RENTMAN_APP_URL, "projects", project_id)

    def _deal_properties(self, project: dict[str, Any], *, create: bool = False) -> dict[str, Any]:
        return deal_to_hubspot(
            project,
            pipeline=self.settings.DEAL_PIPELINE_ID,
            project_url=self._project_url(record_id(project) or ""),
            create=create,
        )

    async def _customer_links(self, project: dict[str, Any], *, wait: bool) -> ParentLinks:
        """Local ids of the project's customer organization and contact person.

        Projects without a correlated customer fall back to the configured
        placeholder organization.
        """
        contact_id = extract_id_from_ref(project.get(PROJECT_REFERENCE_FIELDS[EntityKind.ORGANIZATION]))
        person_id = extract_id_from_ref(project.get(PROJECT_REFERENCE_FIELDS[EntityKind.PERSON]))

        organization: CorrelationRecord | None = None
        if contact_id is not None:
            if wait:
                organization = await self.wait_for_correlation(
                    EntityKind.ORGANIZATION,
                    SystemName.RENTMAN,
                    contact_id,
                    require=SystemName.HUBSPOT,
                )
            else:
                organization = await self.store.find_by_b(EntityKind.ORGANIZATION, contact_id)
        if organization is None:
            organization = await self.store.find_by_name(
                EntityKind.ORGANIZATION, self.settings.MISSING_ORGANIZATION_NAME
            )
            if organization is not None:
                self._logger.info(
                    "sync.deal_missing_organization",
                    project_id=record_id(project),
                    contact_id=contact_id,
                    fallback_local_id=organization.local_id,
                )

        person = await self.store.find_by_b(EntityKind.PERSON, person_id)
        return ParentLinks(
            parent=organization.local_id if organization is not None else None,
            person=person.local_id if person is not None else None,
        )

    # ── Create ──────────────────────────────────────────────────────────

    async def on_create(
        self,
        origin: SystemName,
        origin_id: str,
        *,
        record: dict[str, Any] | None = None,
    ) -> ReplayOutcome:
        if origin is SystemName.HUBSPOT:
            return await self._request_project(origin_id, record=record)

        existing = await self.find_correlation(origin, origin_id)
        if existing is not None and existing.hubspot_id is not None:
            return await self.on_update(origin, origin_id, record=record)

        project = record or await self.rentman.get(self.kind, origin_id)
        if project is None:
            return ReplayOutcome.skipped(self.kind, "not found on rentman", rentman_id=origin_id)

        claimed = await self._claim_request(origin_id)
        if claimed is not None:
            return await self._link_claimed(claimed, origin_id, project)

        links = await self._customer_links(project, wait=True)
        organization = await self.store.get(EntityKind.ORGANIZATION, links.parent)
        data = self._deal_properties(project, create=True)
        deal_id, _ = await self.create_or_link(
            SystemName.HUBSPOT,
            data,
            parent_id=organization.hubspot_id if organization is not None else None,
        )
        name = display_name(self.kind, SystemName.RENTMAN, project)
        correlation = await self.store.upsert(
            self.kind,
            hubspot_id=deal_id,
            rentman_id=origin_id,
            display_name=name,
            links=links,
        )
        await self.reconciler.ensure_edges(correlation)
        self._logger.info(
            "sync.deal_created",
            local_id=correlation.local_id,
            hubspot_id=deal_id,
            rentman_id=origin_id,
            organization_local_id=links.parent,
            person_local_id=links.person,
        )
        return ReplayOutcome(
            kind=self.kind,
            action=ItemAction.CREATE,
            hubspot_id=deal_id,
            rentman_id=origin_id,
            data_after=data,
        )

    async def _claim_request(self, project_id: str) -> CorrelationRecord | None:
        """Deal waiting on the project request that became ``project_id``."""
        project_ref = rentman_ref(self.kind, project_id)
        for request in await self.rentman.list_project_requests():
            if request.get("linked_project") != project_ref:
                continue
            deal = await self.store.find_deal_by_request(request.get("id"))
            if deal is not None and deal.hubspot_id is not None:
                return deal
        return None

    async def _link_claimed(
        self,
        deal: CorrelationRecord,
        project_id: str,
        project: dict[str, Any],
    ) -> ReplayOutcome:
        data = self._deal_properties(project)
        await self.hubspot.update(self.kind, deal.hubspot_id, data)
        correlation = await self.store.upsert(
            self.kind,
            hubspot_id=deal.hubspot_id,
            rentman_id=project_id,
            display_name=display_name(self.kind, SystemName.RENTMAN, project),
        )
        await self.store.clear_request(correlation.local_id)
        links = await self._customer_links(project, wait=False)
        await self.reconciler.reconcile_deal(correlation, links.parent, links.person)
        self._logger.info(
            "sync.deal_request_converted",
            local_id=correlation.local_id,
            hubspot_id=deal.hubspot_id,
            rentman_id=project_id,
            request_id=deal.rentman_request_id,
        )
        return ReplayOutcome(
            kind=self.kind,
            action=ItemAction.UPDATE,
            hubspot_id=deal.hubspot_id,
            rentman_id=project_id,
            data_after=data,
        )

    async def _request_project(
        self,
        deal_id: str,
        *,
        record: dict[str, Any] | None = None,
    ) -> ReplayOutcome:
        """Create a Rentman project request for a HubSpot deal."""
        existing = await self.store.find_by_a(self.kind, deal_id)
        if existing is not None and (existing.rentman_id or existing.rentman_request_id):
            return ReplayOutcome.skipped(
                self.kind, "deal already has a project or request", hubspot_id=deal_id
            )

        deal = record if record is not None and "associations" in record else None
        deal = deal or await self.hubspot.get(self.kind, deal_id)
        if deal is None:
            return ReplayOutcome.skipped(self.kind, "not found on hubspot", hubspot_id=deal_id)

        organization: CorrelationRecord | None = None
        company_ids = associated_ids(deal, EntityKind.ORGANIZATION)
        if company_ids:
            organization = await self.store.find_by_a(EntityKind.ORGANIZATION, company_ids[0])
        linked_contact = (
            rentman_ref(EntityKind.ORGANIZATION, organization.rentman_id)
            if organization is not None and organization.rentman_id is not None
            else None
        )

        body = project_request_from_deal(deal, linked_contact_ref=linked_contact)
        if body is None:
            return ReplayOutcome.skipped(
                self.kind, "deal has no complete usage period", hubspot_id=deal_id
            )

        request = await self.rentman.create_project_request(body)
        request_id = record_id(request)
        if request_id is None:
            raise ValueError(f"Rentman returned no project request id for deal {deal_id}")
        correlation = await self.store.upsert(
            self.kind,
            hubspot_id=deal_id,
            rentman_request_id=request_id,
            display_name=display_name(self.kind, SystemName.HUBSPOT, deal),
            links=ParentLinks(parent=organization.local_id if organization is not None else None),
        )
        properties = deal_request_properties(
            request,
            rentman_app_url(self.settings.RENTMAN_APP_URL, "projectrequests", request_id),
        )
        await self.hubspot.update(self.kind, deal_id, properties)
        self._logger.info(
            "sync.deal_request_created",
            local_id=correlation.local_id,
            hubspot_id=deal_id,
            request_id=request_id,
        )
        return ReplayOutcome(
            kind=self.kind,
            action=ItemAction.CREATE,
            hubspot_id=deal_id,
            data_after=body,
        )

    # ── Update ──────────────────────────────────────────────────────────

    async def on_update(
        self,
        origin: SystemName,
        origin_id: str,
        *,
        record: dict[str, Any] | None = None,
        changes: dict[str, Any] | None = None,
    ) -> ReplayOutcome:
        if origin is SystemName.HUBSPOT:
            return await self._retry_request(origin_id, record=record, changes=changes)

        correlation = await self.find_correlation(origin, origin_id)
        if correlation is None or correlation.hubspot_id is None:
            return await self.on_create(origin, origin_id, record=record)

        project = record or await self.rentman.get(self.kind, origin_id)
        if project is None:
            return ReplayOutcome.skipped(
                self.kind, "not found on rentman", **ids_for(origin, origin_id)
            )

        data = self._deal_properties(project)
        await self.hubspot.update(self.kind, correlation.hubspot_id, data)
        name = display_name(self.kind, SystemName.RENTMAN, project)
        if name != correlation.display_name:
            await self.store.update_name(self.kind, correlation.local_id, name)

        links = await self._customer_links(project, wait=False)
        await self.reconciler.reconcile_deal(correlation, links.parent, links.person)
        self._logger.info(
            "sync.deal_updated",
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

    async def _retry_request(
        self,
        deal_id: str,
        *,
        record: dict[str, Any] | None,
        changes: dict[str, Any] | None,
    ) -> ReplayOutcome:
        requested = (changes or {}).get(REQUEST_PROPERTY)
        if requested is None and record is not None:
            requested = (record.get("properties") or {}).get(REQUEST_PROPERTY)
        if requested != REQUEST_RETRY_VALUE:
            return ReplayOutcome.skipped(
                self.kind, "deal fields are maintained from rentman", hubspot_id=deal_id
            )
        self._logger.info("sync.deal_request_retry", hubspot_id=deal_id)
        return await self._request_project(deal_id)

    # ── Delete ──────────────────────────────────────────────────────────

    async def on_delete(self, origin: SystemName, origin_id: str) -> ReplayOutcome:
        correlation = await self.find_correlation(origin, origin_id)
        if correlation is None:
            return ReplayOutcome.skipped(self.kind, "not correlated", **ids_for(origin, origin_id))

        if origin is SystemName.HUBSPOT:
            if correlation.rentman_request_id is not None:
                await self.rentman.delete_project_request(correlation.rentman_request_id)
                await self.store.clear_request(correlation.local_id)
            if correlation.rentman_id is not None:
                # The project lives on; its next update creates a new deal
                await self.store.unlink(self.kind, correlation.local_id, SystemName.HUBSPOT)
            else:
                await self.store.delete_record(self.kind, correlation.local_id)
        else:
            if correlation.hubspot_id is not None:
                await self.hubspot.delete(self.kind, correlation.hubspot_id)
            await self.store.delete_record(self.kind, correlation.local_id)
        self._logger.info(
            "sync.deal_deleted",
            origin=origin.value,
            local_id=correlation.local_id,
            hubspot_id=correlation.hubspot_id,
            rentman_id=correlation.rentman_id,
            request_id=correlation.rentman_request_id,
        )
        return ReplayOutcome(
            kind=self.kind,
            action=ItemAction.DELETE,
            hubspot_id=correlation.hubspot_id,
            rentman_id=correlation.rentman_id,
        )

    # ── Financials ──────────────────────────────────────────────────────

    def amount_properties(self, record: dict[str, Any]) -> dict[str, Any]:
        return {"amount": sanitize_number(record.get("project_total_price"))}

    async def sync_financials(self, recorder: SyncRecorder) -> SyncStats:
        return await self._refresh_amounts(recorder)
