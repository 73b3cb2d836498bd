"""Person synchronizer -- HubSpot contact <-> Rentman contact person.

A Rentman contact person always lives under a contact, so a HubSpot contact
is only replayed once its primary company is correlated. The company may be
mid-replay in a concurrent webhook, which the consistency wait covers.
HubSpot contact/company association events create the Rentman contact
person (added) or delete it (removed).
"""

from __future__ import annotations

from typing import Any

from src.crmsync.sync.clients.hubspot import associated_ids
from src.crmsync.sync.kinds import EntityKind, SystemName, parse_association_type
from src.crmsync.sync.mapping import (
    display_name,
    extract_id_from_ref,
    person_to_hubspot,
    person_to_rentman,
)
from src.crmsync.sync.schemas import (
    CorrelationRecord,
    HubSpotEvent,
    ItemAction,
    ParentLinks,
    ReplayOutcome,
)
from src.crmsync.sync.synchronizers.base import EntitySynchronizer, ids_for

PRIMARY_COMPANY_LABEL = "contact_to_company"


class PersonSynchronizer(EntitySynchronizer):
    kind = EntityKind.PERSON

    def _map(self, origin: SystemName, record: dict[str, Any]) -> dict[str, str]:
        if origin is SystemName.HUBSPOT:
            return person_to_rentman(record)
        return person_to_hubspot(record)

    def _organization_id(self, origin: SystemName, record: dict[str, Any]) -> str | None:
        """Origin-side id of the organization a person belongs to."""
        if origin is SystemName.HUBSPOT:
            companies = associated_ids(
                record, EntityKind.ORGANIZATION, type_label=PRIMARY_COMPANY_LABEL
            )
            return companies[0] if companies else None
        contact_id = extract_id_from_ref(record.get("contact"))
        return str(contact_id) if contact_id is not None else None

    async def _fetch(
        self,
        origin: SystemName,
        origin_id: str,
        record: dict[str, Any] | None,
    ) -> dict[str, Any] | None:
        # Batch pages from HubSpot carry no associations; refetch for those
        if record is not None and (origin is SystemName.RENTMAN or "associations" in record):
            return record
        return await self.client(origin).get(self.kind, origin_id)

    # ── Create ──────────────────────────────────────────────────────────

    async def on_create(
        self,
        origin: SystemName,
        origin_id: str,
        *,
        record: dict[str, Any] | None = None,
    ) -> ReplayOutcome:
        destination = origin.counterpart
        existing = await self.find_correlation(origin, origin_id)
        if existing is not None and existing.external_id(destination) is not None:
            return await self.on_update(origin, origin_id, record=record)

        record = await self._fetch(origin, origin_id, record)
        if record is None:
            return ReplayOutcome.skipped(
                self.kind, f"not found on {origin.value}", **ids_for(origin, origin_id)
            )

        organization_id = self._organization_id(origin, record)
        if organization_id is None:
            return ReplayOutcome.skipped(
                self.kind, "person has no organization", **ids_for(origin, origin_id)
            )
        organization = await self.wait_for_correlation(
            EntityKind.ORGANIZATION, origin, organization_id, require=destination
        )
        if organization is None:
            return ReplayOutcome.skipped(
                self.kind,
                f"organization {organization_id} is not synchronized yet",
                **ids_for(origin, origin_id),
            )
        return await self._create_under(origin, origin_id, record, organization)

    async def _create_under(
        self,
        origin: SystemName,
        origin_id: str,
        record: dict[str, Any],
        organization: CorrelationRecord,
    ) -> ReplayOutcome:
        destination = origin.counterpart
        data = self._map(origin, record)
        natural_key = {"email": data["email"]} if data.get("email") else None
        destination_id, created = await self.create_or_link(
            destination,
            data,
            parent_id=organization.external_id(destination),
            natural_key=natural_key,
        )
        if not created:
            await self.client(destination).update(self.kind, destination_id, data)

        name = display_name(self.kind, origin, record)
        correlation = await self.store.upsert(
            self.kind,
            display_name=name,
            links=ParentLinks(parent=organization.local_id),
            **ids_for(origin, origin_id, destination_id),
        )
        if destination is SystemName.HUBSPOT:
            # A linked contact may not be associated with the company yet
            await self.reconciler.ensure_edges(correlation)
        self._logger.info(
            "sync.person_created" if created else "sync.person_linked",
            origin=origin.value,
            local_id=correlation.local_id,
            organization_local_id=organization.local_id,
            hubspot_id=correlation.hubspot_id,
            rentman_id=correlation.rentman_id,
        )
        return ReplayOutcome(
            kind=self.kind,
            action=ItemAction.CREATE if created else ItemAction.UPDATE,
            data_after=data,
            **ids_for(origin, origin_id, destination_id),
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
        destination = origin.counterpart
        correlation = await self.find_correlation(origin, origin_id)
        if correlation is None or correlation.external_id(destination) is None:
            return await self.on_create(origin, origin_id, record=record)

        record = await self._fetch(origin, origin_id, record)
        if record is None:
            return ReplayOutcome.skipped(
                self.kind, f"not found on {origin.value}", **ids_for(origin, origin_id)
            )

        destination_id = correlation.external_id(destination)
        data = self._map(origin, record)
        await self.client(destination).update(self.kind, destination_id, data)

        name = display_name(self.kind, origin, record)
        if name != correlation.display_name:
            await self.store.update_name(self.kind, correlation.local_id, name)

        if origin is SystemName.RENTMAN:
            # A contact person moved to another contact moves its HubSpot company edge
            organization_id = self._organization_id(origin, record)
            organization = await self.store.find(EntityKind.ORGANIZATION, origin, organization_id)
            if organization is not None:
                await self.reconciler.reconcile(
                    correlation, ParentLinks(parent=organization.local_id)
                )

        self._logger.info(
            "sync.person_updated",
            origin=origin.value,
            local_id=correlation.local_id,
        )
        return ReplayOutcome(
            kind=self.kind,
            action=ItemAction.UPDATE,
            data_after=data,
            **ids_for(origin, origin_id, destination_id),
        )

    # ── Delete ──────────────────────────────────────────────────────────

    async def on_delete(self, origin: SystemName, origin_id: str) -> ReplayOutcome:
        """Drop the person's company edge on HubSpot and forget the link.

        The destination person itself is kept: it may still be related to
        other records on its own system.
        """
        correlation = await self.find_correlation(origin, origin_id)
        if correlation is None:
            return ReplayOutcome.skipped(self.kind, "not correlated", **ids_for(origin, origin_id))

        destination = origin.counterpart
        destination_id = correlation.external_id(destination)
        if destination is SystemName.HUBSPOT and destination_id is not None:
            organization = await self.store.get(EntityKind.ORGANIZATION, correlation.parent_local_id)
            if organization is not None and organization.hubspot_id is not None:
                await self.hubspot.remove_association(
                    self.kind, destination_id, EntityKind.ORGANIZATION, organization.hubspot_id
                )
        await self.store.delete_record(self.kind, correlation.local_id)
        self._logger.info(
            "sync.person_unlinked",
            origin=origin.value,
            local_id=correlation.local_id,
            destination_id=destination_id,
        )
        return ReplayOutcome(
            kind=self.kind,
            action=ItemAction.DELETE,
            **ids_for(origin, origin_id, destination_id),
        )

    # ── Associations ────────────────────────────────────────────────────

    async def on_association_change(self, event: HubSpotEvent) -> ReplayOutcome:
        pair = parse_association_type(event.association_type)
        if pair is None or set(pair) != {EntityKind.PERSON, EntityKind.ORGANIZATION}:
            return ReplayOutcome.skipped(
                self.kind, f"association {event.association_type} is not replayed"
            )
        if pair[0] is EntityKind.PERSON:
            contact_id, company_id = event.from_object_id, event.to_object_id
        else:
            contact_id, company_id = event.to_object_id, event.from_object_id
        contact_id, company_id = str(contact_id), str(company_id)

        if event.association_removed:
            return await self._remove_from_company(contact_id, company_id)
        return await self._add_to_company(contact_id, company_id)

    async def _add_to_company(self, contact_id: str, company_id: str) -> ReplayOutcome:
        ids = ids_for(SystemName.HUBSPOT, contact_id)
        existing = await self.store.find_by_a(self.kind, contact_id)
        if existing is not None and existing.rentman_id is not None:
            return ReplayOutcome.skipped(self.kind, "person already synchronized", **ids)

        organization = await self.wait_for_correlation(
            EntityKind.ORGANIZATION, SystemName.HUBSPOT, company_id, require=SystemName.RENTMAN
        )
        if organization is None:
            return ReplayOutcome.skipped(
                self.kind, f"organization {company_id} is not synchronized yet", **ids
            )
        record = await self.hubspot.get(self.kind, contact_id)
        if record is None:
            return ReplayOutcome.skipped(self.kind, "not found on hubspot", **ids)
        return await self._create_under(SystemName.HUBSPOT, contact_id, record, organization)

    async def _remove_from_company(self, contact_id: str, company_id: str) -> ReplayOutcome:
        ids = ids_for(SystemName.HUBSPOT, contact_id)
        correlation = await self.store.find_by_a(self.kind, contact_id)
        organization = await self.store.find_by_a(EntityKind.ORGANIZATION, company_id)
        if correlation is None or correlation.rentman_id is None:
            return ReplayOutcome.skipped(self.kind, "not correlated", **ids)
        if organization is None or correlation.parent_local_id != organization.local_id:
            return ReplayOutcome.skipped(
                self.kind, f"person is not synchronized under organization {company_id}", **ids
            )

        # Rentman contact persons cannot exist without their contact
        await self.rentman.delete(self.kind, correlation.rentman_id)
        await self.store.delete_record(self.kind, correlation.local_id)
        self._logger.info(
            "sync.person_removed_from_organization",
            local_id=correlation.local_id,
            organization_local_id=organization.local_id,
            rentman_id=correlation.rentman_id,
        )
        return ReplayOutcome(
            kind=self.kind,
            action=ItemAction.DELETE,
            hubspot_id=contact_id,
            rentman_id=correlation.rentman_id,
        )
