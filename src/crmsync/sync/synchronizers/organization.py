"""Organization synchronizer -- HubSpot company <-> Rentman contact.

Natural key is the Danish VAT number (CVR). A create replays the
organization's known persons afterwards, so persons whose webhooks arrived
first (and were skipped) get linked. Deletion cascades to the counterpart.
"""

from __future__ import annotations

from typing import Any

from src.crmsync.sync.kinds import EntityKind, SystemName
from src.crmsync.sync.mapping import (
    display_name,
    organization_to_hubspot,
    organization_to_rentman,
)
from src.crmsync.sync.schemas import ItemAction, ReplayOutcome
from src.crmsync.sync.synchronizers.base import EntitySynchronizer, ids_for

# Natural-key field on each destination
VAT_FIELDS: dict[SystemName, str] = {
    SystemName.HUBSPOT: "cvrnummer",
    SystemName.RENTMAN: "VAT_code",
}


class OrganizationSynchronizer(EntitySynchronizer):
    kind = EntityKind.ORGANIZATION

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        # Set by build_synchronizers once the person synchronizer exists
        self.person_synchronizer: EntitySynchronizer | None = None

    def _map(self, origin: SystemName, record: dict[str, Any]) -> dict[str, str]:
        if origin is SystemName.HUBSPOT:
            return organization_to_rentman(record)
        return organization_to_hubspot(record)

    async def _fetch(
        self,
        origin: SystemName,
        origin_id: str,
        record: dict[str, Any] | None,
    ) -> dict[str, Any] | None:
        if record is not None:
            return record
        return await self.client(origin).get(self.kind, origin_id)

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

        data = self._map(origin, record)
        vat_field = VAT_FIELDS[destination]
        natural_key = {vat_field: data[vat_field]} if data.get(vat_field) else None
        destination_id, created = await self.create_or_link(
            destination, data, natural_key=natural_key
        )
        if not created:
            await self.client(destination).update(self.kind, destination_id, data)

        name = display_name(self.kind, origin, record)
        correlation = await self.store.upsert(
            self.kind,
            display_name=name,
            **ids_for(origin, origin_id, destination_id),
        )
        self._logger.info(
            "sync.organization_created" if created else "sync.organization_linked",
            origin=origin.value,
            local_id=correlation.local_id,
            hubspot_id=correlation.hubspot_id,
            rentman_id=correlation.rentman_id,
            name=name,
        )
        await self._replay_persons(origin, origin_id)
        return ReplayOutcome(
            kind=self.kind,
            action=ItemAction.CREATE if created else ItemAction.UPDATE,
            data_after=data,
            **ids_for(origin, origin_id, destination_id),
        )

    async def _replay_persons(self, origin: SystemName, origin_id: str) -> None:
        if self.person_synchronizer is None:
            return
        persons = await self.client(origin).list_children(self.kind, origin_id, EntityKind.PERSON)
        for person in persons:
            person_id = person.get("id")
            if person_id is None:
                continue
            if await self.store.find(EntityKind.PERSON, origin, person_id) is not None:
                continue
            await self.person_synchronizer.replay(ItemAction.CREATE, origin, person_id)

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
        self._logger.info(
            "sync.organization_updated",
            origin=origin.value,
            local_id=correlation.local_id,
            name=name,
        )
        return ReplayOutcome(
            kind=self.kind,
            action=ItemAction.UPDATE,
            data_after=data,
            **ids_for(origin, origin_id, destination_id),
        )

    async def on_delete(self, origin: SystemName, origin_id: str) -> ReplayOutcome:
        destination = origin.counterpart
        correlation = await self.find_correlation(origin, origin_id)
        if correlation is None:
            return ReplayOutcome.skipped(self.kind, "not correlated", **ids_for(origin, origin_id))

        destination_id = correlation.external_id(destination)
        if destination_id is not None:
            await self.client(destination).delete(self.kind, destination_id)
        if destination is SystemName.RENTMAN:
            # Rentman deletes a contact's persons together with the contact
            for person in await self.store.children(EntityKind.PERSON, correlation.local_id):
                await self.store.delete_record(EntityKind.PERSON, person.local_id)
        await self.store.delete_record(self.kind, correlation.local_id)
        self._logger.info(
            "sync.organization_deleted",
            origin=origin.value,
            local_id=correlation.local_id,
            destination_id=destination_id,
        )
        return ReplayOutcome(
            kind=self.kind,
            action=ItemAction.DELETE,
            **ids_for(origin, origin_id, destination_id),
        )
