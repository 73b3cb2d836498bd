"""Association reconciler -- keeps destination relationship edges in step.

Each child kind declares its edges: which ParentLinks slot it reads, which
kind the edge points to. Reconciling compares the cached links on the
correlation record with the links the origin now implies and only touches
the slots that changed: the edge to the old counterpart is removed, the edge
to the new one added, then the cache is updated. Both edge calls are no-ops
when repeated, so running the reconciler twice for one change converges to
the same edge set.
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from src.crmsync.sync.clients.base import SystemClient
from src.crmsync.sync.correlation import CorrelationStore
from src.crmsync.sync.kinds import EntityKind, SystemName
from src.crmsync.sync.schemas import CorrelationRecord, ParentLinks

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class EdgeSpec:
    """One relationship edge carried by a child kind."""

    slot: str
    to_kind: EntityKind


EDGE_SPECS: dict[EntityKind, tuple[EdgeSpec, ...]] = {
    EntityKind.PERSON: (EdgeSpec("parent", EntityKind.ORGANIZATION),),
    EntityKind.DEAL: (
        EdgeSpec("parent", EntityKind.ORGANIZATION),
        EdgeSpec("person", EntityKind.PERSON),
    ),
    EntityKind.ORDER: (
        EdgeSpec("parent", EntityKind.DEAL),
        EdgeSpec("organization", EntityKind.ORGANIZATION),
        EdgeSpec("person", EntityKind.PERSON),
    ),
}


def links_of(record: CorrelationRecord) -> ParentLinks:
    """The links currently cached on a correlation record."""
    return ParentLinks(
        parent=record.parent_local_id,
        organization=record.organization_local_id,
        person=record.person_local_id,
    )


class AssociationReconciler:
    """Diff cached versus current links and rewrite destination edges.

    Args:
        store: Correlation store holding the cached links.
        clients: Destination clients keyed by system.
    """

    def __init__(self, store: CorrelationStore, clients: dict[SystemName, SystemClient]) -> None:
        self._store = store
        self._clients = clients

    async def _external_id(
        self,
        kind: EntityKind,
        local_id: int | None,
        system: SystemName,
    ) -> str | None:
        record = await self._store.get(kind, local_id)
        return record.external_id(system) if record is not None else None

    async def reconcile(
        self,
        record: CorrelationRecord,
        new_links: ParentLinks,
        *,
        destination: SystemName = SystemName.HUBSPOT,
    ) -> bool:
        """Make the destination edges of ``record`` match ``new_links``.

        Returns:
            True if any edge changed, False for the unchanged no-op.
        """
        kind = record.kind
        edges = EDGE_SPECS.get(kind, ())
        old_links = links_of(record)
        from_id = record.external_id(destination)
        changed = False

        for edge in edges:
            old_local = getattr(old_links, edge.slot)
            new_local = getattr(new_links, edge.slot)
            if old_local == new_local:
                continue
            changed = True
            if from_id is None:
                continue
            client = self._clients[destination]
            old_target = await self._external_id(edge.to_kind, old_local, destination)
            new_target = await self._external_id(edge.to_kind, new_local, destination)
            if old_target is not None and old_target != new_target:
                await client.remove_association(kind, from_id, edge.to_kind, old_target)
            if new_target is not None:
                await client.add_association(kind, from_id, edge.to_kind, new_target)
            logger.info(
                "associations.edge_moved",
                kind=kind.value,
                local_id=record.local_id,
                to_kind=edge.to_kind.value,
                old=old_target,
                new=new_target,
            )

        if changed:
            slots = {edge.slot for edge in edges}
            merged = ParentLinks(
                **{
                    slot: getattr(new_links if slot in slots else old_links, slot)
                    for slot in ("parent", "organization", "person")
                }
            )
            await self._store.update_links(kind, record.local_id, merged)
        return changed

    async def reconcile_deal(
        self,
        deal: CorrelationRecord,
        organization_local_id: int | None,
        person_local_id: int | None,
    ) -> bool:
        """Move a deal's customer edges and cascade the change to its orders."""
        changed = await self.reconcile(
            deal,
            ParentLinks(parent=organization_local_id, person=person_local_id),
        )
        if not changed:
            return False
        for order in await self._store.children(EntityKind.ORDER, deal.local_id):
            await self.reconcile(
                order,
                ParentLinks(
                    parent=order.parent_local_id,
                    organization=organization_local_id,
                    person=person_local_id,
                ),
            )
        return True

    async def ensure_edges(
        self,
        record: CorrelationRecord,
        *,
        destination: SystemName = SystemName.HUBSPOT,
    ) -> None:
        """Add every cached edge of ``record``; existing edges are no-ops."""
        from_id = record.external_id(destination)
        if from_id is None:
            return
        links = links_of(record)
        for edge in EDGE_SPECS.get(record.kind, ()):
            target = await self._external_id(edge.to_kind, getattr(links, edge.slot), destination)
            if target is not None:
                await self._clients[destination].add_association(
                    record.kind, from_id, edge.to_kind, target
                )
