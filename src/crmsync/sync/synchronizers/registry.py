"""Synchronizer lookup table.

Dispatch and the coordinator resolve an EntityKind to its synchronizer
through the dict built here; nothing routes on raw type strings.
"""

from __future__ import annotations

import structlog

from src.crmsync.config import Settings, get_settings
from src.crmsync.sync.associations import AssociationReconciler
from src.crmsync.sync.clients.base import SystemClient
from src.crmsync.sync.correlation import CorrelationStore
from src.crmsync.sync.kinds import EntityKind, SystemName
from src.crmsync.sync.retry import ConsistencyWait
from src.crmsync.sync.status import StatusAggregator
from src.crmsync.sync.synchronizers.base import EntitySynchronizer
from src.crmsync.sync.synchronizers.deal import DealSynchronizer
from src.crmsync.sync.synchronizers.order import OrderSynchronizer
from src.crmsync.sync.synchronizers.organization import OrganizationSynchronizer
from src.crmsync.sync.synchronizers.person import PersonSynchronizer

logger = structlog.get_logger(__name__)

SynchronizerTable = dict[EntityKind, EntitySynchronizer]


def build_synchronizers(
    hubspot: SystemClient,
    rentman: SystemClient,
    store: CorrelationStore,
    *,
    wait: ConsistencyWait | None = None,
    settings: Settings | None = None,
) -> SynchronizerTable:
    """Wire one synchronizer per entity kind over shared collaborators."""
    settings = settings or get_settings()
    wait = wait or ConsistencyWait.from_settings(settings)
    reconciler = AssociationReconciler(
        store, {SystemName.HUBSPOT: hubspot, SystemName.RENTMAN: rentman}
    )
    shared = {
        "hubspot": hubspot,
        "rentman": rentman,
        "store": store,
        "reconciler": reconciler,
        "wait": wait,
        "settings": settings,
    }

    organization = OrganizationSynchronizer(**shared)
    person = PersonSynchronizer(**shared)
    organization.person_synchronizer = person
    table: SynchronizerTable = {
        EntityKind.ORGANIZATION: organization,
        EntityKind.PERSON: person,
        EntityKind.DEAL: DealSynchronizer(**shared),
        EntityKind.ORDER: OrderSynchronizer(
            status=StatusAggregator(hubspot, rentman, store), **shared
        ),
    }
    logger.info("synchronizers.built", kinds=[kind.value for kind in table])
    return table
