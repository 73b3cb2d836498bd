"""Per-kind synchronizers behind one on_create / on_update / on_delete interface.

Exports:
    EntitySynchronizer: Abstract base with the replay failure policy.
    OrganizationSynchronizer: HubSpot company <-> Rentman contact.
    PersonSynchronizer: HubSpot contact <-> Rentman contact person.
    DealSynchronizer: Rentman project -> HubSpot deal, deal -> project request.
    OrderSynchronizer: Rentman subproject -> HubSpot order.
    build_synchronizers: Builds the EntityKind -> synchronizer lookup table.
"""

from __future__ import annotations

from src.crmsync.sync.synchronizers.base import EntitySynchronizer
from src.crmsync.sync.synchronizers.deal import DealSynchronizer
from src.crmsync.sync.synchronizers.order import OrderSynchronizer
from src.crmsync.sync.synchronizers.organization import OrganizationSynchronizer
from src.crmsync.sync.synchronizers.person import PersonSynchronizer
from src.crmsync.sync.synchronizers.registry import SynchronizerTable, build_synchronizers

__all__ = [
    "DealSynchronizer",
    "EntitySynchronizer",
    "OrderSynchronizer",
    "OrganizationSynchronizer",
    "PersonSynchronizer",
    "SynchronizerTable",
    "build_synchronizers",
]
