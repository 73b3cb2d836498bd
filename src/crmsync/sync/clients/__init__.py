"""System clients for HubSpot and Rentman.

Both implement the SystemClient interface the synchronizers and the
association reconciler depend on.
"""

from src.crmsync.sync.clients.base import SystemClient
from src.crmsync.sync.clients.hubspot import HubSpotClient, associated_ids
from src.crmsync.sync.clients.rentman import RentmanClient, rentman_ref

__all__ = [
    "HubSpotClient",
    "RentmanClient",
    "SystemClient",
    "associated_ids",
    "rentman_ref",
]
