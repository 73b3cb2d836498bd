"""Deal stage derived from the stages of its orders.

aggregate_stage is a pure, order-independent function over a multiset of
order stages. StatusAggregator applies it: it reads the Rentman project's
subprojects, maps their statuses and moves the HubSpot deal.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

import structlog

from src.crmsync.sync.clients.base import SystemClient
from src.crmsync.sync.correlation import CorrelationStore
from src.crmsync.sync.kinds import EntityKind
from src.crmsync.sync.mapping import (
    DEAL_STAGE_IDS,
    STAGE_PRIORITY,
    OrderStage,
    order_stage_for_status,
)
from src.crmsync.sync.schemas import CorrelationRecord

logger = structlog.get_logger(__name__)


def aggregate_stage(
    stages: Iterable[OrderStage | None],
    priority: tuple[OrderStage, ...] = STAGE_PRIORITY,
) -> OrderStage | None:
    """Pick the parent stage for a multiset of child stages.

    - no usable stage: None (leave the parent untouched)
    - every child in the same stage: that stage
    - otherwise: the first stage of ``priority`` that any child is in, or
      None if no child stage appears in ``priority``
    """
    present = {stage for stage in stages if stage is not None}
    if not present:
        return None
    if len(present) == 1:
        return next(iter(present))
    for stage in priority:
        if stage in present:
            return stage
    return None


def deal_stage_for(stages: Iterable[OrderStage | None]) -> str | None:
    """HubSpot deal stage id for a multiset of order stages, or None."""
    stage = aggregate_stage(stages)
    return DEAL_STAGE_IDS[stage] if stage is not None else None


class StatusAggregator:
    """Recompute a deal's stage after any of its orders changed.

    Args:
        hubspot: Destination client (deal stage lives in HubSpot).
        rentman: Origin client (order statuses live on Rentman subprojects).
        store: Correlation store used to resolve the deal.
    """

    def __init__(
        self,
        hubspot: SystemClient,
        rentman: SystemClient,
        store: CorrelationStore,
    ) -> None:
        self._hubspot = hubspot
        self._rentman = rentman
        self._store = store

    async def stages_for_project(self, project_id: str) -> list[OrderStage | None]:
        subprojects = await self._rentman.list_children(EntityKind.DEAL, project_id, EntityKind.ORDER)
        return [order_stage_for_status(sub.get("status")) for sub in subprojects]

    async def recompute(self, deal: CorrelationRecord | None) -> str | None:
        """Move the deal to the aggregated stage of its orders.

        Returns:
            The deal stage id written, or None when the deal was left alone.
        """
        if deal is None or deal.hubspot_id is None or deal.rentman_id is None:
            return None
        stages = await self.stages_for_project(deal.rentman_id)
        stage_id = deal_stage_for(stages)
        if stage_id is None:
            logger.info(
                "status.deal_unchanged",
                deal_local_id=deal.local_id,
                order_count=len(stages),
            )
            return None
        await self._hubspot.update(EntityKind.DEAL, deal.hubspot_id, {"dealstage": stage_id})
        logger.info(
            "status.deal_stage_updated",
            deal_local_id=deal.local_id,
            hubspot_id=deal.hubspot_id,
            dealstage=stage_id,
            order_count=len(stages),
        )
        return stage_id

    async def recompute_for_project(self, project_id: Any) -> str | None:
        deal = await self._store.find_by_b(EntityKind.DEAL, project_id)
        return await self.recompute(deal)
