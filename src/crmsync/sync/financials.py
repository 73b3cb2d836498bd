"""Rentman cost line changes -> HubSpot deal amount and order price.

Project costs and equipment groups are not synchronized themselves, but a
change to one moves the totals of the project and subproject it belongs to.
Each changed line is read back from Rentman to find those two, and the
correlated deal and order get their amounts refreshed.
"""

from __future__ import annotations

import structlog

from src.crmsync.sync.clients.rentman import RentmanClient
from src.crmsync.sync.kinds import EntityKind, SystemName
from src.crmsync.sync.mapping import extract_id_from_ref
from src.crmsync.sync.recorder import SyncRecorder
from src.crmsync.sync.schemas import ItemAction, ItemStatus, ReplayOutcome, RentmanItem
from src.crmsync.sync.synchronizers.base import EntitySynchronizer

logger = structlog.get_logger(__name__)

# Rentman webhook itemType -> collection the line is read from
FINANCIAL_ITEM_TYPES: dict[str, str] = {
    "ProjectCost": "projectcosts",
    "ProjectEquipmentGroup": "projectequipmentgroup",
}


def is_financial_item_type(item_type: str | None) -> bool:
    return item_type in FINANCIAL_ITEM_TYPES


class FinancialRefresher:
    """Refreshes deal and order amounts after a cost line changed.

    Args:
        rentman: Client used to read the changed line.
        deals: Deal synchronizer; owns the deal amount mapping.
        orders: Order synchronizer; owns the order price mapping.
    """

    def __init__(
        self,
        rentman: RentmanClient,
        deals: EntitySynchronizer,
        orders: EntitySynchronizer,
    ) -> None:
        self._rentman = rentman
        self._deals = deals
        self._orders = orders

    async def refresh_for_item(
        self,
        item_type: str,
        item: RentmanItem,
        *,
        recorder: SyncRecorder | None = None,
    ) -> list[ReplayOutcome]:
        """Refresh the totals of the project (and subproject) owning ``item``.

        The order is only refreshed once its deal was, so an unsynchronized
        project skips both.
        """
        ref = item.ref or f"/{FINANCIAL_ITEM_TYPES[item_type]}/{item.id}"
        try:
            line = await self._rentman.get_ref(ref)
        except Exception as exc:
            logger.error(
                "financials.line_read_failed",
                item_type=item_type,
                item_id=item.id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            if recorder is not None:
                await recorder.record_failure(
                    exc,
                    kind=EntityKind.DEAL,
                    action=ItemAction.UPDATE,
                    source_system=SystemName.RENTMAN,
                )
            return [
                ReplayOutcome(
                    kind=EntityKind.DEAL,
                    action=ItemAction.ERROR,
                    status=ItemStatus.FAILED,
                    reason=str(exc) or type(exc).__name__,
                    error=exc,
                    attempted=ItemAction.UPDATE,
                    origin=SystemName.RENTMAN,
                )
            ]
        if line is None:
            return [await self._skip(f"{item_type} {item.id} not found on rentman", recorder)]

        project_id = extract_id_from_ref(line.get("project"))
        subproject_id = extract_id_from_ref(line.get("subproject"))
        if project_id is None:
            return [await self._skip(f"{item_type} {item.id} has no project", recorder)]

        outcomes = [await self._deals.refresh_amount(project_id, recorder=recorder)]
        if subproject_id is not None and outcomes[0].status is ItemStatus.SUCCESS:
            outcomes.append(await self._orders.refresh_amount(subproject_id, recorder=recorder))

        logger.info(
            "financials.refreshed",
            item_type=item_type,
            item_id=item.id,
            project_id=project_id,
            subproject_id=subproject_id,
            statuses=[outcome.status.value for outcome in outcomes],
        )
        return outcomes

    async def _skip(self, reason: str, recorder: SyncRecorder | None) -> ReplayOutcome:
        outcome = ReplayOutcome.skipped(EntityKind.DEAL, reason)
        logger.info("financials.skipped", reason=reason)
        if recorder is not None:
            await recorder.log_outcome(outcome)
        return outcome
