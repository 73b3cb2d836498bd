"""Tests for deal stage aggregation over order stages."""

from __future__ import annotations

import itertools

import pytest

from src.crmsync.sync.kinds import EntityKind
from src.crmsync.sync.mapping import DEAL_STAGE_IDS, OrderStage
from src.crmsync.sync.status import StatusAggregator, aggregate_stage, deal_stage_for


class TestAggregateStage:
    def test_no_stages(self):
        """An empty or all-unknown multiset leaves the parent untouched."""
        assert aggregate_stage([]) is None
        assert aggregate_stage([None, None]) is None

    def test_uniform_stage_wins(self):
        assert aggregate_stage([OrderStage.RETURNED] * 3) is OrderStage.RETURNED

    def test_priority_picks_to_be_invoiced(self):
        stages = [OrderStage.CONFIRMED, OrderStage.TO_BE_INVOICED, OrderStage.PENDING]
        assert aggregate_stage(stages) is OrderStage.TO_BE_INVOICED

    def test_order_independent(self):
        """Every permutation of the same orders aggregates to the same stage."""
        stages = [OrderStage.CONCEPT, OrderStage.INVOICED, OrderStage.CANCELLED]
        results = {aggregate_stage(list(p)) for p in itertools.permutations(stages)}
        assert results == {OrderStage.INVOICED}

    def test_confirmed_beats_invoiced(self):
        assert aggregate_stage([OrderStage.INVOICED, OrderStage.CONFIRMED]) is OrderStage.CONFIRMED

    def test_mixed_unprioritized_stages(self):
        """Returned and missing-equipment only decide when all orders share them."""
        assert aggregate_stage([OrderStage.RETURNED, OrderStage.MISSING_EQUIPMENT]) is None

    def test_unprioritized_stage_with_prioritized(self):
        assert aggregate_stage([OrderStage.RETURNED, OrderStage.CANCELLED]) is OrderStage.CANCELLED

    def test_unknown_stages_ignored(self):
        assert aggregate_stage([None, OrderStage.PENDING]) is OrderStage.PENDING

    def test_deal_stage_id(self):
        assert deal_stage_for([OrderStage.COMPLETED]) == DEAL_STAGE_IDS[OrderStage.COMPLETED]
        assert deal_stage_for([]) is None


class TestStatusAggregator:
    @pytest.mark.asyncio
    async def test_recompute_moves_deal(self, hubspot, rentman, store):
        """Three orders (confirmed, to be invoiced, pending) move the deal to to-be-invoiced."""
        deal_id = hubspot.seed(EntityKind.DEAL, {"dealname": "Gala"})
        project_id = rentman.seed(EntityKind.DEAL, {"displayname": "Gala"})
        for status in (3, 9, 1):
            rentman.seed(EntityKind.ORDER, {"project": f"/projects/{project_id}", "status": status})
        deal = await store.upsert(EntityKind.DEAL, hubspot_id=deal_id, rentman_id=project_id)

        aggregator = StatusAggregator(hubspot, rentman, store)
        stage = await aggregator.recompute(deal)

        assert stage == DEAL_STAGE_IDS[OrderStage.TO_BE_INVOICED]
        assert hubspot.properties(EntityKind.DEAL, deal_id)["dealstage"] == stage

    @pytest.mark.asyncio
    async def test_recompute_without_orders_leaves_deal(self, hubspot, rentman, store):
        deal_id = hubspot.seed(EntityKind.DEAL, {"dealname": "Gala", "dealstage": "x"})
        project_id = rentman.seed(EntityKind.DEAL, {})
        deal = await store.upsert(EntityKind.DEAL, hubspot_id=deal_id, rentman_id=project_id)

        assert await StatusAggregator(hubspot, rentman, store).recompute(deal) is None
        assert hubspot.properties(EntityKind.DEAL, deal_id)["dealstage"] == "x"
        assert hubspot.calls_to("update") == []

    @pytest.mark.asyncio
    async def test_recompute_for_uncorrelated_project(self, hubspot, rentman, store):
        assert await StatusAggregator(hubspot, rentman, store).recompute_for_project("404") is None
