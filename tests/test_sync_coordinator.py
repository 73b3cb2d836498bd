"""Tests for batch runs, the run lock and single-entity resyncs."""

from __future__ import annotations

import pytest

from src.crmsync.sync.coordinator import RunState, SyncCoordinator
from src.crmsync.sync.errors import ExternalAPIError
from src.crmsync.sync.kinds import EntityKind, SyncDirection
from src.crmsync.sync.schemas import ItemAction, ItemStatus, RunStatus, SyncOptions


@pytest.fixture
def coordinator(synchronizers, repository) -> SyncCoordinator:
    return SyncCoordinator(synchronizers, repository)


def _seed_rentman_project(rentman):
    contact = rentman.seed(EntityKind.ORGANIZATION, {"displayname": "Acme"})
    person = rentman.seed(
        EntityKind.PERSON, {"firstname": "Jane", "lastname": "Doe", "contact": f"/contacts/{contact}"}
    )
    project = rentman.seed(
        EntityKind.DEAL,
        {"displayname": "Gala", "customer": f"/contacts/{contact}", "cust_contact": f"/contactpersons/{person}"},
    )
    subproject = rentman.seed(EntityKind.ORDER, {"displayname": "Stage", "status": 9, "project": f"/projects/{project}"})
    return contact, person, project, subproject


class TestRunState:
    def test_acquire_is_exclusive(self):
        state = RunState()
        assert state.try_acquire("full") is True
        assert state.try_acquire("organization") is False
        assert state.current == "full"
        assert state.started_at is not None

    def test_release_frees_slot(self):
        state = RunState()
        state.try_acquire("full")
        state.release()
        assert state.current is None
        assert state.try_acquire("deal") is True


class TestBatchRuns:
    @pytest.mark.asyncio
    async def test_full_sync_replays_parents_first(self, coordinator, store, hubspot, rentman):
        """One run carries a Rentman project and everything under it into HubSpot."""
        _seed_rentman_project(rentman)

        result = await coordinator.run_full_sync(
            SyncOptions(direction=SyncDirection.RENTMAN_TO_HUBSPOT, triggered_by="pytest")
        )

        assert result.status is RunStatus.COMPLETED
        assert result.stats.error == 0
        assert list(result.per_kind) == ["organization", "person", "deal", "order"]
        for kind in EntityKind:
            assert await store.count(kind) == 1
        listed = [call[1] for call in rentman.calls_to("list_page")]
        assert listed == [EntityKind.ORGANIZATION, EntityKind.PERSON, EntityKind.DEAL, EntityKind.ORDER]
        assert hubspot.calls_to("list_page") == []
        assert coordinator.run_state.current is None

    @pytest.mark.asyncio
    async def test_direction_limits_origins(self, coordinator, hubspot, rentman):
        """HubSpot deals and orders are never walked by a batch run."""
        await coordinator.run_full_sync(SyncOptions(direction=SyncDirection.BIDIRECTIONAL))

        hubspot_kinds = [call[1] for call in hubspot.calls_to("list_page")]
        assert hubspot_kinds == [EntityKind.ORGANIZATION, EntityKind.PERSON]
        rentman_kinds = [call[1] for call in rentman.calls_to("list_page")]
        assert rentman_kinds == [EntityKind.ORGANIZATION, EntityKind.PERSON, EntityKind.DEAL, EntityKind.ORDER]

    @pytest.mark.asyncio
    async def test_selected_kinds_keep_dependency_order(self, coordinator, rentman):
        await coordinator.run_full_sync(
            SyncOptions(
                direction=SyncDirection.RENTMAN_TO_HUBSPOT,
                entity_kinds=[EntityKind.ORDER, EntityKind.ORGANIZATION],
            )
        )
        assert [call[1] for call in rentman.calls_to("list_page")] == [
            EntityKind.ORGANIZATION,
            EntityKind.ORDER,
        ]

    @pytest.mark.asyncio
    async def test_concurrent_trigger_rejected(self, coordinator, repository):
        coordinator.run_state.try_acquire("full")

        result = await coordinator.run_single_type_sync(EntityKind.ORGANIZATION)

        assert result.rejected is True
        assert result.running == "full"
        assert await repository.recent_runs() == []

    @pytest.mark.asyncio
    async def test_listing_failure_aborts_run(self, coordinator, rentman, repository):
        rentman.fail_next("list_page", ExternalAPIError("rentman", 503, "maintenance"))

        result = await coordinator.run_single_type_sync(
            EntityKind.ORGANIZATION, SyncOptions(direction=SyncDirection.RENTMAN_TO_HUBSPOT)
        )

        assert result.status is RunStatus.FAILED
        assert coordinator.run_state.current is None
        details = await repository.run_details(result.run_id)
        assert details.run.status == "failed"
        assert details.errors[0].severity == "critical"

    @pytest.mark.asyncio
    async def test_item_failures_make_partial_run(self, coordinator, hubspot, rentman):
        rentman.seed(EntityKind.ORGANIZATION, {"displayname": "A"})
        rentman.seed(EntityKind.ORGANIZATION, {"displayname": "B"})
        hubspot.fail_next("create", ExternalAPIError("hubspot", 500, "boom"))

        result = await coordinator.run_single_type_sync(
            EntityKind.ORGANIZATION, SyncOptions(direction=SyncDirection.RENTMAN_TO_HUBSPOT)
        )

        assert result.status is RunStatus.PARTIAL
        assert result.per_kind["organization"].error == 1
        assert result.per_kind["organization"].success == 1
        assert len(result.errors) == 1


class TestFinancials:
    @pytest.mark.asyncio
    async def test_deal_amounts(self, coordinator, store, hubspot, rentman, repository):
        deal_id = hubspot.seed(EntityKind.DEAL, {"dealname": "Gala", "amount": 0})
        project_id = rentman.seed(EntityKind.DEAL, {"displayname": "Gala", "project_total_price": 999.999})
        await store.upsert(EntityKind.DEAL, hubspot_id=deal_id, rentman_id=project_id)

        result = await coordinator.sync_financials(EntityKind.DEAL, triggered_by="ops")

        assert result.sync_type == "financials_deal"
        assert result.status is RunStatus.COMPLETED
        assert hubspot.properties(EntityKind.DEAL, deal_id)["amount"] == 1000.0

    @pytest.mark.asyncio
    async def test_kind_without_amounts_fails_run(self, coordinator):
        result = await coordinator.sync_financials(EntityKind.ORGANIZATION)
        assert result.status is RunStatus.FAILED
        assert coordinator.run_state.current is None


class TestSingleEntity:
    @pytest.mark.asyncio
    async def test_replays_from_given_side(self, coordinator, store, hubspot, rentman):
        company_id = hubspot.seed(EntityKind.ORGANIZATION, {"name": "Acme"})

        result, outcome = await coordinator.sync_single(EntityKind.ORGANIZATION, hubspot_id=company_id)

        assert outcome.action is ItemAction.CREATE
        assert outcome.status is ItemStatus.SUCCESS
        assert result.sync_type == "single_organization"
        assert result.status is RunStatus.COMPLETED
        assert (await store.find_by_a(EntityKind.ORGANIZATION, company_id)).rentman_id == outcome.rentman_id

    @pytest.mark.asyncio
    async def test_does_not_take_run_lock(self, coordinator, rentman):
        contact_id = rentman.seed(EntityKind.ORGANIZATION, {"displayname": "Acme"})
        coordinator.run_state.try_acquire("full")

        result, outcome = await coordinator.sync_single(EntityKind.ORGANIZATION, rentman_id=contact_id)

        assert result.rejected is False
        assert outcome.action is ItemAction.CREATE

    @pytest.mark.asyncio
    async def test_needs_exactly_one_id(self, coordinator):
        with pytest.raises(ValueError):
            await coordinator.sync_single(EntityKind.PERSON)
        with pytest.raises(ValueError):
            await coordinator.sync_single(EntityKind.PERSON, hubspot_id="1", rentman_id="2")

    @pytest.mark.asyncio
    async def test_failure_reported_in_result(self, coordinator, hubspot, rentman):
        contact_id = rentman.seed(EntityKind.ORGANIZATION, {"displayname": "Acme"})
        hubspot.fail_next("create", ExternalAPIError("hubspot", 400, "bad property"))

        result, outcome = await coordinator.sync_single(EntityKind.ORGANIZATION, rentman_id=contact_id)

        assert outcome.status is ItemStatus.FAILED
        assert result.status is RunStatus.FAILED
        assert "bad property" in result.errors[0]


class TestStatus:
    @pytest.mark.asyncio
    async def test_reports_current_run(self, coordinator):
        assert coordinator.status()["running"] is False

        coordinator.run_state.try_acquire("full")
        status = coordinator.status()

        assert status["running"] is True
        assert status["current"] == "full"
        assert status["kinds"] == ["organization", "person", "deal", "order"]
