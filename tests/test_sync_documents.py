"""Tests for attaching Rentman quotations and contracts to HubSpot deals."""

from __future__ import annotations

import pytest

from src.crmsync.sync.documents import DocumentLinker
from src.crmsync.sync.errors import FileImportTimeoutError
from src.crmsync.sync.kinds import EntityKind
from src.crmsync.sync.schemas import ItemStatus, RentmanItem


@pytest.fixture
def linker(settings, store, hubspot, rentman, sleeper) -> DocumentLinker:
    return DocumentLinker.from_settings(settings, store, hubspot, rentman, sleep=sleeper)


async def _synced_project(store, hubspot, rentman):
    deal_id = hubspot.seed(EntityKind.DEAL, {"dealname": "Gala"})
    project_id = rentman.seed(EntityKind.DEAL, {"displayname": "Gala"})
    await store.upsert(EntityKind.DEAL, hubspot_id=deal_id, rentman_id=project_id)
    return deal_id, project_id


def _seed_document(rentman, project_id, *, file_itemtype="Offerte", collection="quotes"):
    rentman.seed_ref(f"/{collection}/60", {"project": f"/projects/{project_id}"})
    rentman.seed_ref(
        "/files/70",
        {"file_itemtype": file_itemtype, "file_item": 60, "url": "https://files.example/q60.pdf"},
    )
    return RentmanItem(id=70, ref="/files/70")


class TestLinkFile:
    @pytest.mark.asyncio
    async def test_quotation_attached_to_deal(self, linker, store, hubspot, rentman, sleeper, recorder):
        deal_id, project_id = await _synced_project(store, hubspot, rentman)
        item = _seed_document(rentman, project_id)

        outcome = await linker.link_file(item, recorder=recorder)

        assert outcome.status is ItemStatus.SUCCESS
        assert outcome.hubspot_id == deal_id
        task = hubspot.imports["task-1"]
        assert task["name"] == "Tilbud vedr. Gala"
        assert task["url"] == "https://files.example/q60.pdf"
        assert task["folder_id"] == "308627103977"
        [note] = hubspot.notes
        assert note["deal_id"] == deal_id
        assert note["attachment_ids"] == ["file-task-1"]
        assert sleeper.delays == []
        assert recorder.stats.success == 1

    @pytest.mark.asyncio
    async def test_contract_named_as_order_confirmation(self, linker, store, hubspot, rentman):
        _, project_id = await _synced_project(store, hubspot, rentman)
        item = _seed_document(rentman, project_id, file_itemtype="Contract", collection="contracts")

        await linker.link_file(item)

        assert hubspot.imports["task-1"]["name"] == "Ordrebekræftelse for Gala"

    @pytest.mark.asyncio
    async def test_import_polled_until_complete(self, linker, store, hubspot, rentman, sleeper):
        _, project_id = await _synced_project(store, hubspot, rentman)
        item = _seed_document(rentman, project_id)
        hubspot.import_polls_pending = 2

        outcome = await linker.link_file(item)

        assert outcome.status is ItemStatus.SUCCESS
        assert sleeper.delays == [5.0, 5.0]
        assert len(hubspot.calls_to("file_import_status")) == 3

    @pytest.mark.asyncio
    async def test_unfinished_import_fails_link(
        self, linker, store, hubspot, rentman, sleeper, recorder, repository
    ):
        _, project_id = await _synced_project(store, hubspot, rentman)
        item = _seed_document(rentman, project_id)
        hubspot.import_polls_pending = 100

        outcome = await linker.link_file(item, recorder=recorder)

        assert outcome.status is ItemStatus.FAILED
        assert isinstance(outcome.error, FileImportTimeoutError)
        assert len(hubspot.calls_to("file_import_status")) == 12
        assert len(sleeper.delays) == 11
        assert hubspot.notes == []
        [error] = await repository.unresolved_errors()
        assert error.error_type == "timeout"

    @pytest.mark.asyncio
    async def test_other_file_types_skipped(self, linker, store, hubspot, rentman):
        _, project_id = await _synced_project(store, hubspot, rentman)
        item = _seed_document(rentman, project_id, file_itemtype="Project")

        outcome = await linker.link_file(item)

        assert outcome.status is ItemStatus.SKIPPED
        assert hubspot.imports == {}

    @pytest.mark.asyncio
    async def test_waits_for_concurrent_deal(self, linker, store, hubspot, rentman, sleeper):
        """The project's deal is correlated by a concurrent webhook during the wait."""
        deal_id = hubspot.seed(EntityKind.DEAL, {"dealname": "Gala"})
        project_id = rentman.seed(EntityKind.DEAL, {"displayname": "Gala"})
        item = _seed_document(rentman, project_id)

        async def deal_arrives():
            await store.upsert(EntityKind.DEAL, hubspot_id=deal_id, rentman_id=project_id)

        sleeper.then(deal_arrives)

        outcome = await linker.link_file(item)

        assert outcome.status is ItemStatus.SUCCESS
        assert sleeper.delays == [0.5]
        assert hubspot.notes[0]["deal_id"] == deal_id

    @pytest.mark.asyncio
    async def test_unsynchronized_project_skipped(self, linker, hubspot, rentman, sleeper):
        project_id = rentman.seed(EntityKind.DEAL, {"displayname": "Gala"})
        item = _seed_document(rentman, project_id)

        outcome = await linker.link_file(item)

        assert outcome.status is ItemStatus.SKIPPED
        assert "not synchronized" in outcome.reason
        assert sleeper.delays == [0.5, 0.5]
        assert hubspot.imports == {}
