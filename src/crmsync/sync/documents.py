"""Rentman quotations and contracts -> notes with attachments on HubSpot deals.

When Rentman generates a quote ("Offerte") or contract document, the File
record points at it through ``file_itemtype`` / ``file_item``. The document
is imported into the HubSpot file manager from its download URL and attached
to a note on the project's deal. Other file types are skipped.

HubSpot imports files asynchronously: the import task is polled until it
reports COMPLETE, and a task that never completes fails the link.
"""

from __future__ import annotations

import asyncio
from typing import Any

import structlog

from src.crmsync.config import Settings
from src.crmsync.sync.clients.hubspot import HubSpotClient
from src.crmsync.sync.clients.rentman import RentmanClient
from src.crmsync.sync.correlation import CorrelationStore
from src.crmsync.sync.errors import FileImportTimeoutError
from src.crmsync.sync.kinds import EntityKind, SystemName
from src.crmsync.sync.mapping import extract_id_from_ref
from src.crmsync.sync.recorder import SyncRecorder
from src.crmsync.sync.retry import ConsistencyWait, Sleep
from src.crmsync.sync.schemas import (
    CorrelationRecord,
    ItemAction,
    ItemStatus,
    ReplayOutcome,
    RentmanItem,
)

logger = structlog.get_logger(__name__)

FILE_ITEM_TYPE = "File"

# file_itemtype -> (collection of the document, file name prefix)
DOCUMENT_TYPES: dict[str, tuple[str, str]] = {
    "Offerte": ("quotes", "Tilbud vedr."),
    "Contract": ("contracts", "Ordrebekræftelse for"),
}

NOTE_BODY = '<div dir="auto" data-top-level="true"><p style="margin:0;">Tilbud lavet i rentman</p></div>'


class DocumentLinker:
    """Attaches Rentman quotations and contracts to their HubSpot deal.

    Args:
        store: Correlation store; the project's deal must be correlated.
        hubspot: Client used for the file import and the note.
        rentman: Client used to read the file, document and project.
        folder_id: HubSpot file manager folder receiving the documents.
        wait: Consistency wait for a deal created by a concurrent webhook.
        import_wait: Poll schedule for the asynchronous file import.
    """

    def __init__(
        self,
        store: CorrelationStore,
        hubspot: HubSpotClient,
        rentman: RentmanClient,
        *,
        folder_id: str,
        wait: ConsistencyWait,
        import_wait: ConsistencyWait,
    ) -> None:
        self._store = store
        self._hubspot = hubspot
        self._rentman = rentman
        self._folder_id = folder_id
        self._wait = wait
        self._import_wait = import_wait

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: CorrelationStore,
        hubspot: HubSpotClient,
        rentman: RentmanClient,
        *,
        sleep: Sleep = asyncio.sleep,
    ) -> DocumentLinker:
        return cls(
            store,
            hubspot,
            rentman,
            folder_id=settings.HUBSPOT_FILES_FOLDER_ID,
            wait=ConsistencyWait.from_settings(settings, sleep=sleep),
            import_wait=ConsistencyWait(
                attempts=settings.FILE_IMPORT_POLL_ATTEMPTS,
                delay=settings.FILE_IMPORT_POLL_DELAY_SECONDS,
                sleep=sleep,
            ),
        )

    async def link_file(
        self,
        item: RentmanItem,
        *,
        recorder: SyncRecorder | None = None,
    ) -> ReplayOutcome:
        """Attach one created File to its deal; failures are recorded, not raised."""
        try:
            outcome = await self._link(item)
        except Exception as exc:
            logger.error(
                "documents.link_failed",
                file_id=item.id,
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
            return ReplayOutcome(
                kind=EntityKind.DEAL,
                action=ItemAction.ERROR,
                status=ItemStatus.FAILED,
                reason=str(exc) or type(exc).__name__,
                error=exc,
                attempted=ItemAction.UPDATE,
                origin=SystemName.RENTMAN,
            )
        if outcome.status is ItemStatus.SKIPPED:
            logger.info("documents.skipped", file_id=item.id, reason=outcome.reason)
        if recorder is not None:
            await recorder.log_outcome(outcome)
        return outcome

    async def _link(self, item: RentmanItem) -> ReplayOutcome:
        file_info = await self._rentman.get_ref(item.ref or f"/files/{item.id}")
        if file_info is None:
            return ReplayOutcome.skipped(EntityKind.DEAL, f"file {item.id} not found on rentman")

        document_type = DOCUMENT_TYPES.get(file_info.get("file_itemtype") or "")
        if document_type is None:
            return ReplayOutcome.skipped(
                EntityKind.DEAL, f"file {item.id} is not a quotation or contract"
            )
        collection, prefix = document_type

        document = await self._rentman.get_ref(f"/{collection}/{file_info.get('file_item')}")
        project_id = extract_id_from_ref((document or {}).get("project"))
        if project_id is None:
            return ReplayOutcome.skipped(EntityKind.DEAL, f"file {item.id} has no project")

        deal = await self._wait_for_deal(project_id)
        if deal is None:
            return ReplayOutcome.skipped(
                EntityKind.DEAL, f"project {project_id} is not synchronized yet", rentman_id=str(project_id)
            )

        project = await self._rentman.get(EntityKind.DEAL, str(project_id)) or {}
        name = f"{prefix} {project.get('displayname') or project_id}"
        task_id = await self._hubspot.import_file_from_url(file_info["url"], name, self._folder_id)
        hubspot_file_id = await self._import_wait.wait_for(
            lambda: self._imported_file_id(task_id),
            description="hubspot file import",
            task_id=task_id,
        )
        if hubspot_file_id is None:
            raise FileImportTimeoutError(f"hubspot import {task_id} of {name!r} did not complete")

        note = await self._hubspot.create_note(
            deal.hubspot_id, NOTE_BODY, attachment_ids=[hubspot_file_id]
        )
        logger.info(
            "documents.linked",
            file_id=item.id,
            project_id=project_id,
            deal_id=deal.hubspot_id,
            hubspot_file_id=hubspot_file_id,
            note_id=note.get("id"),
        )
        return ReplayOutcome(
            kind=EntityKind.DEAL,
            action=ItemAction.UPDATE,
            hubspot_id=deal.hubspot_id,
            rentman_id=str(project_id),
            data_after={"note_id": note.get("id"), "file_id": hubspot_file_id},
        )

    async def _wait_for_deal(self, project_id: int) -> CorrelationRecord | None:
        async def _lookup() -> CorrelationRecord | None:
            record = await self._store.find_by_b(EntityKind.DEAL, project_id)
            if record is None or record.hubspot_id is None:
                return None
            return record

        return await self._wait.wait_for(
            _lookup, description="deal correlation", rentman_id=str(project_id)
        )

    async def _imported_file_id(self, task_id: str) -> str | None:
        status: dict[str, Any] = await self._hubspot.file_import_status(task_id)
        if status.get("status") != "COMPLETE":
            return None
        return str((status.get("result") or {}).get("id"))
