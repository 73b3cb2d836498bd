"""HubSpot CRM client -- companies, contacts, deals and orders.

Uses the CRM v3 object endpoints for reads and writes, the v3 search API for
natural-key lookups and the v4 association endpoints for edges. Rentman
documents reach deals through the files import API and notes. Duplicate
detection:
- 409 ``Existing ID: <id>`` on contact create (unique e-mail)
- 400 VALIDATION_ERROR ``<id> already has that value`` on unique properties
both raise DuplicateObjectError with the existing id.
"""

from __future__ import annotations

import asyncio
import re
import time
from collections.abc import Iterable
from typing import Any

import httpx
import structlog

from src.crmsync.sync.clients.http import HTTPSystemClient, _response_body
from src.crmsync.sync.errors import DuplicateObjectError, ExternalAPIError
from src.crmsync.sync.kinds import (
    HUBSPOT_OBJECT_TYPES,
    PARENT_KINDS,
    EntityKind,
    SystemName,
    hubspot_association_type,
)
from src.crmsync.sync.origin import OriginTag
from src.crmsync.sync.retry import BackoffPolicy, Sleep

logger = structlog.get_logger(__name__)

_EXISTING_ID_RE = re.compile(r"Existing ID:\s*(\d+)")
_ALREADY_HAS_VALUE_RE = re.compile(r"(\d+) already has that value")

# Properties requested on every read, per kind
HUBSPOT_PROPERTIES: dict[EntityKind, list[str]] = {
    EntityKind.ORGANIZATION: [
        "name", "cvrnummer", "address", "city", "zip", "country", "phone", "website", "domain",
    ],
    EntityKind.PERSON: ["firstname", "lastname", "email", "phone", "mobilephone", "jobtitle"],
    EntityKind.DEAL: [
        "dealname",
        "amount",
        "dealstage",
        "pipeline",
        "usage_period",
        "slut_projekt_period",
        "start_planning_period",
        "slut_planning_period",
        "opret_i_rentam_request",
    ],
    EntityKind.ORDER: [
        "hs_order_name",
        "hs_total_price",
        "hs_pipeline",
        "hs_pipeline_stage",
        "start_projekt_period",
        "slut_projekt_period",
    ],
}

# Associations requested on single-object reads, per kind
HUBSPOT_READ_ASSOCIATIONS: dict[EntityKind, list[EntityKind]] = {
    EntityKind.ORGANIZATION: [EntityKind.PERSON],
    EntityKind.PERSON: [EntityKind.ORGANIZATION],
    EntityKind.DEAL: [EntityKind.ORGANIZATION, EntityKind.PERSON, EntityKind.ORDER],
    EntityKind.ORDER: [EntityKind.DEAL, EntityKind.ORGANIZATION, EntityKind.PERSON],
}

SEARCH_LIMIT = 10
NOTE_TO_DEAL_ASSOCIATION = 214


def _object_type(kind: EntityKind) -> str:
    return HUBSPOT_OBJECT_TYPES[kind]


class HubSpotClient(HTTPSystemClient):
    """Async client for the HubSpot CRM API.

    Args:
        token: Private app access token.
        base_url: API root (default https://api.hubapi.com).
        change_sources: ``changeSource`` values HubSpot stamps on writes made
            with this token; used as the client's origin tag.
    """

    system = SystemName.HUBSPOT

    def __init__(
        self,
        token: str,
        base_url: str = "https://api.hubapi.com",
        *,
        change_sources: Iterable[str] = ("INTEGRATION", "API"),
        backoff: BackoffPolicy | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        super().__init__(
            base_url,
            token,
            backoff=backoff,
            timeout=timeout,
            transport=transport,
            sleep=sleep,
        )
        self._origin_tag = OriginTag.of(SystemName.HUBSPOT, change_sources)

    @property
    def origin_tag(self) -> OriginTag:
        return self._origin_tag

    def _error_for(self, response: httpx.Response) -> ExternalAPIError:
        body = _response_body(response)
        message = body.get("message", "") if isinstance(body, dict) else str(body)
        if response.status_code == 409:
            match = _EXISTING_ID_RE.search(message)
            return DuplicateObjectError(
                self.system.value, 409, message, match.group(1) if match else None, body
            )
        if (
            response.status_code == 400
            and isinstance(body, dict)
            and body.get("category") == "VALIDATION_ERROR"
        ):
            match = _ALREADY_HAS_VALUE_RE.search(message)
            if match:
                return DuplicateObjectError(self.system.value, 400, message, match.group(1), body)
        return super()._error_for(response)

    # ── Objects ─────────────────────────────────────────────────────────

    async def get(self, kind: EntityKind, object_id: str) -> dict[str, Any] | None:
        params = {
            "properties": ",".join(HUBSPOT_PROPERTIES[kind]),
            "associations": ",".join(_object_type(k) for k in HUBSPOT_READ_ASSOCIATIONS[kind]),
        }
        return await self._request(
            "GET",
            f"/crm/v3/objects/{_object_type(kind)}/{object_id}",
            params=params,
            allow_404=True,
        )

    async def create(
        self,
        kind: EntityKind,
        data: dict[str, Any],
        *,
        parent_id: str | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"properties": data}
        if parent_id is not None and kind in PARENT_KINDS:
            parent_kind = PARENT_KINDS[kind]
            payload["associations"] = [
                {
                    "to": {"id": str(parent_id)},
                    "types": [
                        {
                            "associationCategory": "HUBSPOT_DEFINED",
                            "associationTypeId": hubspot_association_type(kind, parent_kind),
                        }
                    ],
                }
            ]
        result = await self._request("POST", f"/crm/v3/objects/{_object_type(kind)}", json=payload)
        logger.info("hubspot.created", kind=kind.value, object_id=result.get("id"))
        return result

    async def update(self, kind: EntityKind, object_id: str, data: dict[str, Any]) -> dict[str, Any]:
        return await self._request(
            "PATCH",
            f"/crm/v3/objects/{_object_type(kind)}/{object_id}",
            json={"properties": data},
        )

    async def delete(self, kind: EntityKind, object_id: str) -> bool:
        result = await self._request(
            "DELETE",
            f"/crm/v3/objects/{_object_type(kind)}/{object_id}",
            allow_404=True,
        )
        return result is not None

    async def search(self, kind: EntityKind, filters: dict[str, Any]) -> list[dict[str, Any]]:
        payload = {
            "filterGroups": [
                {
                    "filters": [
                        {"propertyName": name, "operator": "EQ", "value": str(value)}
                        for name, value in filters.items()
                    ]
                }
            ],
            "properties": HUBSPOT_PROPERTIES[kind],
            "limit": SEARCH_LIMIT,
        }
        result = await self._request(
            "POST", f"/crm/v3/objects/{_object_type(kind)}/search", json=payload
        )
        return list(result.get("results", []))

    async def list_page(
        self,
        kind: EntityKind,
        *,
        limit: int,
        cursor: str | None = None,
    ) -> tuple[list[dict[str, Any]], str | None]:
        params: dict[str, Any] = {
            "limit": limit,
            "properties": ",".join(HUBSPOT_PROPERTIES[kind]),
            "associations": ",".join(_object_type(k) for k in HUBSPOT_READ_ASSOCIATIONS[kind]),
        }
        if cursor:
            params["after"] = cursor
        result = await self._request("GET", f"/crm/v3/objects/{_object_type(kind)}", params=params)
        next_cursor = (result.get("paging") or {}).get("next", {}).get("after")
        return list(result.get("results", [])), next_cursor

    async def list_children(
        self,
        parent_kind: EntityKind,
        parent_id: str,
        child_kind: EntityKind,
    ) -> list[dict[str, Any]]:
        edges = await self._request(
            "GET",
            f"/crm/v4/objects/{_object_type(parent_kind)}/{parent_id}/associations/{_object_type(child_kind)}",
            allow_404=True,
        )
        ids = [str(edge["toObjectId"]) for edge in (edges or {}).get("results", [])]
        if not ids:
            return []
        result = await self._request(
            "POST",
            f"/crm/v3/objects/{_object_type(child_kind)}/batch/read",
            json={
                "inputs": [{"id": object_id} for object_id in ids],
                "properties": HUBSPOT_PROPERTIES[child_kind],
            },
        )
        return list(result.get("results", []))

    # ── Associations ────────────────────────────────────────────────────

    async def add_association(
        self,
        from_kind: EntityKind,
        from_id: str,
        to_kind: EntityKind,
        to_id: str,
        relation_type: int | None = None,
    ) -> None:
        type_id = relation_type or hubspot_association_type(from_kind, to_kind)
        await self._request(
            "PUT",
            f"/crm/v4/objects/{_object_type(from_kind)}/{from_id}"
            f"/associations/{_object_type(to_kind)}/{to_id}",
            json=[{"associationCategory": "HUBSPOT_DEFINED", "associationTypeId": type_id}],
        )
        logger.debug(
            "hubspot.association_added",
            from_kind=from_kind.value,
            from_id=from_id,
            to_kind=to_kind.value,
            to_id=to_id,
            type_id=type_id,
        )

    async def remove_association(
        self,
        from_kind: EntityKind,
        from_id: str,
        to_kind: EntityKind,
        to_id: str,
        relation_type: int | None = None,
    ) -> None:
        type_id = relation_type or hubspot_association_type(from_kind, to_kind)
        await self._request(
            "DELETE",
            f"/crm/v3/objects/{_object_type(from_kind)}/{from_id}"
            f"/associations/{_object_type(to_kind)}/{to_id}/{type_id}",
            allow_404=True,
        )
        logger.debug(
            "hubspot.association_removed",
            from_kind=from_kind.value,
            from_id=from_id,
            to_kind=to_kind.value,
            to_id=to_id,
            type_id=type_id,
        )

    # ── Files and Notes ─────────────────────────────────────────────────

    async def import_file_from_url(self, url: str, name: str, folder_id: str) -> str:
        """Start an asynchronous URL import into the file manager.

        Returns:
            The import task id; poll it with ``file_import_status``.
        """
        result = await self._request(
            "POST",
            "/files/v3/files/import-from-url/async",
            json={
                "access": "PUBLIC_NOT_INDEXABLE",
                "url": url,
                "folderId": folder_id,
                "name": name,
            },
        )
        logger.info("hubspot.file_import_started", task_id=result.get("id"), name=name)
        return str(result["id"])

    async def file_import_status(self, task_id: str) -> dict[str, Any]:
        return await self._request(
            "GET", f"/files/v3/files/import-from-url/async/tasks/{task_id}/status"
        )

    async def create_note(
        self,
        deal_id: str,
        body: str,
        *,
        attachment_ids: Iterable[str] = (),
    ) -> dict[str, Any]:
        """Create a note on a deal, optionally carrying file attachments."""
        payload = {
            "properties": {
                "hs_note_body": body,
                "hs_attachment_ids": ";".join(str(file_id) for file_id in attachment_ids),
                "hs_timestamp": int(time.time() * 1000),
            },
            "associations": [
                {
                    "to": {"id": str(deal_id)},
                    "types": [
                        {
                            "associationCategory": "HUBSPOT_DEFINED",
                            "associationTypeId": NOTE_TO_DEAL_ASSOCIATION,
                        }
                    ],
                }
            ],
        }
        result = await self._request("POST", "/crm/v3/objects/notes", json=payload)
        logger.info("hubspot.note_created", deal_id=deal_id, note_id=result.get("id"))
        return result


def associated_ids(
    record: dict[str, Any] | None,
    to_kind: EntityKind,
    *,
    type_label: str | None = None,
) -> list[str]:
    """Ids associated with a HubSpot record read with associations.

    When ``type_label`` is given (e.g. ``contact_to_company`` for the primary
    company), ids with that label come first.
    """
    if not record:
        return []
    bucket = (record.get("associations") or {}).get(_object_type(to_kind)) or {}
    results = bucket.get("results") or []
    ids: list[str] = []
    preferred: list[str] = []
    for entry in results:
        object_id = str(entry.get("id"))
        if type_label is not None and entry.get("type") == type_label:
            if object_id not in preferred:
                preferred.append(object_id)
        elif object_id not in ids:
            ids.append(object_id)
    return preferred + [i for i in ids if i not in preferred]
