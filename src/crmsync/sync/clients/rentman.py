"""Rentman REST client -- contacts, contact persons, projects, subprojects.

Rentman wraps every payload in ``{"data": ...}`` and links records through
``ref`` paths such as ``/contacts/12``. Projects and subprojects are read-only
from this integration's point of view except for their customer references,
which the association primitives rewrite. Project requests are the one
writable "deal-like" object: a HubSpot deal becomes a request that a planner
later converts into a project.
"""

from __future__ import annotations

import asyncio
from typing import Any

import httpx
import structlog

from src.crmsync.sync.clients.http import HTTPSystemClient
from src.crmsync.sync.errors import UnsupportedOperationError
from src.crmsync.sync.kinds import RENTMAN_COLLECTIONS, EntityKind, SystemName
from src.crmsync.sync.origin import OriginTag
from src.crmsync.sync.retry import BackoffPolicy, Sleep

logger = structlog.get_logger(__name__)

# Project fields holding the customer references, per associated kind
PROJECT_REFERENCE_FIELDS: dict[EntityKind, str] = {
    EntityKind.ORGANIZATION: "customer",
    EntityKind.PERSON: "cust_contact",
}


def _collection(kind: EntityKind) -> str:
    return RENTMAN_COLLECTIONS[kind]


def rentman_ref(kind: EntityKind, object_id: Any) -> str:
    """Build the ``ref`` path Rentman uses to link to a record."""
    return f"/{_collection(kind)}/{object_id}"


def _unwrap(body: Any) -> Any:
    if isinstance(body, dict) and "data" in body:
        return body["data"]
    return body


class RentmanClient(HTTPSystemClient):
    """Async client for the Rentman API.

    Args:
        token: API access token.
        base_url: API root (default https://api.rentman.net).
        integration_user_id: Rentman user the token acts as; webhook events
            carrying this user are our own writes.
    """

    system = SystemName.RENTMAN

    def __init__(
        self,
        token: str,
        base_url: str = "https://api.rentman.net",
        *,
        integration_user_id: int | str = 235,
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
        self._origin_tag = OriginTag.of(SystemName.RENTMAN, [integration_user_id])

    @property
    def origin_tag(self) -> OriginTag:
        return self._origin_tag

    # ── Objects ─────────────────────────────────────────────────────────

    async def get(self, kind: EntityKind, object_id: str) -> dict[str, Any] | None:
        body = await self._request("GET", rentman_ref(kind, object_id), allow_404=True)
        return _unwrap(body) if body is not None else None

    async def get_ref(self, ref: str | None) -> dict[str, Any] | None:
        """Follow a ``ref`` path (e.g. a project's ``customer``)."""
        if not ref:
            return None
        body = await self._request("GET", ref, allow_404=True)
        return _unwrap(body) if body is not None else None

    async def create(
        self,
        kind: EntityKind,
        data: dict[str, Any],
        *,
        parent_id: str | None = None,
    ) -> dict[str, Any]:
        if kind is EntityKind.ORGANIZATION:
            path = "/contacts"
        elif kind is EntityKind.PERSON:
            if parent_id is None:
                raise ValueError("Rentman contact persons are created under a contact")
            path = f"/contacts/{parent_id}/contactpersons"
        else:
            raise UnsupportedOperationError(
                f"Rentman {_collection(kind)} are not created by this integration"
            )
        result = _unwrap(await self._request("POST", path, json=data)) or {}
        logger.info("rentman.created", kind=kind.value, object_id=result.get("id"))
        return result

    async def update(self, kind: EntityKind, object_id: str, data: dict[str, Any]) -> dict[str, Any]:
        return _unwrap(await self._request("PUT", rentman_ref(kind, object_id), json=data)) or {}

    async def delete(self, kind: EntityKind, object_id: str) -> bool:
        result = await self._request("DELETE", rentman_ref(kind, object_id), allow_404=True)
        return result is not None

    async def search(self, kind: EntityKind, filters: dict[str, Any]) -> list[dict[str, Any]]:
        body = await self._request(
            "GET",
            f"/{_collection(kind)}",
            params={name: str(value) for name, value in filters.items()},
        )
        return list(_unwrap(body) or [])

    async def list_page(
        self,
        kind: EntityKind,
        *,
        limit: int,
        cursor: str | None = None,
    ) -> tuple[list[dict[str, Any]], str | None]:
        offset = int(cursor or 0)
        body = await self._request(
            "GET",
            f"/{_collection(kind)}",
            params={"limit": limit, "offset": offset},
        )
        items = list(_unwrap(body) or [])
        next_cursor = str(offset + limit) if len(items) >= limit else None
        return items, next_cursor

    async def list_children(
        self,
        parent_kind: EntityKind,
        parent_id: str,
        child_kind: EntityKind,
    ) -> list[dict[str, Any]]:
        body = await self._request(
            "GET",
            f"{rentman_ref(parent_kind, parent_id)}/{_collection(child_kind)}",
            allow_404=True,
        )
        return list(_unwrap(body) or []) if body is not None else []

    # ── Associations ────────────────────────────────────────────────────

    def _reference_field(self, from_kind: EntityKind, to_kind: EntityKind) -> str:
        if from_kind is EntityKind.DEAL and to_kind in PROJECT_REFERENCE_FIELDS:
            return PROJECT_REFERENCE_FIELDS[to_kind]
        raise UnsupportedOperationError(
            f"Rentman has no editable {from_kind.value} -> {to_kind.value} reference"
        )

    async def add_association(
        self,
        from_kind: EntityKind,
        from_id: str,
        to_kind: EntityKind,
        to_id: str,
        relation_type: int | None = None,
    ) -> None:
        field = self._reference_field(from_kind, to_kind)
        await self._request(
            "PUT",
            rentman_ref(from_kind, from_id),
            json={field: rentman_ref(to_kind, to_id)},
        )

    async def remove_association(
        self,
        from_kind: EntityKind,
        from_id: str,
        to_kind: EntityKind,
        to_id: str,
        relation_type: int | None = None,
    ) -> None:
        field = self._reference_field(from_kind, to_kind)
        current = await self.get(from_kind, from_id)
        if current is None or current.get(field) != rentman_ref(to_kind, to_id):
            return
        await self._request("PUT", rentman_ref(from_kind, from_id), json={field: None})

    # ── Project Requests ────────────────────────────────────────────────

    async def create_project_request(self, data: dict[str, Any]) -> dict[str, Any]:
        result = _unwrap(await self._request("POST", "/projectrequests", json=data)) or {}
        logger.info("rentman.project_request_created", request_id=result.get("id"))
        return result

    async def delete_project_request(self, request_id: str) -> bool:
        result = await self._request("DELETE", f"/projectrequests/{request_id}", allow_404=True)
        return result is not None

    async def list_project_requests(self) -> list[dict[str, Any]]:
        return list(_unwrap(await self._request("GET", "/projectrequests")) or [])
