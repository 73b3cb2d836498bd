"""Shared fixtures for the sync test suite.

Provides:
- A file-backed aiosqlite engine with every sync table created
- CorrelationStore / SyncLogRepository over that engine
- FakeHubSpot / FakeRentman: in-memory SystemClient doubles
- A recording sleep so consistency waits and backoff run instantly
- The wired synchronizer table
"""

from __future__ import annotations

import copy
import itertools
from collections.abc import Awaitable, Callable
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine

from src.crmsync.config import Settings
from src.crmsync.core.database import Base
from src.crmsync.sync import models  # noqa: F401
from src.crmsync.sync.clients.base import SystemClient
from src.crmsync.sync.clients.rentman import rentman_ref
from src.crmsync.sync.correlation import CorrelationStore
from src.crmsync.sync.errors import DuplicateObjectError, ExternalAPIError, UnsupportedOperationError
from src.crmsync.sync.kinds import PARENT_KINDS, RENTMAN_COLLECTIONS, EntityKind, SyncDirection, SystemName
from src.crmsync.sync.origin import OriginTag
from src.crmsync.sync.recorder import SyncLogRepository, SyncRecorder
from src.crmsync.sync.retry import ConsistencyWait
from src.crmsync.sync.synchronizers import build_synchronizers


# ── Sleep Double ─────────────────────────────────────────────────────────────


class RecordingSleep:
    """Async sleep replacement that records delays and runs queued callbacks.

    Each queued callback runs on one sleep call, in order; tests use this to
    simulate a concurrent webhook writing a counterpart mid-wait.
    """

    def __init__(self) -> None:
        self.delays: list[float] = []
        self._callbacks: list[Callable[[], Awaitable[Any]]] = []

    def then(self, callback: Callable[[], Awaitable[Any]]) -> None:
        self._callbacks.append(callback)

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self._callbacks:
            await self._callbacks.pop(0)()


# ── In-Memory System Clients ─────────────────────────────────────────────────


class _FakeClient(SystemClient):
    """Bookkeeping shared by both fakes: call log and one-shot failures."""

    def __init__(self) -> None:
        self.objects: dict[EntityKind, dict[str, dict[str, Any]]] = {kind: {} for kind in EntityKind}
        self.calls: list[tuple] = []
        self._failures: dict[str, list[Exception]] = {}
        self._ids = itertools.count(self.first_id)

    first_id = 1

    def fail_next(self, method: str, exc: Exception) -> None:
        self._failures.setdefault(method, []).append(exc)

    def _enter(self, method: str, *args: Any) -> None:
        self.calls.append((method, *args))
        pending = self._failures.get(method)
        if pending:
            raise pending.pop(0)

    def calls_to(self, method: str) -> list[tuple]:
        return [call for call in self.calls if call[0] == method]

    def _new_id(self) -> str:
        return str(next(self._ids))

    def _page(self, kind: EntityKind, limit: int, cursor: str | None) -> tuple[list[str], str | None]:
        ids = sorted(self.objects[kind], key=int)
        offset = int(cursor or 0)
        page = ids[offset : offset + limit]
        next_cursor = str(offset + limit) if offset + limit < len(ids) else None
        return page, next_cursor


_HUBSPOT_LABELS: dict[EntityKind, str] = {
    EntityKind.ORGANIZATION: "company",
    EntityKind.PERSON: "contact",
    EntityKind.DEAL: "deal",
    EntityKind.ORDER: "order",
}

_HUBSPOT_COLLECTIONS: dict[EntityKind, str] = {
    EntityKind.ORGANIZATION: "companies",
    EntityKind.PERSON: "contacts",
    EntityKind.DEAL: "deals",
    EntityKind.ORDER: "orders",
}


class FakeHubSpot(_FakeClient):
    """HubSpot double: objects hold properties, edges are undirected pairs."""

    system = SystemName.HUBSPOT
    first_id = 1001

    def __init__(self) -> None:
        super().__init__()
        self.edges: set[frozenset[tuple[EntityKind, str]]] = set()
        self.imports: dict[str, dict[str, Any]] = {}
        self.notes: list[dict[str, Any]] = []
        self.import_polls_pending = 0

    @property
    def origin_tag(self) -> OriginTag:
        return OriginTag.of(SystemName.HUBSPOT, ["INTEGRATION", "API"])

    def seed(
        self,
        kind: EntityKind,
        properties: dict[str, Any],
        *,
        object_id: Any = None,
        associations: list[tuple[EntityKind, Any]] = (),
    ) -> str:
        object_id = str(object_id) if object_id is not None else self._new_id()
        self.objects[kind][object_id] = dict(properties)
        for to_kind, to_id in associations:
            self.link(kind, object_id, to_kind, to_id)
        return object_id

    def link(self, from_kind: EntityKind, from_id: Any, to_kind: EntityKind, to_id: Any) -> None:
        self.edges.add(frozenset({(from_kind, str(from_id)), (to_kind, str(to_id))}))

    def associated(self, kind: EntityKind, object_id: Any, to_kind: EntityKind) -> list[str]:
        found = set()
        for edge in self.edges:
            if (kind, str(object_id)) in edge:
                for other_kind, other_id in edge:
                    if other_kind is to_kind and (other_kind, other_id) != (kind, str(object_id)):
                        found.add(other_id)
        return sorted(found)

    def properties(self, kind: EntityKind, object_id: Any) -> dict[str, Any]:
        return self.objects[kind][str(object_id)]

    def _record(self, kind: EntityKind, object_id: str) -> dict[str, Any]:
        associations = {}
        for to_kind in EntityKind:
            ids = self.associated(kind, object_id, to_kind)
            if ids:
                label = f"{_HUBSPOT_LABELS[kind]}_to_{_HUBSPOT_LABELS[to_kind]}"
                associations[_HUBSPOT_COLLECTIONS[to_kind]] = {
                    "results": [{"id": i, "type": label} for i in ids]
                }
        return {
            "id": object_id,
            "properties": copy.deepcopy(self.objects[kind][object_id]),
            "associations": associations,
        }

    async def get(self, kind: EntityKind, object_id: str) -> dict[str, Any] | None:
        self._enter("get", kind, str(object_id))
        if str(object_id) not in self.objects[kind]:
            return None
        return self._record(kind, str(object_id))

    async def create(
        self,
        kind: EntityKind,
        data: dict[str, Any],
        *,
        parent_id: str | None = None,
    ) -> dict[str, Any]:
        self._enter("create", kind, dict(data), parent_id)
        if kind is EntityKind.PERSON and data.get("email"):
            # Contact e-mail is unique; HubSpot answers 409 with the holder's id
            for existing_id, props in self.objects[kind].items():
                if props.get("email") == data["email"]:
                    raise DuplicateObjectError(
                        "hubspot", 409, f"Contact already exists. Existing ID: {existing_id}", existing_id
                    )
        object_id = self.seed(kind, data)
        if parent_id is not None and kind in PARENT_KINDS:
            self.link(kind, object_id, PARENT_KINDS[kind], parent_id)
        return self._record(kind, object_id)

    async def update(self, kind: EntityKind, object_id: str, data: dict[str, Any]) -> dict[str, Any]:
        self._enter("update", kind, str(object_id), dict(data))
        if str(object_id) not in self.objects[kind]:
            raise ExternalAPIError("hubspot", 404, f"{kind.value} {object_id} not found")
        self.objects[kind][str(object_id)].update(data)
        return self._record(kind, str(object_id))

    async def delete(self, kind: EntityKind, object_id: str) -> bool:
        self._enter("delete", kind, str(object_id))
        removed = self.objects[kind].pop(str(object_id), None)
        self.edges = {edge for edge in self.edges if (kind, str(object_id)) not in edge}
        return removed is not None

    # Files and notes

    async def import_file_from_url(self, url: str, name: str, folder_id: str) -> str:
        self._enter("import_file_from_url", url, name, folder_id)
        task_id = f"task-{len(self.imports) + 1}"
        self.imports[task_id] = {"url": url, "name": name, "folder_id": folder_id, "polls": 0}
        return task_id

    async def file_import_status(self, task_id: str) -> dict[str, Any]:
        self._enter("file_import_status", task_id)
        task = self.imports[task_id]
        task["polls"] += 1
        if task["polls"] <= self.import_polls_pending:
            return {"id": task_id, "status": "PROCESSING"}
        return {"id": task_id, "status": "COMPLETE", "result": {"id": f"file-{task_id}"}}

    async def create_note(
        self,
        deal_id: str,
        body: str,
        *,
        attachment_ids: Any = (),
    ) -> dict[str, Any]:
        self._enter("create_note", str(deal_id))
        note = {"id": self._new_id(), "deal_id": str(deal_id), "body": body, "attachment_ids": list(attachment_ids)}
        self.notes.append(note)
        return dict(note)

    async def search(self, kind: EntityKind, filters: dict[str, Any]) -> list[dict[str, Any]]:
        self._enter("search", kind, dict(filters))
        return [
            self._record(kind, object_id)
            for object_id, props in self.objects[kind].items()
            if all(str(props.get(name)) == str(value) for name, value in filters.items())
        ]

    async def list_page(
        self,
        kind: EntityKind,
        *,
        limit: int,
        cursor: str | None = None,
    ) -> tuple[list[dict[str, Any]], str | None]:
        self._enter("list_page", kind, cursor)
        ids, next_cursor = self._page(kind, limit, cursor)
        return [self._record(kind, object_id) for object_id in ids], next_cursor

    async def list_children(
        self,
        parent_kind: EntityKind,
        parent_id: str,
        child_kind: EntityKind,
    ) -> list[dict[str, Any]]:
        self._enter("list_children", parent_kind, str(parent_id), child_kind)
        return [
            self._record(child_kind, object_id)
            for object_id in self.associated(parent_kind, parent_id, child_kind)
            if object_id in self.objects[child_kind]
        ]

    async def add_association(
        self,
        from_kind: EntityKind,
        from_id: str,
        to_kind: EntityKind,
        to_id: str,
        relation_type: int | None = None,
    ) -> None:
        self._enter("add_association", from_kind, str(from_id), to_kind, str(to_id))
        self.link(from_kind, from_id, to_kind, to_id)

    async def remove_association(
        self,
        from_kind: EntityKind,
        from_id: str,
        to_kind: EntityKind,
        to_id: str,
        relation_type: int | None = None,
    ) -> None:
        self._enter("remove_association", from_kind, str(from_id), to_kind, str(to_id))
        self.edges.discard(frozenset({(from_kind, str(from_id)), (to_kind, str(to_id))}))


# Reference fields linking a Rentman child to its parent, per child kind
_RENTMAN_PARENT_FIELDS: dict[EntityKind, str] = {
    EntityKind.PERSON: "contact",
    EntityKind.ORDER: "project",
}

_RENTMAN_REFERENCE_FIELDS: dict[EntityKind, str] = {
    EntityKind.ORGANIZATION: "customer",
    EntityKind.PERSON: "cust_contact",
}


class FakeRentman(_FakeClient):
    """Rentman double: flat records linked through ``ref`` paths."""

    system = SystemName.RENTMAN

    def __init__(self, integration_user_id: int = 235) -> None:
        super().__init__()
        self.integration_user_id = integration_user_id
        self.requests: dict[str, dict[str, Any]] = {}
        self.refs: dict[str, dict[str, Any]] = {}

    @property
    def origin_tag(self) -> OriginTag:
        return OriginTag.of(SystemName.RENTMAN, [self.integration_user_id])

    def seed(self, kind: EntityKind, fields: dict[str, Any], *, object_id: Any = None) -> str:
        object_id = str(object_id) if object_id is not None else self._new_id()
        self.objects[kind][object_id] = {"id": int(object_id), **fields}
        return object_id

    def record(self, kind: EntityKind, object_id: Any) -> dict[str, Any]:
        return self.objects[kind][str(object_id)]

    def seed_ref(self, ref: str, fields: dict[str, Any]) -> None:
        """Store a record that is only reachable by ``ref`` (costs, files, quotes)."""
        self.refs[ref] = {"id": int(ref.rstrip("/").rsplit("/", 1)[-1]), **fields}

    async def get_ref(self, ref: str | None) -> dict[str, Any] | None:
        self._enter("get_ref", ref)
        if not ref:
            return None
        if ref in self.refs:
            return copy.deepcopy(self.refs[ref])
        collection, _, object_id = ref.strip("/").partition("/")
        for kind, name in RENTMAN_COLLECTIONS.items():
            if name == collection:
                found = self.objects[kind].get(object_id)
                return copy.deepcopy(found) if found is not None else None
        return None

    async def get(self, kind: EntityKind, object_id: str) -> dict[str, Any] | None:
        self._enter("get", kind, str(object_id))
        found = self.objects[kind].get(str(object_id))
        return copy.deepcopy(found) if found is not None else None

    async def create(
        self,
        kind: EntityKind,
        data: dict[str, Any],
        *,
        parent_id: str | None = None,
    ) -> dict[str, Any]:
        self._enter("create", kind, dict(data), parent_id)
        fields = dict(data)
        if kind is EntityKind.PERSON:
            if parent_id is None:
                raise ValueError("Rentman contact persons are created under a contact")
            fields["contact"] = rentman_ref(EntityKind.ORGANIZATION, parent_id)
        elif kind is not EntityKind.ORGANIZATION:
            raise UnsupportedOperationError(f"Rentman {kind.value} are not created")
        object_id = self.seed(kind, fields)
        return copy.deepcopy(self.objects[kind][object_id])

    async def update(self, kind: EntityKind, object_id: str, data: dict[str, Any]) -> dict[str, Any]:
        self._enter("update", kind, str(object_id), dict(data))
        if str(object_id) not in self.objects[kind]:
            raise ExternalAPIError("rentman", 404, f"{kind.value} {object_id} not found")
        self.objects[kind][str(object_id)].update(data)
        return copy.deepcopy(self.objects[kind][str(object_id)])

    async def delete(self, kind: EntityKind, object_id: str) -> bool:
        self._enter("delete", kind, str(object_id))
        return self.objects[kind].pop(str(object_id), None) is not None

    async def search(self, kind: EntityKind, filters: dict[str, Any]) -> list[dict[str, Any]]:
        self._enter("search", kind, dict(filters))
        return [
            copy.deepcopy(record)
            for record in self.objects[kind].values()
            if all(str(record.get(name)) == str(value) for name, value in filters.items())
        ]

    async def list_page(
        self,
        kind: EntityKind,
        *,
        limit: int,
        cursor: str | None = None,
    ) -> tuple[list[dict[str, Any]], str | None]:
        self._enter("list_page", kind, cursor)
        ids, next_cursor = self._page(kind, limit, cursor)
        return [copy.deepcopy(self.objects[kind][i]) for i in ids], next_cursor

    async def list_children(
        self,
        parent_kind: EntityKind,
        parent_id: str,
        child_kind: EntityKind,
    ) -> list[dict[str, Any]]:
        self._enter("list_children", parent_kind, str(parent_id), child_kind)
        field = _RENTMAN_PARENT_FIELDS[child_kind]
        parent = rentman_ref(parent_kind, parent_id)
        return [
            copy.deepcopy(record)
            for record in self.objects[child_kind].values()
            if record.get(field) == parent
        ]

    async def add_association(
        self,
        from_kind: EntityKind,
        from_id: str,
        to_kind: EntityKind,
        to_id: str,
        relation_type: int | None = None,
    ) -> None:
        self._enter("add_association", from_kind, str(from_id), to_kind, str(to_id))
        field = _RENTMAN_REFERENCE_FIELDS[to_kind]
        self.objects[from_kind][str(from_id)][field] = rentman_ref(to_kind, to_id)

    async def remove_association(
        self,
        from_kind: EntityKind,
        from_id: str,
        to_kind: EntityKind,
        to_id: str,
        relation_type: int | None = None,
    ) -> None:
        self._enter("remove_association", from_kind, str(from_id), to_kind, str(to_id))
        field = _RENTMAN_REFERENCE_FIELDS[to_kind]
        record = self.objects[from_kind].get(str(from_id))
        if record is not None and record.get(field) == rentman_ref(to_kind, to_id):
            record[field] = None

    # ── Project Requests ────────────────────────────────────────────────

    async def create_project_request(self, data: dict[str, Any]) -> dict[str, Any]:
        self._enter("create_project_request", dict(data))
        request_id = self._new_id()
        self.requests[request_id] = {"id": int(request_id), "linked_project": None, **data}
        return copy.deepcopy(self.requests[request_id])

    async def delete_project_request(self, request_id: str) -> bool:
        self._enter("delete_project_request", str(request_id))
        return self.requests.pop(str(request_id), None) is not None

    async def list_project_requests(self) -> list[dict[str, Any]]:
        self._enter("list_project_requests")
        return [copy.deepcopy(request) for request in self.requests.values()]


# ── Database Fixtures ────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def engine(tmp_path):
    """Fresh SQLite database per test with every sync table created."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'crmsync.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    async def factory():
        async with AsyncSession(engine, expire_on_commit=False) as session:
            yield session

    return factory


@pytest.fixture
def store(session_factory) -> CorrelationStore:
    return CorrelationStore(session_factory=session_factory)


@pytest.fixture
def repository(session_factory) -> SyncLogRepository:
    return SyncLogRepository(session_factory=session_factory)


@pytest_asyncio.fixture
async def recorder(repository) -> SyncRecorder:
    """A started recorder backed by the test database."""
    recorder = SyncRecorder(repository, "test", SyncDirection.BIDIRECTIONAL, "pytest")
    await recorder.start()
    return recorder


# ── Sync Fixtures ────────────────────────────────────────────────────────────


@pytest.fixture
def settings() -> Settings:
    return Settings(
        DATABASE_URL="sqlite+aiosqlite://",
        CONSISTENCY_WAIT_ATTEMPTS=3,
        CONSISTENCY_WAIT_DELAY_SECONDS=0.5,
        DEFAULT_BATCH_SIZE=2,
        RENTMAN_APP_URL="https://example.rentmanapp.com",
    )


@pytest.fixture
def sleeper() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def hubspot() -> FakeHubSpot:
    return FakeHubSpot()


@pytest.fixture
def rentman() -> FakeRentman:
    return FakeRentman()


@pytest.fixture
def synchronizers(hubspot, rentman, store, settings, sleeper):
    wait = ConsistencyWait.from_settings(settings, sleep=sleeper)
    return build_synchronizers(hubspot, rentman, store, wait=wait, settings=settings)
