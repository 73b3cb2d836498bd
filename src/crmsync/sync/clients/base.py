"""System client abstract base class -- the surface the sync core calls.

HubSpotClient and RentmanClient implement this ABC. Synchronizers and the
association reconciler depend only on these primitives, which keeps them
testable against in-memory fakes.

Contract:
- ``get`` returns None for a missing object instead of raising.
- ``delete`` and ``remove_association`` on something already gone are
  no-ops; ``add_association`` on an existing edge is a no-op.
- A create rejected because the natural key already exists raises
  DuplicateObjectError carrying the existing id when it is known.
- 429 responses are retried internally; only the final failure surfaces.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from src.crmsync.sync.kinds import EntityKind, SystemName
from src.crmsync.sync.origin import OriginTag


class SystemClient(ABC):
    """Abstract interface over one external system's API.

    Methods:
        get: Fetch one object by id, None when missing.
        create: Create an object; persons may need a parent id.
        update: Update an object's fields.
        delete: Delete an object, False when it was already gone.
        search: Exact-match search on one or more fields.
        list_page: One page of objects for batch passes.
        list_children: Objects of ``child_kind`` linked under a parent.
        add_association: Add a relationship edge.
        remove_association: Remove a relationship edge.
    """

    system: SystemName

    @property
    @abstractmethod
    def origin_tag(self) -> OriginTag:
        """Identities this client's writes carry on its system."""
        ...

    @abstractmethod
    async def get(self, kind: EntityKind, object_id: str) -> dict[str, Any] | None:
        """Fetch one object by id, None if it does not exist."""
        ...

    @abstractmethod
    async def create(
        self,
        kind: EntityKind,
        data: dict[str, Any],
        *,
        parent_id: str | None = None,
    ) -> dict[str, Any]:
        """Create an object and return it (including its new ``id``)."""
        ...

    @abstractmethod
    async def update(self, kind: EntityKind, object_id: str, data: dict[str, Any]) -> dict[str, Any]:
        """Update fields of an existing object."""
        ...

    @abstractmethod
    async def delete(self, kind: EntityKind, object_id: str) -> bool:
        """Delete an object. Returns False if it was already gone."""
        ...

    @abstractmethod
    async def search(self, kind: EntityKind, filters: dict[str, Any]) -> list[dict[str, Any]]:
        """Find objects whose fields equal every value in ``filters``."""
        ...

    @abstractmethod
    async def list_page(
        self,
        kind: EntityKind,
        *,
        limit: int,
        cursor: str | None = None,
    ) -> tuple[list[dict[str, Any]], str | None]:
        """Return one page of objects and the cursor of the next page."""
        ...

    @abstractmethod
    async def list_children(
        self,
        parent_kind: EntityKind,
        parent_id: str,
        child_kind: EntityKind,
    ) -> list[dict[str, Any]]:
        """List objects of ``child_kind`` linked under a parent object."""
        ...

    @abstractmethod
    async def add_association(
        self,
        from_kind: EntityKind,
        from_id: str,
        to_kind: EntityKind,
        to_id: str,
        relation_type: int | None = None,
    ) -> None:
        """Add a relationship edge; adding an existing edge is a no-op."""
        ...

    @abstractmethod
    async def remove_association(
        self,
        from_kind: EntityKind,
        from_id: str,
        to_kind: EntityKind,
        to_id: str,
        relation_type: int | None = None,
    ) -> None:
        """Remove a relationship edge; removing a missing edge is a no-op."""
        ...

    async def aclose(self) -> None:
        """Release pooled connections."""
        return None
