"""Correlation store -- async persistence of HubSpot <-> Rentman id links.

Provides CorrelationStore with the session_factory callable pattern used by
the other repositories. One table per entity kind; each table holds at most
one row per HubSpot id and at most one row per Rentman id, enforced by unique
constraints. ``upsert`` is the only write path that can create rows and it
never creates a second row for an entity that is already correlated on
either side.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from typing import Any

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.crmsync.sync.errors import CorrelationConflictError
from src.crmsync.sync.kinds import EntityKind, SystemName
from src.crmsync.sync.models import CORRELATION_MODELS, CorrelationMixin
from src.crmsync.sync.schemas import CorrelationRecord, ParentLinks

logger = structlog.get_logger(__name__)

SessionFactory = Callable[[], AsyncGenerator[AsyncSession, None]]


# ── Serialization Helpers ───────────────────────────────────────────────────


def _normalize_id(value: Any) -> str | None:
    """External ids are stored as strings; blank values mean absent."""
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _model_to_record(kind: EntityKind, model: CorrelationMixin) -> CorrelationRecord:
    """Convert a correlation model row to a CorrelationRecord schema."""
    return CorrelationRecord(
        kind=kind,
        local_id=model.id,
        hubspot_id=model.hubspot_id,
        rentman_id=model.rentman_id,
        display_name=model.display_name,
        parent_local_id=model.parent_local_id,
        organization_local_id=getattr(model, "organization_local_id", None),
        person_local_id=getattr(model, "person_local_id", None),
        rentman_request_id=getattr(model, "rentman_request_id", None),
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _apply_links(model: CorrelationMixin, links: ParentLinks) -> None:
    model.parent_local_id = links.parent
    if hasattr(model, "organization_local_id"):
        model.organization_local_id = links.organization
    if hasattr(model, "person_local_id"):
        model.person_local_id = links.person


class CorrelationStore:
    """Async CRUD over the per-kind correlation tables.

    Args:
        session_factory: Callable returning an async generator of AsyncSession.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    # ── Lookups ─────────────────────────────────────────────────────────

    async def find_by_a(self, kind: EntityKind, hubspot_id: Any) -> CorrelationRecord | None:
        """Find the record holding ``hubspot_id``."""
        return await self.find(kind, SystemName.HUBSPOT, hubspot_id)

    async def find_by_b(self, kind: EntityKind, rentman_id: Any) -> CorrelationRecord | None:
        """Find the record holding ``rentman_id``."""
        return await self.find(kind, SystemName.RENTMAN, rentman_id)

    async def find(
        self,
        kind: EntityKind,
        system: SystemName,
        external_id: Any,
    ) -> CorrelationRecord | None:
        external_id = _normalize_id(external_id)
        if external_id is None:
            return None
        model = CORRELATION_MODELS[kind]
        column = model.hubspot_id if system is SystemName.HUBSPOT else model.rentman_id
        async for session in self._session_factory():
            row = await session.scalar(select(model).where(column == external_id))
            return _model_to_record(kind, row) if row is not None else None
        return None

    async def get(self, kind: EntityKind, local_id: int | None) -> CorrelationRecord | None:
        if local_id is None:
            return None
        model = CORRELATION_MODELS[kind]
        async for session in self._session_factory():
            row = await session.get(model, local_id)
            return _model_to_record(kind, row) if row is not None else None
        return None

    async def find_deal_by_request(self, rentman_request_id: Any) -> CorrelationRecord | None:
        """Find the deal record waiting on a Rentman project request."""
        request_id = _normalize_id(rentman_request_id)
        if request_id is None:
            return None
        model = CORRELATION_MODELS[EntityKind.DEAL]
        async for session in self._session_factory():
            row = await session.scalar(
                select(model).where(model.rentman_request_id == request_id)
            )
            return _model_to_record(EntityKind.DEAL, row) if row is not None else None
        return None

    async def find_by_name(self, kind: EntityKind, display_name: str) -> CorrelationRecord | None:
        """First record whose cached display name equals ``display_name``."""
        model = CORRELATION_MODELS[kind]
        async for session in self._session_factory():
            row = await session.scalar(
                select(model).where(model.display_name == display_name).order_by(model.id).limit(1)
            )
            return _model_to_record(kind, row) if row is not None else None
        return None

    async def children(self, kind: EntityKind, parent_local_id: int) -> list[CorrelationRecord]:
        """List records of ``kind`` whose parent is ``parent_local_id``."""
        model = CORRELATION_MODELS[kind]
        async for session in self._session_factory():
            result = await session.execute(
                select(model)
                .where(model.parent_local_id == parent_local_id)
                .order_by(model.id)
            )
            return [_model_to_record(kind, row) for row in result.scalars().all()]
        return []

    async def count(self, kind: EntityKind) -> int:
        model = CORRELATION_MODELS[kind]
        async for session in self._session_factory():
            return int(await session.scalar(select(func.count()).select_from(model)) or 0)
        return 0

    # ── Writes ──────────────────────────────────────────────────────────

    async def upsert(
        self,
        kind: EntityKind,
        *,
        hubspot_id: Any = None,
        rentman_id: Any = None,
        display_name: str | None = None,
        links: ParentLinks | None = None,
        rentman_request_id: Any = None,
    ) -> CorrelationRecord:
        """Atomically insert or update the record keyed on whichever id is known.

        Existing rows matched by either id get the missing id filled in.
        ``links`` replaces all link columns when given; ``None`` leaves them
        untouched. A concurrent insert of the same entity surfaces as an
        IntegrityError and is resolved by re-reading and updating the row
        that won.

        Raises:
            ValueError: If neither id nor a request id is given.
            CorrelationConflictError: If the ids belong to two different rows.
        """
        hubspot_id = _normalize_id(hubspot_id)
        rentman_id = _normalize_id(rentman_id)
        rentman_request_id = _normalize_id(rentman_request_id)
        if hubspot_id is None and rentman_id is None and rentman_request_id is None:
            raise ValueError(f"upsert({kind.value}) needs at least one external id")

        for attempt in range(2):
            async for session in self._session_factory():
                try:
                    row = await self._upsert_row(
                        session,
                        kind,
                        hubspot_id=hubspot_id,
                        rentman_id=rentman_id,
                        display_name=display_name,
                        links=links,
                        rentman_request_id=rentman_request_id,
                    )
                    await session.commit()
                    await session.refresh(row)
                    return _model_to_record(kind, row)
                except IntegrityError:
                    await session.rollback()
                    if attempt:
                        raise
                    logger.info(
                        "correlation.upsert_race_retry",
                        kind=kind.value,
                        hubspot_id=hubspot_id,
                        rentman_id=rentman_id,
                    )
        raise RuntimeError("unreachable: session factory yielded no session")

    async def _upsert_row(
        self,
        session: AsyncSession,
        kind: EntityKind,
        *,
        hubspot_id: str | None,
        rentman_id: str | None,
        display_name: str | None,
        links: ParentLinks | None,
        rentman_request_id: str | None,
    ) -> CorrelationMixin:
        model = CORRELATION_MODELS[kind]
        matches: dict[int, CorrelationMixin] = {}
        if hubspot_id is not None:
            row = await session.scalar(select(model).where(model.hubspot_id == hubspot_id))
            if row is not None:
                matches[row.id] = row
        if rentman_id is not None:
            row = await session.scalar(select(model).where(model.rentman_id == rentman_id))
            if row is not None:
                matches[row.id] = row
        if rentman_request_id is not None and kind is EntityKind.DEAL:
            row = await session.scalar(
                select(model).where(model.rentman_request_id == rentman_request_id)
            )
            if row is not None:
                matches[row.id] = row

        if len(matches) > 1:
            raise CorrelationConflictError(
                f"{kind.value}: hubspot_id={hubspot_id} and rentman_id={rentman_id} "
                f"are correlated to different records {sorted(matches)}"
            )

        if not matches:
            row = model(
                hubspot_id=hubspot_id,
                rentman_id=rentman_id,
                display_name=display_name,
            )
            if rentman_request_id is not None and kind is EntityKind.DEAL:
                row.rentman_request_id = rentman_request_id
            if links is not None:
                _apply_links(row, links)
            session.add(row)
            await session.flush()
            logger.debug(
                "correlation.created",
                kind=kind.value,
                local_id=row.id,
                hubspot_id=hubspot_id,
                rentman_id=rentman_id,
            )
            return row

        row = next(iter(matches.values()))
        if hubspot_id is not None and row.hubspot_id != hubspot_id:
            if row.hubspot_id is not None:
                logger.warning(
                    "correlation.hubspot_id_replaced",
                    kind=kind.value,
                    local_id=row.id,
                    old=row.hubspot_id,
                    new=hubspot_id,
                )
            row.hubspot_id = hubspot_id
        if rentman_id is not None and row.rentman_id != rentman_id:
            if row.rentman_id is not None:
                logger.warning(
                    "correlation.rentman_id_replaced",
                    kind=kind.value,
                    local_id=row.id,
                    old=row.rentman_id,
                    new=rentman_id,
                )
            row.rentman_id = rentman_id
        if rentman_request_id is not None and kind is EntityKind.DEAL:
            row.rentman_request_id = rentman_request_id
        if display_name is not None:
            row.display_name = display_name
        if links is not None:
            _apply_links(row, links)
        await session.flush()
        return row

    async def update_name(self, kind: EntityKind, local_id: int, display_name: str | None) -> None:
        await self._update_fields(kind, local_id, display_name=display_name)

    async def update_parent(self, kind: EntityKind, local_id: int, parent_local_id: int | None) -> None:
        await self._update_fields(kind, local_id, parent_local_id=parent_local_id)

    async def update_links(self, kind: EntityKind, local_id: int, links: ParentLinks) -> None:
        fields: dict[str, Any] = {"parent_local_id": links.parent}
        model = CORRELATION_MODELS[kind]
        if hasattr(model, "organization_local_id"):
            fields["organization_local_id"] = links.organization
        if hasattr(model, "person_local_id"):
            fields["person_local_id"] = links.person
        await self._update_fields(kind, local_id, **fields)

    async def unlink(self, kind: EntityKind, local_id: int, system: SystemName) -> None:
        """Forget the id on ``system`` and keep the rest of the record."""
        field = "hubspot_id" if system is SystemName.HUBSPOT else "rentman_id"
        await self._update_fields(kind, local_id, **{field: None})

    async def clear_request(self, local_id: int) -> None:
        """Forget the project request once the deal has a real project."""
        await self._update_fields(EntityKind.DEAL, local_id, rentman_request_id=None)

    async def _update_fields(self, kind: EntityKind, local_id: int, **fields: Any) -> None:
        model = CORRELATION_MODELS[kind]
        async for session in self._session_factory():
            row = await session.get(model, local_id)
            if row is None:
                logger.warning("correlation.update_missing", kind=kind.value, local_id=local_id)
                return
            for name, value in fields.items():
                setattr(row, name, value)
            await session.commit()

    async def delete(self, kind: EntityKind, system: SystemName, external_id: Any) -> bool:
        """Delete the record holding ``external_id`` on ``system``.

        Returns:
            True if a row was deleted.
        """
        external_id = _normalize_id(external_id)
        if external_id is None:
            return False
        model = CORRELATION_MODELS[kind]
        column = model.hubspot_id if system is SystemName.HUBSPOT else model.rentman_id
        async for session in self._session_factory():
            result = await session.execute(delete(model).where(column == external_id))
            await session.commit()
            deleted = (result.rowcount or 0) > 0
            if deleted:
                logger.debug(
                    "correlation.deleted",
                    kind=kind.value,
                    system=system.value,
                    external_id=external_id,
                )
            return deleted
        return False

    async def delete_record(self, kind: EntityKind, local_id: int) -> bool:
        model = CORRELATION_MODELS[kind]
        async for session in self._session_factory():
            result = await session.execute(delete(model).where(model.id == local_id))
            await session.commit()
            return (result.rowcount or 0) > 0
        return False
