"""Sync persistence models -- correlation tables and operational sync logs.

Correlation tables (one per entity kind) share CorrelationMixin:
- SyncedOrganizationModel: HubSpot company <-> Rentman contact
- SyncedPersonModel: HubSpot contact <-> Rentman contact person
- SyncedDealModel: HubSpot deal <-> Rentman project (or pending project request)
- SyncedOrderModel: HubSpot order <-> Rentman subproject

Operational tables:
- SyncRunModel: one row per batch pass or webhook-triggered replay
- SyncItemLogModel: one row per replayed entity
- SyncErrorModel: one row per failed replay, with classification

No foreign keys between correlation tables: children may be replayed before
their parents exist, so links are enforced by the synchronizers.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from src.crmsync.core.database import Base
from src.crmsync.sync.kinds import EntityKind


class CorrelationMixin:
    """Columns shared by every correlation table."""

    # Fetch server-generated timestamps with the INSERT/UPDATE itself
    __mapper_args__ = {"eager_defaults": True}

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    hubspot_id: Mapped[str | None] = mapped_column(String(64), unique=True, nullable=True)
    rentman_id: Mapped[str | None] = mapped_column(String(64), unique=True, nullable=True)
    display_name: Mapped[str | None] = mapped_column(String(500), nullable=True)
    parent_local_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class SyncedOrganizationModel(CorrelationMixin, Base):
    """HubSpot company correlated with a Rentman contact."""

    __tablename__ = "synced_organizations"


class SyncedPersonModel(CorrelationMixin, Base):
    """HubSpot contact correlated with a Rentman contact person.

    parent_local_id points at the owning organization.
    """

    __tablename__ = "synced_persons"


class SyncedDealModel(CorrelationMixin, Base):
    """HubSpot deal correlated with a Rentman project.

    parent_local_id points at the customer organization, person_local_id at
    the customer contact person. rentman_request_id is set while the deal
    only exists in Rentman as a project request.
    """

    __tablename__ = "synced_deals"

    person_local_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    rentman_request_id: Mapped[str | None] = mapped_column(
        String(64), unique=True, nullable=True
    )


class SyncedOrderModel(CorrelationMixin, Base):
    """HubSpot order correlated with a Rentman subproject.

    parent_local_id points at the owning deal.
    """

    __tablename__ = "synced_orders"

    organization_local_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    person_local_id: Mapped[int | None] = mapped_column(Integer, nullable=True)


# ── Operational Logs ────────────────────────────────────────────────────────


class SyncRunModel(Base):
    """One synchronization pass with aggregate counters."""

    __tablename__ = "sync_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    sync_type: Mapped[str] = mapped_column(String(50), nullable=False)
    direction: Mapped[str] = mapped_column(String(50), nullable=False)
    triggered_by: Mapped[str] = mapped_column(String(100), nullable=False, default="system")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="started")
    total_items: Mapped[int] = mapped_column(Integer, default=0)
    processed_items: Mapped[int] = mapped_column(Integer, default=0)
    success_count: Mapped[int] = mapped_column(Integer, default=0)
    error_count: Mapped[int] = mapped_column(Integer, default=0)
    skip_count: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[dict] = mapped_column(JSON, default=dict)
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)


class SyncItemLogModel(Base):
    """A single entity replay within a run."""

    __tablename__ = "sync_item_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    sync_run_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    hubspot_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    rentman_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    action: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(20), nullable=True)
    data_after: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class SyncErrorModel(Base):
    """A classified replay failure awaiting triage."""

    __tablename__ = "sync_errors"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    sync_run_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    sync_item_log_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_type: Mapped[str] = mapped_column(String(30), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    source_system: Mapped[str] = mapped_column(String(20), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    error_code: Mapped[str | None] = mapped_column(String(20), nullable=True)
    context: Mapped[dict] = mapped_column(JSON, default=dict)
    resolved: Mapped[bool] = mapped_column(Boolean, default=False)
    resolved_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


CORRELATION_MODELS: dict[EntityKind, type[CorrelationMixin]] = {
    EntityKind.ORGANIZATION: SyncedOrganizationModel,
    EntityKind.PERSON: SyncedPersonModel,
    EntityKind.DEAL: SyncedDealModel,
    EntityKind.ORDER: SyncedOrderModel,
}
