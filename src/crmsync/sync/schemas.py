"""Pydantic schemas for the sync core.

Defines the structured types passed between the correlation store,
synchronizers, recorder, coordinator and the HTTP layer:
- Correlation: CorrelationRecord, ParentLinks
- Sync runs: ItemAction, ItemStatus, RunStatus, SyncStats, SyncOptions,
  SyncRunResult, SyncRunRead, SyncItemRead, SyncErrorRead
- Webhooks: HubSpotEvent, RentmanItem, RentmanEvent, WebhookState
- Replay results: ReplayOutcome
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from src.crmsync.sync.kinds import SYNC_ORDER, EntityKind, SyncDirection, SystemName


# ── Correlation ─────────────────────────────────────────────────────────────


class CorrelationRecord(BaseModel):
    """Persisted link between an entity's HubSpot id and its Rentman id."""

    kind: EntityKind
    local_id: int
    hubspot_id: str | None = None
    rentman_id: str | None = None
    display_name: str | None = None
    parent_local_id: int | None = None
    organization_local_id: int | None = None
    person_local_id: int | None = None
    rentman_request_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def external_id(self, system: SystemName) -> str | None:
        """Return this record's id on ``system``."""
        return self.hubspot_id if system is SystemName.HUBSPOT else self.rentman_id


class ParentLinks(BaseModel):
    """Local ids of the records an entity is linked to.

    ``parent`` is the owning record (Person -> Organization, Deal ->
    Organization, Order -> Deal). ``organization`` and ``person`` are the
    additional customer links carried by deals and orders.
    """

    model_config = ConfigDict(frozen=True)

    parent: int | None = None
    organization: int | None = None
    person: int | None = None


# ── Sync Runs ───────────────────────────────────────────────────────────────


class ItemAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    SKIP = "skip"
    ERROR = "error"


class ItemStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class RunStatus(str, Enum):
    STARTED = "started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"


class SyncStats(BaseModel):
    """Counters accumulated over one run."""

    total: int = 0
    processed: int = 0
    success: int = 0
    error: int = 0
    skip: int = 0

    def merge(self, other: SyncStats) -> SyncStats:
        return SyncStats(
            total=self.total + other.total,
            processed=self.processed + other.processed,
            success=self.success + other.success,
            error=self.error + other.error,
            skip=self.skip + other.skip,
        )


class SyncOptions(BaseModel):
    """Options accepted by the manual trigger surface."""

    direction: SyncDirection = SyncDirection.BIDIRECTIONAL
    batch_size: int = Field(default=100, ge=1, le=500)
    entity_kinds: list[EntityKind] = Field(default_factory=lambda: list(SYNC_ORDER))
    triggered_by: str = "system"


class SyncRunResult(BaseModel):
    """Final counters of a run, returned instead of raising."""

    run_id: int | None = None
    sync_type: str
    status: RunStatus | None = None
    stats: SyncStats = Field(default_factory=SyncStats)
    per_kind: dict[str, SyncStats] = Field(default_factory=dict)
    errors: list[str] = Field(default_factory=list)
    rejected: bool = False
    running: str | None = None


class SyncRunRead(BaseModel):
    id: int
    sync_type: str
    direction: str
    triggered_by: str
    status: str
    total_items: int = 0
    processed_items: int = 0
    success_count: int = 0
    error_count: int = 0
    skip_count: int = 0
    error_message: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int | None = None


class SyncItemRead(BaseModel):
    id: int
    sync_run_id: int
    kind: str
    hubspot_id: str | None = None
    rentman_id: str | None = None
    action: str
    status: str
    error_message: str | None = None
    error_code: str | None = None
    created_at: datetime | None = None


class SyncErrorRead(BaseModel):
    id: int
    sync_run_id: int | None = None
    sync_item_log_id: int | None = None
    error_type: str
    severity: str
    source_system: str
    message: str
    error_code: str | None = None
    context: dict[str, Any] = Field(default_factory=dict)
    resolved: bool = False
    resolved_by: str | None = None
    resolution_notes: str | None = None
    resolved_at: datetime | None = None
    created_at: datetime | None = None


class SyncRunDetails(BaseModel):
    run: SyncRunRead
    items: list[SyncItemRead] = Field(default_factory=list)
    errors: list[SyncErrorRead] = Field(default_factory=list)


# ── Replay Outcome ──────────────────────────────────────────────────────────


class ReplayOutcome(BaseModel):
    """Result of replaying one origin entity into the destination.

    Failed replays also carry the exception and the attempted action so the
    recorder can classify them.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    kind: EntityKind
    action: ItemAction
    status: ItemStatus = ItemStatus.SUCCESS
    hubspot_id: str | None = None
    rentman_id: str | None = None
    reason: str | None = None
    data_after: dict[str, Any] | None = None
    error: Exception | None = Field(default=None, exclude=True)
    attempted: ItemAction | None = None
    origin: SystemName | None = None

    @classmethod
    def skipped(cls, kind: EntityKind, reason: str, **ids: Any) -> ReplayOutcome:
        return cls(kind=kind, action=ItemAction.SKIP, status=ItemStatus.SKIPPED, reason=reason, **ids)


# ── Webhooks ────────────────────────────────────────────────────────────────


class WebhookState(str, Enum):
    RECEIVED = "received"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    IGNORED = "ignored"


class HubSpotEvent(BaseModel):
    """One element of a HubSpot webhook batch."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    object_type_id: str | None = Field(default=None, alias="objectTypeId")
    subscription_type: str = Field(default="", alias="subscriptionType")
    object_id: int | None = Field(default=None, alias="objectId")
    change_source: str | None = Field(default=None, alias="changeSource")
    property_name: str | None = Field(default=None, alias="propertyName")
    property_value: str | None = Field(default=None, alias="propertyValue")
    association_type: str | None = Field(default=None, alias="associationType")
    from_object_id: int | None = Field(default=None, alias="fromObjectId")
    to_object_id: int | None = Field(default=None, alias="toObjectId")
    association_removed: bool = Field(default=False, alias="associationRemoved")
    event_id: int | None = Field(default=None, alias="eventId")
    occurred_at: int | None = Field(default=None, alias="occurredAt")

    @property
    def is_association_change(self) -> bool:
        return self.subscription_type.endswith("associationChange")

    def dedup_key(self) -> tuple:
        """Identity of the logical change this event describes."""
        if self.is_association_change:
            pair = tuple(sorted((self.from_object_id or 0, self.to_object_id or 0)))
            return ("association", self.association_type, pair, self.association_removed)
        return (
            "object",
            self.object_type_id,
            self.object_id,
            self.subscription_type,
            self.property_name,
            self.property_value,
        )


class RentmanUser(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: int | None = None


class RentmanParent(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: int | None = None
    ref: str | None = None


class RentmanItem(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: int
    ref: str | None = None
    parent: RentmanParent | None = None


class RentmanEvent(BaseModel):
    """A Rentman webhook body: one event over one or more items."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    item_type: str | None = Field(default=None, alias="itemType")
    event_type: str = Field(default="", alias="eventType")
    user: RentmanUser | None = None
    items: list[RentmanItem] = Field(default_factory=list)

    @field_validator("items", mode="before")
    @classmethod
    def _bare_ids(cls, value: Any) -> Any:
        # Delete events list bare ids instead of item objects
        if isinstance(value, list):
            return [{"id": item} if isinstance(item, (int, str)) else item for item in value]
        return value


class WebhookDeliveryRead(BaseModel):
    id: str
    system: SystemName
    state: WebhookState
    event_count: int
    received_at: datetime
    finished_at: datetime | None = None
    reason: str | None = None
    outcomes: list[str] = Field(default_factory=list)
