"""Webhook dispatch -- filter, coalesce and route inbound change notifications.

Per delivery the state moves received -> processing -> completed | failed,
or straight to ignored when nothing is left to replay. Before routing:
- events carrying one of our own origin tags are dropped (loop prevention)
- HubSpot change sources that are side effects of other changes
  (auto-association by domain, merges) are dropped
- HubSpot batches are coalesced (see ``coalesce_hubspot_events``)
- event keys already seen inside the dedup window are dropped

Routing goes through the EntityKind -> synchronizer table. Every delivery
that reaches processing gets one SyncRun; per-event failures are recorded by
the synchronizers and never abort sibling events.
"""

from __future__ import annotations

import time
import uuid
from collections import deque
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog
from pydantic import ValidationError

from src.crmsync.core.monitoring import record_webhook
from src.crmsync.sync.documents import FILE_ITEM_TYPE, DocumentLinker
from src.crmsync.sync.financials import FinancialRefresher, is_financial_item_type
from src.crmsync.sync.kinds import (
    PARENT_KINDS,
    EntityKind,
    SyncDirection,
    SystemName,
    kind_for_hubspot_object_type,
    kind_for_rentman_item_type,
    parse_association_type,
)
from src.crmsync.sync.origin import OriginTag
from src.crmsync.sync.recorder import SyncLogRepository, SyncRecorder
from src.crmsync.sync.schemas import (
    HubSpotEvent,
    ItemAction,
    ItemStatus,
    ReplayOutcome,
    RentmanEvent,
    RentmanItem,
    RunStatus,
    WebhookDeliveryRead,
    WebhookState,
)
from src.crmsync.sync.synchronizers.registry import SynchronizerTable

logger = structlog.get_logger(__name__)

HUBSPOT_ACTIONS: dict[str, ItemAction] = {
    "creation": ItemAction.CREATE,
    "restore": ItemAction.CREATE,
    "propertyChange": ItemAction.UPDATE,
    "deletion": ItemAction.DELETE,
}

# Legacy subscriptions ("contact.creation") carry no objectTypeId
HUBSPOT_SUBSCRIPTION_KINDS: dict[str, EntityKind] = {
    "company": EntityKind.ORGANIZATION,
    "contact": EntityKind.PERSON,
    "deal": EntityKind.DEAL,
}

RENTMAN_ACTIONS: dict[str, ItemAction] = {
    "create": ItemAction.CREATE,
    "update": ItemAction.UPDATE,
    "delete": ItemAction.DELETE,
}

_TRANSITIONS: dict[WebhookState, frozenset[WebhookState]] = {
    WebhookState.RECEIVED: frozenset({WebhookState.PROCESSING, WebhookState.IGNORED}),
    WebhookState.PROCESSING: frozenset(
        {WebhookState.COMPLETED, WebhookState.FAILED, WebhookState.IGNORED}
    ),
}


def _event_suffix(event: HubSpotEvent) -> str:
    return event.subscription_type.rsplit(".", 1)[-1]


# ── Delivery State ──────────────────────────────────────────────────────────


@dataclass
class WebhookDelivery:
    """State machine of one inbound webhook request."""

    system: SystemName
    event_count: int
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: WebhookState = WebhookState.RECEIVED
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None
    reason: str | None = None
    outcomes: list[str] = field(default_factory=list)

    @property
    def finished(self) -> bool:
        return self.state not in _TRANSITIONS

    def transition(self, state: WebhookState, reason: str | None = None) -> None:
        """Move to ``state``.

        Raises:
            ValueError: If the move is not allowed from the current state.
        """
        if state not in _TRANSITIONS.get(self.state, frozenset()):
            raise ValueError(f"webhook delivery cannot go from {self.state.value} to {state.value}")
        self.state = state
        if reason is not None:
            self.reason = reason
        if self.finished:
            self.finished_at = datetime.now(timezone.utc)
            record_webhook(self.system.value, state.value)

    def to_read(self) -> WebhookDeliveryRead:
        return WebhookDeliveryRead(
            id=self.id,
            system=self.system,
            state=self.state,
            event_count=self.event_count,
            received_at=self.received_at,
            finished_at=self.finished_at,
            reason=self.reason,
            outcomes=list(self.outcomes),
        )


# ── Deduplication ───────────────────────────────────────────────────────────


class DeduplicationWindow:
    """Remembers event keys for ``window_seconds``.

    Args:
        window_seconds: How long a key suppresses identical keys.
        clock: Monotonic clock in seconds; injectable for tests.
    """

    def __init__(self, window_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.window_seconds = window_seconds
        self._clock = clock
        self._seen: dict[tuple, float] = {}

    def _purge(self, now: float) -> None:
        expired = [key for key, seen_at in self._seen.items() if now - seen_at >= self.window_seconds]
        for key in expired:
            del self._seen[key]

    def seen(self, key: tuple) -> bool:
        """True if ``key`` was seen inside the window; records it otherwise."""
        now = self._clock()
        self._purge(now)
        if key in self._seen:
            return True
        self._seen[key] = now
        return False

    def __len__(self) -> int:
        return len(self._seen)


def coalesce_hubspot_events(events: list[HubSpotEvent]) -> list[HubSpotEvent]:
    """Collapse a HubSpot batch that describes one logical change.

    - every event is an association change between the same two objects:
      keep the first one only
    - every event is about one object and names one property: keep its
      property-change event
    - every event is about one object otherwise: keep its creation event
    - anything else is kept in full
    """
    if len(events) < 2:
        return list(events)

    if all(event.is_association_change for event in events):
        pairs = {
            frozenset((event.from_object_id, event.to_object_id)) for event in events
        }
        return [events[0]] if len(pairs) == 1 else list(events)

    if any(event.is_association_change for event in events):
        return list(events)

    objects = {(event.object_type_id, event.object_id) for event in events}
    if len(objects) != 1:
        return list(events)

    properties = {event.property_name for event in events if event.property_name}
    if len(properties) == 1:
        for event in events:
            if _event_suffix(event) == "propertyChange":
                return [event]
    for event in events:
        if _event_suffix(event) == "creation":
            return [event]
    return list(events)


def association_owner(pair: tuple[EntityKind, EntityKind]) -> EntityKind:
    """The child kind of an association pair (CONTACT_TO_COMPANY -> person)."""
    first, second = pair
    if PARENT_KINDS.get(first) is second:
        return first
    if PARENT_KINDS.get(second) is first:
        return second
    return first


# ── Dispatcher ──────────────────────────────────────────────────────────────


class WebhookDispatcher:
    """Turns webhook payloads into synchronizer replays.

    Args:
        synchronizers: EntityKind -> synchronizer lookup table.
        repository: Sync log repository; one run per processed delivery.
        origin_tags: Tags of every system client; matching events are ours.
        ignored_change_sources: HubSpot change sources never replayed.
        dedup_window: Cross-request duplicate suppression.
        history_size: Number of recent deliveries kept for inspection.
        financials: Refreshes deal and order amounts after cost line changes.
        documents: Attaches created quotation and contract files to deals.
    """

    def __init__(
        self,
        synchronizers: SynchronizerTable,
        repository: SyncLogRepository,
        origin_tags: Iterable[OriginTag],
        *,
        ignored_change_sources: Iterable[str] = (),
        dedup_window: DeduplicationWindow | None = None,
        history_size: int = 200,
        financials: FinancialRefresher | None = None,
        documents: DocumentLinker | None = None,
    ) -> None:
        self._synchronizers = synchronizers
        self._repository = repository
        self._origin_tags = {tag.system: tag for tag in origin_tags}
        self._ignored_sources = frozenset(ignored_change_sources)
        self._dedup = dedup_window if dedup_window is not None else DeduplicationWindow(5.0)
        self._history: deque[WebhookDelivery] = deque(maxlen=history_size)
        self._financials = financials
        self._documents = documents

    def recent(self, limit: int = 50) -> list[WebhookDelivery]:
        """Most recent deliveries first."""
        return list(reversed(self._history))[:limit]

    def _is_self_origin(self, system: SystemName, value: Any) -> bool:
        tag = self._origin_tags.get(system)
        return tag is not None and tag.matches(value)

    def _open(self, system: SystemName, event_count: int) -> WebhookDelivery:
        delivery = WebhookDelivery(system=system, event_count=event_count)
        self._history.append(delivery)
        record_webhook(system.value, WebhookState.RECEIVED.value)
        return delivery

    def _ignore(self, delivery: WebhookDelivery, reason: str) -> WebhookDelivery:
        delivery.transition(WebhookState.IGNORED, reason)
        logger.info(
            "webhook.ignored",
            delivery_id=delivery.id,
            system=delivery.system.value,
            reason=reason,
        )
        return delivery

    # ── HubSpot ─────────────────────────────────────────────────────────

    async def dispatch_hubspot(self, payload: list[dict[str, Any]]) -> WebhookDelivery:
        delivery = self._open(SystemName.HUBSPOT, len(payload))
        events: list[HubSpotEvent] = []
        for raw in payload:
            try:
                events.append(HubSpotEvent.model_validate(raw))
            except ValidationError as exc:
                logger.warning("webhook.hubspot_event_invalid", delivery_id=delivery.id, error=str(exc))

        relevant = []
        for event in events:
            if self._is_self_origin(SystemName.HUBSPOT, event.change_source):
                logger.debug(
                    "webhook.ignored_self_origin",
                    delivery_id=delivery.id,
                    object_id=event.object_id,
                    change_source=event.change_source,
                )
            elif event.change_source in self._ignored_sources:
                logger.debug(
                    "webhook.ignored_change_source",
                    delivery_id=delivery.id,
                    object_id=event.object_id,
                    change_source=event.change_source,
                )
            else:
                relevant.append(event)
        if not relevant:
            return self._ignore(delivery, "no events from other sources")

        fresh = [
            event
            for event in coalesce_hubspot_events(relevant)
            if not self._dedup.seen(("hubspot",) + event.dedup_key())
        ]
        if not fresh:
            return self._ignore(delivery, "duplicate delivery")

        return await self._process(
            delivery,
            SyncDirection.HUBSPOT_TO_RENTMAN,
            lambda recorder: self._route_hubspot(fresh, recorder),
        )

    async def _route_hubspot(
        self,
        events: list[HubSpotEvent],
        recorder: SyncRecorder,
    ) -> list[ReplayOutcome]:
        outcomes = []
        for event in events:
            outcome = await self._route_hubspot_event(event, recorder)
            if outcome is not None:
                outcomes.append(outcome)
        return outcomes

    async def _route_hubspot_event(
        self,
        event: HubSpotEvent,
        recorder: SyncRecorder,
    ) -> ReplayOutcome | None:
        if event.is_association_change:
            pair = parse_association_type(event.association_type)
            if pair is None:
                logger.info("webhook.unknown_association", association_type=event.association_type)
                return None
            synchronizer = self._synchronizers[association_owner(pair)]
            return await synchronizer.replay_association(event, recorder=recorder)

        kind = kind_for_hubspot_object_type(event.object_type_id) or HUBSPOT_SUBSCRIPTION_KINDS.get(
            event.subscription_type.split(".", 1)[0]
        )
        action = HUBSPOT_ACTIONS.get(_event_suffix(event))
        if kind is None or action is None or event.object_id is None:
            logger.info(
                "webhook.unroutable_event",
                object_type_id=event.object_type_id,
                subscription_type=event.subscription_type,
            )
            return None
        changes = {event.property_name: event.property_value} if event.property_name else None
        return await self._synchronizers[kind].replay(
            action, SystemName.HUBSPOT, event.object_id, recorder=recorder, changes=changes
        )

    # ── Rentman ─────────────────────────────────────────────────────────

    async def dispatch_rentman(self, payload: dict[str, Any]) -> WebhookDelivery:
        try:
            event = RentmanEvent.model_validate(payload)
        except ValidationError as exc:
            delivery = self._open(SystemName.RENTMAN, 0)
            logger.warning("webhook.rentman_event_invalid", delivery_id=delivery.id, error=str(exc))
            return self._ignore(delivery, "malformed payload")

        delivery = self._open(SystemName.RENTMAN, len(event.items))
        user_id = event.user.id if event.user is not None else None
        if self._is_self_origin(SystemName.RENTMAN, user_id):
            return self._ignore(delivery, "own write")

        if is_financial_item_type(event.item_type) and self._financials is not None:
            if event.event_type not in ("create", "update"):
                return self._ignore(delivery, f"unsupported {event.item_type} {event.event_type}")
            financials = self._financials

            async def refresh(item: RentmanItem, recorder: SyncRecorder) -> list[ReplayOutcome]:
                return await financials.refresh_for_item(event.item_type, item, recorder=recorder)

            return await self._dispatch_rentman_lines(delivery, event, refresh)

        if event.item_type == FILE_ITEM_TYPE and self._documents is not None:
            if event.event_type != "create":
                return self._ignore(delivery, f"unsupported {event.item_type} {event.event_type}")
            documents = self._documents

            async def link(item: RentmanItem, recorder: SyncRecorder) -> list[ReplayOutcome]:
                return [await documents.link_file(item, recorder=recorder)]

            return await self._dispatch_rentman_lines(delivery, event, link)

        kind = kind_for_rentman_item_type(event.item_type)
        action = RENTMAN_ACTIONS.get(event.event_type)
        if kind is None or action is None:
            return self._ignore(delivery, f"unsupported {event.item_type} {event.event_type}")
        if not event.items:
            return self._ignore(delivery, "no items")

        key = ("rentman", kind.value, action.value, tuple(sorted(item.id for item in event.items)))
        if self._dedup.seen(key):
            return self._ignore(delivery, "duplicate delivery")

        ids = [item.id for item in event.items]
        synchronizer = self._synchronizers[kind]

        async def route(recorder: SyncRecorder) -> list[ReplayOutcome]:
            if action is ItemAction.DELETE:
                return await synchronizer.replay_delete(SystemName.RENTMAN, ids, recorder=recorder)
            return [
                await synchronizer.replay(action, SystemName.RENTMAN, item_id, recorder=recorder)
                for item_id in ids
            ]

        return await self._process(delivery, SyncDirection.RENTMAN_TO_HUBSPOT, route)

    async def _dispatch_rentman_lines(
        self,
        delivery: WebhookDelivery,
        event: RentmanEvent,
        handle: Callable[[RentmanItem, SyncRecorder], Awaitable[list[ReplayOutcome]]],
    ) -> WebhookDelivery:
        """Route items that are not synchronized entities to their handler."""
        if not event.items:
            return self._ignore(delivery, "no items")
        key = ("rentman", event.item_type, event.event_type, tuple(sorted(item.id for item in event.items)))
        if self._dedup.seen(key):
            return self._ignore(delivery, "duplicate delivery")

        async def route(recorder: SyncRecorder) -> list[ReplayOutcome]:
            outcomes: list[ReplayOutcome] = []
            for item in event.items:
                outcomes.extend(await handle(item, recorder))
            return outcomes

        return await self._process(delivery, SyncDirection.RENTMAN_TO_HUBSPOT, route)

    # ── Processing ──────────────────────────────────────────────────────

    async def _process(
        self,
        delivery: WebhookDelivery,
        direction: SyncDirection,
        route: Callable[[SyncRecorder], Any],
    ) -> WebhookDelivery:
        delivery.transition(WebhookState.PROCESSING)
        recorder = SyncRecorder(
            self._repository, f"webhook_{delivery.system.value}", direction, "webhook"
        )
        log = logger.bind(delivery_id=delivery.id, system=delivery.system.value)
        try:
            await recorder.start({"delivery_id": delivery.id, "event_count": delivery.event_count})
            outcomes: list[ReplayOutcome] = await route(recorder)
            status = await recorder.complete()
        except Exception as exc:
            log.error("webhook.processing_failed", error=str(exc), error_type=type(exc).__name__)
            delivery.transition(WebhookState.FAILED, str(exc) or type(exc).__name__)
            if recorder.run_id is not None:
                await recorder.fail(exc)
            return delivery

        delivery.outcomes = [
            f"{outcome.kind.value}:{outcome.action.value}:{outcome.status.value}"
            + (f" ({outcome.reason})" if outcome.reason else "")
            for outcome in outcomes
        ]
        if outcomes and all(outcome.status is ItemStatus.SKIPPED for outcome in outcomes):
            delivery.transition(WebhookState.COMPLETED, "all events skipped")
        elif status is RunStatus.FAILED:
            delivery.transition(WebhookState.FAILED, "; ".join(recorder.errors[:3]) or None)
        else:
            delivery.transition(WebhookState.COMPLETED)
        log.info(
            "webhook.processed",
            state=delivery.state.value,
            run_id=recorder.run_id,
            **recorder.stats.model_dump(),
        )
        return delivery
