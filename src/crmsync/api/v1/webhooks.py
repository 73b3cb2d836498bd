"""Inbound webhook endpoints for HubSpot and Rentman.

Both endpoints acknowledge with 200 ``{"status": "ok"}`` before any
processing happens: the payload is handed to the dispatcher as a background
task, and neither a malformed body nor a downstream failure is surfaced to
the sender.
"""

from __future__ import annotations

import json
from typing import Any

import structlog
from fastapi import APIRouter, BackgroundTasks, Request

from src.crmsync.sync.dispatch import WebhookDispatcher

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

ACK = {"status": "ok"}


def _dispatcher(request: Request) -> WebhookDispatcher | None:
    dispatcher = getattr(request.app.state, "dispatcher", None)
    if dispatcher is None:
        logger.error("webhook.dispatcher_missing", path=request.url.path)
    return dispatcher


async def _json_body(request: Request) -> Any:
    raw = await request.body()
    try:
        return json.loads(raw or b"null")
    except ValueError:
        logger.warning("webhook.invalid_json", path=request.url.path, size=len(raw))
        return None


@router.post("/hubspot")
async def hubspot_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
):
    """Receive a HubSpot batch (a JSON array of change events)."""
    body = await _json_body(request)
    if isinstance(body, dict):
        body = [body]
    dispatcher = _dispatcher(request)
    if not isinstance(body, list) or dispatcher is None:
        return ACK
    logger.info("webhook.hubspot_received", event_count=len(body))
    background_tasks.add_task(dispatcher.dispatch_hubspot, body)
    return ACK


@router.post("/rentman")
async def rentman_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
):
    """Receive a Rentman event (one item type, one or more items)."""
    body = await _json_body(request)
    dispatcher = _dispatcher(request)
    if not isinstance(body, dict) or dispatcher is None:
        return ACK
    logger.info(
        "webhook.rentman_received",
        item_type=body.get("itemType"),
        event_type=body.get("eventType"),
    )
    background_tasks.add_task(dispatcher.dispatch_rentman, body)
    return ACK
