"""Integration tests for the webhook and operational sync endpoints.

Builds a minimal FastAPI app around the v1 router with real services wired
to the in-memory HubSpot and Rentman fakes, and drives it through httpx
AsyncClient.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from src.crmsync.api.v1.router import router
from src.crmsync.sync.coordinator import SyncCoordinator
from src.crmsync.sync.dispatch import WebhookDispatcher
from src.crmsync.sync.errors import ExternalAPIError
from src.crmsync.sync.kinds import EntityKind, SystemName


# ── Fixtures ─────────────────────────────────────────────────────────────────


def _make_app(**state) -> FastAPI:
    app = FastAPI()
    app.include_router(router)
    for name, value in state.items():
        setattr(app.state, name, value)
    return app


@pytest.fixture
def open_access(monkeypatch, settings):
    """Operator endpoints without a configured API key."""
    monkeypatch.setattr("src.crmsync.api.deps.get_settings", lambda: settings)
    return settings


@pytest.fixture
def services(synchronizers, repository, store, hubspot, rentman):
    return {
        "dispatcher": WebhookDispatcher(
            synchronizers, repository, [hubspot.origin_tag, rentman.origin_tag]
        ),
        "coordinator": SyncCoordinator(synchronizers, repository),
        "sync_log_repository": repository,
        "correlation_store": store,
    }


@pytest_asyncio.fixture
async def client(services, open_access):
    app = _make_app(**services)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


# ── Webhooks ─────────────────────────────────────────────────────────────────


class TestWebhooks:
    @pytest.mark.asyncio
    async def test_rentman_event_replayed_after_ack(self, client, services, store, hubspot, rentman):
        contact_id = rentman.seed(EntityKind.ORGANIZATION, {"displayname": "Acme"})

        resp = await client.post(
            "/webhooks/rentman",
            json={"itemType": "Contact", "eventType": "create", "items": [{"id": int(contact_id)}]},
        )

        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}
        correlation = await store.find_by_b(EntityKind.ORGANIZATION, contact_id)
        assert correlation is not None
        assert hubspot.properties(EntityKind.ORGANIZATION, correlation.hubspot_id)["name"] == "Acme"
        [delivery] = services["dispatcher"].recent()
        assert delivery.system is SystemName.RENTMAN

    @pytest.mark.asyncio
    async def test_single_hubspot_event_wrapped_in_batch(self, open_access):
        dispatcher = MagicMock()
        dispatcher.dispatch_hubspot = AsyncMock()
        app = _make_app(dispatcher=dispatcher)
        event = {"objectTypeId": "0-2", "subscriptionType": "object.creation", "objectId": 1}

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            resp = await ac.post("/webhooks/hubspot", json=event)

        assert resp.status_code == 200
        dispatcher.dispatch_hubspot.assert_awaited_once_with([event])

    @pytest.mark.asyncio
    async def test_invalid_json_still_acknowledged(self, open_access):
        dispatcher = MagicMock()
        dispatcher.dispatch_rentman = AsyncMock()
        app = _make_app(dispatcher=dispatcher)

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            resp = await ac.post(
                "/webhooks/rentman", content=b"{not json", headers={"Content-Type": "application/json"}
            )

        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}
        dispatcher.dispatch_rentman.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_dispatcher_still_acknowledged(self, open_access):
        app = _make_app()
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            resp = await ac.post("/webhooks/hubspot", json=[])
        assert resp.status_code == 200

    @pytest.mark.asyncio
    async def test_downstream_failure_not_surfaced(self, client, hubspot, rentman):
        contact_id = rentman.seed(EntityKind.ORGANIZATION, {"displayname": "Acme"})
        hubspot.fail_next("create", ExternalAPIError("hubspot", 503, "unavailable"))

        resp = await client.post(
            "/webhooks/rentman",
            json={"itemType": "Contact", "eventType": "create", "items": [{"id": int(contact_id)}]},
        )

        assert resp.status_code == 200
        errors = await client.get("/sync/errors")
        assert errors.json()[0]["error_type"] == "api_error"


# ── Status & History ─────────────────────────────────────────────────────────


class TestStatusEndpoints:
    @pytest.mark.asyncio
    async def test_health(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"

    @pytest.mark.asyncio
    async def test_status_idle(self, client):
        resp = await client.get("/sync/status")
        assert resp.status_code == 200
        assert resp.json()["running"] is False

    @pytest.mark.asyncio
    async def test_summary_includes_run_state(self, client, store):
        await store.upsert(EntityKind.ORGANIZATION, hubspot_id="1", rentman_id="2")

        resp = await client.get("/sync/summary")

        body = resp.json()
        assert body["correlations"]["organization"] == 1
        assert body["run_state"]["running"] is False
        assert body["last_run"] is None

    @pytest.mark.asyncio
    async def test_history_and_details(self, client, rentman):
        rentman.seed(EntityKind.ORGANIZATION, {"displayname": "Acme"})
        run = (await client.post("/sync/run/organization", json={"direction": "rentman_to_hubspot"})).json()

        history = await client.get("/sync/history", params={"sync_type": "organization"})
        details = await client.get(f"/sync/history/{run['run_id']}")

        assert [row["id"] for row in history.json()] == [run["run_id"]]
        assert details.status_code == 200
        assert details.json()["run"]["status"] == "completed"
        assert details.json()["items"][0]["action"] == "create"

    @pytest.mark.asyncio
    async def test_missing_run_is_404(self, client):
        resp = await client.get("/sync/history/4242")
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_resolve_error(self, client, recorder):
        await recorder.log_error(ExternalAPIError("rentman", 500, "boom"), source_system=SystemName.RENTMAN)
        [error] = (await client.get("/sync/errors")).json()

        resp = await client.post(
            f"/sync/errors/{error['id']}/resolve", json={"resolved_by": "ops", "notes": "retried"}
        )

        assert resp.status_code == 200
        assert resp.json()["resolved"] is True
        assert (await client.get("/sync/errors")).json() == []
        missing = await client.post("/sync/errors/9999/resolve", json={})
        assert missing.status_code == 404

    @pytest.mark.asyncio
    async def test_recent_webhooks(self, client):
        await client.post("/webhooks/rentman", json={"itemType": "Unknown", "eventType": "create", "items": []})

        resp = await client.get("/sync/webhooks")

        assert resp.status_code == 200
        assert resp.json()[0]["system"] == "rentman"


# ── Triggers ─────────────────────────────────────────────────────────────────


class TestTriggers:
    @pytest.mark.asyncio
    async def test_full_run_returns_counters(self, client, rentman):
        rentman.seed(EntityKind.ORGANIZATION, {"displayname": "Acme"})

        resp = await client.post("/sync/run", json={"direction": "rentman_to_hubspot"})

        assert resp.status_code == 200
        body = resp.json()
        assert body["sync_type"] == "full"
        assert body["status"] == "completed"
        assert body["per_kind"]["organization"]["success"] == 1

    @pytest.mark.asyncio
    async def test_run_without_body(self, client):
        resp = await client.post("/sync/run")
        assert resp.status_code == 200
        assert resp.json()["status"] == "completed"

    @pytest.mark.asyncio
    async def test_concurrent_run_is_409(self, client, services):
        services["coordinator"].run_state.try_acquire("full")

        resp = await client.post("/sync/run/person")

        assert resp.status_code == 409
        assert resp.json()["rejected"] is True
        assert resp.json()["running"] == "full"

    @pytest.mark.asyncio
    async def test_unknown_kind_rejected(self, client):
        resp = await client.post("/sync/run/invoice")
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_single_sync(self, client, hubspot):
        company_id = hubspot.seed(EntityKind.ORGANIZATION, {"name": "Acme"})

        resp = await client.post("/sync/single", json={"kind": "organization", "hubspot_id": company_id})

        assert resp.status_code == 200
        body = resp.json()
        assert body["run"]["sync_type"] == "single_organization"
        assert body["outcome"]["action"] == "create"

    @pytest.mark.asyncio
    async def test_single_sync_needs_one_id(self, client):
        resp = await client.post(
            "/sync/single", json={"kind": "person", "hubspot_id": "1", "rentman_id": "2"}
        )
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_financials_only_for_deals_and_orders(self, client):
        assert (await client.post("/sync/financials/organization")).status_code == 400
        resp = await client.post("/sync/financials/deal")
        assert resp.status_code == 200
        assert resp.json()["sync_type"] == "financials_deal"


# ── Access ───────────────────────────────────────────────────────────────────


class TestOperatorAccess:
    @pytest.mark.asyncio
    async def test_api_key_required_when_configured(self, services, settings, monkeypatch):
        keyed = settings.model_copy(update={"OPERATOR_API_KEY": "s3cret"})
        monkeypatch.setattr("src.crmsync.api.deps.get_settings", lambda: keyed)
        app = _make_app(**services)

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            denied = await ac.get("/sync/status")
            wrong = await ac.get("/sync/status", headers={"X-API-Key": "nope"})
            allowed = await ac.get("/sync/status", headers={"X-API-Key": "s3cret"})
            webhook = await ac.post("/webhooks/hubspot", json=[])

        assert denied.status_code == 401
        assert wrong.status_code == 401
        assert allowed.status_code == 200
        assert webhook.status_code == 200

    @pytest.mark.asyncio
    async def test_missing_service_is_503(self, open_access):
        app = _make_app(dispatcher=None, coordinator=None)
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            assert (await ac.get("/sync/status")).status_code == 503
            assert (await ac.get("/sync/history")).status_code == 503
