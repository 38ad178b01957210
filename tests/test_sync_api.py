"""Tests for service wiring and the /sync control endpoints.

Services are built from explicit Settings over InMemoryRecordStore and put
on app.state directly; the lifespan (database, scheduler start) is not run.

Covers:
    - build_services wires jobs, linkers and webhook handlers per configured system
    - GET /sync/jobs, POST /sync/jobs/{name}/run (including unknown job -> 404)
    - PUT /sync/automation/{key} enables a job
    - link preview and link endpoints, unknown rule -> 404
    - link overview, dry-run bulk link, unmatched listing, manual link, get and unlink
    - missing services -> 503
"""

from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from src.recordsync.config import Settings
from src.recordsync.main import create_app
from src.recordsync.records.schemas import EntityType
from src.recordsync.services import build_services
from src.recordsync.sync.specs import CRM_VENDOR_LINK_CONFIG_KEY
from tests.fakes import InMemoryRecordStore


def _settings(**overrides) -> Settings:
    values = {
        "CRM_ACCESS_TOKEN": "crm-token",
        "PM_ACCESS_TOKEN": "pm-token",
        "PM_COMPANY_ID": "1234",
        "WEBHOOK_TOKEN": "",
    }
    values.update(overrides)
    return Settings(**values)


# ── Wiring ──────────────────────────────────────────────────────────────────


class TestBuildServices:
    def test_both_systems_configured(self, store) -> None:
        services = build_services(store, _settings())

        assert [s.name for s in services.scheduler.status()] == [
            "crm_sync",
            "pm_sync",
            CRM_VENDOR_LINK_CONFIG_KEY,
        ]
        assert sorted(services.linkers) == ["crm_company_vendor", "crm_contact_vendor"]
        assert [s.entity_type for s in services.specs["hubspot"]] == [
            EntityType.COMPANY,
            EntityType.CONTACT,
            EntityType.DEAL,
        ]

    def test_no_credentials_means_no_jobs(self, store) -> None:
        services = build_services(store, _settings(CRM_ACCESS_TOKEN="", PM_ACCESS_TOKEN=""))

        assert services.scheduler.status() == []
        assert services.linkers == {}

    def test_crm_only_has_no_linkers(self, store) -> None:
        services = build_services(store, _settings(PM_ACCESS_TOKEN=""))

        assert [s.name for s in services.scheduler.status()] == ["crm_sync"]
        assert services.linkers == {}


# ── Endpoints ───────────────────────────────────────────────────────────────


@pytest.fixture
async def client(store):
    services = build_services(store, _settings())
    app = create_app()
    app.state.record_store = store
    app.state.webhook_processor = services.processor
    app.state.sync_orchestrator = services.orchestrator
    app.state.linkers = services.linkers
    app.state.sync_scheduler = services.scheduler
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


class TestSyncEndpoints:
    async def test_list_jobs(self, client) -> None:
        response = await client.get("/sync/jobs")

        assert response.status_code == 200
        assert [j["name"] for j in response.json()] == ["crm_sync", "pm_sync", CRM_VENDOR_LINK_CONFIG_KEY]

    async def test_run_disabled_job(self, client) -> None:
        response = await client.post("/sync/jobs/crm_sync/run")

        assert response.status_code == 200
        assert response.json()["outcome"] == "skipped_disabled"

    async def test_run_unknown_job(self, client) -> None:
        response = await client.post("/sync/jobs/nope/run")

        assert response.status_code == 404

    async def test_set_automation(self, client, store: InMemoryRecordStore) -> None:
        response = await client.put("/sync/automation/crm_sync", json={"enabled": True, "settings": {"note": "x"}})

        assert response.status_code == 200
        assert response.json()["value"] == {"note": "x", "enabled": True}
        assert (await store.get_automation_config("crm_sync")).enabled is True

    async def test_preview_link(self, client, store: InMemoryRecordStore) -> None:
        store.seed(EntityType.VENDOR, "v1", name="ACME Builders", website="https://acme.com")
        store.seed(EntityType.COMPANY, "c1", system="hubspot", name="Acme Builders", domain="acme.com")

        response = await client.get("/sync/links/crm_company_vendor/c1/preview")

        assert response.status_code == 200
        body = response.json()
        assert body["match"]["score"] == 170
        assert body["would_create"] is False

    async def test_preview_unknown_record(self, client) -> None:
        response = await client.get("/sync/links/crm_company_vendor/missing/preview")

        assert response.status_code == 404

    async def test_unknown_rule(self, client) -> None:
        response = await client.post("/sync/links/nope/c1")

        assert response.status_code == 404

    async def test_link_disabled_rule(self, client, store: InMemoryRecordStore) -> None:
        store.seed(EntityType.COMPANY, "c1", system="hubspot", name="Acme Builders")

        response = await client.post("/sync/links/crm_company_vendor/c1")

        assert response.status_code == 200
        assert response.json()["outcome"] == "skipped_automation_disabled"


class TestLinkManagementEndpoints:
    async def test_overview(self, client, store: InMemoryRecordStore) -> None:
        store.seed(EntityType.COMPANY, "c1", system="hubspot", name="Acme Builders")
        store.seed(EntityType.VENDOR, "v1", name="Acme Builders")

        response = await client.get("/sync/links/crm_company_vendor")

        assert response.status_code == 200
        body = response.json()
        assert body["rule"] == "crm_company_vendor"
        assert (body["total_links"], body["total_source"], body["total_target"]) == (0, 1, 1)

    async def test_bulk_dry_run(self, client, store: InMemoryRecordStore) -> None:
        store.seed(EntityType.COMPANY, "c1", system="hubspot", name="NewCo", domain="newco.io")
        writes_before = store.writes

        response = await client.post("/sync/links/crm_company_vendor", params={"dry_run": "true"})

        assert response.status_code == 200
        body = response.json()
        assert body["dry_run"] is True
        assert body["created"] == 1
        assert store.writes == writes_before

    async def test_unmatched(self, client, store: InMemoryRecordStore) -> None:
        store.seed(EntityType.COMPANY, "c1", system="hubspot", name="Acme Builders")
        store.seed(EntityType.VENDOR, "v1", name="Zenith Electric")

        response = await client.get("/sync/links/crm_company_vendor/unmatched")

        assert response.status_code == 200
        body = response.json()
        assert [r["remote_id"] for r in body["source"]] == ["c1"]
        assert [r["remote_id"] for r in body["target"]] == ["v1"]

    async def test_manual_link_get_and_unlink(self, client, store: InMemoryRecordStore) -> None:
        store.seed(EntityType.COMPANY, "c1", system="hubspot", name="Acme Builders")
        store.seed(EntityType.VENDOR, "v1", name="Acme Construction Group")

        created = await client.put("/sync/links/crm_company_vendor/c1", json={"target_remote_id": "v1"})
        fetched = await client.get("/sync/links/crm_company_vendor/c1")
        removed = await client.delete("/sync/links/crm_company_vendor/c1")
        missing = await client.get("/sync/links/crm_company_vendor/c1")
        removed_again = await client.delete("/sync/links/crm_company_vendor/c1")

        assert created.status_code == 200
        assert created.json()["match_reasons"] == ["manual"]
        assert fetched.status_code == 200
        assert fetched.json()["target_remote_id"] == "v1"
        assert removed.status_code == 204
        assert missing.status_code == 404
        assert removed_again.status_code == 404

    async def test_manual_link_unknown_target(self, client, store: InMemoryRecordStore) -> None:
        store.seed(EntityType.COMPANY, "c1", system="hubspot", name="Acme Builders")

        response = await client.put("/sync/links/crm_company_vendor/c1", json={"target_remote_id": "nope"})

        assert response.status_code == 404

    async def test_manual_link_conflict(self, client, store: InMemoryRecordStore) -> None:
        store.seed(EntityType.COMPANY, "c1", system="hubspot", name="Acme Builders")
        store.seed(EntityType.VENDOR, "v1", name="Acme Construction Group")
        store.seed(EntityType.VENDOR, "v2", name="Other Vendor")
        await client.put("/sync/links/crm_company_vendor/c1", json={"target_remote_id": "v1"})

        response = await client.put("/sync/links/crm_company_vendor/c1", json={"target_remote_id": "v2"})

        assert response.status_code == 409


async def test_missing_services_503() -> None:
    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        response = await ac.get("/sync/jobs")

    assert response.status_code == 503
