"""Tests for Prometheus counters, the /metrics endpoint and Sentry setup.

Counters live in the global prometheus_client REGISTRY, so assertions
compare sample values before and after the action under test.

Covers:
    - refresh passes count records, changes and per-record errors by entity type
    - link outcomes, webhook duplicates, job outcomes and auth self-disables
    - GET /metrics serves the exposition format; HTTP requests are labelled
      by route pattern
    - init_sentry wires the FastAPI integrations; credentials are scrubbed
"""

from __future__ import annotations

from unittest.mock import patch

from httpx import ASGITransport, AsyncClient
from prometheus_client import REGISTRY

from src.recordsync.core.monitoring import (
    init_sentry,
    record_link_result,
    record_sync_pass,
    scrub_credentials,
)
from src.recordsync.errors import AuthExpiredError
from src.recordsync.main import create_app
from src.recordsync.records.schemas import (
    EntityType,
    LinkOutcome,
    LinkResult,
    SyncCounters,
    SyncPassResult,
)
from src.recordsync.scheduler.jobs import SyncJob
from src.recordsync.sync.field_mapping import CRM_COMPANY_MAP
from src.recordsync.sync.idempotency import IdempotencyGuard
from src.recordsync.sync.orchestrator import SyncOrchestrator
from src.recordsync.sync.specs import EntitySyncSpec
from src.recordsync.webhooks.processor import WebhookProcessor
from tests.fakes import FakeRemoteSource


def _sample(name: str, **labels: str) -> float:
    return REGISTRY.get_sample_value(name, labels) or 0.0


# ── Engine Counters ─────────────────────────────────────────────────────────


class TestSyncCounters:
    def test_record_sync_pass(self) -> None:
        before_created = _sample("sync_records_total", entity_type="deal", outcome="created")
        before_changes = _sample("sync_changes_total", entity_type="deal")
        before_partial = _sample("sync_passes_total", entity_type="deal", status="partial")
        before_errors = _sample("sync_record_errors_total", entity_type="deal")

        record_sync_pass(
            SyncPassResult(
                entity_type=EntityType.DEAL,
                counters=SyncCounters(synced=3, created=2, updated=1, changes=4),
                errors=["Sync deal 9 failed: boom"],
                duration_ms=120,
            )
        )

        assert _sample("sync_records_total", entity_type="deal", outcome="created") == before_created + 2
        assert _sample("sync_changes_total", entity_type="deal") == before_changes + 4
        assert _sample("sync_passes_total", entity_type="deal", status="partial") == before_partial + 1
        assert _sample("sync_record_errors_total", entity_type="deal") == before_errors + 1

    def test_auth_expired_pass_status(self) -> None:
        before = _sample("sync_passes_total", entity_type="user", status="auth_expired")

        record_sync_pass(SyncPassResult(entity_type=EntityType.USER, auth_expired=True, aborted=True))

        assert _sample("sync_passes_total", entity_type="user", status="auth_expired") == before + 1

    async def test_run_pass_is_counted(self, store) -> None:
        source = FakeRemoteSource("hubspot", pages=[[{"id": "1", "properties": {"name": "Acme"}}]])
        spec = EntitySyncSpec(EntityType.COMPANY, source, CRM_COMPANY_MAP, properties_key="properties")
        before = _sample("sync_records_total", entity_type="company", outcome="synced")

        await SyncOrchestrator(store).run_pass(spec)

        assert _sample("sync_records_total", entity_type="company", outcome="synced") == before + 1

    def test_link_result(self) -> None:
        before = _sample("link_results_total", rule="test_rule", outcome="created")

        record_link_result("test_rule", LinkResult(outcome=LinkOutcome.CREATED, source_remote_id="c1"))

        assert _sample("link_results_total", rule="test_rule", outcome="created") == before + 1

    async def test_webhook_duplicate_counted(self, store) -> None:
        processor = WebhookProcessor(store, IdempotencyGuard(store))
        payload = {"objectId": 7, "subscriptionType": "company.creation", "eventId": 70}
        before_unhandled = _sample("webhook_events_total", source="metrics_src", outcome="unhandled")
        before_duplicate = _sample("webhook_events_total", source="metrics_src", outcome="duplicate")

        await processor.process("metrics_src", payload)
        await processor.process("metrics_src", payload)

        assert _sample("webhook_events_total", source="metrics_src", outcome="unhandled") == before_unhandled + 1
        assert _sample("webhook_events_total", source="metrics_src", outcome="duplicate") == before_duplicate + 1


class TestJobCounters:
    async def test_disabled_run_counted(self, store) -> None:
        async def runner() -> None:
            return None

        job = SyncJob("metrics_disabled_job", runner, store, "metrics_disabled_job")
        before = _sample("sync_job_runs_total", job="metrics_disabled_job", outcome="skipped_disabled")

        await job.run()

        assert _sample("sync_job_runs_total", job="metrics_disabled_job", outcome="skipped_disabled") == before + 1

    async def test_auth_disable_counted(self, store) -> None:
        async def runner() -> None:
            raise AuthExpiredError()

        await store.set_automation_config("metrics_auth_job", {"enabled": True})
        job = SyncJob("metrics_auth_job", runner, store, "metrics_auth_job")
        before = _sample("sync_job_auth_disables_total", job="metrics_auth_job")

        await job.run()

        assert _sample("sync_job_auth_disables_total", job="metrics_auth_job") == before + 1
        assert _sample("sync_job_runs_total", job="metrics_auth_job", outcome="auth_expired") >= 1


# ── Metrics Endpoint ────────────────────────────────────────────────────────


class TestMetricsEndpoint:
    async def test_exposition_and_route_labels(self) -> None:
        app = create_app()
        transport = ASGITransport(app=app)
        before = _sample(
            "http_requests_total", method="GET", endpoint="/sync/jobs", status_code="503"
        )

        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            await ac.get("/sync/jobs")
            response = await ac.get("/metrics")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert "sync_passes_total" in response.text
        assert (
            _sample("http_requests_total", method="GET", endpoint="/sync/jobs", status_code="503")
            == before + 1
        )


# ── Sentry ──────────────────────────────────────────────────────────────────


class TestSentry:
    def test_init_sentry(self) -> None:
        with patch("src.recordsync.core.monitoring.sentry_sdk.init") as sentry_init:
            init_sentry(dsn="https://key@sentry.example.com/1", environment="production")

        kwargs = sentry_init.call_args.kwargs
        assert kwargs["environment"] == "production"
        assert kwargs["traces_sample_rate"] == 0.1
        assert kwargs["before_send"] is scrub_credentials
        assert len(kwargs["integrations"]) == 2

    def test_scrub_credentials(self) -> None:
        event = {
            "request": {
                "headers": {
                    "Authorization": "Bearer abc",
                    "X-Webhook-Token": "s3cret",
                    "Content-Type": "application/json",
                }
            }
        }

        scrubbed = scrub_credentials(event, {})

        headers = scrubbed["request"]["headers"]
        assert headers["Authorization"] == "[Filtered]"
        assert headers["X-Webhook-Token"] == "[Filtered]"
        assert headers["Content-Type"] == "application/json"

    def test_scrub_without_request(self) -> None:
        assert scrub_credentials({"message": "boom"}, {}) == {"message": "boom"}
