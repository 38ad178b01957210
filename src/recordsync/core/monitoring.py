"""Prometheus metrics, Sentry integration, and sync counters.

Provides:
- MetricsMiddleware: ASGI middleware for HTTP request metrics
- init_sentry(): Initialize Sentry with a before_send that scrubs credentials
- record_sync_pass() / record_link_result() / record_webhook() /
  record_job_run() / record_job_disabled(): counters for the engine
- get_metrics_response(): FastAPI route handler body for /metrics
"""

from __future__ import annotations

import time

import sentry_sdk
from prometheus_client import (
    REGISTRY,
    Counter,
    Histogram,
    generate_latest,
)
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from src.recordsync.records.schemas import LinkResult, SyncPassResult

# ── HTTP Metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── Sync Metrics ─────────────────────────────────────────────────────────────

sync_passes_total = Counter(
    "sync_passes_total",
    "Refresh passes by entity type and result",
    ["entity_type", "status"],
)

sync_records_total = Counter(
    "sync_records_total",
    "Records mirrored by refresh passes",
    ["entity_type", "outcome"],
)

sync_changes_total = Counter(
    "sync_changes_total",
    "Change events written by refresh passes",
    ["entity_type"],
)

sync_record_errors_total = Counter(
    "sync_record_errors_total",
    "Per-record failures during refresh passes",
    ["entity_type"],
)

sync_pass_duration_seconds = Histogram(
    "sync_pass_duration_seconds",
    "Refresh pass duration in seconds",
    ["entity_type"],
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 300.0),
)

link_results_total = Counter(
    "link_results_total",
    "Cross-system link outcomes by rule",
    ["rule", "outcome"],
)

webhook_events_total = Counter(
    "webhook_events_total",
    "Webhook deliveries by source and outcome",
    ["source", "outcome"],
)

sync_job_runs_total = Counter(
    "sync_job_runs_total",
    "Scheduled job invocations by outcome",
    ["job", "outcome"],
)

sync_job_auth_disables_total = Counter(
    "sync_job_auth_disables_total",
    "Jobs that disabled themselves after remote credentials expired",
    ["job"],
)


# ── Metrics Middleware ───────────────────────────────────────────────────────


class MetricsMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that records Prometheus metrics for every HTTP request.

    Uses the matched route pattern as the endpoint label so path parameters
    (remote ids, rule names) do not explode label cardinality. Skips the
    /metrics endpoint itself.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        start_time = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start_time

        route = request.scope.get("route")
        endpoint = getattr(route, "path", None) or "unmatched"

        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=str(response.status_code),
        ).inc()

        http_request_duration_seconds.labels(
            method=request.method,
            endpoint=endpoint,
        ).observe(duration)

        return response


# ── Engine Counters ─────────────────────────────────────────────────────────


def _pass_status(result: SyncPassResult) -> str:
    if result.auth_expired:
        return "auth_expired"
    if result.aborted:
        return "aborted"
    if result.errors:
        return "partial"
    return "success"


def record_sync_pass(result: SyncPassResult) -> None:
    """Count one finished refresh pass (full or single-record)."""
    entity_type = result.entity_type.value
    counters = result.counters

    sync_passes_total.labels(entity_type=entity_type, status=_pass_status(result)).inc()
    sync_pass_duration_seconds.labels(entity_type=entity_type).observe(result.duration_ms / 1000)

    for outcome, value in (
        ("synced", counters.synced),
        ("created", counters.created),
        ("updated", counters.updated),
    ):
        if value:
            sync_records_total.labels(entity_type=entity_type, outcome=outcome).inc(value)
    if counters.changes:
        sync_changes_total.labels(entity_type=entity_type).inc(counters.changes)
    if result.errors and not result.aborted:
        sync_record_errors_total.labels(entity_type=entity_type).inc(len(result.errors))


def record_link_result(rule: str, result: LinkResult) -> None:
    link_results_total.labels(rule=rule, outcome=result.outcome.value).inc()


def record_webhook(source: str, outcome: str) -> None:
    """Count one webhook delivery: processed, duplicate, unhandled or failed."""
    webhook_events_total.labels(source=source, outcome=outcome).inc()


def record_job_run(job: str, outcome: str) -> None:
    sync_job_runs_total.labels(job=job, outcome=outcome).inc()


def record_job_disabled(job: str) -> None:
    sync_job_auth_disables_total.labels(job=job).inc()


# ── Sentry Integration ───────────────────────────────────────────────────────

_SCRUBBED_HEADERS = {"authorization", "x-webhook-token"}


def scrub_credentials(event: dict, hint: dict) -> dict:
    """Sentry before_send: drop bearer tokens and the webhook secret from request data."""
    headers = (event.get("request") or {}).get("headers")
    if isinstance(headers, dict):
        for name in list(headers):
            if name.lower() in _SCRUBBED_HEADERS:
                headers[name] = "[Filtered]"
    return event


def init_sentry(dsn: str, environment: str) -> None:
    """Initialize Sentry SDK for the API and the scheduled jobs.

    Args:
        dsn: Sentry DSN string.
        environment: Deployment environment (development, staging, production).
    """
    traces_sample_rate = 0.1 if environment == "production" else 1.0

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        traces_sample_rate=traces_sample_rate,
        integrations=[
            StarletteIntegration(),
            FastApiIntegration(),
        ],
        before_send=scrub_credentials,
    )


# ── Metrics Endpoint ─────────────────────────────────────────────────────────


def get_metrics_response() -> Response:
    """Generate Prometheus exposition format response."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
