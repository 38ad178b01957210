"""Service wiring -- builds the sync engine from settings and a record store.

Creates the idempotency guard, webhook processor, orchestrator, linkers and
scheduled jobs. Remote systems are wired only when their credentials are
configured; without them the service still accepts, de-duplicates and
audits webhooks.

Jobs (each gated by the automation config key of the same name):
- crm_sync: refresh CRM companies, contacts and deals, then purge old history
- pm_sync: refresh project-management vendors, projects and users
- crm_vendor_auto_link: bulk-link CRM companies and contacts into vendors
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

import structlog

from src.recordsync.config import Settings, get_settings
from src.recordsync.matching.resolver import CandidateResolver
from src.recordsync.records.schemas import EntityType
from src.recordsync.records.store import RecordStore
from src.recordsync.scheduler.jobs import SyncJob, SyncScheduler
from src.recordsync.sources.http import HttpRemoteSource
from src.recordsync.sync.field_mapping import CRM_COMPANY_MAP, CRM_CONTACT_MAP, CRM_DEAL_MAP
from src.recordsync.sync.idempotency import IdempotencyGuard
from src.recordsync.sync.linking import CrossSystemLinker
from src.recordsync.sync.orchestrator import SyncOrchestrator
from src.recordsync.sync.specs import (
    COMPANY_TO_VENDOR,
    CONTACT_TO_VENDOR,
    EntitySyncSpec,
    crm_specs,
    project_management_specs,
)
from src.recordsync.webhooks.processor import (
    WebhookProcessor,
    make_link_handler,
    make_refresh_handler,
)

logger = structlog.get_logger(__name__)

CRM_SYSTEM = "hubspot"
PM_SYSTEM = "procore"


@dataclass
class SyncServices:
    """Everything the HTTP layer and the scheduler need."""

    store: RecordStore
    guard: IdempotencyGuard
    processor: WebhookProcessor
    orchestrator: SyncOrchestrator
    scheduler: SyncScheduler
    linkers: dict[str, CrossSystemLinker] = field(default_factory=dict)
    specs: dict[str, list[EntitySyncSpec]] = field(default_factory=dict)


def _static_token(token: str):
    async def provider() -> str:
        return token

    return provider


def build_crm_sources(settings: Settings) -> tuple[HttpRemoteSource, HttpRemoteSource, HttpRemoteSource]:
    """Company, contact and deal collections of the CRM."""

    def source(object_type: str, property_map: dict[str, str]) -> HttpRemoteSource:
        return HttpRemoteSource(
            system=CRM_SYSTEM,
            base_url=settings.CRM_BASE_URL,
            resource_path=f"/crm/v3/objects/{object_type}",
            token_provider=_static_token(settings.CRM_ACCESS_TOKEN),
            pagination="cursor",
            items_key="results",
            envelope="properties",
            page_size=settings.HTTP_PAGE_SIZE,
            timeout=settings.HTTP_TIMEOUT,
            query={"properties": ",".join(property_map.values())},
        )

    return (
        source("companies", CRM_COMPANY_MAP),
        source("contacts", CRM_CONTACT_MAP),
        source("deals", CRM_DEAL_MAP),
    )


def build_pm_sources(settings: Settings) -> tuple[HttpRemoteSource, HttpRemoteSource, HttpRemoteSource]:
    """Vendor, project and user collections of the project-management system."""
    company_id = settings.PM_COMPANY_ID

    def source(collection: str, envelope: str) -> HttpRemoteSource:
        return HttpRemoteSource(
            system=PM_SYSTEM,
            base_url=settings.PM_BASE_URL,
            resource_path=f"/rest/v1.0/companies/{company_id}/{collection}",
            token_provider=_static_token(settings.PM_ACCESS_TOKEN),
            pagination="page",
            envelope=envelope,
            page_size=settings.HTTP_PAGE_SIZE,
            timeout=settings.HTTP_TIMEOUT,
            headers={"Procore-Company-Id": company_id},
        )

    return source("vendors", "vendor"), source("projects", "project"), source("users", "user")


def build_services(store: RecordStore, settings: Settings | None = None) -> SyncServices:
    """Wire the sync engine for the configured remote systems."""
    settings = settings or get_settings()

    guard = IdempotencyGuard(store, default_ttl=timedelta(days=settings.IDEMPOTENCY_TTL_DAYS))
    services = SyncServices(
        store=store,
        guard=guard,
        processor=WebhookProcessor(store, guard),
        orchestrator=SyncOrchestrator(store),
        scheduler=SyncScheduler(),
    )
    orchestrator = services.orchestrator
    processor = services.processor
    retention = settings.CHANGE_RETENTION_DAYS

    crm: list[EntitySyncSpec] = []
    pm: list[EntitySyncSpec] = []

    if settings.CRM_ACCESS_TOKEN:
        crm = crm_specs(*build_crm_sources(settings))
        services.specs[CRM_SYSTEM] = crm

        async def run_crm_sync() -> Any:
            return await orchestrator.run_passes(crm, purge_after_days=retention)

        services.scheduler.register(
            SyncJob("crm_sync", run_crm_sync, store, "crm_sync", settings.POLL_INTERVAL_SECONDS)
        )
        for spec in crm:
            processor.register(CRM_SYSTEM, spec.entity_type.value, make_refresh_handler(orchestrator, spec))

    if settings.PM_ACCESS_TOKEN and settings.PM_COMPANY_ID:
        pm = project_management_specs(*build_pm_sources(settings))
        services.specs[PM_SYSTEM] = pm

        async def run_pm_sync() -> Any:
            return await orchestrator.run_passes(pm, purge_after_days=retention)

        services.scheduler.register(
            SyncJob("pm_sync", run_pm_sync, store, "pm_sync", settings.POLL_INTERVAL_SECONDS)
        )
        for spec in pm:
            handler = make_refresh_handler(orchestrator, spec)
            # Procore resource names are plural ("Vendors")
            processor.register(PM_SYSTEM, spec.entity_type.value, handler)
            processor.register(PM_SYSTEM, f"{spec.entity_type.value}s", handler)

    if crm and pm:
        vendor_spec = next(s for s in pm if s.entity_type == EntityType.VENDOR)
        source_specs = {s.entity_type: s for s in crm}
        for rule in (COMPANY_TO_VENDOR, CONTACT_TO_VENDOR):
            resolver = CandidateResolver(
                store,
                rule.target_entity_type,
                match_threshold=settings.MATCH_THRESHOLD,
                search_limit=settings.CANDIDATE_SEARCH_LIMIT,
                fallback_scan_limit=settings.FALLBACK_SCAN_LIMIT,
            )
            linker = CrossSystemLinker(store, rule, vendor_spec, resolver)
            services.linkers[rule.name] = linker
            processor.register(
                rule.source_system,
                rule.source_entity_type.value,
                make_link_handler(linker, orchestrator, source_specs[rule.source_entity_type]),
            )

        linkers = list(services.linkers.values())

        async def run_bulk_link() -> dict[str, Any]:
            summary: dict[str, Any] = {}
            for linker in linkers:
                bulk = await linker.link_all()
                summary[linker.rule.name] = bulk.model_dump(mode="json", exclude={"results"})
            return summary

        services.scheduler.register(
            SyncJob(
                COMPANY_TO_VENDOR.config_key,
                run_bulk_link,
                store,
                COMPANY_TO_VENDOR.config_key,
                settings.POLL_INTERVAL_SECONDS,
            )
        )

    logger.info(
        "services.built",
        systems=sorted(services.specs),
        linkers=sorted(services.linkers),
        jobs=[s.name for s in services.scheduler.status()],
    )
    return services
