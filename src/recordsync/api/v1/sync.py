"""Sync control endpoints.

Provides:
- GET  /sync/jobs                                -- state of every scheduled job
- POST /sync/jobs/{name}/run                     -- run a job now
- PUT  /sync/automation/{key}                    -- enable/disable a job or automation
- GET  /sync/links/{rule}                        -- link coverage overview
- POST /sync/links/{rule}                        -- bulk link run (``?dry_run=true`` writes nothing)
- GET  /sync/links/{rule}/unmatched              -- mirrors no link references
- GET  /sync/links/{rule}/{remote_id}            -- current link of one source record
- PUT  /sync/links/{rule}/{remote_id}            -- link one source record to a chosen target
- DELETE /sync/links/{rule}/{remote_id}          -- remove a link
- GET  /sync/links/{rule}/{remote_id}/preview    -- dry-run match for one source record
- POST /sync/links/{rule}/{remote_id}            -- link one source record now

Services are read from app.state; a missing service answers 503.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, HTTPException, Request, Response, status
from pydantic import BaseModel

from src.recordsync.errors import AuthExpiredError, LinkConflictError, NotFoundError
from src.recordsync.records.schemas import (
    AutomationConfig,
    BulkLinkResult,
    Link,
    LinkOverview,
    LinkResult,
    MatchPreview,
    UnmatchedRecords,
)
from src.recordsync.scheduler.jobs import JobOutcome, JobState

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"])


# ── Request/Response Models ─────────────────────────────────────────────────


class AutomationUpdate(BaseModel):
    enabled: bool
    settings: dict[str, Any] = {}


class ManualLinkRequest(BaseModel):
    target_remote_id: str


class JobRunResponse(BaseModel):
    job: str
    outcome: JobOutcome
    state: JobState


# ── Helpers ─────────────────────────────────────────────────────────────────


def _get_state_service(request: Request, name: str, label: str) -> Any:
    """Retrieve a service from app.state, 503 if not available."""
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} not initialized",
        )
    return service


def _get_linker(request: Request, rule: str) -> Any:
    linkers = _get_state_service(request, "linkers", "Cross-system linking")
    linker = linkers.get(rule)
    if linker is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown link rule '{rule}'")
    return linker


# ── Jobs ────────────────────────────────────────────────────────────────────


@router.get("/jobs", response_model=list[JobState])
async def list_jobs(request: Request) -> list[JobState]:
    scheduler = _get_state_service(request, "sync_scheduler", "Sync scheduler")
    return scheduler.status()


@router.post("/jobs/{name}/run", response_model=JobRunResponse)
async def run_job(name: str, request: Request) -> JobRunResponse:
    """Run a job immediately. A job already running is skipped, not queued."""
    scheduler = _get_state_service(request, "sync_scheduler", "Sync scheduler")
    try:
        job = scheduler.get(name)
    except NotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    outcome = await job.run()
    logger.info("sync_api.job_run", job=name, outcome=outcome.value)
    return JobRunResponse(job=name, outcome=outcome, state=job.state)


@router.put("/automation/{key}", response_model=AutomationConfig)
async def set_automation(key: str, body: AutomationUpdate, request: Request) -> AutomationConfig:
    store = _get_state_service(request, "record_store", "Record store")
    return await store.set_automation_config(key, {**body.settings, "enabled": body.enabled})


# ── Links ───────────────────────────────────────────────────────────────────


@router.get("/links/{rule}/{remote_id}/preview", response_model=MatchPreview)
async def preview_link(rule: str, remote_id: str, request: Request) -> MatchPreview:
    """Show what linking a source record would do, without writing anything."""
    linker = _get_linker(request, rule)
    preview = await linker.preview(remote_id)
    if preview is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Source record '{remote_id}' not found",
        )
    return preview


@router.post("/links/{rule}/{remote_id}", response_model=LinkResult)
async def link_record(rule: str, remote_id: str, request: Request) -> LinkResult:
    linker = _get_linker(request, rule)
    try:
        return await linker.link_by_remote_id(remote_id)
    except AuthExpiredError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc


@router.get("/links/{rule}", response_model=LinkOverview)
async def link_overview(rule: str, request: Request) -> LinkOverview:
    linker = _get_linker(request, rule)
    return await linker.overview()


@router.post("/links/{rule}", response_model=BulkLinkResult)
async def link_all(rule: str, request: Request, dry_run: bool = False) -> BulkLinkResult:
    """Link every mirrored source record. A dry run reports outcomes without writing."""
    linker = _get_linker(request, rule)
    try:
        result = await linker.link_all(dry_run=dry_run)
    except AuthExpiredError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    logger.info("sync_api.link_all", rule=rule, dry_run=dry_run, total=result.total)
    return result


@router.get("/links/{rule}/unmatched", response_model=UnmatchedRecords)
async def list_unmatched(rule: str, request: Request) -> UnmatchedRecords:
    linker = _get_linker(request, rule)
    return await linker.unmatched()


@router.get("/links/{rule}/{remote_id}", response_model=Link)
async def get_link(rule: str, remote_id: str, request: Request) -> Link:
    linker = _get_linker(request, rule)
    link = await linker.get_link(remote_id)
    if link is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Source record '{remote_id}' is not linked",
        )
    return link


@router.put("/links/{rule}/{remote_id}", response_model=Link)
async def manual_link(rule: str, remote_id: str, body: ManualLinkRequest, request: Request) -> Link:
    """Link a source record to an operator-chosen target record."""
    linker = _get_linker(request, rule)
    try:
        return await linker.manual_link(remote_id, body.target_remote_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except LinkConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc


@router.delete("/links/{rule}/{remote_id}", status_code=status.HTTP_204_NO_CONTENT)
async def unlink(rule: str, remote_id: str, request: Request) -> Response:
    linker = _get_linker(request, rule)
    if not await linker.unlink(remote_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Source record '{remote_id}' is not linked",
        )
    return Response(status_code=status.HTTP_204_NO_CONTENT)
