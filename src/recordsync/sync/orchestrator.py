"""Refresh-path sync orchestrator.

Pulls every record of an entity type from its remote collection and mirrors
it locally, writing field-level change history for audit. One orchestrator
serves all entity types; per-type behavior comes from EntitySyncSpec.

Per remote record: map -> lookup -> diff tracked fields -> full-overwrite
upsert together with its change events -> accumulate counters. The mirror
and its history are written in one store transaction, so a record whose
history cannot be written keeps its previous mirror and is diffed again on
the next pass. A failing record contributes nothing to the counters. Per-record failures are collected and never stop the
batch; a failing fetch aborts the pass with a single error. Expired
credentials abort the pass and are flagged on the result so the owning job
can disable itself.
"""

from __future__ import annotations

import time
from collections.abc import Sequence
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog

from src.recordsync.core.monitoring import record_sync_pass
from src.recordsync.errors import AuthExpiredError
from src.recordsync.records.audit import AuditTrail
from src.recordsync.records.schemas import (
    AuditStatus,
    SyncCounters,
    SyncPassResult,
    SyncRunResult,
)
from src.recordsync.records.store import RecordStore
from src.recordsync.sync.changes import build_change_events
from src.recordsync.sync.specs import EntitySyncSpec

logger = structlog.get_logger(__name__)

DEFAULT_CHANGE_RETENTION_DAYS = 14


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


class SyncOrchestrator:
    """Runs refresh passes against a record store.

    Args:
        store: Record store receiving mirrors and change history.
    """

    def __init__(self, store: RecordStore) -> None:
        self._store = store

    # ── Single record ───────────────────────────────────────────────────────

    async def _sync_record(self, spec: EntitySyncSpec, raw: dict[str, Any]) -> SyncCounters:
        """Mirror one raw record; return its counters once everything is written."""
        record = spec.map_remote(raw)
        existing = await self._store.find_by_remote_id(spec.entity_type, record.remote_id)

        events = build_change_events(
            spec.entity_type,
            record.remote_id,
            existing.fields if existing is not None else None,
            record.fields,
            spec.tracked_fields,
            snapshot=record.raw_properties,
        )

        await self._store.upsert_with_changes(record, events)

        return SyncCounters(
            synced=1,
            created=1 if existing is None else 0,
            updated=1 if existing is not None and events else 0,
            changes=len(events),
        )

    # ── Passes ──────────────────────────────────────────────────────────────

    async def run_pass(self, spec: EntitySyncSpec) -> SyncPassResult:
        """Refresh every record of one entity type.

        Args:
            spec: Entity type strategy (remote collection, mapping, tracked fields).

        Returns:
            SyncPassResult with counters, per-record errors and the auth-expired flag.
        """
        start = time.monotonic()
        result = SyncPassResult(entity_type=spec.entity_type)
        log = logger.bind(entity_type=spec.entity_type.value, source=spec.source_system)

        try:
            raw_records = await spec.fetch_pages()
        except AuthExpiredError as exc:
            result.auth_expired = True
            result.aborted = True
            result.errors.append(f"Fetch {spec.entity_type.value} failed: {exc}")
            result.duration_ms = _elapsed_ms(start)
            log.warning("sync.auth_expired", phase="fetch", error=str(exc))
            record_sync_pass(result)
            return result
        except Exception as exc:
            result.aborted = True
            result.errors.append(f"Fetch {spec.entity_type.value} failed: {exc}")
            result.duration_ms = _elapsed_ms(start)
            log.error("sync.fetch_failed", error=str(exc))
            record_sync_pass(result)
            return result

        for raw in raw_records:
            remote_id = spec.remote_id_of(raw)
            try:
                counters = await self._sync_record(spec, raw)
            except AuthExpiredError as exc:
                result.auth_expired = True
                result.aborted = True
                result.errors.append(f"Sync {spec.entity_type.value} {remote_id} failed: {exc}")
                log.warning("sync.auth_expired", phase="record", remote_id=remote_id, error=str(exc))
                break
            except Exception as exc:
                result.errors.append(f"Sync {spec.entity_type.value} {remote_id} failed: {exc}")
                log.error("sync.record_failed", remote_id=remote_id, error=str(exc))
                continue
            result.counters.add(counters)

        result.duration_ms = _elapsed_ms(start)
        log.info(
            "sync.pass_complete",
            fetched=len(raw_records),
            synced=result.counters.synced,
            created=result.counters.created,
            updated=result.counters.updated,
            changes=result.counters.changes,
            errors=len(result.errors),
            duration_ms=result.duration_ms,
        )
        record_sync_pass(result)
        return result

    async def refresh_one(self, spec: EntitySyncSpec, remote_id: str) -> SyncPassResult:
        """Refresh a single record, e.g. after a webhook reported it changed.

        A record the remote no longer has is reported as an error on the
        result; the local mirror is left untouched.
        """
        start = time.monotonic()
        result = SyncPassResult(entity_type=spec.entity_type)
        try:
            raw = await spec.fetch_one(remote_id)
            if raw is None:
                result.errors.append(f"{spec.entity_type.value} {remote_id} not found in {spec.source_system}")
            else:
                result.counters.add(await self._sync_record(spec, raw))
        except AuthExpiredError as exc:
            result.auth_expired = True
            result.aborted = True
            result.errors.append(f"Sync {spec.entity_type.value} {remote_id} failed: {exc}")
        except Exception as exc:
            result.errors.append(f"Sync {spec.entity_type.value} {remote_id} failed: {exc}")
            logger.error(
                "sync.refresh_failed",
                entity_type=spec.entity_type.value,
                remote_id=remote_id,
                error=str(exc),
            )
        result.duration_ms = _elapsed_ms(start)
        record_sync_pass(result)
        return result

    async def purge_history(
        self,
        specs: Sequence[EntitySyncSpec],
        older_than_days: int = DEFAULT_CHANGE_RETENTION_DAYS,
    ) -> int:
        """Delete change history older than the retention window for the given entity types."""
        cutoff = datetime.now(timezone.utc) - timedelta(days=older_than_days)
        purged = 0
        for entity_type in dict.fromkeys(spec.entity_type for spec in specs):
            purged += await self._store.purge_changes_older_than(cutoff, entity_type)
        return purged

    async def run_passes(
        self,
        specs: Sequence[EntitySyncSpec],
        purge_after_days: int | None = DEFAULT_CHANGE_RETENTION_DAYS,
    ) -> SyncRunResult:
        """Run several passes sequentially, then purge old history.

        Stops early when a pass reports expired credentials; the remaining
        passes would fail the same way.

        Args:
            specs: Passes to run, in order.
            purge_after_days: Retention window for change history; None skips the purge.

        Returns:
            SyncRunResult with every pass result and the number of purged events.
        """
        start = time.monotonic()
        run = SyncRunResult()

        for spec in specs:
            pass_result = await self.run_pass(spec)
            run.passes.append(pass_result)
            if pass_result.auth_expired:
                logger.warning("sync.run_stopped_auth_expired", entity_type=spec.entity_type.value)
                break

        if purge_after_days is not None and not run.auth_expired:
            run.purged_changes = await self.purge_history(specs, purge_after_days)

        run.duration_ms = _elapsed_ms(start)

        if specs:
            totals = run.totals
            audit = AuditTrail(self._store, specs[0].source_system)
            await audit.record(
                "sync_completed",
                entity_type=",".join(p.entity_type.value for p in run.passes),
                entity_id=None,
                status=AuditStatus.ERROR if run.errors else AuditStatus.SUCCESS,
                details={
                    **totals.model_dump(),
                    "errors": run.errors[:20],
                    "purged_changes": run.purged_changes,
                    "auth_expired": run.auth_expired,
                },
                error_message=run.errors[0] if run.errors else None,
                duration_ms=run.duration_ms,
            )

        logger.info(
            "sync.run_complete",
            passes=len(run.passes),
            purged_changes=run.purged_changes,
            errors=len(run.errors),
            duration_ms=run.duration_ms,
        )
        return run
