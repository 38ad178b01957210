"""Cross-system link path: push mirrored records of one system into another.

For a source record (e.g. a CRM company) the linker resolves the best
counterpart in the target system's mirrors and then:
- matched, with empty target fields to fill -> PATCH the target, refresh its
  mirror, save the link (``updated``)
- matched, nothing to fill -> save the link only (``matched_no_updates_needed``)
- no match -> create the record in the target when the required fields are
  present (``created``), else ``skipped_missing_required_field``

Every automatic link call first reads the rule's automation flag; a rule
that was never configured is disabled. Each branch writes an audit entry
except the disabled branch. Expired target credentials propagate as
AuthExpiredError so the calling job can disable itself; every other failure
becomes an ``error`` result.

Link management sits beside the link path: operators can link two mirrors
by hand, remove a link, list mirrors no link references and get a coverage
overview. Bulk runs support a dry run that resolves every record but writes
nothing.
"""

from __future__ import annotations

import time
from collections.abc import AsyncIterator
from datetime import datetime, timezone
from typing import Any

import structlog

from src.recordsync.core.monitoring import record_link_result
from src.recordsync.errors import AuthExpiredError, LinkConflictError, NotFoundError
from src.recordsync.matching.resolver import CandidateResolver
from src.recordsync.records.audit import AuditTrail
from src.recordsync.records.schemas import (
    AuditStatus,
    BulkLinkResult,
    CanonicalRecord,
    EntityType,
    Link,
    LinkOutcome,
    LinkOverview,
    LinkResult,
    MatchCandidate,
    MatchPreview,
    UnmatchedRecords,
)
from src.recordsync.records.store import RecordStore
from src.recordsync.sync.changes import build_change_events
from src.recordsync.sync.merge import is_empty, non_destructive_merge
from src.recordsync.sync.specs import EntitySyncSpec, LinkRule

logger = structlog.get_logger(__name__)

BULK_PAGE_SIZE = 500
LINK_PAGE_SIZE = 1000
RECENT_LINKS = 20
MANUAL_MATCH_REASON = "manual"

_SKIPPED = {
    LinkOutcome.MATCHED_NO_UPDATES_NEEDED,
    LinkOutcome.SKIPPED_MISSING_REQUIRED_FIELD,
    LinkOutcome.SKIPPED_AUTOMATION_DISABLED,
    LinkOutcome.NOT_FOUND,
}


class CrossSystemLinker:
    """Links source mirrors into a target system according to a LinkRule.

    Args:
        store: Record store holding both systems' mirrors, links and audit log.
        rule: Which records go where, and how fields and criteria are derived.
        target: Refresh strategy of the target collection; its source performs the
            remote create/update and its mapping turns responses into mirrors.
        resolver: Candidate resolver over the target mirrors. Defaults to a
            resolver with the standard threshold and limits.
    """

    def __init__(
        self,
        store: RecordStore,
        rule: LinkRule,
        target: EntitySyncSpec,
        resolver: CandidateResolver | None = None,
    ) -> None:
        self._store = store
        self._rule = rule
        self._target = target
        self._resolver = resolver or CandidateResolver(store, rule.target_entity_type)
        self._audit = AuditTrail(store, rule.source_system)

    @property
    def rule(self) -> LinkRule:
        return self._rule

    async def is_enabled(self) -> bool:
        """Read the rule's automation flag. Absent config means disabled."""
        config = await self._store.get_automation_config(self._rule.config_key)
        return config is not None and config.enabled

    # ── Entry points ────────────────────────────────────────────────────────

    async def link(self, record: CanonicalRecord) -> LinkResult:
        """Link one source mirror into the target system."""
        if not await self.is_enabled():
            return self._counted(self._disabled(record.remote_id))
        return self._counted(await self._link_guarded(record))

    async def link_by_remote_id(self, remote_id: str) -> LinkResult:
        """Link the source mirror with ``remote_id``; ``not_found`` if it is not mirrored."""
        if not await self.is_enabled():
            return self._counted(self._disabled(remote_id))
        record = await self._store.find_by_remote_id(self._rule.source_entity_type, remote_id)
        if record is None:
            await self._audit_skipped(remote_id, "source_not_found")
            return self._counted(
                LinkResult(
                    outcome=LinkOutcome.NOT_FOUND,
                    source_remote_id=remote_id,
                    reason=f"{self._rule.source_entity_type.value} {remote_id} not found in local mirror",
                )
            )
        return self._counted(await self._link_guarded(record))

    async def link_all(self, dry_run: bool = False) -> BulkLinkResult:
        """Link every mirrored source record, tallying outcomes.

        Args:
            dry_run: Resolve every record and report the outcome linking would
                produce, without remote calls, mirror, link or audit writes.
                The automation flag is not consulted.

        Raises:
            AuthExpiredError: If the target rejects credentials; the run stops.
        """
        bulk = BulkLinkResult(dry_run=dry_run)
        async for record in self._iter_mirrors(self._rule.source_entity_type):
            result = await self._plan(record) if dry_run else await self.link(record)
            bulk.total += 1
            bulk.results.append(result)
            if result.outcome == LinkOutcome.CREATED:
                bulk.created += 1
            elif result.outcome == LinkOutcome.UPDATED:
                bulk.updated += 1
            elif result.outcome in _SKIPPED:
                bulk.skipped += 1
            else:
                bulk.errors += 1

        logger.info(
            "link.bulk_complete",
            rule=self._rule.name,
            dry_run=dry_run,
            total=bulk.total,
            created=bulk.created,
            updated=bulk.updated,
            skipped=bulk.skipped,
            errors=bulk.errors,
        )
        return bulk

    async def preview(self, remote_id: str) -> MatchPreview | None:
        """Dry run: show the criteria, the best match and what linking would do.

        Performs no remote calls and no writes. Returns None when the source
        record is not mirrored.
        """
        record = await self._store.find_by_remote_id(self._rule.source_entity_type, remote_id)
        if record is None:
            return None
        criteria = self._rule.build_criteria(record.fields)
        match = await self._resolver.resolve(criteria)
        would_update: list[str] = []
        if match is not None:
            proposed = self._rule.build_target_fields(record.fields)
            would_update = list(non_destructive_merge(match.record.fields, proposed))
        return MatchPreview(
            source_remote_id=remote_id,
            criteria=criteria,
            match=match,
            would_create=match is None,
            would_update_fields=would_update,
        )

    # ── Link management ─────────────────────────────────────────────────────

    async def get_link(self, remote_id: str) -> Link | None:
        """Current link for a source record, None if it is not linked."""
        return await self._store.find_link(
            self._rule.source_system,
            self._rule.source_entity_type,
            remote_id,
            self._rule.target_system,
        )

    async def manual_link(self, source_remote_id: str, target_remote_id: str) -> Link:
        """Link two mirrors chosen by an operator, bypassing matching.

        Writes only the link and an audit entry; neither remote system is
        touched. Linking a record again to the same target returns the
        existing link.

        Raises:
            NotFoundError: If either record is not mirrored.
            LinkConflictError: If the source is already linked to another target.
        """
        rule = self._rule
        source = await self._store.find_by_remote_id(rule.source_entity_type, source_remote_id)
        if source is None:
            raise NotFoundError(rule.source_entity_type.value, source_remote_id)
        target = await self._store.find_by_remote_id(rule.target_entity_type, target_remote_id)
        if target is None:
            raise NotFoundError(rule.target_entity_type.value, target_remote_id)

        existing = await self.get_link(source_remote_id)
        if existing is not None:
            if existing.target_remote_id == target_remote_id:
                return existing
            raise LinkConflictError(source_remote_id, existing.target_remote_id)

        link = await self._store.upsert_link(
            Link(
                source_system=rule.source_system,
                source_entity_type=rule.source_entity_type,
                source_remote_id=source_remote_id,
                target_system=rule.target_system,
                target_entity_type=rule.target_entity_type,
                target_remote_id=target_remote_id,
                match_reasons=[MANUAL_MATCH_REASON],
            )
        )
        await self._audit.record(
            f"{rule.name}_manual_link",
            rule.source_entity_type.value,
            source_remote_id,
            destination=rule.target_system,
            details={
                "target_id": target_remote_id,
                "source_name": source.fields.get("name"),
                "target_name": target.fields.get("name"),
            },
        )
        logger.info(
            "link.manual_link",
            rule=rule.name,
            source_remote_id=source_remote_id,
            target_remote_id=target_remote_id,
        )
        return link

    async def unlink(self, source_remote_id: str) -> bool:
        """Remove the link for a source record; False if it was not linked.

        Mirrors on both sides are kept, and the next automatic link call
        resolves the record again.
        """
        removed = await self._store.delete_link(
            self._rule.source_system,
            self._rule.source_entity_type,
            source_remote_id,
            self._rule.target_system,
        )
        if removed:
            await self._audit.record(
                f"{self._rule.name}_unlinked",
                self._rule.source_entity_type.value,
                source_remote_id,
                destination=self._rule.target_system,
            )
        return removed

    async def unmatched(self) -> UnmatchedRecords:
        """Mirrors on either side that no link of this rule references."""
        links = await self._all_links()
        linked_source = {link.source_remote_id for link in links}
        linked_target = {link.target_remote_id for link in links}

        unmatched = UnmatchedRecords()
        async for record in self._iter_mirrors(self._rule.source_entity_type):
            if record.remote_id not in linked_source:
                unmatched.source.append(record)
        async for record in self._iter_mirrors(self._rule.target_entity_type):
            if record.remote_id not in linked_target:
                unmatched.target.append(record)
        return unmatched

    async def overview(self) -> LinkOverview:
        """Link coverage for this rule, with the most recently linked records."""
        links = await self._all_links()
        source_ids = {r.remote_id async for r in self._iter_mirrors(self._rule.source_entity_type)}
        target_ids = {r.remote_id async for r in self._iter_mirrors(self._rule.target_entity_type)}

        return LinkOverview(
            rule=self._rule.name,
            total_links=len(links),
            manual_links=sum(1 for link in links if MANUAL_MATCH_REASON in link.match_reasons),
            total_source=len(source_ids),
            total_target=len(target_ids),
            linked_source=len(source_ids & {link.source_remote_id for link in links}),
            linked_target=len(target_ids & {link.target_remote_id for link in links}),
            recent_links=links[:RECENT_LINKS],
        )

    # ── Branches ────────────────────────────────────────────────────────────

    def _disabled(self, remote_id: str) -> LinkResult:
        logger.debug("link.automation_disabled", rule=self._rule.name, remote_id=remote_id)
        return LinkResult(
            outcome=LinkOutcome.SKIPPED_AUTOMATION_DISABLED,
            source_remote_id=remote_id,
            reason=f"automation '{self._rule.config_key}' is disabled",
        )

    async def _link_guarded(self, record: CanonicalRecord) -> LinkResult:
        start = time.monotonic()
        try:
            return await self._link(record, start)
        except AuthExpiredError:
            raise
        except Exception as exc:
            logger.error(
                "link.failed",
                rule=self._rule.name,
                remote_id=record.remote_id,
                error=str(exc),
            )
            await self._audit.record(
                f"{self._rule.name}_error",
                self._rule.source_entity_type.value,
                record.remote_id,
                AuditStatus.ERROR,
                destination=self._rule.target_system,
                error_message=str(exc),
                duration_ms=int((time.monotonic() - start) * 1000),
            )
            return LinkResult(
                outcome=LinkOutcome.ERROR,
                source_remote_id=record.remote_id,
                reason=str(exc),
            )

    async def _link(self, record: CanonicalRecord, start: float) -> LinkResult:
        criteria = self._rule.build_criteria(record.fields)
        proposed = self._rule.build_target_fields(record.fields)
        match = await self._resolver.resolve(criteria)

        if match is not None:
            updates = non_destructive_merge(match.record.fields, proposed)
            if not updates:
                return await self._matched_no_updates(record, match)
            return await self._update_target(record, match, updates, start)

        missing = [f for f in self._rule.required_fields if is_empty(proposed.get(f))]
        if missing:
            await self._audit_skipped(record.remote_id, "missing_required_field", missing_fields=missing)
            return LinkResult(
                outcome=LinkOutcome.SKIPPED_MISSING_REQUIRED_FIELD,
                source_remote_id=record.remote_id,
                reason=f"missing required field(s): {', '.join(missing)}",
            )
        return await self._create_target(record, proposed, start)

    async def _matched_no_updates(
        self, record: CanonicalRecord, match: MatchCandidate
    ) -> LinkResult:
        await self._save_link(record, match.record.remote_id, match)
        await self._audit_skipped(
            record.remote_id,
            "matched_no_updates_needed",
            target_id=match.record.remote_id,
            target_name=match.record.fields.get("name"),
            match_score=match.score,
            match_reasons=match.reasons,
        )
        return LinkResult(
            outcome=LinkOutcome.MATCHED_NO_UPDATES_NEEDED,
            source_remote_id=record.remote_id,
            target_remote_id=match.record.remote_id,
            match_score=match.score,
            match_reasons=match.reasons,
            reason="matched_no_updates_needed",
        )

    async def _update_target(
        self,
        record: CanonicalRecord,
        match: MatchCandidate,
        updates: dict[str, Any],
        start: float,
    ) -> LinkResult:
        target_id = match.record.remote_id
        await self._target.source.update_record(target_id, updates)

        merged = {**match.record.fields, **updates}
        await self._write_mirror(
            match.record.model_copy(
                update={"fields": merged, "last_synced_at": datetime.now(timezone.utc)}
            ),
            previous=match.record.fields,
        )
        await self._save_link(record, target_id, match)

        fields_updated = list(updates)
        await self._audit.record(
            f"{self._rule.name}_updated",
            self._rule.source_entity_type.value,
            record.remote_id,
            destination=self._rule.target_system,
            details={
                "target_id": target_id,
                "target_name": match.record.fields.get("name"),
                "match_score": match.score,
                "match_reasons": match.reasons,
                "fields_updated": fields_updated,
            },
            duration_ms=int((time.monotonic() - start) * 1000),
        )
        return LinkResult(
            outcome=LinkOutcome.UPDATED,
            source_remote_id=record.remote_id,
            target_remote_id=target_id,
            match_score=match.score,
            match_reasons=match.reasons,
            fields_updated=fields_updated,
        )

    async def _create_target(
        self, record: CanonicalRecord, proposed: dict[str, Any], start: float
    ) -> LinkResult:
        response = await self._target.source.create_record(proposed)
        mirror = self._target.map_remote(response)
        await self._write_mirror(mirror, previous=None)
        await self._save_link(record, mirror.remote_id, None)

        await self._audit.record(
            f"{self._rule.name}_created",
            self._rule.source_entity_type.value,
            record.remote_id,
            destination=self._rule.target_system,
            details={
                "target_id": mirror.remote_id,
                "target_name": mirror.fields.get("name"),
                "fields_set": list(proposed),
            },
            duration_ms=int((time.monotonic() - start) * 1000),
        )
        return LinkResult(
            outcome=LinkOutcome.CREATED,
            source_remote_id=record.remote_id,
            target_remote_id=mirror.remote_id,
            fields_updated=list(proposed),
        )

    # ── Helpers ─────────────────────────────────────────────────────────────

    def _counted(self, result: LinkResult) -> LinkResult:
        record_link_result(self._rule.name, result)
        return result

    async def _plan(self, record: CanonicalRecord) -> LinkResult:
        """Outcome linking ``record`` would produce, computed from mirrors only."""
        try:
            criteria = self._rule.build_criteria(record.fields)
            proposed = self._rule.build_target_fields(record.fields)
            match = await self._resolver.resolve(criteria)
        except Exception as exc:
            logger.error("link.plan_failed", rule=self._rule.name, remote_id=record.remote_id, error=str(exc))
            return LinkResult(outcome=LinkOutcome.ERROR, source_remote_id=record.remote_id, reason=str(exc))

        if match is not None:
            updates = non_destructive_merge(match.record.fields, proposed)
            return LinkResult(
                outcome=LinkOutcome.UPDATED if updates else LinkOutcome.MATCHED_NO_UPDATES_NEEDED,
                source_remote_id=record.remote_id,
                target_remote_id=match.record.remote_id,
                match_score=match.score,
                match_reasons=match.reasons,
                fields_updated=list(updates),
                reason="dry_run",
            )
        missing = [f for f in self._rule.required_fields if is_empty(proposed.get(f))]
        if missing:
            return LinkResult(
                outcome=LinkOutcome.SKIPPED_MISSING_REQUIRED_FIELD,
                source_remote_id=record.remote_id,
                reason=f"dry_run: missing required field(s): {', '.join(missing)}",
            )
        return LinkResult(
            outcome=LinkOutcome.CREATED,
            source_remote_id=record.remote_id,
            fields_updated=list(proposed),
            reason="dry_run",
        )

    async def _iter_mirrors(self, entity_type: EntityType) -> AsyncIterator[CanonicalRecord]:
        offset = 0
        while True:
            page = await self._store.list_records(entity_type, limit=BULK_PAGE_SIZE, offset=offset)
            for record in page:
                yield record
            if len(page) < BULK_PAGE_SIZE:
                return
            offset += BULK_PAGE_SIZE

    async def _all_links(self) -> list[Link]:
        links: list[Link] = []
        offset = 0
        while True:
            page = await self._store.list_links(
                self._rule.source_system,
                self._rule.source_entity_type,
                self._rule.target_system,
                limit=LINK_PAGE_SIZE,
                offset=offset,
            )
            links.extend(page)
            if len(page) < LINK_PAGE_SIZE:
                return links
            offset += LINK_PAGE_SIZE

    async def _write_mirror(
        self, mirror: CanonicalRecord, previous: dict[str, Any] | None
    ) -> None:
        """Upsert the target mirror together with its history."""
        events = build_change_events(
            mirror.entity_type,
            mirror.remote_id,
            previous,
            mirror.fields,
            self._target.tracked_fields,
            snapshot=mirror.raw_properties or dict(mirror.fields),
        )
        await self._store.upsert_with_changes(mirror, events)

    async def _save_link(
        self, record: CanonicalRecord, target_id: str, match: MatchCandidate | None
    ) -> None:
        await self._store.upsert_link(
            Link(
                source_system=self._rule.source_system,
                source_entity_type=self._rule.source_entity_type,
                source_remote_id=record.remote_id,
                target_system=self._rule.target_system,
                target_entity_type=self._rule.target_entity_type,
                target_remote_id=target_id,
                match_score=match.score if match else None,
                match_reasons=match.reasons if match else [],
            )
        )

    async def _audit_skipped(self, remote_id: str, reason: str, **details: Any) -> None:
        await self._audit.record(
            f"{self._rule.name}_skipped",
            self._rule.source_entity_type.value,
            remote_id,
            destination=self._rule.target_system,
            details={"reason": reason, **details},
        )
