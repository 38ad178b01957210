"""Pydantic schemas for record sync -- mirrors, matching, changes, audit.

Defines all structured types shared by the engine:
- Enums: EntityType, ChangeType, LinkOutcome, AuditStatus
- Mirrors: CanonicalRecord, Link
- Matching: MatchCriteria, MatchCandidate
- Change tracking: FieldChange, ChangeEvent
- Replay protection: IdempotencyToken
- Results: SyncCounters, SyncPassResult, SyncRunResult, LinkResult, BulkLinkResult, MatchPreview
- Operational records: AuditEntry, AutomationConfig, WebhookEvent
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union

from pydantic import BaseModel, Field

FieldValue = Union[str, int, float, bool, None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Enums ───────────────────────────────────────────────────────────────────


class EntityType(str, Enum):
    """Kinds of records mirrored from external systems."""

    COMPANY = "company"
    CONTACT = "contact"
    DEAL = "deal"
    VENDOR = "vendor"
    PROJECT = "project"
    USER = "user"
    PIPELINE = "pipeline"
    ROLE_ASSIGNMENT = "role_assignment"


class ChangeType(str, Enum):
    """Kind of change recorded in the history log."""

    CREATED = "created"
    FIELD_UPDATE = "field_update"


class LinkOutcome(str, Enum):
    """Result of one cross-system link attempt. Every branch is distinct."""

    UPDATED = "updated"
    MATCHED_NO_UPDATES_NEEDED = "matched_no_updates_needed"
    CREATED = "created"
    SKIPPED_MISSING_REQUIRED_FIELD = "skipped_missing_required_field"
    SKIPPED_AUTOMATION_DISABLED = "skipped_automation_disabled"
    NOT_FOUND = "not_found"
    ERROR = "error"


class AuditStatus(str, Enum):
    """Status values written to the audit log."""

    SUCCESS = "success"
    ERROR = "error"
    RECEIVED = "received"


# ── Mirrors ─────────────────────────────────────────────────────────────────


class CanonicalRecord(BaseModel):
    """Local mirror of one record owned by an external system.

    Identity is (entity_type, remote_id). ``fields`` holds the normalized,
    tracked values; ``raw_properties`` keeps the remote payload as received.
    """

    remote_id: str
    entity_type: EntityType
    source_system: str
    fields: dict[str, FieldValue] = Field(default_factory=dict)
    raw_properties: dict[str, Any] = Field(default_factory=dict)
    last_synced_at: datetime | None = None


class Link(BaseModel):
    """Association between two records in different systems judged to be the same entity."""

    source_system: str
    source_entity_type: EntityType
    source_remote_id: str
    target_system: str
    target_entity_type: EntityType
    target_remote_id: str
    match_score: int | None = None
    match_reasons: list[str] = Field(default_factory=list)
    last_linked_at: datetime = Field(default_factory=_utcnow)


# ── Matching ────────────────────────────────────────────────────────────────


class MatchCriteria(BaseModel):
    """Identifying attributes used to find a counterpart record."""

    email: str | None = None
    domain: str | None = None
    company_name: str | None = None
    first_name: str | None = None
    last_name: str | None = None

    def search_terms(self) -> list[str]:
        """Non-empty criteria in search order: company, email, domain, first, last."""
        terms = [self.company_name, self.email, self.domain, self.first_name, self.last_name]
        return [t for t in terms if t]


class MatchCandidate(BaseModel):
    """A scored candidate record. Transient, never persisted."""

    record: CanonicalRecord
    score: int
    reasons: list[str] = Field(default_factory=list)


# ── Change Tracking ─────────────────────────────────────────────────────────


class FieldChange(BaseModel):
    """One differing tracked field, values already string-coerced."""

    field_name: str
    old_value: str
    new_value: str


class ChangeEvent(BaseModel):
    """Immutable history entry for a mirrored record."""

    entity_type: EntityType
    remote_id: str
    change_type: ChangeType
    field_name: str | None = None
    old_value: str | None = None
    new_value: str | None = None
    full_snapshot: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=_utcnow)


# ── Replay Protection ───────────────────────────────────────────────────────


class IdempotencyToken(BaseModel):
    """Marker recording that an event was already processed."""

    key: str
    source: str = ""
    event_type: str = ""
    result: dict[str, Any] | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    expires_at: datetime

    def is_expired(self, now: datetime | None = None) -> bool:
        """Expired tokens no longer block processing."""
        now = now or _utcnow()
        return self.expires_at <= now


# ── Results ─────────────────────────────────────────────────────────────────


class SyncCounters(BaseModel):
    """Counts produced by one sync pass."""

    synced: int = 0
    created: int = 0
    updated: int = 0
    changes: int = 0

    def add(self, other: SyncCounters) -> None:
        """Accumulate another set of counters into this one."""
        self.synced += other.synced
        self.created += other.created
        self.updated += other.updated
        self.changes += other.changes


class SyncPassResult(BaseModel):
    """Summary of one refresh pass over a single entity type."""

    entity_type: EntityType
    counters: SyncCounters = Field(default_factory=SyncCounters)
    errors: list[str] = Field(default_factory=list)
    auth_expired: bool = False
    aborted: bool = False
    duration_ms: int = 0


class SyncRunResult(BaseModel):
    """Summary of a full run: several passes followed by the retention purge."""

    passes: list[SyncPassResult] = Field(default_factory=list)
    purged_changes: int = 0
    duration_ms: int = 0

    @property
    def totals(self) -> SyncCounters:
        total = SyncCounters()
        for p in self.passes:
            total.add(p.counters)
        return total

    @property
    def errors(self) -> list[str]:
        return [e for p in self.passes for e in p.errors]

    @property
    def auth_expired(self) -> bool:
        return any(p.auth_expired for p in self.passes)


class LinkResult(BaseModel):
    """Outcome of linking one source record into the target system."""

    outcome: LinkOutcome
    source_remote_id: str
    target_remote_id: str | None = None
    match_score: int | None = None
    match_reasons: list[str] = Field(default_factory=list)
    fields_updated: list[str] = Field(default_factory=list)
    reason: str | None = None


class BulkLinkResult(BaseModel):
    """Tallies for a bulk link run.

    On a dry run every result carries the outcome linking would produce and
    nothing was written.
    """

    dry_run: bool = False
    total: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    results: list[LinkResult] = Field(default_factory=list)


class UnmatchedRecords(BaseModel):
    """Mirrors on either side of a link rule that no link references."""

    source: list[CanonicalRecord] = Field(default_factory=list)
    target: list[CanonicalRecord] = Field(default_factory=list)


class LinkOverview(BaseModel):
    """Coverage of one link rule across both systems' mirrors."""

    rule: str
    total_links: int = 0
    manual_links: int = 0
    total_source: int = 0
    total_target: int = 0
    linked_source: int = 0
    linked_target: int = 0
    recent_links: list[Link] = Field(default_factory=list)


class MatchPreview(BaseModel):
    """Dry-run view of what linking a record would do."""

    source_remote_id: str
    criteria: MatchCriteria
    match: MatchCandidate | None = None
    would_create: bool = False
    would_update_fields: list[str] = Field(default_factory=list)


# ── Operational Records ─────────────────────────────────────────────────────


class AuditEntry(BaseModel):
    """Row in the append-only audit log."""

    action: str
    entity_type: str
    entity_id: str | None = None
    source: str
    destination: str | None = None
    status: AuditStatus
    details: dict[str, Any] = Field(default_factory=dict)
    error_message: str | None = None
    duration_ms: int | None = None
    idempotency_key: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)


class AutomationConfig(BaseModel):
    """Named feature flag / settings blob that gates a job or automation."""

    key: str
    value: dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def enabled(self) -> bool:
        return self.is_active and bool(self.value.get("enabled", False))


class WebhookEvent(BaseModel):
    """Normalized inbound webhook notification."""

    source: str
    resource_type: str
    resource_id: str
    event_type: str
    project_id: str | None = None
    version: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
