"""Record-sync persistence models.

Six SQLAlchemy models on the shared Base:
- CanonicalRecordModel: Local mirror rows, one per (entity_type, remote_id)
- ChangeEventModel: Append-only field history, purged by age
- IdempotencyKeyModel: Processed-event markers with expiry
- AuditLogModel: Append-only audit trail of sync and webhook actions
- AutomationConfigModel: Named feature flags gating jobs and automations
- SyncLinkModel: Cross-system links between equivalent records

Column types are the portable generics (Uuid, JSON) so the same tables run
on PostgreSQL in production and SQLite in tests.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from src.recordsync.core.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CanonicalRecordModel(Base):
    """Local mirror of one remote record.

    ``search_text`` is a lower-cased concatenation of the string field
    values, maintained on every upsert and used by candidate search.
    """

    __tablename__ = "canonical_records"
    __table_args__ = (
        UniqueConstraint("entity_type", "remote_id", name="uq_record_entity_remote"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    remote_id: Mapped[str] = mapped_column(String(200), nullable=False)
    source_system: Mapped[str] = mapped_column(String(50), nullable=False)
    fields: Mapped[dict] = mapped_column(JSON, default=dict)
    raw_properties: Mapped[dict] = mapped_column(JSON, default=dict)
    search_text: Mapped[str] = mapped_column(Text, default="")
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), onupdate=_utcnow, nullable=True
    )


class ChangeEventModel(Base):
    """One history entry: a record creation or a single field update."""

    __tablename__ = "change_events"
    __table_args__ = (
        Index("ix_change_entity_remote", "entity_type", "remote_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    remote_id: Mapped[str] = mapped_column(String(200), nullable=False)
    change_type: Mapped[str] = mapped_column(String(20), nullable=False)
    field_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    old_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    new_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    full_snapshot: Mapped[dict] = mapped_column(JSON, default=dict)
    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, index=True
    )


class IdempotencyKeyModel(Base):
    """Marker for an already-processed event. Expired rows are inert."""

    __tablename__ = "idempotency_keys"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    key: Mapped[str] = mapped_column(String(500), nullable=False, unique=True)
    source: Mapped[str] = mapped_column(String(50), default="")
    event_type: Mapped[str] = mapped_column(String(100), default="")
    result: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class AuditLogModel(Base):
    """Append-only audit row for sync, link and webhook actions."""

    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    action: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    source: Mapped[str] = mapped_column(String(50), nullable=False)
    destination: Mapped[str | None] = mapped_column(String(50), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    details: Mapped[dict] = mapped_column(JSON, default=dict)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class AutomationConfigModel(Base):
    """Named feature flag. A missing row means disabled."""

    __tablename__ = "automation_config"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    key: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    value: Mapped[dict] = mapped_column(JSON, default=dict)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )


class SyncLinkModel(Base):
    """Cross-system link between a source record and its target counterpart."""

    __tablename__ = "sync_links"
    __table_args__ = (
        UniqueConstraint(
            "source_system",
            "source_entity_type",
            "source_remote_id",
            "target_system",
            name="uq_link_source_target_system",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    source_system: Mapped[str] = mapped_column(String(50), nullable=False)
    source_entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    source_remote_id: Mapped[str] = mapped_column(String(200), nullable=False)
    target_system: Mapped[str] = mapped_column(String(50), nullable=False)
    target_entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    target_remote_id: Mapped[str] = mapped_column(String(200), nullable=False)
    match_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    match_reasons: Mapped[list] = mapped_column(JSON, default=list)
    last_linked_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
