"""SQL record store -- async SQLAlchemy implementation of RecordStore.

Uses the session_factory callable pattern: every method opens its own
session from the factory, so the store can be shared by scheduled jobs and
request handlers. Pydantic schemas are converted to and from ORM rows by the
helpers below; naive datetimes read back from SQLite are treated as UTC.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable, Sequence
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.recordsync.errors import DuplicateEventError
from src.recordsync.records.models import (
    AuditLogModel,
    AutomationConfigModel,
    CanonicalRecordModel,
    ChangeEventModel,
    IdempotencyKeyModel,
    SyncLinkModel,
)
from src.recordsync.records.schemas import (
    AuditEntry,
    AutomationConfig,
    CanonicalRecord,
    ChangeEvent,
    EntityType,
    IdempotencyToken,
    Link,
)
from src.recordsync.records.store import RecordStore

logger = structlog.get_logger(__name__)


# ── Serialization Helpers ───────────────────────────────────────────────────


def _aware(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _search_text(fields: dict[str, Any]) -> str:
    """Lower-cased concatenation of the string values of a record."""
    return " ".join(str(v).lower() for v in fields.values() if isinstance(v, str) and v)


def _model_to_record(model: CanonicalRecordModel) -> CanonicalRecord:
    """Convert CanonicalRecordModel to CanonicalRecord schema."""
    return CanonicalRecord(
        remote_id=model.remote_id,
        entity_type=EntityType(model.entity_type),
        source_system=model.source_system,
        fields=model.fields or {},
        raw_properties=model.raw_properties or {},
        last_synced_at=_aware(model.last_synced_at),
    )


def _model_to_token(model: IdempotencyKeyModel) -> IdempotencyToken:
    """Convert IdempotencyKeyModel to IdempotencyToken schema."""
    return IdempotencyToken(
        key=model.key,
        source=model.source or "",
        event_type=model.event_type or "",
        result=model.result,
        created_at=_aware(model.created_at),
        expires_at=_aware(model.expires_at),
    )


def _model_to_config(model: AutomationConfigModel) -> AutomationConfig:
    """Convert AutomationConfigModel to AutomationConfig schema."""
    return AutomationConfig(
        key=model.key,
        value=model.value or {},
        is_active=model.is_active,
        updated_at=_aware(model.updated_at) or datetime.now(timezone.utc),
    )


def _model_to_link(model: SyncLinkModel) -> Link:
    """Convert SyncLinkModel to Link schema."""
    return Link(
        source_system=model.source_system,
        source_entity_type=EntityType(model.source_entity_type),
        source_remote_id=model.source_remote_id,
        target_system=model.target_system,
        target_entity_type=EntityType(model.target_entity_type),
        target_remote_id=model.target_remote_id,
        match_score=model.match_score,
        match_reasons=model.match_reasons or [],
        last_linked_at=_aware(model.last_linked_at),
    )


def _event_to_model(event: ChangeEvent) -> ChangeEventModel:
    """Convert ChangeEvent schema to a new ChangeEventModel row."""
    return ChangeEventModel(
        entity_type=event.entity_type.value,
        remote_id=event.remote_id,
        change_type=event.change_type.value,
        field_name=event.field_name,
        old_value=event.old_value,
        new_value=event.new_value,
        full_snapshot=event.full_snapshot,
        occurred_at=event.occurred_at,
    )


# ── Repository ──────────────────────────────────────────────────────────────


class SqlRecordStore(RecordStore):
    """Async SQLAlchemy record store.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    # ── Mirrors ─────────────────────────────────────────────────────────────

    async def find_by_remote_id(
        self, entity_type: EntityType, remote_id: str
    ) -> CanonicalRecord | None:
        async for session in self._session_factory():
            stmt = select(CanonicalRecordModel).where(
                CanonicalRecordModel.entity_type == entity_type.value,
                CanonicalRecordModel.remote_id == remote_id,
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return _model_to_record(model)

    async def _stage_record(
        self, session: AsyncSession, record: CanonicalRecord
    ) -> CanonicalRecordModel:
        """Load or create the mirror row and overwrite it in the session, uncommitted."""
        stmt = select(CanonicalRecordModel).where(
            CanonicalRecordModel.entity_type == record.entity_type.value,
            CanonicalRecordModel.remote_id == record.remote_id,
        )
        result = await session.execute(stmt)
        model = result.scalar_one_or_none()
        if model is None:
            model = CanonicalRecordModel(
                entity_type=record.entity_type.value,
                remote_id=record.remote_id,
            )
            session.add(model)
        model.source_system = record.source_system
        model.fields = dict(record.fields)
        model.raw_properties = dict(record.raw_properties)
        model.search_text = _search_text(record.fields)
        model.last_synced_at = record.last_synced_at or datetime.now(timezone.utc)
        return model

    async def upsert(self, record: CanonicalRecord) -> CanonicalRecord:
        """Create or fully overwrite the mirror row.

        Fields, raw properties and last_synced_at are replaced, not merged.
        """
        async for session in self._session_factory():
            model = await self._stage_record(session, record)
            await session.commit()
            await session.refresh(model)
            return _model_to_record(model)

    async def upsert_with_changes(
        self, record: CanonicalRecord, events: Sequence[ChangeEvent]
    ) -> CanonicalRecord:
        """Overwrite the mirror and append its change events in one commit.

        A failing flush or commit rolls back the mirror together with the
        events.
        """
        async for session in self._session_factory():
            try:
                model = await self._stage_record(session, record)
                session.add_all([_event_to_model(event) for event in events])
                await session.commit()
            except Exception:
                await session.rollback()
                raise
            await session.refresh(model)
            return _model_to_record(model)

    async def search(
        self, entity_type: EntityType, term: str, limit: int = 100, offset: int = 0
    ) -> list[CanonicalRecord]:
        needle = term.strip().lower()
        if not needle:
            return []
        async for session in self._session_factory():
            stmt = (
                select(CanonicalRecordModel)
                .where(
                    CanonicalRecordModel.entity_type == entity_type.value,
                    CanonicalRecordModel.search_text.contains(needle, autoescape=True),
                )
                .order_by(CanonicalRecordModel.created_at, CanonicalRecordModel.remote_id)
                .limit(limit)
                .offset(offset)
            )
            result = await session.execute(stmt)
            return [_model_to_record(m) for m in result.scalars().all()]

    async def list_records(
        self, entity_type: EntityType, limit: int = 100, offset: int = 0
    ) -> list[CanonicalRecord]:
        async for session in self._session_factory():
            stmt = (
                select(CanonicalRecordModel)
                .where(CanonicalRecordModel.entity_type == entity_type.value)
                .order_by(CanonicalRecordModel.created_at, CanonicalRecordModel.remote_id)
                .limit(limit)
                .offset(offset)
            )
            result = await session.execute(stmt)
            return [_model_to_record(m) for m in result.scalars().all()]

    # ── Change History ──────────────────────────────────────────────────────

    async def record_change(self, event: ChangeEvent) -> None:
        async for session in self._session_factory():
            session.add(_event_to_model(event))
            await session.commit()

    async def purge_changes_older_than(
        self, cutoff: datetime, entity_type: EntityType | None = None
    ) -> int:
        async for session in self._session_factory():
            stmt = delete(ChangeEventModel).where(ChangeEventModel.occurred_at < cutoff)
            if entity_type is not None:
                stmt = stmt.where(ChangeEventModel.entity_type == entity_type.value)
            result = await session.execute(stmt)
            await session.commit()
            purged = result.rowcount or 0
            logger.info(
                "store.changes_purged",
                cutoff=cutoff.isoformat(),
                entity_type=entity_type.value if entity_type else None,
                purged=purged,
            )
            return purged

    # ── Idempotency ─────────────────────────────────────────────────────────

    async def check_idempotency_key(self, key: str) -> IdempotencyToken | None:
        async for session in self._session_factory():
            stmt = select(IdempotencyKeyModel).where(IdempotencyKeyModel.key == key)
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return _model_to_token(model)

    async def create_idempotency_key(self, token: IdempotencyToken) -> None:
        """Persist a token, replacing an expired row with the same key.

        Raises:
            DuplicateEventError: If a live token exists, or a concurrent
                writer inserted the same key first.
        """
        async for session in self._session_factory():
            stmt = select(IdempotencyKeyModel).where(IdempotencyKeyModel.key == token.key)
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is not None:
                if _aware(model.expires_at) > datetime.now(timezone.utc):
                    raise DuplicateEventError(token.key)
                model.source = token.source
                model.event_type = token.event_type
                model.result = token.result
                model.created_at = token.created_at
                model.expires_at = token.expires_at
            else:
                session.add(
                    IdempotencyKeyModel(
                        key=token.key,
                        source=token.source,
                        event_type=token.event_type,
                        result=token.result,
                        created_at=token.created_at,
                        expires_at=token.expires_at,
                    )
                )
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise DuplicateEventError(token.key) from exc

    # ── Automation Config ───────────────────────────────────────────────────

    async def get_automation_config(self, key: str) -> AutomationConfig | None:
        async for session in self._session_factory():
            stmt = select(AutomationConfigModel).where(AutomationConfigModel.key == key)
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return _model_to_config(model)

    async def set_automation_config(
        self, key: str, value: dict[str, Any], is_active: bool = True
    ) -> AutomationConfig:
        async for session in self._session_factory():
            stmt = select(AutomationConfigModel).where(AutomationConfigModel.key == key)
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                model = AutomationConfigModel(key=key)
                session.add(model)
            model.value = dict(value)
            model.is_active = is_active
            await session.commit()
            await session.refresh(model)
            logger.info("store.automation_config_set", key=key, value=value, is_active=is_active)
            return _model_to_config(model)

    # ── Audit ───────────────────────────────────────────────────────────────

    async def record_audit(self, entry: AuditEntry) -> None:
        async for session in self._session_factory():
            session.add(
                AuditLogModel(
                    action=entry.action,
                    entity_type=entry.entity_type,
                    entity_id=entry.entity_id,
                    source=entry.source,
                    destination=entry.destination,
                    status=entry.status.value,
                    details=entry.details,
                    error_message=entry.error_message,
                    duration_ms=entry.duration_ms,
                    idempotency_key=entry.idempotency_key,
                    created_at=entry.created_at,
                )
            )
            await session.commit()

    # ── Links ───────────────────────────────────────────────────────────────

    async def upsert_link(self, link: Link) -> Link:
        async for session in self._session_factory():
            stmt = select(SyncLinkModel).where(
                SyncLinkModel.source_system == link.source_system,
                SyncLinkModel.source_entity_type == link.source_entity_type.value,
                SyncLinkModel.source_remote_id == link.source_remote_id,
                SyncLinkModel.target_system == link.target_system,
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                model = SyncLinkModel(
                    source_system=link.source_system,
                    source_entity_type=link.source_entity_type.value,
                    source_remote_id=link.source_remote_id,
                    target_system=link.target_system,
                )
                session.add(model)
            model.target_entity_type = link.target_entity_type.value
            model.target_remote_id = link.target_remote_id
            model.match_score = link.match_score
            model.match_reasons = list(link.match_reasons)
            model.last_linked_at = link.last_linked_at
            await session.commit()
            await session.refresh(model)
            return _model_to_link(model)

    async def find_link(
        self,
        source_system: str,
        source_entity_type: EntityType,
        source_remote_id: str,
        target_system: str,
    ) -> Link | None:
        async for session in self._session_factory():
            stmt = select(SyncLinkModel).where(
                SyncLinkModel.source_system == source_system,
                SyncLinkModel.source_entity_type == source_entity_type.value,
                SyncLinkModel.source_remote_id == source_remote_id,
                SyncLinkModel.target_system == target_system,
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return _model_to_link(model)

    async def list_links(
        self,
        source_system: str,
        source_entity_type: EntityType,
        target_system: str,
        limit: int = 1000,
        offset: int = 0,
    ) -> list[Link]:
        async for session in self._session_factory():
            stmt = (
                select(SyncLinkModel)
                .where(
                    SyncLinkModel.source_system == source_system,
                    SyncLinkModel.source_entity_type == source_entity_type.value,
                    SyncLinkModel.target_system == target_system,
                )
                .order_by(SyncLinkModel.last_linked_at.desc(), SyncLinkModel.source_remote_id)
                .limit(limit)
                .offset(offset)
            )
            result = await session.execute(stmt)
            return [_model_to_link(m) for m in result.scalars().all()]

    async def delete_link(
        self,
        source_system: str,
        source_entity_type: EntityType,
        source_remote_id: str,
        target_system: str,
    ) -> bool:
        async for session in self._session_factory():
            stmt = delete(SyncLinkModel).where(
                SyncLinkModel.source_system == source_system,
                SyncLinkModel.source_entity_type == source_entity_type.value,
                SyncLinkModel.source_remote_id == source_remote_id,
                SyncLinkModel.target_system == target_system,
            )
            result = await session.execute(stmt)
            await session.commit()
            removed = (result.rowcount or 0) > 0
            logger.info(
                "store.link_deleted",
                source_system=source_system,
                source_remote_id=source_remote_id,
                target_system=target_system,
                removed=removed,
            )
            return removed
