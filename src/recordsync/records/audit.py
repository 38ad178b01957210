"""Audit trail writer.

Thin layer over RecordStore.record_audit that fills in the source system
and mirrors every entry to the structured log.
"""

from __future__ import annotations

from typing import Any

import structlog

from src.recordsync.records.schemas import AuditEntry, AuditStatus
from src.recordsync.records.store import RecordStore

logger = structlog.get_logger(__name__)


class AuditTrail:
    """Writes audit entries for one source system.

    Args:
        store: Record store holding the audit log.
        source: Source system name stamped on every entry.
    """

    def __init__(self, store: RecordStore, source: str) -> None:
        self._store = store
        self._source = source

    async def record(
        self,
        action: str,
        entity_type: str,
        entity_id: str | None,
        status: AuditStatus = AuditStatus.SUCCESS,
        *,
        destination: str | None = None,
        details: dict[str, Any] | None = None,
        error_message: str | None = None,
        duration_ms: int | None = None,
        idempotency_key: str | None = None,
    ) -> AuditEntry:
        """Append an audit entry and return it."""
        entry = AuditEntry(
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            source=self._source,
            destination=destination,
            status=status,
            details=details or {},
            error_message=error_message,
            duration_ms=duration_ms,
            idempotency_key=idempotency_key,
        )
        await self._store.record_audit(entry)
        log = logger.warning if status == AuditStatus.ERROR else logger.info
        log(
            "audit.recorded",
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            status=status.value,
            source=self._source,
            destination=destination,
        )
        return entry
