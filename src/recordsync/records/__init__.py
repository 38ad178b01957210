"""Record persistence layer -- schemas, ORM models, store contract and SQL store.

Provides Pydantic schemas for mirrors, matching, change history and
bookkeeping records, the abstract RecordStore interface the engine depends
on, SqlRecordStore (async SQLAlchemy) and the AuditTrail writer.
"""

from src.recordsync.records.audit import AuditTrail
from src.recordsync.records.repository import SqlRecordStore
from src.recordsync.records.schemas import (
    AuditEntry,
    AuditStatus,
    AutomationConfig,
    CanonicalRecord,
    ChangeEvent,
    ChangeType,
    EntityType,
    IdempotencyToken,
    Link,
    LinkOutcome,
    LinkResult,
    MatchCandidate,
    MatchCriteria,
)
from src.recordsync.records.store import RecordStore

__all__ = [
    "AuditTrail",
    "SqlRecordStore",
    "RecordStore",
    "AuditEntry",
    "AuditStatus",
    "AutomationConfig",
    "CanonicalRecord",
    "ChangeEvent",
    "ChangeType",
    "EntityType",
    "IdempotencyToken",
    "Link",
    "LinkOutcome",
    "LinkResult",
    "MatchCandidate",
    "MatchCriteria",
]
