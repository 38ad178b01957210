"""Record store abstract base class -- the persistence contract the engine talks to.

The orchestrator, linker, guards and webhook processor depend only on this
interface. SqlRecordStore (records/repository.py) is the production
implementation; tests use an in-memory double.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from datetime import datetime
from typing import Any

from src.recordsync.records.schemas import (
    AuditEntry,
    AutomationConfig,
    CanonicalRecord,
    ChangeEvent,
    EntityType,
    IdempotencyToken,
    Link,
)


class RecordStore(ABC):
    """Abstract interface for mirror, history and bookkeeping persistence.

    Methods:
        find_by_remote_id: Fetch one mirror by (entity_type, remote_id).
        upsert: Create or fully overwrite a mirror; identity is (entity_type, remote_id).
        upsert_with_changes: Overwrite a mirror and append its change events in one transaction.
        search: Text search over mirrors of one entity type.
        list_records: Bounded listing of mirrors of one entity type.
        record_change: Append a change event.
        purge_changes_older_than: Delete change events older than a cutoff.
        check_idempotency_key: Fetch an idempotency token (expired or not).
        create_idempotency_key: Persist a token; raises DuplicateEventError on a live collision.
        get_automation_config: Fetch a named feature flag.
        set_automation_config: Create or replace a named feature flag.
        record_audit: Append an audit entry.
        upsert_link: Create or refresh a cross-system link.
        find_link: Fetch the link for a source record into a target system.
        list_links: Links from one system into another, most recently linked first.
        delete_link: Remove the link for a source record into a target system.
    """

    @abstractmethod
    async def find_by_remote_id(
        self, entity_type: EntityType, remote_id: str
    ) -> CanonicalRecord | None:
        """Fetch a mirror by its remote identity, None if absent."""
        ...

    @abstractmethod
    async def upsert(self, record: CanonicalRecord) -> CanonicalRecord:
        """Create or overwrite the mirror for (entity_type, remote_id)."""
        ...

    @abstractmethod
    async def upsert_with_changes(
        self, record: CanonicalRecord, events: Sequence[ChangeEvent]
    ) -> CanonicalRecord:
        """Overwrite the mirror and append its change events atomically.

        Either the mirror and every event are persisted, or nothing is.
        """
        ...

    @abstractmethod
    async def search(
        self, entity_type: EntityType, term: str, limit: int = 100, offset: int = 0
    ) -> list[CanonicalRecord]:
        """Case-insensitive substring search over a mirror's string fields."""
        ...

    @abstractmethod
    async def list_records(
        self, entity_type: EntityType, limit: int = 100, offset: int = 0
    ) -> list[CanonicalRecord]:
        """List mirrors of one entity type, at most ``limit`` rows."""
        ...

    @abstractmethod
    async def record_change(self, event: ChangeEvent) -> None:
        """Append one change event to the history log."""
        ...

    @abstractmethod
    async def purge_changes_older_than(
        self, cutoff: datetime, entity_type: EntityType | None = None
    ) -> int:
        """Delete change events that occurred before ``cutoff``; return count removed."""
        ...

    @abstractmethod
    async def check_idempotency_key(self, key: str) -> IdempotencyToken | None:
        """Fetch the token stored under ``key``, including expired tokens."""
        ...

    @abstractmethod
    async def create_idempotency_key(self, token: IdempotencyToken) -> None:
        """Persist a token, replacing an expired one with the same key.

        Raises:
            DuplicateEventError: If an unexpired token with the same key exists.
        """
        ...

    @abstractmethod
    async def get_automation_config(self, key: str) -> AutomationConfig | None:
        """Fetch a named feature flag, None if never configured."""
        ...

    @abstractmethod
    async def set_automation_config(
        self, key: str, value: dict[str, Any], is_active: bool = True
    ) -> AutomationConfig:
        """Create or replace a named feature flag."""
        ...

    @abstractmethod
    async def record_audit(self, entry: AuditEntry) -> None:
        """Append one audit entry."""
        ...

    @abstractmethod
    async def upsert_link(self, link: Link) -> Link:
        """Create or refresh the link for a source record into a target system."""
        ...

    @abstractmethod
    async def find_link(
        self,
        source_system: str,
        source_entity_type: EntityType,
        source_remote_id: str,
        target_system: str,
    ) -> Link | None:
        """Fetch the existing link for a source record, None if never linked."""
        ...

    @abstractmethod
    async def list_links(
        self,
        source_system: str,
        source_entity_type: EntityType,
        target_system: str,
        limit: int = 1000,
        offset: int = 0,
    ) -> list[Link]:
        """List links for one source entity type into a target system, newest first."""
        ...

    @abstractmethod
    async def delete_link(
        self,
        source_system: str,
        source_entity_type: EntityType,
        source_remote_id: str,
        target_system: str,
    ) -> bool:
        """Remove a link; return False when there was none."""
        ...
