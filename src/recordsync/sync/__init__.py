"""Incremental synchronization engine.

Provides the field merge policy, change detection, replay and overlap
guards, per-entity sync specs, the refresh-path SyncOrchestrator and the
CrossSystemLinker for the link path.
"""

from src.recordsync.sync.changes import build_change_events, coerce_to_string, detect_changes
from src.recordsync.sync.idempotency import (
    IdempotencyGuard,
    ReentrancyGuard,
    build_dedup_key,
)
from src.recordsync.sync.linking import CrossSystemLinker
from src.recordsync.sync.merge import non_destructive_merge
from src.recordsync.sync.orchestrator import SyncOrchestrator
from src.recordsync.sync.specs import (
    COMPANY_TO_VENDOR,
    CONTACT_TO_VENDOR,
    EntitySyncSpec,
    LinkRule,
)

__all__ = [
    "build_change_events",
    "coerce_to_string",
    "detect_changes",
    "non_destructive_merge",
    "IdempotencyGuard",
    "ReentrancyGuard",
    "build_dedup_key",
    "EntitySyncSpec",
    "LinkRule",
    "COMPANY_TO_VENDOR",
    "CONTACT_TO_VENDOR",
    "SyncOrchestrator",
    "CrossSystemLinker",
]
