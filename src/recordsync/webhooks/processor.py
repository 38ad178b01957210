"""Inbound webhook processing.

Every delivery is normalized into a WebhookEvent, de-duplicated through the
IdempotencyGuard, recorded in the audit log as ``received`` and dispatched
to the handler registered for its (source, resource type). A redelivered
event is a silent success: nothing is written and no handler runs.

Handler failures are audited and logged but never raised, so the HTTP layer
can always acknowledge the delivery.

Handlers supplied here:
- make_refresh_handler(): re-sync the single record the event names
- make_link_handler(): on creation events, refresh the source record and
  link it into the target system
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from pydantic import BaseModel, Field

from src.recordsync.core.monitoring import record_webhook
from src.recordsync.records.audit import AuditTrail
from src.recordsync.records.schemas import AuditStatus, WebhookEvent
from src.recordsync.records.store import RecordStore
from src.recordsync.sync.idempotency import IdempotencyGuard, build_dedup_key
from src.recordsync.sync.linking import CrossSystemLinker
from src.recordsync.sync.orchestrator import SyncOrchestrator
from src.recordsync.sync.specs import EntitySyncSpec

logger = structlog.get_logger(__name__)

WebhookHandler = Callable[[WebhookEvent], Awaitable[Any]]

_RESOURCE_TYPE_KEYS = ("resource_name", "object_type", "objectType")
_RESOURCE_ID_KEYS = ("resource_id", "object_id", "objectId")
_EVENT_TYPE_KEYS = ("event_type", "subscriptionType", "eventType")
_VERSION_KEYS = ("eventId", "event_id", "occurredAt", "occurred_at", "timestamp", "updated_at")


class WebhookResult(BaseModel):
    """Outcome of processing one delivered event."""

    received: bool = True
    duplicate: bool = False
    handled: bool = False
    dedup_key: str
    resource_type: str
    resource_id: str
    event_type: str
    outcome: dict[str, Any] | None = None
    error: str | None = None


def _first(payload: dict[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        value = payload.get(key)
        if value is not None and value != "":
            return value
    return None


def parse_webhook_event(source: str, payload: dict[str, Any]) -> WebhookEvent:
    """Normalize the payload shapes of the supported senders.

    Resource id comes from ``resource_id | object_id | objectId | data.id``;
    event type from ``event_type | subscriptionType | eventType``; resource
    type from ``resource_name | object_type | objectType``, else the prefix
    of a dotted event type (``company.creation`` -> ``company``). Resource
    types are lower-cased with spaces replaced by underscores. The
    version is the sender's own event id or occurrence timestamp, never the
    time of receipt.
    """
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}

    event_type = str(_first(payload, _EVENT_TYPE_KEYS) or "unknown")

    resource_type = _first(payload, _RESOURCE_TYPE_KEYS)
    if resource_type is None and "." in event_type:
        resource_type = event_type.split(".", 1)[0]

    resource_id = _first(payload, _RESOURCE_ID_KEYS)
    if resource_id is None:
        resource_id = data.get("id")

    version = _first(payload, _VERSION_KEYS)
    # A top-level "id" is the event's own id only when the resource id lives elsewhere
    if version is None and payload.get("id") is not None and _first(payload, _RESOURCE_ID_KEYS) is not None:
        version = payload["id"]
    if version is None:
        version = _first(data, ("updated_at", "updatedAt"))

    project_id = payload.get("project_id")
    return WebhookEvent(
        source=source,
        resource_type=str(resource_type or "unknown").strip().lower().replace(" ", "_"),
        resource_id=str(resource_id) if resource_id is not None else "",
        event_type=event_type,
        project_id=str(project_id) if project_id is not None else None,
        version=str(version) if version is not None else None,
        payload=payload,
    )


def _dump(outcome: Any) -> dict[str, Any] | None:
    if outcome is None:
        return None
    if isinstance(outcome, BaseModel):
        return outcome.model_dump(mode="json")
    if isinstance(outcome, dict):
        return outcome
    return {"result": str(outcome)}


class WebhookProcessor:
    """De-duplicates, audits and dispatches webhook deliveries.

    Args:
        store: Record store for the audit log.
        guard: Idempotency guard; one token per distinct event.
    """

    def __init__(self, store: RecordStore, guard: IdempotencyGuard) -> None:
        self._store = store
        self._guard = guard
        self._handlers: dict[tuple[str, str], WebhookHandler] = {}

    def register(self, source: str, resource_type: str, handler: WebhookHandler) -> None:
        """Route events of ``resource_type`` from ``source`` to ``handler``."""
        self._handlers[(source, resource_type.lower())] = handler

    async def process(self, source: str, payload: dict[str, Any]) -> WebhookResult:
        """Process one delivered event."""
        event = parse_webhook_event(source, payload)
        key = build_dedup_key(
            source, event.resource_type, event.resource_id, event.version, payload
        )
        result = WebhookResult(
            dedup_key=key,
            resource_type=event.resource_type,
            resource_id=event.resource_id,
            event_type=event.event_type,
        )
        log = logger.bind(
            source=source,
            resource_type=event.resource_type,
            resource_id=event.resource_id,
            event_type=event.event_type,
        )

        if not await self._guard.should_process(key, source=source, event_type=event.event_type):
            log.info("webhook.duplicate_ignored", dedup_key=key)
            result.duplicate = True
            record_webhook(source, "duplicate")
            return result

        audit = AuditTrail(self._store, source)
        await audit.record(
            "webhook_received",
            event.resource_type,
            event.resource_id,
            AuditStatus.RECEIVED,
            details=payload,
            idempotency_key=key,
        )

        handler = self._handlers.get((source, event.resource_type))
        if handler is None:
            log.info("webhook.no_handler")
            result.outcome = {"skipped": True, "reason": f"unsupported_resource_type: {event.resource_type}"}
            record_webhook(source, "unhandled")
            return result

        start = time.monotonic()
        try:
            outcome = await handler(event)
        except Exception as exc:
            log.error("webhook.handler_failed", error=str(exc), exc_info=True)
            result.error = str(exc)
            await audit.record(
                "webhook_processing_failed",
                event.resource_type,
                event.resource_id,
                AuditStatus.ERROR,
                error_message=str(exc),
                duration_ms=int((time.monotonic() - start) * 1000),
                idempotency_key=key,
            )
            record_webhook(source, "failed")
            return result

        result.handled = True
        result.outcome = _dump(outcome)
        log.info("webhook.processed", outcome=result.outcome)
        record_webhook(source, "processed")
        return result

    async def process_batch(
        self, source: str, payload: dict[str, Any] | list[dict[str, Any]]
    ) -> list[WebhookResult]:
        """Process a single event or a list of events, in order."""
        events = payload if isinstance(payload, list) else [payload]
        return [await self.process(source, event) for event in events]


# ── Handlers ────────────────────────────────────────────────────────────────


def is_creation_event(event_type: str) -> bool:
    lowered = event_type.lower()
    return "creation" in lowered or "create" in lowered


def is_deletion_event(event_type: str) -> bool:
    return "delet" in event_type.lower()


def make_refresh_handler(orchestrator: SyncOrchestrator, spec: EntitySyncSpec) -> WebhookHandler:
    """Handler that re-syncs the single record an event names."""

    async def handle(event: WebhookEvent) -> dict[str, Any]:
        if is_deletion_event(event.event_type):
            return {"skipped": True, "reason": "deletion_not_mirrored"}
        result = await orchestrator.refresh_one(spec, event.resource_id)
        return result.model_dump(mode="json")

    return handle


def make_link_handler(
    linker: CrossSystemLinker,
    orchestrator: SyncOrchestrator | None = None,
    source_spec: EntitySyncSpec | None = None,
) -> WebhookHandler:
    """Handler that links newly created source records into the target system.

    When an orchestrator and source strategy are given, the source record is
    refreshed first (for any event except deletions), so a record created
    moments ago is already mirrored when the linker looks it up. Only
    creation events are linked; the linker applies its own automation flag.
    """

    async def handle(event: WebhookEvent) -> dict[str, Any]:
        refreshed: dict[str, Any] | None = None
        if orchestrator is not None and source_spec is not None and not is_deletion_event(event.event_type):
            refresh = await orchestrator.refresh_one(source_spec, event.resource_id)
            refreshed = refresh.counters.model_dump()
        if not is_creation_event(event.event_type):
            return {"skipped": True, "reason": "not_a_creation_event", "refreshed": refreshed}
        result = await linker.link_by_remote_id(event.resource_id)
        return {**result.model_dump(mode="json"), "refreshed": refreshed}

    return handle
