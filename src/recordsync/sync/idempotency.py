"""Replay protection for webhooks and overlap protection for scheduled jobs.

IdempotencyGuard persists a token per processed event so redelivered
webhooks are recognized for the token's lifetime (7 days by default).
Dedup keys are built only from attributes that are stable across
redeliveries of the same event; receipt time never enters a key.

ReentrancyGuard is a per-job in-process flag: an invocation arriving while
the previous one is still running is skipped rather than queued.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog

from src.recordsync.errors import DuplicateEventError
from src.recordsync.records.schemas import IdempotencyToken
from src.recordsync.records.store import RecordStore

logger = structlog.get_logger(__name__)

DEFAULT_IDEMPOTENCY_TTL = timedelta(days=7)


def payload_digest(payload: Any) -> str:
    """SHA-256 of the canonical JSON form of a payload."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def build_dedup_key(
    source: str,
    resource_type: str,
    resource_id: str,
    version: str | None = None,
    payload: Any = None,
) -> str:
    """Build a dedup key from stable event attributes.

    Args:
        source: Originating system (e.g. "hubspot").
        resource_type: Kind of resource the event concerns.
        resource_id: Identifier of the resource.
        version: The event's own id, version or occurrence timestamp.
        payload: Event body, digested when no version is available.

    Returns:
        ``source:resource_type:resource_id:version``. Two deliveries of the
        same event always produce the same key.
    """
    if not version:
        version = payload_digest(payload if payload is not None else {})
    return f"{source}:{resource_type}:{resource_id}:{version}"


class IdempotencyGuard:
    """Check-and-mark guard over the store's idempotency tokens.

    ``should_process`` performs the check and the mark as one step under an
    asyncio lock, so two concurrent deliveries of the same event cannot both
    pass. The store's unique key is the second line of defence across
    processes.

    Args:
        store: Record store persisting idempotency tokens.
        default_ttl: Lifetime of tokens created by ``should_process``.
    """

    def __init__(self, store: RecordStore, default_ttl: timedelta = DEFAULT_IDEMPOTENCY_TTL) -> None:
        self._store = store
        self._default_ttl = default_ttl
        self._lock = asyncio.Lock()

    async def is_processed(self, key: str) -> bool:
        """True when an unexpired token exists for ``key``."""
        token = await self._store.check_idempotency_key(key)
        return token is not None and not token.is_expired()

    async def should_process(self, key: str, source: str = "", event_type: str = "") -> bool:
        """Return True exactly once per key within the token lifetime.

        The first call persists a token and returns True; later calls with
        the same key return False until the token expires.
        """
        async with self._lock:
            if await self.is_processed(key):
                logger.info("idempotency.duplicate", key=key, source=source)
                return False
            try:
                await self._create(key, self._default_ttl, source, event_type)
            except DuplicateEventError:
                logger.info("idempotency.duplicate_race", key=key, source=source)
                return False
            return True

    async def mark_processed(
        self,
        key: str,
        ttl: timedelta | None = None,
        source: str = "",
        event_type: str = "",
        result: dict[str, Any] | None = None,
    ) -> bool:
        """Persist a token for ``key``. Returns False if a live token already existed."""
        async with self._lock:
            try:
                await self._create(key, ttl or self._default_ttl, source, event_type, result)
            except DuplicateEventError:
                return False
            return True

    async def _create(
        self,
        key: str,
        ttl: timedelta,
        source: str,
        event_type: str,
        result: dict[str, Any] | None = None,
    ) -> None:
        now = datetime.now(timezone.utc)
        await self._store.create_idempotency_key(
            IdempotencyToken(
                key=key,
                source=source,
                event_type=event_type,
                result=result,
                created_at=now,
                expires_at=now + ttl,
            )
        )


class ReentrancyGuard:
    """Per-job running flag. Overlapping invocations are skipped, not queued.

    Args:
        name: Job name used in log events.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def try_acquire(self) -> bool:
        """Set the flag and return True, or return False if it is already set."""
        if self._running:
            return False
        self._running = True
        return True

    def release(self) -> None:
        self._running = False

    @asynccontextmanager
    async def hold(self) -> AsyncIterator[bool]:
        """Yield True while holding the flag, False when another run holds it.

        The flag is always released on exit when this context acquired it,
        including when the body raises.
        """
        acquired = self.try_acquire()
        if not acquired:
            logger.info("reentrancy.skipped", job=self.name)
            yield False
            return
        try:
            yield True
        finally:
            self.release()
