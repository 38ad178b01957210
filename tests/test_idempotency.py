"""Tests for IdempotencyGuard, build_dedup_key and ReentrancyGuard.

Covers:
    - should_process: True once, then False for the same key
    - expired tokens no longer block processing
    - mark_processed reports existing live tokens
    - concurrent should_process calls for one key: exactly one wins
    - dedup keys are stable and never depend on receipt time
    - ReentrancyGuard: second acquire refused, release on exception
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from src.recordsync.records.schemas import IdempotencyToken
from src.recordsync.sync.idempotency import (
    IdempotencyGuard,
    ReentrancyGuard,
    build_dedup_key,
    payload_digest,
)


# ── IdempotencyGuard ────────────────────────────────────────────────────────


class TestIdempotencyGuard:
    async def test_first_call_processes_second_skips(self, store) -> None:
        guard = IdempotencyGuard(store)

        assert await guard.should_process("k1", source="hubspot") is True
        assert await guard.should_process("k1", source="hubspot") is False
        assert await guard.is_processed("k1") is True

    async def test_token_ttl_defaults_to_seven_days(self, store) -> None:
        guard = IdempotencyGuard(store)
        await guard.should_process("k1")

        token = store.tokens["k1"]
        assert token.expires_at - token.created_at == timedelta(days=7)

    async def test_expired_token_allows_processing(self, store) -> None:
        past = datetime.now(timezone.utc) - timedelta(days=8)
        store.tokens["k1"] = IdempotencyToken(
            key="k1", created_at=past, expires_at=past + timedelta(days=7)
        )
        guard = IdempotencyGuard(store)

        assert await guard.is_processed("k1") is False
        assert await guard.should_process("k1") is True
        assert store.tokens["k1"].is_expired() is False

    async def test_mark_processed(self, store) -> None:
        guard = IdempotencyGuard(store)

        assert await guard.mark_processed("k1", ttl=timedelta(hours=1), result={"ok": True}) is True
        assert await guard.mark_processed("k1") is False
        assert store.tokens["k1"].result == {"ok": True}

    async def test_concurrent_deliveries_one_wins(self, store) -> None:
        guard = IdempotencyGuard(store)

        results = await asyncio.gather(*(guard.should_process("same") for _ in range(5)))

        assert sorted(results) == [False, False, False, False, True]


# ── Dedup Keys ──────────────────────────────────────────────────────────────


class TestDedupKey:
    def test_versioned_key(self) -> None:
        assert build_dedup_key("hubspot", "company", "42", "evt-1") == "hubspot:company:42:evt-1"

    def test_same_payload_same_key(self) -> None:
        a = build_dedup_key("procore", "vendor", "7", None, {"b": 1, "a": 2})
        b = build_dedup_key("procore", "vendor", "7", None, {"a": 2, "b": 1})
        assert a == b
        assert a.endswith(payload_digest({"a": 2, "b": 1}))

    def test_different_versions_differ(self) -> None:
        assert build_dedup_key("s", "t", "1", "v1") != build_dedup_key("s", "t", "1", "v2")


# ── ReentrancyGuard ─────────────────────────────────────────────────────────


class TestReentrancyGuard:
    def test_second_acquire_refused(self) -> None:
        guard = ReentrancyGuard("crm_sync")

        assert guard.try_acquire() is True
        assert guard.try_acquire() is False
        guard.release()
        assert guard.try_acquire() is True

    async def test_hold_skips_overlapping_run(self) -> None:
        guard = ReentrancyGuard("crm_sync")

        async with guard.hold() as outer:
            async with guard.hold() as inner:
                assert outer is True
                assert inner is False
            assert guard.running is True
        assert guard.running is False

    async def test_flag_released_when_body_raises(self) -> None:
        guard = ReentrancyGuard("crm_sync")

        with pytest.raises(RuntimeError):
            async with guard.hold() as acquired:
                assert acquired
                raise RuntimeError("boom")

        assert guard.running is False
