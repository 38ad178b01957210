"""Tests for SyncJob and SyncScheduler.

Runners are AsyncMock or small coroutines; the store is in-memory.

Covers:
    - absent or disabled config skips the run
    - a run arriving while one is in flight is skipped, not queued
    - AuthExpiredError from the runner disables the job and persists enabled=false
    - a result flagged auth_expired disables the job the same way
    - generic runner failure -> FAILED, job stays enabled
    - scheduler registration, lookup and run_now
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from src.recordsync.errors import AuthExpiredError, NotFoundError
from src.recordsync.records.schemas import EntityType, SyncCounters, SyncPassResult, SyncRunResult
from src.recordsync.scheduler.jobs import JobOutcome, JobStatus, SyncJob, SyncScheduler
from tests.fakes import InMemoryRecordStore


# ── Helpers ─────────────────────────────────────────────────────────────────


def _make_job(store: InMemoryRecordStore, runner=None, **overrides) -> SyncJob:
    defaults = {
        "name": "crm_sync",
        "runner": runner or AsyncMock(return_value={"synced": 3}),
        "store": store,
        "config_key": "crm_sync",
        "interval_seconds": 60,
    }
    defaults.update(overrides)
    return SyncJob(**defaults)


async def _enable(store: InMemoryRecordStore, key: str = "crm_sync") -> None:
    await store.set_automation_config(key, {"enabled": True, "batch": 10})


# ── Config Gate ─────────────────────────────────────────────────────────────


class TestConfigGate:
    async def test_absent_config_skips(self, store) -> None:
        runner = AsyncMock()
        job = _make_job(store, runner)

        outcome = await job.run()

        assert outcome == JobOutcome.SKIPPED_DISABLED
        assert job.state.status == JobStatus.DISABLED
        runner.assert_not_awaited()

    async def test_enabled_config_runs(self, store) -> None:
        await _enable(store)
        job = _make_job(store)

        outcome = await job.run()

        assert outcome == JobOutcome.COMPLETED
        assert job.state.status == JobStatus.IDLE
        assert job.state.runs == 1
        assert job.state.last_result == {"synced": 3}
        assert job.state.last_run_at is not None

    async def test_config_read_on_every_invocation(self, store) -> None:
        await _enable(store)
        job = _make_job(store)
        assert await job.run() == JobOutcome.COMPLETED

        await store.set_automation_config("crm_sync", {"enabled": False})

        assert await job.run() == JobOutcome.SKIPPED_DISABLED


# ── Reentrancy ──────────────────────────────────────────────────────────────


class TestReentrancy:
    async def test_overlapping_run_is_skipped(self, store) -> None:
        await _enable(store)
        started = asyncio.Event()
        release = asyncio.Event()
        calls = 0

        async def slow_runner() -> dict:
            nonlocal calls
            calls += 1
            started.set()
            await release.wait()
            return {"done": True}

        job = _make_job(store, slow_runner)
        first = asyncio.create_task(job.run())
        await started.wait()

        second = await job.run()
        release.set()
        first_outcome = await first

        assert second == JobOutcome.SKIPPED_RUNNING
        assert first_outcome == JobOutcome.COMPLETED
        assert calls == 1
        assert job.state.skipped_runs == 1
        assert job.guard.running is False

    async def test_flag_cleared_after_failure(self, store) -> None:
        await _enable(store)
        job = _make_job(store, AsyncMock(side_effect=RuntimeError("boom")))

        assert await job.run() == JobOutcome.FAILED
        assert job.guard.running is False
        assert job.state.last_error == "boom"
        assert job.state.status == JobStatus.IDLE


# ── Auth Expiry ─────────────────────────────────────────────────────────────


class TestAuthExpiry:
    async def test_raised_auth_expiry_disables_job(self, store) -> None:
        await _enable(store)
        job = _make_job(store, AsyncMock(side_effect=AuthExpiredError("token revoked")))

        outcome = await job.run()

        assert outcome == JobOutcome.AUTH_EXPIRED
        assert job.state.status == JobStatus.DISABLED
        config = await store.get_automation_config("crm_sync")
        assert config.value["enabled"] is False
        assert config.value["batch"] == 10
        assert "token revoked" in config.value["disabled_reason"]

        assert await job.run() == JobOutcome.SKIPPED_DISABLED

    async def test_flagged_result_disables_job(self, store) -> None:
        await _enable(store)
        run = SyncRunResult(
            passes=[SyncPassResult(entity_type=EntityType.COMPANY, auth_expired=True, aborted=True)]
        )
        job = _make_job(store, AsyncMock(return_value=run))

        outcome = await job.run()

        assert outcome == JobOutcome.AUTH_EXPIRED
        config = await store.get_automation_config("crm_sync")
        assert config.enabled is False

    async def test_healthy_result_keeps_job_enabled(self, store) -> None:
        await _enable(store)
        run = SyncRunResult(
            passes=[SyncPassResult(entity_type=EntityType.COMPANY, counters=SyncCounters(synced=2))]
        )
        job = _make_job(store, AsyncMock(return_value=run))

        assert await job.run() == JobOutcome.COMPLETED
        assert job.state.last_result["passes"][0]["counters"]["synced"] == 2
        assert (await store.get_automation_config("crm_sync")).enabled is True


# ── Scheduler ───────────────────────────────────────────────────────────────


class TestSyncScheduler:
    def test_duplicate_registration_rejected(self, store) -> None:
        scheduler = SyncScheduler([_make_job(store)])

        with pytest.raises(ValueError):
            scheduler.register(_make_job(store))

    def test_unknown_job(self, store) -> None:
        scheduler = SyncScheduler()

        with pytest.raises(NotFoundError):
            scheduler.get("nope")

    async def test_run_now(self, store) -> None:
        await _enable(store)
        scheduler = SyncScheduler([_make_job(store)])

        assert await scheduler.run_now("crm_sync") == JobOutcome.COMPLETED
        assert scheduler.status()[0].last_outcome == JobOutcome.COMPLETED

    async def test_start_and_stop(self, store) -> None:
        scheduler = SyncScheduler([_make_job(store)])

        assert scheduler.start() is True
        assert scheduler.started is True
        scheduler.stop()
        assert scheduler.started is False
