"""Scheduled sync jobs with explicit state and an APScheduler wrapper.

SyncJob wraps one runner (a full refresh run, a bulk link run, ...) with:
- a ReentrancyGuard: an invocation arriving while the previous run is still
  in flight is skipped and counted, never queued
- an automation-config gate read on every invocation (absent means disabled)
- auth-expiry handling: when the runner raises AuthExpiredError or returns a
  result flagged ``auth_expired``, the job writes ``enabled: false`` to its
  config and moves to DISABLED until someone re-enables it

SyncScheduler registers each job as an AsyncIOScheduler interval job.
Stopping the scheduler prevents future runs only; in-flight runs finish.

Exports:
    JobStatus, JobOutcome, JobState: Job state machine types.
    SyncJob: One gated, non-reentrant job.
    SyncScheduler: Interval scheduling for a set of SyncJobs.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from pydantic import BaseModel

from src.recordsync.core.monitoring import record_job_disabled, record_job_run
from src.recordsync.errors import AuthExpiredError, NotFoundError
from src.recordsync.records.store import RecordStore
from src.recordsync.sync.idempotency import ReentrancyGuard

logger = structlog.get_logger(__name__)

JobRunner = Callable[[], Awaitable[Any]]


class JobStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    DISABLED = "disabled"


class JobOutcome(str, Enum):
    """What a single invocation of a job did."""

    COMPLETED = "completed"
    SKIPPED_RUNNING = "skipped_running"
    SKIPPED_DISABLED = "skipped_disabled"
    FAILED = "failed"
    AUTH_EXPIRED = "auth_expired"


class JobState(BaseModel):
    """Observable state of a scheduled job."""

    name: str
    config_key: str
    interval_seconds: int
    status: JobStatus = JobStatus.IDLE
    last_run_at: datetime | None = None
    last_outcome: JobOutcome | None = None
    last_result: dict[str, Any] | None = None
    last_error: str | None = None
    runs: int = 0
    skipped_runs: int = 0


def _summarize(result: Any) -> dict[str, Any] | None:
    if result is None:
        return None
    if isinstance(result, BaseModel):
        summary = result.model_dump(mode="json")
        # Per-record result lists can be large; keep counters only
        summary.pop("results", None)
        return summary
    if isinstance(result, dict):
        return result
    return {"result": str(result)}


class SyncJob:
    """A gated, non-reentrant scheduled job.

    Args:
        name: Unique job name.
        runner: Async callable doing the work; its return value is summarized
            into ``state.last_result``.
        store: Record store holding the job's automation config.
        config_key: Automation config key enabling the job.
        interval_seconds: Poll interval used by SyncScheduler.
    """

    def __init__(
        self,
        name: str,
        runner: JobRunner,
        store: RecordStore,
        config_key: str,
        interval_seconds: int = 300,
    ) -> None:
        self.name = name
        self._runner = runner
        self._store = store
        self.guard = ReentrancyGuard(name)
        self.state = JobState(
            name=name, config_key=config_key, interval_seconds=interval_seconds
        )

    @property
    def config_key(self) -> str:
        return self.state.config_key

    @property
    def interval_seconds(self) -> int:
        return self.state.interval_seconds

    async def run(self) -> JobOutcome:
        """Run the job once, honoring the reentrancy guard and the config gate."""
        async with self.guard.hold() as acquired:
            if not acquired:
                self.state.skipped_runs += 1
                return self._finish(JobOutcome.SKIPPED_RUNNING)

            config = await self._store.get_automation_config(self.config_key)
            if config is None or not config.enabled:
                self.state.status = JobStatus.DISABLED
                logger.debug("sync_job.disabled", job=self.name, config_key=self.config_key)
                return self._finish(JobOutcome.SKIPPED_DISABLED)

            self.state.status = JobStatus.RUNNING
            self.state.last_run_at = datetime.now(timezone.utc)
            self.state.runs += 1
            logger.info("sync_job.started", job=self.name)

            try:
                result = await self._runner()
            except AuthExpiredError as exc:
                await self._disable(str(exc))
                return self._finish(JobOutcome.AUTH_EXPIRED)
            except Exception as exc:
                self.state.status = JobStatus.IDLE
                self.state.last_error = str(exc)
                logger.error("sync_job.failed", job=self.name, error=str(exc), exc_info=True)
                return self._finish(JobOutcome.FAILED)

            self.state.last_result = _summarize(result)
            if getattr(result, "auth_expired", False):
                await self._disable("remote credentials expired during run")
                return self._finish(JobOutcome.AUTH_EXPIRED)

            self.state.status = JobStatus.IDLE
            self.state.last_error = None
            logger.info("sync_job.completed", job=self.name, result=self.state.last_result)
            return self._finish(JobOutcome.COMPLETED)

    def _finish(self, outcome: JobOutcome) -> JobOutcome:
        self.state.last_outcome = outcome
        record_job_run(self.name, outcome.value)
        return outcome

    async def _disable(self, reason: str) -> None:
        """Persist ``enabled: false`` for this job and mark it DISABLED."""
        config = await self._store.get_automation_config(self.config_key)
        value = dict(config.value) if config else {}
        value["enabled"] = False
        value["disabled_reason"] = reason
        await self._store.set_automation_config(
            self.config_key, value, is_active=config.is_active if config else True
        )
        self.state.status = JobStatus.DISABLED
        self.state.last_error = reason
        logger.warning("sync_job.auth_expired_disabled", job=self.name, reason=reason)
        record_job_disabled(self.name)


class SyncScheduler:
    """Interval scheduling for SyncJobs on an AsyncIOScheduler.

    Each job gets one interval trigger with ``max_instances=1`` and
    ``coalesce=True``; the job's own ReentrancyGuard additionally covers
    manual ``run_now`` calls overlapping a scheduled run.

    Args:
        jobs: Jobs to schedule.
    """

    def __init__(self, jobs: list[SyncJob] | None = None) -> None:
        self._jobs: dict[str, SyncJob] = {}
        self._scheduler: AsyncIOScheduler | None = None
        self._started = False
        for job in jobs or []:
            self.register(job)

    @property
    def started(self) -> bool:
        return self._started

    def register(self, job: SyncJob) -> None:
        if job.name in self._jobs:
            raise ValueError(f"job '{job.name}' already registered")
        self._jobs[job.name] = job

    def get(self, name: str) -> SyncJob:
        """Return a registered job.

        Raises:
            NotFoundError: If no job has this name.
        """
        job = self._jobs.get(name)
        if job is None:
            raise NotFoundError("job", name)
        return job

    def start(self) -> bool:
        """Start the scheduler. Returns False if it could not be started."""
        if self._started:
            return True
        try:
            self._scheduler = AsyncIOScheduler()
            for job in self._jobs.values():
                self._scheduler.add_job(
                    job.run,
                    trigger=IntervalTrigger(seconds=job.interval_seconds),
                    id=f"recordsync_{job.name}",
                    name=f"Record sync job {job.name}",
                    max_instances=1,
                    coalesce=True,
                    misfire_grace_time=job.interval_seconds,
                )
            self._scheduler.start()
        except Exception as exc:
            logger.warning("sync_scheduler.start_failed", error=str(exc))
            self._scheduler = None
            return False

        self._started = True
        logger.info(
            "sync_scheduler.started",
            jobs={name: job.interval_seconds for name, job in self._jobs.items()},
        )
        return True

    def stop(self) -> None:
        """Prevent future runs. In-flight runs are left to finish."""
        if self._scheduler is not None and self._started:
            self._scheduler.shutdown(wait=False)
            self._started = False
            logger.info("sync_scheduler.stopped")

    def status(self) -> list[JobState]:
        return [job.state.model_copy() for job in self._jobs.values()]

    async def run_now(self, name: str) -> JobOutcome:
        """Run a job immediately, outside its schedule."""
        return await self.get(name).run()
