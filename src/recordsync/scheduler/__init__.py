"""Scheduled sync jobs -- gated, non-reentrant job runner and APScheduler wrapper."""

from src.recordsync.scheduler.jobs import (
    JobOutcome,
    JobState,
    JobStatus,
    SyncJob,
    SyncScheduler,
)

__all__ = ["JobOutcome", "JobState", "JobStatus", "SyncJob", "SyncScheduler"]
