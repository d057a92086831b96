"""
Artifact lifecycle sweep.

Once a job is terminal its artifact belongs to this sweep. Each run:

1. deletes artifacts of terminal jobs older than the retention window and
   clears the job's result pointer,
2. deletes orphaned export files in the temp dir that no tracked job
   references,
3. drops cache entries that are expired or whose artifact is gone,
4. deletes old terminal job records and queue metadata.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

from cache import ResultCache
from exports.sink import ARTIFACT_PATTERN, artifact_path, remove_artifact
from jobs.job_store import ACTIVE_STATUSES, JobStatus, JobStore, TERMINAL_STATUSES, utcnow
from jobs.queue_store import PriorityQueueStore
from jobs.state_manager import JobStateManager

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    artifacts_removed: int = 0
    orphans_removed: int = 0
    cache_entries_removed: int = 0
    jobs_removed: int = 0
    queue_entries_removed: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


class ArtifactLifecycle:
    """Retention and cleanup of export artifacts and metadata."""

    def __init__(
        self,
        state_manager: JobStateManager,
        job_store: JobStore,
        queue_store: PriorityQueueStore,
        cache: ResultCache,
        temp_dir: str,
        artifact_retention_hours: int = 168,
        orphan_min_age_hours: int = 24,
        job_retention_days: int = 30,
        queue_entry_retention_hours: int = 24,
    ):
        self.state_manager = state_manager
        self.job_store = job_store
        self.queue_store = queue_store
        self.cache = cache
        self.temp_dir = temp_dir
        self.artifact_retention = timedelta(hours=artifact_retention_hours)
        self.orphan_min_age_seconds = orphan_min_age_hours * 3600
        self.job_retention_days = job_retention_days
        self.queue_entry_retention_seconds = queue_entry_retention_hours * 3600

    async def sweep(self, now: Optional[datetime] = None) -> SweepReport:
        now = now or utcnow()
        report = SweepReport()

        report.artifacts_removed = await self._remove_expired_artifacts(now)
        report.orphans_removed = await self._remove_orphans(now)
        report.cache_entries_removed = self.cache.cleanup_expired() + self.cache.prune_missing_artifacts()
        report.jobs_removed = await self.job_store.cleanup_old_jobs(days=self.job_retention_days)
        report.queue_entries_removed = await self.queue_store.cleanup(self.queue_entry_retention_seconds)

        logger.info(
            f"Artifact sweep: {report.artifacts_removed} expired, {report.orphans_removed} orphaned, "
            f"{report.cache_entries_removed} cache entries, {report.jobs_removed} jobs, "
            f"{report.queue_entries_removed} queue entries"
        )
        return report

    async def _remove_expired_artifacts(self, now: datetime) -> int:
        cutoff = now - self.artifact_retention
        removed = 0
        for job in await self.job_store.list_by_status(TERMINAL_STATUSES):
            if not job.temp_path:
                continue
            finished = job.completed_at or job.updated_at
            if finished >= cutoff:
                continue
            await asyncio.to_thread(remove_artifact, job.temp_path)
            await self.state_manager.detach_artifact(job.id)
            if job.cache_key:
                self.cache.drop(job.cache_key, job.id)
            removed += 1
            logger.debug(f"Removed expired artifact for job {job.id}")
        return removed

    async def _referenced_paths(self) -> set[str]:
        referenced = set()
        for job in await self.job_store.list_by_status(list(JobStatus)):
            if job.temp_path:
                referenced.add(str(Path(job.temp_path).resolve()))
            if job.status in ACTIVE_STATUSES:
                path = artifact_path(self.temp_dir, job.id, job.format.value)
                referenced.add(str(path.resolve()))
        return referenced

    async def _remove_orphans(self, now: datetime) -> int:
        directory = Path(self.temp_dir)
        if not directory.is_dir():
            return 0

        referenced = await self._referenced_paths()
        cutoff = time.time() - self.orphan_min_age_seconds
        removed = 0
        for path in directory.iterdir():
            if not ARTIFACT_PATTERN.match(path.name):
                continue
            if str(path.resolve()) in referenced:
                continue
            try:
                if path.stat().st_mtime >= cutoff:
                    continue
            except FileNotFoundError:
                continue
            if remove_artifact(path):
                removed += 1
                logger.info(f"Removed orphaned export file {path.name}")
        return removed
