"""
Export Service - orchestration of background exports.

Owns the queue, the worker pool, the job registry and the result cache, and
is the only place where their states are reconciled:

- control operations (start/pause/resume/cancel/status/history/download)
- the dispatcher loop feeding queued jobs to idle workers
- the completion callback that turns worker outcomes into state changes
- the stall monitor and the periodic artifact sweep
"""

import asyncio
import logging
import math
import os
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional

from cache import ResultCache
from config import Settings, settings as default_settings
from exceptions import (
    ExportNotReadyError,
    ExportServiceError,
    ExportValidationError,
    InvalidTransitionError,
    JobNotFoundError,
    LeaseLostError,
    TransientIOError,
)
from exports.encoders import MEDIA_TYPES
from exports.filters import ExportFilters
from exports.lifecycle import ArtifactLifecycle, SweepReport
from exports.records import RecordStore
from exports.runner import ExportOutcome, ExportRunner, OutcomeKind
from exports.sink import artifact_path, remove_artifact
from jobs.broadcaster import Broadcaster
from jobs.job_store import (
    ACTIVE_STATUSES,
    ExportFormat,
    ExportJob,
    JobStatus,
    JobStore,
    can_transition,
    utcnow,
)
from jobs.queue_store import PriorityQueueStore, QueueEntry
from jobs.state_manager import JobStateManager
from jobs.worker_pool import JobRegistry, WorkItem, WorkerPool, WorkerResult

logger = logging.getLogger(__name__)

MAX_HISTORY_LIMIT = 100

# Rough per-record artifact size used by estimate_export
AVERAGE_RECORD_BYTES = {
    ExportFormat.CSV: 220,
    ExportFormat.JSON: 380,
}


@dataclass
class ExportDownload:
    path: str
    filename: str
    media_type: str
    size_bytes: int


class ExportService:
    """
    Background export orchestrator.

    Usage:
        service = ExportService(job_store, queue_store, broadcaster, record_store)
        await service.start()
        result = await service.start_export("csv", {"status": "completed"})
        ...
        await service.shutdown()
    """

    def __init__(
        self,
        job_store: JobStore,
        queue_store: PriorityQueueStore,
        broadcaster: Broadcaster,
        record_store: RecordStore,
        cache: Optional[ResultCache] = None,
        registry: Optional[JobRegistry] = None,
        config: Optional[Settings] = None,
    ):
        self.config = config or default_settings
        self.job_store = job_store
        self.queue_store = queue_store
        self.broadcaster = broadcaster
        self.record_store = record_store
        self.temp_dir = self.config.export_temp_dir

        self.cache = cache or ResultCache(
            ttl_small=self.config.cache_ttl_small,
            ttl_medium=self.config.cache_ttl_medium,
            ttl_large=self.config.cache_ttl_large,
            medium_threshold_bytes=self.config.cache_medium_threshold_bytes,
            large_threshold_bytes=self.config.cache_large_threshold_bytes,
            max_size=self.config.cache_max_entries,
            enabled=self.config.cache_enabled,
        )
        self.state_manager = JobStateManager(
            job_store,
            broadcaster,
            state_write_attempts=self.config.state_write_attempts,
            completion_write_attempts=self.config.completion_write_attempts,
            retry_delay_base=self.config.retry_delay_base,
        )
        self.runner = ExportRunner(
            self.state_manager,
            record_store,
            self.temp_dir,
            buffer_limit=self.config.sink_buffer_bytes,
            threshold_percent=self.config.progress_threshold_percent,
            checkpoint_interval=self.config.checkpoint_interval_records,
        )
        self.registry = registry or JobRegistry()
        self.pool = WorkerPool(
            self.config.worker_pool_size,
            self.runner,
            self._handle_result,
            self.registry,
        )
        self.lifecycle = ArtifactLifecycle(
            self.state_manager,
            job_store,
            queue_store,
            self.cache,
            self.temp_dir,
            artifact_retention_hours=self.config.artifact_retention_hours,
            orphan_min_age_hours=self.config.orphan_min_age_hours,
            job_retention_days=self.config.job_retention_days,
            queue_entry_retention_hours=self.config.queue_entry_retention_hours,
        )

        self._wakeup = asyncio.Event()
        self._dispatcher_task: Optional[asyncio.Task] = None
        self._stall_task: Optional[asyncio.Task] = None
        self._scheduled: dict[str, asyncio.Task] = {}
        self._running = False

    # ==================== Lifecycle ====================

    async def start(self, run_background_tasks: bool = True) -> None:
        """Recover queued work and start the pool and dispatcher."""
        if self._running:
            return
        os.makedirs(self.temp_dir, exist_ok=True)
        await self.job_store.init_table()
        await self.recover()
        await self.pool.start()
        self._running = True
        if run_background_tasks:
            self._dispatcher_task = asyncio.create_task(self._dispatch_loop(), name="export-dispatcher")
            self._stall_task = asyncio.create_task(self._stall_loop(), name="export-stall-monitor")
        logger.info(f"Export service started (temp dir: {self.temp_dir})")

    async def shutdown(self) -> None:
        """
        Stop dispatching and kill the workers.

        Jobs that were running stay `processing` and are requeued by
        recover() on the next start.
        """
        self._running = False
        tasks = [t for t in (self._dispatcher_task, self._stall_task) if t is not None]
        tasks.extend(self._scheduled.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._scheduled.clear()
        await self.pool.shutdown()
        await self.state_manager.close()
        logger.info("Export service stopped")

    async def recover(self) -> dict[str, list[str]]:
        """
        Reconcile the queue with durable job records after a restart.

        Queue entries left in processing are requeued unless their job is
        already terminal. Active jobs with no queue entry at all (e.g. the
        in-memory queue was lost) are enqueued again.
        """
        async def is_terminal(job_id: str) -> bool:
            job = await self.job_store.get_job(job_id)
            return job is None or job.is_terminal

        report = await self.queue_store.recover(is_terminal)
        enqueued = []
        for job in await self.job_store.list_by_status([JobStatus.PENDING, JobStatus.PROCESSING]):
            if await self.queue_store.get_status(job.id) is None:
                await self.queue_store.enqueue(job.id, job.priority)
                enqueued.append(job.id)

        if report.recovered or report.discarded or enqueued:
            logger.info(
                f"Recovered {len(report.recovered)} queued jobs, discarded {len(report.discarded)}, "
                f"re-enqueued {len(enqueued)}"
            )
        self._wakeup.set()
        return {
            "recovered": report.recovered,
            "discarded": report.discarded,
            "enqueued": enqueued,
        }

    # ==================== Control operations ====================

    def _parse_format(self, export_format: Any) -> ExportFormat:
        try:
            return ExportFormat(str(export_format).lower())
        except ValueError:
            raise ExportValidationError(
                f"Unsupported export format: {export_format}",
                field="format",
                value=export_format,
            )

    def _parse_priority(self, priority: Any) -> int:
        if priority is None:
            return self.config.default_priority
        if isinstance(priority, bool) or not isinstance(priority, int):
            raise ExportValidationError("Priority must be an integer", field="priority", value=priority)
        if not 0 <= priority <= self.config.max_priority:
            raise ExportValidationError(
                f"Priority must be between 0 and {self.config.max_priority}",
                field="priority",
                value=priority,
            )
        return priority

    async def _reusable_job(self, entry, filters: ExportFilters) -> Optional[ExportJob]:
        """Job behind a cache entry if its result can still be handed out."""
        try:
            job = await self.state_manager.get(entry.job_id)
        except JobNotFoundError:
            return None

        if entry.in_flight:
            return job if job.status in ACTIVE_STATUSES else None

        if job.status != JobStatus.COMPLETED or not job.temp_path or not os.path.exists(job.temp_path):
            return None
        latest = await self.record_store.latest_update(filters, utcnow())
        if latest is not None and job.completed_at is not None and latest > job.completed_at:
            logger.info(f"Cached export {job.id} is stale (records changed at {latest.isoformat()})")
            return None
        return job

    async def start_export(
        self,
        export_format: Any,
        filters: Optional[dict[str, Any]] = None,
        client_id: Optional[str] = None,
        priority: Optional[int] = None,
    ) -> dict[str, Any]:
        """
        Create (or reuse) an export.

        Returns:
            {"job": ExportJob, "cached": bool, "reused": bool}. `cached` means
            a completed artifact is handed out; `reused` means an identical
            export is already running and its job is returned.
        """
        fmt = self._parse_format(export_format)
        priority = self._parse_priority(priority)
        parsed = ExportFilters.parse(filters)
        key = parsed.fingerprint(fmt.value)

        async with self.cache.lock:
            entry = self.cache.get(key)
            if entry is not None:
                job = await self._reusable_job(entry, parsed)
                if job is not None:
                    logger.info(f"Export request served by job {job.id} ({'in flight' if entry.in_flight else 'cached'})")
                    return {"job": job, "cached": not entry.in_flight, "reused": entry.in_flight}
                self.cache.drop(key, entry.job_id)

            job = ExportJob(
                id=str(uuid.uuid4()),
                format=fmt,
                filters=parsed.normalized(),
                priority=priority,
                client_id=client_id,
                cache_key=key,
            )
            job = await self.state_manager.create(job)
            self.cache.register_inflight(key, job.id)

        await self.queue_store.enqueue(job.id, job.priority)
        self._wakeup.set()
        logger.info(f"Export job {job.id} created ({fmt.value}, priority {priority})")
        return {"job": job, "cached": False, "reused": False}

    async def pause_export(self, job_id: str) -> ExportJob:
        """
        Pause a processing job.

        A job held by a worker is signalled and pauses at its next record
        boundary; the returned snapshot is still `processing` in that case.
        """
        job = await self.state_manager.get(job_id)
        if job.status != JobStatus.PROCESSING:
            raise InvalidTransitionError(job_id, job.status.value, JobStatus.PAUSED.value)
        if self.pool.pause(job_id):
            return job

        job = await self.state_manager.pause(job_id)
        await self.queue_store.set_status(job_id, {"status": JobStatus.PAUSED})
        return job

    async def resume_export(self, job_id: str) -> ExportJob:
        job = await self.state_manager.resume(job_id)
        await self.queue_store.enqueue(job.id, job.priority)
        self._wakeup.set()
        return job

    async def cancel_export(self, job_id: str) -> ExportJob:
        """
        Cancel a processing or paused job.

        A held job is signalled and cancelled by its worker; otherwise the
        cancellation is written directly and the artifact deleted.
        """
        job = await self.state_manager.get(job_id)
        if not can_transition(job.status, JobStatus.CANCELLED):
            raise InvalidTransitionError(job_id, job.status.value, JobStatus.CANCELLED.value)
        if self.pool.cancel(job_id):
            return job

        job = await self.state_manager.cancel(job_id)
        await self.queue_store.set_status(job_id, {"status": JobStatus.CANCELLED, "error": job.error})
        await self._discard_artifact(job)
        return job

    async def get_status(self, job_id: str) -> ExportJob:
        return await self.state_manager.get(job_id)

    async def get_history(self, page: int = 1, limit: int = 10) -> dict[str, Any]:
        if page < 1:
            raise ExportValidationError("Page must be at least 1", field="page", value=page)
        if not 1 <= limit <= MAX_HISTORY_LIMIT:
            raise ExportValidationError(
                f"Limit must be between 1 and {MAX_HISTORY_LIMIT}",
                field="limit",
                value=limit,
            )

        total = await self.job_store.count_jobs()
        jobs = await self.job_store.list_jobs(offset=(page - 1) * limit, limit=limit)
        return {
            "jobs": jobs,
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": math.ceil(total / limit) if total else 0,
            },
        }

    async def list_client_jobs(self, client_id: str, limit: int = 50) -> list[ExportJob]:
        return await self.job_store.list_by_client(client_id, limit=limit)

    async def download_export(self, job_id: str) -> ExportDownload:
        job = await self.state_manager.get(job_id)
        if job.status != JobStatus.COMPLETED:
            raise ExportNotReadyError(job_id, job.status.value)
        if not job.temp_path or not os.path.exists(job.temp_path):
            raise ExportNotReadyError(job_id, job.status.value, "Export file is no longer available")
        return ExportDownload(
            path=job.temp_path,
            filename=job.filename or os.path.basename(job.temp_path),
            media_type=MEDIA_TYPES[job.format.value],
            size_bytes=job.size_bytes or os.path.getsize(job.temp_path),
        )

    async def estimate_export(self, export_format: Any, filters: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        fmt = self._parse_format(export_format)
        parsed = ExportFilters.parse(filters)
        count = await self.record_store.count(parsed, utcnow())
        return {
            "format": fmt.value,
            "totalItems": count,
            "estimatedBytes": count * AVERAGE_RECORD_BYTES[fmt],
        }

    async def get_stats(self) -> dict[str, Any]:
        return {
            "queueLength": await self.queue_store.queue_length(),
            "pool": self.pool.status(),
            "cache": self.cache.get_stats(),
            "scheduledRetries": len(self._scheduled),
        }

    async def run_sweep(self) -> SweepReport:
        return await self.lifecycle.sweep()

    # ==================== Dispatcher ====================

    async def _dispatch_loop(self) -> None:
        poll = self.config.dispatch_poll_interval
        while True:
            try:
                if not await self.pool.wait_for_idle(timeout=poll):
                    continue
                self._wakeup.clear()
                entry = await self.queue_store.dequeue_next()
                if entry is None:
                    try:
                        await asyncio.wait_for(self._wakeup.wait(), poll)
                    except asyncio.TimeoutError:
                        pass
                    continue
                await self.dispatch(entry)
            except asyncio.CancelledError:
                break
            except TransientIOError as e:
                logger.warning(f"Dispatcher backing off: {e.message}")
                await asyncio.sleep(poll)
            except Exception as e:
                logger.error(f"Dispatcher error: {type(e).__name__}: {e}", exc_info=True)
                await asyncio.sleep(poll)

    async def dispatch(self, entry: QueueEntry) -> bool:
        """Start a dequeued job on an idle worker. Returns True if submitted."""
        job_id = entry.job_id
        try:
            job = await self.state_manager.get(job_id)
        except JobNotFoundError:
            logger.warning(f"Dropping queue entry for unknown job {job_id}")
            await self.queue_store.remove(job_id)
            return False

        if job.is_terminal or job.status == JobStatus.PAUSED:
            await self.queue_store.set_status(job_id, {"status": job.status})
            return False

        if self.registry.is_held(job_id):
            # Previous lease still winding down
            self._schedule_requeue(job_id, job.priority, self.config.dispatch_poll_interval)
            return False

        try:
            job = await self.state_manager.start(job_id)
        except InvalidTransitionError:
            current = await self.state_manager.get(job_id)
            await self.queue_store.set_status(job_id, {"status": current.status})
            return False
        except TransientIOError as e:
            logger.warning(f"Could not start job {job_id}: {e.message}")
            self._schedule_requeue(job_id, job.priority, self.config.retry_delay_base)
            return False

        if not self.pool.submit(WorkItem(job.id, job.attempt)):
            await self._requeue(job_id, job.priority)
            return False
        return True

    async def _requeue(self, job_id: str, priority: int) -> None:
        if not await self.queue_store.requeue(job_id):
            entry = await self.queue_store.get_status(job_id)
            if entry is None or entry.status == JobStatus.PROCESSING:
                await self.queue_store.enqueue(job_id, priority)
        self._wakeup.set()

    def _schedule_requeue(self, job_id: str, priority: int, delay: float) -> None:
        if job_id in self._scheduled:
            return

        async def requeue_later():
            try:
                await asyncio.sleep(delay)
                job = await self.state_manager.get(job_id)
                if job.status in (JobStatus.PENDING, JobStatus.PROCESSING):
                    await self._requeue(job_id, priority)
            except JobNotFoundError:
                pass
            except TransientIOError as e:
                logger.warning(f"Delayed requeue of job {job_id} failed: {e.message}")
            finally:
                self._scheduled.pop(job_id, None)

        self._scheduled[job_id] = asyncio.create_task(requeue_later(), name=f"export-requeue-{job_id}")

    # ==================== Completion handling ====================

    async def _handle_result(self, result: WorkerResult) -> None:
        """Completion callback: apply one worker outcome."""
        item = result.item
        if result.failure is not None:
            await self._fail_job(item.job_id, result.failure, attempt=None)
            return

        outcome: ExportOutcome = result.outcome
        try:
            await self._apply_outcome(outcome)
        except (LeaseLostError, InvalidTransitionError) as e:
            logger.info(f"Outcome {outcome.kind.value} for job {outcome.job_id} ignored: {e.message}")

    async def _apply_outcome(self, outcome: ExportOutcome) -> None:
        job_id, attempt = outcome.job_id, outcome.attempt

        if outcome.kind == OutcomeKind.COMPLETED:
            job = await self.state_manager.complete(
                job_id,
                filename=outcome.filename,
                total_items=outcome.processed_items,
                size_bytes=outcome.size_bytes,
                temp_path=outcome.temp_path,
                attempt=attempt,
            )
            if job.cache_key:
                self.cache.mark_completed(job.cache_key, job.id, job.temp_path, job.size_bytes or 0, job.completed_at)
            await self.queue_store.set_status(job_id, {"status": JobStatus.COMPLETED})

        elif outcome.kind == OutcomeKind.PAUSED:
            checkpoint = outcome.checkpoint
            await self.state_manager.pause(
                job_id,
                processed_items=outcome.processed_items,
                last_processed_key=checkpoint.last_processed_key if checkpoint else None,
                byte_offset=checkpoint.byte_offset if checkpoint else None,
                attempt=attempt,
            )
            await self.queue_store.set_status(job_id, {"status": JobStatus.PAUSED})

        elif outcome.kind == OutcomeKind.CANCELLED:
            job = await self.state_manager.cancel(job_id, attempt=attempt)
            await self.queue_store.set_status(job_id, {"status": JobStatus.CANCELLED, "error": job.error})
            await self._discard_artifact(job)

        elif outcome.kind == OutcomeKind.FAILED:
            await self._fail_job(job_id, outcome.error or "Export failed", attempt=attempt)

        elif outcome.kind == OutcomeKind.CORRUPTED:
            job = await self.state_manager.get(job_id)
            if job.restarts >= self.config.max_corruption_restarts:
                await self._fail_job(
                    job_id,
                    f"Export artifact corrupted after {job.restarts} restarts: {outcome.error}",
                    attempt=attempt,
                )
                return
            job = await self.state_manager.reset_checkpoint(job_id, attempt=attempt)
            if outcome.temp_path:
                await asyncio.to_thread(remove_artifact, outcome.temp_path)
            await self._requeue(job_id, job.priority)

        elif outcome.kind == OutcomeKind.TRANSIENT:
            job = await self.state_manager.get(job_id)
            if job.retries >= self.config.max_transient_retries:
                await self._fail_job(
                    job_id,
                    f"Export failed after {job.retries} retries: {outcome.error}",
                    attempt=attempt,
                )
                return
            job = await self.state_manager.record_retry(job_id, attempt=attempt)
            delay = self.config.retry_delay_base * (2 ** (job.retries - 1))
            logger.warning(f"Export job {job_id} hit a transient error, retry {job.retries} in {delay}s: {outcome.error}")
            self._schedule_requeue(job_id, job.priority, delay)

        else:
            logger.info(f"Export job {job_id} lease {attempt} superseded")

    async def _fail_job(self, job_id: str, error: str, attempt: Optional[int]) -> None:
        try:
            job = await self.state_manager.fail(job_id, error, attempt=attempt)
        except (LeaseLostError, InvalidTransitionError, JobNotFoundError) as e:
            logger.info(f"Not failing job {job_id}: {e.message}")
            return
        await self.queue_store.set_status(job_id, {"status": JobStatus.FAILED, "error": error})
        await self._discard_artifact(job)

    async def _discard_artifact(self, job: ExportJob) -> None:
        """Delete the artifact of a cancelled or failed job, after its terminal write."""
        path = job.temp_path or str(artifact_path(self.temp_dir, job.id, job.format.value))
        await asyncio.to_thread(remove_artifact, path)
        if job.temp_path:
            await self.state_manager.detach_artifact(job.id)
        if job.cache_key:
            self.cache.drop(job.cache_key, job.id)

    # ==================== Stall monitor ====================

    async def check_stalled(self) -> list[str]:
        """
        Requeue processing jobs that stopped reporting and no worker holds.

        Also re-enqueues old pending jobs that lost their queue entry.
        """
        cutoff = utcnow() - timedelta(seconds=self.config.stall_timeout_seconds)
        requeued = []
        for job in await self.job_store.list_by_status([JobStatus.PENDING, JobStatus.PROCESSING]):
            if job.updated_at >= cutoff or self.registry.is_held(job.id) or job.id in self._scheduled:
                continue
            entry = await self.queue_store.get_status(job.id)
            if entry is not None and entry.status == JobStatus.PENDING:
                continue

            if job.status == JobStatus.PENDING:
                await self.queue_store.enqueue(job.id, job.priority)
            elif await self.state_manager.requeue_stalled(job.id, job.version):
                await self._requeue(job.id, job.priority)
            else:
                continue
            requeued.append(job.id)

        if requeued:
            self._wakeup.set()
        return requeued

    async def _stall_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.config.stall_check_interval_seconds)
                await self.check_stalled()
            except asyncio.CancelledError:
                break
            except ExportServiceError as e:
                logger.warning(f"Stall check failed: {e.message}")
            except Exception as e:
                logger.error(f"Stall monitor error: {type(e).__name__}: {e}", exc_info=True)
