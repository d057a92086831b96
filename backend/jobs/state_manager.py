"""
Job State Manager - sole writer of ExportJob records.

Every mutation of a job goes through a per-job FIFO mailbox, so progress
reports from a worker, checkpoints from its pipeline and user commands are
applied one at a time and in arrival order. Each mutation:

1. loads the last persisted snapshot,
2. validates the transition against LEGAL_TRANSITIONS,
3. writes only the fields that changed (with retry on TransientIOError),
4. broadcasts one `export:status` event, plus `export:completed`,
   `export:failed` or `export:cancelled` when the job became terminal.

Progress writes are best-effort (one attempt); completion writes are retried
harder than any other write.
"""

import asyncio
import logging
from collections import deque
from typing import Any, Awaitable, Callable, Optional, TypeVar

from exceptions import (
    InvalidTransitionError,
    JobNotFoundError,
    LeaseLostError,
    TransientIOError,
)
from jobs.broadcaster import (
    Broadcaster,
    CANCELLED_EVENT,
    COMPLETED_EVENT,
    FAILED_EVENT,
    STATUS_EVENT,
)
from jobs.job_store import ExportJob, JobStatus, JobStore, can_transition, utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Fields that appear in the status broadcast
BROADCAST_FIELDS = frozenset({
    "status",
    "processed_items",
    "total_items",
    "percentage",
    "filename",
    "error",
})

TERMINAL_EVENTS = {
    JobStatus.COMPLETED: COMPLETED_EVENT,
    JobStatus.FAILED: FAILED_EVENT,
    JobStatus.CANCELLED: CANCELLED_EVENT,
}

Decision = Optional[dict[str, Any]]


def status_payload(job: ExportJob) -> dict[str, Any]:
    """Broadcast schema for a job status change."""
    payload = {
        "jobId": job.id,
        "status": job.status.value,
        "progress": job.percentage,
        "processedItems": job.processed_items,
        "totalItems": job.total_items,
    }
    if job.filename:
        payload["filename"] = job.filename
    if job.error:
        payload["error"] = job.error
    return payload


def terminal_payload(job: ExportJob) -> dict[str, Any]:
    if job.status == JobStatus.COMPLETED:
        return {
            "jobId": job.id,
            "filename": job.filename,
            "totalItems": job.total_items,
            "sizeBytes": job.size_bytes,
        }
    return {"jobId": job.id, "error": job.error}


class JobStateManager:
    """Serialized state machine and broadcaster for export jobs."""

    def __init__(
        self,
        job_store: JobStore,
        broadcaster: Broadcaster,
        state_write_attempts: int = 3,
        completion_write_attempts: int = 6,
        retry_delay_base: float = 0.5,
    ):
        self.job_store = job_store
        self.broadcaster = broadcaster
        self.state_write_attempts = state_write_attempts
        self.completion_write_attempts = completion_write_attempts
        self.retry_delay_base = retry_delay_base
        self._snapshots: dict[str, ExportJob] = {}
        self._mailboxes: dict[str, deque] = {}
        self._drainers: dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Mailbox
    # ------------------------------------------------------------------

    async def _submit(self, job_id: str, operation: Callable[[], Awaitable[T]]) -> T:
        """Run `operation` after every earlier operation for the same job."""
        future = asyncio.get_running_loop().create_future()
        self._mailboxes.setdefault(job_id, deque()).append((operation, future))
        if job_id not in self._drainers:
            self._drainers[job_id] = asyncio.create_task(self._drain(job_id))
        return await future

    async def _drain(self, job_id: str) -> None:
        mailbox = self._mailboxes[job_id]
        try:
            while mailbox:
                operation, future = mailbox.popleft()
                if future.cancelled():
                    continue
                try:
                    result = await operation()
                except Exception as e:
                    if not future.done():
                        future.set_exception(e)
                else:
                    if not future.done():
                        future.set_result(result)
        finally:
            while mailbox:
                _, future = mailbox.popleft()
                if not future.done():
                    future.cancel()
            del self._mailboxes[job_id]
            del self._drainers[job_id]
            snapshot = self._snapshots.get(job_id)
            if snapshot is not None and snapshot.is_terminal:
                del self._snapshots[job_id]

    async def close(self) -> None:
        """Wait for queued mutations to finish."""
        pending = list(self._drainers.values())
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def _load(self, job_id: str) -> ExportJob:
        snapshot = self._snapshots.get(job_id)
        if snapshot is None:
            snapshot = await self.job_store.get_job(job_id)
            if snapshot is None:
                raise JobNotFoundError(job_id)
            self._snapshots[job_id] = snapshot
        return snapshot

    async def _write_once(
        self,
        job_id: str,
        decide: Callable[[ExportJob], Decision],
        guard_version: bool,
    ) -> tuple[ExportJob, bool]:
        current = await self._load(job_id)
        proposed = decide(current)
        if proposed is None:
            return current.copy(), False

        changes = {k: v for k, v in proposed.items() if getattr(current, k) != v}
        if not changes:
            return current.copy(), False

        updated = await self.job_store.update_fields(
            job_id,
            changes,
            expected_version=current.version if guard_version else None,
        )
        if updated is None:
            if guard_version:
                # Version moved underneath us; drop the cached snapshot
                self._snapshots.pop(job_id, None)
                return current.copy(), False
            self._snapshots.pop(job_id, None)
            raise JobNotFoundError(job_id)

        self._snapshots[job_id] = updated
        await self._broadcast(current, updated, changes)
        return updated.copy(), True

    async def _write(
        self,
        job_id: str,
        operation: str,
        decide: Callable[[ExportJob], Decision],
        attempts: int,
        best_effort: bool = False,
        guard_version: bool = False,
    ) -> tuple[Optional[ExportJob], bool]:
        """Apply one decision with bounded exponential backoff."""
        for attempt in range(attempts):
            try:
                return await self._write_once(job_id, decide, guard_version)
            except TransientIOError as e:
                # Cached snapshot may be stale after a failed write
                self._snapshots.pop(job_id, None)
                if attempt < attempts - 1:
                    delay = self.retry_delay_base * (2 ** attempt)
                    logger.warning(
                        f"State write {operation} for job {job_id} failed ({e.operation}), "
                        f"retry {attempt + 1}/{attempts} in {delay}s"
                    )
                    await asyncio.sleep(delay)
                elif best_effort:
                    logger.warning(f"Dropped best-effort {operation} for job {job_id}: {e.message}")
                    return None, False
                else:
                    logger.error(f"State write {operation} for job {job_id} failed after {attempts} attempts")
                    raise
        raise RuntimeError("unreachable")

    async def _broadcast(self, before: ExportJob, after: ExportJob, changes: dict[str, Any]) -> None:
        if not BROADCAST_FIELDS & changes.keys():
            return
        await self.broadcaster.publish(STATUS_EVENT, status_payload(after))
        if "status" in changes and after.status in TERMINAL_EVENTS:
            await self.broadcaster.publish(TERMINAL_EVENTS[after.status], terminal_payload(after))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, job_id: str) -> ExportJob:
        snapshot = self._snapshots.get(job_id)
        if snapshot is not None:
            return snapshot.copy()
        job = await self.job_store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    @staticmethod
    def _require(current: ExportJob, target: JobStatus) -> None:
        if not can_transition(current.status, target):
            raise InvalidTransitionError(current.id, current.status.value, target.value)

    @staticmethod
    def _check_lease(current: ExportJob, attempt: Optional[int]) -> None:
        if attempt is not None and current.attempt != attempt:
            raise LeaseLostError(current.id, attempt, current.attempt)

    async def create(self, job: ExportJob) -> ExportJob:
        """Persist a new pending job and announce it."""
        async def operation():
            for attempt in range(self.state_write_attempts):
                try:
                    await self.job_store.create_job(job)
                    break
                except TransientIOError:
                    if attempt == self.state_write_attempts - 1:
                        raise
                    await asyncio.sleep(self.retry_delay_base * (2 ** attempt))
            self._snapshots[job.id] = job.copy()
            await self.broadcaster.publish(STATUS_EVENT, status_payload(job))
            return job.copy()

        return await self._submit(job.id, operation)

    async def start(self, job_id: str) -> ExportJob:
        """
        Hand the job to a new worker lease.

        pending jobs move to processing; a job that is already processing
        (resumed, recovered or requeued) keeps its status. Either way the
        attempt counter is bumped so reports from any earlier lease are
        rejected. A paused job is only restarted through resume().
        """
        def decide(current: ExportJob) -> Decision:
            changes: dict[str, Any] = {"attempt": current.attempt + 1}
            if current.status == JobStatus.PENDING:
                changes["status"] = JobStatus.PROCESSING
            elif current.status != JobStatus.PROCESSING:
                raise InvalidTransitionError(job_id, current.status.value, JobStatus.PROCESSING.value)
            if current.started_at is None:
                changes["started_at"] = utcnow()
            return changes

        job, _ = await self._submit(job_id, lambda: self._write(
            job_id, "start", decide, self.state_write_attempts))
        return job

    async def update_progress(
        self,
        job_id: str,
        processed_items: int,
        total_items: int,
        percentage: int,
        last_processed_key: Optional[list] = None,
        byte_offset: Optional[int] = None,
        attempt: Optional[int] = None,
    ) -> bool:
        """
        Record progress and, optionally, a durable checkpoint.

        Returns False when the report must stop its worker: the lease is
        stale or the job is no longer processing.
        """
        def decide(current: ExportJob) -> Decision:
            self._check_lease(current, attempt)
            if current.status != JobStatus.PROCESSING:
                raise InvalidTransitionError(job_id, current.status.value, JobStatus.PROCESSING.value)
            if processed_items < current.processed_items:
                # Out-of-order report
                return None
            changes: dict[str, Any] = {
                "processed_items": processed_items,
                "total_items": total_items,
                "percentage": max(current.percentage, min(percentage, 100)),
            }
            if byte_offset is not None:
                changes["last_processed_key"] = last_processed_key
                changes["last_valid_byte_offset"] = byte_offset
            return changes

        try:
            await self._submit(job_id, lambda: self._write(
                job_id, "update_progress", decide, 1, best_effort=True))
        except (LeaseLostError, InvalidTransitionError) as e:
            logger.info(f"Progress report rejected for job {job_id}: {e.message}")
            return False
        return True

    async def pause(
        self,
        job_id: str,
        processed_items: Optional[int] = None,
        last_processed_key: Optional[list] = None,
        byte_offset: Optional[int] = None,
        attempt: Optional[int] = None,
    ) -> ExportJob:
        """processing -> paused, storing the worker's final checkpoint if given."""
        def decide(current: ExportJob) -> Decision:
            self._check_lease(current, attempt)
            self._require(current, JobStatus.PAUSED)
            changes: dict[str, Any] = {"status": JobStatus.PAUSED}
            if processed_items is not None and processed_items >= current.processed_items:
                changes["processed_items"] = processed_items
                if current.total_items:
                    changes["percentage"] = max(
                        current.percentage,
                        min(100, processed_items * 100 // current.total_items),
                    )
                if byte_offset is not None:
                    changes["last_processed_key"] = last_processed_key
                    changes["last_valid_byte_offset"] = byte_offset
            return changes

        job, _ = await self._submit(job_id, lambda: self._write(
            job_id, "pause", decide, self.state_write_attempts))
        logger.info(f"Export job {job_id} paused at {job.processed_items}/{job.total_items}")
        return job

    async def resume(self, job_id: str) -> ExportJob:
        """paused -> processing"""
        def decide(current: ExportJob) -> Decision:
            if current.status != JobStatus.PAUSED:
                raise InvalidTransitionError(job_id, current.status.value, JobStatus.PROCESSING.value)
            return {"status": JobStatus.PROCESSING, "error": None}

        job, _ = await self._submit(job_id, lambda: self._write(
            job_id, "resume", decide, self.state_write_attempts))
        logger.info(f"Export job {job_id} resumed from {job.processed_items}/{job.total_items}")
        return job

    async def cancel(
        self,
        job_id: str,
        reason: str = "Export cancelled by user",
        attempt: Optional[int] = None,
    ) -> ExportJob:
        """processing|paused -> cancelled"""
        def decide(current: ExportJob) -> Decision:
            self._check_lease(current, attempt)
            self._require(current, JobStatus.CANCELLED)
            return {
                "status": JobStatus.CANCELLED,
                "error": reason,
                "completed_at": utcnow(),
            }

        job, _ = await self._submit(job_id, lambda: self._write(
            job_id, "cancel", decide, self.state_write_attempts))
        logger.info(f"Export job {job_id} cancelled")
        return job

    async def complete(
        self,
        job_id: str,
        filename: str,
        total_items: int,
        size_bytes: int,
        temp_path: str,
        attempt: Optional[int] = None,
    ) -> ExportJob:
        """processing -> completed, retried with completion_write_attempts."""
        def decide(current: ExportJob) -> Decision:
            if current.status == JobStatus.COMPLETED:
                # A retried write that already landed
                return None
            self._check_lease(current, attempt)
            self._require(current, JobStatus.COMPLETED)
            return {
                "status": JobStatus.COMPLETED,
                "processed_items": total_items,
                "total_items": total_items,
                "percentage": 100,
                "filename": filename,
                "size_bytes": size_bytes,
                "temp_path": temp_path,
                "error": None,
                "completed_at": utcnow(),
            }

        job, _ = await self._submit(job_id, lambda: self._write(
            job_id, "complete", decide, self.completion_write_attempts))
        logger.info(f"Export job {job_id} completed: {filename} ({total_items} records, {size_bytes} bytes)")
        return job

    async def fail(self, job_id: str, error: str, attempt: Optional[int] = None) -> ExportJob:
        """processing -> failed"""
        def decide(current: ExportJob) -> Decision:
            self._check_lease(current, attempt)
            self._require(current, JobStatus.FAILED)
            return {
                "status": JobStatus.FAILED,
                "error": error,
                "completed_at": utcnow(),
            }

        job, _ = await self._submit(job_id, lambda: self._write(
            job_id, "fail", decide, self.completion_write_attempts))
        logger.warning(f"Export job {job_id} failed: {error}")
        return job

    async def reset_checkpoint(self, job_id: str, attempt: Optional[int] = None) -> ExportJob:
        """
        Corruption recovery: rewind progress and checkpoint to zero.

        The only mutation allowed to decrease processed_items.
        """
        def decide(current: ExportJob) -> Decision:
            self._check_lease(current, attempt)
            if current.status != JobStatus.PROCESSING:
                raise InvalidTransitionError(job_id, current.status.value, JobStatus.PROCESSING.value)
            return {
                "processed_items": 0,
                "percentage": 0,
                "last_processed_key": None,
                "last_valid_byte_offset": 0,
                "restarts": current.restarts + 1,
            }

        job, _ = await self._submit(job_id, lambda: self._write(
            job_id, "reset_checkpoint", decide, self.state_write_attempts))
        logger.warning(f"Export job {job_id} checkpoint reset (restart {job.restarts})")
        return job

    async def record_retry(self, job_id: str, attempt: Optional[int] = None) -> ExportJob:
        """Count one transient-failure retry for the job."""
        def decide(current: ExportJob) -> Decision:
            self._check_lease(current, attempt)
            return {"retries": current.retries + 1}

        job, _ = await self._submit(job_id, lambda: self._write(
            job_id, "record_retry", decide, self.state_write_attempts))
        return job

    async def requeue_stalled(self, job_id: str, expected_version: int) -> bool:
        """
        Revoke the current lease of a stalled processing job.

        Applies only if the record is still at `expected_version`; any write
        by a slow but alive worker since the stall was observed wins.
        """
        def decide(current: ExportJob) -> Decision:
            if current.status != JobStatus.PROCESSING or current.version != expected_version:
                return None
            return {"attempt": current.attempt + 1}

        _, changed = await self._submit(job_id, lambda: self._write(
            job_id, "requeue_stalled", decide, self.state_write_attempts, guard_version=True))
        if changed:
            logger.warning(f"Export job {job_id} stalled, lease revoked")
        return changed

    async def detach_artifact(self, job_id: str) -> ExportJob:
        """Clear the result pointer of a terminal job whose artifact was reaped."""
        def decide(current: ExportJob) -> Decision:
            if not current.is_terminal:
                raise InvalidTransitionError(job_id, current.status.value, "artifact-detached")
            return {"temp_path": None}

        job, _ = await self._submit(job_id, lambda: self._write(
            job_id, "detach_artifact", decide, self.state_write_attempts))
        return job
