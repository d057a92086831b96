"""
Export runner - what a worker executes for one WorkItem.

Loads the job, positions source/sink/encoder at the job's checkpoint, runs
the pipeline, and classifies the result into an ExportOutcome. The runner
never changes job status itself: progress goes through the
JobStateManager as proposals, and the outcome is handed back through the
pool's completion callback.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from exceptions import ExportServiceError, StructuralCorruptionError, TransientIOError
from exports.encoders import get_encoder
from exports.filters import ExportFilters
from exports.pipeline import (
    CONTINUE,
    Checkpoint,
    ControlResult,
    ProgressReport,
    ProgressTracker,
    Stop,
    StopReason,
    run_pipeline,
)
from exports.records import RecordStore
from exports.sink import ArtifactSink, artifact_filename, artifact_path
from jobs.job_store import JobStatus
from jobs.state_manager import JobStateManager
from jobs.worker_pool import ControlChannel, ControlSignal, WorkItem

logger = logging.getLogger(__name__)

SIGNAL_REASONS = {
    ControlSignal.PAUSE: StopReason.PAUSED,
    ControlSignal.CANCEL: StopReason.CANCELLED,
}


class OutcomeKind(str, Enum):
    COMPLETED = "completed"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    SUPERSEDED = "superseded"
    FAILED = "failed"
    CORRUPTED = "corrupted"
    TRANSIENT = "transient"


@dataclass
class ExportOutcome:
    kind: OutcomeKind
    job_id: str
    attempt: int
    processed_items: int = 0
    checkpoint: Optional[Checkpoint] = None
    filename: Optional[str] = None
    temp_path: Optional[str] = None
    size_bytes: int = 0
    error: Optional[str] = None


class ExportRunner:
    """Worker executor for export jobs."""

    def __init__(
        self,
        state_manager: JobStateManager,
        record_store: RecordStore,
        temp_dir: str,
        buffer_limit: int = 1024 * 1024,
        threshold_percent: int = 1,
        checkpoint_interval: int = 500,
    ):
        self.state_manager = state_manager
        self.record_store = record_store
        self.temp_dir = temp_dir
        self.buffer_limit = buffer_limit
        self.threshold_percent = threshold_percent
        self.checkpoint_interval = checkpoint_interval

    async def __call__(self, item: WorkItem, control: ControlChannel) -> ExportOutcome:
        job = await self.state_manager.get(item.job_id)
        if job.attempt != item.attempt or job.status != JobStatus.PROCESSING:
            logger.info(f"Skipping job {job.id}: lease {item.attempt} no longer current")
            return ExportOutcome(OutcomeKind.SUPERSEDED, job.id, item.attempt)

        path = artifact_path(self.temp_dir, job.id, job.format.value)
        resume = job.processed_items > 0 and job.last_processed_key is not None

        def stop_check() -> Optional[StopReason]:
            signal = control.poll(job.id)
            return SIGNAL_REASONS.get(signal) if signal else None

        async def on_progress(report: ProgressReport) -> ControlResult:
            reason = stop_check()
            if reason is not None:
                return Stop(reason)
            accepted = await self.state_manager.update_progress(
                job.id,
                report.processed_items,
                report.total_items,
                report.percentage,
                last_processed_key=report.checkpoint.last_processed_key,
                byte_offset=report.checkpoint.byte_offset,
                attempt=item.attempt,
            )
            return CONTINUE if accepted else Stop(StopReason.SUPERSEDED)

        try:
            filters = ExportFilters.parse(job.filters)
            sort = filters.sort
            total = await self.record_store.count(filters, job.created_at)
            sink = await ArtifactSink.open(
                path,
                checkpoint_offset=job.last_valid_byte_offset if resume else 0,
                resume=resume,
                buffer_limit=self.buffer_limit,
            )
            tracker = ProgressTracker(
                total_items=total,
                processed_items=job.processed_items if resume else 0,
                reported_percentage=job.percentage if resume else 0,
                threshold_percent=self.threshold_percent,
                checkpoint_interval=self.checkpoint_interval,
            )
            if resume:
                logger.info(f"Resuming job {job.id} after {job.processed_items} records at byte {job.last_valid_byte_offset}")

            result = await run_pipeline(
                self.record_store.iterate(
                    filters,
                    job.created_at,
                    after=sort.decode_key(job.last_processed_key) if resume else None,
                ),
                sort,
                get_encoder(job.format.value, resume=resume),
                sink,
                tracker,
                on_progress,
                stop_check=stop_check,
                resume_key=job.last_processed_key if resume else None,
            )
        except StructuralCorruptionError as e:
            return ExportOutcome(OutcomeKind.CORRUPTED, job.id, item.attempt, temp_path=str(path), error=e.message)
        except TransientIOError as e:
            return ExportOutcome(OutcomeKind.TRANSIENT, job.id, item.attempt, error=e.message)
        except ExportServiceError as e:
            return ExportOutcome(OutcomeKind.FAILED, job.id, item.attempt, temp_path=str(path), error=e.message)

        outcome = ExportOutcome(
            OutcomeKind.COMPLETED,
            job.id,
            item.attempt,
            processed_items=result.processed_items,
            checkpoint=result.checkpoint,
            temp_path=str(path),
            size_bytes=result.size_bytes,
        )
        if result.completed:
            outcome.filename = artifact_filename(job.id, job.format.value)
        else:
            outcome.kind = OutcomeKind(result.stop_reason.value)
        return outcome
