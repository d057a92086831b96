"""
Streaming export pipeline.

    source cursor -> progress/checkpoint stage -> encoder -> sink

Records are pulled one at a time; the only buffering is the sink's bounded
write buffer, and a full buffer is flushed before the next record is pulled.

At every report point the sink is flushed first and only then is the
progress callback invoked with a checkpoint (last written sort key, durable
byte offset). The callback answers CONTINUE or Stop(reason); a Stop ends
the run without raising and without writing the closing bytes, leaving a
partial artifact that a later run can append to.
"""

import logging
from contextlib import aclosing
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, Optional, Union

from exports.encoders import RecordEncoder
from exports.models import SortSpec, TaskRecord
from exports.sink import ArtifactSink

logger = logging.getLogger(__name__)


class StopReason(str, Enum):
    PAUSED = "paused"
    CANCELLED = "cancelled"
    SUPERSEDED = "superseded"  # lease lost to a requeue


@dataclass(frozen=True)
class Continue:
    pass


@dataclass(frozen=True)
class Stop:
    reason: StopReason


CONTINUE = Continue()
ControlResult = Union[Continue, Stop]


@dataclass(frozen=True)
class Checkpoint:
    last_processed_key: Optional[list]
    byte_offset: int


@dataclass(frozen=True)
class ProgressReport:
    processed_items: int
    total_items: int
    percentage: int
    checkpoint: Checkpoint


@dataclass
class PipelineResult:
    processed_items: int
    checkpoint: Checkpoint
    size_bytes: int
    stop_reason: Optional[StopReason] = None

    @property
    def completed(self) -> bool:
        return self.stop_reason is None

    @property
    def discard_artifact(self) -> bool:
        return self.stop_reason == StopReason.CANCELLED


ProgressCallback = Callable[[ProgressReport], Awaitable[ControlResult]]
StopCheck = Callable[[], Optional[StopReason]]


class ProgressTracker:
    """
    Counts processed records and decides when to report.

    A report is due on the first record of a run, whenever the percentage
    has risen by at least `threshold_percent` since the last report, on the
    last expected record, and at least every `checkpoint_interval` records.
    """

    def __init__(
        self,
        total_items: int,
        processed_items: int = 0,
        reported_percentage: int = 0,
        threshold_percent: int = 1,
        checkpoint_interval: int = 500,
    ):
        self.total_items = total_items
        self.processed_items = processed_items
        self.threshold_percent = max(1, threshold_percent)
        self.checkpoint_interval = max(1, checkpoint_interval)
        self.reported_percentage = reported_percentage
        self._run_count = 0
        self._since_report = 0

    @property
    def percentage(self) -> int:
        if self.total_items <= 0:
            return 0
        return min(100, self.processed_items * 100 // self.total_items)

    def advance(self) -> bool:
        """Count one record; True if a report is due."""
        self.processed_items += 1
        self._run_count += 1
        self._since_report += 1
        return (
            self._run_count == 1
            or self.percentage >= self.reported_percentage + self.threshold_percent
            or self.processed_items >= self.total_items
            or self._since_report >= self.checkpoint_interval
        )

    def reported(self, percentage: int) -> None:
        self.reported_percentage = max(self.reported_percentage, percentage)
        self._since_report = 0


async def run_pipeline(
    source: AsyncIterator[TaskRecord],
    sort: SortSpec,
    encoder: RecordEncoder,
    sink: ArtifactSink,
    tracker: ProgressTracker,
    on_progress: ProgressCallback,
    stop_check: Optional[StopCheck] = None,
    resume_key: Optional[list] = None,
) -> PipelineResult:
    """
    Drive one run of the export pipeline to completion or to a Stop.

    Args:
        source: Records in sort order, already positioned after the checkpoint
        sort: Sort used by the source; provides checkpoint keys
        encoder: Encoder, constructed in resume mode when appending
        sink: Opened sink, positioned at the checkpoint offset
        tracker: Progress tracker seeded with the checkpoint's counts
        on_progress: Awaited at each report point; may return Stop
        stop_check: Cheap poll consulted before each record is written
        resume_key: Encoded key of the checkpoint this run starts from

    The sink is closed on return but never deleted here; deleting a
    cancelled artifact is the caller's job once the cancellation has been
    recorded.
    """
    last_key = resume_key

    async def stop(reason: StopReason) -> PipelineResult:
        offset = await sink.flush()
        logger.info(f"Pipeline stopped ({reason.value}) at {tracker.processed_items} records, {offset} bytes")
        return PipelineResult(
            processed_items=tracker.processed_items,
            checkpoint=Checkpoint(last_key, offset),
            size_bytes=offset,
            stop_reason=reason,
        )

    try:
        async with aclosing(source) as records:
            async for record in records:
                if stop_check is not None:
                    reason = stop_check()
                    if reason is not None:
                        return await stop(reason)

                if sink.write(encoder.encode(record)):
                    await sink.flush()
                last_key = sort.encode_key(sort.key(record))

                if tracker.advance():
                    offset = await sink.flush()
                    percentage = tracker.percentage
                    answer = await on_progress(ProgressReport(
                        processed_items=tracker.processed_items,
                        total_items=tracker.total_items,
                        percentage=percentage,
                        checkpoint=Checkpoint(last_key, offset),
                    ))
                    tracker.reported(percentage)
                    if isinstance(answer, Stop):
                        return await stop(answer.reason)

        offset = await sink.flush()
        if tracker.reported_percentage < 100:
            # Final 100% report; checkpoint still excludes the closing bytes
            answer = await on_progress(ProgressReport(
                processed_items=tracker.processed_items,
                total_items=max(tracker.total_items, tracker.processed_items),
                percentage=100,
                checkpoint=Checkpoint(last_key, offset),
            ))
            tracker.reported(100)
            if isinstance(answer, Stop):
                return await stop(answer.reason)

        sink.write(encoder.finish())
        size = await sink.flush()
        return PipelineResult(
            processed_items=tracker.processed_items,
            checkpoint=Checkpoint(last_key, offset),
            size_bytes=size,
        )
    finally:
        await sink.close()
