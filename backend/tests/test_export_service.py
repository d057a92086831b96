"""
End-to-end tests for the export service: dispatch, pause/resume, cancel,
recovery paths, result reuse and the control operations' error cases.
"""

import csv
import io
from datetime import timedelta
from pathlib import Path

import pytest
import pytest_asyncio

from conftest import GatedRecordStore, make_records, wait_until
from exceptions import (
    ExportNotReadyError,
    ExportValidationError,
    InvalidTransitionError,
    JobNotFoundError,
    TransientIOError,
)
from exports.records import InMemoryRecordStore
from exports.runner import ExportOutcome, OutcomeKind
from exports.service import ExportService
from exports.sink import artifact_path
from jobs.broadcaster import STATUS_EVENT
from jobs.job_store import ExportFormat, ExportJob, JobStatus, utcnow
from jobs.worker_pool import WORKER_TERMINATED, WorkItem, WorkerResult


class FlakyRecordStore(InMemoryRecordStore):
    """Fails the first `failures` counts with a transient error."""

    def __init__(self, records, failures=1, **kwargs):
        super().__init__(records, **kwargs)
        self.failures = failures

    async def count(self, filters, as_of):
        if self.failures:
            self.failures -= 1
            raise TransientIOError("count_records", "connection reset")
        return await super().count(filters, as_of)


def has_status(service, job_id, status):
    async def check():
        job = await service.get_status(job_id)
        return job.status == JobStatus(status)
    return check


def csv_ids(path) -> list[str]:
    rows = list(csv.reader(io.StringIO(Path(path).read_text())))
    return [row[0] for row in rows[1:]]


@pytest_asyncio.fixture
async def idle_service(service_factory, record_store):
    """Service that is built but not started: nothing is dispatched."""
    export_service = service_factory(record_store)
    yield export_service
    await export_service.shutdown()


@pytest_asyncio.fixture
async def run_service(service_factory):
    """Start a service over a custom record store; shut everything down afterwards."""
    started = []

    async def build(record_store):
        export_service = service_factory(record_store)
        await export_service.start()
        started.append(export_service)
        return export_service

    yield build
    for export_service in started:
        await export_service.shutdown()


class TestFullExport:
    """Uninterrupted export of ten records."""

    @pytest.mark.asyncio
    async def test_ten_progress_events_and_download(self, service, broadcaster):
        events = broadcaster.listen()
        result = await service.start_export("csv")
        job_id = result["job"].id
        assert result["job"].status == JobStatus.PENDING

        await wait_until(has_status(service, job_id, "completed"))

        progress = []
        while not events.empty():
            event, payload = events.get_nowait()
            if event == STATUS_EVENT and payload["jobId"] == job_id \
                    and payload["status"] == "processing" and payload["processedItems"] > 0:
                progress.append(payload["progress"])
        assert len(progress) == 10
        assert progress == sorted(progress)
        assert progress[-1] == 100

        download = await service.download_export(job_id)
        assert download.media_type == "text/csv"
        assert download.filename == f"export_{job_id}.csv"
        rows = list(csv.reader(io.StringIO(Path(download.path).read_text())))
        assert len(rows) == 11
        assert download.size_bytes == Path(download.path).stat().st_size

    @pytest.mark.asyncio
    async def test_completed_job_fields(self, service):
        job_id = (await service.start_export("json"))["job"].id
        await wait_until(has_status(service, job_id, "completed"))

        job = await service.get_status(job_id)
        assert job.processed_items == job.total_items == 10
        assert job.percentage == 100
        assert job.attempt == 1
        assert job.started_at is not None
        assert job.completed_at is not None
        assert job.temp_path == str(artifact_path(service.temp_dir, job_id, "json"))

    @pytest.mark.asyncio
    async def test_priority_order(self, idle_service):
        low = (await idle_service.start_export("csv", {"status": "pending"}, priority=9))["job"]
        high = (await idle_service.start_export("csv", {"status": "completed"}, priority=0))["job"]

        entry = await idle_service.queue_store.dequeue_next()
        assert entry.job_id == high.id
        assert (await idle_service.queue_store.dequeue_next()).job_id == low.id


class TestPauseResume:
    """Pause at a record boundary and resume from the checkpoint."""

    @pytest.mark.asyncio
    async def test_pause_at_four_then_resume(self, run_service):
        store = GatedRecordStore(make_records(10), gate_at=4, batch_size=3)
        service = await run_service(store)
        job_id = (await service.start_export("csv"))["job"].id

        await wait_until(lambda: store.reached.is_set())
        snapshot = await service.pause_export(job_id)
        assert snapshot.status == JobStatus.PROCESSING
        store.release.set()

        await wait_until(has_status(service, job_id, "paused"))
        paused = await service.get_status(job_id)
        assert paused.processed_items == 4
        assert paused.percentage == 40
        assert paused.last_processed_key is not None
        assert (await service.queue_store.get_status(job_id)).status == JobStatus.PAUSED

        resumed = await service.resume_export(job_id)
        assert resumed.status == JobStatus.PROCESSING
        await wait_until(has_status(service, job_id, "completed"))

        ids = csv_ids((await service.download_export(job_id)).path)
        assert len(ids) == 10
        assert len(set(ids)) == 10
        assert (await service.get_status(job_id)).attempt == 2

    @pytest.mark.asyncio
    async def test_pause_unheld_processing_job(self, idle_service):
        job_id = (await idle_service.start_export("csv"))["job"].id
        await idle_service.state_manager.start(job_id)

        job = await idle_service.pause_export(job_id)

        assert job.status == JobStatus.PAUSED
        assert (await idle_service.queue_store.get_status(job_id)).status == JobStatus.PAUSED

    @pytest.mark.asyncio
    async def test_pause_pending_rejected(self, idle_service):
        job_id = (await idle_service.start_export("csv"))["job"].id
        with pytest.raises(InvalidTransitionError):
            await idle_service.pause_export(job_id)

    @pytest.mark.asyncio
    async def test_resume_requires_paused(self, idle_service):
        job_id = (await idle_service.start_export("csv"))["job"].id
        with pytest.raises(InvalidTransitionError):
            await idle_service.resume_export(job_id)


class TestCancel:
    """Cancellation removes the partial artifact."""

    @pytest.mark.asyncio
    async def test_cancel_at_six(self, run_service):
        store = GatedRecordStore(make_records(10), gate_at=6, batch_size=3)
        service = await run_service(store)
        job_id = (await service.start_export("csv"))["job"].id
        path = artifact_path(service.temp_dir, job_id, "csv")

        await wait_until(lambda: store.reached.is_set())
        assert path.exists()
        await service.cancel_export(job_id)
        store.release.set()

        await wait_until(has_status(service, job_id, "cancelled"))
        await wait_until(lambda: not path.exists())
        job = await service.get_status(job_id)
        assert job.processed_items == 6
        assert job.completed_at is not None
        with pytest.raises(ExportNotReadyError):
            await service.download_export(job_id)

    @pytest.mark.asyncio
    async def test_cancel_paused_job(self, idle_service):
        job_id = (await idle_service.start_export("csv"))["job"].id
        await idle_service.state_manager.start(job_id)
        await idle_service.pause_export(job_id)
        path = artifact_path(idle_service.temp_dir, job_id, "csv")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("partial")

        job = await idle_service.cancel_export(job_id)

        assert job.status == JobStatus.CANCELLED
        assert not path.exists()
        assert (await idle_service.queue_store.get_status(job_id)).status == JobStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_pending_rejected(self, idle_service):
        job_id = (await idle_service.start_export("csv"))["job"].id
        with pytest.raises(InvalidTransitionError):
            await idle_service.cancel_export(job_id)

    @pytest.mark.asyncio
    async def test_cancel_completed_rejected(self, service):
        job_id = (await service.start_export("csv"))["job"].id
        await wait_until(has_status(service, job_id, "completed"))
        with pytest.raises(InvalidTransitionError):
            await service.cancel_export(job_id)


class TestRecoveryPaths:
    """Corruption, transient errors, dead workers and stalls."""

    @pytest.mark.asyncio
    async def test_missing_artifact_restarts_from_zero(self, run_service):
        store = GatedRecordStore(make_records(10), gate_at=4, batch_size=3)
        service = await run_service(store)
        job_id = (await service.start_export("csv"))["job"].id

        await wait_until(lambda: store.reached.is_set())
        await service.pause_export(job_id)
        store.release.set()
        await wait_until(has_status(service, job_id, "paused"))

        artifact_path(service.temp_dir, job_id, "csv").unlink()
        await service.resume_export(job_id)
        await wait_until(has_status(service, job_id, "completed"))

        job = await service.get_status(job_id)
        assert job.restarts == 1
        ids = csv_ids(job.temp_path)
        assert len(ids) == len(set(ids)) == 10

    @pytest.mark.asyncio
    async def test_transient_error_retried(self, run_service):
        service = await run_service(FlakyRecordStore(make_records(10), failures=1))
        job_id = (await service.start_export("csv"))["job"].id

        await wait_until(has_status(service, job_id, "completed"))
        job = await service.get_status(job_id)
        assert job.retries == 1
        assert job.processed_items == 10

    @pytest.mark.asyncio
    async def test_transient_retries_exhausted(self, run_service, test_settings):
        service = await run_service(FlakyRecordStore(make_records(10), failures=100))
        job_id = (await service.start_export("csv"))["job"].id

        await wait_until(has_status(service, job_id, "failed"))
        job = await service.get_status(job_id)
        assert job.retries == test_settings.max_transient_retries
        assert "retries" in job.error

    @pytest.mark.asyncio
    async def test_dead_worker_fails_job(self, idle_service):
        job_id = (await idle_service.start_export("csv"))["job"].id
        job = await idle_service.state_manager.start(job_id)

        await idle_service._handle_result(
            WorkerResult(1, WorkItem(job_id, job.attempt), failure=WORKER_TERMINATED)
        )

        failed = await idle_service.get_status(job_id)
        assert failed.status == JobStatus.FAILED
        assert failed.error == WORKER_TERMINATED
        assert (await idle_service.queue_store.get_status(job_id)).status == JobStatus.FAILED

    @pytest.mark.asyncio
    async def test_stalled_job_requeued_with_new_lease(self, idle_service, job_store):
        old = utcnow() - timedelta(hours=1)
        await job_store.create_job(ExportJob(
            id="stalled",
            format=ExportFormat.CSV,
            status=JobStatus.PROCESSING,
            attempt=1,
            created_at=old,
            updated_at=old,
        ))
        await job_store.create_job(ExportJob(id="fresh", format=ExportFormat.CSV, status=JobStatus.PROCESSING))

        assert await idle_service.check_stalled() == ["stalled"]

        job = await idle_service.get_status("stalled")
        assert job.attempt == 2
        assert (await idle_service.queue_store.get_status("stalled")).status == JobStatus.PENDING
        assert await idle_service.queue_store.get_status("fresh") is None

    @pytest.mark.asyncio
    async def test_recover_requeues_interrupted_jobs(self, idle_service, job_store, queue_store):
        await job_store.create_job(ExportJob(id="running", format=ExportFormat.CSV, status=JobStatus.PROCESSING))
        await queue_store.enqueue("running", 5)
        await queue_store.dequeue_next()
        await job_store.create_job(ExportJob(id="lost", format=ExportFormat.JSON))

        report = await idle_service.recover()

        assert report["recovered"] == ["running"]
        assert report["enqueued"] == ["lost"]
        assert await queue_store.queue_length() == 2

    @pytest.mark.asyncio
    async def test_stale_outcome_ignored(self, idle_service):
        job_id = (await idle_service.start_export("csv"))["job"].id
        await idle_service.state_manager.start(job_id)
        await idle_service.state_manager.start(job_id)

        await idle_service._handle_result(
            WorkerResult(
                1,
                WorkItem(job_id, 1),
                outcome=ExportOutcome(OutcomeKind.FAILED, job_id, 1, error="stale worker"),
            )
        )
        assert (await idle_service.get_status(job_id)).status == JobStatus.PROCESSING


class TestResultReuse:
    """Identical requests attach to running or completed exports."""

    @pytest.mark.asyncio
    async def test_inflight_job_reused(self, idle_service):
        first = await idle_service.start_export("csv", {"status": "completed"})
        second = await idle_service.start_export("CSV", {"status": ["completed"]})

        assert second["reused"] is True
        assert second["cached"] is False
        assert second["job"].id == first["job"].id

        other = await idle_service.start_export("json", {"status": "completed"})
        assert other["job"].id != first["job"].id

    @pytest.mark.asyncio
    async def test_inflight_job_reused_over_cache_capacity(
        self, test_settings, job_store, queue_store, broadcaster, record_store
    ):
        small = test_settings.model_copy(update={"cache_max_entries": 1})
        export_service = ExportService(job_store, queue_store, broadcaster, record_store, config=small)
        try:
            first = await export_service.start_export("csv", {"status": "pending"})
            await export_service.start_export("csv", {"status": "completed"})
            again = await export_service.start_export("csv", {"status": "pending"})

            assert again["reused"] is True
            assert again["job"].id == first["job"].id
            assert len(export_service.cache) == 2
        finally:
            await export_service.shutdown()

    @pytest.mark.asyncio
    async def test_completed_result_served_until_records_change(self, service, record_store):
        job_id = (await service.start_export("csv"))["job"].id
        await wait_until(has_status(service, job_id, "completed"))

        again = await service.start_export("csv")
        assert again["cached"] is True
        assert again["job"].id == job_id

        record_store.upsert(make_records(
            1, id="task-late", updated_at=utcnow() + timedelta(seconds=1)
        )[0])
        fresh = await service.start_export("csv")
        assert fresh["cached"] is False
        assert fresh["job"].id != job_id

    @pytest.mark.asyncio
    async def test_cancelled_job_not_reused(self, idle_service):
        job_id = (await idle_service.start_export("csv"))["job"].id
        await idle_service.state_manager.start(job_id)
        await idle_service.pause_export(job_id)
        await idle_service.cancel_export(job_id)

        again = await idle_service.start_export("csv")
        assert again["job"].id != job_id
        assert again["reused"] is False


class TestControlErrors:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("export_format", ["xml", "", None])
    async def test_unsupported_format(self, idle_service, export_format):
        with pytest.raises(ExportValidationError):
            await idle_service.start_export(export_format)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("priority", [-1, 10, "high", True, 2.5])
    async def test_invalid_priority(self, idle_service, priority):
        with pytest.raises(ExportValidationError) as exc_info:
            await idle_service.start_export("csv", priority=priority)
        assert exc_info.value.details["field"] == "priority"

    @pytest.mark.asyncio
    async def test_invalid_filters(self, idle_service):
        with pytest.raises(ExportValidationError):
            await idle_service.start_export("csv", {"status": "archived"})

    @pytest.mark.asyncio
    async def test_unknown_job(self, idle_service):
        with pytest.raises(JobNotFoundError):
            await idle_service.get_status("missing")
        with pytest.raises(JobNotFoundError):
            await idle_service.pause_export("missing")

    @pytest.mark.asyncio
    async def test_download_before_completion(self, idle_service):
        job_id = (await idle_service.start_export("csv"))["job"].id
        with pytest.raises(ExportNotReadyError) as exc_info:
            await idle_service.download_export(job_id)
        assert exc_info.value.code == "EXPORT_NOT_READY"


class TestQueries:
    @pytest.mark.asyncio
    async def test_history_pagination(self, idle_service):
        for status in ("pending", "completed", "in-progress"):
            await idle_service.start_export("csv", {"status": status}, client_id="client-1")

        first = await idle_service.get_history(page=1, limit=2)
        second = await idle_service.get_history(page=2, limit=2)

        assert len(first["jobs"]) == 2
        assert len(second["jobs"]) == 1
        assert first["pagination"] == {"page": 1, "limit": 2, "total": 3, "pages": 2}
        ids = {j.id for j in first["jobs"]} | {j.id for j in second["jobs"]}
        assert len(ids) == 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize("page,limit", [(0, 10), (1, 0), (1, 101)])
    async def test_history_bounds(self, idle_service, page, limit):
        with pytest.raises(ExportValidationError):
            await idle_service.get_history(page=page, limit=limit)

    @pytest.mark.asyncio
    async def test_client_jobs(self, idle_service):
        await idle_service.start_export("csv", client_id="client-1")
        await idle_service.start_export("json", client_id="client-2")
        jobs = await idle_service.list_client_jobs("client-1")
        assert [j.client_id for j in jobs] == ["client-1"]

    @pytest.mark.asyncio
    async def test_estimate(self, idle_service):
        estimate = await idle_service.estimate_export("json", {"status": "completed"})
        assert estimate == {"format": "json", "totalItems": 5, "estimatedBytes": 5 * 380}

    @pytest.mark.asyncio
    async def test_stats(self, idle_service):
        await idle_service.start_export("csv")
        stats = await idle_service.get_stats()
        assert stats["queueLength"] == 1
        assert stats["cache"]["in_flight"] == 1
        assert stats["scheduledRetries"] == 0
