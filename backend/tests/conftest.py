"""
Pytest fixtures for export service tests.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from config import Settings
from exports.models import TaskRecord
from exports.records import InMemoryRecordStore
from exports.service import ExportService
from jobs.broadcaster import InMemoryBroadcaster
from jobs.job_store import JobStore
from jobs.queue_store import InMemoryPriorityQueueStore

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_records(count: int, **overrides) -> list[TaskRecord]:
    """Records with distinct, increasing timestamps."""
    records = []
    for i in range(count):
        fields = {
            "id": f"task-{i:03d}",
            "title": f"Task {i}",
            "description": f"Description for task {i}",
            "status": "completed" if i % 2 else "pending",
            "priority": ("low", "medium", "high")[i % 3],
            "created_at": BASE_TIME + timedelta(minutes=i),
            "updated_at": BASE_TIME + timedelta(minutes=i, seconds=30),
            "estimated_time": 30 + i,
            "actual_time": 25 + 2 * i,
        }
        fields.update(overrides)
        records.append(TaskRecord(**fields))
    return records


class GatedRecordStore(InMemoryRecordStore):
    """
    Record store that blocks once before yielding the record at `gate_at`.

    `reached` is set when the gate is hit; the stream continues after
    `release` is set.
    """

    def __init__(self, records, gate_at=None, **kwargs):
        super().__init__(records, **kwargs)
        self.gate_at = gate_at
        self.reached = asyncio.Event()
        self.release = asyncio.Event()

    async def iterate(self, filters, as_of, after=None):
        index = 0
        async for record in super().iterate(filters, as_of, after):
            if self.gate_at is not None and index == self.gate_at:
                self.gate_at = None
                self.reached.set()
                await self.release.wait()
            index += 1
            yield record


async def wait_until(predicate, timeout: float = 5.0, interval: float = 0.01):
    """Poll an async or sync predicate until it is truthy."""
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        result = predicate()
        if asyncio.iscoroutine(result):
            result = await result
        if result:
            return result
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(interval)


@pytest.fixture
def test_settings(tmp_path):
    """Fast, isolated settings."""
    return Settings(
        _env_file=None,
        export_temp_dir=str(tmp_path / "exports"),
        worker_pool_size=2,
        dispatch_poll_interval=0.01,
        retry_delay_base=0.0,
        stall_check_interval_seconds=3600,
        progress_threshold_percent=1,
        checkpoint_interval_records=500,
        sink_buffer_bytes=64,
    )


@pytest.fixture
def records():
    return make_records(10)


@pytest.fixture
def record_store(records):
    return InMemoryRecordStore(records, batch_size=3)


@pytest.fixture
def job_store():
    return JobStore()


@pytest.fixture
def queue_store():
    return InMemoryPriorityQueueStore()


@pytest.fixture
def broadcaster():
    return InMemoryBroadcaster()


@pytest.fixture
def service_factory(test_settings, job_store, queue_store, broadcaster):
    """Build (not start) an ExportService over a given record store."""
    def build(record_store) -> ExportService:
        return ExportService(job_store, queue_store, broadcaster, record_store, config=test_settings)
    return build


@pytest_asyncio.fixture
async def service(service_factory, record_store):
    """Running ExportService over ten in-memory records."""
    export_service = service_factory(record_store)
    await export_service.start()
    yield export_service
    await export_service.shutdown()


@pytest.fixture
def app():
    """Get FastAPI app instance."""
    from main import app
    return app


@pytest_asyncio.fixture
async def async_client(app, service):
    """Async HTTP client wired to the running test service."""
    from dependencies import get_export_service

    app.dependency_overrides[get_export_service] = lambda: service
    app.state.export_service = service
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()
    app.state.export_service = None
