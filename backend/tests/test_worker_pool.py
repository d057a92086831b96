"""
Tests for the worker pool actors, control channel and job registry.
"""

import asyncio

import pytest
import pytest_asyncio

from conftest import wait_until
from exceptions import PoolShutdownError
from jobs.worker_pool import (
    WORKER_TERMINATED,
    ControlChannel,
    ControlSignal,
    JobRegistry,
    WorkItem,
    WorkerPool,
)


class BlockingExecutor:
    """Runs until released or signalled; records concurrency."""

    def __init__(self):
        self.release = asyncio.Event()
        self.started: list[str] = []
        self.running: set[str] = set()
        self.max_running = 0

    async def __call__(self, item, control):
        self.started.append(item.job_id)
        self.running.add(item.job_id)
        self.max_running = max(self.max_running, len(self.running))
        try:
            while not self.release.is_set():
                signal = control.poll(item.job_id)
                if signal is not None:
                    return signal.value
                await asyncio.sleep(0.005)
            return "done"
        finally:
            self.running.discard(item.job_id)


class ResultRecorder:
    def __init__(self):
        self.results = []

    async def __call__(self, result):
        self.results.append(result)


@pytest.fixture
def executor():
    return BlockingExecutor()


@pytest.fixture
def recorder():
    return ResultRecorder()


@pytest_asyncio.fixture
async def pool(executor, recorder):
    worker_pool = WorkerPool(2, executor, recorder, JobRegistry())
    await worker_pool.start()
    yield worker_pool
    await worker_pool.shutdown()


class TestDispatch:
    """Submitting work to idle workers."""

    @pytest.mark.asyncio
    async def test_concurrency_limited_to_pool_size(self, pool, executor, recorder):
        assert pool.submit(WorkItem("a", 1))
        assert pool.submit(WorkItem("b", 1))
        assert pool.submit(WorkItem("c", 1)) is False
        assert pool.busy_count == 2

        await wait_until(lambda: len(executor.started) == 2)
        executor.release.set()
        await wait_until(lambda: len(recorder.results) == 2)

        assert executor.max_running == 2
        assert await pool.wait_for_idle(timeout=1)
        assert pool.submit(WorkItem("c", 1))
        await wait_until(lambda: len(recorder.results) == 3)

    @pytest.mark.asyncio
    async def test_job_held_by_one_worker_only(self, pool):
        assert pool.submit(WorkItem("a", 1))
        assert pool.has_idle()
        assert pool.submit(WorkItem("a", 2)) is False
        assert pool.registry.snapshot() == {"a": pool.registry.worker_for("a")}

    @pytest.mark.asyncio
    async def test_result_releases_worker(self, pool, executor, recorder):
        pool.submit(WorkItem("a", 3))
        executor.release.set()
        await wait_until(lambda: recorder.results)

        result = recorder.results[0]
        assert result.item == WorkItem("a", 3)
        assert result.outcome == "done"
        assert result.failure is None
        assert not pool.registry.is_held("a")
        assert pool.completed_jobs == 1

    @pytest.mark.asyncio
    async def test_wait_for_idle_times_out(self, pool):
        pool.submit(WorkItem("a", 1))
        pool.submit(WorkItem("b", 1))
        assert await pool.wait_for_idle(timeout=0.05) is False

    @pytest.mark.asyncio
    async def test_submit_after_shutdown(self, executor, recorder):
        worker_pool = WorkerPool(1, executor, recorder, JobRegistry())
        await worker_pool.start()
        await worker_pool.shutdown()
        with pytest.raises(PoolShutdownError):
            worker_pool.submit(WorkItem("a", 1))

    def test_pool_size_must_be_positive(self, executor, recorder):
        with pytest.raises(ValueError):
            WorkerPool(0, executor, recorder, JobRegistry())


class TestControlSignals:
    """Pause and cancel delivered over the control channel."""

    @pytest.mark.asyncio
    async def test_pause_reaches_holding_worker(self, pool, executor, recorder):
        pool.submit(WorkItem("a", 1))
        await wait_until(lambda: "a" in executor.running)

        assert pool.pause("a")
        await wait_until(lambda: recorder.results)
        assert recorder.results[0].outcome == "pause"

    @pytest.mark.asyncio
    async def test_cancel_reaches_holding_worker(self, pool, executor, recorder):
        pool.submit(WorkItem("a", 1))
        await wait_until(lambda: "a" in executor.running)

        assert pool.cancel("a")
        await wait_until(lambda: recorder.results)
        assert recorder.results[0].outcome == "cancel"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("send,expected", [
        (WorkerPool.pause, "pause"),
        (WorkerPool.cancel, "cancel"),
    ])
    async def test_signal_before_pickup_is_kept(self, executor, recorder, send, expected):
        worker_pool = WorkerPool(1, executor, recorder, JobRegistry())
        await worker_pool.start()
        try:
            assert worker_pool.submit(WorkItem("a", 1))
            # Worker has not picked the item up yet
            assert executor.started == []
            assert send(worker_pool, "a")

            await wait_until(lambda: recorder.results)
            assert recorder.results[0].outcome == expected
        finally:
            await worker_pool.shutdown()

    @pytest.mark.asyncio
    async def test_signal_does_not_leak_into_next_run(self, executor, recorder):
        worker_pool = WorkerPool(1, executor, recorder, JobRegistry())
        await worker_pool.start()
        try:
            worker_pool.submit(WorkItem("a", 1))
            worker_pool.pause("a")
            await wait_until(lambda: len(recorder.results) == 1)

            worker_pool.submit(WorkItem("a", 2))
            await wait_until(lambda: len(executor.started) == 2)
            await asyncio.sleep(0.05)
            assert len(recorder.results) == 1

            executor.release.set()
            await wait_until(lambda: len(recorder.results) == 2)
            assert recorder.results[1].outcome == "done"
        finally:
            await worker_pool.shutdown()

    @pytest.mark.asyncio
    async def test_signal_for_unheld_job(self, pool):
        assert pool.pause("nobody") is False
        assert pool.cancel("nobody") is False

    def test_cancel_wins_over_pause(self):
        channel = ControlChannel()
        channel.post("a", ControlSignal.CANCEL)
        channel.post("a", ControlSignal.PAUSE)
        assert channel.poll("a") == ControlSignal.CANCEL

    def test_signals_for_other_jobs_dropped(self):
        channel = ControlChannel()
        channel.post("old", ControlSignal.PAUSE)
        assert channel.poll("new") is None
        assert channel.poll("old") is None

    def test_clear(self):
        channel = ControlChannel()
        channel.post("a", ControlSignal.PAUSE)
        channel.poll("a")
        channel.clear()
        assert channel.poll("a") is None


class TestFailures:
    """Executor errors and dead workers."""

    @pytest.mark.asyncio
    async def test_executor_exception_reported(self, recorder):
        async def failing(item, control):
            raise RuntimeError("boom")

        worker_pool = WorkerPool(1, failing, recorder, JobRegistry())
        await worker_pool.start()
        try:
            worker_pool.submit(WorkItem("a", 1))
            await wait_until(lambda: recorder.results)

            assert recorder.results[0].failure == "RuntimeError: boom"
            assert worker_pool.status()["alive"] == 1
            assert worker_pool.replaced_workers == 0
        finally:
            await worker_pool.shutdown()

    @pytest.mark.asyncio
    async def test_dead_worker_replaced_and_job_reported(self, pool, executor, recorder):
        pool.submit(WorkItem("a", 7))
        await wait_until(lambda: "a" in executor.running)

        worker_id = pool.registry.worker_for("a")
        holder = next(w for w in pool.workers if w.worker_id == worker_id)
        holder.kill()

        await wait_until(lambda: recorder.results)
        result = recorder.results[0]
        assert result.failure == WORKER_TERMINATED
        assert result.item == WorkItem("a", 7)
        assert pool.replaced_workers == 1
        assert pool.status()["alive"] == 2
        assert not pool.registry.is_held("a")

    @pytest.mark.asyncio
    async def test_callback_error_does_not_stop_results(self, executor):
        delivered = []

        async def on_result(result):
            delivered.append(result.item.job_id)
            if result.item.job_id == "a":
                raise RuntimeError("handler failed")

        worker_pool = WorkerPool(2, executor, on_result, JobRegistry())
        await worker_pool.start()
        try:
            executor.release.set()
            worker_pool.submit(WorkItem("a", 1))
            await wait_until(lambda: "a" in delivered)
            worker_pool.submit(WorkItem("b", 1))
            await wait_until(lambda: "b" in delivered)
        finally:
            await worker_pool.shutdown()


class TestJobRegistry:
    def test_exclusive_assignment(self):
        registry = JobRegistry()
        registry.assign("a", 1)
        with pytest.raises(ValueError):
            registry.assign("a", 2)
        with pytest.raises(ValueError):
            registry.assign("b", 1)

    def test_release(self):
        registry = JobRegistry()
        registry.assign("a", 1)
        assert registry.release_worker(1) == "a"
        assert not registry.is_held("a")
        assert registry.release_worker(1) is None
        assert len(registry) == 0
