"""
Worker Pool - fixed set of export worker actors.

Each worker is an asyncio task that owns two channels:
- a task channel carrying at most one WorkItem at a time
- a control channel carrying pause/cancel signals for the job it holds

Results flow back over a single pool-wide result queue and are handed to
the orchestrator's completion callback one at a time. Which worker holds
which job is tracked in a JobRegistry that the orchestrator owns and
injects, so at most one worker can ever hold a given job id.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from exceptions import PoolShutdownError

logger = logging.getLogger(__name__)

WORKER_TERMINATED = "Worker terminated unexpectedly"


class ControlSignal(str, Enum):
    PAUSE = "pause"
    CANCEL = "cancel"


@dataclass(frozen=True)
class WorkItem:
    """One dispatch of a job to a worker under a specific lease."""
    job_id: str
    attempt: int


@dataclass
class WorkerResult:
    worker_id: int
    item: WorkItem
    outcome: Any = None
    failure: Optional[str] = None


class ControlChannel:
    """Out-of-band signals for the job a worker is running."""

    def __init__(self):
        self._queue: asyncio.Queue[tuple[str, ControlSignal]] = asyncio.Queue()
        self._pending: dict[str, ControlSignal] = {}

    def post(self, job_id: str, signal: ControlSignal) -> None:
        self._queue.put_nowait((job_id, signal))

    def poll(self, job_id: str) -> Optional[ControlSignal]:
        """
        Non-blocking check for a signal addressed to `job_id`.

        Signals for other jobs are stale leftovers and are dropped. Cancel
        takes precedence over pause.
        """
        while not self._queue.empty():
            target, signal = self._queue.get_nowait()
            if target != job_id:
                continue
            if self._pending.get(target) != ControlSignal.CANCEL:
                self._pending[target] = signal
        return self._pending.get(job_id)

    def clear(self) -> None:
        self._pending.clear()
        while not self._queue.empty():
            self._queue.get_nowait()


Executor = Callable[[WorkItem, ControlChannel], Awaitable[Any]]
ResultCallback = Callable[[WorkerResult], Awaitable[None]]


class JobRegistry:
    """Exclusive job id <-> worker id assignments."""

    def __init__(self):
        self._by_job: dict[str, int] = {}
        self._by_worker: dict[int, str] = {}

    def assign(self, job_id: str, worker_id: int) -> None:
        if job_id in self._by_job:
            raise ValueError(f"Job {job_id} is already held by worker {self._by_job[job_id]}")
        if worker_id in self._by_worker:
            raise ValueError(f"Worker {worker_id} already holds job {self._by_worker[worker_id]}")
        self._by_job[job_id] = worker_id
        self._by_worker[worker_id] = job_id

    def release_worker(self, worker_id: int) -> Optional[str]:
        job_id = self._by_worker.pop(worker_id, None)
        if job_id is not None:
            self._by_job.pop(job_id, None)
        return job_id

    def worker_for(self, job_id: str) -> Optional[int]:
        return self._by_job.get(job_id)

    def job_for(self, worker_id: int) -> Optional[str]:
        return self._by_worker.get(worker_id)

    def is_held(self, job_id: str) -> bool:
        return job_id in self._by_job

    def snapshot(self) -> dict[str, int]:
        return dict(self._by_job)

    def __len__(self) -> int:
        return len(self._by_job)


class ExportWorker:
    """A single worker actor."""

    def __init__(self, worker_id: int, executor: Executor, results: asyncio.Queue):
        self.worker_id = worker_id
        self.tasks: asyncio.Queue[WorkItem] = asyncio.Queue(maxsize=1)
        self.control = ControlChannel()
        self.current: Optional[WorkItem] = None
        self._executor = executor
        self._results = results
        self._task: Optional[asyncio.Task] = None

    def start(self) -> asyncio.Task:
        self._task = asyncio.create_task(self._run(), name=f"export-worker-{self.worker_id}")
        return self._task

    @property
    def is_alive(self) -> bool:
        return self._task is not None and not self._task.done()

    def kill(self) -> None:
        """Stop the actor immediately, abandoning whatever it holds."""
        if self._task is not None:
            self._task.cancel()

    async def _run(self) -> None:
        while True:
            item = await self.tasks.get()
            self.current = item
            outcome, failure = None, None
            try:
                outcome = await self._executor(item, self.control)
            except Exception as e:
                logger.error(f"Worker {self.worker_id} failed on job {item.job_id}: {type(e).__name__}: {e}", exc_info=True)
                failure = f"{type(e).__name__}: {e}"
            self.current = None
            # Signals posted before pickup stay queued until the job is released
            self.control.clear()
            await self._results.put(WorkerResult(self.worker_id, item, outcome, failure))


class WorkerPool:
    """
    Fixed-size pool of export workers.

    Usage:
        pool = WorkerPool(4, executor, on_result, JobRegistry())
        await pool.start()
        if not pool.submit(WorkItem(job_id, attempt)):
            ...  # no idle worker, leave the job queued
        await pool.shutdown()
    """

    def __init__(
        self,
        size: int,
        executor: Executor,
        on_result: ResultCallback,
        registry: JobRegistry,
    ):
        if size < 1:
            raise ValueError("Worker pool size must be at least 1")
        self.size = size
        self.registry = registry
        self._executor = executor
        self._on_result = on_result
        self._results: asyncio.Queue[WorkerResult] = asyncio.Queue()
        self._workers: dict[int, ExportWorker] = {}
        self._next_worker_id = 0
        self._slot_freed = asyncio.Event()
        self._results_task: Optional[asyncio.Task] = None
        self._shutting_down = False
        self.replaced_workers = 0
        self.completed_jobs = 0

    @property
    def workers(self) -> list[ExportWorker]:
        return list(self._workers.values())

    async def start(self) -> None:
        for _ in range(self.size):
            self._spawn()
        self._results_task = asyncio.create_task(self._results_loop(), name="export-pool-results")
        logger.info(f"Worker pool started with {self.size} workers")

    def _spawn(self) -> ExportWorker:
        self._next_worker_id += 1
        worker = ExportWorker(self._next_worker_id, self._executor, self._results)
        self._workers[worker.worker_id] = worker
        task = worker.start()
        task.add_done_callback(lambda t, w=worker: self._on_worker_exit(w, t))
        return worker

    def _on_worker_exit(self, worker: ExportWorker, task: asyncio.Task) -> None:
        if self._shutting_down:
            return
        reason = "cancelled" if task.cancelled() else repr(task.exception())
        logger.error(f"Worker {worker.worker_id} exited unexpectedly ({reason}), replacing")
        self._workers.pop(worker.worker_id, None)
        self.replaced_workers += 1
        replacement = self._spawn()
        logger.info(f"Worker {replacement.worker_id} replaces worker {worker.worker_id}")

        job_id = self.registry.job_for(worker.worker_id)
        if job_id is not None:
            item = worker.current
            if item is None or item.job_id != job_id:
                # Assigned but not yet picked up
                item = worker.tasks.get_nowait() if not worker.tasks.empty() else WorkItem(job_id, -1)
            self._results.put_nowait(WorkerResult(worker.worker_id, item, failure=WORKER_TERMINATED))
        else:
            self._slot_freed.set()

    def _idle_workers(self) -> list[ExportWorker]:
        return [
            w for w in self._workers.values()
            if w.is_alive and self.registry.job_for(w.worker_id) is None
        ]

    def has_idle(self) -> bool:
        return bool(self._idle_workers())

    @property
    def busy_count(self) -> int:
        return len(self.registry)

    async def wait_for_idle(self, timeout: Optional[float] = None) -> bool:
        """Wait until at least one worker is idle. Returns False on timeout."""
        while not self.has_idle():
            self._slot_freed.clear()
            try:
                await asyncio.wait_for(self._slot_freed.wait(), timeout)
            except asyncio.TimeoutError:
                return self.has_idle()
        return True

    def submit(self, item: WorkItem) -> bool:
        """
        Hand a job to the next idle worker.

        Returns False when the job is already held or no worker is idle; the
        caller keeps the job queued in that case.
        """
        if self._shutting_down:
            raise PoolShutdownError()
        if self.registry.is_held(item.job_id):
            return False
        idle = self._idle_workers()
        if not idle:
            return False
        worker = idle[0]
        self.registry.assign(item.job_id, worker.worker_id)
        worker.tasks.put_nowait(item)
        logger.debug(f"Job {item.job_id} dispatched to worker {worker.worker_id} (attempt {item.attempt})")
        return True

    def _signal(self, job_id: str, signal: ControlSignal) -> bool:
        worker_id = self.registry.worker_for(job_id)
        worker = self._workers.get(worker_id) if worker_id is not None else None
        if worker is None:
            return False
        worker.control.post(job_id, signal)
        logger.info(f"Posted {signal.value} to worker {worker_id} for job {job_id}")
        return True

    def pause(self, job_id: str) -> bool:
        """Ask the worker holding `job_id` to pause. False if no worker holds it."""
        return self._signal(job_id, ControlSignal.PAUSE)

    def cancel(self, job_id: str) -> bool:
        """Ask the worker holding `job_id` to cancel. False if no worker holds it."""
        return self._signal(job_id, ControlSignal.CANCEL)

    def status(self) -> dict[str, Any]:
        return {
            "size": self.size,
            "alive": sum(1 for w in self._workers.values() if w.is_alive),
            "busy": self.busy_count,
            "idle": len(self._idle_workers()),
            "jobs": self.registry.snapshot(),
            "replaced_workers": self.replaced_workers,
            "completed_jobs": self.completed_jobs,
        }

    async def _results_loop(self) -> None:
        while True:
            result = await self._results.get()
            self.registry.release_worker(result.worker_id)
            self.completed_jobs += 1
            self._slot_freed.set()
            try:
                await self._on_result(result)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Completion handling failed for job {result.item.job_id}: {type(e).__name__}: {e}", exc_info=True)

    async def shutdown(self, timeout: float = 10.0) -> None:
        """
        Stop all workers.

        Jobs still running stay `processing` in their durable record and are
        picked up again by recovery on the next start.
        """
        self._shutting_down = True
        tasks = []
        for worker in self._workers.values():
            worker.kill()
            if worker._task is not None:
                tasks.append(worker._task)
        if self._results_task is not None:
            self._results_task.cancel()
            tasks.append(self._results_task)
        if tasks:
            await asyncio.wait(tasks, timeout=timeout)
        logger.info(f"Worker pool stopped ({len(self.registry)} jobs left in flight)")
