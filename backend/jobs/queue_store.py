"""
Priority Job Store

Durable priority queue of export job ids with per-job queue metadata.

Ordering: score = priority * SCORE_SCALE + enqueue timestamp (ms); the
lowest score is dequeued first, so priority 0 is the most urgent and equal
priorities are served FIFO.

Backends:
- InMemoryPriorityQueueStore: single process, development and tests
- RedisPriorityQueueStore: sorted set + one hash per job, survives restarts

Both only rely on an atomic pop-min and conditional per-key read/write, so
recovery runs safely next to new enqueues without a global lock.
"""

import asyncio
import heapq
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError, WatchError

from exceptions import TransientIOError
from jobs.job_store import JobStatus, TERMINAL_STATUSES

logger = logging.getLogger(__name__)

# Larger than any millisecond epoch timestamp, so priority always dominates.
SCORE_SCALE = 10_000_000_000_000

MUTABLE_FIELDS = frozenset({"status", "error", "recovered_at"})


def compute_score(priority: int, enqueued_at: int) -> int:
    return priority * SCORE_SCALE + enqueued_at


@dataclass
class QueueEntry:
    """Queue-side view of a job."""
    job_id: str
    priority: int
    enqueued_at: int  # ms
    status: JobStatus = JobStatus.PENDING
    updated_at: float = field(default_factory=time.time)
    recovered_at: Optional[float] = None
    error: Optional[str] = None

    @property
    def score(self) -> int:
        return compute_score(self.priority, self.enqueued_at)

    def to_hash(self) -> dict[str, str]:
        data = {
            "job_id": self.job_id,
            "priority": str(self.priority),
            "enqueued_at": str(self.enqueued_at),
            "status": self.status.value,
            "updated_at": repr(self.updated_at),
        }
        if self.recovered_at is not None:
            data["recovered_at"] = repr(self.recovered_at)
        if self.error:
            data["error"] = self.error
        return data

    @classmethod
    def from_hash(cls, data: dict[str, str]) -> "QueueEntry":
        return cls(
            job_id=data["job_id"],
            priority=int(data["priority"]),
            enqueued_at=int(data["enqueued_at"]),
            status=JobStatus(data["status"]),
            updated_at=float(data.get("updated_at", 0.0)),
            recovered_at=float(data["recovered_at"]) if data.get("recovered_at") else None,
            error=data.get("error"),
        )


@dataclass
class RecoveryReport:
    """Outcome of a startup recovery scan."""
    recovered: list[str] = field(default_factory=list)
    discarded: list[str] = field(default_factory=list)


TerminalCheck = Callable[[str], Awaitable[bool]]


class PriorityQueueStore(ABC):
    """Abstract base class for priority queue backends."""

    def __init__(self):
        self._last_timestamp = 0

    def _next_timestamp(self) -> int:
        """Millisecond timestamp, strictly increasing within this process."""
        now = int(time.time() * 1000)
        if now <= self._last_timestamp:
            now = self._last_timestamp + 1
        self._last_timestamp = now
        return now

    @abstractmethod
    async def enqueue(self, job_id: str, priority: int) -> QueueEntry:
        """Add (or re-add) a job as pending."""
        pass

    @abstractmethod
    async def dequeue_next(self) -> Optional[QueueEntry]:
        """Atomically pop the lowest-score pending job and mark it processing."""
        pass

    @abstractmethod
    async def get_status(self, job_id: str) -> Optional[QueueEntry]:
        pass

    @abstractmethod
    async def set_status(self, job_id: str, fields: dict[str, Any]) -> bool:
        """
        Update queue metadata for an existing entry.

        A status other than pending also takes the job out of the queue.
        Returns False if the entry does not exist.
        """
        pass

    @abstractmethod
    async def requeue(self, job_id: str) -> bool:
        """Put a processing entry back as pending, keeping its original position."""
        pass

    @abstractmethod
    async def remove(self, job_id: str) -> bool:
        pass

    @abstractmethod
    async def recover(self, is_terminal: TerminalCheck) -> RecoveryReport:
        """
        Requeue entries left in processing by a previous run.

        Entries whose durable job record is already terminal are discarded
        instead, so a finished job is never processed twice.
        """
        pass

    @abstractmethod
    async def queue_length(self) -> int:
        pass

    @abstractmethod
    async def cleanup(self, max_age_seconds: float) -> int:
        """Delete terminal entries not updated within max_age_seconds."""
        pass

    async def close(self) -> None:
        pass


def _check_fields(fields: dict[str, Any]) -> None:
    unknown = set(fields) - MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown queue entry fields: {sorted(unknown)}")


class InMemoryPriorityQueueStore(PriorityQueueStore):
    """
    In-memory priority queue.

    A heap of (score, sequence, job_id) with lazy deletion; the entry dict is
    the source of truth for whether a heap item is still live.
    """

    def __init__(self):
        super().__init__()
        self._entries: dict[str, QueueEntry] = {}
        self._heap: list[tuple[int, int, str]] = []
        self._sequence = 0
        self._lock = asyncio.Lock()

    def _push(self, entry: QueueEntry) -> None:
        self._sequence += 1
        heapq.heappush(self._heap, (entry.score, self._sequence, entry.job_id))

    async def enqueue(self, job_id: str, priority: int) -> QueueEntry:
        async with self._lock:
            entry = QueueEntry(job_id=job_id, priority=priority, enqueued_at=self._next_timestamp())
            self._entries[job_id] = entry
            self._push(entry)
            return replace(entry)

    async def dequeue_next(self) -> Optional[QueueEntry]:
        async with self._lock:
            while self._heap:
                score, _, job_id = heapq.heappop(self._heap)
                entry = self._entries.get(job_id)
                if entry is None or entry.status != JobStatus.PENDING or entry.score != score:
                    continue
                entry.status = JobStatus.PROCESSING
                entry.updated_at = time.time()
                return replace(entry)
            return None

    async def get_status(self, job_id: str) -> Optional[QueueEntry]:
        entry = self._entries.get(job_id)
        return replace(entry) if entry else None

    async def set_status(self, job_id: str, fields: dict[str, Any]) -> bool:
        _check_fields(fields)
        async with self._lock:
            entry = self._entries.get(job_id)
            if entry is None:
                return False
            for name, value in fields.items():
                setattr(entry, name, JobStatus(value) if name == "status" else value)
            entry.updated_at = time.time()
            if entry.status == JobStatus.PENDING:
                self._push(entry)
            return True

    async def requeue(self, job_id: str) -> bool:
        async with self._lock:
            entry = self._entries.get(job_id)
            if entry is None or entry.status != JobStatus.PROCESSING:
                return False
            entry.status = JobStatus.PENDING
            entry.updated_at = time.time()
            self._push(entry)
            return True

    async def remove(self, job_id: str) -> bool:
        async with self._lock:
            return self._entries.pop(job_id, None) is not None

    async def recover(self, is_terminal: TerminalCheck) -> RecoveryReport:
        report = RecoveryReport()
        candidates = [e.job_id for e in self._entries.values() if e.status == JobStatus.PROCESSING]
        for job_id in candidates:
            terminal = await is_terminal(job_id)
            async with self._lock:
                entry = self._entries.get(job_id)
                # Re-check: the entry may have changed while the record was read
                if entry is None or entry.status != JobStatus.PROCESSING:
                    continue
                if terminal:
                    del self._entries[job_id]
                    report.discarded.append(job_id)
                else:
                    entry.status = JobStatus.PENDING
                    entry.recovered_at = time.time()
                    entry.updated_at = entry.recovered_at
                    self._push(entry)
                    report.recovered.append(job_id)
        return report

    async def queue_length(self) -> int:
        return sum(1 for e in self._entries.values() if e.status == JobStatus.PENDING)

    async def cleanup(self, max_age_seconds: float) -> int:
        cutoff = time.time() - max_age_seconds
        async with self._lock:
            stale = [
                job_id for job_id, e in self._entries.items()
                if e.status in TERMINAL_STATUSES and e.updated_at < cutoff
            ]
            for job_id in stale:
                del self._entries[job_id]
        return len(stale)


class RedisPriorityQueueStore(PriorityQueueStore):
    """
    Redis-backed priority queue.

    Keys:
        {prefix}queue        sorted set of pending job ids by score
        {prefix}job:{id}     hash with the QueueEntry fields

    ZPOPMIN gives a single winner per entry; every read-modify-write of a
    job hash runs in a WATCH/MULTI transaction on that one key.
    """

    def __init__(self, redis_url: str = "", key_prefix: str = "export-jobs:", client=None):
        super().__init__()
        self._redis_url = redis_url
        self._key_prefix = key_prefix
        self._redis = client
        self._queue_key = f"{key_prefix}queue"

    def _job_key(self, job_id: str) -> str:
        return f"{self._key_prefix}job:{job_id}"

    async def _get_redis(self):
        """Lazy initialize Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(self._redis_url, decode_responses=True)
            logger.info("Redis queue store connected")
        return self._redis

    async def _transact(self, job_id: str, plan: Callable[[dict], Optional[Callable]]) -> Any:
        """
        Optimistic per-key transaction.

        `plan` receives the current hash (empty dict if missing) and returns
        either None (nothing to do) or a callable that queues commands on the
        pipeline and returns the value to hand back.
        """
        client = await self._get_redis()
        key = self._job_key(job_id)
        try:
            async with client.pipeline(transaction=True) as pipe:
                while True:
                    try:
                        await pipe.watch(key)
                        current = await pipe.hgetall(key)
                        apply = plan(current)
                        if apply is None:
                            await pipe.unwatch()
                            return None
                        pipe.multi()
                        result = apply(pipe)
                        await pipe.execute()
                        return result
                    except WatchError:
                        logger.debug(f"Queue entry {job_id} changed during transaction, retrying")
                        continue
        except RedisError as e:
            raise TransientIOError("queue_transaction", original_error=e) from e

    async def enqueue(self, job_id: str, priority: int) -> QueueEntry:
        client = await self._get_redis()
        entry = QueueEntry(job_id=job_id, priority=priority, enqueued_at=self._next_timestamp())
        try:
            pipe = client.pipeline(transaction=True)
            pipe.delete(self._job_key(job_id))
            pipe.hset(self._job_key(job_id), mapping=entry.to_hash())
            pipe.zadd(self._queue_key, {job_id: entry.score})
            await pipe.execute()
        except RedisError as e:
            raise TransientIOError("enqueue", original_error=e) from e
        return entry

    async def dequeue_next(self) -> Optional[QueueEntry]:
        client = await self._get_redis()
        while True:
            try:
                popped = await client.zpopmin(self._queue_key, 1)
            except RedisError as e:
                raise TransientIOError("dequeue", original_error=e) from e
            if not popped:
                return None
            job_id = popped[0][0]

            def plan(current):
                if not current or current.get("status") != JobStatus.PENDING.value:
                    return None

                def apply(pipe):
                    entry = QueueEntry.from_hash(current)
                    entry.status = JobStatus.PROCESSING
                    entry.updated_at = time.time()
                    pipe.hset(self._job_key(job_id), mapping={
                        "status": entry.status.value,
                        "updated_at": repr(entry.updated_at),
                    })
                    return entry
                return apply

            entry = await self._transact(job_id, plan)
            if entry is not None:
                return entry

    async def get_status(self, job_id: str) -> Optional[QueueEntry]:
        client = await self._get_redis()
        try:
            data = await client.hgetall(self._job_key(job_id))
        except RedisError as e:
            raise TransientIOError("get_status", original_error=e) from e
        return QueueEntry.from_hash(data) if data else None

    async def set_status(self, job_id: str, fields: dict[str, Any]) -> bool:
        _check_fields(fields)

        def plan(current):
            if not current:
                return None

            def apply(pipe):
                entry = QueueEntry.from_hash(current)
                for name, value in fields.items():
                    setattr(entry, name, JobStatus(value) if name == "status" else value)
                entry.updated_at = time.time()
                pipe.hset(self._job_key(job_id), mapping=entry.to_hash())
                if entry.status == JobStatus.PENDING:
                    pipe.zadd(self._queue_key, {job_id: entry.score})
                else:
                    pipe.zrem(self._queue_key, job_id)
                return True
            return apply

        return bool(await self._transact(job_id, plan))

    async def requeue(self, job_id: str) -> bool:
        def plan(current):
            if current.get("status") != JobStatus.PROCESSING.value:
                return None

            def apply(pipe):
                entry = QueueEntry.from_hash(current)
                pipe.hset(self._job_key(job_id), mapping={
                    "status": JobStatus.PENDING.value,
                    "updated_at": repr(time.time()),
                })
                pipe.zadd(self._queue_key, {job_id: entry.score})
                return True
            return apply

        return bool(await self._transact(job_id, plan))

    async def remove(self, job_id: str) -> bool:
        client = await self._get_redis()
        try:
            pipe = client.pipeline(transaction=True)
            pipe.delete(self._job_key(job_id))
            pipe.zrem(self._queue_key, job_id)
            deleted, _ = await pipe.execute()
        except RedisError as e:
            raise TransientIOError("remove", original_error=e) from e
        return deleted > 0

    async def _scan_entries(self):
        client = await self._get_redis()
        try:
            async for key in client.scan_iter(match=f"{self._key_prefix}job:*", count=200):
                data = await client.hgetall(key)
                if data:
                    yield QueueEntry.from_hash(data)
        except RedisError as e:
            raise TransientIOError("scan", original_error=e) from e

    async def recover(self, is_terminal: TerminalCheck) -> RecoveryReport:
        report = RecoveryReport()
        candidates = [e.job_id async for e in self._scan_entries() if e.status == JobStatus.PROCESSING]

        for job_id in candidates:
            terminal = await is_terminal(job_id)

            def plan(current, job_id=job_id, terminal=terminal):
                if current.get("status") != JobStatus.PROCESSING.value:
                    return None

                def apply(pipe):
                    if terminal:
                        pipe.delete(self._job_key(job_id))
                        pipe.zrem(self._queue_key, job_id)
                        return "discarded"
                    entry = QueueEntry.from_hash(current)
                    now = time.time()
                    pipe.hset(self._job_key(job_id), mapping={
                        "status": JobStatus.PENDING.value,
                        "recovered_at": repr(now),
                        "updated_at": repr(now),
                    })
                    pipe.zadd(self._queue_key, {job_id: entry.score})
                    return "recovered"
                return apply

            outcome = await self._transact(job_id, plan)
            if outcome == "discarded":
                report.discarded.append(job_id)
            elif outcome == "recovered":
                report.recovered.append(job_id)
        return report

    async def queue_length(self) -> int:
        client = await self._get_redis()
        try:
            return await client.zcard(self._queue_key)
        except RedisError as e:
            raise TransientIOError("queue_length", original_error=e) from e

    async def cleanup(self, max_age_seconds: float) -> int:
        cutoff = time.time() - max_age_seconds
        stale = [
            e.job_id async for e in self._scan_entries()
            if e.status in TERMINAL_STATUSES and e.updated_at < cutoff
        ]
        if not stale:
            return 0
        client = await self._get_redis()
        try:
            await client.delete(*[self._job_key(job_id) for job_id in stale])
        except RedisError as e:
            raise TransientIOError("cleanup", original_error=e) from e
        return len(stale)

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


# ============================================================================
# Queue Store Factory
# ============================================================================

def init_queue_store(backend: str = "memory", redis_url: Optional[str] = None) -> PriorityQueueStore:
    """
    Create the queue store for the configured backend.

    Args:
        backend: "memory" or "redis"
        redis_url: Redis connection URL (required for "redis")
    """
    if backend == "redis":
        if not redis_url:
            raise ValueError("REDIS_URL is required for the redis queue backend")
        logger.info("Using Redis priority queue store")
        return RedisPriorityQueueStore(redis_url)
    logger.info("Using in-memory priority queue store")
    return InMemoryPriorityQueueStore()
