"""
Job Store - durable export job records.

Stores ExportJob records in PostgreSQL so that progress, checkpoints and
results survive a restart. Falls back to an in-memory dict when no database
is configured (development and tests).

The store performs single attempts and raises TransientIOError when the
database is unreachable; retry policy belongs to the JobStateManager, which
is the only writer of these records.
"""

import asyncio
import copy
import json
import logging
from dataclasses import dataclass, field, fields as dataclass_fields
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Iterable, Optional

import asyncpg

from exceptions import TransientIOError

logger = logging.getLogger(__name__)

DB_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    """Export job status."""
    PENDING = "pending"
    PROCESSING = "processing"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ExportFormat(str, Enum):
    """Supported artifact formats."""
    CSV = "csv"
    JSON = "json"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})
ACTIVE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.PROCESSING, JobStatus.PAUSED})

# The only legal edges of the export job state machine.
LEGAL_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING}),
    JobStatus.PROCESSING: frozenset({
        JobStatus.PAUSED,
        JobStatus.COMPLETED,
        JobStatus.FAILED,
        JobStatus.CANCELLED,
    }),
    JobStatus.PAUSED: frozenset({JobStatus.PROCESSING, JobStatus.CANCELLED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return target in LEGAL_TRANSITIONS[current]


@dataclass
class ExportJob:
    """A single export request and everything needed to resume it."""
    id: str
    format: ExportFormat
    filters: dict = field(default_factory=dict)
    status: JobStatus = JobStatus.PENDING
    priority: int = 5
    client_id: Optional[str] = None
    cache_key: Optional[str] = None

    # Progress
    processed_items: int = 0
    total_items: int = 0
    percentage: int = 0

    # Checkpoint: last durably flushed record key and byte length
    last_processed_key: Optional[list] = None
    last_valid_byte_offset: int = 0

    # Result
    temp_path: Optional[str] = None
    filename: Optional[str] = None
    size_bytes: Optional[int] = None
    error: Optional[str] = None

    # Lease and write bookkeeping
    attempt: int = 0
    restarts: int = 0
    retries: int = 0
    version: int = 0

    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def copy(self) -> "ExportJob":
        return copy.deepcopy(self)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "format": self.format.value,
            "filters": self.filters,
            "status": self.status.value,
            "priority": self.priority,
            "client_id": self.client_id,
            "progress": {
                "processed_items": self.processed_items,
                "total_items": self.total_items,
                "percentage": self.percentage,
            },
            "checkpoint": {
                "last_processed_key": self.last_processed_key,
                "last_valid_byte_offset": self.last_valid_byte_offset,
            },
            "result": {
                "temp_path": self.temp_path,
                "filename": self.filename,
                "size_bytes": self.size_bytes,
            },
            "error": self.error,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


JOB_FIELDS = frozenset(f.name for f in dataclass_fields(ExportJob))
JSON_COLUMNS = frozenset({"filters", "last_processed_key"})


class JobStore:
    """
    Persistent export job store using PostgreSQL.

    Uses an in-memory dict when constructed without a database connection.
    """

    CREATE_TABLE_SQL = """
    CREATE TABLE IF NOT EXISTS export_jobs (
        id TEXT PRIMARY KEY,
        format VARCHAR(10) NOT NULL,
        filters JSONB NOT NULL DEFAULT '{}'::jsonb,
        status VARCHAR(20) NOT NULL DEFAULT 'pending',
        priority INTEGER NOT NULL DEFAULT 5,
        client_id TEXT,
        cache_key TEXT,
        processed_items BIGINT NOT NULL DEFAULT 0,
        total_items BIGINT NOT NULL DEFAULT 0,
        percentage INTEGER NOT NULL DEFAULT 0,
        last_processed_key JSONB,
        last_valid_byte_offset BIGINT NOT NULL DEFAULT 0,
        temp_path TEXT,
        filename TEXT,
        size_bytes BIGINT,
        error TEXT,
        attempt INTEGER NOT NULL DEFAULT 0,
        restarts INTEGER NOT NULL DEFAULT 0,
        retries INTEGER NOT NULL DEFAULT 0,
        version INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        started_at TIMESTAMPTZ,
        completed_at TIMESTAMPTZ
    );

    CREATE INDEX IF NOT EXISTS idx_export_jobs_status ON export_jobs(status);
    CREATE INDEX IF NOT EXISTS idx_export_jobs_client ON export_jobs(client_id);
    CREATE INDEX IF NOT EXISTS idx_export_jobs_created ON export_jobs(created_at DESC);
    """

    def __init__(self, db_connection=None):
        self.db = db_connection
        self._memory_store: dict[str, ExportJob] = {}

    async def init_table(self) -> None:
        """Create export_jobs table if it doesn't exist."""
        if self.db:
            try:
                await self.db.execute(self.CREATE_TABLE_SQL)
                logger.info("Export jobs table initialized")
            except DB_ERRORS as e:
                raise TransientIOError("init_table", original_error=e) from e

    def _parse_json_field(self, value) -> Any:
        """Parse a JSON field that might be a string or already decoded."""
        if value is None:
            return None
        if isinstance(value, str):
            try:
                return json.loads(value)
            except (json.JSONDecodeError, TypeError):
                return None
        return value

    def _row_to_job(self, row) -> ExportJob:
        return ExportJob(
            id=str(row["id"]),
            format=ExportFormat(row["format"]),
            filters=self._parse_json_field(row["filters"]) or {},
            status=JobStatus(row["status"]),
            priority=row["priority"],
            client_id=row["client_id"],
            cache_key=row["cache_key"],
            processed_items=row["processed_items"],
            total_items=row["total_items"],
            percentage=row["percentage"],
            last_processed_key=self._parse_json_field(row["last_processed_key"]),
            last_valid_byte_offset=row["last_valid_byte_offset"],
            temp_path=row["temp_path"],
            filename=row["filename"],
            size_bytes=row["size_bytes"],
            error=row["error"],
            attempt=row["attempt"],
            restarts=row["restarts"],
            retries=row["retries"],
            version=row["version"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
        )

    def _to_column(self, name: str, value: Any) -> Any:
        if name in JSON_COLUMNS:
            return json.dumps(value) if value is not None else None
        if isinstance(value, Enum):
            return value.value
        return value

    async def create_job(self, job: ExportJob) -> ExportJob:
        """Persist a new job record."""
        if not self.db:
            self._memory_store[job.id] = job.copy()
            return job

        names = sorted(JOB_FIELDS)
        placeholders = ", ".join(f"${i}" for i in range(1, len(names) + 1))
        query = f"INSERT INTO export_jobs ({', '.join(names)}) VALUES ({placeholders})"
        try:
            await self.db.execute(query, *[self._to_column(n, getattr(job, n)) for n in names])
        except DB_ERRORS as e:
            raise TransientIOError("create_job", original_error=e) from e
        return job

    async def get_job(self, job_id: str) -> Optional[ExportJob]:
        """Get job by ID."""
        if not self.db:
            job = self._memory_store.get(job_id)
            return job.copy() if job else None

        try:
            row = await self.db.fetchrow("SELECT * FROM export_jobs WHERE id = $1", job_id)
        except DB_ERRORS as e:
            raise TransientIOError("get_job", original_error=e) from e
        return self._row_to_job(row) if row else None

    async def update_fields(
        self,
        job_id: str,
        changes: dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> Optional[ExportJob]:
        """
        Write only the given fields and bump the record version.

        Args:
            job_id: Job to update
            changes: Mapping of ExportJob attribute name to new value
            expected_version: When set, the write only applies if the stored
                version still matches (compare-and-set)

        Returns:
            The updated job, or None if it does not exist or the version
            guard did not match.
        """
        unknown = set(changes) - JOB_FIELDS
        if unknown:
            raise ValueError(f"Unknown job fields: {sorted(unknown)}")
        changes = {k: v for k, v in changes.items() if k not in ("id", "version")}
        changes.setdefault("updated_at", utcnow())

        if not self.db:
            job = self._memory_store.get(job_id)
            if job is None:
                return None
            if expected_version is not None and job.version != expected_version:
                return None
            for name, value in changes.items():
                setattr(job, name, copy.deepcopy(value))
            job.version += 1
            return job.copy()

        assignments = []
        params: list[Any] = [job_id]
        for name, value in changes.items():
            params.append(self._to_column(name, value))
            assignments.append(f"{name} = ${len(params)}")
        query = f"UPDATE export_jobs SET {', '.join(assignments)}, version = version + 1 WHERE id = $1"
        if expected_version is not None:
            params.append(expected_version)
            query += f" AND version = ${len(params)}"
        query += " RETURNING *"

        try:
            row = await self.db.fetchrow(query, *params)
        except DB_ERRORS as e:
            raise TransientIOError("update_job", original_error=e) from e
        return self._row_to_job(row) if row else None

    async def list_jobs(self, offset: int = 0, limit: int = 20) -> list[ExportJob]:
        """List jobs newest first."""
        if not self.db:
            jobs = sorted(self._memory_store.values(), key=lambda j: j.created_at, reverse=True)
            return [j.copy() for j in jobs[offset:offset + limit]]

        try:
            rows = await self.db.fetch(
                "SELECT * FROM export_jobs ORDER BY created_at DESC OFFSET $1 LIMIT $2",
                offset,
                limit,
            )
        except DB_ERRORS as e:
            raise TransientIOError("list_jobs", original_error=e) from e
        return [self._row_to_job(row) for row in rows]

    async def count_jobs(self) -> int:
        if not self.db:
            return len(self._memory_store)
        try:
            return await self.db.fetchval("SELECT COUNT(*) FROM export_jobs")
        except DB_ERRORS as e:
            raise TransientIOError("count_jobs", original_error=e) from e

    async def list_by_client(self, client_id: str, limit: int = 50) -> list[ExportJob]:
        """List a client's jobs newest first."""
        if not self.db:
            jobs = [j for j in self._memory_store.values() if j.client_id == client_id]
            jobs.sort(key=lambda j: j.created_at, reverse=True)
            return [j.copy() for j in jobs[:limit]]

        try:
            rows = await self.db.fetch(
                "SELECT * FROM export_jobs WHERE client_id = $1 ORDER BY created_at DESC LIMIT $2",
                client_id,
                limit,
            )
        except DB_ERRORS as e:
            raise TransientIOError("list_by_client", original_error=e) from e
        return [self._row_to_job(row) for row in rows]

    async def list_by_status(self, statuses: Iterable[JobStatus]) -> list[ExportJob]:
        """List every job currently in one of the given statuses."""
        wanted = {JobStatus(s) for s in statuses}
        if not self.db:
            return [j.copy() for j in self._memory_store.values() if j.status in wanted]

        try:
            rows = await self.db.fetch(
                "SELECT * FROM export_jobs WHERE status = ANY($1::text[])",
                [s.value for s in wanted],
            )
        except DB_ERRORS as e:
            raise TransientIOError("list_by_status", original_error=e) from e
        return [self._row_to_job(row) for row in rows]

    async def cleanup_old_jobs(self, days: int = 30) -> int:
        """Delete terminal jobs that finished more than `days` ago."""
        cutoff = utcnow() - timedelta(days=days)
        terminal = [s.value for s in TERMINAL_STATUSES]

        if not self.db:
            stale = [
                job_id for job_id, job in self._memory_store.items()
                if job.is_terminal and (job.completed_at or job.updated_at) < cutoff
            ]
            for job_id in stale:
                del self._memory_store[job_id]
            return len(stale)

        try:
            result = await self.db.execute(
                """
                DELETE FROM export_jobs
                WHERE status = ANY($1::text[])
                AND COALESCE(completed_at, updated_at) < $2
                """,
                terminal,
                cutoff,
            )
        except DB_ERRORS as e:
            raise TransientIOError("cleanup_old_jobs", original_error=e) from e
        # Parse "DELETE N" to get count
        count = int(result.split()[-1]) if result else 0
        if count:
            logger.info(f"Cleaned up {count} old export jobs")
        return count

