"""
Record sources for exports.

A RecordStore yields filtered task records lazily in sort order, resuming
strictly after a given sort key. Continuation by key (not by row offset)
keeps a resumed export free of duplicates and gaps even when rows are
inserted or deleted between runs.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import AsyncIterator, Iterable, Optional

import asyncpg

from exceptions import TransientIOError
from exports.filters import ExportFilters
from exports.models import TaskRecord
from exports.query_builder import build_order, build_where, is_after, matches

logger = logging.getLogger(__name__)

DB_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError)


class RecordStore(ABC):
    """Abstract base class for exportable record sources."""

    @abstractmethod
    async def count(self, filters: ExportFilters, as_of: datetime) -> int:
        pass

    @abstractmethod
    def iterate(
        self,
        filters: ExportFilters,
        as_of: datetime,
        after: Optional[tuple] = None,
    ) -> AsyncIterator[TaskRecord]:
        """Yield matching records in sort order, strictly after `after`."""
        pass

    @abstractmethod
    async def latest_update(self, filters: ExportFilters, as_of: datetime) -> Optional[datetime]:
        """Most recent updated_at among matching records."""
        pass


class InMemoryRecordStore(RecordStore):
    """Record source over a list held in memory (development and tests)."""

    def __init__(self, records: Optional[Iterable[TaskRecord]] = None, batch_size: int = 100):
        self._records: dict[str, TaskRecord] = {}
        self.batch_size = batch_size
        for record in records or []:
            self.upsert(record)

    def upsert(self, record: TaskRecord) -> None:
        self._records[record.id] = record

    def delete(self, record_id: str) -> None:
        self._records.pop(record_id, None)

    def __len__(self) -> int:
        return len(self._records)

    def _matching(self, filters: ExportFilters, as_of: datetime) -> list[TaskRecord]:
        return [r for r in self._records.values() if matches(filters, r, as_of)]

    async def count(self, filters: ExportFilters, as_of: datetime) -> int:
        return len(self._matching(filters, as_of))

    async def iterate(
        self,
        filters: ExportFilters,
        as_of: datetime,
        after: Optional[tuple] = None,
    ) -> AsyncIterator[TaskRecord]:
        sort = filters.sort
        last_key = after
        while True:
            # Re-evaluate per batch so concurrent upserts/deletes are seen
            batch = sorted(
                (r for r in self._matching(filters, as_of) if is_after(sort, sort.key(r), last_key)),
                key=sort.key,
                reverse=sort.descending,
            )[:self.batch_size]
            if not batch:
                return
            for record in batch:
                yield record
            last_key = sort.key(batch[-1])
            await asyncio.sleep(0)

    async def latest_update(self, filters: ExportFilters, as_of: datetime) -> Optional[datetime]:
        matching = self._matching(filters, as_of)
        return max((r.updated_at for r in matching), default=None)


class PostgresRecordStore(RecordStore):
    """
    Record source over a PostgreSQL `tasks` table.

    Streams through a server-side cursor inside a read transaction, so at
    most `prefetch` rows are held in memory per running export.
    """

    CREATE_TABLE_SQL = """
    CREATE TABLE IF NOT EXISTS tasks (
        id TEXT PRIMARY KEY,
        title TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        status VARCHAR(20) NOT NULL DEFAULT 'pending',
        priority VARCHAR(10) NOT NULL DEFAULT 'medium',
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        completed_at TIMESTAMPTZ,
        estimated_time INTEGER,
        actual_time INTEGER
    );

    CREATE INDEX IF NOT EXISTS idx_tasks_created_id ON tasks(created_at, id);
    CREATE INDEX IF NOT EXISTS idx_tasks_updated_id ON tasks(updated_at, id);
    CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status);
    """

    COLUMNS = (
        "id, title, description, status, priority, created_at, updated_at, "
        "completed_at, estimated_time, actual_time"
    )

    def __init__(self, db, prefetch: int = 100):
        self.db = db
        self.prefetch = prefetch

    async def init_table(self) -> None:
        try:
            await self.db.execute(self.CREATE_TABLE_SQL)
            logger.info("Tasks table initialized")
        except DB_ERRORS as e:
            raise TransientIOError("init_tasks_table", original_error=e) from e

    async def count(self, filters: ExportFilters, as_of: datetime) -> int:
        condition, params = build_where(filters, as_of)
        try:
            return await self.db.fetchval(f"SELECT COUNT(*) FROM tasks WHERE {condition}", *params)
        except DB_ERRORS as e:
            raise TransientIOError("count_records", original_error=e) from e

    async def iterate(
        self,
        filters: ExportFilters,
        as_of: datetime,
        after: Optional[tuple] = None,
    ) -> AsyncIterator[TaskRecord]:
        condition, params = build_where(filters, as_of, after)
        query = f"SELECT {self.COLUMNS} FROM tasks WHERE {condition} {build_order(filters.sort)}"
        try:
            async with self.db.transaction() as conn:
                async for row in conn.cursor(query, *params, prefetch=self.prefetch):
                    yield TaskRecord.from_row(row)
        except DB_ERRORS as e:
            raise TransientIOError("read_records", original_error=e) from e

    async def latest_update(self, filters: ExportFilters, as_of: datetime) -> Optional[datetime]:
        condition, params = build_where(filters, as_of)
        try:
            return await self.db.fetchval(f"SELECT MAX(updated_at) FROM tasks WHERE {condition}", *params)
        except DB_ERRORS as e:
            raise TransientIOError("latest_update", original_error=e) from e
