"""
Query building for export filters.

Two renderings of the same ExportFilters semantics:
- matches(): in-process predicate used by InMemoryRecordStore
- build_where() / build_order(): parameterized SQL for PostgresRecordStore

Relative windows ("last-7-days", overdue, recently completed) are evaluated
against an explicit `as_of` instant rather than the wall clock, so a job
that is resumed later still sees the window it started with.
"""

from datetime import datetime, timedelta
from typing import Any, Optional

from exports.filters import WITHIN_RANGES, ExportFilters
from exports.models import SORT_RANKS, SortSpec, TaskRecord, TaskStatus

OVERDUE_DAYS = 7
RECENTLY_COMPLETED_DAYS = 7


def _within_start(as_of: datetime, within: Optional[str]) -> Optional[datetime]:
    if not within:
        return None
    return as_of - timedelta(days=WITHIN_RANGES[within])


def _in_range(value: Any, low: Any, high: Any) -> bool:
    if low is None and high is None:
        return True
    if value is None:
        return False
    if low is not None and value < low:
        return False
    if high is not None and value > high:
        return False
    return True


def matches(filters: ExportFilters, record: TaskRecord, as_of: datetime) -> bool:
    """Evaluate the filter set against one record."""
    if filters.status and record.status not in filters.status:
        return False
    if filters.priority and record.priority not in filters.priority:
        return False
    if filters.search:
        haystack = f"{record.title}\n{record.description or ''}".lower()
        if filters.search not in haystack:
            return False

    if not _in_range(record.created_at, filters.created_after, filters.created_before):
        return False
    if not _in_range(record.updated_at, filters.updated_after, filters.updated_before):
        return False
    if not _in_range(record.completed_at, filters.completed_after, filters.completed_before):
        return False

    created_start = _within_start(as_of, filters.created_within)
    if created_start and record.created_at < created_start:
        return False
    completed_start = _within_start(as_of, filters.completed_within)
    if completed_start and (record.completed_at is None or record.completed_at < completed_start):
        return False

    if not _in_range(record.estimated_time, filters.estimated_time_min, filters.estimated_time_max):
        return False
    if not _in_range(record.actual_time, filters.actual_time_min, filters.actual_time_max):
        return False
    if filters.no_estimate and record.estimated_time is not None:
        return False

    if filters.overdue_tasks:
        if record.status != TaskStatus.IN_PROGRESS:
            return False
        if record.created_at >= as_of - timedelta(days=OVERDUE_DAYS):
            return False
    if filters.recently_completed:
        if record.status != TaskStatus.COMPLETED or record.completed_at is None:
            return False
        if record.completed_at < as_of - timedelta(days=RECENTLY_COMPLETED_DAYS):
            return False

    if filters.under_estimated or filters.over_estimated:
        if record.status != TaskStatus.COMPLETED:
            return False
        if record.estimated_time is None or record.actual_time is None:
            return False
        if filters.under_estimated and not record.actual_time > record.estimated_time:
            return False
        if filters.over_estimated and not record.actual_time < record.estimated_time:
            return False

    return True


def is_after(sort: SortSpec, key: tuple, last_key: Optional[tuple]) -> bool:
    """True if `key` comes strictly after `last_key` in the sort order."""
    if last_key is None:
        return True
    return key < last_key if sort.descending else key > last_key


def escape_like(text: str) -> str:
    """Escape LIKE wildcards so the search term matches literally."""
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def sort_column(sort: SortSpec) -> str:
    """SQL expression ordered the same way as SortSpec.key()."""
    ranks = SORT_RANKS.get(sort.field)
    if ranks is None:
        return sort.field
    cases = " ".join(f"WHEN '{value}' THEN {rank}" for value, rank in ranks.items())
    return f"(CASE {sort.field} {cases} END)"


class WhereBuilder:
    """Accumulates SQL conditions with positional asyncpg parameters."""

    def __init__(self):
        self.conditions: list[str] = []
        self.params: list[Any] = []

    def param(self, value: Any) -> str:
        self.params.append(value)
        return f"${len(self.params)}"

    def add(self, condition: str) -> None:
        self.conditions.append(condition)

    def range(self, column: str, low: Any, high: Any) -> None:
        if low is not None:
            self.add(f"{column} >= {self.param(low)}")
        if high is not None:
            self.add(f"{column} <= {self.param(high)}")

    def sql(self) -> str:
        return " AND ".join(self.conditions) if self.conditions else "TRUE"


def build_where(
    filters: ExportFilters,
    as_of: datetime,
    after: Optional[tuple] = None,
) -> tuple[str, list[Any]]:
    """
    Render filters (and an optional continuation key) as a WHERE clause.

    Returns:
        (condition SQL, positional parameters)
    """
    where = WhereBuilder()

    if filters.status:
        where.add(f"status = ANY({where.param([s.value for s in filters.status])}::text[])")
    if filters.priority:
        where.add(f"priority = ANY({where.param([p.value for p in filters.priority])}::text[])")
    if filters.search:
        pattern = where.param(f"%{escape_like(filters.search)}%")
        where.add(
            f"(title ILIKE {pattern} ESCAPE '\\' OR description ILIKE {pattern} ESCAPE '\\')"
        )

    where.range("created_at", filters.created_after, filters.created_before)
    where.range("updated_at", filters.updated_after, filters.updated_before)
    where.range("completed_at", filters.completed_after, filters.completed_before)

    created_start = _within_start(as_of, filters.created_within)
    if created_start:
        where.add(f"created_at >= {where.param(created_start)}")
    completed_start = _within_start(as_of, filters.completed_within)
    if completed_start:
        where.add(f"completed_at >= {where.param(completed_start)}")

    where.range("estimated_time", filters.estimated_time_min, filters.estimated_time_max)
    where.range("actual_time", filters.actual_time_min, filters.actual_time_max)
    if filters.no_estimate:
        where.add("estimated_time IS NULL")

    if filters.overdue_tasks:
        where.add(
            f"(status = 'in-progress' AND created_at < {where.param(as_of - timedelta(days=OVERDUE_DAYS))})"
        )
    if filters.recently_completed:
        where.add(
            f"(status = 'completed' AND completed_at >= "
            f"{where.param(as_of - timedelta(days=RECENTLY_COMPLETED_DAYS))})"
        )
    if filters.under_estimated:
        where.add(
            "(status = 'completed' AND estimated_time IS NOT NULL "
            "AND actual_time IS NOT NULL AND actual_time > estimated_time)"
        )
    if filters.over_estimated:
        where.add(
            "(status = 'completed' AND estimated_time IS NOT NULL "
            "AND actual_time IS NOT NULL AND actual_time < estimated_time)"
        )

    if after is not None:
        sort = filters.sort
        operator = "<" if sort.descending else ">"
        value, record_id = after
        where.add(f"({sort_column(sort)}, id) {operator} ({where.param(value)}, {where.param(record_id)})")

    return where.sql(), where.params


def build_order(sort: SortSpec) -> str:
    direction = "DESC" if sort.descending else "ASC"
    return f"ORDER BY {sort_column(sort)} {direction}, id {direction}"
