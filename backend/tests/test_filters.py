"""
Tests for filter normalization, in-process matching and SQL rendering.
"""

from datetime import datetime, timedelta, timezone

import pytest

from conftest import BASE_TIME, make_records
from exceptions import ExportValidationError
from exports.filters import ExportFilters
from exports.models import SortSpec, TaskPriority, TaskRecord, TaskStatus
from exports.query_builder import build_order, build_where, is_after, matches

AS_OF = datetime(2024, 1, 20, tzinfo=timezone.utc)


def task(**fields) -> TaskRecord:
    defaults = {"id": "t1", "title": "Write report", "created_at": BASE_TIME}
    defaults.update(fields)
    return TaskRecord(**defaults)


class TestNormalization:
    """Loose client input becomes one canonical filter set."""

    def test_comma_separated_and_list_are_equal(self):
        a = ExportFilters.parse({"status": "completed,pending"})
        b = ExportFilters.parse({"status": ["pending", "completed", "pending"]})
        assert a == b
        assert a.status == [TaskStatus.COMPLETED, TaskStatus.PENDING]

    def test_camel_and_snake_keys(self):
        a = ExportFilters.parse({"createdAfter": "2024-01-05T00:00:00Z", "sortBy": "updatedAt"})
        b = ExportFilters.parse({"created_after": "2024-01-05T00:00:00+00:00", "sort_by": "updated_at"})
        assert a.fingerprint("csv") == b.fingerprint("csv")

    def test_invalid_dates_and_numbers_dropped(self):
        filters = ExportFilters.parse({
            "createdAfter": "not a date",
            "estimatedTimeMin": "abc",
            "actualTimeMax": -5,
        })
        assert filters.created_after is None
        assert filters.estimated_time_min is None
        assert filters.actual_time_max is None

    def test_numeric_strings_accepted(self):
        filters = ExportFilters.parse({"estimatedTimeMin": "15", "estimatedTimeMax": 60.0})
        assert filters.estimated_time_min == 15
        assert filters.estimated_time_max == 60

    def test_search_trimmed_and_lowered(self):
        assert ExportFilters.parse({"search": "  Report "}).search == "report"
        assert ExportFilters.parse({"search": "   "}).search is None

    def test_normalized_omits_defaults(self):
        assert ExportFilters.parse({}).normalized() == {}
        assert ExportFilters.parse({"sortOrder": "DESC"}).normalized() == {}
        assert ExportFilters.parse({"sortOrder": "asc"}).normalized() == {"sort_order": "asc"}

    def test_fingerprint_depends_on_format(self):
        filters = ExportFilters.parse({"status": "completed"})
        assert filters.fingerprint("csv") != filters.fingerprint("json")

    @pytest.mark.parametrize("raw", [
        {"status": "archived"},
        {"priority": "urgent"},
        {"sortBy": "description"},
        {"createdWithin": "last-year"},
        {"unknownField": 1},
        {"estimatedTimeMin": 50, "estimatedTimeMax": 10},
        {"createdAfter": "2024-02-01", "createdBefore": "2024-01-01"},
    ])
    def test_invalid_filters_rejected(self, raw):
        with pytest.raises(ExportValidationError) as exc_info:
            ExportFilters.parse(raw)
        assert exc_info.value.code == "VALIDATION_ERROR"

    def test_sort_spec(self):
        sort = ExportFilters.parse({"sortBy": "title", "sortOrder": "asc"}).sort
        assert sort == SortSpec(field="title", descending=False)


class TestMatches:
    """In-process predicate used by the memory record store."""

    def test_status_and_priority(self):
        filters = ExportFilters.parse({"status": "completed", "priority": "high,low"})
        assert matches(filters, task(status="completed", priority="high"), AS_OF)
        assert not matches(filters, task(status="completed", priority="medium"), AS_OF)
        assert not matches(filters, task(status="pending", priority="high"), AS_OF)

    def test_search_covers_title_and_description(self):
        filters = ExportFilters.parse({"search": "QUARTERLY"})
        assert matches(filters, task(title="Quarterly numbers"), AS_OF)
        assert matches(filters, task(description="for the quarterly review"), AS_OF)
        assert not matches(filters, task(), AS_OF)

    def test_absolute_date_range(self):
        filters = ExportFilters.parse({
            "createdAfter": (BASE_TIME + timedelta(days=1)).isoformat(),
            "createdBefore": (BASE_TIME + timedelta(days=3)).isoformat(),
        })
        assert matches(filters, task(created_at=BASE_TIME + timedelta(days=2)), AS_OF)
        assert not matches(filters, task(created_at=BASE_TIME), AS_OF)
        assert not matches(filters, task(created_at=BASE_TIME + timedelta(days=4)), AS_OF)

    def test_completed_range_excludes_uncompleted(self):
        filters = ExportFilters.parse({"completedAfter": BASE_TIME.isoformat()})
        assert not matches(filters, task(), AS_OF)

    def test_relative_window_uses_as_of(self):
        filters = ExportFilters.parse({"createdWithin": "last-7-days"})
        record = task(created_at=AS_OF - timedelta(days=5))
        assert matches(filters, record, AS_OF)
        assert not matches(filters, record, AS_OF + timedelta(days=10))

    def test_time_ranges_and_no_estimate(self):
        filters = ExportFilters.parse({"estimatedTimeMin": 30, "estimatedTimeMax": 60})
        assert matches(filters, task(estimated_time=45), AS_OF)
        assert not matches(filters, task(estimated_time=90), AS_OF)
        assert not matches(filters, task(), AS_OF)

        no_estimate = ExportFilters.parse({"noEstimate": True})
        assert matches(no_estimate, task(), AS_OF)
        assert not matches(no_estimate, task(estimated_time=10), AS_OF)

    def test_overdue(self):
        filters = ExportFilters.parse({"overdueTasks": "true"})
        assert matches(filters, task(status="in-progress", created_at=AS_OF - timedelta(days=10)), AS_OF)
        assert not matches(filters, task(status="in-progress", created_at=AS_OF - timedelta(days=2)), AS_OF)
        assert not matches(filters, task(status="pending", created_at=AS_OF - timedelta(days=10)), AS_OF)

    def test_recently_completed(self):
        filters = ExportFilters.parse({"recentlyCompleted": True})
        assert matches(filters, task(status="completed", completed_at=AS_OF - timedelta(days=1)), AS_OF)
        assert not matches(filters, task(status="completed", completed_at=AS_OF - timedelta(days=30)), AS_OF)

    def test_estimate_accuracy(self):
        under = ExportFilters.parse({"underEstimated": True})
        over = ExportFilters.parse({"overEstimated": True})
        slow = task(status="completed", estimated_time=30, actual_time=45)
        fast = task(status="completed", estimated_time=30, actual_time=20)

        assert matches(under, slow, AS_OF) and not matches(under, fast, AS_OF)
        assert matches(over, fast, AS_OF) and not matches(over, slow, AS_OF)
        assert not matches(under, task(status="in-progress", estimated_time=30, actual_time=45), AS_OF)

    def test_default_filters_match_everything(self):
        filters = ExportFilters()
        assert all(matches(filters, record, AS_OF) for record in make_records(5))


class TestSortKeys:
    def test_priority_sorts_by_rank(self):
        sort = SortSpec(field="priority", descending=False)
        records = [task(id=p.value, priority=p) for p in (TaskPriority.HIGH, TaskPriority.LOW, TaskPriority.MEDIUM)]
        ordered = sorted(records, key=sort.key)
        assert [r.priority for r in ordered] == [TaskPriority.LOW, TaskPriority.MEDIUM, TaskPriority.HIGH]
        assert sort.key(task(priority=TaskPriority.HIGH)) == (2, "t1")

    def test_status_sorts_by_rank(self):
        sort = SortSpec(field="status")
        assert sort.key(task(status="pending")) < sort.key(task(status="in-progress")) < sort.key(task(status="completed"))

    def test_ranked_key_round_trips_through_checkpoint(self):
        sort = SortSpec(field="priority")
        key = sort.key(task(priority=TaskPriority.MEDIUM))
        assert sort.decode_key(sort.encode_key(key)) == key
        assert sort.decode_key(["medium", "t1"]) == key

    def test_key_round_trips_through_checkpoint(self):
        sort = SortSpec(field="created_at")
        key = sort.key(task())
        assert sort.decode_key(sort.encode_key(key)) == key

    def test_is_after(self):
        descending = SortSpec(descending=True)
        ascending = SortSpec(descending=False)
        assert is_after(descending, (1, "a"), (2, "a"))
        assert not is_after(descending, (2, "a"), (2, "a"))
        assert is_after(ascending, (2, "b"), (2, "a"))
        assert is_after(ascending, (0, "a"), None)


class TestSqlRendering:
    """Parameterized WHERE and ORDER BY clauses."""

    def test_no_filters(self):
        sql, params = build_where(ExportFilters(), AS_OF)
        assert sql == "TRUE"
        assert params == []

    def test_parameters_are_positional(self):
        filters = ExportFilters.parse({"status": "completed", "search": "report", "estimatedTimeMin": 10})
        sql, params = build_where(filters, AS_OF)

        assert "status = ANY($1::text[])" in sql
        assert "title ILIKE $2 ESCAPE '\\' OR description ILIKE $2 ESCAPE '\\'" in sql
        assert "estimated_time >= $3" in sql
        assert params == [["completed"], "%report%", 10]

    def test_search_wildcards_escaped(self):
        filters = ExportFilters.parse({"search": "100%_done\\"})
        _, params = build_where(filters, AS_OF)
        assert params == ["%100\\%\\_done\\\\%"]

        assert matches(filters, task(title="Mark 100%_done\\ today"), AS_OF)
        assert not matches(filters, task(title="Mark 1000 done"), AS_OF)

    def test_ranked_sort_column(self):
        sort = SortSpec("priority", descending=False)
        assert build_order(sort) == (
            "ORDER BY (CASE priority WHEN 'low' THEN 0 WHEN 'medium' THEN 1 WHEN 'high' THEN 2 END) ASC, id ASC"
        )
        filters = ExportFilters.parse({"sortBy": "priority"})
        sql, params = build_where(filters, AS_OF, after=(1, "task-004"))
        assert sql.startswith("((CASE priority WHEN 'low' THEN 0")
        assert sql.endswith("END), id) < ($1, $2)")
        assert params == [1, "task-004"]

    def test_relative_window_parameter(self):
        filters = ExportFilters.parse({"createdWithin": "last-30-days"})
        sql, params = build_where(filters, AS_OF)
        assert sql == "created_at >= $1"
        assert params == [AS_OF - timedelta(days=30)]

    def test_continuation_row_comparison(self):
        filters = ExportFilters.parse({"sortBy": "createdAt", "sortOrder": "desc"})
        sql, params = build_where(filters, AS_OF, after=(BASE_TIME, "task-004"))
        assert sql == "(created_at, id) < ($1, $2)"
        assert params == [BASE_TIME, "task-004"]

        ascending = ExportFilters.parse({"sortOrder": "asc"})
        sql, _ = build_where(ascending, AS_OF, after=(BASE_TIME, "task-004"))
        assert ">" in sql

    def test_build_order_breaks_ties_by_id(self):
        assert build_order(SortSpec("title", descending=False)) == "ORDER BY title ASC, id ASC"
        assert build_order(SortSpec()) == "ORDER BY created_at DESC, id DESC"
