"""
Export filters.

Accepts the loose shapes clients send (single values or lists, comma
separated strings, numeric and boolean strings, camelCase or snake_case
keys) and normalizes them into one canonical model. Two requests that mean
the same thing normalize to the same fingerprint, which is what the result
cache keys on.
"""

import hashlib
import json
from datetime import datetime, timezone
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from exceptions import ExportValidationError
from exports.models import SORTABLE_FIELDS, SortSpec, TaskPriority, TaskStatus

WITHIN_RANGES = {
    "last-7-days": 7,
    "last-30-days": 30,
    "last-90-days": 90,
}

DATE_FIELDS = (
    "created_after",
    "created_before",
    "updated_after",
    "updated_before",
    "completed_after",
    "completed_before",
)
NUMBER_FIELDS = (
    "estimated_time_min",
    "estimated_time_max",
    "actual_time_min",
    "actual_time_max",
)

SortField = Literal["created_at", "updated_at", "title", "status", "priority", "id"]

_CAMEL_SORT_FIELDS = {to_camel(name): name for name in SORTABLE_FIELDS}


class ExportFilters(BaseModel):
    """Normalized filter set for an export."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        frozen=True,
    )

    status: Optional[list[TaskStatus]] = None
    priority: Optional[list[TaskPriority]] = None
    search: Optional[str] = None

    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None
    updated_after: Optional[datetime] = None
    updated_before: Optional[datetime] = None
    completed_after: Optional[datetime] = None
    completed_before: Optional[datetime] = None
    created_within: Optional[Literal["last-7-days", "last-30-days", "last-90-days"]] = None
    completed_within: Optional[Literal["last-7-days", "last-30-days", "last-90-days"]] = None

    estimated_time_min: Optional[int] = None
    estimated_time_max: Optional[int] = None
    actual_time_min: Optional[int] = None
    actual_time_max: Optional[int] = None
    no_estimate: bool = False

    overdue_tasks: bool = False
    recently_completed: bool = False
    under_estimated: bool = False
    over_estimated: bool = False

    sort_by: SortField = "created_at"
    sort_order: Literal["asc", "desc"] = "desc"

    @field_validator("status", "priority", mode="before")
    @classmethod
    def split_values(cls, value: Any) -> Any:
        if value is None:
            return None
        if isinstance(value, str):
            value = [part.strip() for part in value.split(",")]
        if not isinstance(value, (list, tuple, set)):
            value = [value]
        value = [v for v in value if v not in (None, "")]
        return value or None

    @field_validator("status", "priority")
    @classmethod
    def sort_values(cls, value: Optional[list]) -> Optional[list]:
        if not value:
            return None
        return sorted(set(value), key=lambda v: v.value)

    @field_validator("search", mode="before")
    @classmethod
    def clean_search(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        value = str(value).strip().lower()
        return value or None

    @field_validator(*DATE_FIELDS, mode="before")
    @classmethod
    def drop_invalid_dates(cls, value: Any) -> Optional[datetime]:
        if value in (None, ""):
            return None
        if isinstance(value, datetime):
            parsed = value
        else:
            try:
                parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
            except ValueError:
                return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)

    @field_validator(*NUMBER_FIELDS, mode="before")
    @classmethod
    def drop_invalid_numbers(cls, value: Any) -> Optional[int]:
        if value in (None, ""):
            return None
        if isinstance(value, bool):
            return None
        try:
            number = int(float(value))
        except (TypeError, ValueError):
            return None
        return number if number >= 0 else None

    @field_validator("sort_by", mode="before")
    @classmethod
    def accept_camel_sort(cls, value: Any) -> Any:
        if isinstance(value, str):
            return _CAMEL_SORT_FIELDS.get(value, value)
        return value

    @field_validator("sort_order", mode="before")
    @classmethod
    def lower_sort_order(cls, value: Any) -> Any:
        return value.lower() if isinstance(value, str) else value

    @model_validator(mode="after")
    def check_ranges(self) -> "ExportFilters":
        pairs = [
            ("created_after", "created_before"),
            ("updated_after", "updated_before"),
            ("completed_after", "completed_before"),
            ("estimated_time_min", "estimated_time_max"),
            ("actual_time_min", "actual_time_max"),
        ]
        for low, high in pairs:
            low_value, high_value = getattr(self, low), getattr(self, high)
            if low_value is not None and high_value is not None and low_value > high_value:
                raise ValueError(f"{low} must not be after {high}")
        return self

    @classmethod
    def parse(cls, raw: Optional[dict[str, Any]]) -> "ExportFilters":
        """Build filters from client input, raising ExportValidationError."""
        if isinstance(raw, ExportFilters):
            return raw
        try:
            return cls.model_validate(raw or {})
        except ValidationError as e:
            error = e.errors()[0]
            location = ".".join(str(part) for part in error.get("loc", ())) or None
            raise ExportValidationError(
                f"Invalid filter: {error.get('msg', 'invalid value')}",
                field=location,
                value=error.get("input"),
            ) from e

    @property
    def sort(self) -> SortSpec:
        return SortSpec(field=self.sort_by, descending=self.sort_order == "desc")

    def normalized(self) -> dict[str, Any]:
        """Canonical JSON-safe form; defaults and empty values are omitted."""
        return self.model_dump(mode="json", exclude_none=True, exclude_defaults=True)

    def fingerprint(self, export_format: str) -> str:
        """Content key for (format, normalized filters)."""
        payload = json.dumps(
            {"format": export_format, "filters": self.normalized()},
            sort_keys=True,
            separators=(",", ":"),
        )
        return hashlib.sha256(payload.encode()).hexdigest()
