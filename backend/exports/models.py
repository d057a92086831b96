"""
Task records as seen by the export pipeline, and their sort keys.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# Enum fields sort by rank, not by their string value
SORT_RANKS: dict[str, dict[str, int]] = {
    "status": {s.value: i for i, s in enumerate(TaskStatus)},
    "priority": {p.value: i for i, p in enumerate(TaskPriority)},
}


DATETIME_SORT_FIELDS = ("created_at", "updated_at")
SORTABLE_FIELDS = DATETIME_SORT_FIELDS + ("title", "status", "priority", "id")


@dataclass
class TaskRecord:
    """One exportable task."""
    id: str
    title: str
    description: str = ""
    status: TaskStatus = TaskStatus.PENDING
    priority: TaskPriority = TaskPriority.MEDIUM
    created_at: datetime = None
    updated_at: datetime = None
    completed_at: Optional[datetime] = None
    estimated_time: Optional[int] = None  # minutes
    actual_time: Optional[int] = None  # minutes

    def __post_init__(self):
        self.status = TaskStatus(self.status)
        self.priority = TaskPriority(self.priority)
        now = datetime.now(timezone.utc)
        if self.created_at is None:
            self.created_at = now
        if self.updated_at is None:
            self.updated_at = self.created_at

    @classmethod
    def from_row(cls, row) -> "TaskRecord":
        return cls(
            id=str(row["id"]),
            title=row["title"],
            description=row["description"] or "",
            status=row["status"],
            priority=row["priority"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            completed_at=row["completed_at"],
            estimated_time=row["estimated_time"],
            actual_time=row["actual_time"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "status": self.status.value,
            "priority": self.priority.value,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "estimated_time": self.estimated_time,
            "actual_time": self.actual_time,
        }


@dataclass(frozen=True)
class SortSpec:
    field: str = "created_at"
    descending: bool = True

    def key(self, record: TaskRecord) -> tuple:
        """Total order over records: the sort field, then id."""
        value = getattr(record, self.field)
        if isinstance(value, Enum):
            value = SORT_RANKS[self.field][value.value]
        return (value, record.id)

    def encode_key(self, key: tuple) -> list:
        """JSON-safe form of a sort key for checkpoints."""
        value, record_id = key
        if isinstance(value, datetime):
            value = value.isoformat()
        return [value, record_id]

    def decode_key(self, encoded: list) -> tuple:
        value, record_id = encoded
        if self.field in DATETIME_SORT_FIELDS and isinstance(value, str):
            value = datetime.fromisoformat(value)
        elif self.field in SORT_RANKS and isinstance(value, str):
            value = SORT_RANKS[self.field][value]
        return (value, record_id)
