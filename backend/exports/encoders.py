"""
Format encoders.

Encoders turn records into byte chunks. They are stateful only in whether
the first record has been emitted, which is what makes resuming into an
existing partial artifact possible:

- CSV writes the header with the first record of a fresh artifact and
  never again.
- JSON writes `[` before the first record, `,` before every later one and
  `]` in finish(). A resumed encoder starts with "a record was already
  written", so its first record gets a leading comma.
"""

import csv
import io
import json
from abc import ABC, abstractmethod

from exceptions import ExportValidationError
from exports.models import TaskRecord

CSV_HEADERS = [
    "ID",
    "Title",
    "Description",
    "Status",
    "Priority",
    "Created At",
    "Updated At",
    "Completed At",
    "Estimated Time",
    "Actual Time",
]

MEDIA_TYPES = {
    "csv": "text/csv",
    "json": "application/json",
}


class RecordEncoder(ABC):
    extension: str = ""

    def __init__(self, resume: bool = False):
        self._started = resume

    @abstractmethod
    def encode(self, record: TaskRecord) -> bytes:
        pass

    @abstractmethod
    def finish(self) -> bytes:
        """Bytes that close the artifact."""
        pass


class CsvEncoder(RecordEncoder):
    extension = "csv"

    def _row(self, values: list) -> bytes:
        buffer = io.StringIO()
        writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
        writer.writerow(values)
        return buffer.getvalue().encode("utf-8")

    def encode(self, record: TaskRecord) -> bytes:
        row = self._row([
            record.id,
            record.title,
            record.description or "",
            record.status.value,
            record.priority.value,
            record.created_at.isoformat() if record.created_at else "",
            record.updated_at.isoformat() if record.updated_at else "",
            record.completed_at.isoformat() if record.completed_at else "",
            "" if record.estimated_time is None else record.estimated_time,
            "" if record.actual_time is None else record.actual_time,
        ])
        if not self._started:
            self._started = True
            return self._row(CSV_HEADERS) + row
        return row

    def finish(self) -> bytes:
        if not self._started:
            # Empty result still gets a header row
            self._started = True
            return self._row(CSV_HEADERS)
        return b""


class JsonEncoder(RecordEncoder):
    extension = "json"

    def encode(self, record: TaskRecord) -> bytes:
        body = json.dumps(record.to_dict(), ensure_ascii=False).encode("utf-8")
        if not self._started:
            self._started = True
            return b"[" + body
        return b"," + body

    def finish(self) -> bytes:
        if not self._started:
            self._started = True
            return b"[]"
        return b"]"


ENCODERS = {
    "csv": CsvEncoder,
    "json": JsonEncoder,
}


def get_encoder(export_format: str, resume: bool = False) -> RecordEncoder:
    try:
        return ENCODERS[export_format](resume=resume)
    except KeyError:
        raise ExportValidationError(
            f"Unsupported export format: {export_format}",
            field="format",
            value=export_format,
        ) from None
