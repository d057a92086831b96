"""
Appendable artifact sink.

Writes are buffered in memory and made durable by flush() (write + fsync in
a worker thread). The durable offset only advances after fsync returns, so
a checkpoint taken right after flush() never points past bytes that could
be lost in a crash.
"""

import asyncio
import logging
import os
import re
from pathlib import Path
from typing import BinaryIO, Optional

from exceptions import StructuralCorruptionError, TransientIOError

logger = logging.getLogger(__name__)

ARTIFACT_PATTERN = re.compile(r"^export_(?P<job_id>[A-Za-z0-9_-]+)\.(?P<ext>csv|json)$")


def artifact_path(temp_dir: str, job_id: str, export_format: str) -> Path:
    return Path(temp_dir) / f"export_{job_id}.{export_format}"


def artifact_filename(job_id: str, export_format: str) -> str:
    """Name offered to the client on download."""
    return f"export_{job_id}.{export_format}"


class ArtifactSink:
    """Buffered, fsync-on-flush file writer for one export artifact."""

    def __init__(self, path: Path, handle: BinaryIO, offset: int, buffer_limit: int):
        self.path = path
        self._handle: Optional[BinaryIO] = handle
        self._buffer = bytearray()
        self._durable_offset = offset
        self.buffer_limit = buffer_limit

    @classmethod
    async def open(
        cls,
        path: Path,
        checkpoint_offset: int = 0,
        resume: bool = False,
        buffer_limit: int = 1024 * 1024,
    ) -> "ArtifactSink":
        """
        Open a fresh artifact, or reopen one for appending at a checkpoint.

        On resume the file must be at least `checkpoint_offset` bytes long;
        anything beyond the checkpoint is an unconfirmed tail and is
        truncated away.

        Raises:
            StructuralCorruptionError: the file is missing or shorter than
                the checkpoint
            TransientIOError: the filesystem is unavailable
        """
        try:
            if not resume:
                handle = await asyncio.to_thread(cls._open_fresh, path)
                return cls(path, handle, 0, buffer_limit)

            size = await asyncio.to_thread(cls._size_or_none, path)
            if size is None or size < checkpoint_offset:
                raise StructuralCorruptionError(str(path), checkpoint_offset, size)
            if size > checkpoint_offset:
                logger.warning(
                    f"Truncating {path.name} from {size} to checkpoint offset {checkpoint_offset}"
                )
            handle = await asyncio.to_thread(cls._open_append, path, checkpoint_offset)
            return cls(path, handle, checkpoint_offset, buffer_limit)
        except OSError as e:
            raise TransientIOError("open_artifact", original_error=e) from e

    @staticmethod
    def _open_fresh(path: Path) -> BinaryIO:
        path.parent.mkdir(parents=True, exist_ok=True)
        return open(path, "wb")

    @staticmethod
    def _size_or_none(path: Path) -> Optional[int]:
        try:
            return path.stat().st_size
        except FileNotFoundError:
            return None

    @staticmethod
    def _open_append(path: Path, offset: int) -> BinaryIO:
        os.truncate(path, offset)
        return open(path, "ab")

    def write(self, chunk: bytes) -> bool:
        """Buffer a chunk. Returns True when the buffer should be flushed."""
        self._buffer.extend(chunk)
        return len(self._buffer) >= self.buffer_limit

    def _write_sync(self, data: bytes) -> None:
        self._handle.write(data)
        self._handle.flush()
        os.fsync(self._handle.fileno())

    async def flush(self) -> int:
        """Write and fsync buffered bytes; returns the new durable offset."""
        if self._buffer:
            data = bytes(self._buffer)
            try:
                await asyncio.to_thread(self._write_sync, data)
            except OSError as e:
                raise TransientIOError("flush_artifact", original_error=e) from e
            self._buffer.clear()
            self._durable_offset += len(data)
        return self._durable_offset

    async def close(self) -> None:
        """Close the file. Unflushed bytes are dropped."""
        if self._handle is not None:
            handle, self._handle = self._handle, None
            await asyncio.to_thread(handle.close)


def remove_artifact(path) -> bool:
    """Delete an artifact file if present."""
    try:
        Path(path).unlink()
        return True
    except FileNotFoundError:
        return False
