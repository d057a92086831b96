"""
Export Service Exception Hierarchy
Provides structured error handling across the application
"""
from typing import Optional, Dict, Any


class ExportServiceError(Exception):
    """
    Base exception for all export service errors.

    All custom exceptions should inherit from this class.
    """

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses"""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details
            }
        }


# ============================================================================
# Request Exceptions
# ============================================================================

class ExportValidationError(ExportServiceError):
    """Raised when a format, filter, sort or paging parameter is invalid"""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Any = None
    ):
        details = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)[:200]
        super().__init__(message, "VALIDATION_ERROR", details)


class JobNotFoundError(ExportServiceError):
    """Raised when an export job does not exist"""

    def __init__(self, job_id: str):
        super().__init__(
            message=f"Export job not found: {job_id}",
            code="JOB_NOT_FOUND",
            details={"job_id": job_id}
        )
        self.job_id = job_id


class InvalidTransitionError(ExportServiceError):
    """Raised when a job cannot move from its current status to the requested one"""

    def __init__(self, job_id: str, current: str, target: str):
        super().__init__(
            message=f"Cannot move export job {job_id} from '{current}' to '{target}'",
            code="INVALID_TRANSITION",
            details={"job_id": job_id, "current": current, "target": target}
        )
        self.current = current
        self.target = target


class ExportNotReadyError(ExportServiceError):
    """Raised when a download is requested for a job without a usable artifact"""

    def __init__(self, job_id: str, status: str, message: Optional[str] = None):
        super().__init__(
            message=message or f"Export job {job_id} is not ready for download (status: {status})",
            code="EXPORT_NOT_READY",
            details={"job_id": job_id, "status": status}
        )


# ============================================================================
# Processing Exceptions
# ============================================================================

class TransientIOError(ExportServiceError):
    """Raised when a store, database or disk is temporarily unavailable"""

    def __init__(
        self,
        operation: str,
        message: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        details = {"operation": operation}
        if original_error:
            details["original_error"] = f"{type(original_error).__name__}: {original_error}"[:500]
        super().__init__(
            message=message or f"Temporary I/O failure during {operation}",
            code="TRANSIENT_IO",
            details=details
        )
        self.operation = operation
        self.original_error = original_error


class StructuralCorruptionError(ExportServiceError):
    """Raised when an artifact on disk disagrees with the job's checkpoint"""

    def __init__(self, path: str, expected_bytes: int, actual_bytes: Optional[int]):
        super().__init__(
            message=(
                f"Artifact {path} is inconsistent with its checkpoint "
                f"(expected {expected_bytes} bytes, found {actual_bytes})"
            ),
            code="STRUCTURAL_CORRUPTION",
            details={
                "path": path,
                "expected_bytes": expected_bytes,
                "actual_bytes": actual_bytes,
            }
        )


class PoolShutdownError(ExportServiceError):
    """Raised when work is submitted to a worker pool that is shutting down"""

    def __init__(self):
        super().__init__("Worker pool is shutting down", "POOL_SHUTDOWN")


class LeaseLostError(ExportServiceError):
    """Raised when a worker reports for a job that has since been reassigned"""

    def __init__(self, job_id: str, attempt: int, current_attempt: int):
        super().__init__(
            message=f"Worker lease {attempt} for export job {job_id} is stale (current: {current_attempt})",
            code="LEASE_LOST",
            details={"job_id": job_id, "attempt": attempt, "current_attempt": current_attempt}
        )
