"""
Background Job Infrastructure

Durable export job records, the priority queue, the job state manager,
status broadcasting and the worker pool.
"""

from .job_store import ExportFormat, ExportJob, JobStatus, JobStore
from .queue_store import PriorityQueueStore, init_queue_store
from .state_manager import JobStateManager
from .worker_pool import JobRegistry, WorkerPool

__all__ = [
    "ExportFormat",
    "ExportJob",
    "JobStatus",
    "JobStore",
    "PriorityQueueStore",
    "init_queue_store",
    "JobStateManager",
    "JobRegistry",
    "WorkerPool",
]
