"""
System Status API Router

Operational view of the export service:
- worker pool occupancy
- queue length
- result cache statistics
- database and queue backend in use
"""

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from config import settings
from database import db
from dependencies import get_export_service
from exports.service import ExportService

logger = logging.getLogger(__name__)
router = APIRouter()


# Response Models
class BackendStatus(BaseModel):
    database: str  # 'connected', 'disconnected', 'memory'
    queue: str
    broadcast: str


class SystemStatusResponse(BaseModel):
    queueLength: int
    pool: Dict[str, Any]
    cache: Dict[str, Any]
    scheduledRetries: int
    backends: BackendStatus


@router.get("/api/system/status", response_model=SystemStatusResponse)
async def get_system_status(service: ExportService = Depends(get_export_service)):
    """
    Get export system status.

    Returns:
    - queue length and pool occupancy
    - cache statistics
    - configured backends
    """
    stats = await service.get_stats()

    if not settings.database_url:
        database = "memory"
    elif await db.health_check():
        database = "connected"
    else:
        database = "disconnected"

    return SystemStatusResponse(
        **stats,
        backends=BackendStatus(
            database=database,
            queue=settings.queue_backend,
            broadcast=settings.broadcast_backend,
        ),
    )


@router.post("/api/system/sweep")
async def run_artifact_sweep(service: ExportService = Depends(get_export_service)):
    """Run the artifact retention sweep now."""
    report = await service.run_sweep()
    return report.to_dict()
