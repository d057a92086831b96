"""
Exports API Router

Control surface for background exports:
- start, pause, resume and cancel jobs
- poll status, list history and per-client jobs
- download finished artifacts
- estimate the size of an export before starting it
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import FileResponse
from pydantic import BaseModel, ConfigDict, Field

from dependencies import get_export_service
from exports.service import ExportService
from jobs.job_store import ExportJob

logger = logging.getLogger(__name__)

router = APIRouter()


# Request Models
class StartExportRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    format: str = "csv"
    filters: Dict[str, Any] = Field(default_factory=dict)
    client_id: Optional[str] = Field(default=None, alias="clientId")
    priority: Optional[int] = None


class EstimateExportRequest(BaseModel):
    format: str = "csv"
    filters: Dict[str, Any] = Field(default_factory=dict)


# Response Models
class ProgressInfo(BaseModel):
    processed_items: int
    total_items: int
    percentage: int


class ResultInfo(BaseModel):
    filename: Optional[str] = None
    size_bytes: Optional[int] = None
    download_url: Optional[str] = None


class ExportJobResponse(BaseModel):
    id: str
    format: str
    status: str
    priority: int
    client_id: Optional[str] = None
    filters: Dict[str, Any]
    progress: ProgressInfo
    result: Optional[ResultInfo] = None
    error: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_job(cls, job: ExportJob) -> "ExportJobResponse":
        result = None
        if job.filename:
            result = ResultInfo(
                filename=job.filename,
                size_bytes=job.size_bytes,
                download_url=f"/api/exports/{job.id}/download" if job.temp_path else None,
            )
        return cls(
            id=job.id,
            format=job.format.value,
            status=job.status.value,
            priority=job.priority,
            client_id=job.client_id,
            filters=job.filters,
            progress=ProgressInfo(
                processed_items=job.processed_items,
                total_items=job.total_items,
                percentage=job.percentage,
            ),
            result=result,
            error=job.error,
            created_at=job.created_at,
            updated_at=job.updated_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
        )


class StartExportResponse(BaseModel):
    job: ExportJobResponse
    cached: bool = False
    reused: bool = False


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class ExportHistoryResponse(BaseModel):
    jobs: List[ExportJobResponse]
    pagination: Pagination


class EstimateResponse(BaseModel):
    format: str
    totalItems: int
    estimatedBytes: int


@router.post("", response_model=StartExportResponse, status_code=status.HTTP_202_ACCEPTED)
async def start_export(
    request: StartExportRequest,
    service: ExportService = Depends(get_export_service),
):
    """Queue a new export, or return an identical running or cached one."""
    result = await service.start_export(
        request.format,
        request.filters,
        client_id=request.client_id,
        priority=request.priority,
    )
    return StartExportResponse(
        job=ExportJobResponse.from_job(result["job"]),
        cached=result["cached"],
        reused=result["reused"],
    )


@router.get("", response_model=ExportHistoryResponse)
async def get_export_history(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    service: ExportService = Depends(get_export_service),
):
    history = await service.get_history(page=page, limit=limit)
    return ExportHistoryResponse(
        jobs=[ExportJobResponse.from_job(job) for job in history["jobs"]],
        pagination=Pagination(**history["pagination"]),
    )


@router.post("/estimate", response_model=EstimateResponse)
async def estimate_export(
    request: EstimateExportRequest,
    service: ExportService = Depends(get_export_service),
):
    return await service.estimate_export(request.format, request.filters)


@router.get("/clients/{client_id}", response_model=List[ExportJobResponse])
async def list_client_exports(
    client_id: str,
    limit: int = Query(50, ge=1, le=100),
    service: ExportService = Depends(get_export_service),
):
    jobs = await service.list_client_jobs(client_id, limit=limit)
    return [ExportJobResponse.from_job(job) for job in jobs]


@router.get("/{job_id}", response_model=ExportJobResponse)
async def get_export_status(
    job_id: str,
    service: ExportService = Depends(get_export_service),
):
    return ExportJobResponse.from_job(await service.get_status(job_id))


@router.post("/{job_id}/pause", response_model=ExportJobResponse)
async def pause_export(
    job_id: str,
    service: ExportService = Depends(get_export_service),
):
    return ExportJobResponse.from_job(await service.pause_export(job_id))


@router.post("/{job_id}/resume", response_model=ExportJobResponse)
async def resume_export(
    job_id: str,
    service: ExportService = Depends(get_export_service),
):
    return ExportJobResponse.from_job(await service.resume_export(job_id))


@router.post("/{job_id}/cancel", response_model=ExportJobResponse)
async def cancel_export(
    job_id: str,
    service: ExportService = Depends(get_export_service),
):
    return ExportJobResponse.from_job(await service.cancel_export(job_id))


@router.get("/{job_id}/download")
async def download_export(
    job_id: str,
    service: ExportService = Depends(get_export_service),
):
    """Stream a completed export as an attachment."""
    download = await service.download_export(job_id)
    logger.info(f"Serving export {job_id} ({download.size_bytes} bytes)")
    return FileResponse(
        path=download.path,
        media_type=download.media_type,
        filename=download.filename,
    )
