"""
FastAPI Dependency Injection Module

The export service is built once in the app lifespan and stored on
`app.state`; routers get it through `get_export_service` so tests can
override it with `app.dependency_overrides`.
"""
from fastapi import HTTPException, Request, status

from exports.service import ExportService


def get_export_service(request: Request) -> ExportService:
    """Dependency to get the running ExportService"""
    service = getattr(request.app.state, "export_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Export service is not initialized",
        )
    return service
