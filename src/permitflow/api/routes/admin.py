"""Admin endpoints for generation triage and queue control.

All endpoints require the X-Admin-Token header.

- GET /api/admin/applications/{application_id} - Triage view with payment history
- POST /api/admin/applications/{application_id}/retry - Re-enqueue at admin priority
- POST /api/admin/applications/{application_id}/resolve - Record manual handling
- POST /api/admin/applications/{application_id}/cancel - Cancel the application
- POST /api/admin/queue/pause, /api/admin/queue/resume - Stop or restart claiming
- GET /api/admin/queue/stats - Queue counters and application counts
"""

from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from permitflow.api.dependencies import get_admin_service, require_admin_token
from permitflow.models.application import Application
from permitflow.services.admin import AdminService
from permitflow.services.exceptions import ActionNotAllowedError, ApplicationNotFoundError

logger = structlog.get_logger(__name__)
router = APIRouter(prefix="/api/admin", tags=["admin"])


class ResolveRequest(BaseModel):
    notes: str = Field(..., min_length=1, max_length=2000, description="What was done by hand")
    resolved_by: Optional[str] = Field(
        default=None, max_length=255, description="Operator name recorded with the resolution"
    )


class AdminActionResponse(BaseModel):
    """Application state after an admin action."""

    application_id: int
    status: str
    queue_status: Optional[str] = None
    queue_position: Optional[int] = None
    resolution_notes: Optional[str] = None

    @classmethod
    def from_application(cls, application: Application) -> "AdminActionResponse":
        return cls(
            application_id=application.id,  # type: ignore[arg-type]
            status=application.status.value,
            queue_status=application.queue_status.value if application.queue_status else None,
            queue_position=application.queue_position,
            resolution_notes=application.resolution_notes,
        )


def _to_http_error(error: Exception) -> HTTPException:
    if isinstance(error, ApplicationNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error))
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(error))


@router.get("/applications/{application_id}")
async def get_application(
    application_id: int,
    admin: str = Depends(require_admin_token),
    service: AdminService = Depends(get_admin_service),
) -> dict:
    """Application state, document completeness and payment history for triage."""
    try:
        return await service.get_application(application_id)
    except ApplicationNotFoundError as e:
        raise _to_http_error(e)


@router.post("/applications/{application_id}/retry", response_model=AdminActionResponse)
async def retry_application(
    application_id: int,
    admin: str = Depends(require_admin_token),
    service: AdminService = Depends(get_admin_service),
) -> AdminActionResponse:
    """Re-enqueue a failed generation with admin priority.

    HTTP Status Codes:
        200: Application queued
        404: Unknown application
        409: No failed generation attempt to retry
    """
    try:
        application = await service.retry(application_id, admin=admin)
    except (ApplicationNotFoundError, ActionNotAllowedError) as e:
        raise _to_http_error(e)
    return AdminActionResponse.from_application(application)


@router.post("/applications/{application_id}/resolve", response_model=AdminActionResponse)
async def resolve_application(
    application_id: int,
    request: ResolveRequest,
    admin: str = Depends(require_admin_token),
    service: AdminService = Depends(get_admin_service),
) -> AdminActionResponse:
    """Mark an application as handled manually without going through the worker."""
    try:
        application = await service.resolve(
            application_id, request.notes, admin=request.resolved_by or admin
        )
    except (ApplicationNotFoundError, ActionNotAllowedError) as e:
        raise _to_http_error(e)
    return AdminActionResponse.from_application(application)


@router.post("/applications/{application_id}/cancel", response_model=AdminActionResponse)
async def cancel_application(
    application_id: int,
    admin: str = Depends(require_admin_token),
    service: AdminService = Depends(get_admin_service),
) -> AdminActionResponse:
    try:
        application = await service.cancel(application_id, admin=admin)
    except (ApplicationNotFoundError, ActionNotAllowedError) as e:
        raise _to_http_error(e)
    return AdminActionResponse.from_application(application)


@router.post("/queue/pause")
async def pause_queue(
    admin: str = Depends(require_admin_token),
    service: AdminService = Depends(get_admin_service),
) -> dict:
    await service.pause_queue(admin=admin)
    return {"paused": True}


@router.post("/queue/resume")
async def resume_queue(
    admin: str = Depends(require_admin_token),
    service: AdminService = Depends(get_admin_service),
) -> dict:
    await service.resume_queue(admin=admin)
    return {"paused": False}


@router.get("/queue/stats")
async def queue_stats(
    admin: str = Depends(require_admin_token),
    service: AdminService = Depends(get_admin_service),
) -> dict:
    return await service.queue_stats()
