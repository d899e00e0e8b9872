"""Application endpoints exposed to users.

- GET /api/applications/{application_id}/queue-status - Queue position and wait estimate
- POST /api/applications/{application_id}/renew - Start a renewal of a finished permit
- POST /api/applications/{application_id}/retry-payment - Reopen checkout after a decline
"""

import structlog
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from permitflow.api.dependencies import get_application_service
from permitflow.services.applications import ApplicationService
from permitflow.services.exceptions import ActionNotAllowedError, ApplicationNotFoundError

logger = structlog.get_logger(__name__)
router = APIRouter(prefix="/api/applications", tags=["applications"])


class RenewalResponse(BaseModel):
    """Response model for a created renewal."""

    application_id: int = Field(..., description="ID of the new application")
    renewed_from_id: int = Field(..., description="ID of the source application")
    status: str = Field(..., description="Status of the new application")
    renewal_count: int = Field(..., description="Renewals in this permit's lineage")


@router.get("/{application_id}/queue-status")
async def get_queue_status(
    application_id: int,
    service: ApplicationService = Depends(get_application_service),
) -> dict:
    """Return ``{inQueue, position, estimatedWaitTime, status, progress, retryCount}``.

    Applications that are not waiting for documents return ``inQueue: false``.
    """
    try:
        return await service.get_queue_status(application_id)
    except ApplicationNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.post(
    "/{application_id}/renew",
    response_model=RenewalResponse,
    status_code=status.HTTP_201_CREATED,
)
async def renew_application(
    application_id: int,
    service: ApplicationService = Depends(get_application_service),
) -> RenewalResponse:
    try:
        renewal = await service.renew(application_id)
    except ApplicationNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ActionNotAllowedError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    return RenewalResponse(
        application_id=renewal.id,  # type: ignore[arg-type]
        renewed_from_id=application_id,
        status=renewal.status.value,
        renewal_count=renewal.renewal_count,
    )


@router.post("/{application_id}/retry-payment")
async def retry_payment(
    application_id: int,
    service: ApplicationService = Depends(get_application_service),
) -> dict:
    """Send a declined application back to checkout.

    HTTP Status Codes:
        200: Application is awaiting payment again
        404: Unknown application
        409: Payment was not declined
    """
    try:
        application = await service.retry_payment(application_id)
    except ApplicationNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ActionNotAllowedError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    return {
        "applicationId": application.id,
        "status": application.status.value,
        "expiresAt": application.expires_at.isoformat() if application.expires_at else None,
    }
