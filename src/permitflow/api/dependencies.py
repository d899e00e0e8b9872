"""FastAPI dependencies for request validation and common operations.

This module provides reusable FastAPI dependencies for:
- Webhook signature validation
- Admin token authorization
- Access to the unit-of-work factory and services kept in app.state
"""

import hmac
from typing import Annotated, Callable

import structlog
from fastapi import Depends, Header, HTTPException, Request, status

from permitflow.core.config import Settings
from permitflow.services.admin import AdminService
from permitflow.services.applications import ApplicationService
from permitflow.services.exceptions import InvalidSignatureError
from permitflow.services.payments.ingestion import WebhookIngestionService
from permitflow.services.payments.signature import verify_signature
from permitflow.services.queue import JobQueue
from permitflow.uow import UnitOfWork

logger = structlog.get_logger(__name__)

SIGNATURE_HEADER = "Stripe-Signature"


def get_settings(request: Request) -> Settings:
    """Get application settings loaded at startup.

    Returns:
        Settings instance stored in app.state by the lifespan.
    """
    return request.app.state.settings


async def validate_webhook_signature(
    request: Request,
    stripe_signature: Annotated[str | None, Header(alias=SIGNATURE_HEADER)] = None,
    settings: Settings = Depends(get_settings),
) -> bytes:
    """Validate the payment processor's webhook signature before processing.

    The dependency reads the raw request body and checks the ``t=..,v1=..``
    HMAC-SHA256 header against the shared secret. If validation fails it raises
    400 before any state is touched.

    Args:
        request: FastAPI Request object (contains raw body)
        stripe_signature: Value of the signature header
        settings: Application settings (injected via dependency)

    Returns:
        Raw request body bytes (for further processing by the endpoint)

    Raises:
        HTTPException: 400 Bad Request if signature is missing, stale or invalid

    Security:
        - Validates signature BEFORE any processing logic
        - Uses constant-time comparison to prevent timing attacks
        - Returns raw body to ensure consistency with signature validation
    """
    raw_body = await request.body()

    try:
        verify_signature(
            raw_body,
            stripe_signature,
            settings.payment_webhook_secret,
            tolerance_seconds=settings.webhook_tolerance_seconds,
        )
    except InvalidSignatureError as e:
        logger.warning("webhook.invalid_signature", reason=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return raw_body


def require_admin_token(
    x_admin_token: Annotated[str | None, Header()] = None,
    settings: Settings = Depends(get_settings),
) -> str:
    """Authorize admin endpoints with the shared X-Admin-Token header.

    Returns:
        Name used as the acting admin in logs and resolution records

    Raises:
        HTTPException: 401 if the token is missing or does not match
    """
    expected = settings.admin_api_token
    if not x_admin_token or not expected or not hmac.compare_digest(x_admin_token, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or missing admin token"
        )
    return "admin"


def get_uow_factory(request: Request) -> Callable[[], UnitOfWork]:
    """Get UnitOfWork factory from app state.

    Example:
        >>> @router.post("/endpoint")
        >>> async def endpoint(uow_factory=Depends(get_uow_factory)):
        ...     async with await uow_factory() as uow:
        ...         await uow.applications.get_by_id(application_id)
    """
    return request.app.state.uow_factory


def get_queue(request: Request) -> JobQueue:
    return request.app.state.queue


def get_ingestion_service(
    uow_factory=Depends(get_uow_factory), queue: JobQueue = Depends(get_queue)
) -> WebhookIngestionService:
    return WebhookIngestionService(uow_factory, queue)


def get_application_service(
    uow_factory=Depends(get_uow_factory),
    queue: JobQueue = Depends(get_queue),
    settings: Settings = Depends(get_settings),
) -> ApplicationService:
    return ApplicationService(
        uow_factory, queue, payment_window_hours=settings.application_payment_window_hours
    )


def get_admin_service(
    uow_factory=Depends(get_uow_factory), queue: JobQueue = Depends(get_queue)
) -> AdminService:
    return AdminService(uow_factory, queue)
