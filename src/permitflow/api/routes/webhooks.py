"""Payment processor webhook endpoint.

Signature verification runs as a dependency before the body is parsed. Once it
has passed, the endpoint acknowledges with 200 for every application-level
outcome (processed, duplicate, state conflict, unknown application or event
type) so the processor never retries because of our state. Only a malformed
body (400) or a storage failure (500, rolled back, safe to redeliver) produce
an error response.
"""

import structlog
from fastapi import APIRouter, Depends, HTTPException, status

from permitflow.api.dependencies import get_ingestion_service, validate_webhook_signature
from permitflow.services.exceptions import MalformedEnvelopeError
from permitflow.services.payments.envelope import WebhookEnvelope
from permitflow.services.payments.ingestion import WebhookIngestionService

logger = structlog.get_logger(__name__)
router = APIRouter()


@router.post("/payments")
async def receive_payment_webhook(
    raw_body: bytes = Depends(validate_webhook_signature),
    ingestion: WebhookIngestionService = Depends(get_ingestion_service),
):
    """Receive and process one payment processor notification.

    Args:
        raw_body: Validated raw request body (from signature validation)
        ingestion: Webhook ingestion service

    Returns:
        Acknowledgement body with the processing outcome

    HTTP Status Codes:
        200: Event processed, duplicate, or ignored
        400: Invalid signature or malformed envelope
        500: Internal server error (triggers processor retry)
    """
    try:
        envelope = WebhookEnvelope.parse(raw_body)
    except MalformedEnvelopeError as e:
        logger.error("webhook.malformed", error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    try:
        result = await ingestion.ingest(envelope)
    except Exception as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to process event: {type(e).__name__}",
        )

    return result.as_response()
