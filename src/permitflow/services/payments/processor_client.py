"""Payment processor API client used to re-query payment state.

The reconciliation sweep calls this directly, bypassing webhooks, to learn the
true state of a payment intent whose notification never arrived.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

import httpx

from permitflow.services.exceptions import (
    PaymentProcessorPermanentError,
    PaymentProcessorTransientError,
)


class PaymentState(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PENDING = "pending"


# Processor intent status -> our view of the payment
_STATE_BY_STATUS = {
    "succeeded": PaymentState.SUCCEEDED,
    "paid": PaymentState.SUCCEEDED,
    "canceled": PaymentState.FAILED,
    "requires_payment_method": PaymentState.FAILED,
    "declined": PaymentState.FAILED,
    "expired": PaymentState.FAILED,
    "processing": PaymentState.PENDING,
    "requires_action": PaymentState.PENDING,
    "requires_confirmation": PaymentState.PENDING,
    "requires_capture": PaymentState.PENDING,
    "pending_payment": PaymentState.PENDING,
}


@dataclass
class PaymentSnapshot:
    """Processor-side view of one payment intent."""

    intent_id: str
    status: str
    state: PaymentState
    amount: Optional[float] = None
    raw: dict[str, Any] = field(default_factory=dict)


class PaymentProcessorClient:
    """Read-only client for the processor's payment intent API."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.stripe.com",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize processor client.

        Args:
            api_key: Secret API key (from PAYMENT_API_KEY env var)
            base_url: API base URL
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests inject httpx.MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport
        self.headers = {"Authorization": f"Bearer {api_key}"}

    async def get_payment(self, intent_id: str) -> PaymentSnapshot:
        """Fetch the current state of a payment intent.

        Args:
            intent_id: Processor payment intent / order identifier

        Returns:
            PaymentSnapshot with the normalized state

        Raises:
            PaymentProcessorTransientError: Network timeout, 429 or 5xx
            PaymentProcessorPermanentError: 401/403, unknown intent (404), bad request
        """
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self.transport
            ) as client:
                response = await client.get(
                    f"{self.base_url}/v1/payment_intents/{intent_id}", headers=self.headers
                )
        except httpx.TimeoutException as e:
            raise PaymentProcessorTransientError(
                f"Request timeout after {self.timeout}s: {str(e)}"
            )
        except httpx.HTTPError as e:
            raise PaymentProcessorTransientError(f"Network error: {str(e)}")

        # Error classification
        if response.status_code == 429:
            raise PaymentProcessorTransientError(f"Rate limit exceeded: {response.text}")
        elif response.status_code >= 500:
            raise PaymentProcessorTransientError(
                f"Service unavailable ({response.status_code}): {response.text}"
            )
        elif response.status_code in (401, 403):
            raise PaymentProcessorPermanentError(
                f"Unauthorized ({response.status_code}): check PAYMENT_API_KEY"
            )
        elif response.status_code == 404:
            raise PaymentProcessorPermanentError(f"Unknown payment intent: {intent_id}")
        elif response.status_code >= 400:
            raise PaymentProcessorPermanentError(f"Bad request: {response.text}")

        body = response.json()
        status = str(body.get("status", "")).lower()
        amount = body.get("amount")
        return PaymentSnapshot(
            intent_id=intent_id,
            status=status,
            state=_STATE_BY_STATUS.get(status, PaymentState.PENDING),
            amount=float(amount) if amount is not None else None,
            raw=body,
        )
