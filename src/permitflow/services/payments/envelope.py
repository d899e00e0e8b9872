"""Payment processor webhook envelope and event vocabulary.

Both Stripe-style and Conekta-style event names are accepted; each maps to one
EventKind that drives the application transition.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from permitflow.services.exceptions import MalformedEnvelopeError


class EventKind(str, Enum):
    SUCCEEDED = "succeeded"
    CONFIRMED = "confirmed"  # charge / voucher confirmed
    FAILED = "failed"
    VOUCHER_CREATED = "voucher_created"
    PROCESSING = "processing"
    UNKNOWN = "unknown"


SUCCEEDED_TYPES = frozenset({"payment_intent.succeeded"})
CONFIRMED_TYPES = frozenset({"charge.succeeded", "charge.paid", "order.paid"})
FAILED_TYPES = frozenset(
    {
        "payment_intent.payment_failed",
        "payment_intent.canceled",
        "charge.failed",
        "order.declined",
        "order.canceled",
    }
)
VOUCHER_TYPES = frozenset({"order.pending_payment"})
PROCESSING_TYPES = frozenset({"payment_intent.processing", "payment_intent.created"})
# Carries voucher details for cash payments, otherwise means "customer action pending"
REQUIRES_ACTION_TYPE = "payment_intent.requires_action"

CASH_VOUCHER_METHODS = frozenset({"oxxo", "cash"})


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")


class EnvelopeMetadata(_CamelModel):
    application_id: Optional[int] = Field(default=None, alias="applicationId")


class PaymentMethodDetails(_CamelModel):
    """Payment method block; for cash vouchers it carries the voucher data."""

    type: Optional[str] = None
    reference: Optional[str] = None
    expires_at: Optional[Any] = Field(default=None, alias="expiresAt")
    voucher_url: Optional[str] = Field(default=None, alias="hostedVoucherUrl")


class EnvelopeData(_CamelModel):
    order_id: Optional[str] = Field(default=None, alias="orderId")
    amount: Optional[float] = None
    status: Optional[str] = None
    payment_method_details: Optional[PaymentMethodDetails] = Field(
        default=None, alias="paymentMethodDetails"
    )
    metadata: EnvelopeMetadata = Field(default_factory=EnvelopeMetadata)


class WebhookEnvelope(_CamelModel):
    """Signed notification body: ``{eventId, type, data: {...}}``."""

    event_id: str = Field(alias="eventId", min_length=1)
    type: str = Field(min_length=1)
    data: EnvelopeData = Field(default_factory=EnvelopeData)

    @classmethod
    def parse(cls, raw_body: bytes) -> "WebhookEnvelope":
        """Parse raw bytes into an envelope.

        Raises:
            MalformedEnvelopeError: Body is not JSON or lacks eventId / type
        """
        try:
            return cls.model_validate_json(raw_body)
        except ValidationError as e:
            raise MalformedEnvelopeError(
                f"Invalid webhook envelope: {e.error_count()} error(s)"
            ) from e

    @property
    def application_id(self) -> Optional[int]:
        return self.data.metadata.application_id

    @property
    def order_id(self) -> Optional[str]:
        return self.data.order_id

    @property
    def is_cash_voucher(self) -> bool:
        details = self.data.payment_method_details
        return bool(details and (details.type or "").lower() in CASH_VOUCHER_METHODS)

    @property
    def kind(self) -> EventKind:
        return classify_event_type(self.type, self.is_cash_voucher)

    def voucher_payload(self) -> dict[str, Any]:
        """Voucher reference / expiry / URL, stored only on the PaymentEvent."""
        details = self.data.payment_method_details
        if details is None:
            return {}
        return {
            "voucherReference": details.reference,
            "voucherExpiresAt": details.expires_at,
            "voucherUrl": details.voucher_url,
        }


def classify_event_type(event_type: str, is_cash_voucher: bool = False) -> EventKind:
    """Map a processor event type name to an EventKind."""
    if event_type in SUCCEEDED_TYPES:
        return EventKind.SUCCEEDED
    if event_type in CONFIRMED_TYPES:
        return EventKind.CONFIRMED
    if event_type in FAILED_TYPES:
        return EventKind.FAILED
    if event_type in VOUCHER_TYPES:
        return EventKind.VOUCHER_CREATED
    if event_type == REQUIRES_ACTION_TYPE:
        return EventKind.VOUCHER_CREATED if is_cash_voucher else EventKind.PROCESSING
    if event_type in PROCESSING_TYPES:
        return EventKind.PROCESSING
    return EventKind.UNKNOWN
