"""Service error hierarchy for the permit pipeline.

This module defines the exception hierarchy for service-level errors:
- ServiceError: Base for all service errors
- TransientError: Retryable errors (network, rate limits, timeouts)
- PermanentError: Non-retryable errors (authentication, validation)

Compare-and-swap misses on application transitions are not errors; transition
helpers return None and callers log them.
"""

from permitflow.models.application import ErrorCategory, InvalidStateTransition


class ServiceError(Exception):
    """Base exception for all service errors."""

    pass


class TransientError(ServiceError):
    """Transient error that may succeed on retry.

    Examples:
    - Network timeouts
    - Rate limit exceeded (429)
    - Service unavailable (503)
    """

    pass


class PermanentError(ServiceError):
    """Permanent error that will not succeed on retry.

    Examples:
    - Authentication failures (401, 403)
    - Invalid request parameters (400)
    - Configuration errors
    """

    pass


# Webhook transport errors
class InvalidSignatureError(PermanentError):
    """Webhook signature header missing, malformed, stale or not matching."""

    pass


class MalformedEnvelopeError(PermanentError):
    """Webhook body is not a valid processor envelope."""

    pass


# Payment processor re-query errors
class PaymentProcessorError(ServiceError):
    """Base exception for payment processor API errors."""

    pass


class PaymentProcessorTransientError(PaymentProcessorError, TransientError):
    """Network failure, timeout, 429 or 5xx from the processor."""

    pass


class PaymentProcessorPermanentError(PaymentProcessorError, PermanentError):
    """Authentication failure or unknown payment intent."""

    pass


# Application state errors
class ApplicationNotFoundError(PermanentError):
    """No application row with the given id."""

    pass


class RowLockedError(TransientError):
    """Non-blocking row lock could not be acquired."""

    pass


class ActionNotAllowedError(PermanentError):
    """Requested action is not valid for the application's current state."""

    pass


# Document generation errors
class GenerationError(ServiceError):
    """Generation attempt failed.

    Carries the classified category and an optional diagnostic artifact path
    (e.g. a screenshot taken by the generation service).
    """

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        diagnostic_path: str | None = None,
    ):
        super().__init__(message)
        self.category = category
        self.diagnostic_path = diagnostic_path


__all__ = [
    "ServiceError",
    "TransientError",
    "PermanentError",
    "InvalidSignatureError",
    "MalformedEnvelopeError",
    "PaymentProcessorError",
    "PaymentProcessorTransientError",
    "PaymentProcessorPermanentError",
    "ApplicationNotFoundError",
    "RowLockedError",
    "ActionNotAllowedError",
    "GenerationError",
    "InvalidStateTransition",
]
