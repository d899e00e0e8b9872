"""Generation error classification.

A structured ``errorCode`` from the generation service wins when it names a
known category. Otherwise the category is guessed from the free-text message by
substring matching. The substring match is heuristic: an unrelated message that
happens to contain "timeout" is classified as TIMEOUT.
"""

from typing import Optional

from permitflow.models.application import ErrorCategory

TIMEOUT_MARKERS = ("timeout", "timed out")
AUTH_MARKERS = (
    "login",
    "credential",
    "unauthorized",
    "forbidden",
    "authentication",
    "401",
    "403",
)
PORTAL_CHANGED_MARKERS = (
    "selector",
    "element",
    "layout",
    "navigation",
    "not found on page",
)


def classify_generation_error(
    message: Optional[str], error_code: Optional[str] = None
) -> ErrorCategory:
    """Classify a failed generation attempt.

    Args:
        message: Diagnostic message returned by (or raised from) the generation call
        error_code: Structured error code, when the service provides one

    Returns:
        ErrorCategory of the failure

    Classification rules:
        - errorCode equal to a category name -> that category
        - "timeout" / "timed out" -> TIMEOUT
        - login / credential / 401 / 403 markers -> AUTH_FAILURE
        - selector / element / layout / navigation markers -> PORTAL_CHANGED
        - anything else -> UNKNOWN
    """
    if error_code:
        try:
            return ErrorCategory(error_code.strip().upper())
        except ValueError:
            pass

    text = (message or "").lower()

    if any(marker in text for marker in TIMEOUT_MARKERS):
        return ErrorCategory.TIMEOUT

    if any(marker in text for marker in AUTH_MARKERS):
        return ErrorCategory.AUTH_FAILURE

    if any(marker in text for marker in PORTAL_CHANGED_MARKERS):
        return ErrorCategory.PORTAL_CHANGED

    return ErrorCategory.UNKNOWN
