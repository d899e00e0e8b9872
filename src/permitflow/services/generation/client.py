"""Document generation service client.

The generation step is opaque and slow (seconds to minutes) and occasionally
hangs; the worker wraps every call in its own hard deadline.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Protocol

import httpx

from permitflow.models.application import ErrorCategory
from permitflow.services.exceptions import GenerationError

ARTIFACT_KINDS = ("permit", "receipt", "certificate", "plate")


@dataclass
class GenerationResult:
    """Outcome of one generate() call."""

    success: bool
    artifacts: dict[str, str] = field(default_factory=dict)
    folio: Optional[str] = None
    issued_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    error_message: Optional[str] = None
    diagnostic_artifact_path: Optional[str] = None
    error_code: Optional[str] = None

    @property
    def missing_artifacts(self) -> list[str]:
        return [kind for kind in ARTIFACT_KINDS if not self.artifacts.get(kind)]


class DocumentGenerator(Protocol):
    async def generate(self, payload: dict[str, Any]) -> GenerationResult: ...


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def parse_generation_response(body: dict[str, Any]) -> GenerationResult:
    """Map the service's JSON body onto a GenerationResult."""
    if body.get("success"):
        return GenerationResult(
            success=True,
            artifacts={k: v for k, v in (body.get("artifacts") or {}).items() if v},
            folio=body.get("folio"),
            issued_at=_parse_datetime(body.get("issuedAt")),
            expires_at=_parse_datetime(body.get("expiresAt")),
        )
    return GenerationResult(
        success=False,
        error_message=body.get("errorMessage") or "Generation failed without a message",
        diagnostic_artifact_path=body.get("diagnosticArtifactPath"),
        error_code=body.get("errorCode"),
    )


class HttpDocumentGenerator:
    """DocumentGenerator backed by the generation service's HTTP API."""

    def __init__(
        self,
        base_url: str,
        token: str = "",
        timeout: float = 300.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize generation client.

        Args:
            base_url: Service base URL (from GENERATION_SERVICE_URL env var)
            token: Bearer token, sent when non-empty
            timeout: Transport-level timeout in seconds
            transport: Optional httpx transport (tests inject httpx.MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport
        self.headers = {"Content-Type": "application/json"}
        if token:
            self.headers["Authorization"] = f"Bearer {token}"

    async def generate(self, payload: dict[str, Any]) -> GenerationResult:
        """Run document generation for one application.

        Args:
            payload: Application payload (id plus applicant data)

        Returns:
            GenerationResult, successful or not

        Raises:
            GenerationError: Transport failure or a response without a result body
        """
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self.transport
            ) as client:
                response = await client.post(
                    f"{self.base_url}/generate", headers=self.headers, json=payload
                )
        except httpx.TimeoutException as e:
            raise GenerationError(
                f"Generation service timeout: {str(e)}", category=ErrorCategory.TIMEOUT
            )
        except httpx.HTTPError as e:
            raise GenerationError(f"Generation service unreachable: {str(e)}")

        if response.status_code in (401, 403):
            raise GenerationError(
                f"Generation service rejected credentials ({response.status_code})",
                category=ErrorCategory.AUTH_FAILURE,
            )

        try:
            body = response.json()
        except ValueError:
            body = None

        if not isinstance(body, dict) or "success" not in body:
            raise GenerationError(
                f"Generation service returned {response.status_code}: {response.text[:500]}"
            )

        return parse_generation_response(body)
