"""Certificate issuer client.

Certificate generation (templates, numbering, PDF rendering) belongs to the
certification service. Progress tracking only asks it to issue a certificate
for a completed enrollment and keeps the returned id.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol
from uuid import UUID

import httpx
import structlog

from src.progress.exceptions import ExternalServiceError


logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class IssueCertificateParams:
    """Data printed on (or linked to) a course certificate."""

    tenant_id: UUID
    student_id: UUID
    course_id: UUID
    enrollment_id: UUID
    course_name: str
    completion_date: datetime
    course_duration_minutes: int
    score: float | None = None
    instructor_id: UUID | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "tenant_id": str(self.tenant_id),
            "student_id": str(self.student_id),
            "course_id": str(self.course_id),
            "enrollment_id": str(self.enrollment_id),
            "course_name": self.course_name,
            "completion_date": self.completion_date.isoformat(),
            "course_duration_minutes": self.course_duration_minutes,
            "score": self.score,
            "instructor_id": str(self.instructor_id) if self.instructor_id else None,
        }


@dataclass(frozen=True)
class IssuedCertificate:
    id: str


class CertificateIssuer(Protocol):
    async def issue(self, params: IssueCertificateParams) -> IssuedCertificate:
        """Issue a certificate.

        Raises:
            ExternalServiceError: The issuer failed or is unreachable.
        """
        ...


class HttpCertificateIssuer:
    """Issue certificates through the certification service REST API."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout
        self._transport = transport

    async def issue(self, params: IssueCertificateParams) -> IssuedCertificate:
        url = f"{self._base_url}/v1/certificates"
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Accept": "application/json",
        }

        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                response = await client.post(
                    url, json=params.to_payload(), headers=headers
                )

                if not response.is_success:
                    logger.error(
                        "certificate_issuer_request_failed",
                        status_code=response.status_code,
                        response_text=response.text[:500],
                        enrollment_id=str(params.enrollment_id),
                    )
                    raise ExternalServiceError(
                        f"Certificate issuer error: {response.status_code}"
                    )

                try:
                    data = response.json()
                except ValueError as e:
                    logger.error(
                        "certificate_issuer_invalid_response",
                        response_text=response.text[:500],
                        enrollment_id=str(params.enrollment_id),
                    )
                    raise ExternalServiceError(
                        "Certificate issuer returned invalid JSON"
                    ) from e

        except httpx.TimeoutException as e:
            logger.error("certificate_issuer_timeout", error=str(e))
            raise ExternalServiceError("Certificate issuer timeout") from e
        except httpx.RequestError as e:
            logger.error("certificate_issuer_request_error", error=str(e))
            raise ExternalServiceError(f"Certificate issuer request error: {e}") from e

        if not isinstance(data, dict):
            raise ExternalServiceError("Certificate issuer returned an unexpected body")

        certificate_id = data.get("id") or data.get("certificate_id")
        if not certificate_id:
            raise ExternalServiceError("Certificate issuer returned no certificate id")

        return IssuedCertificate(id=str(certificate_id))


class UnconfiguredCertificateIssuer:
    """Issuer used when no certification service is configured.

    Every call fails, so completed enrollments stay without a certificate.
    """

    async def issue(self, params: IssueCertificateParams) -> IssuedCertificate:
        raise ExternalServiceError("Certificate issuer is not configured")
