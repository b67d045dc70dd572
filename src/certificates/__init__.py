"""Certificate issuance for completed enrollments."""

from .issuer import (
    CertificateIssuer,
    HttpCertificateIssuer,
    IssuedCertificate,
    IssueCertificateParams,
    UnconfiguredCertificateIssuer,
)
from .worker import CertificateIssuanceWorker


__all__ = [
    "CertificateIssuanceWorker",
    "CertificateIssuer",
    "HttpCertificateIssuer",
    "IssueCertificateParams",
    "IssuedCertificate",
    "UnconfiguredCertificateIssuer",
]
