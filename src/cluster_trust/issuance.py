from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Sequence

from .models import (
    Certificate,
    CertificateAuthority,
    CertificateSigningRequest,
    IssuedCertificate,
    KeyRequest,
)

KEY_ALGORITHM = "rsa"
KEY_SIZE = 2048


def key_request_document(
    common_name: str,
    *,
    algorithm: str = KEY_ALGORITHM,
    size: int = KEY_SIZE,
) -> dict[str, Any]:
    """The request body understood by the issuance engine."""
    if not common_name or not common_name.strip():
        raise ValueError("common_name is required.")
    return {"CN": common_name.strip(), "key": {"algo": algorithm, "size": size}}


def normalize_sans(sans: Sequence[str] | None) -> list[str]:
    if not sans:
        return []
    normalized: list[str] = []
    for name in sans:
        stripped = name.strip() if name else ""
        if stripped and stripped not in normalized:
            normalized.append(stripped)
    return normalized


class IssuanceClient(ABC):
    """
    Certificate-issuance capability.

    Implementations either drive an external engine or run in-process;
    callers only depend on these four operations.
    """

    @abstractmethod
    def generate_ca(self, common_name: str) -> CertificateAuthority:
        """Create a self-signed certificate authority."""

    @abstractmethod
    def generate_leaf(
        self,
        ca: CertificateAuthority,
        common_name: str,
        sans: Sequence[str] | None = None,
    ) -> IssuedCertificate:
        """Create a key pair and a certificate for it signed by `ca`."""

    @abstractmethod
    def sign(
        self,
        ca: CertificateAuthority,
        csr: CertificateSigningRequest,
    ) -> Certificate:
        """Sign an existing certificate signing request with `ca`."""

    @abstractmethod
    def generate_csr(self, common_name: str) -> KeyRequest:
        """Create a key pair and a certificate signing request for it."""
