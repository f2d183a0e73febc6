from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class Certificate:
    """PEM encoded X.509 certificate."""

    pem: bytes


@dataclass(frozen=True)
class CertificateSigningRequest:
    """PEM encoded PKCS#10 certificate signing request."""

    pem: bytes


@dataclass(frozen=True)
class PrivateKey:
    """
    PEM encoded private key.

    Held in memory only for the duration of one operation; the bytes are kept
    out of repr() so they never end up in logs or tracebacks.
    """

    pem: bytes = field(repr=False)


@dataclass(frozen=True)
class CertificateAuthority:
    """A CA certificate together with its signing key."""

    certificate: Certificate
    private_key: PrivateKey


@dataclass(frozen=True)
class IssuedCertificate:
    """Leaf certificate and the private key generated for it."""

    certificate: Certificate
    private_key: PrivateKey


@dataclass(frozen=True)
class KeyRequest:
    """A certificate signing request paired with its freshly generated key."""

    csr: CertificateSigningRequest
    private_key: PrivateKey
