"""On-disk layout of a cluster's trust material.

Keys of CAs and services are only ever written through EnvelopeCrypto.
Certificates and signing requests are public and stored as plain PEM.
Administrator keys are the single exception: they stay with the operator and
are written in plaintext with mode 0600.
"""

from __future__ import annotations

import logging
from pathlib import Path

from .config import validate_cluster_name
from .domains import DomainProfile, SubjectProfile, TrustDomain, get_domain_profile
from .envelope import ENCRYPTED_SUFFIX, EnvelopeCrypto
from .exceptions import ArtifactExistsError, ConfigurationError
from .files import atomic_write, read_bytes
from .models import (
    Certificate,
    CertificateAuthority,
    CertificateSigningRequest,
    IssuedCertificate,
    KeyRequest,
    PrivateKey,
)

_logger = logging.getLogger("cluster_trust.trust_store")

KEY_SUFFIX = "-key" + ENCRYPTED_SUFFIX


class TrustStore:
    """Canonical artifact paths of one cluster and the rules for writing them."""

    def __init__(
        self,
        root: Path,
        cluster: str,
        crypto: EnvelopeCrypto | None = None,
    ) -> None:
        self._root = Path(root)
        self._cluster = validate_cluster_name(cluster)
        self._crypto = crypto

    @property
    def cluster(self) -> str:
        return self._cluster

    @property
    def directory(self) -> Path:
        return self._root / "clusters" / self._cluster

    @property
    def crypto(self) -> EnvelopeCrypto:
        if self._crypto is None:
            raise ConfigurationError(
                "This operation needs envelope encryption but no master key is configured."
            )
        return self._crypto

    # Paths

    def certificate_path(self, stem: str) -> Path:
        return self.directory / f"{stem}.pem"

    def encrypted_key_path(self, stem: str) -> Path:
        return self.directory / f"{stem}{KEY_SUFFIX}"

    def ca_certificate_path(self, domain: TrustDomain | str) -> Path:
        return self.certificate_path(get_domain_profile(domain).ca_stem)

    def ca_key_path(self, domain: TrustDomain | str) -> Path:
        return self.encrypted_key_path(get_domain_profile(domain).ca_stem)

    def admin_csr_path(self, name: str) -> Path:
        return self.directory / f"{name}.csr"

    def admin_key_path(self, name: str) -> Path:
        return self.directory / f"{name}-key.pem"

    def admin_certificate_path(self, name: str) -> Path:
        return self.directory / f"{name}.pem"

    def encrypted_key_paths(self) -> list[Path]:
        """Every escrowed key of the cluster, sorted by name."""
        if not self.directory.is_dir():
            return []
        return sorted(path for path in self.directory.glob(f"*{KEY_SUFFIX}") if path.is_file())

    # Existence

    def has_ca(self, domain: TrustDomain | str) -> bool:
        """A CA is issued once its certificate is published; a lone key is not a CA."""
        return self.ca_certificate_path(domain).exists()

    def has_subject(self, subject: SubjectProfile) -> bool:
        return (
            self.certificate_path(subject.stem).exists()
            and self.encrypted_key_path(subject.stem).exists()
        )

    # Certificate authorities

    def save_ca(self, profile: DomainProfile, ca: CertificateAuthority) -> None:
        cert_path = self.certificate_path(profile.ca_stem)
        key_path = self.encrypted_key_path(profile.ca_stem)
        if cert_path.exists():
            raise ArtifactExistsError(
                f"CA for trust domain '{profile.domain}' already exists.", artifact=cert_path
            )
        if key_path.exists():
            # Left behind by an interrupted save; it never had a certificate.
            _logger.warning("Replacing CA key %s that has no certificate", key_path)
        # Key first: a certificate on disk without its key would look usable.
        self.crypto.encrypt_and_write_file(ca.private_key.pem, key_path)
        atomic_write(cert_path, ca.certificate.pem)
        _logger.info("Stored CA for %s/%s", self._cluster, profile.domain)

    def load_ca(self, domain: TrustDomain | str) -> CertificateAuthority:
        """Load a CA, decrypting its key into memory."""
        profile = get_domain_profile(domain)
        certificate = Certificate(read_bytes(self.certificate_path(profile.ca_stem)))
        key = self.crypto.read_encrypted_file(self.encrypted_key_path(profile.ca_stem))
        return CertificateAuthority(certificate=certificate, private_key=PrivateKey(key))

    def load_ca_certificate(self, domain: TrustDomain | str) -> Certificate:
        return Certificate(read_bytes(self.ca_certificate_path(domain)))

    # Leaf subjects

    def save_subject(self, subject: SubjectProfile, issued: IssuedCertificate) -> None:
        self.crypto.encrypt_and_write_file(
            issued.private_key.pem, self.encrypted_key_path(subject.stem)
        )
        atomic_write(self.certificate_path(subject.stem), issued.certificate.pem)
        _logger.info("Stored certificate %s for %s", subject.stem, self._cluster)

    def load_subject_certificate(self, subject: SubjectProfile) -> Certificate:
        return Certificate(read_bytes(self.certificate_path(subject.stem)))

    # Administrators

    def save_admin_request(self, name: str, request: KeyRequest) -> None:
        key_path = self.admin_key_path(name)
        if key_path.exists():
            raise ArtifactExistsError(
                f"Administrator '{name}' already has a key.", artifact=key_path
            )
        atomic_write(key_path, request.private_key.pem, mode=0o600)
        atomic_write(self.admin_csr_path(name), request.csr.pem)
        _logger.info("Stored signing request for administrator %s", name)

    def load_admin_request(self, name: str) -> CertificateSigningRequest:
        return CertificateSigningRequest(read_bytes(self.admin_csr_path(name)))

    def save_admin_certificate(self, name: str, certificate: Certificate) -> None:
        atomic_write(self.admin_certificate_path(name), certificate.pem)
        _logger.info("Stored certificate for administrator %s", name)

    # Rotation

    def rewrite_encrypted_key(self, path: Path, blob: str) -> None:
        """Atomically replace an escrowed key with a new blob."""
        atomic_write(Path(path), (blob + "\n").encode("ascii"))
