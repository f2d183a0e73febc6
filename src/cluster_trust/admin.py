from __future__ import annotations

import logging
from pathlib import Path

from . import x509_ops
from .config import validate_name
from .domains import TrustDomain, reserved_stems
from .exceptions import (
    ArtifactExistsError,
    ArtifactNotFoundError,
    ClusterTrustError,
    ConfigurationError,
    IssuanceError,
)
from .issuance import IssuanceClient
from .models import Certificate, CertificateSigningRequest
from .process import run_command
from .trust_store import TrustStore

_logger = logging.getLogger("cluster_trust.admin")


class AdminCredentialFlow:
    """
    Client credentials for cluster administrators.

    Administrator keys stay with the operator and are never escrowed; they
    are written in plaintext with mode 0600.
    """

    def __init__(
        self,
        store: TrustStore,
        issuer: IssuanceClient,
        kubectl: str = "kubectl",
    ) -> None:
        self._store = store
        self._issuer = issuer
        self._kubectl = kubectl

    def _identity(self, name: str) -> str:
        validate_name(name, "administrator")
        if name in reserved_stems():
            raise ConfigurationError(
                f"'{name}' names a CA or service certificate and cannot be an administrator."
            )
        return f"{name}-{self._store.cluster}"

    def create(self, name: str) -> CertificateSigningRequest:
        identity = self._identity(name)
        key_path = self._store.admin_key_path(name)
        try:
            if key_path.exists():
                raise ArtifactExistsError(
                    f"Administrator '{name}' already has a key; refusing to replace it."
                )
            request = self._issuer.generate_csr(identity)
            self._store.save_admin_request(name, request)
        except ClusterTrustError as exc:
            raise exc.annotate(operation="admin-create", artifact=key_path)
        _logger.info("Created signing request for %s", identity)
        return request.csr

    def sign(self, name: str) -> Certificate:
        identity = self._identity(name)
        cert_path = self._store.admin_certificate_path(name)
        try:
            request = self._store.load_admin_request(name)
            ca = self._store.load_ca(TrustDomain.KUBERNETES)
            certificate = self._issuer.sign(ca, request)
            try:
                chained = x509_ops.verify_issued_by(certificate.pem, ca.certificate.pem)
                same_key = x509_ops.public_keys_match(certificate.pem, request.pem)
            except ValueError as exc:
                raise IssuanceError(f"Signed certificate could not be parsed: {exc}") from exc
            if not chained:
                raise IssuanceError("Signed certificate is not issued by the cluster CA.")
            if not same_key:
                raise IssuanceError(
                    "Signed certificate does not certify the administrator's key."
                )
            self._store.save_admin_certificate(name, certificate)
        except ClusterTrustError as exc:
            raise exc.annotate(operation="admin-sign", artifact=cert_path)
        _logger.info("Signed certificate for %s", identity)
        return certificate

    def kubeconfig_commands(self, name: str, dns_domain: str) -> list[list[str]]:
        """The kubectl invocations that register the credentials locally."""
        if not dns_domain or not dns_domain.strip():
            raise ValueError("A DNS domain is required to address the API server.")
        cluster = self._store.cluster
        identity = self._identity(name)
        return [
            [
                self._kubectl, "config", "set-cluster", cluster,
                f"--server=https://kubernetes.{dns_domain.strip()}",
                f"--certificate-authority={self._store.ca_certificate_path(TrustDomain.KUBERNETES)}",
                "--embed-certs=true",
            ],
            [
                self._kubectl, "config", "set-credentials", identity,
                f"--client-certificate={self._store.admin_certificate_path(name)}",
                f"--client-key={self._store.admin_key_path(name)}",
                "--embed-certs=true",
            ],
            [
                self._kubectl, "config", "set-context", cluster,
                f"--cluster={cluster}",
                f"--user={identity}",
            ],
        ]

    def install(self, name: str, dns_domain: str) -> None:
        commands = self.kubeconfig_commands(name, dns_domain)
        required: list[Path] = [
            self._store.ca_certificate_path(TrustDomain.KUBERNETES),
            self._store.admin_certificate_path(name),
            self._store.admin_key_path(name),
        ]
        for path in required:
            if not path.is_file():
                raise ArtifactNotFoundError(
                    f"Missing trust artifact: {path}",
                    operation="admin-install",
                    artifact=path,
                )
        for command in commands:
            try:
                run_command(command)
            except ClusterTrustError as exc:
                raise exc.annotate(operation="admin-install", artifact=command[2])
        _logger.info("Installed kubectl credentials for %s", self._identity(name))
