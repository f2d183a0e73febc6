from __future__ import annotations

import logging
from typing import Callable, Sequence

from asn1crypto import keys
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from . import x509_ops
from .exceptions import IssuanceError
from .issuance import KEY_SIZE, IssuanceClient, normalize_sans
from .models import (
    Certificate,
    CertificateAuthority,
    CertificateSigningRequest,
    IssuedCertificate,
    KeyRequest,
    PrivateKey,
)

_logger = logging.getLogger("cluster_trust.local_issuer")

SIGNING_ALGORITHM = "rsa_pkcs1v15_sha256"


def _public_key_info(key: rsa.RSAPrivateKey) -> keys.PublicKeyInfo:
    der = key.public_key().public_bytes(
        serialization.Encoding.DER,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return keys.PublicKeyInfo.load(der)


def _signer(key: rsa.RSAPrivateKey) -> Callable[[bytes], bytes]:
    return lambda data: key.sign(data, padding.PKCS1v15(), hashes.SHA256())


def _key_pem(key: rsa.RSAPrivateKey) -> PrivateKey:
    return PrivateKey(
        key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.TraditionalOpenSSL,
            serialization.NoEncryption(),
        )
    )


def _load_signing_key(private_key: PrivateKey) -> rsa.RSAPrivateKey:
    try:
        key = serialization.load_pem_private_key(private_key.pem, password=None)
    except (ValueError, TypeError) as exc:
        raise IssuanceError("CA private key could not be loaded.") from exc
    if not isinstance(key, rsa.RSAPrivateKey):
        raise IssuanceError(f"Unsupported CA key type: {type(key).__name__}.")
    return key


class LocalIssuanceClient(IssuanceClient):
    """
    In-process issuer producing the same artifacts as the cfssl engine.

    RSA keys come from `cryptography`; certificates and requests are built
    with asn1crypto through x509_ops.
    """

    def __init__(
        self,
        *,
        key_size: int = KEY_SIZE,
        ca_validity_days: int = 3650,
        leaf_validity_days: int = 365,
    ) -> None:
        if key_size < 2048:
            raise ValueError("key_size must be at least 2048 bits.")
        self._key_size = key_size
        self._ca_validity_days = ca_validity_days
        self._leaf_validity_days = leaf_validity_days

    def _new_key(self) -> rsa.RSAPrivateKey:
        return rsa.generate_private_key(public_exponent=65537, key_size=self._key_size)

    def _request(self, key: rsa.RSAPrivateKey, common_name: str):
        return x509_ops.create_certificate_signing_request(
            subject=x509_ops.build_distinguished_name(common_name),
            subject_public_key_info=_public_key_info(key),
            sign_tbs=_signer(key),
            signing_algorithm=SIGNING_ALGORITHM,
        )

    def generate_ca(self, common_name: str) -> CertificateAuthority:
        try:
            key = self._new_key()
            certificate = x509_ops.create_self_signed_ca_certificate(
                subject=x509_ops.build_distinguished_name(common_name),
                subject_public_key_info=_public_key_info(key),
                sign_tbs=_signer(key),
                signing_algorithm=SIGNING_ALGORITHM,
                validity_days=self._ca_validity_days,
            )
        except ValueError as exc:
            raise IssuanceError(f"Failed to create CA '{common_name}': {exc}") from exc
        _logger.info("Created CA %s", common_name)
        return CertificateAuthority(
            certificate=Certificate(x509_ops.dump_certificate_pem(certificate)),
            private_key=_key_pem(key),
        )

    def _sign_request(
        self,
        ca: CertificateAuthority,
        request,
        sans: Sequence[str] | None,
    ) -> Certificate:
        signing_key = _load_signing_key(ca.private_key)
        try:
            issuer_certificate = x509_ops.load_certificate(ca.certificate.pem)
            certificate = x509_ops.sign_csr_as_leaf(
                issuer_certificate=issuer_certificate,
                request=request,
                sign_tbs=_signer(signing_key),
                signing_algorithm=SIGNING_ALGORITHM,
                validity_days=self._leaf_validity_days,
                sans=sans,
            )
        except ValueError as exc:
            raise IssuanceError(f"Failed to sign certificate: {exc}") from exc
        return Certificate(x509_ops.dump_certificate_pem(certificate))

    def generate_leaf(
        self,
        ca: CertificateAuthority,
        common_name: str,
        sans: Sequence[str] | None = None,
    ) -> IssuedCertificate:
        key = self._new_key()
        try:
            request = self._request(key, common_name)
        except ValueError as exc:
            raise IssuanceError(f"Failed to build request for '{common_name}': {exc}") from exc
        certificate = self._sign_request(ca, request, normalize_sans(sans))
        _logger.info("Issued certificate %s", common_name)
        return IssuedCertificate(certificate=certificate, private_key=_key_pem(key))

    def sign(
        self,
        ca: CertificateAuthority,
        csr: CertificateSigningRequest,
    ) -> Certificate:
        try:
            request = x509_ops.load_certificate_signing_request(csr.pem)
        except ValueError as exc:
            raise IssuanceError(f"Certificate signing request is invalid: {exc}") from exc
        return self._sign_request(ca, request, None)

    def generate_csr(self, common_name: str) -> KeyRequest:
        key = self._new_key()
        try:
            request = self._request(key, common_name)
        except ValueError as exc:
            raise IssuanceError(f"Failed to build request for '{common_name}': {exc}") from exc
        _logger.info("Created signing request %s", common_name)
        return KeyRequest(
            csr=CertificateSigningRequest(x509_ops.dump_csr_pem(request)),
            private_key=_key_pem(key),
        )
