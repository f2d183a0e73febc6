from __future__ import annotations

import ipaddress
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable

from asn1crypto import algos, csr, keys, pem, x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa

_HASHES = {
    "sha256": hashes.SHA256,
    "sha384": hashes.SHA384,
    "sha512": hashes.SHA512,
}


@dataclass(frozen=True)
class DistinguishedName:
    """
    Distinguished Name values used in CSRs and certificates.
    """

    common_name: str
    organization: str | None = None
    organizational_unit: str | None = None

    def to_asn1(self) -> x509.Name:
        if not self.common_name or not self.common_name.strip():
            raise ValueError("common_name is required for DistinguishedName.")

        fields: dict[str, str] = {"common_name": self.common_name.strip()}
        if self.organization:
            fields["organization_name"] = self.organization.strip()
        if self.organizational_unit:
            fields["organizational_unit_name"] = self.organizational_unit.strip()
        return x509.Name.build(fields)


def build_distinguished_name(
    common_name: str,
    *,
    organization: str | None = None,
    organizational_unit: str | None = None,
) -> x509.Name:
    return DistinguishedName(
        common_name=common_name,
        organization=organization,
        organizational_unit=organizational_unit,
    ).to_asn1()


def signature_algorithm_identifier(algorithm: str) -> algos.SignedDigestAlgorithm:
    normalized = algorithm.strip().lower().replace("-", "_")
    mapping = {
        "rsa_pkcs1v15_sha256": "sha256_rsa",
        "rsa_pkcs1v15_sha384": "sha384_rsa",
        "ecdsa_sha256": "sha256_ecdsa",
        "ecdsa_sha384": "sha384_ecdsa",
    }
    resolved = mapping.get(normalized)
    if resolved is None:
        raise ValueError(
            f"Unsupported X.509 signing algorithm '{algorithm}'. "
            f"Use one of: {', '.join(sorted(mapping))}."
        )
    return algos.SignedDigestAlgorithm({"algorithm": resolved})


def _load_pem_or_der(data: bytes | str, expected_pem_type: str) -> bytes:
    payload = data.encode("utf-8") if isinstance(data, str) else bytes(data)
    if pem.detect(payload):
        pem_type, _headers, der_bytes = pem.unarmor(payload)
        if pem_type != expected_pem_type:
            raise ValueError(
                f"Expected PEM type '{expected_pem_type}', received '{pem_type}'."
            )
        return der_bytes
    return payload


def load_certificate(data: bytes | str) -> x509.Certificate:
    certificate = x509.Certificate.load(_load_pem_or_der(data, "CERTIFICATE"))
    # Force a full parse so malformed input fails here, not later.
    certificate.native
    return certificate


def load_certificate_signing_request(data: bytes | str) -> csr.CertificationRequest:
    request = csr.CertificationRequest.load(
        _load_pem_or_der(data, "CERTIFICATE REQUEST")
    )
    request.native
    return request


def dump_certificate_pem(certificate: x509.Certificate) -> bytes:
    return pem.armor("CERTIFICATE", certificate.dump())


def dump_csr_pem(request: csr.CertificationRequest) -> bytes:
    return pem.armor("CERTIFICATE REQUEST", request.dump())


def generate_serial_number() -> int:
    # Positive 159-bit serial to satisfy common X.509 constraints.
    return int.from_bytes(os.urandom(20), byteorder="big") >> 1


def _general_name(value: str) -> x509.GeneralName:
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return x509.GeneralName(name="dns_name", value=value)
    return x509.GeneralName(name="ip_address", value=value)


def build_san_extension(names: Iterable[str]) -> x509.Extension:
    """subjectAltName with DNS names and IP addresses, in the given order."""
    normalized = [name.strip() for name in names if name and name.strip()]
    if not normalized:
        raise ValueError("At least one non-empty name is required for SAN extension.")
    return x509.Extension(
        {
            "extn_id": "subject_alt_name",
            "critical": False,
            "extn_value": x509.GeneralNames([_general_name(name) for name in normalized]),
        }
    )


def build_ca_extensions(
    *,
    subject_public_key_info: keys.PublicKeyInfo,
    path_length: int | None = None,
) -> x509.Extensions:
    constraints: dict[str, bool | int] = {"ca": True}
    if path_length is not None:
        if path_length < 0:
            raise ValueError("path_length must be >= 0 when provided.")
        constraints["path_len_constraint"] = path_length

    return x509.Extensions(
        [
            x509.Extension(
                {
                    "extn_id": "basic_constraints",
                    "critical": True,
                    "extn_value": x509.BasicConstraints(constraints),
                }
            ),
            x509.Extension(
                {
                    "extn_id": "key_usage",
                    "critical": True,
                    "extn_value": x509.KeyUsage(
                        {"digital_signature", "key_cert_sign", "crl_sign"}
                    ),
                }
            ),
            x509.Extension(
                {
                    "extn_id": "key_identifier",
                    "critical": False,
                    "extn_value": subject_public_key_info.sha1,
                }
            ),
        ]
    )


def get_requested_extensions(request: csr.CertificationRequest) -> x509.Extensions:
    for attribute in request["certification_request_info"]["attributes"]:
        if attribute["type"].native != "extension_request":
            continue
        values = attribute["values"]
        if len(values) > 0:
            return values[0]
    return x509.Extensions([])


def build_leaf_extensions(
    *,
    request: csr.CertificationRequest,
    issuer_public_key_info: keys.PublicKeyInfo,
    sans: Iterable[str] | None = None,
) -> x509.Extensions:
    """
    Extensions of a leaf usable for both TLS server and client auth.

    Explicit `sans` win; otherwise a SAN extension present in the request is
    carried over. No SAN is invented from the subject.
    """
    subject_public_key_info = request["certification_request_info"]["subject_pk_info"]
    requested = {
        extension["extn_id"].native: extension
        for extension in get_requested_extensions(request)
    }
    explicit = [name.strip() for name in sans or [] if name and name.strip()]
    if explicit:
        san_extension: x509.Extension | None = build_san_extension(explicit)
    else:
        san_extension = requested.get("subject_alt_name")

    extensions = [
        x509.Extension(
            {
                "extn_id": "basic_constraints",
                "critical": True,
                "extn_value": x509.BasicConstraints({"ca": False}),
            }
        ),
        x509.Extension(
            {
                "extn_id": "key_usage",
                "critical": True,
                "extn_value": x509.KeyUsage({"digital_signature", "key_encipherment"}),
            }
        ),
        x509.Extension(
            {
                "extn_id": "extended_key_usage",
                "critical": False,
                "extn_value": x509.ExtKeyUsageSyntax(["server_auth", "client_auth"]),
            }
        ),
        x509.Extension(
            {
                "extn_id": "key_identifier",
                "critical": False,
                "extn_value": subject_public_key_info.sha1,
            }
        ),
        x509.Extension(
            {
                "extn_id": "authority_key_identifier",
                "critical": False,
                "extn_value": x509.AuthorityKeyIdentifier(
                    {"key_identifier": issuer_public_key_info.sha1}
                ),
            }
        ),
    ]
    if san_extension is not None:
        extensions.append(san_extension)
    return x509.Extensions(extensions)


def create_certificate_signing_request(
    *,
    subject: x509.Name,
    subject_public_key_info: keys.PublicKeyInfo,
    sign_tbs: Callable[[bytes], bytes],
    signing_algorithm: str,
    extensions: x509.Extensions | None = None,
) -> csr.CertificationRequest:
    attributes: list[csr.CRIAttribute] = []
    if extensions is not None and len(extensions) > 0:
        attributes.append(
            csr.CRIAttribute({"type": "extension_request", "values": [extensions]})
        )

    request_info = csr.CertificationRequestInfo(
        {
            "version": "v1",
            "subject": subject,
            "subject_pk_info": subject_public_key_info,
            "attributes": attributes,
        }
    )
    return csr.CertificationRequest(
        {
            "certification_request_info": request_info,
            "signature_algorithm": signature_algorithm_identifier(signing_algorithm),
            "signature": sign_tbs(request_info.dump()),
        }
    )


def _validity(days: int) -> x509.Validity:
    if days <= 0:
        raise ValueError("validity_days must be > 0.")
    now = datetime.now(timezone.utc)
    return x509.Validity(
        {
            "not_before": x509.Time({"utc_time": now - timedelta(minutes=5)}),
            "not_after": x509.Time({"utc_time": now + timedelta(days=days)}),
        }
    )


def _signed_certificate(
    tbs_fields: dict,
    *,
    sign_tbs: Callable[[bytes], bytes],
    signing_algorithm: str,
) -> x509.Certificate:
    signature_id = signature_algorithm_identifier(signing_algorithm)
    tbs_certificate = x509.TbsCertificate(
        {"version": "v3", "signature": signature_id, **tbs_fields}
    )
    return x509.Certificate(
        {
            "tbs_certificate": tbs_certificate,
            "signature_algorithm": signature_id,
            "signature_value": sign_tbs(tbs_certificate.dump()),
        }
    )


def create_self_signed_ca_certificate(
    *,
    subject: x509.Name,
    subject_public_key_info: keys.PublicKeyInfo,
    sign_tbs: Callable[[bytes], bytes],
    signing_algorithm: str,
    validity_days: int = 3650,
    path_length: int | None = None,
    serial_number: int | None = None,
) -> x509.Certificate:
    return _signed_certificate(
        {
            "serial_number": serial_number or generate_serial_number(),
            "issuer": subject,
            "validity": _validity(validity_days),
            "subject": subject,
            "subject_public_key_info": subject_public_key_info,
            "extensions": build_ca_extensions(
                subject_public_key_info=subject_public_key_info,
                path_length=path_length,
            ),
        },
        sign_tbs=sign_tbs,
        signing_algorithm=signing_algorithm,
    )


def sign_csr_as_leaf(
    *,
    issuer_certificate: x509.Certificate,
    request: csr.CertificationRequest,
    sign_tbs: Callable[[bytes], bytes],
    signing_algorithm: str,
    validity_days: int = 365,
    serial_number: int | None = None,
    sans: Iterable[str] | None = None,
) -> x509.Certificate:
    issuer_tbs = issuer_certificate["tbs_certificate"]
    request_info = request["certification_request_info"]
    return _signed_certificate(
        {
            "serial_number": serial_number or generate_serial_number(),
            "issuer": issuer_tbs["subject"],
            "validity": _validity(validity_days),
            "subject": request_info["subject"],
            "subject_public_key_info": request_info["subject_pk_info"],
            "extensions": build_leaf_extensions(
                request=request,
                issuer_public_key_info=issuer_tbs["subject_public_key_info"],
                sans=sans,
            ),
        },
        sign_tbs=sign_tbs,
        signing_algorithm=signing_algorithm,
    )


# Inspection helpers used to check issuer output.


def certificate_subject(data: bytes | str) -> dict:
    return dict(load_certificate(data).subject.native)


def certificate_issuer(data: bytes | str) -> dict:
    return dict(load_certificate(data).issuer.native)


def common_name(data: bytes | str) -> str | None:
    return certificate_subject(data).get("common_name")


def subject_alt_names(data: bytes | str) -> list[str]:
    value = load_certificate(data).subject_alt_name_value
    if value is None:
        return []
    return [str(name.native) for name in value]


def is_ca(data: bytes | str) -> bool:
    constraints = load_certificate(data).basic_constraints_value
    return bool(constraints is not None and constraints["ca"].native)


def public_keys_match(certificate: bytes | str, request: bytes | str) -> bool:
    """True when the certificate certifies the key of the signing request."""
    cert_key = load_certificate(certificate).public_key
    request_key = load_certificate_signing_request(request)[
        "certification_request_info"
    ]["subject_pk_info"]
    return cert_key.dump() == request_key.dump()


def verify_issued_by(certificate: bytes | str, issuer: bytes | str) -> bool:
    """
    True when `certificate` names `issuer` as its issuer and carries a valid
    signature made by the issuer's key.
    """
    cert = load_certificate(certificate)
    issuer_cert = load_certificate(issuer)
    if cert.issuer != issuer_cert.subject:
        return False

    try:
        public_key = serialization.load_der_public_key(issuer_cert.public_key.dump())
    except (ValueError, UnsupportedAlgorithm):
        return False
    hash_class = _HASHES.get(cert.hash_algo)
    if hash_class is None:
        return False

    signature = cert["signature_value"].native
    tbs = cert["tbs_certificate"].dump()
    try:
        if isinstance(public_key, rsa.RSAPublicKey) and cert.signature_algo == "rsassa_pkcs1v15":
            public_key.verify(signature, tbs, padding.PKCS1v15(), hash_class())
        elif isinstance(public_key, ec.EllipticCurvePublicKey) and cert.signature_algo == "ecdsa":
            public_key.verify(signature, tbs, ec.ECDSA(hash_class()))
        else:
            return False
    except InvalidSignature:
        return False
    return True
