from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Sequence

from .exceptions import CommandFailedError, IssuanceError, ResponseParseError
from .files import staging_directory, write_private_file
from .issuance import IssuanceClient, key_request_document, normalize_sans
from .models import (
    Certificate,
    CertificateAuthority,
    CertificateSigningRequest,
    IssuedCertificate,
    KeyRequest,
    PrivateKey,
)
from .process import run_command

_logger = logging.getLogger("cluster_trust.cfssl")


def _field(response: dict[str, Any], name: str) -> bytes:
    """Read a PEM field, given either as text or as a list of byte values."""
    value = response.get(name)
    if isinstance(value, str) and value:
        return value.encode("utf-8")
    if isinstance(value, list) and value:
        try:
            return bytes(value)
        except (TypeError, ValueError) as exc:
            raise ResponseParseError(
                f"cfssl response field '{name}' is not a byte array."
            ) from exc
    raise ResponseParseError(f"cfssl response is missing the '{name}' field.")


def parse_response(stdout: bytes, *fields: str) -> dict[str, bytes]:
    try:
        response = json.loads(stdout.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise ResponseParseError("cfssl did not return a JSON document.") from exc
    if not isinstance(response, dict):
        raise ResponseParseError("cfssl response is not a JSON object.")
    return {name: _field(response, name) for name in fields}


class CfsslIssuanceClient(IssuanceClient):
    """Issuance through the `cfssl` binary; requests on stdin, JSON on stdout."""

    def __init__(self, binary: str = "cfssl") -> None:
        self._binary = binary

    def _run(self, args: Sequence[str], stdin: bytes, *fields: str) -> dict[str, bytes]:
        command = [self._binary, *args]
        try:
            proc = run_command(command, input_data=stdin)
        except CommandFailedError as exc:
            raise IssuanceError(
                f"cfssl {args[0]} failed with status {exc.returncode}: "
                f"{exc.stderr.strip() or '<no stderr>'}",
                stderr=exc.stderr,
            ) from exc
        return parse_response(proc.stdout, *fields)

    @staticmethod
    @contextmanager
    def _staged_ca(ca: CertificateAuthority) -> Iterator[tuple[Path, Path]]:
        with staging_directory() as staging:
            cert_path = write_private_file(staging / "ca.pem", ca.certificate.pem)
            key_path = write_private_file(staging / "ca-key.pem", ca.private_key.pem)
            yield cert_path, key_path

    def generate_ca(self, common_name: str) -> CertificateAuthority:
        request = json.dumps(key_request_document(common_name)).encode("utf-8")
        output = self._run(["gencert", "-initca", "-"], request, "cert", "key")
        _logger.info("cfssl created CA %s", common_name)
        return CertificateAuthority(
            certificate=Certificate(output["cert"]),
            private_key=PrivateKey(output["key"]),
        )

    def generate_leaf(
        self,
        ca: CertificateAuthority,
        common_name: str,
        sans: Sequence[str] | None = None,
    ) -> IssuedCertificate:
        request = json.dumps(key_request_document(common_name)).encode("utf-8")
        hosts = normalize_sans(sans)
        with self._staged_ca(ca) as (cert_path, key_path):
            args = ["gencert", "-ca", str(cert_path), "-ca-key", str(key_path)]
            if hosts:
                args += ["-hostname", ",".join(hosts)]
            args.append("-")
            output = self._run(args, request, "cert", "key")
        _logger.info("cfssl issued certificate %s", common_name)
        return IssuedCertificate(
            certificate=Certificate(output["cert"]),
            private_key=PrivateKey(output["key"]),
        )

    def sign(
        self,
        ca: CertificateAuthority,
        csr: CertificateSigningRequest,
    ) -> Certificate:
        with self._staged_ca(ca) as (cert_path, key_path):
            output = self._run(
                ["sign", "-ca", str(cert_path), "-ca-key", str(key_path), "-"],
                csr.pem,
                "cert",
            )
        return Certificate(output["cert"])

    def generate_csr(self, common_name: str) -> KeyRequest:
        request = json.dumps(key_request_document(common_name)).encode("utf-8")
        output = self._run(["genkey", "-"], request, "csr", "key")
        return KeyRequest(
            csr=CertificateSigningRequest(output["csr"]),
            private_key=PrivateKey(output["key"]),
        )
