from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Sequence

from . import x509_ops
from .domains import GENERATION_ORDER, TrustDomain, default_sans, get_domain_profile
from .exceptions import ArtifactExistsError, ClusterTrustError, IssuanceError
from .issuance import IssuanceClient, normalize_sans
from .models import Certificate, CertificateAuthority, IssuedCertificate
from .trust_store import TrustStore

_logger = logging.getLogger("cluster_trust.pki")


@dataclass
class GenerationReport:
    """Artifacts created and artifacts left untouched by a generation run."""

    generated: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


def _check_leaf(issued: IssuedCertificate, ca: CertificateAuthority) -> None:
    try:
        chained = x509_ops.verify_issued_by(issued.certificate.pem, ca.certificate.pem)
    except ValueError as exc:
        raise IssuanceError(f"Issued certificate could not be parsed: {exc}") from exc
    if not chained:
        raise IssuanceError("Issued certificate is not signed by its trust domain's CA.")


class PkiOrchestrator:
    """Creates the CAs and leaf certificates of a cluster's trust domains."""

    def __init__(
        self,
        store: TrustStore,
        issuer: IssuanceClient,
        dns_domain: str | None = None,
    ) -> None:
        self._store = store
        self._issuer = issuer
        self._dns_domain = dns_domain

    def _ca_common_name(self, domain: TrustDomain) -> str:
        return f"{self._store.cluster}-{domain.value}-ca"

    def generate_ca(self, domain: TrustDomain | str) -> Certificate:
        """
        Create the CA of `domain`.

        A domain has exactly one CA; once its certificate is on disk the call
        is refused rather than replacing root material. An encrypted key left
        without a certificate by an interrupted run is replaced.
        """
        profile = get_domain_profile(domain)
        cert_path = self._store.certificate_path(profile.ca_stem)
        try:
            if self._store.has_ca(profile.domain):
                raise ArtifactExistsError(
                    f"CA for trust domain '{profile.domain}' already exists; "
                    "re-encrypt it instead of regenerating it."
                )
            ca = self._issuer.generate_ca(self._ca_common_name(profile.domain))
            self._store.save_ca(profile, ca)
        except ClusterTrustError as exc:
            raise exc.annotate(operation="generate-ca", artifact=cert_path)
        _logger.info("Generated %s CA for cluster %s", profile.domain, self._store.cluster)
        return ca.certificate

    def generate_subject(
        self,
        domain: TrustDomain | str,
        subject: str,
        sans: Sequence[str] | None = None,
    ) -> Certificate:
        """
        Issue the leaf certificate of `subject` under its domain's CA.

        Explicit `sans` replace the subject's default names. The CA key is
        only held in memory and in the issuer's private staging directory.
        """
        profile = get_domain_profile(domain)
        subject_profile = profile.subject(subject)
        cert_path = self._store.certificate_path(subject_profile.stem)
        names = normalize_sans(sans) or default_sans(subject_profile, self._dns_domain)
        try:
            ca = self._store.load_ca(profile.domain)
            issued = self._issuer.generate_leaf(
                ca,
                f"{self._store.cluster}-{subject_profile.stem}",
                names,
            )
            _check_leaf(issued, ca)
            self._store.save_subject(subject_profile, issued)
        except ClusterTrustError as exc:
            raise exc.annotate(operation="generate-subject", artifact=cert_path)
        _logger.info(
            "Generated %s/%s for cluster %s", profile.domain, subject, self._store.cluster
        )
        return issued.certificate

    def generate_domain(
        self,
        domain: TrustDomain | str,
        report: GenerationReport | None = None,
    ) -> GenerationReport:
        """CA (reused when present) and every subject not issued yet."""
        report = report if report is not None else GenerationReport()
        profile = get_domain_profile(domain)

        ca_label = f"{profile.domain}/ca"
        if self._store.has_ca(profile.domain):
            report.skipped.append(ca_label)
        else:
            self.generate_ca(profile.domain)
            report.generated.append(ca_label)

        for subject in profile.subjects:
            label = f"{profile.domain}/{subject.name}"
            if self._store.has_subject(subject):
                report.skipped.append(label)
                continue
            self.generate_subject(profile.domain, subject.name)
            report.generated.append(label)
        return report

    def generate_all(self) -> GenerationReport:
        """
        Generate every domain in a fixed order, stopping at the first error.

        Nothing is rolled back; running again continues where it stopped.
        """
        report = GenerationReport()
        for domain in GENERATION_ORDER:
            self.generate_domain(domain, report)
        return report
