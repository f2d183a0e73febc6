from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

KUBERNETES_SERVICE_IP = "10.3.0.1"
KUBERNETES_SERVICE_NAMES = (
    "kubernetes",
    "kubernetes.default",
    "kubernetes.default.svc",
    "kubernetes.default.svc.cluster.local",
)


class TrustDomain(str, Enum):
    """Independent certificate hierarchies of one cluster."""

    KUBERNETES = "kubernetes"
    ETCD = "etcd"
    ETCD_PEER = "etcd-peer"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class SubjectProfile:
    """A leaf identity issued under a trust domain."""

    name: str
    stem: str
    kubernetes_service_sans: bool = False


@dataclass(frozen=True)
class DomainProfile:
    """CA file stem and subjects of one trust domain."""

    domain: TrustDomain
    ca_stem: str
    subjects: tuple[SubjectProfile, ...]

    def subject(self, name: str) -> SubjectProfile:
        for profile in self.subjects:
            if profile.name == name:
                return profile
        available = ", ".join(profile.name for profile in self.subjects)
        raise ValueError(
            f"Unknown subject '{name}' for trust domain '{self.domain}'. "
            f"Available subjects: {available}"
        )


DOMAIN_PROFILES: dict[TrustDomain, DomainProfile] = {
    TrustDomain.KUBERNETES: DomainProfile(
        domain=TrustDomain.KUBERNETES,
        ca_stem="k8s-ca",
        subjects=(
            SubjectProfile(name="masters", stem="k8s-master", kubernetes_service_sans=True),
            SubjectProfile(name="nodes", stem="k8s-node"),
        ),
    ),
    TrustDomain.ETCD: DomainProfile(
        domain=TrustDomain.ETCD,
        ca_stem="etcd-ca",
        subjects=(
            SubjectProfile(name="server", stem="etcd-server"),
            SubjectProfile(name="client", stem="etcd-client"),
        ),
    ),
    TrustDomain.ETCD_PEER: DomainProfile(
        domain=TrustDomain.ETCD_PEER,
        ca_stem="etcd-peer-ca",
        subjects=(SubjectProfile(name="peer", stem="etcd-peer"),),
    ),
}

# Order in which a full generation run walks the domains.
GENERATION_ORDER = (TrustDomain.KUBERNETES, TrustDomain.ETCD, TrustDomain.ETCD_PEER)


def list_trust_domains() -> tuple[str, ...]:
    return tuple(domain.value for domain in GENERATION_ORDER)


def get_trust_domain(name: str | TrustDomain) -> TrustDomain:
    if isinstance(name, TrustDomain):
        return name
    try:
        return TrustDomain(name)
    except ValueError as exc:
        available = ", ".join(list_trust_domains())
        raise ValueError(
            f"Unknown trust domain '{name}'. Available domains: {available}"
        ) from exc


def get_domain_profile(name: str | TrustDomain) -> DomainProfile:
    return DOMAIN_PROFILES[get_trust_domain(name)]


def default_sans(subject: SubjectProfile, dns_domain: str | None = None) -> list[str]:
    """SANs a subject gets when none are requested explicitly."""
    if not subject.kubernetes_service_sans:
        return []
    names = [*KUBERNETES_SERVICE_NAMES, KUBERNETES_SERVICE_IP]
    if dns_domain:
        names.append(f"kubernetes.{dns_domain}")
    return names


def reserved_stems() -> frozenset[str]:
    """File stems owned by CAs and subjects; unavailable as other names."""
    stems: set[str] = set()
    for profile in DOMAIN_PROFILES.values():
        stems.add(profile.ca_stem)
        stems.update(subject.stem for subject in profile.subjects)
    return frozenset(stems)
