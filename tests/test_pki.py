from __future__ import annotations

from pathlib import Path

import pytest

from cluster_trust import (
    ArtifactExistsError,
    ArtifactNotFoundError,
    FilesystemError,
    IssuanceClient,
    IssuanceError,
    LocalIssuanceClient,
    PkiOrchestrator,
    RemoteKeyServiceError,
    TrustStore,
)
from cluster_trust import trust_store, x509_ops
from cluster_trust.domains import KUBERNETES_SERVICE_IP, get_domain_profile


class FailingIssuer(IssuanceClient):
    """Delegates to a real issuer but fails CA creation for chosen names."""

    def __init__(self, inner: IssuanceClient, fail_on: str) -> None:
        self.inner = inner
        self.fail_on = fail_on

    def generate_ca(self, common_name):
        if self.fail_on in common_name:
            raise IssuanceError(f"engine refused {common_name}", stderr="refused")
        return self.inner.generate_ca(common_name)

    def generate_leaf(self, ca, common_name, sans=None):
        return self.inner.generate_leaf(ca, common_name, sans)

    def sign(self, ca, csr):
        return self.inner.sign(ca, csr)

    def generate_csr(self, common_name):
        return self.inner.generate_csr(common_name)


class RogueIssuer(FailingIssuer):
    """Signs leaves with a CA of its own instead of the one it is given."""

    def __init__(self, inner: IssuanceClient) -> None:
        super().__init__(inner, fail_on="\0")
        self.rogue_ca = inner.generate_ca("demo-kubernetes-ca")

    def generate_leaf(self, ca, common_name, sans=None):
        return self.inner.generate_leaf(self.rogue_ca, common_name, sans)


@pytest.fixture
def pki(store: TrustStore, local_issuer: LocalIssuanceClient) -> PkiOrchestrator:
    return PkiOrchestrator(store, local_issuer, dns_domain="demo.example.com")


def _snapshot(directory: Path) -> dict[str, bytes]:
    return {path.name: path.read_bytes() for path in sorted(directory.iterdir())}


def test_master_certificate_with_explicit_san(pki: PkiOrchestrator, store: TrustStore) -> None:
    ca_cert = pki.generate_ca("kubernetes")
    leaf = pki.generate_subject("kubernetes", "masters", ["kubernetes.demo.example.com"])

    assert x509_ops.subject_alt_names(leaf.pem) == ["kubernetes.demo.example.com"]
    assert x509_ops.certificate_issuer(leaf.pem) == x509_ops.certificate_subject(ca_cert.pem)
    assert x509_ops.common_name(ca_cert.pem) == "demo-kubernetes-ca"
    assert x509_ops.common_name(leaf.pem) == "demo-k8s-master"
    assert store.certificate_path("k8s-master").read_bytes() == leaf.pem


def test_master_certificate_default_sans(pki: PkiOrchestrator) -> None:
    pki.generate_ca("kubernetes")
    leaf = pki.generate_subject("kubernetes", "masters")
    assert x509_ops.subject_alt_names(leaf.pem) == [
        "kubernetes",
        "kubernetes.default",
        "kubernetes.default.svc",
        "kubernetes.default.svc.cluster.local",
        KUBERNETES_SERVICE_IP,
        "kubernetes.demo.example.com",
    ]


def test_generate_ca_refuses_to_overwrite(pki: PkiOrchestrator, store: TrustStore) -> None:
    pki.generate_ca("etcd")
    before = _snapshot(store.directory)

    with pytest.raises(ArtifactExistsError) as excinfo:
        pki.generate_ca("etcd")
    assert excinfo.value.operation == "generate-ca"
    assert _snapshot(store.directory) == before


def test_generate_all_creates_every_artifact(pki: PkiOrchestrator, store: TrustStore) -> None:
    report = pki.generate_all()

    assert report.generated == [
        "kubernetes/ca",
        "kubernetes/masters",
        "kubernetes/nodes",
        "etcd/ca",
        "etcd/server",
        "etcd/client",
        "etcd-peer/ca",
        "etcd-peer/peer",
    ]
    assert report.skipped == []
    names = set(path.name for path in store.directory.iterdir())
    for stem in ("k8s-ca", "k8s-master", "k8s-node", "etcd-ca", "etcd-server",
                 "etcd-client", "etcd-peer-ca", "etcd-peer"):
        assert f"{stem}.pem" in names
        assert f"{stem}-key-encrypted.base64" in names
    for path in store.directory.iterdir():
        assert b"PRIVATE KEY" not in path.read_bytes()


def test_leaves_chain_to_their_own_domain_only(pki: PkiOrchestrator, store: TrustStore) -> None:
    pki.generate_all()
    k8s_ca = store.load_ca_certificate("kubernetes").pem
    etcd_ca = store.load_ca_certificate("etcd").pem
    master = store.certificate_path("k8s-master").read_bytes()
    etcd_client = store.certificate_path("etcd-client").read_bytes()

    assert x509_ops.verify_issued_by(master, k8s_ca)
    assert not x509_ops.verify_issued_by(master, etcd_ca)
    assert x509_ops.verify_issued_by(etcd_client, etcd_ca)
    assert not x509_ops.verify_issued_by(etcd_client, k8s_ca)


def test_second_run_is_a_no_op(pki: PkiOrchestrator, store: TrustStore) -> None:
    pki.generate_all()
    before = _snapshot(store.directory)

    report = pki.generate_all()
    assert report.generated == []
    assert len(report.skipped) == 8
    assert _snapshot(store.directory) == before


def test_failure_aborts_and_rerun_resumes(
    store: TrustStore, local_issuer: LocalIssuanceClient
) -> None:
    failing = PkiOrchestrator(store, FailingIssuer(local_issuer, fail_on="-etcd-ca"))
    with pytest.raises(IssuanceError) as excinfo:
        failing.generate_all()
    assert excinfo.value.operation == "generate-ca"
    assert "etcd-ca.pem" in str(excinfo.value)

    names = set(path.name for path in store.directory.iterdir())
    assert "k8s-node.pem" in names
    assert "etcd-ca.pem" not in names
    assert "etcd-peer-ca.pem" not in names
    kubernetes_before = {
        name: data for name, data in _snapshot(store.directory).items() if name.startswith("k8s")
    }

    report = PkiOrchestrator(store, local_issuer).generate_all()
    assert report.skipped == ["kubernetes/ca", "kubernetes/masters", "kubernetes/nodes"]
    assert "etcd/ca" in report.generated
    after = _snapshot(store.directory)
    assert {name: after[name] for name in kubernetes_before} == kubernetes_before


def test_rerun_replaces_ca_key_left_without_certificate(
    pki: PkiOrchestrator, store: TrustStore, monkeypatch: pytest.MonkeyPatch
) -> None:
    real_write = trust_store.atomic_write

    def failing_write(path, data, **kwargs):
        if Path(path).name == "k8s-ca.pem":
            raise FilesystemError("No space left on device", artifact=path)
        return real_write(path, data, **kwargs)

    monkeypatch.setattr(trust_store, "atomic_write", failing_write)
    with pytest.raises(FilesystemError) as excinfo:
        pki.generate_all()
    assert excinfo.value.operation == "generate-ca"
    assert [path.name for path in store.directory.iterdir()] == ["k8s-ca-key-encrypted.base64"]
    assert not store.has_ca("kubernetes")
    orphan = store.ca_key_path("kubernetes").read_bytes()

    monkeypatch.setattr(trust_store, "atomic_write", real_write)
    report = pki.generate_all()

    assert report.generated[:3] == ["kubernetes/ca", "kubernetes/masters", "kubernetes/nodes"]
    assert report.skipped == []
    assert store.ca_certificate_path("kubernetes").exists()
    assert store.ca_key_path("kubernetes").read_bytes() != orphan
    master = store.certificate_path("k8s-master").read_bytes()
    assert x509_ops.verify_issued_by(master, store.load_ca_certificate("kubernetes").pem)

    with pytest.raises(ArtifactExistsError):
        pki.generate_ca("kubernetes")


def test_leaf_from_wrong_ca_is_rejected(store: TrustStore, local_issuer) -> None:
    pki = PkiOrchestrator(store, RogueIssuer(local_issuer))
    pki.generate_ca("kubernetes")

    with pytest.raises(IssuanceError) as excinfo:
        pki.generate_subject("kubernetes", "nodes")
    assert excinfo.value.operation == "generate-subject"
    assert not store.certificate_path("k8s-node").exists()
    assert not store.encrypted_key_path("k8s-node").exists()


def test_subject_requires_ca(pki: PkiOrchestrator) -> None:
    with pytest.raises(ArtifactNotFoundError) as excinfo:
        pki.generate_subject("etcd", "server")
    assert excinfo.value.operation == "generate-subject"


def test_denied_master_key_stops_generation(pki: PkiOrchestrator, store, key_service) -> None:
    key_service.authorized = set()
    with pytest.raises(RemoteKeyServiceError):
        pki.generate_ca("kubernetes")
    assert not store.ca_certificate_path("kubernetes").exists()


def test_unknown_names(pki: PkiOrchestrator) -> None:
    with pytest.raises(ValueError):
        pki.generate_ca("vault")
    with pytest.raises(ValueError):
        pki.generate_subject("etcd", "masters")


def test_subject_profiles() -> None:
    profile = get_domain_profile("etcd-peer")
    assert profile.ca_stem == "etcd-peer-ca"
    assert [subject.stem for subject in profile.subjects] == ["etcd-peer"]
