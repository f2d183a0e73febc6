from __future__ import annotations

import os
import shutil
import subprocess
import uuid
from pathlib import Path

import pkcs11
import pytest
from pkcs11 import Attribute, KeyType

from cluster_trust import (
    EnvelopeCrypto,
    HsmSettings,
    MasterKeyReference,
    Pkcs11MasterKeyService,
    RemoteKeyServiceError,
    TrustStore,
    reencrypt,
)

pytestmark = pytest.mark.integration

REGION = "softhsm"


def _candidate_module_paths() -> list[Path]:
    paths: list[Path] = []

    env_path = os.environ.get("HSM_PKCS11_MODULE")
    if env_path:
        paths.append(Path(env_path))

    brew = shutil.which("brew")
    if brew:
        try:
            proc = subprocess.run(
                [brew, "--prefix", "softhsm"],
                check=True,
                capture_output=True,
                text=True,
            )
            prefix = proc.stdout.strip()
            if prefix:
                paths.append(Path(prefix) / "lib/softhsm/libsofthsm2.so")
        except subprocess.SubprocessError:
            pass

    paths.extend(
        [
            Path("/opt/homebrew/lib/softhsm/libsofthsm2.so"),
            Path("/usr/local/lib/softhsm/libsofthsm2.so"),
            Path("/usr/lib/softhsm/libsofthsm2.so"),
            Path("/usr/lib/x86_64-linux-gnu/softhsm/libsofthsm2.so"),
        ]
    )
    return paths


@pytest.fixture(scope="session")
def softhsm_runtime(tmp_path_factory: pytest.TempPathFactory) -> dict[str, str]:
    util = shutil.which("softhsm2-util")
    if util is None:
        pytest.skip("softhsm2-util was not found. Install SoftHSM v2 for integration tests.")

    module_path = next((path for path in _candidate_module_paths() if path.exists()), None)
    if module_path is None:
        pytest.skip(
            "SoftHSM PKCS#11 module was not found. Set HSM_PKCS11_MODULE to libsofthsm2.so."
        )

    runtime_dir = tmp_path_factory.mktemp("softhsm-runtime")
    tokens_dir = runtime_dir / "tokens"
    tokens_dir.mkdir()
    conf_path = runtime_dir / "softhsm2.conf"
    conf_path.write_text(
        f"directories.tokendir = {tokens_dir}\nobjectstore.backend = file\nlog.level = ERROR\n",
        encoding="utf-8",
    )

    token_label = f"cluster-trust-{uuid.uuid4().hex[:8]}"
    user_pin = "123456"
    env = os.environ.copy()
    env["SOFTHSM2_CONF"] = str(conf_path)
    proc = subprocess.run(
        [
            util, "--init-token", "--free",
            "--label", token_label,
            "--so-pin", "12345678",
            "--pin", user_pin,
        ],
        capture_output=True,
        text=True,
        env=env,
    )
    if proc.returncode != 0:
        pytest.fail(
            "Failed to initialize SoftHSM token.\n"
            f"stdout:\n{proc.stdout}\n"
            f"stderr:\n{proc.stderr}"
        )

    return {
        "module_path": str(module_path),
        "token_label": token_label,
        "user_pin": user_pin,
        "softhsm2_conf": str(conf_path),
    }


@pytest.fixture
def settings(softhsm_runtime: dict[str, str], monkeypatch: pytest.MonkeyPatch) -> HsmSettings:
    monkeypatch.setenv("SOFTHSM2_CONF", softhsm_runtime["softhsm2_conf"])
    monkeypatch.setenv("HSM_PKCS11_MODULE", softhsm_runtime["module_path"])
    monkeypatch.setenv("HSM_TOKEN_LABEL", softhsm_runtime["token_label"])
    monkeypatch.setenv("HSM_USER_PIN", softhsm_runtime["user_pin"])
    monkeypatch.delenv("HSM_SLOT", raising=False)
    return HsmSettings.from_env()


def _create_master_key(settings: HsmSettings, label: str) -> MasterKeyReference:
    token = pkcs11.lib(settings.module_path).get_token(token_label=settings.token_label)
    with token.open(user_pin=settings.user_pin(), rw=True) as session:
        session.generate_key(
            KeyType.AES,
            256,
            store=True,
            template={
                Attribute.LABEL: label,
                Attribute.TOKEN: True,
                Attribute.ENCRYPT: True,
                Attribute.DECRYPT: True,
                Attribute.SENSITIVE: True,
                Attribute.EXTRACTABLE: False,
            },
        )
    return MasterKeyReference(region=REGION, key_id=label)


def _skip_without_gcm(exc: RemoteKeyServiceError) -> None:
    if isinstance(
        exc.__cause__,
        (
            pkcs11.exceptions.MechanismInvalid,
            pkcs11.exceptions.MechanismParamInvalid,
            pkcs11.exceptions.FunctionNotSupported,
        ),
    ):
        pytest.skip("AES-GCM is unavailable in this PKCS#11 provider.")


def test_envelope_round_trip_on_token(settings: HsmSettings) -> None:
    reference = _create_master_key(settings, f"master-{uuid.uuid4().hex[:8]}")

    with Pkcs11MasterKeyService(settings) as service:
        crypto = EnvelopeCrypto(service, reference)
        try:
            blob = crypto.encrypt(b"etcd CA private key")
        except RemoteKeyServiceError as exc:
            _skip_without_gcm(exc)
            raise
        assert crypto.decrypt(blob) == b"etcd CA private key"
        assert EnvelopeCrypto(service).decrypt(blob) == b"etcd CA private key"


def test_unknown_master_key_label(settings: HsmSettings) -> None:
    with Pkcs11MasterKeyService(settings) as service:
        with pytest.raises(RemoteKeyServiceError) as excinfo:
            service.generate_data_key(MasterKeyReference(REGION, "no-such-key"))
    assert excinfo.value.code == "NotFoundException"


def test_rotation_between_token_keys(settings: HsmSettings, tmp_path: Path) -> None:
    old = _create_master_key(settings, f"old-{uuid.uuid4().hex[:8]}")
    new = _create_master_key(settings, f"new-{uuid.uuid4().hex[:8]}")

    with Pkcs11MasterKeyService(settings) as service:
        store = TrustStore(tmp_path, "demo", EnvelopeCrypto(service, old))
        try:
            store.crypto.encrypt_and_write_file(b"ca key", store.encrypted_key_path("k8s-ca"))
        except RemoteKeyServiceError as exc:
            _skip_without_gcm(exc)
            raise

        report = reencrypt(store, service, old, new)
        assert len(report.rotated) == 1

        path = store.encrypted_key_path("k8s-ca")
        assert EnvelopeCrypto(service, new).read_encrypted_file(path) == b"ca key"
        with pytest.raises(RemoteKeyServiceError):
            EnvelopeCrypto(service, old).read_encrypted_file(path)
