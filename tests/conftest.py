from __future__ import annotations

import os
import struct
import tempfile
from pathlib import Path

import pytest
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from cluster_trust import (
    DecryptionError,
    EnvelopeCrypto,
    LocalIssuanceClient,
    MasterKeyReference,
    MasterKeyService,
    RemoteKeyServiceError,
    TrustStore,
)
from cluster_trust.master_keys import DataKey

REGION = "us-east-1"


class FakeMasterKeyService(MasterKeyService):
    """
    In-memory stand-in for a key-management service.

    Wrapped keys are `u8 id length | key id | nonce | AES-GCM(dek)` under a
    per-key secret. Integrity is checked before authorization, the same as
    a real service rejecting a ciphertext it did not produce.
    """

    def __init__(self, *key_ids: str) -> None:
        self._secrets = {key_id: AESGCM.generate_key(bit_length=256) for key_id in key_ids}
        self.authorized = set(key_ids)
        self.issued: list[DataKey] = []
        self.closed = False

    def generate_data_key(self, master_key: MasterKeyReference) -> DataKey:
        if master_key.key_id not in self._secrets or master_key.key_id not in self.authorized:
            raise RemoteKeyServiceError(
                f"Access denied to {master_key.key_id}", code="AccessDeniedException"
            )
        label = master_key.key_id.encode("utf-8")
        plaintext = bytearray(os.urandom(32))
        nonce = os.urandom(12)
        sealed = AESGCM(self._secrets[master_key.key_id]).encrypt(nonce, bytes(plaintext), label)
        data_key = DataKey(
            plaintext=plaintext,
            wrapped=struct.pack(">B", len(label)) + label + nonce + sealed,
            key_id=master_key.key_id,
        )
        self.issued.append(data_key)
        return data_key

    def decrypt_data_key(
        self,
        wrapped: bytes,
        expected: MasterKeyReference | None = None,
    ) -> bytearray:
        length = wrapped[0] if wrapped else 0
        label = wrapped[1 : 1 + length]
        nonce = wrapped[1 + length : 13 + length]
        sealed = wrapped[13 + length :]
        try:
            key_id = label.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecryptionError("Invalid ciphertext") from exc
        secret = self._secrets.get(key_id)
        if secret is None or len(nonce) != 12:
            raise DecryptionError("Invalid ciphertext")
        try:
            plaintext = AESGCM(secret).decrypt(nonce, sealed, label)
        except InvalidTag as exc:
            raise DecryptionError("Invalid ciphertext") from exc

        if key_id not in self.authorized:
            raise RemoteKeyServiceError(f"Access denied to {key_id}", code="AccessDeniedException")
        if expected is not None and expected.key_id != key_id:
            raise RemoteKeyServiceError(
                f"Ciphertext was not produced by {expected.key_id}",
                code="IncorrectKeyException",
            )
        return bytearray(plaintext)

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def key_service() -> FakeMasterKeyService:
    return FakeMasterKeyService("key-1", "key-2")


@pytest.fixture
def key1() -> MasterKeyReference:
    return MasterKeyReference(region=REGION, key_id="key-1")


@pytest.fixture
def key2() -> MasterKeyReference:
    return MasterKeyReference(region=REGION, key_id="key-2")


@pytest.fixture
def crypto(key_service: FakeMasterKeyService, key1: MasterKeyReference) -> EnvelopeCrypto:
    return EnvelopeCrypto(key_service, key1)


@pytest.fixture
def store(tmp_path: Path, crypto: EnvelopeCrypto) -> TrustStore:
    return TrustStore(tmp_path / "repo", "demo", crypto)


@pytest.fixture(scope="session")
def local_issuer() -> LocalIssuanceClient:
    return LocalIssuanceClient()


@pytest.fixture
def private_tempdir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Route tempfile into a directory the test can inspect for leftovers."""
    root = tmp_path / "tmp"
    root.mkdir()
    monkeypatch.setattr(tempfile, "tempdir", str(root))
    return root
