from __future__ import annotations

import logging
import secrets
import struct
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable

import boto3
import pkcs11
from botocore.exceptions import BotoCoreError, ClientError
from pkcs11 import KeyType, Mechanism, ObjectClass

from .config import HsmSettings, MasterKeyReference
from .exceptions import ClusterTrustError, DecryptionError, RemoteKeyServiceError

_logger = logging.getLogger("cluster_trust.master_keys")

DATA_KEY_BYTES = 32


def zero_buffer(buffer: bytearray) -> None:
    """Overwrite a key buffer in place."""
    for index in range(len(buffer)):
        buffer[index] = 0


@dataclass
class DataKey:
    """
    A data key issued by a master-key service.

    `plaintext` is the usable key and must never be persisted; `wrapped` is
    the same key sealed by the master key and is stored next to ciphertext.
    """

    plaintext: bytearray = field(repr=False)
    wrapped: bytes
    key_id: str

    def wipe(self) -> None:
        zero_buffer(self.plaintext)


class MasterKeyService(ABC):
    """A remote service holding master keys that wrap and unwrap data keys."""

    @abstractmethod
    def generate_data_key(self, master_key: MasterKeyReference) -> DataKey:
        """Return a fresh data key wrapped under `master_key`."""

    @abstractmethod
    def decrypt_data_key(
        self,
        wrapped: bytes,
        expected: MasterKeyReference | None = None,
    ) -> bytearray:
        """
        Unwrap a data key.

        The wrapped key identifies its own master key. When `expected` is
        given, a key wrapped under any other master key is refused.
        """

    def close(self) -> None:
        """Release connections held by the service."""


class KmsMasterKeyService(MasterKeyService):
    """AWS KMS backed master keys; one client per region, created lazily."""

    def __init__(
        self,
        default_region: str,
        *,
        client_factory: Callable[[str], Any] | None = None,
    ) -> None:
        self._default_region = default_region
        self._client_factory = client_factory or self._boto3_client
        self._clients: dict[str, Any] = {}

    @staticmethod
    def _boto3_client(region: str) -> Any:
        return boto3.client("kms", region_name=region)

    def _client(self, region: str) -> Any:
        client = self._clients.get(region)
        if client is None:
            client = self._client_factory(region)
            self._clients[region] = client
        return client

    @staticmethod
    def _translate(exc: Exception, action: str) -> ClusterTrustError:
        if isinstance(exc, ClientError):
            error = exc.response.get("Error", {})
            code = error.get("Code", "Unknown")
            message = error.get("Message", str(exc))
            if code == "InvalidCiphertextException":
                return DecryptionError(f"KMS rejected the wrapped data key: {message}")
            return RemoteKeyServiceError(f"KMS {action} failed ({code}): {message}", code=code)
        return RemoteKeyServiceError(f"KMS {action} failed: {exc}")

    def generate_data_key(self, master_key: MasterKeyReference) -> DataKey:
        try:
            response = self._client(master_key.region).generate_data_key(
                KeyId=master_key.key_id,
                KeySpec="AES_256",
            )
        except (BotoCoreError, ClientError) as exc:
            _logger.warning("GenerateDataKey failed for master key %s", master_key)
            raise self._translate(exc, "GenerateDataKey") from exc

        _logger.info("Generated data key under master key %s", master_key)
        return DataKey(
            plaintext=bytearray(response["Plaintext"]),
            wrapped=bytes(response["CiphertextBlob"]),
            key_id=response.get("KeyId", master_key.key_id),
        )

    def decrypt_data_key(
        self,
        wrapped: bytes,
        expected: MasterKeyReference | None = None,
    ) -> bytearray:
        region = expected.region if expected is not None else self._default_region
        request: dict[str, Any] = {"CiphertextBlob": wrapped}
        if expected is not None:
            request["KeyId"] = expected.key_id
        try:
            response = self._client(region).decrypt(**request)
        except (BotoCoreError, ClientError) as exc:
            _logger.warning("Decrypt failed in region %s", region)
            raise self._translate(exc, "Decrypt") from exc

        _logger.info("Unwrapped data key for master key %s", response.get("KeyId", "<unknown>"))
        return bytearray(response["Plaintext"])


def _format_exception(exc: Exception) -> str:
    details = str(exc).strip()
    if details:
        return f"{type(exc).__name__}: {details}"
    return type(exc).__name__


class Pkcs11MasterKeyService(MasterKeyService):
    """
    Master keys held as AES keys on a PKCS#11 token, addressed by label.

    Data keys are generated locally and sealed on the token with AES-GCM.
    The wrapped form is `u8 label length | label | nonce | ciphertext`.
    """

    NONCE_BYTES = 12

    def __init__(self, settings: HsmSettings) -> None:
        self._settings = settings
        self._lib = pkcs11.lib(settings.module_path)
        self._session: Any = None

    def __enter__(self) -> "Pkcs11MasterKeyService":
        self.open()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    def open(self) -> None:
        if self._session is not None:
            return
        try:
            if self._settings.slot_no is not None:
                _logger.info("Opening HSM session using slot=%s", self._settings.slot_no)
                token = self._lib.get_token(slot=self._settings.slot_no)
            else:
                _logger.info(
                    "Opening HSM session using token_label=%s", self._settings.token_label
                )
                token = self._lib.get_token(token_label=self._settings.token_label)
            self._session = token.open(user_pin=self._settings.user_pin(), rw=True)
        except ClusterTrustError:
            raise
        except Exception as exc:
            _logger.exception("Failed to open HSM session.")
            raise RemoteKeyServiceError(
                f"Failed to open HSM session: {_format_exception(exc)}"
            ) from exc

    def close(self) -> None:
        if self._session is None:
            return
        self._session.close()
        self._session = None
        _logger.info("HSM session closed.")

    def _master_key(self, label: str) -> Any:
        self.open()
        try:
            return self._session.get_key(
                label=label,
                object_class=ObjectClass.SECRET_KEY,
                key_type=KeyType.AES,
            )
        except pkcs11.exceptions.NoSuchKey as exc:
            raise RemoteKeyServiceError(
                f"Master key '{label}' does not exist on the token.", code="NotFoundException"
            ) from exc
        except Exception as exc:
            raise RemoteKeyServiceError(
                f"Failed to load master key '{label}': {_format_exception(exc)}"
            ) from exc

    def generate_data_key(self, master_key: MasterKeyReference) -> DataKey:
        label = master_key.key_id.encode("utf-8")
        if len(label) > 255:
            raise RemoteKeyServiceError("Master key label is longer than 255 bytes.")
        key = self._master_key(master_key.key_id)
        plaintext = bytearray(secrets.token_bytes(DATA_KEY_BYTES))
        nonce = secrets.token_bytes(self.NONCE_BYTES)
        try:
            sealed = key.encrypt(
                bytes(plaintext),
                mechanism=Mechanism.AES_GCM,
                mechanism_param=pkcs11.GCMParams(nonce=nonce, aad=label, tag_bits=128),
            )
        except Exception as exc:
            zero_buffer(plaintext)
            raise RemoteKeyServiceError(
                f"Failed to wrap data key under '{master_key.key_id}': {_format_exception(exc)}"
            ) from exc
        _logger.info("Generated data key under HSM master key %s", master_key.key_id)
        wrapped = struct.pack(">B", len(label)) + label + nonce + sealed
        return DataKey(plaintext=plaintext, wrapped=wrapped, key_id=master_key.key_id)

    def decrypt_data_key(
        self,
        wrapped: bytes,
        expected: MasterKeyReference | None = None,
    ) -> bytearray:
        if len(wrapped) < 1:
            raise DecryptionError("Wrapped data key is empty.")
        label_length = wrapped[0]
        label = wrapped[1 : 1 + label_length]
        nonce = wrapped[1 + label_length : 1 + label_length + self.NONCE_BYTES]
        sealed = wrapped[1 + label_length + self.NONCE_BYTES :]
        if len(label) != label_length or len(nonce) != self.NONCE_BYTES or not sealed:
            raise DecryptionError("Wrapped data key is truncated.")
        try:
            label_text = label.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecryptionError("Wrapped data key has an unreadable key label.") from exc
        if expected is not None and expected.key_id != label_text:
            raise RemoteKeyServiceError(
                f"Data key was wrapped under '{label_text}', not '{expected.key_id}'.",
                code="IncorrectKeyException",
            )

        key = self._master_key(label_text)
        try:
            plaintext = key.decrypt(
                sealed,
                mechanism=Mechanism.AES_GCM,
                mechanism_param=pkcs11.GCMParams(nonce=nonce, aad=label, tag_bits=128),
            )
        except Exception as exc:
            raise DecryptionError(
                f"HSM rejected the wrapped data key: {_format_exception(exc)}"
            ) from exc
        return bytearray(plaintext)
