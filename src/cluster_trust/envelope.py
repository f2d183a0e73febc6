"""Envelope encryption of secrets at rest.

Every payload is sealed with a fresh AES-256-GCM data key. The data key is
wrapped by a master key that never leaves the remote service, and the wrapped
form travels inside the blob:

    "CTE1" | u16 wrapped length | wrapped data key | 12-byte nonce | ciphertext+tag

Everything before the nonce is bound as associated data, so any change to
the blob fails authentication instead of yielding altered plaintext.
"""

from __future__ import annotations

import base64
import binascii
import logging
import secrets
import struct
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .config import MasterKeyReference
from .exceptions import (
    ClusterTrustError,
    DecryptionError,
    EncodingError,
    MalformedBlobError,
)
from .files import atomic_write, read_bytes, staging_directory, write_private_file
from .master_keys import MasterKeyService, zero_buffer

_logger = logging.getLogger("cluster_trust.envelope")

BLOB_MAGIC = b"CTE1"
NONCE_BYTES = 12
TAG_BYTES = 16
_LENGTH = struct.Struct(">H")
_MIN_BLOB_BYTES = len(BLOB_MAGIC) + _LENGTH.size + 1 + NONCE_BYTES + TAG_BYTES
ENCRYPTED_SUFFIX = "-encrypted.base64"


def plaintext_name(path: Path) -> str:
    """Name of the plaintext counterpart of an encrypted key file."""
    name = path.name
    if name.endswith(ENCRYPTED_SUFFIX):
        return name[: -len(ENCRYPTED_SUFFIX)] + ".pem"
    return name + ".plain"


class EnvelopeCrypto:
    """Encrypts and decrypts byte blobs under a remote master key."""

    def __init__(
        self,
        service: MasterKeyService,
        master_key: MasterKeyReference | None = None,
    ) -> None:
        self._service = service
        self._master_key = master_key

    @property
    def master_key(self) -> MasterKeyReference | None:
        return self._master_key

    def encrypt(
        self,
        plaintext: bytes,
        master_key: MasterKeyReference | None = None,
    ) -> str:
        reference = master_key or self._master_key
        if reference is None:
            raise EncodingError("No master key was given for encryption.")
        if not isinstance(plaintext, (bytes, bytearray, memoryview)):
            raise EncodingError(
                f"Plaintext must be bytes, got {type(plaintext).__name__}."
            )

        data_key = self._service.generate_data_key(reference)
        try:
            if len(data_key.wrapped) > 0xFFFF:
                raise EncodingError("Wrapped data key is too large to encode.")
            header = BLOB_MAGIC + _LENGTH.pack(len(data_key.wrapped)) + data_key.wrapped
            nonce = secrets.token_bytes(NONCE_BYTES)
            sealed = AESGCM(data_key.plaintext).encrypt(nonce, bytes(plaintext), header)
        except ValueError as exc:
            raise EncodingError(f"Data key from the master-key service is unusable: {exc}") from exc
        finally:
            data_key.wipe()

        _logger.debug(
            "Encrypted %d bytes under master key %s", len(plaintext), reference
        )
        return base64.b64encode(header + nonce + sealed).decode("ascii")

    @staticmethod
    def _parse(blob: str | bytes) -> tuple[bytes, bytes, bytes, bytes]:
        if isinstance(blob, str):
            try:
                blob = blob.encode("ascii")
            except UnicodeEncodeError as exc:
                raise MalformedBlobError("Encrypted blob is not ASCII text.") from exc
        try:
            raw = base64.b64decode(b"".join(blob.split()), validate=True)
        except (binascii.Error, ValueError) as exc:
            raise MalformedBlobError("Encrypted blob is not valid base64.") from exc

        if len(raw) < _MIN_BLOB_BYTES:
            raise MalformedBlobError("Encrypted blob is truncated.")
        if raw[: len(BLOB_MAGIC)] != BLOB_MAGIC:
            raise MalformedBlobError("Encrypted blob has an unknown format marker.")

        offset = len(BLOB_MAGIC)
        (wrapped_length,) = _LENGTH.unpack_from(raw, offset)
        offset += _LENGTH.size
        if wrapped_length == 0 or offset + wrapped_length + NONCE_BYTES + TAG_BYTES > len(raw):
            raise MalformedBlobError("Encrypted blob declares an invalid wrapped key length.")

        wrapped = raw[offset : offset + wrapped_length]
        header = raw[: offset + wrapped_length]
        offset += wrapped_length
        nonce = raw[offset : offset + NONCE_BYTES]
        sealed = raw[offset + NONCE_BYTES :]
        return header, wrapped, nonce, sealed

    def decrypt(self, blob: str | bytes) -> bytes:
        header, wrapped, nonce, sealed = self._parse(blob)
        key = self._service.decrypt_data_key(wrapped, expected=self._master_key)
        try:
            return AESGCM(key).decrypt(nonce, sealed, header)
        except InvalidTag as exc:
            raise DecryptionError(
                "Encrypted blob failed its integrity check."
            ) from exc
        except ValueError as exc:
            raise DecryptionError(f"Unwrapped data key is unusable: {exc}") from exc
        finally:
            zero_buffer(key)

    def encrypt_and_write_file(self, plaintext: bytes, path: Path) -> Path:
        try:
            blob = self.encrypt(plaintext)
        except ClusterTrustError as exc:
            raise exc.annotate(operation="encrypt", artifact=path)
        atomic_write(Path(path), (blob + "\n").encode("ascii"), mode=0o644)
        _logger.info("Wrote encrypted file %s", path)
        return Path(path)

    def decrypt_file(self, source: Path, destination: Path) -> Path:
        """Decrypt `source` into a new 0600 file at `destination`."""
        plaintext = self.read_encrypted_file(source)
        write_private_file(Path(destination), plaintext)
        _logger.info("Decrypted %s to %s", source, destination)
        return Path(destination)

    def read_encrypted_file(self, source: Path) -> bytes:
        blob = read_bytes(Path(source))
        try:
            return self.decrypt(blob)
        except ClusterTrustError as exc:
            raise exc.annotate(operation="decrypt", artifact=source)

    @contextmanager
    def decrypted_file(self, source: Path) -> Iterator[Path]:
        """
        Stage the plaintext of `source` in a private temporary directory.

        The plaintext file is removed on every exit path.
        """
        with staging_directory() as staging:
            yield self.decrypt_file(source, staging / plaintext_name(Path(source)))
