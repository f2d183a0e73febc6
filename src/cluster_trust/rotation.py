from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from .config import MasterKeyReference
from .envelope import EnvelopeCrypto
from .exceptions import ClusterTrustError, RemoteKeyServiceError, RotationIncompleteError
from .files import read_bytes
from .master_keys import MasterKeyService
from .trust_store import TrustStore

_logger = logging.getLogger("cluster_trust.rotation")


@dataclass
class RotationReport:
    rotated: list[Path] = field(default_factory=list)
    already_rotated: list[Path] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.rotated) + len(self.already_rotated)


class RotationProtocol:
    """
    Moves every escrowed key of a cluster from one master key to another.

    Each file is replaced atomically but the set as a whole is not: a failure
    leaves earlier files on the new key and later ones on the old key. Run
    again with both keys available to finish.
    """

    def __init__(
        self,
        store: TrustStore,
        current: EnvelopeCrypto,
        new: EnvelopeCrypto,
    ) -> None:
        if current.master_key is None or new.master_key is None:
            raise ValueError("Both envelopes must be bound to a master key.")
        self._store = store
        self._current = current
        self._new = new

    def _already_rotated(self, blob: bytes) -> bool:
        try:
            self._new.decrypt(blob)
        except ClusterTrustError:
            return False
        return True

    def _rotate_file(self, path: Path, report: RotationReport) -> None:
        blob = read_bytes(path)
        try:
            plaintext = self._current.decrypt(blob)
        except RemoteKeyServiceError:
            if self._already_rotated(blob):
                _logger.info("%s is already under %s", path.name, self._new.master_key)
                report.already_rotated.append(path)
                return
            raise
        self._store.rewrite_encrypted_key(path, self._new.encrypt(plaintext))
        report.rotated.append(path)
        _logger.info("Re-encrypted %s under %s", path.name, self._new.master_key)

    def reencrypt(self) -> RotationReport:
        paths = self._store.encrypted_key_paths()
        report = RotationReport()
        _logger.info(
            "Re-encrypting %d keys of cluster %s from %s to %s",
            len(paths),
            self._store.cluster,
            self._current.master_key,
            self._new.master_key,
        )
        for index, path in enumerate(paths):
            try:
                self._rotate_file(path, report)
            except ClusterTrustError as exc:
                done = [*report.rotated, *report.already_rotated]
                raise RotationIncompleteError(
                    f"Re-encryption stopped after {len(done)} of {len(paths)} keys: {exc.message}",
                    rotated=done,
                    pending=paths[index:],
                    operation="reencrypt",
                    artifact=path,
                ) from exc
        return report


def reencrypt(
    store: TrustStore,
    service: MasterKeyService,
    current: MasterKeyReference,
    new: MasterKeyReference,
) -> RotationReport:
    """Re-encrypt every escrowed key of `store` from `current` to `new`."""
    if current == new:
        raise ValueError("The current and new master keys are the same.")
    protocol = RotationProtocol(
        store,
        EnvelopeCrypto(service, current),
        EnvelopeCrypto(service, new),
    )
    return protocol.reencrypt()
