from __future__ import annotations

import logging
import os
import shutil
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from .exceptions import ArtifactNotFoundError, FilesystemError

_logger = logging.getLogger("cluster_trust.files")

STAGING_PREFIX = "cluster-trust-"


@contextmanager
def staging_directory(prefix: str = STAGING_PREFIX) -> Iterator[Path]:
    """
    Yield a fresh, call-unique directory readable only by this user.

    The directory and everything in it is removed when the block exits,
    whether it returns, raises, or is interrupted.
    """
    try:
        path = Path(tempfile.mkdtemp(prefix=prefix))
    except OSError as exc:
        raise FilesystemError(f"Failed to create staging directory: {exc}") from exc
    _logger.debug("Created staging directory %s", path)
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)
        if path.exists():
            _logger.error("Staging directory %s could not be removed.", path)
        else:
            _logger.debug("Removed staging directory %s", path)


def write_private_file(path: Path, data: bytes) -> Path:
    """
    Place `data` at `path` as a new 0600 file.

    An existing file or symlink at `path` is replaced, never written through,
    so the bytes are never readable under looser permissions.
    """
    return atomic_write(path, data, mode=0o600)


def atomic_write(path: Path, data: bytes, *, mode: int = 0o644) -> Path:
    """
    Replace `path` with `data` in one step.

    The payload is written to a sibling temporary file which is renamed over
    the target, so readers see either the old content or the new content.
    """
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(
            prefix=f".{path.name}.", suffix=".tmp", dir=path.parent
        )
    except OSError as exc:
        raise FilesystemError(f"Failed to prepare write: {exc}", artifact=path) from exc

    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(temp_name, mode)
        os.replace(temp_name, path)
    except OSError as exc:
        try:
            os.unlink(temp_name)
        except FileNotFoundError:
            pass
        raise FilesystemError(f"Failed to write file: {exc}", artifact=path) from exc
    _logger.debug("Wrote %d bytes to %s", len(data), path)
    return path


def read_bytes(path: Path) -> bytes:
    try:
        return Path(path).read_bytes()
    except FileNotFoundError as exc:
        raise ArtifactNotFoundError(f"Missing trust artifact: {path}", artifact=path) from exc
    except OSError as exc:
        raise FilesystemError(f"Failed to read file: {exc}", artifact=path) from exc
