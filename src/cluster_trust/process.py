from __future__ import annotations

import logging
import subprocess
from typing import Sequence

from .exceptions import CommandFailedError, ProcessSpawnError

_logger = logging.getLogger("cluster_trust.process")


def _decode(stream: bytes | None) -> str:
    if not stream:
        return ""
    return stream.decode("utf-8", errors="replace")


def run_command(
    args: Sequence[str],
    *,
    input_data: bytes | None = None,
) -> subprocess.CompletedProcess[bytes]:
    """
    Run `args` to completion, feeding `input_data` on stdin.

    Raises ProcessSpawnError when the program cannot be started and
    CommandFailedError when it exits with a non-zero status.
    """
    command = [str(arg) for arg in args]
    _logger.debug("Running %s", command[0] if command else "<empty>")
    try:
        proc = subprocess.run(
            command,
            input=input_data,
            capture_output=True,
            check=False,
        )
    except OSError as exc:
        raise ProcessSpawnError(
            f"Failed to start `{command[0]}`: {exc}. Is it installed and on PATH?"
        ) from exc

    if proc.returncode != 0:
        stdout = _decode(proc.stdout)
        stderr = _decode(proc.stderr)
        _logger.warning(
            "`%s` exited with status %d: %s",
            command[0],
            proc.returncode,
            stderr.strip() or "<no stderr>",
        )
        raise CommandFailedError(
            f"Execution of `{' '.join(command[:2])}` failed with status {proc.returncode}.\n"
            f"stdout:\n{stdout}\n"
            f"stderr:\n{stderr}",
            returncode=proc.returncode,
            stdout=stdout,
            stderr=stderr,
        )
    return proc
