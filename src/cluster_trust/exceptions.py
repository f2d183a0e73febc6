from __future__ import annotations

from pathlib import Path


class ClusterTrustError(RuntimeError):
    """Base error carrying the operation and artifact it happened in."""

    def __init__(
        self,
        message: str,
        *,
        operation: str | None = None,
        artifact: str | Path | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.artifact = str(artifact) if artifact is not None else None

    def annotate(
        self,
        *,
        operation: str | None = None,
        artifact: str | Path | None = None,
    ) -> "ClusterTrustError":
        # Innermost context wins.
        if self.operation is None and operation is not None:
            self.operation = operation
        if self.artifact is None and artifact is not None:
            self.artifact = str(artifact)
        return self

    def __str__(self) -> str:
        context = []
        if self.operation:
            context.append(f"operation={self.operation}")
        if self.artifact:
            context.append(f"artifact={self.artifact}")
        if context:
            return f"{self.message} ({', '.join(context)})"
        return self.message


class ConfigurationError(ClusterTrustError):
    """Configuration is invalid or incomplete."""


class RemoteKeyServiceError(ClusterTrustError):
    """The master-key service denied the request or could not be reached."""

    def __init__(self, message: str, *, code: str | None = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.code = code


class EncodingError(ClusterTrustError):
    """A payload could not be encoded into an encrypted blob."""


class MalformedBlobError(ClusterTrustError):
    """An encrypted blob does not have the expected structure."""


class DecryptionError(ClusterTrustError):
    """Integrity check failed while opening an encrypted blob."""


class IssuanceError(ClusterTrustError):
    """The certificate-issuance engine reported a failure."""

    def __init__(self, message: str, *, stderr: str = "", **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.stderr = stderr


class ResponseParseError(ClusterTrustError):
    """The certificate-issuance engine returned an unreadable response."""


class ProcessSpawnError(ClusterTrustError):
    """An external program could not be started."""


class CommandFailedError(ClusterTrustError):
    """An external program exited with a non-zero status."""

    def __init__(
        self,
        message: str,
        *,
        returncode: int,
        stdout: str = "",
        stderr: str = "",
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


class FilesystemError(ClusterTrustError):
    """Reading or writing a trust artifact failed."""


class ArtifactNotFoundError(FilesystemError):
    """A required trust artifact does not exist."""


class ArtifactExistsError(FilesystemError):
    """Refusing to overwrite an existing trust artifact."""


class RotationIncompleteError(ClusterTrustError):
    """Re-encryption stopped before every key was rotated."""

    def __init__(
        self,
        message: str,
        *,
        rotated: list[Path],
        pending: list[Path],
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)
        self.rotated = list(rotated)
        self.pending = list(pending)
