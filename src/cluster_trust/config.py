from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from .exceptions import ConfigurationError

_CLUSTER_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")

KeyBackend = Literal["kms", "pkcs11"]
IssuerKind = Literal["cfssl", "local"]


@dataclass(frozen=True)
class MasterKeyReference:
    """Identifies the remote master key that wraps data keys."""

    region: str
    key_id: str

    def __post_init__(self) -> None:
        if not self.region or not self.region.strip():
            raise ConfigurationError("Master key region is required.")
        if not self.key_id or not self.key_id.strip():
            raise ConfigurationError("Master key id is required.")

    def __str__(self) -> str:
        return f"{self.key_id}@{self.region}"


def validate_name(name: str, kind: str = "cluster") -> str:
    if not name or not _CLUSTER_NAME.fullmatch(name):
        raise ConfigurationError(
            f"Invalid {kind} name '{name}'. Use letters, digits, '.', '_' or '-'."
        )
    return name


def validate_cluster_name(name: str) -> str:
    return validate_name(name, "cluster")


@dataclass(frozen=True)
class ClusterConfig:
    """Parameters shared by every operation against one cluster."""

    cluster: str
    region: str
    kms_key_id: str
    repository_root: Path = field(default_factory=Path.cwd)
    dns_domain: str | None = None
    key_backend: KeyBackend = "kms"
    issuer: IssuerKind = "cfssl"
    cfssl_path: str = "cfssl"
    kubectl_path: str = "kubectl"

    def __post_init__(self) -> None:
        validate_cluster_name(self.cluster)
        if self.key_backend not in ("kms", "pkcs11"):
            raise ConfigurationError(f"Unsupported key backend: {self.key_backend}")
        if self.issuer not in ("cfssl", "local"):
            raise ConfigurationError(f"Unsupported issuer: {self.issuer}")

    @property
    def master_key(self) -> MasterKeyReference:
        return MasterKeyReference(region=self.region, key_id=self.kms_key_id)

    @classmethod
    def from_env(cls, cluster: str, **overrides: object) -> "ClusterConfig":
        """
        Build a config for `cluster`, filling unset values from the environment.

        Environment variables:
        - CLUSTER_TRUST_REGION (falls back to AWS_REGION)
        - CLUSTER_TRUST_KMS_KEY_ID
        - CLUSTER_TRUST_REPOSITORY
        - CLUSTER_TRUST_DOMAIN
        - CLUSTER_TRUST_KEY_BACKEND
        - CLUSTER_TRUST_ISSUER
        - CLUSTER_TRUST_CFSSL / CLUSTER_TRUST_KUBECTL
        """
        values = {key: value for key, value in overrides.items() if value is not None}

        region = values.pop("region", None) or os.environ.get(
            "CLUSTER_TRUST_REGION", os.environ.get("AWS_REGION")
        )
        kms_key_id = values.pop("kms_key_id", None) or os.environ.get(
            "CLUSTER_TRUST_KMS_KEY_ID"
        )
        if not region:
            raise ConfigurationError(
                "A region is required (--region, CLUSTER_TRUST_REGION or AWS_REGION)."
            )
        if not kms_key_id:
            raise ConfigurationError(
                "A master key id is required (--kms-key or CLUSTER_TRUST_KMS_KEY_ID)."
            )

        env_defaults = {
            "repository_root": os.environ.get("CLUSTER_TRUST_REPOSITORY"),
            "dns_domain": os.environ.get("CLUSTER_TRUST_DOMAIN"),
            "key_backend": os.environ.get("CLUSTER_TRUST_KEY_BACKEND"),
            "issuer": os.environ.get("CLUSTER_TRUST_ISSUER"),
            "cfssl_path": os.environ.get("CLUSTER_TRUST_CFSSL"),
            "kubectl_path": os.environ.get("CLUSTER_TRUST_KUBECTL"),
        }
        for key, value in env_defaults.items():
            if key not in values and value:
                values[key] = value
        if "repository_root" in values:
            values["repository_root"] = Path(str(values["repository_root"]))

        return cls(cluster=cluster, region=region, kms_key_id=kms_key_id, **values)


@dataclass(frozen=True)
class HsmSettings:
    """Runtime configuration for a PKCS#11 token holding master keys."""

    module_path: str
    token_label: str | None = None
    slot_no: int | None = None
    user_pin_env: str = "HSM_USER_PIN"

    @classmethod
    def from_env(cls) -> "HsmSettings":
        module_path = os.environ.get("HSM_PKCS11_MODULE")
        token_label = os.environ.get("HSM_TOKEN_LABEL")
        slot_raw = os.environ.get("HSM_SLOT")
        user_pin_env = os.environ.get("HSM_USER_PIN_ENV", "HSM_USER_PIN")

        if not module_path:
            raise ConfigurationError("HSM_PKCS11_MODULE is required for the pkcs11 backend.")
        if not Path(module_path).exists():
            raise ConfigurationError(f"PKCS#11 module path does not exist: {module_path}")

        slot_no: int | None = None
        if slot_raw:
            try:
                slot_no = int(slot_raw)
            except ValueError as exc:
                raise ConfigurationError(
                    f"HSM_SLOT must be an integer, got: {slot_raw}"
                ) from exc

        if not token_label and slot_no is None:
            raise ConfigurationError(
                "Set either HSM_TOKEN_LABEL or HSM_SLOT to locate the token."
            )

        return cls(
            module_path=module_path,
            token_label=token_label,
            slot_no=slot_no,
            user_pin_env=user_pin_env,
        )

    def user_pin(self) -> str:
        pin = os.environ.get(self.user_pin_env)
        if not pin:
            raise ConfigurationError(f"{self.user_pin_env} is required.")
        return pin
