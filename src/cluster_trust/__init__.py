"""Trust material management for Kubernetes cluster repositories."""

from .admin import AdminCredentialFlow
from .cfssl import CfsslIssuanceClient
from .config import ClusterConfig, HsmSettings, MasterKeyReference
from .domains import DOMAIN_PROFILES, DomainProfile, SubjectProfile, TrustDomain
from .envelope import EnvelopeCrypto
from .exceptions import (
    ArtifactExistsError,
    ArtifactNotFoundError,
    ClusterTrustError,
    CommandFailedError,
    ConfigurationError,
    DecryptionError,
    EncodingError,
    FilesystemError,
    IssuanceError,
    MalformedBlobError,
    ProcessSpawnError,
    RemoteKeyServiceError,
    ResponseParseError,
    RotationIncompleteError,
)
from .issuance import IssuanceClient
from .local_issuer import LocalIssuanceClient
from .logging_utils import configure_logging
from .master_keys import (
    DataKey,
    KmsMasterKeyService,
    MasterKeyService,
    Pkcs11MasterKeyService,
)
from .models import (
    Certificate,
    CertificateAuthority,
    CertificateSigningRequest,
    IssuedCertificate,
    KeyRequest,
    PrivateKey,
)
from .pki import GenerationReport, PkiOrchestrator
from .rotation import RotationProtocol, RotationReport, reencrypt
from .trust_store import TrustStore

__all__ = [
    "DOMAIN_PROFILES",
    "AdminCredentialFlow",
    "ArtifactExistsError",
    "ArtifactNotFoundError",
    "Certificate",
    "CertificateAuthority",
    "CertificateSigningRequest",
    "CfsslIssuanceClient",
    "ClusterConfig",
    "ClusterTrustError",
    "CommandFailedError",
    "ConfigurationError",
    "DataKey",
    "DecryptionError",
    "DomainProfile",
    "EncodingError",
    "EnvelopeCrypto",
    "FilesystemError",
    "GenerationReport",
    "HsmSettings",
    "IssuanceClient",
    "IssuanceError",
    "IssuedCertificate",
    "KeyRequest",
    "KmsMasterKeyService",
    "LocalIssuanceClient",
    "MalformedBlobError",
    "MasterKeyReference",
    "MasterKeyService",
    "PkiOrchestrator",
    "Pkcs11MasterKeyService",
    "PrivateKey",
    "ProcessSpawnError",
    "RemoteKeyServiceError",
    "ResponseParseError",
    "RotationIncompleteError",
    "RotationProtocol",
    "RotationReport",
    "SubjectProfile",
    "TrustDomain",
    "TrustStore",
    "configure_logging",
    "reencrypt",
]
