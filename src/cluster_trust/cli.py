from __future__ import annotations

import argparse
import sys
from pathlib import Path

from .admin import AdminCredentialFlow
from .cfssl import CfsslIssuanceClient
from .config import ClusterConfig, HsmSettings, MasterKeyReference, validate_name
from .domains import list_trust_domains
from .envelope import EnvelopeCrypto
from .exceptions import ClusterTrustError, ConfigurationError
from .issuance import IssuanceClient
from .local_issuer import LocalIssuanceClient
from .logging_utils import configure_logging
from .master_keys import KmsMasterKeyService, MasterKeyService, Pkcs11MasterKeyService
from .pki import PkiOrchestrator
from .rotation import reencrypt
from .trust_store import TrustStore


class _HelpFormatter(
    argparse.RawTextHelpFormatter,
    argparse.ArgumentDefaultsHelpFormatter,
):
    """Keep multiline examples readable and include defaults."""


CLI_HELP_EPILOG = """Environment:
  CLUSTER_TRUST_REGION or AWS_REGION   region of the master key
  CLUSTER_TRUST_KMS_KEY_ID             master key id, ARN or alias
  CLUSTER_TRUST_REPOSITORY             repository holding clusters/<name>/
  CLUSTER_TRUST_DOMAIN                 DNS domain of the cluster
  CLUSTER_TRUST_LOG_FILE               log file (default logs/cluster-trust.log)
  HSM_PKCS11_MODULE, HSM_TOKEN_LABEL or HSM_SLOT, HSM_USER_PIN
                                       token settings for --key-backend pkcs11

Examples:
  cluster-trust pki all demo --region us-east-1 --kms-key alias/demo
  cluster-trust pki subject kubernetes masters demo --san kubernetes.demo.example.com
  cluster-trust admin create demo alice
  cluster-trust admin sign demo alice
  cluster-trust admin install demo alice --domain demo.example.com
  cluster-trust key reencrypt demo --current-key alias/old --new-key alias/new
  cluster-trust key decrypt demo k8s-master --out /etc/kubernetes/ssl/k8s-master-key.pem
"""


def build_master_key_service(config: ClusterConfig) -> MasterKeyService:
    if config.key_backend == "pkcs11":
        return Pkcs11MasterKeyService(HsmSettings.from_env())
    return KmsMasterKeyService(config.region)


def build_issuer(config: ClusterConfig) -> IssuanceClient:
    if config.issuer == "local":
        return LocalIssuanceClient()
    return CfsslIssuanceClient(config.cfssl_path)


def _common_options() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--region", default=None, help="Region of the master key.")
    common.add_argument("--kms-key", default=None, help="Master key id, ARN or alias.")
    common.add_argument(
        "--key-backend",
        choices=("kms", "pkcs11"),
        default=None,
        help="Where master keys live (default: kms).",
    )
    common.add_argument(
        "--issuer",
        choices=("cfssl", "local"),
        default=None,
        help="Certificate issuance engine (default: cfssl).",
    )
    common.add_argument("--cfssl", default=None, help="Path to the cfssl binary.")
    common.add_argument("--domain", default=None, help="DNS domain of the cluster.")
    return common


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cluster-trust",
        description=(
            "Manage the certificate authorities, service certificates, "
            "administrator credentials and envelope-encrypted keys of a cluster."
        ),
        formatter_class=_HelpFormatter,
        epilog=CLI_HELP_EPILOG,
    )
    parser.add_argument(
        "--repository",
        default=None,
        help="Repository root holding clusters/<name>/ (default: current directory).",
    )
    parser.add_argument(
        "--log-file",
        default=None,
        help="Rotating log file path (default: logs/cluster-trust.log under the current directory).",
    )
    parser.add_argument("--log-level", default=None, help="Log level, for example DEBUG.")
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Echo log records to stderr."
    )
    common = _common_options()
    subparsers = parser.add_subparsers(dest="command", required=True)

    pki = subparsers.add_parser("pki", help="Generate certificate authorities and certificates.")
    pki_sub = pki.add_subparsers(dest="pki_command", required=True)
    pki_all = pki_sub.add_parser(
        "all", parents=[common], help="CA and certificates of every trust domain."
    )
    pki_all.add_argument("cluster")
    for domain in list_trust_domains():
        domain_parser = pki_sub.add_parser(
            domain, parents=[common], help=f"CA and certificates of the {domain} domain."
        )
        domain_parser.add_argument("cluster")
    pki_ca = pki_sub.add_parser("ca", parents=[common], help="Create one trust domain's CA.")
    pki_ca.add_argument("trust_domain", choices=list_trust_domains())
    pki_ca.add_argument("cluster")
    pki_subject = pki_sub.add_parser(
        "subject", parents=[common], help="Issue or re-issue one service certificate."
    )
    pki_subject.add_argument("trust_domain", choices=list_trust_domains())
    pki_subject.add_argument("subject")
    pki_subject.add_argument("cluster")
    pki_subject.add_argument(
        "--san",
        action="append",
        default=None,
        help="Subject alternative name; repeat to add more. Replaces the defaults.",
    )

    admin = subparsers.add_parser("admin", help="Administrator client credentials.")
    admin_sub = admin.add_subparsers(dest="admin_command", required=True)
    for action, help_text in (
        ("create", "Create a key and signing request for an administrator."),
        ("sign", "Sign an administrator's request with the cluster CA."),
        ("install", "Register the administrator's credentials with kubectl."),
    ):
        admin_parser = admin_sub.add_parser(action, parents=[common], help=help_text)
        admin_parser.add_argument("cluster")
        admin_parser.add_argument("name")

    key = subparsers.add_parser("key", help="Envelope-encrypted key maintenance.")
    key_sub = key.add_subparsers(dest="key_command", required=True)
    key_reencrypt = key_sub.add_parser(
        "reencrypt", parents=[common], help="Move every escrowed key to a new master key."
    )
    key_reencrypt.add_argument("cluster")
    key_reencrypt.add_argument("--current-key", required=True, help="Current master key.")
    key_reencrypt.add_argument("--new-key", required=True, help="New master key.")
    key_decrypt = key_sub.add_parser(
        "decrypt", parents=[common], help="Decrypt one escrowed key for installation on a host."
    )
    key_decrypt.add_argument("cluster")
    key_decrypt.add_argument("artifact", help="Artifact stem, for example k8s-master.")
    key_decrypt.add_argument("--out", required=True, help="Destination file (mode 0600).")
    return parser


def _config(args: argparse.Namespace, *, kms_key_id: str | None = None) -> ClusterConfig:
    return ClusterConfig.from_env(
        args.cluster,
        region=args.region,
        kms_key_id=kms_key_id or args.kms_key,
        repository_root=args.repository,
        dns_domain=args.domain,
        key_backend=args.key_backend,
        issuer=args.issuer,
        cfssl_path=args.cfssl,
    )


def _run_pki(args: argparse.Namespace, config: ClusterConfig, service: MasterKeyService) -> None:
    store = TrustStore(
        config.repository_root, config.cluster, EnvelopeCrypto(service, config.master_key)
    )
    orchestrator = PkiOrchestrator(store, build_issuer(config), dns_domain=config.dns_domain)

    if args.pki_command == "ca":
        orchestrator.generate_ca(args.trust_domain)
        print(f"Created {args.trust_domain} CA for cluster {config.cluster}.")
        return
    if args.pki_command == "subject":
        orchestrator.generate_subject(args.trust_domain, args.subject, args.san)
        print(f"Issued {args.trust_domain}/{args.subject} for cluster {config.cluster}.")
        return

    if args.pki_command == "all":
        report = orchestrator.generate_all()
    else:
        report = orchestrator.generate_domain(args.pki_command)
    for label in report.generated:
        print(f"Generated {label}")
    for label in report.skipped:
        print(f"Kept existing {label}")
    print(f"PKI for cluster {config.cluster} is complete.")


def _run_admin(args: argparse.Namespace, config: ClusterConfig, service: MasterKeyService) -> None:
    store = TrustStore(
        config.repository_root, config.cluster, EnvelopeCrypto(service, config.master_key)
    )
    flow = AdminCredentialFlow(store, build_issuer(config), kubectl=config.kubectl_path)

    if args.admin_command == "create":
        flow.create(args.name)
        print(f"Created signing request {store.admin_csr_path(args.name)}")
        print(f"Private key written to {store.admin_key_path(args.name)} (keep it safe).")
        return
    if args.admin_command == "sign":
        flow.sign(args.name)
        print(f"Signed certificate {store.admin_certificate_path(args.name)}")
        return
    if not config.dns_domain:
        raise ValueError("admin install requires --domain or CLUSTER_TRUST_DOMAIN.")
    flow.install(args.name, config.dns_domain)
    print(f"kubectl context '{config.cluster}' now uses administrator '{args.name}'.")


def _run_key(args: argparse.Namespace, config: ClusterConfig, service: MasterKeyService) -> None:
    if args.key_command == "reencrypt":
        store = TrustStore(config.repository_root, config.cluster)
        report = reencrypt(
            store,
            service,
            MasterKeyReference(config.region, args.current_key),
            MasterKeyReference(config.region, args.new_key),
        )
        print(
            f"Re-encrypted {len(report.rotated)} keys "
            f"({len(report.already_rotated)} already under the new key)."
        )
        return

    validate_name(args.artifact, "artifact")
    crypto = EnvelopeCrypto(service, config.master_key)
    store = TrustStore(config.repository_root, config.cluster, crypto)
    destination = crypto.decrypt_file(store.encrypted_key_path(args.artifact), Path(args.out))
    print(f"Decrypted {args.artifact} to {destination}")


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    try:
        try:
            configure_logging(
                log_file=args.log_file, level=args.log_level, console=args.verbose
            )
        except OSError as exc:
            raise ConfigurationError(
                f"Cannot open the log file: {exc}. Use --log-file or CLUSTER_TRUST_LOG_FILE."
            ) from exc
        current_key = getattr(args, "current_key", None)
        config = _config(args, kms_key_id=current_key)
        service = build_master_key_service(config)
        try:
            if args.command == "pki":
                _run_pki(args, config, service)
            elif args.command == "admin":
                _run_admin(args, config, service)
            elif args.command == "key":
                _run_key(args, config, service)
            else:
                raise ValueError("Unsupported command combination.")
        finally:
            service.close()
        return 0
    except (ClusterTrustError, ValueError) as exc:
        print(f"cluster-trust error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
