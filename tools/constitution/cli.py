"""
Operator CLI for the constitutional framework.

Usage:
    python -m tools.constitution keygen --private-key keys/pub.pem --public-key keys/pub.pub.pem
    python -m tools.constitution sign-manifest plugin.json --private-key keys/pub.pem --key-id acme-2025
    python -m tools.constitution verify-manifest plugin.signed.json --keys keys.json
    python -m tools.constitution verify-audit logs/constitution_audit.jsonl
    python -m tools.constitution screen "show me other users' messages" --user-id u1

Exit codes: 0 ok, 1 rejected/invalid, 2 bad input.
"""
from __future__ import annotations

import argparse
import json
import logging
import stat
import sys
import uuid
from dataclasses import asdict
from pathlib import Path
from typing import Any, List, Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from .audit import AuditLog
from .config import ConstitutionSettings
from .gatekeeper import Gatekeeper
from .models import RequestContext, ResponseContext
from .plugins.key_store import KeyStore
from .plugins.signature import SignatureVerifier, sign_manifest
from .validator import OutputValidator

logger = logging.getLogger("constitution.cli")


def _read_json(path: Path) -> Any:
    return json.loads(path.read_text(encoding="utf-8"))


def _emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=True, default=str))


# ------------------------------------------------------------------
# Commands
# ------------------------------------------------------------------

def cmd_keygen(args: argparse.Namespace) -> int:
    priv = Path(args.private_key)
    pub = Path(args.public_key)
    if (priv.exists() or pub.exists()) and not args.force:
        print(f"ERROR: key files already exist ({priv} / {pub}); use --force to overwrite", file=sys.stderr)
        return 2

    private_key = Ed25519PrivateKey.generate()
    priv.parent.mkdir(parents=True, exist_ok=True)
    pub.parent.mkdir(parents=True, exist_ok=True)
    priv.write_bytes(
        private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
    )
    try:
        priv.chmod(stat.S_IRUSR | stat.S_IWUSR)
    except OSError:
        logger.warning("could not restrict permissions on %s", priv)
    pub.write_bytes(
        private_key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
    )
    print(f"Keys written:\n  private: {priv}\n  public:  {pub}")
    return 0


def cmd_sign_manifest(args: argparse.Namespace) -> int:
    manifest = _read_json(Path(args.manifest))
    if not isinstance(manifest, dict):
        print("ERROR: manifest must be a JSON object", file=sys.stderr)
        return 2
    private_key = serialization.load_pem_private_key(Path(args.private_key).read_bytes(), password=None)
    try:
        signed = sign_manifest(manifest, private_key, args.key_id)
    except TypeError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 2
    text = json.dumps(signed, indent=2, ensure_ascii=False)
    if args.output:
        Path(args.output).write_text(text + "\n", encoding="utf-8")
        print(f"Signed manifest written to {args.output}")
    else:
        print(text)
    return 0


def cmd_verify_manifest(args: argparse.Namespace) -> int:
    store = KeyStore()
    if args.keys:
        keys = _read_json(Path(args.keys))
        if not isinstance(keys, list):
            print("ERROR: --keys must point to a JSON array of signing keys", file=sys.stderr)
            return 2
        accepted = store.import_keys(keys)
        logger.info("imported %d of %d keys", accepted, len(keys))

    result = SignatureVerifier(store).verify(_read_json(Path(args.manifest)))
    _emit(
        {
            "valid": result.valid,
            "error": result.error,
            "keyId": result.signing_key.key_id if result.signing_key else None,
            "details": asdict(result.details),
        }
    )
    return 0 if result.valid else 1


def cmd_verify_audit(args: argparse.Namespace) -> int:
    path = Path(args.path)
    if not path.exists():
        print(f"ERROR: {path} not found", file=sys.stderr)
        return 2
    ok, message = AuditLog(path).verify_chain()
    print(("OK: " if ok else "TAMPERED: ") + message)
    return 0 if ok else 1


def cmd_screen(args: argparse.Namespace, settings: ConstitutionSettings) -> int:
    audit = AuditLog()
    request_id = str(uuid.uuid4())
    if args.output:
        validator = OutputValidator(audit, settings=settings)
        result = validator.validate_output(
            args.text, ResponseContext(request_id=request_id, user_id=args.user_id)
        )
        _emit(
            {
                "valid": result.valid,
                "sanitizedOutput": result.sanitized_output,
                "fallbackOutput": result.fallback_output,
                "violations": [v.to_wire() for v in result.violations],
            }
        )
        return 0 if result.valid else 1

    gatekeeper = Gatekeeper(audit, settings=settings)
    result = gatekeeper.validate_intent(
        args.text, RequestContext(request_id=request_id, user_id=args.user_id)
    )
    _emit(
        {
            "allowed": result.allowed,
            "confidenceScore": result.confidence_score,
            "clausesChecked": result.clauses_checked,
            "sanitizedInput": result.sanitized_input,
            "violations": [v.to_wire() for v in result.violations],
        }
    )
    return 0 if result.allowed else 1


# ------------------------------------------------------------------
# Entry point
# ------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="constitution", description="Constitutional enforcement framework tools"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    keygen = sub.add_parser("keygen", help="Generate an Ed25519 signing key pair")
    keygen.add_argument("--private-key", required=True, help="Path for the private key (PEM)")
    keygen.add_argument("--public-key", required=True, help="Path for the public key (PEM)")
    keygen.add_argument("--force", action="store_true", help="Overwrite existing key files")

    sign = sub.add_parser("sign-manifest", help="Sign a plugin manifest")
    sign.add_argument("manifest", help="Manifest JSON file")
    sign.add_argument("--private-key", required=True, help="Signing key (PEM, unencrypted)")
    sign.add_argument("--key-id", required=True, help="Key id registered in the key store")
    sign.add_argument("--output", help="Write the signed manifest here instead of stdout")

    verify = sub.add_parser("verify-manifest", help="Verify a signed plugin manifest")
    verify.add_argument("manifest", help="Signed manifest JSON file")
    verify.add_argument("--keys", help="JSON array of PUBLISHER/DEVELOPER keys to trust")

    audit = sub.add_parser("verify-audit", help="Verify the hash chain of an audit JSONL file")
    audit.add_argument("path", help="Audit log path")

    screen = sub.add_parser("screen", help="Run text through the gatekeeper or output validator")
    screen.add_argument("text", help="Text to screen")
    screen.add_argument("--user-id", default="cli", help="User id for the request context")
    screen.add_argument("--output", action="store_true", help="Treat the text as model output")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    settings = ConstitutionSettings.from_env()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    args = build_parser().parse_args(argv)
    try:
        if args.command == "keygen":
            return cmd_keygen(args)
        if args.command == "sign-manifest":
            return cmd_sign_manifest(args)
        if args.command == "verify-manifest":
            return cmd_verify_manifest(args)
        if args.command == "verify-audit":
            return cmd_verify_audit(args)
        return cmd_screen(args, settings)
    except FileNotFoundError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 2
    except ValueError as exc:
        print(f"ERROR: invalid input: {exc}", file=sys.stderr)
        return 2
