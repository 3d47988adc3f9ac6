"""
Manifest content hashing and signature verification.

contentHash is the SHA-256 of the manifest's canonical JSON (keys sorted at
every level, no whitespace, signature field removed). The signed message is
``contentHash + signedAt``. Verification is staged and stops at the first
failure: structure, content hash, signing key, signature age, cryptography.
"""
from __future__ import annotations

import base64
import hashlib
import json
import logging
import re
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Mapping, Optional, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey, RSAPublicKey
from cryptography.hazmat.primitives.serialization import load_pem_public_key
from pydantic import BaseModel, ValidationError

from ..models import utc_now
from .key_store import ROOT_KEY_ID, KeyStore
from .models import (
    PluginSignature,
    SignatureAlgorithm,
    SignatureVerificationResult,
    VerificationDetails,
)

logger = logging.getLogger("constitution.plugins.signature")

MAX_SIGNATURE_AGE = timedelta(days=365)
MOCK_SIGNATURE_RE = re.compile(r"^TEST_SIG_[A-Za-z0-9+/=]+$")

ManifestLike = Union[BaseModel, Mapping[str, Any]]
CryptoVerifier = Callable[[PluginSignature, str], bool]
SigningPrivateKey = Union[Ed25519PrivateKey, RSAPrivateKey]


# ---------------------------------------------------------------------------
# Hashing
# ---------------------------------------------------------------------------

def manifest_to_wire(manifest: ManifestLike) -> Dict[str, Any]:
    if isinstance(manifest, BaseModel):
        return manifest.model_dump(by_alias=True, mode="json", exclude_none=True)
    return dict(manifest)


def canonical_manifest_bytes(manifest: ManifestLike) -> bytes:
    content = {k: v for k, v in manifest_to_wire(manifest).items() if k != "signature"}
    return json.dumps(content, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode(
        "utf-8"
    )


def hash_manifest_content(manifest: ManifestLike) -> str:
    return hashlib.sha256(canonical_manifest_bytes(manifest)).hexdigest()


def hash_content(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def _signed_message(signature: PluginSignature) -> bytes:
    return (signature.content_hash + signature.signed_at).encode("utf-8")


# ---------------------------------------------------------------------------
# Signing
# ---------------------------------------------------------------------------

def sign_manifest(
    manifest: ManifestLike,
    private_key: SigningPrivateKey,
    key_id: str,
    *,
    signed_at: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Return the manifest's wire form with a freshly computed signature block."""
    wire = {k: v for k, v in manifest_to_wire(manifest).items() if k != "signature"}
    content_hash = hash_manifest_content(wire)
    stamp = (signed_at or utc_now()).strftime("%Y-%m-%dT%H:%M:%SZ")
    message = (content_hash + stamp).encode("utf-8")

    if isinstance(private_key, Ed25519PrivateKey):
        algorithm = SignatureAlgorithm.ED25519
        raw_sig = private_key.sign(message)
    elif isinstance(private_key, RSAPrivateKey):
        algorithm = SignatureAlgorithm.RSA_SHA256
        raw_sig = private_key.sign(message, padding.PKCS1v15(), hashes.SHA256())
    else:
        raise TypeError(f"unsupported signing key type: {type(private_key).__name__}")

    signature = PluginSignature(
        algorithm=algorithm,
        signature=base64.b64encode(raw_sig).decode("ascii"),
        key_id=key_id,
        signed_at=stamp,
        content_hash=content_hash,
    )
    wire["signature"] = signature.to_wire()
    logger.info("manifest %s signed with key %s (%s)", wire.get("id"), key_id, algorithm.value)
    return wire


def create_test_signature(manifest: ManifestLike, key_id: str = ROOT_KEY_ID) -> Dict[str, Any]:
    """Mock signature block; only a verifier built with allow_mock_signatures accepts it."""
    content_hash = hash_manifest_content(manifest)
    token = base64.b64encode(content_hash.encode("ascii")).decode("ascii")[:32]
    return PluginSignature(
        algorithm=SignatureAlgorithm.ED25519,
        signature=f"TEST_SIG_{token}",
        key_id=key_id,
        signed_at=utc_now().strftime("%Y-%m-%dT%H:%M:%SZ"),
        content_hash=content_hash,
    ).to_wire()


# ---------------------------------------------------------------------------
# Cryptographic verification
# ---------------------------------------------------------------------------

def verify_with_public_key(signature: PluginSignature, public_key_pem: str) -> bool:
    """Fail closed: any decoding or key error counts as an invalid signature."""
    try:
        raw_sig = base64.b64decode(signature.signature, validate=True)
        public_key = load_pem_public_key(public_key_pem.encode("ascii"))
        message = _signed_message(signature)
        if signature.algorithm is SignatureAlgorithm.ED25519:
            if not isinstance(public_key, Ed25519PublicKey):
                return False
            public_key.verify(raw_sig, message)
            return True
        if signature.algorithm is SignatureAlgorithm.RSA_SHA256:
            if not isinstance(public_key, RSAPublicKey):
                return False
            public_key.verify(raw_sig, message, padding.PKCS1v15(), hashes.SHA256())
            return True
        return False
    except InvalidSignature:
        return False
    except (ValueError, TypeError, UnicodeEncodeError) as exc:
        logger.debug("signature verification error: %s", exc)
        return False


def _failed(error: str, details: VerificationDetails, signing_key=None) -> SignatureVerificationResult:
    return SignatureVerificationResult(valid=False, error=error, signing_key=signing_key, details=details)


class SignatureVerifier:
    def __init__(
        self,
        key_store: KeyStore,
        *,
        crypto_verifier: CryptoVerifier = verify_with_public_key,
        allow_mock_signatures: bool = False,
        max_age: timedelta = MAX_SIGNATURE_AGE,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.key_store = key_store
        self._crypto_verifier = crypto_verifier
        self._allow_mock = allow_mock_signatures
        self._max_age = max_age
        self._clock = clock
        if allow_mock_signatures:
            logger.warning(
                "SignatureVerifier accepts TEST_SIG_ mock signatures. "
                "Never enable this outside of tests."
            )

    @staticmethod
    def _parse_signature(manifest: ManifestLike) -> Optional[PluginSignature]:
        raw = manifest_to_wire(manifest).get("signature")
        if not isinstance(raw, Mapping):
            return None
        try:
            return PluginSignature.model_validate(raw)
        except ValidationError:
            return None

    def has_signature(self, manifest: ManifestLike) -> bool:
        return self._parse_signature(manifest) is not None

    def verify(self, manifest: ManifestLike) -> SignatureVerificationResult:
        wire = manifest_to_wire(manifest)
        if not wire.get("signature"):
            return _failed("No signature present", VerificationDetails())

        signature = self._parse_signature(wire)
        if signature is None:
            return _failed("Invalid signature structure", VerificationDetails())

        if hash_manifest_content(wire) != signature.content_hash.lower():
            return _failed(
                "Content hash mismatch - manifest may have been tampered with",
                VerificationDetails(),
            )

        key_check = self.key_store.validate_key(signature.key_id)
        if not key_check.valid or key_check.key is None:
            reason = key_check.reason.value if key_check.reason else "UNKNOWN"
            return _failed(
                f"Signing key invalid: {reason}",
                VerificationDetails(content_hash_valid=True),
                key_check.key,
            )
        key = key_check.key

        if self._clock() - signature.signed_at_dt >= self._max_age:
            return _failed(
                "Signature has expired",
                VerificationDetails(content_hash_valid=True, key_trusted=True),
                key,
            )

        if not self._crypto_ok(signature, key.public_key):
            return _failed(
                "Cryptographic signature verification failed",
                VerificationDetails(content_hash_valid=True, key_trusted=True, not_expired=True),
                key,
            )

        return SignatureVerificationResult(
            valid=True,
            signing_key=key,
            details=VerificationDetails(
                content_hash_valid=True, signature_valid=True, key_trusted=True, not_expired=True
            ),
        )

    def _crypto_ok(self, signature: PluginSignature, public_key_pem: str) -> bool:
        if self._allow_mock and MOCK_SIGNATURE_RE.match(signature.signature):
            logger.warning("accepted mock signature for key %s", signature.key_id)
            return True
        try:
            return bool(self._crypto_verifier(signature, public_key_pem))
        except Exception:
            logger.exception("crypto verifier raised; treating signature as invalid")
            return False


def get_signature_age_days(signature: Union[PluginSignature, Mapping[str, Any]], now: Optional[datetime] = None) -> int:
    sig = signature if isinstance(signature, PluginSignature) else PluginSignature.model_validate(signature)
    age = (now or utc_now()) - sig.signed_at_dt
    return age.days
