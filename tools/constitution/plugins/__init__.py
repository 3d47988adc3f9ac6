"""Plugin trust: signing keys, manifest signatures and plugin models.

The lifecycle manager lives in ``tools.constitution.plugins.manager``; it
depends on the sandbox, which in turn depends on the models exported here.
"""
from .key_store import ROOT_KEY, ROOT_KEY_ID, KeyStore, KeyStoreStats
from .models import (
    KeyStatus,
    KeyType,
    KeyValidationReason,
    KeyValidationResult,
    LoadedPlugin,
    LoadErrorCode,
    PluginCapabilities,
    PluginError,
    PluginErrorCode,
    PluginLoadOptions,
    PluginLoadResult,
    PluginManifest,
    PluginSignature,
    PluginState,
    SignatureAlgorithm,
    SignatureVerificationResult,
    SigningKey,
)
from .signature import (
    SignatureVerifier,
    create_test_signature,
    get_signature_age_days,
    hash_manifest_content,
    sign_manifest,
    verify_with_public_key,
)

__all__ = [
    "ROOT_KEY",
    "ROOT_KEY_ID",
    "KeyStore",
    "KeyStoreStats",
    "KeyStatus",
    "KeyType",
    "KeyValidationReason",
    "KeyValidationResult",
    "LoadedPlugin",
    "LoadErrorCode",
    "PluginCapabilities",
    "PluginError",
    "PluginErrorCode",
    "PluginLoadOptions",
    "PluginLoadResult",
    "PluginManifest",
    "PluginSignature",
    "PluginState",
    "SignatureAlgorithm",
    "SignatureVerificationResult",
    "SigningKey",
    "SignatureVerifier",
    "create_test_signature",
    "get_signature_age_days",
    "hash_manifest_content",
    "sign_manifest",
    "verify_with_public_key",
]
