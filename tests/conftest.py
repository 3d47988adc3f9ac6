"""Shared pytest configuration and fixtures for all test modules."""

import os
from datetime import timedelta

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from tools.constitution.audit import AuditLog
from tools.constitution.models import RequestContext, ResponseContext, utc_now
from tools.constitution.plugins.key_store import ROOT_KEY_ID, KeyStore
from tools.constitution.plugins.models import KeyType, SigningKey

PUBLISHER_KEY_ID = "acme-publisher-2025"


def public_pem(private_key: Ed25519PrivateKey) -> str:
    return private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")


def make_signing_key(
    key_id: str,
    key_type: KeyType,
    parent_key_id: str,
    private_key: Ed25519PrivateKey,
    *,
    expires_in: timedelta = timedelta(days=365),
) -> SigningKey:
    now = utc_now()
    return SigningKey(
        key_id=key_id,
        type=key_type,
        public_key=public_pem(private_key),
        holder=f"{key_id} holder",
        created_at=now,
        expires_at=now + expires_in,
        parent_key_id=parent_key_id,
    )


def make_manifest(plugin_id: str = "com.acme.helper", **capabilities) -> dict:
    caps = {
        "pluginId": plugin_id,
        "version": "1.0.0",
        "signature": f"{plugin_id}.1700000000000.{'a' * 64}",
        "canModifyCommunicationStyle": False,
        "canOverrideHonestyTier": False,
        "canInjectKnowledge": False,
        "canAddTools": [],
        "canAdjustProactivity": False,
        "pkvReadAccess": False,
        "pkvWriteAccess": False,
        "networkDomains": [],
        "fileSystemPaths": [],
    }
    caps.update(capabilities)
    return {
        "id": plugin_id,
        "version": "1.0.0",
        "name": "Acme Helper",
        "description": "Helps with acme things",
        "author": "Acme Inc.",
        "capabilities": caps,
        "entryPoint": "index.js",
        "minOsqrVersion": "1.0.0",
    }


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Drop CONSTITUTION_* variables so every test starts from defaults."""
    for key in list(os.environ):
        if key.startswith("CONSTITUTION_"):
            monkeypatch.delenv(key, raising=False)
    yield


@pytest.fixture
def audit() -> AuditLog:
    return AuditLog()


@pytest.fixture
def key_store() -> KeyStore:
    return KeyStore()


@pytest.fixture
def publisher_private_key() -> Ed25519PrivateKey:
    return Ed25519PrivateKey.generate()


@pytest.fixture
def publisher_key(key_store, publisher_private_key) -> SigningKey:
    key = make_signing_key(PUBLISHER_KEY_ID, KeyType.PUBLISHER, ROOT_KEY_ID, publisher_private_key)
    assert key_store.add_key(key)
    return key


@pytest.fixture
def request_context() -> RequestContext:
    return RequestContext(request_id="req-1", user_id="user-123", conversation_id="conv-1")


@pytest.fixture
def response_context() -> ResponseContext:
    return ResponseContext(
        request_id="req-1", user_id="user-123", conversation_id="conv-1", original_input="hello"
    )


@pytest.fixture
def manifest_factory():
    return make_manifest


@pytest.fixture
def key_factory():
    return make_signing_key
