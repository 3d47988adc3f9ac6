"""
Plugin, key and signature models.

Wire form is camelCase JSON (the form that gets hashed and signed); Python
attributes are snake_case. ``pkv_write_access`` is typed ``Literal[False]``
and additionally rejected by a before-validator for anything that is not
literally ``False``, so no validated PluginCapabilities can ever grant it.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictBool, field_validator
from pydantic.alias_generators import to_camel

from ..models import utc_now

CONTENT_HASH_RE = re.compile(r"^[a-fA-F0-9]{64}$")


class _Wire(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="forbid",
    )

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


# ---------------------------------------------------------------------------
# Capabilities
# ---------------------------------------------------------------------------

class PluginCapabilities(_Wire):
    plugin_id: str = Field(min_length=1)
    version: str
    signature: str

    can_modify_communication_style: StrictBool = False
    can_override_honesty_tier: StrictBool = False
    can_inject_knowledge: StrictBool = False
    can_add_tools: List[str] = Field(default_factory=list)
    can_adjust_proactivity: StrictBool = False

    pkv_read_access: StrictBool = False
    pkv_write_access: Literal[False] = False
    network_domains: List[str] = Field(default_factory=list)
    file_system_paths: List[str] = Field(default_factory=list)

    @field_validator("pkv_write_access", mode="before")
    @classmethod
    def _pkv_write_is_never_granted(cls, value: Any) -> Any:
        if value is not False:
            raise ValueError("pkvWriteAccess must be false")
        return value


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------

class KeyType(str, Enum):
    ROOT = "ROOT"
    PUBLISHER = "PUBLISHER"
    DEVELOPER = "DEVELOPER"


class KeyStatus(str, Enum):
    ACTIVE = "ACTIVE"
    REVOKED = "REVOKED"
    EXPIRED = "EXPIRED"


class SigningKey(_Wire):
    key_id: str = Field(min_length=1)
    type: KeyType
    public_key: str = Field(min_length=1)
    holder: str = Field(min_length=1)
    created_at: datetime = Field(default_factory=utc_now)
    expires_at: datetime
    status: KeyStatus = KeyStatus.ACTIVE
    parent_key_id: Optional[str] = None

    @field_validator("created_at", "expires_at")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


class KeyValidationReason(str, Enum):
    NOT_FOUND = "NOT_FOUND"
    REVOKED = "REVOKED"
    EXPIRED = "EXPIRED"
    INVALID_CHAIN = "INVALID_CHAIN"


@dataclass(frozen=True)
class KeyValidationResult:
    valid: bool
    key: Optional[SigningKey] = None
    reason: Optional[KeyValidationReason] = None


# ---------------------------------------------------------------------------
# Signatures and manifests
# ---------------------------------------------------------------------------

class SignatureAlgorithm(str, Enum):
    ED25519 = "ED25519"
    RSA_SHA256 = "RSA-SHA256"


class PluginSignature(_Wire):
    algorithm: SignatureAlgorithm
    signature: str = Field(min_length=1)
    key_id: str = Field(min_length=1)
    # Kept as the exact string that was signed.
    signed_at: str
    content_hash: str

    @field_validator("signed_at")
    @classmethod
    def _parseable_timestamp(cls, value: str) -> str:
        parse_timestamp(value)
        return value

    @field_validator("content_hash")
    @classmethod
    def _sha256_hex(cls, value: str) -> str:
        if not CONTENT_HASH_RE.match(value):
            raise ValueError("contentHash must be a hex SHA-256 digest")
        return value

    @property
    def signed_at_dt(self) -> datetime:
        return parse_timestamp(self.signed_at)


class PluginManifest(_Wire):
    id: str = Field(min_length=1)
    version: str
    name: str = Field(min_length=1)
    description: str
    author: str
    homepage: Optional[str] = None
    capabilities: PluginCapabilities
    entry_point: str
    signature: Optional[PluginSignature] = None
    min_osqr_version: str
    dependencies: Optional[Dict[str, str]] = None


class ManifestShape(BaseModel):
    """Structural check only; capabilities are judged separately after signature checks."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    id: str = Field(min_length=1)
    version: str
    name: str = Field(min_length=1)
    description: str
    author: str
    capabilities: Dict[str, Any]
    entry_point: str
    min_osqr_version: str


def parse_timestamp(value: str) -> datetime:
    """ISO-8601 with a trailing ``Z`` accepted; naive values are taken as UTC."""
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class VerificationDetails:
    content_hash_valid: bool = False
    signature_valid: bool = False
    key_trusted: bool = False
    not_expired: bool = False


@dataclass(frozen=True)
class SignatureVerificationResult:
    valid: bool
    signing_key: Optional[SigningKey] = None
    error: Optional[str] = None
    details: VerificationDetails = field(default_factory=VerificationDetails)


# ---------------------------------------------------------------------------
# Plugin lifecycle
# ---------------------------------------------------------------------------

class PluginState(str, Enum):
    UNLOADED = "UNLOADED"
    LOADING = "LOADING"
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    FAILED = "FAILED"


@dataclass
class LoadedPlugin:
    manifest: PluginManifest
    state: PluginState
    signature_verification: SignatureVerificationResult
    wire: Dict[str, Any]
    loaded_at: datetime = field(default_factory=utc_now)
    error: Optional[str] = None

    @property
    def plugin_id(self) -> str:
        return self.manifest.id


class LoadErrorCode(str, Enum):
    UNSIGNED = "UNSIGNED"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    KEY_NOT_TRUSTED = "KEY_NOT_TRUSTED"
    MANIFEST_INVALID = "MANIFEST_INVALID"
    LOAD_ERROR = "LOAD_ERROR"


@dataclass(frozen=True)
class PluginLoadOptions:
    skip_signature_verification: bool = False
    allow_untrusted: bool = False


@dataclass(frozen=True)
class PluginLoadResult:
    success: bool
    plugin: Optional[LoadedPlugin] = None
    error: Optional[str] = None
    error_code: Optional[LoadErrorCode] = None


class PluginErrorCode(str, Enum):
    PLUGIN_NOT_FOUND = "PLUGIN_NOT_FOUND"
    PLUGIN_ALREADY_LOADED = "PLUGIN_ALREADY_LOADED"
    SIGNATURE_INVALID = "SIGNATURE_INVALID"
    SIGNATURE_MISSING = "SIGNATURE_MISSING"
    KEY_NOT_FOUND = "KEY_NOT_FOUND"
    KEY_REVOKED = "KEY_REVOKED"
    KEY_EXPIRED = "KEY_EXPIRED"
    MANIFEST_INVALID = "MANIFEST_INVALID"
    CAPABILITY_DENIED = "CAPABILITY_DENIED"
    LOAD_ERROR = "LOAD_ERROR"
    UNLOAD_ERROR = "UNLOAD_ERROR"


class PluginError(Exception):
    def __init__(self, message: str, code: PluginErrorCode, plugin_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.code = code
        self.plugin_id = plugin_id
