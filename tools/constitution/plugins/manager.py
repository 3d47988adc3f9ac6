"""
Plugin lifecycle manager.

Owns the map of loaded plugins (one LoadedPlugin per plugin id) and is the
only component that moves a plugin between states:

    LOADING -> ACTIVE | FAILED
    ACTIVE <-> SUSPENDED
    ACTIVE | SUSPENDED -> FAILED
    any -> UNLOADED   (terminal; the entry is dropped)

load_plugin() is staged and every stage can stop the load with a specific
error code. The raw wire dict is what gets hashed, never a re-serialized
model, so unknown fields added after signing still break the content hash.
"""
from __future__ import annotations

import logging
import threading
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from pydantic import ValidationError

from ..audit import AuditLog
from ..config import ConstitutionSettings
from ..models import utc_now
from ..sandbox import (
    ContainerLimits,
    PluginSandbox,
    SandboxContext,
    validate_plugin_capabilities,
    verify_namespace_signature,
)
from .key_store import KeyStore
from .models import (
    KeyType,
    LoadedPlugin,
    LoadErrorCode,
    ManifestShape,
    PluginError,
    PluginErrorCode,
    PluginLoadOptions,
    PluginLoadResult,
    PluginManifest,
    PluginState,
    SignatureVerificationResult,
)
from .signature import SignatureVerifier, manifest_to_wire

logger = logging.getLogger("constitution.plugins.manager")

_TRANSITIONS = {
    PluginState.LOADING: {PluginState.ACTIVE, PluginState.FAILED},
    PluginState.ACTIVE: {PluginState.SUSPENDED, PluginState.FAILED},
    PluginState.SUSPENDED: {PluginState.ACTIVE, PluginState.FAILED},
    PluginState.FAILED: set(),
    PluginState.UNLOADED: set(),
}

_CAPABILITY_FLAGS = {
    "canModifyCommunicationStyle": "can_modify_communication_style",
    "canOverrideHonestyTier": "can_override_honesty_tier",
    "canInjectKnowledge": "can_inject_knowledge",
    "canAdjustProactivity": "can_adjust_proactivity",
    "pkvReadAccess": "pkv_read_access",
    "canAddTools": "can_add_tools",
    "networkDomains": "network_domains",
    "fileSystemPaths": "file_system_paths",
}


@dataclass(frozen=True)
class PluginManagerConfig:
    require_signatures: bool = True
    trusted_key_types: Tuple[KeyType, ...] = (KeyType.ROOT, KeyType.PUBLISHER)
    max_plugins: int = 50
    plugin_timeout_ms: int = 30_000

    @classmethod
    def from_settings(cls, settings: ConstitutionSettings) -> "PluginManagerConfig":
        trusted = tuple(KeyType(t) for t in settings.trusted_key_types if t in KeyType.__members__)
        return cls(
            require_signatures=settings.require_plugin_signatures,
            trusted_key_types=trusted,
            max_plugins=settings.max_plugins,
            plugin_timeout_ms=settings.plugin_timeout_ms,
        )


@dataclass(frozen=True)
class PluginEvent:
    type: str  # load | unload | suspend | resume | error
    plugin_id: str
    timestamp: datetime = field(default_factory=utc_now)
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PluginStats:
    total: int = 0
    by_state: Dict[PluginState, int] = field(default_factory=lambda: {s: 0 for s in PluginState})
    by_author: Dict[str, int] = field(default_factory=dict)


PluginEventListener = Callable[[PluginEvent], None]
ManifestInput = Union[PluginManifest, Mapping[str, Any]]


class PluginManager:
    def __init__(
        self,
        key_store: KeyStore,
        *,
        config: Optional[PluginManagerConfig] = None,
        verifier: Optional[SignatureVerifier] = None,
        audit: Optional[AuditLog] = None,
    ) -> None:
        self.config = config or PluginManagerConfig()
        self.key_store = key_store
        self.verifier = verifier or SignatureVerifier(key_store)
        self.audit = audit if audit is not None else AuditLog()
        self._lock = threading.RLock()
        self._plugins: Dict[str, LoadedPlugin] = {}
        self._listeners: List[PluginEventListener] = []

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def load_plugin(
        self, manifest: ManifestInput, options: Optional[PluginLoadOptions] = None
    ) -> PluginLoadResult:
        options = options or PluginLoadOptions()
        wire = manifest_to_wire(manifest)
        plugin_id = str(wire.get("id", ""))

        with self._lock:
            if plugin_id and plugin_id in self._plugins:
                return _load_failure(f"Plugin {plugin_id} is already loaded", LoadErrorCode.LOAD_ERROR)
            if len(self._plugins) >= self.config.max_plugins:
                return _load_failure(
                    f"Maximum plugin count ({self.config.max_plugins}) reached", LoadErrorCode.LOAD_ERROR
                )

            try:
                ManifestShape.model_validate(wire)
            except ValidationError as exc:
                return _load_failure(
                    f"Invalid manifest structure: {exc.error_count()} error(s)",
                    LoadErrorCode.MANIFEST_INVALID,
                )

            verification = SignatureVerificationResult(valid=False, error="Verification skipped")
            check_signature = self.config.require_signatures and not options.skip_signature_verification
            if check_signature:
                if not self.verifier.has_signature(wire):
                    return _load_failure("Plugin is not signed", LoadErrorCode.UNSIGNED)
                verification = self.verifier.verify(wire)
                if not verification.valid:
                    logger.warning("plugin %s rejected: %s", plugin_id, verification.error)
                    return _load_failure(
                        verification.error or "Signature verification failed",
                        LoadErrorCode.INVALID_SIGNATURE,
                    )
                signing_key = verification.signing_key
                if (
                    not options.allow_untrusted
                    and signing_key is not None
                    and signing_key.type not in self.config.trusted_key_types
                ):
                    return _load_failure(
                        f"Key type {signing_key.type.value} is not trusted", LoadErrorCode.KEY_NOT_TRUSTED
                    )

            if not validate_plugin_capabilities(wire.get("capabilities")):
                logger.critical("plugin %s declared invalid capabilities", plugin_id)
                return _load_failure(
                    "Plugin capabilities are invalid or exceed allowed bounds",
                    LoadErrorCode.MANIFEST_INVALID,
                )
            if _capabilities_owner(wire["capabilities"]) != plugin_id:
                logger.warning("plugin %s declared capabilities for another plugin", plugin_id)
                return _load_failure(
                    "Capabilities pluginId does not match manifest id", LoadErrorCode.MANIFEST_INVALID
                )

            try:
                typed = manifest if isinstance(manifest, PluginManifest) else PluginManifest.model_validate(wire)
            except ValidationError as exc:
                return _load_failure(
                    f"Invalid manifest: {exc.error_count()} error(s)", LoadErrorCode.MANIFEST_INVALID
                )

            plugin = LoadedPlugin(
                manifest=typed,
                state=PluginState.LOADING,
                signature_verification=verification,
                wire=wire,
            )
            self._plugins[plugin_id] = plugin
            self._transition(plugin, PluginState.ACTIVE)

        logger.info("loaded plugin %s@%s", plugin_id, typed.version)
        self._emit("load", plugin_id, {"version": typed.version})
        return PluginLoadResult(success=True, plugin=plugin)

    def verify_plugin(self, manifest: ManifestInput) -> SignatureVerificationResult:
        return self.verifier.verify(manifest_to_wire(manifest))

    def can_load_plugin(self, manifest: ManifestInput) -> Tuple[bool, Optional[str]]:
        """Dry run of the load checks that do not change state."""
        wire = manifest_to_wire(manifest)
        plugin_id = wire.get("id")
        with self._lock:
            if plugin_id in self._plugins:
                return False, "Plugin already loaded"
            if len(self._plugins) >= self.config.max_plugins:
                return False, "Maximum plugin count reached"
        if self.config.require_signatures:
            result = self.verifier.verify(wire)
            if not result.valid:
                return False, result.error
        if not validate_plugin_capabilities(wire.get("capabilities")):
            return False, "Plugin capabilities are invalid"
        if _capabilities_owner(wire["capabilities"]) != plugin_id:
            return False, "Capabilities pluginId does not match manifest id"
        return True, None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _transition(self, plugin: LoadedPlugin, target: PluginState) -> bool:
        if target not in _TRANSITIONS[plugin.state]:
            return False
        logger.debug("plugin %s: %s -> %s", plugin.plugin_id, plugin.state.value, target.value)
        plugin.state = target
        return True

    def unload_plugin(self, plugin_id: str) -> bool:
        with self._lock:
            plugin = self._plugins.pop(plugin_id, None)
            if plugin is None:
                return False
            plugin.state = PluginState.UNLOADED
        logger.info("unloaded plugin %s", plugin_id)
        self._emit("unload", plugin_id)
        return True

    def unload_all_plugins(self) -> int:
        with self._lock:
            ids = list(self._plugins)
        return sum(1 for plugin_id in ids if self.unload_plugin(plugin_id))

    def suspend_plugin(self, plugin_id: str) -> bool:
        return self._move(plugin_id, PluginState.SUSPENDED, "suspend")

    def resume_plugin(self, plugin_id: str) -> bool:
        with self._lock:
            plugin = self._plugins.get(plugin_id)
            if plugin is None or plugin.state is not PluginState.SUSPENDED:
                return False
        return self._move(plugin_id, PluginState.ACTIVE, "resume")

    def mark_plugin_failed(self, plugin_id: str, error: str) -> bool:
        with self._lock:
            plugin = self._plugins.get(plugin_id)
            if plugin is None or not self._transition(plugin, PluginState.FAILED):
                return False
            plugin.error = error
        logger.error("plugin %s failed: %s", plugin_id, error)
        self._emit("error", plugin_id, {"error": error})
        return True

    def _move(self, plugin_id: str, target: PluginState, event: str) -> bool:
        with self._lock:
            plugin = self._plugins.get(plugin_id)
            if plugin is None or not self._transition(plugin, target):
                return False
        self._emit(event, plugin_id)
        return True

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_plugin(self, plugin_id: str) -> Optional[LoadedPlugin]:
        with self._lock:
            return self._plugins.get(plugin_id)

    def get_loaded_plugins(self) -> List[LoadedPlugin]:
        with self._lock:
            return list(self._plugins.values())

    def get_plugins_by_state(self, state: PluginState) -> List[LoadedPlugin]:
        with self._lock:
            return [p for p in self._plugins.values() if p.state is state]

    def is_plugin_loaded(self, plugin_id: str) -> bool:
        with self._lock:
            return plugin_id in self._plugins

    def get_plugin_count(self) -> int:
        with self._lock:
            return len(self._plugins)

    def get_plugin_stats(self) -> PluginStats:
        stats = PluginStats()
        with self._lock:
            plugins = list(self._plugins.values())
        stats.total = len(plugins)
        for plugin in plugins:
            stats.by_state[plugin.state] += 1
        stats.by_author = dict(Counter(p.manifest.author for p in plugins))
        return stats

    def find_plugins_with_capability(self, capability: str) -> List[LoadedPlugin]:
        """Plugins whose declared capability (camelCase or snake_case name) is truthy."""
        attr = _CAPABILITY_FLAGS.get(capability, capability)
        with self._lock:
            plugins = list(self._plugins.values())
        return [p for p in plugins if getattr(p.manifest.capabilities, attr, None)]

    # ------------------------------------------------------------------
    # Sandboxes
    # ------------------------------------------------------------------

    def create_sandbox(self, plugin_id: str, context: SandboxContext, **kwargs: Any) -> PluginSandbox:
        with self._lock:
            plugin = self._plugins.get(plugin_id)
            if plugin is None:
                raise PluginError(f"Plugin {plugin_id} is not loaded", PluginErrorCode.PLUGIN_NOT_FOUND, plugin_id)
            if plugin.state is not PluginState.ACTIVE:
                raise PluginError(
                    f"Plugin {plugin_id} is {plugin.state.value}, not ACTIVE",
                    PluginErrorCode.CAPABILITY_DENIED,
                    plugin_id,
                )
            capabilities = plugin.manifest.capabilities
            wire = plugin.wire

        def is_available() -> bool:
            current = self.get_plugin(plugin_id)
            return current is plugin and current.state is PluginState.ACTIVE

        def namespace_verifier(pid: str, signature: str) -> bool:
            # Re-check the manifest so a key revoked after load is honoured.
            if pid != plugin_id:
                return False
            if not self.config.require_signatures or not self.verifier.has_signature(wire):
                return verify_namespace_signature(pid, signature)
            return self.verifier.verify(wire).valid

        def on_runtime_error(exc: BaseException) -> None:
            self.mark_plugin_failed(plugin_id, type(exc).__name__)

        kwargs.setdefault(
            "limits",
            ContainerLimits(
                network_domains=tuple(capabilities.network_domains),
                file_system_paths=tuple(capabilities.file_system_paths),
                timeout_ms=self.config.plugin_timeout_ms,
            ),
        )
        kwargs.setdefault("namespace_verifier", namespace_verifier)
        return PluginSandbox(
            capabilities,
            context,
            self.audit,
            is_available=is_available,
            on_runtime_error=on_runtime_error,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def on_plugin_event(self, callback: PluginEventListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)

        return unsubscribe

    def _emit(self, event_type: str, plugin_id: str, details: Optional[Dict[str, Any]] = None) -> None:
        with self._lock:
            listeners = list(self._listeners)
        event = PluginEvent(type=event_type, plugin_id=plugin_id, details=details or {})
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("plugin event listener failed")


def _load_failure(error: str, code: LoadErrorCode) -> PluginLoadResult:
    return PluginLoadResult(success=False, error=error, error_code=code)


def _capabilities_owner(capabilities: Any) -> Optional[str]:
    if isinstance(capabilities, Mapping):
        return capabilities.get("pluginId", capabilities.get("plugin_id"))
    return getattr(capabilities, "plugin_id", None)
