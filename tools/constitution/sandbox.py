"""
Per-plugin capability sandbox.

The allow-set is computed once from the plugin's declared capabilities.
PKV_WRITE never enters it and is_operation_allowed() refuses it before even
looking at the set, so a forged or corrupted capability object cannot grant
it either.
"""
from __future__ import annotations

import asyncio
import inspect
import json
import logging
import posixpath
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Mapping, Optional, Union
from urllib.parse import urlsplit

from pydantic import BaseModel, ValidationError

from .audit import AuditLog, create_violation_entry
from .clauses import USER_DATA_SOVEREIGNTY
from .models import EnforcementMechanism, ViolationLogEntry, ViolationSource, ViolationType
from .plugins.models import PluginCapabilities

logger = logging.getLogger("constitution.sandbox")

PKV_WRITE = "PKV_WRITE"
GENERIC_EXECUTION_ERROR = "Plugin operation failed"
TIMEOUT_ERROR = "Plugin operation timed out"
UNAVAILABLE_ERROR = "Plugin is not available"
PAYLOAD_TOO_LARGE_ERROR = "Payload exceeds sandbox limits"

_REVOKED_SIGNATURES = frozenset({"invalid", "test", "none"})


def requested_host(target: str) -> str:
    """Host part of a bare domain or URL, lower-cased. Empty when there is none."""
    target = target.strip("'\"()<>,;")
    try:
        parsed = urlsplit(target if "://" in target else f"//{target}")
        return (parsed.hostname or "").lower()
    except ValueError:
        return ""


def domain_allowed(host: str, allowed_domains: List[str]) -> bool:
    if not host:
        return False
    host = host.lower()
    for domain in allowed_domains:
        domain = domain.lower()
        if domain == "*" or host == domain or host.endswith("." + domain):
            return True
    return False


def path_allowed(path: str, allowed_paths: List[str]) -> bool:
    """Containment test on the normalised path, so ".." cannot climb out of a root."""
    if not path or "\x00" in path:
        return False
    path = posixpath.normpath(path)
    for root in allowed_paths:
        if root == "*":
            return True
        root = posixpath.normpath(root)
        if path == root or path.startswith(root.rstrip("/") + "/"):
            return True
    return False


@dataclass(frozen=True)
class ContainerLimits:
    max_memory: str = "256MB"
    max_cpu: str = "500m"
    network_domains: tuple = ()
    file_system_paths: tuple = ()
    timeout_ms: int = 30_000
    max_payload_bytes: int = 1_048_576


@dataclass(frozen=True)
class SandboxContext:
    request_id: str
    user_id: str


@dataclass
class SandboxExecutionResult:
    success: bool
    result: Any = None
    violation: Optional[ViolationLogEntry] = None
    error: Optional[str] = None


OperationRunner = Callable[[str, Any, ContainerLimits], Union[Any, Awaitable[Any]]]
NamespaceCheck = Callable[[str, str], bool]


def default_runner(operation: str, payload: Any, limits: ContainerLimits) -> Dict[str, Any]:
    """Stand-in for the plugin runtime: echoes the request."""
    return {"operation": operation, "payload": payload, "executed": True}


def verify_namespace_signature(plugin_id: str, signature: str) -> bool:
    """
    Format check of a plugin's namespace signature.

    Accepted forms:
        <plugin_id>.<unix_ms>.<64 hex>   (prefix must equal plugin_id)
        <64..128 hex>
    """
    if not signature or len(signature) < 32 or signature.lower() in _REVOKED_SIGNATURES:
        return False
    parts = signature.rsplit(".", 2)
    if len(parts) == 3:
        prefix, stamp, digest = parts
        return (
            prefix == plugin_id
            and stamp.isdigit()
            and len(digest) == 64
            and all(c in "0123456789abcdefABCDEF" for c in digest)
        )
    return 64 <= len(signature) <= 128 and all(c in "0123456789abcdefABCDEF" for c in signature)


class PluginSandbox:
    def __init__(
        self,
        capabilities: PluginCapabilities,
        context: SandboxContext,
        audit: AuditLog,
        *,
        namespace_verifier: NamespaceCheck = verify_namespace_signature,
        runner: OperationRunner = default_runner,
        limits: Optional[ContainerLimits] = None,
        is_available: Optional[Callable[[], bool]] = None,
        on_runtime_error: Optional[Callable[[BaseException], None]] = None,
    ) -> None:
        self._caps = capabilities
        self._context = context
        self._audit = audit
        self._namespace_verifier = namespace_verifier
        self._runner = runner
        self._limits = limits or ContainerLimits(
            network_domains=tuple(capabilities.network_domains),
            file_system_paths=tuple(capabilities.file_system_paths),
        )
        self._is_available = is_available
        self._on_runtime_error = on_runtime_error
        if getattr(capabilities, "pkv_write_access", False) is not False:
            logger.critical(
                "plugin %s presented capabilities granting PKV write; ignored",
                getattr(capabilities, "plugin_id", "?"),
            )
        self._allowed: FrozenSet[str] = self._compute_allowed_operations()

    def _compute_allowed_operations(self) -> FrozenSet[str]:
        caps = self._caps
        ops = set()
        if caps.can_modify_communication_style is True:
            ops.add("MODIFY_STYLE")
        if caps.can_override_honesty_tier is True:
            ops.add("OVERRIDE_HONESTY")
        if caps.can_inject_knowledge is True:
            ops.add("INJECT_KNOWLEDGE")
        if caps.can_adjust_proactivity is True:
            ops.add("ADJUST_PROACTIVITY")
        if caps.pkv_read_access is True:
            ops.add("PKV_READ")
        ops.update(f"TOOL:{tool}" for tool in caps.can_add_tools)
        ops.update(f"NETWORK:{domain}" for domain in caps.network_domains)
        ops.update(f"FILE:{path}" for path in caps.file_system_paths)
        ops.discard(PKV_WRITE)
        return frozenset(ops)

    def is_operation_allowed(self, operation: str) -> bool:
        if operation == PKV_WRITE:
            return False
        if operation.startswith("NETWORK:"):
            return domain_allowed(requested_host(operation[len("NETWORK:"):]), self._caps.network_domains)
        if operation.startswith("FILE:"):
            return path_allowed(operation[len("FILE:"):], self._caps.file_system_paths)
        return operation in self._allowed

    async def execute(self, operation: str, payload: Any = None) -> SandboxExecutionResult:
        plugin_id = self._caps.plugin_id

        if self._is_available is not None and not self._is_available():
            return SandboxExecutionResult(success=False, error=UNAVAILABLE_ERROR)

        if not self.is_operation_allowed(operation):
            violation = self._violation(
                ViolationType.CAPABILITY_EXCEEDED,
                EnforcementMechanism.SANDBOX_BOUNDARY,
                f"Attempted operation: {operation}",
            )
            return SandboxExecutionResult(success=False, violation=violation)

        if not self._namespace_ok():
            violation = self._violation(
                ViolationType.NAMESPACE_SPOOFING,
                EnforcementMechanism.NAMESPACE_VERIFICATION,
                "Signature verification failed",
            )
            return SandboxExecutionResult(success=False, violation=violation)

        if _payload_size(payload) > self._limits.max_payload_bytes:
            return SandboxExecutionResult(success=False, error=PAYLOAD_TOO_LARGE_ERROR)

        started = time.perf_counter()
        try:
            result = await asyncio.wait_for(
                self._run(operation, payload), timeout=self._limits.timeout_ms / 1000
            )
        except asyncio.TimeoutError as exc:
            self._audit.log_error(exc, plugin_id)
            return SandboxExecutionResult(success=False, error=TIMEOUT_ERROR)
        except Exception as exc:
            self._audit.log_error(exc, plugin_id)
            if self._on_runtime_error is not None:
                self._on_runtime_error(exc)
            return SandboxExecutionResult(success=False, error=GENERIC_EXECUTION_ERROR)

        logger.debug(
            "plugin %s executed %s in %.1f ms",
            plugin_id,
            operation,
            (time.perf_counter() - started) * 1000,
        )
        return SandboxExecutionResult(success=True, result=result)

    async def _run(self, operation: str, payload: Any) -> Any:
        if inspect.iscoroutinefunction(self._runner):
            return await self._runner(operation, payload, self._limits)
        result = await asyncio.to_thread(self._runner, operation, payload, self._limits)
        if inspect.isawaitable(result):
            return await result
        return result

    def _namespace_ok(self) -> bool:
        try:
            return bool(self._namespace_verifier(self._caps.plugin_id, self._caps.signature))
        except Exception as exc:
            self._audit.log_error(exc, self._caps.plugin_id)
            return False

    def _violation(
        self, violation_type: ViolationType, method: EnforcementMechanism, snippet: str
    ) -> ViolationLogEntry:
        entry = create_violation_entry(
            violation_type,
            ViolationSource.PLUGIN,
            method,
            source_id=self._caps.plugin_id,
            input_snippet=snippet,
            request_id=self._context.request_id,
            user_id=self._context.user_id,
            clause_violated=USER_DATA_SOVEREIGNTY.id,
        )
        self._audit.log_violation(entry)
        return entry

    def get_allowed_operations(self) -> List[str]:
        return sorted(self._allowed)

    def get_plugin_info(self) -> Dict[str, str]:
        return {"id": self._caps.plugin_id, "version": self._caps.version}


def _payload_size(payload: Any) -> int:
    if payload is None:
        return 0
    if isinstance(payload, (bytes, bytearray)):
        return len(payload)
    try:
        return len(json.dumps(payload, default=str).encode("utf-8"))
    except (TypeError, ValueError):
        return len(repr(payload).encode("utf-8"))


# ---------------------------------------------------------------------------
# Capability helpers
# ---------------------------------------------------------------------------

def create_sandbox(
    capabilities: PluginCapabilities, request_id: str, user_id: str, audit: AuditLog, **kwargs: Any
) -> PluginSandbox:
    return PluginSandbox(capabilities, SandboxContext(request_id, user_id), audit, **kwargs)


def create_minimal_plugin_capabilities(plugin_id: str, **overrides: Any) -> PluginCapabilities:
    """Least-privilege capabilities with a well-formed namespace signature."""
    fields: Dict[str, Any] = {
        "plugin_id": plugin_id,
        "version": "1.0.0",
        "signature": f"{plugin_id}.{int(time.time() * 1000)}.{'0' * 64}",
    }
    fields.update(overrides)
    return PluginCapabilities.model_validate(fields)


def validate_plugin_capabilities(obj: Any) -> bool:
    """Strict check for a capability object or its wire mapping.

    pkvWriteAccess must be literally False; this is re-checked here even for
    already-built models since those can be produced with model_construct.
    """
    if isinstance(obj, BaseModel):
        if getattr(obj, "pkv_write_access", None) is not False:
            return False
        data = obj.model_dump(by_alias=True)
    elif isinstance(obj, Mapping):
        if obj.get("pkvWriteAccess", obj.get("pkv_write_access")) is not False:
            return False
        data = dict(obj)
    else:
        return False
    try:
        PluginCapabilities.model_validate(data)
    except ValidationError:
        return False
    return True
