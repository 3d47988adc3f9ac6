import asyncio

import pytest

from tools.constitution.models import EnforcementMechanism, ViolationSource, ViolationType
from tools.constitution.plugins.models import PluginCapabilities
from tools.constitution.sandbox import (
    GENERIC_EXECUTION_ERROR,
    PAYLOAD_TOO_LARGE_ERROR,
    TIMEOUT_ERROR,
    UNAVAILABLE_ERROR,
    ContainerLimits,
    PluginSandbox,
    SandboxContext,
    create_minimal_plugin_capabilities,
    create_sandbox,
    validate_plugin_capabilities,
    verify_namespace_signature,
)

PLUGIN_ID = "com.acme.helper"


def _caps(**overrides):
    return create_minimal_plugin_capabilities(PLUGIN_ID, **overrides)


def _sandbox(audit, caps=None, **kwargs):
    return create_sandbox(caps or _caps(), "req-1", "user-123", audit, **kwargs)


# ── Allow-set ─────────────────────────────────────────────

def test_allowed_operations_follow_capabilities(audit):
    sandbox = _sandbox(audit, _caps(
        can_modify_communication_style=True,
        pkv_read_access=True,
        can_add_tools=["search"],
        network_domains=["api.example.com"],
        file_system_paths=["/tmp/data"],
    ))
    assert sandbox.get_allowed_operations() == [
        "FILE:/tmp/data",
        "MODIFY_STYLE",
        "NETWORK:api.example.com",
        "PKV_READ",
        "TOOL:search",
    ]
    assert sandbox.get_plugin_info() == {"id": PLUGIN_ID, "version": "1.0.0"}


def test_minimal_capabilities_allow_nothing(audit):
    sandbox = _sandbox(audit)
    assert sandbox.get_allowed_operations() == []
    assert sandbox.is_operation_allowed("PKV_READ") is False


@pytest.mark.parametrize("operation,allowed", [
    ("NETWORK:example.com", True),
    ("NETWORK:v2.api.example.com", True),
    ("NETWORK:evilexample.com", False),
    ("NETWORK:example.com.evil.io", False),
    ("FILE:/tmp/data", True),
    ("FILE:/tmp/data/report.csv", True),
    ("FILE:/tmp/database", False),
    ("TOOL:search", False),
])
def test_domain_and_path_matching(audit, operation, allowed):
    sandbox = _sandbox(audit, _caps(network_domains=["example.com"], file_system_paths=["/tmp/data"]))
    assert sandbox.is_operation_allowed(operation) is allowed


@pytest.mark.parametrize("operation,allowed", [
    ("FILE:/tmp/data/../../etc/passwd", False),
    ("FILE:/tmp/data/../database/dump.sql", False),
    ("FILE:/tmp/data/./reports/../q1.csv", True),
    ("FILE:/tmp/data/report.csv\x00.txt", False),
    ("NETWORK:attacker.net/.example.com", False),
    ("NETWORK:attacker.net?.example.com", False),
    ("NETWORK:user@attacker.net", False),
    ("NETWORK:/.example.com", False),
    ("NETWORK:https://api.example.com/v1/items", True),
    ("NETWORK:api.example.com:443", True),
])
def test_containment_uses_normalised_path_and_host(audit, operation, allowed):
    sandbox = _sandbox(audit, _caps(network_domains=["example.com"], file_system_paths=["/tmp/data"]))
    assert sandbox.is_operation_allowed(operation) is allowed


def test_root_path_allows_any_absolute_path(audit):
    sandbox = _sandbox(audit, _caps(file_system_paths=["/"]))
    assert sandbox.is_operation_allowed("FILE:/var/log/app.log")
    assert sandbox.is_operation_allowed("FILE:/")
    assert not sandbox.is_operation_allowed("FILE:relative/path")


def test_wildcards(audit):
    sandbox = _sandbox(audit, _caps(network_domains=["*"], file_system_paths=["*"]))
    assert sandbox.is_operation_allowed("NETWORK:anything.io")
    assert sandbox.is_operation_allowed("FILE:/etc/hosts")


def test_pkv_write_is_never_allowed_even_with_forged_capabilities(audit, caplog):
    forged = PluginCapabilities.model_construct(
        plugin_id=PLUGIN_ID,
        version="1.0.0",
        signature=f"{PLUGIN_ID}.1700000000000.{'0' * 64}",
        pkv_read_access=True,
        pkv_write_access=True,
    )
    sandbox = PluginSandbox(forged, SandboxContext("req-1", "user-123"), audit)
    assert "PKV_WRITE" not in sandbox.get_allowed_operations()
    assert sandbox.is_operation_allowed("PKV_WRITE") is False
    assert "granting PKV write" in caplog.text
    assert validate_plugin_capabilities(forged) is False


# ── Capability validation ─────────────────────────────────

def test_pkv_write_rejected_by_model():
    with pytest.raises(ValueError):
        PluginCapabilities(plugin_id="x", version="1", signature="s", pkv_write_access=True)
    with pytest.raises(ValueError):
        PluginCapabilities.model_validate(
            {"pluginId": "x", "version": "1", "signature": "s", "pkvWriteAccess": 0}
        )


@pytest.mark.parametrize("caps,valid", [
    ({"pluginId": "x", "version": "1", "signature": "s", "pkvWriteAccess": False}, True),
    ({"pluginId": "x", "version": "1", "signature": "s", "pkvWriteAccess": True}, False),
    ({"pluginId": "x", "version": "1", "signature": "s", "pkvWriteAccess": "false"}, False),
    ({"pluginId": "x", "version": "1", "signature": "s"}, False),
    ({"pluginId": "x", "version": "1", "signature": "s", "pkvWriteAccess": False, "pkvReadAccess": "yes"}, False),
    ({"pluginId": "x", "version": "1", "signature": "s", "pkvWriteAccess": False, "rootAccess": True}, False),
    ({"pluginId": "", "version": "1", "signature": "s", "pkvWriteAccess": False}, False),
])
def test_validate_plugin_capabilities(caps, valid):
    assert validate_plugin_capabilities(caps) is valid


def test_validate_plugin_capabilities_rejects_other_types():
    assert validate_plugin_capabilities(None) is False
    assert validate_plugin_capabilities(["pkvWriteAccess", False]) is False
    assert validate_plugin_capabilities(_caps()) is True


# ── Namespace signatures ──────────────────────────────────

@pytest.mark.parametrize("signature,valid", [
    (f"{PLUGIN_ID}.1700000000000.{'ab' * 32}", True),
    ("ab" * 32, True),
    ("f" * 128, True),
    (f"com.evil.spoof.1700000000000.{'ab' * 32}", False),
    (f"{PLUGIN_ID}.notdigits.{'ab' * 32}", False),
    (f"{PLUGIN_ID}.1700000000000.{'zz' * 32}", False),
    ("f" * 129, False),
    ("short", False),
    ("", False),
])
def test_verify_namespace_signature(signature, valid):
    assert verify_namespace_signature(PLUGIN_ID, signature) is valid


# ── Execution ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_execute_allowed_operation_with_default_runner(audit):
    sandbox = _sandbox(audit, _caps(pkv_read_access=True))
    result = await sandbox.execute("PKV_READ", {"key": "notes"})
    assert result.success is True
    assert result.result == {"operation": "PKV_READ", "payload": {"key": "notes"}, "executed": True}
    assert audit.get_violation_count() == 0


@pytest.mark.asyncio
async def test_execute_with_async_runner(audit):
    async def runner(operation, payload, limits):
        await asyncio.sleep(0)
        return f"{operation}:{limits.timeout_ms}"

    sandbox = _sandbox(audit, _caps(can_inject_knowledge=True), runner=runner)
    result = await sandbox.execute("INJECT_KNOWLEDGE")
    assert result.success is True
    assert result.result == "INJECT_KNOWLEDGE:30000"


@pytest.mark.asyncio
async def test_disallowed_operation_logs_capability_violation(audit):
    sandbox = _sandbox(audit, _caps(pkv_read_access=True))
    result = await sandbox.execute("PKV_WRITE", {"note": "x"})
    assert result.success is False
    assert result.error is None
    violation = result.violation
    assert violation.violation_type is ViolationType.CAPABILITY_EXCEEDED
    assert violation.clause_violated == "USER_DATA_SOVEREIGNTY"
    assert violation.source_type is ViolationSource.PLUGIN
    assert violation.source_id == PLUGIN_ID
    assert violation.context.detection_method is EnforcementMechanism.SANDBOX_BOUNDARY
    assert violation.context.input_snippet == "Attempted operation: PKV_WRITE"
    assert violation.user_id == "user-123"
    assert audit.get_all_violations() == [violation]


@pytest.mark.asyncio
async def test_spoofed_namespace_is_blocked(audit):
    caps = _caps(pkv_read_access=True, signature=f"com.evil.other.1700000000000.{'0' * 64}")
    ran = []
    result = await _sandbox(audit, caps, runner=lambda *a: ran.append(a)).execute("PKV_READ")
    assert result.violation.violation_type is ViolationType.NAMESPACE_SPOOFING
    assert result.violation.context.detection_method is EnforcementMechanism.NAMESPACE_VERIFICATION
    assert ran == []


@pytest.mark.asyncio
async def test_raising_namespace_verifier_fails_closed(audit):
    def broken(plugin_id, signature):
        raise RuntimeError("verifier down")

    result = await _sandbox(audit, _caps(pkv_read_access=True), namespace_verifier=broken).execute("PKV_READ")
    assert result.violation.violation_type is ViolationType.NAMESPACE_SPOOFING


@pytest.mark.asyncio
async def test_timeout_returns_generic_error_without_runtime_callback(audit):
    async def slow(operation, payload, limits):
        await asyncio.sleep(5)

    failures = []
    sandbox = _sandbox(
        audit,
        _caps(pkv_read_access=True),
        runner=slow,
        limits=ContainerLimits(timeout_ms=20),
        on_runtime_error=failures.append,
    )
    result = await sandbox.execute("PKV_READ")
    assert result.success is False
    assert result.error == TIMEOUT_ERROR
    assert failures == []


@pytest.mark.asyncio
async def test_runtime_error_is_hidden_from_caller(audit, caplog):
    def crash(operation, payload, limits):
        raise RuntimeError("stack trace with secrets")

    failures = []
    sandbox = _sandbox(audit, _caps(pkv_read_access=True), runner=crash, on_runtime_error=failures.append)
    result = await sandbox.execute("PKV_READ")
    assert result.error == GENERIC_EXECUTION_ERROR
    assert "secrets" not in result.error
    assert len(failures) == 1
    assert isinstance(failures[0], RuntimeError)
    assert "RuntimeError" in caplog.text


@pytest.mark.asyncio
async def test_payload_limit(audit):
    sandbox = _sandbox(audit, _caps(pkv_read_access=True), limits=ContainerLimits(max_payload_bytes=16))
    result = await sandbox.execute("PKV_READ", "x" * 100)
    assert result.error == PAYLOAD_TOO_LARGE_ERROR
    assert (await sandbox.execute("PKV_READ", b"tiny")).success is True


@pytest.mark.asyncio
async def test_unavailable_plugin(audit):
    sandbox = _sandbox(audit, _caps(pkv_read_access=True), is_available=lambda: False)
    result = await sandbox.execute("PKV_WRITE")
    assert result.error == UNAVAILABLE_ERROR
    assert result.violation is None
    assert audit.get_violation_count() == 0
