"""
Composition root.

ConstitutionalFramework builds every store and validator from one
ConstitutionSettings value. Nothing here is a module-level singleton: each
framework instance owns its own audit log, ruleset, key store and plugin
registry.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from .audit import AuditLog
from .clauses import decline_message_for
from .config import ConstitutionSettings
from .detection.chaining import ChainingDetector, ChainingPolicy
from .detection.injection import InjectionDetector
from .gatekeeper import Gatekeeper
from .models import (
    HonestyTier,
    RequestContext,
    ResponseAction,
    ResponseContext,
    ToolCall,
    ViolationLogEntry,
)
from .plugins.key_store import KeyStore
from .plugins.manager import PluginManager, PluginManagerConfig
from .plugins.models import PluginCapabilities, PluginState
from .plugins.signature import SignatureVerifier
from .rules import SecondaryRuleset
from .validator import OutputValidator

logger = logging.getLogger("constitution.service")


@dataclass(frozen=True)
class ViolationSummary:
    type: str
    clause_id: str
    severity: str

    @classmethod
    def of(cls, entry: ViolationLogEntry) -> "ViolationSummary":
        severity = "high" if entry.action is ResponseAction.SILENT_INTERCEPT else "medium"
        return cls(type=entry.violation_type.value, clause_id=entry.clause_violated, severity=severity)


@dataclass
class ConstitutionalCheckResult:
    allowed: bool
    reason: Optional[str] = None
    violations: List[ViolationSummary] = field(default_factory=list)
    sanitized_input: Optional[str] = None
    suggested_revision: Optional[str] = None


class ConstitutionalFramework:
    def __init__(
        self,
        settings: Optional[ConstitutionSettings] = None,
        *,
        chaining_policy: Optional[ChainingPolicy] = None,
        allow_mock_signatures: bool = False,
    ) -> None:
        self.settings = settings or ConstitutionSettings.from_env()
        self.audit = AuditLog(
            self.settings.audit_log_path, retention_days=self.settings.audit_retention_days
        )
        self.ruleset = SecondaryRuleset()
        self.key_store = KeyStore()
        self.verifier = SignatureVerifier(self.key_store, allow_mock_signatures=allow_mock_signatures)
        self.plugins = PluginManager(
            self.key_store,
            config=PluginManagerConfig.from_settings(self.settings),
            verifier=self.verifier,
            audit=self.audit,
        )
        self.gatekeeper = Gatekeeper(
            self.audit,
            injection_detector=InjectionDetector(threshold=self.settings.injection_threshold),
            chaining_detector=ChainingDetector(chaining_policy),
            settings=self.settings,
        )
        self.validator = OutputValidator(self.audit, settings=self.settings)
        self.ruleset.initialize_default_rules()

    def _active_capabilities(self, plugin_id: Optional[str]) -> Optional[PluginCapabilities]:
        if not plugin_id:
            return None
        plugin = self.plugins.get_plugin(plugin_id)
        if plugin is None or plugin.state is not PluginState.ACTIVE:
            return None
        return plugin.manifest.capabilities

    def check_input(
        self,
        text: str,
        user_id: str,
        *,
        request_id: Optional[str] = None,
        conversation_id: str = "",
        previous_inputs: Sequence[str] = (),
        previous_tool_calls: Sequence[ToolCall] = (),
        proposed_tool_id: Optional[str] = None,
        plugin_id: Optional[str] = None,
    ) -> ConstitutionalCheckResult:
        context = RequestContext(
            request_id=request_id or str(uuid.uuid4()),
            user_id=user_id,
            conversation_id=conversation_id,
            previous_inputs=list(previous_inputs),
            previous_tool_calls=list(previous_tool_calls),
            proposed_tool_id=proposed_tool_id,
        )
        result = self.gatekeeper.validate_intent(text, context, self._active_capabilities(plugin_id))
        if result.allowed:
            return ConstitutionalCheckResult(allowed=True, sanitized_input=result.sanitized_input)

        first = result.violations[0]
        logger.info(
            "input blocked request=%s type=%s confidence=%.2f",
            context.request_id,
            first.violation_type.value,
            result.confidence_score,
        )
        return ConstitutionalCheckResult(
            allowed=False,
            reason=decline_message_for(first.violation_type),
            violations=[ViolationSummary.of(v) for v in result.violations],
        )

    def check_output(
        self,
        output: str,
        user_id: str,
        *,
        original_input: str = "",
        request_id: Optional[str] = None,
        honesty_tier: HonestyTier = HonestyTier.BASE,
        plugin_id: Optional[str] = None,
    ) -> ConstitutionalCheckResult:
        context = ResponseContext(
            request_id=request_id or str(uuid.uuid4()),
            user_id=user_id,
            honesty_tier=honesty_tier,
            original_input=original_input,
        )
        result = self.validator.validate_output(output, context, self._active_capabilities(plugin_id))
        violations = [ViolationSummary.of(v) for v in result.violations]
        if not result.valid:
            return ConstitutionalCheckResult(
                allowed=False,
                reason=result.fallback_output,
                violations=violations,
            )
        revised = result.sanitized_output if result.sanitized_output != output else None
        return ConstitutionalCheckResult(allowed=True, violations=violations, suggested_revision=revised)
