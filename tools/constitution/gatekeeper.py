"""
Gatekeeper: pre-execution validation of every inbound request.

validate_intent() runs four phases in order and stops at the first that
rejects:

    1. immutable clause checks (cross-user data, identity hiding, lie requests)
    2. plugin capability heuristics (only with an active plugin)
    3. prompt injection scoring (multi-turn when earlier turns are supplied)
    4. cross-tool chaining (only when earlier tool calls are supplied)

A request that passes all four is returned with a sanitized copy of its text.
"""
from __future__ import annotations

import logging
import re
from typing import List, Optional

from .audit import AuditLog, create_violation_entry
from .clauses import (
    BASELINE_HONESTY,
    IDENTITY_TRANSPARENCY,
    IMMUTABLE_CONSTITUTION,
    USER_DATA_SOVEREIGNTY,
    ConstitutionalClause,
)
from .config import ConstitutionSettings
from .contracts import PromptInjectionDetector, ToolChainingDetector
from .detection.chaining import ChainingDetector
from .detection.injection import InjectionDetector
from .detection.patterns import DEFAULT_PATTERN_LIBRARY, PatternLibrary
from .models import (
    EnforcementMechanism,
    GatekeeperResult,
    RequestContext,
    RiskLevel,
    ViolationLogEntry,
    ViolationSource,
    ViolationType,
)
from .plugins.models import PluginCapabilities
from .sandbox import domain_allowed, requested_host

logger = logging.getLogger("constitution.gatekeeper")

CHAINING_CONFIDENCE = 0.7

_I = re.IGNORECASE

CROSS_USER_PATTERNS = (
    re.compile(r"\bother\s+users?'?\s+(data|messages?|info)", _I),
    re.compile(r"\baccess\s+(another|other)\s+user", _I),
    re.compile(r"\bshow\s+(me\s+)?all\s+users", _I),
    re.compile(r"\bdump\s+(the\s+)?(database|db|memory)", _I),
)
# The referenced id is compared against the caller's own id after matching.
USER_ID_REFERENCE = re.compile(r"\buser\s*(?:id|_id)\s*[:=]\s*['\"]?([\w@-]+(?:\.[\w@-]+)*)", _I)

IDENTITY_HIDING_PATTERNS = (
    re.compile(r"\bdon'?t\s+(say|mention|reveal)\s+(you\s+are|that\s+you'?re)\s+(an?\s+)?ai", _I),
    re.compile(r"\bpretend\s+to\s+be\s+(a\s+)?(human|person|real\s+person)", _I),
    re.compile(r"\bnever\s+admit\s+(you'?re|being)\s+(an?\s+)?ai", _I),
    re.compile(r"\byou\s+are\s+(chatgpt|gpt-4|gemini|bard|copilot)", _I),
)

DISHONESTY_REQUEST_PATTERNS = (
    re.compile(r"\blie\s+to\s+(the\s+)?user", _I),
    re.compile(r"\bdeceive\s+(the\s+)?user", _I),
    re.compile(r"\bmake\s+up\s+(false|fake)\s+(info|information|data)", _I),
    re.compile(r"\bpretend\s+(this|that)\s+is\s+(true|real)", _I),
    re.compile(r"\bdon'?t\s+tell\s+(them|the\s+user)\s+(the\s+)?truth", _I),
)

PKV_WRITE_REQUEST_PATTERNS = (
    re.compile(r"\bwrite\s+to\s+(my\s+)?pkv", _I),
    re.compile(r"\bmodify\s+(my\s+)?memory", _I),
)
NETWORK_REQUEST_PATTERNS = (
    re.compile(r"\bfetch\s+from\s+(\S+)", _I),
    re.compile(r"\bcall\s+(\S+)\s+api", _I),
)

OBVIOUS_VIOLATIONS = (
    re.compile(r"\bdump\s+(the\s+)?database", _I),
    re.compile(r"\bshow\s+(me\s+)?all\s+users", _I),
    re.compile(r"\bjailbreak", _I),
    re.compile(r"\bDAN\s+mode", _I),
)

_CHATML_TOKENS = re.compile(r"<\|(?:im_start|im_end|system|user|assistant)\|>")
_ESCAPED_TAGS = (
    (re.compile(r"<system>", _I), "&lt;system&gt;"),
    (re.compile(r"</system>", _I), "&lt;/system&gt;"),
    (re.compile(r"<instruction>", _I), "&lt;instruction&gt;"),
    (re.compile(r"<prompt>", _I), "&lt;prompt&gt;"),
)
_WHITESPACE = re.compile(r"\s+")


def sanitize_input(text: str) -> str:
    """Strip ChatML delimiters, escape prompt-structure tags, collapse whitespace."""
    sanitized = _CHATML_TOKENS.sub("", text)
    for pattern, replacement in _ESCAPED_TAGS:
        sanitized = pattern.sub(replacement, sanitized)
    return _WHITESPACE.sub(" ", sanitized).strip()


class Gatekeeper:
    def __init__(
        self,
        audit: AuditLog,
        *,
        injection_detector: Optional[PromptInjectionDetector] = None,
        chaining_detector: Optional[ToolChainingDetector] = None,
        settings: Optional[ConstitutionSettings] = None,
        library: PatternLibrary = DEFAULT_PATTERN_LIBRARY,
    ) -> None:
        self.settings = settings or ConstitutionSettings()
        self.audit = audit
        self.library = library
        self.injection_detector = injection_detector or InjectionDetector(
            library, self.settings.injection_threshold
        )
        self.chaining_detector = chaining_detector or ChainingDetector()

    # ------------------------------------------------------------------
    # Phase 1: immutable clauses
    # ------------------------------------------------------------------

    def _check_clause(
        self, text: str, context: RequestContext, clause: ConstitutionalClause
    ) -> Optional[ViolationLogEntry]:
        if clause is USER_DATA_SOVEREIGNTY:
            if any(p.search(text) for p in CROSS_USER_PATTERNS) or self._references_other_user(
                text, context.user_id
            ):
                return self._entry(ViolationType.DATA_ACCESS_ATTEMPT, text, context, clause=clause)
        elif clause is IDENTITY_TRANSPARENCY:
            if any(p.search(text) for p in IDENTITY_HIDING_PATTERNS):
                return self._entry(ViolationType.IDENTITY_MASKING_ATTEMPT, text, context, clause=clause)
        elif clause is BASELINE_HONESTY:
            if any(p.search(text) for p in DISHONESTY_REQUEST_PATTERNS):
                return self._entry(ViolationType.HONESTY_BYPASS_ATTEMPT, text, context, clause=clause)
        return None

    @staticmethod
    def _references_other_user(text: str, user_id: str) -> bool:
        return any(m.group(1) != user_id for m in USER_ID_REFERENCE.finditer(text))

    # ------------------------------------------------------------------
    # Phase 2: plugin capability heuristics
    # ------------------------------------------------------------------

    def _check_plugin(
        self, text: str, context: RequestContext, plugin: PluginCapabilities
    ) -> Optional[ViolationLogEntry]:
        if any(p.search(text) for p in PKV_WRITE_REQUEST_PATTERNS):
            return self._entry(
                ViolationType.CAPABILITY_EXCEEDED,
                text,
                context,
                clause=USER_DATA_SOVEREIGNTY,
                source_id=plugin.plugin_id,
            )

        if plugin.network_domains:
            for pattern in NETWORK_REQUEST_PATTERNS:
                match = pattern.search(text)
                if match and not domain_allowed(requested_host(match.group(1)), plugin.network_domains):
                    return self._entry(
                        ViolationType.CAPABILITY_EXCEEDED,
                        text,
                        context,
                        clause=USER_DATA_SOVEREIGNTY,
                        source_id=plugin.plugin_id,
                        method=EnforcementMechanism.SANDBOX_BOUNDARY,
                    )
        return None

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def validate_intent(
        self,
        text: str,
        context: RequestContext,
        plugin: Optional[PluginCapabilities] = None,
    ) -> GatekeeperResult:
        text = text or ""
        clauses_checked: List[str] = []

        for clause in IMMUTABLE_CONSTITUTION:
            clauses_checked.append(clause.id)
            violation = self._check_clause(text, context, clause)
            if violation is not None and clause.immutable:
                return self._reject(violation, clauses_checked, 1.0)

        if plugin is not None:
            violation = self._check_plugin(text, context, plugin)
            if violation is not None:
                return self._reject(violation, clauses_checked, 1.0)

        if context.previous_inputs:
            injection = self.injection_detector.analyze_multi_turn(text, context.previous_inputs)
        else:
            injection = self.injection_detector.detect(text)
        if injection.is_injection:
            violation = self._entry(ViolationType.PROMPT_INJECTION, text, context)
            return self._reject(violation, clauses_checked, injection.score)

        if context.previous_tool_calls:
            chaining = self.chaining_detector.check(
                text, context.previous_tool_calls, context.proposed_tool_id
            )
            if chaining.is_suspicious:
                violation = self._entry(
                    ViolationType.CROSS_TOOL_CHAINING,
                    text,
                    context,
                    method=EnforcementMechanism.CROSS_TOOL_CONSTRAINT,
                )
                if chaining.requires_approval:
                    return self._reject(violation, clauses_checked, CHAINING_CONFIDENCE)
                if chaining.risk_level is RiskLevel.LOW:
                    # Recorded for review; the request still proceeds.
                    self.audit.log_violation(violation)

        return GatekeeperResult(
            allowed=True,
            clauses_checked=clauses_checked,
            violations=[],
            sanitized_input=sanitize_input(text),
            confidence_score=1.0,
        )

    def quick_screen_input(self, text: str) -> bool:
        """Cheap pre-filter. False means reject without further analysis."""
        text = text or ""
        if self.library.contains_high_severity(text):
            return False
        return not any(p.search(text) for p in OBVIOUS_VIOLATIONS)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _entry(
        self,
        violation_type: ViolationType,
        text: str,
        context: RequestContext,
        *,
        clause: Optional[ConstitutionalClause] = None,
        source_id: Optional[str] = None,
        method: EnforcementMechanism = EnforcementMechanism.INTENT_FILTER,
    ) -> ViolationLogEntry:
        return create_violation_entry(
            violation_type,
            ViolationSource.USER_INPUT,
            method,
            source_id=source_id,
            input_snippet=text,
            request_id=context.request_id,
            user_id=context.user_id,
            clause_violated=clause.id if clause is not None else None,
        )

    def _reject(
        self, violation: ViolationLogEntry, clauses_checked: List[str], confidence: float
    ) -> GatekeeperResult:
        self.audit.log_violation(violation)
        logger.debug(
            "request %s rejected (%s, confidence %.2f)",
            violation.request_id,
            violation.violation_type.value,
            confidence,
        )
        return GatekeeperResult(
            allowed=False,
            clauses_checked=list(clauses_checked),
            violations=[violation],
            confidence_score=confidence,
        )

