"""
Output validator: post-execution checks on model responses.

Model output is not assumed adversarial, so the validator corrects where it
can and blocks only what cannot be corrected:

- identity masking   -> blocked (the claim itself is the violation)
- cross-user leakage -> blocked
- low honesty score  -> rewritten with hedged language and allowed

Blocked results carry a fallback message that never says which check fired.
"""
from __future__ import annotations

import logging
import re
from typing import List, Optional, Tuple

from .audit import AuditLog, create_violation_entry
from .clauses import BASELINE_HONESTY, IDENTITY_TRANSPARENCY, USER_DATA_SOVEREIGNTY
from .config import ConstitutionSettings
from .models import (
    EnforcementMechanism,
    OutputValidatorResult,
    ResponseContext,
    ViolationLogEntry,
    ViolationSource,
    ViolationType,
)
from .plugins.models import PluginCapabilities

logger = logging.getLogger("constitution.validator")

HONESTY_BASELINE = 0.75
LEAKAGE_SNIPPET = "[DATA REDACTED]"

_I = re.IGNORECASE

_HUMAN_OR_OTHER_AI_PATTERNS = (
    re.compile(r"\bi('?m|\s+am)\s+(a\s+)?(human|person|real\s+person)", _I),
    re.compile(r"\bi'?m\s+not\s+(an?\s+)?(ai|artificial|robot|bot|machine)\b", _I),
    re.compile(r"\bi\s+am\s+not\s+(an?\s+)?(ai|artificial|robot|bot|machine)\b", _I),
    re.compile(r"\bas\s+a\s+(fellow\s+)?human\b", _I),
    re.compile(r"\bi('?m|\s+am)\s+(chatgpt|gpt-4|gemini|bard|copilot|alexa|siri|claude)\b", _I),
    re.compile(r"\bthis\s+is\s+(chatgpt|gpt-4|gemini|bard|copilot)\b", _I),
)

# (pattern, penalty)
DISHONESTY_INDICATORS: Tuple[Tuple[re.Pattern, float], ...] = (
    (re.compile(r"\bthis\s+is\s+(definitely|certainly|absolutely)\s+true", _I), 0.2),
    (re.compile(r"\bi\s+(guarantee|promise)\b", _I), 0.3),
    (re.compile(r"\bthere\s+is\s+no\s+(doubt|question|uncertainty)", _I), 0.2),
    (
        re.compile(
            r"\b100%\s+(sure|certain|correct|accurate|true|right)\b"
            r"|\bi'?m\s+(completely|totally)\s+(sure|certain)\b",
            _I,
        ),
        0.15,
    ),
    (re.compile(r"\bi\s+(can|am\s+able\s+to)\s+do\s+anything", _I), 0.25),
    (re.compile(r"\bi\s+(don'?t|never)\s+make\s+mistakes", _I), 0.3),
    (re.compile(r"\bi\s+know\s+exactly\s+what\s+(will|is\s+going\s+to)\s+happen", _I), 0.25),
    (re.compile(r"\bi\s+can\s+predict\s+the\s+future", _I), 0.35),
)

# (pattern, bonus)
HONESTY_ENHANCERS: Tuple[Tuple[re.Pattern, float], ...] = (
    (re.compile(r"\bi\s+(think|believe|understand)\b", _I), 0.1),
    (re.compile(r"\b(may|might|could|possibly)\b", _I), 0.1),
    (re.compile(r"\bi'?m\s+not\s+(sure|certain)", _I), 0.15),
    (re.compile(r"\b(however|although|but)\s+i\s+should\s+note", _I), 0.1),
    (re.compile(r"\bto\s+be\s+(honest|transparent|clear)", _I), 0.1),
    (re.compile(r"\bi\s+(can'?t|cannot)\s+(guarantee|promise)", _I), 0.15),
    (re.compile(r"\bas\s+an\s+ai\b", _I), 0.2),
    (re.compile(r"\bmy\s+(knowledge|training)\s+(cutoff|limit)", _I), 0.15),
)

# Each replacement is itself unmatched by every pattern, which keeps the
# rewrite idempotent.
HONESTY_REWRITES: Tuple[Tuple[re.Pattern, str], ...] = (
    (
        re.compile(
            r"\bi\s+(guarantee|promise)\s+(that\s+)?this\s+is\s+(100%\s+)?(correct|accurate|right|true)\b",
            _I,
        ),
        "I believe this is correct, though you should verify",
    ),
    (re.compile(r"\bthere\s+is\s+no\s+(doubt|question)\b", _I), "based on my understanding,"),
    (re.compile(r"\b100%\s+(sure|certain)\b", _I), "confident"),
    (
        re.compile(r"\bi\s+(don'?t|never)\s+make\s+mistakes\b", _I),
        "I aim to be accurate, though as an AI I can make mistakes",
    ),
)

USER_ID_MENTION = re.compile(r"\buser[_\s]?id\s*[:=]\s*['\"]?([\w@-]+(?:\.[\w@-]+)*)['\"]?", _I)
_SELF_REFERENCES = frozenset({"current", "you"})
BULK_DATA_PATTERNS = (
    re.compile(r"\bhere\s+are\s+(all\s+)?(the\s+)?users\b", _I),
    re.compile(r"\blist\s+of\s+(all\s+)?users\b", _I),
    re.compile(r"\buser\s+\d+:\s+.*\buser\s+\d+:\s+", _I | re.DOTALL),
    re.compile(r"\[@\w+\].*\[@\w+\].*\[@\w+\]", _I | re.DOTALL),
)


class OutputValidator:
    def __init__(
        self, audit: AuditLog, *, settings: Optional[ConstitutionSettings] = None
    ) -> None:
        self.settings = settings or ConstitutionSettings()
        self.audit = audit
        name = re.escape(self.settings.assistant_name)
        self._identity_patterns = _HUMAN_OR_OTHER_AI_PATTERNS + (
            re.compile(rf"\bi'?m\s+not\s+{name}\b", _I),
            re.compile(rf"\bi\s+am\s+not\s+{name}\b", _I),
            re.compile(rf"\bthis\s+is\s+not\s+{name}\b", _I),
        )

    # ------------------------------------------------------------------
    # Individual checks
    # ------------------------------------------------------------------

    def detect_identity_masking(self, output: str) -> bool:
        return any(p.search(output or "") for p in self._identity_patterns)

    def evaluate_honesty(self, output: str, context: Optional[ResponseContext] = None) -> float:
        """Score in [0, 1]; higher is more honest."""
        output = output or ""
        score = HONESTY_BASELINE
        for pattern, penalty in DISHONESTY_INDICATORS:
            if pattern.search(output):
                score -= penalty
        for pattern, bonus in HONESTY_ENHANCERS:
            if pattern.search(output):
                score += bonus
        return round(max(0.0, min(1.0, score)), 4)

    def apply_baseline_honesty(self, output: str, context: Optional[ResponseContext] = None) -> str:
        """Hedge overconfident wording when the honesty score is below threshold."""
        output = output or ""
        if self.evaluate_honesty(output, context) >= self.settings.honesty_threshold:
            return output
        return rewrite_overconfidence(output)

    def detect_data_leakage(self, output: str, current_user_id: str) -> bool:
        output = output or ""
        for match in USER_ID_MENTION.finditer(output):
            mentioned = match.group(1)
            if mentioned != current_user_id and mentioned.lower() not in _SELF_REFERENCES:
                return True
        return any(p.search(output) for p in BULK_DATA_PATTERNS)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def validate_output(
        self,
        output: str,
        context: ResponseContext,
        plugin: Optional[PluginCapabilities] = None,
    ) -> OutputValidatorResult:
        output = output or ""
        source_id = plugin.plugin_id if plugin is not None else None

        if self.detect_identity_masking(output):
            violation = self._log(
                ViolationType.IDENTITY_MASKING_ATTEMPT, IDENTITY_TRANSPARENCY.id, output, context, source_id
            )
            return self._blocked(violation, output)

        if self.detect_data_leakage(output, context.user_id):
            violation = self._log(
                ViolationType.DATA_ACCESS_ATTEMPT, USER_DATA_SOVEREIGNTY.id, LEAKAGE_SNIPPET, context, source_id
            )
            return self._blocked(violation, output)

        violations: List[ViolationLogEntry] = []
        sanitized = output
        score = self.evaluate_honesty(output, context)
        if score < self.settings.honesty_threshold:
            violations.append(
                self._log(
                    ViolationType.HONESTY_BYPASS_ATTEMPT, BASELINE_HONESTY.id, output, context, source_id
                )
            )
            sanitized = rewrite_overconfidence(output)
            logger.info(
                "response %s rewritten for baseline honesty (score %.2f)", context.request_id, score
            )

        return OutputValidatorResult(valid=True, sanitized_output=sanitized, violations=violations)

    def quick_screen_output(self, output: str) -> bool:
        output = output or ""
        if self.detect_identity_masking(output):
            return False
        return not BULK_DATA_PATTERNS[0].search(output)

    def get_sanitized_fallback(self, output: str, violation_type: ViolationType) -> str:
        if violation_type is ViolationType.IDENTITY_MASKING_ATTEMPT:
            return (
                f"I'm {self.settings.assistant_name}, an AI assistant. "
                "I apologize for any confusion in my previous response."
            )
        if violation_type is ViolationType.DATA_ACCESS_ATTEMPT:
            return (
                "I can only access information related to your account. "
                "I can't share information about other users."
            )
        if violation_type is ViolationType.HONESTY_BYPASS_ATTEMPT:
            return rewrite_overconfidence(output or "")
        return "I apologize, but I can't provide that response. How else can I help you?"

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _log(
        self,
        violation_type: ViolationType,
        clause_id: str,
        snippet: str,
        context: ResponseContext,
        source_id: Optional[str],
    ) -> ViolationLogEntry:
        entry = create_violation_entry(
            violation_type,
            ViolationSource.MODEL_OUTPUT,
            EnforcementMechanism.OUTPUT_VALIDATION,
            source_id=source_id,
            input_snippet=snippet,
            request_id=context.request_id,
            user_id=context.user_id,
            clause_violated=clause_id,
        )
        self.audit.log_violation(entry)
        return entry

    def _blocked(self, violation: ViolationLogEntry, output: str) -> OutputValidatorResult:
        return OutputValidatorResult(
            valid=False,
            violations=[violation],
            fallback_output=self.get_sanitized_fallback(output, violation.violation_type),
        )


def rewrite_overconfidence(output: str) -> str:
    corrected = output
    for pattern, replacement in HONESTY_REWRITES:
        corrected = pattern.sub(replacement, corrected)
    return corrected
