"""Cross-tool chaining detection.

Thresholds and tool lists live in ``ChainingPolicy`` so they can be tuned
without touching the detector.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import FrozenSet, List, Optional, Pattern, Sequence, Tuple

from ..models import RiskLevel, ToolCall

DEFAULT_MAX_CHAIN_DEPTH = 5

DANGEROUS_TOOL_PAIRS: Tuple[Tuple[str, str, str], ...] = (
    ("read_file", "send_email", "Data exfiltration risk"),
    ("read_file", "http_request", "Data exfiltration risk"),
    ("database_query", "http_request", "Data exfiltration risk"),
    ("database_query", "send_email", "Data exfiltration risk"),
    ("pkv_read", "http_request", "Memory data exfiltration risk"),
    ("pkv_read", "send_email", "Memory data exfiltration risk"),
    ("list_users", "send_email", "Privacy violation risk"),
    ("get_credentials", "http_request", "Credential theft risk"),
    ("execute_code", "http_request", "Remote code execution risk"),
    ("execute_code", "write_file", "Persistence installation risk"),
)

RESTRICTED_AUTO_CHAIN_TOOLS: FrozenSet[str] = frozenset({
    "delete_file",
    "delete_user",
    "modify_permissions",
    "execute_code",
    "send_payment",
    "modify_credentials",
    "pkv_write",
})

READ_TOOLS: FrozenSet[str] = frozenset({"read_file", "database_query", "pkv_read", "get_user_data"})
EXTERNAL_TOOLS: FrozenSet[str] = frozenset({"http_request", "send_email", "send_message"})


def _compile(*sources: str) -> Tuple[Pattern[str], ...]:
    return tuple(re.compile(src, re.IGNORECASE) for src in sources)


AUTOMATION_INDICATORS = _compile(
    r"\b(automatically|auto|automate)\s+(run|execute|call|invoke)",
    r"\bautomatically\b",
    r"\bwithout\s+(asking|prompting|confirmation)",
    r"\bsilently\s+(run|execute|call)",
    r"\bin\s+a\s+loop",
    r"\bfor\s+each\s+.+\s+(run|execute|call)",
    r"\bschedule\s+(to\s+)?(run|execute)",
)

SUSPICIOUS_PHRASING = _compile(
    r"\bquickly\s+(before|while)",
    r"\bdon'?t\s+(tell|mention|reveal)",
    r"\bkeep\s+(this\s+)?(secret|quiet|private)",
    r"\bjust\s+do\s+it",
    r"\btrust\s+me",
)

OUTPUT_PIPING = _compile(
    r"\buse\s+(the\s+)?output\s+(of|from)\s+\w+\s+(as|for)\s+(input|the\s+input)",
    r"\bpipe\s+(the\s+)?output\s+(to|into)",
    r"\bfeed\s+(the\s+)?(result|output)\s+(to|into)",
    r"\bchain\s+(these\s+)?tools?\s+together",
    r"\bthen\s+pass\s+(it|that|the\s+result)\s+to",
)


@dataclass(frozen=True)
class ChainingPolicy:
    max_chain_depth: int = DEFAULT_MAX_CHAIN_DEPTH
    dangerous_pairs: Tuple[Tuple[str, str, str], ...] = DANGEROUS_TOOL_PAIRS
    restricted_tools: FrozenSet[str] = RESTRICTED_AUTO_CHAIN_TOOLS
    read_tools: FrozenSet[str] = READ_TOOLS
    external_tools: FrozenSet[str] = EXTERNAL_TOOLS
    automation_indicators: Tuple[Pattern[str], ...] = AUTOMATION_INDICATORS
    suspicious_phrasing: Tuple[Pattern[str], ...] = SUSPICIOUS_PHRASING
    output_piping: Tuple[Pattern[str], ...] = OUTPUT_PIPING


@dataclass(frozen=True)
class ChainingDetectionResult:
    is_suspicious: bool = False
    risk_level: RiskLevel = RiskLevel.NONE
    pattern: Optional[str] = None
    involved_tools: List[str] = field(default_factory=list)
    requires_approval: bool = False


_CLEAN = ChainingDetectionResult()


def _tool_ids(calls: Sequence[ToolCall]) -> List[str]:
    return [call.tool_id for call in calls]


class ChainingDetector:
    def __init__(self, policy: Optional[ChainingPolicy] = None) -> None:
        self.policy = policy or ChainingPolicy()

    @staticmethod
    def _any(patterns: Sequence[Pattern[str]], text: str) -> bool:
        return any(p.search(text) for p in patterns)

    def check(
        self,
        current_input: str,
        previous_calls: Sequence[ToolCall],
        proposed_tool_id: Optional[str] = None,
    ) -> ChainingDetectionResult:
        """Run the five checks in priority order; the first hit wins."""
        policy = self.policy
        text = current_input or ""
        depth = len(previous_calls)

        if depth >= policy.max_chain_depth:
            return ChainingDetectionResult(
                is_suspicious=True,
                risk_level=RiskLevel.MEDIUM,
                pattern=f"Tool chain depth ({depth}) exceeds maximum ({policy.max_chain_depth})",
                requires_approval=True,
            )

        if (
            proposed_tool_id
            and proposed_tool_id in policy.restricted_tools
            and self._any(policy.automation_indicators, text)
        ):
            return ChainingDetectionResult(
                is_suspicious=True,
                risk_level=RiskLevel.HIGH,
                pattern=f"Automated chain detected with restricted tool: {proposed_tool_id}",
                involved_tools=[proposed_tool_id],
                requires_approval=True,
            )

        if proposed_tool_id:
            previous_ids = set(_tool_ids(previous_calls))
            for first, second, reason in policy.dangerous_pairs:
                if (proposed_tool_id == first and second in previous_ids) or (
                    proposed_tool_id == second and first in previous_ids
                ):
                    return ChainingDetectionResult(
                        is_suspicious=True,
                        risk_level=RiskLevel.MEDIUM,
                        pattern=reason,
                        involved_tools=[first, second],
                        requires_approval=True,
                    )

        if depth >= 3:
            recent = _tool_ids(previous_calls[-3:])
            if len(set(recent)) == 3 and self._any(policy.suspicious_phrasing, text):
                return ChainingDetectionResult(
                    is_suspicious=True,
                    risk_level=RiskLevel.LOW,
                    pattern="Rapid tool switching detected with suspicious phrasing",
                    involved_tools=recent,
                    requires_approval=False,
                )

        if self._any(policy.output_piping, text):
            return ChainingDetectionResult(
                is_suspicious=True,
                risk_level=RiskLevel.MEDIUM,
                pattern="Explicit output piping requested",
                requires_approval=True,
            )

        return _CLEAN

    def analyze_sequence(self, calls: Sequence[ToolCall]) -> ChainingDetectionResult:
        """Post-hoc review of a completed call sequence, for the audit trail."""
        if len(calls) < 2:
            return _CLEAN
        policy = self.policy
        ids = _tool_ids(calls)

        for current, nxt in zip(ids, ids[1:]):
            for first, second, reason in policy.dangerous_pairs:
                if (current, nxt) in ((first, second), (second, first)):
                    return ChainingDetectionResult(
                        is_suspicious=True,
                        risk_level=RiskLevel.MEDIUM,
                        pattern=f"Sequential dangerous pair: {reason}",
                        involved_tools=[first, second],
                        requires_approval=True,
                    )

        found_read = False
        for tool_id in ids:
            if tool_id in policy.read_tools:
                found_read = True
            elif found_read and tool_id in policy.external_tools:
                return ChainingDetectionResult(
                    is_suspicious=True,
                    risk_level=RiskLevel.MEDIUM,
                    pattern="Data read followed by external call",
                    involved_tools=[
                        t for t in ids if t in policy.read_tools or t in policy.external_tools
                    ],
                    requires_approval=True,
                )
        return _CLEAN


def get_chaining_approval_message(result: ChainingDetectionResult) -> str:
    """The one chaining message that is safe to show the user."""
    if not result.requires_approval:
        return ""
    if result.involved_tools:
        return (
            f"Before I proceed with using {' and '.join(result.involved_tools)}, "
            "I want to confirm this is what you want."
        )
    if result.pattern and "depth" in result.pattern:
        return (
            "We've used several tools in sequence. Before continuing, "
            "I want to confirm you'd like me to proceed."
        )
    return "Before I do that, I want to confirm you want me to proceed with this operation."


_default_detector = ChainingDetector()


def check_cross_tool_chaining(
    current_input: str,
    previous_calls: Sequence[ToolCall],
    proposed_tool_id: Optional[str] = None,
) -> ChainingDetectionResult:
    return _default_detector.check(current_input, previous_calls, proposed_tool_id)


def analyze_tool_sequence(calls: Sequence[ToolCall]) -> ChainingDetectionResult:
    return _default_detector.analyze_sequence(calls)
