"""Attack pattern sets and the scoring function built on them.

The sets are plain data. ``PatternLibrary`` bundles them with the
high-severity list so a detector can be handed a different library without
any code change.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, List, Pattern, Sequence, Tuple


class PatternCategory(str, Enum):
    ROLE_CONFUSION = "ROLE_CONFUSION"
    DELIMITER_INJECTION = "DELIMITER_INJECTION"
    INSTRUCTION_OVERRIDE = "INSTRUCTION_OVERRIDE"
    IDENTITY_MASKING = "IDENTITY_MASKING"
    DATA_EXFILTRATION = "DATA_EXFILTRATION"
    TOOL_CHAINING = "TOOL_CHAINING"


DIVERSITY_BONUS = 0.1


def _compile(*sources: str, flags: int = re.IGNORECASE) -> Tuple[Pattern[str], ...]:
    return tuple(re.compile(src, flags) for src in sources)


# ---------------------------------------------------------------------------
# Pattern sets
# ---------------------------------------------------------------------------

ROLE_CONFUSION_PATTERNS = _compile(
    # system prompt override
    r"\bignore\s+(all\s+)?(previous|prior|above)\s+(instructions?|prompts?|rules?)",
    r"\bdisregard\s+(all\s+)?(previous|prior|above)\s+(instructions?|prompts?|rules?)",
    r"\bforget\s+(all\s+)?(previous|prior|above)\s+(instructions?|prompts?|rules?)",
    # new role assignment
    r"\byou\s+are\s+(now|actually)\s+a?\s*",
    r"\bact\s+as\s+(if\s+you\s+are|though\s+you\s+are)",
    r"\bpretend\s+(to\s+be|you\s+are)",
    r"\bswitch\s+to\s+(\w+)\s+mode",
    # prompt extraction
    r"\bwhat\s+(is|are)\s+your\s+(system\s+)?prompt",
    r"\bshow\s+(me\s+)?your\s+(original\s+)?instructions",
    r"\brepeat\s+(back\s+)?your\s+(system\s+)?prompt",
    r"\bprint\s+your\s+(initial\s+)?instructions",
    # developer mode claims
    r"\bdeveloper\s+mode\s+(enabled|activated|on)",
    r"\bdebug\s+mode\s+(enabled|activated|on)",
    r"\bDAN\s+mode",
    r"\bjailbreak\s+mode",
)

DELIMITER_INJECTION_PATTERNS = _compile(
    r"```\s*(system|admin|developer|root)",
    r"\[SYSTEM\]",
    r"\[ADMIN\]",
    r"\[DEVELOPER\]",
    r"<\|im_start\|>",
    r"<\|im_end\|>",
    r"<\|system\|>",
    r"<\|user\|>",
    r"<\|assistant\|>",
    r"<system>",
    r"</system>",
    r"<instruction>",
    r"<prompt>",
    # separator overload
    r"={5,}",
    r"-{5,}",
    r"#{5,}",
)

INSTRUCTION_OVERRIDE_PATTERNS = _compile(
    r"\bnew\s+instructions?:",
    r"\bupdated?\s+instructions?:",
    r"\boverride\s+instructions?:",
    r"\bsystem\s+prompt:",
    r"\badmin\s+override",
    r"\bpriority\s+instruction",
    # roleplay exploitation
    r"\bin\s+this\s+(roleplay|scenario),?\s+you\s+(can|will|must)",
    r"\bfor\s+this\s+(exercise|game),?\s+(ignore|forget)",
    # authority claims
    r"\bi\s+am\s+(the\s+)?(developer|admin|creator|owner)",
    r"\bi\s+have\s+(admin|root|system)\s+access",
    r"\bauthorization\s+code:\s*\S+",
    r"\bpassword:\s*\S+",
)

IDENTITY_MASKING_PATTERNS = _compile(
    r"\bdon'?t\s+(say|mention|reveal)\s+(you\s+are|that\s+you'?re)\s+(an?\s+)?ai",
    r"\bhide\s+that\s+you'?re\s+(an?\s+)?ai",
    r"\bnever\s+admit\s+(you'?re|being)\s+(an?\s+)?ai",
    r"\bpretend\s+to\s+be\s+(a\s+)?(human|person|real\s+person)",
    r"\bact\s+(like|as\s+if)\s+you'?re\s+(a\s+)?(human|person)",
    r"\bspeak\s+as\s+(a\s+)?(human|person)\s+would",
    r"\byou\s+are\s+(chatgpt|gpt-4|gemini|bard|copilot|alexa|siri)",
    r"\bpretend\s+to\s+be\s+(chatgpt|gpt-4|gemini|bard|copilot)",
)

DATA_EXFILTRATION_PATTERNS = _compile(
    r"\bshow\s+(me\s+)?other\s+users?'?\s+(data|messages?|conversations?)",
    r"\baccess\s+(another|other)\s+user'?s?\s+",
    r"\bget\s+(me\s+)?user\s+id\s*[:=]?\s*\d+",
    r"\bswitch\s+to\s+user\s*[:=]?\s*\S+",
    r"\bdump\s+(the\s+)?(database|db|memory|pkv)",
    r"\bexport\s+all\s+(user\s+)?data",
    r"\blist\s+all\s+users",
    r"\bshow\s+(system|admin)\s+logs",
    r"\baccess\s+(my\s+)?pkv\s+directly",
    r"\bwrite\s+to\s+(my\s+)?pkv",
    r"\bmodify\s+(the\s+)?memory\s+vault",
)

TOOL_CHAINING_PATTERNS = _compile(
    r"\b(then|and\s+then|after\s+that)\s+(automatically|immediately)\s+(use|call|invoke|run)",
    r"\bchain\s+(together|these)\s+tools?",
    r"\buse\s+the\s+output\s+of\s+\w+\s+as\s+input\s+(to|for)\s+\w+",
    r"\buse\s+\w+\s+to\s+(bypass|circumvent|avoid)\s+",
    r"\bcombine\s+\w+\s+and\s+\w+\s+to\s+",
    r"\bif\s+\w+\s+fails?,?\s+(then\s+)?try\s+\w+",
)

# Almost always malicious; a hit skips scoring entirely.
HIGH_SEVERITY_PATTERNS = _compile(
    r"\bDAN\s+mode",
    r"\bjailbreak",
    r"<\|im_start\|>system",
    r"\bdump\s+(the\s+)?database",
    r"\bpassword:\s*\S+",
    r"\bauthorization\s+code:\s*\S+",
)


# ---------------------------------------------------------------------------
# Library
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PatternSet:
    category: PatternCategory
    weight: float
    patterns: Tuple[Pattern[str], ...]


@dataclass(frozen=True)
class PatternMatch:
    pattern: str
    category: PatternCategory
    weight: float
    matched: str


@dataclass(frozen=True)
class PatternLibrary:
    sets: Tuple[PatternSet, ...]
    high_severity: Tuple[Pattern[str], ...] = field(default=HIGH_SEVERITY_PATTERNS)

    def find_matches(self, text: str) -> List[PatternMatch]:
        """Every match across every category, one entry per matching pattern."""
        matches: List[PatternMatch] = []
        for pattern_set in self.sets:
            for pattern in pattern_set.patterns:
                hit = pattern.search(text)
                if hit:
                    matches.append(
                        PatternMatch(
                            pattern=pattern.pattern,
                            category=pattern_set.category,
                            weight=pattern_set.weight,
                            matched=hit.group(0),
                        )
                    )
        return matches

    def matches_in(self, text: str, category: PatternCategory) -> List[PatternMatch]:
        return [m for m in self.find_matches(text) if m.category is category]

    def contains_high_severity(self, text: str) -> bool:
        return any(p.search(text) for p in self.high_severity)


DEFAULT_PATTERN_LIBRARY = PatternLibrary(
    sets=(
        PatternSet(PatternCategory.ROLE_CONFUSION, 0.4, ROLE_CONFUSION_PATTERNS),
        PatternSet(PatternCategory.DELIMITER_INJECTION, 0.35, DELIMITER_INJECTION_PATTERNS),
        PatternSet(PatternCategory.INSTRUCTION_OVERRIDE, 0.45, INSTRUCTION_OVERRIDE_PATTERNS),
        PatternSet(PatternCategory.IDENTITY_MASKING, 0.3, IDENTITY_MASKING_PATTERNS),
        PatternSet(PatternCategory.DATA_EXFILTRATION, 0.5, DATA_EXFILTRATION_PATTERNS),
        PatternSet(PatternCategory.TOOL_CHAINING, 0.25, TOOL_CHAINING_PATTERNS),
    ),
)


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------

def find_pattern_matches(text: str, library: PatternLibrary = DEFAULT_PATTERN_LIBRARY) -> List[PatternMatch]:
    return library.find_matches(text or "")


def calculate_injection_score(matches: Sequence[PatternMatch]) -> float:
    """Summed weights times the category diversity multiplier, capped at 1.0."""
    if not matches:
        return 0.0
    total = sum(m.weight for m in matches)
    categories = {m.category for m in matches}
    multiplier = 1 + DIVERSITY_BONUS * (len(categories) - 1)
    return min(1.0, total * multiplier)


def contains_high_severity_pattern(text: str, library: PatternLibrary = DEFAULT_PATTERN_LIBRARY) -> bool:
    return library.contains_high_severity(text or "")


def categories_of(matches: Iterable[PatternMatch]) -> List[PatternCategory]:
    """Distinct categories in first-seen order."""
    seen: List[PatternCategory] = []
    for m in matches:
        if m.category not in seen:
            seen.append(m.category)
    return seen
