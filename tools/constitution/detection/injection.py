"""Prompt injection detection on top of the pattern library."""
from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from typing import List, Optional, Sequence

from ..models import Confidence
from .patterns import (
    DEFAULT_PATTERN_LIBRARY,
    PatternCategory,
    PatternLibrary,
    PatternMatch,
    calculate_injection_score,
    categories_of,
)

DEFAULT_INJECTION_THRESHOLD = 0.75
HIGH_CONFIDENCE_THRESHOLD = 0.85
MEDIUM_CONFIDENCE_THRESHOLD = 0.5
MULTI_TURN_DELTA = 0.3

_CATEGORY_DESCRIPTIONS = {
    PatternCategory.ROLE_CONFUSION: "role/context manipulation",
    PatternCategory.DELIMITER_INJECTION: "delimiter escape attempt",
    PatternCategory.INSTRUCTION_OVERRIDE: "instruction override attempt",
    PatternCategory.IDENTITY_MASKING: "identity masking request",
    PatternCategory.DATA_EXFILTRATION: "data access attempt",
    PatternCategory.TOOL_CHAINING: "suspicious tool chaining",
}

_BULK_DATA_PATTERNS = (
    re.compile(r"\bdump\s+(the\s+)?(database|db|memory|pkv)", re.IGNORECASE),
    re.compile(r"\bshow\s+(me\s+)?all\s+users", re.IGNORECASE),
)


@dataclass(frozen=True)
class InjectionDetectionResult:
    score: float
    is_injection: bool
    matches: List[PatternMatch] = field(default_factory=list)
    categories: List[PatternCategory] = field(default_factory=list)
    high_severity: bool = False
    confidence: Confidence = Confidence.LOW


def _confidence_for(score: float) -> Confidence:
    if score >= HIGH_CONFIDENCE_THRESHOLD:
        return Confidence.HIGH
    if score >= MEDIUM_CONFIDENCE_THRESHOLD:
        return Confidence.MEDIUM
    return Confidence.LOW


class InjectionDetector:
    """Heuristic detector; any object with ``detect``/``analyze_multi_turn`` can replace it."""

    def __init__(
        self,
        library: PatternLibrary = DEFAULT_PATTERN_LIBRARY,
        threshold: float = DEFAULT_INJECTION_THRESHOLD,
    ) -> None:
        self.library = library
        self.threshold = threshold

    def detect(self, text: str, threshold: Optional[float] = None) -> InjectionDetectionResult:
        text = text or ""
        limit = self.threshold if threshold is None else threshold
        if self.library.contains_high_severity(text):
            return InjectionDetectionResult(
                score=1.0,
                is_injection=True,
                high_severity=True,
                confidence=Confidence.HIGH,
            )

        matches = self.library.find_matches(text)
        score = calculate_injection_score(matches)
        return InjectionDetectionResult(
            score=score,
            is_injection=score >= limit,
            matches=matches,
            categories=categories_of(matches),
            high_severity=False,
            confidence=_confidence_for(score),
        )

    def analyze_multi_turn(
        self,
        current: str,
        previous: Sequence[str],
        threshold: Optional[float] = None,
    ) -> InjectionDetectionResult:
        """Fuse earlier turns with the current one.

        The fused result only wins when it beats the standalone score by more
        than MULTI_TURN_DELTA and is itself flagged; it is then reported at
        MEDIUM confidence at most.
        """
        current_result = self.detect(current, threshold)
        if current_result.is_injection or not previous:
            return current_result

        combined = "\n".join([*previous, current])
        combined_result = self.detect(combined, threshold)
        if combined_result.score - current_result.score > MULTI_TURN_DELTA and combined_result.is_injection:
            return replace(combined_result, confidence=Confidence.MEDIUM)
        return current_result

    def contains_suspicious_patterns(self, text: str) -> bool:
        text = text or ""
        return self.library.contains_high_severity(text) or bool(self.library.find_matches(text))

    def detect_identity_masking_request(self, text: str) -> bool:
        return PatternCategory.IDENTITY_MASKING in self.detect(text, 0.5).categories

    def detect_data_exfiltration(self, text: str) -> bool:
        text = text or ""
        if any(p.search(text) for p in _BULK_DATA_PATTERNS):
            return True
        return PatternCategory.DATA_EXFILTRATION in self.detect(text, 0.3).categories


def get_detection_explanation(result: InjectionDetectionResult) -> str:
    """Operator-facing explanation. Never show this to the end user."""
    if result.high_severity:
        return "High-severity injection pattern detected (immediate rejection)"
    if not result.matches:
        return "No suspicious patterns detected"
    descriptions = ", ".join(_CATEGORY_DESCRIPTIONS[c] for c in result.categories)
    return f"Detected: {descriptions} (score: {result.score:.2f}, confidence: {result.confidence.value})"


_default_detector = InjectionDetector()


def detect_prompt_injection(text: str, threshold: float = DEFAULT_INJECTION_THRESHOLD) -> InjectionDetectionResult:
    return _default_detector.detect(text, threshold)


def analyze_multi_turn_context(
    current: str,
    previous: Sequence[str],
    threshold: float = DEFAULT_INJECTION_THRESHOLD,
) -> InjectionDetectionResult:
    return _default_detector.analyze_multi_turn(current, previous, threshold)


def contains_suspicious_patterns(text: str) -> bool:
    return _default_detector.contains_suspicious_patterns(text)


def detect_data_exfiltration(text: str) -> bool:
    return _default_detector.detect_data_exfiltration(text)


def detect_identity_masking_request(text: str) -> bool:
    return _default_detector.detect_identity_masking_request(text)
