from .chaining import (
    ChainingDetectionResult,
    ChainingDetector,
    ChainingPolicy,
    analyze_tool_sequence,
    check_cross_tool_chaining,
    get_chaining_approval_message,
)
from .injection import (
    InjectionDetectionResult,
    InjectionDetector,
    analyze_multi_turn_context,
    contains_suspicious_patterns,
    detect_data_exfiltration,
    detect_identity_masking_request,
    detect_prompt_injection,
    get_detection_explanation,
)
from .patterns import (
    DEFAULT_PATTERN_LIBRARY,
    PatternCategory,
    PatternLibrary,
    PatternMatch,
    PatternSet,
    calculate_injection_score,
    contains_high_severity_pattern,
    find_pattern_matches,
)

__all__ = [
    "ChainingDetectionResult",
    "ChainingDetector",
    "ChainingPolicy",
    "analyze_tool_sequence",
    "check_cross_tool_chaining",
    "get_chaining_approval_message",
    "InjectionDetectionResult",
    "InjectionDetector",
    "analyze_multi_turn_context",
    "contains_suspicious_patterns",
    "detect_data_exfiltration",
    "detect_identity_masking_request",
    "detect_prompt_injection",
    "get_detection_explanation",
    "DEFAULT_PATTERN_LIBRARY",
    "PatternCategory",
    "PatternLibrary",
    "PatternMatch",
    "PatternSet",
    "calculate_injection_score",
    "contains_high_severity_pattern",
    "find_pattern_matches",
]
