"""
The immutable constitution.

Exactly three clauses exist. They are built once, at import time, and the
clause type refuses construction from anywhere else: ``__init__`` demands a
module-private seal, instances are frozen, and the collection is a tuple
exposed through a read-only mapping.
"""
from __future__ import annotations

from dataclasses import InitVar, dataclass
from types import MappingProxyType
from typing import Mapping, Optional, Tuple

from .models import EnforcementMechanism, LogLevel, ResponseAction, ViolationType

_SEAL = object()


@dataclass(frozen=True)
class ViolationResponse:
    action: ResponseAction
    log_level: LogLevel
    disclose_reason: bool = False
    user_message: Optional[str] = None


@dataclass(frozen=True)
class ConstitutionalClause:
    seal: InitVar[object]
    id: str
    name: str
    description: str
    immutable: bool
    enforcement: Tuple[EnforcementMechanism, ...]
    violation_response: ViolationResponse

    def __post_init__(self, seal: object) -> None:
        if seal is not _SEAL:
            raise TypeError("ConstitutionalClause instances cannot be created at runtime")


USER_DATA_SOVEREIGNTY = ConstitutionalClause(
    _SEAL,
    id="USER_DATA_SOVEREIGNTY",
    name="User Data Sovereignty",
    description=(
        "A user's data belongs to that user alone. No request, plugin or model "
        "output may read, reveal or modify another user's data, and nothing may "
        "write to a user's personal knowledge vault on their behalf."
    ),
    immutable=True,
    enforcement=(
        EnforcementMechanism.INTENT_FILTER,
        EnforcementMechanism.SANDBOX_BOUNDARY,
        EnforcementMechanism.OUTPUT_VALIDATION,
        EnforcementMechanism.NAMESPACE_VERIFICATION,
    ),
    violation_response=ViolationResponse(
        action=ResponseAction.SILENT_INTERCEPT,
        log_level=LogLevel.CRITICAL,
        disclose_reason=False,
    ),
)

IDENTITY_TRANSPARENCY = ConstitutionalClause(
    _SEAL,
    id="IDENTITY_TRANSPARENCY",
    name="Identity Transparency",
    description=(
        "The assistant never claims to be human, never claims to be a different "
        "AI system and never denies being itself."
    ),
    immutable=True,
    enforcement=(
        EnforcementMechanism.INTENT_FILTER,
        EnforcementMechanism.OUTPUT_VALIDATION,
    ),
    violation_response=ViolationResponse(
        action=ResponseAction.GRACEFUL_DECLINE,
        log_level=LogLevel.WARN,
        disclose_reason=False,
        user_message="I should be upfront with you: I'm an AI assistant, and I can't pretend otherwise.",
    ),
)

BASELINE_HONESTY = ConstitutionalClause(
    _SEAL,
    id="BASELINE_HONESTY",
    name="Baseline Honesty",
    description=(
        "The assistant does not knowingly state falsehoods, does not fabricate "
        "information and does not overstate its certainty. Plugins may raise the "
        "honesty tier but never lower it below this baseline."
    ),
    immutable=True,
    enforcement=(
        EnforcementMechanism.INTENT_FILTER,
        EnforcementMechanism.OUTPUT_VALIDATION,
        EnforcementMechanism.CROSS_TOOL_CONSTRAINT,
    ),
    violation_response=ViolationResponse(
        action=ResponseAction.ABSTAIN,
        log_level=LogLevel.WARN,
        disclose_reason=False,
    ),
)

IMMUTABLE_CONSTITUTION: Tuple[ConstitutionalClause, ...] = (
    USER_DATA_SOVEREIGNTY,
    IDENTITY_TRANSPARENCY,
    BASELINE_HONESTY,
)

CLAUSE_MAP: Mapping[str, ConstitutionalClause] = MappingProxyType(
    {clause.id: clause for clause in IMMUTABLE_CONSTITUTION}
)

# Clause each violation type is charged against when the detector does not name one.
_CLAUSE_FOR_VIOLATION: Mapping[ViolationType, str] = MappingProxyType({
    ViolationType.DATA_ACCESS_ATTEMPT: USER_DATA_SOVEREIGNTY.id,
    ViolationType.IDENTITY_MASKING_ATTEMPT: IDENTITY_TRANSPARENCY.id,
    ViolationType.HONESTY_BYPASS_ATTEMPT: BASELINE_HONESTY.id,
    ViolationType.CAPABILITY_EXCEEDED: USER_DATA_SOVEREIGNTY.id,
    ViolationType.NAMESPACE_SPOOFING: USER_DATA_SOVEREIGNTY.id,
    ViolationType.PROMPT_INJECTION: USER_DATA_SOVEREIGNTY.id,
    ViolationType.CROSS_TOOL_CHAINING: USER_DATA_SOVEREIGNTY.id,
})

# User-facing messages. None of them mention which check fired.
GRACEFUL_DECLINES: Mapping[str, str] = MappingProxyType({
    "DATA_SOVEREIGNTY": "I need to keep that information private.",
    "IDENTITY_MASKING": "I should be upfront with you about something.",
    "CAPABILITY_EXCEEDED": "I can't do that with this particular setup.",
    "AMBIGUOUS_REQUEST": "I want to make sure I understand what you're asking.",
    "CROSS_TOOL_CHAINING": "Before I do that, I want to confirm you want me to proceed.",
})

_DECLINE_FOR_VIOLATION: Mapping[ViolationType, str] = MappingProxyType({
    ViolationType.DATA_ACCESS_ATTEMPT: "DATA_SOVEREIGNTY",
    ViolationType.IDENTITY_MASKING_ATTEMPT: "IDENTITY_MASKING",
    ViolationType.HONESTY_BYPASS_ATTEMPT: "AMBIGUOUS_REQUEST",
    ViolationType.CAPABILITY_EXCEEDED: "CAPABILITY_EXCEEDED",
    ViolationType.NAMESPACE_SPOOFING: "CAPABILITY_EXCEEDED",
    ViolationType.PROMPT_INJECTION: "AMBIGUOUS_REQUEST",
    ViolationType.CROSS_TOOL_CHAINING: "CROSS_TOOL_CHAINING",
})


def get_clause_by_id(clause_id: str) -> Optional[ConstitutionalClause]:
    return CLAUSE_MAP.get(clause_id)


def is_immutable_clause(clause_id: str) -> bool:
    clause = CLAUSE_MAP.get(clause_id)
    return bool(clause and clause.immutable)


def get_clause_ids() -> Tuple[str, ...]:
    return tuple(clause.id for clause in IMMUTABLE_CONSTITUTION)


def clause_for_violation(violation_type: ViolationType) -> str:
    return _CLAUSE_FOR_VIOLATION.get(violation_type, USER_DATA_SOVEREIGNTY.id)


def decline_message_for(violation_type: ViolationType) -> str:
    return GRACEFUL_DECLINES[_DECLINE_FOR_VIOLATION.get(violation_type, "AMBIGUOUS_REQUEST")]
