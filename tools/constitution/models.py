from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class EnforcementMechanism(str, Enum):
    """How a clause is enforced at runtime."""
    INTENT_FILTER = "INTENT_FILTER"                    # pre-execution inspection
    SANDBOX_BOUNDARY = "SANDBOX_BOUNDARY"              # capability isolation
    OUTPUT_VALIDATION = "OUTPUT_VALIDATION"            # post-execution check
    NAMESPACE_VERIFICATION = "NAMESPACE_VERIFICATION"  # signature check
    CROSS_TOOL_CONSTRAINT = "CROSS_TOOL_CONSTRAINT"    # chaining prevention


class ViolationType(str, Enum):
    DATA_ACCESS_ATTEMPT = "DATA_ACCESS_ATTEMPT"
    IDENTITY_MASKING_ATTEMPT = "IDENTITY_MASKING_ATTEMPT"
    HONESTY_BYPASS_ATTEMPT = "HONESTY_BYPASS_ATTEMPT"
    CAPABILITY_EXCEEDED = "CAPABILITY_EXCEEDED"
    NAMESPACE_SPOOFING = "NAMESPACE_SPOOFING"
    PROMPT_INJECTION = "PROMPT_INJECTION"
    CROSS_TOOL_CHAINING = "CROSS_TOOL_CHAINING"


class ViolationSource(str, Enum):
    USER_INPUT = "USER_INPUT"
    PLUGIN = "PLUGIN"
    MODEL_OUTPUT = "MODEL_OUTPUT"


class ResponseAction(str, Enum):
    SILENT_INTERCEPT = "SILENT_INTERCEPT"
    GRACEFUL_DECLINE = "GRACEFUL_DECLINE"
    ABSTAIN = "ABSTAIN"


class LogLevel(str, Enum):
    INFO = "INFO"
    WARN = "WARN"
    CRITICAL = "CRITICAL"


class HonestyTier(str, Enum):
    BASE = "BASE"
    PLUGIN = "PLUGIN"
    SUPREME_COURT = "SUPREME_COURT"


class RuleCategory(str, Enum):
    PLUGIN_BOUNDARY = "PLUGIN_BOUNDARY"
    DATA_ACCESS = "DATA_ACCESS"
    HONESTY_TIER = "HONESTY_TIER"


class Confidence(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class RiskLevel(str, Enum):
    NONE = "NONE"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


# ---------------------------------------------------------------------------
# Wire models (camelCase on export, snake_case in Python)
# ---------------------------------------------------------------------------

class _WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        use_enum_values=False,
    )


class ViolationContext(_WireModel):
    input_snippet: Optional[str] = None
    detection_method: EnforcementMechanism


class ViolationLogEntry(_WireModel):
    """One detected violation. Immutable once created."""

    timestamp: datetime = Field(default_factory=utc_now)
    request_id: str = "unknown"
    user_id: str = "unknown"
    clause_violated: str
    violation_type: ViolationType
    source_type: ViolationSource
    source_id: Optional[str] = None
    action: ResponseAction
    context: ViolationContext

    @field_validator("timestamp")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


class VersionControlledResolution(_WireModel):
    resolution_id: str
    rule_id: str
    previous_value: str
    new_value: str
    reason: str
    timestamp: datetime = Field(default_factory=utc_now)
    approved_by: str


class SecondaryRule(_WireModel):
    id: str
    category: RuleCategory
    rule: str
    created_at: datetime = Field(default_factory=utc_now)
    modified_at: datetime = Field(default_factory=utc_now)


# ---------------------------------------------------------------------------
# Request / response contexts
# ---------------------------------------------------------------------------

class ToolCall(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    tool_id: str
    input: Dict[str, Any] = Field(default_factory=dict)
    output: Any = None
    timestamp: datetime = Field(default_factory=utc_now)


class RequestContext(BaseModel):
    """Caller-supplied context for one inbound request.

    ``previous_inputs`` is the only conversation state the framework ever sees;
    when present the injection phase fuses it with the current input.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    request_id: str
    user_id: str
    conversation_id: str = ""
    honesty_tier: HonestyTier = HonestyTier.BASE
    previous_tool_calls: List[ToolCall] = Field(default_factory=list)
    previous_inputs: List[str] = Field(default_factory=list)
    proposed_tool_id: Optional[str] = None


class ResponseContext(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    request_id: str
    user_id: str
    conversation_id: str = ""
    honesty_tier: HonestyTier = HonestyTier.BASE
    original_input: str = ""


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass
class GatekeeperResult:
    allowed: bool
    clauses_checked: List[str] = field(default_factory=list)
    violations: List[ViolationLogEntry] = field(default_factory=list)
    sanitized_input: Optional[str] = None
    confidence_score: float = 1.0


@dataclass
class OutputValidatorResult:
    valid: bool
    sanitized_output: Optional[str] = None
    violations: List[ViolationLogEntry] = field(default_factory=list)
    fallback_output: Optional[str] = None
