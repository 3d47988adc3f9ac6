"""Constitutional enforcement framework: request gating, output validation and plugin trust."""
from .audit import AuditLog, ConstitutionalViolationEvent, create_violation_entry, sanitize_snippet
from .clauses import (
    BASELINE_HONESTY,
    CLAUSE_MAP,
    GRACEFUL_DECLINES,
    IDENTITY_TRANSPARENCY,
    IMMUTABLE_CONSTITUTION,
    USER_DATA_SOVEREIGNTY,
    ConstitutionalClause,
    get_clause_by_id,
    get_clause_ids,
    is_immutable_clause,
)
from .config import ConstitutionSettings
from .gatekeeper import Gatekeeper
from .models import (
    GatekeeperResult,
    HonestyTier,
    OutputValidatorResult,
    RequestContext,
    ResponseContext,
    ToolCall,
    ViolationLogEntry,
    ViolationSource,
    ViolationType,
)
from .rules import SecondaryRuleset
from .sandbox import PluginSandbox, SandboxContext, SandboxExecutionResult
from .plugins.manager import PluginManager, PluginManagerConfig
from .service import ConstitutionalCheckResult, ConstitutionalFramework
from .validator import OutputValidator

__all__ = [
    "AuditLog",
    "ConstitutionalViolationEvent",
    "create_violation_entry",
    "sanitize_snippet",
    "BASELINE_HONESTY",
    "CLAUSE_MAP",
    "GRACEFUL_DECLINES",
    "IDENTITY_TRANSPARENCY",
    "IMMUTABLE_CONSTITUTION",
    "USER_DATA_SOVEREIGNTY",
    "ConstitutionalClause",
    "get_clause_by_id",
    "get_clause_ids",
    "is_immutable_clause",
    "ConstitutionSettings",
    "Gatekeeper",
    "GatekeeperResult",
    "HonestyTier",
    "OutputValidatorResult",
    "RequestContext",
    "ResponseContext",
    "ToolCall",
    "ViolationLogEntry",
    "ViolationSource",
    "ViolationType",
    "SecondaryRuleset",
    "PluginSandbox",
    "SandboxContext",
    "SandboxExecutionResult",
    "PluginManager",
    "PluginManagerConfig",
    "ConstitutionalCheckResult",
    "ConstitutionalFramework",
    "OutputValidator",
]
