"""
Configuration for the constitutional enforcement framework.

Every relevant environment variable carries the CONSTITUTION_ prefix.
Defaults are the safe ones: signatures required, only ROOT and PUBLISHER
keys trusted, audit kept in memory unless a path is given.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Tuple

DEFAULT_INJECTION_THRESHOLD = 0.75
DEFAULT_HONESTY_THRESHOLD = 0.6
DEFAULT_AUDIT_RETENTION_DAYS = 90
DEFAULT_MAX_PLUGINS = 50
DEFAULT_PLUGIN_TIMEOUT_MS = 30_000
DEFAULT_TRUSTED_KEY_TYPES: Tuple[str, ...] = ("ROOT", "PUBLISHER")
DEFAULT_ASSISTANT_NAME = "Oscar"


def _env_bool(key: str, default: bool) -> bool:
    val = os.environ.get(key, "").lower().strip()
    if val in ("1", "true", "yes"):
        return True
    if val in ("0", "false", "no"):
        return False
    return default


def _env_int(key: str, default: int) -> int:
    try:
        return int(os.environ.get(key, str(default)))
    except ValueError:
        return default


def _env_float(key: str, default: float, *, lower: float = 0.0, upper: float = 1.0) -> float:
    """Float in [lower, upper]; anything unparseable or out of range yields the default."""
    raw = os.environ.get(key, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    if value != value or value < lower or value > upper:  # NaN check
        return default
    return value


def _env_list(key: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = os.environ.get(key, "")
    items = tuple(part.strip().upper() for part in raw.split(",") if part.strip())
    return items or default


@dataclass(frozen=True)
class ConstitutionSettings:
    injection_threshold: float = DEFAULT_INJECTION_THRESHOLD
    honesty_threshold: float = DEFAULT_HONESTY_THRESHOLD
    audit_retention_days: int = DEFAULT_AUDIT_RETENTION_DAYS
    audit_log_path: Optional[Path] = None
    require_plugin_signatures: bool = True
    trusted_key_types: Tuple[str, ...] = field(default=DEFAULT_TRUSTED_KEY_TYPES)
    max_plugins: int = DEFAULT_MAX_PLUGINS
    plugin_timeout_ms: int = DEFAULT_PLUGIN_TIMEOUT_MS
    assistant_name: str = DEFAULT_ASSISTANT_NAME
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "ConstitutionSettings":
        audit_path = os.environ.get("CONSTITUTION_AUDIT_LOG_PATH", "").strip()
        return cls(
            injection_threshold=_env_float(
                "CONSTITUTION_INJECTION_THRESHOLD", DEFAULT_INJECTION_THRESHOLD
            ),
            honesty_threshold=_env_float(
                "CONSTITUTION_HONESTY_THRESHOLD", DEFAULT_HONESTY_THRESHOLD
            ),
            audit_retention_days=max(
                1, _env_int("CONSTITUTION_AUDIT_RETENTION_DAYS", DEFAULT_AUDIT_RETENTION_DAYS)
            ),
            audit_log_path=Path(audit_path).resolve() if audit_path else None,
            require_plugin_signatures=_env_bool("CONSTITUTION_REQUIRE_SIGNATURES", True),
            trusted_key_types=_env_list(
                "CONSTITUTION_TRUSTED_KEY_TYPES", DEFAULT_TRUSTED_KEY_TYPES
            ),
            max_plugins=max(0, _env_int("CONSTITUTION_MAX_PLUGINS", DEFAULT_MAX_PLUGINS)),
            plugin_timeout_ms=max(
                1, _env_int("CONSTITUTION_PLUGIN_TIMEOUT_MS", DEFAULT_PLUGIN_TIMEOUT_MS)
            ),
            assistant_name=os.environ.get(
                "CONSTITUTION_ASSISTANT_NAME", DEFAULT_ASSISTANT_NAME
            ).strip() or DEFAULT_ASSISTANT_NAME,
            log_level=os.environ.get("CONSTITUTION_LOG_LEVEL", "INFO").upper(),
        )
