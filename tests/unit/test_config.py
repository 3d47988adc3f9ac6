import os
from pathlib import Path
from unittest.mock import patch

import pytest

from tools.constitution.config import ConstitutionSettings, _env_bool, _env_float, _env_list


def test_defaults_without_environment():
    settings = ConstitutionSettings.from_env()
    assert settings.injection_threshold == 0.75
    assert settings.honesty_threshold == 0.6
    assert settings.audit_retention_days == 90
    assert settings.audit_log_path is None
    assert settings.require_plugin_signatures is True
    assert settings.trusted_key_types == ("ROOT", "PUBLISHER")
    assert settings.max_plugins == 50
    assert settings.plugin_timeout_ms == 30_000
    assert settings.assistant_name == "Oscar"


def test_values_from_environment(tmp_path):
    env = {
        "CONSTITUTION_INJECTION_THRESHOLD": "0.5",
        "CONSTITUTION_AUDIT_LOG_PATH": str(tmp_path / "audit.jsonl"),
        "CONSTITUTION_REQUIRE_SIGNATURES": "false",
        "CONSTITUTION_TRUSTED_KEY_TYPES": "root, publisher, developer",
        "CONSTITUTION_MAX_PLUGINS": "3",
        "CONSTITUTION_ASSISTANT_NAME": "Ada",
    }
    with patch.dict(os.environ, env):
        settings = ConstitutionSettings.from_env()
    assert settings.injection_threshold == 0.5
    assert settings.audit_log_path == (tmp_path / "audit.jsonl").resolve()
    assert settings.require_plugin_signatures is False
    assert settings.trusted_key_types == ("ROOT", "PUBLISHER", "DEVELOPER")
    assert settings.max_plugins == 3
    assert settings.assistant_name == "Ada"


@pytest.mark.parametrize("raw", ["abc", "1.5", "-0.1", "nan", ""])
def test_invalid_threshold_falls_back_to_default(raw):
    with patch.dict(os.environ, {"CONSTITUTION_INJECTION_THRESHOLD": raw}):
        assert _env_float("CONSTITUTION_INJECTION_THRESHOLD", 0.75) == 0.75


def test_threshold_bounds_are_inclusive():
    with patch.dict(os.environ, {"X_THRESHOLD": "1.0"}):
        assert _env_float("X_THRESHOLD", 0.75) == 1.0
    with patch.dict(os.environ, {"X_THRESHOLD": "0"}):
        assert _env_float("X_THRESHOLD", 0.75) == 0.0


@pytest.mark.parametrize("raw,expected", [("1", True), ("yes", True), ("0", False), ("no", False), ("maybe", True)])
def test_env_bool(raw, expected):
    with patch.dict(os.environ, {"X_FLAG": raw}):
        assert _env_bool("X_FLAG", True) is expected


def test_env_list_empty_uses_default():
    with patch.dict(os.environ, {"X_LIST": " , "}):
        assert _env_list("X_LIST", ("ROOT",)) == ("ROOT",)


def test_settings_are_frozen():
    settings = ConstitutionSettings()
    with pytest.raises(Exception):
        settings.max_plugins = 1  # type: ignore[misc]


def test_non_numeric_integers_use_defaults():
    with patch.dict(os.environ, {"CONSTITUTION_MAX_PLUGINS": "lots", "CONSTITUTION_AUDIT_RETENTION_DAYS": "-4"}):
        settings = ConstitutionSettings.from_env()
    assert settings.max_plugins == 50
    assert settings.audit_retention_days == 1
    assert isinstance(settings.audit_log_path, (Path, type(None)))
