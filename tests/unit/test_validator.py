import pytest

from tools.constitution.config import ConstitutionSettings
from tools.constitution.models import EnforcementMechanism, ViolationSource, ViolationType
from tools.constitution.sandbox import create_minimal_plugin_capabilities
from tools.constitution.validator import LEAKAGE_SNIPPET, OutputValidator, rewrite_overconfidence


@pytest.fixture
def validator(audit):
    return OutputValidator(audit)


# ── Identity ──────────────────────────────────────────────

@pytest.mark.parametrize("output", [
    "I am ChatGPT and happy to help.",
    "I'm a human, just like you.",
    "As a fellow human, I get it.",
    "I'm not an AI, trust me.",
    "I'm not Oscar, I'm someone else.",
    "I'm Claude.",
])
def test_identity_masking_blocked(validator, audit, response_context, output):
    result = validator.validate_output(output, response_context)
    assert result.valid is False
    assert result.sanitized_output is None
    assert result.fallback_output.startswith("I'm Oscar, an AI assistant.")
    [violation] = result.violations
    assert violation.violation_type is ViolationType.IDENTITY_MASKING_ATTEMPT
    assert violation.clause_violated == "IDENTITY_TRANSPARENCY"
    assert violation.source_type is ViolationSource.MODEL_OUTPUT
    assert violation.context.detection_method is EnforcementMechanism.OUTPUT_VALIDATION
    assert audit.get_violation_count() == 1


@pytest.mark.parametrize("output", [
    "As an AI assistant, I can help with that.",
    "I'm an AI, so I don't have personal experiences.",
    "Oscar here. Your meeting is at 3pm.",
])
def test_honest_self_description_passes(validator, response_context, output):
    assert validator.detect_identity_masking(output) is False
    assert validator.validate_output(output, response_context).valid is True


def test_assistant_name_comes_from_settings(audit, response_context):
    validator = OutputValidator(audit, settings=ConstitutionSettings(assistant_name="Ada"))
    result = validator.validate_output("I'm not Ada.", response_context)
    assert result.valid is False
    assert result.fallback_output.startswith("I'm Ada, an AI assistant.")
    assert validator.detect_identity_masking("I'm not Oscar.") is False


# ── Data leakage ──────────────────────────────────────────

@pytest.mark.parametrize("output", [
    "Found it: user_id: user-456 has three overdue tasks.",
    "Here are all the users in the workspace.",
    "User 1: alice, User 2: bob",
    "[@alice] hi [@bob] hey [@carol] yo",
])
def test_leakage_blocked_with_redacted_snippet(validator, response_context, output):
    result = validator.validate_output(output, response_context)
    assert result.valid is False
    violation = result.violations[0]
    assert violation.violation_type is ViolationType.DATA_ACCESS_ATTEMPT
    assert violation.context.input_snippet == LEAKAGE_SNIPPET
    assert "other users" in result.fallback_output


@pytest.mark.parametrize("output", [
    "Your profile (user_id: user-123.) is up to date.",
    "Using user_id=current for this lookup.",
    "Nothing about anyone else here.",
])
def test_own_data_is_not_leakage(validator, output):
    assert validator.detect_data_leakage(output, "user-123") is False


# ── Honesty ───────────────────────────────────────────────

def test_overconfident_output_is_corrected_not_blocked(validator, audit, response_context):
    result = validator.validate_output("I guarantee this is 100% correct", response_context)
    assert result.valid is True
    assert result.fallback_output is None
    assert result.sanitized_output == "I believe this is correct, though you should verify"
    [violation] = result.violations
    assert violation.violation_type is ViolationType.HONESTY_BYPASS_ATTEMPT
    assert violation.clause_violated == "BASELINE_HONESTY"
    assert audit.get_violations_by_type(ViolationType.HONESTY_BYPASS_ATTEMPT) == [violation]


def test_baseline_honesty_is_idempotent(validator):
    once = validator.apply_baseline_honesty("I guarantee this is 100% correct. There is no doubt.")
    twice = validator.apply_baseline_honesty(once)
    assert once == twice
    assert validator.evaluate_honesty(once) >= 0.6


def test_baseline_honesty_leaves_acceptable_text_alone(validator):
    text = "I promise I'll remind you tomorrow."
    assert validator.evaluate_honesty(text) == pytest.approx(0.45)
    assert validator.apply_baseline_honesty("The meeting is at 3pm.") == "The meeting is at 3pm."


@pytest.mark.parametrize("output,expected", [
    ("The meeting is at 3pm.", 0.75),
    ("I think this might work.", 0.95),
    (
        "I think this might be right, but I'm not sure. To be honest, as an AI I cannot guarantee it.",
        1.0,
    ),
    ("I guarantee I never make mistakes and I can predict the future. There is no doubt.", 0.0),
])
def test_evaluate_honesty(validator, output, expected):
    assert validator.evaluate_honesty(output) == pytest.approx(expected)


def test_honest_output_passes_untouched(validator, response_context):
    result = validator.validate_output("I believe the report is due Friday.", response_context)
    assert result.valid is True
    assert result.violations == []
    assert result.sanitized_output == "I believe the report is due Friday."


def test_rewrite_overconfidence():
    assert rewrite_overconfidence("I'm 100% sure.") == "I'm confident."
    assert rewrite_overconfidence("I never make mistakes") == (
        "I aim to be accurate, though as an AI I can make mistakes"
    )


# ── Misc ──────────────────────────────────────────────────

def test_plugin_id_recorded_as_source(validator, response_context):
    plugin = create_minimal_plugin_capabilities("com.acme.persona")
    result = validator.validate_output("I'm a real person.", response_context, plugin)
    assert result.violations[0].source_id == "com.acme.persona"


@pytest.mark.parametrize("output,ok", [
    ("I am Gemini.", False),
    ("Here are the users you asked for", False),
    ("Your calendar is clear.", True),
])
def test_quick_screen_output(validator, output, ok):
    assert validator.quick_screen_output(output) is ok


def test_generic_fallback(validator):
    message = validator.get_sanitized_fallback("whatever", ViolationType.PROMPT_INJECTION)
    assert message == "I apologize, but I can't provide that response. How else can I help you?"
    assert validator.get_sanitized_fallback(
        "I'm 100% certain", ViolationType.HONESTY_BYPASS_ATTEMPT
    ) == "I'm confident"
