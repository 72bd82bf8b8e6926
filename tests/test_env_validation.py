import os

import pytest

import env_validation
from engines.validation import CooldownActive, DuplicateAttempt, ScoringUnavailable
from env_validation import EnvironmentError, get_env_bool, get_env_float, get_env_int, validate_environment


@pytest.fixture
def clean_env(monkeypatch):
    managed = set(env_validation.DEFAULTS) | set(env_validation.OPTIONAL_VARS)
    # validate_environment writes defaults into os.environ; keep them out of other tests
    monkeypatch.setattr(os, "environ", {k: v for k, v in os.environ.items() if k not in managed})
    return monkeypatch


def test_defaults_are_applied(clean_env):
    validate_environment()

    assert os.environ["SUBMISSION_COOLDOWN_SECONDS"] == "30"
    assert os.environ["JUDGE_PRIMARY_MODEL"] == "judge-large"


def test_invalid_url_is_rejected(clean_env):
    clean_env.setenv("LLM_URL", "ftp://judge")
    with pytest.raises(EnvironmentError):
        validate_environment()


@pytest.mark.parametrize("value", ["soon", "-5", "0"])
def test_numeric_settings_must_be_positive(clean_env, value):
    clean_env.setenv("LLM_TIMEOUT", value)
    with pytest.raises(EnvironmentError):
        validate_environment()


def test_typed_accessors(monkeypatch):
    monkeypatch.setenv("FLAG_ON", "Yes")
    monkeypatch.setenv("COUNT", "12.7")
    monkeypatch.setenv("BROKEN", "twelve")

    assert get_env_bool("FLAG_ON") is True
    assert get_env_bool("FLAG_MISSING", True) is True
    assert get_env_int("COUNT", 0) == 12
    assert get_env_int("BROKEN", 3) == 3
    assert get_env_float("COUNT", 0.0) == pytest.approx(12.7)
    assert get_env_float("BROKEN", 1.5) == 1.5


def test_error_payloads_hide_detail_by_default():
    error = DuplicateAttempt("boolean-java-berlin")
    assert error.to_payload() == {"code": "already_submitted", "message": error.message}
    assert error.to_payload(expose_detail=True)["detail"] == "challenge_id=boolean-java-berlin"

    cooldown = CooldownActive(12)
    assert cooldown.status_code == 429
    assert "12 seconds" in cooldown.message

    unavailable = ScoringUnavailable("empty_model_response", "Scoring is unavailable.", detail="all models empty")
    assert unavailable.status_code == 502
    assert "detail" not in unavailable.to_payload()
