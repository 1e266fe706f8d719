import logging

import pytest

import env_validation


def test_invalid_api_url_is_rejected(monkeypatch):
    monkeypatch.setenv("OPENAI_API_URL", "api.openai.com/v1/chat/completions")

    with pytest.raises(env_validation.EnvironmentConfigError):
        env_validation.validate_environment()


def test_non_positive_token_ceiling_is_rejected(monkeypatch):
    monkeypatch.delenv("OPENAI_API_URL", raising=False)
    monkeypatch.setenv("OPENAI_MAX_COMPLETION_TOKENS", "zero")

    with pytest.raises(env_validation.EnvironmentConfigError):
        env_validation.validate_environment()


def test_missing_key_only_warns(monkeypatch, caplog, content_file):
    monkeypatch.delenv("OPENAI_API_URL", raising=False)
    monkeypatch.delenv("OPENAI_MAX_COMPLETION_TOKENS", raising=False)

    with caplog.at_level(logging.WARNING, logger="env_validation"):
        env_validation.validate_environment()

    assert any("OPENAI_API_KEY" in record.getMessage() for record in caplog.records)


def test_env_helpers(monkeypatch):
    monkeypatch.setenv("FLAG", "Yes")
    monkeypatch.setenv("NUMBER", "12")
    monkeypatch.setenv("BAD_NUMBER", "twelve")

    assert env_validation.get_env_bool("FLAG") is True
    assert env_validation.get_env_bool("UNSET_FLAG", default=True) is True
    assert env_validation.get_env_int("NUMBER", 1) == 12
    assert env_validation.get_env_int("BAD_NUMBER", 1) == 1
