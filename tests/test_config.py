"""Tests for configuration validation."""

import pytest

from pm_agents.config import Config


def test_defaults_are_valid():
    assert Config.validate() is True


def test_pipeline_defaults():
    assert Config.RATE_LIMIT_WINDOW_MS == 60000
    assert Config.RATE_LIMIT_MAX_CALLS == 100
    assert Config.SESSION_RETENTION_DAYS == 30
    assert Config.AI_CONFIDENCE_THRESHOLD == 0.6
    assert Config.MAX_NUDGES_PER_TASK_PER_DAY == 2


@pytest.mark.parametrize(
    "name, value",
    [
        ("RATE_LIMIT_WINDOW_MS", 0),
        ("RATE_LIMIT_MAX_CALLS", -1),
        ("SESSION_RETENTION_DAYS", 0),
        ("AI_CONFIDENCE_THRESHOLD", 1.5),
        ("MODEL_TIMEOUT_SECONDS", 0),
        ("MAX_CONTEXT_TOKENS", 0),
        ("TENANT_CONFIG_CACHE_TTL", -1),
        ("STORE_BACKEND", "postgres"),
        ("REDIS_MAX_CONNECTIONS", 0),
    ],
)
def test_invalid_setting_fails_validation(monkeypatch, name, value):
    monkeypatch.setattr(Config, name, value)

    with pytest.raises(ValueError, match=f"Config validation failed: {name}"):
        Config.validate()


def test_all_errors_are_reported(monkeypatch):
    monkeypatch.setattr(Config, "RATE_LIMIT_MAX_CALLS", 0)
    monkeypatch.setattr(Config, "MAX_CONTEXT_TOKENS", 0)

    with pytest.raises(ValueError) as exc_info:
        Config.validate()

    assert "RATE_LIMIT_MAX_CALLS" in str(exc_info.value)
    assert "MAX_CONTEXT_TOKENS" in str(exc_info.value)
