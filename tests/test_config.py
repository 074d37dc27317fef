"""Tests for engine configuration loading and validation."""

import pytest

from vat_engine.config import (
    AUTHORITY_URLS,
    EngineConfig,
    Environment,
    validate_config,
)
from vat_engine.exceptions import ConfigError


def test_defaults():
    config = EngineConfig()
    assert config.environment == Environment.TEST
    assert config.authority_url == AUTHORITY_URLS[Environment.TEST]
    assert config.retry_schedule == (1, 60, 300, 900, 3600)
    assert config.max_retries == 5
    assert config.effective_poll_interval == 30
    assert not config.webhook_enabled


def test_webhook_relaxes_polling():
    config = EngineConfig(webhook_secret="s", poll_interval=30, webhook_poll_interval=120)
    assert config.webhook_enabled
    assert config.effective_poll_interval == 120


def test_from_dict():
    config = EngineConfig.from_dict({
        "environment": "PRODUCTION",
        "request_timeout": "12.5",
        "retry_schedule": [2, 30],
        "max_retries": 2,
        "custom_flag": True,
    })
    assert config.environment == Environment.PRODUCTION
    assert config.authority_url == AUTHORITY_URLS[Environment.PRODUCTION]
    assert config.request_timeout == 12.5
    assert config.retry_schedule == (2, 30)
    assert config.extra == {"custom_flag": True}


def test_from_env():
    config = EngineConfig.from_env({
        "VAT_ENGINE_BASE_URL": "https://gateway.local/",
        "VAT_ENGINE_RETRY_SCHEDULE": "5,10,20",
        "VAT_ENGINE_WEBHOOK_SECRET": "hook",
        "VAT_ENGINE_BATCH_WORKERS": "8",
        "UNRELATED": "x",
    })
    assert config.authority_url == "https://gateway.local"
    assert config.retry_schedule == (5, 10, 20)
    assert config.webhook_secret == "hook"
    assert config.batch_workers == 8
    assert config.extra == {}


def test_bad_values_raise_config_error():
    with pytest.raises(ConfigError):
        EngineConfig.from_dict({"environment": "staging"})
    with pytest.raises(ConfigError):
        EngineConfig.from_dict({"max_retries": "many"})


def test_to_dict_hides_secret():
    data = EngineConfig(webhook_secret="hook").to_dict()
    assert data["webhook_enabled"] is True
    assert "webhook_secret" not in data


# ── Validation ───────────────────────────────────────────────────────


def test_default_config_is_valid_with_warning():
    result = validate_config(EngineConfig())
    assert result.is_valid
    assert [i.field for i in result.get_warnings()] == ["webhook_secret"]


def test_collects_every_problem():
    config = EngineConfig(
        base_url="ftp://gateway",
        retry_schedule=(60, 1),
        max_retries=0,
        poll_interval=0,
        batch_workers=100,
        webhook_secret="hook",
    )
    result = validate_config(config)
    assert not result.is_valid
    assert {i.field for i in result.get_errors()} == {
        "base_url", "retry_schedule", "max_retries", "poll_interval", "batch_workers",
    }
    with pytest.raises(ConfigError) as exc_info:
        result.raise_for_errors()
    assert len(exc_info.value.issues) == 5


def test_plain_http_is_a_warning():
    result = validate_config(EngineConfig(base_url="http://gateway.local", webhook_secret="h"))
    assert result.is_valid
    assert [i.field for i in result.get_warnings()] == ["base_url"]


def test_polling_window_must_exceed_timeout():
    config = EngineConfig(request_timeout=60, poll_interval=10, max_polling_duration=30,
                          webhook_secret="h")
    fields = [i.field for i in validate_config(config).get_errors()]
    assert fields == ["max_polling_duration"]
