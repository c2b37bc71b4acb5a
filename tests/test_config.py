"""Tests for environment-driven configuration."""

from __future__ import annotations

import pytest

from lowcode_crawler.config import DeploymentEnvironment, ServiceConfig, get_config, reset_config


@pytest.fixture(autouse=True)
def fresh_config():
    reset_config()
    yield
    reset_config()


def test_defaults() -> None:
    config = ServiceConfig()
    assert config.system.service_port == 8004
    assert config.browser.headless is True
    assert config.crawler.navigation_timeout_ms == 30000
    assert config.packaging.max_file_size == 10 * 1024 * 1024


def test_environment_overrides(monkeypatch) -> None:
    monkeypatch.setenv("OUTPUT_ROOT", "/srv/out")
    monkeypatch.setenv("BROWSER_HEADLESS", "false")
    monkeypatch.setenv("NAVIGATION_TIMEOUT_MS", "5000")
    monkeypatch.setenv("CORS_ORIGINS", "https://a.test, https://b.test")
    monkeypatch.setenv("LOG_LEVEL", "debug")

    config = ServiceConfig()

    assert config.system.data_root == "/srv/out"
    assert config.browser.headless is False
    assert config.crawler.navigation_timeout_ms == 5000
    assert config.security.cors_origins == ["https://a.test", "https://b.test"]
    assert config.system.log_level == "DEBUG"


def test_bad_integer_falls_back_to_default(monkeypatch) -> None:
    monkeypatch.setenv("SETTLE_DELAY_MS", "soon")
    assert ServiceConfig().crawler.settle_delay_ms == 2000


def test_api_key_enables_requirement(monkeypatch) -> None:
    monkeypatch.setenv("CRAWLER_API_KEY", "secret")
    config = ServiceConfig()
    assert config.security.api_key_required is True
    assert config.get_configuration_summary()["security"]["api_key_required"] is True


@pytest.mark.parametrize("key,value", [
    ("SERVICE_PORT", "70000"),
    ("LOG_LEVEL", "chatty"),
    ("NAVIGATION_TIMEOUT_MS", "0"),
])
def test_invalid_values_rejected(monkeypatch, key, value) -> None:
    monkeypatch.setenv(key, value)
    with pytest.raises(ValueError):
        ServiceConfig()


def test_required_key_must_be_set(monkeypatch) -> None:
    monkeypatch.setenv("API_KEY_REQUIRED", "true")
    monkeypatch.delenv("CRAWLER_API_KEY", raising=False)
    with pytest.raises(ValueError):
        ServiceConfig()


def test_get_config_is_cached(monkeypatch) -> None:
    monkeypatch.setenv("DEPLOYMENT_ENVIRONMENT", "staging")
    config = get_config()
    assert config is get_config()
    assert config.environment == DeploymentEnvironment.STAGING
