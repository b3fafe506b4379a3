"""配置加载与日志初始化"""

from __future__ import annotations

import pytest
import structlog
from pydantic import ValidationError

from claimcheck.config import Settings, get_settings
from claimcheck.observability.logging_config import setup_logging
from claimcheck.validator.response_parser import ResponseParser
from claimcheck.validator.schemas import ValidationConfig


def test_config_loaded_from_environment(monkeypatch):
    monkeypatch.setenv("VALIDATION_COUNT_TOLERANCE", "2")
    monkeypatch.setenv("VALIDATION_AUTO_CORRECT", "false")
    monkeypatch.setenv("VALIDATION_WEIGHT_UPTIME", "9")

    config = ValidationConfig.from_settings()

    assert config.count_tolerance == 2
    assert config.auto_correct is False
    assert config.priority_weights.uptime == 9


def test_get_settings_is_cached():
    assert get_settings() is get_settings()


def test_negative_tolerance_rejected(monkeypatch):
    monkeypatch.setenv("VALIDATION_PERCENTAGE_TOLERANCE", "-0.5")
    with pytest.raises(ValidationError):
        Settings()


def test_with_overrides_returns_new_instance():
    base = ValidationConfig()
    strict = base.with_overrides(percentage_tolerance=0.0)

    assert strict.percentage_tolerance == 0.0
    assert base.percentage_tolerance == 0.1
    assert strict.priority_weights == base.priority_weights


def test_priority_for_claim_categories():
    config = ValidationConfig()
    claims = {
        c.pattern: c
        for c in ResponseParser().parse("Connected devices: 3\nUptime: 99%\n4 alerts\nAverage: 2").claims
    }

    assert config.priority_for(claims["device_label_connected"]) == 10
    assert config.priority_for(claims["uptime_label"]) == 8
    assert config.priority_for(claims["percentage"]) == 7
    assert config.priority_for(claims["average"]) == 5
    assert config.priority_for(claims["alert_count"]) == 3


@pytest.fixture
def reset_structlog():
    yield
    structlog.reset_defaults()


@pytest.mark.parametrize(
    ("env", "renderer"),
    [
        ("production", structlog.processors.JSONRenderer),
        ("development", structlog.dev.ConsoleRenderer),
    ],
)
def test_setup_logging_renderer(reset_structlog, env, renderer):
    setup_logging(env=env, level="DEBUG")
    processors = structlog.get_config()["processors"]
    assert isinstance(processors[-1], renderer)
    assert structlog.contextvars.merge_contextvars in processors


def test_setup_logging_unknown_level_falls_back(reset_structlog):
    setup_logging(level="LOUD")
    structlog.get_logger().info("日志初始化完成")


def test_setup_logging_defaults_come_from_settings(reset_structlog, monkeypatch):
    monkeypatch.setenv("ENV", "production")
    monkeypatch.setenv("LOG_LEVEL", "WARNING")
    monkeypatch.setenv("APP_NAME", "claimcheck-test")

    setup_logging()

    processors = structlog.get_config()["processors"]
    assert isinstance(processors[-1], structlog.processors.JSONRenderer)
    assert structlog.processors.dict_tracebacks in processors
    stamped = processors[1](None, "info", {"event": "x"})
    assert stamped["service"] == "claimcheck-test"


def test_explicit_arguments_override_settings(reset_structlog, monkeypatch):
    monkeypatch.setenv("ENV", "production")
    setup_logging(env="development")
    assert isinstance(structlog.get_config()["processors"][-1], structlog.dev.ConsoleRenderer)
