#!/usr/bin/env python3
"""
Tests for configuration loading, overrides and validation, plus the logging
feature flags it drives.
"""

import logging

import pytest

from tsugi_client.chat.logging_utils import should_log_feature
from tsugi_client.config import Configuration
from tsugi_client.main import configure_logging


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in ("TSUGI_CONFIG", "TSUGI_AGENT_URL", "TSUGI_STATS_URL", "BRAINTRUST_API_KEY", "PROJECT_NAME"):
        monkeypatch.delenv(name, raising=False)
    # Keep a developer's .env out of the tests
    monkeypatch.setattr(Configuration, "load_env", staticmethod(lambda: None))


def _write_override(tmp_path, text: str) -> str:
    path = tmp_path / "override.yaml"
    path.write_text(text)
    return str(path)


def test_defaults_are_loaded():
    config = Configuration()

    assert config.get_agent_config()["path"] == "/api/chat"
    assert config.get_polling_config() == {
        "max_attempts": 8,
        "base_interval": 2.0,
        "consecutive_matches_required": 3,
    }
    assert config.get_stats_config()["source"] == "endpoint"


def test_override_file_is_deep_merged(tmp_path):
    path = _write_override(tmp_path, "stats:\n  polling:\n    max_attempts: 4\n")
    config = Configuration(path)

    polling = config.get_polling_config()
    assert polling["max_attempts"] == 4
    # Sibling keys survive the merge
    assert polling["consecutive_matches_required"] == 3
    assert config.get_stats_config()["path"] == "/api/stats"


def test_override_file_from_env(tmp_path, monkeypatch):
    path = _write_override(tmp_path, "agent:\n  path: /v2/chat\n")
    monkeypatch.setenv("TSUGI_CONFIG", path)

    assert Configuration().get_agent_config()["path"] == "/v2/chat"


def test_env_vars_override_urls(monkeypatch):
    monkeypatch.setenv("TSUGI_AGENT_URL", "https://agent.example")
    monkeypatch.setenv("TSUGI_STATS_URL", "https://stats.example")
    config = Configuration()

    assert config.get_agent_config()["base_url"] == "https://agent.example"
    assert config.get_stats_config()["base_url"] == "https://stats.example"


@pytest.mark.parametrize(
    "polling",
    [
        "max_attempts: 0",
        "base_interval: 0",
        "base_interval: -1.5",
        "consecutive_matches_required: 0",
    ],
)
def test_invalid_polling_config_is_rejected(tmp_path, polling):
    path = _write_override(tmp_path, f"stats:\n  polling:\n    {polling}\n")

    with pytest.raises(ValueError):
        Configuration(path).get_polling_config()


def test_unknown_stats_source_is_rejected(tmp_path):
    path = _write_override(tmp_path, "stats:\n  source: carrier-pigeon\n")

    with pytest.raises(ValueError):
        Configuration(path).get_stats_config()


def test_non_mapping_override_is_rejected(tmp_path):
    path = _write_override(tmp_path, "- just\n- a list\n")

    with pytest.raises(ValueError):
        Configuration(path)


def test_braintrust_config_requires_credentials(monkeypatch):
    config = Configuration()
    with pytest.raises(ValueError):
        config.get_braintrust_config()

    monkeypatch.setenv("BRAINTRUST_API_KEY", "key")
    monkeypatch.setenv("PROJECT_NAME", "tsugi")
    braintrust = config.get_braintrust_config()
    assert braintrust["api_key"] == "key"
    assert braintrust["project_name"] == "tsugi"


def test_configure_logging_sets_levels_and_features():
    configure_logging(
        {
            "level": "WARNING",
            "modules": {
                "chat": {"level": "DEBUG", "enable_features": {"stream_events": True}},
                "clients": {"level": "ERROR", "enable_features": {"http_requests": False}},
            },
        }
    )

    assert logging.getLogger("tsugi_client.chat").level == logging.DEBUG
    assert logging.getLogger("tsugi_client.clients").level == logging.ERROR
    assert should_log_feature("chat", "stream_events") is True
    assert should_log_feature("clients", "http_requests") is False
    assert should_log_feature("chat", "unknown_feature") is False
