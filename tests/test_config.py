import os
from unittest.mock import patch

import pytest

from agent_runtime.config import DEFAULT_MODEL, env_flag, load_config

ENV_NAMES = [
    "AGENT_MODEL", "AGENT_BASE_URL", "OPENAI_API_KEY", "AGENT_AUTO_APPROVE",
    "AGENT_ALLOWLIST_PATH", "AGENT_MAX_PASSES", "AGENT_HISTORY_MAX_CHARS", "AGENT_LOG_LEVEL",
    "AGENT_REDACT_AFTER_PASSES",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_NAMES:
        monkeypatch.delenv(name, raising=False)


@pytest.mark.parametrize("value,expected", [
    ("1", True), ("TRUE", True), (" yes ", True), ("on", True),
    ("0", False), ("no", False), ("", False), (None, False),
])
def test_env_flag(value, expected):
    assert env_flag(value) is expected


@patch("agent_runtime.config.load_dotenv")
def test_defaults(mock_load):
    config = load_config()
    assert config.model == DEFAULT_MODEL
    assert config.auto_approve is False
    assert config.max_passes == 50
    assert config.log_level == "WARNING"
    assert config.redact_after_passes == 10
    mock_load.assert_called_once_with(None)


@patch("agent_runtime.config.load_dotenv")
def test_environment_overrides(mock_load, monkeypatch):
    monkeypatch.setenv("AGENT_MODEL", "gpt-4o")
    monkeypatch.setenv("AGENT_AUTO_APPROVE", "true")
    monkeypatch.setenv("AGENT_MAX_PASSES", "7")
    monkeypatch.setenv("AGENT_LOG_LEVEL", "debug")
    monkeypatch.setenv("AGENT_BASE_URL", "http://localhost:11434/v1")

    config = load_config(".env.test")
    assert config.model == "gpt-4o"
    assert config.auto_approve is True
    assert config.max_passes == 7
    assert config.log_level == "DEBUG"
    assert config.base_url == "http://localhost:11434/v1"
    mock_load.assert_called_once_with(".env.test")


@patch("agent_runtime.config.load_dotenv")
def test_bad_integers_fall_back(mock_load, monkeypatch):
    monkeypatch.setenv("AGENT_MAX_PASSES", "many")
    monkeypatch.setenv("AGENT_HISTORY_MAX_CHARS", "-5")
    config = load_config()
    assert config.max_passes == 50
    assert config.history_max_chars == 1


@patch("agent_runtime.config.load_dotenv")
def test_redaction_threshold(mock_load, monkeypatch):
    monkeypatch.setenv("AGENT_REDACT_AFTER_PASSES", "0")
    assert load_config().redact_after_passes == 0
    monkeypatch.setenv("AGENT_REDACT_AFTER_PASSES", "-3")
    assert load_config().redact_after_passes == 0


def test_dotenv_file_is_read(tmp_path):
    env_file = tmp_path / ".env"
    env_file.write_text("AGENT_MODEL=from-dotenv\n")
    with patch.dict(os.environ):
        assert load_config(str(env_file)).model == "from-dotenv"
