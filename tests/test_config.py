"""
Test environment-driven settings

Run with: pytest tests/test_config.py
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest

from carecall.config import Settings

ENV_NAMES = [
    "CARECALL_MODEL_NAME", "CARECALL_EMBEDDING_MODEL", "CARECALL_DEVICE", "CARECALL_LOAD_IN_4BIT",
    "CARECALL_SESSION_DIR", "CARECALL_RESULTS_DIR", "CARECALL_PROFILES_PATH", "CARECALL_SESSION_TTL",
    "CARECALL_MAX_RETRY_ATTEMPTS", "CARECALL_MAX_FOLLOW_UPS", "CARECALL_MEMORY_LIMIT",
    "CARECALL_RECENT_MESSAGES", "CARECALL_LOG_LEVEL",
]


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    for name in ENV_NAMES:
        # setenv first so anything load_dotenv writes is undone after the test
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)
    # An empty .env so a developer's local file is never picked up
    dotenv = tmp_path / ".env"
    dotenv.write_text("")
    return str(dotenv)


def test_defaults(clean_env):
    settings = Settings.from_env(clean_env)
    assert settings == Settings()
    assert settings.session_ttl == 3600
    assert settings.max_retry_attempts == 2
    assert settings.load_in_4bit is True


def test_environment_overrides(clean_env, monkeypatch):
    monkeypatch.setenv("CARECALL_DEVICE", "cpu")
    monkeypatch.setenv("CARECALL_LOAD_IN_4BIT", "no")
    monkeypatch.setenv("CARECALL_SESSION_TTL", "600")
    monkeypatch.setenv("CARECALL_MAX_FOLLOW_UPS", "1")
    monkeypatch.setenv("CARECALL_LOG_LEVEL", "debug")

    settings = Settings.from_env(clean_env)
    assert settings.device == "cpu"
    assert settings.load_in_4bit is False
    assert settings.session_ttl == 600
    assert settings.max_follow_ups == 1
    assert settings.log_level == "DEBUG"


def test_dotenv_file_is_loaded(clean_env, monkeypatch, tmp_path):
    dotenv = tmp_path / "custom.env"
    dotenv.write_text("CARECALL_MEMORY_LIMIT=3\nCARECALL_RESULTS_DIR=/tmp/carecall-results\n")

    settings = Settings.from_env(str(dotenv))
    assert settings.memory_limit == 3
    assert settings.results_dir == "/tmp/carecall-results"


@pytest.mark.parametrize("name,value", [
    ("CARECALL_SESSION_TTL", "an hour"),
    ("CARECALL_SESSION_TTL", "0"),
    ("CARECALL_MAX_RETRY_ATTEMPTS", "0"),
    ("CARECALL_MEMORY_LIMIT", "5.5"),
])
def test_invalid_values(clean_env, monkeypatch, name, value):
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError):
        Settings.from_env(clean_env)
