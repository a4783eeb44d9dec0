"""
Runtime settings for the entry points (app.py, main.py).

Values come from the environment, with a .env file in the working
directory loaded first. Core classes never read the environment; the
entry points build a Settings and pass its fields to constructors.
"""

import logging
import os
from dataclasses import dataclass

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

TRUTHY = {'1', 'true', 'yes', 'on'}


def _env_bool(name, default):
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in TRUTHY


def _env_int(name, default):
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}") from None


@dataclass(frozen=True)
class Settings:
    model_name: str = "mistralai/Mistral-7B-Instruct-v0.2"
    embedding_model: str = "sentence-transformers/all-MiniLM-L6-v2"
    device: str = "cuda"
    load_in_4bit: bool = True
    session_dir: str = "outputs/sessions"
    results_dir: str = "outputs/health_checks"
    profiles_path: str = "data/user_profiles.json"
    session_ttl: int = 3600
    max_retry_attempts: int = 2
    max_follow_ups: int = 0
    memory_limit: int = 5
    recent_messages: int = 10
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, dotenv_path=None) -> "Settings":
        """
        Build settings from CARECALL_* environment variables.

        Args:
            dotenv_path: Optional .env file (default: search from cwd)

        Raises:
            ValueError: If a numeric setting is not an integer or not positive
        """
        load_dotenv(dotenv_path)
        defaults = cls()

        settings = cls(
            model_name=os.getenv("CARECALL_MODEL_NAME", defaults.model_name),
            embedding_model=os.getenv("CARECALL_EMBEDDING_MODEL", defaults.embedding_model),
            device=os.getenv("CARECALL_DEVICE", defaults.device),
            load_in_4bit=_env_bool("CARECALL_LOAD_IN_4BIT", defaults.load_in_4bit),
            session_dir=os.getenv("CARECALL_SESSION_DIR", defaults.session_dir),
            results_dir=os.getenv("CARECALL_RESULTS_DIR", defaults.results_dir),
            profiles_path=os.getenv("CARECALL_PROFILES_PATH", defaults.profiles_path),
            session_ttl=_env_int("CARECALL_SESSION_TTL", defaults.session_ttl),
            max_retry_attempts=_env_int("CARECALL_MAX_RETRY_ATTEMPTS", defaults.max_retry_attempts),
            max_follow_ups=_env_int("CARECALL_MAX_FOLLOW_UPS", defaults.max_follow_ups),
            memory_limit=_env_int("CARECALL_MEMORY_LIMIT", defaults.memory_limit),
            recent_messages=_env_int("CARECALL_RECENT_MESSAGES", defaults.recent_messages),
            log_level=os.getenv("CARECALL_LOG_LEVEL", defaults.log_level).upper(),
        )

        if settings.session_ttl <= 0:
            raise ValueError("CARECALL_SESSION_TTL must be positive")
        if settings.max_retry_attempts < 1:
            raise ValueError("CARECALL_MAX_RETRY_ATTEMPTS must be at least 1")

        logger.debug(f"Settings loaded: model={settings.model_name}, device={settings.device}")
        return settings
