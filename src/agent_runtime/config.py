# config.py
# Runtime configuration, read from the environment after load_dotenv().

import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field

DEFAULT_MODEL = "gpt-4.1-mini"
DEFAULT_ALLOWLIST_FILE = "approved_commands.json"

_TRUTHY = {"1", "true", "yes", "on"}


class RuntimeConfig(BaseModel):
    model: str = DEFAULT_MODEL
    base_url: str | None = None
    api_key: str | None = None
    auto_approve: bool = False
    allowlist_path: str = DEFAULT_ALLOWLIST_FILE
    max_passes: int = Field(default=50, ge=1)
    history_max_chars: int = Field(default=400_000, ge=1)
    redact_after_passes: int = Field(default=10, ge=0)
    log_level: str = "WARNING"


def env_flag(value: str | None) -> bool:
    return (value or "").strip().lower() in _TRUTHY


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def load_config(env_file: str | None = None) -> RuntimeConfig:
    load_dotenv(env_file)
    return RuntimeConfig(
        model=os.getenv("AGENT_MODEL") or DEFAULT_MODEL,
        base_url=os.getenv("AGENT_BASE_URL") or None,
        api_key=os.getenv("OPENAI_API_KEY") or None,
        auto_approve=env_flag(os.getenv("AGENT_AUTO_APPROVE")),
        allowlist_path=os.getenv("AGENT_ALLOWLIST_PATH") or DEFAULT_ALLOWLIST_FILE,
        max_passes=max(1, _env_int("AGENT_MAX_PASSES", 50)),
        history_max_chars=max(1, _env_int("AGENT_HISTORY_MAX_CHARS", 400_000)),
        redact_after_passes=max(0, _env_int("AGENT_REDACT_AFTER_PASSES", 10)),
        log_level=(os.getenv("AGENT_LOG_LEVEL") or "WARNING").upper(),
    )
