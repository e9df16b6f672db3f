"""Application configuration helpers."""
from __future__ import annotations

import logging
import os
from functools import lru_cache
from typing import Any, Dict
from urllib.parse import quote, urlparse, urlunparse

from dotenv import load_dotenv
from pydantic import ValidationError

# Load variables from .env into process environment as early as possible.
load_dotenv()

_TRUTHY = {"1", "true", "yes", "on"}

# Role -> (provider, model) used when DEBATE_<ROLE>_* is not set
DEFAULT_AGENT_MODELS: Dict[str, tuple[str, str]] = {
    "pro": ("openai", "gpt-4o-mini"),
    "con": ("openai", "gpt-4o-mini"),
    "moderator": ("openai", "gpt-4o"),
}


def _require_env(name: str) -> str:
    value = os.getenv(name)
    if not value:
        raise RuntimeError(f"Environment variable {name} must be set")
    return value


def _optional_env(name: str) -> str | None:
    value = os.getenv(name)
    return value or None


def _int_env(name: str, default: int) -> int:
    value = _optional_env(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be an integer, got {value!r}") from None


def _encode_pg_password(conn_str: str) -> str:
    """Encode password in PostgreSQL connection URI if needed."""
    # keyword=value style connection strings are passed through
    if not conn_str.startswith(("postgres://", "postgresql://")):
        return conn_str

    try:
        parsed = urlparse(conn_str)
        if not parsed.password:
            return conn_str
        port = parsed.port
    except ValueError:
        # Unparseable URI, let asyncpg report it
        return conn_str

    username = quote(parsed.username or "", safe="")
    password = quote(parsed.password, safe="")
    netloc = f"{username}:{password}@{parsed.hostname}"
    if port:
        netloc = f"{netloc}:{port}"
    return urlunparse(parsed._replace(netloc=netloc))


@lru_cache(maxsize=None)
def get_pg_conn_str() -> str:
    """Return the Postgres connection string with properly encoded password."""
    conn_str = _require_env("PG_CONN_STR")
    return _encode_pg_password(conn_str)


@lru_cache(maxsize=None)
def use_in_memory_storage() -> bool:
    """Return True when debates should be kept in process memory.

    Forced with USE_IN_MEMORY_STORAGE, and implied when no PG_CONN_STR is set.
    """
    flag = os.getenv("USE_IN_MEMORY_STORAGE", "0").lower()
    return flag in _TRUTHY or _optional_env("PG_CONN_STR") is None


@lru_cache(maxsize=None)
def use_ag2_normalizer() -> bool:
    """Return True when propositions are restated by the moderator model.

    Controlled by DEBATE_AG2_NORMALIZER; off by default, which keeps the
    rule-based normalizer and avoids a model call per debate.
    """
    return os.getenv("DEBATE_AG2_NORMALIZER", "0").lower() in _TRUTHY


@lru_cache(maxsize=None)
def get_openai_api_key() -> str:
    """Ensure the OpenAI API key is configured and return it."""
    return _require_env("OPENAI_API_KEY")


@lru_cache(maxsize=None)
def get_gemini_api_key() -> str:
    """Return the Gemini (Google AI Studio) API key."""

    value = _optional_env("GEMINI_API_KEY")
    if not value:
        raise RuntimeError("Set GEMINI_API_KEY to use the Gemini provider")
    return value


@lru_cache(maxsize=None)
def get_claude_api_key() -> str:
    """Return the Anthropic Claude API key."""

    value = _optional_env("CLAUDE_API_KEY") or _optional_env("ANTHROPIC_API_KEY")
    if not value:
        raise RuntimeError("Set CLAUDE_API_KEY (or ANTHROPIC_API_KEY) to use the Claude provider")
    return value


@lru_cache(maxsize=None)
def get_grok_api_key() -> str:
    """Return the xAI Grok API key."""

    value = _optional_env("GROK_API_KEY") or _optional_env("XAI_API_KEY")
    if not value:
        raise RuntimeError("Set GROK_API_KEY (or XAI_API_KEY) to use the Grok provider")
    return value


@lru_cache(maxsize=None)
def get_orchestrator_config() -> OrchestratorConfig:
    """Build orchestrator settings from DEBATE_* variables.

    Raises:
        ValueError: If a variable is not a valid value
    """
    # Imported here: the debate package reads its own settings from this module
    from debate.schemas import OrchestratorConfig

    try:
        return OrchestratorConfig(
            max_retries=_int_env("DEBATE_MAX_RETRIES", 3),
            retry_delay_ms=_int_env("DEBATE_RETRY_DELAY_MS", 1000),
            agent_timeout_ms=_int_env("DEBATE_AGENT_TIMEOUT_MS", 30000),
            flow_mode=os.getenv("DEBATE_FLOW_MODE", "auto").lower(),
            min_proposition_length=_int_env("DEBATE_MIN_PROPOSITION_LENGTH", 10),
        )
    except ValidationError as e:
        raise ValueError(f"Invalid debate configuration: {e}") from e


@lru_cache(maxsize=None)
def get_agent_model_configs() -> Dict[str, Dict[str, Any]]:
    """Return role -> {"provider", "model"} from DEBATE_<ROLE>_PROVIDER/_MODEL."""
    configs: Dict[str, Dict[str, Any]] = {}
    for role, (provider, model) in DEFAULT_AGENT_MODELS.items():
        prefix = f"DEBATE_{role.upper()}"
        configs[role] = {
            "provider": (_optional_env(f"{prefix}_PROVIDER") or provider).lower(),
            "model": _optional_env(f"{prefix}_MODEL") or model,
        }
    return configs


@lru_cache(maxsize=None)
def get_log_level() -> int:
    """Return the logging level named by LOG_LEVEL (default INFO)."""
    name = os.getenv("LOG_LEVEL", "INFO").upper()
    level = logging.getLevelName(name)
    if not isinstance(level, int):
        raise ValueError(f"Unknown LOG_LEVEL {name!r}")
    return level
