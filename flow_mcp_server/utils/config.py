"""
Configuration for the workflow MCP server.

All settings come from environment variables so the server can be configured
the same way under stdio and http transports.
"""

import logging
import os
from typing import Dict, Mapping, Optional

logger = logging.getLogger(__name__)

# Provider name -> environment variable holding its API key
PROVIDER_KEY_VARIABLES = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "mistral": "MISTRAL_API_KEY",
    "perplexity": "PERPLEXITY_API_KEY",
    "grok": "XAI_API_KEY",
    "deepseek": "DEEPSEEK_API_KEY",
}


def _get_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Invalid value for {name}: {raw!r}, using default {default}")
        return default


def _get_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Invalid value for {name}: {raw!r}, using default {default}")
        return default


class Settings:
    """
    Runtime settings for the engine, the generation client and the store.
    """

    def __init__(
        self,
        default_provider: str = "openai",
        default_model: str = "gpt-4o",
        default_max_tokens: int = 4000,
        ai_timeout_seconds: float = 120.0,
        output_ttl_hours: float = 24.0,
        max_executions: int = 500,
        execution_ttl_hours: float = 24.0,
        store_url: Optional[str] = None,
        store_key: Optional[str] = None,
        store_table: str = "alchemist_executions",
        log_level: str = "INFO",
        transport: str = "stdio",
        provider_api_keys: Optional[Dict[str, str]] = None,
    ):
        self.default_provider = default_provider
        self.default_model = default_model
        self.default_max_tokens = default_max_tokens
        self.ai_timeout_seconds = ai_timeout_seconds
        self.output_ttl_hours = output_ttl_hours
        self.max_executions = max_executions
        self.execution_ttl_hours = execution_ttl_hours
        self.store_url = store_url
        self.store_key = store_key
        self.store_table = store_table
        self.log_level = log_level
        self.transport = transport
        self.provider_api_keys = provider_api_keys or {}

    def get_api_key(self, provider: str) -> Optional[str]:
        return self.provider_api_keys.get(provider)

    def to_dict(self) -> Dict[str, object]:
        """Settings as a dict, with API keys reduced to the providers configured."""
        return {
            "default_provider": self.default_provider,
            "default_model": self.default_model,
            "default_max_tokens": self.default_max_tokens,
            "ai_timeout_seconds": self.ai_timeout_seconds,
            "output_ttl_hours": self.output_ttl_hours,
            "max_executions": self.max_executions,
            "execution_ttl_hours": self.execution_ttl_hours,
            "store_url": self.store_url,
            "store_table": self.store_table,
            "log_level": self.log_level,
            "transport": self.transport,
            "configured_providers": sorted(self.provider_api_keys),
        }


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Build Settings from the environment.

    Args:
        env: Mapping to read from (defaults to os.environ)

    Returns:
        Settings instance
    """
    env = os.environ if env is None else env

    api_keys = {}
    for provider, variable in PROVIDER_KEY_VARIABLES.items():
        value = env.get(variable)
        if value:
            api_keys[provider] = value

    return Settings(
        default_provider=env.get("FLOW_DEFAULT_PROVIDER", "openai"),
        default_model=env.get("FLOW_DEFAULT_MODEL", "gpt-4o"),
        default_max_tokens=_get_int(env, "FLOW_DEFAULT_MAX_TOKENS", 4000),
        ai_timeout_seconds=_get_float(env, "FLOW_AI_TIMEOUT_SECONDS", 120.0),
        output_ttl_hours=_get_float(env, "FLOW_OUTPUT_TTL_HOURS", 24.0),
        max_executions=_get_int(env, "FLOW_MAX_EXECUTIONS", 500),
        execution_ttl_hours=_get_float(env, "FLOW_EXECUTION_TTL_HOURS", 24.0),
        store_url=env.get("FLOW_STORE_URL") or None,
        store_key=env.get("FLOW_STORE_KEY") or None,
        store_table=env.get("FLOW_STORE_TABLE", "alchemist_executions"),
        log_level=env.get("FLOW_LOG_LEVEL", "INFO").upper(),
        transport=env.get("MCP_TRANSPORT", "stdio"),
        provider_api_keys=api_keys,
    )
