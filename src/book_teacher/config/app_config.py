"""Application configuration loader.

Loads centralized configuration from data/config/app_config_v1.yaml,
falling back to built-in defaults when the file is missing.

Process configuration (providers, retry and loop bounds, paths) lives here.
The per-deployment agent settings (model, token budget, auto-save) live in
the agent_setting table; ``agent_defaults`` only seeds that row.

Usage:
    from book_teacher.config.app_config import load_app_config, get_provider_config

    config = load_app_config()
    provider = get_provider_config("openai")
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog
import yaml

logger = structlog.get_logger(__name__)

# Config file path (relative to project root)
CONFIG_FILE = Path("data/config/app_config_v1.yaml")


@dataclass
class ProviderConfig:
    """Configuration for a single LLM provider."""

    base_url: str | None
    default_model: str
    api_key_env: str | None = None

    def get_api_key(self) -> str | None:
        """Get API key from environment variable."""
        if self.api_key_env:
            return os.environ.get(self.api_key_env)
        return None


@dataclass
class TutorConfig:
    """Configuration for the tutoring engine."""

    default_provider: str = "openai"
    tutor_name: str = "Vera"
    max_retries: int = 3
    retry_backoff_seconds: float = 0.5
    max_tool_rounds: int = 8
    max_summary_rounds: int = 6
    idle_timeout_seconds: int = 1800


@dataclass
class AgentDefaults:
    """Values used to seed the agent_setting row on first init."""

    ai_model: str = "gpt-4o-mini"
    token_budget: int = 100000
    auto_save_seconds: int | None = 600


@dataclass
class AppConfig:
    """Application-wide configuration."""

    providers: dict[str, ProviderConfig] = field(default_factory=dict)
    tutor: TutorConfig = field(default_factory=TutorConfig)
    agent_defaults: AgentDefaults = field(default_factory=AgentDefaults)
    paths: dict[str, str] = field(default_factory=dict)

    @property
    def db_path(self) -> Path:
        """Database location from paths.db_path."""
        return Path(self.paths.get("db_path", "db/book_teacher.db"))


# Module-level cache
_cached_config: AppConfig | None = None


def _get_defaults() -> dict[str, Any]:
    """Get default configuration values."""
    return {
        "providers": {
            "lmstudio": {
                "base_url": "http://localhost:1234/v1",
                "default_model": "llama-3.2-3b-instruct",
                "api_key_env": None,
            },
            "openai": {
                "base_url": "https://api.openai.com/v1",
                "default_model": "gpt-4o-mini",
                "api_key_env": "OPENAI_API_KEY",
            },
            "xai": {
                "base_url": "https://api.x.ai/v1",
                "default_model": "grok-2-latest",
                "api_key_env": "XAI_API_KEY",
            },
        },
        "tutor": {
            "default_provider": "openai",
            "tutor_name": "Vera",
            "max_retries": 3,
            "retry_backoff_seconds": 0.5,
            "max_tool_rounds": 8,
            "max_summary_rounds": 6,
            "idle_timeout_seconds": 1800,
        },
        "agent_defaults": {
            "ai_model": "gpt-4o-mini",
            "token_budget": 100000,
            "auto_save_seconds": 600,
        },
        "paths": {
            "db_path": "db/book_teacher.db",
            "config_dir": "data/config",
        },
    }


def _parse_config(data: dict[str, Any]) -> AppConfig:
    """Parse configuration dictionary into AppConfig object.

    Sections missing from the file keep their defaults.
    """
    defaults = _get_defaults()

    providers = {}
    for name, pconfig in (data.get("providers") or defaults["providers"]).items():
        providers[name] = ProviderConfig(
            base_url=pconfig.get("base_url"),
            default_model=pconfig.get("default_model", "default"),
            api_key_env=pconfig.get("api_key_env"),
        )

    tutor_data = {**defaults["tutor"], **(data.get("tutor") or {})}
    tutor = TutorConfig(
        default_provider=tutor_data["default_provider"],
        tutor_name=tutor_data["tutor_name"],
        max_retries=int(tutor_data["max_retries"]),
        retry_backoff_seconds=float(tutor_data["retry_backoff_seconds"]),
        max_tool_rounds=int(tutor_data["max_tool_rounds"]),
        max_summary_rounds=int(tutor_data["max_summary_rounds"]),
        idle_timeout_seconds=int(tutor_data["idle_timeout_seconds"]),
    )

    agent_data = {**defaults["agent_defaults"], **(data.get("agent_defaults") or {})}
    agent_defaults = AgentDefaults(
        ai_model=agent_data["ai_model"],
        token_budget=int(agent_data["token_budget"]),
        auto_save_seconds=agent_data["auto_save_seconds"],
    )

    paths = {**defaults["paths"], **(data.get("paths") or {})}

    return AppConfig(
        providers=providers,
        tutor=tutor,
        agent_defaults=agent_defaults,
        paths=paths,
    )


def load_app_config(
    force_reload: bool = False, config_path: Path | None = None
) -> AppConfig:
    """Load application config, falling back to defaults.

    Args:
        force_reload: If True, ignore cached config and reload from file.
        config_path: Read this file instead of CONFIG_FILE.

    Returns:
        AppConfig object with all settings.
    """
    global _cached_config

    if _cached_config is not None and not force_reload and config_path is None:
        return _cached_config

    path = config_path or CONFIG_FILE
    data: dict[str, Any]

    if path.exists():
        logger.debug("loading_app_config", source=str(path))
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    else:
        logger.info("using_default_config")
        data = _get_defaults()

    _cached_config = _parse_config(data)
    return _cached_config


def get_provider_config(provider: str) -> ProviderConfig | None:
    """Get configuration for a specific provider.

    Args:
        provider: Provider name (e.g., "lmstudio", "openai")

    Returns:
        ProviderConfig or None if provider not found.
    """
    config = load_app_config()
    return config.providers.get(provider)


def clear_config_cache() -> None:
    """Clear the configuration cache.

    Useful for testing or when config is modified at runtime.
    """
    global _cached_config
    _cached_config = None
