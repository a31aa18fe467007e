"""Configuration package for book teacher."""

from book_teacher.config.app_config import (
    AgentDefaults,
    AppConfig,
    ProviderConfig,
    TutorConfig,
    clear_config_cache,
    get_provider_config,
    load_app_config,
)

__all__ = [
    "AgentDefaults",
    "AppConfig",
    "ProviderConfig",
    "TutorConfig",
    "clear_config_cache",
    "get_provider_config",
    "load_app_config",
]
