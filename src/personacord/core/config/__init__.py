"""Configuration loading and constants for personacord.

This package exposes the split configuration modules as a single interface.
"""

from personacord.core.config.constants import (
    DEFAULT_CONTEXT_WINDOW_TOKENS,
    DEFAULT_MEMORY_LIMIT,
    DEFAULT_MEMORY_SCORE_THRESHOLD,
    DEPENDENCY_MAP_TTL_SECONDS,
    LITELLM_TIMEOUT_SECONDS,
    MAX_RAW_ERROR_CHARS,
    MEMORY_PREVIEW_CHARS,
    NOT_RECORDED,
    RECENT_HISTORY_QUERY_WINDOW,
    STM_LTM_BUFFER_MS,
    VISION_TIMEOUT_SECONDS,
)
from personacord.core.config.manager import (
    CONFIG_CACHE_TTL,
    ConfigFileEmptyError,
    ConfigFileNotFoundError,
    clear_config_cache,
    ensure_list,
    get_config,
    load_config_or_default,
)

__all__ = [
    "CONFIG_CACHE_TTL",
    "DEFAULT_CONTEXT_WINDOW_TOKENS",
    "DEFAULT_MEMORY_LIMIT",
    "DEFAULT_MEMORY_SCORE_THRESHOLD",
    "DEPENDENCY_MAP_TTL_SECONDS",
    "LITELLM_TIMEOUT_SECONDS",
    "MAX_RAW_ERROR_CHARS",
    "MEMORY_PREVIEW_CHARS",
    "NOT_RECORDED",
    "RECENT_HISTORY_QUERY_WINDOW",
    "STM_LTM_BUFFER_MS",
    "VISION_TIMEOUT_SECONDS",
    "ConfigFileEmptyError",
    "ConfigFileNotFoundError",
    "clear_config_cache",
    "ensure_list",
    "get_config",
    "load_config_or_default",
]
