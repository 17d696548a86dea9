"""Typed accessors for pipeline settings with safe fallbacks."""

from collections.abc import Mapping
from typing import Any

from personacord.core.config.constants import (
    DEFAULT_CONTEXT_MAX_MESSAGES,
    DEFAULT_DEPENDENCY_POLL_INTERVAL_SECONDS,
    DEFAULT_DEPENDENCY_WAIT_TIMEOUT_SECONDS,
    DEFAULT_EMBEDDING_MODEL,
    DEFAULT_GENERATION_MAX_ATTEMPTS,
    DEFAULT_GENERATION_TIMEOUT_SECONDS,
    DEFAULT_RESULT_TTL_SECONDS,
    DEFAULT_VISION_FALLBACK_MODEL,
    DEFAULT_WHISPER_MODEL,
    DEFAULT_WORKER_CONCURRENCY,
)
from personacord.core.config.manager import ensure_list


def get_int_setting(
    config: Mapping[str, Any],
    key: str,
    default: int,
    *,
    minimum: int = 1,
) -> int:
    """Return an integer setting, falling back to `default` on bad values."""
    raw_value = config.get(key, default)

    # bool is an int subclass; `true` in YAML is never a valid count
    if isinstance(raw_value, bool):
        return default

    try:
        value = int(raw_value)
    except (TypeError, ValueError):
        return default

    if value < minimum:
        return default
    return value


def get_float_setting(
    config: Mapping[str, Any],
    key: str,
    default: float,
    *,
    minimum: float = 0.0,
) -> float:
    """Return a float setting, falling back to `default` on bad values."""
    raw_value = config.get(key, default)

    if isinstance(raw_value, bool):
        return default

    try:
        value = float(raw_value)
    except (TypeError, ValueError):
        return default

    if value <= minimum:
        return default
    return value


def get_str_setting(config: Mapping[str, Any], key: str, default: str) -> str:
    """Return a non-empty string setting or `default`."""
    raw_value = config.get(key)
    if isinstance(raw_value, str) and raw_value.strip():
        return raw_value.strip()
    return default


def worker_concurrency(config: Mapping[str, Any]) -> int:
    """Return the bounded worker pool size."""
    return get_int_setting(config, "worker_concurrency", DEFAULT_WORKER_CONCURRENCY)


def dependency_poll_interval_seconds(config: Mapping[str, Any]) -> float:
    """Return the delay between dependency re-checks."""
    return get_float_setting(
        config,
        "dependency_poll_interval_seconds",
        DEFAULT_DEPENDENCY_POLL_INTERVAL_SECONDS,
    )


def dependency_wait_timeout_seconds(config: Mapping[str, Any]) -> float:
    """Return the overall dependency wait budget for one generation job."""
    return get_float_setting(
        config,
        "dependency_wait_timeout_seconds",
        DEFAULT_DEPENDENCY_WAIT_TIMEOUT_SECONDS,
    )


def result_ttl_seconds(config: Mapping[str, Any]) -> float:
    """Return how long completed results stay queryable."""
    return get_float_setting(
        config,
        "result_ttl_seconds",
        DEFAULT_RESULT_TTL_SECONDS,
    )


def generation_timeout_seconds(config: Mapping[str, Any]) -> float:
    """Return the global wall-clock budget spanning all generation attempts."""
    return get_float_setting(
        config,
        "generation_timeout_seconds",
        DEFAULT_GENERATION_TIMEOUT_SECONDS,
    )


def generation_max_attempts(config: Mapping[str, Any]) -> int:
    """Return the maximum number of LLM invocation attempts."""
    return get_int_setting(
        config,
        "generation_max_attempts",
        DEFAULT_GENERATION_MAX_ATTEMPTS,
    )


def context_max_messages(config: Mapping[str, Any]) -> int:
    """Return the default history cap by message count."""
    return get_int_setting(
        config,
        "context_max_messages",
        DEFAULT_CONTEXT_MAX_MESSAGES,
    )


def context_max_age_seconds(config: Mapping[str, Any]) -> float | None:
    """Return the optional history cap by age, or None when disabled."""
    raw_value = config.get("context_max_age_seconds")
    if raw_value is None or isinstance(raw_value, bool):
        return None
    try:
        value = float(raw_value)
    except (TypeError, ValueError):
        return None
    return value if value > 0 else None


def embedding_model(config: Mapping[str, Any]) -> str:
    """Return the embedding model used for memory search queries."""
    return get_str_setting(config, "embedding_model", DEFAULT_EMBEDDING_MODEL)


def whisper_model(config: Mapping[str, Any]) -> str:
    """Return the speech-to-text model."""
    return get_str_setting(config, "whisper_model", DEFAULT_WHISPER_MODEL)


def vision_fallback_model(config: Mapping[str, Any]) -> str:
    """Return the vision model used when a personality has none."""
    return get_str_setting(
        config,
        "vision_fallback_model",
        DEFAULT_VISION_FALLBACK_MODEL,
    )


def provider_api_keys(config: Mapping[str, Any], provider: str) -> list[str]:
    """Return configured API keys for `provider` as a list."""
    providers = config.get("providers")
    if not isinstance(providers, Mapping):
        return []
    provider_config = providers.get(provider)
    if not isinstance(provider_config, Mapping):
        return []
    return ensure_list(provider_config.get("api_key"))
