"""Core LLM service operations."""

from __future__ import annotations

import os
import re
from typing import TYPE_CHECKING, Any

import litellm

from personacord.core.config.settings import provider_api_keys
from personacord.services.llm.types import CompletionText, LiteLLMOptions

if TYPE_CHECKING:
    from collections.abc import Mapping

    from personacord.jobs.schemas import LoadedPersonality

OPENROUTER_SITE_URL_ENV = "OR_SITE_URL"
OPENROUTER_APP_NAME_ENV = "OR_APP_NAME"

_KNOWN_PROVIDERS = frozenset(
    {"anthropic", "gemini", "groq", "mistral", "openai", "openrouter", "xai"},
)
_REASONING_MODEL_PATTERN = re.compile(
    r"(^|/)(o[134](-mini|-pro)?|gpt-5[\w.-]*|deepseek-r1[\w.-]*|grok-[34][\w.-]*-mini"
    r"|claude-(3-7|sonnet-4|opus-4)[\w.-]*|gemini-2\.5[\w.-]*)$",
)


def _collect_litellm_exceptions() -> tuple[type[Exception], ...]:
    return tuple(
        dict.fromkeys(
            exception_type
            for exception_type in vars(litellm.exceptions).values()
            if isinstance(exception_type, type)
            and issubclass(exception_type, Exception)
        ),
    )


LITELLM_EXCEPTIONS = _collect_litellm_exceptions()


def provider_from_model(model: str, provider: str | None = None) -> str:
    """Return the provider for `model`, honoring an explicit override."""
    if provider:
        return provider
    prefix, separator, _ = model.partition("/")
    if separator and prefix in _KNOWN_PROVIDERS:
        return prefix
    normalized = model.lower()
    if normalized.startswith("claude"):
        return "anthropic"
    if normalized.startswith("gemini"):
        return "gemini"
    return "openai"


def build_litellm_model_name(provider: str, model: str) -> str:
    """Build the LiteLLM model name with proper provider prefix.

    Args:
        provider: Provider name (e.g., "openrouter", "openai")
        model: Model name, with or without a provider prefix

    Returns:
        LiteLLM-compatible model string (e.g., "openrouter/anthropic/claude-sonnet-4")

    """
    if model.startswith(f"{provider}/"):
        return model
    if provider in {"anthropic", "gemini", "groq", "mistral", "openrouter", "xai"}:
        return f"{provider}/{model}"
    # OpenAI-compatible providers use the bare model name plus base_url
    return model


def has_vision_support(model: str) -> bool:
    """Return True when `model` accepts image input natively."""
    normalized = model.lower()

    if "gpt-4" in normalized and any(
        marker in normalized for marker in ("vision", "4o", "turbo")
    ):
        return True
    if "claude-3" in normalized or "claude-4" in normalized:
        return True
    if "gemini" in normalized and any(
        marker in normalized for marker in ("1.5", "2.", "vision")
    ):
        return True
    return "llama" in normalized and "vision" in normalized


def supports_reasoning_effort(model: str) -> bool:
    """Return True when `model` accepts a reasoning effort parameter."""
    return bool(_REASONING_MODEL_PATTERN.search(model.lower()))


def options_from_personality(
    personality: LoadedPersonality,
    *,
    api_key: str | None = None,
    timeout: float | None = None,
) -> LiteLLMOptions:
    """Copy a personality's sampling parameters into LiteLLM options."""
    return LiteLLMOptions(
        api_key=api_key,
        timeout=timeout,
        temperature=personality.temperature,
        top_p=personality.top_p,
        top_k=personality.top_k,
        frequency_penalty=personality.frequency_penalty,
        presence_penalty=personality.presence_penalty,
        repetition_penalty=personality.repetition_penalty,
        max_tokens=personality.max_tokens,
        reasoning_effort=personality.reasoning_effort,
    )


def _build_openrouter_headers() -> dict[str, str]:
    headers: dict[str, str] = {}
    if site_url := os.getenv(OPENROUTER_SITE_URL_ENV):
        headers["HTTP-Referer"] = site_url
    if app_name := os.getenv(OPENROUTER_APP_NAME_ENV):
        headers["X-Title"] = app_name
    return headers


def prepare_litellm_kwargs(
    model: str,
    messages: list[dict[str, Any]],
    *,
    provider: str | None = None,
    options: LiteLLMOptions | None = None,
) -> dict[str, Any]:
    """Prepare kwargs for LiteLLM acompletion().

    Args:
        model: Model identifier as configured on the personality
        messages: Chat messages, passed through unchanged
        provider: Provider override; derived from the model when omitted
        options: Sampling parameters and connection settings

    Returns:
        Dict of kwargs ready to pass to litellm.acompletion()

    """
    options = options or LiteLLMOptions()
    resolved_provider = provider_from_model(model, provider)

    kwargs: dict[str, Any] = {
        "model": build_litellm_model_name(resolved_provider, model),
        "messages": messages,
        # Providers reject parameters they do not know (top_k on OpenAI, ...)
        "drop_params": True,
    }
    if options.api_key:
        kwargs["api_key"] = options.api_key
    if options.base_url:
        kwargs["base_url"] = options.base_url
    if options.timeout is not None:
        kwargs["timeout"] = options.timeout

    sampling = {
        "temperature": options.temperature,
        "top_p": options.top_p,
        "top_k": options.top_k,
        "frequency_penalty": options.frequency_penalty,
        "presence_penalty": options.presence_penalty,
        "repetition_penalty": options.repetition_penalty,
        "max_tokens": options.max_tokens,
    }
    kwargs.update({key: value for key, value in sampling.items() if value is not None})

    if options.reasoning_effort and supports_reasoning_effort(model):
        kwargs["reasoning_effort"] = options.reasoning_effort

    headers: dict[str, str] = {}
    if resolved_provider == "openrouter":
        headers.update(_build_openrouter_headers())
    if options.extra_headers:
        headers.update(options.extra_headers)
    if headers:
        kwargs["extra_headers"] = headers

    return kwargs


def _read_field(source: object, name: str) -> Any:
    if isinstance(source, dict):
        return source.get(name)
    return getattr(source, name, None)


def extract_completion_text(response: object) -> CompletionText:
    """Pull content, provider reasoning and usage out of a completion response."""
    choices = _read_field(response, "choices") or []
    first_choice = choices[0] if choices else None
    message = _read_field(first_choice, "message") if first_choice else None

    content = _read_field(message, "content") if message is not None else None
    reasoning = _read_field(message, "reasoning_content") if message is not None else None
    finish_reason = _read_field(first_choice, "finish_reason") if first_choice else None

    usage = _read_field(response, "usage")
    tokens_in = _read_field(usage, "prompt_tokens") if usage is not None else None
    tokens_out = _read_field(usage, "completion_tokens") if usage is not None else None

    return CompletionText(
        content=content if isinstance(content, str) else "",
        reasoning_content=reasoning if isinstance(reasoning, str) and reasoning else None,
        tokens_in=tokens_in if isinstance(tokens_in, int) else None,
        tokens_out=tokens_out if isinstance(tokens_out, int) else None,
        finish_reason=finish_reason if isinstance(finish_reason, str) else None,
    )


def resolve_api_key(config: Mapping[str, Any], provider: str) -> str | None:
    """Return the first configured key for `provider` (None lets LiteLLM use env)."""
    keys = provider_api_keys(config, provider)
    return keys[0] if keys else None
