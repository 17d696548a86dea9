"""LLM service entrypoints and exports."""

from personacord.services.llm.core import (
    LITELLM_EXCEPTIONS,
    build_litellm_model_name,
    extract_completion_text,
    has_vision_support,
    options_from_personality,
    prepare_litellm_kwargs,
    provider_from_model,
    resolve_api_key,
    supports_reasoning_effort,
)
from personacord.services.llm.types import CompletionText, LiteLLMOptions

__all__ = [
    "LITELLM_EXCEPTIONS",
    "CompletionText",
    "LiteLLMOptions",
    "build_litellm_model_name",
    "extract_completion_text",
    "has_vision_support",
    "options_from_personality",
    "prepare_litellm_kwargs",
    "provider_from_model",
    "resolve_api_key",
    "supports_reasoning_effort",
]
