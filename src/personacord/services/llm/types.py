from dataclasses import dataclass

from personacord.jobs.schemas import ReasoningEffort


@dataclass(slots=True)
class LiteLLMOptions:
    """Optional configuration for building LiteLLM kwargs."""

    api_key: str | None = None
    base_url: str | None = None
    extra_headers: dict[str, str] | None = None
    timeout: float | None = None
    temperature: float | None = None
    top_p: float | None = None
    top_k: int | None = None
    frequency_penalty: float | None = None
    presence_penalty: float | None = None
    repetition_penalty: float | None = None
    max_tokens: int | None = None
    reasoning_effort: ReasoningEffort | None = None


@dataclass(frozen=True, slots=True)
class CompletionText:
    """Text pulled out of a LiteLLM completion response."""

    content: str
    reasoning_content: str | None = None
    tokens_in: int | None = None
    tokens_out: int | None = None
    finish_reason: str | None = None
