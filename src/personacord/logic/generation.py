"""LLM invocation with retries, post-processing and cross-turn dedupe."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import httpx
import litellm

from personacord.core.config import LITELLM_TIMEOUT_SECONDS
from personacord.core.config.constants import (
    DEFAULT_GENERATION_MAX_ATTEMPTS,
    DEFAULT_GENERATION_TIMEOUT_SECONDS,
)
from personacord.core.error_handling import COMMON_HANDLER_EXCEPTIONS, log_exception
from personacord.core.exceptions import EMPTY_RESPONSE_MESSAGE, EmptyResponseError
from personacord.logic.postprocessing import (
    PostProcessResult,
    find_recent_duplicate,
    post_process_response,
)
from personacord.logic.prompt import reduce_history, speaker_name
from personacord.services.errors import (
    ParsedApiError,
    build_user_error_message,
    parse_api_error,
    to_error_info,
)
from personacord.services.llm import (
    LITELLM_EXCEPTIONS,
    extract_completion_text,
    options_from_personality,
    prepare_litellm_kwargs,
    provider_from_model,
    resolve_api_key,
)
from personacord.services.retry import RetryError, RetryOptions, with_retry

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping

    from personacord.jobs.schemas import ErrorInfo, LoadedPersonality, RequestContext
    from personacord.logic.prompt import AssembledPrompt, PromptMessage
    from personacord.services.diagnostics import DiagnosticCollector
    from personacord.services.llm import CompletionText, LiteLLMOptions

logger = logging.getLogger(__name__)

GENERATION_EXCEPTIONS = (
    RetryError,
    EmptyResponseError,
    asyncio.TimeoutError,
    httpx.HTTPError,
    *COMMON_HANDLER_EXCEPTIONS,
    *LITELLM_EXCEPTIONS,
)

RECENT_ASSISTANT_MESSAGES = 5
ESCALATED_TEMPERATURE_RANGE = (0.95, 1.0)
ESCALATED_FREQUENCY_PENALTY = 0.5
FINAL_ATTEMPT_HISTORY_REDUCTION = 0.3
HISTORY_REDUCTION_ATTEMPT = 3
_TEMPERATURE_RANDOM = secrets.SystemRandom()


@dataclass(frozen=True, slots=True)
class RetryEscalation:
    """Sampling overrides for a duplicate or empty-response regeneration."""

    attempt: int
    temperature: float | None = None
    frequency_penalty: float | None = None
    history_reduction: float = 0.0


def build_retry_config(attempt: int) -> RetryEscalation:
    """Return the escalation for the 1-based regeneration `attempt`.

    Attempt 1 uses the personality's own settings. Attempt 2 raises the
    temperature into [0.95, 1.0] and adds a frequency penalty. Attempt 3 also
    drops the oldest 30% of history.
    """
    if attempt <= 1:
        return RetryEscalation(attempt=attempt)
    low, high = ESCALATED_TEMPERATURE_RANGE
    return RetryEscalation(
        attempt=attempt,
        temperature=_TEMPERATURE_RANDOM.uniform(low, high),
        frequency_penalty=ESCALATED_FREQUENCY_PENALTY,
        history_reduction=(
            FINAL_ATTEMPT_HISTORY_REDUCTION
            if attempt >= HISTORY_REDUCTION_ATTEMPT
            else 0.0
        ),
    )


def recent_assistant_messages(
    context: RequestContext,
    limit: int = RECENT_ASSISTANT_MESSAGES,
) -> list[str]:
    """Return up to `limit` assistant turns, newest first."""
    turns = [
        message.content
        for message in reversed(context.conversation_history)
        if message.role == "assistant" and message.content.strip()
    ]
    return turns[:limit]


@dataclass(frozen=True, slots=True)
class GenerationOutcome:
    """Result of the generation stage, successful or not."""

    success: bool
    content: str | None = None
    thinking_content: str | None = None
    raw_content: str = ""
    tokens_in: int | None = None
    tokens_out: int | None = None
    model_used: str | None = None
    provider_used: str | None = None
    attempts: int = 0
    cross_turn_duplicate_detected: bool = False
    messages_sent: list[PromptMessage] = field(default_factory=list)
    error: ParsedApiError | None = None
    error_info: ErrorInfo | None = None
    personality_error_message: str | None = None


@dataclass(slots=True)
class _Candidate:
    processed: PostProcessResult
    completion: CompletionText
    attempt: int
    messages: list[PromptMessage]
    duplicate: bool = False


async def _default_completion(**kwargs: Any) -> Any:
    return await litellm.acompletion(**kwargs)


def _escalated_options(
    base: LiteLLMOptions,
    escalation: RetryEscalation,
) -> LiteLLMOptions:
    if escalation.temperature is None and escalation.frequency_penalty is None:
        return base
    options = dataclasses.replace(base)
    if escalation.temperature is not None:
        options.temperature = max(base.temperature or 0.0, escalation.temperature)
    if escalation.frequency_penalty is not None:
        options.frequency_penalty = escalation.frequency_penalty
    return options


def _loggable_params(kwargs: Mapping[str, Any]) -> dict[str, Any]:
    hidden = {"messages", "api_key", "extra_headers"}
    return {key: value for key, value in kwargs.items() if key not in hidden}


def _is_retryable(error: BaseException) -> bool:
    return parse_api_error(error).should_retry


class GenerationExecutor:
    """Invoke the model for an assembled prompt and clean up its answer."""

    def __init__(
        self,
        *,
        config: Mapping[str, Any] | None = None,
        completion: Callable[..., Awaitable[Any]] | None = None,
        max_attempts: int = DEFAULT_GENERATION_MAX_ATTEMPTS,
        timeout_seconds: float = DEFAULT_GENERATION_TIMEOUT_SECONDS,
        retry_options: RetryOptions | None = None,
    ) -> None:
        """Configure limits; `completion` defaults to ``litellm.acompletion``."""
        self._config = config or {}
        self._completion = completion or _default_completion
        self.max_attempts = max_attempts
        self.timeout_seconds = timeout_seconds
        self._retry_options = retry_options or RetryOptions(
            max_attempts=max_attempts,
        )

    async def _invoke(
        self,
        kwargs: dict[str, Any],
        *,
        remaining_seconds: float,
        log_context: str,
    ) -> CompletionText:
        options = dataclasses.replace(
            self._retry_options,
            global_timeout_seconds=remaining_seconds,
        )

        async def _call(_attempt: int) -> CompletionText:
            response = await self._completion(**kwargs)
            return extract_completion_text(response)

        return await with_retry(
            _call,
            options=options,
            should_retry=_is_retryable,
            retry_on=GENERATION_EXCEPTIONS,
            log_context=log_context,
        )

    def _failure(
        self,
        error: BaseException,
        personality: LoadedPersonality,
        *,
        attempts: int,
        model: str,
        provider: str,
        messages: list[PromptMessage],
        thinking: str | None,
        should_retry: bool | None = None,
    ) -> GenerationOutcome:
        underlying = error
        if (
            isinstance(error, RetryError)
            and error.last_error is not None
            and not error.timed_out
        ):
            underlying = error.last_error
        parsed = parse_api_error(underlying)
        if should_retry is not None:
            parsed.should_retry = should_retry
        return GenerationOutcome(
            success=False,
            thinking_content=thinking,
            model_used=model,
            provider_used=provider,
            attempts=attempts,
            messages_sent=messages,
            error=parsed,
            error_info=to_error_info(parsed),
            personality_error_message=build_user_error_message(
                personality.error_message,
                parsed,
            ),
        )

    def _success(
        self,
        candidate: _Candidate,
        *,
        model: str,
        provider: str,
        thinking: str | None,
        duplicate: bool,
    ) -> GenerationOutcome:
        return GenerationOutcome(
            success=True,
            content=candidate.processed.content,
            thinking_content=thinking,
            raw_content=candidate.completion.content,
            tokens_in=candidate.completion.tokens_in,
            tokens_out=candidate.completion.tokens_out,
            model_used=model,
            provider_used=provider,
            attempts=candidate.attempt,
            cross_turn_duplicate_detected=duplicate,
            messages_sent=candidate.messages,
        )

    async def execute(
        self,
        prompt: AssembledPrompt,
        personality: LoadedPersonality,
        context: RequestContext,
        collector: DiagnosticCollector | None = None,
    ) -> GenerationOutcome:
        """Generate, post-process and dedupe a response for `prompt`.

        Args:
            prompt: Assembled prompt; its ``messages`` are sent unchanged on the
                first attempt.
            personality: Personality supplying model and sampling settings.
            context: Request context, used for speaker names and the recent
                assistant turns checked for repeats.
            collector: Optional flight recorder.

        Returns:
            GenerationOutcome. Failures carry ``ErrorInfo`` and the message to
            show the user; this method does not raise for provider errors.

        """
        provider = provider_from_model(personality.model, personality.provider)
        base_options = options_from_personality(
            personality,
            api_key=resolve_api_key(self._config, provider),
            timeout=LITELLM_TIMEOUT_SECONDS,
        )
        recent = recent_assistant_messages(context)
        user_name = speaker_name(context)
        deadline = time.monotonic() + self.timeout_seconds

        fallback: _Candidate | None = None
        preserved_thinking: str | None = None
        messages: list[PromptMessage] = prompt.messages
        model_name = personality.model

        for attempt in range(1, self.max_attempts + 1):
            escalation = build_retry_config(attempt)
            if escalation.history_reduction:
                messages = reduce_history(prompt.messages, escalation.history_reduction)
            options = _escalated_options(base_options, escalation)
            kwargs = prepare_litellm_kwargs(
                personality.model,
                messages,
                provider=provider,
                options=options,
            )
            model_name = kwargs["model"]
            if collector is not None:
                collector.record_llm_config(
                    model=model_name,
                    provider=provider,
                    params=_loggable_params(kwargs),
                )
                if messages is not prompt.messages:
                    collector.record_assembled_prompt(messages, prompt.total_tokens)

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                if fallback is not None:
                    break
                return self._failure(
                    TimeoutError("Generation timed out before an attempt could run"),
                    personality,
                    attempts=attempt - 1,
                    model=model_name,
                    provider=provider,
                    messages=messages,
                    thinking=preserved_thinking,
                )

            try:
                completion = await self._invoke(
                    kwargs,
                    remaining_seconds=remaining,
                    log_context=f"{personality.name} attempt {attempt}",
                )
            except GENERATION_EXCEPTIONS as exc:
                log_exception(
                    logger=logger,
                    message="LLM invocation failed",
                    error=exc,
                    context={
                        "attempt": attempt,
                        "model": model_name,
                        "personality": personality.name,
                    },
                )
                if fallback is not None:
                    logger.info(
                        "Using response from attempt %s after invocation failure",
                        fallback.attempt,
                    )
                    break
                if collector is not None:
                    collector.record_llm_response(
                        raw_content="",
                        finish_reason="error",
                        prompt_tokens=None,
                        completion_tokens=None,
                        model_used=model_name,
                        attempts=attempt,
                    )
                return self._failure(
                    exc,
                    personality,
                    attempts=attempt,
                    model=model_name,
                    provider=provider,
                    messages=messages,
                    thinking=preserved_thinking,
                )

            if collector is not None:
                collector.record_llm_response(
                    raw_content=completion.content,
                    finish_reason=completion.finish_reason,
                    prompt_tokens=completion.tokens_in,
                    completion_tokens=completion.tokens_out,
                    model_used=model_name,
                    attempts=attempt,
                )

            processed = post_process_response(
                completion.content,
                personality_name=personality.name,
                user_name=user_name,
                api_reasoning=completion.reasoning_content,
            )
            if processed.thinking_content:
                preserved_thinking = processed.thinking_content

            candidate = _Candidate(
                processed=processed,
                completion=completion,
                attempt=attempt,
                messages=messages,
            )

            if not processed.content:
                logger.warning(
                    "Empty response after post-processing (attempt %s/%s, model %s)",
                    attempt,
                    self.max_attempts,
                    model_name,
                )
                if collector is not None:
                    collector.record_post_processing(processed)
                continue

            check = find_recent_duplicate(processed.content, recent)
            if collector is not None:
                collector.record_post_processing(
                    processed,
                    cross_turn_duplicate_detected=check.is_duplicate,
                )
            if not check.is_duplicate:
                if attempt > 1:
                    logger.info(
                        "Regeneration succeeded on attempt %s for %s",
                        attempt,
                        personality.name,
                    )
                return self._success(
                    candidate,
                    model=model_name,
                    provider=provider,
                    thinking=preserved_thinking,
                    duplicate=False,
                )

            logger.warning(
                "Cross-turn duplicate on attempt %s/%s (%s matched recent turn %s, "
                "similarity %.3f)",
                attempt,
                self.max_attempts,
                check.method,
                check.match_index,
                check.similarity,
            )
            candidate.duplicate = True
            fallback = candidate

        if fallback is not None:
            return self._success(
                fallback,
                model=model_name,
                provider=provider,
                thinking=preserved_thinking,
                duplicate=fallback.duplicate,
            )

        logger.warning(
            "All %s attempt(s) produced empty content for %s",
            self.max_attempts,
            personality.name,
        )
        return self._failure(
            EmptyResponseError(EMPTY_RESPONSE_MESSAGE),
            personality,
            attempts=self.max_attempts,
            model=model_name,
            provider=provider,
            messages=messages,
            thinking=preserved_thinking,
            should_retry=False,
        )
