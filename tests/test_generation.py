from __future__ import annotations

from typing import Any

import pytest

from personacord.jobs.schemas import ConversationMessage, RequestContext
from personacord.logic.generation import (
    ESCALATED_FREQUENCY_PENALTY,
    GenerationExecutor,
    build_retry_config,
    recent_assistant_messages,
)
from personacord.logic.prompt import AssembledPrompt
from personacord.services.retry import RetryOptions

from ._fakes import ScriptedCompletion, completion_response, make_context, make_personality

PREVIOUS_ANSWER = "The archive closes at nine, and the east wing is off limits tonight."
FRESH_ANSWER = "Bring a lantern; the reading room lights flicker after dusk."


class _ProviderError(RuntimeError):
    def __init__(self, status_code: int) -> None:
        self.status_code = status_code
        super().__init__(f"provider returned {status_code}")


def _prompt(history_turns: int = 10) -> AssembledPrompt:
    messages: list[dict[str, Any]] = [{"role": "system", "content": "You are Lilith."}]
    messages.extend(
        {"role": "user" if index % 2 == 0 else "assistant", "content": f"turn {index}"}
        for index in range(history_turns)
    )
    messages.append({"role": "user", "content": "When does it close?"})
    return AssembledPrompt(
        messages=messages,
        total_tokens=50,
        system_prompt="You are Lilith.",
        current_message="When does it close?",
        history_count=history_turns,
        memory_count=0,
    )


def _context_with_previous_answer() -> RequestContext:
    return make_context(
        conversation_history=[
            ConversationMessage(role="user", content="When does it close?"),
            ConversationMessage(role="assistant", content=PREVIOUS_ANSWER),
        ],
    )


def _executor(completion: ScriptedCompletion, **kwargs: Any) -> GenerationExecutor:
    return GenerationExecutor(
        completion=completion,
        max_attempts=3,
        retry_options=RetryOptions(max_attempts=1),
        **kwargs,
    )


def test_retry_config_escalates_per_attempt() -> None:
    first = build_retry_config(1)
    second = build_retry_config(2)
    third = build_retry_config(3)

    assert first.temperature is None
    assert first.history_reduction == 0.0
    assert second.temperature is not None
    assert 0.95 <= second.temperature <= 1.0
    assert second.frequency_penalty == ESCALATED_FREQUENCY_PENALTY
    assert second.history_reduction == 0.0
    assert third.history_reduction == pytest.approx(0.3)


def test_recent_assistant_messages_are_newest_first_and_capped() -> None:
    history = [
        ConversationMessage(role="assistant", content=f"answer {index}")
        for index in range(8)
    ]

    recent = recent_assistant_messages(make_context(conversation_history=history))

    assert recent == ["answer 7", "answer 6", "answer 5", "answer 4", "answer 3"]


@pytest.mark.asyncio
async def test_first_clean_response_is_returned() -> None:
    completion = ScriptedCompletion([completion_response(FRESH_ANSWER, reasoning="why")])
    prompt = _prompt()

    outcome = await _executor(completion).execute(
        prompt,
        make_personality(),
        _context_with_previous_answer(),
    )

    assert outcome.success
    assert outcome.content == FRESH_ANSWER
    assert outcome.thinking_content == "why"
    assert outcome.tokens_in == 120
    assert outcome.tokens_out == 30
    assert outcome.attempts == 1
    assert outcome.messages_sent is prompt.messages
    assert completion.calls[0]["messages"] is prompt.messages
    assert completion.calls[0]["model"] == "openai/gpt-4o-mini"


@pytest.mark.asyncio
async def test_duplicate_responses_escalate_sampling_then_trim_history() -> None:
    completion = ScriptedCompletion([PREVIOUS_ANSWER, PREVIOUS_ANSWER, FRESH_ANSWER])
    prompt = _prompt(history_turns=10)

    outcome = await _executor(completion).execute(
        prompt,
        make_personality(),
        _context_with_previous_answer(),
    )

    assert outcome.success
    assert outcome.content == FRESH_ANSWER
    assert outcome.attempts == 3
    assert not outcome.cross_turn_duplicate_detected

    first, second, third = completion.calls
    assert "temperature" not in first
    assert "frequency_penalty" not in first
    assert 0.95 <= second["temperature"] <= 1.0
    assert second["frequency_penalty"] == ESCALATED_FREQUENCY_PENALTY
    assert len(second["messages"]) == len(prompt.messages)
    assert len(third["messages"]) == len(prompt.messages) - 3
    assert third["messages"][0] == prompt.messages[0]
    assert third["messages"][-1] == prompt.messages[-1]
    assert outcome.messages_sent == third["messages"]


@pytest.mark.asyncio
async def test_persistent_duplicate_falls_back_to_last_response() -> None:
    completion = ScriptedCompletion([PREVIOUS_ANSWER])

    outcome = await _executor(completion).execute(
        _prompt(),
        make_personality(),
        _context_with_previous_answer(),
    )

    assert outcome.success
    assert outcome.content == PREVIOUS_ANSWER
    assert outcome.cross_turn_duplicate_detected
    assert outcome.attempts == 3
    assert len(completion.calls) == 3


@pytest.mark.asyncio
async def test_empty_responses_exhaust_attempts_and_fail_without_retry() -> None:
    completion = ScriptedCompletion(["", "<think>only thoughts</think>", None])

    outcome = await _executor(completion).execute(
        _prompt(),
        make_personality(),
        make_context(),
    )

    assert not outcome.success
    assert outcome.error_info is not None
    assert outcome.error_info.category == "empty_response"
    assert outcome.error_info.should_retry is False
    assert outcome.thinking_content == "only thoughts"
    assert len(completion.calls) == 3


@pytest.mark.asyncio
async def test_permanent_provider_error_uses_personality_message_with_spoiler() -> None:
    completion = ScriptedCompletion([_ProviderError(401)])
    personality = make_personality(error_message="Lilith dozed off over a book.")

    outcome = await _executor(completion).execute(_prompt(), personality, make_context())

    assert not outcome.success
    assert len(completion.calls) == 1
    assert outcome.error_info is not None
    assert outcome.error_info.type == "permanent"
    assert outcome.error_info.category == "authentication"
    assert outcome.error_info.should_retry is False
    assert outcome.personality_error_message == (
        "Lilith dozed off over a book. "
        f"||*(error: authentication; reference: {outcome.error_info.reference_id})*||"
    )


@pytest.mark.asyncio
async def test_transient_error_without_personality_message_uses_default_text() -> None:
    completion = ScriptedCompletion([_ProviderError(503)])

    outcome = await _executor(completion).execute(
        _prompt(),
        make_personality(),
        make_context(),
    )

    assert not outcome.success
    assert outcome.error_info is not None
    assert outcome.error_info.type == "transient"
    assert outcome.error_info.should_retry is True
    assert outcome.error_info.status_code == 503
    assert outcome.personality_error_message == outcome.error_info.user_message


@pytest.mark.asyncio
async def test_error_after_duplicate_returns_the_duplicate() -> None:
    completion = ScriptedCompletion([PREVIOUS_ANSWER, _ProviderError(500)])

    outcome = await _executor(completion).execute(
        _prompt(),
        make_personality(),
        _context_with_previous_answer(),
    )

    assert outcome.success
    assert outcome.content == PREVIOUS_ANSWER
    assert outcome.cross_turn_duplicate_detected
    assert outcome.attempts == 1
