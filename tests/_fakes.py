from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from types import SimpleNamespace
from typing import Any

from personacord.core.models import MemoryEntry
from personacord.jobs.schemas import (
    AttachmentMetadata,
    AudioTranscriptionJobData,
    ConversationMessage,
    DiscordDestination,
    ImageDescriptionJobData,
    JobDependency,
    LLMGenerationJobData,
    LoadedPersonality,
    MinimalJobContext,
    RequestContext,
)
from personacord.services.database import MemorySearch

BASE_TIME = datetime(2025, 3, 14, 12, 0, tzinfo=UTC)


def make_personality(**overrides: Any) -> LoadedPersonality:
    values: dict[str, Any] = {
        "id": "pers-1",
        "name": "Lilith",
        "model": "openai/gpt-4o-mini",
        "system_prompt": "Stay in character and speak to {user}.",
        "character_info": "A curious archivist.",
        "context_window_tokens": 8000,
    }
    values.update(overrides)
    return LoadedPersonality(**values)


def make_history(
    count: int,
    *,
    token_count: int | None = None,
    start: datetime = BASE_TIME,
) -> list[ConversationMessage]:
    return [
        ConversationMessage(
            role="assistant" if index % 2 else "user",
            content=f"history message {index}",
            id=f"h{index}",
            token_count=token_count,
            created_at=start + timedelta(minutes=index),
            persona_name=None if index % 2 else "Alice",
            discord_user_id=None if index % 2 else "42",
        )
        for index in range(count)
    ]


def make_context(**overrides: Any) -> RequestContext:
    values: dict[str, Any] = {
        "user_id": "42",
        "user_name": "Alice",
        "discord_username": "alice",
        "channel_id": "100",
    }
    values.update(overrides)
    return RequestContext(**values)


def make_attachment(**overrides: Any) -> AttachmentMetadata:
    values: dict[str, Any] = {
        "url": "https://cdn.example.com/file.png",
        "content_type": "image/png",
        "name": "file.png",
    }
    values.update(overrides)
    return AttachmentMetadata(**values)


def make_generation_job(
    *,
    request_id: str = "req-1",
    message: str = "What do you remember about the library?",
    personality: LoadedPersonality | None = None,
    context: RequestContext | None = None,
    dependencies: Sequence[JobDependency] = (),
) -> LLMGenerationJobData:
    return LLMGenerationJobData(
        request_id=request_id,
        response_destination=DiscordDestination(channel_id="100"),
        personality=personality or make_personality(),
        message=message,
        context=context or make_context(),
        dependencies=list(dependencies),
    )


def make_audio_job(request_id: str = "audio-1", **overrides: Any) -> AudioTranscriptionJobData:
    values: dict[str, Any] = {
        "request_id": request_id,
        "response_destination": DiscordDestination(channel_id="100"),
        "attachment": make_attachment(
            url="https://cdn.example.com/voice.ogg",
            content_type="audio/ogg",
            name="voice.ogg",
            is_voice_message=True,
            duration=3.5,
        ),
        "context": MinimalJobContext(user_id="42", channel_id="100"),
    }
    values.update(overrides)
    return AudioTranscriptionJobData(**values)


def make_image_job(request_id: str = "image-1", **overrides: Any) -> ImageDescriptionJobData:
    values: dict[str, Any] = {
        "request_id": request_id,
        "response_destination": DiscordDestination(channel_id="100"),
        "attachments": [make_attachment()],
        "personality": make_personality(),
        "context": MinimalJobContext(user_id="42", channel_id="100"),
    }
    values.update(overrides)
    return ImageDescriptionJobData(**values)


def completion_response(
    content: str | None,
    *,
    reasoning: str | None = None,
    prompt_tokens: int = 120,
    completion_tokens: int = 30,
    finish_reason: str = "stop",
) -> SimpleNamespace:
    return SimpleNamespace(
        choices=[
            SimpleNamespace(
                message=SimpleNamespace(content=content, reasoning_content=reasoning),
                finish_reason=finish_reason,
            ),
        ],
        usage=SimpleNamespace(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
        ),
    )


@dataclass(slots=True)
class ScriptedCompletion:
    """Stand-in for ``litellm.acompletion`` returning scripted outcomes in order."""

    outcomes: list[object]
    calls: list[dict[str, Any]] = field(default_factory=list)

    async def __call__(self, **kwargs: Any) -> object:
        self.calls.append(kwargs)
        outcome = self.outcomes[min(len(self.calls), len(self.outcomes)) - 1]
        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, str) or outcome is None:
            return completion_response(outcome)
        return outcome


@dataclass(slots=True)
class RecordingDiagnosticStore:
    records: list[Any] = field(default_factory=list)

    def save_diagnostic_log(self, record: Any) -> None:
        self.records.append(record)


class FailingDiagnosticStore:
    def save_diagnostic_log(self, record: Any) -> None:
        msg = f"database is locked ({record.request_id})"
        raise OSError(msg)


@dataclass(slots=True)
class FakeClock:
    now: float = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@dataclass(slots=True)
class StaticMemoryStore:
    """Memory store returning the same memories for every search."""

    memories: list[MemoryEntry]
    searches: list[MemorySearch] = field(default_factory=list)

    async def search(self, search: MemorySearch) -> list[MemoryEntry]:
        self.searches.append(search)
        return list(self.memories)


async def fixed_embedding(_text: str) -> list[float]:
    return [0.1, 0.2, 0.3]
