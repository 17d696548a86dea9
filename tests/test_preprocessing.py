from __future__ import annotations

from dataclasses import dataclass, field
from types import SimpleNamespace
from typing import Any

import httpx
import pytest

from personacord.core.exceptions import MediaNotFoundError
from personacord.jobs.preprocessing import (
    IMAGE_DESCRIPTION_PROMPT,
    VISION_TEMPERATURE,
    AudioTranscriber,
    ImageDescriber,
    build_vision_messages,
    download_attachment,
    select_vision_model,
)
from personacord.services.errors import ApiErrorCategory, parse_api_error

from ._fakes import (
    ScriptedCompletion,
    make_attachment,
    make_audio_job,
    make_image_job,
    make_personality,
)

VOICE_BYTES = b"OggS-voice-bytes"


@dataclass(slots=True)
class _FakeTranscription:
    text: str
    calls: list[dict[str, Any]] = field(default_factory=list)

    async def __call__(self, **kwargs: Any) -> SimpleNamespace:
        self.calls.append({**kwargs, "bytes": kwargs["file"].getvalue()})
        return SimpleNamespace(text=self.text)


def _cdn(status: int = 200, seen: list[str] | None = None) -> httpx.AsyncClient:
    def _handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(str(request.url))
        return httpx.Response(status, content=VOICE_BYTES if status == 200 else b"")

    return httpx.AsyncClient(transport=httpx.MockTransport(_handler))


@pytest.mark.asyncio
async def test_missing_media_raises_media_not_found() -> None:
    async with _cdn(404) as client:
        with pytest.raises(MediaNotFoundError) as exc_info:
            await download_attachment(client, make_attachment())

    parsed = parse_api_error(exc_info.value)
    assert parsed.category is ApiErrorCategory.MEDIA_NOT_FOUND
    assert not parsed.should_retry


@pytest.mark.asyncio
async def test_transcription_downloads_and_names_the_file() -> None:
    transcription = _FakeTranscription(text="  meet me at the pier  ")

    async with _cdn() as client:
        transcriber = AudioTranscriber(
            client,
            config={"providers": {"openai": {"api_key": "sk-test"}}},
            transcription=transcription,
        )
        result = await transcriber(make_audio_job())

    assert result.success
    assert result.content == "meet me at the pier"
    assert result.attachment_name == "voice.ogg"
    assert result.metadata is not None
    assert result.metadata.duration == 3.5
    (call,) = transcription.calls
    assert call["model"] == "whisper-1"
    assert call["api_key"] == "sk-test"
    assert call["file"].name == "voice.ogg"
    assert call["bytes"] == VOICE_BYTES


@pytest.mark.asyncio
async def test_transcripts_are_cached_by_original_url() -> None:
    transcription = _FakeTranscription(text="hello again")
    seen: list[str] = []
    job = make_audio_job(
        attachment=make_attachment(
            url="https://cdn.example.com/voice.ogg?ex=1",
            original_url="https://cdn.example.com/voice.ogg",
            content_type="audio/ogg",
            name="voice.ogg",
        ),
    )
    refreshed = make_audio_job(
        request_id="audio-2",
        attachment=job.attachment.model_copy(
            update={"url": "https://cdn.example.com/voice.ogg?ex=2"},
        ),
    )

    async with _cdn(seen=seen) as client:
        transcriber = AudioTranscriber(client, transcription=transcription)
        first = await transcriber(job)
        second = await transcriber(refreshed)

    assert first.content == second.content == "hello again"
    assert len(transcription.calls) == 1
    assert seen == ["https://cdn.example.com/voice.ogg?ex=1"]


@pytest.mark.asyncio
async def test_empty_transcript_is_not_a_success() -> None:
    async with _cdn() as client:
        transcriber = AudioTranscriber(client, transcription=_FakeTranscription(text=" "))
        result = await transcriber(make_audio_job())

    assert not result.success
    assert result.content is None
    assert result.error == "Transcription was empty"


@pytest.mark.asyncio
async def test_transcription_failure_is_contained() -> None:
    async with _cdn(404) as client:
        transcriber = AudioTranscriber(client, transcription=_FakeTranscription(text="x"))
        result = await transcriber(make_audio_job())

    assert not result.success
    assert result.error == "Attachment not found: https://cdn.example.com/voice.ogg"
    assert result.attachment_url == "https://cdn.example.com/voice.ogg"


def test_vision_model_priority() -> None:
    assert (
        select_vision_model(make_personality(vision_model="gemini/gemini-2.0-flash"))
        == "gemini/gemini-2.0-flash"
    )
    assert select_vision_model(make_personality()) == "openai/gpt-4o-mini"
    assert (
        select_vision_model(
            make_personality(model="mistral/mistral-large-latest"),
            "openrouter/qwen/qwen3-vl",
        )
        == "openrouter/qwen/qwen3-vl"
    )


def test_vision_messages_put_the_image_first() -> None:
    messages = build_vision_messages("https://cdn.example.com/a.png", "Be kind.")

    assert messages[0] == {"role": "system", "content": "Be kind."}
    assert messages[1]["content"] == [
        {"type": "image_url", "image_url": {"url": "https://cdn.example.com/a.png"}},
        {"type": "text", "text": IMAGE_DESCRIPTION_PROMPT},
    ]
    assert len(build_vision_messages("https://cdn.example.com/a.png")) == 1


@pytest.mark.asyncio
async def test_partial_image_failures_are_counted() -> None:
    completion = ScriptedCompletion(["A red door in a stone wall.", RuntimeError("boom")])
    job = make_image_job(
        attachments=[
            make_attachment(url="https://cdn.example.com/door.png", name="door.png"),
            make_attachment(url="https://cdn.example.com/wall.png", name="wall.png"),
        ],
        source_reference_number=2,
    )

    result = await ImageDescriber(completion=completion)(job)

    assert result.success
    assert [item.url for item in result.descriptions] == [
        "https://cdn.example.com/door.png",
    ]
    assert result.descriptions[0].description == "A red door in a stone wall."
    assert result.failed_count == 1
    assert result.error is None
    assert result.source_reference_number == 2
    first_call = completion.calls[0]
    assert first_call["model"] == "openai/gpt-4o-mini"
    assert first_call["temperature"] == VISION_TEMPERATURE


@pytest.mark.asyncio
async def test_all_images_failing_reports_the_last_error() -> None:
    completion = ScriptedCompletion([""])

    result = await ImageDescriber(completion=completion)(make_image_job())

    assert not result.success
    assert result.descriptions == []
    assert result.failed_count == 1
    assert result.error == "Vision model returned an empty description"
