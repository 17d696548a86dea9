"""Audio transcription and image description jobs.

Both processors contain their own failures: a download or provider error
becomes an unsuccessful result, never an exception, so a generation job that
depends on them can proceed without the attachment.
"""

from __future__ import annotations

import asyncio
import io
import logging
import time
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import httpx
import litellm

from personacord.core.config import VISION_TIMEOUT_SECONDS
from personacord.core.config.constants import (
    DEFAULT_RESULT_TTL_SECONDS,
    DEFAULT_VISION_FALLBACK_MODEL,
    DEFAULT_WHISPER_MODEL,
)
from personacord.core.error_handling import COMMON_HANDLER_EXCEPTIONS, log_exception
from personacord.core.exceptions import MediaNotFoundError
from personacord.jobs.queue import TtlMap
from personacord.jobs.schemas import (
    AudioTranscriptionJobData,
    AudioTranscriptionMetadata,
    AudioTranscriptionResult,
    ImageDescription,
    ImageDescriptionJobData,
    ImageDescriptionMetadata,
    ImageDescriptionResult,
)
from personacord.services.http import HttpRetryOptions, request_with_retries
from personacord.services.llm import (
    LITELLM_EXCEPTIONS,
    LiteLLMOptions,
    extract_completion_text,
    has_vision_support,
    prepare_litellm_kwargs,
    provider_from_model,
    resolve_api_key,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping

    from personacord.jobs.schemas import AttachmentMetadata, LoadedPersonality

logger = logging.getLogger(__name__)

PREPROCESSING_EXCEPTIONS = (
    *COMMON_HANDLER_EXCEPTIONS,
    httpx.HTTPError,
    *LITELLM_EXCEPTIONS,
)

IMAGE_DESCRIPTION_PROMPT = (
    "Provide a detailed, objective description of this image for archival "
    "purposes. Focus on visual details without making value judgments. "
    "Describe what you see clearly and thoroughly."
)
VISION_TEMPERATURE = 0.3
HTTP_NOT_FOUND = 404


def _elapsed_ms(started_at: float) -> int:
    return int((time.monotonic() - started_at) * 1000)


async def download_attachment(
    client: httpx.AsyncClient,
    attachment: AttachmentMetadata,
) -> bytes:
    """Download `attachment` with bounded retries.

    Raises:
        MediaNotFoundError: If the URL returns 404.
        httpx.HTTPStatusError: On any other error status.

    """
    response = await request_with_retries(
        lambda: client.get(attachment.url),
        options=HttpRetryOptions(),
        log_context=attachment.name or attachment.url,
    )
    if response.status_code == HTTP_NOT_FOUND:
        raise MediaNotFoundError(attachment.url)
    response.raise_for_status()
    return response.content


def select_vision_model(
    personality: LoadedPersonality,
    fallback_model: str = DEFAULT_VISION_FALLBACK_MODEL,
) -> str:
    """Pick the model that describes images for `personality`.

    Priority: the personality's vision model, then its main model when that
    accepts images natively, then the configured fallback.
    """
    if personality.vision_model:
        return personality.vision_model
    if has_vision_support(personality.model):
        return personality.model
    return fallback_model


def build_vision_messages(
    image_url: str,
    system_prompt: str | None = None,
) -> list[dict[str, Any]]:
    """Return the chat messages that ask for one image description."""
    messages: list[dict[str, Any]] = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    messages.append(
        {
            "role": "user",
            "content": [
                {"type": "image_url", "image_url": {"url": image_url}},
                {"type": "text", "text": IMAGE_DESCRIPTION_PROMPT},
            ],
        },
    )
    return messages


async def _default_transcription(**kwargs: Any) -> Any:
    return await litellm.atranscription(**kwargs)


async def _default_completion(**kwargs: Any) -> Any:
    return await litellm.acompletion(**kwargs)


class AudioTranscriber:
    """Processor for ``audio-transcription`` jobs."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        *,
        config: Mapping[str, Any] | None = None,
        model: str = DEFAULT_WHISPER_MODEL,
        transcription: Callable[..., Awaitable[Any]] | None = None,
        cache_ttl_seconds: float = DEFAULT_RESULT_TTL_SECONDS,
    ) -> None:
        """Bind the download client and the speech-to-text model."""
        self._http_client = http_client
        self._config = config or {}
        self.model = model
        self._transcription = transcription or _default_transcription
        # Voice messages are re-sent with fresh CDN urls; key on the original
        self._cache: TtlMap[str, str] = TtlMap(cache_ttl_seconds)

    async def transcribe(self, attachment: AttachmentMetadata) -> str:
        """Download and transcribe one attachment."""
        cache_key = attachment.original_url
        if cache_key:
            cached = self._cache.get(cache_key)
            if cached is not None:
                logger.info("Using cached transcript for %s", cache_key)
                return cached

        data = await download_attachment(self._http_client, attachment)
        audio_file = io.BytesIO(data)
        audio_file.name = attachment.name or "audio.ogg"

        provider = provider_from_model(self.model)
        kwargs: dict[str, Any] = {"model": self.model, "file": audio_file}
        if api_key := resolve_api_key(self._config, provider):
            kwargs["api_key"] = api_key
        response = await self._transcription(**kwargs)
        text = response.get("text") if isinstance(response, dict) else response.text
        transcript = (text or "").strip()

        if cache_key and transcript:
            self._cache.set(cache_key, transcript)
        return transcript

    async def __call__(self, job: AudioTranscriptionJobData) -> AudioTranscriptionResult:
        """Run one transcription job."""
        started_at = time.monotonic()
        attachment = job.attachment
        try:
            transcript = await self.transcribe(attachment)
        except PREPROCESSING_EXCEPTIONS as exc:
            log_exception(
                logger=logger,
                message="Audio transcription failed",
                error=exc,
                context={"request_id": job.request_id, "url": attachment.url},
            )
            return AudioTranscriptionResult(
                request_id=job.request_id,
                success=False,
                error=str(exc),
                attachment_url=attachment.url,
                attachment_name=attachment.name,
                source_reference_number=job.source_reference_number,
                metadata=AudioTranscriptionMetadata(
                    processing_time_ms=_elapsed_ms(started_at),
                    duration=attachment.duration,
                ),
                completed_at=datetime.now(UTC),
            )

        logger.info(
            "Transcribed %s (%s chars) for %s",
            attachment.name or attachment.url,
            len(transcript),
            job.request_id,
        )
        return AudioTranscriptionResult(
            request_id=job.request_id,
            success=bool(transcript),
            content=transcript or None,
            error=None if transcript else "Transcription was empty",
            attachment_url=attachment.url,
            attachment_name=attachment.name,
            source_reference_number=job.source_reference_number,
            metadata=AudioTranscriptionMetadata(
                processing_time_ms=_elapsed_ms(started_at),
                duration=attachment.duration,
            ),
            completed_at=datetime.now(UTC),
        )


class ImageDescriber:
    """Processor for ``image-description`` jobs."""

    def __init__(
        self,
        *,
        config: Mapping[str, Any] | None = None,
        fallback_model: str = DEFAULT_VISION_FALLBACK_MODEL,
        completion: Callable[..., Awaitable[Any]] | None = None,
        timeout_seconds: float = VISION_TIMEOUT_SECONDS,
    ) -> None:
        """Configure the fallback model and the per-image timeout."""
        self._config = config or {}
        self.fallback_model = fallback_model
        self._completion = completion or _default_completion
        self.timeout_seconds = timeout_seconds

    async def describe(
        self,
        attachment: AttachmentMetadata,
        personality: LoadedPersonality,
    ) -> str:
        """Describe one image with the personality's preferred vision model."""
        model = select_vision_model(personality, self.fallback_model)
        provider = provider_from_model(model)
        kwargs = prepare_litellm_kwargs(
            model,
            build_vision_messages(attachment.url, personality.system_prompt),
            provider=provider,
            options=LiteLLMOptions(
                api_key=resolve_api_key(self._config, provider),
                timeout=self.timeout_seconds,
                temperature=VISION_TEMPERATURE,
            ),
        )
        logger.info("Describing image %s with %s", attachment.url, kwargs["model"])
        async with asyncio.timeout(self.timeout_seconds):
            response = await self._completion(**kwargs)
        return extract_completion_text(response).content.strip()

    async def __call__(self, job: ImageDescriptionJobData) -> ImageDescriptionResult:
        """Describe every image of the job; failures are counted, not raised."""
        started_at = time.monotonic()
        descriptions: list[ImageDescription] = []
        failed = 0
        last_error: str | None = None

        for attachment in job.attachments:
            try:
                description = await self.describe(attachment, job.personality)
            except PREPROCESSING_EXCEPTIONS as exc:
                log_exception(
                    logger=logger,
                    message="Image description failed",
                    error=exc,
                    context={"request_id": job.request_id, "url": attachment.url},
                )
                failed += 1
                last_error = str(exc)
                continue
            if not description:
                failed += 1
                last_error = "Vision model returned an empty description"
                continue
            descriptions.append(ImageDescription(url=attachment.url, description=description))

        if failed:
            logger.warning(
                "%s of %s image(s) could not be described for %s",
                failed,
                len(job.attachments),
                job.request_id,
            )
        return ImageDescriptionResult(
            request_id=job.request_id,
            success=bool(descriptions),
            descriptions=descriptions,
            failed_count=failed,
            error=None if descriptions else last_error,
            source_reference_number=job.source_reference_number,
            metadata=ImageDescriptionMetadata(processing_time_ms=_elapsed_ms(started_at)),
            completed_at=datetime.now(UTC),
        )
