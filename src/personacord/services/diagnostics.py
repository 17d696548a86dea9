"""Diagnostic flight recorder for generation requests.

A ``DiagnosticCollector`` travels with one request through the pipeline. Each
stage records what it contributed; ``finalize()`` freezes everything into a
``DiagnosticPayload`` that is persisted once per request id. The collector is
a pure observer: a failure inside a recording method is logged and swallowed
so it can never change the outcome of the request.
"""

from __future__ import annotations

import asyncio
import functools
import json
import logging
import time
import traceback
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Concatenate, ParamSpec, Protocol, TypeVar

from personacord.core.config import (
    MAX_RAW_ERROR_CHARS,
    MEMORY_PREVIEW_CHARS,
    NOT_RECORDED,
)
from personacord.core.error_handling import COMMON_HANDLER_EXCEPTIONS, log_exception
from personacord.services.database import DiagnosticLogRecord
from personacord.services.database.core import LIBSQL_ERROR

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping, Sequence

    from personacord.core.models import MemoryEntry, PreprocessingResults
    from personacord.jobs.schemas import ReferencedMessage
    from personacord.logic.budget import BudgetAllocation
    from personacord.logic.postprocessing import PostProcessResult

logger = logging.getLogger(__name__)

DIAGNOSTIC_PERSIST_EXCEPTIONS = (*COMMON_HANDLER_EXCEPTIONS, LIBSQL_ERROR)


class StageName:
    """Pipeline stage labels used in timing and failure reports."""

    INPUT_PROCESSING = "InputProcessing"
    DEPENDENCY_RESOLUTION = "DependencyResolution"
    MEMORY_RETRIEVAL = "MemoryRetrieval"
    TOKEN_BUDGET = "TokenBudget"
    PROMPT_ASSEMBLY = "PromptAssembly"
    GENERATION = "Generation"
    POST_PROCESSING = "PostProcessing"


@dataclass(frozen=True, slots=True)
class DiagnosticMeta:
    request_id: str
    personality_id: str
    personality_name: str
    user_id: str
    channel_id: str | None = None
    guild_id: str | None = None
    trigger_message_id: str | None = None
    timestamp: str = field(default_factory=lambda: datetime.now(UTC).isoformat())


@dataclass(frozen=True, slots=True)
class InputProcessingRecord:
    raw_user_message: str = NOT_RECORDED
    attachment_descriptions: tuple[str, ...] = ()
    voice_transcript: str | None = None
    referenced_message_ids: tuple[str, ...] = ()
    referenced_messages_content: tuple[str, ...] = ()
    search_query: str | None = None
    unavailable_dependencies: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class MemoryRecordPreview:
    id: str
    score: float
    preview: str
    included_in_prompt: bool


@dataclass(frozen=True, slots=True)
class MemoryRetrievalRecord:
    memories_found: tuple[MemoryRecordPreview, ...] = ()
    focus_mode_enabled: bool = False
    error: str | None = None


@dataclass(frozen=True, slots=True)
class TokenBudgetRecord:
    context_window_size: int = 0
    system_prompt_tokens: int = 0
    current_message_tokens: int = 0
    memory_tokens_used: int = 0
    history_tokens_used: int = 0
    memories_dropped: int = 0
    history_messages_dropped: int = 0


@dataclass(frozen=True, slots=True)
class AssembledPromptRecord:
    messages: tuple[dict[str, Any], ...] = ()
    total_token_estimate: int = 0


@dataclass(frozen=True, slots=True)
class LlmConfigRecord:
    model: str = NOT_RECORDED
    provider: str = NOT_RECORDED
    all_params: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class LlmResponseRecord:
    raw_content: str = NOT_RECORDED
    finish_reason: str = "unknown"
    prompt_tokens: int = 0
    completion_tokens: int = 0
    model_used: str = NOT_RECORDED
    attempts: int = 0


@dataclass(frozen=True, slots=True)
class PostProcessingRecord:
    transforms_applied: tuple[str, ...] = ()
    duplicate_detected: bool = False
    cross_turn_duplicate_detected: bool = False
    thinking_extracted: bool = False
    thinking_content: str | None = None
    final_content: str = NOT_RECORDED


@dataclass(frozen=True, slots=True)
class DiagnosticError:
    message: str
    category: str
    failed_at_stage: str
    reference_id: str | None = None
    raw_error: dict[str, Any] | None = None


@dataclass(frozen=True, slots=True)
class DiagnosticTiming:
    total_duration_ms: int
    stage_durations_ms: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class DiagnosticPayload:
    """Everything recorded for one request, frozen at finalize time."""

    meta: DiagnosticMeta
    input_processing: InputProcessingRecord
    memory_retrieval: MemoryRetrievalRecord
    token_budget: TokenBudgetRecord
    assembled_prompt: AssembledPromptRecord
    llm_config: LlmConfigRecord
    llm_response: LlmResponseRecord
    post_processing: PostProcessingRecord
    timing: DiagnosticTiming
    completed_stages: tuple[str, ...] = ()
    failed_step: str | None = None
    last_successful_step: str | None = None
    error: DiagnosticError | None = None

    @property
    def success(self) -> bool:
        """Return True when no error was recorded."""
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        """Return the payload exactly as it reads back from storage."""
        return json.loads(json.dumps(asdict(self), default=str))


def build_memory_preview(content: str, preview_chars: int = MEMORY_PREVIEW_CHARS) -> str:
    """Shorten `content` to its first and last `preview_chars` characters."""
    if len(content) <= preview_chars * 2:
        return content
    return f"{content[:preview_chars]} ... {content[-preview_chars:]}"


def sanitize_raw_error(
    raw_error: Mapping[str, Any],
    max_chars: int = MAX_RAW_ERROR_CHARS,
) -> dict[str, Any]:
    """Cap a raw error dump at `max_chars` characters of JSON."""
    error_json = json.dumps(raw_error, default=str)
    if len(error_json) <= max_chars:
        return dict(raw_error)
    return {
        "_truncated": True,
        "_originalSize": len(error_json),
        "preview": error_json[:max_chars],
    }


def _raw_error_from_exception(error: BaseException) -> dict[str, Any]:
    return {
        "type": type(error).__name__,
        "message": str(error),
        "traceback": "".join(traceback.format_exception(error)),
    }


T_Collector = TypeVar("T_Collector", bound="DiagnosticCollector")
P = ParamSpec("P")


def _observer(
    method: Callable[Concatenate[T_Collector, P], None],
) -> Callable[Concatenate[T_Collector, P], None]:
    """Contain recorder failures so they never reach the pipeline."""

    @functools.wraps(method)
    def wrapper(self: T_Collector, *args: P.args, **kwargs: P.kwargs) -> None:
        try:
            method(self, *args, **kwargs)
        except COMMON_HANDLER_EXCEPTIONS as exc:
            log_exception(
                logger=logger,
                message="Diagnostic recorder failed",
                error=exc,
                context={"method": method.__name__, "request_id": self.request_id},
            )

    return wrapper


class DiagnosticCollector:
    """Accumulates per-stage diagnostics for one request."""

    def __init__(
        self,
        meta: DiagnosticMeta,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Start the request timer."""
        self.meta = meta
        self._clock = clock
        self._started_at = clock()
        self._stage_started: dict[str, float] = {}
        self._stage_durations: dict[str, int] = {}
        self._completed_stages: list[str] = []
        self._input: InputProcessingRecord | None = None
        self._memory: MemoryRetrievalRecord | None = None
        self._budget: TokenBudgetRecord | None = None
        self._prompt: AssembledPromptRecord | None = None
        self._llm_config: LlmConfigRecord | None = None
        self._llm_response: LlmResponseRecord | None = None
        self._post_processing: PostProcessingRecord | None = None
        self._error: DiagnosticError | None = None

    @property
    def request_id(self) -> str:
        return self.meta.request_id

    @property
    def last_successful_step(self) -> str | None:
        """Return the most recently completed stage."""
        return self._completed_stages[-1] if self._completed_stages else None

    @_observer
    def start_stage(self, stage: str) -> None:
        """Mark the start of `stage` for timing."""
        self._stage_started[stage] = self._clock()

    @_observer
    def mark_stage(self, stage: str) -> None:
        """Mark `stage` as completed successfully."""
        started = self._stage_started.pop(stage, None)
        if started is not None:
            self._stage_durations[stage] = int((self._clock() - started) * 1000)
        self._completed_stages.append(stage)

    @_observer
    def record_input_processing(
        self,
        *,
        raw_user_message: str,
        preprocessing: PreprocessingResults | None,
        referenced_messages: Sequence[ReferencedMessage] = (),
        search_query: str | None = None,
    ) -> None:
        """Record the trigger text, dependency outputs and search query."""
        attachments = preprocessing.processed_attachments if preprocessing else []
        voice = next(
            (item.description for item in attachments if item.kind in {"audio", "voice"}),
            None,
        )
        self._input = InputProcessingRecord(
            raw_user_message=raw_user_message,
            attachment_descriptions=tuple(item.description for item in attachments),
            voice_transcript=voice,
            referenced_message_ids=tuple(
                reference.discord_message_id for reference in referenced_messages
            ),
            referenced_messages_content=tuple(
                reference.content for reference in referenced_messages
            ),
            search_query=search_query,
            unavailable_dependencies=tuple(preprocessing.unavailable)
            if preprocessing
            else (),
        )

    @_observer
    def record_memory_retrieval(
        self,
        memories: Sequence[MemoryEntry],
        *,
        focus_mode_enabled: bool,
        error: str | None = None,
    ) -> None:
        """Record retrieved memories with previews and their prompt inclusion."""
        self._memory = MemoryRetrievalRecord(
            memories_found=tuple(
                MemoryRecordPreview(
                    id=memory.id,
                    score=memory.score,
                    preview=build_memory_preview(memory.content),
                    included_in_prompt=memory.included_in_prompt,
                )
                for memory in memories
            ),
            focus_mode_enabled=focus_mode_enabled,
            error=error,
        )

    @_observer
    def record_token_budget(self, allocation: BudgetAllocation) -> None:
        """Record the budget decision."""
        self._budget = TokenBudgetRecord(
            context_window_size=allocation.context_window,
            system_prompt_tokens=allocation.system_prompt_tokens,
            current_message_tokens=allocation.current_message_tokens,
            memory_tokens_used=allocation.memory_tokens,
            history_tokens_used=allocation.history_tokens,
            memories_dropped=allocation.memories_dropped,
            history_messages_dropped=allocation.history_messages_dropped,
        )

    @_observer
    def record_assembled_prompt(
        self,
        messages: Sequence[Mapping[str, Any]],
        total_tokens: int,
    ) -> None:
        """Record the exact messages sent to the model, untruncated."""
        self._prompt = AssembledPromptRecord(
            messages=tuple(dict(message) for message in messages),
            total_token_estimate=total_tokens,
        )

    @_observer
    def record_llm_config(
        self,
        *,
        model: str,
        provider: str,
        params: Mapping[str, Any],
    ) -> None:
        """Record the model and every sampling parameter sent."""
        self._llm_config = LlmConfigRecord(
            model=model,
            provider=provider,
            all_params=dict(params),
        )

    @_observer
    def record_llm_response(
        self,
        *,
        raw_content: str,
        finish_reason: str | None,
        prompt_tokens: int | None,
        completion_tokens: int | None,
        model_used: str,
        attempts: int,
    ) -> None:
        """Record the raw, untruncated model output."""
        self._llm_response = LlmResponseRecord(
            raw_content=raw_content,
            finish_reason=finish_reason or "unknown",
            prompt_tokens=prompt_tokens or 0,
            completion_tokens=completion_tokens or 0,
            model_used=model_used,
            attempts=attempts,
        )

    @_observer
    def record_post_processing(
        self,
        result: PostProcessResult,
        *,
        cross_turn_duplicate_detected: bool = False,
    ) -> None:
        """Record which post-processing transforms changed the output."""
        transforms: list[str] = []
        if result.thinking_content:
            transforms.append("thinking_extraction")
        if result.artifacts_stripped:
            transforms.append("artifact_strip")
        if result.duplicate_removed:
            transforms.append("duplicate_removal")
        self._post_processing = PostProcessingRecord(
            transforms_applied=tuple(transforms),
            duplicate_detected=result.duplicate_removed,
            cross_turn_duplicate_detected=cross_turn_duplicate_detected,
            thinking_extracted=result.thinking_content is not None,
            thinking_content=result.thinking_content,
            final_content=result.content,
        )

    @_observer
    def record_error(
        self,
        error: BaseException | str,
        *,
        category: str,
        failed_at_stage: str,
        reference_id: str | None = None,
        raw_error: Mapping[str, Any] | None = None,
    ) -> None:
        """Record the failure that ended the request."""
        if raw_error is None and isinstance(error, BaseException):
            raw_error = _raw_error_from_exception(error)
        self._error = DiagnosticError(
            message=str(error),
            category=category,
            failed_at_stage=failed_at_stage,
            reference_id=reference_id,
            raw_error=sanitize_raw_error(raw_error) if raw_error is not None else None,
        )

    def finalize(self) -> DiagnosticPayload:
        """Freeze the recorded data, filling missing stages with defaults."""
        total_ms = int((self._clock() - self._started_at) * 1000)
        payload = DiagnosticPayload(
            meta=self.meta,
            input_processing=self._input or InputProcessingRecord(),
            memory_retrieval=self._memory or MemoryRetrievalRecord(),
            token_budget=self._budget or TokenBudgetRecord(),
            assembled_prompt=self._prompt or AssembledPromptRecord(),
            llm_config=self._llm_config or LlmConfigRecord(),
            llm_response=self._llm_response or LlmResponseRecord(),
            post_processing=self._post_processing or PostProcessingRecord(),
            timing=DiagnosticTiming(
                total_duration_ms=total_ms,
                stage_durations_ms=dict(self._stage_durations),
            ),
            completed_stages=tuple(self._completed_stages),
            failed_step=self._error.failed_at_stage if self._error else None,
            last_successful_step=self.last_successful_step if self._error else None,
            error=self._error,
        )
        logger.debug(
            "Finalized diagnostics for %s in %sms (stages=%s, error=%s)",
            self.request_id,
            total_ms,
            ",".join(self._completed_stages),
            self._error is not None,
        )
        return payload


class DiagnosticStore(Protocol):
    """Sink for finalized diagnostic payloads."""

    def save_diagnostic_log(self, record: DiagnosticLogRecord) -> None:
        """Upsert the payload for one request id."""
        ...


async def persist_diagnostics(
    payload: DiagnosticPayload,
    store: DiagnosticStore,
) -> bool:
    """Write `payload` to `store`; return False (logged) on failure."""
    record = DiagnosticLogRecord(
        request_id=payload.meta.request_id,
        payload=payload.to_dict(),
        personality_id=payload.meta.personality_id,
        user_id=payload.meta.user_id,
        model=payload.llm_response.model_used
        if payload.llm_response.model_used != NOT_RECORDED
        else payload.llm_config.model,
        success=payload.success,
        failed_step=payload.failed_step,
    )
    try:
        await asyncio.to_thread(store.save_diagnostic_log, record)
    except DIAGNOSTIC_PERSIST_EXCEPTIONS as exc:
        log_exception(
            logger=logger,
            message="Failed to persist diagnostic log",
            error=exc,
            context={"request_id": payload.meta.request_id},
        )
        return False
    return True
