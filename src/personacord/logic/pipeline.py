"""Per-job driver for LLM generation requests.

Stages run strictly in order inside one request: dependency resolution, input
processing, memory retrieval, token budget, prompt assembly, generation and
post-processing. Dependency and memory failures degrade; budget and prompt
failures end the request; provider failures come back as ``ErrorInfo``.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from personacord.core.error_handling import COMMON_HANDLER_EXCEPTIONS, log_exception
from personacord.core.exceptions import PipelineError
from personacord.jobs.schemas import GenerationMetadata, LLMGenerationResult
from personacord.logic.budget import allocate_budget
from personacord.logic.dependencies import resolve_dependencies
from personacord.logic.prompt import assemble_prompt, measure_fixed_costs
from personacord.logic.tokens import count_text_tokens
from personacord.services.diagnostics import (
    DiagnosticCollector,
    DiagnosticMeta,
    StageName,
    persist_diagnostics,
)
from personacord.services.errors import (
    ParsedApiError,
    build_user_error_message,
    parse_api_error,
    to_error_info,
)
from personacord.services.memory import MemoryRetrievalResult, build_search_query

if TYPE_CHECKING:
    from collections.abc import Callable

    from personacord.core.models import PreprocessingResults
    from personacord.jobs.schemas import LLMGenerationJobData
    from personacord.logic.budget import BudgetAllocation
    from personacord.logic.dependencies import ResultStore
    from personacord.logic.generation import GenerationExecutor, GenerationOutcome
    from personacord.logic.tokens import TokenCounter
    from personacord.services.diagnostics import DiagnosticStore
    from personacord.services.memory import MemoryRetriever

logger = logging.getLogger(__name__)

PIPELINE_EXCEPTIONS = (PipelineError, *COMMON_HANDLER_EXCEPTIONS)


def _utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(slots=True)
class PipelineServices:
    """Collaborators shared by every generation job."""

    result_store: ResultStore
    executor: GenerationExecutor
    memory_retriever: MemoryRetriever | None = None
    diagnostic_store: DiagnosticStore | None = None
    counter: TokenCounter = count_text_tokens
    clock: Callable[[], datetime] = field(default=_utc_now)


def create_collector(job: LLMGenerationJobData) -> DiagnosticCollector:
    """Start a flight recorder for `job`."""
    environment = job.context.environment
    return DiagnosticCollector(
        DiagnosticMeta(
            request_id=job.request_id,
            personality_id=job.personality.id,
            personality_name=job.personality.name,
            user_id=job.context.user_id,
            channel_id=job.context.channel_id,
            guild_id=environment.guild.id
            if environment is not None and environment.guild is not None
            else job.context.server_id,
        ),
    )


def build_failure_result(
    job: LLMGenerationJobData,
    parsed: ParsedApiError,
    *,
    failed_step: str | None,
    last_successful_step: str | None = None,
    processing_time_ms: int | None = None,
) -> LLMGenerationResult:
    """Return the failure payload for `job` from a classified error."""
    personality = job.personality
    return LLMGenerationResult(
        request_id=job.request_id,
        success=False,
        error=parsed.technical_message,
        error_info=to_error_info(parsed),
        personality_error_message=build_user_error_message(
            personality.error_message,
            parsed,
        ),
        metadata=GenerationMetadata(
            processing_time_ms=processing_time_ms,
            model_used=personality.model,
            config_source=personality.config_source,
            focus_mode_enabled=job.context.focus_mode_enabled,
            incognito_mode_active=job.context.incognito_mode_active,
            show_thinking=personality.show_thinking,
            failed_step=failed_step,
            last_successful_step=last_successful_step,
        ),
    )


def _outcome_result(
    job: LLMGenerationJobData,
    outcome: GenerationOutcome,
    allocation: BudgetAllocation,
    *,
    processing_time_ms: int,
    last_successful_step: str | None,
) -> LLMGenerationResult:
    personality = job.personality
    metadata = GenerationMetadata(
        retrieved_memories=len(allocation.memories),
        tokens_in=outcome.tokens_in,
        tokens_out=outcome.tokens_out,
        processing_time_ms=processing_time_ms,
        model_used=outcome.model_used,
        provider_used=outcome.provider_used,
        config_source=personality.config_source,
        focus_mode_enabled=job.context.focus_mode_enabled,
        incognito_mode_active=job.context.incognito_mode_active,
        cross_turn_duplicate_detected=outcome.cross_turn_duplicate_detected,
        thinking_content=outcome.thinking_content if personality.show_thinking else None,
        show_thinking=personality.show_thinking,
        history_messages_dropped=allocation.history_messages_dropped,
        memories_dropped=allocation.memories_dropped,
        failed_step=None if outcome.success else StageName.GENERATION,
        last_successful_step=None if outcome.success else last_successful_step,
    )
    if outcome.success:
        return LLMGenerationResult(
            request_id=job.request_id,
            success=True,
            content=outcome.content,
            metadata=metadata,
        )
    return LLMGenerationResult(
        request_id=job.request_id,
        success=False,
        error=outcome.error.technical_message if outcome.error else None,
        error_info=outcome.error_info,
        personality_error_message=outcome.personality_error_message,
        metadata=metadata,
    )


async def _retrieve_memories(
    job: LLMGenerationJobData,
    services: PipelineServices,
    query: str,
) -> MemoryRetrievalResult:
    if services.memory_retriever is None:
        return MemoryRetrievalResult(
            query=query,
            focus_mode_enabled=job.context.focus_mode_enabled,
        )
    return await services.memory_retriever.retrieve(job.personality, query, job.context)


async def run_generation_pipeline(
    job: LLMGenerationJobData,
    services: PipelineServices,
    preprocessing: PreprocessingResults | None = None,
) -> LLMGenerationResult:
    """Run every stage for one generation job and return its payload.

    Args:
        job: Validated generation job.
        services: Shared collaborators.
        preprocessing: Already-resolved dependency outputs; resolved from the
            result store when omitted.

    Returns:
        LLMGenerationResult; this function does not raise for stage failures.

    """
    started_at = time.monotonic()
    collector = create_collector(job)
    personality = job.personality
    context = job.context
    stage = StageName.DEPENDENCY_RESOLUTION

    def _elapsed_ms() -> int:
        return int((time.monotonic() - started_at) * 1000)

    try:
        collector.start_stage(stage)
        if preprocessing is None:
            preprocessing = await resolve_dependencies(
                job.dependencies,
                services.result_store,
            )
        collector.mark_stage(stage)

        stage = StageName.INPUT_PROCESSING
        collector.start_stage(stage)
        query = build_search_query(
            job.message_text,
            preprocessing=preprocessing,
            references=context.referenced_messages,
            history=context.conversation_history,
        )
        collector.record_input_processing(
            raw_user_message=job.message_text,
            preprocessing=preprocessing,
            referenced_messages=context.referenced_messages,
            search_query=query,
        )
        collector.mark_stage(stage)

        stage = StageName.MEMORY_RETRIEVAL
        collector.start_stage(stage)
        retrieval = await _retrieve_memories(job, services, query)
        collector.mark_stage(stage)

        stage = StageName.TOKEN_BUDGET
        collector.start_stage(stage)
        now = services.clock()
        costs = measure_fixed_costs(
            personality,
            context,
            job.message,
            preprocessing,
            now=now,
            include_memory_wrapper=bool(retrieval.memories),
            counter=services.counter,
        )
        allocation = allocate_budget(
            context_window=personality.context_window_tokens,
            system_prompt_tokens=costs.system_prompt_tokens,
            current_message_tokens=costs.current_message_tokens,
            history=context.conversation_history,
            memories=retrieval.memories,
            counter=services.counter,
        )
        collector.record_token_budget(allocation)
        collector.record_memory_retrieval(
            allocation.memories_found,
            focus_mode_enabled=retrieval.focus_mode_enabled,
            error=retrieval.error,
        )
        collector.mark_stage(stage)

        stage = StageName.PROMPT_ASSEMBLY
        collector.start_stage(stage)
        prompt = assemble_prompt(
            personality,
            context,
            allocation,
            preprocessing,
            job.message,
            now=now,
            counter=services.counter,
        )
        collector.record_assembled_prompt(prompt.messages, prompt.total_tokens)
        collector.mark_stage(stage)

        stage = StageName.GENERATION
        collector.start_stage(stage)
        outcome = await services.executor.execute(
            prompt,
            personality,
            context,
            collector,
        )
    except PIPELINE_EXCEPTIONS as exc:
        log_exception(
            logger=logger,
            message="Generation pipeline stage failed",
            error=exc,
            context={"request_id": job.request_id, "stage": stage},
        )
        parsed = parse_api_error(exc)
        collector.record_error(
            exc,
            category=parsed.category.value,
            failed_at_stage=stage,
            reference_id=parsed.reference_id,
        )
        result = build_failure_result(
            job,
            parsed,
            failed_step=stage,
            last_successful_step=collector.last_successful_step,
            processing_time_ms=_elapsed_ms(),
        )
        await _persist(collector, services)
        return result

    if outcome.success:
        collector.mark_stage(StageName.GENERATION)
        collector.mark_stage(StageName.POST_PROCESSING)
        logger.info(
            "Generated response for %s (%s chars, attempt %s, %sms)",
            job.request_id,
            len(outcome.content or ""),
            outcome.attempts,
            _elapsed_ms(),
        )
    elif outcome.error is not None:
        collector.record_error(
            outcome.error.technical_message,
            category=outcome.error.category.value,
            failed_at_stage=StageName.GENERATION,
            reference_id=outcome.error.reference_id,
        )

    result = _outcome_result(
        job,
        outcome,
        allocation,
        processing_time_ms=_elapsed_ms(),
        last_successful_step=collector.last_successful_step,
    )
    await _persist(collector, services)
    return result


async def _persist(collector: DiagnosticCollector, services: PipelineServices) -> None:
    if services.diagnostic_store is None:
        return
    await persist_diagnostics(collector.finalize(), services.diagnostic_store)


async def fail_dependency_wait(
    job: LLMGenerationJobData,
    error: PipelineError,
    services: PipelineServices,
) -> LLMGenerationResult:
    """Return and record the failure for a job whose dependencies never finished."""
    collector = create_collector(job)
    parsed = parse_api_error(error)
    collector.record_error(
        error,
        category=parsed.category.value,
        failed_at_stage=StageName.DEPENDENCY_RESOLUTION,
        reference_id=parsed.reference_id,
    )
    result = build_failure_result(
        job,
        parsed,
        failed_step=StageName.DEPENDENCY_RESOLUTION,
    )
    await _persist(collector, services)
    return result
