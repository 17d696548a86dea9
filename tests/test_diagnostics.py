from __future__ import annotations

import json

import pytest

from personacord.core.config import NOT_RECORDED
from personacord.core.models import MemoryEntry, PreprocessingResults, ProcessedAttachment
from personacord.logic.budget import allocate_budget
from personacord.logic.postprocessing import post_process_response
from personacord.services.diagnostics import (
    DiagnosticCollector,
    DiagnosticMeta,
    StageName,
    build_memory_preview,
    persist_diagnostics,
    sanitize_raw_error,
)

from ._fakes import FailingDiagnosticStore, FakeClock, RecordingDiagnosticStore


def _collector(clock: FakeClock | None = None) -> DiagnosticCollector:
    meta = DiagnosticMeta(
        request_id="req-1",
        personality_id="pers-1",
        personality_name="Lilith",
        user_id="42",
        channel_id="100",
    )
    return DiagnosticCollector(meta, clock=clock or FakeClock())


def test_memory_preview_keeps_both_ends_of_long_content() -> None:
    content = "a" * 150 + "b" * 150

    preview = build_memory_preview(content)

    assert preview == f"{'a' * 100} ... {'b' * 100}"
    assert build_memory_preview("short") == "short"


def test_raw_error_over_the_cap_is_truncated() -> None:
    raw = {"body": "x" * 200}

    sanitized = sanitize_raw_error(raw, max_chars=50)

    assert sanitized["_truncated"] is True
    assert sanitized["_originalSize"] == len(json.dumps(raw))
    assert len(sanitized["preview"]) == 50
    assert sanitize_raw_error({"ok": 1}) == {"ok": 1}


def test_finalize_fills_unrecorded_stages_with_defaults() -> None:
    payload = _collector().finalize()

    assert payload.success
    assert payload.input_processing.raw_user_message == NOT_RECORDED
    assert payload.llm_response.finish_reason == "unknown"
    assert payload.llm_config.model == NOT_RECORDED
    assert payload.assembled_prompt.messages == ()
    assert payload.failed_step is None


def test_recorded_stages_timings_and_outputs() -> None:
    clock = FakeClock()
    collector = _collector(clock)
    preprocessing = PreprocessingResults(
        processed_attachments=[
            ProcessedAttachment(kind="audio", description="hi there"),
            ProcessedAttachment(kind="image", description="a map"),
        ],
        unavailable=["img-9"],
    )
    memories = [
        MemoryEntry(id="m1", score=0.9, content="tea", included_in_prompt=True),
    ]
    messages = [{"role": "system", "content": "s"}, {"role": "user", "content": "u"}]

    collector.start_stage(StageName.MEMORY_RETRIEVAL)
    clock.advance(0.25)
    collector.mark_stage(StageName.MEMORY_RETRIEVAL)
    collector.record_input_processing(
        raw_user_message="hello",
        preprocessing=preprocessing,
        search_query="hello\nhi there",
    )
    collector.record_memory_retrieval(memories, focus_mode_enabled=False)
    collector.record_token_budget(
        allocate_budget(context_window=100, system_prompt_tokens=10),
    )
    collector.record_assembled_prompt(messages, 2)
    collector.record_llm_response(
        raw_content="<think>x</think>Lilith: hey",
        finish_reason="stop",
        prompt_tokens=10,
        completion_tokens=None,
        model_used="openai/gpt-4o-mini",
        attempts=1,
    )
    collector.record_post_processing(
        post_process_response(
            "<think>x</think>Lilith: hey",
            personality_name="Lilith",
            user_name="Alice",
        ),
    )
    clock.advance(1)

    payload = collector.finalize()

    assert payload.timing.stage_durations_ms == {StageName.MEMORY_RETRIEVAL: 250}
    assert payload.timing.total_duration_ms == 1250
    assert payload.input_processing.voice_transcript == "hi there"
    assert payload.input_processing.unavailable_dependencies == ("img-9",)
    assert payload.memory_retrieval.memories_found[0].included_in_prompt
    assert payload.token_budget.context_window_size == 100
    assert payload.assembled_prompt.messages == tuple(messages)
    assert payload.llm_response.completion_tokens == 0
    assert payload.post_processing.transforms_applied == (
        "thinking_extraction",
        "artifact_strip",
    )
    assert payload.post_processing.final_content == "hey"
    assert payload.completed_stages == (StageName.MEMORY_RETRIEVAL,)


def test_error_records_failed_and_last_successful_step() -> None:
    collector = _collector()
    collector.mark_stage(StageName.MEMORY_RETRIEVAL)

    collector.record_error(
        ValueError("window too small"),
        category="bad_request",
        failed_at_stage=StageName.TOKEN_BUDGET,
        reference_id="abc123",
    )

    payload = collector.finalize()

    assert not payload.success
    assert payload.failed_step == StageName.TOKEN_BUDGET
    assert payload.last_successful_step == StageName.MEMORY_RETRIEVAL
    assert payload.error is not None
    assert payload.error.raw_error is not None
    assert payload.error.raw_error["type"] == "ValueError"
    assert "window too small" in payload.error.raw_error["traceback"]


def test_recorder_failures_are_swallowed() -> None:
    collector = _collector()

    collector.record_token_budget(None)  # type: ignore[arg-type]

    assert collector.finalize().token_budget.context_window_size == 0


@pytest.mark.asyncio
async def test_persist_writes_one_record_per_request() -> None:
    store = RecordingDiagnosticStore()
    collector = _collector()
    collector.record_llm_config(model="openai/gpt-4o-mini", provider="openai", params={})

    saved = await persist_diagnostics(collector.finalize(), store)

    assert saved
    (record,) = store.records
    assert record.request_id == "req-1"
    assert record.model == "openai/gpt-4o-mini"
    assert record.success
    assert record.payload["meta"]["request_id"] == "req-1"


@pytest.mark.asyncio
async def test_persist_failure_is_reported_not_raised() -> None:
    saved = await persist_diagnostics(_collector().finalize(), FailingDiagnosticStore())

    assert saved is False
