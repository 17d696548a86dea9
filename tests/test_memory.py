from __future__ import annotations

from datetime import timedelta

import pytest

from personacord.core.models import MemoryEntry, PreprocessingResults, ProcessedAttachment
from personacord.jobs.schemas import ReferencedChannel, ReferencedMessage
from personacord.services.database import MemorySearch
from personacord.services.memory import (
    MemoryRetriever,
    build_search_query,
    memory_cutoff,
)

from ._fakes import (
    BASE_TIME,
    StaticMemoryStore,
    fixed_embedding,
    make_context,
    make_history,
    make_personality,
)


class _BrokenStore:
    async def search(self, search: MemorySearch) -> list[MemoryEntry]:
        msg = f"vector index unavailable for {search.personality_id}"
        raise RuntimeError(msg)


def test_search_query_combines_message_attachments_references_and_recent_history() -> None:
    preprocessing = PreprocessingResults(
        processed_attachments=[
            ProcessedAttachment(kind="image", description="a red bicycle"),
        ],
        transcriptions=["see you at noon"],
    )
    references = [
        ReferencedMessage(
            reference_number=1,
            discord_message_id="9",
            content="the old library",
        ),
    ]

    query = build_search_query(
        "what about this?",
        preprocessing=preprocessing,
        references=references,
        history=make_history(5),
    )

    assert query.splitlines() == [
        "what about this?",
        "a red bicycle",
        "see you at noon",
        "the old library",
        "history message 2",
        "history message 3",
        "history message 4",
    ]


def test_memory_cutoff_is_ten_seconds_before_oldest_history() -> None:
    context = make_context(conversation_history=make_history(3))

    assert memory_cutoff(context) == BASE_TIME - timedelta(seconds=10)
    assert memory_cutoff(make_context()) is None


@pytest.mark.asyncio
async def test_focus_mode_skips_retrieval() -> None:
    store = StaticMemoryStore([MemoryEntry(id="1", score=0.9, content="x")])
    retriever = MemoryRetriever(store, fixed_embedding)

    result = await retriever.retrieve(
        make_personality(),
        "query",
        make_context(focus_mode_enabled=True),
    )

    assert result.memories == ()
    assert result.focus_mode_enabled is True
    assert store.searches == []


@pytest.mark.asyncio
async def test_incognito_mode_still_retrieves() -> None:
    store = StaticMemoryStore([MemoryEntry(id="1", score=0.9, content="x")])
    retriever = MemoryRetriever(store, fixed_embedding)

    result = await retriever.retrieve(
        make_personality(),
        "query",
        make_context(incognito_mode_active=True),
    )

    assert [memory.id for memory in result.memories] == ["1"]


@pytest.mark.asyncio
async def test_memories_inside_the_buffer_are_excluded() -> None:
    cutoff = BASE_TIME - timedelta(seconds=10)
    store = StaticMemoryStore(
        [
            MemoryEntry(
                id="old",
                score=0.8,
                content="old",
                created_at=cutoff - timedelta(seconds=1),
            ),
            MemoryEntry(
                id="recent",
                score=0.9,
                content="recent",
                created_at=cutoff + timedelta(seconds=5),
            ),
            MemoryEntry(id="undated", score=0.95, content="undated"),
        ],
    )
    retriever = MemoryRetriever(store, fixed_embedding)

    result = await retriever.retrieve(
        make_personality(),
        "query",
        make_context(conversation_history=make_history(2)),
    )

    assert [memory.id for memory in result.memories] == ["old"]
    assert result.excluded_by_buffer == 2
    assert store.searches[0].created_before == cutoff


@pytest.mark.asyncio
async def test_threshold_limit_scope_and_ranking_come_from_personality() -> None:
    store = StaticMemoryStore(
        [
            MemoryEntry(id="b", score=0.6, content="b"),
            MemoryEntry(id="low", score=0.2, content="low"),
            MemoryEntry(id="a", score=0.6, content="a"),
            MemoryEntry(id="top", score=0.9, content="top"),
        ],
    )
    retriever = MemoryRetriever(store, fixed_embedding)
    personality = make_personality(memory_score_threshold=0.5, memory_limit=2)
    context = make_context(
        active_persona_id="persona-7",
        referenced_channels=[ReferencedChannel(channel_id="555")],
    )

    result = await retriever.retrieve(personality, "query", context)

    assert [memory.id for memory in result.memories] == ["top", "a"]
    search = store.searches[0]
    assert search.personality_id == personality.id
    assert search.persona_id == "persona-7"
    assert search.channel_ids == ("555",)
    assert search.score_threshold == 0.5
    assert search.limit == 2


@pytest.mark.asyncio
async def test_store_failure_degrades_to_empty_result() -> None:
    retriever = MemoryRetriever(_BrokenStore(), fixed_embedding)

    result = await retriever.retrieve(make_personality(), "query", make_context())

    assert result.memories == ()
    assert result.error is not None
    assert "vector index unavailable" in result.error


@pytest.mark.asyncio
async def test_zero_limit_skips_the_store() -> None:
    store = StaticMemoryStore([MemoryEntry(id="1", score=0.9, content="x")])
    retriever = MemoryRetriever(store, fixed_embedding)

    result = await retriever.retrieve(
        make_personality(memory_limit=0),
        "query",
        make_context(),
    )

    assert result.memories == ()
    assert store.searches == []
