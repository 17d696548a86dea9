"""Long-term memory retrieval for generation requests.

Retrieval is scoped to the personality and the user's active persona, and is
bounded by the personality's score threshold and limit. Memories created
within ``STM_LTM_BUFFER_MS`` of the oldest short-term history message are
never returned. Focus mode disables retrieval. Incognito mode does not.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Protocol

import httpx
import litellm

from personacord.core.config import (
    DEFAULT_MEMORY_LIMIT,
    DEFAULT_MEMORY_SCORE_THRESHOLD,
    RECENT_HISTORY_QUERY_WINDOW,
    STM_LTM_BUFFER_MS,
)
from personacord.core.error_handling import COMMON_HANDLER_EXCEPTIONS, log_exception
from personacord.logic.budget import rank_memories
from personacord.services.database import MemorySearch
from personacord.services.database.core import LIBSQL_ERROR
from personacord.services.llm import LITELLM_EXCEPTIONS

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Sequence

    from personacord.core.models import MemoryEntry, PreprocessingResults
    from personacord.jobs.schemas import (
        ConversationMessage,
        LoadedPersonality,
        ReferencedMessage,
        RequestContext,
    )
    from personacord.services.database import PipelineDB

logger = logging.getLogger(__name__)

MEMORY_RETRIEVAL_EXCEPTIONS = (
    *COMMON_HANDLER_EXCEPTIONS,
    httpx.HTTPError,
    LIBSQL_ERROR,
    *LITELLM_EXCEPTIONS,
)


class MemoryStore(Protocol):
    """Vector store queried for long-term memories."""

    async def search(self, search: MemorySearch) -> list[MemoryEntry]:
        """Return memories matching `search`, best first."""
        ...


class LibsqlMemoryStore:
    """MemoryStore backed by the libSQL memories table."""

    def __init__(self, db: PipelineDB) -> None:
        """Wrap the synchronous database for async callers."""
        self._db = db

    async def search(self, search: MemorySearch) -> list[MemoryEntry]:
        """Run the similarity search off the event loop."""
        return await asyncio.to_thread(self._db.search_memories, search)


class LiteLLMEmbedder:
    """Embeds query text through ``litellm.aembedding``."""

    def __init__(self, model: str, *, api_key: str | None = None) -> None:
        """Bind the embedding model and optional key."""
        self.model = model
        self._api_key = api_key

    async def __call__(self, text: str) -> list[float]:
        """Return the embedding vector for `text`."""
        kwargs: dict[str, Any] = {"model": self.model, "input": [text]}
        if self._api_key:
            kwargs["api_key"] = self._api_key
        response = await litellm.aembedding(**kwargs)
        data = response.data if hasattr(response, "data") else response["data"]
        first = data[0]
        vector = first["embedding"] if isinstance(first, dict) else first.embedding
        return [float(value) for value in vector]


@dataclass(frozen=True, slots=True)
class MemoryRetrievalResult:
    """Memories returned for one request, before budgeting."""

    memories: tuple[MemoryEntry, ...] = ()
    query: str = ""
    focus_mode_enabled: bool = False
    score_threshold: float = DEFAULT_MEMORY_SCORE_THRESHOLD
    limit: int = DEFAULT_MEMORY_LIMIT
    cutoff: datetime | None = None
    excluded_by_buffer: int = 0
    error: str | None = None
    channel_ids: tuple[str, ...] = field(default_factory=tuple)


def _preprocessing_texts(preprocessing: PreprocessingResults | None) -> list[str]:
    if preprocessing is None:
        return []
    texts = [item.description for item in preprocessing.processed_attachments]
    texts.extend(preprocessing.transcriptions)
    return texts


def build_search_query(
    message_text: str,
    *,
    preprocessing: PreprocessingResults | None = None,
    references: Sequence[ReferencedMessage] = (),
    history: Sequence[ConversationMessage] = (),
    history_window: int = RECENT_HISTORY_QUERY_WINDOW,
) -> str:
    """Build the text used to embed a memory search.

    Args:
        message_text: Text of the triggering message.
        preprocessing: Descriptions and transcripts of the trigger's attachments.
        references: Referenced messages, whose content widens the search.
        history: Conversation history; its last `history_window` entries give
            context to messages like "what do you think about that?".
        history_window: Number of recent history messages to include.

    Returns:
        Non-empty parts joined by newlines.

    """
    parts = [message_text.strip()]
    parts.extend(text.strip() for text in _preprocessing_texts(preprocessing))
    parts.extend(reference.content.strip() for reference in references)
    if history_window > 0:
        parts.extend(message.content.strip() for message in history[-history_window:])
    return "\n".join(part for part in parts if part)


def memory_cutoff(context: RequestContext) -> datetime | None:
    """Return the newest creation time a memory may have for this request."""
    oldest = context.oldest_history_timestamp()
    if oldest is None:
        return None
    return oldest - timedelta(milliseconds=STM_LTM_BUFFER_MS)


def _effective_threshold(personality: LoadedPersonality) -> float:
    if personality.memory_score_threshold is None:
        return DEFAULT_MEMORY_SCORE_THRESHOLD
    return personality.memory_score_threshold


def _effective_limit(personality: LoadedPersonality) -> int:
    if personality.memory_limit is None:
        return DEFAULT_MEMORY_LIMIT
    return personality.memory_limit


class MemoryRetriever:
    """Similarity-scored long-term memory lookup."""

    def __init__(
        self,
        store: MemoryStore,
        embedder: Callable[[str], Awaitable[list[float]]],
    ) -> None:
        """Bind the store and the query embedder."""
        self._store = store
        self._embedder = embedder

    async def retrieve(
        self,
        personality: LoadedPersonality,
        query: str,
        context: RequestContext,
    ) -> MemoryRetrievalResult:
        """Return memories for `query`, ranked by score then id.

        Failures of the embedder or the store degrade to an empty result.
        """
        threshold = _effective_threshold(personality)
        limit = _effective_limit(personality)
        cutoff = memory_cutoff(context)
        channel_ids = tuple(
            channel.channel_id for channel in context.referenced_channels
        )

        if context.focus_mode_enabled:
            logger.info(
                "Focus mode enabled, skipping memory retrieval for %s",
                personality.name,
            )
            return MemoryRetrievalResult(
                focus_mode_enabled=True,
                score_threshold=threshold,
                limit=limit,
            )

        base = MemoryRetrievalResult(
            query=query,
            score_threshold=threshold,
            limit=limit,
            cutoff=cutoff,
            channel_ids=channel_ids,
        )
        if limit <= 0 or not query.strip():
            return base

        try:
            embedding = await self._embedder(query)
            candidates = await self._store.search(
                MemorySearch(
                    embedding=embedding,
                    personality_id=personality.id,
                    persona_id=context.active_persona_id,
                    channel_ids=channel_ids,
                    score_threshold=threshold,
                    limit=limit,
                    created_before=cutoff,
                ),
            )
        except MEMORY_RETRIEVAL_EXCEPTIONS as exc:
            log_exception(
                logger=logger,
                message="Memory retrieval failed, continuing without memories",
                error=exc,
                context={
                    "personality_id": personality.id,
                    "user_id": context.user_id,
                },
            )
            return MemoryRetrievalResult(
                query=query,
                score_threshold=threshold,
                limit=limit,
                cutoff=cutoff,
                channel_ids=channel_ids,
                error=str(exc),
            )

        eligible = [memory for memory in candidates if memory.score >= threshold]
        kept: list[MemoryEntry] = []
        excluded = 0
        for memory in eligible:
            # Without a timestamp a memory cannot be shown to predate the buffer
            if cutoff is not None and (
                memory.created_at is None or memory.created_at >= cutoff
            ):
                excluded += 1
                continue
            kept.append(memory)

        if excluded:
            logger.debug(
                "Excluded %s memory(ies) inside the STM/LTM buffer (cutoff=%s)",
                excluded,
                cutoff.isoformat() if cutoff else None,
            )

        ranked = rank_memories(kept)[:limit]
        return MemoryRetrievalResult(
            memories=tuple(ranked),
            query=query,
            score_threshold=threshold,
            limit=limit,
            cutoff=cutoff,
            excluded_by_buffer=excluded,
            channel_ids=channel_ids,
        )
