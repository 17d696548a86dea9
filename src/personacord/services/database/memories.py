"""Long-term memory storage with embedding similarity search."""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from personacord.core.models import MemoryEntry
from personacord.services.database.core import LIBSQL_ERROR, _with_reconnect

if TYPE_CHECKING:
    from collections.abc import Sequence

    from .core import DatabaseProtocol as _Base
else:
    _Base = object

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class MemoryRecord:
    """A memory as written to the store."""

    id: str
    personality_id: str
    content: str
    embedding: list[float]
    persona_id: str | None = None
    channel_id: str | None = None
    created_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class MemorySearch:
    """Filters for one similarity search."""

    embedding: Sequence[float]
    personality_id: str
    persona_id: str | None = None
    channel_ids: tuple[str, ...] = ()
    score_threshold: float = 0.0
    limit: int = 15
    created_before: datetime | None = None


def cosine_similarity(left: Sequence[float], right: Sequence[float]) -> float:
    """Return the cosine similarity of two vectors (0.0 for degenerate input)."""
    if not left or len(left) != len(right):
        return 0.0
    dot = sum(a * b for a, b in zip(left, right, strict=True))
    left_norm = math.sqrt(sum(a * a for a in left))
    right_norm = math.sqrt(sum(b * b for b in right))
    if left_norm == 0 or right_norm == 0:
        return 0.0
    return dot / (left_norm * right_norm)


def _parse_timestamp(raw: object) -> datetime | None:
    if not isinstance(raw, str) or not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


class MemoryDataMixin(_Base):
    """Mixin for long-term memory storage."""

    def _init_memory_tables(self) -> None:
        """Initialize memory tables."""
        conn = self._get_connection()
        cursor = conn.cursor()
        # Embeddings are stored as JSON arrays; similarity is computed in Python.
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS memories (
                id TEXT PRIMARY KEY,
                personality_id TEXT NOT NULL,
                persona_id TEXT,
                channel_id TEXT,
                content TEXT NOT NULL,
                embedding TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
        """)
        cursor.execute(
            "CREATE INDEX IF NOT EXISTS idx_memories_scope "
            "ON memories (personality_id, persona_id)",
        )
        conn.commit()

    @_with_reconnect
    def save_memory(self, record: MemoryRecord) -> None:
        """Insert or update one memory."""
        conn = self._get_connection()
        cursor = conn.cursor()
        created_at = (record.created_at or datetime.now(UTC)).astimezone(UTC)
        cursor.execute(
            """INSERT INTO memories (
                   id, personality_id, persona_id, channel_id,
                   content, embedding, created_at
               )
               VALUES (?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(id) DO UPDATE SET
                   content = excluded.content,
                   embedding = excluded.embedding""",
            (
                record.id,
                record.personality_id,
                record.persona_id,
                record.channel_id,
                record.content,
                json.dumps([float(value) for value in record.embedding]),
                created_at.isoformat(),
            ),
        )
        conn.commit()
        try:
            self._sync()
        except LIBSQL_ERROR as exc:
            logger.debug("Background sync after memory save failed: %s", exc)

    @_with_reconnect
    def search_memories(self, search: MemorySearch) -> list[MemoryEntry]:
        """Return scoped memories scoring at least the threshold, best first."""
        if search.limit <= 0:
            return []

        clauses = ["personality_id = ?"]
        params: list[str] = [search.personality_id]
        if search.persona_id is not None:
            clauses.append("persona_id = ?")
            params.append(search.persona_id)
        if search.channel_ids:
            placeholders = ", ".join("?" for _ in search.channel_ids)
            clauses.append(f"(channel_id IS NULL OR channel_id IN ({placeholders}))")
            params.extend(search.channel_ids)
        if search.created_before is not None:
            clauses.append("created_at < ?")
            params.append(search.created_before.astimezone(UTC).isoformat())

        conn = self._get_connection()
        cursor = conn.cursor()
        cursor.execute(
            "SELECT id, content, embedding, created_at FROM memories WHERE "
            + " AND ".join(clauses),
            tuple(params),
        )

        scored: list[MemoryEntry] = []
        for memory_id, content, embedding_json, created_at in cursor.fetchall():
            try:
                embedding = json.loads(embedding_json)
            except (TypeError, json.JSONDecodeError):
                logger.warning("Skipping memory %s with unreadable embedding", memory_id)
                continue
            score = cosine_similarity(search.embedding, embedding)
            if score < search.score_threshold:
                continue
            scored.append(
                MemoryEntry(
                    id=str(memory_id),
                    score=score,
                    content=str(content),
                    created_at=_parse_timestamp(created_at),
                ),
            )

        scored.sort(key=lambda memory: (-memory.score, memory.id))
        return scored[: search.limit]
