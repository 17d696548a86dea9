"""Database service package."""

from __future__ import annotations

from personacord.services.database.core import DEFAULT_LOCAL_DB_PATH, DatabaseCore
from personacord.services.database.diagnostics import (
    DiagnosticLogMixin,
    DiagnosticLogRecord,
)
from personacord.services.database.memories import (
    MemoryDataMixin,
    MemoryRecord,
    MemorySearch,
    cosine_similarity,
)


class PipelineDB(
    DatabaseCore,
    DiagnosticLogMixin,
    MemoryDataMixin,
):
    """Turso/libSQL-backed storage for the generation pipeline.

    Combines functionality from:
    - DatabaseCore: Connection management
    - DiagnosticLogMixin: Flight-recorder payloads
    - MemoryDataMixin: Long-term memories and similarity search
    """

    def __init__(
        self,
        db_url: str | None = None,
        auth_token: str | None = None,
        local_db_path: str = DEFAULT_LOCAL_DB_PATH,
    ) -> None:
        """Initialize the Turso database connection and tables."""
        super().__init__(db_url, auth_token, local_db_path)
        self._init_db()

    def _init_db(self) -> None:
        """Initialize all database tables."""
        self._init_diagnostic_tables()
        self._init_memory_tables()
        self._sync()


def init_pipeline_db(
    db_url: str | None = None,
    auth_token: str | None = None,
    local_db_path: str = DEFAULT_LOCAL_DB_PATH,
) -> PipelineDB:
    """Open the pipeline database and create its tables."""
    return PipelineDB(
        db_url=db_url,
        auth_token=auth_token,
        local_db_path=local_db_path,
    )


__all__ = [
    "DiagnosticLogRecord",
    "MemoryRecord",
    "MemorySearch",
    "PipelineDB",
    "cosine_similarity",
    "init_pipeline_db",
]
