"""Diagnostic log storage for pipeline flight-recorder payloads."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from personacord.services.database.core import LIBSQL_ERROR, _with_reconnect

if TYPE_CHECKING:
    from collections.abc import Mapping

    from .core import DatabaseProtocol as _Base
else:
    _Base = object

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DiagnosticLogRecord:
    """One persisted diagnostic payload with its indexed columns."""

    request_id: str
    payload: Mapping[str, Any]
    personality_id: str | None = None
    user_id: str | None = None
    model: str | None = None
    success: bool | None = None
    failed_step: str | None = None


class DiagnosticLogMixin(_Base):
    """Mixin for diagnostic log storage."""

    def _init_diagnostic_tables(self) -> None:
        """Initialize diagnostic log tables."""
        conn = self._get_connection()
        cursor = conn.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS diagnostic_logs (
                request_id TEXT PRIMARY KEY,
                personality_id TEXT,
                user_id TEXT,
                model TEXT,
                success INTEGER,
                failed_step TEXT,
                payload TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
        """)
        cursor.execute(
            "CREATE INDEX IF NOT EXISTS idx_diagnostic_logs_created_at "
            "ON diagnostic_logs (created_at)",
        )
        conn.commit()

    @_with_reconnect
    def save_diagnostic_log(self, record: DiagnosticLogRecord) -> None:
        """Insert or replace the diagnostic payload for one request."""
        conn = self._get_connection()
        cursor = conn.cursor()

        payload_json = json.dumps(record.payload, default=str)
        success_flag = None if record.success is None else int(record.success)
        params = (
            str(record.request_id),
            record.personality_id,
            record.user_id,
            record.model,
            success_flag,
            record.failed_step,
            payload_json,
            datetime.now(UTC).isoformat(),
        )
        cursor.execute(
            """INSERT INTO diagnostic_logs (
                   request_id,
                   personality_id,
                   user_id,
                   model,
                   success,
                   failed_step,
                   payload,
                   created_at
               )
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(request_id) DO UPDATE SET
                   personality_id = excluded.personality_id,
                   user_id = excluded.user_id,
                   model = excluded.model,
                   success = excluded.success,
                   failed_step = excluded.failed_step,
                   payload = excluded.payload""",
            params,
        )
        conn.commit()
        try:
            self._sync()
        except LIBSQL_ERROR as exc:
            logger.debug("Background sync after diagnostic save failed: %s", exc)
        logger.debug("Saved diagnostic log for request %s", record.request_id)

    @_with_reconnect
    def get_diagnostic_log(self, request_id: str) -> dict[str, Any] | None:
        """Return the stored diagnostic payload for `request_id`."""
        conn = self._get_connection()
        cursor = conn.cursor()
        cursor.execute(
            "SELECT payload FROM diagnostic_logs WHERE request_id = ?",
            (str(request_id),),
        )
        row = cursor.fetchone()
        if not row or not row[0]:
            return None
        try:
            payload = json.loads(row[0])
        except json.JSONDecodeError:
            logger.warning("Failed to decode diagnostic log for request %s", request_id)
            return None
        return payload if isinstance(payload, dict) else None

    @_with_reconnect
    def prune_diagnostic_logs(self, older_than: datetime) -> int:
        """Delete diagnostic logs created before `older_than`.

        Returns:
            The number of deleted rows.

        """
        if older_than.tzinfo is None:
            older_than = older_than.replace(tzinfo=UTC)
        cutoff = older_than.astimezone(UTC).isoformat()

        conn = self._get_connection()
        cursor = conn.cursor()
        cursor.execute(
            "SELECT COUNT(*) FROM diagnostic_logs WHERE created_at < ?",
            (cutoff,),
        )
        row = cursor.fetchone()
        count = int(row[0]) if row else 0
        if count:
            cursor.execute("DELETE FROM diagnostic_logs WHERE created_at < ?", (cutoff,))
            conn.commit()
            self._sync()
            logger.info("Pruned %s diagnostic log(s) older than %s", count, cutoff)
        return count
