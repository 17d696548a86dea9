"""Connection handling for the pipeline's Turso/libSQL database.

With ``TURSO_DATABASE_URL`` and ``TURSO_AUTH_TOKEN`` set, the database is an
embedded replica synced with Turso; otherwise it is a local file. A replica
that fails to connect or sync is replaced by the local file for the rest of
the process.
"""

from __future__ import annotations

import functools
import logging
import os
from typing import TYPE_CHECKING, Any, Concatenate, ParamSpec, Protocol, TypeVar, cast

import libsql as libsql_module

from personacord.core.error_handling import log_exception

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)
libsql: Any = libsql_module
LibsqlConnection = Any

LIBSQL_ERROR = cast(
    "type[BaseException]",
    getattr(libsql, "LibsqlError", getattr(libsql, "Error", Exception)),
)
CONNECTION_ERRORS = (ValueError, LIBSQL_ERROR)
DEFAULT_LOCAL_DB_PATH = "personacord.db"


class DatabaseProtocol(Protocol):
    """What the table mixins need from the connection owner."""

    def _get_connection(self) -> LibsqlConnection: ...
    def _sync(self) -> None: ...
    def _reconnect(self) -> None: ...


T_Database = TypeVar("T_Database", bound=DatabaseProtocol)
P = ParamSpec("P")
T = TypeVar("T")


def is_stale_stream_error(error: BaseException) -> bool:
    """Return True for Hrana errors raised by a remote stream that went away."""
    text = str(error)
    return "stream not found" in text or "Hrana" in text


def _with_reconnect(
    method: Callable[Concatenate[T_Database, P], T],
) -> Callable[Concatenate[T_Database, P], T]:
    """Retry `method` once on a fresh connection after a stale-stream error."""

    @functools.wraps(method)
    def wrapper(self: T_Database, *args: P.args, **kwargs: P.kwargs) -> T:
        try:
            return method(self, *args, **kwargs)
        except CONNECTION_ERRORS as exc:
            if not is_stale_stream_error(exc):
                raise
            logger.warning(
                "Stale Turso stream in %s, reconnecting: %s",
                method.__name__,
                exc,
            )
        self._reconnect()
        try:
            return method(self, *args, **kwargs)
        except CONNECTION_ERRORS as exc:
            log_exception(
                logger=logger,
                message="Database call failed after reconnecting",
                error=exc,
                context={"method": method.__name__},
            )
            raise

    return wrapper


class DatabaseCore:
    """Owns the single libSQL connection shared by the table mixins."""

    def __init__(
        self,
        db_url: str | None = None,
        auth_token: str | None = None,
        local_db_path: str = DEFAULT_LOCAL_DB_PATH,
    ) -> None:
        """Remember where to connect; the connection opens on first use.

        Args:
            db_url: Turso database URL, defaulting to ``TURSO_DATABASE_URL``.
            auth_token: Turso token, defaulting to ``TURSO_AUTH_TOKEN``.
            local_db_path: File for the embedded replica or the local database.

        """
        self.db_url = db_url or os.getenv("TURSO_DATABASE_URL")
        self.auth_token = auth_token or os.getenv("TURSO_AUTH_TOKEN")
        self.local_db_path = local_db_path
        self._conn: LibsqlConnection | None = None

    @property
    def is_replica(self) -> bool:
        """Return True while connected, or about to connect, to Turso."""
        return bool(self.db_url and self.auth_token)

    def _get_connection(self) -> LibsqlConnection:
        if self._conn is not None:
            return self._conn
        if not self.is_replica:
            logger.info("Using local database at %s", self.local_db_path)
            self._conn = libsql.connect(self.local_db_path)
            return self._conn
        try:
            self._conn = libsql.connect(
                self.local_db_path,
                sync_url=self.db_url,
                auth_token=self.auth_token,
            )
            self._conn.sync()
        except CONNECTION_ERRORS as exc:
            self._use_local(exc)
        else:
            logger.info("Connected to Turso replica %s", self.db_url)
        return self._conn

    def _use_local(self, reason: BaseException) -> None:
        logger.warning(
            "Turso unavailable (%s), switching to local database at %s",
            reason,
            self.local_db_path,
        )
        self.close()
        self.db_url = None
        self.auth_token = None
        self._conn = libsql.connect(self.local_db_path)

    def _reconnect(self) -> None:
        self.close()
        self._get_connection()

    def _sync(self) -> None:
        """Push local writes to Turso when running as a replica."""
        if self._conn is None or not self.is_replica:
            return
        try:
            self._conn.sync()
        except CONNECTION_ERRORS as exc:
            self._use_local(exc)

    def close(self) -> None:
        """Close the connection; the next call reopens it."""
        conn, self._conn = self._conn, None
        if conn is None:
            return
        try:
            conn.close()
        except CONNECTION_ERRORS as exc:
            logger.debug("Ignoring error while closing the database: %s", exc)
