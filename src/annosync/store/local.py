"""SQLite-backed local store for threads, comments, and findings.

One ``LocalStore`` file exists per open project.  Threads and comments
are never removed by normal operations: deletion clears their content
columns and sets ``deleted = 1`` so the tombstone can be propagated to
the remote side.  ``prune_tombstones()`` is the maintenance path that
physically removes them.

Lifecycle is explicit: ``init()`` opens the database and ``close()``
releases it.  Every other method called outside that window logs a
warning and returns an empty/default result instead of raising.

The connection is shared with worker threads (callers go through
``run_sync``), so every statement runs under one lock.
"""

from __future__ import annotations

import functools
import logging
import sqlite3
import threading
import time
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Any, TypeVar

from pydantic import BaseModel

from ..sync.models import FindingFlag, FindingRecord

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

_SCHEMA = (
    "CREATE TABLE IF NOT EXISTS comments ("
    "id TEXT PRIMARY KEY, thread_id TEXT, comment TEXT, "
    "timestamp_updated DATETIME, timestamp_created DATETIME, "
    "user_created TEXT, deleted INTEGER DEFAULT 0)",
    "CREATE TABLE IF NOT EXISTS threads ("
    "id TEXT PRIMARY KEY, anchor TEXT, file_path TEXT, "
    "deleted INTEGER DEFAULT 0)",
    "CREATE TABLE IF NOT EXISTS diagnostics ("
    "id TEXT PRIMARY KEY, diagnostic TEXT, flag INTEGER DEFAULT 0, "
    "flag_timestamp DATETIME, anchor TEXT, file_path TEXT, "
    "timestamp_created DATETIME)",
)

_TOMBSTONE_COMMENTS = (
    "UPDATE comments SET comment = NULL, timestamp_created = NULL, "
    "user_created = NULL, timestamp_updated = ?, deleted = 1 "
)


class StoredComment(BaseModel):
    """A live comment row."""

    id: str
    thread_id: str
    body: str
    author: str
    last_modified: float

    model_config = {"frozen": True}


class StoredThread(BaseModel):
    """A live thread row together with its live comments."""

    id: str
    anchor: str | None
    file_path: str
    comments: tuple[StoredComment, ...] = ()

    model_config = {"frozen": True}


def _when_open(default: Callable[[], Any]) -> Callable[[F], F]:
    """Run the wrapped method under the lock, or return ``default()``
    when the store is not initialized."""

    def decorator(method: F) -> F:
        @functools.wraps(method)
        def wrapper(self: LocalStore, *args: Any, **kwargs: Any) -> Any:
            if self._conn is None:
                logger.warning(
                    "LocalStore.%s ignored: store is not initialized",
                    method.__name__,
                )
                return default()
            with self._lock:
                return method(self, *args, **kwargs)

        return wrapper  # type: ignore[return-value]

    return decorator


class LocalStore:
    """Per-project SQLite store.

    Args:
        path: Location of the database file (``":memory:"`` for tests).
        clock: Time source used for tombstone and creation timestamps.
    """

    def __init__(
        self,
        path: Path | str,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.path = path
        self._clock = clock
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_ready(self) -> bool:
        return self._conn is not None

    def init(self) -> None:
        """Open the database and create missing tables.  Idempotent."""
        if self._conn is not None:
            return
        if str(self.path) != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.path), check_same_thread=False)
        conn.row_factory = sqlite3.Row
        with conn:
            for statement in _SCHEMA:
                conn.execute(statement)
        self._conn = conn
        logger.info("Local store ready: %s", self.path)

    def close(self) -> None:
        """Close the database.  Later calls become logged no-ops."""
        with self._lock:
            if self._conn is None:
                return
            self._conn.close()
            self._conn = None
        logger.info("Local store closed: %s", self.path)

    @_when_open(lambda: None)
    def drop_all_tables(self) -> None:
        """Remove every table; used when a project is destroyed."""
        assert self._conn is not None
        with self._conn:
            for table in ("comments", "threads", "diagnostics"):
                self._conn.execute(f"DROP TABLE IF EXISTS {table}")

    # ------------------------------------------------------------------
    # Threads and comments
    # ------------------------------------------------------------------

    @_when_open(lambda: None)
    def create_or_replace_thread(
        self, thread_id: str, anchor: str | None, file_path: str
    ) -> None:
        assert self._conn is not None
        with self._conn:
            self._conn.execute(
                "INSERT INTO threads (id, anchor, file_path, deleted) "
                "VALUES (?, ?, ?, 0) ON CONFLICT(id) DO UPDATE SET "
                "anchor = excluded.anchor, file_path = excluded.file_path, "
                "deleted = 0",
                (thread_id, anchor, file_path),
            )

    @_when_open(lambda: None)
    def create_or_replace_comment(
        self,
        comment_id: str,
        thread_id: str,
        body: str,
        author: str,
        last_modified: float,
    ) -> None:
        """Upsert a comment, keeping its original creation time."""
        assert self._conn is not None
        with self._conn:
            self._conn.execute(
                "INSERT INTO comments (id, thread_id, comment, user_created, "
                "timestamp_updated, timestamp_created, deleted) "
                "VALUES (?, ?, ?, ?, ?, ?, 0) ON CONFLICT(id) DO UPDATE SET "
                "thread_id = excluded.thread_id, comment = excluded.comment, "
                "user_created = excluded.user_created, "
                "timestamp_updated = excluded.timestamp_updated, deleted = 0",
                (
                    comment_id,
                    thread_id,
                    body,
                    author,
                    last_modified,
                    self._clock(),
                ),
            )

    @_when_open(list)
    def get_comment_ids(self, thread_id: str) -> list[str]:
        """Return ids of the live comments of *thread_id*."""
        assert self._conn is not None
        rows = self._conn.execute(
            "SELECT id FROM comments WHERE thread_id = ? AND deleted = 0",
            (thread_id,),
        ).fetchall()
        return [row["id"] for row in rows]

    @_when_open(lambda: 0)
    def delete_comments(self, comment_ids: Iterable[str]) -> int:
        """Tombstone the given comments.  Returns the number of rows hit."""
        assert self._conn is not None
        ids = list(comment_ids)
        if not ids:
            return 0
        placeholders = ", ".join("?" for _ in ids)
        with self._conn:
            cursor = self._conn.execute(
                _TOMBSTONE_COMMENTS + f"WHERE id IN ({placeholders})",
                (self._clock(), *ids),
            )
        return cursor.rowcount

    @_when_open(lambda: None)
    def delete_thread(self, thread_id: str) -> None:
        """Tombstone a thread and all of its comments, then sweep orphans."""
        assert self._conn is not None
        now = self._clock()
        with self._conn:
            self._conn.execute(
                "UPDATE threads SET anchor = NULL, file_path = NULL, "
                "deleted = 1 WHERE id = ?",
                (thread_id,),
            )
            self._conn.execute(
                _TOMBSTONE_COMMENTS + "WHERE thread_id = ? AND deleted = 0",
                (now, thread_id),
            )
        self._sweep_orphans(now)

    @_when_open(lambda: 0)
    def delete_orphan_comments(self) -> int:
        """Tombstone live comments whose thread is missing or deleted."""
        return self._sweep_orphans(self._clock())

    def _sweep_orphans(self, now: float) -> int:
        assert self._conn is not None
        with self._conn:
            cursor = self._conn.execute(
                _TOMBSTONE_COMMENTS + "WHERE deleted = 0 AND ("
                "thread_id IS NULL OR thread_id NOT IN "
                "(SELECT id FROM threads WHERE deleted = 0))",
                (now,),
            )
        if cursor.rowcount:
            logger.debug("Tombstoned %d orphan comments", cursor.rowcount)
        return cursor.rowcount

    @_when_open(list)
    def list_active(self) -> list[StoredThread]:
        """Return every live thread with its live comments, oldest first."""
        assert self._conn is not None
        comments: dict[str, list[StoredComment]] = {}
        for row in self._conn.execute(
            "SELECT id, thread_id, comment, user_created, timestamp_updated "
            "FROM comments WHERE deleted = 0 "
            "ORDER BY timestamp_created, rowid"
        ):
            comments.setdefault(row["thread_id"], []).append(
                StoredComment(
                    id=row["id"],
                    thread_id=row["thread_id"],
                    body=row["comment"] or "",
                    author=row["user_created"] or "",
                    last_modified=float(row["timestamp_updated"] or 0.0),
                )
            )
        return [
            StoredThread(
                id=row["id"],
                anchor=row["anchor"],
                file_path=row["file_path"] or "",
                comments=tuple(comments.get(row["id"], ())),
            )
            for row in self._conn.execute(
                "SELECT id, anchor, file_path FROM threads "
                "WHERE deleted = 0 ORDER BY rowid"
            )
        ]

    @_when_open(list)
    def list_tombstoned_threads(self) -> list[str]:
        assert self._conn is not None
        rows = self._conn.execute(
            "SELECT id FROM threads WHERE deleted = 1"
        ).fetchall()
        return [row["id"] for row in rows]

    @_when_open(list)
    def list_tombstoned_comments(
        self, since: float | None = None
    ) -> list[tuple[str, str]]:
        """Return ``(comment_id, thread_id)`` for tombstoned comments.

        Args:
            since: When given, only tombstones written after this time.
        """
        assert self._conn is not None
        query = "SELECT id, thread_id FROM comments WHERE deleted = 1"
        params: tuple[Any, ...] = ()
        if since is not None:
            query += " AND timestamp_updated > ?"
            params = (since,)
        rows = self._conn.execute(query, params).fetchall()
        return [(row["id"], row["thread_id"]) for row in rows]

    @_when_open(lambda: 0)
    def prune_tombstones(self) -> int:
        """Physically delete tombstoned threads and comments."""
        assert self._conn is not None
        with self._conn:
            removed = self._conn.execute(
                "DELETE FROM comments WHERE deleted = 1"
            ).rowcount
            removed += self._conn.execute(
                "DELETE FROM threads WHERE deleted = 1"
            ).rowcount
        logger.info("Pruned %d tombstoned rows", removed)
        return removed

    # ------------------------------------------------------------------
    # Findings
    # ------------------------------------------------------------------

    @_when_open(list)
    def list_findings(self) -> list[FindingRecord]:
        assert self._conn is not None
        return [
            FindingRecord(
                id=row["id"],
                diagnostic=row["diagnostic"],
                flag=FindingFlag(row["flag"] or 0),
                flag_timestamp=float(row["flag_timestamp"] or 0.0),
                anchor=row["anchor"],
                file_path=row["file_path"],
                timestamp_created=float(row["timestamp_created"] or 0.0),
            )
            for row in self._conn.execute(
                "SELECT id, diagnostic, flag, flag_timestamp, anchor, "
                "file_path, timestamp_created FROM diagnostics ORDER BY rowid"
            )
        ]

    @_when_open(lambda: None)
    def create_or_replace_findings(
        self, findings: Iterable[FindingRecord], replace_all: bool = False
    ) -> None:
        """Upsert *findings*; with *replace_all* the table is cleared first."""
        assert self._conn is not None
        with self._conn:
            if replace_all:
                self._conn.execute("DELETE FROM diagnostics")
            self._conn.executemany(
                "INSERT OR REPLACE INTO diagnostics (id, diagnostic, flag, "
                "flag_timestamp, anchor, file_path, timestamp_created) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                [
                    (
                        f.id,
                        f.diagnostic,
                        int(f.flag),
                        f.flag_timestamp,
                        f.anchor,
                        f.file_path,
                        f.timestamp_created,
                    )
                    for f in findings
                ],
            )

    @_when_open(lambda: False)
    def update_finding_flag(
        self, finding_id: str, flag: FindingFlag, flag_timestamp: float
    ) -> bool:
        """Set the flag of one finding.  Returns ``False`` if it is unknown."""
        assert self._conn is not None
        with self._conn:
            cursor = self._conn.execute(
                "UPDATE diagnostics SET flag = ?, flag_timestamp = ? "
                "WHERE id = ?",
                (int(flag), flag_timestamp, finding_id),
            )
        return cursor.rowcount > 0

    @_when_open(lambda: None)
    def delete_finding(self, finding_id: str) -> None:
        assert self._conn is not None
        with self._conn:
            self._conn.execute(
                "DELETE FROM diagnostics WHERE id = ?", (finding_id,)
            )

    @_when_open(lambda: 0)
    def delete_findings(self, finding_ids: Iterable[str]) -> int:
        """Remove the given findings.  Returns the number of rows hit."""
        assert self._conn is not None
        ids = list(finding_ids)
        if not ids:
            return 0
        placeholders = ", ".join("?" for _ in ids)
        with self._conn:
            cursor = self._conn.execute(
                f"DELETE FROM diagnostics WHERE id IN ({placeholders})", ids
            )
        return cursor.rowcount

    @_when_open(lambda: None)
    def clear_findings(self) -> None:
        assert self._conn is not None
        with self._conn:
            self._conn.execute("DELETE FROM diagnostics")
