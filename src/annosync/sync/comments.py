"""Comment thread sync engine.

``CommentSyncEngine`` keeps the in-memory view of a project's threads,
persists every edit to the local store, and reconciles the local store
with the remote store.  Passes run through a ``CoalescingRunner`` so at
most one is in flight; remote change events and edits only *request* a
pass.

A pass follows a fixed order:

1. read local tombstones;
2. stop if the remote is not ready;
3. pull remote records and tombstones since the watermark;
4. push local tombstones the remote does not have, then pull again;
5. advance the watermark (forced back to 0 while ``full_resync`` is on);
6. apply remote tombstones;
7. materialize remote threads and comments that are new here;
8. accept remote comment updates newer than ours by more than a second;
9. collect threads the remote lacks and comments it has older or not at
   all;
10. push them, threads first, each thread with a freshly captured anchor.

Comments use strict last-writer-wins on (body, timestamp).
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone

from ..anchor import ANCHOR_LINES, Anchor, capture, decode, encode, resolve_line
from ..core.async_utils import run_sync
from ..errors import InvariantViolation, MalformedAnchor
from ..file_handler import DocumentSource
from ..store.local import LocalStore
from .coalesce import CoalescingRunner
from .models import (
    CommentRecord,
    Notification,
    NotificationKind,
    PassReport,
    ThreadRecord,
)
from .notify import LoggingNotifier, Notifier
from .remote import RemoteStore

logger = logging.getLogger(__name__)

# Remote comment updates must beat the local timestamp by more than this.
UPDATE_GUARD_SECONDS = 1.0


@dataclass
class CommentView:
    id: str
    body: str
    author: str
    last_modified: float


@dataclass
class ThreadView:
    """A thread as the user sees it: a file, a line, and its comments."""

    id: str
    file_path: str
    line: int
    comments: list[CommentView] = field(default_factory=list)

    def find(self, comment_id: str) -> CommentView | None:
        for comment in self.comments:
            if comment.id == comment_id:
                return comment
        return None


class _Disposed(Exception):
    """Internal signal: the engine was disposed mid-pass."""


@dataclass
class _PassCounters:
    pulled: int = 0
    pushed: int = 0
    created_local: int = 0
    updated_local: int = 0
    deleted_local: int = 0


class CommentSyncEngine:
    """Mirror of one project's comment threads.

    Args:
        local: Open local store of the project.
        remote: Remote store bound to the project.
        documents: Source of live document text for anchoring.
        notifier: Receives "comment added/updated" notifications.
        author: Name recorded on comments created here.
        anchor_lines: Lines captured on each side of an anchored line.
        full_resync: Pull everything on every pass instead of trusting the
            remote clock as a watermark.
        id_factory: Generates thread and comment ids.
    """

    def __init__(
        self,
        local: LocalStore,
        remote: RemoteStore,
        documents: DocumentSource,
        notifier: Notifier | None = None,
        author: str = "",
        anchor_lines: int = ANCHOR_LINES,
        full_resync: bool = True,
        id_factory: Callable[[], str] = lambda: uuid.uuid4().hex,
    ) -> None:
        self._local = local
        self._remote = remote
        self._documents = documents
        self._notifier = notifier or LoggingNotifier()
        self._author = author
        self._anchor_lines = anchor_lines
        self._full_resync = full_resync
        self._new_id = id_factory

        self._threads: dict[str, ThreadView] = {}
        self._watermark = 0.0
        self._remote_threads: set[str] = set()
        self._remote_comments: dict[str, float] = {}
        self._disposed = False
        self._unsubscribe: list[Callable[[], None]] = []
        self.runner = CoalescingRunner("comments", self.reconcile)
        self.last_report: PassReport | None = None

    # ------------------------------------------------------------------
    # View
    # ------------------------------------------------------------------

    @property
    def threads(self) -> list[ThreadView]:
        return list(self._threads.values())

    @property
    def watermark(self) -> float:
        return self._watermark

    def get_thread(self, thread_id: str) -> ThreadView | None:
        return self._threads.get(thread_id)

    async def load(self) -> None:
        """Rebuild the view from the local store, relocating every anchor
        against the current document content."""
        self._threads.clear()
        for stored in await run_sync(self._local.list_active):
            try:
                file_path = self._documents.to_relative(stored.file_path)
            except ValueError as exc:
                logger.warning("Skipping stored thread %s: %s", stored.id, exc)
                continue
            document = await run_sync(self._documents.read_text, file_path)
            line = self._stored_line(stored.id, stored.anchor, document)
            self._threads[stored.id] = ThreadView(
                id=stored.id,
                file_path=file_path,
                line=line,
                comments=[
                    CommentView(
                        id=c.id,
                        body=c.body,
                        author=c.author,
                        last_modified=c.last_modified,
                    )
                    for c in stored.comments
                ],
            )
        logger.info("Loaded %d threads", len(self._threads))

    async def start(self) -> None:
        """Load the view and follow the remote store."""
        await self.load()
        self._unsubscribe.append(
            self._remote.on_comments_changed(self.request_sync)
        )
        self._unsubscribe.append(self._remote.on_ready(self.request_sync))

    # ------------------------------------------------------------------
    # Local edits
    # ------------------------------------------------------------------

    async def create_thread(
        self, file_path: str, line: int, body: str
    ) -> ThreadView:
        """Start a thread on *line* of *file_path* with a first comment.

        *file_path* may be absolute or workspace-relative.

        Raises:
            ValueError: If *file_path* is outside the workspace.
        """
        file_path = self._documents.to_relative(file_path)
        timestamp = await self._remote.remote_timestamp()
        thread = ThreadView(
            id=self._new_id(),
            file_path=file_path,
            line=line,
            comments=[
                CommentView(
                    id=self._new_id(),
                    body=body,
                    author=self._author,
                    last_modified=timestamp,
                )
            ],
        )
        self._threads[thread.id] = thread
        await self._persist_thread(thread)
        logger.debug("Created thread %s on %s:%d", thread.id, file_path, line)
        self.request_sync()
        return thread

    async def add_comment(self, thread_id: str, body: str) -> CommentView:
        thread = self._require_thread(thread_id)
        comment = CommentView(
            id=self._new_id(),
            body=body,
            author=self._author,
            last_modified=await self._remote.remote_timestamp(),
        )
        thread.comments.append(comment)
        await self._persist_thread(thread)
        self.request_sync()
        return comment

    async def edit_comment(
        self, thread_id: str, comment_id: str, body: str
    ) -> CommentView:
        thread = self._require_thread(thread_id)
        comment = thread.find(comment_id)
        if comment is None:
            raise KeyError(f"Unknown comment {comment_id} in thread {thread_id}")
        comment.body = body
        comment.last_modified = await self._remote.remote_timestamp()
        await self._persist_thread(thread)
        self.request_sync()
        return comment

    async def delete_comment(self, thread_id: str, comment_id: str) -> None:
        """Delete one comment; a thread left without comments is deleted."""
        thread = self._require_thread(thread_id)
        comment = thread.find(comment_id)
        if comment is None:
            raise KeyError(f"Unknown comment {comment_id} in thread {thread_id}")
        thread.comments.remove(comment)
        if not thread.comments:
            await self.delete_thread(thread_id)
            return
        await self._persist_thread(thread)
        self.request_sync()

    async def delete_thread(self, thread_id: str) -> None:
        self._require_thread(thread_id)
        del self._threads[thread_id]
        await run_sync(self._local.delete_thread, thread_id)
        logger.debug("Deleted thread %s", thread_id)
        self.request_sync()

    async def delete_all_threads(self) -> None:
        for thread_id in list(self._threads):
            del self._threads[thread_id]
            await run_sync(self._local.delete_thread, thread_id)
        self.request_sync()

    async def move_thread(self, thread_id: str, line: int) -> None:
        """Record that the editor moved *thread_id* to *line*."""
        thread = self._require_thread(thread_id)
        thread.line = line
        await self._persist_thread(thread)

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    def request_sync(self) -> asyncio.Task[None] | None:
        if self._disposed:
            return None
        return self.runner.request()

    async def sync(self) -> None:
        """Run a pass (or join the running one) and wait for it."""
        await self.runner.run()

    async def dispose(self) -> None:
        """Stop syncing.  A pass in flight stops at its next remote call."""
        self._disposed = True
        self.runner.dispose()
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe.clear()
        await self.runner.wait_idle()

    async def reconcile(self) -> PassReport:
        """Run one reconciliation pass (see the module docstring)."""
        started = _now_iso()
        counters = _PassCounters()
        if self._disposed:
            return self._finish(started, counters, skipped="engine disposed")

        logger.info("Comment sync pass starting")
        try:
            skipped = await self._reconcile(counters)
        except _Disposed:
            return self._finish(started, counters, skipped="engine disposed")
        except InvariantViolation as exc:
            logger.error("Comment sync aborted: %s", exc)
            raise
        return self._finish(started, counters, skipped=skipped)

    async def _reconcile(self, counters: _PassCounters) -> str | None:
        """Run the pass; return the reason it was skipped, if it was."""
        # 1.
        local_thread_tombstones = set(
            await run_sync(self._local.list_tombstoned_threads)
        )
        local_comment_tombstones = dict(
            await run_sync(self._local.list_tombstoned_comments)
        )

        # 2.
        if not self._remote.is_ready:
            logger.info("Remote store not ready, skipping comment sync")
            return "remote not ready"

        if self._full_resync:
            self._remote_threads.clear()
            self._remote_comments.clear()

        # 3.
        self._check_alive()
        pull = await self._remote.pull_since(self._watermark)

        # 4.
        remote_thread_tombstones = {
            t.tid for t in pull.tombstones if t.target == "thread"
        }
        remote_comment_tombstones = {
            t.cid for t in pull.tombstones if t.target == "comment"
        }
        pushed_tombstones = 0
        for thread_id in local_thread_tombstones - remote_thread_tombstones:
            self._check_alive()
            await self._remote.push_thread(
                thread_id,
                file_path=None,
                anchor=None,
                timestamp=await self._remote.remote_timestamp(),
                deleted=True,
            )
            pushed_tombstones += 1
        for comment_id, thread_id in local_comment_tombstones.items():
            if comment_id in remote_comment_tombstones:
                continue
            self._check_alive()
            await self._remote.push_comment(
                comment_id,
                thread_id,
                body=None,
                author=None,
                timestamp=await self._remote.remote_timestamp(),
                deleted=True,
            )
            pushed_tombstones += 1
        if pushed_tombstones:
            logger.debug("Pushed %d tombstones, pulling again", pushed_tombstones)
            counters.pushed += pushed_tombstones
            self._check_alive()
            pull = await self._remote.pull_since(self._watermark)
            remote_thread_tombstones = {
                t.tid for t in pull.tombstones if t.target == "thread"
            }
        counters.pulled = len(pull.records)

        # 5.
        self._check_alive()
        self._watermark = await self._remote.remote_timestamp()
        if self._full_resync:
            self._watermark = 0.0

        # 6.
        for tombstone in pull.tombstones:
            self._check_alive()
            if tombstone.target == "thread":
                if tombstone.tid in self._threads:
                    await self._drop_thread_locally(tombstone.tid)
                    counters.deleted_local += 1
                self._remote_threads.discard(tombstone.tid)
            elif tombstone.cid is not None:
                if await self._drop_comment_locally(tombstone.tid, tombstone.cid):
                    counters.deleted_local += 1
                self._remote_comments.pop(tombstone.cid, None)

        # 7. threads
        unusable: set[str] = set()
        for record in pull.records:
            if not isinstance(record, ThreadRecord):
                continue
            if record.tid in local_thread_tombstones:
                continue
            self._remote_threads.add(record.tid)
            if record.tid not in self._threads:
                self._check_alive()
                if await self._materialize_thread(record):
                    counters.created_local += 1
                else:
                    unusable.add(record.tid)

        # 7. and 8. comments
        for record in pull.records:
            if not isinstance(record, CommentRecord):
                continue
            if record.cid in local_comment_tombstones:
                continue
            if (
                record.tid in local_thread_tombstones
                or record.tid in remote_thread_tombstones
                or record.tid in unusable
            ):
                logger.debug(
                    "Ignoring comment %s of deleted or unusable thread %s",
                    record.cid,
                    record.tid,
                )
                continue
            thread = self._threads.get(record.tid)
            if thread is None:
                raise InvariantViolation(
                    f"Remote comment {record.cid} references thread "
                    f"{record.tid}, which is not loaded"
                )
            self._remote_comments[record.cid] = record.timestamp_modified or 0.0
            self._check_alive()
            existing = thread.find(record.cid)
            if existing is None:
                await self._materialize_comment(thread, record)
                counters.created_local += 1
            elif (
                record.timestamp_modified is not None
                and record.timestamp_modified
                > existing.last_modified + UPDATE_GUARD_SECONDS
            ):
                await self._accept_update(thread, existing, record)
                counters.updated_local += 1

        # 9.
        threads_to_push = [
            thread
            for thread in self._threads.values()
            if thread.id not in self._remote_threads
        ]
        comments_to_push = [
            (thread, comment)
            for thread in self._threads.values()
            for comment in thread.comments
            if comment.id not in self._remote_comments
            or self._remote_comments[comment.id] < comment.last_modified
        ]

        # 10.
        for thread in threads_to_push:
            self._check_alive()
            await self._push_thread(thread)
            counters.pushed += 1
        for thread, comment in comments_to_push:
            self._check_alive()
            await self._remote.push_comment(
                comment.id,
                thread.id,
                body=comment.body,
                author=comment.author,
                timestamp=comment.last_modified,
            )
            self._remote_comments[comment.id] = comment.last_modified
            counters.pushed += 1
        return None

    def _finish(
        self,
        started: str,
        counters: _PassCounters,
        skipped: str | None = None,
    ) -> PassReport:
        report = PassReport(
            target="comments",
            started_at=started,
            completed_at=_now_iso(),
            skipped=skipped,
            pulled=counters.pulled,
            pushed=counters.pushed,
            created_local=counters.created_local,
            updated_local=counters.updated_local,
            deleted_local=counters.deleted_local,
        )
        self.last_report = report
        logger.info(report.summary())
        return report

    # ------------------------------------------------------------------
    # Pass steps
    # ------------------------------------------------------------------

    async def _drop_thread_locally(self, thread_id: str) -> None:
        self._threads.pop(thread_id, None)
        await run_sync(self._local.delete_thread, thread_id)
        logger.debug("Remote deleted thread %s", thread_id)

    async def _drop_comment_locally(self, thread_id: str, comment_id: str) -> bool:
        thread = self._threads.get(thread_id)
        comment = thread.find(comment_id) if thread is not None else None
        if thread is None or comment is None:
            return False
        thread.comments.remove(comment)
        await run_sync(self._local.delete_comments, [comment_id])
        logger.debug("Remote deleted comment %s", comment_id)
        if not thread.comments:
            await self._drop_thread_locally(thread_id)
        return True

    async def _materialize_thread(self, record: ThreadRecord) -> bool:
        if record.file_path is None or record.anchor is None:
            logger.warning("Remote thread %s has no location, skipping", record.tid)
            return False
        try:
            anchor = decode(record.anchor)
        except MalformedAnchor as exc:
            logger.error("Remote thread %s has a bad anchor: %s", record.tid, exc)
            return False
        try:
            local_path = self._documents.to_absolute(record.file_path)
        except ValueError as exc:
            logger.error("Remote thread %s has a bad path: %s", record.tid, exc)
            return False
        document = await run_sync(self._documents.read_text, record.file_path)
        self._threads[record.tid] = ThreadView(
            id=record.tid,
            file_path=record.file_path,
            line=resolve_line(anchor, document),
        )
        await run_sync(
            self._local.create_or_replace_thread,
            record.tid,
            record.anchor,
            str(local_path),
        )
        logger.debug("Materialized remote thread %s", record.tid)
        return True

    async def _materialize_comment(
        self, thread: ThreadView, record: CommentRecord
    ) -> None:
        comment = CommentView(
            id=record.cid,
            body=record.body or "",
            author=record.author or "",
            last_modified=record.timestamp_modified or 0.0,
        )
        thread.comments.append(comment)
        await self._store_comment(thread.id, comment)
        self._announce(NotificationKind.COMMENT_ADDED, thread, comment)

    async def _accept_update(
        self, thread: ThreadView, comment: CommentView, record: CommentRecord
    ) -> None:
        logger.debug(
            "Remote comment %s is newer (%s > %s)",
            comment.id,
            record.timestamp_modified,
            comment.last_modified,
        )
        comment.body = record.body or ""
        comment.author = record.author or comment.author
        comment.last_modified = record.timestamp_modified or comment.last_modified
        await self._store_comment(thread.id, comment)
        self._announce(NotificationKind.COMMENT_UPDATED, thread, comment)

    async def _push_thread(self, thread: ThreadView) -> None:
        anchor = encode(await self._capture_anchor(thread))
        await self._remote.push_thread(
            thread.id,
            file_path=thread.file_path,
            anchor=anchor,
            timestamp=await self._remote.remote_timestamp(),
        )
        self._remote_threads.add(thread.id)
        await run_sync(
            self._local.create_or_replace_thread,
            thread.id,
            anchor,
            self._local_path(thread),
        )

    def _announce(
        self, kind: NotificationKind, thread: ThreadView, comment: CommentView
    ) -> None:
        self._check_alive()
        self._notifier.notify(
            Notification(
                kind=kind,
                author=comment.author,
                file_path=thread.file_path,
                line=thread.line,
                thread_id=thread.id,
                comment_id=comment.id,
            )
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _check_alive(self) -> None:
        if self._disposed:
            raise _Disposed()

    def _require_thread(self, thread_id: str) -> ThreadView:
        thread = self._threads.get(thread_id)
        if thread is None:
            raise KeyError(f"Unknown thread {thread_id}")
        return thread

    def _stored_line(
        self, thread_id: str, encoded: str | None, document: str | None
    ) -> int:
        if encoded is None:
            return 0
        try:
            anchor = decode(encoded)
        except MalformedAnchor as exc:
            logger.error("Stored thread %s has a bad anchor: %s", thread_id, exc)
            return 0
        return resolve_line(anchor, document)

    async def _capture_anchor(self, thread: ThreadView) -> Anchor:
        document = await run_sync(self._documents.read_text, thread.file_path)
        if document is None:
            return Anchor(line=thread.line, text="", lines_before_anchor=0)
        return capture(document, thread.line, self._anchor_lines)

    async def _store_comment(self, thread_id: str, comment: CommentView) -> None:
        await run_sync(
            self._local.create_or_replace_comment,
            comment.id,
            thread_id,
            comment.body,
            comment.author,
            comment.last_modified,
        )

    async def _persist_thread(self, thread: ThreadView) -> None:
        anchor = encode(await self._capture_anchor(thread))
        await run_sync(self._write_thread, thread, anchor)

    def _local_path(self, thread: ThreadView) -> str:
        """Local rows hold absolute paths; the view and the wire do not."""
        return str(self._documents.to_absolute(thread.file_path))

    def _write_thread(self, thread: ThreadView, anchor: str) -> None:
        self._local.create_or_replace_thread(
            thread.id, anchor, self._local_path(thread)
        )
        for comment in thread.comments:
            self._local.create_or_replace_comment(
                comment.id,
                thread.id,
                comment.body,
                comment.author,
                comment.last_modified,
            )
        live = {comment.id for comment in thread.comments}
        stale = [
            comment_id
            for comment_id in self._local.get_comment_ids(thread.id)
            if comment_id not in live
        ]
        if stale:
            self._local.delete_comments(stale)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
