"""Shared remote store for threads, comments, findings, and projects.

``RemoteStore`` is a peer of the local store, reached through a
``RemoteClient`` (MongoDB in production).  It owns:

* **Readiness** -- ``Disabled -> CredentialCheck -> Ready``.  Credential
  failures loop through a ``CredentialPrompt`` (provide / retry / cancel)
  instead of failing hard.  Outside ``Ready`` every data operation raises
  ``NotReady``.
* **Upsert by logical id** -- documents are found by ``tid``/``cid``/``id``,
  deleted by physical ``_id``, and re-inserted.  The new document carries a
  fresh ``ephemeral_uuid`` and the deleted ``_id``s are registered in the
  ``EchoSuppressor`` before the write is issued, so the change feed does
  not report our own writes back to us.
* **Field encryption** -- content fields pass through ``FieldCipher``.
* **Expiry** -- every document carries ``expireAt``; a background sweep
  re-stamps all documents every 15 minutes so that active projects never
  lapse while abandoned ones are removed by the server's TTL index.

Collections: ``projectDir`` (project directory), ``comments_<uuid>``
(mixed thread/comment documents keyed by ``type``), and
``diagnostics_<uuid>`` (one document per finding).
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Callable, Iterable, Sequence
from datetime import datetime, timezone
from enum import Enum
from typing import Any, NamedTuple

from cryptography.fernet import InvalidToken
from pydantic import BaseModel, ValidationError

from ..core.async_utils import run_sync_limited
from ..core.client import RemoteClient, Watcher
from ..core.credentials import SecretStore
from ..core.encryption import FieldCipher
from ..errors import NotReady, RemoteAuthFailure, RemoteTransportError
from .echo import EchoSuppressor
from .models import (
    ChangeEvent,
    CommentRecord,
    FindingFlag,
    FindingRecord,
    ThreadRecord,
    Tombstone,
    parse_record,
)
from .notify import (
    CredentialChoice,
    CredentialPrompt,
    LoggingNotifier,
    NonInteractivePrompt,
    Notifier,
)

logger = logging.getLogger(__name__)

PROJECTS_COLLECTION = "projectDir"
COMMENTS_PREFIX = "comments_"
FINDINGS_PREFIX = "diagnostics_"
EXPIRY_FIELD = "expireAt"
EXPIRY_SWEEP_INTERVAL = 15 * 60

_CREDENTIAL_OPTIONS = (
    CredentialChoice.PROVIDE,
    CredentialChoice.RETRY,
    CredentialChoice.CANCEL,
)


class RemoteState(str, Enum):
    DISABLED = "disabled"
    CREDENTIAL_CHECK = "credential_check"
    READY = "ready"


class RemoteProject(BaseModel):
    """Entry of the remote project directory."""

    uuid: str
    name: str
    jwt: str | None = None
    deleted: bool = False

    model_config = {"frozen": True}


class PullResult(NamedTuple):
    records: list[ThreadRecord | CommentRecord]
    tombstones: list[Tombstone]


Listener = Callable[[], Any]


class RemoteStore:
    """Network-backed mirror of one project's annotations.

    Args:
        client: Database client.
        expire_after_seconds: Retention window stamped on every document;
            ``<= 0`` disables expiry.
        credentials: Secret store holding username, password, and host.
        prompt: Asked what to do when credentials are rejected.
        notifier: Receives transport errors meant for the user.
        clock: Local time source used when the remote is not ready.
        echo: Ignore set for self-originated change events.
        sweep_interval: Seconds between expiry sweeps.
    """

    def __init__(
        self,
        client: RemoteClient,
        expire_after_seconds: int,
        credentials: SecretStore | None = None,
        prompt: CredentialPrompt | None = None,
        notifier: Notifier | None = None,
        clock: Callable[[], float] = time.time,
        echo: EchoSuppressor | None = None,
        sweep_interval: float = EXPIRY_SWEEP_INTERVAL,
    ) -> None:
        self._client = client
        self._expire_after = expire_after_seconds
        self._credentials = credentials
        self._prompt = prompt or NonInteractivePrompt()
        self._notifier = notifier or LoggingNotifier()
        self._clock = clock
        self._echo = echo or EchoSuppressor()
        self._sweep_interval = sweep_interval

        self._state = RemoteState.DISABLED
        self._project_uuid: str | None = None
        self._cipher = FieldCipher()
        self._watchers: list[Watcher] = []
        self._sweep_task: asyncio.Task[None] | None = None
        self._ready_listeners: list[Listener] = []
        self._comment_listeners: list[Listener] = []
        self._finding_listeners: list[Listener] = []

    # ------------------------------------------------------------------
    # State and listeners
    # ------------------------------------------------------------------

    @property
    def state(self) -> RemoteState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is RemoteState.READY

    @property
    def echo(self) -> EchoSuppressor:
        return self._echo

    @property
    def comments_collection(self) -> str | None:
        if self._project_uuid is None:
            return None
        return COMMENTS_PREFIX + self._project_uuid

    @property
    def findings_collection(self) -> str | None:
        if self._project_uuid is None:
            return None
        return FINDINGS_PREFIX + self._project_uuid

    def on_ready(self, listener: Listener) -> Callable[[], None]:
        """Call *listener* every time the store becomes ready (and now, if
        it already is).  Returns an unsubscribe function."""
        self._ready_listeners.append(listener)
        if self.is_ready:
            listener()
        return lambda: _discard(self._ready_listeners, listener)

    def on_comments_changed(self, listener: Listener) -> Callable[[], None]:
        self._comment_listeners.append(listener)
        return lambda: _discard(self._comment_listeners, listener)

    def on_findings_changed(self, listener: Listener) -> Callable[[], None]:
        self._finding_listeners.append(listener)
        return lambda: _discard(self._finding_listeners, listener)

    async def bind_project(
        self, project_uuid: str | None, cipher: FieldCipher | None = None
    ) -> None:
        """Point the store at *project_uuid*'s collections."""
        self._stop_watchers()
        self._project_uuid = project_uuid
        self._cipher = cipher or FieldCipher()
        if self.is_ready and project_uuid is not None:
            await self._prepare_project_collections()
            self._start_watchers()

    # ------------------------------------------------------------------
    # Enable / disable
    # ------------------------------------------------------------------

    async def enable(self) -> bool:
        """Run the credential check and move to ``Ready``.

        Returns:
            ``True`` once ready, ``False`` if the user cancelled or the
            remote is unreachable (the store is then ``Disabled``).
        """
        if self._state is not RemoteState.DISABLED:
            return self.is_ready

        self._state = RemoteState.CREDENTIAL_CHECK
        logger.info("Remote store: checking credentials")
        try:
            while True:
                self._apply_credentials()
                try:
                    await run_sync_limited(self._client.check_read_write)
                    break
                except RemoteAuthFailure as exc:
                    logger.warning("Remote store rejected credentials: %s", exc)
                    if not await self._ask_for_credentials(exc):
                        logger.info("Remote store: credential check cancelled")
                        self._state = RemoteState.DISABLED
                        return False
                if self._state is not RemoteState.CREDENTIAL_CHECK:
                    return False

            if self._project_uuid is not None:
                await self._prepare_project_collections()
        except RemoteTransportError as exc:
            logger.error("Remote store unreachable: %s", exc)
            self._notifier.error(f"Remote store connection error: {exc}")
            self._state = RemoteState.DISABLED
            return False

        if self._state is not RemoteState.CREDENTIAL_CHECK:
            return False
        self._state = RemoteState.READY
        logger.info("Remote store ready")
        if self._project_uuid is not None:
            self._start_watchers()
        self._sweep_task = asyncio.get_running_loop().create_task(
            self._expiry_loop()
        )
        for listener in list(self._ready_listeners):
            listener()
        return True

    async def disable(self) -> None:
        """Stop watchers and the expiry sweep, and drop to ``Disabled``."""
        if self._state is RemoteState.DISABLED:
            return
        self._state = RemoteState.DISABLED
        self._stop_watchers()
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        self._client.close()
        logger.info("Remote store disabled")

    def _apply_credentials(self) -> None:
        creds = None
        if self._credentials is not None:
            creds = self._credentials.credentials_for(self._client.host)
        if creds is None:
            self._client.set_credentials(None, None)
        else:
            self._client.set_credentials(*creds)

    async def _ask_for_credentials(self, exc: Exception) -> bool:
        """Return ``True`` to try again, ``False`` to give up."""
        while True:
            choice = await self._prompt.choose(
                f"Remote store authentication failed: {exc}",
                _CREDENTIAL_OPTIONS,
            )
            if choice is CredentialChoice.RETRY:
                return True
            if choice is not CredentialChoice.PROVIDE:
                return False
            supplied = await self._prompt.ask_credentials()
            if supplied is None:
                continue
            if self._credentials is None:
                self._client.set_credentials(*supplied)
            else:
                self._credentials.store_credentials(
                    self._client.host, *supplied
                )
            return True

    # ------------------------------------------------------------------
    # Threads and comments
    # ------------------------------------------------------------------

    async def push_thread(
        self,
        tid: str,
        *,
        file_path: str | None,
        anchor: str | None,
        timestamp: float | None,
        deleted: bool = False,
    ) -> None:
        collection = self._require_project()[0]
        await self._replace_documents(
            collection,
            {"type": "thread", "tid": tid},
            {
                "type": "thread",
                "tid": tid,
                "timestampModified": timestamp,
                "deleted": deleted,
                "filePath": self._cipher.encrypt(file_path),
                "anchor": self._cipher.encrypt(anchor),
            },
        )

    async def push_comment(
        self,
        cid: str,
        tid: str,
        *,
        body: str | None,
        author: str | None,
        timestamp: float | None,
        deleted: bool = False,
    ) -> None:
        collection = self._require_project()[0]
        await self._replace_documents(
            collection,
            {"type": "comment", "cid": cid},
            {
                "type": "comment",
                "cid": cid,
                "tid": tid,
                "comment": self._cipher.encrypt(body),
                "userCreated": self._cipher.encrypt(author),
                "timestampModified": timestamp,
                "deleted": deleted,
            },
        )

    async def pull_since(self, timestamp: float) -> PullResult:
        """Return live records newer than *timestamp* and every tombstone."""
        collection = self._require_project()[0]
        updates = await run_sync_limited(
            self._client.find,
            collection,
            {"timestampModified": {"$gt": timestamp}, "deleted": False},
        )
        deletes = await run_sync_limited(
            self._client.find,
            collection,
            {"deleted": True},
            {"type": 1, "tid": 1, "cid": 1},
        )

        records: list[ThreadRecord | CommentRecord] = []
        for document in updates:
            record = self._decode_annotation(document)
            if record is not None:
                records.append(record)

        tombstones: list[Tombstone] = []
        for document in deletes:
            try:
                tombstones.append(
                    Tombstone(
                        target=document["type"],
                        tid=document["tid"],
                        cid=document.get("cid"),
                    )
                )
            except (KeyError, ValidationError) as exc:
                logger.warning(
                    "Skipping malformed tombstone %s: %s",
                    document.get("_id"),
                    exc,
                )
        logger.debug(
            "Pulled %d records and %d tombstones since %s",
            len(records),
            len(tombstones),
            timestamp,
        )
        return PullResult(records, tombstones)

    def _decode_annotation(
        self, document: dict[str, Any]
    ) -> ThreadRecord | CommentRecord | None:
        kind = document.get("type")
        try:
            if kind == "thread":
                data = {
                    "kind": "thread",
                    "tid": document["tid"],
                    "file_path": self._cipher.decrypt(document.get("filePath")),
                    "anchor": self._cipher.decrypt(document.get("anchor")),
                    "timestamp_modified": document.get("timestampModified"),
                    "deleted": bool(document.get("deleted", False)),
                }
            elif kind == "comment":
                data = {
                    "kind": "comment",
                    "cid": document["cid"],
                    "tid": document["tid"],
                    "body": self._cipher.decrypt(document.get("comment")),
                    "author": self._cipher.decrypt(document.get("userCreated")),
                    "timestamp_modified": document.get("timestampModified"),
                    "deleted": bool(document.get("deleted", False)),
                }
            else:
                logger.warning("Skipping remote document of type %r", kind)
                return None
            return parse_record(data)
        except (KeyError, ValidationError, InvalidToken) as exc:
            logger.warning(
                "Skipping undecodable remote document %s: %s",
                document.get("_id"),
                exc,
            )
            return None

    # ------------------------------------------------------------------
    # Findings
    # ------------------------------------------------------------------

    async def get_findings(self) -> list[FindingRecord]:
        collection = self._require_project()[1]
        documents = await run_sync_limited(self._client.find, collection, {})
        findings: list[FindingRecord] = []
        for document in documents:
            try:
                findings.append(
                    FindingRecord(
                        id=document["id"],
                        diagnostic=self._cipher.decrypt(document["diagnostic"]),
                        flag=FindingFlag(document.get("flag") or 0),
                        flag_timestamp=document.get("flag_timestamp") or 0.0,
                        anchor=self._cipher.decrypt(document.get("anchor")),
                        file_path=self._cipher.decrypt(document["file_path"]),
                        timestamp_created=document.get("timestamp_created")
                        or 0.0,
                    )
                )
            except (KeyError, ValueError, InvalidToken) as exc:
                logger.warning(
                    "Skipping undecodable finding %s: %s",
                    document.get("_id"),
                    exc,
                )
        return findings

    async def delete_findings(self, ids: Iterable[str] | None = None) -> int:
        """Delete findings by logical id, or all of them when *ids* is None."""
        collection = self._require_project()[1]
        query: dict[str, Any] = {} if ids is None else {"id": {"$in": list(ids)}}
        existing = await run_sync_limited(
            self._client.find, collection, query, {"_id": 1}
        )
        physical_ids = [document["_id"] for document in existing]
        if not physical_ids:
            return 0
        self._echo.add_all(str(i) for i in physical_ids)
        return await run_sync_limited(
            self._client.delete_many,
            collection,
            {"_id": {"$in": physical_ids}},
        )

    async def push_findings(
        self, findings: Sequence[FindingRecord], clear_remote: bool = True
    ) -> None:
        """Upload *findings*.

        Args:
            findings: Findings to write.
            clear_remote: Delete every remote finding first; otherwise only
                those sharing an id with *findings* are replaced.
        """
        collection = self._require_project()[1]
        if clear_remote:
            await self.delete_findings()
        else:
            await self.delete_findings([f.id for f in findings])
        if not findings:
            return

        expire_at = await self._expire_at()
        documents = []
        for finding in findings:
            token = uuid.uuid4().hex
            self._echo.add(token)
            documents.append(
                {
                    "id": finding.id,
                    "diagnostic": self._cipher.encrypt(finding.diagnostic),
                    "flag": int(finding.flag),
                    "flag_timestamp": finding.flag_timestamp,
                    "anchor": self._cipher.encrypt(finding.anchor),
                    "file_path": self._cipher.encrypt(finding.file_path),
                    "timestamp_created": finding.timestamp_created,
                    "ephemeral_uuid": token,
                    EXPIRY_FIELD: expire_at,
                }
            )
        await run_sync_limited(self._client.insert_many, collection, documents)
        logger.debug("Pushed %d findings", len(documents))

    # ------------------------------------------------------------------
    # Project directory
    # ------------------------------------------------------------------

    async def list_projects(
        self,
    ) -> tuple[list[RemoteProject], list[RemoteProject]]:
        """Return ``(active, deleted)`` projects of the directory."""
        self._require_ready()
        documents = await run_sync_limited(
            self._client.find, PROJECTS_COLLECTION, {}
        )
        active: list[RemoteProject] = []
        deleted: list[RemoteProject] = []
        for document in documents:
            try:
                project = RemoteProject(
                    uuid=document["uuid"],
                    name=document.get("name") or "",
                    jwt=document.get("jwt"),
                    deleted=bool(document.get("deleted", False)),
                )
            except (KeyError, ValidationError) as exc:
                logger.warning("Skipping malformed project entry: %s", exc)
                continue
            (deleted if project.deleted else active).append(project)
        return active, deleted

    async def push_project(
        self, project_uuid: str, name: str, jwt: str | None, deleted: bool
    ) -> None:
        self._require_ready()
        await run_sync_limited(
            self._client.upsert_one,
            PROJECTS_COLLECTION,
            {"uuid": project_uuid},
            {"uuid": project_uuid, "name": name, "jwt": jwt, "deleted": deleted},
        )

    # ------------------------------------------------------------------
    # Time and expiry
    # ------------------------------------------------------------------

    async def remote_timestamp(self) -> float:
        """Return the server's clock, or the local clock when not ready."""
        if not self.is_ready:
            return self._clock()
        try:
            value = await run_sync_limited(self._client.cluster_time)
        except RemoteTransportError as exc:
            logger.warning("Cannot read remote clock, using local: %s", exc)
            return self._clock()
        return self._clock() if value is None else value

    async def _expire_at(self) -> datetime | None:
        if self._expire_after <= 0:
            return None
        now = await self.remote_timestamp()
        return datetime.fromtimestamp(now + self._expire_after, tz=timezone.utc)

    async def refresh_expirations(self) -> None:
        """Re-stamp ``expireAt`` on every document of the bound project."""
        if not self.is_ready or self._project_uuid is None:
            return
        expire_at = await self._expire_at()
        for collection in self._require_project():
            await run_sync_limited(
                self._client.update_many,
                collection,
                {},
                {EXPIRY_FIELD: expire_at},
            )
        logger.debug("Refreshed remote expirations to %s", expire_at)

    async def _expiry_loop(self) -> None:
        while self.is_ready:
            try:
                await self.refresh_expirations()
            except (NotReady, RemoteTransportError) as exc:
                logger.warning("Expiry sweep failed: %s", exc)
            await asyncio.sleep(self._sweep_interval)

    # ------------------------------------------------------------------
    # Change feed
    # ------------------------------------------------------------------

    def _start_watchers(self) -> None:
        loop = asyncio.get_running_loop()

        def forward(event: ChangeEvent) -> None:
            loop.call_soon_threadsafe(self._dispatch_change, event)

        for collection in self._require_project():

            def failed(exc: Exception, collection: str = collection) -> None:
                loop.call_soon_threadsafe(self._watch_failed, collection, exc)

            self._watchers.append(
                self._client.watch(collection, forward, failed)
            )

    def _watch_failed(self, collection: str, exc: Exception) -> None:
        if not self.is_ready:
            return
        logger.error("Change feed on %s interrupted: %s", collection, exc)
        self._notifier.error(
            f"Live updates for {collection} interrupted, reconnecting: {exc}"
        )

    def _stop_watchers(self) -> None:
        watchers, self._watchers = self._watchers, []
        for watcher in watchers:
            watcher.close()

    def is_echo(self, event: ChangeEvent) -> bool:
        """Return ``True`` if *event* was caused by our own write or only
        touched the expiry stamp.  Consumes the matching echo token."""
        if event.ephemeral_uuid and self._echo.consume(event.ephemeral_uuid):
            return True
        if (
            event.operation == "delete"
            and event.document_id is not None
            and self._echo.consume(event.document_id)
        ):
            return True
        return event.operation == "update" and set(event.updated_fields) == {
            EXPIRY_FIELD
        }

    def _dispatch_change(self, event: ChangeEvent) -> None:
        if not self.is_ready:
            return
        if self.is_echo(event):
            logger.debug(
                "Ignoring own %s on %s", event.operation, event.collection
            )
            return
        if event.collection == self.comments_collection:
            listeners = self._comment_listeners
        elif event.collection == self.findings_collection:
            listeners = self._finding_listeners
        else:
            return
        logger.debug("Remote %s on %s", event.operation, event.collection)
        for listener in list(listeners):
            listener()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require_ready(self) -> None:
        if not self.is_ready:
            raise NotReady(f"Remote store is {self._state.value}")

    def _require_project(self) -> tuple[str, str]:
        self._require_ready()
        return self._project_collections()

    async def _prepare_project_collections(self) -> None:
        for collection in self._project_collections():
            await run_sync_limited(
                self._client.ensure_ttl_index, collection, EXPIRY_FIELD
            )

    def _project_collections(self) -> tuple[str, str]:
        comments, findings = self.comments_collection, self.findings_collection
        if comments is None or findings is None:
            raise NotReady("No project bound to the remote store")
        return comments, findings

    async def _replace_documents(
        self,
        collection: str,
        query: dict[str, Any],
        document: dict[str, Any],
    ) -> None:
        token = uuid.uuid4().hex
        self._echo.add(token)
        existing = await run_sync_limited(
            self._client.find, collection, query, {"_id": 1}
        )
        physical_ids = [found["_id"] for found in existing]
        if physical_ids:
            self._echo.add_all(str(i) for i in physical_ids)
            await run_sync_limited(
                self._client.delete_many,
                collection,
                {"_id": {"$in": physical_ids}},
            )
        document = {
            **document,
            "ephemeral_uuid": token,
            EXPIRY_FIELD: await self._expire_at(),
        }
        await run_sync_limited(self._client.insert_many, collection, [document])


def _discard(listeners: list[Listener], listener: Listener) -> None:
    if listener in listeners:
        listeners.remove(listener)
