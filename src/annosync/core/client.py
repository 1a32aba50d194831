"""Synchronous MongoDB client used by the remote store.

``MongoRemoteClient`` hides pymongo behind the handful of collection
operations the remote store needs, translating driver errors into
``RemoteAuthFailure`` / ``RemoteTransportError``.  All methods block;
async callers go through ``run_sync_limited``.

Change streams are consumed on daemon threads (``ChangeStreamWatcher``)
and handed to a callback as ``ChangeEvent`` objects.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any, Protocol

from pymongo import ASCENDING, MongoClient
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo.errors import OperationFailure, PyMongoError

from ..config import Config
from ..errors import RemoteAuthFailure, RemoteTransportError
from ..sync.models import ChangeEvent

logger = logging.getLogger(__name__)

RW_CHECK_COLLECTION = "readWriteCheckCollection"

# Unauthorized, AuthenticationFailed
_AUTH_ERROR_CODES = {13, 18}


class Watcher(Protocol):
    def close(self) -> None: ...


class RemoteClient(Protocol):
    """Operations the remote store performs against a document database."""

    @property
    def host(self) -> str: ...

    def set_credentials(
        self, username: str | None, password: str | None
    ) -> None: ...

    def check_read_write(self) -> None: ...

    def find(
        self,
        collection: str,
        query: dict[str, Any],
        projection: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]: ...

    def insert_many(
        self, collection: str, documents: list[dict[str, Any]]
    ) -> None: ...

    def delete_many(self, collection: str, query: dict[str, Any]) -> int: ...

    def update_many(
        self, collection: str, query: dict[str, Any], fields: dict[str, Any]
    ) -> int: ...

    def upsert_one(
        self, collection: str, query: dict[str, Any], fields: dict[str, Any]
    ) -> None: ...

    def ensure_ttl_index(self, collection: str, field: str) -> None: ...

    def cluster_time(self) -> float | None: ...

    def watch(
        self,
        collection: str,
        callback: Callable[[ChangeEvent], None],
        on_error: Callable[[Exception], None] | None = None,
    ) -> Watcher: ...

    def close(self) -> None: ...


def change_event_from_raw(collection: str, raw: dict[str, Any]) -> ChangeEvent:
    """Reduce a raw change-stream document to a ``ChangeEvent``."""
    full_document = raw.get("fullDocument") or {}
    document_key = raw.get("documentKey") or {}
    updated = (raw.get("updateDescription") or {}).get("updatedFields") or {}
    document_id = document_key.get("_id")
    return ChangeEvent(
        collection=collection,
        operation=raw.get("operationType", ""),
        document_id=str(document_id) if document_id is not None else None,
        ephemeral_uuid=full_document.get("ephemeral_uuid"),
        updated_fields=tuple(updated.keys()),
    )


@contextmanager
def _translate_errors(action: str) -> Iterator[None]:
    try:
        yield
    except OperationFailure as exc:
        if exc.code in _AUTH_ERROR_CODES:
            raise RemoteAuthFailure(f"{action}: {exc}") from exc
        raise RemoteTransportError(f"{action}: {exc}") from exc
    except PyMongoError as exc:
        raise RemoteTransportError(f"{action}: {exc}") from exc


class ChangeStreamWatcher:
    """Tail a collection's change stream on a daemon thread.

    A failed stream is re-opened with exponential backoff.  ``on_error``
    hears about the first failure of each outage, and a ``reconnect``
    event is delivered once the stream is open again, since changes made
    in between were not seen.
    """

    def __init__(
        self,
        collection: Collection,
        callback: Callable[[ChangeEvent], None],
        on_error: Callable[[Exception], None] | None = None,
        max_await_ms: int = 500,
        retry_delay: float = 1.0,
        max_retry_delay: float = 30.0,
    ) -> None:
        self._collection = collection
        self._callback = callback
        self._on_error = on_error
        self._max_await_ms = max_await_ms
        self._retry_delay = retry_delay
        self._max_retry_delay = max_retry_delay
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._run,
            name=f"watch-{collection.name}",
            daemon=True,
        )

    def start(self) -> None:
        self._thread.start()

    def close(self) -> None:
        self._stop.set()
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout=self._max_await_ms / 1000 * 4)

    def _run(self) -> None:
        name = self._collection.name
        delay = self._retry_delay
        failing = False
        missed = False
        while not self._stop.is_set():
            try:
                with self._collection.watch(
                    max_await_time_ms=self._max_await_ms
                ) as stream:
                    if missed:
                        logger.info("Change stream on %s re-opened", name)
                        failing = missed = False
                        delay = self._retry_delay
                        self._callback(
                            ChangeEvent(collection=name, operation="reconnect")
                        )
                    while not self._stop.is_set() and stream.alive:
                        change = stream.try_next()
                        if change is not None:
                            self._callback(change_event_from_raw(name, change))
                if not self._stop.is_set():
                    logger.info("Change stream on %s closed, re-opening", name)
                    missed = True
                    self._stop.wait(delay)
            except PyMongoError as exc:
                logger.warning(
                    "Change stream on %s failed, retrying in %.1fs: %s",
                    name,
                    delay,
                    exc,
                )
                if not failing and self._on_error is not None:
                    self._on_error(exc)
                failing = missed = True
                self._stop.wait(delay)
                delay = min(delay * 2, self._max_retry_delay)


class MongoRemoteClient:
    def __init__(self, config: Config):
        self.config = config
        self._username: str | None = None
        self._password: str | None = None
        self._client: MongoClient | None = None
        self._lock = threading.Lock()

    @property
    def host(self) -> str:
        return self.config.remote_uri

    def set_credentials(
        self, username: str | None, password: str | None
    ) -> None:
        """Use new credentials; the next call reconnects."""
        self.close()
        self._username = username
        self._password = password

    def _get_database(self) -> Database:
        with self._lock:
            if self._client is None:
                self._client = self._create_client()
            return self._client[self.config.remote_database]

    def _create_client(self) -> MongoClient:
        options: dict[str, Any] = {
            "serverSelectionTimeoutMS": self.config.server_timeout_ms,
            "tz_aware": True,
        }
        if self._username is not None:
            options["username"] = self._username
            options["password"] = self._password
        return MongoClient(self.config.remote_uri, **options)

    def check_read_write(self) -> None:
        """
        Write, read back, and remove a probe document.
        """
        probe = uuid.uuid4().hex
        with _translate_errors("Read/write check"):
            collection = self._get_database()[RW_CHECK_COLLECTION]
            collection.insert_one({"uuid": probe})
            found = list(collection.find({"uuid": probe}))
            collection.delete_one({"uuid": probe})
        if len(found) != 1:
            raise RemoteTransportError(
                f"Read/write check returned {len(found)} documents"
            )

    def find(
        self,
        collection: str,
        query: dict[str, Any],
        projection: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        with _translate_errors(f"find on {collection}"):
            return list(
                self._get_database()[collection].find(query, projection)
            )

    def insert_many(
        self, collection: str, documents: list[dict[str, Any]]
    ) -> None:
        if not documents:
            return
        with _translate_errors(f"insert into {collection}"):
            self._get_database()[collection].insert_many(documents)

    def delete_many(self, collection: str, query: dict[str, Any]) -> int:
        with _translate_errors(f"delete from {collection}"):
            return self._get_database()[collection].delete_many(
                query
            ).deleted_count

    def update_many(
        self, collection: str, query: dict[str, Any], fields: dict[str, Any]
    ) -> int:
        with _translate_errors(f"update on {collection}"):
            return self._get_database()[collection].update_many(
                query, {"$set": fields}
            ).modified_count

    def upsert_one(
        self, collection: str, query: dict[str, Any], fields: dict[str, Any]
    ) -> None:
        with _translate_errors(f"upsert on {collection}"):
            self._get_database()[collection].update_one(
                query, {"$set": fields}, upsert=True
            )

    def ensure_ttl_index(self, collection: str, field: str) -> None:
        """
        Create the TTL index that lets the server expire documents.
        """
        with _translate_errors(f"index on {collection}"):
            self._get_database()[collection].create_index(
                [(field, ASCENDING)], expireAfterSeconds=0
            )

    def cluster_time(self) -> float | None:
        """
        Return the server's cluster time in seconds, if it reports one.
        """
        with _translate_errors("cluster time"):
            result = list(
                self._get_database().aggregate(
                    [{"$documents": [{"dt": "$$CLUSTER_TIME"}]}]
                )
            )
        if not result:
            return None
        return float(result[0]["dt"].time)

    def watch(
        self,
        collection: str,
        callback: Callable[[ChangeEvent], None],
        on_error: Callable[[Exception], None] | None = None,
    ) -> ChangeStreamWatcher:
        watcher = ChangeStreamWatcher(
            self._get_database()[collection], callback, on_error
        )
        watcher.start()
        return watcher

    def close(self) -> None:
        with self._lock:
            if self._client is not None:
                self._client.close()
                self._client = None
