"""Shared pytest fixtures for annosync tests."""

import asyncio
import copy
import threading
from collections import defaultdict

import pytest
from bson import ObjectId

import annosync.core.async_utils as async_utils
from annosync.config import Config
from annosync.core.client import change_event_from_raw
from annosync.errors import RemoteAuthFailure, RemoteTransportError
from annosync.store.local import LocalStore
from annosync.sync.remote import RemoteStore


def pytest_addoption(parser):
    """Add custom CLI options for test filtering."""
    parser.addoption(
        "--run-live",
        action="store_true",
        default=False,
        help="Run tests that require a live MongoDB instance",
    )


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "live: mark test as requiring a live MongoDB instance"
    )


def pytest_collection_modifyitems(config, items):
    """Skip live tests unless --run-live is passed."""
    if config.getoption("--run-live"):
        return
    skip_live = pytest.mark.skip(reason="need --run-live option to run")
    for item in items:
        if "live" in item.keywords:
            item.add_marker(skip_live)


# ---------------------------------------------------------------------------
# In-memory remote backend
# ---------------------------------------------------------------------------


def _matches(document, query):
    for key, expected in query.items():
        value = document.get(key)
        if isinstance(expected, dict):
            if "$gt" in expected and (
                value is None or not value > expected["$gt"]
            ):
                return False
            if "$in" in expected and value not in expected["$in"]:
                return False
        elif value != expected:
            return False
    return True


def _project(document, projection):
    if not projection:
        return copy.deepcopy(document)
    kept = {"_id": document["_id"]}
    for key in projection:
        if key in document:
            kept[key] = document[key]
    return kept


class FakeWatcher:
    def __init__(self, client, collection, callback, on_error=None):
        self.client = client
        self.collection = collection
        self.callback = callback
        self.on_error = on_error
        self.closed = False

    def close(self):
        self.closed = True
        if self in self.client.watchers:
            self.client.watchers.remove(self)


class FakeRemoteClient:
    """Document store with MongoDB-like queries and a change feed.

    Change events are delivered synchronously from the writing thread,
    like a change stream would deliver them from its own thread.
    """

    host = "mongodb://fake-host:27017"

    def __init__(self):
        self.collections = defaultdict(list)
        self.credentials = (None, None)
        self.required_credentials = None
        self.unreachable = False
        self.clock = 1000.0
        self.watchers = []
        self.indexes = set()
        self.closed = False
        self.check_calls = 0
        self._lock = threading.Lock()

    # -- connection ---------------------------------------------------------

    def set_credentials(self, username, password):
        self.credentials = (username, password)

    def check_read_write(self):
        self.check_calls += 1
        if self.unreachable:
            raise RemoteTransportError("connection refused")
        if (
            self.required_credentials is not None
            and self.credentials != self.required_credentials
        ):
            raise RemoteAuthFailure("Authentication failed")

    def cluster_time(self):
        return self.clock

    def close(self):
        self.closed = True

    # -- data ---------------------------------------------------------------

    def find(self, collection, query, projection=None):
        with self._lock:
            return [
                _project(doc, projection)
                for doc in self.collections[collection]
                if _matches(doc, query)
            ]

    def insert_many(self, collection, documents):
        events = []
        with self._lock:
            for document in documents:
                stored = copy.deepcopy(document)
                stored["_id"] = ObjectId()
                self.collections[collection].append(stored)
                events.append(
                    {
                        "operationType": "insert",
                        "documentKey": {"_id": stored["_id"]},
                        "fullDocument": copy.deepcopy(stored),
                    }
                )
        self._emit(collection, events)

    def delete_many(self, collection, query):
        with self._lock:
            removed = [
                d for d in self.collections[collection] if _matches(d, query)
            ]
            self.collections[collection] = [
                d
                for d in self.collections[collection]
                if not _matches(d, query)
            ]
        self._emit(
            collection,
            [
                {"operationType": "delete", "documentKey": {"_id": d["_id"]}}
                for d in removed
            ],
        )
        return len(removed)

    def update_many(self, collection, query, fields):
        events = []
        with self._lock:
            for document in self.collections[collection]:
                if _matches(document, query):
                    document.update(copy.deepcopy(fields))
                    events.append(
                        {
                            "operationType": "update",
                            "documentKey": {"_id": document["_id"]},
                            "updateDescription": {
                                "updatedFields": dict(fields)
                            },
                        }
                    )
        self._emit(collection, events)
        return len(events)

    def upsert_one(self, collection, query, fields):
        with self._lock:
            for document in self.collections[collection]:
                if _matches(document, query):
                    document.update(copy.deepcopy(fields))
                    return
            stored = {**copy.deepcopy(query), **copy.deepcopy(fields)}
            stored["_id"] = ObjectId()
            self.collections[collection].append(stored)

    def ensure_ttl_index(self, collection, field):
        self.indexes.add((collection, field))

    def watch(self, collection, callback, on_error=None):
        watcher = FakeWatcher(self, collection, callback, on_error)
        self.watchers.append(watcher)
        return watcher

    def _emit(self, collection, events):
        for watcher in list(self.watchers):
            if watcher.collection != collection:
                continue
            for raw in events:
                watcher.callback(change_event_from_raw(collection, raw))

    # -- helpers for tests --------------------------------------------------

    def documents(self, collection, **query):
        return self.find(collection, query)


async def drain():
    """Let queued change-feed callbacks run on the event loop."""
    for _ in range(5):
        await asyncio.sleep(0)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def mock_config(tmp_path):
    """Create a Config pointing at a temporary workspace and storage dir."""
    workspace = tmp_path / "workspace"
    workspace.mkdir()
    return Config(
        remote_uri="mongodb://fake-host:27017",
        remote_enabled=True,
        workspace_root=str(workspace),
        storage_dir=str(tmp_path / "storage"),
        author_name="alice",
    )


@pytest.fixture
def fake_client():
    return FakeRemoteClient()


@pytest.fixture
def local_store():
    store = LocalStore(":memory:", clock=lambda: 500.0)
    store.init()
    yield store
    store.close()


@pytest.fixture
async def ready_remote(fake_client):
    """A RemoteStore bound to project ``p1`` and already ready."""
    remote = RemoteStore(fake_client, expire_after_seconds=3600)
    await remote.bind_project("p1")
    assert await remote.enable()
    yield remote
    await remote.disable()


@pytest.fixture(autouse=True)
def _reset_semaphore():
    """Sessions install a loop-bound semaphore; drop it between tests."""
    yield
    async_utils._semaphore = None
