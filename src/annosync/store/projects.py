"""Project directory: which projects exist and how to open them.

Every annotated workspace belongs to a project identified by a UUID.  An
encrypted project also has a key (kept only locally, shared out of band)
and a token (``jwt``) that proves possession of the key and is published
in the remote project directory.  A project received from the remote is
*locked* until the user supplies its key with ``unlock_project``.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import uuid
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import BaseModel

from ..core.async_utils import run_sync
from ..core.encryption import FieldCipher
from .local import LocalStore, _when_open

if TYPE_CHECKING:
    from ..sync.remote import RemoteStore

logger = logging.getLogger(__name__)

DIRECTORY_FILENAME = "projects.sqlite3"

_SCHEMA = (
    "CREATE TABLE IF NOT EXISTS projects ("
    "uuid TEXT NOT NULL PRIMARY KEY, name TEXT NOT NULL, keys TEXT NULL, "
    "jwt TEXT NULL DEFAULT NULL, deleted INTEGER DEFAULT 0)"
)


class Project(BaseModel):
    uuid: str
    name: str
    keys: str | None = None
    jwt: str | None = None
    deleted: bool = False

    model_config = {"frozen": True}

    @property
    def encrypted(self) -> bool:
        return self.jwt is not None

    @property
    def locked(self) -> bool:
        """Encrypted, but the key is not known here."""
        return self.encrypted and self.keys is None

    def cipher(self) -> FieldCipher:
        return FieldCipher(self.keys)


class ProjectDirectory:
    """Local project directory, mirrored to the remote ``projectDir``.

    Args:
        storage_dir: Directory holding the directory database and one
            store file per project.
    """

    def __init__(self, storage_dir: Path | str) -> None:
        self.storage_dir = Path(storage_dir).expanduser()
        self.path = self.storage_dir / DIRECTORY_FILENAME
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    def init(self) -> None:
        if self._conn is not None:
            return
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.path), check_same_thread=False)
        conn.row_factory = sqlite3.Row
        with conn:
            conn.execute(_SCHEMA)
        self._conn = conn
        logger.info("Project directory ready: %s", self.path)

    def close(self) -> None:
        with self._lock:
            if self._conn is None:
                return
            self._conn.close()
            self._conn = None

    def store_path(self, project_uuid: str) -> Path:
        """Location of the local store of *project_uuid*."""
        return self.storage_dir / f"{project_uuid}.sqlite3"

    # ------------------------------------------------------------------
    # Local directory
    # ------------------------------------------------------------------

    def create_project(self, name: str, encrypted: bool = False) -> Project:
        """Register a new project, generating its key when *encrypted*."""
        project_uuid = str(uuid.uuid4())
        keys = FieldCipher.generate_key() if encrypted else None
        project = self.add_project(project_uuid, name, keys=keys)
        logger.info(
            "Created %sproject %s (%s)",
            "encrypted " if encrypted else "",
            name,
            project_uuid,
        )
        return project

    @_when_open(lambda: None)
    def add_project(
        self,
        project_uuid: str,
        name: str,
        keys: str | None = None,
        jwt: str | None = None,
    ) -> Project:
        """Insert or replace a project.  The token is derived from *keys*
        when not given."""
        assert self._conn is not None
        if jwt is None and keys is not None:
            jwt = FieldCipher(keys).wrap_project_token(project_uuid)
        with self._conn:
            self._conn.execute(
                "INSERT OR REPLACE INTO projects (uuid, name, keys, jwt) "
                "VALUES (?, ?, ?, ?)",
                (project_uuid, name, keys, jwt),
            )
        return Project(uuid=project_uuid, name=name, keys=keys, jwt=jwt)

    @_when_open(lambda: None)
    def get_project(self, project_uuid: str) -> Project | None:
        assert self._conn is not None
        row = self._conn.execute(
            "SELECT uuid, name, keys, jwt FROM projects "
            "WHERE uuid = ? AND deleted = 0",
            (project_uuid,),
        ).fetchone()
        if row is None:
            return None
        return Project(
            uuid=row["uuid"], name=row["name"], keys=row["keys"], jwt=row["jwt"]
        )

    @_when_open(list)
    def list_projects(self, include_deleted: bool = False) -> list[Project]:
        assert self._conn is not None
        query = "SELECT uuid, name, keys, jwt, deleted FROM projects"
        if not include_deleted:
            query += " WHERE deleted = 0"
        return [
            Project(
                uuid=row["uuid"],
                name=row["name"],
                keys=row["keys"],
                jwt=row["jwt"],
                deleted=bool(row["deleted"]),
            )
            for row in self._conn.execute(query + " ORDER BY rowid")
        ]

    def unlock_project(self, project_uuid: str, secret: str) -> bool:
        """Store *secret* as the key of *project_uuid* if it opens the
        project's token."""
        project = self.get_project(project_uuid)
        if project is None or project.jwt is None:
            logger.warning("Project %s is not encrypted or unknown", project_uuid)
            return False
        try:
            cipher = FieldCipher(secret)
        except ValueError:
            logger.warning("Supplied key for %s is not a valid key", project_uuid)
            return False
        if cipher.check_key(project.jwt) != project_uuid:
            return False
        self.add_project(project_uuid, project.name, keys=secret, jwt=project.jwt)
        logger.info("Unlocked project %s", project_uuid)
        return True

    @_when_open(lambda: None)
    def mark_deleted(self, project_uuid: str) -> None:
        assert self._conn is not None
        with self._conn:
            self._conn.execute(
                "UPDATE projects SET deleted = 1, keys = NULL, jwt = NULL, "
                "name = '' WHERE uuid = ?",
                (project_uuid,),
            )

    async def remove_project(
        self, project_uuid: str, remote: RemoteStore | None = None
    ) -> None:
        """Delete a project here, drop its store, and tell the remote."""
        await run_sync(self.mark_deleted, project_uuid)
        await run_sync(self._drop_store, project_uuid)
        logger.info("Removed project %s", project_uuid)
        if remote is not None and remote.is_ready:
            await self.sync_projects(remote)

    def _drop_store(self, project_uuid: str) -> None:
        path = self.store_path(project_uuid)
        if not path.exists():
            return
        store = LocalStore(path)
        store.init()
        try:
            store.drop_all_tables()
        finally:
            store.close()

    # ------------------------------------------------------------------
    # Remote directory
    # ------------------------------------------------------------------

    async def sync_projects(self, remote: RemoteStore) -> None:
        """Reconcile the local and remote directories.

        Deletions win: a project deleted on either side ends up deleted on
        both.  Remaining projects are copied to whichever side lacks them.
        """
        if not remote.is_ready:
            logger.info("Remote store not ready, skipping project sync")
            return
        remote_active, remote_deleted = await remote.list_projects()
        remote_deleted_ids = {p.uuid for p in remote_deleted}
        rows = await run_sync(self.list_projects, True)
        known_ids = {p.uuid for p in rows}
        local_active = {p.uuid: p for p in rows if not p.deleted}
        local_deleted_ids = [p.uuid for p in rows if p.deleted]

        for project_uuid in remote_deleted_ids:
            if project_uuid in local_active:
                logger.info("Project %s was deleted remotely", project_uuid)
                del local_active[project_uuid]
                await run_sync(self.mark_deleted, project_uuid)
                await run_sync(self._drop_store, project_uuid)
            elif project_uuid not in known_ids:
                await run_sync(self.add_project, project_uuid, "")
                await run_sync(self.mark_deleted, project_uuid)

        remote_by_id = {p.uuid: p for p in remote_active}
        for project_uuid in local_deleted_ids:
            if project_uuid in remote_by_id or project_uuid not in remote_deleted_ids:
                logger.info("Deleting remote project %s", project_uuid)
                await remote.push_project(project_uuid, "", None, True)
                remote_by_id.pop(project_uuid, None)

        for project in local_active.values():
            if project.uuid not in remote_by_id:
                logger.info("Publishing project %s", project.uuid)
                await remote.push_project(
                    project.uuid, project.name, project.jwt, False
                )

        for project in remote_by_id.values():
            if project.uuid in local_active:
                continue
            logger.info("Importing remote project %s", project.uuid)
            await run_sync(
                self.add_project, project.uuid, project.name, None, project.jwt
            )
