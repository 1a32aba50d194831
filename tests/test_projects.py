"""
Tests for the project directory.
"""

import sqlite3

import pytest

from annosync.core.encryption import FieldCipher
from annosync.store.local import LocalStore
from annosync.store.projects import DIRECTORY_FILENAME, ProjectDirectory
from annosync.sync.remote import RemoteStore


@pytest.fixture
def directory(tmp_path):
    directory = ProjectDirectory(tmp_path / "storage")
    directory.init()
    yield directory
    directory.close()


class TestLocalDirectory:
    def test_init_creates_database(self, directory, tmp_path):
        assert (tmp_path / "storage" / DIRECTORY_FILENAME).exists()

    def test_create_plain_project(self, directory):
        project = directory.create_project("infra")
        assert not project.encrypted
        assert not project.locked
        assert directory.get_project(project.uuid) == project
        assert not project.cipher().enabled

    def test_create_encrypted_project(self, directory):
        """An encrypted project gets a key and a token sealed with it."""
        project = directory.create_project("infra", encrypted=True)
        assert project.encrypted
        assert not project.locked
        assert FieldCipher(project.keys).check_key(project.jwt) == project.uuid
        assert project.cipher().enabled

    def test_store_path(self, directory, tmp_path):
        assert directory.store_path("abc") == tmp_path / "storage" / "abc.sqlite3"

    def test_list_projects(self, directory):
        first = directory.create_project("one")
        second = directory.create_project("two")
        directory.mark_deleted(first.uuid)
        assert [p.uuid for p in directory.list_projects()] == [second.uuid]
        everything = directory.list_projects(include_deleted=True)
        assert [p.deleted for p in everything] == [True, False]

    def test_closed_directory_is_inert(self, tmp_path):
        directory = ProjectDirectory(tmp_path / "storage")
        assert directory.get_project("x") is None
        assert directory.list_projects() == []


class TestUnlock:
    @pytest.fixture
    def key(self):
        return FieldCipher.generate_key()

    @pytest.fixture
    def locked(self, directory, key):
        token = FieldCipher(key).wrap_project_token("shared-1")
        return directory.add_project("shared-1", "shared", jwt=token)

    def test_received_project_is_locked(self, locked):
        assert locked.locked

    def test_wrong_key(self, directory, locked):
        assert not directory.unlock_project(
            "shared-1", FieldCipher.generate_key()
        )
        assert directory.get_project("shared-1").locked

    def test_malformed_key(self, directory, locked):
        assert not directory.unlock_project("shared-1", "not a key")

    def test_right_key(self, directory, locked, key):
        assert directory.unlock_project("shared-1", key)
        project = directory.get_project("shared-1")
        assert not project.locked
        assert project.keys == key

    def test_unencrypted_project(self, directory):
        project = directory.create_project("plain")
        assert not directory.unlock_project(project.uuid, FieldCipher.generate_key())


class TestRemove:
    async def test_remove_drops_store(self, directory):
        project = directory.create_project("doomed")
        store = LocalStore(directory.store_path(project.uuid))
        store.init()
        store.create_or_replace_thread("t1", None, "main.tf")
        store.close()

        await directory.remove_project(project.uuid)

        assert directory.get_project(project.uuid) is None
        (deleted,) = directory.list_projects(include_deleted=True)
        assert deleted.deleted and deleted.name == ""
        conn = sqlite3.connect(str(directory.store_path(project.uuid)))
        try:
            tables = conn.execute(
                "SELECT name FROM sqlite_master WHERE type = 'table'"
            ).fetchall()
        finally:
            conn.close()
        assert tables == []

    async def test_remove_publishes_deletion(self, directory, ready_remote):
        project = directory.create_project("doomed")
        await directory.sync_projects(ready_remote)
        await directory.remove_project(project.uuid, ready_remote)
        active, deleted = await ready_remote.list_projects()
        assert active == []
        assert [p.uuid for p in deleted] == [project.uuid]


class TestSyncProjects:
    async def test_local_project_is_published(self, directory, ready_remote):
        project = directory.create_project("infra", encrypted=True)
        await directory.sync_projects(ready_remote)
        (published,) = (await ready_remote.list_projects())[0]
        assert published.uuid == project.uuid
        assert published.name == "infra"
        assert published.jwt == project.jwt

    async def test_remote_project_is_imported_locked(
        self, directory, ready_remote
    ):
        token = FieldCipher(FieldCipher.generate_key()).wrap_project_token("r1")
        await ready_remote.push_project("r1", "remote", token, False)
        await directory.sync_projects(ready_remote)
        imported = directory.get_project("r1")
        assert imported.name == "remote"
        assert imported.locked

    async def test_remote_deletion_applies_locally(self, directory, ready_remote):
        project = directory.create_project("infra")
        await directory.sync_projects(ready_remote)
        await ready_remote.push_project(project.uuid, "", None, True)
        await directory.sync_projects(ready_remote)
        assert directory.get_project(project.uuid) is None

    async def test_unknown_remote_deletion_is_remembered(
        self, directory, ready_remote
    ):
        """A project deleted elsewhere before we saw it is never imported."""
        await ready_remote.push_project("gone", "", None, True)
        await directory.sync_projects(ready_remote)
        (row,) = directory.list_projects(include_deleted=True)
        assert row.uuid == "gone" and row.deleted

    async def test_local_deletion_published(self, directory, ready_remote):
        project = directory.create_project("infra")
        await directory.sync_projects(ready_remote)
        directory.mark_deleted(project.uuid)
        await directory.sync_projects(ready_remote)
        active, deleted = await ready_remote.list_projects()
        assert active == []
        assert [p.uuid for p in deleted] == [project.uuid]

    async def test_not_ready_is_noop(self, directory, fake_client):
        remote = RemoteStore(fake_client, expire_after_seconds=0)
        directory.create_project("infra")
        await directory.sync_projects(remote)
        assert fake_client.documents("projectDir") == []
