"""Tests for annosync.session: settings loading and project open/close.

``open_project()`` is an async context manager which:
- Refuses unknown and locked projects
- Initializes the remote concurrency semaphore
- Opens the project's local store and starts both engines
- Binds the remote store with the project's cipher
- Tears everything down on exit, even when the block raises
"""

from unittest.mock import patch

import pytest

from annosync.errors import NotReady
from annosync.core.encryption import FieldCipher
from annosync.session import build_remote, load_settings, open_project
from annosync.store.projects import ProjectDirectory
from annosync.sync.remote import RemoteState

SOURCE = "".join(f"variable \"v{i}\" {{}}\n" for i in range(15))


@pytest.fixture
def directory(mock_config):
    directory = ProjectDirectory(mock_config.storage_path)
    directory.init()
    yield directory
    directory.close()


@pytest.fixture
def workspace_file(mock_config):
    path = mock_config.workspace_root + "/variables.tf"
    with open(path, "w", encoding="utf-8") as fh:
        fh.write(SOURCE)
    return "variables.tf"


# -------------------------------------------------------------------------
# open_project(): refusals
# -------------------------------------------------------------------------


class TestOpenProjectRefusals:
    async def test_unknown_project(self, mock_config, directory, ready_remote):
        with pytest.raises(ValueError, match="Unknown project"):
            async with open_project(
                mock_config, directory, "nope", remote=ready_remote
            ):
                pass

    async def test_locked_project(self, mock_config, directory, ready_remote):
        token = FieldCipher(FieldCipher.generate_key()).wrap_project_token("x")
        directory.add_project("x", "shared", jwt=token)
        with pytest.raises(NotReady, match="locked"):
            async with open_project(
                mock_config, directory, "x", remote=ready_remote
            ):
                pass


# -------------------------------------------------------------------------
# open_project(): lifecycle
# -------------------------------------------------------------------------


class TestOpenProject:
    async def test_semaphore_uses_max_parallel_from_config(
        self, mock_config, directory, ready_remote
    ):
        mock_config.max_parallel_requests = 7
        project = directory.create_project("infra")
        with patch("annosync.session.init_semaphore") as mock_init_sem:
            async with open_project(
                mock_config, directory, project.uuid, remote=ready_remote
            ):
                mock_init_sem.assert_called_once_with(7)

    async def test_session_syncs_comments(
        self, mock_config, directory, ready_remote, fake_client, workspace_file
    ):
        project = directory.create_project("infra")
        async with open_project(
            mock_config, directory, project.uuid, remote=ready_remote
        ) as session:
            assert not session.encrypted
            thread = await session.comments.create_thread(
                workspace_file, 4, "why is this public?"
            )
            await session.sync()
            (doc,) = fake_client.documents(
                f"comments_{project.uuid}", type="comment"
            )
            assert doc["tid"] == thread.id
            assert doc["comment"] == "why is this public?"
            assert doc["userCreated"] == "alice"
        assert directory.store_path(project.uuid).exists()

    async def test_encrypted_session(
        self, mock_config, directory, ready_remote, fake_client, workspace_file
    ):
        """Remote fields of an encrypted project are not readable as-is."""
        project = directory.create_project("infra", encrypted=True)
        async with open_project(
            mock_config, directory, project.uuid, remote=ready_remote
        ) as session:
            assert session.encrypted
            await session.comments.create_thread(workspace_file, 2, "secret")
            await session.sync()
        (doc,) = fake_client.documents(
            f"comments_{project.uuid}", type="comment"
        )
        assert doc["comment"] != "secret"
        assert project.cipher().decrypt(doc["comment"]) == "secret"

    async def test_teardown_on_exit(self, mock_config, directory, ready_remote):
        """A shared remote stays enabled; the store is closed."""
        project = directory.create_project("infra")
        async with open_project(
            mock_config, directory, project.uuid, remote=ready_remote
        ) as session:
            local = session.local
            assert local.is_ready
        assert not local.is_ready
        assert ready_remote.state is RemoteState.READY
        assert ready_remote.comments_collection is None

    async def test_teardown_when_block_raises(
        self, mock_config, directory, ready_remote
    ):
        project = directory.create_project("infra")
        with pytest.raises(RuntimeError, match="boom"):
            async with open_project(
                mock_config, directory, project.uuid, remote=ready_remote
            ) as session:
                raise RuntimeError("boom")
        assert not session.local.is_ready
        assert session.comments.request_sync() is None

    async def test_remote_disabled_in_config(
        self, mock_config, directory, fake_client
    ):
        """Without the remote enabled the session still works locally."""
        mock_config.remote_enabled = False
        project = directory.create_project("infra")
        with patch("annosync.session.MongoRemoteClient", return_value=fake_client):
            async with open_project(
                mock_config, directory, project.uuid
            ) as session:
                assert session.remote.state is RemoteState.DISABLED
                await session.sync()
                assert session.comments.last_report.skipped == "remote not ready"


# -------------------------------------------------------------------------
# Settings and remote construction
# -------------------------------------------------------------------------


class TestSettings:
    def test_build_remote_uses_config(self, mock_config):
        remote = build_remote(mock_config)
        assert remote.state is RemoteState.DISABLED
        assert not remote.is_ready

    def test_load_settings_applies_overrides(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        for name in ("ANNOSYNC_REMOTE_URI", "ANNOSYNC_AUTHOR", "ANNOSYNC_WORKSPACE"):
            monkeypatch.delenv(name, raising=False)
        with (
            patch("annosync.session.discover_config_files", return_value=[]),
            patch("annosync.session.setup_logging") as mock_logging,
        ):
            config = load_settings(
                {
                    "remote_uri": "mongodb://db.example.com:27017",
                    "remote_enabled": True,
                    "author_name": "bob",
                    "workspace_root": str(tmp_path),
                }
            )
        assert config.remote_enabled
        assert config.remote_uri == "mongodb://db.example.com:27017"
        assert config.author_name == "bob"
        mock_logging.assert_called_once_with(
            mode="cli", debug=False, log_file=None, level=None
        )

    def test_load_settings_rejects_bad_uri(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.delenv("ANNOSYNC_REMOTE_URI", raising=False)
        with (
            patch("annosync.session.discover_config_files", return_value=[]),
            patch("annosync.session.setup_logging"),
        ):
            with pytest.raises(ValueError, match="mongodb://"):
                load_settings(
                    {"remote_uri": "http://nope", "remote_enabled": True}
                )
