"""Project sessions: startup and shutdown of everything one open project needs.

A ``ProjectSession`` is created when a project is opened and torn down
when it is closed.  It owns the project's local store, binds the remote
store to the project's collections with the project's cipher, and runs
both sync engines.  Nothing about a session (in particular whether it is
encrypted) lives in module state.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

from dotenv import load_dotenv

from .config import Config, load_config
from .config_loader import discover_config_files, load_hierarchical_config
from .config_schema import build_config, yaml_fallbacks
from .core.async_utils import init_semaphore, run_sync
from .core.client import MongoRemoteClient
from .core.credentials import SecretStore
from .core.encryption import FieldCipher
from .errors import NotReady
from .file_handler import WorkspaceDocuments
from .logger import setup_logging
from .store.local import LocalStore
from .store.projects import Project, ProjectDirectory
from .sync.comments import CommentSyncEngine
from .sync.findings import FindingSyncEngine
from .sync.notify import CredentialPrompt, Notifier
from .sync.remote import RemoteState, RemoteStore

logger = logging.getLogger(__name__)

CREDENTIALS_FILENAME = "credentials.json"


def load_settings(
    overrides: dict[str, Any] | None = None,
    mode: str = "cli",
) -> Config:
    """Resolve configuration and set up logging.

    Precedence: CLI overrides > env vars (.env loaded first) > YAML config
    > defaults.

    Args:
        overrides: CLI values (``remote_uri``, ``workspace_root``,
            ``author_name``, ``remote_enabled``, ``debug``).
        mode: Logging mode passed to ``setup_logging``.

    Raises:
        ValueError: If the resulting configuration is invalid.
    """
    load_dotenv()

    fallbacks: dict[str, Any] | None = None
    log_level: str | None = None
    log_file: str | None = None
    config_files = discover_config_files()
    if config_files:
        unified = build_config(load_hierarchical_config())
        fallbacks = yaml_fallbacks(unified)
        log_level = unified.logging.level
        log_file = unified.logging.file

    cli = overrides or {}
    config = load_config(
        remote_uri=cli.get("remote_uri"),
        workspace_root=cli.get("workspace_root"),
        author_name=cli.get("author_name"),
        remote_enabled=cli.get("remote_enabled", False),
        debug=cli.get("debug", False),
        yaml_fallbacks=fallbacks,
    )
    setup_logging(mode=mode, debug=config.debug, log_file=log_file, level=log_level)
    if config_files:
        logger.info("Configuration loaded from: %s", config_files[0])
    logger.info("Workspace: %s", config.workspace_root)
    return config


def build_remote(
    config: Config,
    prompt: CredentialPrompt | None = None,
    notifier: Notifier | None = None,
) -> RemoteStore:
    """Create the (disabled) remote store described by *config*."""
    return RemoteStore(
        MongoRemoteClient(config),
        expire_after_seconds=config.expire_after_seconds,
        credentials=SecretStore(config.storage_path / CREDENTIALS_FILENAME),
        prompt=prompt,
        notifier=notifier,
    )


@dataclass
class ProjectSession:
    project: Project
    config: Config
    cipher: FieldCipher
    local: LocalStore
    remote: RemoteStore
    documents: WorkspaceDocuments
    comments: CommentSyncEngine
    findings: FindingSyncEngine

    @property
    def encrypted(self) -> bool:
        return self.cipher.enabled

    async def sync(self) -> None:
        """Run one pass of each engine."""
        await self.comments.sync()
        await self.findings.sync()


@asynccontextmanager
async def open_project(
    config: Config,
    directory: ProjectDirectory,
    project_uuid: str,
    remote: RemoteStore | None = None,
    notifier: Notifier | None = None,
    prompt: CredentialPrompt | None = None,
) -> AsyncIterator[ProjectSession]:
    """Open *project_uuid* for the duration of the ``async with`` block.

    On entry the local store is opened, the view is loaded, and, when the
    remote is enabled in *config*, the remote store runs its credential
    check.  On exit the engines are disposed, the remote is unbound (and
    disabled if this function created it), and the store is closed.

    Args:
        config: Resolved configuration.
        directory: Project directory the project is registered in.
        project_uuid: Project to open.
        remote: Shared remote store; one is built from *config* if omitted.
        notifier: Receives comment notifications and remote errors.
        prompt: Asked for credentials when the remote rejects them.

    Raises:
        ValueError: If the project is unknown.
        NotReady: If the project is encrypted and its key is not known.
    """
    project = await run_sync(directory.get_project, project_uuid)
    if project is None:
        raise ValueError(f"Unknown project: {project_uuid}")
    if project.locked:
        raise NotReady(f"Project {project.name or project_uuid} is locked")

    init_semaphore(config.max_parallel_requests)
    owns_remote = remote is None
    if remote is None:
        remote = build_remote(config, prompt=prompt, notifier=notifier)

    cipher = project.cipher()
    documents = WorkspaceDocuments(config.workspace_root)
    local = LocalStore(directory.store_path(project.uuid))
    await run_sync(local.init)

    comments = CommentSyncEngine(
        local,
        remote,
        documents,
        notifier=notifier,
        author=config.author_name,
        anchor_lines=config.anchor_lines,
        full_resync=config.full_resync,
    )
    findings = FindingSyncEngine(
        local, remote, documents, anchor_lines=config.anchor_lines
    )
    session = ProjectSession(
        project=project,
        config=config,
        cipher=cipher,
        local=local,
        remote=remote,
        documents=documents,
        comments=comments,
        findings=findings,
    )
    logger.info(
        "Opening project %s (%s)%s",
        project.name,
        project.uuid,
        ", encrypted" if cipher.enabled else "",
    )
    try:
        await remote.bind_project(project.uuid, cipher)
        await comments.start()
        await findings.start()
        if config.remote_enabled and remote.state is RemoteState.DISABLED:
            await remote.enable()
        yield session
    finally:
        await comments.dispose()
        await findings.dispose()
        await remote.bind_project(None)
        if owns_remote:
            await remote.disable()
        await run_sync(local.close)
        logger.info("Closed project %s", project.uuid)
