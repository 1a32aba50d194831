"""Credential storage for the remote store.

Holds three opaque secrets (username, password, host) in a JSON file that
is only readable by the owner.  Writes go to a temp file followed by
``os.replace()`` so a crash never leaves a truncated file behind.
"""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path

USERNAME = "remoteUsername"
PASSWORD = "remotePassword"
HOST = "remoteHost"


class SecretStore:
    """Load and save secrets under *path*."""

    def __init__(self, path: Path) -> None:
        self._path = path

    def get(self, name: str) -> str | None:
        return self._load().get(name)

    def set(self, name: str, value: str) -> None:
        data = self._load()
        data[name] = value
        self._save(data)

    def delete(self, name: str) -> None:
        data = self._load()
        if data.pop(name, None) is not None:
            self._save(data)

    def credentials_for(self, host: str) -> tuple[str, str] | None:
        """Return ``(username, password)`` if they were stored for *host*."""
        data = self._load()
        username, password = data.get(USERNAME), data.get(PASSWORD)
        if username is None or password is None or data.get(HOST) != host:
            return None
        return username, password

    def store_credentials(
        self, host: str, username: str, password: str
    ) -> None:
        data = self._load()
        data.update({USERNAME: username, PASSWORD: password, HOST: host})
        self._save(data)

    def _load(self) -> dict[str, str]:
        if not self._path.exists():
            return {}
        with open(self._path, encoding="utf-8") as fh:
            return json.load(fh)

    def _save(self, data: dict[str, str]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self._path.parent), suffix=".tmp"
        )
        try:
            os.chmod(tmp_path, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh)
            os.replace(tmp_path, self._path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise
