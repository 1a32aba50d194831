"""Optional field-level encryption for values written to the remote store.

``FieldCipher`` wraps a Fernet key.  Without a key every transform is the
identity, so the sync logic never needs to know whether a project is
encrypted.  The project token (``jwt``) is a Fernet token of
``{"uuid": <project uuid>}``: whoever can decrypt it back to the project's
uuid holds the right key.
"""

from __future__ import annotations

import json
import logging

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)


class FieldCipher:
    """Symmetric transform applied to individual string fields.

    Args:
        key: URL-safe base64 Fernet key, or ``None`` for pass-through.
    """

    def __init__(self, key: str | None = None) -> None:
        self._key = key or None
        self._fernet = Fernet(key.encode()) if key else None

    @staticmethod
    def generate_key() -> str:
        """Return a fresh random key in its shareable text form."""
        return Fernet.generate_key().decode()

    @property
    def enabled(self) -> bool:
        return self._fernet is not None

    @property
    def key(self) -> str | None:
        return self._key

    def encrypt(self, value: str | None) -> str | None:
        if value is None or self._fernet is None:
            return value
        return self._fernet.encrypt(value.encode("utf-8")).decode("ascii")

    def decrypt(self, value: str | None) -> str | None:
        """Reverse ``encrypt``.

        Raises:
            cryptography.fernet.InvalidToken: If *value* was not produced
                with this key.
        """
        if value is None or self._fernet is None:
            return value
        return self._fernet.decrypt(value.encode("ascii")).decode("utf-8")

    def wrap_project_token(self, project_uuid: str) -> str | None:
        """Return the shareable token proving possession of the key."""
        if self._fernet is None:
            return None
        payload = json.dumps({"uuid": project_uuid}).encode("utf-8")
        return self._fernet.encrypt(payload).decode("ascii")

    def check_key(self, token: str) -> str | None:
        """Return the project uuid sealed in *token*, or ``None`` if the
        key does not open it."""
        if self._fernet is None:
            return None
        try:
            payload = self._fernet.decrypt(token.encode("ascii"))
        except InvalidToken:
            logger.warning("Project token does not match the supplied key")
            return None
        return json.loads(payload).get("uuid")
