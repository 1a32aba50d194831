"""Seams towards the user interface.

The engines never talk to an editor directly.  They emit ``Notification``
objects through a ``Notifier`` and ask for credentials through a
``CredentialPrompt``.  The defaults here only log, which is what a
headless process wants.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from enum import Enum
from typing import Protocol

from .models import Notification

logger = logging.getLogger(__name__)


class CredentialChoice(str, Enum):
    PROVIDE = "provide"
    RETRY = "retry"
    CANCEL = "cancel"


class Notifier(Protocol):
    def notify(self, notification: Notification) -> None: ...

    def error(self, message: str) -> None: ...


class CredentialPrompt(Protocol):
    async def choose(
        self, message: str, options: Sequence[CredentialChoice]
    ) -> CredentialChoice | None: ...

    async def ask_credentials(self) -> tuple[str, str] | None: ...


class LoggingNotifier:
    def notify(self, notification: Notification) -> None:
        logger.info(
            "%s (line %d)", notification.message, notification.line + 1
        )

    def error(self, message: str) -> None:
        logger.error(message)


class NonInteractivePrompt:
    """Prompt that always cancels; used when nobody can answer."""

    async def choose(
        self, message: str, options: Sequence[CredentialChoice]
    ) -> CredentialChoice | None:
        logger.warning("%s (no interactive prompt, cancelling)", message)
        return CredentialChoice.CANCEL

    async def ask_credentials(self) -> tuple[str, str] | None:
        return None
