"""Synchronization of annotations between the local and remote stores.

The engines (``comments``, ``findings``) and the remote store (``remote``)
are imported from their modules directly; this package only re-exports
the shared primitives.
"""

from .coalesce import CoalescingRunner, RunnerState
from .echo import EchoSuppressor
from .models import (
    ChangeEvent,
    CommentRecord,
    FindingFlag,
    FindingRecord,
    Notification,
    NotificationKind,
    PassReport,
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

__all__ = [
    "ChangeEvent",
    "CoalescingRunner",
    "CommentRecord",
    "CredentialChoice",
    "CredentialPrompt",
    "EchoSuppressor",
    "FindingFlag",
    "FindingRecord",
    "LoggingNotifier",
    "NonInteractivePrompt",
    "Notification",
    "NotificationKind",
    "Notifier",
    "PassReport",
    "RunnerState",
    "ThreadRecord",
    "Tombstone",
    "parse_record",
]
