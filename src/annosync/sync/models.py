"""Pydantic models for the sync protocol.

Defines the data contracts exchanged between the stores and the engines:

- ``ThreadRecord``, ``CommentRecord``, ``FindingRecord``, ``Tombstone``:
  tagged wire records keyed by a ``kind`` discriminant, validated at the
  store boundary via ``parse_record()``.
- ``FindingFlag``: triage state of a finding.
- ``ChangeEvent``: one entry of the remote change feed.
- ``Notification``: user-facing message emitted by the engines.
- ``PassReport``: outcome of one reconciliation pass.

All models are frozen.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter


class FindingFlag(int, Enum):
    """Triage state a user assigns to a finding."""

    UNFLAGGED = 0
    FALSE_POSITIVE = 1
    HOT = 2
    RESOLVED = 3


class ThreadRecord(BaseModel):
    """A discussion thread as stored remotely.

    Attributes:
        tid: Thread id.
        file_path: Workspace-relative path of the annotated file.
        anchor: Encoded anchor, ``None`` for tombstones.
        timestamp_modified: Remote-clock time of the last push.
        deleted: Tombstone flag.
    """

    kind: Literal["thread"] = "thread"
    tid: str
    file_path: str | None = None
    anchor: str | None = None
    timestamp_modified: float | None = None
    deleted: bool = False

    model_config = {"frozen": True}


class CommentRecord(BaseModel):
    """A single comment as stored remotely."""

    kind: Literal["comment"] = "comment"
    cid: str
    tid: str
    body: str | None = None
    author: str | None = None
    timestamp_modified: float | None = None
    deleted: bool = False

    model_config = {"frozen": True}


class FindingRecord(BaseModel):
    """A static-analysis finding; same shape locally and remotely.

    Attributes:
        id: Finding id.
        diagnostic: JSON payload ``{message, severity, source,
            relatedInformation}``.
        flag: Triage flag.
        flag_timestamp: Time the flag was last changed.
        anchor: Encoded anchor of the reported line.
        file_path: Path of the file the finding belongs to.
        timestamp_created: Time the analysis batch was ingested.
    """

    kind: Literal["finding"] = "finding"
    id: str
    diagnostic: str
    flag: FindingFlag = FindingFlag.UNFLAGGED
    flag_timestamp: float = 0.0
    anchor: str | None = None
    file_path: str
    timestamp_created: float = 0.0

    model_config = {"frozen": True}


class Tombstone(BaseModel):
    """Deletion marker for a thread or a comment."""

    kind: Literal["tombstone"] = "tombstone"
    target: Literal["thread", "comment"]
    tid: str
    cid: str | None = None

    model_config = {"frozen": True}


RemoteRecord = Annotated[
    Union[ThreadRecord, CommentRecord, FindingRecord, Tombstone],
    Field(discriminator="kind"),
]

_record_adapter: TypeAdapter[RemoteRecord] = TypeAdapter(RemoteRecord)


def parse_record(data: dict) -> RemoteRecord:
    """Validate *data* into the record variant named by its ``kind``.

    Raises:
        pydantic.ValidationError: If ``kind`` is unknown or fields are
            missing.
    """
    return _record_adapter.validate_python(data)


class ChangeEvent(BaseModel):
    """One change-feed event, reduced to the fields the engines inspect.

    Attributes:
        collection: Name of the collection that changed.
        operation: ``insert``, ``update``, ``replace``, ``delete``, or
            ``reconnect`` after the feed was re-opened following a failure.
        document_id: Physical id of the changed document.
        ephemeral_uuid: Write token carried by the new document, if any.
        updated_fields: Field names touched by an ``update``.
    """

    collection: str
    operation: str
    document_id: str | None = None
    ephemeral_uuid: str | None = None
    updated_fields: tuple[str, ...] = ()

    model_config = {"frozen": True}


class NotificationKind(str, Enum):
    COMMENT_ADDED = "comment_added"
    COMMENT_UPDATED = "comment_updated"


class Notification(BaseModel):
    """User-facing notice offering to jump to a changed comment."""

    kind: NotificationKind
    author: str
    file_path: str
    line: int
    thread_id: str
    comment_id: str

    model_config = {"frozen": True}

    @property
    def message(self) -> str:
        verb = (
            "Added"
            if self.kind == NotificationKind.COMMENT_ADDED
            else "Updated"
        )
        return f"[{self.author}] {verb} a comment on {self.file_path}"


class PassReport(BaseModel):
    """Outcome of one reconciliation pass.

    Attributes:
        target: ``comments`` or ``findings``.
        started_at: ISO 8601 timestamp when the pass started.
        completed_at: ISO 8601 timestamp when the pass ended.
        skipped: Reason the pass did nothing, if it was skipped.
        pulled: Records received from the remote.
        pushed: Records sent to the remote.
        created_local: Records materialized locally.
        updated_local: Records updated locally.
        deleted_local: Records tombstoned locally.
    """

    target: str
    started_at: str
    completed_at: str | None = None
    skipped: str | None = None
    pulled: int = 0
    pushed: int = 0
    created_local: int = 0
    updated_local: int = 0
    deleted_local: int = 0

    model_config = {"frozen": True}

    def summary(self) -> str:
        """Format a one-line human-readable summary of the pass."""
        if self.skipped:
            return f"{self.target} sync skipped: {self.skipped}"
        return (
            f"{self.target} sync: pulled={self.pulled} pushed={self.pushed} "
            f"created={self.created_local} updated={self.updated_local} "
            f"deleted={self.deleted_local}"
        )
