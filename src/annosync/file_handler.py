"""Workspace documents: path mapping and encoding-aware reads.

Threads and findings carry workspace-relative paths on the wire; this
module maps them to files under the workspace root and reads the live
content the matcher relocates anchors against.  Text held by an editor
(unsaved buffers) is registered as an overlay and wins over the file on
disk.
"""

from __future__ import annotations

import logging
from pathlib import Path, PurePosixPath
from typing import Protocol

from charset_normalizer import from_bytes

from .core.async_utils import run_sync

logger = logging.getLogger(__name__)


class DocumentSource(Protocol):
    def read_text(self, file_path: str) -> str | None: ...

    def to_relative(self, path: Path | str) -> str: ...

    def to_absolute(self, file_path: str) -> Path: ...


# =============================================================================
# File Read
# =============================================================================


def read_file_with_encoding(path: Path) -> tuple[str, str]:
    """Read a file with automatic encoding detection.

    Defaults to UTF-8 for empty files or when detection fails.

    Returns:
        Tuple of (content_string, detected_encoding).
    """
    raw = path.read_bytes()
    if not raw:
        return ("", "utf-8")

    result = from_bytes(raw).best()
    if result is None:
        encoding = "utf-8"
        content = raw.decode(encoding, errors="replace")
    else:
        encoding = result.encoding
        if encoding == "ascii":
            encoding = "utf-8"
        content = str(result)
    return (content, encoding)


# =============================================================================
# Workspace
# =============================================================================


class WorkspaceDocuments:
    """Live document content for one workspace.

    Args:
        root: Workspace root directory.
    """

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).expanduser().resolve()
        self._buffers: dict[str, str] = {}

    def to_relative(self, path: Path | str) -> str:
        """Return the wire form (POSIX, workspace-relative) of *path*.

        Raises:
            ValueError: If *path* is outside the workspace root.
        """
        resolved = Path(path)
        if not resolved.is_absolute():
            resolved = self.root / resolved
        resolved = resolved.resolve()
        if not resolved.is_relative_to(self.root):
            raise ValueError(
                f"Path is outside the workspace: {resolved} not under {self.root}"
            )
        return resolved.relative_to(self.root).as_posix()

    def to_absolute(self, file_path: str) -> Path:
        """Map a wire path back to a file under the workspace root.

        Raises:
            ValueError: If *file_path* is absolute or escapes the root.
        """
        wire = PurePosixPath(file_path)
        if wire.is_absolute() or Path(file_path).is_absolute():
            raise ValueError(f"Path must be workspace-relative: {file_path}")
        resolved = (self.root / Path(*wire.parts)).resolve()
        if not resolved.is_relative_to(self.root):
            raise ValueError(f"Path escapes the workspace: {file_path}")
        return resolved

    def open_buffer(self, file_path: str, text: str) -> None:
        """Register (or refresh) editor content for *file_path*."""
        self._buffers[self.to_relative(self.to_absolute(file_path))] = text

    def close_buffer(self, file_path: str) -> None:
        self._buffers.pop(self.to_relative(self.to_absolute(file_path)), None)

    def read_text(self, file_path: str) -> str | None:
        """Return the current text of *file_path*, or ``None`` if it cannot
        be read."""
        try:
            absolute = self.to_absolute(file_path)
        except ValueError as exc:
            logger.warning("Refusing to read %s: %s", file_path, exc)
            return None
        key = absolute.relative_to(self.root).as_posix()
        if key in self._buffers:
            return self._buffers[key]
        if not absolute.is_file():
            logger.debug("Document not found: %s", absolute)
            return None
        try:
            content, _ = read_file_with_encoding(absolute)
        except OSError as exc:
            logger.warning("Cannot read %s: %s", absolute, exc)
            return None
        return content

    async def read_text_async(self, file_path: str) -> str | None:
        return await run_sync(self.read_text, file_path)
