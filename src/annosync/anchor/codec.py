"""Anchor capture and wire encoding.

The wire form is a JSON object ``{"line": int, "text": str, "num": int}``
where ``num`` is the number of lines that survived truncation on the
"before" side of the captured line.  Unknown fields are ignored on decode
so that older clients can read anchors written by newer ones.
"""

from __future__ import annotations

from pydantic import BaseModel, Field, ValidationError

from ..errors import MalformedAnchor

# Lines captured on each side of the anchored line.
ANCHOR_LINES = 5

# Per-side character cap applied after the line slices are joined.
MAX_ANCHOR_CHARS = 500


class Anchor(BaseModel):
    """Snippet of text surrounding one line at capture time.

    Attributes:
        line: Line number (0-based) the anchor was captured for.
        text: Captured snippet, "before" lines followed by "after" lines.
        lines_before_anchor: Newlines in the "before" part of ``text``.
    """

    line: int = Field(ge=0)
    text: str
    lines_before_anchor: int = Field(ge=0, alias="num")

    model_config = {"frozen": True, "populate_by_name": True}


def split_lines(document: str) -> list[str]:
    """Split *document* into lines, keeping each trailing ``\\n``."""
    parts = document.split("\n")
    lines = [part + "\n" for part in parts[:-1]]
    if parts[-1]:
        lines.append(parts[-1])
    return lines


def capture(
    document: str, line: int, budget: int = ANCHOR_LINES
) -> Anchor:
    """Capture an anchor for *line* of *document*.

    Takes up to *budget* lines before and after *line* (clamped to the
    document), then keeps at most ``MAX_ANCHOR_CHARS`` of each side: the
    tail of the "before" part and the head of the "after" part.

    Args:
        document: Full document text.
        line: 0-based line to anchor.
        budget: Number of lines to capture on each side.

    Returns:
        The captured ``Anchor``.
    """
    lines = split_lines(document)
    line = max(0, min(line, len(lines)))
    begin = max(0, line - budget)
    end = min(len(lines), line + budget)

    before = "".join(lines[begin:line])[-MAX_ANCHOR_CHARS:]
    after = "".join(lines[line:end])[:MAX_ANCHOR_CHARS]
    return Anchor(
        line=line,
        text=before + after,
        lines_before_anchor=before.count("\n"),
    )


def encode(anchor: Anchor) -> str:
    """Serialize *anchor* to its JSON wire form."""
    return anchor.model_dump_json(by_alias=True)


def decode(raw: str) -> Anchor:
    """Parse an anchor from its JSON wire form.

    Raises:
        MalformedAnchor: If *raw* is not JSON or lacks a required field.
    """
    try:
        return Anchor.model_validate_json(raw)
    except ValidationError as exc:
        raise MalformedAnchor(f"Cannot decode anchor: {exc}") from exc
