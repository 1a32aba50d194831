"""Relocation of anchor snippets inside edited documents.

Both the snippet and the document are normalized by dropping carriage
returns, tabs, spaces, and newlines; newlines still advance the line
counter.

Relocation first looks for the normalized snippet verbatim in the
normalized document.  When several copies exist, the one starting
closest to the expected line wins.  Only when the snippet no longer
appears verbatim does the fuzzy search run.

The fuzzy search hashes every run of ``WINDOW_SIZE`` normalized
characters with a polynomial rolling hash (base 53, modulus 2**20).  The
snippet contributes a *set* of window hashes.  Scanning the document,
the last K window hashes (K = size of that set) are kept in a queue and
the number of queue entries present in the set is the score of the
position.  The first position with the highest score at or above 80% of
K wins.  Each matching window in the queue votes for the line the
snippet would start on, given where that window sits inside the snippet,
and the most common vote is the result.

Scanning is linear in the document size: the score is maintained
incrementally as windows enter and leave the queue.
"""

from __future__ import annotations

import logging
from bisect import bisect_right
from collections import Counter, deque
from collections.abc import Iterator

from ..errors import AnchorNotFound
from .codec import Anchor

logger = logging.getLogger(__name__)

WINDOW_SIZE = 8
HASH_BASE = 53
HASH_MODULUS = 1 << 20
MATCH_THRESHOLD = 0.8

_SKIPPED = frozenset("\r\t \n")


def rolling_hashes(text: str) -> Iterator[tuple[int, int]]:
    """Yield ``(hash, line)`` for every window of normalized characters.

    ``line`` is the 0-based line of the window's first character.
    """
    high = pow(HASH_BASE, WINDOW_SIZE - 1, HASH_MODULUS)
    window: deque[tuple[str, int]] = deque()
    value = 0
    line = 0
    for char in text:
        if char == "\n":
            line += 1
            continue
        if char in _SKIPPED:
            continue
        if len(window) == WINDOW_SIZE:
            oldest, _ = window.popleft()
            # Python's modulo keeps the result in [0, HASH_MODULUS).
            value = (value - ord(oldest) * high) % HASH_MODULUS
        window.append((char, line))
        value = (value * HASH_BASE + ord(char)) % HASH_MODULUS
        if len(window) == WINDOW_SIZE:
            yield value, window[0][1]


def normalize(text: str) -> tuple[str, list[int]]:
    """Strip skipped characters from *text*.

    Returns:
        The normalized text and, per line of *text*, the offset in the
        normalized text where that line begins.
    """
    chars: list[str] = []
    line_starts = [0]
    for char in text:
        if char == "\n":
            line_starts.append(len(chars))
        elif char not in _SKIPPED:
            chars.append(char)
    return "".join(chars), line_starts


def _leading_lines(text: str) -> int:
    """Count newlines before the first non-blank character of *text*."""
    count = 0
    for char in text:
        if char == "\n":
            count += 1
        elif char not in _SKIPPED:
            break
    return count


def _exact_start(
    text: str, document: str, near: int | None
) -> int | None:
    needle, _ = normalize(text)
    haystack, line_starts = normalize(document)
    if not needle:
        return None

    leading = _leading_lines(text)
    best: int | None = None
    offset = haystack.find(needle)
    while offset != -1:
        start = max(0, bisect_right(line_starts, offset) - 1 - leading)
        if near is None:
            return start
        if best is None or abs(start - near) < abs(best - near):
            best = start
        offset = haystack.find(needle, offset + 1)
    return best


def _fuzzy_start(text: str, document: str) -> int | None:
    # First snippet line of every distinct window hash.
    snippet_lines: dict[int, int] = {}
    for value, line in rolling_hashes(text):
        snippet_lines.setdefault(value, line)
    if not snippet_lines:
        return None

    size = len(snippet_lines)
    threshold = MATCH_THRESHOLD * size
    recent: deque[tuple[int, int]] = deque()
    score = 0
    best_score = 0
    best_line: int | None = None

    for value, line in rolling_hashes(document):
        if len(recent) == size:
            old_value, _ = recent.popleft()
            if old_value in snippet_lines:
                score -= 1
        recent.append((value, line))
        if value in snippet_lines:
            score += 1
        # Strictly greater: the earliest position wins ties.
        if score >= threshold and score > best_score:
            best_score = score
            votes = Counter(
                found - snippet_lines[hashed]
                for hashed, found in recent
                if hashed in snippet_lines
            )
            best_line = votes.most_common(1)[0][0]

    if best_line is None:
        return None
    return max(0, best_line)


def find_snippet_start(
    text: str, document: str, near: int | None = None
) -> int | None:
    """Find the line where *text* starts inside *document*.

    Args:
        text: Snippet to look for.
        document: Document to search.
        near: Line the snippet is expected to start on; picks between
            several verbatim copies.

    Returns:
        0-based line of the snippet's first line, or ``None`` when the
        document is empty, shorter than the snippet, the snippet is too
        short to hash, or no position scores above the threshold.
    """
    if not document or len(document) < len(text) or len(text) <= WINDOW_SIZE:
        return None

    start = _exact_start(text, document, near)
    if start is not None:
        return start
    logger.debug("Snippet not found verbatim, trying fuzzy match")
    return _fuzzy_start(text, document)


def locate(anchor: Anchor, document: str) -> int | None:
    """Return the current line of *anchor* in *document*, or ``None``."""
    start = find_snippet_start(
        anchor.text,
        document,
        near=max(0, anchor.line - anchor.lines_before_anchor),
    )
    if start is None:
        return None
    return start + anchor.lines_before_anchor


def locate_or_raise(anchor: Anchor, document: str) -> int:
    """Like ``locate`` but raise ``AnchorNotFound`` instead of returning None."""
    line = locate(anchor, document)
    if line is None:
        raise AnchorNotFound(
            f"Anchor captured at line {anchor.line} not found in document"
        )
    return line


def resolve_line(anchor: Anchor, document: str | None) -> int:
    """Return the display line for *anchor*.

    Falls back to the line recorded at capture time when the document is
    unavailable or the snippet can no longer be found.
    """
    if document is None:
        return anchor.line
    line = locate(anchor, document)
    if line is None:
        logger.warning(
            "Anchor lost, falling back to captured line %d", anchor.line
        )
        return anchor.line
    return line
