"""Relocatable line anchors.

An anchor is a snippet of text captured around one line of a document.
``codec`` captures and (de)serializes anchors; ``matcher`` finds the
snippet again in a later revision of the document using a rolling hash.
"""

from .codec import ANCHOR_LINES, Anchor, capture, decode, encode
from .matcher import find_snippet_start, locate, locate_or_raise, resolve_line

__all__ = [
    "ANCHOR_LINES",
    "Anchor",
    "capture",
    "decode",
    "encode",
    "find_snippet_start",
    "locate",
    "locate_or_raise",
    "resolve_line",
]
