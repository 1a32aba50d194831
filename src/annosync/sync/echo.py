"""Time-bounded set of write tokens whose change events must be ignored.

Every remote write registers its token here before the write is issued.
When the change feed later reports that write, ``consume()`` finds the
token, removes it, and the event is dropped.  Entries that are never
consumed expire after ``window`` seconds.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable

DEFAULT_WINDOW = 120.0


class EchoSuppressor:
    """Fire-once ignore set with expiry.

    Args:
        window: Seconds an unconsumed token is kept.
        clock: Monotonic time source.
    """

    def __init__(
        self,
        window: float = DEFAULT_WINDOW,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._window = window
        self._clock = clock
        self._expiry: dict[str, float] = {}

    def __len__(self) -> int:
        self.purge()
        return len(self._expiry)

    def __contains__(self, token: object) -> bool:
        self.purge()
        return token in self._expiry

    def add(self, token: str) -> None:
        self.purge()
        self._expiry[token] = self._clock() + self._window

    def add_all(self, tokens: Iterable[str]) -> None:
        self.purge()
        deadline = self._clock() + self._window
        for token in tokens:
            self._expiry[token] = deadline

    def consume(self, token: str) -> bool:
        """Remove *token* and return True if it was pending."""
        self.purge()
        return self._expiry.pop(token, None) is not None

    def purge(self) -> None:
        now = self._clock()
        expired = [t for t, deadline in self._expiry.items() if deadline <= now]
        for token in expired:
            del self._expiry[token]
