"""Exception taxonomy shared by the anchor, store, and sync layers.

Every failure in the core maps onto one of these classes so callers can
decide between "fall back and continue" and "surface to the user":

- ``NotReady``: an operation ran outside its lifecycle window.
- ``AnchorNotFound``: relocation failed; callers fall back to the
  originally captured line.
- ``MalformedAnchor``: an anchor blob could not be decoded.
- ``RemoteAuthFailure``: the remote rejected the supplied credentials.
- ``RemoteTransportError``: the remote could not be reached.
- ``InvariantViolation``: the in-memory mirror and the stores disagree.
- ``AnalysisError``: an external analysis tool failed.
"""


class AnnoSyncError(Exception):
    """Base class for all annosync errors."""


class NotReady(AnnoSyncError):
    """Raised when a store is used outside its ready window."""


class AnchorNotFound(AnnoSyncError):
    """Raised when an anchor snippet cannot be relocated in a document."""


class MalformedAnchor(AnnoSyncError, ValueError):
    """Raised when an encoded anchor is missing required fields."""


class RemoteAuthFailure(AnnoSyncError):
    """Raised when the remote store rejects the configured credentials."""


class RemoteTransportError(AnnoSyncError):
    """Raised when the remote store is unreachable or the call failed."""


class InvariantViolation(AnnoSyncError):
    """Raised when local mirrors have diverged from persisted state."""


class AnalysisError(AnnoSyncError):
    """Raised when an external analysis tool fails or its output is invalid."""
