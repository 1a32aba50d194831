"""Core infrastructure shared by the stores and engines."""

from .async_utils import run_sync
from .client import MongoRemoteClient, RemoteClient
from .encryption import FieldCipher

__all__ = ["FieldCipher", "MongoRemoteClient", "RemoteClient", "run_sync"]
