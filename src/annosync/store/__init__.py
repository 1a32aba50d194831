"""Durable local storage: per-project annotation store and project directory."""

from .local import LocalStore, StoredComment, StoredThread
from .projects import Project, ProjectDirectory

__all__ = [
    "LocalStore",
    "Project",
    "ProjectDirectory",
    "StoredComment",
    "StoredThread",
]
