"""Storage layer for notekit."""

from notekit.storage.base import NoteRepository
from notekit.storage.local_repository import LocalNoteRepository, LocalStore
from notekit.storage.remote_repository import RemoteNoteRepository

__all__ = [
    "NoteRepository",
    "LocalStore",
    "LocalNoteRepository",
    "RemoteNoteRepository",
]
