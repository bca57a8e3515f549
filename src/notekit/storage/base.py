"""Repository contract shared by every note store."""

import uuid
from abc import ABC, abstractmethod
from typing import List, Optional

from notekit.models.schema import Note


class NoteRepository(ABC):
    """Asynchronous CRUD and search over notes.

    Implementations map their store's failures onto the exceptions in
    `notekit.exceptions`; nothing else escapes an operation. Ordering of
    `fetch_all` and `search` results is not part of the contract.
    """

    #: Short backend name used in logs and error details.
    name: str = "repository"

    @abstractmethod
    async def fetch_all(self) -> List[Note]:
        """Return every stored note."""

    @abstractmethod
    async def create(self, note: Note) -> Note:
        """Store `note` verbatim, including its id, and return the stored value.

        Raises:
            SaveFailedError: If the store rejects the write.
        """

    @abstractmethod
    async def update(self, note: Note) -> Note:
        """Overwrite title and content of the stored note with `note.id`.

        The store refreshes updated_at itself.

        Raises:
            NoteNotFoundError: If no note with that id exists.
            SaveFailedError: If the store rejects the write.
        """

    @abstractmethod
    async def delete(self, note: Note) -> None:
        """Remove the stored note with `note.id`.

        Raises:
            NoteNotFoundError: If no note with that id exists.
            DeleteFailedError: If the store rejects the delete.
        """

    @abstractmethod
    async def search(self, query: str) -> List[Note]:
        """Case-insensitive substring match against title or content.

        Must not raise for an empty query.
        """

    @abstractmethod
    async def get_by_id(self, note_id: uuid.UUID) -> Optional[Note]:
        """Return the note with `note_id`, or None if there is none."""

    def close(self) -> None:
        """Tear the repository down. Later operations fail."""

    @property
    def closed(self) -> bool:
        return False

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r} closed={self.closed}>"
