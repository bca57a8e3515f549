"""Service layer for note operations."""

import logging
import uuid
from typing import List, Optional, Tuple

from notekit.exceptions import InvalidDataError
from notekit.models.schema import Note, NoteStatistics, utc_now
from notekit.observability import traced
from notekit.storage.base import NoteRepository

logger = logging.getLogger(__name__)


def _newest_first(notes: List[Note]) -> List[Note]:
    return sorted(notes, key=lambda n: n.updated_at, reverse=True)


class NotesService:
    """Validation, ordering and statistics on top of a note repository.

    The service owns no storage of its own. Errors raised by the
    repository reach the caller unchanged.
    """

    def __init__(self, repository: NoteRepository):
        self.repository = repository

    @staticmethod
    def _clean(title: str, content: str) -> Tuple[str, str]:
        title = title.strip()
        if not title:
            raise InvalidDataError("Title is required", field="title", value=title)
        return title, content.strip()

    @traced("get_all_notes")
    async def get_all_notes(self) -> List[Note]:
        """Every note, most recently updated first."""
        return _newest_first(await self.repository.fetch_all())

    @traced("get_note")
    async def get_note(self, note_id: uuid.UUID) -> Optional[Note]:
        """Retrieve a note by ID."""
        return await self.repository.get_by_id(note_id)

    @traced("create_note")
    async def create_note(self, title: str, content: str) -> Note:
        """Create a new note.

        Args:
            title: Note title. Surrounding whitespace is removed; an empty
                result is rejected.
            content: Note body, trimmed the same way. May be empty.

        Returns:
            The note as stored.

        Raises:
            InvalidDataError: If the trimmed title is empty.
        """
        title, content = self._clean(title, content)
        now = utc_now()
        note = Note(title=title, content=content, created_at=now, updated_at=now)
        created = await self.repository.create(note)
        logger.info(f"Created note {created.id}")
        return created

    @traced("update_note")
    async def update_note(self, note: Note, title: str, content: str) -> Note:
        """Replace the title and content of an existing note.

        Raises:
            InvalidDataError: If the trimmed title is empty.
            NoteNotFoundError: If the note no longer exists in the store.
        """
        title, content = self._clean(title, content)
        updated = await self.repository.update(note.revised(title, content))
        logger.info(f"Updated note {updated.id}")
        return updated

    @traced("delete_note")
    async def delete_note(self, note: Note) -> None:
        """Delete a note."""
        await self.repository.delete(note)
        logger.info(f"Deleted note {note.id}")

    @traced("search_notes")
    async def search_notes(self, query: str) -> List[Note]:
        """Notes whose title or content contains `query`, ignoring case.

        A blank query returns every note, ordered as `get_all_notes`.
        """
        query = query.strip()
        if not query:
            return _newest_first(await self.repository.fetch_all())
        return await self.repository.search(query)

    @traced("get_note_statistics")
    async def get_note_statistics(self) -> NoteStatistics:
        """Counts and mean lengths over every stored note."""
        notes = await self.repository.fetch_all()
        if not notes:
            return NoteStatistics.empty()
        total = len(notes)
        with_content = sum(1 for n in notes if n.content)
        return NoteStatistics(
            total_notes=total,
            notes_with_content=with_content,
            notes_without_content=total - with_content,
            average_title_length=sum(len(n.title) for n in notes) / total,
            average_content_length=sum(len(n.content) for n in notes) / total,
        )
