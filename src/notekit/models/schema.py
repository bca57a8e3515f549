"""Data models for notekit."""

import datetime
import uuid
from dataclasses import asdict, dataclass
from datetime import timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


def utc_now() -> datetime.datetime:
    """Get current UTC time as timezone-aware datetime.

    Returns:
        Current time with UTC timezone info attached.
    """
    return datetime.datetime.now(timezone.utc)


def ensure_timezone_aware(dt_value: Optional[datetime.datetime]) -> datetime.datetime:
    """Ensure a datetime is timezone-aware, treating naive datetimes as UTC.

    SQLite drops tzinfo on the way in, so values read back from the local
    store are naive UTC and need their zone restored.

    Args:
        dt_value: A datetime that may or may not have timezone info.

    Returns:
        The same datetime with UTC timezone if it was naive, otherwise
        converted to UTC.
    """
    if dt_value is None:
        return utc_now()
    if dt_value.tzinfo is None:
        return dt_value.replace(tzinfo=timezone.utc)
    return dt_value.astimezone(timezone.utc)


class Note(BaseModel):
    """A single note.

    Notes are immutable values. There is no method that changes a note in
    place; `revised()` returns a new note with the same identity.
    """

    id: uuid.UUID = Field(
        default_factory=uuid.uuid4, description="Domain id, stable across stores"
    )
    title: str = Field(..., description="Title of the note")
    content: str = Field(default="", description="Body of the note")
    created_at: datetime.datetime = Field(
        default_factory=utc_now, description="When the note was created (UTC)"
    )
    updated_at: datetime.datetime = Field(
        default_factory=utc_now, description="When the note was last updated (UTC)"
    )

    model_config = {"extra": "forbid", "frozen": True}

    @field_validator("created_at", "updated_at")
    @classmethod
    def validate_timestamp(cls, v: datetime.datetime) -> datetime.datetime:
        """Normalize timestamps to timezone-aware UTC."""
        return ensure_timezone_aware(v)

    @model_validator(mode="after")
    def validate_chronology(self) -> "Note":
        """A note cannot have been updated before it was created."""
        if self.updated_at < self.created_at:
            raise ValueError("updated_at cannot be earlier than created_at")
        return self

    def revised(
        self,
        title: str,
        content: str,
        updated_at: Optional[datetime.datetime] = None,
    ) -> "Note":
        """Return a copy of this note with new title and content.

        The id and created_at carry over unchanged. updated_at defaults to
        now and is clamped so it never precedes created_at.
        """
        stamp = ensure_timezone_aware(updated_at) if updated_at else utc_now()
        return Note(
            id=self.id,
            title=title,
            content=content,
            created_at=self.created_at,
            updated_at=max(stamp, self.created_at),
        )

    def matches(self, query: str) -> bool:
        """Case-insensitive substring match on title or content."""
        needle = query.casefold()
        return needle in self.title.casefold() or needle in self.content.casefold()


@dataclass(frozen=True)
class NoteStatistics:
    """Aggregate figures over a set of notes.

    Attributes:
        total_notes: Number of notes.
        notes_with_content: Notes whose content is not empty.
        notes_without_content: Notes whose content is empty.
        average_title_length: Mean title length in characters.
        average_content_length: Mean content length in characters.
    """

    total_notes: int
    notes_with_content: int
    notes_without_content: int
    average_title_length: float
    average_content_length: float

    @classmethod
    def empty(cls) -> "NoteStatistics":
        """Statistics for an empty note set (all zeros)."""
        return cls(
            total_notes=0,
            notes_with_content=0,
            notes_without_content=0,
            average_title_length=0.0,
            average_content_length=0.0,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return asdict(self)
