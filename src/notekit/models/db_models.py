"""SQLAlchemy database models for the local note store."""
import datetime
from typing import Optional, Union

from sqlalchemy import Column, DateTime, Integer, String, Text, create_engine, event
from sqlalchemy.engine import URL, Engine, make_url
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from notekit.models.schema import Note, ensure_timezone_aware

# Create base class for SQLAlchemy models
Base = declarative_base()

IN_MEMORY_URL = "sqlite:///:memory:"


class DBNote(Base):
    """Database model for a note.

    `pk` is the store's own opaque row id. The domain id lives in `id`
    and is what every lookup goes through.
    """
    __tablename__ = "notes"
    pk = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(36), unique=True, nullable=False, index=True)
    title = Column(String(255), nullable=False, default="")
    content = Column(Text, nullable=False, default="")
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False, index=True)

    def __repr__(self) -> str:
        """Return string representation of note."""
        return f"<Note(id='{self.id}', title='{self.title}')>"

    @classmethod
    def from_note(cls, note: Note) -> "DBNote":
        """Build a row from a domain note, storing timestamps as naive UTC."""
        return cls(
            id=str(note.id),
            title=note.title,
            content=note.content,
            created_at=to_naive_utc(note.created_at),
            updated_at=to_naive_utc(note.updated_at),
        )

    def to_note(self) -> Note:
        """Convert the row back into a domain note."""
        return Note(
            id=self.id,
            title=self.title,
            content=self.content,
            created_at=ensure_timezone_aware(self.created_at),
            updated_at=ensure_timezone_aware(self.updated_at),
        )


def to_naive_utc(value: datetime.datetime) -> datetime.datetime:
    """Convert to the naive UTC form the `DateTime` columns hold."""
    return ensure_timezone_aware(value).replace(tzinfo=None)


def is_memory_url(url: Union[str, URL]) -> bool:
    """True if `url` names a private in-memory SQLite database."""
    return make_url(url).database in (None, "", ":memory:")


def init_db(db_url: str = IN_MEMORY_URL) -> Engine:
    """Initialize the database with hardened configuration.

    Applies SQLite best practices for crash resilience:
    - WAL (Write-Ahead Logging) mode for atomic writes
    - NORMAL synchronous mode (good balance of safety vs speed)
    - A `casefold` SQL function so searches match non-ASCII text

    In-memory databases use a StaticPool so every session sees the same
    connection (and therefore the same data).
    """
    if is_memory_url(db_url):
        engine = create_engine(
            db_url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    else:
        engine = create_engine(
            db_url,
            pool_pre_ping=True,    # Validate connections before use
            connect_args={"check_same_thread": False, "timeout": 30},
        )

    # Apply PRAGMA settings and helper functions on every connection
    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        # WAL mode: writes go to separate journal, preventing corruption on crash
        cursor.execute("PRAGMA journal_mode=WAL")
        # NORMAL sync: flush WAL to disk at critical moments (good balance)
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.close()
        dbapi_connection.create_function(
            "casefold", 1, _sql_casefold, deterministic=True
        )

    Base.metadata.create_all(engine)
    return engine


def _sql_casefold(value: Optional[str]) -> Optional[str]:
    return value.casefold() if value is not None else None


def get_session_factory(engine: Engine) -> sessionmaker:
    """Get a session factory for the database."""
    return sessionmaker(bind=engine, expire_on_commit=False)
