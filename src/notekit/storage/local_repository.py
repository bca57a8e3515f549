"""Local note store backed by SQLite.

A `LocalStore` is an explicitly constructed handle around one database.
It owns a single worker thread, and every read and write against the
database runs on that worker. Any number of `LocalNoteRepository`
instances may share one store; their operations serialize through the
worker, so concurrent calls never interleave partial writes.
"""

import asyncio
import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional, Type, TypeVar

from pydantic import ValidationError
from sqlalchemy import delete, func, or_, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from notekit.config import NotesConfig
from notekit.exceptions import (
    ContextUnavailableError,
    DeleteFailedError,
    FetchFailedError,
    NoteNotFoundError,
    SaveFailedError,
    SearchFailedError,
    StoreOperationError,
)
from notekit.models.db_models import (
    IN_MEMORY_URL,
    Base,
    DBNote,
    get_session_factory,
    init_db,
    is_memory_url,
    to_naive_utc,
)
from notekit.models.schema import Note, utc_now
from notekit.storage.base import NoteRepository
from notekit.utils import escape_like_pattern

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LocalStore:
    """Owned handle to a local SQLite database and its single worker."""

    def __init__(self, engine: Engine):
        self.engine = engine
        self.session_factory = get_session_factory(engine)
        self._executor = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="notekit-local-store"
        )
        self._closed = False
        self._close_lock = threading.Lock()
        logger.info(f"LocalStore opened: url={engine.url}")

    @classmethod
    def open(cls, db_url: str) -> "LocalStore":
        """Open (creating if needed) the database at `db_url`."""
        return cls(init_db(db_url))

    @classmethod
    def from_config(cls, cfg: NotesConfig) -> "LocalStore":
        """Open the store configured by `cfg`."""
        return cls.open(cfg.get_db_url())

    @classmethod
    def in_memory(cls) -> "LocalStore":
        """Open a volatile, isolated store. Used to keep tests off disk."""
        return cls.open(IN_MEMORY_URL)

    @property
    def is_volatile(self) -> bool:
        return is_memory_url(self.engine.url)

    @property
    def closed(self) -> bool:
        return self._closed

    async def run(self, operation: str, fn: Callable[[Session], T]) -> T:
        """Run `fn(session)` on the store's worker and return its result.

        Raises:
            ContextUnavailableError: If the store is closed, before or while
                the call is queued.
        """
        if self._closed:
            raise ContextUnavailableError("local", operation)
        loop = asyncio.get_running_loop()
        try:
            future = loop.run_in_executor(
                self._executor, self._run_in_session, operation, fn
            )
        except RuntimeError as e:
            # Executor was shut down between the check above and submit
            raise ContextUnavailableError("local", operation) from e
        return await future

    def _run_in_session(self, operation: str, fn: Callable[[Session], T]) -> T:
        if self._closed:
            raise ContextUnavailableError("local", operation)
        with self.session_factory() as session:
            return fn(session)

    async def reset(self) -> int:
        """Delete every stored record. Returns the number of notes removed.

        Destructive; meant for test setup and launch-flag gated resets only.
        """

        def _reset(session: Session) -> int:
            removed = session.scalar(select(func.count()).select_from(DBNote)) or 0
            for table in reversed(Base.metadata.sorted_tables):
                session.execute(delete(table))
            session.commit()
            return removed

        try:
            removed = await self.run("reset", _reset)
        except SQLAlchemyError as e:
            raise DeleteFailedError(
                "Failed to reset local store",
                operation="reset",
                backend="local",
                cause=e,
            ) from e
        logger.warning(f"Local store reset: removed {removed} notes")
        return removed

    async def count(self) -> int:
        """Number of stored notes."""

        def _count(session: Session) -> int:
            return session.scalar(select(func.count()).select_from(DBNote)) or 0

        try:
            return await self.run("count", _count)
        except SQLAlchemyError as e:
            raise FetchFailedError(
                "Failed to count local notes",
                operation="count",
                backend="local",
                cause=e,
            ) from e

    def close(self) -> None:
        """Stop the worker and release the engine. Idempotent.

        Work already queued is rejected with ContextUnavailableError; the
        engine is disposed on the worker after it drains.
        """
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
            self._executor.submit(self.engine.dispose)
            self._executor.shutdown(wait=False)
        logger.info(f"LocalStore closed: url={self.engine.url}")

    def __repr__(self) -> str:
        return f"<LocalStore url={self.engine.url} closed={self._closed}>"


def _decode_rows(rows: List[DBNote]) -> List[Note]:
    """Convert rows to notes, skipping rows that no longer validate."""
    notes = []
    for row in rows:
        try:
            notes.append(row.to_note())
        except ValidationError as e:
            logger.warning(f"Skipping unreadable local note {row.id}: {e}")
    return notes


class LocalNoteRepository(NoteRepository):
    """Note repository over a `LocalStore`."""

    name = "local"

    def __init__(self, store: LocalStore):
        self.store = store
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed or self.store.closed

    def close(self) -> None:
        """Detach this repository. The shared store stays open."""
        self._closed = True

    async def _execute(
        self,
        operation: str,
        fn: Callable[[Session], T],
        error_cls: Type[StoreOperationError],
    ) -> T:
        """Run `fn` on the store worker, mapping store errors to `error_cls`."""
        if self._closed:
            raise ContextUnavailableError(self.name, operation)
        logger.debug(f"local {operation}")
        try:
            return await self.store.run(operation, fn)
        except SQLAlchemyError as e:
            logger.error(f"Local {operation} failed: {e}")
            raise error_cls(
                f"Local {operation} failed",
                operation=operation,
                backend=self.name,
                cause=e,
            ) from e

    async def fetch_all(self) -> List[Note]:
        def _fetch(session: Session) -> List[Note]:
            query = select(DBNote).order_by(DBNote.updated_at.desc())
            return _decode_rows(session.execute(query).scalars().all())

        return await self._execute("fetch_all", _fetch, FetchFailedError)

    async def create(self, note: Note) -> Note:
        def _create(session: Session) -> Note:
            row = DBNote.from_note(note)
            session.add(row)
            session.commit()
            return row.to_note()

        return await self._execute("create", _create, SaveFailedError)

    async def update(self, note: Note) -> Note:
        def _update(session: Session) -> Note:
            row = self._find_row(session, note.id)
            if row is None:
                raise NoteNotFoundError(note.id)
            row.title = note.title
            row.content = note.content
            # Store clock, never earlier than creation
            row.updated_at = max(to_naive_utc(utc_now()), row.created_at)
            session.commit()
            return row.to_note()

        return await self._execute("update", _update, SaveFailedError)

    async def delete(self, note: Note) -> None:
        def _delete(session: Session) -> None:
            row = self._find_row(session, note.id)
            if row is None:
                raise NoteNotFoundError(note.id)
            session.delete(row)
            session.commit()

        await self._execute("delete", _delete, DeleteFailedError)

    async def search(self, query: str) -> List[Note]:
        pattern = f"%{escape_like_pattern(query.casefold())}%"

        def _search(session: Session) -> List[Note]:
            stmt = (
                select(DBNote)
                .where(
                    or_(
                        func.casefold(DBNote.title).like(pattern, escape="\\"),
                        func.casefold(DBNote.content).like(pattern, escape="\\"),
                    )
                )
                .order_by(DBNote.updated_at.desc())
            )
            return _decode_rows(session.execute(stmt).scalars().all())

        return await self._execute("search", _search, SearchFailedError)

    async def get_by_id(self, note_id: uuid.UUID) -> Optional[Note]:
        def _get(session: Session) -> Optional[Note]:
            row = self._find_row(session, note_id)
            return row.to_note() if row is not None else None

        return await self._execute("get_by_id", _get, FetchFailedError)

    @staticmethod
    def _find_row(session: Session, note_id: uuid.UUID) -> Optional[DBNote]:
        return session.execute(
            select(DBNote).where(DBNote.id == str(note_id)).limit(1)
        ).scalar_one_or_none()
