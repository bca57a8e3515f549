"""Remote note store backed by a zoned record database.

Notes are kept as `Note` records in a dedicated zone of the account's
private database. The record's own `RecordID` is store-native; the
domain id is stored as the string field `id` and every point lookup
queries that field.

Record database calls complete on the client's network thread. Each
pending operation here is an asyncio future owned by the repository;
callbacks hold the repository only weakly and hand results back to the
owning event loop. Closing the repository (or losing the last reference
to it) fails every pending future with `ContextUnavailableError`, and
callbacks that arrive afterwards are dropped.

There is no retry here. Network, auth and quota failures surface as the
operation's typed error with the transport error as `cause`.
"""

import asyncio
import datetime
import logging
import uuid
import weakref
from typing import Any, Callable, List, Optional, Set, Type

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
from notekit.models.schema import Note, ensure_timezone_aware, utc_now
from notekit.storage.base import NoteRepository
from notekit.storage.records import (
    AccountStatus,
    AnyOf,
    Contains,
    Equals,
    Query,
    QueryOperation,
    Record,
    RecordDatabase,
    RecordID,
    RecordZone,
    SortDescriptor,
    TruePredicate,
    ZoneID,
)

logger = logging.getLogger(__name__)

DEFAULT_ZONE_NAME = "NotesZone"
DEFAULT_RECORD_TYPE = "Note"

# Record field names
FIELD_ID = "id"
FIELD_TITLE = "title"
FIELD_CONTENT = "content"
FIELD_CREATED_AT = "createdAt"
FIELD_UPDATED_AT = "updatedAt"

NEWEST_FIRST = (SortDescriptor(FIELD_UPDATED_AT, ascending=False),)


def note_to_fields(note: Note) -> dict:
    """Field values for a note record."""
    return {
        FIELD_ID: str(note.id),
        FIELD_TITLE: note.title,
        FIELD_CONTENT: note.content,
        FIELD_CREATED_AT: note.created_at,
        FIELD_UPDATED_AT: note.updated_at,
    }


def record_to_note(record: Record) -> Optional[Note]:
    """Decode a note record, or None if it is missing fields or malformed."""
    try:
        return Note(
            id=uuid.UUID(record[FIELD_ID]),
            title=record[FIELD_TITLE],
            content=record[FIELD_CONTENT],
            created_at=record[FIELD_CREATED_AT],
            updated_at=record[FIELD_UPDATED_AT],
        )
    except (KeyError, TypeError, ValueError):
        # pydantic's ValidationError is a ValueError
        return None


def _fail_pending(pending: Set[asyncio.Future], backend: str) -> None:
    """Fail every unfinished future in `pending` on its own loop."""
    for future in list(pending):
        try:
            future.get_loop().call_soon_threadsafe(_fail_future, future, backend)
        except RuntimeError:
            # Loop already closed; nobody is left to await the future
            pass
    pending.clear()


def _fail_future(future: asyncio.Future, backend: str) -> None:
    if not future.done():
        future.set_exception(ContextUnavailableError(backend))


def _failure(
    error_cls: Type[StoreOperationError],
    operation: str,
    backend: str,
    cause: Optional[BaseException],
    message: Optional[str] = None,
) -> StoreOperationError:
    return error_cls(
        message or f"Remote {operation} failed",
        operation=operation,
        backend=backend,
        cause=cause,
    )


class RemoteNoteRepository(NoteRepository):
    """Note repository over a `RecordDatabase`."""

    name = "remote"

    def __init__(
        self,
        database: RecordDatabase,
        zone_name: str = DEFAULT_ZONE_NAME,
        record_type: str = DEFAULT_RECORD_TYPE,
        search_limit: int = 0,
        timeout: Optional[float] = None,
    ):
        """Initialize the repository.

        Args:
            database: The account's private record database.
            zone_name: Zone holding note records. Created by `setup()`.
            record_type: Record type used for notes.
            search_limit: Maximum records a search returns (0 = unlimited).
            timeout: Seconds to wait for any single operation. None waits
                indefinitely.
        """
        self.database = database
        self.zone_id = ZoneID(zone_name)
        self.record_type = record_type
        self.search_limit = search_limit
        self.timeout = timeout
        self._closed = False
        self._pending: Set[asyncio.Future] = set()
        # Runs on close() or when the repository is garbage collected
        self._finalizer = weakref.finalize(
            self, _fail_pending, self._pending, self.name
        )

    @classmethod
    def from_config(
        cls, database: RecordDatabase, cfg: NotesConfig
    ) -> "RemoteNoteRepository":
        return cls(
            database,
            zone_name=cfg.zone_name,
            record_type=cfg.record_type,
            search_limit=cfg.search_fetch_limit,
            timeout=cfg.network_timeout,
        )

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending_operations(self) -> int:
        return sum(1 for f in self._pending if not f.done())

    def close(self) -> None:
        """Fail everything in flight and refuse new operations."""
        if self._closed:
            return
        self._closed = True
        pending = self.pending_operations
        self._finalizer()
        logger.info(f"Remote repository closed ({pending} operations abandoned)")

    # =========================================================================
    # Future plumbing
    # =========================================================================

    def _begin(self, operation: str) -> asyncio.Future:
        if self._closed:
            raise ContextUnavailableError(self.name, operation)
        future = asyncio.get_running_loop().create_future()
        self._pending.add(future)
        future.add_done_callback(self._pending.discard)
        logger.debug(f"remote {operation}")
        return future

    def _settler(
        self, future: asyncio.Future, operation: str
    ) -> Callable[..., None]:
        """Build a thread-safe `settle(result=..., error=...)` for `future`.

        The returned callable keeps only a weak reference to the
        repository, so callbacks parked in the database cannot keep it
        alive.
        """
        loop = future.get_loop()
        owner = weakref.ref(self)
        backend = self.name

        def _apply(result: Any, error: Optional[BaseException]) -> None:
            if future.done():
                return
            repository = owner()
            if repository is None or repository._closed:
                future.set_exception(ContextUnavailableError(backend, operation))
            elif error is not None:
                future.set_exception(error)
            else:
                future.set_result(result)

        def settle(result: Any = None, error: Optional[BaseException] = None) -> None:
            try:
                loop.call_soon_threadsafe(_apply, result, error)
            except RuntimeError:
                logger.debug(f"Dropping late remote {operation} callback; loop closed")

        return settle

    def _alive(self) -> Callable[[], bool]:
        """Weak liveness check for multi-step callbacks."""
        owner = weakref.ref(self)

        def alive() -> bool:
            repository = owner()
            return repository is not None and not repository._closed

        return alive

    async def _await(
        self,
        future: asyncio.Future,
        operation: str,
        error_cls: Type[StoreOperationError],
    ) -> Any:
        try:
            return await asyncio.wait_for(future, self.timeout)
        except asyncio.TimeoutError as e:
            logger.warning(f"Remote {operation} timed out after {self.timeout}s")
            raise error_cls(
                f"Remote {operation} timed out",
                operation=operation,
                backend=self.name,
                cause=e,
            ) from e
        except StoreOperationError as e:
            logger.error(f"Remote {operation} failed: {e}")
            raise

    def _lookup_query(self, note_id: uuid.UUID) -> Query:
        return Query(self.record_type, Equals(FIELD_ID, str(note_id)))

    async def _run_query(
        self,
        operation: str,
        query: Query,
        error_cls: Type[StoreOperationError],
        limit: int = 0,
    ) -> List[Note]:
        """Stream `query` and collect the decodable matches."""
        future = self._begin(operation)
        settle = self._settler(future, operation)
        backend = self.name
        notes: List[Note] = []

        def record_matched(
            record_id: RecordID, record: Optional[Record], error: Optional[Exception]
        ) -> None:
            if error is not None or record is None:
                logger.warning(
                    f"Remote {operation}: record {record_id.record_name} failed: {error}"
                )
                return
            note = record_to_note(record)
            if note is None:
                logger.warning(
                    f"Remote {operation}: skipping malformed record "
                    f"{record_id.record_name}"
                )
                return
            notes.append(note)

        def query_completed(error: Optional[Exception]) -> None:
            if error is not None:
                settle(error=_failure(error_cls, operation, backend, error))
            else:
                settle(result=list(notes))

        self.database.add(
            QueryOperation(
                query=query,
                zone_id=self.zone_id,
                results_limit=limit,
                record_matched=record_matched,
                query_completed=query_completed,
            )
        )
        return await self._await(future, operation, error_cls)

    # =========================================================================
    # NoteRepository
    # =========================================================================

    async def fetch_all(self) -> List[Note]:
        query = Query(self.record_type, TruePredicate(), NEWEST_FIRST)
        return await self._run_query("fetch_all", query, FetchFailedError)

    async def search(self, query: str) -> List[Note]:
        predicate = AnyOf(Contains(FIELD_TITLE, query), Contains(FIELD_CONTENT, query))
        return await self._run_query(
            "search",
            Query(self.record_type, predicate, NEWEST_FIRST),
            SearchFailedError,
            limit=self.search_limit,
        )

    async def create(self, note: Note) -> Note:
        operation = "create"
        future = self._begin(operation)
        settle = self._settler(future, operation)
        backend = self.name

        record = Record(self.record_type, RecordID(zone_id=self.zone_id))
        record.fields.update(note_to_fields(note))

        def saved(saved_record: Optional[Record], error: Optional[Exception]) -> None:
            if error is not None:
                settle(error=_failure(SaveFailedError, operation, backend, error))
                return
            stored = record_to_note(saved_record) if saved_record else None
            if stored is None:
                settle(
                    error=_failure(
                        SaveFailedError,
                        operation,
                        backend,
                        None,
                        "Remote store returned an unreadable note record",
                    )
                )
                return
            settle(result=stored)

        self.database.save(record, saved)
        return await self._await(future, operation, SaveFailedError)

    async def update(self, note: Note) -> Note:
        operation = "update"
        future = self._begin(operation)
        settle = self._settler(future, operation)
        alive = self._alive()
        backend = self.name
        database = self.database

        def saved(saved_record: Optional[Record], error: Optional[Exception]) -> None:
            if error is not None:
                settle(error=_failure(SaveFailedError, operation, backend, error))
                return
            stored = record_to_note(saved_record) if saved_record else None
            if stored is None:
                settle(
                    error=_failure(
                        SaveFailedError,
                        operation,
                        backend,
                        None,
                        "Remote store returned an unreadable note record",
                    )
                )
                return
            settle(result=stored)

        def found(records: Optional[List[Record]], error: Optional[Exception]) -> None:
            if error is not None:
                settle(error=_failure(SaveFailedError, operation, backend, error))
                return
            if not records:
                settle(error=NoteNotFoundError(note.id))
                return
            if not alive():
                settle()
                return
            record = records[0]
            record[FIELD_TITLE] = note.title
            record[FIELD_CONTENT] = note.content
            record[FIELD_UPDATED_AT] = _refreshed_timestamp(record.get(FIELD_CREATED_AT))
            database.save(record, saved)

        database.perform(self._lookup_query(note.id), self.zone_id, found)
        return await self._await(future, operation, SaveFailedError)

    async def delete(self, note: Note) -> None:
        operation = "delete"
        future = self._begin(operation)
        settle = self._settler(future, operation)
        alive = self._alive()
        backend = self.name
        database = self.database

        def deleted(record_id: Optional[RecordID], error: Optional[Exception]) -> None:
            if error is not None:
                settle(error=_failure(DeleteFailedError, operation, backend, error))
            else:
                settle()

        def found(records: Optional[List[Record]], error: Optional[Exception]) -> None:
            if error is not None:
                settle(error=_failure(DeleteFailedError, operation, backend, error))
                return
            if not records:
                settle(error=NoteNotFoundError(note.id))
                return
            if not alive():
                settle()
                return
            database.delete(records[0].record_id, deleted)

        database.perform(self._lookup_query(note.id), self.zone_id, found)
        await self._await(future, operation, DeleteFailedError)

    async def get_by_id(self, note_id: uuid.UUID) -> Optional[Note]:
        operation = "get_by_id"
        future = self._begin(operation)
        settle = self._settler(future, operation)
        backend = self.name

        def found(records: Optional[List[Record]], error: Optional[Exception]) -> None:
            if error is not None:
                settle(error=_failure(FetchFailedError, operation, backend, error))
                return
            settle(result=record_to_note(records[0]) if records else None)

        self.database.perform(self._lookup_query(note_id), self.zone_id, found)
        return await self._await(future, operation, FetchFailedError)

    # =========================================================================
    # Account and zone lifecycle
    # =========================================================================

    async def setup(self) -> None:
        """Create the notes zone. Run once per account before relying on
        the other operations; repeating it is harmless."""
        operation = "setup"
        future = self._begin(operation)
        settle = self._settler(future, operation)
        backend = self.name

        def zone_saved(zone: Optional[RecordZone], error: Optional[Exception]) -> None:
            if error is not None:
                settle(error=_failure(SaveFailedError, operation, backend, error))
            else:
                settle()

        self.database.save_zone(RecordZone(self.zone_id), zone_saved)
        await self._await(future, operation, SaveFailedError)
        logger.info(f"Remote zone '{self.zone_id.zone_name}' ready")

    async def account_status(self) -> AccountStatus:
        """Read the availability of the backing account."""
        operation = "account_status"
        future = self._begin(operation)
        settle = self._settler(future, operation)
        backend = self.name

        def reported(status: Optional[AccountStatus], error: Optional[Exception]) -> None:
            if error is not None:
                settle(error=_failure(FetchFailedError, operation, backend, error))
            else:
                settle(result=status or AccountStatus.COULD_NOT_DETERMINE)

        self.database.account_status(reported)
        return await self._await(future, operation, FetchFailedError)


def _refreshed_timestamp(created_at: Any) -> datetime.datetime:
    """Now, but never earlier than the record's creation time."""
    now = utc_now()
    if isinstance(created_at, datetime.datetime):
        return max(now, ensure_timezone_aware(created_at))
    return now
