"""Tests for the record-database-backed remote repository."""
import asyncio
import contextlib
import gc
import uuid
import weakref
from datetime import timedelta

import pytest

from notekit.exceptions import (
    ContextUnavailableError,
    DeleteFailedError,
    FetchFailedError,
    NoteNotFoundError,
    SaveFailedError,
    SearchFailedError,
)
from notekit.models.schema import Note, utc_now
from notekit.storage.records import (
    AccountStatus,
    MemoryRecordDatabase,
    NetworkUnavailableError,
    NotAuthenticatedError,
    QuotaExceededError,
    Record,
    RecordID,
    ZoneID,
    ZoneNotFoundError,
)
from notekit.storage.remote_repository import RemoteNoteRepository, record_to_note

ZONE = ZoneID("NotesZone")


def _note(title, content="", updated_offset=0):
    created = utc_now() - timedelta(hours=1)
    return Note(
        title=title,
        content=content,
        created_at=created,
        updated_at=created + timedelta(seconds=updated_offset),
    )


@pytest.fixture
async def repository(remote_repository, anyio_backend):
    """Remote repository with its zone already created."""
    await remote_repository.setup()
    return remote_repository


class TestRemoteSetup:
    """Zone lifecycle and account status."""

    @pytest.mark.anyio
    async def test_setup_creates_zone(self, remote_repository, record_database):
        await remote_repository.setup()
        await remote_repository.setup()
        assert ZONE in record_database.zones()

    @pytest.mark.anyio
    async def test_operations_before_setup_fail(self, remote_repository):
        with pytest.raises(FetchFailedError) as exc_info:
            await remote_repository.fetch_all()
        assert isinstance(exc_info.value.cause, ZoneNotFoundError)

    @pytest.mark.anyio
    async def test_setup_failure(self, remote_repository, record_database):
        record_database.fail_next("save_zone", NotAuthenticatedError("signed out"))
        with pytest.raises(SaveFailedError) as exc_info:
            await remote_repository.setup()
        assert isinstance(exc_info.value.cause, NotAuthenticatedError)

    @pytest.mark.anyio
    async def test_account_status(self, remote_repository, record_database):
        assert await remote_repository.account_status() == AccountStatus.AVAILABLE
        record_database.status = AccountStatus.NO_ACCOUNT
        assert await remote_repository.account_status() == AccountStatus.NO_ACCOUNT
        record_database.fail_next("account_status", NetworkUnavailableError("offline"))
        with pytest.raises(FetchFailedError):
            await remote_repository.account_status()

    def test_from_config(self, record_database, test_config):
        repository = RemoteNoteRepository.from_config(record_database, test_config)
        try:
            assert repository.zone_id.zone_name == test_config.zone_name
            assert repository.search_limit == test_config.search_fetch_limit
            assert repository.timeout == test_config.network_timeout
        finally:
            repository.close()


class TestRemoteCrud:
    """The repository contract over the record database."""

    @pytest.mark.anyio
    async def test_create_then_fetch(self, repository):
        note = _note("Hello", "world")
        stored = await repository.create(note)
        assert stored == note
        assert await repository.fetch_all() == [note]

    @pytest.mark.anyio
    async def test_wire_shape(self, repository, record_database):
        note = await repository.create(_note("wire", "shape"))
        [record] = record_database.records(ZONE)
        assert record.record_type == "Note"
        assert set(record.fields) == {"id", "title", "content", "createdAt", "updatedAt"}
        assert record["id"] == str(note.id)
        # The native record name is independent of the domain id
        assert record.record_id.record_name != str(note.id).upper()

    @pytest.mark.anyio
    async def test_fetch_all_newest_first(self, repository):
        for offset in (10, 30, 20):
            await repository.create(_note(f"n{offset}", updated_offset=offset))
        assert [n.title for n in await repository.fetch_all()] == ["n30", "n20", "n10"]

    @pytest.mark.anyio
    async def test_update(self, repository):
        note = await repository.create(_note("draft", "v1"))
        updated = await repository.update(note.revised("final", "v2", updated_at=note.created_at))
        assert updated.id == note.id
        assert (updated.title, updated.content) == ("final", "v2")
        assert updated.created_at == note.created_at
        assert updated.updated_at > note.updated_at
        assert await repository.get_by_id(note.id) == updated

    @pytest.mark.anyio
    async def test_update_and_delete_missing_note(self, repository):
        ghost = _note("ghost")
        with pytest.raises(NoteNotFoundError):
            await repository.update(ghost)
        with pytest.raises(NoteNotFoundError):
            await repository.delete(ghost)

    @pytest.mark.anyio
    async def test_delete(self, repository, record_database):
        keep = await repository.create(_note("keep"))
        gone = await repository.create(_note("gone"))
        await repository.delete(gone)
        assert await repository.fetch_all() == [keep]
        assert len(record_database.records(ZONE)) == 1
        with pytest.raises(NoteNotFoundError):
            await repository.delete(gone)

    @pytest.mark.anyio
    async def test_get_by_id(self, repository):
        note = await repository.create(_note("find me"))
        assert await repository.get_by_id(note.id) == note
        assert await repository.get_by_id(uuid.uuid4()) is None

    @pytest.mark.anyio
    async def test_search(self, repository):
        await repository.create(_note("Swift Programming", updated_offset=2))
        await repository.create(_note("Recipes", "swift dinners", updated_offset=1))
        await repository.create(_note("Gardening"))
        for query in ("swift", "SWIFT"):
            titles = [n.title for n in await repository.search(query)]
            assert titles == ["Swift Programming", "Recipes"]
        assert await repository.search("kotlin") == []

    @pytest.mark.anyio
    async def test_search_limit(self, record_database):
        repository = RemoteNoteRepository(record_database, search_limit=2, timeout=5.0)
        try:
            await repository.setup()
            for i in range(4):
                await repository.create(_note(f"match {i}", updated_offset=i))
            assert [n.title for n in await repository.search("match")] == ["match 3", "match 2"]
            assert len(await repository.fetch_all()) == 4
        finally:
            repository.close()

    @pytest.mark.anyio
    async def test_malformed_records_are_skipped(self, repository, record_database):
        note = await repository.create(_note("good"))
        broken = Record("Note", RecordID(zone_id=ZONE), {"title": "no id"})
        done = asyncio.get_running_loop().create_future()
        loop = asyncio.get_running_loop()
        record_database.save(
            broken, lambda record, error: loop.call_soon_threadsafe(done.set_result, error)
        )
        assert await done is None
        assert await repository.fetch_all() == [note]

    def test_record_to_note_rejects_bad_values(self):
        record = Record("Note", RecordID(zone_id=ZONE))
        record.fields.update(
            id="not-a-uuid", title="t", content="", createdAt=utc_now(), updatedAt=utc_now()
        )
        assert record_to_note(record) is None


class TestRemoteFailures:
    """Transport errors are folded into the typed failures."""

    @pytest.mark.anyio
    async def test_create_failure(self, repository, record_database):
        record_database.fail_next("save", QuotaExceededError("quota", retry_after=30))
        with pytest.raises(SaveFailedError) as exc_info:
            await repository.create(_note("x"))
        assert isinstance(exc_info.value.cause, QuotaExceededError)
        assert exc_info.value.details["backend"] == "remote"
        assert await repository.fetch_all() == []

    @pytest.mark.anyio
    async def test_update_lookup_failure(self, repository, record_database):
        note = await repository.create(_note("x"))
        record_database.fail_next("perform", NetworkUnavailableError("offline"))
        with pytest.raises(SaveFailedError):
            await repository.update(note)

    @pytest.mark.anyio
    async def test_delete_failure(self, repository, record_database):
        note = await repository.create(_note("x"))
        record_database.fail_next("delete", NotAuthenticatedError("expired"))
        with pytest.raises(DeleteFailedError):
            await repository.delete(note)
        assert await repository.get_by_id(note.id) == note

    @pytest.mark.anyio
    async def test_query_failures(self, repository, record_database):
        record_database.fail_next("add", NetworkUnavailableError("offline"), times=2)
        with pytest.raises(FetchFailedError):
            await repository.fetch_all()
        with pytest.raises(SearchFailedError):
            await repository.search("x")
        record_database.fail_next("perform", NetworkUnavailableError("offline"))
        with pytest.raises(FetchFailedError):
            await repository.get_by_id(uuid.uuid4())

    @pytest.mark.anyio
    async def test_timeout(self, repository, record_database):
        repository.timeout = 0.05
        record_database.suspend()
        try:
            with pytest.raises(FetchFailedError) as exc_info:
                await repository.fetch_all()
            assert isinstance(exc_info.value.cause, asyncio.TimeoutError)
        finally:
            record_database.resume()


class TestEventualConsistency:
    @pytest.mark.anyio
    async def test_new_records_appear_after_delay(self):
        now = [0.0]
        database = MemoryRecordDatabase(visibility_delay=10.0, clock=lambda: now[0])
        repository = RemoteNoteRepository(database, timeout=5.0)
        try:
            await repository.setup()
            note = await repository.create(_note("eventually"))
            assert note.title == "eventually"
            assert await repository.fetch_all() == []
            with pytest.raises(NoteNotFoundError):
                await repository.update(note)
            now[0] = 10.0
            assert await repository.fetch_all() == [note]
        finally:
            repository.close()
            database.close()


class TestRemoteLifetime:
    """Teardown while operations are pending."""

    @pytest.mark.anyio
    async def test_close_fails_pending_operations(self, repository, record_database):
        record_database.suspend()
        try:
            pending = asyncio.ensure_future(repository.fetch_all())
            while repository.pending_operations == 0:
                await asyncio.sleep(0.01)
            repository.close()
            with pytest.raises(ContextUnavailableError):
                await pending
        finally:
            record_database.resume()
        assert repository.pending_operations == 0

    @pytest.mark.anyio
    async def test_late_callbacks_are_dropped(self, repository, record_database):
        record_database.suspend()
        pending = asyncio.ensure_future(repository.create(_note("late")))
        while repository.pending_operations == 0:
            await asyncio.sleep(0.01)
        repository.close()
        with pytest.raises(ContextUnavailableError):
            await pending
        record_database.resume()
        # Let the held save complete; its callback must not raise anywhere
        await asyncio.sleep(0.1)
        assert len(record_database.records(ZONE)) == 1

    @pytest.mark.anyio
    async def test_operations_after_close(self, repository):
        repository.close()
        assert repository.closed
        with pytest.raises(ContextUnavailableError):
            await repository.fetch_all()
        with pytest.raises(ContextUnavailableError):
            await repository.create(_note("x"))

    @pytest.mark.anyio
    async def test_collected_repository_fails_pending(self, record_database):
        repository = RemoteNoteRepository(record_database)
        future = repository._begin("fetch_all")
        del repository
        gc.collect()
        with pytest.raises(ContextUnavailableError):
            await future

    @pytest.mark.anyio
    @pytest.mark.parametrize(
        "start",
        [
            lambda repository: repository.fetch_all(),
            lambda repository: repository.search("milk"),
            lambda repository: repository.update(_note("parked")),
            lambda repository: repository.delete(_note("parked")),
        ],
        ids=["fetch_all", "search", "update", "delete"],
    )
    async def test_parked_callbacks_do_not_keep_repository_alive(
        self, record_database, start
    ):
        repository = RemoteNoteRepository(record_database)
        await repository.setup()
        record_database.suspend()
        try:
            task = asyncio.ensure_future(start(repository))
            while repository.pending_operations == 0:
                await asyncio.sleep(0.01)
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            ref = weakref.ref(repository)
            del repository, task
            gc.collect()
            assert ref() is None
        finally:
            record_database.resume()
