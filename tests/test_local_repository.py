"""Tests for the SQLite-backed local store and repository."""
import asyncio
import threading
import uuid
from datetime import timedelta

import pytest
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from notekit.exceptions import (
    ContextUnavailableError,
    NoteNotFoundError,
    SaveFailedError,
    SearchFailedError,
)
from notekit.models.schema import Note, utc_now
from notekit.storage.local_repository import LocalNoteRepository, LocalStore


def _note(title, content="", updated_offset=0):
    created = utc_now() - timedelta(hours=1)
    return Note(
        title=title,
        content=content,
        created_at=created,
        updated_at=created + timedelta(seconds=updated_offset),
    )


class TestLocalStore:
    """Tests for the store handle itself."""

    def test_in_memory_is_volatile(self, local_store):
        assert local_store.is_volatile
        assert not local_store.closed

    @pytest.mark.parametrize("url", ["sqlite://", "sqlite:///:memory:"])
    def test_memory_urls_are_volatile(self, url):
        store = LocalStore.open(url)
        try:
            assert store.is_volatile
        finally:
            store.close()

    @pytest.mark.anyio
    async def test_in_memory_stores_are_isolated(self):
        first, second = LocalStore.in_memory(), LocalStore.in_memory()
        try:
            await LocalNoteRepository(first).create(_note("only in first"))
            assert await first.count() == 1
            assert await second.count() == 0
        finally:
            first.close()
            second.close()

    @pytest.mark.anyio
    async def test_reset_removes_everything(self, local_store, local_repository):
        for i in range(3):
            await local_repository.create(_note(f"note {i}"))
        assert await local_store.reset() == 3
        assert await local_repository.fetch_all() == []

    @pytest.mark.anyio
    async def test_file_store_survives_reopen(self, test_config):
        store = LocalStore.from_config(test_config)
        note = _note("persisted", "body")
        try:
            await LocalNoteRepository(store).create(note)
        finally:
            store.close()

        reopened = LocalStore.from_config(test_config)
        try:
            assert not reopened.is_volatile
            assert await LocalNoteRepository(reopened).get_by_id(note.id) == note
        finally:
            reopened.close()

    @pytest.mark.anyio
    async def test_closed_store_rejects_work(self, local_store, local_repository):
        local_store.close()
        local_store.close()
        with pytest.raises(ContextUnavailableError):
            await local_repository.fetch_all()

    @pytest.mark.anyio
    async def test_runs_off_the_event_loop_thread(self, local_store):
        loop_thread = threading.current_thread().name
        worker = await local_store.run("thread_name", lambda session: threading.current_thread().name)
        assert worker != loop_thread
        assert worker.startswith("notekit-local-store")


class TestLocalNoteRepository:
    """Tests for the repository contract over SQLite."""

    @pytest.mark.anyio
    async def test_create_then_fetch(self, local_repository):
        note = _note("Hello", "world")
        stored = await local_repository.create(note)
        assert stored == note
        assert await local_repository.fetch_all() == [note]

    @pytest.mark.anyio
    async def test_create_keeps_callers_timestamps(self, local_repository):
        note = _note("stamped", updated_offset=42)
        stored = await local_repository.create(note)
        assert stored.updated_at == note.updated_at
        assert stored.created_at == note.created_at

    @pytest.mark.anyio
    async def test_duplicate_id_is_a_save_failure(self, local_repository):
        note = _note("first")
        await local_repository.create(note)
        with pytest.raises(SaveFailedError) as exc_info:
            await local_repository.create(note)
        assert exc_info.value.cause is not None
        assert exc_info.value.details["backend"] == "local"

    @pytest.mark.anyio
    async def test_fetch_all_newest_first(self, local_repository):
        for offset in (10, 30, 20):
            await local_repository.create(_note(f"n{offset}", updated_offset=offset))
        titles = [n.title for n in await local_repository.fetch_all()]
        assert titles == ["n30", "n20", "n10"]

    @pytest.mark.anyio
    async def test_update_refreshes_updated_at(self, local_repository):
        note = await local_repository.create(_note("draft", "v1"))
        # The caller's updated_at is ignored; the store clock wins
        stale = note.revised("final", "v2", updated_at=note.created_at)
        updated = await local_repository.update(stale)
        assert updated.id == note.id
        assert updated.title == "final"
        assert updated.content == "v2"
        assert updated.created_at == note.created_at
        assert updated.updated_at > note.updated_at

    @pytest.mark.anyio
    async def test_update_missing_note(self, local_repository):
        with pytest.raises(NoteNotFoundError):
            await local_repository.update(_note("never stored"))

    @pytest.mark.anyio
    async def test_delete(self, local_repository):
        keep = await local_repository.create(_note("keep"))
        gone = await local_repository.create(_note("gone"))
        await local_repository.delete(gone)
        assert await local_repository.fetch_all() == [keep]
        assert await local_repository.get_by_id(gone.id) is None

    @pytest.mark.anyio
    async def test_delete_missing_note(self, local_repository):
        note = await local_repository.create(_note("once"))
        await local_repository.delete(note)
        with pytest.raises(NoteNotFoundError):
            await local_repository.delete(note)

    @pytest.mark.anyio
    async def test_get_by_id(self, local_repository):
        note = await local_repository.create(_note("find me"))
        assert await local_repository.get_by_id(note.id) == note
        assert await local_repository.get_by_id(uuid.uuid4()) is None

    @pytest.mark.anyio
    async def test_search_is_case_insensitive(self, local_repository):
        await local_repository.create(_note("Swift Programming"))
        await local_repository.create(_note("Gardening"))
        for query in ("swift", "SWIFT", "Programming"):
            titles = [n.title for n in await local_repository.search(query)]
            assert titles == ["Swift Programming"]

    @pytest.mark.anyio
    async def test_search_matches_title_or_content(self, local_repository):
        await local_repository.create(_note("alpha", "nothing here", updated_offset=1))
        await local_repository.create(_note("nothing", "beta alpha", updated_offset=2))
        await local_repository.create(_note("other", "other"))
        titles = [n.title for n in await local_repository.search("ALPHA")]
        assert titles == ["nothing", "alpha"]

    @pytest.mark.anyio
    async def test_search_folds_non_ascii_case(self, local_repository):
        await local_repository.create(_note("ÉCOLE Notes"))
        assert len(await local_repository.search("école")) == 1

    @pytest.mark.anyio
    async def test_search_treats_wildcards_literally(self, local_repository):
        await local_repository.create(_note("100% done"))
        await local_repository.create(_note("1000 done"))
        assert [n.title for n in await local_repository.search("100%")] == ["100% done"]
        assert await local_repository.search("_") == []

    @pytest.mark.anyio
    async def test_empty_search_matches_everything(self, local_repository):
        await local_repository.create(_note("a"))
        await local_repository.create(_note("b"))
        assert len(await local_repository.search("")) == 2

    @pytest.mark.anyio
    async def test_store_errors_are_mapped(self, local_store, local_repository):
        def _drop(session):
            session.execute(text("DROP TABLE notes"))
            session.commit()

        await local_store.run("drop", _drop)
        with pytest.raises(SearchFailedError) as exc_info:
            await local_repository.search("x")
        assert isinstance(exc_info.value.cause, OperationalError)

    @pytest.mark.anyio
    async def test_concurrent_creates_serialize(self, local_store, local_repository):
        other = LocalNoteRepository(local_store)
        notes = [_note(f"note {i}") for i in range(25)]
        results = await asyncio.gather(
            *[
                (local_repository if i % 2 else other).create(note)
                for i, note in enumerate(notes)
            ]
        )
        assert len(results) == 25
        stored = await local_repository.fetch_all()
        assert len(stored) == 25
        assert len({n.id for n in stored}) == 25

    @pytest.mark.anyio
    async def test_closed_repository_leaves_store_open(self, local_store, local_repository):
        local_repository.close()
        assert local_repository.closed
        with pytest.raises(ContextUnavailableError):
            await local_repository.fetch_all()
        assert await LocalNoteRepository(local_store).fetch_all() == []
