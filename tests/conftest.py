"""Common test fixtures for notekit."""

import pytest

from notekit.config import NotesConfig
from notekit.services.notes_service import NotesService
from notekit.storage.local_repository import LocalNoteRepository, LocalStore
from notekit.storage.records import MemoryRecordDatabase
from notekit.storage.remote_repository import RemoteNoteRepository
from notekit.switchboard import RepositorySwitchboard
from tests.fakes import FakeNoteRepository


@pytest.fixture(params=["asyncio"])
def anyio_backend(request):
    """Restrict anyio tests to asyncio only (trio is not installed)."""
    return request.param


@pytest.fixture
def test_config(tmp_path):
    """Configuration rooted in a temporary directory."""
    return NotesConfig(
        base_dir=tmp_path,
        database_path=tmp_path / "db" / "notes.db",
        remote_dir=tmp_path / "remote",
        log_dir=tmp_path / "logs",
        network_timeout=5.0,
        search_fetch_limit=100,
    )


@pytest.fixture
def local_store():
    """Volatile, isolated local store."""
    store = LocalStore.in_memory()
    yield store
    store.close()


@pytest.fixture
def local_repository(local_store):
    return LocalNoteRepository(local_store)


@pytest.fixture
def notes_service(local_repository):
    return NotesService(local_repository)


@pytest.fixture
def fake_repository():
    return FakeNoteRepository()


@pytest.fixture
def record_database():
    """In-process record database with immediate consistency."""
    database = MemoryRecordDatabase()
    yield database
    database.close()


@pytest.fixture
def remote_repository(record_database):
    """Remote repository without a zone; tests call setup() themselves."""
    repository = RemoteNoteRepository(record_database, timeout=5.0)
    yield repository
    repository.close()


@pytest.fixture
def switchboard(local_store, test_config):
    board = RepositorySwitchboard(local_store, test_config)
    yield board
    board.close()
