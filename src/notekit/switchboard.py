"""Runtime switch between the local and remote note stores.

The switchboard owns the one mutable reference to the active repository.
Consumers keep the switchboard and read `service` whenever they need it;
every switch builds a new `NotesService`.
"""

import asyncio
import logging
from enum import Enum
from typing import Optional

from notekit.config import NotesConfig
from notekit.exceptions import AccountUnavailableError
from notekit.services.notes_service import NotesService
from notekit.storage.base import NoteRepository
from notekit.storage.local_repository import LocalNoteRepository, LocalStore
from notekit.storage.records import AccountStatus, RecordDatabase
from notekit.storage.remote_repository import RemoteNoteRepository

logger = logging.getLogger(__name__)


class StorageMode(str, Enum):
    """Which kind of store currently backs the service."""
    LOCAL = "local"
    REMOTE = "remote"


class RepositorySwitchboard:
    """Holds the active repository and hot-swaps it at runtime."""

    def __init__(self, local_store: LocalStore, cfg: Optional[NotesConfig] = None):
        """Start in local mode over `local_store`.

        Args:
            local_store: Store every local repository is bound to. The
                switchboard never closes it.
            cfg: Settings used to build remote repositories. Defaults to
                `NotesConfig()` read from the environment.
        """
        self.local_store = local_store
        self.cfg = cfg or NotesConfig()
        self._lock = asyncio.Lock()
        self._mode = StorageMode.LOCAL
        self._repository: NoteRepository = LocalNoteRepository(local_store)
        self._service = NotesService(self._repository)

    @classmethod
    def from_config(cls, cfg: NotesConfig) -> "RepositorySwitchboard":
        """Open the configured local store and start in local mode."""
        return cls(LocalStore.from_config(cfg), cfg)

    @property
    def mode(self) -> StorageMode:
        return self._mode

    @property
    def repository(self) -> NoteRepository:
        return self._repository

    @property
    def service(self) -> NotesService:
        return self._service

    def _remote_repository(self, database: RecordDatabase) -> RemoteNoteRepository:
        return RemoteNoteRepository.from_config(database, self.cfg)

    def _activate(self, mode: StorageMode, repository: NoteRepository) -> None:
        previous = self._repository
        self._mode = mode
        self._repository = repository
        self._service = NotesService(repository)
        if previous is not repository:
            previous.close()

    async def switch_to_remote(self, database: RecordDatabase) -> NotesService:
        """Make a remote repository over `database` the active one.

        The account must be available and the notes zone must be set up
        before anything is swapped. Calling this while already remote
        swaps in a fresh repository.

        Raises:
            AccountUnavailableError: If the account status is not AVAILABLE.
            FetchFailedError: If the account status cannot be read.
            SaveFailedError: If the notes zone cannot be created.
        """
        async with self._lock:
            repository = self._remote_repository(database)
            try:
                status = await repository.account_status()
                if status != AccountStatus.AVAILABLE:
                    raise AccountUnavailableError(status)
                await repository.setup()
            except Exception as e:
                repository.close()
                logger.warning(
                    f"Switch to remote failed, staying {self._mode.value}: {e}"
                )
                raise
            previous = self._mode
            self._activate(StorageMode.REMOTE, repository)
            logger.info(f"Storage switched: {previous.value} -> remote")
            return self._service

    async def switch_to_local(self) -> NotesService:
        """Make a fresh local repository over the same store the active one."""
        async with self._lock:
            previous = self._mode
            self._activate(StorageMode.LOCAL, LocalNoteRepository(self.local_store))
            logger.info(f"Storage switched: {previous.value} -> local")
            return self._service

    async def check_remote_availability(self, database: RecordDatabase) -> AccountStatus:
        """Read the remote account status without switching."""
        repository = self._remote_repository(database)
        try:
            return await repository.account_status()
        finally:
            repository.close()

    def close(self) -> None:
        """Close the active repository. The local store stays open."""
        self._repository.close()
        logger.debug(f"Switchboard closed in {self._mode.value} mode")
