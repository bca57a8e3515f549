"""Client surface of the remote record database.

The remote store is a per-account private database split into zones.
Records are typed bags of fields addressed by a store-assigned
`RecordID`. All operations are callback based: they return immediately
and report back from the client's own network thread, the way a long
lived sync session does.

Two implementations ship with notekit:

- `MemoryRecordDatabase`: in-process, with knobs for latency, eventual
  consistency, account status and fault injection.
- `FileRecordDatabase`: the same, persisted as one JSON file per record.
"""

import datetime
import json
import logging
import os
import threading
import time
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from notekit.models.schema import utc_now
from notekit.utils import fold_text

logger = logging.getLogger(__name__)

DEFAULT_OWNER = "__defaultOwner__"


# =============================================================================
# Transport errors
# =============================================================================


class RemoteStoreError(Exception):
    """Base for errors reported by the record database itself.

    Attributes:
        retry_after: Seconds the server asked the client to wait, if any.
    """

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class NetworkUnavailableError(RemoteStoreError):
    """The database could not be reached."""


class NotAuthenticatedError(RemoteStoreError):
    """The account's credentials are missing or expired."""


class QuotaExceededError(RemoteStoreError):
    """The account is out of storage or has been rate limited."""


class ZoneNotFoundError(RemoteStoreError):
    """The operation targets a zone that was never created."""


class UnknownItemError(RemoteStoreError):
    """The operation targets a record that does not exist."""


class ServerRecordChangedError(RemoteStoreError):
    """The record changed on the server since the client fetched it."""


# =============================================================================
# Identity and records
# =============================================================================


@dataclass(frozen=True)
class ZoneID:
    zone_name: str
    owner_name: str = DEFAULT_OWNER


DEFAULT_ZONE = ZoneID("_defaultZone")


@dataclass(frozen=True)
class RecordZone:
    zone_id: ZoneID


def _new_record_name() -> str:
    return str(uuid.uuid4()).upper()


@dataclass(frozen=True)
class RecordID:
    """Store-native record identity, unrelated to any domain id."""

    record_name: str = field(default_factory=_new_record_name)
    zone_id: ZoneID = DEFAULT_ZONE


@dataclass
class Record:
    """A typed bag of fields.

    `modified_at` and `change_tag` are set by the server on save; a record
    that carries a change tag is only accepted if the server copy still
    has the same tag.
    """

    record_type: str
    record_id: RecordID = field(default_factory=RecordID)
    fields: Dict[str, Any] = field(default_factory=dict)
    modified_at: Optional[datetime.datetime] = None
    change_tag: Optional[str] = None

    def __getitem__(self, key: str) -> Any:
        return self.fields[key]

    def __setitem__(self, key: str, value: Any) -> None:
        self.fields[key] = value

    def get(self, key: str, default: Any = None) -> Any:
        return self.fields.get(key, default)

    def copy(self) -> "Record":
        return Record(
            record_type=self.record_type,
            record_id=self.record_id,
            fields=dict(self.fields),
            modified_at=self.modified_at,
            change_tag=self.change_tag,
        )


# =============================================================================
# Queries
# =============================================================================


class Predicate(ABC):
    """Filter over records."""

    @abstractmethod
    def evaluate(self, record: Record) -> bool:
        """Return True if `record` matches."""


class TruePredicate(Predicate):
    """Matches every record."""

    def evaluate(self, record: Record) -> bool:
        return True

    def __repr__(self) -> str:
        return "TRUEPREDICATE"


@dataclass(frozen=True)
class Equals(Predicate):
    key: str
    value: Any

    def evaluate(self, record: Record) -> bool:
        return record.get(self.key) == self.value


@dataclass(frozen=True)
class Contains(Predicate):
    """Case- and diacritic-insensitive substring match on a text field."""

    key: str
    value: str

    def evaluate(self, record: Record) -> bool:
        text = record.get(self.key)
        if not isinstance(text, str):
            return False
        return fold_text(self.value) in fold_text(text)


class AnyOf(Predicate):
    """OR of sub-predicates."""

    def __init__(self, *predicates: Predicate):
        if not predicates:
            raise ValueError("AnyOf needs at least one predicate")
        self.predicates: Tuple[Predicate, ...] = predicates

    def evaluate(self, record: Record) -> bool:
        return any(p.evaluate(record) for p in self.predicates)

    def __repr__(self) -> str:
        return " OR ".join(repr(p) for p in self.predicates)


@dataclass(frozen=True)
class SortDescriptor:
    key: str
    ascending: bool = True


@dataclass(frozen=True)
class Query:
    record_type: str
    predicate: Predicate = field(default_factory=TruePredicate)
    sort_descriptors: Tuple[SortDescriptor, ...] = ()

    def apply(self, records: Sequence[Record]) -> List[Record]:
        """Filter and order `records` the way the server would."""
        matched = [
            r
            for r in records
            if r.record_type == self.record_type and self.predicate.evaluate(r)
        ]
        # Stable sorts applied last-key-first give multi-key ordering
        for descriptor in reversed(self.sort_descriptors):
            present = [r for r in matched if r.get(descriptor.key) is not None]
            missing = [r for r in matched if r.get(descriptor.key) is None]
            present.sort(
                key=lambda r: r.get(descriptor.key),
                reverse=not descriptor.ascending,
            )
            matched = present + missing
        return matched


RecordMatchedCallback = Callable[[RecordID, Optional[Record], Optional[Exception]], None]
QueryCompletedCallback = Callable[[Optional[Exception]], None]


@dataclass
class QueryOperation:
    """A streaming query.

    `record_matched` is called once per match, then `query_completed` once
    with None on success or the error that ended the query.
    """

    query: Query
    zone_id: ZoneID = DEFAULT_ZONE
    results_limit: int = 0
    record_matched: Optional[RecordMatchedCallback] = None
    query_completed: Optional[QueryCompletedCallback] = None


class AccountStatus(str, Enum):
    """Availability of the account backing the private database."""

    AVAILABLE = "available"
    NO_ACCOUNT = "no_account"
    RESTRICTED = "restricted"
    COULD_NOT_DETERMINE = "could_not_determine"
    TEMPORARILY_UNAVAILABLE = "temporarily_unavailable"


# =============================================================================
# Database interface
# =============================================================================


class RecordDatabase(ABC):
    """A private record database for one account."""

    @abstractmethod
    def add(self, operation: QueryOperation) -> None:
        """Start a streaming query operation."""

    @abstractmethod
    def perform(
        self,
        query: Query,
        zone_id: ZoneID,
        callback: Callable[[Optional[List[Record]], Optional[Exception]], None],
    ) -> None:
        """Run `query` and deliver all matches at once."""

    @abstractmethod
    def save(
        self,
        record: Record,
        callback: Callable[[Optional[Record], Optional[Exception]], None],
    ) -> None:
        """Insert or replace `record`; the callback gets the server copy."""

    @abstractmethod
    def delete(
        self,
        record_id: RecordID,
        callback: Callable[[Optional[RecordID], Optional[Exception]], None],
    ) -> None:
        """Delete the record with `record_id`."""

    @abstractmethod
    def save_zone(
        self,
        zone: RecordZone,
        callback: Callable[[Optional[RecordZone], Optional[Exception]], None],
    ) -> None:
        """Create `zone` if it does not exist yet."""

    @abstractmethod
    def account_status(
        self,
        callback: Callable[[Optional[AccountStatus], Optional[Exception]], None],
    ) -> None:
        """Report the account's availability."""

    def close(self) -> None:
        """Release the session. Later calls fail with NetworkUnavailableError."""


@dataclass
class _StoredRecord:
    record: Record
    visible_at: float


class MemoryRecordDatabase(RecordDatabase):
    """In-process record database.

    Callbacks run on a small worker pool standing in for the network
    session. Knobs:

    - `latency`: seconds each operation waits before completing.
    - `visibility_delay`: seconds before a saved record shows up in
      queries (eventual consistency). The save callback itself always
      gets the new record back immediately.
    - `status`: what `account_status` reports.
    - `fail_next(operation, error)`: make the next call of `operation`
      ("add", "perform", "save", "delete", "save_zone",
      "account_status") fail with `error`.
    - `suspend()` / `resume()`: hold all operations in flight.
    """

    def __init__(
        self,
        latency: float = 0.0,
        visibility_delay: float = 0.0,
        status: AccountStatus = AccountStatus.AVAILABLE,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.latency = latency
        self.visibility_delay = visibility_delay
        self.status = status
        self._clock = clock
        self._lock = threading.RLock()
        self._zones: Dict[ZoneID, Dict[str, _StoredRecord]] = {DEFAULT_ZONE: {}}
        self._faults: Dict[str, List[Exception]] = defaultdict(list)
        self._gate = threading.Event()
        self._gate.set()
        self._executor = ThreadPoolExecutor(
            max_workers=4, thread_name_prefix="notekit-records"
        )
        self._closed = False

    # -- test knobs -----------------------------------------------------------

    def fail_next(self, operation: str, error: Exception, times: int = 1) -> None:
        """Queue `error` for the next `times` calls of `operation`."""
        with self._lock:
            self._faults[operation].extend([error] * times)

    def suspend(self) -> None:
        """Hold every operation until `resume()` is called."""
        self._gate.clear()

    def resume(self) -> None:
        self._gate.set()

    def zones(self) -> List[ZoneID]:
        with self._lock:
            return list(self._zones)

    def records(self, zone_id: ZoneID = DEFAULT_ZONE) -> List[Record]:
        """Snapshot of every record in `zone_id`, visible or not."""
        with self._lock:
            return [s.record.copy() for s in self._zones.get(zone_id, {}).values()]

    # -- plumbing ---------------------------------------------------------------

    def _take_fault(self, operation: str) -> Optional[Exception]:
        with self._lock:
            queued = self._faults.get(operation)
            if queued:
                return queued.pop(0)
        return None

    def _dispatch(
        self,
        operation: str,
        work: Callable[[], None],
        fail: Callable[[Exception], None],
    ) -> None:
        """Run `work` on the session pool, or `fail` on fault or closure."""
        if self._closed:
            fail(NetworkUnavailableError("Record database session is closed"))
            return

        def _task() -> None:
            self._gate.wait()
            if self.latency:
                time.sleep(self.latency)
            try:
                fault = self._take_fault(operation)
                if fault is not None:
                    fail(fault)
                else:
                    work()
            except Exception:
                logger.exception(f"Record database callback for {operation} raised")

        try:
            self._executor.submit(_task)
        except RuntimeError:
            fail(NetworkUnavailableError("Record database session is closed"))

    def _zone(self, zone_id: ZoneID) -> Dict[str, _StoredRecord]:
        zone = self._zones.get(zone_id)
        if zone is None:
            raise ZoneNotFoundError(f"Zone '{zone_id.zone_name}' does not exist")
        return zone

    def _visible(self, zone_id: ZoneID) -> List[Record]:
        now = self._clock()
        with self._lock:
            zone = self._zone(zone_id)
            return [s.record.copy() for s in zone.values() if s.visible_at <= now]

    # -- persistence hooks (no-ops in memory) -----------------------------------

    def _persist_record(self, record: Record) -> None:
        pass

    def _remove_record(self, record_id: RecordID) -> None:
        pass

    def _persist_zone(self, zone_id: ZoneID) -> None:
        pass

    # -- RecordDatabase ---------------------------------------------------------

    def add(self, operation: QueryOperation) -> None:
        def complete(error: Optional[Exception]) -> None:
            if operation.query_completed is not None:
                operation.query_completed(error)

        def work() -> None:
            try:
                matched = operation.query.apply(self._visible(operation.zone_id))
            except RemoteStoreError as e:
                complete(e)
                return
            if operation.results_limit > 0:
                matched = matched[: operation.results_limit]
            if operation.record_matched is not None:
                for record in matched:
                    operation.record_matched(record.record_id, record, None)
            complete(None)

        self._dispatch("add", work, complete)

    def perform(self, query, zone_id, callback) -> None:
        def work() -> None:
            try:
                matched = query.apply(self._visible(zone_id))
            except RemoteStoreError as e:
                callback(None, e)
                return
            callback(matched, None)

        self._dispatch("perform", work, lambda e: callback(None, e))

    def save(self, record, callback) -> None:
        incoming = record.copy()

        def work() -> None:
            with self._lock:
                try:
                    zone = self._zone(incoming.record_id.zone_id)
                except ZoneNotFoundError as e:
                    callback(None, e)
                    return
                name = incoming.record_id.record_name
                existing = zone.get(name)
                if (
                    existing is not None
                    and incoming.change_tag is not None
                    and existing.record.change_tag != incoming.change_tag
                ):
                    callback(
                        None,
                        ServerRecordChangedError(
                            f"Record '{name}' was changed on the server"
                        ),
                    )
                    return
                incoming.modified_at = utc_now()
                incoming.change_tag = uuid.uuid4().hex[:8]
                if existing is not None:
                    # Replacing a record keeps its visibility
                    visible_at = existing.visible_at
                else:
                    visible_at = self._clock() + self.visibility_delay
                try:
                    self._persist_record(incoming)
                except OSError as e:
                    callback(None, RemoteStoreError(f"Failed to persist record: {e}"))
                    return
                zone[name] = _StoredRecord(incoming, visible_at)
                saved = incoming.copy()
            callback(saved, None)

        self._dispatch("save", work, lambda e: callback(None, e))

    def delete(self, record_id, callback) -> None:
        def work() -> None:
            with self._lock:
                try:
                    zone = self._zone(record_id.zone_id)
                except ZoneNotFoundError as e:
                    callback(None, e)
                    return
                if record_id.record_name not in zone:
                    callback(
                        None,
                        UnknownItemError(
                            f"Record '{record_id.record_name}' does not exist"
                        ),
                    )
                    return
                try:
                    self._remove_record(record_id)
                except OSError as e:
                    callback(None, RemoteStoreError(f"Failed to remove record: {e}"))
                    return
                del zone[record_id.record_name]
            callback(record_id, None)

        self._dispatch("delete", work, lambda e: callback(None, e))

    def save_zone(self, zone, callback) -> None:
        def work() -> None:
            with self._lock:
                if zone.zone_id not in self._zones:
                    try:
                        self._persist_zone(zone.zone_id)
                    except OSError as e:
                        callback(None, RemoteStoreError(f"Failed to create zone: {e}"))
                        return
                    self._zones[zone.zone_id] = {}
                    logger.info(f"Created record zone '{zone.zone_id.zone_name}'")
            callback(zone, None)

        self._dispatch("save_zone", work, lambda e: callback(None, e))

    def account_status(self, callback) -> None:
        self._dispatch(
            "account_status",
            lambda: callback(self.status, None),
            lambda e: callback(None, e),
        )

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._gate.set()
        self._executor.shutdown(wait=False)


# =============================================================================
# File-backed database
# =============================================================================

_DATETIME_TAG = "__datetime__"
_ZONE_MARKER = ".zone"


def _encode_value(value: Any) -> Any:
    if isinstance(value, datetime.datetime):
        return {_DATETIME_TAG: value.isoformat()}
    return value


def _decode_value(value: Any) -> Any:
    if isinstance(value, dict) and _DATETIME_TAG in value:
        return datetime.datetime.fromisoformat(value[_DATETIME_TAG])
    return value


def _atomic_write_json(path: Path, data: Dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    with tmp_path.open("w", encoding="utf-8") as f:
        json.dump(data, f, ensure_ascii=False, indent=2)
        f.flush()
        os.fsync(f.fileno())
    tmp_path.replace(path)


class FileRecordDatabase(MemoryRecordDatabase):
    """`MemoryRecordDatabase` persisted under a directory.

    Layout: `<root>/<zone name>/<record name>.json`, with an empty `.zone`
    marker per created zone. Everything on disk is visible at load time.
    """

    def __init__(self, root: Path, **kwargs: Any):
        super().__init__(**kwargs)
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self._load()

    def _zone_dir(self, zone_id: ZoneID) -> Path:
        return self.root / zone_id.zone_name

    def _record_path(self, record_id: RecordID) -> Path:
        return self._zone_dir(record_id.zone_id) / f"{record_id.record_name}.json"

    def _load(self) -> None:
        loaded = 0
        for marker in sorted(self.root.glob(f"*/{_ZONE_MARKER}")):
            zone_id = ZoneID(marker.parent.name)
            zone = self._zones.setdefault(zone_id, {})
            for path in sorted(marker.parent.glob("*.json")):
                try:
                    raw = json.loads(path.read_text(encoding="utf-8"))
                    record = Record(
                        record_type=raw["record_type"],
                        record_id=RecordID(raw["record_name"], zone_id),
                        fields={k: _decode_value(v) for k, v in raw["fields"].items()},
                        modified_at=_decode_value(raw.get("modified_at")),
                        change_tag=raw.get("change_tag"),
                    )
                except (OSError, ValueError, KeyError) as e:
                    logger.warning(f"Skipping unreadable record file {path}: {e}")
                    continue
                zone[record.record_id.record_name] = _StoredRecord(record, 0.0)
                loaded += 1
        logger.info(f"FileRecordDatabase loaded {loaded} records from {self.root}")

    def _persist_record(self, record: Record) -> None:
        _atomic_write_json(
            self._record_path(record.record_id),
            {
                "record_type": record.record_type,
                "record_name": record.record_id.record_name,
                "fields": {k: _encode_value(v) for k, v in record.fields.items()},
                "modified_at": _encode_value(record.modified_at),
                "change_tag": record.change_tag,
            },
        )

    def _remove_record(self, record_id: RecordID) -> None:
        self._record_path(record_id).unlink(missing_ok=True)

    def _persist_zone(self, zone_id: ZoneID) -> None:
        zone_dir = self._zone_dir(zone_id)
        zone_dir.mkdir(parents=True, exist_ok=True)
        (zone_dir / _ZONE_MARKER).touch()
