"""
notekit - note persistence and synchronization for client-side note apps.

Notes live behind a single repository contract with two implementations:
a local SQLite store and a remote, eventually-consistent record store.
A service layer adds validation, ordering and statistics, and a switchboard
swaps the active store at runtime.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("notekit")
except PackageNotFoundError:
    __version__ = "0.3.0"
