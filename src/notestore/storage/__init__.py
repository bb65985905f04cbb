"""Storage layer for the notestore persistence core."""

from notestore.storage.base import StorageBackend, call_with_timeout
from notestore.storage.file_service import HostFileService, MigrationResult
from notestore.storage.host_backend import HostFileBackend
from notestore.storage.kv_store import (
    KeyValueStore,
    MemoryKeyValueStore,
    SqliteKeyValueStore,
)
from notestore.storage.local_backend import LocalBackend, storage_keys

__all__ = [
    "StorageBackend",
    "call_with_timeout",
    "HostFileService",
    "MigrationResult",
    "HostFileBackend",
    "KeyValueStore",
    "MemoryKeyValueStore",
    "SqliteKeyValueStore",
    "LocalBackend",
    "storage_keys",
]
