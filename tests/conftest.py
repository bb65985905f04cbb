"""Common test fixtures for the notestore persistence core."""

import tempfile
from pathlib import Path

import pytest

from notestore.config import config
from notestore.observability import metrics
from notestore.storage.file_service import HostFileService
from notestore.storage.host_backend import HostFileBackend
from notestore.storage.kv_store import MemoryKeyValueStore, SqliteKeyValueStore
from notestore.storage.local_backend import LocalBackend
from notestore.store import NoteStore
from tests.fakes import TEST_DEBOUNCE


@pytest.fixture(params=["asyncio"])
def anyio_backend(request):
    """Restrict anyio tests to asyncio only (trio is not installed)."""
    return request.param


@pytest.fixture
def temp_dirs():
    """Create temporary directories for host data and the key-value database."""
    with tempfile.TemporaryDirectory() as data_dir:
        with tempfile.TemporaryDirectory() as db_dir:
            yield Path(data_dir), Path(db_dir)


@pytest.fixture
def test_config(temp_dirs, monkeypatch):
    """Configure with test paths (auto-restored even on crash)."""
    data_dir, db_dir = temp_dirs
    monkeypatch.setattr(config, "data_dir", data_dir)
    monkeypatch.setattr(config, "kv_database_path", db_dir / "test_keyvalue.db")
    monkeypatch.setattr(config, "key_prefix", "notestore_")
    monkeypatch.setattr(config, "debounce_ms", int(TEST_DEBOUNCE * 1000))
    monkeypatch.setattr(config, "backend_timeout", 2.0)
    yield config


@pytest.fixture(autouse=True)
def _reset_metrics():
    metrics.reset()
    yield


@pytest.fixture
def memory_kv():
    """Unbounded in-memory key-value store."""
    return MemoryKeyValueStore()


@pytest.fixture
def sqlite_kv():
    """In-memory SQLite key-value store."""
    store = SqliteKeyValueStore("sqlite:///:memory:")
    yield store
    store.close()


@pytest.fixture
def local_backend(memory_kv):
    return LocalBackend(memory_kv, key_prefix="notestore_")


@pytest.fixture
def file_service(temp_dirs):
    data_dir, _ = temp_dirs
    return HostFileService(data_dir, max_backups=5, max_backup_age_days=30)


@pytest.fixture
async def host_backend(file_service, anyio_backend):
    await file_service.initialize()
    return HostFileBackend(file_service)


@pytest.fixture
async def local_store(test_config, memory_kv, anyio_backend):
    """NoteStore on the key-value store only."""
    store = NoteStore(
        kv_store=memory_kv,
        host_enabled=False,
        debounce_seconds=TEST_DEBOUNCE,
        timeout=2.0,
        key_prefix="notestore_",
    )
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture
async def host_store(test_config, memory_kv, file_service, anyio_backend):
    """NoteStore with the host file service available."""
    store = NoteStore(
        kv_store=memory_kv,
        file_service=file_service,
        host_enabled=True,
        debounce_seconds=TEST_DEBOUNCE,
        timeout=2.0,
        key_prefix="notestore_",
    )
    await store.initialize()
    yield store
    await store.close()
