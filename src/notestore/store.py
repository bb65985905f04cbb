"""The NoteStore facade handed to the UI shell."""

import json
import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from pydantic import ValidationError as PydanticValidationError

from notestore.config import config
from notestore.exceptions import (
    BackendTimeoutError,
    BackendUnavailableError,
    ErrorCode,
    InvalidEntityError,
    MigrationFailedError,
    SnapshotFormatError,
)
from notestore.models.schema import (
    Document,
    Entity,
    EntityKind,
    Preferences,
    coerce_entity,
    entity_from_record,
    utc_now,
)
from notestore.services.migration import MigrationCoordinator, MigrationState
from notestore.services.write_coalescer import SettlementReport, WriteCoalescer
from notestore.storage.base import StorageBackend, call_with_timeout
from notestore.storage.file_service import HostFileService
from notestore.storage.host_backend import HostFileBackend
from notestore.storage.kv_store import KeyValueStore, SqliteKeyValueStore
from notestore.storage.local_backend import LocalBackend

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = "2.0"

# Snapshot field per kind, followed by the older spelling still accepted on import
SNAPSHOT_FIELDS: Dict[EntityKind, tuple] = {
    EntityKind.DOCUMENTS: ("documents", "notes"),
    EntityKind.COLLECTIONS: ("collections", "notebooks"),
    EntityKind.PREFERENCES: ("preferences", "settings"),
    EntityKind.LABEL_COLORS: ("labelColors", "tagColors"),
}


def _kind(kind: Union[EntityKind, str]) -> EntityKind:
    try:
        return EntityKind(kind)
    except ValueError as e:
        raise InvalidEntityError(
            f"Unknown entity kind: {kind}",
            field="kind",
            value=kind,
            code=ErrorCode.ENTITY_KIND_UNKNOWN,
        ) from e


class NoteStore:
    """Storage instance shared by the whole application.

    Construct once, ``await initialize()`` before the first read, pass the
    instance by reference and ``await close()`` on shutdown. All
    collaborators can be injected; missing ones are built from ``config``.
    """

    def __init__(
        self,
        kv_store: Optional[KeyValueStore] = None,
        file_service: Optional[HostFileService] = None,
        backend: Optional[StorageBackend] = None,
        host_enabled: Optional[bool] = None,
        debounce_seconds: Optional[float] = None,
        timeout: Optional[float] = None,
        key_prefix: Optional[str] = None,
    ):
        """Initialize the store without touching any storage.

        Args:
            kv_store: Key-value store for the local backend and legacy keys.
            file_service: Host file service; built from config when host
                storage is enabled and none is given.
            backend: Backend to use as-is, skipping host detection.
            host_enabled: Whether to look for host storage at all.
            debounce_seconds: Debounce window of document writes.
            timeout: Bound for each backend call, in seconds.
            key_prefix: Prefix of the four key-value keys.
        """
        self.kv_store = kv_store
        self.file_service = file_service
        self.backend: Optional[StorageBackend] = backend
        self._explicit_backend = backend is not None
        self.host_enabled = config.host_enabled if host_enabled is None else host_enabled
        self.debounce_seconds = debounce_seconds
        self.timeout = config.backend_timeout if timeout is None else timeout
        self.key_prefix = key_prefix
        self.coalescer: Optional[WriteCoalescer] = None
        self.migration: Optional[MigrationCoordinator] = None
        self.migration_error: Optional[MigrationFailedError] = None
        self._cache: Dict[EntityKind, Dict[str, Entity]] = {kind: {} for kind in EntityKind}
        self._initialized = False

    async def __aenter__(self) -> "NoteStore":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # --- lifecycle ---

    async def _detect_host(self) -> Optional[HostFileService]:
        if not self.host_enabled:
            return None
        service = self.file_service or HostFileService(config.get_data_dir())
        try:
            await call_with_timeout(service.initialize(), self.timeout, "initialize")
        except (BackendUnavailableError, BackendTimeoutError) as e:
            logger.warning(f"Host file service unavailable, using key-value storage: {e}")
            return None
        return service

    async def initialize(self) -> None:
        """Pick the backend and run the legacy migration once.

        Host storage is used when enabled and reachable; otherwise the
        key-value store serves everything. A failed migration leaves the
        legacy keys in place and keeps this session on the key-value store
        (the error is kept in ``migration_error``).
        """
        if self._initialized:
            return

        if self.kv_store is None:
            self.kv_store = SqliteKeyValueStore(
                config.get_db_url(), quota_bytes=config.kv_quota_bytes
            )
        local = LocalBackend(self.kv_store, self.key_prefix)

        host = None if self._explicit_backend else await self._detect_host()
        self.file_service = host
        self.migration = MigrationCoordinator(self.kv_store, host, self.key_prefix)

        if not self._explicit_backend:
            self.backend = HostFileBackend(host) if host is not None else local
            try:
                await self.migration.run()
            except MigrationFailedError as e:
                self.migration_error = e
                self.backend = local
                logger.error(f"Staying on key-value storage until migration succeeds: {e}")

        self.coalescer = WriteCoalescer(
            self.backend, debounce_seconds=self.debounce_seconds, timeout=self.timeout
        )
        self._initialized = True
        logger.info(f"NoteStore initialized with {self.backend.name} backend")

    def _require(self) -> None:
        if not self._initialized:
            raise RuntimeError("NoteStore.initialize() must be awaited first")

    async def close(self) -> SettlementReport:
        """Flush pending writes, then release the backend."""
        if not self._initialized:
            return SettlementReport()
        report = await self.flush_all()
        await self.backend.close()
        if self.kv_store is not None and not isinstance(self.backend, LocalBackend):
            close = getattr(self.kv_store, "close", None)
            if close is not None:
                close()
        self._initialized = False
        logger.info("NoteStore closed")
        return report

    # --- cache ---

    def _remember(self, kind: EntityKind, entities: Sequence[Entity], replace: bool = False) -> None:
        bucket = self._cache[kind]
        if replace:
            bucket.clear()
        for entity in entities:
            bucket[entity.id] = entity

    def _remember_written(self, future) -> None:
        # Replace the enqueued payload with the copy stamped at write time
        if future.cancelled() or future.exception() is not None:
            return
        written = future.result()
        if self.coalescer.pending_payload(written.id) is None:
            self._remember(EntityKind.DOCUMENTS, [written])

    def cached(self, kind: Union[EntityKind, str]) -> List[Entity]:
        """Entities seen by earlier reads and writes, without any I/O."""
        return list(self._cache[_kind(kind)].values())

    # --- write path ---

    def enqueue(self, doc):
        """Schedule a debounced write; returns a future settling with the write."""
        self._require()
        doc = coerce_entity(EntityKind.DOCUMENTS, doc)
        future = self.coalescer.enqueue(doc)
        self._remember(EntityKind.DOCUMENTS, [doc])
        future.add_done_callback(self._remember_written)
        return future

    async def write_now(self, doc) -> Document:
        self._require()
        written = await self.coalescer.write_now(doc)
        self._remember(EntityKind.DOCUMENTS, [written])
        return written

    async def flush_all(self) -> SettlementReport:
        self._require()
        report = await self.coalescer.flush_all()
        self._remember(
            EntityKind.DOCUMENTS, [o.document for o in report.outcomes if o.success]
        )
        return report

    def has_pending_write(self, entity_id: str) -> bool:
        return self.coalescer is not None and self.coalescer.has_pending(entity_id)

    def failed_writes(self):
        return self.coalescer.failed_writes() if self.coalescer is not None else []

    # --- reads and direct writes ---

    async def read_all(self, kind: Union[EntityKind, str]) -> List[Entity]:
        self._require()
        kind = _kind(kind)
        entities = await call_with_timeout(
            self.backend.read_all(kind), self.timeout, f"read_all:{kind.value}"
        )
        self._remember(kind, entities, replace=True)
        return entities

    async def read_one(
        self, kind: Union[EntityKind, str], entity_id: Optional[str] = None
    ) -> Optional[Entity]:
        self._require()
        kind = _kind(kind)
        entity = await call_with_timeout(
            self.backend.read_one(kind, entity_id),
            self.timeout,
            f"read_one:{kind.value}",
            entity_id,
        )
        if entity is not None:
            self._remember(kind, [entity])
        return entity

    async def write_all(self, kind: Union[EntityKind, str], entities: Sequence[Any]) -> List[Entity]:
        """Replace every entity of a kind.

        Pending document writes are flushed first so none of them lands
        after the replacement.
        """
        self._require()
        kind = _kind(kind)
        checked = [coerce_entity(kind, e) for e in entities]
        if kind is EntityKind.DOCUMENTS:
            await self.flush_all()
        await call_with_timeout(
            self.backend.write_all(kind, checked), self.timeout, f"write_all:{kind.value}"
        )
        self._remember(kind, checked, replace=True)
        return checked

    async def delete_one(self, kind: Union[EntityKind, str], entity_id: str) -> Optional[str]:
        """Physically remove one entity, bypassing the debounce queue.

        A pending write of the same document is discarded and a running one
        is waited for, so the delete is the last thing to happen to the id.

        Returns:
            The backup location when the backend keeps one.
        """
        self._require()
        kind = _kind(kind)
        if kind is EntityKind.DOCUMENTS:
            self.coalescer.discard(entity_id)
            await self.coalescer.wait_in_flight(entity_id)
            # A running write that failed meanwhile is moot once the document is gone
            self.coalescer.forget_failure(entity_id)
        backup = await call_with_timeout(
            self.backend.delete_one(kind, entity_id),
            self.timeout,
            f"delete_one:{kind.value}",
            entity_id,
        )
        self._cache[kind].pop(entity_id, None)
        logger.info(f"Deleted {kind.value} {entity_id}")
        return backup

    # --- trash ---

    async def _current_document(self, entity_id: str) -> Document:
        doc = self.coalescer.pending_payload(entity_id)
        if doc is None:
            doc = self._cache[EntityKind.DOCUMENTS].get(entity_id)
        if doc is None:
            doc = await self.read_one(EntityKind.DOCUMENTS, entity_id)
        if doc is None:
            raise InvalidEntityError(
                f"Document {entity_id} does not exist",
                kind=EntityKind.DOCUMENTS.value,
                field="id",
                value=entity_id,
            )
        return doc

    async def trash_document(self, entity_id: str) -> Document:
        """Soft-delete: flip the trashed flag through the normal write path."""
        self._require()
        doc = await self._current_document(entity_id)
        return await self.enqueue(doc.trashed_copy())

    async def restore_document(self, entity_id: str) -> Document:
        self._require()
        doc = await self._current_document(entity_id)
        return await self.enqueue(doc.restored_copy())

    async def empty_trash(self) -> List[str]:
        """Permanently delete every trashed document; returns their ids."""
        self._require()
        await self.flush_all()
        trashed = [d.id for d in await self.read_all(EntityKind.DOCUMENTS) if d.trashed]
        for entity_id in trashed:
            await self.delete_one(EntityKind.DOCUMENTS, entity_id)
        return trashed

    async def save_preferences(self, values: Mapping[str, Any], merge: bool = True) -> Preferences:
        self._require()
        current: Dict[str, Any] = {}
        if merge:
            existing = await self.read_one(EntityKind.PREFERENCES)
            current = dict(existing.values) if existing is not None else {}
        current.update(values)
        prefs = Preferences(values=current)
        await self.write_all(EntityKind.PREFERENCES, [prefs])
        return prefs

    # --- snapshots ---

    async def export_snapshot(self) -> str:
        """Serialize every entity kind to a JSON snapshot.

        Pending writes are flushed first, so the snapshot holds the latest
        state of every document.
        """
        self._require()
        await self.flush_all()
        snapshot: Dict[str, Any] = {
            "version": SNAPSHOT_VERSION,
            "exportedAt": utc_now().isoformat(),
        }
        for kind, (name, _legacy) in SNAPSHOT_FIELDS.items():
            entities = await self.read_all(kind)
            if kind.is_singleton:
                snapshot[name] = entities[0].to_record() if entities else {}
            else:
                snapshot[name] = [e.to_record() for e in entities]
        logger.info(
            f"Exported {len(snapshot['documents'])} documents and "
            f"{len(snapshot['collections'])} collections"
        )
        return json.dumps(snapshot, indent=2, ensure_ascii=False)

    def _parse_snapshot(self, blob: Union[str, bytes, Mapping[str, Any]]) -> Dict[EntityKind, List[Entity]]:
        if isinstance(blob, Mapping):
            data = blob
        else:
            try:
                data = json.loads(blob)
            except (TypeError, ValueError) as e:
                raise SnapshotFormatError(original_error=e) from e
        if not isinstance(data, Mapping):
            raise SnapshotFormatError("Snapshot must be a JSON object")

        parsed: Dict[EntityKind, List[Entity]] = {}
        for kind, names in SNAPSHOT_FIELDS.items():
            value = next((data[n] for n in names if data.get(n) is not None), None)
            if value is None:
                continue
            if kind.is_singleton and not isinstance(value, Mapping):
                raise SnapshotFormatError(f"Snapshot field '{names[0]}' must be an object")
            if not kind.is_singleton and not isinstance(value, list):
                raise SnapshotFormatError(f"Snapshot field '{names[0]}' must be an array")
            try:
                if kind.is_singleton:
                    parsed[kind] = [entity_from_record(kind, value)]
                else:
                    parsed[kind] = [coerce_entity(kind, item) for item in value]
            except (InvalidEntityError, ValueError, PydanticValidationError) as e:
                raise SnapshotFormatError(
                    f"Snapshot holds an invalid {kind.value} entry", original_error=e
                ) from e

        if EntityKind.DOCUMENTS not in parsed:
            raise SnapshotFormatError("Snapshot has no documents array")
        return parsed

    async def import_snapshot(self, blob: Union[str, bytes, Mapping[str, Any]]) -> Dict[str, int]:
        """Replace stored entities with the contents of a snapshot.

        The whole snapshot is validated before anything is written. Kinds
        absent from the snapshot are left as they are.

        Raises:
            SnapshotFormatError: If the blob is not a valid snapshot.
        """
        self._require()
        parsed = self._parse_snapshot(blob)
        counts: Dict[str, int] = {}
        for kind, entities in parsed.items():
            await self.write_all(kind, entities)
            counts[kind.value] = len(entities)
        logger.info(f"Imported snapshot: {counts}")
        return counts

    # --- stats ---

    async def storage_stats(self) -> Dict[str, Any]:
        self._require()
        documents = await self.read_all(EntityKind.DOCUMENTS)
        collections = await self.read_all(EntityKind.COLLECTIONS)
        label_colors = await self.read_one(EntityKind.LABEL_COLORS)
        stats: Dict[str, Any] = {
            "backend": self.backend.name,
            "documents": len(documents),
            "trashed_documents": sum(1 for d in documents if d.trashed),
            "collections": len(collections),
            "label_colors": len(label_colors.colors) if label_colors is not None else 0,
            "pending_writes": len(self.coalescer.pending_ids()),
            "failed_writes": len(self.coalescer.failed_writes()),
            "migration_state": (
                self.migration.state.value if self.migration else MigrationState.NOT_CHECKED.value
            ),
        }
        if self.migration_error is not None:
            stats["migration_error"] = self.migration_error.message
        if isinstance(self.backend, LocalBackend):
            stats["kv_usage_bytes"] = self.backend.store.usage_bytes()
            stats["kv_quota_bytes"] = getattr(self.backend.store, "quota_bytes", 0)
        if isinstance(self.backend, HostFileBackend):
            info = await self.backend.storage_info()
            stats["directories"] = info["directories"]
        return stats
