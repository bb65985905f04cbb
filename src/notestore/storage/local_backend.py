"""Storage backend over the in-process key-value store.

Each entity kind lives in one JSON blob under a fixed key. Every document
write reads the whole blob, splices the document in by id and re-serializes
it, so writes cost O(n) in the number of documents. That is a known
limitation kept on purpose: a blob is always replaced as a whole, which is
what makes a LocalBackend write atomic.
"""

import asyncio
import errno
import json
import logging
from typing import Any, Dict, List, Optional, Sequence

from pydantic import ValidationError as PydanticValidationError

from notestore.config import config
from notestore.exceptions import (
    ErrorCode,
    InvalidEntityError,
    QuotaExceededError,
    StorageError,
)
from notestore.models.schema import (
    Document,
    Entity,
    EntityKind,
    LabelColorMap,
    Preferences,
    coerce_entity,
    entity_from_record,
)
from notestore.storage.base import StorageBackend
from notestore.storage.kv_store import KeyValueStore

logger = logging.getLogger(__name__)

# Disk-full conditions reported by a file-backed store
_NO_SPACE_ERRNOS = (errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC))

KEY_SUFFIXES: Dict[EntityKind, str] = {
    EntityKind.DOCUMENTS: "notes",
    EntityKind.COLLECTIONS: "notebooks",
    EntityKind.PREFERENCES: "settings",
    EntityKind.LABEL_COLORS: "tag_colors",
}


def storage_keys(prefix: Optional[str] = None) -> Dict[EntityKind, str]:
    """Return the four fixed keys for a given prefix."""
    prefix = config.key_prefix if prefix is None else prefix
    return {kind: f"{prefix}{suffix}" for kind, suffix in KEY_SUFFIXES.items()}


def _empty(kind: EntityKind) -> List[Entity]:
    if kind is EntityKind.PREFERENCES:
        return [Preferences()]
    if kind is EntityKind.LABEL_COLORS:
        return [LabelColorMap()]
    return []


class LocalBackend(StorageBackend):
    """Blob-per-kind backend over a synchronous KeyValueStore."""

    name = "local"

    def __init__(self, store: KeyValueStore, key_prefix: Optional[str] = None):
        self.store = store
        self.keys = storage_keys(key_prefix)

    def key_for(self, kind: EntityKind) -> str:
        return self.keys[kind]

    # --- blob helpers (synchronous, one turn of the event loop) ---

    def _discard_corrupted(self, kind: EntityKind, reason: str) -> List[Entity]:
        key = self.key_for(kind)
        logger.warning(f"Corrupted blob under '{key}' ({reason}); clearing it")
        self.store.remove_item(key)
        return _empty(kind)

    def _load(self, kind: EntityKind) -> List[Entity]:
        """Parse the blob for a kind, recovering from corruption.

        Unparseable JSON or a wrong top-level shape clears the key and
        yields an empty collection. Individual records that fail
        validation are skipped with a warning.
        """
        raw = self.store.get_item(self.key_for(kind))
        if raw is None:
            return _empty(kind)

        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError) as e:
            return self._discard_corrupted(kind, f"invalid JSON: {e}")

        if kind.is_singleton:
            if not isinstance(data, dict):
                return self._discard_corrupted(kind, "expected an object")
            return [entity_from_record(kind, data)]

        if not isinstance(data, list):
            return self._discard_corrupted(kind, "expected an array")

        entities: List[Entity] = []
        for record in data:
            try:
                entities.append(entity_from_record(kind, record))
            except (ValueError, PydanticValidationError) as e:
                logger.warning(f"Skipping invalid {kind.value} record: {e}")
        return entities

    def _store(self, kind: EntityKind, payload: Any) -> None:
        key = self.key_for(kind)
        try:
            blob = json.dumps(payload, ensure_ascii=False)
        except (TypeError, ValueError) as e:
            raise InvalidEntityError(
                f"{kind.value} payload is not serializable: {e}", kind=kind.value
            ) from e
        try:
            self.store.set_item(key, blob)
        except (QuotaExceededError, StorageError):
            raise
        except OSError as e:
            if e.errno in _NO_SPACE_ERRNOS:
                raise QuotaExceededError(key=key, requested_bytes=len(blob)) from e
            raise StorageError(
                f"Failed to write {kind.value}",
                operation="set_item",
                code=ErrorCode.STORAGE_WRITE_FAILED,
                original_error=e,
            ) from e

    def _records(self, kind: EntityKind, entities: Sequence[Entity]) -> Any:
        if kind.is_singleton:
            return entities[0].to_record() if entities else {}
        return [e.to_record() for e in entities]

    # --- StorageBackend ---

    async def read_all(self, kind: EntityKind) -> List[Entity]:
        await asyncio.sleep(0)
        return self._load(kind)

    async def read_one(self, kind: EntityKind, entity_id: Optional[str] = None) -> Optional[Entity]:
        await asyncio.sleep(0)
        entities = self._load(kind)
        if kind.is_singleton:
            return entities[0]
        return next((e for e in entities if e.id == entity_id), None)

    async def write_document(self, doc: Document) -> None:
        doc = coerce_entity(EntityKind.DOCUMENTS, doc)
        await asyncio.sleep(0)
        # Read-modify-write of the whole blob in one synchronous turn
        docs = self._load(EntityKind.DOCUMENTS)
        for i, existing in enumerate(docs):
            if existing.id == doc.id:
                docs[i] = doc
                break
        else:
            docs.append(doc)
        self._store(EntityKind.DOCUMENTS, self._records(EntityKind.DOCUMENTS, docs))
        logger.debug(f"LocalBackend wrote document {doc.id} ({len(docs)} in blob)")

    async def write_all(self, kind: EntityKind, entities: Sequence[Entity]) -> None:
        checked = [coerce_entity(kind, e) for e in entities]
        if kind.is_singleton and len(checked) > 1:
            raise InvalidEntityError(
                f"{kind.value} holds a single entity, got {len(checked)}", kind=kind.value
            )
        await asyncio.sleep(0)
        self._store(kind, self._records(kind, checked))
        logger.debug(f"LocalBackend wrote {len(checked)} {kind.value}")

    async def delete_one(self, kind: EntityKind, entity_id: str) -> None:
        await asyncio.sleep(0)
        if kind is EntityKind.PREFERENCES:
            self.store.remove_item(self.key_for(kind))
            return None
        if kind is EntityKind.LABEL_COLORS:
            colors = self._load(kind)[0]
            remaining = {k: v for k, v in colors.colors.items() if k != entity_id}
            self._store(kind, remaining)
            return None
        entities = self._load(kind)
        kept = [e for e in entities if e.id != entity_id]
        if len(kept) != len(entities):
            self._store(kind, self._records(kind, kept))
            logger.debug(f"LocalBackend deleted {kind.value} {entity_id}")
        return None

    async def close(self) -> None:
        close = getattr(self.store, "close", None)
        if close is not None:
            close()
