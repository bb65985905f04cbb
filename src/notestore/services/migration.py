"""One-shot move of legacy key-value blobs into the host file service."""

import asyncio
import json
import logging
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from notestore.exceptions import MigrationFailedError, NoteStoreError
from notestore.models.schema import EntityKind, entity_from_record
from notestore.observability import timed_operation
from notestore.storage.file_service import HostFileService
from notestore.storage.kv_store import KeyValueStore
from notestore.storage.local_backend import storage_keys

logger = logging.getLogger(__name__)

# Field names the host service expects for each legacy blob
_PAYLOAD_FIELDS: Dict[EntityKind, str] = {
    EntityKind.DOCUMENTS: "notes",
    EntityKind.COLLECTIONS: "notebooks",
    EntityKind.PREFERENCES: "settings",
    EntityKind.LABEL_COLORS: "tagColors",
}


class MigrationState(str, Enum):
    NOT_CHECKED = "not_checked"
    MIGRATING = "migrating"
    DONE = "done"


class MigrationCoordinator:
    """Copies the four legacy blobs to the host once, then erases them.

    Running again after success, without a host service, or with no legacy
    keys present is a no-op. On failure the legacy keys stay where they are
    and the state returns to NOT_CHECKED so the next startup retries.
    """

    def __init__(
        self,
        kv_store: KeyValueStore,
        service: Optional[HostFileService],
        key_prefix: Optional[str] = None,
    ):
        self.kv_store = kv_store
        self.service = service
        self.keys = storage_keys(key_prefix)
        self.state = MigrationState.NOT_CHECKED
        self.runs = 0
        self.copied_documents = 0
        self.last_snapshot: Optional[str] = None

    def legacy_keys(self) -> List[str]:
        """Keys that currently hold legacy data."""
        return [key for key in self.keys.values() if self.kv_store.get_item(key) is not None]

    def _build_payload(self, blobs: Dict[EntityKind, str]) -> Dict[str, Any]:
        payload: Dict[str, Any] = {}
        for kind, raw in blobs.items():
            try:
                data = json.loads(raw)
            except json.JSONDecodeError as e:
                raise MigrationFailedError(
                    f"Legacy {kind.value} blob is not valid JSON",
                    legacy_keys=[self.keys[kind]],
                    original_error=e,
                ) from e

            if kind.is_singleton:
                if not isinstance(data, dict):
                    raise MigrationFailedError(
                        f"Legacy {kind.value} blob must be an object",
                        legacy_keys=[self.keys[kind]],
                    )
                payload[_PAYLOAD_FIELDS[kind]] = entity_from_record(kind, data).to_record()
                continue

            if not isinstance(data, list):
                raise MigrationFailedError(
                    f"Legacy {kind.value} blob must be an array",
                    legacy_keys=[self.keys[kind]],
                )
            records = []
            for record in data:
                try:
                    records.append(entity_from_record(kind, record).to_record())
                except (ValueError, PydanticValidationError) as e:
                    logger.warning(f"Not migrating invalid {kind.value} record: {e}")
            payload[_PAYLOAD_FIELDS[kind]] = records
        return payload

    async def _confirm_copy(self, payload: Dict[str, Any], present: List[str]) -> List[str]:
        """Read every migrated kind back from the host; returns the document ids."""
        note_ids = [n["id"] for n in payload.get("notes", [])]
        for note_id in note_ids:
            if await self.service.load_note(note_id) is None:
                raise MigrationFailedError(
                    f"Migrated document {note_id} is not readable from the host",
                    legacy_keys=present,
                )

        loaders = {
            "notebooks": self.service.load_notebooks,
            "settings": self.service.load_settings,
            "tagColors": self.service.load_tag_colors,
        }
        for field_name, load in loaders.items():
            expected = payload.get(field_name)
            # Empty blobs are not written, so there is nothing to read back
            if not expected:
                continue
            if await load() != expected:
                raise MigrationFailedError(
                    f"Migrated {field_name} do not match the legacy data",
                    legacy_keys=present,
                )
        return note_ids

    async def run(self) -> MigrationState:
        """Migrate if needed and return the resulting state.

        Raises:
            MigrationFailedError: If legacy data is present and could not be
                copied; the legacy keys are preserved.
        """
        if self.state is MigrationState.DONE:
            return self.state
        if self.service is None:
            logger.debug("No host file service; nothing to migrate")
            self.state = MigrationState.DONE
            return self.state

        blobs = {
            kind: raw
            for kind, key in self.keys.items()
            if (raw := self.kv_store.get_item(key)) is not None
        }
        if not blobs:
            logger.debug("No legacy keys present; migration not needed")
            self.state = MigrationState.DONE
            return self.state

        present = [self.keys[kind] for kind in blobs]
        self.state = MigrationState.MIGRATING
        self.runs += 1
        logger.info(f"Migrating legacy keys to host storage: {present}")

        try:
            with timed_operation("migrate", keys=len(present)) as op:
                snapshot = await asyncio.to_thread(
                    self.service.backups.backup_blobs,
                    {self.keys[kind]: raw for kind, raw in blobs.items()},
                    "pre-migration",
                )
                self.last_snapshot = str(snapshot)

                payload = self._build_payload(blobs)
                result = await self.service.migrate_from_legacy(payload)
                if not result.success:
                    raise MigrationFailedError(result.message, legacy_keys=present)

                note_ids = await self._confirm_copy(payload, present)
                op["documents"] = len(note_ids)
        except MigrationFailedError:
            self.state = MigrationState.NOT_CHECKED
            logger.error("Migration failed; legacy keys kept for retry", exc_info=True)
            raise
        except (NoteStoreError, OSError) as e:
            self.state = MigrationState.NOT_CHECKED
            logger.error(f"Migration failed; legacy keys kept for retry: {e}")
            raise MigrationFailedError(
                f"Migration to host storage failed: {e}",
                legacy_keys=present,
                original_error=e,
            ) from e

        for key in present:
            self.kv_store.remove_item(key)
        self.copied_documents += len(note_ids)
        self.state = MigrationState.DONE
        logger.info(f"Migration complete: {len(note_ids)} documents (snapshot: {snapshot})")
        return self.state
