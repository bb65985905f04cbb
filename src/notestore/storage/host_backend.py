"""Storage backend over the host file service (one file per document)."""

import logging
from typing import List, Optional, Sequence

from pydantic import ValidationError as PydanticValidationError

from notestore.exceptions import InvalidEntityError
from notestore.models.schema import (
    Document,
    Entity,
    EntityKind,
    LabelColorMap,
    Preferences,
    coerce_entity,
    entity_from_record,
    validate_safe_path_component,
)
from notestore.storage.base import StorageBackend
from notestore.storage.file_service import HostFileService

logger = logging.getLogger(__name__)


def _is_file_safe(entity_id: Optional[str]) -> bool:
    # No stored document can carry an id that is not a valid file name
    try:
        validate_safe_path_component(entity_id or "", "id")
    except ValueError:
        return False
    return True


class HostFileBackend(StorageBackend):
    """Backend that persists through a HostFileService.

    Document writes touch only that document's file. A permanent delete
    leaves a backup copy; its location is returned and kept in
    ``last_backup_path``.
    """

    name = "host"

    def __init__(self, service: HostFileService):
        self.service = service
        self.last_backup_path: Optional[str] = None

    def _build(self, kind: EntityKind, records: list) -> List[Entity]:
        entities: List[Entity] = []
        for record in records:
            try:
                entities.append(entity_from_record(kind, record))
            except (ValueError, PydanticValidationError) as e:
                logger.warning(f"Skipping invalid {kind.value} record from host: {e}")
        return entities

    async def _load_singleton(self, kind: EntityKind) -> Entity:
        if kind is EntityKind.PREFERENCES:
            data = await self.service.load_settings()
        else:
            data = await self.service.load_tag_colors()
        try:
            return entity_from_record(kind, data)
        except (ValueError, PydanticValidationError) as e:
            logger.warning(f"Ignoring malformed {kind.value} file: {e}")
            return Preferences() if kind is EntityKind.PREFERENCES else LabelColorMap()

    async def read_all(self, kind: EntityKind) -> List[Entity]:
        if kind is EntityKind.DOCUMENTS:
            return self._build(kind, await self.service.load_all_notes())
        if kind is EntityKind.COLLECTIONS:
            notebooks = await self.service.load_notebooks()
            if not isinstance(notebooks, list):
                logger.warning("Ignoring notebooks file that is not an array")
                return []
            return self._build(kind, notebooks)
        return [await self._load_singleton(kind)]

    async def read_one(self, kind: EntityKind, entity_id: Optional[str] = None) -> Optional[Entity]:
        if kind.is_singleton:
            return await self._load_singleton(kind)
        if kind is EntityKind.DOCUMENTS:
            if not _is_file_safe(entity_id):
                return None
            record = await self.service.load_note(entity_id)
            if record is None:
                return None
            try:
                return entity_from_record(kind, record)
            except (ValueError, PydanticValidationError) as e:
                logger.warning(f"Document file {entity_id} is malformed: {e}")
                return None
        collections = await self.read_all(kind)
        return next((c for c in collections if c.id == entity_id), None)

    async def write_document(self, doc: Document) -> None:
        doc = coerce_entity(EntityKind.DOCUMENTS, doc)
        await self.service.save_note(doc.to_record())

    async def write_all(self, kind: EntityKind, entities: Sequence[Entity]) -> None:
        checked = [coerce_entity(kind, e) for e in entities]
        if kind.is_singleton and len(checked) > 1:
            raise InvalidEntityError(
                f"{kind.value} holds a single entity, got {len(checked)}", kind=kind.value
            )
        if kind is EntityKind.DOCUMENTS:
            keep = {doc.id for doc in checked}
            for doc in checked:
                await self.service.save_note(doc.to_record())
            for record in await self.service.load_all_notes():
                stale_id = record.get("id") if isinstance(record, dict) else None
                if stale_id and stale_id not in keep:
                    await self.service.delete_note(stale_id)
        elif kind is EntityKind.COLLECTIONS:
            await self.service.save_notebooks([c.to_record() for c in checked])
        elif kind is EntityKind.PREFERENCES:
            await self.service.save_settings(checked[0].to_record() if checked else {})
        else:
            await self.service.save_tag_colors(checked[0].to_record() if checked else {})
        logger.debug(f"HostFileBackend wrote {len(checked)} {kind.value}")

    async def delete_one(self, kind: EntityKind, entity_id: str) -> Optional[str]:
        if kind is EntityKind.DOCUMENTS:
            if not _is_file_safe(entity_id):
                logger.debug(f"Delete of unknown document {entity_id!r} ignored")
                return None
            result = await self.service.delete_note(entity_id)
            if not result.get("success"):
                logger.debug(f"Delete of missing document {entity_id} ignored")
                return None
            self.last_backup_path = result.get("backupPath")
            return self.last_backup_path
        if kind is EntityKind.COLLECTIONS:
            collections = await self.read_all(kind)
            kept = [c for c in collections if c.id != entity_id]
            if len(kept) != len(collections):
                await self.service.save_notebooks([c.to_record() for c in kept])
            return None
        if kind is EntityKind.PREFERENCES:
            await self.service.save_settings({})
            return None
        colors = (await self._load_singleton(kind)).colors
        await self.service.save_tag_colors({k: v for k, v in colors.items() if k != entity_id})
        return None

    async def storage_info(self) -> dict:
        return await self.service.storage_info()
