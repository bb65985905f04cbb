"""Host file service: one JSON file per document plus whole-blob data files.

This is the process boundary the HostFileBackend talks to. Blocking file
I/O runs in a worker thread so the caller's event loop keeps turning;
every public method is a coroutine returning plain JSON-ready data.

Layout under ``data_dir``::

    notes/note-<id>.json
    backups/<stem>-<timestamp>[_label].<ext>
    notebooks.json
    settings.json
    tag-colors.json
    metadata.json        (capped action log)
"""

import asyncio
import errno
import json
import logging
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from notestore.backup import BackupManager
from notestore.config import config
from notestore.exceptions import (
    BackendUnavailableError,
    ErrorCode,
    QuotaExceededError,
    StorageError,
)
from notestore.models.schema import validate_safe_path_component

logger = logging.getLogger(__name__)

NOTE_PREFIX = "note-"
MAX_METADATA_ACTIONS = 1000

_NO_SPACE_ERRNOS = (errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC))


@dataclass
class MigrationResult:
    """Outcome reported by ``migrate_from_legacy``."""

    success: bool
    message: str
    notes_count: int = 0


class HostFileService:
    """File-system storage for notes, notebooks, settings and tag colours."""

    def __init__(
        self,
        data_dir: Optional[Union[str, Path]] = None,
        max_backups: Optional[int] = None,
        max_backup_age_days: Optional[int] = None,
    ):
        self.data_dir = Path(data_dir) if data_dir else config.get_data_dir()
        self.notes_dir = self.data_dir / "notes"
        self.backup_dir = self.data_dir / "backups"
        self.notebooks_file = self.data_dir / "notebooks.json"
        self.settings_file = self.data_dir / "settings.json"
        self.tag_colors_file = self.data_dir / "tag-colors.json"
        self.metadata_file = self.data_dir / "metadata.json"
        self._max_backups = max_backups or config.backup_max
        self._max_backup_age_days = max_backup_age_days or config.backup_max_age_days
        self._backups: Optional[BackupManager] = None

    # --- lifecycle ---

    def _initialize_directories(self) -> None:
        try:
            self.notes_dir.mkdir(parents=True, exist_ok=True)
            self.backup_dir.mkdir(parents=True, exist_ok=True)
            probe = self.data_dir / ".probe"
            probe.write_text("ok", encoding="utf-8")
            probe.unlink()
        except OSError as e:
            raise BackendUnavailableError(
                f"Host data directory is not usable: {self.data_dir}", original_error=e
            ) from e
        self._backups = BackupManager(
            self.backup_dir,
            max_backups=self._max_backups,
            max_age_days=self._max_backup_age_days,
        )
        logger.info(f"HostFileService initialized at {self.data_dir}")

    async def initialize(self) -> None:
        """Create the directory layout and check that it is writable.

        Raises:
            BackendUnavailableError: If the data directory cannot be used.
        """
        await asyncio.to_thread(self._initialize_directories)

    @property
    def backups(self) -> BackupManager:
        if self._backups is None:
            self._initialize_directories()
        return self._backups

    # --- file helpers ---

    def _note_path(self, note_id: str) -> Path:
        validate_safe_path_component(note_id, "Note ID")
        return self.notes_dir / f"{NOTE_PREFIX}{note_id}.json"

    def _write_json(self, path: Path, data: Any) -> None:
        """Atomically replace ``path`` with the JSON encoding of ``data``."""
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except OSError as e:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            if e.errno in _NO_SPACE_ERRNOS:
                raise QuotaExceededError(
                    f"Disk full while writing {path.name}", key=path.name
                ) from e
            raise StorageError(
                f"Failed to write {path.name}",
                operation="write",
                path=str(path),
                code=ErrorCode.STORAGE_WRITE_FAILED,
                original_error=e,
            ) from e

    def _read_json(self, path: Path) -> Any:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)

    def _save_data_file(self, path: Path, data: Any) -> Dict[str, Any]:
        self.backups.backup_file(path)
        self._write_json(path, data)
        return {"success": True, "path": str(path)}

    def _load_data_file(self, path: Path, default: Any) -> Any:
        try:
            return self._read_json(path)
        except FileNotFoundError:
            return default
        except json.JSONDecodeError as e:
            logger.warning(f"Invalid JSON in {path.name}: {e}")
            if path == self.metadata_file:
                self._write_json(path, default)
                return default
            backup_path = self.backups.backup_file(path, label="corrupted")
            self._write_json(path, default)
            logger.warning(f"Moved corrupted {path.name} to {backup_path}; reset to default")
            return default
        except OSError as e:
            raise StorageError(
                f"Failed to load {path.name}",
                operation="read",
                path=str(path),
                original_error=e,
            ) from e

    def _update_metadata(self, action: str, data: Dict[str, Any]) -> None:
        try:
            metadata = self._load_data_file(
                self.metadata_file,
                {"created": datetime.now(timezone.utc).isoformat(), "actions": []},
            )
            actions = metadata.setdefault("actions", [])
            actions.append({
                "action": action,
                "data": data,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            })
            metadata["actions"] = actions[-MAX_METADATA_ACTIONS:]
            self._write_json(self.metadata_file, metadata)
        except (StorageError, OSError, AttributeError) as e:
            # The action log is informational; a failure here never fails the write
            logger.warning(f"Failed to update metadata: {e}")

    # --- notes (sync bodies) ---

    def _save_note(self, note: Dict[str, Any]) -> Dict[str, Any]:
        note_id = note.get("id") if isinstance(note, dict) else None
        if not note_id:
            raise StorageError("Invalid note: missing id", operation="save_note",
                               code=ErrorCode.STORAGE_WRITE_FAILED)
        path = self._note_path(note_id)
        self.backups.backup_file(path)
        self._write_json(path, note)
        self._update_metadata("note_saved", {"id": note_id, "title": note.get("title", "")})
        logger.debug(f"Saved note {note_id}")
        return {"success": True, "path": str(path)}

    def _quarantine_note(self, path: Path, error: Exception) -> None:
        """Copy a corrupted note file to backups/ and remove the live file."""
        backup_path = self.backups.backup_file(path, label="corrupted")
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise StorageError(
                f"Failed to clear corrupted {path.name}",
                operation="load_note",
                path=str(path),
                code=ErrorCode.STORAGE_DELETE_FAILED,
                original_error=e,
            ) from e
        logger.warning(f"Invalid JSON in {path.name} ({error}); moved to {backup_path}")

    def _load_note(self, note_id: str) -> Optional[Dict[str, Any]]:
        path = self._note_path(note_id)
        try:
            return self._read_json(path)
        except FileNotFoundError:
            return None
        except json.JSONDecodeError as e:
            self._quarantine_note(path, e)
            return None
        except OSError as e:
            raise StorageError(
                f"Failed to load note {note_id}",
                operation="load_note",
                path=str(path),
                original_error=e,
            ) from e

    def _load_all_notes(self) -> List[Dict[str, Any]]:
        notes = []
        for path in sorted(self.notes_dir.glob(f"{NOTE_PREFIX}*.json")):
            try:
                notes.append(self._read_json(path))
            except json.JSONDecodeError as e:
                self._quarantine_note(path, e)
            except OSError as e:
                # One unreadable file must not hide the others
                logger.warning(f"Failed to load note file {path.name}: {e}")
        logger.debug(f"Loaded {len(notes)} notes")
        return notes

    def _delete_note(self, note_id: str) -> Dict[str, Any]:
        path = self._note_path(note_id)
        if not path.exists():
            return {"success": False, "error": "Note not found"}
        backup_path = self.backups.backup_file(path, label="deleted")
        try:
            path.unlink()
        except OSError as e:
            raise StorageError(
                f"Failed to delete note {note_id}",
                operation="delete_note",
                path=str(path),
                code=ErrorCode.STORAGE_DELETE_FAILED,
                original_error=e,
            ) from e
        self._update_metadata(
            "note_deleted", {"id": note_id, "backupPath": str(backup_path)}
        )
        logger.info(f"Deleted note {note_id} (backup: {backup_path})")
        return {"success": True, "backupPath": str(backup_path)}

    def _migrate_from_legacy(self, data: Dict[str, Any]) -> MigrationResult:
        notes = data.get("notes") or []
        if not isinstance(notes, list):
            raise StorageError("Legacy notes must be a list", operation="migrate")
        for note in notes:
            self._save_note(note)
        logger.info(f"Migrated {len(notes)} notes")

        if data.get("notebooks"):
            self._save_data_file(self.notebooks_file, data["notebooks"])
        if data.get("settings"):
            self._save_data_file(self.settings_file, data["settings"])
        if data.get("tagColors"):
            self._save_data_file(self.tag_colors_file, data["tagColors"])

        self._update_metadata(
            "migration_completed", {"source": "keyvalue", "notesCount": len(notes)}
        )
        return MigrationResult(
            success=True,
            message=f"Migration completed successfully ({len(notes)} notes)",
            notes_count=len(notes),
        )

    def _storage_info(self) -> Dict[str, Any]:
        notes = list(self.notes_dir.glob(f"{NOTE_PREFIX}*.json"))
        notebooks = self._load_data_file(self.notebooks_file, [])
        settings = self._load_data_file(self.settings_file, {})
        tag_colors = self._load_data_file(self.tag_colors_file, {})
        return {
            "dataDirectory": str(self.data_dir),
            "notesCount": len(notes),
            "notebooksCount": len(notebooks),
            "hasSettings": bool(settings),
            "tagColorsCount": len(tag_colors),
            "directories": {
                "data": str(self.data_dir),
                "notes": str(self.notes_dir),
                "backups": str(self.backup_dir),
            },
        }

    # --- async API ---

    async def save_note(self, note: Dict[str, Any]) -> Dict[str, Any]:
        return await asyncio.to_thread(self._save_note, note)

    async def load_note(self, note_id: str) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(self._load_note, note_id)

    async def load_all_notes(self) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self._load_all_notes)

    async def delete_note(self, note_id: str) -> Dict[str, Any]:
        return await asyncio.to_thread(self._delete_note, note_id)

    async def save_notebooks(self, notebooks: List[Dict[str, Any]]) -> Dict[str, Any]:
        return await asyncio.to_thread(self._save_data_file, self.notebooks_file, notebooks)

    async def load_notebooks(self) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self._load_data_file, self.notebooks_file, [])

    async def save_settings(self, settings: Dict[str, Any]) -> Dict[str, Any]:
        return await asyncio.to_thread(self._save_data_file, self.settings_file, settings)

    async def load_settings(self) -> Dict[str, Any]:
        return await asyncio.to_thread(self._load_data_file, self.settings_file, {})

    async def save_tag_colors(self, tag_colors: Dict[str, str]) -> Dict[str, Any]:
        return await asyncio.to_thread(self._save_data_file, self.tag_colors_file, tag_colors)

    async def load_tag_colors(self) -> Dict[str, str]:
        return await asyncio.to_thread(self._load_data_file, self.tag_colors_file, {})

    async def migrate_from_legacy(self, data: Dict[str, Any]) -> MigrationResult:
        """Copy the four legacy blobs (already parsed) into the file layout."""
        return await asyncio.to_thread(self._migrate_from_legacy, data)

    async def storage_info(self) -> Dict[str, Any]:
        return await asyncio.to_thread(self._storage_info)
