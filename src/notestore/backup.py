"""Backup utilities for the notestore host file service.

Provides recoverable copies of:
- note and data files, taken before they are overwritten or deleted
- raw key-value blobs, taken before a migration erases them
"""
import gzip
import json
import logging
import re
import shutil
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Mapping, Optional, Union

logger = logging.getLogger(__name__)

# Backup retention settings
DEFAULT_MAX_BACKUPS = 10  # Keep last N backups per file
DEFAULT_MAX_AGE_DAYS = 30  # Delete backups older than N days

# "<stem>-<timestamp>[_label]<suffixes>"
_BACKUP_NAME = re.compile(r"^(?P<stem>.+?)-(?P<ts>\d{8}T\d{12})(?:_(?P<label>[\w\-]+))?\.")


def _timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")


class BackupManager:
    """Manages file and blob backups with rotation.

    Features:
    - Timestamped copies that never overwrite each other
    - Gzip-compressed JSON snapshots of key-value blobs
    - Rotation by count (per original file) and by age
    """

    def __init__(
        self,
        backup_dir: Union[str, Path],
        max_backups: int = DEFAULT_MAX_BACKUPS,
        max_age_days: int = DEFAULT_MAX_AGE_DAYS,
    ):
        """Initialize the backup manager.

        Args:
            backup_dir: Directory for backups (created if missing)
            max_backups: Maximum number of backups to keep per original file
            max_age_days: Delete backups older than this many days
        """
        self.backup_dir = Path(backup_dir)
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        self.max_backups = max_backups
        self.max_age_days = max_age_days
        self._lock = Lock()

    def backup_file(self, path: Union[str, Path], label: Optional[str] = None) -> Optional[Path]:
        """Copy a file into the backup directory before it changes.

        Args:
            path: The live file
            label: Optional label to include in the filename

        Returns:
            Path to the copy, or None if the file does not exist.
        """
        source = Path(path)
        if not source.exists():
            return None

        with self._lock:
            label_part = f"_{label}" if label else ""
            backup_path = self.backup_dir / (
                f"{source.stem}-{_timestamp()}{label_part}{source.suffix}"
            )
            shutil.copy2(source, backup_path)
            logger.debug(f"Created backup: {backup_path}")
            self._rotate_backups(source.stem)
            return backup_path

    def backup_blobs(self, blobs: Mapping[str, Any], label: str = "snapshot") -> Path:
        """Write a gzip JSON snapshot of raw blobs (e.g. before a migration).

        Args:
            blobs: Key to raw value mapping
            label: Label included in the filename

        Returns:
            Path to the snapshot file.
        """
        with self._lock:
            backup_path = self.backup_dir / f"kvstore-{_timestamp()}_{label}.json.gz"
            payload = {
                "created_at": datetime.now(timezone.utc).isoformat(),
                "blobs": dict(blobs),
            }
            with gzip.open(backup_path, "wt", encoding="utf-8", compresslevel=6) as f:
                json.dump(payload, f)

            size_kb = backup_path.stat().st_size / 1024
            logger.info(f"Blob snapshot created: {backup_path} ({size_kb:.1f} KB)")
            self._rotate_backups("kvstore")
            return backup_path

    @staticmethod
    def read_blob_snapshot(path: Union[str, Path]) -> Dict[str, Any]:
        """Read back the blobs of a snapshot written by backup_blobs."""
        with gzip.open(Path(path), "rt", encoding="utf-8") as f:
            return json.load(f)["blobs"]

    def _rotate_backups(self, stem: str) -> int:
        """Prune copies of one source file.

        A copy is kept only while it is among the newest ``max_backups``
        copies of that file and younger than ``max_age_days``.

        Returns:
            Number of copies removed.
        """
        cutoff = datetime.now(timezone.utc).timestamp() - self.max_age_days * 86400
        copies = sorted(
            (
                p for p in self.backup_dir.iterdir()
                if (m := _BACKUP_NAME.match(p.name)) and m.group("stem") == stem
            ),
            key=lambda p: p.name,
            reverse=True,
        )

        removed = 0
        for rank, copy in enumerate(copies):
            try:
                expired = rank >= self.max_backups or copy.stat().st_mtime < cutoff
                if expired:
                    copy.unlink()
                    removed += 1
            except OSError as e:
                logger.debug(f"Could not prune backup {copy}: {e}")

        if removed:
            logger.info(f"Pruned {removed} backup(s) of {stem}")
        return removed

    def list_backups(self) -> List[Dict[str, Any]]:
        """List all available backups, newest first."""
        backups = []

        for path in self.backup_dir.iterdir():
            match = _BACKUP_NAME.match(path.name)
            if not match:
                continue
            stat = path.stat()
            backups.append({
                "path": str(path),
                "name": path.name,
                "source": match.group("stem"),
                "timestamp": match.group("ts"),
                "label": match.group("label"),
                "size_bytes": stat.st_size,
                "created_at": datetime.fromtimestamp(
                    stat.st_mtime, tz=timezone.utc
                ).isoformat(),
            })

        backups.sort(key=lambda b: b["timestamp"], reverse=True)
        return backups
