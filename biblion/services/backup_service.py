"""
Dated backup snapshots for book lists.

One snapshot file per owner per calendar day (``books_<owner>_<YYYY-MM-DD>.json``);
a later mutation on the same day overwrites that day's file with the newer
pre-mutation state. After every snapshot the owner's backups are pruned to the
most recent ``retention`` files by modification time.

Backup failures never propagate: they are logged and the caller's mutation
continues.
"""

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_RETENTION = 10


@dataclass
class BackupInfo:
    """Information about one dated snapshot."""
    name: str
    owner: str
    date: str
    file_path: str
    file_size: int
    modified_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            'name': self.name,
            'owner': self.owner,
            'date': self.date,
            'file_path': self.file_path,
            'file_size': self.file_size,
            'modified_at': self.modified_at.isoformat(),
        }


class BookBackupService:
    """Writes, prunes and lists per-owner dated snapshots."""

    def __init__(self, retention: int = DEFAULT_RETENTION):
        self.retention = max(1, int(retention))

    @staticmethod
    def backup_name(owner_key: str, day: str) -> str:
        return f"books_{owner_key}_{day}.json"

    @staticmethod
    def _pattern(owner_key: str):
        return re.compile(rf"^books_{re.escape(owner_key)}_(\d{{4}}-\d{{2}}-\d{{2}})\.json$")

    def create_backup(self, backup_dir: Path, owner_key: str, books: List[Dict[str, Any]], moment: datetime) -> Optional[Path]:
        """Snapshot ``books`` for ``owner_key`` under today's date, then prune.

        Returns the written path, or None when the snapshot failed.
        """
        try:
            day = moment.astimezone(timezone.utc).strftime('%Y-%m-%d')
            backup_dir.mkdir(parents=True, exist_ok=True)
            backup_path = backup_dir / self.backup_name(owner_key, day)
            with open(backup_path, 'w', encoding='utf-8') as f:
                json.dump(books, f, indent=2, ensure_ascii=False)
            logger.debug(f"[BACKUP] wrote {backup_path.name} ({len(books)} books)")
        except Exception as e:
            logger.error(f"[BACKUP] snapshot failed for {owner_key}: {e}")
            return None

        self.rotate_backups(backup_dir, owner_key)
        return backup_path

    def rotate_backups(self, backup_dir: Path, owner_key: str) -> int:
        """Delete all but the newest ``retention`` snapshots. Returns how many were deleted."""
        deleted = 0
        try:
            backups = self._owner_files(backup_dir, owner_key)
            for stale in backups[self.retention:]:
                logger.info(f"[BACKUP] deleting old backup: {stale.name}")
                stale.unlink()
                deleted += 1
        except Exception as e:
            logger.error(f"[BACKUP] rotation failed for {owner_key}: {e}")
        return deleted

    def list_backups(self, backup_dir: Path, owner_key: str) -> List[BackupInfo]:
        """Snapshots for ``owner_key``, newest first."""
        pattern = self._pattern(owner_key)
        out: List[BackupInfo] = []
        try:
            for path in self._owner_files(backup_dir, owner_key):
                stat = path.stat()
                match = pattern.match(path.name)
                out.append(BackupInfo(
                    name=path.name,
                    owner=owner_key,
                    date=match.group(1) if match else '',
                    file_path=str(path),
                    file_size=stat.st_size,
                    modified_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                ))
        except Exception as e:
            logger.warning(f"[BACKUP] could not list backups for {owner_key}: {e}")
        return out

    def _owner_files(self, backup_dir: Path, owner_key: str) -> List[Path]:
        if not backup_dir.exists():
            return []
        pattern = self._pattern(owner_key)
        files = [p for p in backup_dir.iterdir() if p.is_file() and pattern.match(p.name)]
        # Newest first; the name (which embeds the date) breaks mtime ties
        files.sort(key=lambda p: (p.stat().st_mtime, p.name), reverse=True)
        return files
