"""
JSON-backed, owner-partitioned book record store.

Each owner resolves to a storage partition (a directory holding ``books.json``,
``config.json``, ``backups/`` and ``covers/``). Owners listed as legacy, and
the empty owner, share the partition at the storage root that predates
per-user storage; everybody else gets ``users/<owner>/``.

Mutations are read-modify-write cycles over the whole list. Within one process
they are serialized per partition; two processes sharing the same storage root
can still overwrite each other's concurrent changes (no file locking).
"""

import json
import logging
import os
import tempfile
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from werkzeug.security import safe_join

from biblion.domain.models import (
    IMMUTABLE_BOOK_FIELDS,
    SELECTIVE_BOOK_FIELDS,
    UserConfig,
    default_config,
    isoformat_utc,
    now_utc,
    parse_utc,
)
from biblion.errors import InvalidOwnerError, InvalidPayloadError, StorageWriteError
from biblion.services.backup_service import BookBackupService, BackupInfo, DEFAULT_RETENTION
from biblion.utils.isbn import normalize_isbn

logger = logging.getLogger(__name__)

LEGACY_PARTITION_KEY = 'legacy'
BOOKS_FILENAME = 'books.json'
CONFIG_FILENAME = 'config.json'


@dataclass(frozen=True)
class StoragePartition:
    """Where one owner's records live."""
    key: str
    root: Path
    legacy: bool

    @property
    def books_file(self) -> Path:
        return self.root / BOOKS_FILENAME

    @property
    def config_file(self) -> Path:
        return self.root / CONFIG_FILENAME

    @property
    def backups_dir(self) -> Path:
        return self.root / 'backups'

    @property
    def covers_dir(self) -> Path:
        return self.root / 'covers'


def resolve_partition(data_dir, owner: Optional[str], legacy_owners: Iterable[str] = (LEGACY_PARTITION_KEY,)) -> StoragePartition:
    """Map an owner key to its partition: the shared legacy one, or ``users/<owner>``."""
    root = Path(data_dir)
    owner = (owner or '').strip()
    if not owner or owner in set(legacy_owners):
        return StoragePartition(key=LEGACY_PARTITION_KEY, root=root, legacy=True)

    users_dir = root / 'users'
    joined = safe_join(str(users_dir), owner)
    if joined is None or '/' in owner or '\\' in owner or owner.startswith('.'):
        raise InvalidOwnerError(owner)
    return StoragePartition(key=owner, root=Path(joined), legacy=False)


class RecordStore:
    """Authoritative collection of book records and configs, one partition per owner."""

    def __init__(
        self,
        data_dir,
        legacy_owners: Iterable[str] = (LEGACY_PARTITION_KEY,),
        backup_service: Optional[BookBackupService] = None,
        clock: Callable[[], datetime] = now_utc,
    ):
        self.data_dir = Path(data_dir)
        self.legacy_owners = tuple(legacy_owners)
        self.backups = backup_service or BookBackupService(DEFAULT_RETENTION)
        self.clock = clock
        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    # -------------------------- Partitions ---------------------------------
    def resolve(self, owner: Optional[str]) -> StoragePartition:
        """Resolve ``owner`` and lazily create its files (empty list + default config)."""
        partition = resolve_partition(self.data_dir, owner, self.legacy_owners)
        partition.root.mkdir(parents=True, exist_ok=True)
        partition.backups_dir.mkdir(exist_ok=True)
        partition.covers_dir.mkdir(exist_ok=True)
        if not partition.books_file.exists():
            self._write_json(partition, partition.books_file, [])
        if not partition.config_file.exists():
            self._write_json(partition, partition.config_file, default_config())
        return partition

    def _lock_for(self, partition: StoragePartition) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(str(partition.root))
            if lock is None:
                lock = threading.RLock()
                self._locks[str(partition.root)] = lock
            return lock

    # -------------------------- Config -------------------------------------
    def get_config(self, owner: Optional[str]) -> Dict[str, Any]:
        """Owner config; a default config is synthesized on any read problem."""
        try:
            partition = self.resolve(owner)
            with open(partition.config_file, 'r', encoding='utf-8') as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError('config is not a JSON object')
            return UserConfig.from_dict(data).to_dict()
        except InvalidOwnerError:
            raise
        except Exception as e:
            logger.error(f"[RECORD_STORE] error reading config for {owner!r}: {e}")
            return default_config()

    def save_config(self, owner: Optional[str], config: Dict[str, Any]) -> Dict[str, Any]:
        """Replace the owner's config wholesale. Returns the normalized document."""
        if not isinstance(config, dict):
            raise InvalidPayloadError('Config must be a JSON object')
        for key in ('libraries', 'tags'):
            if config.get(key) is not None and not isinstance(config.get(key), list):
                raise InvalidPayloadError(f'Config "{key}" must be a JSON array')
        normalized = UserConfig.from_dict(config).to_dict()
        partition = self._resolve_for_write(owner)
        with self._lock_for(partition):
            self._write_json(partition, partition.config_file, normalized)
        return normalized

    # -------------------------- Reads --------------------------------------
    def get_all_books(self, owner: Optional[str]) -> List[Dict[str, Any]]:
        """Every record of the owner; an empty list when the file can't be read."""
        try:
            partition = self.resolve(owner)
        except InvalidOwnerError:
            raise
        except Exception as e:
            logger.error(f"[RECORD_STORE] error opening store for {owner!r}: {e}")
            return []
        return self._read_books(partition)

    def _read_books(self, partition: StoragePartition, quarantine: bool = False) -> List[Dict[str, Any]]:
        try:
            with open(partition.books_file, 'r', encoding='utf-8') as f:
                data = json.load(f)
            if not isinstance(data, list):
                raise ValueError('record file is not a JSON array')
            return [b for b in data if isinstance(b, dict)]
        except FileNotFoundError:
            return []
        except Exception as e:
            logger.error(f"[RECORD_STORE] error reading {partition.books_file}: {e}")
            if quarantine:
                self._quarantine(partition)
            return []

    def _quarantine(self, partition: StoragePartition) -> None:
        """Move an unreadable record file aside before a mutation replaces it."""
        stamp = self.clock().strftime('%Y%m%dT%H%M%S')
        target = partition.root / f"books.corrupt-{stamp}.json"
        try:
            os.replace(partition.books_file, target)
            logger.warning(f"[RECORD_STORE] unreadable record file kept as {target.name}")
        except OSError as e:
            logger.error(f"[RECORD_STORE] could not keep unreadable record file: {e}")

    # -------------------------- Mutations ----------------------------------
    def save_book(self, owner: Optional[str], book: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Create or update one record (see ``_fold``). Returns the full updated list."""
        self._require_isbn(book)
        partition = self._resolve_for_write(owner)
        with self._lock_for(partition):
            books = self._read_books(partition, quarantine=True)
            moment = self.clock()
            self.backups.create_backup(partition.backups_dir, partition.key, books, moment)
            action = self._fold(books, book, self._next_stamp(books, [book], moment))
            logger.info(f"[RECORD_STORE] {action} \"{book.get('title', '')}\" for {partition.key}")
            self._write_books(partition, books)
            return books

    def save_books(self, owner: Optional[str], incoming: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Fold a batch with one backup and one final write."""
        if not isinstance(incoming, list):
            raise InvalidPayloadError('Books must be a JSON array')
        for book in incoming:
            self._require_isbn(book)
        partition = self._resolve_for_write(owner)
        with self._lock_for(partition):
            books = self._read_books(partition, quarantine=True)
            if not incoming:
                return books
            moment = self.clock()
            self.backups.create_backup(partition.backups_dir, partition.key, books, moment)
            stamp = self._next_stamp(books, incoming, moment)
            # In-memory fold; nothing reaches disk unless every record folds
            working = [dict(b) for b in books]
            for book in incoming:
                self._fold(working, book, stamp)
            self._write_books(partition, working)
            logger.info(f"[RECORD_STORE] bulk saved {len(incoming)} books for {partition.key}")
            return working

    def delete_book(self, owner: Optional[str], isbn: str) -> bool:
        """Remove the record matching ``isbn`` after normalization. False if nothing matched."""
        partition = self._resolve_for_write(owner)
        target = normalize_isbn(isbn)
        with self._lock_for(partition):
            books = self._read_books(partition)
            remaining = [b for b in books if normalize_isbn(b.get('isbn')) != target]
            if len(remaining) == len(books):
                return False
            self.backups.create_backup(partition.backups_dir, partition.key, books, self.clock())
            self._write_books(partition, remaining)
            logger.info(f"[RECORD_STORE] deleted {target} for {partition.key}")
            return True

    def delete_books(self, owner: Optional[str], isbns: List[str]) -> List[Dict[str, Any]]:
        """Batched delete. Returns the resulting list (unchanged if nothing matched)."""
        if not isinstance(isbns, list):
            raise InvalidPayloadError('ISBNs must be a JSON array')
        partition = self._resolve_for_write(owner)
        targets = {normalize_isbn(i) for i in isbns}
        with self._lock_for(partition):
            books = self._read_books(partition)
            remaining = [b for b in books if normalize_isbn(b.get('isbn')) not in targets]
            if len(remaining) == len(books):
                return books
            self.backups.create_backup(partition.backups_dir, partition.key, books, self.clock())
            self._write_books(partition, remaining)
            logger.info(f"[RECORD_STORE] bulk deleted {len(books) - len(remaining)} books for {partition.key}")
            return remaining

    def list_backups(self, owner: Optional[str]) -> List[BackupInfo]:
        partition = self.resolve(owner)
        return self.backups.list_backups(partition.backups_dir, partition.key)

    # -------------------------- Merge policy -------------------------------
    @staticmethod
    def _require_isbn(book: Any) -> str:
        if not isinstance(book, dict):
            raise InvalidPayloadError('Book must be a JSON object')
        isbn = normalize_isbn(book.get('isbn'))
        if not isbn:
            raise InvalidPayloadError('Book is missing an ISBN')
        return isbn

    @staticmethod
    def _next_stamp(books: List[Dict[str, Any]], incoming: List[Dict[str, Any]], moment: datetime) -> str:
        """Timestamp for a mutation, strictly after the updatedAt of every record it touches.

        Stamps have millisecond resolution; two saves inside the same
        millisecond (or a clock that went backwards) still advance updatedAt.
        """
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        moment = moment.astimezone(timezone.utc).replace(microsecond=moment.microsecond // 1000 * 1000)
        targets = {normalize_isbn(b.get('isbn')) for b in incoming}
        for existing in books:
            if normalize_isbn(existing.get('isbn')) not in targets:
                continue
            previous = parse_utc(existing.get('updatedAt'))
            if previous is not None and previous >= moment:
                moment = previous.replace(microsecond=previous.microsecond // 1000 * 1000) + timedelta(milliseconds=1)
        return isoformat_utc(moment)

    @staticmethod
    def _find(books: List[Dict[str, Any]], isbn: str) -> Optional[int]:
        for index, existing in enumerate(books):
            if normalize_isbn(existing.get('isbn')) == isbn:
                return index
        return None

    def _fold(self, books: List[Dict[str, Any]], book: Dict[str, Any], stamp: str) -> str:
        """Apply one incoming record to ``books`` in place. Returns 'updated' or 'created'.

        Update: every key the caller sent overwrites the stored value, except
        isbn/createdAt (kept from the stored record) and libraryId/tags (only
        when sent with a non-null value).
        Create: canonical isbn, createdAt == updatedAt, libraryId forced to "".
        """
        isbn = self._require_isbn(book)
        index = self._find(books, isbn)
        if index is not None:
            existing = books[index]
            merged = dict(existing)
            for key, value in book.items():
                if key in IMMUTABLE_BOOK_FIELDS:
                    continue
                if key in SELECTIVE_BOOK_FIELDS and value is None:
                    continue
                merged[key] = value
            merged['isbn'] = existing.get('isbn', isbn)
            merged['createdAt'] = existing.get('createdAt', stamp)
            merged['updatedAt'] = stamp
            books[index] = merged
            return 'updated'

        record = dict(book)
        record['isbn'] = isbn
        record.setdefault('title', '')
        if record.get('authors') is None:
            record['authors'] = []
        if record.get('tags') is None:
            record['tags'] = []
        # New acquisitions always land unfiled
        record['libraryId'] = ''
        record['createdAt'] = stamp
        record['updatedAt'] = stamp
        books.append(record)
        return 'created'

    # -------------------------- Writes -------------------------------------
    def _resolve_for_write(self, owner: Optional[str]) -> StoragePartition:
        try:
            return self.resolve(owner)
        except StorageWriteError:
            raise
        except OSError as e:
            partition = resolve_partition(self.data_dir, owner, self.legacy_owners)
            raise StorageWriteError(owner, str(partition.root), e) from e

    def _write_books(self, partition: StoragePartition, books: List[Dict[str, Any]]) -> None:
        self._write_json(partition, partition.books_file, books)

    def _write_json(self, partition: StoragePartition, path: Path, payload: Any) -> None:
        """Write through a temp file + os.replace so readers never see a torn file."""
        tmp_name = None
        try:
            fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix='.tmp', dir=str(path.parent))
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(payload, f, indent=2, ensure_ascii=False)
            os.replace(tmp_name, path)
        except (OSError, TypeError, ValueError) as e:
            if tmp_name and os.path.exists(tmp_name):
                try:
                    os.unlink(tmp_name)
                except OSError:
                    pass
            logger.error(f"[RECORD_STORE] write failed for {path}: {e}")
            raise StorageWriteError(partition.key, str(path), e) from e
