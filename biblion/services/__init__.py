"""
Services package

- RecordStore: owner-partitioned JSON record store with dated backups
- BookBackupService: per-owner daily snapshots and rotation
- ScraperService: bookshop page extraction
- LibraryService: the operation set every client goes through
"""

from .backup_service import BookBackupService
from .record_store import RecordStore, StoragePartition, resolve_partition
from .scraper_service import ScraperService
from .library_service import LibraryService

__all__ = [
    'BookBackupService',
    'RecordStore',
    'StoragePartition',
    'resolve_partition',
    'ScraperService',
    'LibraryService',
]
