"""
Library operations shared by every client.

The desktop shell calls this facade directly, the HTTP blueprint and the IPC
dispatcher wrap it, so identical inputs produce identical stored state on all
three. Every mutation returns the owner's full updated book list so a client
can resynchronize from the response alone.
"""

import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

from biblion.domain.models import BookStatus, filter_books
from biblion.errors import BookNotFoundError, CoverDownloadError, InvalidPayloadError
from biblion.services.backup_service import BookBackupService
from biblion.services.record_store import RecordStore
from biblion.services.scraper_service import ScraperService
from biblion.utils.image_processing import COVERS_URL_PREFIX, download_cover
from biblion.utils.isbn import normalize_isbn, same_isbn
from biblion.utils.unified_metadata import MetadataReconciler

logger = logging.getLogger(__name__)

BooksListener = Callable[[str, List[Dict[str, Any]]], None]


class LibraryService:
    """Uniform operation set over the record store, metadata lookup and scraper."""

    def __init__(self, store: RecordStore, reconciler: MetadataReconciler, scraper: ScraperService):
        self.store = store
        self.reconciler = reconciler
        self.scraper = scraper
        self._listeners: List[BooksListener] = []

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> 'LibraryService':
        timeout = float(config.get('METADATA_TIMEOUT', 8.0))
        store = RecordStore(
            config['DATA_DIR'],
            legacy_owners=config.get('LEGACY_OWNERS') or ('legacy',),
            backup_service=BookBackupService(config.get('BACKUP_RETENTION', 10)),
        )
        reconciler = MetadataReconciler(
            preferred_language=config.get('METADATA_LANGUAGE', 'es'),
            foreign_language=config.get('METADATA_FOREIGN_LANGUAGE', 'en'),
            timeout=timeout,
            google_api_key=config.get('GOOGLE_BOOKS_API_KEY'),
        )
        return cls(store, reconciler, ScraperService(timeout=timeout))

    # -------------------------- Listeners ----------------------------------
    def add_listener(self, listener: BooksListener) -> None:
        """Call ``listener(owner, books)`` after every successful mutation."""
        self._listeners.append(listener)

    def _notify(self, owner: Optional[str], books: List[Dict[str, Any]]) -> None:
        for listener in list(self._listeners):
            try:
                listener(owner or '', books)
            except Exception as e:
                logger.warning(f"[LIBRARY] books listener failed: {e}")

    # -------------------------- Books --------------------------------------
    def list_books(self, owner: Optional[str], library_id: Optional[str] = None) -> List[Dict[str, Any]]:
        books = self.store.get_all_books(owner)
        return filter_books(books, library_id) if library_id is not None else books

    def save_book(self, owner: Optional[str], book: Dict[str, Any]) -> List[Dict[str, Any]]:
        books = self.store.save_book(owner, book)
        self._notify(owner, books)
        return books

    def bulk_save_books(self, owner: Optional[str], books: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        updated = self.store.save_books(owner, books)
        self._notify(owner, updated)
        return updated

    def delete_book(self, owner: Optional[str], isbn: str) -> List[Dict[str, Any]]:
        """Delete one record; raises BookNotFoundError when no record matches."""
        if not self.store.delete_book(owner, isbn):
            raise BookNotFoundError(normalize_isbn(isbn))
        books = self.store.get_all_books(owner)
        self._notify(owner, books)
        return books

    def bulk_delete_books(self, owner: Optional[str], isbns: List[str]) -> List[Dict[str, Any]]:
        books = self.store.delete_books(owner, isbns)
        self._notify(owner, books)
        return books

    def find_book(self, owner: Optional[str], isbn: str) -> Dict[str, Any]:
        for book in self.store.get_all_books(owner):
            if same_isbn(book.get('isbn'), isbn):
                return book
        raise BookNotFoundError(normalize_isbn(isbn))

    # -------------------------- Loans --------------------------------------
    def lend_book(self, owner: Optional[str], isbn: str, borrower: str, loan_date: Optional[str] = None) -> List[Dict[str, Any]]:
        """Mark a book borrowed; status, borrower and date change in one save."""
        borrower = (borrower or '').strip()
        if not borrower:
            raise InvalidPayloadError('Borrower name is required')
        book = self.find_book(owner, isbn)
        return self.save_book(owner, {
            'isbn': book['isbn'],
            'status': BookStatus.BORROWED.value,
            'borrowerName': borrower,
            'loanDate': loan_date or self.store.clock().strftime('%Y-%m-%d'),
        })

    def return_book(self, owner: Optional[str], isbn: str) -> List[Dict[str, Any]]:
        book = self.find_book(owner, isbn)
        return self.save_book(owner, {
            'isbn': book['isbn'],
            'status': BookStatus.AVAILABLE.value,
            'borrowerName': '',
            'loanDate': '',
        })

    def list_loans(self, owner: Optional[str]) -> List[Dict[str, Any]]:
        return [b for b in self.store.get_all_books(owner) if b.get('status') == BookStatus.BORROWED.value]

    # -------------------------- Config -------------------------------------
    def get_config(self, owner: Optional[str]) -> Dict[str, Any]:
        return self.store.get_config(owner)

    def save_config(self, owner: Optional[str], config: Dict[str, Any]) -> Dict[str, Any]:
        return self.store.save_config(owner, config)

    def list_backups(self, owner: Optional[str]) -> List[Dict[str, Any]]:
        return [info.to_dict() for info in self.store.list_backups(owner)]

    # -------------------------- Metadata -----------------------------------
    def lookup_metadata(self, isbn: str) -> Optional[Dict[str, Any]]:
        logger.info(f"[LIBRARY] looking up ISBN {isbn}")
        return self.reconciler.fetch_by_isbn(isbn)

    def scrape_metadata(self, url: str) -> Optional[Dict[str, Any]]:
        return self.scraper.scrape(url)

    # -------------------------- Covers -------------------------------------
    def covers_dir(self, owner: Optional[str]) -> Path:
        return self.store.resolve(owner).covers_dir

    def cache_cover(self, owner: Optional[str], isbn: str) -> List[Dict[str, Any]]:
        """Store the record's remote cover locally and point coverPath at it."""
        book = self.find_book(owner, isbn)
        source = book.get('coverPath') or book.get('coverUrl')
        if not source:
            raise InvalidPayloadError(f"Book {book['isbn']} has no cover to cache")
        if str(source).startswith(COVERS_URL_PREFIX):
            return self.store.get_all_books(owner)
        try:
            filename = download_cover(source, self.covers_dir(owner), stem=book['isbn'],
                                      timeout=self.reconciler.timeout)
        except Exception as e:
            logger.error(f"[LIBRARY] cover download failed for {book['isbn']}: {e}")
            raise CoverDownloadError(f"Could not cache cover: {e}") from e
        return self.save_book(owner, {'isbn': book['isbn'], 'coverPath': f"{COVERS_URL_PREFIX}{filename}"})
