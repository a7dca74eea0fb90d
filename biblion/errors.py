"""Exception types shared by the store, the metadata layer and the API faces."""

from typing import Any, Dict, Optional


class BiblionError(Exception):
    """Base class for errors surfaced to clients as a failure payload."""

    status_code = 500

    def to_payload(self) -> Dict[str, Any]:
        return {'success': False, 'error': str(self)}


class InvalidOwnerError(BiblionError, ValueError):
    """Owner key cannot be used as a storage partition name."""

    status_code = 400

    def __init__(self, owner: str):
        super().__init__(f"Invalid username: {owner!r}")
        self.owner = owner


class InvalidPayloadError(BiblionError, ValueError):
    status_code = 400


class BookNotFoundError(BiblionError, LookupError):
    status_code = 404

    def __init__(self, isbn: str):
        super().__init__(f"Book not found: {isbn}")
        self.isbn = isbn


class CoverDownloadError(BiblionError):
    status_code = 502


class StorageWriteError(BiblionError):
    """Primary write of a record list or config file failed."""

    status_code = 500

    def __init__(self, owner: Optional[str], path: str, cause: Exception):
        super().__init__(f"Could not write {path}: {cause}")
        self.owner = owner
        self.path = path
        self.cause = cause
