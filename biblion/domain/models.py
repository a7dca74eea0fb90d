"""
Domain models for the book catalog.

Book records stay plain dicts (they are stored and exchanged as JSON and the
save path depends on which keys the caller actually sent); the per-user
configuration is modelled with dataclasses so it can be normalized on the way
in and out of storage.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional


DEFAULT_LIBRARY_ID = 'default'
DEFAULT_LIBRARY_NAME = 'Principal'

# activeLibraryId values with special meaning
SHOW_ALL_LIBRARIES = ''
UNASSIGNED_LIBRARY = 'unassigned'

# Immutable once a record exists
IMMUTABLE_BOOK_FIELDS = ('isbn', 'createdAt')
# Only overlaid when the caller sends them explicitly
SELECTIVE_BOOK_FIELDS = ('libraryId', 'tags')


def now_utc() -> datetime:
    """Timezone-aware UTC now for default timestamps (avoid datetime.utcnow deprecation)."""
    return datetime.now(timezone.utc)


def isoformat_utc(moment: datetime) -> str:
    """Render a timestamp the way the JSON files store it (2024-01-01T10:00:00.000Z)."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    moment = moment.astimezone(timezone.utc)
    return moment.isoformat(timespec='milliseconds').replace('+00:00', 'Z')


def parse_utc(value) -> Optional[datetime]:
    """Inverse of isoformat_utc; None for anything that is not an ISO timestamp."""
    if not isinstance(value, str) or not value:
        return None
    try:
        moment = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


class BookStatus(Enum):
    """Reading / loan status of a cataloged book."""
    NOT_SET = ""
    READING = "reading"
    READ = "read"
    BORROWED = "borrowed"
    AVAILABLE = "available"
    WISHLIST = "wishlist"


@dataclass
class Library:
    """A named shelf books can be filed into."""
    id: str
    name: str

    def to_dict(self) -> Dict[str, Any]:
        return {'id': self.id, 'name': self.name}


@dataclass
class UserConfig:
    """Per-owner settings: libraries, the active library filter and the tag vocabulary."""
    libraries: List[Library] = field(default_factory=lambda: [Library(DEFAULT_LIBRARY_ID, DEFAULT_LIBRARY_NAME)])
    activeLibraryId: str = DEFAULT_LIBRARY_ID
    tags: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'libraries': [lib.to_dict() for lib in self.libraries],
            'activeLibraryId': self.activeLibraryId,
            'tags': list(self.tags),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'UserConfig':
        """Build a config from stored/posted JSON, repairing what is missing.

        - the ``default`` library is always present (re-inserted first if dropped)
        - tags are de-duplicated keeping the first occurrence
        - a missing activeLibraryId falls back to ``default``
        - ``libraries``/``tags`` that are not lists are treated as empty
        """
        data = data if isinstance(data, dict) else {}

        libraries: List[Library] = []
        seen_ids = set()
        for raw in _list_field(data, 'libraries'):
            if not isinstance(raw, dict):
                continue
            lib_id = str(raw.get('id') or '').strip()
            if not lib_id or lib_id in seen_ids:
                continue
            seen_ids.add(lib_id)
            libraries.append(Library(id=lib_id, name=str(raw.get('name') or lib_id)))
        if DEFAULT_LIBRARY_ID not in seen_ids:
            libraries.insert(0, Library(DEFAULT_LIBRARY_ID, DEFAULT_LIBRARY_NAME))

        active = data.get('activeLibraryId')
        if active is None:
            active = DEFAULT_LIBRARY_ID

        return cls(
            libraries=libraries,
            activeLibraryId=str(active),
            tags=_unique_strings(_list_field(data, 'tags')),
        )


def _list_field(data: Dict[str, Any], key: str) -> List[Any]:
    value = data.get(key)
    return value if isinstance(value, list) else []


def default_config() -> Dict[str, Any]:
    return UserConfig().to_dict()


def _unique_strings(values: Iterable[Any]) -> List[str]:
    out: List[str] = []
    for value in values:
        if not isinstance(value, str):
            continue
        if value not in out:
            out.append(value)
    return out


def filter_books(books: List[Dict[str, Any]], active_library_id: Optional[str]) -> List[Dict[str, Any]]:
    """Apply an activeLibraryId selection to a record list.

    ``""``/None shows everything, ``"unassigned"`` shows records without a
    library, any other id shows the records filed there (unknown ids match nothing).
    """
    if not active_library_id:
        return list(books)
    if active_library_id == UNASSIGNED_LIBRARY:
        return [b for b in books if not b.get('libraryId')]
    return [b for b in books if b.get('libraryId') == active_library_id]
