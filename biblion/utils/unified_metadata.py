"""
Unified metadata lookup for books.

Reconciles Google Books, Inventaire and OpenLibrary data for one ISBN:

1. Google Books by ISBN restricted to the preferred language, then unrestricted.
2. If that candidate has no description, no cover, or a description in the
   foreign language, search Google Books by title + first author in the
   preferred language and overlay every non-empty field (ISBN kept).
3. While description or cover is still missing, fill only the missing fields
   from Inventaire, then from OpenLibrary.

Every provider call swallows its own failures (logged, recorded in the errors
dict) so one broken source never stops the pipeline.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

from biblion.utils.http import get_json, DEFAULT_TIMEOUT
from biblion.utils.isbn import normalize_isbn
from biblion.utils.language import looks_like_language

_META_LOG = logging.getLogger(__name__)

GOOGLE_VOLUMES_URL = 'https://www.googleapis.com/books/v1/volumes'
INVENTAIRE_DATA_URL = 'https://inventaire.io/api/data'
INVENTAIRE_BASE_URL = 'https://inventaire.io'
OPENLIBRARY_BOOKS_URL = 'https://openlibrary.org/api/books'

METADATA_FIELDS = ('title', 'authors', 'publisher', 'pageCount', 'description', 'coverUrl')


def _https(url: Optional[str]) -> Optional[str]:
    if not url:
        return None
    return url.replace('http:', 'https:', 1) if url.startswith('http:') else url


def _text(value) -> Optional[str]:
    """Plain string from a str or an OpenLibrary/Inventaire ``{'value': ...}`` object."""
    if isinstance(value, dict):
        value = value.get('value')
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _compact(data: Dict[str, Any]) -> Dict[str, Any]:
    """Drop None/empty values so 'missing' means the key is absent."""
    return {k: v for k, v in data.items() if v not in (None, '', [], {})}


def is_deficient(candidate: Dict[str, Any], foreign_language: Optional[str] = 'en') -> bool:
    """No description, no cover, or a description that reads as the foreign language."""
    description = candidate.get('description')
    if not description or not candidate.get('coverUrl'):
        return True
    return bool(foreign_language) and looks_like_language(description, foreign_language)


def _missing_content(candidate: Optional[Dict[str, Any]]) -> bool:
    return not candidate or not candidate.get('description') or not candidate.get('coverUrl')


def overlay_metadata(base: Dict[str, Any], better: Dict[str, Any]) -> Dict[str, Any]:
    """Non-empty fields of ``better`` replace those of ``base``; the ISBN of ``base`` is kept."""
    merged = dict(base)
    for key, value in _compact(better).items():
        merged[key] = value
    if 'isbn' in base:
        merged['isbn'] = base['isbn']
    return merged


def fill_missing(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    """Add fields ``base`` lacks; never overwrite a populated one."""
    merged = dict(base)
    for key, value in _compact(extra).items():
        if not merged.get(key):
            merged[key] = value
    return merged


def _map_google_volume(vi: Dict[str, Any]) -> Dict[str, Any]:
    image_links = vi.get('imageLinks') or {}
    cover_url = _https(image_links.get('thumbnail')) or _https(image_links.get('smallThumbnail'))
    mapped = _compact({
        'publisher': vi.get('publisher'),
        'pageCount': vi.get('pageCount'),
        'description': vi.get('description'),
        'coverUrl': cover_url,
    })
    mapped['title'] = vi.get('title') or ''
    mapped['authors'] = [a for a in (vi.get('authors') or []) if isinstance(a, str)]
    return mapped


def _has_content(mapped: Dict[str, Any]) -> bool:
    return any(mapped.get(k) for k in ('title', 'description', 'coverUrl'))


class MetadataReconciler:
    """Best-effort bibliographic lookup across public sources."""

    def __init__(
        self,
        preferred_language: Optional[str] = 'es',
        foreign_language: Optional[str] = 'en',
        timeout: float = DEFAULT_TIMEOUT,
        google_api_key: Optional[str] = None,
    ):
        self.preferred_language = preferred_language
        self.foreign_language = foreign_language
        self.timeout = timeout
        self.google_api_key = google_api_key

    # -------------------------- Providers ----------------------------------
    def _google_params(self, query: str, language: Optional[str], max_results: Optional[int] = None) -> Dict[str, Any]:
        params: Dict[str, Any] = {'q': query}
        if language:
            params['langRestrict'] = language
        if max_results:
            params['maxResults'] = max_results
        if self.google_api_key:
            params['key'] = self.google_api_key
        return params

    def _fetch_google_by_isbn(self, isbn: str, language: Optional[str]) -> Dict[str, Any]:
        """First Google Books volume for ``isbn``; {} on no result or failure."""
        try:
            data = get_json('google_books', GOOGLE_VOLUMES_URL,
                            params=self._google_params(f"isbn:{isbn}", language),
                            timeout=self.timeout) or {}
            items = data.get('items') or []
            if not data.get('totalItems') or not items:
                return {}
            mapped = _map_google_volume(items[0].get('volumeInfo') or {})
            return mapped if _has_content(mapped) else {}
        except Exception as e:
            _META_LOG.warning(f"[UNIFIED_METADATA][GOOGLE][EXC] isbn={isbn} lang={language} err={e}")
            raise

    def _fetch_google_by_title(self, title: str, author: Optional[str]) -> Dict[str, Any]:
        """Title/author search in the preferred language; prefers the first hit with a description."""
        query = f"intitle:{title}"
        if author:
            query += f" inauthor:{author}"
        try:
            data = get_json('google_books', GOOGLE_VOLUMES_URL,
                            params=self._google_params(query, self.preferred_language, max_results=3),
                            timeout=self.timeout) or {}
            items = data.get('items') or []
            if not data.get('totalItems') or not items:
                return {}
            best = next((i for i in items if (i.get('volumeInfo') or {}).get('description')), items[0])
            return _map_google_volume(best.get('volumeInfo') or {})
        except Exception as e:
            _META_LOG.warning(f"[UNIFIED_METADATA][GOOGLE_TITLE][EXC] title={title!r} err={e}")
            raise

    def _fetch_inventaire_by_isbn(self, isbn: str) -> Dict[str, Any]:
        try:
            data = get_json('inventaire', INVENTAIRE_DATA_URL,
                            params={'action': 'isbn', 'value': isbn},
                            timeout=self.timeout) or {}
            entities = data.get('entities') or {}
            if not isinstance(entities, dict) or not entities:
                return {}
            info = next(iter(entities.values())) or {}

            def _localized(values: Dict[str, Any]) -> Optional[str]:
                for lang in (self.preferred_language, 'en'):
                    if lang and _text(values.get(lang)):
                        return _text(values.get(lang))
                for value in values.values():
                    if _text(value):
                        return _text(value)
                return None

            cover_url = None
            image = info.get('image') or {}
            if isinstance(image, dict) and image.get('url'):
                url = image['url']
                cover_url = url if url.startswith('http') else f"{INVENTAIRE_BASE_URL}{url}"
            else:
                claims = info.get('claims') or {}
                pictures = claims.get('P18') or claims.get('wdt:P18') or []
                if pictures:
                    cover_url = f"{INVENTAIRE_BASE_URL}/img/entities/{pictures[0]}"

            return _compact({
                'title': _localized(info.get('labels') or {}),
                'description': _localized(info.get('descriptions') or {}),
                'coverUrl': cover_url,
            })
        except Exception as e:
            _META_LOG.warning(f"[UNIFIED_METADATA][INVENTAIRE][EXC] isbn={isbn} err={e}")
            raise

    def _fetch_openlibrary_by_isbn(self, isbn: str) -> Dict[str, Any]:
        """OpenLibrary lightweight data API (jscmd=data)."""
        bibkey = f"ISBN:{isbn}"
        try:
            data = get_json('openlibrary', OPENLIBRARY_BOOKS_URL,
                            params={'bibkeys': bibkey, 'format': 'json', 'jscmd': 'data'},
                            timeout=self.timeout) or {}
            ol = data.get(bibkey) or {}
            if not ol:
                return {}
            authors = [a.get('name') for a in (ol.get('authors') or []) if isinstance(a, dict) and a.get('name')]
            publishers = [p.get('name') if isinstance(p, dict) else str(p) for p in (ol.get('publishers') or [])]
            cover = ol.get('cover') or {}
            return _compact({
                'title': ol.get('title'),
                'authors': authors,
                'publisher': publishers[0] if publishers else None,
                'pageCount': ol.get('number_of_pages'),
                'description': _text(ol.get('description')),
                'coverUrl': cover.get('large') or cover.get('medium') or cover.get('small'),
            })
        except Exception as e:
            _META_LOG.warning(f"[UNIFIED_METADATA][OPENLIB][EXC] isbn={isbn} err={e}")
            raise

    def _attempt(self, errors: Dict[str, str], name: str, fetch, *args) -> Dict[str, Any]:
        """Run one provider call, turning any failure into an empty result."""
        try:
            result = fetch(*args) or {}
        except Exception as e:
            errors[name] = f"exception:{e}"
            return {}
        if not result:
            errors[name] = 'empty'
        return result

    # -------------------------- Pipeline -----------------------------------
    def fetch_by_isbn_detailed(self, isbn: str) -> Tuple[Optional[Dict[str, Any]], Dict[str, str]]:
        """Return (metadata or None, provider errors).

        Provider errors map a step name to 'empty' or 'exception:<msg>'.
        """
        errors: Dict[str, str] = {}
        isbn = normalize_isbn(isbn)
        if not isbn:
            return None, {'input': 'empty'}

        candidate: Optional[Dict[str, Any]] = None
        if self.preferred_language:
            found = self._attempt(errors, 'google_lang', self._fetch_google_by_isbn, isbn, self.preferred_language)
            if found:
                candidate = {'isbn': isbn, **found}
        if candidate is None:
            found = self._attempt(errors, 'google', self._fetch_google_by_isbn, isbn, None)
            if found:
                candidate = {'isbn': isbn, **found}

        if candidate and candidate.get('title') and is_deficient(candidate, self.foreign_language):
            authors: List[str] = candidate.get('authors') or []
            better = self._attempt(errors, 'google_title', self._fetch_google_by_title,
                                   candidate['title'], authors[0] if authors else None)
            if better:
                candidate = overlay_metadata(candidate, better)

        for name, fetch in (('inventaire', self._fetch_inventaire_by_isbn),
                            ('openlibrary', self._fetch_openlibrary_by_isbn)):
            if not _missing_content(candidate):
                break
            extra = self._attempt(errors, name, fetch, isbn)
            if not extra:
                continue
            if candidate is None:
                candidate = {'isbn': isbn, 'title': '', 'authors': []}
            candidate = fill_missing(candidate, extra)

        if candidate is None:
            _META_LOG.warning(f"[UNIFIED_METADATA][EMPTY] isbn={isbn} errors={errors}")
            return None, errors

        candidate['isbn'] = isbn
        return candidate, errors

    def fetch_by_isbn(self, isbn: str) -> Optional[Dict[str, Any]]:
        data, _ = self.fetch_by_isbn_detailed(isbn)
        return data
