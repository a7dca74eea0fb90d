"""
Book page scraper.

Turns a bookshop product page into a partial book record. Site extractors
are tried in registration order by URL match; pages no extractor claims go
through the generic OpenGraph / ``<title>`` extractor.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from biblion.utils.http import BROWSER_USER_AGENT, DEFAULT_TIMEOUT, provider_get

logger = logging.getLogger(__name__)

Extracted = Dict[str, Any]


@dataclass(frozen=True)
class SiteExtractor:
    name: str
    matches: Callable[[str], bool]
    extract: Callable[[BeautifulSoup, str], Extracted]


def url_contains(fragment: str) -> Callable[[str], bool]:
    return lambda url: fragment in url


def clean_text(value) -> str:
    """Collapse whitespace (and nbsp) of a tag's text or a raw string."""
    if value is None:
        return ''
    if hasattr(value, 'get_text'):
        value = value.get_text(' ', strip=True)
    return re.sub(r'\s+', ' ', str(value).replace('\xa0', ' ')).strip()


def parse_page_count(value) -> Optional[int]:
    match = re.search(r'\d+', clean_text(value))
    return int(match.group(0)) if match else None


def _text_of(soup: BeautifulSoup, selector: str) -> Optional[str]:
    node = soup.select_one(selector)
    text = clean_text(node) if node else ''
    return text or None


def _src_of(soup: BeautifulSoup, selector: str, page_url: str) -> Optional[str]:
    node = soup.select_one(selector)
    src = node.get('src') if node else None
    return urljoin(page_url, src) if src else None


def _labeled(scope, label: str, tag: str) -> Optional[str]:
    """Text of the first ``tag`` after the text node containing ``label``."""
    if scope is None:
        return None
    marker = scope.find(string=re.compile(re.escape(label), re.IGNORECASE))
    if marker is None:
        return None
    node = marker.find_next(tag)
    text = clean_text(node) if node else ''
    return text or None


def _finish(data: Extracted) -> Extracted:
    return {k: v for k, v in data.items() if v not in (None, '', [])}


def extract_cuspide(soup: BeautifulSoup, url: str) -> Extracted:
    author = _text_of(soup, 'a[itemprop="author"]')
    specs = soup.select_one('div.caracteristicas')
    return _finish({
        'title': _text_of(soup, 'h1'),
        'authors': [author] if author else None,
        'description': _text_of(soup, 'div.resumen'),
        'coverPath': _src_of(soup, 'img#imgProducto', url),
        'publisher': _labeled(specs, 'Editorial:', 'a'),
        'pageCount': parse_page_count(_labeled(specs, 'Número de páginas:', 'span')),
    })


def extract_sbs(soup: BeautifulSoup, url: str) -> Extracted:
    author = _text_of(soup, 'a.brandName')
    return _finish({
        'title': _text_of(soup, 'h1.productName') or _text_of(soup, 'h1'),
        'authors': [author] if author else None,
        'description': _text_of(soup, 'div.productDescription'),
        'coverPath': _src_of(soup, 'img#image-main', url),
        'publisher': _labeled(soup, 'Editorial:', 'td'),
        'pageCount': parse_page_count(_labeled(soup, 'Páginas:', 'td')),
    })


def extract_buscalibre(soup: BeautifulSoup, url: str) -> Extracted:
    author = _text_of(soup, 'div.autor') or _text_of(soup, '[itemprop="author"]')
    return _finish({
        'title': _text_of(soup, 'h1[itemprop="name"]'),
        'authors': [author] if author else None,
        'description': _text_of(soup, 'div#descripcion'),
        'coverPath': _src_of(soup, 'img#primaryimage', url),
        'publisher': _labeled(soup, 'Editorial:', 'a'),
    })


def extract_nordica(soup: BeautifulSoup, url: str) -> Extracted:
    author = _text_of(soup, 'div.item-autor')
    return _finish({
        'title': _text_of(soup, 'h1.product_title'),
        'authors': [author] if author else None,
        'description': _text_of(soup, 'div.woocommerce-product-details__short-description'),
        'coverPath': _src_of(soup, 'img.wp-post-image', url),
    })


def extract_generic(soup: BeautifulSoup, url: str) -> Extracted:
    """OpenGraph tags, with ``<title>`` when there is no og:title."""
    def _og(prop: str) -> Optional[str]:
        node = soup.find('meta', attrs={'property': f'og:{prop}'})
        content = node.get('content') if node else None
        return clean_text(content) or None

    image = _og('image')
    return _finish({
        'title': _og('title') or _text_of(soup, 'title'),
        'description': _og('description'),
        'coverPath': urljoin(url, image) if image else None,
    })


DEFAULT_EXTRACTORS: List[SiteExtractor] = [
    SiteExtractor('cuspide', url_contains('cuspide.com'), extract_cuspide),
    SiteExtractor('sbs', url_contains('sbs.com.ar'), extract_sbs),
    SiteExtractor('buscalibre', url_contains('buscalibre'), extract_buscalibre),
    SiteExtractor('nordica', url_contains('nordicalibros.com'), extract_nordica),
]


class ScraperService:
    """Fetch a product page and run the first matching extractor over it."""

    def __init__(self, timeout: float = DEFAULT_TIMEOUT, extractors: Optional[List[SiteExtractor]] = None):
        self.timeout = timeout
        self.extractors = list(DEFAULT_EXTRACTORS if extractors is None else extractors)
        self.fallback = SiteExtractor('generic', lambda url: True, extract_generic)

    def register(self, extractor: SiteExtractor) -> None:
        """Add a site extractor, tried before the ones already registered."""
        self.extractors.insert(0, extractor)

    def extractor_for(self, url: str) -> SiteExtractor:
        for extractor in self.extractors:
            if extractor.matches(url):
                return extractor
        return self.fallback

    def parse(self, html: str, url: str) -> Extracted:
        extractor = self.extractor_for(url)
        soup = BeautifulSoup(html, 'html.parser')
        return extractor.extract(soup, url)

    def scrape(self, url: str) -> Optional[Extracted]:
        """Partial metadata for ``url``; None when the page can't be fetched or parsed."""
        if not url or not str(url).startswith(('http://', 'https://')):
            logger.warning(f"[SCRAPER] refusing non-http url: {url!r}")
            return None
        try:
            resp = provider_get('scraper', url, headers={'User-Agent': BROWSER_USER_AGENT}, timeout=self.timeout)
            resp.raise_for_status()
            data = self.parse(resp.text, url)
            logger.info(f"[SCRAPER] {self.extractor_for(url).name} extracted {sorted(data)} from {url}")
            return data
        except Exception as e:
            logger.error(f"[SCRAPER] error scraping {url}: {e}")
            return None
