"""Outbound HTTP helpers for metadata providers and the page scraper.

Every call carries an explicit timeout. A small per-provider limiter backs off
when a provider answers 429 (or a Google Books quota 403) and slowly recovers
on success; 5xx answers and 429s are retried a bounded number of times.

Tuning via env vars:
- HTTP_MAX_DELAY_SECONDS (default 10)
- HTTP_MAX_RETRIES (default 2)
"""

from __future__ import annotations

import logging
import os
import threading
import time
from typing import Any, Dict, Mapping, Optional

import requests

logger = logging.getLogger(__name__)

USER_AGENT = 'Biblion/metadata-fetch (+https://example.local)'
BROWSER_USER_AGENT = (
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 '
    '(KHTML, like Gecko) Chrome/124.0 Safari/537.36'
)
DEFAULT_TIMEOUT = 8.0


def _read_float_env(name: str, default: float) -> float:
    try:
        raw = os.getenv(name)
        if raw in (None, ''):
            return default
        return float(raw)
    except ValueError:
        return default


def _parse_retry_after_seconds(headers: Mapping[str, str]) -> Optional[float]:
    try:
        ra = headers.get('Retry-After')
        if not ra:
            return None
        # Retry-After can be seconds or HTTP date; handle seconds only.
        return float(ra)
    except (TypeError, ValueError):
        return None


class ProviderLimiter:
    """Delay between calls to one provider, widened on rate limiting."""

    def __init__(self, key: str):
        self.key = key
        self._lock = threading.Lock()
        self._max_delay = _read_float_env('HTTP_MAX_DELAY_SECONDS', 10.0)
        self.delay = 0.0
        self._next_allowed = time.monotonic()
        self._success_streak = 0

    def wait(self) -> None:
        with self._lock:
            wait_for = max(0.0, self._next_allowed - time.monotonic())
            self._next_allowed = time.monotonic() + wait_for + self.delay
        if wait_for > 0:
            time.sleep(wait_for)

    def on_success(self) -> None:
        with self._lock:
            self._success_streak += 1
            # Recover slowly (only after a few successes to avoid flapping).
            if self._success_streak >= 3 and self.delay > 0:
                self.delay = self.delay * 0.5 if self.delay > 0.1 else 0.0
                self._success_streak = 0

    def on_rate_limited(self, retry_after_seconds: Optional[float] = None) -> None:
        with self._lock:
            self._success_streak = 0
            new_delay = max(0.5, self.delay * 2)
            if retry_after_seconds is not None:
                new_delay = max(new_delay, retry_after_seconds)
            self.delay = min(self._max_delay, new_delay)
            self._next_allowed = time.monotonic() + self.delay


_limiters: Dict[str, ProviderLimiter] = {}
_limiters_lock = threading.Lock()


def get_limiter(key: str) -> ProviderLimiter:
    with _limiters_lock:
        limiter = _limiters.get(key)
        if limiter is None:
            limiter = ProviderLimiter(key)
            _limiters[key] = limiter
        return limiter


def reset_limiters() -> None:
    with _limiters_lock:
        _limiters.clear()


def _looks_like_google_quota(resp: requests.Response) -> bool:
    if resp.status_code != 403:
        return False
    text = (getattr(resp, 'text', '') or '')[:4000]
    return 'rateLimitExceeded' in text or 'quotaExceeded' in text or 'Daily Limit Exceeded' in text


def provider_get(
    provider: str,
    url: str,
    *,
    params: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
    timeout: Optional[float] = None,
    max_retries: Optional[int] = None,
) -> requests.Response:
    """``requests.get`` with pacing, a mandatory timeout and retry on 429/5xx.

    Returns the final response (even if unsuccessful); network errors from the
    last attempt propagate as ``requests.RequestException``.
    """
    limiter = get_limiter(provider)
    retries = max_retries if max_retries is not None else int(_read_float_env('HTTP_MAX_RETRIES', 2))
    retries = max(1, retries)
    send_headers = {'User-Agent': USER_AGENT}
    if headers:
        send_headers.update(headers)

    resp = None
    for attempt in range(retries):
        limiter.wait()
        try:
            resp = requests.get(url, params=params, headers=send_headers, timeout=timeout or DEFAULT_TIMEOUT)
        except requests.exceptions.RequestException as exc:
            logger.warning(f"[HTTP][ERROR] provider={provider} url={url} err={exc}")
            if attempt < retries - 1:
                continue
            raise

        if resp.status_code == 429 or _looks_like_google_quota(resp):
            ra = _parse_retry_after_seconds(resp.headers or {})
            limiter.on_rate_limited(ra)
            logger.warning(f"[HTTP][RATE_LIMIT] provider={provider} url={url} status={resp.status_code} retry_after={ra}")
            if attempt < retries - 1:
                continue
            return resp

        if 500 <= resp.status_code <= 599 and attempt < retries - 1:
            continue

        limiter.on_success()
        return resp

    return resp


def get_json(provider: str, url: str, **kwargs) -> Any:
    """GET and decode JSON; raises on non-2xx or undecodable bodies."""
    resp = provider_get(provider, url, **kwargs)
    resp.raise_for_status()
    return resp.json()
