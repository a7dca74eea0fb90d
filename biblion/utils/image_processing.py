from __future__ import annotations

from io import BytesIO
import ipaddress
import logging
import socket
import time
import uuid
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

import requests
from PIL import Image, ImageOps

logger = logging.getLogger(__name__)

MAX_REMOTE_IMAGE_BYTES = 5 * 1024 * 1024  # 5MB safety ceiling
COVERS_URL_PREFIX = '/api/covers/'


def _choose_format(original_mode: str) -> tuple[str, str]:
    """JPEG for photographic covers; PNG when the source has alpha."""
    mode = (original_mode or '').upper()
    if 'A' in mode or mode == 'P':
        return 'PNG', '.png'
    return 'JPEG', '.jpg'


def _prepare_image(img: Image.Image, out_fmt: str) -> Image.Image:
    """Ensure the image is in a correct mode for saving in out_fmt (handle alpha on JPEG)."""
    if out_fmt == 'JPEG' and img.mode != 'RGB':
        return img.convert('RGB')
    return img


def ensure_safe_remote_image_url(url: str) -> str:
    """Validate that a remote image URL is safe to fetch.

    - Must be http/https with hostname.
    - Host must not resolve to private, loopback, multicast, or link-local ranges.
    Raises ValueError if the URL is unsafe.
    """
    parsed = urlparse(url)
    if parsed.scheme not in ('http', 'https'):
        raise ValueError("Cover URL must use http or https scheme")
    if not parsed.hostname:
        raise ValueError("Cover URL must include a hostname")

    try:
        addr_info = socket.getaddrinfo(parsed.hostname, None)
    except socket.gaierror as exc:
        raise ValueError(f"Unable to resolve cover host: {parsed.hostname}") from exc

    for info in addr_info:
        ip_obj = ipaddress.ip_address(info[4][0])
        if ip_obj.is_private or ip_obj.is_loopback or ip_obj.is_link_local or ip_obj.is_multicast or ip_obj.is_reserved:
            raise ValueError("Cover URL resolves to a disallowed network range")

    return url


def store_cover_bytes(image_bytes: bytes, covers_dir: Path, stem: Optional[str] = None) -> str:
    """Re-encode image bytes (bounded size, EXIF orientation applied) into ``covers_dir``.

    Returns the stored file name.
    """
    covers_dir.mkdir(parents=True, exist_ok=True)
    with Image.open(BytesIO(image_bytes)) as img:
        out_fmt, out_ext = _choose_format(img.mode)
        img = ImageOps.exif_transpose(img)
        if img.width > 1200 or img.height > 1800:
            img = ImageOps.contain(img, (1200, 1800), Image.Resampling.LANCZOS)
        img = _prepare_image(img, out_fmt)

        filename = f"{stem + '_' if stem else ''}{uuid.uuid4().hex[:12]}{out_ext}"
        save_kwargs = {'quality': 90, 'optimize': True} if out_fmt == 'JPEG' else {'optimize': True}
        img.save(covers_dir / filename, format=out_fmt, **save_kwargs)
    return filename


def download_cover(url: str, covers_dir: Path, stem: Optional[str] = None, timeout: float = 6) -> str:
    """Download a remote cover, store it locally and return the stored file name."""
    ensure_safe_remote_image_url(url)

    start = time.perf_counter()
    resp = requests.get(url, timeout=timeout, stream=True)
    resp.raise_for_status()
    content_length = resp.headers.get('Content-Length')
    if content_length and content_length.isdigit() and int(content_length) > MAX_REMOTE_IMAGE_BYTES:
        resp.close()
        raise ValueError("Remote image exceeds maximum allowed size")

    buf = BytesIO()
    total_bytes = 0
    for chunk in resp.iter_content(chunk_size=16384):
        if not chunk:
            continue
        buf.write(chunk)
        total_bytes += len(chunk)
        if total_bytes > MAX_REMOTE_IMAGE_BYTES:
            resp.close()
            raise ValueError("Remote image download exceeded maximum allowed size")

    filename = store_cover_bytes(buf.getvalue(), covers_dir, stem)
    logger.info(f"[COVER][DL] {url} -> {filename} ({total_bytes} bytes, {time.perf_counter() - start:.3f}s)")
    return filename
