"""
Domain layer - book records, per-user configuration and their vocabulary.
"""

from .models import (
    BookStatus,
    Library,
    UserConfig,
    default_config,
    filter_books,
    isoformat_utc,
    now_utc,
)

__all__ = [
    'BookStatus',
    'Library',
    'UserConfig',
    'default_config',
    'filter_books',
    'isoformat_utc',
    'now_utc',
]
