"""
HTTP API package for the companion server.
"""

from .books import books_api

__all__ = ['books_api']
