# Utils package for Biblion

from .isbn import normalize_isbn
from .unified_metadata import MetadataReconciler

__all__ = [
    'normalize_isbn',
    'MetadataReconciler',
]
