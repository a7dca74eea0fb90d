"""ISBN canonicalization.

Only canonicalizes; length and checksum validation belong to the capture side.
"""

import re

_NON_ALNUM = re.compile(r'[^a-zA-Z0-9]')


def normalize_isbn(raw) -> str:
    """Strip everything but ASCII letters/digits and uppercase the rest.

    ``normalize_isbn('978-0-13-468599-1') == '9780134685991'``
    ``normalize_isbn('0-8044-2957-x') == '080442957X'``
    """
    if raw is None:
        return ''
    return _NON_ALNUM.sub('', str(raw)).upper()


def same_isbn(a, b) -> bool:
    return normalize_isbn(a) == normalize_isbn(b)
