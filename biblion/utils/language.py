"""Function-word language sniffing for book descriptions."""

from typing import Dict, Tuple

# Space-padded so that 'the' does not match inside 'other'
FUNCTION_WORDS: Dict[str, Tuple[str, ...]] = {
    'en': (' the ', ' is ', ' of ', ' and ', ' with ', ' for ', ' was ', ' but '),
    'es': (' el ', ' la ', ' los ', ' las ', ' de ', ' que ', ' con ', ' una ', ' pero '),
    'pt': (' o ', ' os ', ' da ', ' do ', ' que ', ' com ', ' uma ', ' mas ', ' não '),
}

MIN_DISTINCT_MATCHES = 2


def looks_like_language(text, language: str) -> bool:
    """True when at least two distinct function words of ``language`` occur in ``text``."""
    if not text:
        return False
    words = FUNCTION_WORDS.get(language)
    if not words:
        return False
    lowered = str(text).lower()
    matches = sum(1 for word in words if word in lowered)
    return matches >= MIN_DISTINCT_MATCHES
