"""String similarity primitives: normalization, n-gram sets, Dice coefficient."""

import re
import unicodedata

_NON_ALNUM_RE = re.compile(r'[^a-z0-9]+')


def normalize_text(text: str | None) -> str:
    """Normalize text for comparison.

    Removes accents/diacritics via NFD decomposition, lowercases, turns
    every run of non-alphanumeric characters into a single space and strips.

    Args:
        text: Raw producer or wine name.

    Returns:
        Normalized string ('' for None).
    """
    if not text:
        return ''
    decomposed = unicodedata.normalize('NFD', text)
    stripped = ''.join(ch for ch in decomposed if unicodedata.category(ch) != 'Mn')
    return _NON_ALNUM_RE.sub(' ', stripped.lower()).strip()


def ngrams(text: str | None, n: int) -> set[str]:
    """Set of overlapping ``n``-character windows of the normalized text.

    Spaces are removed before windowing, so word boundaries do not
    produce windows of their own.
    """
    compact = normalize_text(text).replace(' ', '')
    return {compact[i:i + n] for i in range(len(compact) - n + 1)}


def bigrams(text: str | None) -> set[str]:
    return ngrams(text, 2)


def trigrams(text: str | None) -> set[str]:
    return ngrams(text, 3)


def dice(a: set[str], b: set[str]) -> float:
    """Dice coefficient ``2|A∩B| / (|A|+|B|)``."""
    total = len(a) + len(b)
    if total == 0:
        return 0.0
    return 2 * len(a & b) / total


def _similarity(a: str | None, b: str | None, n: int) -> float:
    norm_a = normalize_text(a)
    norm_b = normalize_text(b)
    if not norm_a or not norm_b:
        return 0.0
    if norm_a == norm_b:
        return 1.0
    return dice(ngrams(norm_a, n), ngrams(norm_b, n))


def similarity(a: str | None, b: str | None) -> float:
    """Bigram Dice similarity of two strings after normalization.

    Args:
        a: First string.
        b: Second string.

    Returns:
        1.0 for identical normalized strings, 0.0 if either is empty after
        normalization, otherwise the Dice coefficient of their bigram sets.
    """
    return _similarity(a, b, 2)


def trigram_similarity(a: str | None, b: str | None) -> float:
    """Same as :func:`similarity` over trigram sets."""
    return _similarity(a, b, 3)
