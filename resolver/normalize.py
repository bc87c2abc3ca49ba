"""Normalization and validation of mapped spreadsheet rows."""

import math
import re
from datetime import date, datetime
from typing import Any, Mapping

from resolver import ImportRow
from resolver.reader import normalize_whitespace

_CRITIC_RE = re.compile(r'\b(?:WA|WS|WE|RP|JH)\s+\d+', re.IGNORECASE)

LOCATION_SEPARATOR = ' — '


def _text(value: Any) -> str | None:
    if value is None:
        return None
    cleaned = normalize_whitespace(str(value))
    return cleaned or None


def normalize_status(status: str | None) -> str:
    """Map free-text status onto stored / drank / lost."""
    if not status:
        return 'stored'
    normalized = status.lower().strip()
    if any(word in normalized for word in ('consumed', 'drank', 'drunk')):
        return 'drank'
    if any(word in normalized for word in ('missing', 'lost', 'gone')):
        return 'lost'
    return 'stored'


def normalize_rating(rating: Any) -> int | None:
    """Convert a star string, a 1-5 score or a 50-100 score to 1-5.

    Returns:
        Rating between 1 and 5, or None if the value is not understood.
    """
    if rating is None or rating == '':
        return None

    if isinstance(rating, str):
        stars = rating.count('★')
        if stars:
            return min(max(stars, 1), 5)
        try:
            rating = float(rating.strip())
        except ValueError:
            return None

    value = float(rating)
    if 50 <= value <= 100:
        return math.floor(max(min(value / 20, 5), 1) + 0.5)
    if 1 <= value <= 5:
        return math.floor(value + 0.5)
    return None


def normalize_alcohol(alcohol: Any) -> float | None:
    """Parse an alcohol percentage ('13.5%', 13.5) clamped to 0-30."""
    if alcohol is None or alcohol == '':
        return None
    try:
        value = float(str(alcohol).replace('%', '').strip())
    except ValueError:
        return None
    return max(min(value, 30.0), 0.0)


_DATE_FORMATS = ('%Y-%m-%d', '%m/%d/%Y', '%Y-%m', '%Y')


def normalize_date(value: Any) -> date | None:
    """Parse YYYY, YYYY-MM, MM/DD/YYYY, YYYY-MM-DD or an ISO timestamp.

    Partial dates resolve to the first day of the year or month.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    cleaned = str(value).strip()
    if not cleaned:
        return None
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(cleaned, fmt).date()
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(cleaned).date()
    except ValueError:
        return None


def normalize_where_stored(location: Any = None, bin_: Any = None) -> str | None:
    """Join location and bin into one storage description."""
    parts = [p for p in (_text(location), _text(bin_)) if p]
    if not parts:
        return None
    return LOCATION_SEPARATOR.join(parts)


def normalize_ratings(ratings: Any) -> str | None:
    """Extract critic scores like 'WA 94' from a free-text ratings cell.

    Falls back to the trimmed text when no known critic code is present.
    """
    text = _text(ratings)
    if not text:
        return None
    found: list[str] = []
    for hit in _CRITIC_RE.findall(text):
        hit = ' '.join(hit.split())
        if hit not in found:
            found.append(hit)
    if not found:
        return text
    return '; '.join(found)


def _number(value: Any, kind: type, field_name: str, errors: list[str]):
    if value is None or value == '':
        return None
    if isinstance(value, str):
        cleaned = re.sub(r'[^\d.,\-]', '', value)
        if ',' in cleaned and '.' in cleaned:
            cleaned = cleaned.replace(',', '')
        else:
            cleaned = cleaned.replace(',', '.')
    else:
        cleaned = value
    try:
        number = float(cleaned)
    except (TypeError, ValueError):
        errors.append(f"{field_name} is not a number: {value!r}")
        return None
    return int(number) if kind is int else number


_WINDOW_RE = re.compile(r'^(\S+)\s*(?:-|–|to)\s*(\S+)$')


def normalize_row(raw: Mapping[str, Any], row_index: int) -> ImportRow:
    """Build an :class:`ImportRow` from a mapped raw row.

    Unparseable numeric fields are recorded in ``errors`` rather than
    raised, so :func:`validate_row` can report them with the rest.

    Args:
        raw: Row keyed by mapping target (see ``resolver.reader``).
        row_index: Zero-based position in the source file.

    Returns:
        Normalized row.
    """
    errors: list[str] = []
    quantity = _number(raw.get('quantity'), int, 'Quantity', errors)

    drink_from = raw.get('drink_from')
    drink_to = raw.get('drink_to')
    window = _text(raw.get('drink_window'))
    if window and not (drink_from or drink_to):
        bounds = _WINDOW_RE.match(window)
        if bounds:
            drink_from, drink_to = bounds.groups()
        else:
            drink_from = window

    return ImportRow(
        row_index=row_index,
        wine_name=_text(raw.get('wine_name')),
        producer=_text(raw.get('producer')),
        vintage=_number(raw.get('vintage'), int, 'Vintage', errors),
        quantity=1 if quantity is None else quantity,
        where_stored=normalize_where_stored(raw.get('where_stored'), raw.get('bin')),
        value=_number(raw.get('value'), float, 'Price', errors),
        currency=_text(raw.get('currency')) or 'USD',
        status=normalize_status(_text(raw.get('status'))),
        notes=_text(raw.get('notes')),
        rating=normalize_rating(raw.get('rating')),
        drink_from=normalize_date(drink_from),
        drink_to=normalize_date(drink_to),
        typical_price=_number(raw.get('typical_price'), float, 'Typical price', errors),
        ratings_blob=normalize_ratings(raw.get('ratings_blob')),
        color=_text(raw.get('color')),
        alcohol=normalize_alcohol(raw.get('alcohol')),
        bottle_size=_text(raw.get('bottle_size')),
        upc=_text(raw.get('upc')),
        barcode=_text(raw.get('barcode')),
        url=_text(raw.get('url')),
        errors=errors,
    )


def validate_row(row: ImportRow) -> list[str]:
    """All validation errors of a normalized row (empty if valid)."""
    errors = list(row.errors)

    if not row.wine_name and (not row.producer or not row.vintage):
        errors.append('Either wine name or both producer and vintage are required')

    if row.quantity < 0:
        errors.append('Quantity must be non-negative')

    if row.rating is not None and not 1 <= row.rating <= 5:
        errors.append('Rating must be between 1 and 5')

    if row.alcohol is not None and not 0 <= row.alcohol <= 30:
        errors.append('Alcohol percentage must be between 0 and 30')

    return errors
