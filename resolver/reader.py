"""Spreadsheet reader with encoding detection and column mapping."""

import csv
import io
import logging
import re
from pathlib import Path
from typing import Any, Mapping

from rapidfuzz import fuzz, process

from resolver import CatalogEntry

log = logging.getLogger(__name__)

# Matches any sequence of whitespace (including Unicode whitespace like U+2006)
_WHITESPACE_RE = re.compile(r'\s+')
_HEADER_PUNCT_RE = re.compile(r'[^\w\s]')

FUZZY_HEADER_CUTOFF = 85

# Header synonyms per mapping target (case/space/punctuation-insensitive)
RECOGNIZED_HEADERS: dict[str, tuple[str, ...]] = {
    'wine_name': ('Wine', 'Wine Name', 'Name'),
    'producer': ('Producer', 'Winery'),
    'vintage': ('Vintage',),
    'color': ('Color', 'Type'),
    'alcohol': ('Alcohol', 'ABV'),
    'bottle_size': ('Bottle Size', 'Format'),
    'quantity': ('Qty', 'Quantity'),
    'where_stored': ('Location',),
    'bin': ('Bin',),
    'value': ('Purchase Price', 'Price'),
    'typical_price': ('Typical Price', 'Est Value'),
    'currency': ('Currency',),
    'status': ('Status',),
    'drink_from': ('Drink From',),
    'drink_to': ('Drink To',),
    'drink_window': ('Drink Window',),
    'rating': ('My Rating',),
    'ratings_blob': ('Ratings', 'Score', 'WA', 'WS', 'WE'),
    'notes': ('Notes', 'Tasting Notes', 'Comment'),
    'upc': ('UPC',),
    'barcode': ('Barcode',),
    'url': ('URL',),
}

# CellarTracker export column -> mapping target
CELLARTRACKER_HEADERS: dict[str, str] = {
    'Barcode': 'barcode',
    'Color': 'color',
    'Currency': 'currency',
    'BeginConsume': 'drink_from',
    'EndConsume': 'drink_to',
    'Notes': 'notes',
    'Producer': 'producer',
    'Price': 'typical_price',
    'Vintage': 'vintage',
    'Bin': 'where_stored',
    'Location': 'where_stored',
    'Wine': 'wine_name',
    'Quantity': 'quantity',
}
# Columns that only a CellarTracker export has
_CELLARTRACKER_MARKERS = {'BeginConsume', 'EndConsume', 'iWine'}

CATALOG_COLUMNS = {'Catalog ID', 'Producer', 'Wine Name'}


def detect_encoding(path: Path) -> str:
    """Detect file encoding by checking for BOM bytes.

    Args:
        path: Path to the CSV file.

    Returns:
        Encoding string suitable for open().
    """
    with open(path, 'rb') as f:
        bom = f.read(2)
    if bom == b'\xff\xfe':
        return 'utf-16-le'
    return 'utf-8-sig'


def detect_delimiter(sample: str) -> str:
    """Guess the delimiter (comma, semicolon or tab) from the header line."""
    header = sample.splitlines()[0] if sample else ''
    counts = {d: header.count(d) for d in (',', ';', '\t')}
    best = max(counts, key=counts.get)
    return best if counts[best] else ','


def normalize_whitespace(value: str) -> str:
    """Normalize whitespace in a string value.

    Collapses any sequence of whitespace (including Unicode whitespace)
    into a single space and strips leading/trailing whitespace.

    Args:
        value: Raw string value from CSV.

    Returns:
        Normalized string.
    """
    return _WHITESPACE_RE.sub(' ', value).strip()


def read_table(path: str | Path) -> tuple[list[str], list[dict[str, str]]]:
    """Read a delimited text file into headers and row dicts.

    Handles UTF-16LE (with BOM) and UTF-8 encoded files and comma,
    semicolon or tab delimiters. Keys and values are whitespace-normalized.

    Args:
        path: Path to the file.

    Returns:
        Tuple of (headers, rows).

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file has no header line.
    """
    path = Path(path)
    encoding = detect_encoding(path)

    with open(path, 'r', encoding=encoding) as f:
        content = f.read()

    # Strip BOM if present
    content = content.lstrip('\ufeff')

    reader = csv.DictReader(io.StringIO(content), delimiter=detect_delimiter(content))
    if reader.fieldnames is None:
        raise ValueError(f"File {path} is empty or has no header line.")
    headers = [normalize_whitespace(c) for c in reader.fieldnames]

    rows = []
    for row in reader:
        rows.append({
            normalize_whitespace(k): normalize_whitespace(v or '')
            for k, v in row.items() if k is not None
        })

    log.info("%d rows read from %s", len(rows), path)
    return headers, rows


def _optional_int(value: str) -> int | None:
    return int(value) if value else None


def read_catalog(path: str | Path) -> list[CatalogEntry]:
    """Read catalog entries from a CSV export.

    Required columns: Catalog ID, Producer, Wine Name. Optional: Vintage,
    Alcohol, Color, Bottle Size, UPC, Barcode.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If required columns are missing.
    """
    headers, rows = read_table(path)
    missing = CATALOG_COLUMNS - set(headers)
    if missing:
        raise ValueError(f"Missing columns in {path}: {', '.join(sorted(missing))}")

    entries: list[CatalogEntry] = []
    for row_num, row in enumerate(rows, start=2):
        try:
            entries.append(CatalogEntry(
                catalog_id=int(row['Catalog ID']),
                producer=row['Producer'],
                wine_name=row['Wine Name'],
                vintage=_optional_int(row.get('Vintage', '')),
                alcohol=float(row['Alcohol']) if row.get('Alcohol') else None,
                color=row.get('Color') or None,
                bottle_size=row.get('Bottle Size') or None,
                upc=row.get('UPC') or None,
                barcode=row.get('Barcode') or None,
            ))
        except (ValueError, KeyError) as exc:
            log.warning("Row %d in %s skipped: %s", row_num, path, exc)

    log.info("%d catalog entries read from %s", len(entries), path)
    return entries


def normalize_header(header: str) -> str:
    """Lowercase, drop punctuation and collapse whitespace."""
    return normalize_whitespace(_HEADER_PUNCT_RE.sub('', header.lower()))


def _synonyms() -> list[tuple[str, str]]:
    return [
        (normalize_header(synonym), target)
        for target, synonyms in RECOGNIZED_HEADERS.items()
        for synonym in synonyms
    ]


def _contains_words(text: str, phrase: str) -> bool:
    return f' {phrase} ' in f' {text} '


def find_best_mapping(header: str) -> str | None:
    """Mapping target for a spreadsheet header, or None.

    Tries an exact synonym match, then containment, then a fuzzy match
    (rapidfuzz ratio) to tolerate typos such as 'Vintag'.
    """
    normalized = normalize_header(header)
    if not normalized:
        return None
    synonyms = _synonyms()

    for synonym, target in synonyms:
        if normalized == synonym:
            return target

    # Longest contained synonym wins ('producer name' is a producer)
    contained = [(s, t) for s, t in synonyms if _contains_words(normalized, s)]
    if contained:
        return max(contained, key=lambda pair: len(pair[0]))[1]

    best = process.extractOne(
        normalized, [s for s, _ in synonyms],
        scorer=fuzz.ratio, score_cutoff=FUZZY_HEADER_CUTOFF,
    )
    if best is not None:
        return synonyms[best[2]][1]
    return None


def mapping_confidence(header: str) -> str:
    """'high' for exact synonyms, 'medium' for partial or fuzzy, else 'low'."""
    normalized = normalize_header(header)
    if not normalized:
        return 'low'
    synonyms = [s for s, _ in _synonyms()]

    if normalized in synonyms:
        return 'high'
    if any(_contains_words(normalized, s) or _contains_words(s, normalized) for s in synonyms):
        return 'medium'
    if process.extractOne(normalized, synonyms, scorer=fuzz.ratio,
                          score_cutoff=FUZZY_HEADER_CUTOFF):
        return 'medium'
    return 'low'


def auto_map_columns(headers: list[str]) -> dict[str, str]:
    """Map targets to spreadsheet headers.

    CellarTracker exports get their fixed mapping; any other file is
    mapped header by header. The first header claiming a target wins.

    Returns:
        Dict of mapping target -> header.
    """
    mapping: dict[str, str] = {}

    if _CELLARTRACKER_MARKERS & set(headers):
        for header in headers:
            target = CELLARTRACKER_HEADERS.get(header)
            if target and target not in mapping:
                mapping[target] = header
        log.info("CellarTracker export detected, %d columns mapped", len(mapping))
        return mapping

    for header in headers:
        target = find_best_mapping(header)
        if target and target not in mapping:
            mapping[target] = header

    unmapped = [h for h in headers if h not in mapping.values()]
    if unmapped:
        log.info("Unmapped columns: %s", ', '.join(unmapped))
    return mapping


def apply_mapping(raw: Mapping[str, Any], mapping: Mapping[str, str]) -> dict[str, Any]:
    """Re-key a raw row by mapping target."""
    return {
        target: raw[column]
        for target, column in mapping.items()
        if column and column in raw
    }
