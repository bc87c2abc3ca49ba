"""Merge import rows that resolve to the same catalog entry."""

import logging
from collections import defaultdict
from typing import Iterable

from resolver import AggregatedRow, ImportRow, Tier

log = logging.getLogger(__name__)

TEXT_CAP = 1000
NOTES_SEPARATOR = '\n—\n'
RATINGS_SEPARATOR = '; '

# Status priority: one stored bottle keeps the wine in the cellar
STATUS_PRIORITY = ('stored', 'drank', 'lost')

LATEST_WINS = ('value', 'typical_price', 'currency', 'color', 'alcohol', 'bottle_size')


def _present(value) -> bool:
    return value is not None and value != ''


def _latest(rows: list[ImportRow], name: str):
    """Value of ``name`` from the last row that has one."""
    for row in reversed(rows):
        value = getattr(row, name)
        if _present(value):
            return value
    return None


def _most_frequent(values: list[str]) -> str | None:
    """Most frequent non-empty value; the first seen wins ties."""
    counts: dict[str, int] = {}
    for value in values:
        if value:
            counts[value] = counts.get(value, 0) + 1
    if not counts:
        return None
    # max() returns the first maximal item in insertion order
    return max(counts, key=counts.get)


def _distinct(values: Iterable[str]) -> list[str]:
    seen: list[str] = []
    for value in values:
        if value and value not in seen:
            seen.append(value)
    return seen


def _join_ratings(blobs: Iterable[str]) -> str:
    """Distinct rating pieces, capped without leaving an empty trailing piece."""
    pieces = _distinct(RATINGS_SEPARATOR.join(blobs).split(RATINGS_SEPARATOR))
    capped = RATINGS_SEPARATOR.join(pieces)[:TEXT_CAP]
    return RATINGS_SEPARATOR.join(_distinct(capped.split(RATINGS_SEPARATOR)))


def merge_group(catalog_id: int, rows: list[ImportRow]) -> AggregatedRow:
    """Collapse the rows of one catalog id into a single upsert payload.

    Args:
        catalog_id: Catalog id shared by all rows.
        rows: Rows in file order.

    Returns:
        AggregatedRow carrying the merged values and row provenance.
    """
    merged = AggregatedRow(catalog_id=catalog_id)
    merged.quantity = sum(row.quantity for row in rows)
    merged.row_count = sum(row.row_count for row in rows)
    merged.where_stored = _most_frequent([row.where_stored for row in rows])

    for name in LATEST_WINS:
        value = _latest(rows, name)
        if value is not None:
            setattr(merged, name, value)

    notes = _distinct(row.notes for row in rows)
    if notes:
        merged.notes = NOTES_SEPARATOR.join(notes)[:TEXT_CAP]

    ratings = [row.rating for row in rows if row.rating is not None]
    if ratings:
        merged.rating = max(ratings)

    starts = [row.drink_from for row in rows if row.drink_from is not None]
    if starts:
        merged.drink_starting = min(starts)
    ends = [row.drink_to for row in rows if row.drink_to is not None]
    if ends:
        merged.drink_by = max(ends)

    blobs = [row.ratings_blob for row in rows if row.ratings_blob]
    if blobs:
        merged.ratings = _join_ratings(blobs)

    statuses = {row.status for row in rows}
    merged.status = next((s for s in STATUS_PRIORITY if s in statuses), 'lost')

    return merged


def aggregate(rows: Iterable[ImportRow]) -> dict[int, AggregatedRow]:
    """Group rows by matched catalog id and merge each group.

    Rows without a ``matched_catalog_id`` are left out; they need a new
    catalog entry first. The result keeps first-occurrence order.

    Args:
        rows: Resolved import rows in file order.

    Returns:
        Dict of catalog id -> AggregatedRow.
    """
    grouped: dict[int, list[ImportRow]] = defaultdict(list)
    for row in rows:
        if row.matched_catalog_id is not None:
            grouped[row.matched_catalog_id].append(row)

    aggregated = {cid: merge_group(cid, group) for cid, group in grouped.items()}
    log.info("%d rows aggregated into %d items", sum(len(g) for g in grouped.values()),
             len(aggregated))
    return aggregated


def to_import_row(merged: AggregatedRow, row_index: int = 0) -> ImportRow:
    """Express an aggregate as a single import row.

    Aggregating the result again yields the same aggregate, which makes a
    retried commit safe.
    """
    return ImportRow(
        row_index=row_index,
        quantity=merged.quantity,
        where_stored=merged.where_stored,
        value=merged.value,
        currency=merged.currency,
        status=merged.status,
        notes=merged.notes,
        rating=merged.rating,
        drink_from=merged.drink_starting,
        drink_to=merged.drink_by,
        typical_price=merged.typical_price,
        ratings_blob=merged.ratings,
        color=merged.color,
        alcohol=merged.alcohol,
        bottle_size=merged.bottle_size,
        matched_catalog_id=merged.catalog_id,
        match_status=Tier.EXACT_MATCH,
        row_count=merged.row_count,
    )
