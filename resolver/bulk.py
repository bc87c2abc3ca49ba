"""Bulk spreadsheet import: preview (match every row), then commit."""

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Iterable, Mapping

from resolver import ImportRow, MatchResult, Tier
from resolver.aggregate import aggregate
from resolver.errors import CatalogError
from resolver.matching import DEFAULT_THRESHOLD, match_row
from resolver.normalize import normalize_row, validate_row
from resolver.reader import apply_mapping
from resolver.repository import CatalogRepository

log = logging.getLogger(__name__)


@dataclass
class PreviewStats:
    total: int = 0
    valid: int = 0
    exact_matches: int = 0
    likely_matches: int = 0
    no_matches: int = 0
    errors: int = 0


@dataclass
class PreviewResponse:
    stats: PreviewStats
    rows: list[ImportRow] = field(default_factory=list)


@dataclass
class CommitSummary:
    inserted_entities: int = 0
    upserted_items: int = 0
    total_quantity: int = 0
    skipped_rows: int = 0
    error_rows: int = 0


def _match_safely(row: ImportRow, catalog: CatalogRepository, threshold: float) -> MatchResult:
    try:
        return match_row(row, catalog.snapshot(), threshold)
    except CatalogError as exc:
        log.warning("Row %d: catalog unavailable, treated as no match: %s", row.row_index, exc)
        return MatchResult(candidates=(), tier=Tier.NO_MATCH)
    except Exception:
        log.exception("Row %d: catalog lookup raised, treated as no match", row.row_index)
        return MatchResult(candidates=(), tier=Tier.NO_MATCH)


def preview(
    raw_rows: Iterable[Mapping[str, Any]],
    mapping: Mapping[str, str],
    catalog: CatalogRepository,
    threshold: float = DEFAULT_THRESHOLD,
) -> PreviewResponse:
    """Normalize, validate and match every row without writing anything.

    Invalid rows are reported with their errors and are not matched; they
    never stop the rest of the file.

    Args:
        raw_rows: Rows keyed by spreadsheet header.
        mapping: Mapping target -> spreadsheet header.
        catalog: Catalog to match against.
        threshold: Admission threshold for fuzzy matching.

    Returns:
        PreviewResponse with per-row match status and totals.
    """
    stats = PreviewStats()
    rows: list[ImportRow] = []

    for index, raw in enumerate(raw_rows):
        stats.total += 1
        row = normalize_row(apply_mapping(raw, mapping), index)
        row.errors = validate_row(row)

        if row.errors:
            log.warning("Row %d rejected: %s", index, '; '.join(row.errors))
            stats.errors += 1
            rows.append(row)
            continue

        stats.valid += 1
        result = _match_safely(row, catalog, threshold)
        row.match_status = result.tier
        if result.top is not None:
            row.matched_catalog_id = result.top.catalog_id
            row.match_score = result.top.score

        if result.tier is Tier.EXACT_MATCH:
            stats.exact_matches += 1
        elif result.tier is Tier.LIKELY_MATCH:
            stats.likely_matches += 1
        else:
            stats.no_matches += 1
        rows.append(row)

    log.info(
        "Preview: %d rows, %d exact, %d likely, %d no match, %d errors",
        stats.total, stats.exact_matches, stats.likely_matches,
        stats.no_matches, stats.errors,
    )
    return PreviewResponse(stats=stats, rows=rows)


def _new_entity_fields(row: ImportRow) -> dict[str, Any]:
    return {
        'producer': row.producer,
        'wine_name': row.wine_name,
        'vintage': row.vintage,
        'color': row.color,
        'alcohol': row.alcohol,
        'bottle_size': row.bottle_size,
        'upc': row.upc,
        'barcode': row.barcode,
    }


def _item_payload(merged) -> dict[str, Any]:
    return {
        'quantity': merged.quantity,
        'where_stored': merged.where_stored,
        'value': merged.value,
        'status': merged.status,
        'currency': merged.currency,
        'notes': merged.notes,
        'rating': merged.rating,
        'drink_starting': merged.drink_starting.isoformat() if merged.drink_starting else None,
        'drink_by': merged.drink_by.isoformat() if merged.drink_by else None,
        'typical_price': merged.typical_price,
        'ratings': merged.ratings,
        'color': merged.color,
        'alcohol': merged.alcohol,
        'bottle_size': merged.bottle_size,
    }


def commit(
    response: PreviewResponse,
    repository: CatalogRepository,
    owner_id: str,
    accept_likely: bool = False,
) -> CommitSummary:
    """Write a previewed import.

    Exact matches keep their catalog id; likely matches keep it only with
    ``accept_likely``, otherwise they get a new entity like unmatched rows.
    Rows are then aggregated per catalog id and each group is upserted under
    ``(owner_id, catalog_id)``. Both writes are idempotent upserts, so a
    retried commit converges instead of duplicating.

    Args:
        response: Output of :func:`preview`.
        repository: Catalog store to write to.
        owner_id: Owner of the imported cellar items.
        accept_likely: Commit likely matches to their top candidate.

    Returns:
        CommitSummary with write counts.
    """
    summary = CommitSummary()
    summary.error_rows = sum(1 for row in response.rows if row.errors)

    resolved: list[ImportRow] = []
    known_ids = {entry.catalog_id for entry in repository.snapshot()}
    created: set[int] = set()
    for row in response.rows:
        if row.errors:
            continue
        catalog_id = row.matched_catalog_id
        use_match = row.match_status is Tier.EXACT_MATCH or (
            row.match_status is Tier.LIKELY_MATCH and accept_likely
        )
        if not use_match or catalog_id is None:
            try:
                catalog_id = repository.upsert_entity(_new_entity_fields(row))
            except CatalogError as exc:
                log.warning("Row %d skipped, entity not created: %s", row.row_index, exc)
                continue
            if catalog_id not in known_ids:
                created.add(catalog_id)
        resolved.append(replace(row, matched_catalog_id=catalog_id))

    summary.inserted_entities = len(created)

    groups = aggregate(resolved)
    for catalog_id, merged in groups.items():
        try:
            repository.upsert_item(owner_id, catalog_id, _item_payload(merged))
        except CatalogError as exc:
            log.warning("Item for catalog entry %d not written: %s", catalog_id, exc)
            continue
        summary.upserted_items += 1
        summary.total_quantity += merged.quantity

    summary.skipped_rows = len(resolved) - len(groups)
    log.info(
        "Commit: %d entities created, %d items upserted, %d bottles",
        summary.inserted_entities, summary.upserted_items, summary.total_quantity,
    )
    return summary
