"""Fuzzy matching of uncertain wine fields against catalog entries."""

import logging
import os
from typing import Iterable

from resolver import (
    CatalogEntry,
    Confidence,
    ImportRow,
    MatchCandidate,
    MatchQuery,
    MatchResult,
    Tier,
)
from resolver.similarity import similarity

log = logging.getLogger(__name__)

# Admission threshold ("70% rule") and the EXACT_MATCH cut-off.
# Both are empirical and still need calibration against labeled data.
DEFAULT_THRESHOLD = 0.70
EXACT_CONFIDENCE = 0.80
DEFAULT_LIMIT = 25

WEIGHTS: dict[str, float] = {
    'producer': 0.5,
    'wine_name': 0.5,
}


def default_threshold() -> float:
    """Admission threshold, overridable through MATCH_SCORE_MIN."""
    return float(os.getenv('MATCH_SCORE_MIN', DEFAULT_THRESHOLD))


def score_entry(query: MatchQuery, entry: CatalogEntry) -> float:
    """Weighted producer/wine-name similarity of a catalog entry."""
    score = (
        WEIGHTS['producer'] * similarity(query.producer, entry.producer)
        + WEIGHTS['wine_name'] * similarity(query.wine_name, entry.wine_name)
    )
    return round(score, 4)


def classify(candidates: tuple[MatchCandidate, ...], threshold: float) -> Tier:
    """Tier of the top candidate."""
    if not candidates:
        return Tier.NO_MATCH
    confidence = candidates[0].confidence
    if confidence >= EXACT_CONFIDENCE:
        return Tier.EXACT_MATCH
    if confidence >= threshold:
        return Tier.LIKELY_MATCH
    return Tier.NO_MATCH


def _rank_key(candidate: MatchCandidate) -> tuple:
    # Confidence first; vintage match breaks ties
    return (
        -candidate.confidence,
        not candidate.vintage_matched,
        -candidate.score,
        candidate.catalog_id,
    )


def match(
    query: MatchQuery,
    catalog: Iterable[CatalogEntry],
    threshold: float = DEFAULT_THRESHOLD,
    limit: int | None = DEFAULT_LIMIT,
) -> MatchResult:
    """Rank catalog entries against a (producer, wine name, vintage) query.

    Entries scoring below ``threshold`` are dropped before ranking.
    Survivors are ordered by confidence; vintage match breaks ties.

    Args:
        query: Uncertain fields to resolve.
        catalog: Snapshot of candidate entries.
        threshold: Admission threshold (0-1).
        limit: Maximum number of candidates returned (None for all).

    Returns:
        MatchResult with sorted candidates and the tier of the best one.
    """
    if not query.producer or not query.wine_name:
        return MatchResult(candidates=(), tier=Tier.NO_MATCH)

    candidates: list[MatchCandidate] = []
    for entry in catalog:
        score = score_entry(query, entry)
        if score < threshold:
            continue
        vintage_matched = query.vintage is not None and query.vintage == entry.vintage
        candidates.append(MatchCandidate(
            catalog_id=entry.catalog_id,
            score=score,
            confidence=Confidence.compose(score, vintage_matched),
            vintage_matched=vintage_matched,
            entry=entry,
        ))

    candidates.sort(key=_rank_key)
    if limit is not None:
        candidates = candidates[:limit]
    ranked = tuple(candidates)
    tier = classify(ranked, threshold)

    log.debug(
        "Matched %r / %r: %d candidates, tier %s",
        query.producer, query.wine_name, len(ranked), tier.value,
    )
    return MatchResult(candidates=ranked, tier=tier)


def find_by_code(code: str | None, catalog: Iterable[CatalogEntry]) -> CatalogEntry | None:
    """Exact UPC/barcode lookup."""
    if not code:
        return None
    code = code.strip()
    for entry in catalog:
        if code in (entry.upc, entry.barcode):
            return entry
    return None


def match_row(
    row: ImportRow,
    catalog: Iterable[CatalogEntry],
    threshold: float = DEFAULT_THRESHOLD,
) -> MatchResult:
    """Resolve an import row: UPC, then barcode, then fuzzy matching.

    Args:
        row: Normalized, valid import row.
        catalog: Snapshot of candidate entries.
        threshold: Admission threshold for the fuzzy stage.

    Returns:
        MatchResult; a code hit is an EXACT_MATCH with confidence 1.0.
    """
    entries = list(catalog)
    for code in (row.upc, row.barcode):
        entry = find_by_code(code, entries)
        if entry is not None:
            candidate = MatchCandidate(
                catalog_id=entry.catalog_id,
                score=1.0,
                confidence=Confidence(1.0),
                vintage_matched=row.vintage is not None and row.vintage == entry.vintage,
                entry=entry,
            )
            return MatchResult(candidates=(candidate,), tier=Tier.EXACT_MATCH)

    query = MatchQuery(producer=row.producer, wine_name=row.wine_name, vintage=row.vintage)
    return match(query, entries, threshold)
