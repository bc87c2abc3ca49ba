"""Boundary to the field extraction collaborator."""

import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Mapping, Protocol, Union

from resolver import ExtractedFields, ImageBuffer

log = logging.getLogger(__name__)

CONFIDENCE_WEIGHTS: dict[str, float] = {
    'producer': 0.35,
    'wine_name': 0.35,
    'vintage': 0.20,
    'alcohol_percent': 0.10,
}

MIN_OVERALL_CONFIDENCE = 0.5


@dataclass(frozen=True)
class Extracted:
    fields: ExtractedFields


@dataclass(frozen=True)
class ExtractionFailed:
    reason: str


ExtractionResult = Union[Extracted, ExtractionFailed]


class Extractor(Protocol):
    """Turns a label image into field guesses. May raise or hang."""

    def extract(self, buffer: ImageBuffer) -> ExtractionResult:
        ...


class StaticExtractor:
    """Extractor that always returns the same fields (manual entry, CLI)."""

    def __init__(self, fields: ExtractedFields):
        self.fields = fields

    def extract(self, buffer: ImageBuffer) -> ExtractionResult:
        return Extracted(self.fields)


def _clean_str(value: Any) -> str:
    return str(value).strip() if value is not None else ''


def _optional_int(value: Any) -> int | None:
    if value in (None, ''):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _optional_float(value: Any) -> float | None:
    if value in (None, ''):
        return None
    try:
        return float(str(value).replace('%', '').strip())
    except (TypeError, ValueError):
        return None


def parse_extraction(payload: Mapping[str, Any]) -> ExtractionResult:
    """Turn a loose collaborator payload into an :data:`ExtractionResult`.

    Producer and wine name are mandatory; without them nothing downstream
    can match, so the payload becomes an ``ExtractionFailed``.

    Args:
        payload: Dict with producer, wine_name, vintage, alcohol_percent,
            confidence and raw_text keys, any of which may be missing.

    Returns:
        Extracted or ExtractionFailed.
    """
    producer = _clean_str(payload.get('producer'))
    wine_name = _clean_str(payload.get('wine_name'))
    missing = [name for name, value in (('producer', producer), ('wine_name', wine_name))
               if not value]
    if missing:
        return ExtractionFailed(f"Missing fields: {', '.join(missing)}")

    raw_conf = payload.get('confidence') or {}
    confidence = {}
    for key in CONFIDENCE_WEIGHTS:
        value = _optional_float(raw_conf.get(key))
        if value is not None:
            confidence[key] = min(1.0, max(0.0, value))

    return Extracted(ExtractedFields(
        producer=producer,
        wine_name=wine_name,
        vintage=_optional_int(payload.get('vintage')),
        alcohol_percent=_optional_float(payload.get('alcohol_percent')),
        confidence=confidence,
        raw_text=_clean_str(payload.get('raw_text')),
    ))


def overall_confidence(fields: ExtractedFields) -> float:
    """Weighted per-field confidence of an extraction."""
    return sum(
        weight * fields.field_confidence(name)
        for name, weight in CONFIDENCE_WEIGHTS.items()
    )


def validate_extracted(fields: ExtractedFields, today: date | None = None) -> list[str]:
    """Plausibility issues of extracted fields (informational, not fatal)."""
    issues: list[str] = []
    today = today or date.today()

    if len(fields.producer.strip()) < 2:
        issues.append('Producer name is missing or too short')

    if len(fields.wine_name.strip()) < 2:
        issues.append('Wine name is missing or too short')

    if fields.vintage is not None and not 1900 <= fields.vintage <= today.year + 1:
        issues.append('Vintage year appears invalid')

    if fields.alcohol_percent is not None and not 5 <= fields.alcohol_percent <= 20:
        issues.append('Alcohol percentage appears invalid')

    if fields.confidence and overall_confidence(fields) < MIN_OVERALL_CONFIDENCE:
        issues.append('Overall confidence too low - manual entry recommended')

    return issues
