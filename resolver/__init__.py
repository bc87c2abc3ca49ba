"""Core types for cellar-resolver."""

from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Optional

import numpy as np


class Tier(str, Enum):
    """Coarse bucket for the best candidate of a match."""

    EXACT_MATCH = 'EXACT_MATCH'
    LIKELY_MATCH = 'LIKELY_MATCH'
    NO_MATCH = 'NO_MATCH'


class Confidence(float):
    """Match confidence in [0, 1].

    The only way to derive a confidence from a similarity score is
    :meth:`compose`, which adds the vintage bonus and caps the result.
    Label scans and spreadsheet imports both go through it.
    """

    VINTAGE_BONUS = 0.1

    def __new__(cls, value: float) -> 'Confidence':
        return super().__new__(cls, min(1.0, max(0.0, float(value))))

    @classmethod
    def compose(cls, score: float, vintage_matched: bool) -> 'Confidence':
        """Base score plus the vintage bonus, capped at 1.0."""
        bonus = cls.VINTAGE_BONUS if vintage_matched else 0.0
        return cls(round(score + bonus, 4))


@dataclass(frozen=True)
class ImageBuffer:
    """Decoded pixels of one captured image.

    ``width``/``height`` describe the original capture; ``pixels`` may be a
    downscaled analysis copy.
    """

    pixels: np.ndarray
    width: int
    height: int
    byte_size: int


@dataclass(frozen=True)
class QualityMetrics:
    blur_variance: float
    brightness_mean: float
    brightness_std: float
    sharpness: float
    width: int
    height: int
    byte_size: int


@dataclass(frozen=True)
class QualityReport:
    """Verdict of the image quality gate. ``passed`` iff no reasons."""

    reasons: tuple[str, ...]
    metrics: Optional[QualityMetrics]

    @property
    def passed(self) -> bool:
        return not self.reasons


@dataclass(frozen=True)
class ExtractedFields:
    """Field guesses from the extraction collaborator or manual entry."""

    producer: str
    wine_name: str
    vintage: Optional[int] = None
    alcohol_percent: Optional[float] = None
    confidence: dict[str, float] = field(default_factory=dict)
    raw_text: str = ''

    def field_confidence(self, name: str) -> float:
        return float(self.confidence.get(name, 0.0))


@dataclass(frozen=True)
class CatalogEntry:
    """Snapshot of one catalog record."""

    catalog_id: int
    producer: str
    wine_name: str
    vintage: Optional[int] = None
    alcohol: Optional[float] = None
    color: Optional[str] = None
    bottle_size: Optional[str] = None
    upc: Optional[str] = None
    barcode: Optional[str] = None

    @property
    def display_name(self) -> str:
        parts = [self.producer, self.wine_name]
        if self.vintage:
            parts.append(str(self.vintage))
        return ' '.join(p for p in parts if p)


@dataclass(frozen=True)
class MatchQuery:
    producer: Optional[str]
    wine_name: Optional[str]
    vintage: Optional[int] = None


@dataclass(frozen=True)
class MatchCandidate:
    catalog_id: int
    score: float
    confidence: Confidence
    vintage_matched: bool
    entry: Optional[CatalogEntry] = None


@dataclass(frozen=True)
class MatchResult:
    """Ranked candidates and the tier of the best one."""

    candidates: tuple[MatchCandidate, ...]
    tier: Tier

    @property
    def top(self) -> Optional[MatchCandidate]:
        return self.candidates[0] if self.candidates else None


@dataclass
class ImportRow:
    """One normalized spreadsheet row."""

    row_index: int
    wine_name: Optional[str] = None
    producer: Optional[str] = None
    vintage: Optional[int] = None
    quantity: int = 1
    where_stored: Optional[str] = None
    value: Optional[float] = None
    currency: Optional[str] = 'USD'
    status: str = 'stored'
    notes: Optional[str] = None
    rating: Optional[int] = None
    drink_from: Optional[date] = None
    drink_to: Optional[date] = None
    typical_price: Optional[float] = None
    ratings_blob: Optional[str] = None
    color: Optional[str] = None
    alcohol: Optional[float] = None
    bottle_size: Optional[str] = None
    upc: Optional[str] = None
    barcode: Optional[str] = None
    url: Optional[str] = None
    matched_catalog_id: Optional[int] = None
    match_status: Tier = Tier.NO_MATCH
    match_score: Optional[float] = None
    errors: list[str] = field(default_factory=list)
    row_count: int = 1  # raw rows merged into this one


@dataclass
class AggregatedRow:
    """Merge of all import rows resolved to one catalog id."""

    catalog_id: int
    quantity: int = 0
    where_stored: Optional[str] = None
    value: Optional[float] = None
    currency: str = 'USD'
    status: str = 'stored'
    notes: Optional[str] = None
    rating: Optional[int] = None
    drink_starting: Optional[date] = None
    drink_by: Optional[date] = None
    typical_price: Optional[float] = None
    ratings: Optional[str] = None
    color: Optional[str] = None
    alcohol: Optional[float] = None
    bottle_size: Optional[str] = None
    row_count: int = 0
