"""Catalog and review-queue interfaces, with in-memory implementations."""

import dataclasses
import itertools
import logging
import threading
from typing import Any, Mapping, Protocol

from resolver import CatalogEntry
from resolver.similarity import bigrams, normalize_text, trigram_similarity

log = logging.getLogger(__name__)


def natural_key(producer: str | None, wine_name: str | None, vintage: int | None) -> tuple:
    """Uniqueness key under which catalog entities are upserted."""
    return (normalize_text(producer), normalize_text(wine_name), vintage)


class CatalogRepository(Protocol):
    """Catalog store as seen by the resolver."""

    def snapshot(self) -> list[CatalogEntry]:
        ...

    def search(self, text: str) -> list[CatalogEntry]:
        ...

    def get(self, catalog_id: int) -> CatalogEntry | None:
        ...

    def find_by_code(self, code: str) -> CatalogEntry | None:
        ...

    def upsert_entity(self, fields: Mapping[str, Any]) -> int:
        ...

    def upsert_item(self, owner_id: str, catalog_id: int, payload: Mapping[str, Any]) -> tuple:
        ...


class ReviewQueue(Protocol):
    """Human moderation queue."""

    def submit(self, payload: Any) -> int:
        ...


class InMemoryCatalog:
    """Thread-safe in-memory catalog.

    Reads work on a copy of the entries, so a match never sees a write that
    happens while it runs. Both write methods are idempotent upserts.
    """

    def __init__(self, entries: list[CatalogEntry] | None = None):
        self._lock = threading.Lock()
        self._entries: dict[int, CatalogEntry] = {}
        self._keys: dict[tuple, int] = {}
        self.items: dict[tuple, dict[str, Any]] = {}
        for entry in entries or []:
            self._store(entry)
        self._ids = itertools.count(max(self._entries, default=0) + 1)

    def _store(self, entry: CatalogEntry) -> None:
        self._entries[entry.catalog_id] = entry
        self._keys.setdefault(
            natural_key(entry.producer, entry.wine_name, entry.vintage), entry.catalog_id,
        )

    def snapshot(self) -> list[CatalogEntry]:
        with self._lock:
            return list(self._entries.values())

    def search(self, text: str) -> list[CatalogEntry]:
        """Entries sharing at least one bigram with ``text``, best first."""
        query_grams = bigrams(text)
        hits = [e for e in self.snapshot() if query_grams & bigrams(e.display_name)]
        hits.sort(key=lambda e: -trigram_similarity(text, e.display_name))
        return hits

    def get(self, catalog_id: int) -> CatalogEntry | None:
        with self._lock:
            return self._entries.get(catalog_id)

    def find_by_code(self, code: str) -> CatalogEntry | None:
        for entry in self.snapshot():
            if code and code in (entry.upc, entry.barcode):
                return entry
        return None

    def upsert_entity(self, fields: Mapping[str, Any]) -> int:
        """Create a minimal catalog entry, or return the existing one's id."""
        producer = fields.get('producer') or 'Unknown'
        wine_name = fields.get('wine_name') or 'Unknown Wine'
        vintage = fields.get('vintage')
        key = natural_key(producer, wine_name, vintage)

        with self._lock:
            existing = self._keys.get(key)
            if existing is not None:
                return existing
            known = {f.name for f in dataclasses.fields(CatalogEntry)}
            extra = {k: v for k, v in fields.items() if k in known}
            extra.update(
                catalog_id=next(self._ids), producer=producer,
                wine_name=wine_name, vintage=vintage,
            )
            entry = CatalogEntry(**extra)
            self._store(entry)

        log.info("Catalog entry %d created: %s", entry.catalog_id, entry.display_name)
        return entry.catalog_id

    def upsert_item(self, owner_id: str, catalog_id: int, payload: Mapping[str, Any]) -> tuple:
        """Set the owner's item for a catalog entry (replace semantics)."""
        key = (owner_id, catalog_id)
        with self._lock:
            self.items[key] = dict(payload)
        return key


class InMemoryReviewQueue:
    """Collects review payloads in submission order."""

    def __init__(self):
        self._lock = threading.Lock()
        self.items: list[Any] = []

    def submit(self, payload: Any) -> int:
        with self._lock:
            self.items.append(payload)
            return len(self.items)
