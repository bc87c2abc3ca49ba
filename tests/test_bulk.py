"""Tests for resolver.bulk module (preview and commit)."""

from datetime import date

import pytest

from resolver import ImportRow, Tier
from resolver.bulk import PreviewResponse, PreviewStats, commit, preview
from resolver.errors import CatalogError
from resolver.reader import auto_map_columns, read_table
from resolver.repository import InMemoryCatalog


@pytest.fixture
def import_preview(data_dir, catalog):
    headers, rows = read_table(data_dir / 'cellar_import.csv')
    return preview(rows, auto_map_columns(headers), catalog)


class FailingCatalog(InMemoryCatalog):
    """Catalog whose reads fail."""

    def snapshot(self):
        raise CatalogError('catalog offline')


class UnreachableCatalog(InMemoryCatalog):
    """Catalog whose reads fail below the repository layer."""

    def snapshot(self):
        raise OSError('connection refused')


class TestPreview:
    """Tests for matching a whole spreadsheet."""

    def test_stats(self, import_preview):
        stats = import_preview.stats
        assert stats == PreviewStats(
            total=5, valid=4, exact_matches=3, likely_matches=0, no_matches=1, errors=1,
        )

    def test_row_statuses(self, import_preview):
        statuses = [row.match_status for row in import_preview.rows]
        assert statuses == [
            Tier.EXACT_MATCH, Tier.EXACT_MATCH, Tier.EXACT_MATCH, Tier.NO_MATCH, Tier.NO_MATCH,
        ]
        assert [row.matched_catalog_id for row in import_preview.rows] == [3, 3, 5, None, None]

    def test_error_row_reported(self, import_preview):
        bad = import_preview.rows[4]
        assert bad.errors == ['Either wine name or both producer and vintage are required']

    def test_rows_normalized(self, import_preview):
        first = import_preview.rows[0]
        assert first.where_stored == 'Cellar — A1'
        assert first.status == 'stored'
        assert first.drink_from == date(2025, 1, 1)
        assert import_preview.rows[2].status == 'drank'
        assert import_preview.rows[2].currency == 'AUD'

    def test_catalog_failure_is_no_match(self, catalog_entries):
        rows = [{'Wine': 'Grange', 'Producer': 'Penfolds', 'Vintage': '2017'}]
        response = preview(rows, {'wine_name': 'Wine', 'producer': 'Producer',
                                  'vintage': 'Vintage'}, FailingCatalog(catalog_entries))
        assert response.stats.no_matches == 1
        assert response.rows[0].match_status is Tier.NO_MATCH

    def test_unexpected_catalog_error_is_no_match(self, catalog_entries):
        rows = [{'Wine': 'Grange', 'Producer': 'Penfolds', 'Vintage': '2017'}]
        response = preview(rows, {'wine_name': 'Wine', 'producer': 'Producer',
                                  'vintage': 'Vintage'}, UnreachableCatalog(catalog_entries))
        assert response.stats.no_matches == 1
        assert response.rows[0].match_status is Tier.NO_MATCH

    def test_nothing_written(self, import_preview, catalog):
        assert catalog.items == {}
        assert len(catalog.snapshot()) == 6


class TestCommit:
    """Tests for writing a previewed import."""

    def test_summary(self, import_preview, catalog):
        summary = commit(import_preview, catalog, 'u1')
        assert summary.inserted_entities == 1
        assert summary.upserted_items == 3
        assert summary.total_quantity == 7
        assert summary.skipped_rows == 1
        assert summary.error_rows == 1

    def test_items_merged(self, import_preview, catalog):
        commit(import_preview, catalog, 'u1')
        item = catalog.items[('u1', 3)]
        assert item['quantity'] == 3
        assert item['rating'] == 5
        assert item['notes'] == 'Great\n—\nStill young'
        assert item['ratings'] == 'WA 97; WS 96'
        assert item['drink_starting'] == '2024-01-01'
        assert item['drink_by'] == '2045-01-01'

    def test_unmatched_row_creates_entity(self, import_preview, catalog):
        commit(import_preview, catalog, 'u1')
        created = catalog.get(7)
        assert created.producer == 'Nobody Winery'
        assert created.wine_name == 'Mystery Red'
        assert catalog.items[('u1', 7)]['quantity'] == 3

    def test_retry_converges(self, import_preview, catalog):
        commit(import_preview, catalog, 'u1')
        items = dict(catalog.items)
        summary = commit(import_preview, catalog, 'u1')
        assert summary.inserted_entities == 0
        assert catalog.items == items
        assert len(catalog.snapshot()) == 7

    def test_likely_match_needs_acceptance(self):
        catalog = InMemoryCatalog()
        existing = catalog.upsert_entity({'producer': 'Penfolds', 'wine_name': 'Grange Hermitage'})
        row = ImportRow(row_index=0, producer='Penfolds', wine_name='Grange',
                        matched_catalog_id=existing, match_status=Tier.LIKELY_MATCH,
                        match_score=0.7778)
        response = PreviewResponse(stats=PreviewStats(total=1, valid=1, likely_matches=1),
                                   rows=[row])

        summary = commit(response, catalog, 'u1')
        assert summary.inserted_entities == 1
        assert ('u1', existing) not in catalog.items

        accepted = InMemoryCatalog(catalog.snapshot())
        summary = commit(response, accepted, 'u1', accept_likely=True)
        assert summary.inserted_entities == 0
        assert ('u1', existing) in accepted.items
